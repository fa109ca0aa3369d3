"""
Kelly Criterion Position Fraction - Half-Kelly Edition

Growth-optimal fraction with conservative safety factors.

Mathematical foundation:
Kelly Fraction = p - (1 - p) / R

Where:
- p = win rate (probability of profit)
- R = reward:risk ratio (average win / average loss)

Conservative modifications:
1. Fractional Kelly: scale (0.5 = half-Kelly) * kelly_fraction
2. Volatility discount: * 1 / (1 + 2 * volatility)
3. Clamp to [min_fraction, max_fraction] (default [0.1, 0.5])
4. Invalid inputs fall back to a fixed conservative fraction
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np

from regimex.schemas import PerformanceHistory


@dataclass
class KellyResult:
    """Result from Kelly Criterion calculation"""
    kelly_fraction: float
    fractional_kelly: float
    kelly_cap: float  # final clamped fraction
    volatility_discount: float = 1.0
    is_valid: bool = True
    rejection_reason: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary"""
        return {
            'kelly_fraction': float(self.kelly_fraction),
            'fractional_kelly': float(self.fractional_kelly),
            'kelly_cap': float(self.kelly_cap),
            'volatility_discount': float(self.volatility_discount),
            'is_valid': bool(self.is_valid),
            'rejection_reason': self.rejection_reason,
        }


class KellyCriterion:
    """Half-Kelly calculator with volatility discount and hard bounds"""

    def __init__(
        self,
        scale: float = 0.5,
        min_fraction: float = 0.1,
        max_fraction: float = 0.5,
        fallback_fraction: float = 0.25,
        default_win_rate: float = 0.5,
        default_reward_risk: float = 2.0,
    ):
        if not 0 < scale <= 1:
            raise ValueError(f"scale must be in (0, 1], got {scale}")
        if not 0 <= min_fraction <= max_fraction <= 1:
            raise ValueError(f"Invalid fraction bounds: [{min_fraction}, {max_fraction}]")

        self.scale = float(scale)
        self.min_fraction = float(min_fraction)
        self.max_fraction = float(max_fraction)
        self.fallback_fraction = float(np.clip(fallback_fraction, min_fraction, max_fraction))
        self.default_win_rate = float(default_win_rate)
        self.default_reward_risk = float(default_reward_risk)

    def _fallback(self, reason: str) -> KellyResult:
        return KellyResult(0.0, 0.0, self.fallback_fraction, 1.0, False, reason)

    def calculate(
        self,
        win_rate: Optional[float] = None,
        reward_risk: Optional[float] = None,
        volatility: float = 0.0,
    ) -> KellyResult:
        """Calculate the bounded half-Kelly fraction"""
        p = self.default_win_rate if win_rate is None else win_rate
        r = self.default_reward_risk if reward_risk is None else reward_risk

        # Input validations
        if not np.isfinite(p) or not 0 <= p <= 1:
            return self._fallback(f"Invalid win_rate: {p} (must be in [0,1])")
        if not np.isfinite(r) or r <= 0:
            return self._fallback(f"Invalid reward_risk: {r} (must be > 0)")
        if not np.isfinite(volatility):
            return self._fallback(f"Invalid volatility: {volatility}")

        kelly_fraction = p - (1 - p) / r
        volatility_discount = 1.0 / (1.0 + 2.0 * max(volatility, 0.0))
        fractional_kelly = kelly_fraction * self.scale * volatility_discount
        kelly_cap = float(np.clip(fractional_kelly, self.min_fraction, self.max_fraction))

        reason = None
        if kelly_fraction <= 0:
            reason = f"Negative edge: Kelly = {kelly_fraction:.4f}, floored to {self.min_fraction}"

        return KellyResult(
            kelly_fraction=float(kelly_fraction),
            fractional_kelly=float(fractional_kelly),
            kelly_cap=kelly_cap,
            volatility_discount=float(volatility_discount),
            is_valid=True,
            rejection_reason=reason,
        )

    def calculate_from_history(self, history: PerformanceHistory, volatility: float = 0.0) -> KellyResult:
        """Use realised win rate and reward:risk once the symbol has trades"""
        if not history.has_history:
            return self.calculate(volatility=volatility)

        reward_risk = None
        if history.avg_win and history.avg_loss and history.avg_win > 0 and history.avg_loss > 0:
            reward_risk = history.avg_win / history.avg_loss

        return self.calculate(win_rate=history.win_rate, reward_risk=reward_risk, volatility=volatility)
