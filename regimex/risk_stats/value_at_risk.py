"""
Value-at-Risk and Expected Shortfall

Single-series risk primitives used by sizing and stress testing:
1. Historical simulation VaR (empirical quantile)
2. Parametric VaR (normal quantile via scipy.stats)
3. Monte-Carlo VaR (normal resampling of fitted moments)
4. CVaR (mean loss beyond VaR)
5. Simplified position VaR ceiling (position * volatility * k)

All functions are pure. VaR/CVaR are reported as positive loss fractions.
Short samples do not raise: they return a RiskMetricResult with
is_valid=False and a conservative default value.
"""

from dataclasses import dataclass
from typing import Optional, Sequence, Union

import numpy as np
import pandas as pd
from scipy import stats

ReturnsLike = Union[Sequence[float], np.ndarray, pd.Series]

MIN_OBSERVATIONS = 30
DEFAULT_VAR = 0.02  # conservative 2% daily VaR
DEFAULT_CVAR = 0.03


@dataclass
class RiskMetricResult:
    """Result of a VaR / CVaR computation"""
    value: float
    method: str
    confidence_level: float
    sample_size: int
    is_valid: bool = True
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'value': float(self.value),
            'method': self.method,
            'confidence_level': float(self.confidence_level),
            'sample_size': int(self.sample_size),
            'is_valid': bool(self.is_valid),
            'reason': self.reason,
        }


def as_returns(returns: ReturnsLike) -> np.ndarray:
    """Finite values of a return series as a float array"""
    if isinstance(returns, pd.Series):
        values = returns.to_numpy(dtype=float)
    else:
        values = np.asarray(list(returns), dtype=float)
    return values[np.isfinite(values)]


def historical_var(returns: ReturnsLike, confidence_level: float = 0.95) -> float:
    """Empirical loss quantile"""
    values = np.sort(as_returns(returns))
    if values.size == 0:
        return 0.0
    index = int(values.size * (1 - confidence_level))
    index = min(index, values.size - 1)
    return float(-values[index])


def parametric_var(returns: ReturnsLike, confidence_level: float = 0.95) -> float:
    """Normal-distribution VaR from the sample mean and standard deviation"""
    values = as_returns(returns)
    if values.size < 2:
        return 0.0
    mean = float(np.mean(values))
    std = float(np.std(values, ddof=1))
    if std == 0:
        return float(max(-mean, 0.0))
    z_score = stats.norm.ppf(confidence_level)
    return float(-(mean - z_score * std))


def monte_carlo_var(
    returns: ReturnsLike,
    confidence_level: float = 0.95,
    simulations: int = 10000,
    seed: Optional[int] = None,
) -> float:
    """Quantile of normally resampled returns"""
    values = as_returns(returns)
    if values.size < 2:
        return 0.0
    rng = np.random.default_rng(seed)
    simulated = rng.normal(np.mean(values), np.std(values, ddof=1), simulations)
    return historical_var(simulated, confidence_level)


def value_at_risk(
    returns: ReturnsLike,
    confidence_level: float = 0.95,
    method: str = 'historical',
    min_observations: int = MIN_OBSERVATIONS,
    seed: Optional[int] = None,
) -> RiskMetricResult:
    """
    Calculate Value-at-Risk.

    Args:
        returns: Periodic returns
        confidence_level: e.g. 0.95
        method: 'historical', 'parametric' or 'monte_carlo'
        min_observations: Below this the conservative default is returned

    Returns:
        RiskMetricResult (value is a positive loss fraction)
    """
    values = as_returns(returns)
    if values.size < min_observations:
        return RiskMetricResult(
            value=DEFAULT_VAR,
            method=method,
            confidence_level=confidence_level,
            sample_size=int(values.size),
            is_valid=False,
            reason=f"Insufficient data: {values.size} < {min_observations} observations",
        )

    if method == 'parametric':
        var = parametric_var(values, confidence_level)
    elif method == 'monte_carlo':
        var = monte_carlo_var(values, confidence_level, seed=seed)
    elif method == 'historical':
        var = historical_var(values, confidence_level)
    else:
        raise ValueError(f"Unknown method: {method}")

    return RiskMetricResult(var, method, confidence_level, int(values.size))


def conditional_var(
    returns: ReturnsLike,
    confidence_level: float = 0.95,
    min_observations: int = MIN_OBSERVATIONS,
) -> RiskMetricResult:
    """
    Calculate Expected Shortfall (CVaR).

    CVaR = mean loss over the observations whose loss exceeds historical VaR.
    Falls back to VaR itself when nothing lies beyond it.
    """
    values = as_returns(returns)
    if values.size < min_observations:
        return RiskMetricResult(
            value=DEFAULT_CVAR,
            method='historical',
            confidence_level=confidence_level,
            sample_size=int(values.size),
            is_valid=False,
            reason=f"Insufficient data: {values.size} < {min_observations} observations",
        )

    var = historical_var(values, confidence_level)
    losses = -values
    tail = losses[losses > var]
    cvar = float(np.mean(tail)) if tail.size else var
    return RiskMetricResult(cvar, 'historical', confidence_level, int(values.size))


def simplified_position_var(position_fraction: float, volatility: float, multiplier: float = 2.0) -> float:
    """Capital at risk for a position: fraction * volatility * multiplier"""
    return float(max(position_fraction, 0.0) * max(volatility, 0.0) * multiplier)


def var_capped_fraction(
    position_fraction: float,
    volatility: float,
    var_limit: float = 0.02,
    multiplier: float = 2.0,
) -> float:
    """Largest fraction (<= position_fraction) whose simplified VaR stays within var_limit"""
    if volatility <= 0:
        return float(position_fraction)
    if simplified_position_var(position_fraction, volatility, multiplier) <= var_limit:
        return float(position_fraction)
    return float(var_limit / (volatility * multiplier))
