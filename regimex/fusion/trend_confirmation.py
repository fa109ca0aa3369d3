"""
Multi-Timeframe Trend Confirmation

Confirms the prevailing trend from a price history over 5/10/20-period
windows, or falls back to the `trend_strength` / `price_change_24h`
features when no history is supplied.

Used by the fusion controller to tilt weight toward the ensemble in a
confirmed uptrend and toward the rules in a confirmed downtrend.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple, Union
import logging

import numpy as np
import pandas as pd

from regimex.schemas import FeatureVector

LOG = logging.getLogger(__name__)

PriceHistory = Union[Sequence[float], np.ndarray, pd.Series]

BULL = 'bull'
BEAR = 'bear'
SIDEWAYS = 'sideways'


@dataclass(frozen=True)
class TrendConfirmation:
    """Direction, strength and how well the trend is confirmed"""
    direction: str  # bull | bear | sideways
    strength: float  # [0, 1]
    confirmation: float  # [0, 1]
    reliability: float  # [0, 1]
    timeframe: int = 0
    source: str = 'prices'  # prices | features | default

    def to_dict(self) -> dict:
        return {
            'direction': self.direction,
            'strength': self.strength,
            'confirmation': self.confirmation,
            'reliability': self.reliability,
            'timeframe': self.timeframe,
            'source': self.source,
        }


NEUTRAL_TREND = TrendConfirmation(SIDEWAYS, 0.5, 0.5, 0.5, 0, 'default')


def _as_series(prices: PriceHistory) -> pd.Series:
    series = prices if isinstance(prices, pd.Series) else pd.Series(list(prices), dtype=float)
    return series.astype(float).dropna().reset_index(drop=True)


def analyze_trend_strength(prices: pd.Series, periods: int) -> Tuple[str, float]:
    """
    Volatility-normalised trend strength over the last `periods` prices.

    strength = |total change| / (mean |period change| * sqrt(periods)), in [0, 1].
    Flat series (mean change <= 0.1%) are neutral at 0.5.

    Returns:
        (direction, strength)
    """
    if len(prices) - 1 < periods:
        return SIDEWAYS, 0.5

    window = prices.iloc[-periods:]
    total_change = window.iloc[-1] / window.iloc[0] - 1.0
    volatility = window.pct_change().abs().mean()

    strength = 0.5
    if volatility > 0.001:
        strength = float(np.clip(abs(total_change) / (volatility * np.sqrt(periods)), 0.0, 1.0))

    direction = SIDEWAYS
    if strength > 0.3:
        direction = BULL if total_change > 0 else BEAR
    return direction, strength


def momentum_consistency(prices: pd.Series, periods: int) -> float:
    """Share of period changes followed by a change of the same sign"""
    if len(prices) < periods + 2:
        return 0.5

    changes = prices.pct_change().iloc[-(periods - 1):]
    if changes.empty:
        return 0.5
    same_sign = (np.sign(changes) * np.sign(changes.shift(-1)) > 0).sum()
    return float(same_sign / len(changes))


def price_position(prices: pd.Series, periods: int) -> float:
    """Where the last price sits within the recent high/low range"""
    if len(prices) - 1 < periods:
        return 0.5

    window = prices.iloc[-periods:]
    low, high = window.min(), window.max()
    if high <= low:
        return 0.5
    return float(np.clip((window.iloc[-1] - low) / (high - low), 0.0, 1.0))


def analyze_trend_confirmation(prices: PriceHistory, lookback: int = 20) -> TrendConfirmation:
    """
    Confirm the trend across short (5), medium (10) and long (20) windows.

    Direction: short if short agrees with medium, medium if medium agrees
    with long, otherwise sideways.
    """
    series = _as_series(prices)
    if len(series) - 1 < lookback:
        return NEUTRAL_TREND

    short_dir, short_strength = analyze_trend_strength(series, 5)
    medium_dir, medium_strength = analyze_trend_strength(series, 10)
    long_dir, long_strength = analyze_trend_strength(series, 20)

    consistency = momentum_consistency(series, lookback)
    position = price_position(series, lookback)

    strength = short_strength * 0.5 + medium_strength * 0.3 + long_strength * 0.2

    if short_dir == medium_dir:
        direction = short_dir
    elif medium_dir == long_dir:
        direction = medium_dir
    else:
        direction = SIDEWAYS

    if direction != SIDEWAYS:
        confirmation = float(np.clip(consistency * 0.4 + strength * 0.4 + position * 0.2, 0.1, 0.95))
    else:
        confirmation = max(0.3, 1.0 - consistency)

    reliability = consistency * 0.6 + min(1.0, lookback / 20.0) * 0.4

    LOG.debug(
        f"Trend confirmation: {direction} strength={strength:.3f} confirmation={confirmation:.3f} "
        f"reliability={reliability:.3f} (5:{short_dir} 10:{medium_dir} 20:{long_dir})"
    )
    return TrendConfirmation(direction, strength, confirmation, reliability, lookback, 'prices')


def trend_from_features(features: FeatureVector) -> Optional[TrendConfirmation]:
    """Coarse trend read from snapshot features; None without trend_strength"""
    strength = features.get('trend_strength')
    if strength is None:
        return None

    direction = SIDEWAYS
    if strength > 0.6:
        direction = BULL if features.get('price_change_24h', 0.0) > 0 else BEAR

    confirmation = min(1.0, strength * 1.2)
    reliability = min(1.0, (features.get('volatility_20', 0.0) + 0.5) * 0.8)
    return TrendConfirmation(direction, float(np.clip(strength, 0.0, 1.0)), confirmation, reliability, 20, 'features')


def trend_weight_factors(trend: TrendConfirmation) -> Dict[str, float]:
    """
    ML / rule weight factors implied by a trend confirmation.

    Confirmed bull trends favour the ensemble, confirmed bear trends and
    sideways markets favour the rules. Low reliability pulls both toward 1.
    """
    ml, rule = 1.0, 1.0

    if trend.direction == BULL:
        if trend.confirmation > 0.7:
            ml, rule = 1.2 + trend.strength * 0.3, 0.9
        elif trend.confirmation > 0.5:
            ml = 1.1 + trend.strength * 0.2
    elif trend.direction == BEAR:
        if trend.confirmation > 0.7:
            ml, rule = 0.8, 1.3 + trend.strength * 0.2
        elif trend.confirmation > 0.5:
            ml, rule = 0.95, 1.1 + trend.strength * 0.1
    else:
        ml, rule = 0.95, 1.1

    if trend.reliability < 0.6:
        ml = max(0.8, ml * 0.9)
        rule = max(0.9, rule * 0.95)

    return {
        'ml': float(np.clip(ml, 0.5, 2.0)),
        'rule': float(np.clip(rule, 0.5, 2.0)),
    }
