"""
Adaptive Decision Thresholds

Buy / sell / short thresholds are looked up from a regime x position table
and then scaled by market-state multipliers. None marks a disabled
threshold (no shorting, no selling while flat); multipliers never touch
a disabled threshold.

The same thresholds and action resolution serve the rule engine and the
fusion controller.
"""

from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Tuple
import logging

import numpy as np

from regimex.adjustments import AdjustmentRule, apply_rules
from regimex.config import RuleEngineConfig
from regimex.schemas import FeatureVector, PositionState, RegimeLabel, TradeAction

LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class ThresholdSet:
    """Score thresholds for one regime/position combination"""
    buy: float
    sell: Optional[float] = None
    short: Optional[float] = None

    @property
    def sell_enabled(self) -> bool:
        return self.sell is not None

    @property
    def short_enabled(self) -> bool:
        return self.short is not None

    def to_dict(self) -> Dict[str, Optional[float]]:
        return {'buy': self.buy, 'sell': self.sell, 'short': self.short}


# (regime, has_position) -> thresholds
THRESHOLD_TABLE: Dict[Tuple[RegimeLabel, bool], ThresholdSet] = {
    (RegimeLabel.EXTREME_BEAR, True): ThresholdSet(buy=0.70, sell=0.05),
    (RegimeLabel.SIDEWAYS, True): ThresholdSet(buy=0.50, sell=0.05),
    (RegimeLabel.WEAK_BULL, True): ThresholdSet(buy=0.70, sell=0.10),
    (RegimeLabel.WEAK_BEAR, True): ThresholdSet(buy=0.85, sell=0.08, short=-0.30),
    (RegimeLabel.STRONG_BULL, True): ThresholdSet(buy=0.60, sell=0.15),
    (RegimeLabel.STRONG_BEAR, True): ThresholdSet(buy=0.90, sell=0.05, short=-0.20),

    (RegimeLabel.EXTREME_BEAR, False): ThresholdSet(buy=0.30, short=-0.40),
    (RegimeLabel.SIDEWAYS, False): ThresholdSet(buy=0.02, short=-0.90),
    (RegimeLabel.WEAK_BULL, False): ThresholdSet(buy=0.40),
    (RegimeLabel.WEAK_BEAR, False): ThresholdSet(buy=0.40, short=-0.20),
    (RegimeLabel.STRONG_BULL, False): ThresholdSet(buy=0.50),
    (RegimeLabel.STRONG_BEAR, False): ThresholdSet(buy=0.70, short=-0.15),
}


def get_adaptive_thresholds(regime: Any, has_position: bool) -> ThresholdSet:
    """
    Base thresholds for a regime.

    Raises:
        UnknownRegimeError: regime has no threshold policy
    """
    label = RegimeLabel.parse(regime)
    return THRESHOLD_TABLE[(label, bool(has_position))]


@dataclass(frozen=True)
class ThresholdContext:
    features: FeatureVector
    regime: RegimeLabel
    has_position: bool


def _above(name: str, threshold: float):
    def predicate(ctx: ThresholdContext) -> bool:
        value = ctx.features.get(name)
        return value is not None and value > threshold
    return predicate


def _below(name: str, threshold: float):
    def predicate(ctx: ThresholdContext) -> bool:
        value = ctx.features.get(name)
        return value is not None and value < threshold
    return predicate


MARKET_STATE_RULES = [
    AdjustmentRule('high_volatility', _above('volatility_20', 0.08), {'buy': 1.3, 'sell': 0.9},
                   "demand more conviction to buy in turbulent markets"),
    AdjustmentRule('low_volatility', _below('volatility_20', 0.02), {'buy': 0.8, 'sell': 1.1},
                   "quiet markets"),
    AdjustmentRule('rsi_overbought', _above('rsi_14', 70), {'buy': 1.4, 'short': 0.8},
                   "overbought"),
    AdjustmentRule('rsi_oversold', _below('rsi_14', 30), {'buy': 0.7, 'sell': 1.2},
                   "oversold"),
    AdjustmentRule('strong_up_momentum', _above('momentum_10', 0.5), {'buy': 0.9}, "strong upward momentum"),
    AdjustmentRule('strong_down_momentum', _below('momentum_10', -0.5), {'sell': 0.9}, "strong downward momentum"),
    AdjustmentRule('has_position', lambda ctx: ctx.has_position, {'buy': 1.2, 'sell': 0.8},
                   "already exposed"),
    AdjustmentRule('no_position', lambda ctx: not ctx.has_position, {'buy': 0.9}, "flat"),
    AdjustmentRule('strong_bull_regime', lambda ctx: ctx.regime == RegimeLabel.STRONG_BULL,
                   {'buy': 0.8, 'sell': 1.2}, "strong bull"),
    AdjustmentRule('strong_bear_regime', lambda ctx: ctx.regime == RegimeLabel.STRONG_BEAR,
                   {'buy': 1.5, 'sell': 0.7}, "strong bear"),
    AdjustmentRule('sideways_regime', lambda ctx: ctx.regime == RegimeLabel.SIDEWAYS,
                   {'buy': 1.1, 'sell': 0.9}, "sideways"),
]


def threshold_multipliers(
    features: FeatureVector,
    regime: Any,
    has_position: bool,
    config: RuleEngineConfig = None,
) -> Tuple[Dict[str, float], List[dict]]:
    """
    Market-state threshold multipliers, each clamped to the configured band.

    Returns:
        ({'buy', 'sell', 'short'} multipliers, trace of fired rules)
    """
    config = config or RuleEngineConfig()
    context = ThresholdContext(features, RegimeLabel.parse(regime), bool(has_position))
    result = apply_rules({'buy': 1.0, 'sell': 1.0, 'short': 1.0}, MARKET_STATE_RULES, context)
    multipliers = {
        key: float(np.clip(value, config.threshold_multiplier_min, config.threshold_multiplier_max))
        for key, value in result.values.items()
    }
    return multipliers, result.trace


def resolve_thresholds(
    regime: Any,
    features: FeatureVector,
    position: PositionState,
    config: RuleEngineConfig = None,
) -> Tuple[ThresholdSet, List[dict]]:
    """Table lookup followed by market-state multipliers"""
    base = get_adaptive_thresholds(regime, position.has_position)
    multipliers, trace = threshold_multipliers(features, regime, position.has_position, config)

    adjusted = replace(
        base,
        buy=base.buy * multipliers['buy'],
        sell=None if base.sell is None else base.sell * multipliers['sell'],
        short=None if base.short is None else base.short * multipliers['short'],
    )
    return adjusted, trace


def resolve_action(score: float, thresholds: ThresholdSet, position: PositionState) -> TradeAction:
    """
    Map a score to an action for the current position.

    Flat:  buy above buy, short below short, else hold.
    Long:  buy above buy (scale-in), sell below sell, else hold.
    Short: cover above buy or above the mirrored sell level, else hold.
    """
    if not position.has_position:
        if score > thresholds.buy:
            return TradeAction.BUY
        if thresholds.short_enabled and score < thresholds.short:
            return TradeAction.SHORT
        return TradeAction.HOLD

    if position.is_short:
        if score > thresholds.buy or (thresholds.sell_enabled and score > -thresholds.sell):
            return TradeAction.COVER
        return TradeAction.HOLD

    if score > thresholds.buy:
        return TradeAction.BUY
    if thresholds.sell_enabled and score < thresholds.sell:
        return TradeAction.SELL
    return TradeAction.HOLD
