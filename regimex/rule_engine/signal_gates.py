"""
Rule Signal Gates

Two multiplicative gates applied to the raw weighted score:

1. Market-timing filter: damps the score in hostile volatility or against
   the prevailing market phase.
2. Signal consistency: rewards agreement between independent indicators
   and punishes disagreement (ratio in [0.5, 1.4]).
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
import logging

from regimex.adjustments import AdjustmentRule, fold_factor
from regimex.config import RuleEngineConfig
from regimex.schemas import FeatureVector, PositionState

LOG = logging.getLogger(__name__)


def _vol(ctx) -> Optional[float]:
    return ctx[0].get('volatility_20')


def _phase(ctx) -> Optional[float]:
    return ctx[0].get('market_phase')


TIMING_RULES = [
    AdjustmentRule(
        'extreme_volatility', lambda ctx: _vol(ctx) is not None and _vol(ctx) > 0.06,
        {'factor': 0.7}, "extreme volatility",
    ),
    AdjustmentRule(
        'high_volatility', lambda ctx: _vol(ctx) is not None and 0.04 < _vol(ctx) <= 0.06,
        {'factor': 0.85}, "high volatility",
    ),
    AdjustmentRule(
        'holding_into_bear_phase',
        lambda ctx: ctx[1].has_position and _phase(ctx) is not None and _phase(ctx) < -0.5,
        {'factor': 0.8}, "positioned against a bear phase",
    ),
    AdjustmentRule(
        'flat_into_bull_phase',
        lambda ctx: not ctx[1].has_position and _phase(ctx) is not None and _phase(ctx) > 0.5,
        {'factor': 0.9}, "late entry into a bull phase",
    ),
]


def market_timing_filter(features: FeatureVector, position: PositionState) -> Tuple[float, List[dict]]:
    """
    Returns:
        (factor in (0, 1], trace of fired timing rules)
    """
    result = fold_factor(TIMING_RULES, (features, position))
    return result.values['factor'], result.trace


# (feature, bull threshold, weight); value > t is bullish, value < -t bearish.
# A threshold of 0 means any non-zero sign votes.
CONSISTENCY_INDICATORS: List[Tuple[str, float, float]] = [
    ('trend_5', 0.005, 0.8),
    ('trend_20', 0.01, 1.5),
    ('trend_50', 0.0, 1.2),
    ('rsi_14', 10.0, 1.0),  # measured from 50
    ('momentum_10', 0.02, 0.9),
    ('macd_signal', 0.001, 1.3),
    ('volume_trend', 0.02, 0.7),
]


@dataclass
class ConsistencyResult:
    """Outcome of the indicator agreement check"""
    ratio: float  # multiplier applied to the score
    consistency: Optional[float] = None  # combined agreement [0, 1]; None when insufficient
    bullish: int = 0
    bearish: int = 0
    total: int = 0
    weighted_bullish: float = 0.0
    weighted_bearish: float = 0.0
    insufficient_data: bool = False
    votes: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            'ratio': self.ratio,
            'consistency': self.consistency,
            'bullish': self.bullish,
            'bearish': self.bearish,
            'total': self.total,
            'weighted_bullish': self.weighted_bullish,
            'weighted_bearish': self.weighted_bearish,
            'insufficient_data': self.insufficient_data,
            'votes': dict(self.votes),
        }


def _indicator_direction(name: str, value: float, threshold: float) -> int:
    if name == 'rsi_14':
        value -= 50.0
    if value > threshold:
        return 1
    if value < -threshold:
        return -1
    return 0


def signal_consistency(features: FeatureVector, config: RuleEngineConfig = None) -> ConsistencyResult:
    """
    Measure directional agreement across trend, momentum, MACD and volume.

    Every present indicator (non-zero, except RSI which always counts)
    joins the vote total; it votes bull or bear only outside its neutral
    band. Agreement combines 60% vote share with 40% weighted share.
    """
    config = config or RuleEngineConfig()
    result = ConsistencyResult(ratio=1.0)

    for name, threshold, weight in CONSISTENCY_INDICATORS:
        value = features.get(name)
        if value is None or (value == 0 and name != 'rsi_14'):
            continue

        direction = _indicator_direction(name, value, threshold)
        result.total += 1
        result.votes[name] = direction
        if direction > 0:
            result.bullish += 1
            result.weighted_bullish += weight
        elif direction < 0:
            result.bearish += 1
            result.weighted_bearish += weight

    if result.total < config.min_consistency_signals:
        result.ratio = config.insufficient_consistency_ratio
        result.insufficient_data = True
        LOG.debug(f"Signal consistency: insufficient signals {result.total}/{config.min_consistency_signals}, "
                  f"ratio {result.ratio}")
        return result

    quantity = max(result.bullish, result.bearish) / result.total
    total_weighted = result.weighted_bullish + result.weighted_bearish
    weighted = max(result.weighted_bullish, result.weighted_bearish) / total_weighted if total_weighted > 0 else 0.0
    consistency = quantity * 0.6 + weighted * 0.4

    if consistency >= 0.8:
        ratio = 1.4
    elif consistency >= 0.65:
        ratio = 1.1
    elif consistency >= 0.5:
        ratio = 0.9
    else:
        ratio = 0.5

    result.consistency = consistency
    result.ratio = ratio
    LOG.debug(f"Signal consistency {consistency:.2%} (bull {result.bullish}, bear {result.bearish}, "
              f"total {result.total}) -> ratio {ratio}")
    return result
