"""
Adaptive Feature Weights

Base weights for the 26 core indicators, adapted each cycle by ordered
rule groups:

1. Market condition (volatility, RSI zone, position, market phase)
2. Historical performance (win rate, Sharpe, drawdown)
3. Market sentiment (fear/greed, uncertainty, participation)
4. Seasonal factors (configured, identity by default)
5. Model confidence (previous-cycle rule accuracy)

Weights are clamped to [-2, 2] after every rule and never allowed to
collapse to zero.
"""

from dataclasses import dataclass
from typing import Callable, Dict, List, Sequence
import logging

from regimex.adjustments import AdjustmentResult, AdjustmentRule, apply_rules, merge, scale, scale_all_except
from regimex.config import RuleEngineConfig
from regimex.schemas import FeatureVector, PerformanceHistory, PositionState

LOG = logging.getLogger(__name__)

BASE_FEATURE_WEIGHTS: Dict[str, float] = {
    'trend_5': 0.05,
    'trend_20': 0.20,
    'trend_50': 0.12,
    'rsi_14': 0.12,
    'stoch_k': 0.08,
    'williams_r': 0.08,
    'volatility_20': -0.15,
    'volume_trend': 0.15,
    'macd_signal': 0.10,
    'momentum_10': 0.08,
    'support_level': 0.12,
    'resistance_level': -0.12,
    'bollinger_position': 0.08,
    'market_phase': 0.10,
    'price_momentum_3': 0.03,
    'price_momentum_5': 0.10,
    'price_acceleration': 0.08,
    'price_momentum_normalized': 0.10,
    'volume_rsi': 0.06,
    'volume_price_trend': 0.08,
    'volume_volatility': 0.05,
    'price_jump_ratio': 0.06,
    'trend_consistency': 0.12,
    'trend_strength': 0.15,
    'momentum_divergence': 0.08,
    'volume_price_ratio': 0.07,
}


def features_matching(*tags: str) -> List[str]:
    """Weighted features whose name contains any of the tags"""
    return [name for name in BASE_FEATURE_WEIGHTS if any(tag in name for tag in tags)]


@dataclass(frozen=True)
class MarketSentiment:
    fear_greed: float
    uncertainty: float
    participation: float
    overall: float

    def to_dict(self) -> Dict[str, float]:
        return {
            'fear_greed': self.fear_greed,
            'uncertainty': self.uncertainty,
            'participation': self.participation,
            'overall': self.overall,
        }


def calculate_market_sentiment(features: FeatureVector) -> MarketSentiment:
    """
    Indicator-derived crowd sentiment.

    fear_greed from RSI, uncertainty from volatility, participation from
    volume RSI; overall = 0.4 * fear_greed + 0.3 * uncertainty + 0.3 * participation.
    """
    rsi = features.get('rsi_14')
    if rsi is None:
        fear_greed = 0.0
    elif rsi < 30:
        fear_greed = -0.8
    elif rsi < 45:
        fear_greed = -0.3
    elif rsi > 70:
        fear_greed = 0.8
    elif rsi > 55:
        fear_greed = 0.3
    else:
        fear_greed = 0.0

    volatility = features.get('volatility_20')
    if volatility is None:
        uncertainty = 0.3
    elif volatility > 0.08:
        uncertainty = 0.9
    elif volatility > 0.05:
        uncertainty = 0.6
    elif volatility > 0.03:
        uncertainty = 0.3
    else:
        uncertainty = 0.0

    volume_rsi = features.get('volume_rsi')
    if volume_rsi is None:
        participation = 0.0
    elif volume_rsi > 70:
        participation = 0.8
    elif volume_rsi > 55:
        participation = 0.4
    else:
        participation = -0.2

    overall = fear_greed * 0.4 + uncertainty * 0.3 + participation * 0.3
    return MarketSentiment(fear_greed, uncertainty, participation, overall)


@dataclass(frozen=True)
class WeightContext:
    """Inputs visible to weight rules"""
    features: FeatureVector
    position: PositionState
    history: PerformanceHistory
    sentiment: MarketSentiment
    seasonal_factors: Dict[str, float]


def _feature_above(name: str, threshold: float) -> Callable[[WeightContext], bool]:
    def predicate(ctx: WeightContext) -> bool:
        value = ctx.features.get(name)
        return value is not None and value > threshold
    return predicate


def _feature_below(name: str, threshold: float) -> Callable[[WeightContext], bool]:
    def predicate(ctx: WeightContext) -> bool:
        value = ctx.features.get(name)
        return value is not None and value < threshold
    return predicate


def _oversold_factors(ctx: WeightContext) -> Dict[str, float]:
    rsi_boost = 2.5 if ctx.features.get('rsi_14') < 20 else 2.0
    return merge(
        scale_all_except(list(BASE_FEATURE_WEIGHTS), ('rsi_14', 'volatility_20'), 0.85),
        {'rsi_14': rsi_boost},
    )


MARKET_CONDITION_RULES = [
    AdjustmentRule(
        'high_volatility', _feature_above('volatility_20', 0.05),
        {'trend_5': 0.7, 'trend_20': 0.8, 'support_level': 1.3, 'resistance_level': 1.3,
         'bollinger_position': 1.2},
        "trend signals whipsaw; levels matter more",
    ),
    AdjustmentRule(
        'low_volatility', _feature_below('volatility_20', 0.02),
        merge(
            {'rsi_14': 1.4, 'stoch_k': 1.3, 'williams_r': 1.3, 'momentum_10': 1.2, 'volatility_20': 0.5},
            scale(('price_momentum_3', 'price_momentum_5', 'price_acceleration', 'price_momentum_normalized'), 1.5),
        ),
        "oscillators lead in quiet markets",
    ),
    AdjustmentRule(
        'rsi_oversold', _feature_below('rsi_14', 30), _oversold_factors,
        "oversold reading dominates",
    ),
    AdjustmentRule(
        'rsi_overbought', _feature_above('rsi_14', 70),
        {'stoch_k': 1.5, 'williams_r': 1.5, 'rsi_14': 0.8},
        "stochastics confirm overbought exhaustion",
    ),
    AdjustmentRule(
        'has_position', lambda ctx: ctx.position.has_position,
        {'rsi_14': 0.9, 'stoch_k': 1.1, 'williams_r': 1.1, 'resistance_level': 1.2},
        "exit-side signals",
    ),
    AdjustmentRule(
        'no_position', lambda ctx: not ctx.position.has_position,
        {'rsi_14': 1.1, 'support_level': 1.2, 'bollinger_position': 1.1},
        "entry-side signals",
    ),
    AdjustmentRule(
        'bear_phase', _feature_below('market_phase', -0.5),
        {'rsi_14': 1.3, 'stoch_k': 1.2, 'support_level': 1.4},
        "reversal signals in bear phase",
    ),
    AdjustmentRule(
        'bull_phase', _feature_above('market_phase', 0.5),
        {'trend_20': 1.2, 'momentum_10': 1.3, 'volume_trend': 1.2},
        "trend following in bull phase",
    ),
]

PERFORMANCE_RULES = [
    AdjustmentRule(
        'low_win_rate',
        lambda ctx: (ctx.history.win_rate < 0.4 and ctx.history.rule_accuracy is not None
                     and ctx.history.rule_accuracy < 0.5),
        scale(features_matching('rsi', 'stoch', 'trend'), 0.9),
        "rule indicators have been losing",
    ),
    AdjustmentRule(
        'low_sharpe', lambda ctx: ctx.history.sharpe_ratio < 0.5,
        {'volatility_20': 1.2, 'resistance_level': 1.1},
        "poor risk-adjusted return",
    ),
    AdjustmentRule(
        'high_drawdown', lambda ctx: ctx.history.max_drawdown > 0.15,
        {'volatility_20': 1.5, 'support_level': 1.3, 'resistance_level': 1.3},
        "drawdown control",
    ),
]

SENTIMENT_RULES = [
    AdjustmentRule(
        'fearful_sentiment', lambda ctx: ctx.sentiment.overall < -0.5,
        {'rsi_14': 1.5, 'stoch_k': 1.4, 'support_level': 1.6, 'trend_5': 0.7, 'trend_20': 0.8},
        "fear favours reversal signals",
    ),
    AdjustmentRule(
        'greedy_sentiment', lambda ctx: ctx.sentiment.overall > 0.5,
        {'trend_20': 1.4, 'momentum_10': 1.5, 'volume_trend': 1.3, 'rsi_14': 0.8},
        "greed favours trend signals",
    ),
    AdjustmentRule(
        'high_uncertainty', lambda ctx: ctx.sentiment.uncertainty > 0.7,
        {'support_level': 1.4, 'resistance_level': 1.4, 'bollinger_position': 1.3, 'trend_5': 0.8},
        "levels over short trend under uncertainty",
    ),
]

SEASONAL_RULES = [
    AdjustmentRule(
        'seasonal', lambda ctx: bool(ctx.seasonal_factors),
        lambda ctx: ctx.seasonal_factors,
        "configured seasonal factors",
    ),
]

MODEL_CONFIDENCE_RULES = [
    AdjustmentRule(
        'low_rule_accuracy',
        lambda ctx: ctx.history.rule_accuracy is not None and ctx.history.rule_accuracy < 0.4,
        scale(features_matching('rsi', 'stoch', 'trend', 'momentum'), 0.9),
        "recent rule decisions unreliable",
    ),
]

WEIGHT_RULES: Sequence[AdjustmentRule] = (
    MARKET_CONDITION_RULES + PERFORMANCE_RULES + SENTIMENT_RULES + SEASONAL_RULES + MODEL_CONFIDENCE_RULES
)


def weight_clamp(config: RuleEngineConfig) -> Callable[[float], float]:
    """Bound a weight to [weight_min, weight_max] and keep it away from zero"""
    def clamp(weight: float) -> float:
        weight = min(max(weight, config.weight_min), config.weight_max)
        if abs(weight) < config.weight_floor:
            weight = config.weight_floor if weight >= 0 else -config.weight_floor
        return weight
    return clamp


def compute_feature_weights(
    features: FeatureVector,
    position: PositionState,
    history: PerformanceHistory,
    config: RuleEngineConfig = None,
    rules: Sequence[AdjustmentRule] = WEIGHT_RULES,
) -> AdjustmentResult:
    """
    Adapt base weights to the current market and history.

    Returns:
        AdjustmentResult with the final weights and the trace of fired rules
    """
    config = config or RuleEngineConfig()
    context = WeightContext(
        features=features,
        position=position,
        history=history,
        sentiment=calculate_market_sentiment(features),
        seasonal_factors=dict(config.seasonal_factors),
    )
    result = apply_rules(BASE_FEATURE_WEIGHTS, rules, context, clamp=weight_clamp(config))
    LOG.debug(f"Feature weight rules applied: {result.applied}")
    return result
