"""
Rule-Based Signal Engine

Adaptive feature weights, market-timing and consistency gates,
regime x position thresholds and position-aware action resolution.
"""

from regimex.rule_engine.feature_weights import (
    BASE_FEATURE_WEIGHTS,
    MarketSentiment,
    calculate_market_sentiment,
    compute_feature_weights,
)
from regimex.rule_engine.signal_gates import ConsistencyResult, market_timing_filter, signal_consistency
from regimex.rule_engine.thresholds import (
    THRESHOLD_TABLE,
    ThresholdSet,
    get_adaptive_thresholds,
    resolve_action,
    resolve_thresholds,
    threshold_multipliers,
)
from regimex.rule_engine.rule_engine import RuleSignal, RuleSignalEngine

__all__ = [
    'BASE_FEATURE_WEIGHTS',
    'MarketSentiment',
    'calculate_market_sentiment',
    'compute_feature_weights',
    'ConsistencyResult',
    'market_timing_filter',
    'signal_consistency',
    'THRESHOLD_TABLE',
    'ThresholdSet',
    'get_adaptive_thresholds',
    'resolve_action',
    'resolve_thresholds',
    'threshold_multipliers',
    'RuleSignal',
    'RuleSignalEngine',
]
