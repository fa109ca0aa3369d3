"""
Fusion Controller

Weight chain, decision consistency, multi-timeframe trend confirmation
and position-aware action invariants for combining rule and ensemble
outputs.
"""

from regimex.fusion.trend_confirmation import (
    NEUTRAL_TREND,
    TrendConfirmation,
    analyze_trend_confirmation,
    analyze_trend_strength,
    trend_from_features,
    trend_weight_factors,
)
from regimex.fusion.fusion_controller import (
    FUSION_WEIGHT_RULES,
    ConsistencyLevel,
    DecisionConsistency,
    FusionContext,
    FusionController,
    action_to_score,
    analyze_decision_consistency,
    enforce_position_invariants,
    symbol_class,
)

__all__ = [
    'NEUTRAL_TREND',
    'TrendConfirmation',
    'analyze_trend_confirmation',
    'analyze_trend_strength',
    'trend_from_features',
    'trend_weight_factors',
    'FUSION_WEIGHT_RULES',
    'ConsistencyLevel',
    'DecisionConsistency',
    'FusionContext',
    'FusionController',
    'action_to_score',
    'analyze_decision_consistency',
    'enforce_position_invariants',
    'symbol_class',
]
