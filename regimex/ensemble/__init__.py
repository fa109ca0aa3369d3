"""
Ensemble Model Fusion

Predictor registry, concurrent member fan-out with timeout, and
robust aggregation of member predictions.
"""

from regimex.ensemble.predictor import (
    MemberFailure,
    MemberOutput,
    PredictorRegistry,
    call_member,
    validate_output,
)
from regimex.ensemble.ensemble_fusion import (
    EnsembleFusion,
    EnsembleResult,
    aggregate_members,
    consistency_bonus,
    diversity_bonus,
    filter_outliers,
    member_weight,
    post_process,
)

__all__ = [
    'MemberFailure',
    'MemberOutput',
    'PredictorRegistry',
    'call_member',
    'validate_output',
    'EnsembleFusion',
    'EnsembleResult',
    'aggregate_members',
    'consistency_bonus',
    'diversity_bonus',
    'filter_outliers',
    'member_weight',
    'post_process',
]
