"""
Rule-Based Signal Engine

Scores a feature snapshot with adaptive weights and maps it to an action.

Flow:
    features -> adaptive weights -> weighted sum (present features only)
             -> x market-timing filter x signal consistency
             -> clamp [-1, 1] -> thresholds -> action
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import logging

import numpy as np

from regimex.config import RuleEngineConfig
from regimex.rule_engine.feature_weights import compute_feature_weights
from regimex.rule_engine.signal_gates import ConsistencyResult, market_timing_filter, signal_consistency
from regimex.rule_engine.thresholds import ThresholdSet, resolve_action, resolve_thresholds
from regimex.schemas import (
    PerformanceHistory,
    PositionState,
    RegimeLabel,
    SignalPrediction,
    TradeAction,
    as_feature_vector,
)

LOG = logging.getLogger(__name__)


@dataclass
class RuleSignal:
    """Rule engine output for one cycle"""
    action: TradeAction
    prediction: SignalPrediction
    raw_score: float = 0.0
    timing_factor: float = 1.0
    consistency: Optional[ConsistencyResult] = None
    thresholds: Optional[ThresholdSet] = None
    weights: Dict[str, float] = field(default_factory=dict)
    trace: List[dict] = field(default_factory=list)
    factors_used: List[str] = field(default_factory=list)

    @property
    def score(self) -> float:
        return self.prediction.score

    @property
    def confidence(self) -> float:
        return self.prediction.confidence

    def to_dict(self) -> dict:
        return {
            'action': self.action.value,
            'score': self.prediction.score,
            'confidence': self.prediction.confidence,
            'raw_score': self.raw_score,
            'timing_factor': self.timing_factor,
            'consistency': self.consistency.to_dict() if self.consistency else None,
            'thresholds': self.thresholds.to_dict() if self.thresholds else None,
            'factors_used': list(self.factors_used),
            'trace': list(self.trace),
        }


class RuleSignalEngine:
    """
    Weighted-indicator signal engine.

    Missing features are skipped, never scored as zero. With fewer than
    `min_factors` usable features the engine abstains (hold, confidence 0).
    """

    def __init__(self, config: RuleEngineConfig = None):
        self.config = config or RuleEngineConfig()

    def score(
        self,
        features: Any,
        regime: Any,
        position: PositionState = None,
        history: PerformanceHistory = None,
    ) -> RuleSignal:
        """
        Score one snapshot.

        Args:
            features: FeatureVector or mapping
            regime: RegimeLabel (or its string value)
            position: Current position (flat if None)
            history: Symbol performance (neutral if None)

        Returns:
            RuleSignal

        Raises:
            UnknownRegimeError: regime has no threshold policy
        """
        fv = as_feature_vector(features)
        position = position or PositionState.flat()
        history = history or PerformanceHistory.neutral()
        regime = RegimeLabel.parse(regime)

        thresholds, threshold_trace = resolve_thresholds(regime, fv, position, self.config)

        weight_result = compute_feature_weights(fv, position, history, self.config)
        weights = weight_result.values

        # Weighted sum over present features only
        factors_used = [name for name in weights if fv.has(name)]
        if len(factors_used) < self.config.min_factors:
            LOG.debug(f"Rule engine abstains: {len(factors_used)} factors < {self.config.min_factors}")
            return RuleSignal(
                action=TradeAction.HOLD,
                prediction=SignalPrediction(0.0, 0.0),
                thresholds=thresholds,
                weights=weights,
                trace=weight_result.trace + threshold_trace,
                factors_used=factors_used,
            )

        raw_score = float(sum(fv.get(name) * weights[name] for name in factors_used))

        timing_factor, timing_trace = market_timing_filter(fv, position)
        consistency = signal_consistency(fv, self.config)

        score = float(np.clip(raw_score * timing_factor * consistency.ratio, -1.0, 1.0))
        confidence = min(abs(score) * self.config.confidence_scale, self.config.confidence_cap)

        action = resolve_action(score, thresholds, position)

        LOG.debug(
            f"Rule score raw={raw_score:.4f} timing={timing_factor:.2f} consistency={consistency.ratio:.2f} "
            f"-> {score:.4f} ({action.value}, conf={confidence:.2f}, regime={regime.value})"
        )

        return RuleSignal(
            action=action,
            prediction=SignalPrediction(score, confidence),
            raw_score=raw_score,
            timing_factor=timing_factor,
            consistency=consistency,
            thresholds=thresholds,
            weights=weights,
            trace=weight_result.trace + timing_trace + threshold_trace,
            factors_used=factors_used,
        )
