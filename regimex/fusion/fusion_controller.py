"""
Fusion Controller

Combines the rule engine's action with the ensemble prediction into one
action and confidence.

Flow:
    base split (0.7 / 0.3, adjusted for weak ensembles and confident rules)
    -> ordered weight chain over {ml, rule}
       quality, regime, confidence gap, decision consistency,
       historical accuracy, trend confirmation, market state
    -> normalise -> regime ML ceiling
    -> combined score -> regime/position thresholds -> action
    -> position invariants (never sell or cover while flat)

Without an ensemble prediction the rule action passes through unchanged
(rule-only mode); the position invariants still apply.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import logging

import numpy as np

from regimex.adjustments import AdjustmentRule, apply_rules
from regimex.config import FusionConfig, RuleEngineConfig
from regimex.fusion.trend_confirmation import TrendConfirmation, trend_from_features, trend_weight_factors
from regimex.rule_engine.thresholds import resolve_action, resolve_thresholds
from regimex.schemas import (
    EnsemblePrediction,
    FeatureVector,
    FusionDecision,
    PerformanceHistory,
    PositionState,
    RegimeLabel,
    TradeAction,
    as_feature_vector,
)

LOG = logging.getLogger(__name__)

EXCELLENT = 'excellent'
POOR = 'poor'
NORMAL = 'normal'


class ConsistencyLevel(str, Enum):
    """Agreement between the ensemble and the rule engine"""
    VERY_HIGH = "very_high"
    HIGH = "high"
    MEDIUM = "medium"
    MILD_CONFLICT = "mild_conflict"
    MEDIUM_CONFLICT = "medium_conflict"
    SEVERE_CONFLICT = "severe_conflict"

    @property
    def is_agreement(self) -> bool:
        return self in (ConsistencyLevel.VERY_HIGH, ConsistencyLevel.HIGH)

    @property
    def is_conflict(self) -> bool:
        return self in (
            ConsistencyLevel.MILD_CONFLICT,
            ConsistencyLevel.MEDIUM_CONFLICT,
            ConsistencyLevel.SEVERE_CONFLICT,
        )


@dataclass(frozen=True)
class DecisionConsistency:
    ml_action: TradeAction
    action_match: float
    confidence_similarity: float
    score: float
    level: ConsistencyLevel

    def to_dict(self) -> dict:
        return {
            'ml_action': self.ml_action.value,
            'action_match': self.action_match,
            'confidence_similarity': self.confidence_similarity,
            'score': self.score,
            'level': self.level.value,
        }


def symbol_class(history: PerformanceHistory) -> str:
    """excellent / poor / normal from realised performance"""
    if history.win_rate >= 0.8 and history.total_pnl > 0 and history.total_trades >= 1:
        return EXCELLENT
    if history.win_rate < 0.3 and history.total_trades >= 2:
        return POOR
    return NORMAL


def ml_action(score: float, threshold: float = 0.2) -> TradeAction:
    if score > threshold:
        return TradeAction.BUY
    if score < -threshold:
        return TradeAction.SELL
    return TradeAction.HOLD


def _action_match(ml: TradeAction, rule: TradeAction) -> float:
    if ml == rule:
        return 1.0
    if ml == TradeAction.HOLD or rule == TradeAction.HOLD:
        return 0.5
    # Opening a short agrees in direction with a sell call, covering with a buy call
    if (ml, rule) in ((TradeAction.SELL, TradeAction.SHORT), (TradeAction.BUY, TradeAction.COVER)):
        return 0.5
    return 0.0


def _consistency_level(score: float) -> ConsistencyLevel:
    if score > 0.85:
        return ConsistencyLevel.VERY_HIGH
    if score > 0.7:
        return ConsistencyLevel.HIGH
    if score > 0.55:
        return ConsistencyLevel.MEDIUM
    if score > 0.4:
        return ConsistencyLevel.MILD_CONFLICT
    if score > 0.25:
        return ConsistencyLevel.MEDIUM_CONFLICT
    return ConsistencyLevel.SEVERE_CONFLICT


def analyze_decision_consistency(
    ensemble: EnsemblePrediction,
    rule_action: TradeAction,
    rule_confidence: float,
    history: PerformanceHistory = None,
    ml_action_threshold: float = 0.2,
) -> DecisionConsistency:
    """
    Score how well the ensemble and the rules agree.

    score = 0.7 * action match + 0.3 * confidence similarity. Excellent
    symbols get a stricter reading of "high", poor symbols a more lenient
    reading of "mild conflict".
    """
    history = history or PerformanceHistory.neutral()
    rule_action = TradeAction(rule_action)
    ml = ml_action(ensemble.score, ml_action_threshold)

    match = _action_match(ml, rule_action)
    similarity = max(0.0, 1.0 - abs(ensemble.confidence - rule_confidence))
    score = match * 0.7 + similarity * 0.3
    level = _consistency_level(score)

    cls = symbol_class(history)
    if cls == EXCELLENT and score > 0.75 and level == ConsistencyLevel.HIGH:
        level = ConsistencyLevel.VERY_HIGH
    elif cls == POOR and score > 0.5 and level == ConsistencyLevel.MILD_CONFLICT:
        level = ConsistencyLevel.MEDIUM

    return DecisionConsistency(ml, match, similarity, score, level)


def action_to_score(action: TradeAction, magnitude: float = 0.8) -> float:
    """Directional score implied by a discrete action"""
    action = TradeAction(action)
    if action in (TradeAction.BUY, TradeAction.COVER):
        return magnitude
    if action in (TradeAction.SELL, TradeAction.SHORT):
        return -magnitude
    return 0.0


def enforce_position_invariants(action: TradeAction, position: PositionState) -> Tuple[TradeAction, Optional[str]]:
    """
    Downgrade actions that make no sense for the current position.

    Returns:
        (action, reason) where reason is None when nothing changed
    """
    action = TradeAction(action)
    if not position.has_position and action in (TradeAction.SELL, TradeAction.COVER):
        return TradeAction.HOLD, f"{action.value} while flat"
    if position.is_long and action == TradeAction.COVER:
        return TradeAction.HOLD, "cover while long"
    if position.is_short and action == TradeAction.SELL:
        return TradeAction.HOLD, "sell while short"
    return action, None


@dataclass(frozen=True)
class FusionContext:
    """Everything the weight chain may look at"""
    ensemble: EnsemblePrediction
    rule_action: TradeAction
    rule_confidence: float
    regime: RegimeLabel
    position: PositionState
    history: PerformanceHistory
    features: FeatureVector
    trend: Optional[TrendConfirmation]
    consistency: DecisionConsistency
    symbol_class: str = NORMAL


def _agreement_factors(ctx: FusionContext) -> Dict[str, float]:
    boost = ctx.consistency.score * 0.4
    if ctx.symbol_class == EXCELLENT:
        boost *= 1.2
    return {'ml': 1.0 + boost, 'rule': 1.0 + boost}


def _medium_factors(ctx: FusionContext) -> Dict[str, float]:
    boost = ctx.consistency.score * 0.2
    if ctx.symbol_class == POOR:
        boost *= 0.5
    return {'ml': 1.0 + boost, 'rule': 1.0 + boost}


def _conflict_factors(ctx: FusionContext) -> Dict[str, float]:
    """Side with whichever source is clearly stronger; how clearly depends on the symbol"""
    ml_strength = ctx.ensemble.confidence * ctx.ensemble.quality
    rule_conf = ctx.rule_confidence

    if ctx.symbol_class == EXCELLENT:
        if ml_strength > rule_conf + 0.1 and ctx.ensemble.quality > 0.8:
            return {'rule': 0.4}
        if rule_conf > ml_strength + 0.1:
            return {'ml': 0.4}
        return {'ml': 0.7, 'rule': 0.7}

    if ctx.symbol_class == POOR:
        if rule_conf > ml_strength:
            return {'ml': 0.5}
        return {'rule': 0.7}

    if ml_strength > rule_conf + 0.15:
        return {'rule': 0.6}
    if rule_conf > ml_strength + 0.15:
        return {'ml': 0.6}
    return {'ml': 0.9, 'rule': 1.1}


def _ml_accuracy_decisive(ctx: FusionContext) -> bool:
    accuracy = ctx.history.ml_accuracy
    return accuracy is not None and (accuracy > 0.6 or accuracy < 0.4)


def _rule_accuracy(ctx: FusionContext, above: float = None, below: float = None) -> bool:
    accuracy = ctx.history.rule_accuracy
    if accuracy is None or _ml_accuracy_decisive(ctx):
        return False
    if above is not None:
        return accuracy > above
    return accuracy < below


def _feature_above(name: str, threshold: float):
    def predicate(ctx: FusionContext) -> bool:
        value = ctx.features.get(name)
        return value is not None and value > threshold
    return predicate


_NAMED_REGIMES = (RegimeLabel.STRONG_BULL, RegimeLabel.STRONG_BEAR, RegimeLabel.SIDEWAYS)

QUALITY_RULES = [
    AdjustmentRule('high_ensemble_quality', lambda ctx: ctx.ensemble.quality > 0.95, {'ml': 1.1},
                   "only near-perfect predictor health earns extra weight"),
    AdjustmentRule('low_ensemble_quality', lambda ctx: ctx.ensemble.quality < 0.7, {'ml': 0.5, 'rule': 1.3},
                   "degraded ensemble"),
]

REGIME_RULES = [
    AdjustmentRule('strong_bull_regime', lambda ctx: ctx.regime == RegimeLabel.STRONG_BULL, {'rule': 1.1},
                   "rules stay ahead even in strong bull markets"),
    AdjustmentRule('strong_bear_regime', lambda ctx: ctx.regime == RegimeLabel.STRONG_BEAR, {'rule': 1.3},
                   "bear markets favour the rules"),
    AdjustmentRule('sideways_regime', lambda ctx: ctx.regime == RegimeLabel.SIDEWAYS, {'rule': 1.2},
                   "range-bound markets favour the rules"),
    AdjustmentRule('other_regime', lambda ctx: ctx.regime not in _NAMED_REGIMES, {'rule': 1.15}),
]

CONFIDENCE_GAP_RULES = [
    AdjustmentRule('ml_more_confident',
                   lambda ctx: ctx.ensemble.confidence - ctx.rule_confidence > 0.4, {'ml': 1.05}),
    AdjustmentRule('rule_more_confident',
                   lambda ctx: ctx.rule_confidence - ctx.ensemble.confidence > 0.4, {'rule': 1.2}),
]

CONSISTENCY_RULES = [
    AdjustmentRule('decision_agreement', lambda ctx: ctx.consistency.level.is_agreement, _agreement_factors,
                   "both sources agree"),
    AdjustmentRule('decision_conflict', lambda ctx: ctx.consistency.level.is_conflict, _conflict_factors,
                   "sources disagree, back the stronger one"),
    AdjustmentRule('decision_partial_agreement',
                   lambda ctx: ctx.consistency.level == ConsistencyLevel.MEDIUM, _medium_factors),
]

HISTORY_RULES = [
    AdjustmentRule('accurate_ml',
                   lambda ctx: ctx.history.ml_accuracy is not None and ctx.history.ml_accuracy > 0.6,
                   {'ml': 1.2, 'rule': 0.9}, "ensemble has been right recently"),
    AdjustmentRule('inaccurate_ml',
                   lambda ctx: ctx.history.ml_accuracy is not None and ctx.history.ml_accuracy < 0.4,
                   {'ml': 0.8, 'rule': 1.1}),
    AdjustmentRule('accurate_rules', lambda ctx: _rule_accuracy(ctx, above=0.6), {'ml': 0.9, 'rule': 1.2}),
    AdjustmentRule('inaccurate_rules', lambda ctx: _rule_accuracy(ctx, below=0.4), {'ml': 1.1, 'rule': 0.8}),
    AdjustmentRule('poor_win_rate',
                   lambda ctx: ctx.history.total_trades >= 5 and ctx.history.win_rate < 0.4,
                   {'ml': 0.8, 'rule': 1.1}, "losing symbol"),
]

TREND_RULES = [
    AdjustmentRule('trend_confirmation', lambda ctx: ctx.trend is not None,
                   lambda ctx: trend_weight_factors(ctx.trend),
                   "confirmed uptrends favour the ensemble, downtrends the rules"),
]

MARKET_STATE_RULES = [
    AdjustmentRule('high_volatility', _feature_above('volatility_20', 0.05), {'ml': 0.85, 'rule': 1.15}),
    AdjustmentRule('strong_trend', _feature_above('trend_strength', 0.7), {'ml': 1.1, 'rule': 0.95}),
]

FUSION_WEIGHT_RULES = (
    QUALITY_RULES
    + REGIME_RULES
    + CONFIDENCE_GAP_RULES
    + CONSISTENCY_RULES
    + HISTORY_RULES
    + TREND_RULES
    + MARKET_STATE_RULES
)


class FusionController:
    """
    Rule/ensemble fusion.

    Stateless: every call is a pure function of its arguments and config.
    """

    def __init__(self, config: FusionConfig = None, rule_config: RuleEngineConfig = None,
                 rules: List[AdjustmentRule] = None):
        self.config = config or FusionConfig()
        self.rule_config = rule_config or RuleEngineConfig()
        self.rules = FUSION_WEIGHT_RULES if rules is None else rules

    def base_weights(self, ensemble: EnsemblePrediction, rule_confidence: float) -> Tuple[float, float, List[dict]]:
        """Starting ML / rule split before the chain"""
        cfg = self.config
        ml, rule = cfg.base_ml_weight, cfg.base_rule_weight
        trace = []

        if abs(ensemble.score) < cfg.weak_ensemble_score:
            ml, rule = cfg.weak_ensemble_ml_weight, cfg.weak_ensemble_rule_weight
            trace.append({'rule': 'weak_ensemble_signal', 'rationale': "ensemble close to hold",
                          'factors': {'ml': ml, 'rule': rule}})

        if rule_confidence >= cfg.confident_rule_threshold:
            # Never lowers a rule weight that is already above the cap
            rule = max(rule, min(rule + cfg.confident_rule_boost, cfg.confident_rule_cap))
            ml = 1.0 - rule
            trace.append({'rule': 'confident_rules', 'rationale': "high-confidence rule decision",
                          'factors': {'ml': ml, 'rule': rule}})

        return ml, rule, trace

    def ml_ceiling(self, regime: RegimeLabel) -> float:
        return self.config.ml_weight_ceiling.get(regime.value, 1.0)

    def _apply_ceiling(self, ml: float, rule: float, regime: RegimeLabel) -> Tuple[float, float]:
        total = ml + rule
        if total <= 0:
            ml, rule = 0.0, 1.0
        else:
            ml, rule = ml / total, rule / total
        ceiling = self.ml_ceiling(regime)
        if ml > ceiling:
            rule += ml - ceiling
            ml = ceiling
        return ml, rule

    def fuse(
        self,
        ensemble: Optional[EnsemblePrediction],
        rule_action: TradeAction,
        rule_confidence: float,
        regime: Any,
        position: PositionState = None,
        history: PerformanceHistory = None,
        features: Any = None,
        trend: Optional[TrendConfirmation] = None,
        rule_score: Optional[float] = None,
    ) -> FusionDecision:
        """
        Fuse one cycle's rule and ensemble outputs.

        Args:
            ensemble: Aggregated ensemble prediction, None when unavailable
            rule_action: Rule engine action
            rule_confidence: Rule engine confidence
            regime: Current RegimeLabel
            position: Current position (flat if None)
            history: Symbol performance (neutral if None)
            features: FeatureVector or mapping
            trend: Trend confirmation; derived from features when None
            rule_score: Rule engine score, reported as the combined score in rule-only mode

        Returns:
            FusionDecision

        Raises:
            UnknownRegimeError: regime has no threshold policy
        """
        regime = RegimeLabel.parse(regime)
        position = position or PositionState.flat()
        history = history or PerformanceHistory.neutral()
        fv = as_feature_vector(features)
        rule_action = TradeAction(rule_action)
        rule_confidence = float(np.clip(rule_confidence, 0.0, 1.0))

        thresholds, _ = resolve_thresholds(regime, fv, position, self.rule_config)

        if ensemble is None:
            return self._rule_only(rule_action, rule_confidence, rule_score, thresholds.to_dict(), position)

        if trend is None:
            trend = trend_from_features(fv)

        consistency = analyze_decision_consistency(
            ensemble, rule_action, rule_confidence, history, self.config.ml_action_threshold
        )
        context = FusionContext(
            ensemble=ensemble,
            rule_action=rule_action,
            rule_confidence=rule_confidence,
            regime=regime,
            position=position,
            history=history,
            features=fv,
            trend=trend,
            consistency=consistency,
            symbol_class=symbol_class(history),
        )

        ml, rule, base_trace = self.base_weights(ensemble, rule_confidence)
        chain = apply_rules({'ml': ml, 'rule': rule}, self.rules, context, clamp=lambda w: max(w, 0.0))
        ml, rule = self._apply_ceiling(chain.values['ml'], chain.values['rule'], regime)

        # Ensemble health scales its say in the combined score
        ml, rule = self._apply_ceiling(ml * (0.8 + 0.4 * ensemble.quality), rule, regime)

        combined = float(ensemble.score * ml + action_to_score(rule_action, self.config.rule_action_score) * rule)
        action = resolve_action(combined, thresholds, position)

        confidence = (ensemble.confidence * ml + rule_confidence * rule) * (0.8 + 0.4 * abs(combined))
        confidence = float(np.clip(confidence, 0.0, 1.0))

        adjustments = base_trace + chain.trace
        action, reason = enforce_position_invariants(action, position)
        if reason:
            LOG.warning(f"Fusion produced {reason}, downgraded to hold")
            adjustments.append({'rule': 'position_invariant', 'rationale': reason, 'factors': {}})

        LOG.debug(
            f"Fusion {regime.value}: ml={ensemble.score:.3f}@{ml:.3f} rule={rule_action.value}@{rule:.3f} "
            f"consistency={consistency.level.value}({consistency.score:.2f}) "
            f"-> {combined:.4f} {action.value} conf={confidence:.3f}"
        )

        return FusionDecision(
            action=action,
            confidence=confidence,
            combined_score=combined,
            ml_weight=ml,
            rule_weight=rule,
            thresholds=thresholds.to_dict(),
            adjustments=adjustments,
            source='fusion',
        )

    @staticmethod
    def _rule_only(
        rule_action: TradeAction,
        rule_confidence: float,
        rule_score: Optional[float],
        thresholds: Dict[str, Optional[float]],
        position: PositionState,
    ) -> FusionDecision:
        adjustments: List[dict] = []
        action, reason = enforce_position_invariants(rule_action, position)
        if reason:
            LOG.warning(f"Rule-only decision {reason}, downgraded to hold")
            adjustments.append({'rule': 'position_invariant', 'rationale': reason, 'factors': {}})

        LOG.debug(f"No ensemble available, rule-only decision {action.value} conf={rule_confidence:.3f}")
        return FusionDecision(
            action=action,
            confidence=rule_confidence,
            combined_score=float(rule_score) if rule_score is not None else 0.0,
            ml_weight=0.0,
            rule_weight=1.0,
            thresholds=thresholds,
            adjustments=adjustments,
            source='rule_only',
        )
