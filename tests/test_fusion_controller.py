"""
Tests for the Fusion Controller and trend confirmation.
"""

import numpy as np
import pandas as pd
import pytest

from regimex.config import FusionConfig
from regimex.exceptions import UnknownRegimeError
from regimex.fusion import (
    NEUTRAL_TREND,
    ConsistencyLevel,
    FusionController,
    TrendConfirmation,
    action_to_score,
    analyze_decision_consistency,
    analyze_trend_confirmation,
    enforce_position_invariants,
    symbol_class,
    trend_from_features,
    trend_weight_factors,
)
from regimex.schemas import EnsemblePrediction, FeatureVector, PerformanceHistory, PositionState, RegimeLabel, TradeAction

BEAR_REGIMES = (RegimeLabel.EXTREME_BEAR, RegimeLabel.WEAK_BEAR, RegimeLabel.STRONG_BEAR)


@pytest.fixture
def controller():
    return FusionController()


@pytest.fixture
def flat():
    return PositionState.flat(100.0)


@pytest.fixture
def bullish_ensemble():
    return EnsemblePrediction(score=0.8, confidence=0.9, quality=0.9, member_count=4)


@pytest.fixture
def excellent_history():
    return PerformanceHistory(win_rate=0.9, total_trades=10, total_pnl=0.1)


@pytest.fixture
def poor_history():
    return PerformanceHistory(win_rate=0.2, total_trades=5, total_pnl=-0.05)


class TestRuleOnlyMode:
    """Test fusion without an ensemble prediction."""

    def test_rule_action_passes_through(self, controller, flat):
        """The rule action and confidence are used as-is."""
        decision = controller.fuse(None, TradeAction.BUY, 0.7, RegimeLabel.WEAK_BULL, flat, rule_score=0.45)
        assert decision.action == TradeAction.BUY
        assert decision.confidence == pytest.approx(0.7)
        assert decision.source == 'rule_only'
        assert decision.ml_weight == 0.0
        assert decision.rule_weight == 1.0
        assert decision.combined_score == pytest.approx(0.45)

    def test_sell_while_flat_downgraded(self, controller, flat):
        """The position invariant applies in rule-only mode too."""
        decision = controller.fuse(None, TradeAction.SELL, 0.9, RegimeLabel.WEAK_BEAR, flat)
        assert decision.action == TradeAction.HOLD
        assert decision.adjustments[-1]['rule'] == 'position_invariant'


class TestFusionWeights:
    """Test the weight chain."""

    def test_base_weights(self, controller, bullish_ensemble):
        """Weak ensembles hand weight to rules; confident rules get a capped boost."""
        weak = EnsemblePrediction(score=0.05, confidence=0.9, quality=0.9)
        ml, rule, _ = controller.base_weights(weak, 0.5)
        assert (ml, rule) == (pytest.approx(0.2), pytest.approx(0.8))

        ml, rule, _ = controller.base_weights(bullish_ensemble, 0.9)
        assert (ml, rule) == (pytest.approx(0.5), pytest.approx(0.5))

        ml, rule, _ = controller.base_weights(weak, 0.9)
        assert rule == pytest.approx(0.8)

    def test_confident_rule_boost_capped(self, bullish_ensemble):
        """The boost stops at the cap and never lowers a rule weight above it."""
        partial = FusionController(FusionConfig(base_ml_weight=0.45, base_rule_weight=0.55))
        ml, rule, trace = partial.base_weights(bullish_ensemble, 0.9)
        assert rule == pytest.approx(0.7)
        assert ml == pytest.approx(0.3)
        assert trace[-1]['rule'] == 'confident_rules'

        heavy = FusionController(FusionConfig(base_ml_weight=0.1, base_rule_weight=0.9))
        ml, rule, _ = heavy.base_weights(bullish_ensemble, 0.9)
        assert rule == pytest.approx(0.9)
        assert ml == pytest.approx(0.1)

    def test_boost_needs_confident_rules(self, controller, bullish_ensemble):
        ml, rule, trace = controller.base_weights(bullish_ensemble, 0.84)
        assert (ml, rule) == (pytest.approx(0.7), pytest.approx(0.3))
        assert trace == []

    def test_weights_normalised(self, controller, flat):
        """ML and rule weights always sum to 1."""
        for regime in RegimeLabel:
            for score in (-0.9, -0.3, 0.0, 0.4, 0.9):
                ensemble = EnsemblePrediction(score=score, confidence=0.8, quality=0.75)
                decision = controller.fuse(ensemble, TradeAction.BUY, 0.6, regime, flat)
                assert decision.ml_weight + decision.rule_weight == pytest.approx(1.0)
                assert decision.ml_weight >= 0 and decision.rule_weight >= 0

    @pytest.mark.parametrize('regime', BEAR_REGIMES)
    def test_bear_ml_ceiling(self, controller, flat, regime):
        """A dominant ensemble is capped at 40% in bear regimes."""
        ensemble = EnsemblePrediction(score=-0.9, confidence=0.99, quality=0.99)
        decision = controller.fuse(ensemble, TradeAction.HOLD, 0.05, regime, flat)
        assert decision.ml_weight <= 0.4 + 1e-9

    def test_low_quality_cuts_ml(self, controller, flat):
        """Degraded ensembles lose weight."""
        healthy = EnsemblePrediction(score=0.5, confidence=0.8, quality=0.9)
        degraded = EnsemblePrediction(score=0.5, confidence=0.8, quality=0.5)
        good = controller.fuse(healthy, TradeAction.BUY, 0.8, RegimeLabel.WEAK_BULL, flat)
        bad = controller.fuse(degraded, TradeAction.BUY, 0.8, RegimeLabel.WEAK_BULL, flat)
        assert bad.ml_weight < good.ml_weight

    def test_bear_trend_favours_rules(self, controller, flat, bullish_ensemble):
        """A confirmed downtrend shifts weight toward the rules."""
        bear = TrendConfirmation('bear', 0.8, 0.9, 0.9)
        without = controller.fuse(bullish_ensemble, TradeAction.HOLD, 0.5, RegimeLabel.WEAK_BULL, flat)
        with_trend = controller.fuse(bullish_ensemble, TradeAction.HOLD, 0.5, RegimeLabel.WEAK_BULL, flat,
                                     trend=bear)
        assert with_trend.rule_weight > without.rule_weight
        assert any(a['rule'] == 'trend_confirmation' for a in with_trend.adjustments)

    def test_poor_history_favours_rules(self, controller, flat, bullish_ensemble, poor_history):
        """Losing symbols lean on the rules."""
        neutral = controller.fuse(bullish_ensemble, TradeAction.BUY, 0.6, RegimeLabel.WEAK_BULL, flat)
        poor = controller.fuse(bullish_ensemble, TradeAction.BUY, 0.6, RegimeLabel.WEAK_BULL, flat, poor_history)
        assert poor.ml_weight < neutral.ml_weight


class TestFusionDecision:
    """Test action resolution and invariants."""

    def test_agreement_buys(self, controller, flat, bullish_ensemble):
        """Ensemble and rules agreeing on a buy in a strong bull market buy."""
        decision = controller.fuse(bullish_ensemble, TradeAction.BUY, 0.9, RegimeLabel.STRONG_BULL, flat)
        assert decision.action == TradeAction.BUY
        assert decision.combined_score == pytest.approx(0.8)
        assert 0.0 < decision.confidence <= 1.0
        assert decision.source == 'fusion'

    def test_flat_never_sells_or_covers(self, controller, flat):
        """No combination emits sell or cover while flat."""
        for regime in RegimeLabel:
            for rule_action in TradeAction:
                for score in np.linspace(-1, 1, 9):
                    ensemble = EnsemblePrediction(score=score, confidence=0.9, quality=0.9)
                    decision = controller.fuse(ensemble, rule_action, 0.9, regime, flat)
                    assert decision.action not in (TradeAction.SELL, TradeAction.COVER)

    def test_short_never_sells(self, controller):
        """Short positions cover instead of selling."""
        short = PositionState.short(100.0, 99.0)
        for score in np.linspace(-1, 1, 9):
            ensemble = EnsemblePrediction(score=score, confidence=0.9, quality=0.9)
            decision = controller.fuse(ensemble, TradeAction.SELL, 0.9, RegimeLabel.WEAK_BEAR, short)
            assert decision.action != TradeAction.SELL

    def test_deterministic(self, controller, flat, bullish_ensemble):
        first = controller.fuse(bullish_ensemble, TradeAction.SELL, 0.4, RegimeLabel.SIDEWAYS, flat)
        second = controller.fuse(bullish_ensemble, TradeAction.SELL, 0.4, RegimeLabel.SIDEWAYS, flat)
        assert first.to_dict() == second.to_dict()

    def test_unknown_regime(self, controller, flat, bullish_ensemble):
        with pytest.raises(UnknownRegimeError):
            controller.fuse(bullish_ensemble, TradeAction.BUY, 0.5, 'euphoria', flat)

    def test_enforce_position_invariants(self, flat):
        """Exit actions without the matching exposure become hold."""
        long = PositionState.long(100.0, 101.0)
        short = PositionState.short(100.0, 99.0)
        assert enforce_position_invariants(TradeAction.SELL, flat)[0] == TradeAction.HOLD
        assert enforce_position_invariants(TradeAction.COVER, flat)[0] == TradeAction.HOLD
        assert enforce_position_invariants(TradeAction.COVER, long)[0] == TradeAction.HOLD
        assert enforce_position_invariants(TradeAction.SELL, short)[0] == TradeAction.HOLD
        assert enforce_position_invariants(TradeAction.SELL, long) == (TradeAction.SELL, None)

    def test_action_to_score(self):
        assert action_to_score(TradeAction.BUY) == pytest.approx(0.8)
        assert action_to_score(TradeAction.SHORT) == pytest.approx(-0.8)
        assert action_to_score(TradeAction.HOLD) == 0.0


class TestDecisionConsistency:
    """Test ensemble/rule agreement levels."""

    def test_full_agreement(self):
        ensemble = EnsemblePrediction(score=0.5, confidence=0.8, quality=0.9)
        result = analyze_decision_consistency(ensemble, TradeAction.BUY, 0.8)
        assert result.score == pytest.approx(1.0)
        assert result.level == ConsistencyLevel.VERY_HIGH

    def test_opposite_directions(self):
        ensemble = EnsemblePrediction(score=-0.5, confidence=0.8, quality=0.9)
        result = analyze_decision_consistency(ensemble, TradeAction.BUY, 0.8)
        assert result.score == pytest.approx(0.3)
        assert result.level == ConsistencyLevel.MEDIUM_CONFLICT

    def test_excellent_symbol_upgrade(self, excellent_history):
        """Excellent symbols read a strong 'high' as 'very high'."""
        ensemble = EnsemblePrediction(score=0.5, confidence=0.9, quality=0.9)
        normal = analyze_decision_consistency(ensemble, TradeAction.BUY, 0.1)
        upgraded = analyze_decision_consistency(ensemble, TradeAction.BUY, 0.1, excellent_history)
        assert normal.level == ConsistencyLevel.HIGH
        assert upgraded.level == ConsistencyLevel.VERY_HIGH

    def test_poor_symbol_upgrade(self, poor_history):
        """Poor symbols read a mild conflict as medium agreement."""
        ensemble = EnsemblePrediction(score=0.0, confidence=0.5, quality=0.9)
        normal = analyze_decision_consistency(ensemble, TradeAction.BUY, 0.9)
        upgraded = analyze_decision_consistency(ensemble, TradeAction.BUY, 0.9, poor_history)
        assert normal.level == ConsistencyLevel.MILD_CONFLICT
        assert upgraded.level == ConsistencyLevel.MEDIUM

    def test_symbol_class(self, excellent_history, poor_history):
        assert symbol_class(excellent_history) == 'excellent'
        assert symbol_class(poor_history) == 'poor'
        assert symbol_class(PerformanceHistory.neutral()) == 'normal'


class TestTrendConfirmation:
    """Test multi-timeframe trend confirmation."""

    def test_rising_prices(self):
        prices = pd.Series(100 * 1.01 ** np.arange(30))
        trend = analyze_trend_confirmation(prices)
        assert trend.direction == 'bull'
        assert trend.strength == pytest.approx(1.0)
        assert trend.confirmation > 0.7

    def test_falling_prices(self):
        prices = 100 * 0.99 ** np.arange(30)
        trend = analyze_trend_confirmation(list(prices))
        assert trend.direction == 'bear'

    def test_short_history_neutral(self):
        assert analyze_trend_confirmation([100, 101, 102]) == NEUTRAL_TREND

    def test_from_features(self):
        """Feature fallback needs trend_strength."""
        assert trend_from_features(FeatureVector()) is None
        trend = trend_from_features(FeatureVector(trend_strength=0.8, price_change_24h=-0.03))
        assert trend.direction == 'bear'
        assert trend.source == 'features'

    def test_weight_factors(self):
        """Confirmed bull favours ML, confirmed bear favours rules."""
        bull = trend_weight_factors(TrendConfirmation('bull', 1.0, 0.9, 0.9))
        bear = trend_weight_factors(TrendConfirmation('bear', 1.0, 0.9, 0.9))
        assert bull == {'ml': pytest.approx(1.5), 'rule': pytest.approx(0.9)}
        assert bear == {'ml': pytest.approx(0.8), 'rule': pytest.approx(1.5)}
