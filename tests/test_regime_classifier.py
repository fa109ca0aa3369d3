"""
Tests for the Market Regime Classifier
"""

import pytest

from regimex.config import RegimeConfig
from regimex.regime import MarketIndicators, MarketRegimeClassifier, calculate_sentiment, calculate_trend_consistency
from regimex.schemas import FeatureVector, RegimeLabel


@pytest.fixture
def classifier():
    return MarketRegimeClassifier()


class TestRegimeDecisionList:
    """Test the ordered regime decision list."""

    def test_oversold_decline_is_bearish(self, classifier, oversold_decline):
        """Falling trend with RSI below 50 is caught by the bear check first."""
        result = classifier.classify(oversold_decline)
        assert result.label in (RegimeLabel.WEAK_BEAR, RegimeLabel.EXTREME_BEAR)
        assert result.label == RegimeLabel.WEAK_BEAR
        assert result.decision_path == 'bear_trend'

    def test_strong_bear(self, classifier):
        """Deep trend, weak RSI and negative momentum give a strong bear."""
        result = classifier.classify({'trend_20': -0.06, 'rsi_14': 35, 'momentum_10': -0.05, 'volatility_20': 0.03})
        assert result.label == RegimeLabel.STRONG_BEAR
        assert result.confidence >= 0.6

    def test_strong_bull(self, classifier, strong_bull_features):
        """All bull conditions plus a high composite score give a strong bull."""
        result = classifier.classify(strong_bull_features)
        assert result.label == RegimeLabel.STRONG_BULL
        assert result.score > 0.7
        assert result.decision_path == 'bull_trend'

    def test_bull_needs_volume(self, classifier, strong_bull_features):
        """Without volume expansion the bull rule falls through to the fallback."""
        features = dict(strong_bull_features, volume_ratio=1.0)
        result = classifier.classify(features)
        assert result.label == RegimeLabel.WEAK_BULL
        assert result.decision_path == 'fallback'

    def test_quiet_exhaustion_label(self, classifier):
        """Dormant market at an RSI extreme gets the extreme_bear label."""
        for rsi in (20, 80):
            result = classifier.classify({'volatility_20': 0.002, 'trend_20': 0.001, 'rsi_14': rsi})
            assert result.label == RegimeLabel.EXTREME_BEAR
            assert result.decision_path == 'quiet_exhaustion'

    def test_empty_snapshot_is_sideways(self, classifier):
        """Absent indicators fall back to neutral values."""
        result = classifier.classify({})
        assert result.label == RegimeLabel.SIDEWAYS
        assert result.decision_path == 'low_score'

    def test_bear_checked_before_bull(self, classifier):
        """A bearish trend wins even when volume and volatility look bullish."""
        result = classifier.classify({
            'trend_20': -0.03, 'rsi_14': 45, 'momentum_10': 0.05,
            'volume_ratio': 3.0, 'volatility_20': 0.05,
        })
        assert result.label.is_bear

    def test_deterministic(self, classifier, strong_bull_features):
        """Same snapshot, same classification."""
        assert classifier.classify(strong_bull_features).to_dict() == classifier.classify(strong_bull_features).to_dict()

    def test_bounds(self, classifier, oversold_decline, strong_bull_features):
        """Score and confidence stay within [0, 1]."""
        for features in (oversold_decline, strong_bull_features, {'volatility_20': 5.0, 'volume_ratio': 50.0}):
            result = classifier.classify(features)
            assert 0.0 <= result.score <= 1.0
            assert 0.0 <= result.confidence <= 1.0


class TestIndicators:
    """Test indicator extraction and derived readings."""

    def test_missing_indicators_tracked(self, classifier):
        """Absent indicators are recorded and defaulted."""
        indicators = classifier.collect_indicators(FeatureVector(rsi_14=60))
        assert indicators.rsi == 60
        assert 'volatility_20' in indicators.missing
        assert indicators.volume_ratio == 1.0

    def test_sentiment(self):
        """Overbought RSI, strong momentum and upper band add up."""
        indicators = MarketIndicators(rsi=75, momentum=0.06, bollinger_position=0.6)
        assert calculate_sentiment(indicators) == pytest.approx(0.6)
        assert calculate_sentiment(MarketIndicators()) == 0.0

    def test_trend_consistency(self):
        """RSI and momentum agreeing with the trend score +1."""
        agree = MarketIndicators(trend_direction=0.03, rsi=65, momentum=0.02)
        oppose = MarketIndicators(trend_direction=0.03, rsi=35, momentum=-0.02)
        assert calculate_trend_consistency(agree) == pytest.approx(1.0)
        assert calculate_trend_consistency(oppose) == pytest.approx(-1.0)
        assert calculate_trend_consistency(MarketIndicators()) == 0.0

    def test_sentiment_reported(self, classifier, strong_bull_features):
        """Classification exposes sentiment for the sizing stage."""
        result = classifier.classify(strong_bull_features)
        assert 'sentiment' in result.indicators


class TestRegimeConfig:
    """Test configuration handling."""

    def test_weights_normalised(self):
        """Weights not summing to 1 are normalised."""
        config = RegimeConfig(trend_weight=0.8, volatility_weight=0.5, rsi_weight=0.3,
                              momentum_weight=0.2, volume_weight=0.2)
        total = (config.trend_weight + config.volatility_weight + config.rsi_weight
                 + config.momentum_weight + config.volume_weight)
        assert total == pytest.approx(1.0)

    def test_label_parsing(self):
        """Labels parse case-insensitively."""
        assert RegimeLabel.parse('Strong_Bull') == RegimeLabel.STRONG_BULL
        assert RegimeLabel.STRONG_BULL.is_bull and not RegimeLabel.STRONG_BULL.is_bear
        assert RegimeLabel.EXTREME_BEAR.is_bear
        assert not RegimeLabel.SIDEWAYS.is_bull and not RegimeLabel.SIDEWAYS.is_bear
