"""
Market Regime Classification

Labels the market as one of six regimes from a single feature snapshot.

Pipeline:
    FeatureVector -> collect_indicators -> calculate_regime_score
                  -> determine_regime (ordered decision list) -> confidence

The decision list checks bear conditions before bull conditions. That
asymmetry is deliberate policy: a falling market should never be read
as a quiet one.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple
import logging

import numpy as np

from regimex.config import RegimeConfig
from regimex.schemas import FeatureVector, RegimeClassification, RegimeLabel, as_feature_vector

LOG = logging.getLogger(__name__)

STRONG_REGIMES = (RegimeLabel.STRONG_BULL, RegimeLabel.STRONG_BEAR)
WEAK_REGIMES = (RegimeLabel.WEAK_BULL, RegimeLabel.WEAK_BEAR)


@dataclass
class MarketIndicators:
    """Regime-relevant indicators with neutral defaults for absent features"""
    volatility: float = 0.0
    trend_strength: float = 0.0
    trend_direction: float = 0.0
    rsi: float = 50.0
    momentum: float = 0.0
    volume_ratio: float = 1.0
    bollinger_position: float = 0.0
    macd_signal: float = 0.0
    sentiment: float = 0.0  # [-1, 1]
    trend_consistency: float = 0.0  # [-1, 1]
    missing: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, float]:
        return {
            'volatility': self.volatility,
            'trend_strength': self.trend_strength,
            'trend_direction': self.trend_direction,
            'rsi': self.rsi,
            'momentum': self.momentum,
            'volume_ratio': self.volume_ratio,
            'bollinger_position': self.bollinger_position,
            'macd_signal': self.macd_signal,
            'sentiment': self.sentiment,
            'trend_consistency': self.trend_consistency,
        }


def _direction(value: float, threshold: float) -> float:
    if value > threshold:
        return 1.0
    if value < -threshold:
        return -1.0
    return 0.0


def calculate_sentiment(indicators: MarketIndicators) -> float:
    """Oscillator-based sentiment in [-1, 1]"""
    sentiment = 0.0

    if indicators.rsi > 70:
        sentiment += 0.3
    elif indicators.rsi < 30:
        sentiment -= 0.3

    if indicators.momentum > 0.05:
        sentiment += 0.2
    elif indicators.momentum < -0.05:
        sentiment -= 0.2

    if indicators.bollinger_position > 0.5:
        sentiment += 0.1
    elif indicators.bollinger_position < -0.5:
        sentiment -= 0.1

    return float(np.clip(sentiment, -1.0, 1.0))


def calculate_trend_consistency(indicators: MarketIndicators) -> float:
    """
    Agreement of RSI and momentum direction with the trend direction.

    Each voting indicator adds +1 when it agrees with a non-flat trend and
    -1 when it opposes it. Returns the mean vote in [-1, 1], 0 if none vote.
    """
    trend_dir = _direction(indicators.trend_direction, 0.01)
    total = 0.0
    votes = 0

    rsi_dir = 1.0 if indicators.rsi > 60 else (-1.0 if indicators.rsi < 40 else 0.0)
    if rsi_dir != 0:
        if trend_dir == rsi_dir:
            total += 1.0
        elif trend_dir != 0:
            total -= 1.0
        votes += 1

    if indicators.momentum != 0:
        momentum_dir = 1.0 if indicators.momentum > 0 else -1.0
        if trend_dir == momentum_dir:
            total += 1.0
        elif trend_dir != 0:
            total -= 1.0
        votes += 1

    return total / votes if votes else 0.0


def collect_indicators(features: Any) -> MarketIndicators:
    """Extract indicators, falling back to neutral values for absent features"""
    fv = as_feature_vector(features)
    indicators = MarketIndicators()

    volatility = fv.get('volatility_20')
    if volatility is None:
        indicators.missing.append('volatility_20')
    else:
        indicators.volatility = max(0.0, volatility)

    trend = fv.get('trend_20')
    if trend is None:
        indicators.missing.append('trend_20')
    else:
        indicators.trend_strength = abs(trend)
        indicators.trend_direction = trend

    rsi = fv.get('rsi_14')
    if rsi is None:
        indicators.missing.append('rsi_14')
    else:
        indicators.rsi = float(np.clip(rsi, 0.0, 100.0))

    momentum = fv.get('momentum_10')
    if momentum is None:
        indicators.missing.append('momentum_10')
    else:
        indicators.momentum = momentum

    volume_ratio = fv.get('volume_ratio')
    if volume_ratio is None:
        indicators.missing.append('volume_ratio')
    else:
        indicators.volume_ratio = max(volume_ratio, 0.1)

    indicators.bollinger_position = fv.get('bollinger_position', 0.0)
    indicators.macd_signal = fv.get('macd_signal', 0.0)

    indicators.sentiment = calculate_sentiment(indicators)
    indicators.trend_consistency = calculate_trend_consistency(indicators)

    if indicators.missing:
        LOG.debug(f"Regime indicators missing, neutral defaults used: {indicators.missing}")

    return indicators


class MarketRegimeClassifier:
    """
    Rule-based six-way regime classifier.

    Regime Types:
        STRONG_BULL / WEAK_BULL: confirmed or tentative uptrend
        STRONG_BEAR / WEAK_BEAR: confirmed or tentative downtrend
        SIDEWAYS: no usable trend
        EXTREME_BEAR: dormant market with an exhausted RSI reading

    Stateless; safe to share between threads.
    """

    def __init__(self, config: RegimeConfig = None):
        self.config = config or RegimeConfig()

    def collect_indicators(self, features: Any) -> MarketIndicators:
        return collect_indicators(features)

    def calculate_regime_score(self, indicators: MarketIndicators) -> Tuple[float, Dict[str, float]]:
        """
        Weighted composite score in [0, 1].

        Returns:
            (score, sub-scores by component)
        """
        cfg = self.config

        trend_score = 0.0
        if indicators.trend_strength > 0.05:
            trend_score = min(indicators.trend_strength / 0.1, 1.0)

        # Very low volatility counts against trend formation
        volatility_score = 0.0
        if indicators.volatility > 0.02:
            volatility_score = min(indicators.volatility / 0.05, 1.0)
        elif indicators.volatility < 0.005:
            volatility_score = -0.5

        rsi_score = 0.0
        if indicators.rsi < 30 or indicators.rsi > 70:
            rsi_score = min(abs(indicators.rsi - 50.0) / 30.0, 1.0)

        momentum_score = 0.0
        if abs(indicators.momentum) > 0.02:
            momentum_score = min(abs(indicators.momentum) / 0.05, 1.0)

        volume_score = 0.0
        if indicators.volume_ratio > 2.0:
            volume_score = min((indicators.volume_ratio - 1.0) / 3.0, 1.0)

        components = {
            'trend': trend_score,
            'volatility': volatility_score,
            'rsi': rsi_score,
            'momentum': momentum_score,
            'volume': volume_score,
        }
        score = (
            trend_score * cfg.trend_weight
            + volatility_score * cfg.volatility_weight
            + rsi_score * cfg.rsi_weight
            + momentum_score * cfg.momentum_weight
            + volume_score * cfg.volume_weight
        )
        return float(np.clip(score, 0.0, 1.0)), components

    def determine_regime(self, score: float, indicators: MarketIndicators) -> Tuple[RegimeLabel, str]:
        """
        Ordered decision list. The first matching rule wins.

        Returns:
            (label, decision path name)
        """
        cfg = self.config
        direction = indicators.trend_direction
        rsi = indicators.rsi
        momentum = indicators.momentum
        volatility = indicators.volatility

        # Rule 1: bearish trend confirmed by RSI or momentum
        if direction < cfg.bear_trend_threshold and (rsi < 50 or momentum < cfg.bear_trend_threshold):
            if direction < -cfg.strong_trend_threshold and rsi < 45 and momentum < -cfg.strong_trend_threshold:
                return RegimeLabel.STRONG_BEAR, 'bear_trend'
            return RegimeLabel.WEAK_BEAR, 'bear_trend'

        # Rule 2: dormant market at an RSI extreme
        if (volatility < cfg.quiet_volatility and indicators.trend_strength < cfg.quiet_trend_strength
                and (rsi < 25 or rsi > 75)):
            return RegimeLabel.EXTREME_BEAR, 'quiet_exhaustion'

        # Rule 3: weak composite with a negative drift
        if score < 0.3 and direction < cfg.bear_trend_threshold:
            return RegimeLabel.WEAK_BEAR, 'low_score_bear'

        # Rule 4: low composite score
        if score < 0.5:
            if volatility < 0.03 and indicators.trend_strength < 0.04:
                return RegimeLabel.SIDEWAYS, 'low_score'
            if direction < -0.01:
                return RegimeLabel.WEAK_BEAR, 'low_score'
            return RegimeLabel.SIDEWAYS, 'low_score'

        # Rule 5: bull trend confirmed by RSI, momentum and volume
        if (direction > cfg.strong_trend_threshold and volatility > 0.02 and rsi > 50
                and momentum > cfg.strong_trend_threshold and indicators.volume_ratio > cfg.bull_volume_ratio):
            if score > 0.7 and direction > 0.05:
                return RegimeLabel.STRONG_BULL, 'bull_trend'
            return RegimeLabel.WEAK_BULL, 'bull_trend'

        # Rule 6: fallback on trend direction
        if direction > 0.01:
            return RegimeLabel.WEAK_BULL, 'fallback'
        if direction < -0.01:
            return RegimeLabel.WEAK_BEAR, 'fallback'
        return RegimeLabel.SIDEWAYS, 'fallback'

    @staticmethod
    def regime_confidence(label: RegimeLabel, score: float, path: str, indicators: MarketIndicators) -> float:
        if label in STRONG_REGIMES:
            confidence = 0.6 + 0.4 * score
        elif label in WEAK_REGIMES:
            confidence = 0.45 + 0.35 * score
        elif label == RegimeLabel.EXTREME_BEAR:
            confidence = 0.5 + 0.5 * min(abs(indicators.rsi - 50.0) / 50.0, 1.0)
        elif path == 'low_score':
            confidence = 0.5 + 0.5 * (1.0 - score)
        else:
            confidence = 0.4
        return float(np.clip(confidence, 0.0, 1.0))

    def classify(self, features: Any) -> RegimeClassification:
        """
        Classify market regime for one snapshot.

        Args:
            features: FeatureVector or feature mapping

        Returns:
            RegimeClassification
        """
        fv: FeatureVector = as_feature_vector(features)
        indicators = self.collect_indicators(fv)
        score, components = self.calculate_regime_score(indicators)
        label, path = self.determine_regime(score, indicators)
        confidence = self.regime_confidence(label, score, path, indicators)

        LOG.debug(
            f"Regime: trend={indicators.trend_direction:.4f} vol={indicators.volatility:.4f} "
            f"rsi={indicators.rsi:.1f} mom={indicators.momentum:.4f} vr={indicators.volume_ratio:.2f} "
            f"-> {label.value} (score={score:.3f}, path={path})"
        )

        return RegimeClassification(
            label=label,
            confidence=confidence,
            score=score,
            components=components,
            indicators=indicators.to_dict(),
            decision_path=path,
        )
