"""
Market Regime Classifier

FeatureVector -> RegimeClassification (label, confidence, composite score).
"""

from regimex.regime.regime_classifier import (
    MarketIndicators,
    MarketRegimeClassifier,
    collect_indicators,
    calculate_sentiment,
    calculate_trend_consistency,
)

__all__ = [
    'MarketIndicators',
    'MarketRegimeClassifier',
    'collect_indicators',
    'calculate_sentiment',
    'calculate_trend_consistency',
]
