"""
Shared fixtures: feature snapshots for the canonical market states.
"""

import pytest


@pytest.fixture
def oversold_decline():
    """Falling market with an oversold RSI (four core indicators only)."""
    return {'rsi_14': 25, 'trend_20': -0.02, 'momentum_10': -0.03, 'volatility_20': 0.01}


@pytest.fixture
def strong_bull_features():
    """Confirmed uptrend: trend, volatility, RSI, momentum and volume all agree."""
    return {
        'trend_5': 0.01,
        'trend_20': 0.08,
        'trend_50': 0.02,
        'rsi_14': 72,
        'momentum_10': 0.06,
        'macd_signal': 0.002,
        'volume_trend': 0.05,
        'volume_ratio': 2.5,
        'volatility_20': 0.04,
    }


@pytest.fixture
def bearish_features():
    """Six bearish trend/momentum readings, no oscillators."""
    return {
        'trend_5': -0.5,
        'trend_20': -1.0,
        'trend_50': -0.5,
        'momentum_10': -0.5,
        'macd_signal': -0.5,
        'volume_trend': -0.5,
    }
