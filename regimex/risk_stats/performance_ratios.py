"""
Risk-Adjusted Performance Ratios

Annualised Sharpe and Sortino ratios, maximum drawdown and worst return
for a periodic return series (252 periods per year by default).
"""

import numpy as np
import pandas as pd

from regimex.risk_stats.value_at_risk import ReturnsLike, as_returns


def sharpe_ratio(returns: ReturnsLike, risk_free_rate: float = 0.0, periods_per_year: int = 252) -> float:
    """Annualised Sharpe ratio; 0 when undefined"""
    values = as_returns(returns)
    if values.size < 2:
        return 0.0
    std = float(np.std(values, ddof=1))
    if std == 0:
        return 0.0
    excess = float(np.mean(values)) - risk_free_rate / periods_per_year
    return float(excess / std * np.sqrt(periods_per_year))


def sortino_ratio(returns: ReturnsLike, risk_free_rate: float = 0.0, periods_per_year: int = 252) -> float:
    """
    Annualised Sortino ratio.

    Downside deviation is the RMS of shortfalls below the per-period
    risk-free rate, taken over the shortfall observations only.
    Returns 0 when there is no downside.
    """
    values = as_returns(returns)
    if values.size == 0:
        return 0.0
    target = risk_free_rate / periods_per_year
    shortfalls = values[values < target] - target
    if shortfalls.size == 0:
        return 0.0
    downside_deviation = float(np.sqrt(np.mean(shortfalls ** 2)))
    if downside_deviation == 0:
        return 0.0
    excess = float(np.mean(values)) - target
    return float(excess / downside_deviation * np.sqrt(periods_per_year))


def max_drawdown(returns: ReturnsLike) -> float:
    """Largest peak-to-trough loss of compounded wealth, as a fraction in [0, 1]"""
    values = as_returns(returns)
    if values.size == 0:
        return 0.0
    wealth = pd.Series(np.concatenate(([1.0], np.cumprod(1.0 + values))))
    peaks = wealth.cummax()
    drawdowns = (peaks - wealth) / peaks
    return float(np.clip(drawdowns.max(), 0.0, 1.0))


def worst_return(returns: ReturnsLike) -> float:
    values = as_returns(returns)
    if values.size == 0:
        return 0.0
    return float(values.min())
