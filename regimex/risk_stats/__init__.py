"""
Risk & Statistics Library

Pure functions over return series: VaR / CVaR, Sharpe, Sortino,
maximum drawdown, half-Kelly fraction and stress-scenario application.
"""

from regimex.risk_stats.value_at_risk import (
    RiskMetricResult,
    as_returns,
    historical_var,
    parametric_var,
    monte_carlo_var,
    value_at_risk,
    conditional_var,
    simplified_position_var,
    var_capped_fraction,
)
from regimex.risk_stats.performance_ratios import (
    sharpe_ratio,
    sortino_ratio,
    max_drawdown,
    worst_return,
)
from regimex.risk_stats.kelly_criterion import KellyCriterion, KellyResult
from regimex.risk_stats.stress_testing import (
    CrisisScenario,
    HistoricalCrisisLibrary,
    StressScenario,
    StressTestResult,
    SyntheticStressGenerator,
    apply_stress_scenario,
    run_stress_test,
)

__all__ = [
    'RiskMetricResult',
    'as_returns',
    'historical_var',
    'parametric_var',
    'monte_carlo_var',
    'value_at_risk',
    'conditional_var',
    'simplified_position_var',
    'var_capped_fraction',
    'sharpe_ratio',
    'sortino_ratio',
    'max_drawdown',
    'worst_return',
    'KellyCriterion',
    'KellyResult',
    'CrisisScenario',
    'HistoricalCrisisLibrary',
    'StressScenario',
    'StressTestResult',
    'SyntheticStressGenerator',
    'apply_stress_scenario',
    'run_stress_test',
]
