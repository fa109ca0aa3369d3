"""
Stress Testing - Return-Series Crisis Simulation

Applies shocks to a historical return series and re-measures tail risk:
1. Historical crisis presets (2008, 2010, 2016, 2020, 2021)
2. Synthetic stress scenarios (liquidity freeze, flash crash, vol explosion)
3. Stressed VaR / CVaR / drawdown / worst return per scenario

Shock model, per observation r:
    r' = r + volatility_shock * N(0, 1)
    r' = r' * (1 + market_shock)
    r' = r' - |r'| * liquidity_shock

Randomness comes from an explicit numpy Generator so runs are reproducible
when seeded.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence

import numpy as np

from regimex.risk_stats.performance_ratios import max_drawdown, worst_return
from regimex.risk_stats.value_at_risk import ReturnsLike, as_returns, conditional_var, value_at_risk


class CrisisScenario(Enum):
    """Pre-defined historical crisis scenarios"""
    LEHMAN_2008 = "lehman_2008"  # correlation -> 1, liquidity gone
    FLASH_CRASH_2010 = "flash_crash_2010"  # intraday crash, liquidity freeze
    BREXIT_2016 = "brexit_2016"  # gap and volatility spike
    COVID_CRASH_2020 = "covid_crash_2020"  # extreme realised vol
    ARCHEGOS_2021 = "archegos_2021"  # forced liquidation, gap risk


@dataclass
class StressScenario:
    """Shock parameters applied to a return series"""
    name: str
    description: str = ""
    volatility_shock: float = 0.0  # std of additive noise, in return units
    market_shock: float = 0.0  # multiplicative amplification of every return
    liquidity_shock: float = 0.0  # haircut proportional to |return|
    probability: float = 0.0  # annual likelihood estimate

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'description': self.description,
            'volatility_shock': self.volatility_shock,
            'market_shock': self.market_shock,
            'liquidity_shock': self.liquidity_shock,
            'probability': self.probability,
        }


@dataclass
class StressTestResult:
    """Tail risk of the stressed series"""
    scenario_name: str
    var_95: float
    cvar_95: float
    max_drawdown: float
    worst_return: float
    expected_loss: float  # mean(normal) - mean(stressed)
    is_valid: bool = True

    def to_dict(self) -> dict:
        return {
            'scenario_name': self.scenario_name,
            'var_95': float(self.var_95),
            'cvar_95': float(self.cvar_95),
            'max_drawdown': float(self.max_drawdown),
            'worst_return': float(self.worst_return),
            'expected_loss': float(self.expected_loss),
            'is_valid': bool(self.is_valid),
        }


class HistoricalCrisisLibrary:
    """
    Library of historical crisis shock parameters.

    Calibrated loosely against daily returns; treat as orders of magnitude.
    """

    _SCENARIOS = {
        CrisisScenario.LEHMAN_2008: StressScenario(
            name="Lehman Brothers Collapse (Sep 2008)",
            description="Correlations to one, credit freeze",
            volatility_shock=0.04,
            market_shock=1.0,
            liquidity_shock=0.3,
            probability=0.01,
        ),
        CrisisScenario.FLASH_CRASH_2010: StressScenario(
            name="Flash Crash (May 2010)",
            description="Liquidity vanished intraday",
            volatility_shock=0.06,
            market_shock=0.5,
            liquidity_shock=0.6,
            probability=0.02,
        ),
        CrisisScenario.BREXIT_2016: StressScenario(
            name="Brexit Vote (Jun 2016)",
            description="Overnight gap, volatility spike",
            volatility_shock=0.03,
            market_shock=0.8,
            liquidity_shock=0.2,
            probability=0.03,
        ),
        CrisisScenario.COVID_CRASH_2020: StressScenario(
            name="COVID-19 Crash (Mar 2020)",
            description="Realised volatility at record levels",
            volatility_shock=0.05,
            market_shock=1.5,
            liquidity_shock=0.4,
            probability=0.01,
        ),
        CrisisScenario.ARCHEGOS_2021: StressScenario(
            name="Archegos Collapse (Mar 2021)",
            description="Forced liquidation in concentrated names",
            volatility_shock=0.03,
            market_shock=0.4,
            liquidity_shock=0.7,
            probability=0.02,
        ),
    }

    @classmethod
    def get_scenario(cls, scenario: CrisisScenario) -> StressScenario:
        """Get parameters for historical crisis"""
        return cls._SCENARIOS.get(scenario, cls._default_crisis())

    @classmethod
    def all_scenarios(cls) -> List[StressScenario]:
        return list(cls._SCENARIOS.values())

    @staticmethod
    def _default_crisis() -> StressScenario:
        """Default severe crisis"""
        return StressScenario(
            name="Generic Severe Crisis",
            description="Unclassified severe stress",
            volatility_shock=0.04,
            market_shock=1.0,
            liquidity_shock=0.4,
            probability=0.01,
        )


class SyntheticStressGenerator:
    """
    Generates synthetic stress scenarios for Monte Carlo testing.

    Creates realistic but non-historical stress events.
    """

    def __init__(self, seed: Optional[int] = None):
        self.rng = np.random.default_rng(seed)

    def generate_liquidity_freeze(self) -> StressScenario:
        return StressScenario(
            name="Synthetic Liquidity Freeze",
            description="Spreads explode, exits cost a large share of each move",
            volatility_shock=float(self.rng.uniform(0.01, 0.03)),
            market_shock=float(self.rng.uniform(0.2, 0.6)),
            liquidity_shock=float(self.rng.uniform(0.5, 0.9)),
            probability=0.02,
        )

    def generate_flash_crash(self) -> StressScenario:
        """Sudden intraday crash"""
        return StressScenario(
            name="Synthetic Flash Crash",
            description="Volatility burst with liquidity withdrawal",
            volatility_shock=float(self.rng.uniform(0.05, 0.10)),
            market_shock=float(self.rng.uniform(0.5, 1.5)),
            liquidity_shock=float(self.rng.uniform(0.3, 0.6)),
            probability=0.02,
        )

    def generate_volatility_explosion(self) -> StressScenario:
        return StressScenario(
            name="Synthetic Volatility Explosion",
            description="Return dispersion multiplies, liquidity intact",
            volatility_shock=float(self.rng.uniform(0.04, 0.08)),
            market_shock=float(self.rng.uniform(1.0, 2.0)),
            liquidity_shock=0.0,
            probability=0.05,
        )


def apply_stress_scenario(
    returns: ReturnsLike,
    scenario: StressScenario,
    rng: Optional[np.random.Generator] = None,
) -> np.ndarray:
    """Shock every return of the series (see module docstring)"""
    values = as_returns(returns)
    rng = rng if rng is not None else np.random.default_rng()

    stressed = values + scenario.volatility_shock * rng.standard_normal(values.size)
    stressed = stressed * (1.0 + scenario.market_shock)
    stressed = stressed - np.abs(stressed) * scenario.liquidity_shock
    return stressed


def run_stress_test(
    returns: ReturnsLike,
    scenarios: Sequence[StressScenario],
    seed: Optional[int] = None,
) -> List[StressTestResult]:
    """
    Apply each scenario to the series and measure the stressed tail.

    Args:
        returns: Historical periodic returns
        scenarios: Shock definitions
        seed: RNG seed shared by all scenarios for reproducibility

    Returns:
        One StressTestResult per scenario, in input order
    """
    values = as_returns(returns)
    rng = np.random.default_rng(seed)
    baseline_mean = float(np.mean(values)) if values.size else 0.0

    results = []
    for scenario in scenarios:
        stressed = apply_stress_scenario(values, scenario, rng)
        var = value_at_risk(stressed, 0.95)
        cvar = conditional_var(stressed, 0.95)
        stressed_mean = float(np.mean(stressed)) if stressed.size else 0.0
        results.append(StressTestResult(
            scenario_name=scenario.name,
            var_95=var.value,
            cvar_95=cvar.value,
            max_drawdown=max_drawdown(stressed),
            worst_return=worst_return(stressed),
            expected_loss=baseline_mean - stressed_mean,
            is_valid=var.is_valid and cvar.is_valid,
        ))
    return results
