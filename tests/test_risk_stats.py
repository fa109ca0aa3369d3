"""
Tests for the Risk & Statistics Library

VaR / CVaR, performance ratios, half-Kelly and stress scenarios.
"""

import pytest
import numpy as np
import pandas as pd

from regimex.risk_stats import (
    CrisisScenario,
    HistoricalCrisisLibrary,
    KellyCriterion,
    StressScenario,
    SyntheticStressGenerator,
    apply_stress_scenario,
    conditional_var,
    historical_var,
    max_drawdown,
    parametric_var,
    run_stress_test,
    sharpe_ratio,
    simplified_position_var,
    sortino_ratio,
    value_at_risk,
    var_capped_fraction,
    worst_return,
)
from regimex.schemas import PerformanceHistory


@pytest.fixture
def linear_returns():
    """100 evenly spaced returns from -5% to +5%."""
    return pd.Series(np.linspace(-0.05, 0.05, 100))


@pytest.fixture
def noisy_returns():
    """Seeded normal daily returns."""
    rng = np.random.default_rng(42)
    return pd.Series(rng.normal(0.001, 0.01, 250))


class TestValueAtRisk:
    """Test VaR and CVaR."""

    def test_historical_quantile(self, linear_returns):
        """Historical VaR is the negated empirical 5% quantile."""
        expected = -(-0.05 + 5 * 0.1 / 99)
        assert historical_var(linear_returns, 0.95) == pytest.approx(expected)

    def test_value_at_risk_methods(self, noisy_returns):
        """All methods report a positive loss of similar magnitude."""
        hist = value_at_risk(noisy_returns, method='historical')
        param = value_at_risk(noisy_returns, method='parametric')
        mc = value_at_risk(noisy_returns, method='monte_carlo', seed=7)

        for result in (hist, param, mc):
            assert result.is_valid
            assert 0.005 < result.value < 0.03
        assert param.value == pytest.approx(hist.value, abs=0.01)

    def test_unknown_method(self, noisy_returns):
        """Unknown methods are rejected."""
        with pytest.raises(ValueError):
            value_at_risk(noisy_returns, method='garch')

    def test_short_sample_is_conservative(self):
        """Fewer than 30 observations returns the conservative default."""
        result = value_at_risk([0.01, -0.02, 0.005])
        assert not result.is_valid
        assert result.value == pytest.approx(0.02)
        assert result.sample_size == 3

        cvar = conditional_var([0.01, -0.02])
        assert not cvar.is_valid
        assert cvar.value == pytest.approx(0.03)

    def test_cvar_exceeds_var(self, noisy_returns):
        """Expected shortfall is at least as large as VaR."""
        var = value_at_risk(noisy_returns)
        cvar = conditional_var(noisy_returns)
        assert cvar.value >= var.value

    def test_non_finite_values_dropped(self):
        """NaN and inf observations are ignored."""
        returns = [0.01, np.nan, -0.02, np.inf, 0.0]
        assert historical_var(returns, 0.5) == historical_var([0.01, -0.02, 0.0], 0.5)

    def test_parametric_zero_std(self):
        """A constant losing series reports its mean loss."""
        assert parametric_var([-0.01] * 40) == pytest.approx(0.01)

    def test_simplified_position_var(self):
        """Position VaR is fraction * volatility * multiplier."""
        assert simplified_position_var(0.2, 0.03, 2.0) == pytest.approx(0.012)

    def test_var_capped_fraction(self):
        """Fraction is reduced until the VaR ceiling holds."""
        assert var_capped_fraction(0.3, 0.05, 0.02, 2.0) == pytest.approx(0.2)
        assert var_capped_fraction(0.1, 0.05, 0.02, 2.0) == pytest.approx(0.1)
        assert var_capped_fraction(0.3, 0.0, 0.02, 2.0) == pytest.approx(0.3)


class TestPerformanceRatios:
    """Test Sharpe, Sortino and drawdown."""

    def test_sharpe_constant_series(self):
        """Zero variance yields a Sharpe of 0."""
        assert sharpe_ratio([0.01] * 20) == 0.0
        assert sharpe_ratio([0.01]) == 0.0

    def test_sharpe_sign(self, noisy_returns):
        """Positive drift gives positive Sharpe, negated series negative."""
        assert sharpe_ratio(noisy_returns) > 0
        assert sharpe_ratio(-noisy_returns) < 0

    def test_sortino_without_downside(self):
        """No returns below target means Sortino is 0."""
        assert sortino_ratio([0.01, 0.02, 0.03]) == 0.0

    def test_sortino_positive(self, noisy_returns):
        """Sortino is defined for a mixed series."""
        assert sortino_ratio(noisy_returns) > 0

    def test_max_drawdown(self):
        """Drawdown compounds returns from a unit start."""
        assert max_drawdown([0.1, -0.5]) == pytest.approx(0.5)
        assert max_drawdown([0.01, 0.02]) == 0.0
        assert max_drawdown([]) == 0.0

    def test_worst_return(self):
        """Worst return is the series minimum."""
        assert worst_return([0.02, -0.07, 0.01]) == pytest.approx(-0.07)


class TestKellyCriterion:
    """Test the half-Kelly calculator."""

    def test_default_inputs(self):
        """p=0.5, R=2 gives Kelly 0.25 and half-Kelly 0.125."""
        result = KellyCriterion().calculate()
        assert result.kelly_fraction == pytest.approx(0.25)
        assert result.kelly_cap == pytest.approx(0.125)
        assert result.is_valid

    def test_volatility_discount(self):
        """Volatility shrinks the fraction by 1 / (1 + 2 * vol)."""
        result = KellyCriterion().calculate(volatility=0.03)
        assert result.volatility_discount == pytest.approx(1 / 1.06)
        assert result.kelly_cap == pytest.approx(0.125 / 1.06)

    def test_negative_edge_floored(self):
        """A losing edge is floored to the minimum fraction."""
        result = KellyCriterion().calculate(win_rate=0.3, reward_risk=1.0)
        assert result.kelly_fraction < 0
        assert result.kelly_cap == pytest.approx(0.1)
        assert result.rejection_reason is not None

    def test_upper_bound(self):
        """A huge edge is capped at the maximum fraction."""
        result = KellyCriterion(scale=1.0).calculate(win_rate=0.95, reward_risk=10.0)
        assert result.kelly_cap == pytest.approx(0.5)

    def test_invalid_inputs_fall_back(self):
        """Invalid probability or ratio uses the fixed fallback."""
        kelly = KellyCriterion()
        for result in (kelly.calculate(win_rate=1.5), kelly.calculate(reward_risk=-1.0),
                       kelly.calculate(volatility=np.nan)):
            assert not result.is_valid
            assert result.kelly_cap == pytest.approx(0.25)

    def test_invalid_construction(self):
        """Scale and bounds are validated."""
        with pytest.raises(ValueError):
            KellyCriterion(scale=0.0)
        with pytest.raises(ValueError):
            KellyCriterion(min_fraction=0.6, max_fraction=0.5)

    def test_from_history(self):
        """Realised win rate and reward:risk are used once trades exist."""
        kelly = KellyCriterion()
        neutral = kelly.calculate_from_history(PerformanceHistory.neutral())
        assert neutral.kelly_cap == pytest.approx(0.125)

        history = PerformanceHistory(win_rate=0.6, total_trades=40, avg_win=0.03, avg_loss=0.02)
        result = kelly.calculate_from_history(history)
        assert result.kelly_fraction == pytest.approx(0.6 - 0.4 / 1.5)


class TestStressTesting:
    """Test crisis scenarios."""

    def test_library_presets(self):
        """Every preset crisis has shock parameters."""
        for scenario in CrisisScenario:
            params = HistoricalCrisisLibrary.get_scenario(scenario)
            assert params.volatility_shock > 0
            assert params.market_shock > 0
        assert len(HistoricalCrisisLibrary.all_scenarios()) == len(CrisisScenario)

    def test_identity_scenario(self, noisy_returns):
        """A zero shock leaves the series unchanged."""
        stressed = apply_stress_scenario(noisy_returns, StressScenario("none"))
        np.testing.assert_allclose(stressed, noisy_returns.to_numpy())

    def test_stress_increases_tail(self, noisy_returns):
        """A crisis raises VaR above the unstressed value."""
        baseline = value_at_risk(noisy_returns).value
        scenario = HistoricalCrisisLibrary.get_scenario(CrisisScenario.LEHMAN_2008)
        result = run_stress_test(noisy_returns, [scenario], seed=1)[0]

        assert result.var_95 > baseline
        assert result.cvar_95 >= result.var_95
        assert 0 <= result.max_drawdown <= 1
        assert result.is_valid

    def test_seeded_runs_reproducible(self, noisy_returns):
        """Same seed, same results."""
        scenarios = [SyntheticStressGenerator(seed=3).generate_flash_crash()]
        first = run_stress_test(noisy_returns, scenarios, seed=11)
        second = run_stress_test(noisy_returns, scenarios, seed=11)
        assert first[0].to_dict() == second[0].to_dict()

    def test_synthetic_generators(self):
        """Synthetic scenarios draw from their documented ranges."""
        generator = SyntheticStressGenerator(seed=5)
        freeze = generator.generate_liquidity_freeze()
        explosion = generator.generate_volatility_explosion()
        assert 0.5 <= freeze.liquidity_shock <= 0.9
        assert explosion.liquidity_shock == 0.0
