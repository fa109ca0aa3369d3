"""
Tests for Ensemble Model Fusion

Registry, member validation, concurrent fan-out with timeout and robust
aggregation.
"""

import time

import numpy as np
import pytest

from regimex.config import EnsembleConfig
from regimex.ensemble import (
    EnsembleFusion,
    MemberOutput,
    PredictorRegistry,
    aggregate_members,
    consistency_bonus,
    diversity_bonus,
    filter_outliers,
    member_weight,
    post_process,
    validate_output,
)
from regimex.exceptions import MemberPredictionError


def constant(score, confidence=0.9, quality=0.9):
    """Predictor returning a fixed triple."""
    def predict(symbol, features):
        return score, confidence, quality
    return predict


def members(scores, confidence=0.9, quality=0.9):
    return [MemberOutput(f"m{i}", s, confidence, quality) for i, s in enumerate(scores)]


@pytest.fixture
def agreeing_registry():
    """Four members with identical output."""
    return PredictorRegistry({f"model_{i}": constant(0.5) for i in range(4)})


class TestPredictorRegistry:
    """Test member registration."""

    def test_register_order(self):
        """Registration order is preserved."""
        registry = PredictorRegistry()
        registry.register('b', constant(0.1))
        registry.register('a', constant(0.2))
        assert registry.names() == ['b', 'a']
        assert len(registry) == 2
        assert 'a' in registry

    def test_rejects_non_callables(self):
        """Members must be callable or expose predict()."""
        with pytest.raises(TypeError):
            PredictorRegistry().register('bad', 42)

    def test_predict_method(self):
        """Objects with predict() are accepted."""
        class Model:
            def predict(self, symbol, features):
                return 0.3, 0.8, 0.7

        registry = PredictorRegistry({'model': Model()})
        result = EnsembleFusion(registry).predict('EURUSD', {})
        assert result.members[0].score == pytest.approx(0.3)

    def test_unregister(self):
        registry = PredictorRegistry({'a': constant(0.1)})
        registry.unregister('a')
        assert len(registry) == 0


class TestValidation:
    """Test member output validation."""

    @pytest.mark.parametrize('raw', [
        (float('nan'), 0.5, 0.5),
        (1.5, 0.5, 0.5),
        (0.5, -0.1, 0.5),
        (0.5, 0.5, 2.0),
        (0.5, 0.5),
        None,
    ])
    def test_invalid_outputs(self, raw):
        """Malformed, non-finite and out-of-range outputs raise."""
        with pytest.raises(MemberPredictionError):
            validate_output('m', raw)

    def test_valid_output(self):
        output = validate_output('m', (0.2, 0.6, 0.7))
        assert output == MemberOutput('m', 0.2, 0.6, 0.7)


class TestAggregation:
    """Test weighting, outlier rejection and bonuses."""

    def test_identical_members(self):
        """Near-total agreement is penalised by diversity, score stays near the inputs."""
        prediction = aggregate_members(members([0.5] * 4), attempted=4)
        assert prediction.diversity_bonus == pytest.approx(0.7)
        assert prediction.consistency_bonus == pytest.approx(1.2)
        assert prediction.score == pytest.approx(0.504)
        assert prediction.member_count == 4

    def test_outlier_removed(self):
        """A member far beyond 2.5 sigma is dropped."""
        outputs = members([0.1] * 8 + [1.0])
        kept = filter_outliers(outputs, 2.5)
        assert len(kept) == 8

        prediction = aggregate_members(outputs, attempted=9)
        assert prediction.filtered_count == 1
        assert prediction.score == pytest.approx(0.1 * 1.2 * 0.7)

    def test_outlier_removed_from_four_members(self):
        """A single dissenting member of a four-member ensemble cannot flip its sign."""
        prediction = aggregate_members(members([0.05, 0.05, 0.05, -1.0]), attempted=4)
        assert prediction.filtered_count == 1
        assert prediction.member_count == 4
        assert prediction.score == pytest.approx(0.05 * 1.2 * 0.7)

    def test_small_deviation_kept(self):
        """Members close to an agreeing majority survive the filter."""
        kept = filter_outliers(members([0.5, 0.5, 0.5, 0.52]))
        assert len(kept) == 4

    def test_spread_members_kept(self):
        """A genuinely split ensemble has no outliers."""
        assert len(filter_outliers(members([-0.6, -0.2, 0.2, 0.6]))) == 4

    def test_outlier_filter_needs_three(self):
        """Two members are never filtered."""
        assert len(filter_outliers(members([-1.0, 1.0]))) == 2

    def test_single_outlier_bounded_influence(self):
        """One extreme member is rejected, leaving the aggregate unchanged."""
        base = aggregate_members(members([0.1] * 8), attempted=8).score
        with_outlier = aggregate_members(members([0.1] * 8 + [-1.0]), attempted=9).score
        assert with_outlier == pytest.approx(base)

    def test_member_weight_heuristics(self):
        """Strong calls count more, near-zero calls less, sparse members more so."""
        config = EnsembleConfig()
        strong = member_weight(MemberOutput('m', 0.8, 1.0, 1.0), config)
        weak = member_weight(MemberOutput('m', 0.05, 1.0, 1.0), config)
        sparse_silent = member_weight(MemberOutput('transformer', 0.0, 1.0, 1.0), config)
        forest = member_weight(MemberOutput('random_forest', 0.5, 1.0, 1.0), config)

        assert strong == pytest.approx(1.3)
        assert weak == pytest.approx(0.7)
        assert sparse_silent == pytest.approx(0.3 * 0.7)
        assert forest == pytest.approx(1.1)
        assert member_weight(MemberOutput('m', 0.5, 0.0, 0.0), config) == pytest.approx(0.05)

    def test_bonuses(self):
        """Consistency rewards tight clusters, diversity rewards moderate spread."""
        assert consistency_bonus([0.1, 0.2]) == 1.2
        assert consistency_bonus([-1.0, 1.0, -1.0, 1.0]) == 1.0
        assert diversity_bonus([0.5]) == 1.0
        assert diversity_bonus([-0.6, 0.6]) == 1.3
        assert diversity_bonus([0.0, 0.6]) == 1.1
        assert diversity_bonus([0.0, 0.2]) == 0.9

    def test_post_process(self):
        """Mid-range scores are lifted, disagreeing extremes damped, output clamped."""
        assert post_process(0.5, [0.5, 0.5]) == pytest.approx(0.6)
        assert post_process(0.9, [-1.0, 1.0]) == pytest.approx(0.9 * 0.7 * 1.2)
        assert post_process(2.0, [1.0]) == 1.0

    def test_no_members(self):
        """Nothing to aggregate yields no prediction."""
        assert aggregate_members([], attempted=4) is None

    def test_coverage_reduces_quality(self):
        """Missing members lower the quality proxy."""
        full = aggregate_members(members([0.3] * 4), attempted=4)
        half = aggregate_members(members([0.3] * 2), attempted=4)
        assert half.quality == pytest.approx(full.quality / 2)

    def test_bounds(self):
        """Aggregate score in [-1, 1], confidence and quality in [0, 1]."""
        rng = np.random.default_rng(0)
        for _ in range(20):
            scores = rng.uniform(-1, 1, 5)
            prediction = aggregate_members(members(scores, rng.uniform(), rng.uniform()), attempted=5)
            assert -1.0 <= prediction.score <= 1.0
            assert 0.0 <= prediction.confidence <= 1.0
            assert 0.0 <= prediction.quality <= 1.0


class TestEnsembleFusion:
    """Test concurrent prediction."""

    def test_agreeing_members(self, agreeing_registry):
        """Four identical members aggregate to about 0.5."""
        result = EnsembleFusion(agreeing_registry).predict('EURUSD', {'rsi_14': 55})
        assert result.available
        assert result.prediction.score == pytest.approx(0.504)
        assert result.prediction.diversity_bonus < 1.0
        assert [m.name for m in result.members] == ['model_0', 'model_1', 'model_2', 'model_3']

    def test_failures_excluded(self, agreeing_registry):
        """Raising and invalid members are excluded, the rest still aggregate."""
        def broken(symbol, features):
            raise RuntimeError("model file missing")

        agreeing_registry.register('broken', broken)
        agreeing_registry.register('nan', constant(float('nan')))
        result = EnsembleFusion(agreeing_registry).predict('EURUSD', {})

        assert result.available
        assert result.prediction.member_count == 4
        assert {f.name for f in result.failures} == {'broken', 'nan'}

    def test_all_members_fail(self):
        """No usable member means no prediction, not an error."""
        registry = PredictorRegistry({'bad': constant(5.0)})
        result = EnsembleFusion(registry).predict('EURUSD', {})
        assert not result.available
        assert result.failures[0].name == 'bad'

    def test_empty_registry(self):
        result = EnsembleFusion(PredictorRegistry()).predict('EURUSD', {})
        assert result.prediction is None

    def test_slow_member_times_out(self, agreeing_registry):
        """A member exceeding the budget is dropped without blocking the cycle."""
        def slow(symbol, features):
            time.sleep(1.0)
            return 0.9, 0.9, 0.9

        agreeing_registry.register('slow', slow)
        start = time.perf_counter()
        result = EnsembleFusion(agreeing_registry).predict('EURUSD', {}, timeout_s=0.1)
        elapsed = time.perf_counter() - start

        assert elapsed < 0.8
        assert result.available
        assert [f.reason for f in result.failures if f.name == 'slow'] == ['timeout']
        assert result.prediction.member_count == 4
