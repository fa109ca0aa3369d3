"""
Tests for declarative multiplicative adjustments.
"""

import pytest

from regimex.adjustments import (
    AdjustmentRule,
    apply_rules,
    fold_factor,
    merge,
    scale,
    scale_all_except,
)


@pytest.fixture
def rules():
    """Two static rules and one context-dependent rule."""
    return [
        AdjustmentRule('double_a', lambda ctx: ctx['hot'], {'a': 2.0}, "hot market"),
        AdjustmentRule('halve_b', lambda ctx: True, {'b': 0.5, 'missing': 10.0}),
        AdjustmentRule('scaled', lambda ctx: ctx['level'] > 0, lambda ctx: {'a': ctx['level']}),
    ]


class TestApplyRules:
    """Test the rule fold."""

    def test_fold_in_order(self, rules):
        """Firing rules multiply their keys in order."""
        result = apply_rules({'a': 1.0, 'b': 4.0}, rules, {'hot': True, 'level': 3.0})
        assert result.values == {'a': 6.0, 'b': 2.0}
        assert result.applied == ['double_a', 'halve_b', 'scaled']

    def test_predicate_skips(self, rules):
        """Rules whose predicate fails leave no trace."""
        result = apply_rules({'a': 1.0, 'b': 4.0}, rules, {'hot': False, 'level': 0.0})
        assert result.values == {'a': 1.0, 'b': 2.0}
        assert result.applied == ['halve_b']

    def test_unknown_keys_ignored(self, rules):
        """Keys absent from the values are not created."""
        result = apply_rules({'b': 1.0}, rules, {'hot': True, 'level': 1.0})
        assert 'missing' not in result.values
        assert result.trace[0]['factors'] == {'b': 0.5}

    def test_clamp_after_each_rule(self):
        """Clamp bounds intermediate values too."""
        rules = [
            AdjustmentRule('up', lambda ctx: True, {'x': 10.0}),
            AdjustmentRule('down', lambda ctx: True, {'x': 0.5}),
        ]
        result = apply_rules({'x': 1.0}, rules, None, clamp=lambda v: min(v, 2.0))
        assert result.values['x'] == pytest.approx(1.0)

    def test_input_not_mutated(self, rules):
        """The input mapping is copied."""
        values = {'a': 1.0, 'b': 1.0}
        apply_rules(values, rules, {'hot': True, 'level': 2.0})
        assert values == {'a': 1.0, 'b': 1.0}

    def test_to_dict(self, rules):
        """Serialised result carries values and trace."""
        result = apply_rules({'a': 1.0}, rules, {'hot': True, 'level': 0.0})
        data = result.to_dict()
        assert data['values'] == {'a': 2.0}
        assert data['trace'][0]['rationale'] == "hot market"


class TestHelpers:
    """Test factor helpers."""

    def test_fold_factor(self):
        """Single-factor folds start from the initial value."""
        rules = [
            AdjustmentRule('x', lambda ctx: True, {'factor': 1.5}),
            AdjustmentRule('y', lambda ctx: True, {'factor': 0.5}),
        ]
        assert fold_factor(rules, None).values['factor'] == pytest.approx(0.75)
        assert fold_factor(rules, None, initial=2.0).values['factor'] == pytest.approx(1.5)

    def test_scale(self):
        """Every key gets the same factor."""
        assert scale(['a', 'b'], 1.2) == {'a': 1.2, 'b': 1.2}
        assert scale_all_except(['a', 'b', 'c'], ['b'], 0.5) == {'a': 0.5, 'c': 0.5}

    def test_merge_multiplies(self):
        """Repeated keys multiply."""
        assert merge({'a': 2.0}, {'a': 3.0, 'b': 0.5}) == {'a': 6.0, 'b': 0.5}
