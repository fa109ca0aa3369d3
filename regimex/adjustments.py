"""
Declarative Multiplicative Adjustments

Every adaptive stage of the engine (feature weights, threshold multipliers,
fusion weights, sizing factors, exit levels) is an ordered list of named
rules folded over a dict of values.

Flow:
    values + [AdjustmentRule, ...] + context -> apply_rules -> AdjustmentResult

A rule fires when its predicate holds for the context. It then multiplies
the keys it names (keys missing from the values are ignored). An optional
clamp runs after every rule so intermediate values never leave their band.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

Multipliers = Union[Mapping[str, float], Callable[[Any], Mapping[str, float]]]


@dataclass(frozen=True)
class AdjustmentRule:
    """Named multiplicative adjustment: predicate, multipliers, rationale"""
    name: str
    predicate: Callable[[Any], bool]
    multipliers: Multipliers
    rationale: str = ""

    def applies(self, context: Any) -> bool:
        return bool(self.predicate(context))

    def factors(self, context: Any) -> Dict[str, float]:
        if callable(self.multipliers):
            return dict(self.multipliers(context))
        return dict(self.multipliers)


@dataclass
class AdjustmentResult:
    """Folded values plus the trace of rules that fired"""
    values: Dict[str, float]
    trace: List[dict] = field(default_factory=list)

    @property
    def applied(self) -> List[str]:
        return [entry['rule'] for entry in self.trace]

    def to_dict(self) -> dict:
        return {
            'values': {k: float(v) for k, v in self.values.items()},
            'trace': list(self.trace),
        }


def apply_rules(
    values: Mapping[str, float],
    rules: Iterable[AdjustmentRule],
    context: Any,
    clamp: Optional[Callable[[float], float]] = None,
) -> AdjustmentResult:
    """Fold rules over values in order"""
    adjusted = {key: float(value) for key, value in values.items()}
    trace: List[dict] = []

    for rule in rules:
        if not rule.applies(context):
            continue

        touched = {}
        for key, factor in rule.factors(context).items():
            if key in adjusted:
                adjusted[key] *= factor
                touched[key] = float(factor)

        if clamp is not None:
            adjusted = {key: clamp(value) for key, value in adjusted.items()}

        if touched:
            trace.append({'rule': rule.name, 'rationale': rule.rationale, 'factors': touched})

    return AdjustmentResult(values=adjusted, trace=trace)


def fold_factor(rules: Iterable[AdjustmentRule], context: Any, initial: float = 1.0) -> AdjustmentResult:
    """Fold rules that all target the single key 'factor'"""
    return apply_rules({'factor': initial}, rules, context)


def scale(keys: Sequence[str], factor: float) -> Dict[str, float]:
    """Same factor for every key"""
    return {key: factor for key in keys}


def scale_all_except(keys: Sequence[str], excluded: Sequence[str], factor: float) -> Dict[str, float]:
    return {key: factor for key in keys if key not in excluded}


def merge(*parts: Mapping[str, float]) -> Dict[str, float]:
    """Combine factor maps; repeated keys multiply"""
    merged: Dict[str, float] = {}
    for part in parts:
        for key, factor in part.items():
            merged[key] = merged.get(key, 1.0) * factor
    return merged
