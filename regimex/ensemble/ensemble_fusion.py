"""
Ensemble Model Fusion

Fans a snapshot out to every registered member on a thread pool, then
aggregates the members that answered in time.

Aggregation:
1. Member weight = confidence x quality x type heuristic x magnitude factor (floor 0.05)
2. Outlier rejection beyond k leave-one-out sigmas (only with > 2 members)
3. Weighted score x consistency bonus x diversity bonus
4. Post-processing: damp extreme disagreement, lift mid-range signals, clamp

A cycle with zero usable members yields no prediction; it never fails.
"""

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout, as_completed
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence
import logging
import time

import numpy as np

from regimex.config import EnsembleConfig
from regimex.ensemble.predictor import MemberFailure, MemberOutput, PredictorRegistry, call_member
from regimex.exceptions import MemberPredictionError
from regimex.schemas import EnsemblePrediction, as_feature_vector

LOG = logging.getLogger(__name__)


@dataclass
class EnsembleResult:
    """Ensemble stage output for one cycle"""
    prediction: Optional[EnsemblePrediction]
    members: List[MemberOutput] = field(default_factory=list)
    failures: List[MemberFailure] = field(default_factory=list)
    elapsed_ms: float = 0.0

    @property
    def available(self) -> bool:
        return self.prediction is not None

    def to_dict(self) -> dict:
        return {
            'prediction': self.prediction.to_dict() if self.prediction else None,
            'members': [m.to_dict() for m in self.members],
            'failures': [f.to_dict() for f in self.failures],
            'elapsed_ms': self.elapsed_ms,
        }


def member_weight(output: MemberOutput, config: EnsembleConfig) -> float:
    """Base weight confidence x quality, shaped by member type and signal magnitude"""
    weight = output.confidence * output.quality
    magnitude = abs(output.score)

    if output.name in config.sparse_signal_members:
        # Near-zero output from a sparse member means "no opinion"
        weight *= 1.2 if magnitude > 0.01 else 0.3
    else:
        weight *= config.type_multipliers.get(output.name, 1.0)

    if magnitude > 0.7:
        weight *= 1.3
    elif magnitude < 0.1:
        weight *= 0.7

    return max(weight, config.min_member_weight)


def filter_outliers(
    outputs: Sequence[MemberOutput],
    std_multiplier: float = 2.5,
    min_std: float = 0.05,
) -> List[MemberOutput]:
    """
    Drop members further than std_multiplier population sigmas from the others.

    Each member is measured against the mean and sigma of the remaining
    members (leave-one-out), so a single outlier cannot widen its own band.
    Sigma is floored at min_std so exact agreement among the others does
    not turn every small deviation into an outlier.

    Only applies with more than two members; if at most one member would
    survive, the unfiltered set is returned.
    """
    if len(outputs) <= 2:
        return list(outputs)

    scores = np.array([o.score for o in outputs])
    kept = []
    for i, output in enumerate(outputs):
        others = np.delete(scores, i)
        std = max(float(others.std()), min_std)
        if abs(output.score - others.mean()) <= std_multiplier * std:
            kept.append(output)

    if len(kept) <= 1:
        return list(outputs)
    return kept


def consistency_bonus(scores: Sequence[float]) -> float:
    std = float(np.std(scores)) if len(scores) else 0.0
    if std < 0.5:
        return 1.2
    if std > 1.0:
        return 0.8
    return 1.0


def diversity_bonus(scores: Sequence[float]) -> float:
    """Reward a spread of opinions, penalise a herd"""
    if len(scores) < 2:
        return 1.0
    spread = max(scores) - min(scores)
    if spread > 1.0:
        return 1.3
    if spread > 0.5:
        return 1.1
    if spread > 0.1:
        return 0.9
    return 0.7


def post_process(score: float, input_scores: Sequence[float]) -> float:
    if len(input_scores) and np.std(input_scores) > 0.8 and abs(score) > 0.5:
        score *= 0.7
    if 0.3 < abs(score) < 0.7:
        score *= 1.2
    return float(np.clip(score, -1.0, 1.0))


def aggregate_members(
    outputs: Sequence[MemberOutput],
    attempted: int,
    config: EnsembleConfig = None,
) -> Optional[EnsemblePrediction]:
    """
    Combine validated member outputs into one prediction.

    Args:
        outputs: Members that answered, in registration order
        attempted: Members asked this cycle (for coverage)

    Returns:
        EnsemblePrediction, or None when no member answered
    """
    config = config or EnsembleConfig()
    if not outputs:
        return None

    survivors = filter_outliers(outputs, config.outlier_std_multiplier, config.outlier_min_std)
    raw_weights = np.array([member_weight(o, config) for o in survivors])
    weights = raw_weights / raw_weights.sum()

    scores = np.array([o.score for o in survivors])
    consistency = consistency_bonus(scores)
    diversity = diversity_bonus(list(scores))

    score = float(np.sum(scores * weights) * consistency * diversity)
    confidence = float(np.sum(np.array([o.confidence for o in survivors]) * weights))
    if len(survivors) == 1:
        confidence *= config.single_member_confidence_discount

    coverage = len(outputs) / max(attempted, len(outputs))
    quality = float(np.sum(np.array([o.quality for o in survivors]) * weights)) * coverage

    score = post_process(score, [o.score for o in outputs])

    return EnsemblePrediction(
        score=score,
        confidence=confidence,
        quality=quality,
        member_count=len(outputs),
        filtered_count=len(outputs) - len(survivors),
        consistency_bonus=consistency,
        diversity_bonus=diversity,
        member_scores={o.name: o.score for o in outputs},
    )


class EnsembleFusion:
    """
    Concurrent ensemble evaluator.

    Each cycle gets its own short-lived pool so a hung member can never
    hold a worker that the next cycle needs.
    """

    def __init__(self, registry: PredictorRegistry, config: EnsembleConfig = None):
        self.registry = registry
        self.config = config or EnsembleConfig()

    def predict(self, symbol: str, features: Any, timeout_s: Optional[float] = None) -> EnsembleResult:
        """
        Evaluate all members and aggregate.

        Args:
            symbol: Trading symbol
            features: FeatureVector or mapping
            timeout_s: Remaining cycle budget; the effective timeout is the
                smaller of this and member_timeout_s

        Returns:
            EnsembleResult (prediction is None if no member answered)
        """
        start = time.perf_counter()
        fv = as_feature_vector(features)
        members = self.registry.snapshot()
        if not members:
            return EnsembleResult(prediction=None)

        timeout = self.config.member_timeout_s
        if timeout_s is not None:
            timeout = max(0.0, min(timeout, timeout_s))

        order = {name: i for i, (name, _) in enumerate(members)}
        outputs: List[MemberOutput] = []
        failures: List[MemberFailure] = []

        executor = ThreadPoolExecutor(
            max_workers=min(self.config.max_workers, len(members)),
            thread_name_prefix="Ensemble",
        )
        future_to_member = {
            executor.submit(call_member, name, predictor, symbol, fv): name
            for name, predictor in members
        }
        pending = set(future_to_member)

        try:
            for future in as_completed(future_to_member, timeout=timeout):
                pending.discard(future)
                self._collect(future, future_to_member[future], outputs, failures)
        except FuturesTimeout:
            for future in pending:
                name = future_to_member[future]
                if future.done():
                    self._collect(future, name, outputs, failures)
                else:
                    LOG.error(f"Predictor {name} timed out after {timeout:.3f}s for {symbol}")
                    failures.append(MemberFailure(name, 'timeout'))
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        outputs.sort(key=lambda o: order[o.name])
        failures.sort(key=lambda f: order[f.name])

        prediction = aggregate_members(outputs, attempted=len(members), config=self.config)
        elapsed_ms = (time.perf_counter() - start) * 1000

        if prediction is None:
            LOG.warning(f"No ensemble member answered for {symbol} ({len(failures)} failures)")
        else:
            LOG.debug(
                f"Ensemble {symbol}: score={prediction.score:.4f} conf={prediction.confidence:.3f} "
                f"quality={prediction.quality:.3f} members={prediction.member_count} "
                f"filtered={prediction.filtered_count} ({elapsed_ms:.1f}ms)"
            )

        return EnsembleResult(prediction, outputs, failures, elapsed_ms)

    @staticmethod
    def _collect(future, name: str, outputs: List[MemberOutput], failures: List[MemberFailure]):
        try:
            outputs.append(future.result())
        except MemberPredictionError as e:
            LOG.error(f"Predictor {name} rejected: {e.reason}")
            failures.append(MemberFailure(name, e.reason))
        except Exception as e:
            LOG.error(f"Predictor {name} execution failed: {e}")
            failures.append(MemberFailure(name, f"exception: {e}"))
