"""
Ensemble Member Registry

Members are anything with `predict(symbol, features) -> (score, confidence, quality)`
or a plain callable with the same signature. Outputs are validated before
they reach aggregation: non-finite or out-of-range values raise
MemberPredictionError, which the fan-out converts into a MemberFailure.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
import logging
import math
import threading

from regimex.exceptions import MemberPredictionError
from regimex.schemas import FeatureVector

LOG = logging.getLogger(__name__)

PredictorFn = Callable[[str, FeatureVector], Tuple[float, float, float]]
Predictor = Union[PredictorFn, Any]


@dataclass(frozen=True)
class MemberOutput:
    """Validated prediction of one ensemble member"""
    name: str
    score: float  # [-1, 1]
    confidence: float  # [0, 1]
    quality: float  # [0, 1]

    def to_dict(self) -> dict:
        return {'name': self.name, 'score': self.score, 'confidence': self.confidence, 'quality': self.quality}


@dataclass(frozen=True)
class MemberFailure:
    """Member excluded from this cycle"""
    name: str
    reason: str

    def to_dict(self) -> dict:
        return {'name': self.name, 'reason': self.reason}


class PredictorRegistry:
    """
    Named ensemble members.

    Injected into EnsembleFusion; registration order is the aggregation order.
    """

    def __init__(self, predictors: Optional[Dict[str, Predictor]] = None):
        self._predictors: Dict[str, Predictor] = {}
        self._lock = threading.RLock()
        for name, predictor in (predictors or {}).items():
            self.register(name, predictor)

    def register(self, name: str, predictor: Predictor):
        if not (callable(predictor) or callable(getattr(predictor, 'predict', None))):
            raise TypeError(f"Predictor {name} must be callable or expose predict()")
        with self._lock:
            self._predictors[name] = predictor
            LOG.info(f"Predictor {name} registered")

    def unregister(self, name: str):
        with self._lock:
            if name in self._predictors:
                del self._predictors[name]
                LOG.info(f"Predictor {name} unregistered")

    def get(self, name: str) -> Optional[Predictor]:
        with self._lock:
            return self._predictors.get(name)

    def names(self) -> List[str]:
        with self._lock:
            return list(self._predictors)

    def snapshot(self) -> List[Tuple[str, Predictor]]:
        """Stable copy for one cycle"""
        with self._lock:
            return list(self._predictors.items())

    def __len__(self) -> int:
        with self._lock:
            return len(self._predictors)

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._predictors


def validate_output(name: str, raw: Any) -> MemberOutput:
    """
    Check a raw (score, confidence, quality) triple.

    Raises:
        MemberPredictionError: malformed, non-finite or out-of-range output
    """
    try:
        score, confidence, quality = (float(v) for v in raw)
    except (TypeError, ValueError):
        raise MemberPredictionError(name, f"malformed output: {raw!r}") from None

    if not all(math.isfinite(v) for v in (score, confidence, quality)):
        raise MemberPredictionError(name, f"non-finite output: {(score, confidence, quality)}")
    if not -1.0 <= score <= 1.0:
        raise MemberPredictionError(name, f"score {score} outside [-1, 1]")
    if not 0.0 <= confidence <= 1.0:
        raise MemberPredictionError(name, f"confidence {confidence} outside [0, 1]")
    if not 0.0 <= quality <= 1.0:
        raise MemberPredictionError(name, f"quality {quality} outside [0, 1]")

    return MemberOutput(name, score, confidence, quality)


def call_member(name: str, predictor: Predictor, symbol: str, features: FeatureVector) -> MemberOutput:
    """Invoke one member and validate its output"""
    predict = getattr(predictor, 'predict', None)
    if not callable(predict):
        predict = predictor
    return validate_output(name, predict(symbol, features))
