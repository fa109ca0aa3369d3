"""
Decision Engine Data Model

Typed structures shared by every stage of an evaluation cycle:
feature vector, regime labels, predictions, fusion decisions, allocations,
position state and per-symbol performance history.

Input snapshots (FeatureVector, PositionState, PerformanceHistory) are frozen.
Stage outputs are plain dataclasses with to_dict() for logging collaborators.
"""

import math
from dataclasses import dataclass, field, fields
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

import numpy as np

from regimex.exceptions import UnknownRegimeError

FEATURE_SCHEMA_VERSION = "1.0.0"


class RegimeLabel(str, Enum):
    """
    Market regime classification.

    EXTREME_BEAR is assigned to very quiet markets with an extreme RSI
    reading (exhaustion), not to crashes. The label is kept for
    compatibility with the threshold policy keyed on it.
    """
    EXTREME_BEAR = "extreme_bear"
    SIDEWAYS = "sideways"
    WEAK_BULL = "weak_bull"
    WEAK_BEAR = "weak_bear"
    STRONG_BULL = "strong_bull"
    STRONG_BEAR = "strong_bear"

    @classmethod
    def parse(cls, value: Any) -> 'RegimeLabel':
        """Resolve a label, raising UnknownRegimeError for anything unrecognised"""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise UnknownRegimeError(value) from None

    @property
    def is_bear(self) -> bool:
        return self in (RegimeLabel.EXTREME_BEAR, RegimeLabel.WEAK_BEAR, RegimeLabel.STRONG_BEAR)

    @property
    def is_bull(self) -> bool:
        return self in (RegimeLabel.WEAK_BULL, RegimeLabel.STRONG_BULL)


class TradeAction(str, Enum):
    """Terminal action of an evaluation cycle"""
    BUY = "buy"
    SELL = "sell"
    HOLD = "hold"
    SHORT = "short"
    COVER = "cover"


class PositionSide(str, Enum):
    """Side of the open position"""
    FLAT = "flat"
    LONG = "long"
    SHORT = "short"


def _finite_or_none(value: Any) -> Optional[float]:
    """Coerce to float; NaN, Inf and non-numeric values count as absent"""
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


@dataclass(frozen=True)
class FeatureVector:
    """
    Per-symbol market feature snapshot.

    Core indicators are fixed, optional fields. Absent indicators are None and
    must be skipped by consumers, never read as zero. Anything outside the
    core schema lives in the read-only `extras` side-table.
    """

    # Trend
    trend_5: Optional[float] = None
    trend_20: Optional[float] = None
    trend_50: Optional[float] = None
    trend_strength: Optional[float] = None
    trend_consistency: Optional[float] = None

    # Oscillators
    rsi_14: Optional[float] = None
    stoch_k: Optional[float] = None
    williams_r: Optional[float] = None
    macd_signal: Optional[float] = None

    # Volatility / range
    volatility_20: Optional[float] = None
    atr_14: Optional[float] = None
    bollinger_position: Optional[float] = None

    # Momentum
    momentum_10: Optional[float] = None
    price_momentum_3: Optional[float] = None
    price_momentum_5: Optional[float] = None
    price_acceleration: Optional[float] = None
    price_momentum_normalized: Optional[float] = None
    momentum_divergence: Optional[float] = None
    price_jump_ratio: Optional[float] = None
    price_change_24h: Optional[float] = None

    # Volume
    volume_trend: Optional[float] = None
    volume_ratio: Optional[float] = None
    volume_rsi: Optional[float] = None
    volume_price_trend: Optional[float] = None
    volume_volatility: Optional[float] = None
    volume_price_ratio: Optional[float] = None

    # Market structure
    support_level: Optional[float] = None
    resistance_level: Optional[float] = None
    market_phase: Optional[float] = None

    extras: Mapping[str, float] = field(default_factory=lambda: MappingProxyType({}))
    schema_version: str = FEATURE_SCHEMA_VERSION

    @classmethod
    def from_mapping(cls, values: Optional[Mapping[str, Any]]) -> 'FeatureVector':
        """Build from a name -> value mapping, routing unknown names to extras"""
        core: Dict[str, float] = {}
        extras: Dict[str, float] = {}
        for name, raw in (values or {}).items():
            value = _finite_or_none(raw)
            if value is None:
                continue
            if name in CORE_FEATURES:
                core[name] = value
            else:
                extras[name] = value
        return cls(**core, extras=MappingProxyType(extras))

    def get(self, name: str, default: Optional[float] = None) -> Optional[float]:
        if name in CORE_FEATURES:
            value = getattr(self, name)
        else:
            value = self.extras.get(name)
        return default if value is None else value

    def has(self, name: str) -> bool:
        return self.get(name) is not None

    def present(self) -> List[str]:
        """Names of all present features (core first, then extras)"""
        names = [name for name in CORE_FEATURES if getattr(self, name) is not None]
        names.extend(self.extras.keys())
        return names

    def to_dict(self) -> dict:
        """Present features only"""
        return {name: float(self.get(name)) for name in self.present()}


CORE_FEATURES = tuple(
    f.name for f in fields(FeatureVector) if f.name not in ('extras', 'schema_version')
)


def as_feature_vector(features: Any) -> FeatureVector:
    """Accept a FeatureVector, a plain mapping, or None"""
    if isinstance(features, FeatureVector):
        return features
    return FeatureVector.from_mapping(features)


@dataclass(frozen=True)
class PositionState:
    """Open position as seen by the engine (owned by the execution side)"""

    has_position: bool = False
    side: PositionSide = PositionSide.FLAT
    entry_price: float = 0.0
    current_price: float = 0.0
    hold_duration: int = 0  # periods
    peak_profit_pct: Optional[float] = None  # best unrealised profit seen so far

    def __post_init__(self):
        side = PositionSide(self.side)
        if not self.has_position:
            side = PositionSide.FLAT
        elif side == PositionSide.FLAT:
            side = PositionSide.LONG
        object.__setattr__(self, 'side', side)

    @classmethod
    def flat(cls, current_price: float = 0.0) -> 'PositionState':
        return cls(has_position=False, current_price=current_price)

    @classmethod
    def long(cls, entry_price: float, current_price: float, hold_duration: int = 0,
             peak_profit_pct: Optional[float] = None) -> 'PositionState':
        return cls(True, PositionSide.LONG, entry_price, current_price, hold_duration, peak_profit_pct)

    @classmethod
    def short(cls, entry_price: float, current_price: float, hold_duration: int = 0,
              peak_profit_pct: Optional[float] = None) -> 'PositionState':
        return cls(True, PositionSide.SHORT, entry_price, current_price, hold_duration, peak_profit_pct)

    @property
    def is_long(self) -> bool:
        return self.side == PositionSide.LONG

    @property
    def is_short(self) -> bool:
        return self.side == PositionSide.SHORT

    @property
    def unrealized_pnl_pct(self) -> float:
        """Side-aware unrealised P&L as a fraction of entry"""
        if not self.has_position or self.entry_price <= 0:
            return 0.0
        change = (self.current_price - self.entry_price) / self.entry_price
        return -change if self.is_short else change

    def to_dict(self) -> dict:
        return {
            'has_position': bool(self.has_position),
            'side': self.side.value,
            'entry_price': float(self.entry_price),
            'current_price': float(self.current_price),
            'hold_duration': int(self.hold_duration),
            'peak_profit_pct': float(self.peak_profit_pct) if self.peak_profit_pct is not None else None,
            'unrealized_pnl_pct': float(self.unrealized_pnl_pct),
        }


@dataclass(frozen=True)
class PerformanceHistory:
    """Realised per-symbol trading performance"""

    win_rate: float = 0.5
    sharpe_ratio: float = 0.0
    max_drawdown: float = 0.1
    total_trades: int = 0
    total_pnl: float = 0.0
    avg_win: Optional[float] = None
    avg_loss: Optional[float] = None
    rule_accuracy: Optional[float] = None
    ml_accuracy: Optional[float] = None

    def __post_init__(self):
        object.__setattr__(self, 'win_rate', float(np.clip(self.win_rate, 0.0, 1.0)))
        object.__setattr__(self, 'max_drawdown', float(np.clip(self.max_drawdown, 0.0, 1.0)))
        for name in ('rule_accuracy', 'ml_accuracy'):
            value = getattr(self, name)
            if value is not None:
                object.__setattr__(self, name, float(np.clip(value, 0.0, 1.0)))

    @classmethod
    def neutral(cls) -> 'PerformanceHistory':
        """Defaults used when a symbol has no trading history"""
        return cls()

    @property
    def has_history(self) -> bool:
        return self.total_trades > 0

    def to_dict(self) -> dict:
        return {
            'win_rate': float(self.win_rate),
            'sharpe_ratio': float(self.sharpe_ratio),
            'max_drawdown': float(self.max_drawdown),
            'total_trades': int(self.total_trades),
            'total_pnl': float(self.total_pnl),
            'avg_win': self.avg_win,
            'avg_loss': self.avg_loss,
            'rule_accuracy': self.rule_accuracy,
            'ml_accuracy': self.ml_accuracy,
        }


@dataclass
class RegimeClassification:
    """Regime classifier output"""

    label: RegimeLabel
    confidence: float  # [0, 1]
    score: float  # composite regime score [0, 1]
    components: Dict[str, float] = field(default_factory=dict)
    indicators: Dict[str, float] = field(default_factory=dict)
    decision_path: str = ""

    def __post_init__(self):
        self.confidence = float(np.clip(self.confidence, 0.0, 1.0))
        self.score = float(np.clip(self.score, 0.0, 1.0))

    def to_dict(self) -> dict:
        return {
            'label': self.label.value,
            'confidence': float(self.confidence),
            'score': float(self.score),
            'components': {k: float(v) for k, v in self.components.items()},
            'indicators': {k: float(v) for k, v in self.indicators.items()},
            'decision_path': self.decision_path,
        }


@dataclass
class SignalPrediction:
    """Directional score with confidence"""

    score: float  # [-1, 1]
    confidence: float  # [0, 1]

    def __post_init__(self):
        self.score = float(np.clip(self.score, -1.0, 1.0))
        self.confidence = float(np.clip(self.confidence, 0.0, 1.0))

    def to_dict(self) -> dict:
        return {'score': float(self.score), 'confidence': float(self.confidence)}


@dataclass
class EnsemblePrediction:
    """Aggregated ensemble output"""

    score: float
    confidence: float
    quality: float  # predictor-health proxy
    member_count: int = 0
    filtered_count: int = 0
    consistency_bonus: float = 1.0
    diversity_bonus: float = 1.0
    member_scores: Dict[str, float] = field(default_factory=dict)

    def __post_init__(self):
        self.score = float(np.clip(self.score, -1.0, 1.0))
        self.confidence = float(np.clip(self.confidence, 0.0, 1.0))
        self.quality = float(np.clip(self.quality, 0.0, 1.0))

    def to_dict(self) -> dict:
        return {
            'score': float(self.score),
            'confidence': float(self.confidence),
            'quality': float(self.quality),
            'member_count': int(self.member_count),
            'filtered_count': int(self.filtered_count),
            'consistency_bonus': float(self.consistency_bonus),
            'diversity_bonus': float(self.diversity_bonus),
            'member_scores': {k: float(v) for k, v in self.member_scores.items()},
        }


@dataclass
class FusionDecision:
    """Terminal action/confidence of the fusion stage"""

    action: TradeAction
    confidence: float
    combined_score: float = 0.0
    ml_weight: float = 0.0
    rule_weight: float = 1.0
    thresholds: Dict[str, Optional[float]] = field(default_factory=dict)
    adjustments: List[dict] = field(default_factory=list)
    source: str = "fusion"  # fusion | rule_only | exit_override

    def __post_init__(self):
        self.action = TradeAction(self.action)
        self.confidence = float(np.clip(self.confidence, 0.0, 1.0))

    def to_dict(self) -> dict:
        return {
            'action': self.action.value,
            'confidence': float(self.confidence),
            'combined_score': float(self.combined_score),
            'ml_weight': float(self.ml_weight),
            'rule_weight': float(self.rule_weight),
            'thresholds': dict(self.thresholds),
            'adjustments': list(self.adjustments),
            'source': self.source,
        }


@dataclass
class AllocationDecision:
    """Position sizing output"""

    position_fraction: float
    risk_adjustment_factor: float = 1.0
    units: float = 0.0
    breakdown: Dict[str, Any] = field(default_factory=dict)
    rejection_reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'position_fraction': float(self.position_fraction),
            'risk_adjustment_factor': float(self.risk_adjustment_factor),
            'units': float(self.units),
            'breakdown': dict(self.breakdown),
            'rejection_reason': self.rejection_reason,
        }
