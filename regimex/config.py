"""
Decision Engine Configuration

Thresholds, weights and operational limits for every stage of the cycle.

Out-of-bounds values are clamped into range and logged instead of rejected,
so a bad deployment config degrades to the nearest sane value rather than
taking the engine down.
"""

from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional, Tuple
import hashlib
import json
import logging

LOG = logging.getLogger(__name__)


def _clamp_field(config, name: str, low: float, high: float):
    """Clamp a numeric config field in place, warning when it moves"""
    value = getattr(config, name)
    clamped = min(max(value, low), high)
    if clamped != value:
        LOG.warning(f"{type(config).__name__}.{name}={value} outside [{low}, {high}], clamped to {clamped}")
        setattr(config, name, clamped)


@dataclass
class RegimeConfig:
    """Configuration for market regime classification"""

    # Composite score weights (normalised to sum to 1)
    trend_weight: float = 0.40
    volatility_weight: float = 0.25
    rsi_weight: float = 0.15
    momentum_weight: float = 0.10
    volume_weight: float = 0.10

    # Decision list thresholds
    bear_trend_threshold: float = -0.005  # trend direction that arms the bear checks
    strong_trend_threshold: float = 0.02
    quiet_volatility: float = 0.005  # below this the market is considered dormant
    quiet_trend_strength: float = 0.02
    bull_volume_ratio: float = 1.2

    def __post_init__(self):
        total = (self.trend_weight + self.volatility_weight + self.rsi_weight
                 + self.momentum_weight + self.volume_weight)
        if total <= 0:
            LOG.warning("RegimeConfig weights sum to zero, restoring defaults")
            self.trend_weight, self.volatility_weight = 0.40, 0.25
            self.rsi_weight, self.momentum_weight, self.volume_weight = 0.15, 0.10, 0.10
        elif abs(total - 1.0) > 0.001:
            LOG.warning(f"RegimeConfig weights sum to {total:.3f}, normalising")
            self.trend_weight /= total
            self.volatility_weight /= total
            self.rsi_weight /= total
            self.momentum_weight /= total
            self.volume_weight /= total

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class RuleEngineConfig:
    """Configuration for the rule-based signal engine"""

    min_factors: int = 5  # fewer present features -> hold
    weight_min: float = -2.0
    weight_max: float = 2.0
    weight_floor: float = 0.001  # |w| below this is floored to +/- floor

    confidence_scale: float = 2.0
    confidence_cap: float = 0.95

    # Consistency gate
    min_consistency_signals: int = 3  # voting indicators needed for a consistency read
    insufficient_consistency_ratio: float = 0.8

    # Threshold market-state multipliers are clamped to this band
    threshold_multiplier_min: float = 0.3
    threshold_multiplier_max: float = 2.0

    # Optional per-feature seasonal multipliers (identity when empty)
    seasonal_factors: Dict[str, float] = field(default_factory=dict)

    def __post_init__(self):
        _clamp_field(self, 'weight_floor', 0.0, 0.1)
        _clamp_field(self, 'confidence_cap', 0.0, 1.0)
        _clamp_field(self, 'insufficient_consistency_ratio', 0.5, 1.4)
        if self.weight_min >= self.weight_max:
            LOG.warning(f"RuleEngineConfig weight bounds inverted ({self.weight_min}, {self.weight_max}), restoring defaults")
            self.weight_min, self.weight_max = -2.0, 2.0
        if self.threshold_multiplier_min > self.threshold_multiplier_max:
            LOG.warning("RuleEngineConfig threshold multiplier band inverted, restoring defaults")
            self.threshold_multiplier_min, self.threshold_multiplier_max = 0.3, 2.0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class EnsembleConfig:
    """Configuration for ensemble member aggregation"""

    member_timeout_s: float = 0.5
    max_workers: int = 4

    outlier_std_multiplier: float = 2.5
    outlier_min_std: float = 0.05  # sigma floor when the other members agree exactly
    min_member_weight: float = 0.05

    # Predictor-type heuristics keyed by registered member name
    type_multipliers: Dict[str, float] = field(default_factory=lambda: {
        'random_forest': 1.1,
        'gradient_boost': 1.0,
        'stacking': 0.9,
    })
    # Members whose near-zero outputs mean "no opinion" rather than "neutral"
    sparse_signal_members: List[str] = field(default_factory=lambda: ['transformer'])

    single_member_confidence_discount: float = 0.9

    def __post_init__(self):
        _clamp_field(self, 'member_timeout_s', 0.001, 60.0)
        _clamp_field(self, 'outlier_std_multiplier', 1.0, 10.0)
        _clamp_field(self, 'outlier_min_std', 0.0, 1.0)
        _clamp_field(self, 'min_member_weight', 0.0, 1.0)
        if self.max_workers < 1:
            LOG.warning(f"EnsembleConfig.max_workers={self.max_workers} invalid, using 1")
            self.max_workers = 1

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class FusionConfig:
    """Configuration for rule/ensemble fusion"""

    base_ml_weight: float = 0.7
    base_rule_weight: float = 0.3

    # Near-zero ensemble scores hand most of the weight to the rules
    weak_ensemble_score: float = 0.1
    weak_ensemble_ml_weight: float = 0.2
    weak_ensemble_rule_weight: float = 0.8

    confident_rule_threshold: float = 0.85
    confident_rule_boost: float = 0.2
    confident_rule_cap: float = 0.7

    ml_action_threshold: float = 0.2  # ensemble score beyond this counts as buy/sell
    rule_action_score: float = 0.8

    # Regime ML weight ceilings; excess moves to the rule side
    ml_weight_ceiling: Dict[str, float] = field(default_factory=lambda: {
        'extreme_bear': 0.4,
        'weak_bear': 0.4,
        'strong_bear': 0.4,
    })

    trend_lookback: int = 20

    def __post_init__(self):
        _clamp_field(self, 'base_ml_weight', 0.0, 1.0)
        _clamp_field(self, 'base_rule_weight', 0.0, 1.0)
        if self.base_ml_weight + self.base_rule_weight <= 0:
            LOG.warning("FusionConfig base weights sum to zero, restoring 0.7/0.3")
            self.base_ml_weight, self.base_rule_weight = 0.7, 0.3
        for regime, ceiling in list(self.ml_weight_ceiling.items()):
            if not 0.0 <= ceiling <= 1.0:
                clamped = min(max(ceiling, 0.0), 1.0)
                LOG.warning(f"FusionConfig ML ceiling for {regime}={ceiling} clamped to {clamped}")
                self.ml_weight_ceiling[regime] = clamped

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SizingConfig:
    """Configuration for position sizing"""

    min_allocation: float = 0.0
    max_allocation: float = 0.3
    total_capital: Optional[float] = None  # None -> size against available cash

    # Regime multiplier band
    regime_multiplier_min: float = 0.5
    regime_multiplier_max: float = 1.3

    # Half-Kelly
    kelly_scale: float = 0.5
    kelly_min: float = 0.1
    kelly_max: float = 0.5
    kelly_fallback: float = 0.25
    default_win_rate: float = 0.5
    default_reward_risk: float = 2.0

    # Risk adjustment band
    risk_adjustment_min: float = 0.1
    risk_adjustment_max: float = 2.0

    # Simplified VaR ceiling: fraction * vol * multiplier <= limit
    var_limit: float = 0.02
    var_multiplier: float = 2.0
    default_volatility: float = 0.03

    # Signal quality band
    signal_quality_min: float = 0.5
    signal_quality_max: float = 1.5

    def __post_init__(self):
        _clamp_field(self, 'max_allocation', 0.0, 1.0)
        _clamp_field(self, 'min_allocation', 0.0, self.max_allocation)
        _clamp_field(self, 'kelly_min', 0.0, 1.0)
        _clamp_field(self, 'kelly_max', self.kelly_min, 1.0)
        _clamp_field(self, 'kelly_fallback', self.kelly_min, self.kelly_max)
        _clamp_field(self, 'var_limit', 0.0001, 1.0)
        _clamp_field(self, 'default_volatility', 0.0001, 1.0)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ExitConfig:
    """Configuration for the stop-loss / take-profit layers"""

    base_stop_loss: float = -0.08
    stop_loss_min: float = -0.25
    stop_loss_max: float = -0.03

    base_take_profit: float = 0.06
    take_profit_min: float = 0.02
    take_profit_max: float = 0.25

    atr_multiplier: float = 2.0
    low_vol_atr_multiplier: float = 1.5
    support_breach_factor: float = 0.95

    max_hold_periods: int = 30
    bear_hold_factor: float = 0.7

    trailing_activation: float = 0.03

    # (profit above, fraction to sell), most aggressive tier first
    partial_take_profit_tiers: List[Tuple[float, float]] = field(default_factory=lambda: [
        (0.20, 0.5),
        (0.10, 0.3),
        (0.05, 0.2),
    ])

    # Loss-depth severity tiers and their exit confidence
    severity_thresholds: Tuple[float, float, float] = (-0.02, -0.05, -0.10)
    severity_confidences: Tuple[float, float, float] = (0.85, 0.95, 0.99)

    def __post_init__(self):
        _clamp_field(self, 'base_stop_loss', -1.0, 0.0)
        _clamp_field(self, 'stop_loss_max', -1.0, 0.0)
        _clamp_field(self, 'stop_loss_min', -1.0, self.stop_loss_max)
        _clamp_field(self, 'take_profit_min', 0.0, 1.0)
        _clamp_field(self, 'take_profit_max', self.take_profit_min, 1.0)
        if self.max_hold_periods < 1:
            LOG.warning(f"ExitConfig.max_hold_periods={self.max_hold_periods} invalid, using 30")
            self.max_hold_periods = 30

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class PerformanceConfig:
    """Configuration for the per-symbol performance store"""

    accuracy_window: int = 50  # trades used for rule/ML accuracy
    history_window: int = 500  # trades kept per symbol for Sharpe, drawdown and accuracy
    drain_interval_s: float = 1.0
    risk_free_rate: float = 0.0
    periods_per_year: int = 252

    def __post_init__(self):
        if self.accuracy_window < 1:
            LOG.warning(f"PerformanceConfig.accuracy_window={self.accuracy_window} invalid, using 50")
            self.accuracy_window = 50
        _clamp_field(self, 'history_window', self.accuracy_window, 1_000_000)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class EngineConfig:
    """
    Master configuration for the decision engine.

    All thresholds, parameters, and operational settings.
    """

    config_version: str = "1.0.0"

    # Sub-configurations
    regime: RegimeConfig = field(default_factory=RegimeConfig)
    rule_engine: RuleEngineConfig = field(default_factory=RuleEngineConfig)
    ensemble: EnsembleConfig = field(default_factory=EnsembleConfig)
    fusion: FusionConfig = field(default_factory=FusionConfig)
    sizing: SizingConfig = field(default_factory=SizingConfig)
    exits: ExitConfig = field(default_factory=ExitConfig)
    performance: PerformanceConfig = field(default_factory=PerformanceConfig)

    # Whole-cycle latency budget; ensemble members share what is left of it
    cycle_budget_ms: float = 2000.0
    max_parallel_symbols: int = 8

    def to_dict(self) -> dict:
        """Convert configuration to dictionary"""
        return {
            'config_version': self.config_version,
            'cycle_budget_ms': self.cycle_budget_ms,
            'max_parallel_symbols': self.max_parallel_symbols,
            'regime': self.regime.to_dict(),
            'rule_engine': self.rule_engine.to_dict(),
            'ensemble': self.ensemble.to_dict(),
            'fusion': self.fusion.to_dict(),
            'sizing': self.sizing.to_dict(),
            'exits': self.exits.to_dict(),
            'performance': self.performance.to_dict(),
        }

    def get_config_hash(self) -> str:
        """
        Generate deterministic hash of configuration.
        Used for versioning and reproducibility.
        """
        config_str = json.dumps(self.to_dict(), sort_keys=True)
        return hashlib.sha256(config_str.encode()).hexdigest()[:16]

    @classmethod
    def from_dict(cls, config_dict: dict) -> 'EngineConfig':
        """Create config from dictionary"""
        exits = dict(config_dict.get('exits', {}))
        for key in ('severity_thresholds', 'severity_confidences'):
            if key in exits:
                exits[key] = tuple(exits[key])
        if 'partial_take_profit_tiers' in exits:
            exits['partial_take_profit_tiers'] = [tuple(t) for t in exits['partial_take_profit_tiers']]

        return cls(
            config_version=config_dict.get('config_version', '1.0.0'),
            cycle_budget_ms=config_dict.get('cycle_budget_ms', 2000.0),
            max_parallel_symbols=config_dict.get('max_parallel_symbols', 8),
            regime=RegimeConfig(**config_dict.get('regime', {})),
            rule_engine=RuleEngineConfig(**config_dict.get('rule_engine', {})),
            ensemble=EnsembleConfig(**config_dict.get('ensemble', {})),
            fusion=FusionConfig(**config_dict.get('fusion', {})),
            sizing=SizingConfig(**config_dict.get('sizing', {})),
            exits=ExitConfig(**exits),
            performance=PerformanceConfig(**config_dict.get('performance', {})),
        )
