"""
Regimex - Adaptive Regime-Aware Trading Decision Engine

Per-symbol decision cycle:
    features -> regime -> {rule signal, ensemble} -> fusion -> sizing -> exits
"""

__version__ = "1.0.0"

from regimex.config import (
    EngineConfig,
    EnsembleConfig,
    ExitConfig,
    FusionConfig,
    PerformanceConfig,
    RegimeConfig,
    RuleEngineConfig,
    SizingConfig,
)
from regimex.exceptions import (
    InvalidTransitionError,
    MemberPredictionError,
    RegimexError,
    UnknownRegimeError,
)
from regimex.schemas import (
    AllocationDecision,
    EnsemblePrediction,
    FeatureVector,
    FusionDecision,
    PerformanceHistory,
    PositionSide,
    PositionState,
    RegimeClassification,
    RegimeLabel,
    SignalPrediction,
    TradeAction,
)
from regimex.ensemble import PredictorRegistry
from regimex.exit_control import ExitStateMachine, PositionPhase, StopLossMonitor
from regimex.performance import PerformanceStore
from regimex.engine import DecisionEngine, DecisionOutput, DecisionRequest

__all__ = [
    '__version__',
    'EngineConfig',
    'EnsembleConfig',
    'ExitConfig',
    'FusionConfig',
    'PerformanceConfig',
    'RegimeConfig',
    'RuleEngineConfig',
    'SizingConfig',
    'InvalidTransitionError',
    'MemberPredictionError',
    'RegimexError',
    'UnknownRegimeError',
    'AllocationDecision',
    'EnsemblePrediction',
    'FeatureVector',
    'FusionDecision',
    'PerformanceHistory',
    'PositionSide',
    'PositionState',
    'RegimeClassification',
    'RegimeLabel',
    'SignalPrediction',
    'TradeAction',
    'PredictorRegistry',
    'ExitStateMachine',
    'PositionPhase',
    'StopLossMonitor',
    'PerformanceStore',
    'DecisionEngine',
    'DecisionOutput',
    'DecisionRequest',
]
