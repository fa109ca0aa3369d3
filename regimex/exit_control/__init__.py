"""
Stop-Loss / Take-Profit State Machine
"""

from regimex.exit_control.stop_loss import (
    ALLOWED_TRANSITIONS,
    ExitEvaluation,
    ExitEvent,
    ExitLayer,
    ExitLevels,
    ExitStateMachine,
    PositionPhase,
    StopLossMonitor,
    volatility_multiplier,
)

__all__ = [
    'ALLOWED_TRANSITIONS',
    'ExitEvaluation',
    'ExitEvent',
    'ExitLayer',
    'ExitLevels',
    'ExitStateMachine',
    'PositionPhase',
    'StopLossMonitor',
    'volatility_multiplier',
]
