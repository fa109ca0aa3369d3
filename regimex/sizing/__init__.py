"""
Position Sizing & Risk Manager
"""

from regimex.sizing.position_sizing import (
    DYNAMIC_RULES,
    REGIME_RULES,
    RISK_RULES,
    SIGNAL_QUALITY_RULES,
    PositionSizer,
    SizingContext,
)

__all__ = [
    'DYNAMIC_RULES',
    'REGIME_RULES',
    'RISK_RULES',
    'SIGNAL_QUALITY_RULES',
    'PositionSizer',
    'SizingContext',
]
