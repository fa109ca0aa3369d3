"""
Engine error types.

Only UnknownRegimeError is meant to reach the caller of an evaluation cycle.
Everything else is recovered inside the component that detects it.
"""


class RegimexError(Exception):
    """Base class for engine errors"""
    pass


class UnknownRegimeError(RegimexError):
    """Regime label has no adaptive threshold policy"""

    def __init__(self, label):
        self.label = label
        super().__init__(f"Unknown market regime: {label!r}")


class MemberPredictionError(RegimexError):
    """Ensemble member returned an unusable prediction"""

    def __init__(self, member: str, reason: str):
        self.member = member
        self.reason = reason
        super().__init__(f"Predictor {member} failed: {reason}")


class InvalidTransitionError(RegimexError):
    """Illegal position phase transition"""

    def __init__(self, current, target):
        self.current = current
        self.target = target
        super().__init__(f"Invalid position phase transition: {current} -> {target}")
