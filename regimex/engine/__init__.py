"""
Decision Engine

Per-cycle orchestration of classifier, rule engine, ensemble, fusion,
sizing and exit layers.
"""

from regimex.engine.decision_engine import DecisionEngine, DecisionOutput, DecisionRequest

__all__ = ['DecisionEngine', 'DecisionOutput', 'DecisionRequest']
