"""
Performance History Store
"""

from regimex.performance.performance_store import PerformanceStore, TradeRecord, TradeTotals

__all__ = ['PerformanceStore', 'TradeRecord', 'TradeTotals']
