"""
Per-Symbol Performance Store

Immutable PerformanceHistory snapshots with a single-writer update path.

Writers only append closed trades to a buffer; one drainer aggregates the
buffer with pandas and swaps in fresh snapshots. Readers always see a
complete snapshot and never wait on aggregation.

Flow:
    record_trade() -> deque buffer -> drain() -> running totals + bounded trade window
                   -> risk_stats -> new snapshot map (atomic swap)

Win rate, average win/loss and total P&L cover every trade a symbol has
closed. Sharpe, drawdown and accuracy use the last history_window trades.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional
import logging
import threading

import numpy as np
import pandas as pd

from regimex.config import PerformanceConfig
from regimex.risk_stats.performance_ratios import max_drawdown, sharpe_ratio
from regimex.schemas import PerformanceHistory

LOG = logging.getLogger(__name__)

TRADE_COLUMNS = ['symbol', 'pnl_pct', 'rule_correct', 'ml_correct', 'timestamp']


def _as_float(flag: Optional[bool]) -> float:
    return np.nan if flag is None else float(bool(flag))


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TradeRecord:
    """One closed trade"""
    symbol: str
    pnl_pct: float
    rule_correct: Optional[bool] = None
    ml_correct: Optional[bool] = None
    timestamp: datetime = field(default_factory=_utc_now)

    def to_dict(self) -> dict:
        return {
            'symbol': self.symbol,
            'pnl_pct': float(self.pnl_pct),
            'rule_correct': _as_float(self.rule_correct),
            'ml_correct': _as_float(self.ml_correct),
            'timestamp': self.timestamp,
        }


@dataclass(frozen=True)
class TradeTotals:
    """Running aggregates over every trade a symbol has closed"""
    trades: int = 0
    total_pnl: float = 0.0
    wins: int = 0
    win_pnl: float = 0.0
    losses: int = 0
    loss_pnl: float = 0.0

    def add(self, pnl: pd.Series) -> 'TradeTotals':
        wins = pnl[pnl > 0]
        losses = pnl[pnl < 0]
        return TradeTotals(
            trades=self.trades + len(pnl),
            total_pnl=self.total_pnl + float(pnl.sum()),
            wins=self.wins + len(wins),
            win_pnl=self.win_pnl + float(wins.sum()),
            losses=self.losses + len(losses),
            loss_pnl=self.loss_pnl + float(losses.sum()),
        )


class PerformanceStore:
    """
    Per-symbol trading performance.

    Injected into the decision engine; there is no module-level instance.
    """

    def __init__(self, config: PerformanceConfig = None):
        self.config = config or PerformanceConfig()

        # Snapshot map is replaced wholesale, never mutated in place
        self._snapshots: Dict[str, PerformanceHistory] = {}

        # Append-only update buffer
        self._buffer: deque = deque()
        self._buffer_lock = threading.Lock()

        # Drainer-owned state
        self._drain_lock = threading.Lock()
        self._trades: Dict[str, pd.DataFrame] = {}
        self._totals: Dict[str, TradeTotals] = {}

        self._drain_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    def get(self, symbol: str) -> PerformanceHistory:
        """Latest snapshot, neutral defaults for unknown symbols"""
        return self._snapshots.get(symbol) or PerformanceHistory.neutral()

    def symbols(self) -> List[str]:
        return list(self._snapshots)

    def recent_trades(self, symbol: str) -> pd.DataFrame:
        """Copy of the retained trade window for a symbol"""
        with self._drain_lock:
            frame = self._trades.get(symbol)
            return pd.DataFrame(columns=TRADE_COLUMNS) if frame is None else frame.copy()

    @property
    def pending(self) -> int:
        with self._buffer_lock:
            return len(self._buffer)

    # ------------------------------------------------------------------
    # Writers
    # ------------------------------------------------------------------

    def record_trade(
        self,
        symbol: str,
        pnl_pct: float,
        rule_correct: Optional[bool] = None,
        ml_correct: Optional[bool] = None,
    ):
        """Queue a closed trade; visible to readers after the next drain"""
        record = TradeRecord(symbol, float(pnl_pct), rule_correct, ml_correct)
        with self._buffer_lock:
            self._buffer.append(record)

    def seed(self, symbol: str, history: PerformanceHistory):
        """
        Install externally computed history for a symbol.

        Recorded trades for the symbol replace the seed on the next drain.
        """
        with self._drain_lock:
            snapshots = dict(self._snapshots)
            snapshots[symbol] = history
            self._snapshots = snapshots
        LOG.info(f"Performance history seeded for {symbol} ({history.total_trades} trades)")

    # ------------------------------------------------------------------
    # Drainer
    # ------------------------------------------------------------------

    def drain(self) -> int:
        """
        Aggregate buffered trades into new snapshots.

        Returns:
            Number of trades drained
        """
        with self._drain_lock:
            with self._buffer_lock:
                pending = list(self._buffer)
                self._buffer.clear()

            if not pending:
                return 0

            batch = pd.DataFrame([record.to_dict() for record in pending], columns=TRADE_COLUMNS)
            snapshots = dict(self._snapshots)

            for symbol, trades in batch.groupby('symbol', sort=False):
                totals = self._totals.get(symbol, TradeTotals()).add(trades['pnl_pct'].astype(float))
                self._totals[symbol] = totals

                previous = self._trades.get(symbol)
                frame = trades if previous is None else pd.concat([previous, trades], ignore_index=True)
                frame = frame.tail(self.config.history_window).reset_index(drop=True)
                self._trades[symbol] = frame

                snapshots[symbol] = self.summarise(frame, totals)

            self._snapshots = snapshots

        LOG.debug(f"Drained {len(pending)} trades across {batch['symbol'].nunique()} symbols")
        return len(pending)

    def summarise(self, trades: pd.DataFrame, totals: Optional[TradeTotals] = None) -> PerformanceHistory:
        """
        PerformanceHistory for one symbol.

        Args:
            trades: Retained trade window (ratios and accuracy)
            totals: Running aggregates over all trades; derived from trades when None
        """
        pnl = trades['pnl_pct'].astype(float)
        if totals is None:
            totals = TradeTotals().add(pnl)
        recent = trades.tail(self.config.accuracy_window)

        return PerformanceHistory(
            win_rate=totals.wins / totals.trades if totals.trades else 0.5,
            sharpe_ratio=sharpe_ratio(pnl, self.config.risk_free_rate, self.config.periods_per_year),
            max_drawdown=max_drawdown(pnl),
            total_trades=totals.trades,
            total_pnl=totals.total_pnl,
            avg_win=totals.win_pnl / totals.wins if totals.wins else None,
            avg_loss=abs(totals.loss_pnl) / totals.losses if totals.losses else None,
            rule_accuracy=self._accuracy(recent['rule_correct']),
            ml_accuracy=self._accuracy(recent['ml_correct']),
        )

    @staticmethod
    def _accuracy(flags: pd.Series) -> Optional[float]:
        flags = flags.astype(float).dropna()
        if flags.empty:
            return None
        return float(flags.mean())

    def start(self, interval_s: Optional[float] = None):
        """Start the background drainer thread"""
        if self._drain_thread is not None and self._drain_thread.is_alive():
            return

        interval = self.config.drain_interval_s if interval_s is None else interval_s
        self._stop_event.clear()
        self._drain_thread = threading.Thread(
            target=self._drain_loop,
            args=(interval,),
            name="PerformanceDrainer",
            daemon=True,
        )
        self._drain_thread.start()
        LOG.info(f"Performance drainer started (interval={interval}s)")

    def stop(self):
        """Stop the drainer and flush whatever is still buffered"""
        if self._drain_thread is None:
            return

        self._stop_event.set()
        self._drain_thread.join(timeout=5.0)
        self._drain_thread = None
        self.drain()
        LOG.info("Performance drainer stopped")

    def _drain_loop(self, interval: float):
        while not self._stop_event.is_set():
            try:
                self.drain()
            except Exception as e:
                LOG.error(f"Performance drain failed: {e}")
            self._stop_event.wait(interval)
