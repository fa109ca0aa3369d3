"""
Tests for the Per-Symbol Performance Store
"""

from datetime import timedelta
import threading

import pandas as pd
import pytest

from regimex.config import PerformanceConfig
from regimex.performance import PerformanceStore, TradeRecord, TradeTotals
from regimex.schemas import PerformanceHistory


@pytest.fixture
def store():
    return PerformanceStore()


class TestSnapshots:
    """Test snapshot reads and drains."""

    def test_unknown_symbol_neutral(self, store):
        """Symbols without trades read neutral defaults."""
        history = store.get('EURUSD')
        assert history == PerformanceHistory.neutral()
        assert not history.has_history

    def test_trades_visible_after_drain(self, store):
        """Recorded trades only show up once drained."""
        for pnl, correct in [(0.02, True), (-0.01, False), (0.03, True)]:
            store.record_trade('EURUSD', pnl, rule_correct=correct)

        assert store.pending == 3
        assert store.get('EURUSD').total_trades == 0

        assert store.drain() == 3
        assert store.pending == 0

        history = store.get('EURUSD')
        assert history.total_trades == 3
        assert history.win_rate == pytest.approx(2 / 3)
        assert history.total_pnl == pytest.approx(0.04)
        assert history.avg_win == pytest.approx(0.025)
        assert history.avg_loss == pytest.approx(0.01)
        assert history.rule_accuracy == pytest.approx(2 / 3)
        assert history.ml_accuracy is None
        assert 0.0 <= history.max_drawdown <= 1.0

    def test_empty_drain(self, store):
        assert store.drain() == 0
        assert store.symbols() == []

    def test_symbols_kept_apart(self, store):
        store.record_trade('EURUSD', 0.01)
        store.record_trade('GBPUSD', -0.02)
        store.drain()

        assert sorted(store.symbols()) == ['EURUSD', 'GBPUSD']
        assert store.get('EURUSD').win_rate == 1.0
        assert store.get('GBPUSD').win_rate == 0.0

    def test_drains_accumulate(self, store):
        """Later drains extend the symbol's trade history."""
        store.record_trade('EURUSD', 0.01)
        store.drain()
        store.record_trade('EURUSD', -0.01)
        store.drain()
        assert store.get('EURUSD').total_trades == 2
        assert store.get('EURUSD').win_rate == pytest.approx(0.5)

    def test_accuracy_window(self):
        """Accuracy uses only the most recent trades."""
        store = PerformanceStore(PerformanceConfig(accuracy_window=2))
        for correct in (False, False, True, True):
            store.record_trade('EURUSD', 0.01, rule_correct=correct, ml_correct=not correct)
        store.drain()

        history = store.get('EURUSD')
        assert history.rule_accuracy == pytest.approx(1.0)
        assert history.ml_accuracy == pytest.approx(0.0)
        assert history.total_trades == 4

    def test_seed_replaced_by_trades(self, store):
        """A seeded snapshot stands until real trades are drained."""
        seeded = PerformanceHistory(win_rate=0.9, total_trades=100, total_pnl=1.0)
        store.seed('EURUSD', seeded)
        assert store.get('EURUSD') is seeded

        store.record_trade('EURUSD', -0.02)
        store.drain()
        assert store.get('EURUSD').total_trades == 1
        assert store.get('EURUSD').win_rate == 0.0

    def test_snapshot_not_mutated(self, store):
        """Readers holding a snapshot keep seeing the same values."""
        store.record_trade('EURUSD', 0.01)
        store.drain()
        before = store.get('EURUSD')

        store.record_trade('EURUSD', -0.05)
        store.drain()

        assert before.total_trades == 1
        assert store.get('EURUSD').total_trades == 2

    def test_trade_timestamps_are_utc(self):
        """Trades are stamped with an aware UTC timestamp."""
        record = TradeRecord('EURUSD', 0.01)
        assert record.timestamp.tzinfo is not None
        assert record.timestamp.utcoffset() == timedelta(0)


class TestHistoryWindow:
    """Test bounded trade retention."""

    @pytest.fixture
    def windowed(self):
        return PerformanceStore(PerformanceConfig(accuracy_window=5, history_window=10))

    def test_retained_trades_capped(self, windowed):
        """Draining more trades than the window keeps only the most recent ones."""
        for batch in range(3):
            for i in range(10 if batch < 2 else 5):
                pnl = 0.01 if batch < 1 or (batch == 1 and i < 5) else -0.01
                windowed.record_trade('EURUSD', pnl, rule_correct=pnl < 0)
            windowed.drain()
            assert len(windowed.recent_trades('EURUSD')) <= 10

        recent = windowed.recent_trades('EURUSD')
        assert len(recent) == 10
        assert (recent['pnl_pct'] < 0).all()

    def test_totals_cover_all_trades(self, windowed):
        """Counts, win rate and P&L include trades that left the window."""
        for _ in range(15):
            windowed.record_trade('EURUSD', 0.01, rule_correct=False)
        windowed.drain()
        for _ in range(10):
            windowed.record_trade('EURUSD', -0.01, rule_correct=True)
        windowed.drain()

        history = windowed.get('EURUSD')
        assert history.total_trades == 25
        assert history.win_rate == pytest.approx(0.6)
        assert history.total_pnl == pytest.approx(0.05)
        assert history.avg_win == pytest.approx(0.01)
        assert history.avg_loss == pytest.approx(0.01)
        assert history.rule_accuracy == pytest.approx(1.0)
        assert len(windowed.recent_trades('EURUSD')) == 10

    def test_unknown_symbol_empty(self, windowed):
        assert windowed.recent_trades('GBPUSD').empty

    def test_window_not_below_accuracy_window(self):
        """The retained window always covers the accuracy window."""
        config = PerformanceConfig(accuracy_window=50, history_window=10)
        assert config.history_window == 50

    def test_totals_add(self):
        totals = TradeTotals().add(pd.Series([0.02, -0.01, 0.0]))
        assert totals.trades == 3
        assert totals.wins == 1
        assert totals.losses == 1
        assert totals.total_pnl == pytest.approx(0.01)


class TestDrainer:
    """Test the background drainer and concurrent writers."""

    def test_stop_flushes(self, store):
        """Stopping the drainer flushes the buffer."""
        store.start(interval_s=60.0)
        store.record_trade('EURUSD', 0.01)
        store.stop()

        assert store.pending == 0
        assert store.get('EURUSD').total_trades == 1

    def test_stop_without_start(self, store):
        store.stop()

    def test_concurrent_writers(self, store):
        """Trades from many threads are all counted."""
        def writer(symbol):
            for _ in range(50):
                store.record_trade(symbol, 0.001)

        threads = [threading.Thread(target=writer, args=(f"SYM{i % 4}",)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert store.drain() == 400
        assert sum(store.get(f"SYM{i}").total_trades for i in range(4)) == 400
