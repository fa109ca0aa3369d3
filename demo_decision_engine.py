"""
Decision Engine Demonstration

Walks a handful of market snapshots through the full cycle:
- Regime classification
- Rule scoring with adaptive thresholds
- Concurrent ensemble fusion with a hung member
- Rule/ML fusion and position sizing
- Stop-loss override and position phase tracking
- Parallel multi-symbol evaluation
"""

import time
import logging

import numpy as np

from regimex import (
    DecisionEngine,
    DecisionRequest,
    EngineConfig,
    ExitStateMachine,
    PerformanceStore,
    PositionState,
    PredictorRegistry,
)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

LOG = logging.getLogger(__name__)


SNAPSHOTS = {
    'STRONG_BULL': {
        'trend_5': 0.01, 'trend_20': 0.08, 'trend_50': 0.02, 'rsi_14': 72,
        'momentum_10': 0.06, 'macd_signal': 0.002, 'volume_trend': 0.05,
        'volume_ratio': 2.5, 'volatility_20': 0.04,
    },
    'OVERSOLD_DECLINE': {'rsi_14': 25, 'trend_20': -0.02, 'momentum_10': -0.03, 'volatility_20': 0.01},
    'QUIET': {'rsi_14': 50, 'trend_20': 0.001, 'momentum_10': 0.0, 'volatility_20': 0.015},
}


class MomentumModel:
    """Toy member: follows 20-period trend"""

    def predict(self, symbol, features):
        trend = features.get('trend_20', 0.0)
        return float(np.clip(trend * 10, -1, 1)), 0.7, 0.8


def rsi_model(symbol, features):
    """Toy member: fades RSI extremes"""
    rsi = features.get('rsi_14', 50.0)
    return float(np.clip((50.0 - rsi) / 50.0, -1, 1)), 0.6, 0.7


def hung_model(symbol, features):
    """Toy member that never answers in time"""
    time.sleep(2.0)
    return 0.0, 0.5, 0.5


def build_registry(include_hung: bool = False) -> PredictorRegistry:
    registry = PredictorRegistry()
    registry.register('momentum', MomentumModel())
    registry.register('rsi_fade', rsi_model)
    if include_hung:
        registry.register('hung', hung_model)
    return registry


def print_output(output):
    print(f"  Regime:     {output.regime.label.value} (score={output.regime.score:.3f}, "
          f"conf={output.regime.confidence:.3f})")
    print(f"  Rules:      {output.rule_signal.action.value} score={output.rule_signal.score:+.3f}")
    if output.ensemble.prediction is not None:
        p = output.ensemble.prediction
        print(f"  Ensemble:   score={p.score:+.3f} conf={p.confidence:.3f} members={p.member_count}")
    else:
        print("  Ensemble:   unavailable")
    for failure in output.ensemble.failures:
        print(f"    ✗ {failure.name}: {failure.reason}")
    print(f"  Fusion:     {output.fusion.action.value} conf={output.fusion.confidence:.3f} "
          f"source={output.fusion.source}")
    print(f"  Allocation: {output.allocation.position_fraction:.4f} "
          f"({output.allocation.units:.2f} units)"
          + (f" [{output.allocation.rejection_reason}]" if output.allocation.rejection_reason else ""))
    if output.exit_event:
        print(f"  Exit:       {output.exit_event.layer.value} severity={output.exit_event.severity}")
    print(f"  Final:      {output.final_action.value.upper()} @ {output.final_confidence:.3f} "
          f"({output.processing_time_ms:.1f}ms)")


def demo_market_states(engine: DecisionEngine):
    print("\n" + "=" * 80)
    print("1. MARKET STATES")
    print("=" * 80)

    for name, features in SNAPSHOTS.items():
        print(f"\n{name}:")
        output = engine.evaluate('EURUSD', features, cash=10000.0, price=1.10)
        print_output(output)


def demo_stop_loss_override(engine: DecisionEngine):
    print("\n" + "=" * 80)
    print("2. STOP-LOSS OVERRIDE")
    print("=" * 80)

    machine = ExitStateMachine()
    machine.on_entry('long')
    print(f"\n  Phase after entry: {machine.phase.value}")

    position = PositionState.long(entry_price=100.0, current_price=80.0, hold_duration=5)
    output = engine.evaluate('EURUSD', SNAPSHOTS['STRONG_BULL'], position=position, cash=10000.0)
    print_output(output)

    machine.on_cycle(output.exit_evaluation)
    print(f"  Phase after cycle: {machine.phase.value}")
    machine.on_exit_filled()
    print(f"  Phase after fill:  {machine.phase.value}")


def demo_cycle_budget():
    print("\n" + "=" * 80)
    print("3. CYCLE BUDGET WITH A HUNG MEMBER")
    print("=" * 80)

    config = EngineConfig(cycle_budget_ms=200)
    with DecisionEngine(config, registry=build_registry(include_hung=True)) as engine:
        output = engine.evaluate('EURUSD', SNAPSHOTS['STRONG_BULL'], cash=10000.0, price=1.10)
        print_output(output)


def demo_parallel_symbols(engine: DecisionEngine):
    print("\n" + "=" * 80)
    print("4. PARALLEL SYMBOLS")
    print("=" * 80)

    closes = 100.0 * np.cumprod(1 + np.random.default_rng(7).normal(0.001, 0.01, 60))
    requests = [
        DecisionRequest('EURUSD', SNAPSHOTS['STRONG_BULL'], cash=10000.0, price=1.10, price_history=closes),
        DecisionRequest('GBPUSD', SNAPSHOTS['OVERSOLD_DECLINE'], cash=10000.0, price=1.27),
        DecisionRequest('USDJPY', SNAPSHOTS['QUIET'], cash=10000.0, price=150.0),
    ]
    results = engine.evaluate_many(requests)
    for symbol, output in results.items():
        print(f"  {symbol}: {output.final_action.value.upper():5s} conf={output.final_confidence:.3f} "
              f"regime={output.regime.label.value} fraction={output.allocation.position_fraction:.4f}")


def main():
    print("\n" + "=" * 80)
    print("REGIME-AWARE DECISION ENGINE DEMO")
    print("=" * 80)

    store = PerformanceStore()
    for pnl, correct in [(0.02, True), (-0.01, False), (0.015, True), (0.03, True), (-0.012, False)]:
        store.record_trade('EURUSD', pnl, rule_correct=correct, ml_correct=not correct)
    store.drain()
    LOG.info(f"EURUSD history: {store.get('EURUSD').to_dict()}")

    try:
        with DecisionEngine(registry=build_registry(), performance_store=store) as engine:
            demo_market_states(engine)
            demo_stop_loss_override(engine)
            demo_parallel_symbols(engine)
        demo_cycle_budget()

        print("\n" + "=" * 80)
        print("✅ DEMO COMPLETED")
        print("=" * 80)

    except Exception as e:
        print(f"\n❌ Error during demonstration: {e}")
        import traceback
        traceback.print_exc()


if __name__ == "__main__":
    main()
