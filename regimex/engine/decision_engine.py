"""
Decision Engine

Per-cycle orchestrator: one feature snapshot in, one bounded decision out.

Flow:
    snapshot -> regime classifier
             -> {rule engine, ensemble fusion} (parallel)
             -> fusion controller -> position sizing
             -> stop-loss monitor (if positioned) -> DecisionOutput

Collaborators (predictor registry, performance store) are injected.
Nothing is committed anywhere before the output is returned, so an
abandoned cycle leaves no partial state.
"""

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout, as_completed
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union
import logging
import time

from regimex.config import EngineConfig
from regimex.ensemble.ensemble_fusion import EnsembleFusion, EnsembleResult
from regimex.ensemble.predictor import PredictorRegistry
from regimex.exceptions import UnknownRegimeError
from regimex.exit_control.stop_loss import ExitEvaluation, ExitEvent, StopLossMonitor
from regimex.fusion.fusion_controller import FusionController
from regimex.fusion.trend_confirmation import TrendConfirmation, analyze_trend_confirmation
from regimex.performance.performance_store import PerformanceStore
from regimex.regime.regime_classifier import MarketRegimeClassifier
from regimex.rule_engine.rule_engine import RuleSignal, RuleSignalEngine
from regimex.schemas import (
    AllocationDecision,
    FusionDecision,
    PositionState,
    RegimeClassification,
    RegimeLabel,
    SignalPrediction,
    TradeAction,
    as_feature_vector,
)
from regimex.sizing.position_sizing import PositionSizer

LOG = logging.getLogger(__name__)

# Slack for the ensemble stage to hand back partial results after its own timeout
COLLECT_GRACE_S = 0.05


@dataclass
class DecisionRequest:
    """One symbol's inputs for evaluate_many"""
    symbol: str
    features: Any
    position: Optional[PositionState] = None
    cash: float = 0.0
    price: Optional[float] = None
    price_history: Optional[Sequence[float]] = None


@dataclass
class DecisionOutput:
    """Complete result of one evaluation cycle"""
    symbol: str
    regime: RegimeClassification
    rule_signal: RuleSignal
    ensemble: EnsembleResult
    fusion: FusionDecision
    allocation: AllocationDecision
    exit_event: Optional[ExitEvent]
    final_action: TradeAction
    final_confidence: float
    processing_time_ms: float
    config_hash: str
    trend: Optional[TrendConfirmation] = None
    exit_evaluation: Optional[ExitEvaluation] = None
    timestamp: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            'symbol': self.symbol,
            'timestamp': self.timestamp.isoformat() if self.timestamp else None,
            'regime': self.regime.to_dict(),
            'rule_signal': self.rule_signal.to_dict(),
            'ensemble': self.ensemble.to_dict(),
            'trend': self.trend.to_dict() if self.trend else None,
            'fusion': self.fusion.to_dict(),
            'allocation': self.allocation.to_dict(),
            'exit_event': self.exit_event.to_dict() if self.exit_event else None,
            'final_action': self.final_action.value,
            'final_confidence': float(self.final_confidence),
            'processing_time_ms': float(self.processing_time_ms),
            'config_hash': self.config_hash,
        }


class DecisionEngine:
    """
    Adaptive regime-aware decision engine.

    Stateless across cycles apart from the injected performance store,
    which is only read here. Distinct symbols can be evaluated in parallel.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        registry: Optional[PredictorRegistry] = None,
        performance_store: Optional[PerformanceStore] = None,
    ):
        self.config = config or EngineConfig()
        self.registry = registry if registry is not None else PredictorRegistry()
        self.performance_store = performance_store if performance_store is not None else PerformanceStore(
            self.config.performance
        )

        self.regime_classifier = MarketRegimeClassifier(self.config.regime)
        self.rule_engine = RuleSignalEngine(self.config.rule_engine)
        self.ensemble = EnsembleFusion(self.registry, self.config.ensemble)
        self.fusion = FusionController(self.config.fusion, self.config.rule_engine)
        self.sizer = PositionSizer(self.config.sizing)
        self.exit_monitor = StopLossMonitor(self.config.exits)

        # Ensemble stage runs beside the rule engine on this pool
        self._stage_executor = ThreadPoolExecutor(
            max_workers=max(1, self.config.max_parallel_symbols),
            thread_name_prefix="DecisionStage",
        )

        self.config_hash = self.config.get_config_hash()
        LOG.info(f"Decision engine initialized (config hash: {self.config_hash}, "
                 f"{len(self.registry)} ensemble members)")

    def evaluate(
        self,
        symbol: str,
        features: Any,
        position: Optional[PositionState] = None,
        cash: float = 0.0,
        price: Optional[float] = None,
        price_history: Optional[Sequence[float]] = None,
    ) -> DecisionOutput:
        """
        Run one evaluation cycle.

        Args:
            symbol: Trading symbol
            features: FeatureVector or feature mapping
            position: Current position (flat if None)
            cash: Available cash for sizing
            price: Current price (defaults to the position's current price)
            price_history: Recent closes for multi-timeframe trend confirmation

        Returns:
            DecisionOutput

        Raises:
            UnknownRegimeError: regime has no threshold policy
        """
        start_time = time.perf_counter()
        budget_s = self.config.cycle_budget_ms / 1000.0

        # ===== STEP 1: NORMALISE INPUTS =====
        fv = as_feature_vector(features)
        position = position or PositionState.flat()
        if price is None:
            price = position.current_price if position.current_price > 0 else fv.get('price')
        history = self.performance_store.get(symbol)

        # ===== STEP 2: REGIME CLASSIFICATION =====
        regime = self.regime_classifier.classify(fv)

        # ===== STEP 3: RULE ENGINE + ENSEMBLE (parallel) =====
        ensemble_future = None
        if len(self.registry):
            remaining = max(0.0, budget_s - (time.perf_counter() - start_time))
            ensemble_future = self._stage_executor.submit(self.ensemble.predict, symbol, fv, remaining)

        rule_signal = self.rule_engine.score(fv, regime.label, position, history)
        ensemble_result = self._collect_ensemble(symbol, ensemble_future, start_time, budget_s)

        # ===== STEP 4: FUSION =====
        trend = None
        if price_history is not None:
            trend = analyze_trend_confirmation(price_history, self.config.fusion.trend_lookback)

        fusion = self.fusion.fuse(
            ensemble_result.prediction,
            rule_signal.action,
            rule_signal.confidence,
            regime.label,
            position,
            history,
            fv,
            trend=trend,
            rule_score=rule_signal.score,
        )

        # ===== STEP 5: POSITION SIZING =====
        allocation = self.sizer.size(
            fusion,
            cash,
            price,
            fv,
            history,
            position,
            consistency_ratio=rule_signal.consistency.ratio if rule_signal.consistency else None,
            sentiment=regime.indicators.get('sentiment'),
        )

        # ===== STEP 6: EXIT LAYERS =====
        exit_evaluation = None
        exit_event = None
        if position.has_position:
            exit_evaluation = self.exit_monitor.evaluate(position, fv, regime.label)
            exit_event = exit_evaluation.event
            if exit_event is not None:
                fusion = self._exit_override(fusion, exit_event)
                allocation = AllocationDecision(
                    position_fraction=self.config.sizing.min_allocation,
                    risk_adjustment_factor=0.0,
                    units=0.0,
                    breakdown={'exit_layer': exit_event.layer.value, 'exit_fraction': exit_event.exit_fraction},
                    rejection_reason='exit_override',
                )

        elapsed_ms = (time.perf_counter() - start_time) * 1000

        LOG.info(
            f"{symbol} decision: {fusion.action.value.upper()} conf={fusion.confidence:.3f} "
            f"regime={regime.label.value} source={fusion.source} "
            f"fraction={allocation.position_fraction:.4f} ({elapsed_ms:.2f}ms)"
        )

        return DecisionOutput(
            symbol=symbol,
            regime=regime,
            rule_signal=rule_signal,
            ensemble=ensemble_result,
            fusion=fusion,
            allocation=allocation,
            exit_event=exit_event,
            final_action=fusion.action,
            final_confidence=fusion.confidence,
            processing_time_ms=elapsed_ms,
            config_hash=self.config_hash,
            trend=trend,
            exit_evaluation=exit_evaluation,
            timestamp=datetime.now(),
        )

    def _collect_ensemble(self, symbol: str, future, start_time: float, budget_s: float) -> EnsembleResult:
        """Wait for the ensemble stage within what is left of the cycle budget"""
        if future is None:
            return EnsembleResult(prediction=None)

        remaining = max(0.0, budget_s - (time.perf_counter() - start_time))
        try:
            return future.result(timeout=remaining + COLLECT_GRACE_S)
        except FuturesTimeout:
            future.cancel()
            LOG.warning(f"Ensemble stage for {symbol} exceeded the cycle budget, using rules only")
        except Exception as e:
            LOG.error(f"Ensemble stage for {symbol} failed: {e}")
        return EnsembleResult(prediction=None)

    @staticmethod
    def _exit_override(fusion: FusionDecision, event: ExitEvent) -> FusionDecision:
        adjustments = list(fusion.adjustments)
        adjustments.append({
            'rule': 'exit_override',
            'rationale': event.reason,
            'factors': {'overridden_action': fusion.action.value},
        })
        return FusionDecision(
            action=event.action,
            confidence=event.confidence,
            combined_score=fusion.combined_score,
            ml_weight=fusion.ml_weight,
            rule_weight=fusion.rule_weight,
            thresholds=fusion.thresholds,
            adjustments=adjustments,
            source='exit_override',
        )

    def _fallback_output(self, request: DecisionRequest, reason: str) -> DecisionOutput:
        """Hold at minimum allocation when a cycle could not complete"""
        hold = FusionDecision(
            action=TradeAction.HOLD,
            confidence=0.0,
            adjustments=[{'rule': 'cycle_failure', 'rationale': reason, 'factors': {}}],
            source='rule_only',
        )
        return DecisionOutput(
            symbol=request.symbol,
            regime=RegimeClassification(RegimeLabel.SIDEWAYS, 0.0, 0.0, decision_path='unavailable'),
            rule_signal=RuleSignal(TradeAction.HOLD, SignalPrediction(0.0, 0.0)),
            ensemble=EnsembleResult(prediction=None),
            fusion=hold,
            allocation=AllocationDecision(self.config.sizing.min_allocation, 0.0, 0.0, {}, reason),
            exit_event=None,
            final_action=TradeAction.HOLD,
            final_confidence=0.0,
            processing_time_ms=0.0,
            config_hash=self.config_hash,
            timestamp=datetime.now(),
        )

    def evaluate_many(
        self,
        requests: Iterable[Union[DecisionRequest, Mapping[str, Any]]],
        max_workers: Optional[int] = None,
    ) -> Dict[str, DecisionOutput]:
        """
        Evaluate independent symbols in parallel.

        Args:
            requests: DecisionRequest objects or equivalent mappings
            max_workers: Parallel symbols (defaults to config.max_parallel_symbols)

        Returns:
            Dict mapping symbol to DecisionOutput, in request order

        Raises:
            UnknownRegimeError: from any symbol's cycle
        """
        requests: List[DecisionRequest] = [
            r if isinstance(r, DecisionRequest) else DecisionRequest(**r) for r in requests
        ]
        if not requests:
            return {}

        workers = max(1, min(max_workers or self.config.max_parallel_symbols, len(requests)))
        results: Dict[str, DecisionOutput] = {}

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="DecisionSymbol") as executor:
            future_to_request = {
                executor.submit(
                    self.evaluate, r.symbol, r.features, r.position, r.cash, r.price, r.price_history
                ): r
                for r in requests
            }
            for future in as_completed(future_to_request):
                request = future_to_request[future]
                try:
                    results[request.symbol] = future.result()
                except UnknownRegimeError:
                    raise
                except Exception as e:
                    LOG.error(f"Evaluation failed for {request.symbol}: {e}")
                    results[request.symbol] = self._fallback_output(request, f"evaluation failed: {e}")

        return {r.symbol: results[r.symbol] for r in requests}

    def shutdown(self):
        self._stage_executor.shutdown(wait=False, cancel_futures=True)
        LOG.info("Decision engine shut down")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()
