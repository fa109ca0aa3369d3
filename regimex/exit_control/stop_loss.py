"""
Stop-Loss / Take-Profit Control

Layered exit checks for an open position, plus the phase state machine
that tracks a position across cycles.

Stop layers:
1. Dynamic percentage stop-loss, tiered by loss depth
2. Volatility-distance stop (ATR based)
3. Support breach (resistance breach for shorts)
4. Maximum hold duration

Take-profit layers:
5. Dynamic profit target
6. Trailing stop on the peak unrealised profit
7. Partial profit tiers

The most severe triggered layer wins and forces sell (long) or cover
(short) for the current cycle only. Shorts mirror everything through the
side-aware unrealised P&L.

Position phases:
    FLAT -> {LONG, SHORT} -> {STOP_LOSS, TAKE_PROFIT, TIME_EXIT}_TRIGGERED -> FLAT
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import logging

import numpy as np

from regimex.config import ExitConfig
from regimex.exceptions import InvalidTransitionError
from regimex.schemas import FeatureVector, PositionSide, PositionState, RegimeLabel, TradeAction, as_feature_vector

LOG = logging.getLogger(__name__)

# (volatility, stop-loss multiplier) anchors; linear between, extrapolated beyond
VOLATILITY_ANCHORS: Tuple[Tuple[float, float], ...] = (
    (0.0, 0.6),
    (0.015, 0.7),
    (0.025, 0.85),
    (0.05, 1.1),
    (0.08, 1.3),
)

SEVERITY_REGIME_MULTIPLIERS = {
    RegimeLabel.SIDEWAYS: 0.8,
    RegimeLabel.EXTREME_BEAR: 1.5,
    RegimeLabel.STRONG_BEAR: 1.2,
    RegimeLabel.STRONG_BULL: 1.1,
}


class PositionPhase(str, Enum):
    """Lifecycle phase of a symbol's position"""
    FLAT = "flat"
    LONG = "long"
    SHORT = "short"
    STOP_LOSS_TRIGGERED = "stop_loss_triggered"
    TAKE_PROFIT_TRIGGERED = "take_profit_triggered"
    TIME_EXIT_TRIGGERED = "time_exit_triggered"

    @property
    def is_triggered(self) -> bool:
        return self in TRIGGERED_PHASES


TRIGGERED_PHASES = (
    PositionPhase.STOP_LOSS_TRIGGERED,
    PositionPhase.TAKE_PROFIT_TRIGGERED,
    PositionPhase.TIME_EXIT_TRIGGERED,
)


class ExitLayer(str, Enum):
    STOP_LOSS = "stop_loss"
    VOLATILITY_STOP = "volatility_stop"
    SUPPORT_BREACH = "support_breach"
    MAX_HOLD = "max_hold"
    TAKE_PROFIT = "take_profit"
    TRAILING_STOP = "trailing_stop"
    PARTIAL_TAKE_PROFIT = "partial_take_profit"

    @property
    def phase(self) -> PositionPhase:
        if self == ExitLayer.MAX_HOLD:
            return PositionPhase.TIME_EXIT_TRIGGERED
        if self in (ExitLayer.TAKE_PROFIT, ExitLayer.TRAILING_STOP, ExitLayer.PARTIAL_TAKE_PROFIT):
            return PositionPhase.TAKE_PROFIT_TRIGGERED
        return PositionPhase.STOP_LOSS_TRIGGERED


@dataclass(frozen=True)
class ExitEvent:
    """Triggered exit layer, emitted for logging / alerting collaborators"""
    layer: ExitLayer
    severity: int
    confidence: float
    action: TradeAction
    reason: str
    threshold: float
    pnl_pct: float
    exit_fraction: float = 1.0

    @property
    def phase(self) -> PositionPhase:
        return self.layer.phase

    def to_dict(self) -> dict:
        return {
            'layer': self.layer.value,
            'severity': self.severity,
            'confidence': self.confidence,
            'action': self.action.value,
            'reason': self.reason,
            'threshold': self.threshold,
            'pnl_pct': self.pnl_pct,
            'exit_fraction': self.exit_fraction,
        }


@dataclass
class ExitLevels:
    """Levels computed this cycle"""
    stop_loss: float = 0.0
    severity_thresholds: Tuple[float, ...] = ()
    take_profit: float = 0.0
    volatility_stop_price: Optional[float] = None
    support_stop_price: Optional[float] = None
    max_hold: int = 0
    trailing_floor: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            'stop_loss': self.stop_loss,
            'severity_thresholds': list(self.severity_thresholds),
            'take_profit': self.take_profit,
            'volatility_stop_price': self.volatility_stop_price,
            'support_stop_price': self.support_stop_price,
            'max_hold': self.max_hold,
            'trailing_floor': self.trailing_floor,
        }


@dataclass
class ExitEvaluation:
    phase: PositionPhase
    event: Optional[ExitEvent] = None
    levels: ExitLevels = field(default_factory=ExitLevels)
    triggered: List[ExitEvent] = field(default_factory=list)

    @property
    def should_exit(self) -> bool:
        return self.event is not None

    def to_dict(self) -> dict:
        return {
            'phase': self.phase.value,
            'event': self.event.to_dict() if self.event else None,
            'levels': self.levels.to_dict(),
            'triggered': [e.to_dict() for e in self.triggered],
        }


def volatility_multiplier(volatility: float) -> float:
    """
    Stop-loss widening factor for a volatility level.

    Strictly increasing in volatility: piecewise linear through
    VOLATILITY_ANCHORS and linearly extrapolated past the last anchor.
    """
    xs = [x for x, _ in VOLATILITY_ANCHORS]
    ys = [y for _, y in VOLATILITY_ANCHORS]
    volatility = max(volatility, 0.0)
    if volatility > xs[-1]:
        slope = (ys[-1] - ys[-2]) / (xs[-1] - xs[-2])
        return float(ys[-1] + slope * (volatility - xs[-1]))
    return float(np.interp(volatility, xs, ys))


class StopLossMonitor:
    """
    Stateless per-cycle exit evaluation.

    Phase tracking across cycles lives in ExitStateMachine.
    """

    def __init__(self, config: ExitConfig = None):
        self.config = config or ExitConfig()

    # ------------------------------------------------------------------
    # Levels
    # ------------------------------------------------------------------

    def dynamic_stop_loss(self, pnl_pct: float, hold: int, features: FeatureVector) -> float:
        """Percentage stop-loss threshold (<= 0), clamped to [stop_loss_min, stop_loss_max]"""
        cfg = self.config
        stop = cfg.base_stop_loss
        if pnl_pct > 0.06:
            stop = -0.03
        elif pnl_pct > 0.03:
            stop = -0.05

        volatility = features.get('volatility_20')
        if volatility is not None:
            stop *= volatility_multiplier(volatility)

        if hold > 15:
            stop *= 0.8
        elif hold > 8:
            stop *= 0.9
        elif hold < 3:
            stop *= 1.1

        trend = features.get('trend_20')
        if trend is not None:
            if abs(trend) > 0.025:
                stop *= 1.1
            elif abs(trend) < 0.008:
                stop *= 0.9

        support = features.get('support_level')
        if support is not None and support > 0.08:
            stop *= 0.9

        return float(np.clip(stop, cfg.stop_loss_min, cfg.stop_loss_max))

    def severity_thresholds(self, regime: RegimeLabel, hold: int, features: FeatureVector) -> Tuple[float, ...]:
        """Loss-depth tiers scaled by regime, volatility and time in trade"""
        regime_mult = SEVERITY_REGIME_MULTIPLIERS.get(regime, 1.0)

        volatility = max(0.005, features.get('volatility_20', 0.02))
        vol_mult = 1.0
        if volatility > 0.08:
            vol_mult = 1.3
        elif volatility > 0.05:
            vol_mult = 1.1
        elif volatility < 0.015:
            vol_mult = 0.8

        time_mult = 1.0
        if hold > 20:
            time_mult = 1.1
        elif hold > 10:
            time_mult = 1.05

        combined = regime_mult * vol_mult * time_mult
        return tuple(t * combined for t in self.config.severity_thresholds)

    def dynamic_take_profit(self, hold: int, features: FeatureVector) -> float:
        cfg = self.config
        target = cfg.base_take_profit

        if hold > 20:
            target *= 0.7
        elif hold > 10:
            target *= 0.85
        elif hold < 2:
            target *= 1.1

        volatility = features.get('volatility_20')
        if volatility is not None:
            if volatility > 0.08:
                target *= 1.2
            elif volatility < 0.02:
                target *= 0.8

        trend = features.get('trend_20')
        if trend is not None:
            if abs(trend) > 0.025:
                target *= 1.15
            elif abs(trend) < 0.01:
                target *= 0.9

        target = float(np.clip(target, cfg.take_profit_min, cfg.take_profit_max))

        # Volatile markets take profit earlier
        if volatility is not None:
            if volatility > 0.05:
                target *= 0.8
            elif volatility > 0.03:
                target *= 0.9
        return target

    def max_hold(self, position: PositionState, features: FeatureVector) -> int:
        trend = features.get('trend_20')
        adverse = trend is not None and (trend > 0.02 if position.is_short else trend < -0.02)
        if adverse:
            return int(self.config.max_hold_periods * self.config.bear_hold_factor)
        return self.config.max_hold_periods

    @staticmethod
    def trailing_protection(peak: float) -> float:
        if peak > 0.10:
            return 0.03
        if peak > 0.05:
            return 0.025
        return 0.015

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(self, position: PositionState, features: Any = None, regime: Any = RegimeLabel.SIDEWAYS) -> ExitEvaluation:
        """
        Evaluate every exit layer for one cycle.

        Args:
            position: Current position
            features: FeatureVector or mapping
            regime: Current RegimeLabel

        Returns:
            ExitEvaluation (event is None when nothing triggered)
        """
        if not position.has_position:
            return ExitEvaluation(phase=PositionPhase.FLAT)

        cfg = self.config
        fv = as_feature_vector(features)
        regime = RegimeLabel.parse(regime)
        side_phase = PositionPhase.SHORT if position.is_short else PositionPhase.LONG
        action = TradeAction.COVER if position.is_short else TradeAction.SELL
        pnl = position.unrealized_pnl_pct
        hold = int(position.hold_duration)
        price = position.current_price
        entry = position.entry_price

        def event(layer, severity, confidence, reason, threshold, exit_fraction=1.0) -> ExitEvent:
            return ExitEvent(layer, severity, confidence, action, reason, float(threshold), float(pnl), exit_fraction)

        levels = ExitLevels(
            stop_loss=self.dynamic_stop_loss(pnl, hold, fv),
            severity_thresholds=self.severity_thresholds(regime, hold, fv),
            take_profit=self.dynamic_take_profit(hold, fv),
            max_hold=self.max_hold(position, fv),
        )
        triggered: List[ExitEvent] = []

        # 1. Dynamic percentage stop, severity by loss depth
        tier = 0
        for i, threshold in enumerate(levels.severity_thresholds):
            if pnl < threshold:
                tier = i + 1
        if pnl < levels.stop_loss or tier > 0:
            threshold = levels.severity_thresholds[tier - 1] if tier else levels.stop_loss
            tier = max(tier, 1)
            triggered.append(event(
                ExitLayer.STOP_LOSS, tier, cfg.severity_confidences[tier - 1],
                f"loss {pnl:.2%} beyond {threshold:.2%} (tier {tier})", threshold,
            ))

        # 2. Volatility-distance stop
        atr = fv.get('atr_14')
        if atr is not None and atr > 0 and entry > 0:
            multiplier = cfg.atr_multiplier
            volatility = fv.get('volatility_20')
            if volatility is not None and volatility < 0.02:
                multiplier = cfg.low_vol_atr_multiplier
            distance = atr * multiplier
            if position.is_short:
                levels.volatility_stop_price = entry + distance
                breached = price > levels.volatility_stop_price
            else:
                levels.volatility_stop_price = entry - distance
                breached = price < levels.volatility_stop_price
            if breached:
                triggered.append(event(
                    ExitLayer.VOLATILITY_STOP, 2, 0.90,
                    f"price {price:.4f} beyond ATR stop {levels.volatility_stop_price:.4f}",
                    -distance / entry,
                ))

        # 3. Support breach (resistance for shorts)
        if position.is_short:
            resistance = fv.get('resistance_price')
            if resistance is not None and resistance > 0:
                levels.support_stop_price = resistance * (2.0 - cfg.support_breach_factor)
                if price > levels.support_stop_price:
                    triggered.append(event(
                        ExitLayer.SUPPORT_BREACH, 2, 0.90,
                        f"price {price:.4f} broke resistance {resistance:.4f}",
                        (entry - levels.support_stop_price) / entry if entry > 0 else 0.0,
                    ))
        else:
            support = fv.get('support_price')
            if support is not None and support > 0:
                levels.support_stop_price = support * cfg.support_breach_factor
                if price < levels.support_stop_price:
                    triggered.append(event(
                        ExitLayer.SUPPORT_BREACH, 2, 0.90,
                        f"price {price:.4f} broke support {support:.4f}",
                        (levels.support_stop_price - entry) / entry if entry > 0 else 0.0,
                    ))

        # 4. Maximum hold
        if hold > levels.max_hold:
            triggered.append(event(
                ExitLayer.MAX_HOLD, 1, 0.85,
                f"held {hold} periods > {levels.max_hold}", 0.0,
            ))

        # 5. Dynamic take-profit
        if pnl > levels.take_profit:
            triggered.append(event(
                ExitLayer.TAKE_PROFIT, 1, 0.90,
                f"profit {pnl:.2%} above target {levels.take_profit:.2%}", levels.take_profit,
            ))

        # 6. Trailing stop
        peak = position.peak_profit_pct if position.peak_profit_pct is not None else pnl
        if peak > cfg.trailing_activation:
            levels.trailing_floor = peak - self.trailing_protection(peak)
            if pnl <= levels.trailing_floor:
                triggered.append(event(
                    ExitLayer.TRAILING_STOP, 1, 0.88,
                    f"profit {pnl:.2%} fell to trailing floor {levels.trailing_floor:.2%} (peak {peak:.2%})",
                    levels.trailing_floor,
                ))

        # 7. Partial take-profit tiers
        for threshold, fraction in cfg.partial_take_profit_tiers:
            if pnl > threshold:
                triggered.append(event(
                    ExitLayer.PARTIAL_TAKE_PROFIT, 1, 0.85,
                    f"profit {pnl:.2%} above {threshold:.0%}, take {fraction:.0%}", threshold,
                    exit_fraction=fraction,
                ))
                break

        if not triggered:
            return ExitEvaluation(phase=side_phase, levels=levels)

        # Most severe first, then most confident; ties keep layer order
        chosen = max(triggered, key=lambda e: (e.severity, e.confidence))
        log = LOG.critical if chosen.severity >= 3 else LOG.warning
        log(f"Exit triggered [{chosen.layer.value}] severity={chosen.severity} "
            f"conf={chosen.confidence:.2f}: {chosen.reason}")

        return ExitEvaluation(phase=chosen.phase, event=chosen, levels=levels, triggered=triggered)


ALLOWED_TRANSITIONS: Dict[PositionPhase, Tuple[PositionPhase, ...]] = {
    PositionPhase.FLAT: (PositionPhase.LONG, PositionPhase.SHORT),
    PositionPhase.LONG: TRIGGERED_PHASES + (PositionPhase.FLAT,),
    PositionPhase.SHORT: TRIGGERED_PHASES + (PositionPhase.FLAT,),
    PositionPhase.STOP_LOSS_TRIGGERED: (PositionPhase.FLAT,),
    PositionPhase.TAKE_PROFIT_TRIGGERED: (PositionPhase.FLAT, PositionPhase.LONG, PositionPhase.SHORT),
    PositionPhase.TIME_EXIT_TRIGGERED: (PositionPhase.FLAT,),
}


class ExitStateMachine:
    """
    Position phase for one symbol across cycles.

    State transitions:
        FLAT -> LONG | SHORT               (on_entry)
        LONG | SHORT -> *_TRIGGERED        (on_cycle with an exit event)
        *_TRIGGERED -> FLAT                (on_exit_filled)
        TAKE_PROFIT_TRIGGERED -> LONG | SHORT  (partial exit filled)
        LONG | SHORT -> FLAT               (discretionary exit filled)
    """

    def __init__(self, phase: PositionPhase = PositionPhase.FLAT):
        self.phase = PositionPhase(phase)
        self.side: Optional[PositionSide] = None
        self.last_event: Optional[ExitEvent] = None

    def _transition(self, target: PositionPhase):
        if target == self.phase:
            return
        if target not in ALLOWED_TRANSITIONS[self.phase]:
            raise InvalidTransitionError(self.phase.value, target.value)
        LOG.debug(f"Position phase {self.phase.value} -> {target.value}")
        self.phase = target

    def on_entry(self, side: Any) -> PositionPhase:
        side = PositionSide(side)
        if side == PositionSide.FLAT:
            raise InvalidTransitionError(self.phase.value, side.value)
        target = PositionPhase.LONG if side == PositionSide.LONG else PositionPhase.SHORT
        if self.phase != PositionPhase.FLAT:
            raise InvalidTransitionError(self.phase.value, target.value)
        self._transition(target)
        self.side = side
        self.last_event = None
        return self.phase

    def on_cycle(self, evaluation: ExitEvaluation) -> PositionPhase:
        """Advance on a monitor evaluation; a pending trigger stays until filled"""
        if evaluation.event is None:
            return self.phase
        if self.phase == PositionPhase.FLAT:
            raise InvalidTransitionError(self.phase.value, evaluation.event.phase.value)
        if self.phase.is_triggered:
            return self.phase
        self._transition(evaluation.event.phase)
        self.last_event = evaluation.event
        return self.phase

    def on_exit_filled(self) -> PositionPhase:
        """Exit order filled; partial take-profit fills return to the open side"""
        if self.phase == PositionPhase.FLAT:
            raise InvalidTransitionError(self.phase.value, PositionPhase.FLAT.value)

        event = self.last_event
        if (self.phase == PositionPhase.TAKE_PROFIT_TRIGGERED and event is not None
                and event.exit_fraction < 1.0 and self.side is not None):
            self._transition(PositionPhase.LONG if self.side == PositionSide.LONG else PositionPhase.SHORT)
        else:
            self._transition(PositionPhase.FLAT)
            self.side = None
        self.last_event = None
        return self.phase
