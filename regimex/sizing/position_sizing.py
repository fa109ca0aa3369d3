"""
Position Sizing Module - Risk-Bounded Allocation

Turns a fusion decision into a bounded fraction of capital with:
1. Base allocation (max_allocation, limited by available cash)
2. Market regime multiplier (trend / volatility / RSI extremes)
3. Half-Kelly fraction (volatility-discounted, hard-bounded)
4. Risk adjustment (trend direction, volatility, exposure, market structure)
5. Simplified VaR ceiling
6. Dynamic factor (sentiment, realised P&L)
7. Signal quality (consistency ratio, trend, volatility, rule accuracy)
8. Final clamp to [min_allocation, max_allocation]

Only buy and short open exposure. Every step is recorded in the breakdown.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional
import logging
import math

import numpy as np

from regimex.adjustments import AdjustmentRule, fold_factor
from regimex.config import SizingConfig
from regimex.regime.regime_classifier import collect_indicators
from regimex.risk_stats.kelly_criterion import KellyCriterion
from regimex.risk_stats.value_at_risk import simplified_position_var, var_capped_fraction
from regimex.rule_engine.signal_gates import signal_consistency
from regimex.schemas import (
    AllocationDecision,
    FeatureVector,
    FusionDecision,
    PerformanceHistory,
    PositionState,
    TradeAction,
    as_feature_vector,
)

LOG = logging.getLogger(__name__)

OPENING_ACTIONS = (TradeAction.BUY, TradeAction.SHORT)


@dataclass(frozen=True)
class SizingContext:
    features: FeatureVector
    history: PerformanceHistory
    has_position: bool
    is_short: bool  # sizing a short entry
    volatility: float
    sentiment: float
    consistency_ratio: float

    @property
    def trend(self) -> Optional[float]:
        return self.features.get('trend_20')

    @property
    def abs_trend(self) -> float:
        return abs(self.features.get('trend_20', 0.0))


def _trend_favourable(ctx: SizingContext) -> bool:
    trend = ctx.trend
    if trend is None:
        return False
    return trend < -0.02 if ctx.is_short else trend > 0.02


def _trend_adverse(ctx: SizingContext) -> bool:
    trend = ctx.trend
    if trend is None:
        return False
    return trend > 0.02 if ctx.is_short else trend < -0.02


def _present_vol(ctx: SizingContext) -> Optional[float]:
    return ctx.features.get('volatility_20')


def _structure_above(name: str, threshold: float):
    def predicate(ctx: SizingContext) -> bool:
        value = ctx.features.get(name)
        return value is not None and value > threshold
    return predicate


def _bollinger_extreme(ctx: SizingContext) -> bool:
    position = ctx.features.get('bollinger_position')
    return position is not None and not 0.2 <= position <= 0.8


def _ranging_high_vol(ctx: SizingContext) -> bool:
    return ctx.abs_trend <= 0.01 and ctx.volatility > 0.10


def _rsi_extreme(ctx: SizingContext) -> bool:
    rsi = ctx.features.get('rsi_14')
    return rsi is not None and (rsi > 75 or rsi < 25)


REGIME_RULES = [
    AdjustmentRule('strong_trend', lambda ctx: ctx.abs_trend > 0.02 and ctx.volatility < 0.15, {'factor': 1.2},
                   "trending market"),
    AdjustmentRule('weak_trend', lambda ctx: 0.01 < ctx.abs_trend <= 0.02, {'factor': 0.8}),
    AdjustmentRule('choppy_market', _ranging_high_vol, {'factor': 0.6}, "range-bound but volatile"),
    AdjustmentRule('choppy_rsi_extreme', lambda ctx: _ranging_high_vol(ctx) and _rsi_extreme(ctx), {'factor': 0.8}),
    AdjustmentRule('extreme_volatility', lambda ctx: ctx.volatility > 0.25, {'factor': 0.7}),
]

RISK_RULES = [
    AdjustmentRule('trend_with_trade', _trend_favourable, {'factor': 1.2}, "trend supports the direction"),
    AdjustmentRule('trend_against_trade', _trend_adverse, {'factor': 0.7}),
    AdjustmentRule('low_volatility', lambda ctx: _present_vol(ctx) is not None and _present_vol(ctx) < 0.02,
                   {'factor': 1.1}),
    AdjustmentRule('high_volatility', lambda ctx: _present_vol(ctx) is not None and _present_vol(ctx) > 0.05,
                   {'factor': 0.8}),
    AdjustmentRule('already_positioned', lambda ctx: ctx.has_position, {'factor': 0.5}, "adding to exposure"),
    AdjustmentRule('near_support', _structure_above('support_level', 0.1), {'factor': 1.1}),
    AdjustmentRule('near_resistance', _structure_above('resistance_level', 0.1), {'factor': 0.9}),
    AdjustmentRule('bollinger_extreme', _bollinger_extreme, {'factor': 0.9}),
]

DYNAMIC_RULES = [
    AdjustmentRule('optimistic_sentiment', lambda ctx: ctx.sentiment > 0.7, {'factor': 1.1}),
    AdjustmentRule('pessimistic_sentiment', lambda ctx: ctx.sentiment < -0.7, {'factor': 0.8}),
    AdjustmentRule('profitable_symbol',
                   lambda ctx: ctx.history.total_trades >= 1 and ctx.history.total_pnl > 0, {'factor': 1.05}),
    AdjustmentRule('losing_symbol',
                   lambda ctx: ctx.history.total_trades >= 1 and ctx.history.total_pnl <= 0, {'factor': 0.95}),
]

SIGNAL_QUALITY_RULES = [
    AdjustmentRule('consistency', lambda ctx: True, lambda ctx: {'factor': ctx.consistency_ratio},
                   "indicator agreement"),
    AdjustmentRule('clear_trend', lambda ctx: ctx.trend is not None and ctx.abs_trend > 0.02, {'factor': 1.1}),
    AdjustmentRule('faint_trend', lambda ctx: ctx.trend is not None and ctx.abs_trend < 0.01, {'factor': 0.9}),
    AdjustmentRule('dead_market', lambda ctx: _present_vol(ctx) is not None and _present_vol(ctx) < 0.02,
                   {'factor': 0.8}),
    AdjustmentRule('noisy_market', lambda ctx: _present_vol(ctx) is not None and _present_vol(ctx) > 0.08,
                   {'factor': 0.95}),
    AdjustmentRule('accurate_rules',
                   lambda ctx: ctx.history.rule_accuracy is not None and ctx.history.rule_accuracy > 0.6,
                   {'factor': 1.05}),
    AdjustmentRule('inaccurate_rules',
                   lambda ctx: ctx.history.rule_accuracy is not None and ctx.history.rule_accuracy < 0.5,
                   {'factor': 0.95}),
]


class PositionSizer:
    """
    Risk-bounded position sizer.

    Sizing flow:
    1. Base: min(max_allocation, cash / deployable capital)
    2. Regime multiplier        [0.5, 1.3]
    3. Half-Kelly fraction      [0.1, 0.5]
    4. Risk adjustment          [0.1, 2.0]
    5. VaR ceiling              fraction * vol * 2 <= 2%
    6. Dynamic factor
    7. Signal quality           [0.5, 1.5]
    8. Clamp                    [min_allocation, max_allocation]

    All adjustments are multiplicative and conservative.
    """

    def __init__(self, config: SizingConfig = None):
        self.config = config or SizingConfig()
        self.kelly = KellyCriterion(
            scale=self.config.kelly_scale,
            min_fraction=self.config.kelly_min,
            max_fraction=self.config.kelly_max,
            fallback_fraction=self.config.kelly_fallback,
            default_win_rate=self.config.default_win_rate,
            default_reward_risk=self.config.default_reward_risk,
        )

    def _reject(self, reason: str, breakdown: Dict[str, Any]) -> AllocationDecision:
        return AllocationDecision(
            position_fraction=self.config.min_allocation,
            risk_adjustment_factor=0.0,
            units=0.0,
            breakdown=breakdown,
            rejection_reason=reason,
        )

    def size(
        self,
        decision: FusionDecision,
        cash: float,
        price: float,
        features: Any = None,
        history: PerformanceHistory = None,
        position: PositionState = None,
        consistency_ratio: Optional[float] = None,
        sentiment: Optional[float] = None,
    ) -> AllocationDecision:
        """
        Size the exposure opened by a decision.

        Args:
            decision: Fusion decision for this cycle
            cash: Available cash
            price: Current price
            features: FeatureVector or mapping
            history: Symbol performance (neutral if None)
            position: Current position (flat if None)
            consistency_ratio: Signal consistency ratio; computed from features when None
            sentiment: Regime sentiment in [-1, 1]; computed from features when None

        Returns:
            AllocationDecision with the full step breakdown
        """
        cfg = self.config
        fv = as_feature_vector(features)
        history = history or PerformanceHistory.neutral()
        position = position or PositionState.flat()
        action = TradeAction(decision.action)

        breakdown: Dict[str, Any] = {'action': action.value}

        if action not in OPENING_ACTIONS:
            return self._reject('no_new_exposure', breakdown)
        if cash is None or not math.isfinite(cash) or cash <= 0:
            return self._reject(f"invalid cash: {cash}", breakdown)
        if price is None or not math.isfinite(price) or price <= 0:
            return self._reject(f"invalid price: {price}", breakdown)

        volatility = fv.get('volatility_20', cfg.default_volatility)
        if consistency_ratio is None:
            consistency_ratio = signal_consistency(fv).ratio
        if sentiment is None:
            sentiment = collect_indicators(fv).sentiment

        context = SizingContext(
            features=fv,
            history=history,
            has_position=position.has_position,
            is_short=action == TradeAction.SHORT,
            volatility=volatility,
            sentiment=sentiment,
            consistency_ratio=consistency_ratio,
        )

        # ═══════════════════════════════════════════════════════════════
        # STEP 1: Base Allocation
        # ═══════════════════════════════════════════════════════════════
        deployable = cfg.total_capital if cfg.total_capital else cash
        fraction = min(cfg.max_allocation, cash / deployable)
        breakdown['deployable_capital'] = float(deployable)
        breakdown['base_fraction'] = float(fraction)

        # ═══════════════════════════════════════════════════════════════
        # STEP 2: Market Regime Multiplier
        # ═══════════════════════════════════════════════════════════════
        regime_result = fold_factor(REGIME_RULES, context)
        regime_multiplier = float(np.clip(
            regime_result.values['factor'], cfg.regime_multiplier_min, cfg.regime_multiplier_max
        ))
        fraction *= regime_multiplier
        breakdown['regime_multiplier'] = regime_multiplier
        breakdown['regime_rules'] = regime_result.applied

        # ═══════════════════════════════════════════════════════════════
        # STEP 3: Half-Kelly Fraction
        # ═══════════════════════════════════════════════════════════════
        kelly_result = self.kelly.calculate_from_history(history, volatility=volatility)
        fraction *= kelly_result.kelly_cap
        breakdown['kelly'] = kelly_result.to_dict()
        if not kelly_result.is_valid:
            LOG.warning(f"Kelly fallback to {kelly_result.kelly_cap:.2f}: {kelly_result.rejection_reason}")

        # ═══════════════════════════════════════════════════════════════
        # STEP 4: Risk Adjustment
        # ═══════════════════════════════════════════════════════════════
        risk_result = fold_factor(RISK_RULES, context)
        risk_adjustment = float(np.clip(
            risk_result.values['factor'], cfg.risk_adjustment_min, cfg.risk_adjustment_max
        ))
        fraction *= risk_adjustment
        breakdown['risk_adjustment'] = risk_adjustment
        breakdown['risk_rules'] = risk_result.applied

        # ═══════════════════════════════════════════════════════════════
        # STEP 5: Simplified VaR Ceiling
        # ═══════════════════════════════════════════════════════════════
        position_var = simplified_position_var(fraction, volatility, cfg.var_multiplier)
        capped = var_capped_fraction(fraction, volatility, cfg.var_limit, cfg.var_multiplier)
        breakdown['position_var'] = float(position_var)
        breakdown['var_capped'] = capped < fraction
        if capped < fraction:
            LOG.debug(f"VaR ceiling: {position_var:.4f} > {cfg.var_limit:.4f}, fraction {fraction:.4f} -> {capped:.4f}")
        fraction = capped

        # ═══════════════════════════════════════════════════════════════
        # STEP 6: Dynamic Factor
        # ═══════════════════════════════════════════════════════════════
        dynamic_result = fold_factor(DYNAMIC_RULES, context)
        dynamic_factor = float(dynamic_result.values['factor'])
        fraction *= dynamic_factor
        breakdown['sentiment'] = float(sentiment)
        breakdown['dynamic_factor'] = dynamic_factor

        # ═══════════════════════════════════════════════════════════════
        # STEP 7: Signal Quality
        # ═══════════════════════════════════════════════════════════════
        quality_result = fold_factor(SIGNAL_QUALITY_RULES, context)
        signal_quality = float(np.clip(
            quality_result.values['factor'], cfg.signal_quality_min, cfg.signal_quality_max
        ))
        fraction *= signal_quality
        breakdown['consistency_ratio'] = float(consistency_ratio)
        breakdown['signal_quality'] = signal_quality

        # ═══════════════════════════════════════════════════════════════
        # FINAL: Clamp and Convert to Units
        # ═══════════════════════════════════════════════════════════════
        fraction = float(np.clip(fraction, cfg.min_allocation, cfg.max_allocation))
        units = fraction * deployable / price
        risk_adjustment_factor = regime_multiplier * risk_adjustment * dynamic_factor * signal_quality

        breakdown['final_fraction'] = fraction
        breakdown['units'] = float(units)

        LOG.debug(
            f"Sizing {action.value}: regime={regime_multiplier:.2f} kelly={kelly_result.kelly_cap:.3f} "
            f"risk={risk_adjustment:.2f} dynamic={dynamic_factor:.2f} quality={signal_quality:.2f} "
            f"-> fraction={fraction:.4f}"
        )

        return AllocationDecision(
            position_fraction=fraction,
            risk_adjustment_factor=float(risk_adjustment_factor),
            units=float(units),
            breakdown=breakdown,
        )
