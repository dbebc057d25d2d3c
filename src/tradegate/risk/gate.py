"""Five-stage entry risk filter.

Stages run in order and stop at the first failure:

1. Health Gate      - ADX trend strength, with a slope+momentum transition zone
2. Drop Protection  - BTC dump, volume panic, spread widening
3. Entry Quality    - price top / pullback, overbought, momentum admission
4. AI Validation    - external signal confidence
5. Cost Floor       - profit target must cover round-trip costs

Stages 1-3 run before the external signal is requested; 4-5 after it.
"""

import logging
import math
from typing import Callable, Optional

from tradegate.config import RiskGateConfig
from tradegate.context import MarketContext
from tradegate.models import (
    PyramidCheckResult,
    Regime,
    RiskFilterResult,
    RiskStage,
    TechnicalIndicators,
    Ticker,
)


logger = logging.getLogger(__name__)


def is_btc_pair(pair: str) -> bool:
    return pair.upper().startswith("BTC/")


class RiskGate:
    """Sequential, fail-fast admission filter for new positions."""

    def __init__(
        self,
        config: Optional[RiskGateConfig] = None,
        context: Optional[MarketContext] = None,
        exchange: str = "kraken",
        creeping_uptrend: bool = False,
    ):
        """Initialize risk gate.

        Args:
            config: Risk gate configuration. Uses defaults if None.
            context: Shared market context holding BTC momentum
            exchange: Default exchange for fee lookup
            creeping_uptrend: Allow entries near highs and lower the momentum bars
        """
        self.config = config or RiskGateConfig()
        self.context = context or MarketContext()
        self.exchange = exchange
        self.creeping_uptrend = creeping_uptrend

    # ------------------------------------------------------------------
    # Stage 1
    # ------------------------------------------------------------------

    def check_health_gate(
        self,
        adx: float,
        adx_slope: float = 0.0,
        momentum_1h: float = 0.0,
    ) -> RiskFilterResult:
        """Block choppy markets by ADX.

        Within the transition zone [transition_zone_min, min_adx_for_entry)
        entry requires BOTH a rising ADX slope and strong 1h momentum.

        Args:
            adx: Current ADX
            adx_slope: ADX change per candle
            momentum_1h: 1h momentum in percent

        Returns:
            RiskFilterResult for the Health Gate stage
        """
        cfg = self.config
        stage = RiskStage.HEALTH_GATE
        diagnostics = {"adx": adx, "adx_slope": adx_slope, "momentum_1h": momentum_1h}

        if adx is None or not math.isfinite(adx) or adx <= 0:
            logger.info(f"Entry blocked - ADX unavailable ({adx})")
            return RiskFilterResult(
                passed=False,
                stage=stage,
                reason="ADX unavailable, treating market as choppy",
                diagnostics=diagnostics,
            )

        if adx >= cfg.min_adx_for_entry:
            diagnostics["zone"] = "trending"
            return RiskFilterResult(passed=True, stage=stage, diagnostics=diagnostics)

        if adx >= cfg.transition_zone_min:
            diagnostics["zone"] = "transition"
            slope_ok = math.isfinite(adx_slope) and adx_slope >= cfg.adx_slope_rising
            momentum_ok = math.isfinite(momentum_1h) and momentum_1h >= cfg.momentum_override_min_1h
            diagnostics["slope_confirmed"] = slope_ok
            diagnostics["momentum_confirmed"] = momentum_ok

            if slope_ok and momentum_ok:
                logger.info(
                    f"Transition zone entry allowed: ADX={adx:.2f} slope={adx_slope:+.2f} "
                    f"momentum1h={momentum_1h:.2f}%"
                )
                return RiskFilterResult(passed=True, stage=stage, diagnostics=diagnostics)

            logger.info(
                f"Entry blocked - choppy market in transition zone (ADX={adx:.2f}, "
                f"slope_ok={slope_ok}, momentum_ok={momentum_ok})"
            )
            return RiskFilterResult(
                passed=False,
                stage=stage,
                reason=(
                    f"Choppy market (ADX={adx:.2f} < {cfg.min_adx_for_entry}, transition zone "
                    f"requires slope >= {cfg.adx_slope_rising} and 1h momentum >= "
                    f"{cfg.momentum_override_min_1h}%)"
                ),
                diagnostics=diagnostics,
            )

        diagnostics["zone"] = "choppy"
        logger.info(f"Entry blocked - choppy market (ADX={adx:.2f} < {cfg.transition_zone_min})")
        return RiskFilterResult(
            passed=False,
            stage=stage,
            reason=f"Choppy market (ADX={adx:.2f} < {cfg.min_adx_for_entry})",
            diagnostics=diagnostics,
        )

    # ------------------------------------------------------------------
    # Stage 2
    # ------------------------------------------------------------------

    def check_drop_protection(
        self,
        pair: str,
        ticker: Optional[Ticker],
        indicators: TechnicalIndicators,
    ) -> RiskFilterResult:
        """Block entries during BTC dumps, volume panics and wide spreads."""
        cfg = self.config
        stage = RiskStage.DROP_PROTECTION
        btc_momentum = self.context.btc_momentum_1h
        diagnostics = {"btc_momentum_1h": btc_momentum}

        if not is_btc_pair(pair) and btc_momentum < cfg.btc_dump_threshold_1h:
            logger.info(f"Entry blocked for {pair} - BTC dumping ({btc_momentum:.2f}%)")
            return RiskFilterResult(
                passed=False,
                stage=stage,
                reason=f"BTC dumping ({btc_momentum:.2f}% < {cfg.btc_dump_threshold_1h:.1f}%)",
                diagnostics=diagnostics,
            )

        volume_ratio = indicators.volume_ratio
        momentum_1h = indicators.momentum_1h
        diagnostics["volume_ratio"] = volume_ratio
        if volume_ratio > cfg.volume_spike_max and momentum_1h < cfg.volume_panic_momentum:
            logger.info(
                f"Entry blocked for {pair} - volume panic ({volume_ratio:.2f}x, "
                f"momentum1h={momentum_1h:.2f}%)"
            )
            return RiskFilterResult(
                passed=False,
                stage=stage,
                reason=(
                    f"Volume panic ({volume_ratio:.2f}x > {cfg.volume_spike_max}x with "
                    f"1h momentum {momentum_1h:.2f}%)"
                ),
                diagnostics=diagnostics,
            )

        spread = ticker.spread_pct if ticker else None
        diagnostics["spread_pct"] = spread
        if spread is not None and spread > cfg.spread_max_pct:
            logger.info(f"Entry blocked for {pair} - spread widening ({spread:.3f}%)")
            return RiskFilterResult(
                passed=False,
                stage=stage,
                reason=f"Spread widening ({spread:.3f}% > {cfg.spread_max_pct:.2f}%)",
                diagnostics=diagnostics,
            )

        return RiskFilterResult(passed=True, stage=stage, diagnostics=diagnostics)

    # ------------------------------------------------------------------
    # Stage 3
    # ------------------------------------------------------------------

    def check_entry_quality(
        self,
        pair: str,
        price: float,
        indicators: TechnicalIndicators,
    ) -> RiskFilterResult:
        """Avoid poor entries: local tops, deep pullbacks, overbought, weak momentum."""
        cfg = self.config
        stage = RiskStage.ENTRY_QUALITY
        recent_high = indicators.recent_high if indicators.recent_high > 0 else price
        momentum_1h = indicators.momentum_1h
        momentum_4h = indicators.momentum_4h
        volume_ratio = indicators.volume_ratio
        trending = indicators.adx >= cfg.min_adx_for_entry
        creeping = self.creeping_uptrend

        diagnostics = {
            "price": price,
            "recent_high": recent_high,
            "trending": trending,
            "creeping_uptrend": creeping,
        }

        def blocked(reason: str) -> RiskFilterResult:
            logger.info(f"Entry blocked for {pair} - {reason}")
            return RiskFilterResult(passed=False, stage=stage, reason=reason, diagnostics=diagnostics)

        if recent_high > 0:
            if trending or creeping:
                if price < recent_high * cfg.pullback_threshold:
                    pullback = (1 - price / recent_high) * 100
                    return blocked(
                        f"Price pulled back too far from high ({pullback:.2f}% > "
                        f"{(1 - cfg.pullback_threshold) * 100:.1f}%)"
                    )
            elif price > recent_high * cfg.price_top_threshold:
                return blocked(
                    f"Price at local top ({(price / recent_high - 1) * 100:+.2f}% from high)"
                )

        if cfg.ema200_downtrend_block and indicators.ema200 > 0 and price < indicators.ema200:
            return blocked(f"Below EMA200 downtrend ({price:.4f} < {indicators.ema200:.4f})")

        if indicators.rsi > cfg.rsi_extreme_overbought:
            return blocked(
                f"Extreme overbought (RSI={indicators.rsi:.2f} > {cfg.rsi_extreme_overbought})"
            )

        if volume_ratio < cfg.min_volume_ratio:
            return blocked(f"Extreme low volume ({volume_ratio:.2f}x < {cfg.min_volume_ratio}x)")

        min_1h = cfg.min_momentum_1h
        min_4h = cfg.min_momentum_4h
        min_1h_confirmed = cfg.min_momentum_1h_confirmed
        if creeping:
            min_1h = min(min_1h, cfg.creeping_uptrend_min_momentum)
            min_4h = min(min_4h, cfg.creeping_uptrend_min_momentum)
            min_1h_confirmed = min(min_1h_confirmed, cfg.creeping_uptrend_min_momentum)

        paths = {
            "momentum_1h": momentum_1h > min_1h,
            "both_positive": momentum_1h > min_1h_confirmed and momentum_4h > min_4h,
            "volume_breakout": volume_ratio > cfg.volume_breakout_ratio and momentum_1h > 0,
            "trending_pullback": (
                trending
                and momentum_4h >= cfg.pullback_momentum_4h_min
                and momentum_1h >= cfg.pullback_max_dip_1h
            ),
            "creeping_uptrend": (
                creeping
                and momentum_1h > 0
                and volume_ratio >= cfg.creeping_uptrend_volume_ratio_min
            ),
        }
        diagnostics["momentum_paths"] = paths

        if not any(paths.values()):
            return blocked(
                f"Weak momentum (1h={momentum_1h:.2f}%, 4h={momentum_4h:.2f}%, "
                f"vol={volume_ratio:.2f}x)"
            )

        return RiskFilterResult(passed=True, stage=stage, diagnostics=diagnostics)

    # ------------------------------------------------------------------
    # Stage 4
    # ------------------------------------------------------------------

    def check_ai_validation(
        self,
        ai_confidence: float,
        threshold_override: Optional[float] = None,
    ) -> RiskFilterResult:
        """Require the external signal confidence to meet one global threshold.

        The threshold is the same for every regime; the signal generator
        already folds regime into its confidence.
        """
        threshold = self.config.ai_min_confidence if threshold_override is None else threshold_override
        stage = RiskStage.AI_VALIDATION
        diagnostics = {"ai_confidence": ai_confidence, "threshold": threshold}

        if ai_confidence is None or not math.isfinite(ai_confidence) or ai_confidence < threshold:
            logger.info(f"Entry blocked - low AI confidence ({ai_confidence}% < {threshold}%)")
            return RiskFilterResult(
                passed=False,
                stage=stage,
                reason=f"Low AI confidence ({ai_confidence}% < {threshold}%)",
                diagnostics=diagnostics,
            )
        return RiskFilterResult(passed=True, stage=stage, diagnostics=diagnostics)

    # ------------------------------------------------------------------
    # Stage 5
    # ------------------------------------------------------------------

    def total_cost_pct(self, exchange: Optional[str] = None) -> float:
        """Round-trip cost in percent: 2 x taker fee + spread + slippage allowances."""
        cfg = self.config
        name = (exchange or self.exchange or "").lower()
        fee = cfg.taker_fee_pct.get(name, cfg.default_taker_fee_pct)
        return 2 * fee + cfg.spread_allowance_pct + cfg.slippage_allowance_pct

    def check_cost_floor(
        self,
        pair: str,
        profit_target_pct: float,
        exchange: Optional[str] = None,
    ) -> RiskFilterResult:
        """Require the profit target to cover round-trip costs with margin."""
        cfg = self.config
        stage = RiskStage.COST_FLOOR
        total_cost = self.total_cost_pct(exchange)
        cost_floor = total_cost * cfg.cost_floor_multiple
        ratio = profit_target_pct / total_cost if total_cost > 0 else math.inf
        diagnostics = {
            "profit_target_pct": profit_target_pct,
            "total_cost_pct": total_cost,
            "cost_floor_pct": cost_floor,
            "reward_cost_ratio": ratio,
        }

        if profit_target_pct < cost_floor:
            logger.info(
                f"Entry blocked for {pair} - cost floor not met "
                f"({profit_target_pct:.3f}% < {cost_floor:.3f}%)"
            )
            return RiskFilterResult(
                passed=False,
                stage=stage,
                reason=(
                    f"Cost floor not met (profit={profit_target_pct:.3f}% < "
                    f"costs x{cfg.cost_floor_multiple:g}={cost_floor:.3f}%)"
                ),
                diagnostics=diagnostics,
            )

        if ratio < cfg.min_reward_cost_ratio:
            logger.info(f"Entry blocked for {pair} - poor reward/cost ratio ({ratio:.2f}:1)")
            return RiskFilterResult(
                passed=False,
                stage=stage,
                reason=f"Poor reward/cost ratio ({ratio:.2f}:1 < {cfg.min_reward_cost_ratio:g}:1)",
                diagnostics=diagnostics,
            )

        return RiskFilterResult(passed=True, stage=stage, diagnostics=diagnostics)

    # ------------------------------------------------------------------
    # Regime tables
    # ------------------------------------------------------------------

    def get_profit_target(self, regime: Regime, adx_slope: float = 0.0) -> float:
        """Profit target in percent for a regime.

        A strong regime whose ADX slope is at or below the falling threshold
        is given the moderate target instead, since the trend is exhausting.
        """
        regime = Regime.parse(regime)
        table = self.config.profit_target_pct
        default = table.get(Regime.MODERATE.value, 5.0)

        if regime == Regime.STRONG and math.isfinite(adx_slope) and adx_slope <= self.config.adx_slope_falling:
            logger.info(
                f"Profit target downgraded strong -> moderate (ADX slope {adx_slope:+.2f})"
            )
            return default
        return table.get(regime.value, default)

    def get_erosion_cap(self, regime: Regime) -> float:
        """Fraction of peak profit a trade may give back in this regime."""
        regime = Regime.parse(regime)
        table = self.config.erosion_cap
        return table.get(regime.value, table.get(Regime.MODERATE.value, 0.45))

    def size_multiplier_for_regime(self, regime: Regime) -> float:
        """Transitioning entries trade at reduced size."""
        if Regime.parse(regime) == Regime.TRANSITIONING:
            return self.config.transition_size_multiplier
        return 1.0

    def can_add_pyramid_level(self, level: int, ai_confidence: float) -> PyramidCheckResult:
        """Check whether a pyramid level meets its minimum confidence.

        Args:
            level: Pyramid level (1 or 2)
            ai_confidence: Signal confidence for the add

        Raises:
            ValueError: If level is not 1 or 2
        """
        if level == 1:
            required = self.config.pyramid_l1_confidence_min
        elif level == 2:
            required = self.config.pyramid_l2_confidence_min
        else:
            raise ValueError(f"Pyramid level must be 1 or 2, got {level}")

        if ai_confidence < required:
            return PyramidCheckResult(
                passed=False,
                level=level,
                required_confidence=required,
                reason=f"L{level} requires {required}% confidence (got {ai_confidence}%) - pyramid rejected",
            )
        return PyramidCheckResult(passed=True, level=level, required_confidence=required)

    # ------------------------------------------------------------------
    # Pipelines
    # ------------------------------------------------------------------

    def _run_stages(self, stages: list[Callable[[], RiskFilterResult]]) -> RiskFilterResult:
        passed_stages = []
        result = None
        for run_stage in stages:
            result = run_stage()
            if not result.passed:
                result.diagnostics.setdefault("stages_passed", passed_stages)
                return result
            passed_stages.append(result.stage.value)
        result.diagnostics.setdefault("stages_passed", passed_stages)
        return result

    def run_pre_signal_filter(
        self,
        pair: str,
        price: float,
        indicators: TechnicalIndicators,
        ticker: Optional[Ticker] = None,
    ) -> RiskFilterResult:
        """Run stages 1-3 (before the external signal is requested)."""
        result = self._run_stages([
            lambda: self.check_health_gate(indicators.adx, indicators.adx_slope, indicators.momentum_1h),
            lambda: self.check_drop_protection(pair, ticker, indicators),
            lambda: self.check_entry_quality(pair, price, indicators),
        ])
        if result.passed:
            logger.debug(f"Pre-signal stages (1-3) passed for {pair} (ADX={indicators.adx:.1f})")
        return result

    def run_post_signal_filter(
        self,
        pair: str,
        ai_confidence: float,
        profit_target_pct: float,
        exchange: Optional[str] = None,
        threshold_override: Optional[float] = None,
    ) -> RiskFilterResult:
        """Run stages 4-5 (after the external signal arrives)."""
        return self._run_stages([
            lambda: self.check_ai_validation(ai_confidence, threshold_override),
            lambda: self.check_cost_floor(pair, profit_target_pct, exchange),
        ])

    def run_full_filter(
        self,
        pair: str,
        price: float,
        indicators: TechnicalIndicators,
        ticker: Optional[Ticker],
        ai_confidence: float,
        profit_target_pct: Optional[float] = None,
        regime: Regime = Regime.MODERATE,
        exchange: Optional[str] = None,
    ) -> RiskFilterResult:
        """Run all five stages, stopping at the first failure.

        Args:
            pair: Trading pair
            price: Current price
            indicators: Indicator snapshot
            ticker: Live quote (spread check skipped when None)
            ai_confidence: External signal confidence
            profit_target_pct: Target for the cost floor; derived from regime if None
            regime: Regime used to derive the profit target
            exchange: Exchange for fee lookup

        Returns:
            The failing stage's result, or the Cost Floor result when all pass
        """
        if profit_target_pct is None:
            profit_target_pct = self.get_profit_target(regime, indicators.adx_slope)

        return self._run_stages([
            lambda: self.check_health_gate(indicators.adx, indicators.adx_slope, indicators.momentum_1h),
            lambda: self.check_drop_protection(pair, ticker, indicators),
            lambda: self.check_entry_quality(pair, price, indicators),
            lambda: self.check_ai_validation(ai_confidence),
            lambda: self.check_cost_floor(pair, profit_target_pct, exchange),
        ])
