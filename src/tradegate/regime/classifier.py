"""Regime classification module for trend-strength detection.

Classifies a pair's market regime from ADX and its slope, then assigns a
confidence score from how well short and medium-term momentum agree.
"""

import logging
import math
from datetime import datetime, timezone
from typing import Optional, Sequence

from tradegate.config import RegimeConfig
from tradegate.models import Candle, Regime, RegimeClassification, TechnicalIndicators


logger = logging.getLogger(__name__)


class RegimeClassifier:
    """Classifies market regime from indicator snapshots.

    ADX bands (defaults):
    - ADX < 12: CHOPPY
    - 12 <= ADX < 20: TRANSITIONING when ADX slope is rising, CHOPPY otherwise
    - 20 <= ADX < 30: WEAK
    - 30 <= ADX < 35: MODERATE
    - ADX >= 35: STRONG
    """

    def __init__(
        self,
        config: Optional[RegimeConfig] = None,
        adx_fallback: float = 15.0,
        creeping_uptrend: bool = False,
    ):
        """Initialize regime classifier.

        Args:
            config: Regime configuration. Uses defaults if None.
            adx_fallback: ADX used when the snapshot carries a non-finite value
            creeping_uptrend: Raise weak-regime confidence for slow grinding markets
        """
        self.config = config or RegimeConfig()
        self.adx_fallback = adx_fallback
        self.creeping_uptrend = creeping_uptrend

    def classify_adx(self, adx: float, adx_slope: float = 0.0) -> Regime:
        """Map ADX and slope onto a regime band.

        Args:
            adx: Current ADX value
            adx_slope: ADX change per candle

        Returns:
            Regime for the band ADX falls into
        """
        cfg = self.config
        if not math.isfinite(adx):
            adx = self.adx_fallback
        if not math.isfinite(adx_slope):
            adx_slope = 0.0

        if adx < cfg.choppy_adx:
            return Regime.CHOPPY
        if adx < cfg.transition_max_adx:
            if adx_slope >= cfg.adx_slope_rising:
                return Regime.TRANSITIONING
            return Regime.CHOPPY
        if adx < cfg.weak_max_adx:
            return Regime.WEAK
        if adx < cfg.moderate_max_adx:
            return Regime.MODERATE
        return Regime.STRONG

    def base_confidence(self, regime: Regime, momentum_1h: float, momentum_4h: float) -> float:
        """Confidence from the regime x momentum-alignment table, before penalties."""
        cfg = self.config

        if momentum_1h < 0 and momentum_4h < 0:
            return min(cfg.neutral_confidence, cfg.both_negative_cap)

        if regime == Regime.STRONG:
            confidence = cfg.strong_confidence
        elif regime == Regime.MODERATE:
            confidence = cfg.moderate_confidence
        elif regime == Regime.WEAK:
            confidence = (
                cfg.creeping_uptrend_weak_confidence
                if self.creeping_uptrend
                else cfg.weak_confidence
            )
        elif regime == Regime.TRANSITIONING:
            confidence = cfg.transitioning_confidence
        elif (momentum_1h >= cfg.choppy_extreme_momentum_1h
              and momentum_4h >= cfg.choppy_extreme_momentum_4h):
            confidence = cfg.choppy_extreme_confidence
        else:
            confidence = cfg.neutral_confidence

        if not (momentum_1h > 0 and momentum_4h > 0):
            # 1h and 4h disagree (or one is flat)
            confidence = min(confidence, cfg.misaligned_cap)
        return confidence

    def volatility_pct(self, atr: float, price: float) -> float:
        """ATR as a percent of price (0 when price is unknown)."""
        if price <= 0 or not math.isfinite(atr) or not math.isfinite(price):
            return 0.0
        return max(0.0, atr / price * 100)

    def classify(
        self,
        candles: Sequence[Candle],
        indicators: TechnicalIndicators,
        timestamp: Optional[datetime] = None,
    ) -> RegimeClassification:
        """Classify regime and confidence for the latest candle.

        Args:
            candles: Candles the indicators were computed from
            indicators: Indicator snapshot
            timestamp: Classification time (defaults to now, UTC)

        Returns:
            RegimeClassification with confidence clamped to [0, 100]
        """
        cfg = self.config
        price = candles[-1].close if candles else 0.0
        momentum_1h = indicators.momentum_1h if math.isfinite(indicators.momentum_1h) else 0.0
        momentum_4h = indicators.momentum_4h if math.isfinite(indicators.momentum_4h) else 0.0

        regime = self.classify_adx(indicators.adx, indicators.adx_slope)
        confidence = self.base_confidence(regime, momentum_1h, momentum_4h)

        volatility = self.volatility_pct(indicators.atr, price)
        if volatility > cfg.volatility_penalty_atr_pct:
            confidence = max(cfg.volatility_floor, confidence - cfg.volatility_penalty)

        confidence = min(100.0, max(0.0, confidence))
        direction = "BULLISH" if momentum_1h > 0 else "BEARISH"
        aligned = momentum_1h > 0 and momentum_4h > 0

        analysis = (
            f"Market is in {regime.value} regime. "
            f"ADX: {indicators.adx:.2f} (slope {indicators.adx_slope:+.2f}/candle). "
            f"Momentum: 1h={momentum_1h:.3f}% | 4h={momentum_4h:.3f}% "
            f"({'aligned' if aligned else 'not aligned'}). "
            f"Direction: {direction}. RSI: {indicators.rsi:.2f} | ATR: {volatility:.2f}% of price. "
            f"Confidence: {confidence:.0f}%"
        )

        logger.debug(f"Regime {regime.value} adx={indicators.adx:.2f} confidence={confidence:.0f}")

        return RegimeClassification(
            regime=regime,
            confidence=confidence,
            trend=min(100.0, max(-100.0, momentum_1h)),
            volatility=min(100.0, volatility),
            analysis=analysis,
            timestamp=timestamp or datetime.now(timezone.utc),
        )
