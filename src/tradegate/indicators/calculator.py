"""Technical indicator calculation module for Tradegate.

Produces a single ``TechnicalIndicators`` snapshot from an ordered candle
series. Candle cadence is assumed to be 15 minutes for the momentum windows;
the caller is responsible for supplying that cadence.
"""

import logging
import math
from typing import Optional, Sequence, Union

import numpy as np
import pandas as pd

from tradegate.config import IndicatorConfig
from tradegate.models import (
    BollingerBands,
    Candle,
    MACD,
    MovingAverages,
    TechnicalIndicators,
)


logger = logging.getLogger(__name__)

OHLCV_COLUMNS = ["open", "high", "low", "close", "volume"]


class InsufficientDataError(ValueError):
    """Raised when a candle series is too short for indicator computation."""

    def __init__(self, received: int, required: int):
        super().__init__(
            f"Need at least {required} candles for technical analysis, got {received}"
        )
        self.received = received
        self.required = required


def candles_to_dataframe(candles: Sequence[Candle]) -> pd.DataFrame:
    """Convert a candle sequence into an OHLCV dataframe indexed by timestamp."""
    if not candles:
        return pd.DataFrame(columns=OHLCV_COLUMNS, dtype=float)
    return pd.DataFrame(
        {
            "open": [c.open for c in candles],
            "high": [c.high for c in candles],
            "low": [c.low for c in candles],
            "close": [c.close for c in candles],
            "volume": [c.volume for c in candles],
        },
        index=pd.Index([c.timestamp for c in candles], name="timestamp"),
        dtype=float,
    )


def _finite(value: float, fallback: float) -> float:
    value = float(value)
    return value if math.isfinite(value) else fallback


class IndicatorEngine:
    """Calculates the indicator snapshot consumed by regime and risk logic."""

    def __init__(self, config: Optional[IndicatorConfig] = None):
        """Initialize indicator engine.

        Args:
            config: Indicator periods. Uses defaults if None.
        """
        self.config = config or IndicatorConfig()

    def compute_indicators(
        self, candles: Union[Sequence[Candle], pd.DataFrame]
    ) -> TechnicalIndicators:
        """Compute every indicator for the most recent candle.

        Args:
            candles: Candles in ascending time order, or an OHLCV dataframe

        Returns:
            Immutable indicator snapshot

        Raises:
            InsufficientDataError: If fewer than ``min_candles`` candles are given
        """
        df = candles if isinstance(candles, pd.DataFrame) else candles_to_dataframe(candles)
        if len(df) < self.config.min_candles:
            raise InsufficientDataError(len(df), self.config.min_candles)

        close = df["close"].astype(float)
        volume = df["volume"].astype(float)
        cfg = self.config

        adx_series = self.calculate_adx_series(df, cfg.adx_period)
        adx = self.calculate_adx(df, cfg.adx_period, adx_series=adx_series)
        adx_slope = self.calculate_adx_slope(adx_series, cfg.adx_slope_lookback)

        ema_period = 200 if len(close) >= 200 else min(len(close), 50)
        recent = df.tail(cfg.recent_window)

        indicators = TechnicalIndicators(
            rsi=_finite(self.calculate_rsi(close, cfg.rsi_period), 50.0),
            macd=self.calculate_macd(close),
            bollinger=self.calculate_bollinger(close, cfg.bollinger_period, cfg.bollinger_std),
            moving_averages=MovingAverages(
                sma20=_finite(self.calculate_sma(close, 20), 0.0),
                sma50=_finite(self.calculate_sma(close, 50), 0.0),
                ema12=_finite(self.calculate_ema(close, 12).iloc[-1], 0.0),
                ema26=_finite(self.calculate_ema(close, 26).iloc[-1], 0.0),
            ),
            atr=_finite(self.calculate_atr(df, cfg.atr_period), 0.0),
            obv=_finite(self.calculate_obv(df), 0.0),
            adx=adx,
            adx_slope=adx_slope,
            momentum_1h=_finite(self.calculate_momentum(close, cfg.momentum_1h_candles), 0.0),
            momentum_4h=_finite(self.calculate_momentum(close, cfg.momentum_4h_candles), 0.0),
            volume_ratio=_finite(self.calculate_volume_ratio(volume, cfg.volume_window), 1.0),
            ema200=_finite(self.calculate_ema(close, ema_period).iloc[-1], 0.0),
            recent_high=_finite(recent["high"].max(), 0.0),
            recent_low=_finite(recent["low"].min(), 0.0),
        )
        logger.debug(
            f"Indicators computed over {len(df)} candles: adx={indicators.adx:.2f} "
            f"slope={indicators.adx_slope:.2f} rsi={indicators.rsi:.2f} "
            f"mom1h={indicators.momentum_1h:.3f}% mom4h={indicators.momentum_4h:.3f}%"
        )
        return indicators

    def calculate_ema(self, series: pd.Series, period: int) -> pd.Series:
        """Calculate Exponential Moving Average.

        Seeded from the first value and recursed forward with
        alpha = 2 / (period + 1), not seeded from an SMA.
        """
        return series.ewm(span=period, adjust=False).mean()

    def calculate_sma(self, series: pd.Series, period: int) -> float:
        """Mean of the trailing ``period`` values (or all values when fewer)."""
        return float(series.tail(period).mean())

    def calculate_rsi(self, series: pd.Series, period: int = 14) -> float:
        """Calculate Relative Strength Index from simple average gain/loss.

        RSI = 100 - (100 / (1 + RS)) where RS = average gain / average loss
        over the trailing ``period`` changes.

        Returns:
            50 when history is short, 100 when there were no losses,
            0 when there were no gains.
        """
        if len(series) < period + 1:
            return 50.0

        changes = series.diff().iloc[-period:]
        avg_gain = changes.clip(lower=0).sum() / period
        avg_loss = (-changes.clip(upper=0)).sum() / period

        if avg_loss == 0:
            return 100.0
        if avg_gain == 0:
            return 0.0

        rs = avg_gain / avg_loss
        return float(min(100.0, max(0.0, 100 - 100 / (1 + rs))))

    def calculate_macd(self, series: pd.Series) -> MACD:
        """MACD line = EMA12 - EMA26, signal = EMA9 of the line."""
        line = self.calculate_ema(series, 12) - self.calculate_ema(series, 26)
        signal = self.calculate_ema(line, 9)
        value = _finite(line.iloc[-1], 0.0)
        signal_value = _finite(signal.iloc[-1], 0.0)
        return MACD(value=value, signal=signal_value, histogram=value - signal_value)

    def calculate_bollinger(
        self, series: pd.Series, period: int = 20, std_mult: float = 2.0
    ) -> BollingerBands:
        """SMA middle band with population standard deviation bands."""
        window = series.tail(period)
        middle = _finite(window.mean(), 0.0)
        std = _finite(window.std(ddof=0), 0.0)
        return BollingerBands(
            upper=middle + std_mult * std,
            middle=middle,
            lower=middle - std_mult * std,
        )

    def calculate_true_range(self, df: pd.DataFrame) -> pd.Series:
        """True Range = max(high - low, |high - prev_close|, |low - prev_close|).

        The first candle has no previous close and is dropped.
        """
        high = df["high"]
        low = df["low"]
        prev_close = df["close"].shift(1)

        tr1 = high - low
        tr2 = (high - prev_close).abs()
        tr3 = (low - prev_close).abs()
        return pd.concat([tr1, tr2, tr3], axis=1).max(axis=1, skipna=False).iloc[1:]

    def calculate_atr(self, df: pd.DataFrame, period: int = 14) -> float:
        """Average True Range as the plain mean over the trailing window."""
        true_range = self.calculate_true_range(df)
        if true_range.empty:
            return 0.0
        return float(max(0.0, true_range.tail(period).mean()))

    def calculate_obv(self, df: pd.DataFrame) -> float:
        """On-Balance Volume: cumulative volume signed by close direction."""
        direction = np.sign(df["close"].diff().fillna(0.0))
        return float((direction * df["volume"]).sum())

    def calculate_momentum(self, series: pd.Series, candles: int) -> float:
        """Percent change from the close ``candles`` positions back to the latest close."""
        if len(series) < candles:
            return 0.0
        base = series.iloc[-candles]
        if base == 0:
            return 0.0
        return float((series.iloc[-1] - base) / base * 100)

    def calculate_volume_ratio(self, volume: pd.Series, window: int = 20) -> float:
        """Current volume divided by the mean of the trailing ``window`` volumes."""
        avg = volume.tail(window).mean()
        if not avg or avg <= 0:
            return 1.0
        return float(volume.iloc[-1] / avg)

    def calculate_adx_series(self, df: pd.DataFrame, period: int = 14) -> list[float]:
        """Compute the Wilder-smoothed ADX series.

        Uses Wilder smoothing of true range and +/- directional movement,
        DX = |+DI - -DI| / (+DI + -DI) * 100, then Wilder-smoothed DX.

        Returns:
            ADX values in time order, empty when history is insufficient.
        """
        if len(df) < period * 2:
            return []

        high = df["high"].to_numpy(dtype=float)
        low = df["low"].to_numpy(dtype=float)
        true_range = self.calculate_true_range(df).to_numpy(dtype=float)

        up_move = high[1:] - high[:-1]
        down_move = low[:-1] - low[1:]
        plus_dm = np.where((up_move > down_move) & (up_move > 0), up_move, 0.0)
        minus_dm = np.where((down_move > up_move) & (down_move > 0), down_move, 0.0)

        smoothed_tr = true_range[:period].sum()
        smoothed_plus = plus_dm[:period].sum()
        smoothed_minus = minus_dm[:period].sum()

        dx_values = []
        for i in range(period, len(true_range)):
            smoothed_tr = smoothed_tr - smoothed_tr / period + true_range[i]
            smoothed_plus = smoothed_plus - smoothed_plus / period + plus_dm[i]
            smoothed_minus = smoothed_minus - smoothed_minus / period + minus_dm[i]

            plus_di = smoothed_plus / smoothed_tr * 100 if smoothed_tr > 0 else 0.0
            minus_di = smoothed_minus / smoothed_tr * 100 if smoothed_tr > 0 else 0.0
            di_sum = plus_di + minus_di
            dx_values.append(0.0 if di_sum == 0 else abs(plus_di - minus_di) / di_sum * 100)

        if not dx_values:
            return []

        adx = sum(dx_values[:period]) / period
        series = [adx]
        for dx in dx_values[period:]:
            adx = (adx * (period - 1) + dx) / period
            series.append(adx)
        return series

    def calculate_adx(
        self,
        df: pd.DataFrame,
        period: int = 14,
        adx_series: Optional[list[float]] = None,
    ) -> float:
        """Calculate the latest ADX value.

        Falls back to a deliberately low value (``adx_fallback``, 15) when
        history is insufficient or the result is not finite, so that the
        health gate blocks rather than admits on bad data.
        """
        if adx_series is None:
            adx_series = self.calculate_adx_series(df, period)

        fallback = self.config.adx_fallback
        if not adx_series:
            logger.warning(
                f"ADX fallback: insufficient candles ({len(df)} < {period * 2}) - using {fallback}"
            )
            return fallback

        adx = adx_series[-1]
        if not math.isfinite(adx):
            logger.warning(f"ADX fallback: non-finite result - using {fallback}")
            return fallback
        return float(min(100.0, max(0.0, adx)))

    def calculate_adx_slope(self, adx_series: list[float], lookback: int = 3) -> float:
        """ADX change per candle over the last ``lookback`` candles (0 when unknown)."""
        if len(adx_series) <= lookback:
            return 0.0
        slope = (adx_series[-1] - adx_series[-1 - lookback]) / lookback
        return slope if math.isfinite(slope) else 0.0
