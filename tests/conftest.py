"""Pytest configuration and shared fixtures."""

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from tradegate.config import EngineConfig
from tradegate.context import MarketContext
from tradegate.models import (
    BollingerBands,
    Candle,
    MACD,
    MovingAverages,
    TechnicalIndicators,
    Ticker,
)
from tradegate.persistence import BotConfigStore, TradeLedger


START = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_candles(
    closes: list[float],
    wick: float = 0.2,
    volume: float = 100.0,
    start: datetime = START,
) -> list[Candle]:
    """Build 15m candles around a close series."""
    candles = []
    prev = closes[0]
    for i, close in enumerate(closes):
        candles.append(Candle(
            timestamp=start + timedelta(minutes=15 * i),
            open=prev,
            high=max(prev, close) + wick,
            low=min(prev, close) - wick,
            close=close,
            volume=volume,
        ))
        prev = close
    return candles


def zigzag_uptrend(n: int = 60, start: float = 100.0) -> list[float]:
    """Closes rising +1.0 on odd steps and falling 0.5 on even steps."""
    closes = [start]
    for i in range(1, n):
        closes.append(closes[-1] + (1.0 if i % 2 else -0.5))
    return closes


def linear(n: int, start: float = 100.0, step: float = 0.5) -> list[float]:
    return [start + i * step for i in range(n)]


def make_indicators(**overrides) -> TechnicalIndicators:
    """Indicator snapshot that passes every pre-signal stage unless overridden."""
    values = dict(
        rsi=55.0,
        macd=MACD(value=0.1, signal=0.05, histogram=0.05),
        bollinger=BollingerBands(upper=105.0, middle=100.0, lower=95.0),
        moving_averages=MovingAverages(sma20=99.0, sma50=97.0, ema12=99.5, ema26=98.5),
        atr=1.0,
        obv=1000.0,
        adx=32.0,
        adx_slope=0.5,
        momentum_1h=1.2,
        momentum_4h=0.8,
        volume_ratio=1.0,
        ema200=90.0,
        recent_high=101.0,
        recent_low=95.0,
    )
    values.update(overrides)
    return TechnicalIndicators(**values)


class FakeBtcSource:
    """In-memory BTC data source."""

    def __init__(self, closes: list[float], live_price: Optional[float] = None, error: Exception = None):
        self.closes = closes
        self.live_price = live_price
        self.error = error
        self.fetches = 0

    def fetch_daily_closes(self, limit: int) -> list[float]:
        self.fetches += 1
        if self.error is not None:
            raise self.error
        return self.closes[-limit:]

    def fetch_live_price(self) -> Optional[float]:
        return self.live_price


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "tradegate.db")


@pytest.fixture
def ledger(db_path):
    return TradeLedger(db_path)


@pytest.fixture
def bot_store(db_path):
    return BotConfigStore(db_path)


@pytest.fixture
def context():
    return MarketContext()


@pytest.fixture
def engine_config(db_path):
    return EngineConfig(database_path=db_path)


@pytest.fixture
def tight_ticker():
    return Ticker(bid=100.0, ask=100.1, last=100.05)


@pytest.fixture
def now():
    return datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
