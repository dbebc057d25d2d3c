"""Process-scoped market context shared across concurrent pair evaluations.

The orchestrator updates the context once per cycle, before dispatching
per-pair work. Readers never take the lock; writes are serialized.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Optional


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BtcTrend:
    """Cached BTC daily trend snapshot."""
    btc_close: float
    ema_short: float
    ema_long: float
    fetched_at: float  # time.monotonic() at fetch


class MarketContext:
    """Shared BTC momentum value and BTC trend cache."""

    def __init__(self, btc_momentum_1h: float = 0.0):
        self._lock = threading.Lock()
        self._btc_momentum_1h = btc_momentum_1h
        self._btc_trend: Optional[BtcTrend] = None

    @property
    def btc_momentum_1h(self) -> float:
        """Latest BTC 1h momentum in percent."""
        return self._btc_momentum_1h

    def update_btc_momentum(self, momentum_pct: float) -> None:
        """Publish the BTC 1h momentum for this cycle."""
        with self._lock:
            self._btc_momentum_1h = float(momentum_pct)
        logger.debug(f"BTC 1h momentum updated: {momentum_pct:.3f}%")

    def get_btc_trend(self, ttl_seconds: float, now: Optional[float] = None) -> Optional[BtcTrend]:
        """Return the cached BTC trend if younger than ``ttl_seconds``."""
        trend = self._btc_trend
        if trend is None:
            return None
        now = time.monotonic() if now is None else now
        if now - trend.fetched_at >= ttl_seconds:
            return None
        return trend

    def set_btc_trend(
        self,
        btc_close: float,
        ema_short: float,
        ema_long: float,
        fetched_at: Optional[float] = None,
    ) -> BtcTrend:
        trend = BtcTrend(
            btc_close=btc_close,
            ema_short=ema_short,
            ema_long=ema_long,
            fetched_at=time.monotonic() if fetched_at is None else fetched_at,
        )
        with self._lock:
            self._btc_trend = trend
        return trend

    def clear_btc_trend(self) -> None:
        with self._lock:
            self._btc_trend = None
        logger.info("BTC trend cache cleared")
