"""Capital preservation - three-layer account-level circuit breaker.

Layer 1: BTC daily trend gate (market-wide), EMA short/long of daily closes
Layer 2: Rolling drawdown circuit breaker (per bot), N-day realized P&L
Layer 3: Consecutive loss streak (per bot)

Evaluated once per bot per cycle, independent of pair. Pause and equity-peak
state is merged into the bot's configuration record.
"""

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol

import ccxt
import pandas as pd
import requests

from tradegate.config import CapitalPreservationConfig
from tradegate.context import BtcTrend, MarketContext
from tradegate.models import CapitalPreservationResult, CapitalPreservationState
from tradegate.persistence import BotConfigStore, PersistenceError, TradeLedger, parse_utc


logger = logging.getLogger(__name__)

LAYER_BTC_TREND = "btc_trend_gate"
LAYER_DRAWDOWN = "drawdown"
LAYER_LOSS_STREAK = "loss_streak"
LAYER_COMBINED = "combined"

PAUSE_REASON_DRAWDOWN_STOP = "drawdown_stop"
PAUSE_REASON_DRAWDOWN_PAUSE = "drawdown_pause"

# Drawdown-stop pauses are lifted by BTC recovery, not by expiry
INDEFINITE_PAUSE = timedelta(days=365)

FETCH_ERRORS = (ccxt.BaseError, requests.RequestException, OSError, ValueError, KeyError)


class BtcDataSource(Protocol):
    """Supplies BTC daily closes and a live price."""

    def fetch_daily_closes(self, limit: int) -> list[float]:
        ...

    def fetch_live_price(self) -> Optional[float]:
        ...


class ExchangeBtcSource:
    """BTC data from a public exchange endpoint.

    Daily candles come from ccxt's public ``fetch_ohlcv``; the live price
    from the exchange's REST ticker. Both calls are bounded by a timeout.
    """

    DEFAULT_TICKER_URL = "https://api.binance.com/api/v3/ticker/price?symbol=BTCUSDT"

    def __init__(
        self,
        exchange_id: str = "binance",
        pair: str = "BTC/USDT",
        timeout_seconds: float = 10.0,
        ticker_url: Optional[str] = DEFAULT_TICKER_URL,
        exchange: Optional[Any] = None,
    ):
        """Initialize BTC data source.

        Args:
            exchange_id: ccxt exchange id
            pair: BTC pair symbol
            timeout_seconds: Timeout for each network call
            ticker_url: REST ticker URL returning {"price": ...}; None to use ccxt fetch_ticker
            exchange: Preconstructed ccxt exchange (for tests)
        """
        self.pair = pair
        self.timeout_seconds = timeout_seconds
        self.ticker_url = ticker_url
        self.exchange = exchange or getattr(ccxt, exchange_id)({
            "enableRateLimit": True,
            "timeout": int(timeout_seconds * 1000),
            "options": {"defaultType": "spot"},
        })

    def fetch_daily_closes(self, limit: int) -> list[float]:
        ohlcv = self.exchange.fetch_ohlcv(self.pair, timeframe="1d", limit=limit)
        return [float(row[4]) for row in ohlcv]

    def fetch_live_price(self) -> Optional[float]:
        if self.ticker_url:
            response = requests.get(self.ticker_url, timeout=self.timeout_seconds)
            response.raise_for_status()
            return float(response.json()["price"])

        ticker = self.exchange.fetch_ticker(self.pair)
        last = ticker.get("last")
        return float(last) if last is not None else None


def calculate_ema(closes: list[float], period: int) -> float:
    """EMA seeded from the first close, alpha = 2 / (period + 1)."""
    if not closes:
        return 0.0
    return float(pd.Series(closes, dtype=float).ewm(span=period, adjust=False).mean().iloc[-1])


def _allow(reason: str, multiplier: float = 1.0, layer: Optional[str] = None) -> CapitalPreservationResult:
    return CapitalPreservationResult(
        allow_trading=True, size_multiplier=multiplier, reason=reason, layer=layer
    )


def _block(reason: str, layer: str) -> CapitalPreservationResult:
    return CapitalPreservationResult(
        allow_trading=False, size_multiplier=0.0, reason=reason, layer=layer
    )


class CapitalPreservation:
    """Account-level safeguards reducing size or pausing trading."""

    def __init__(
        self,
        ledger: TradeLedger,
        bot_store: BotConfigStore,
        config: Optional[CapitalPreservationConfig] = None,
        btc_source: Optional[BtcDataSource] = None,
        context: Optional[MarketContext] = None,
    ):
        """Initialize capital preservation.

        Args:
            ledger: Trade ledger for realized P&L and loss streaks
            bot_store: Bot configuration records holding pause/peak state
            config: Capital preservation configuration. Uses defaults if None.
            btc_source: BTC daily data source; the trend gate fails open without one
            context: Shared market context holding the BTC trend cache
        """
        self.ledger = ledger
        self.bot_store = bot_store
        self.config = config or CapitalPreservationConfig()
        self.btc_source = btc_source
        self.context = context or MarketContext()

    # ------------------------------------------------------------------
    # Layer 1: BTC trend gate
    # ------------------------------------------------------------------

    def check_btc_trend_gate(self) -> CapitalPreservationResult:
        """Compare BTC price to its daily EMAs.

        - Below EMA long: trade at ``below_long_multiplier`` (opportunistic, not a block)
        - Below EMA short only: ``below_short_multiplier``
        - Otherwise: full size

        Any fetch failure fails open at full size.
        """
        cfg = self.config
        if not cfg.btc_trend_gate_enabled:
            return _allow("BTC trend gate disabled")

        cached = self.context.get_btc_trend(cfg.btc_cache_ttl_seconds)
        if cached is not None:
            return self._evaluate_btc_trend(cached)

        if self.btc_source is None:
            logger.warning("Capital preservation: no BTC data source configured, allowing trading")
            return _allow("No BTC data source, allowing trading")

        try:
            closes = self.btc_source.fetch_daily_closes(cfg.btc_daily_candles)
        except FETCH_ERRORS as e:
            logger.error(f"Capital preservation: BTC trend fetch failed: {e}", exc_info=True)
            return _allow("BTC trend gate error, allowing trading")

        if len(closes) < cfg.btc_ema_long:
            logger.warning(
                f"Capital preservation: insufficient BTC daily candles "
                f"({len(closes)} < {cfg.btc_ema_long})"
            )
            return _allow("Insufficient BTC data, allowing trading")

        try:
            btc_close = self.btc_source.fetch_live_price()
        except FETCH_ERRORS as e:
            logger.debug(f"Capital preservation: live BTC price unavailable ({e}), using daily close")
            btc_close = None
        if btc_close is None:
            btc_close = closes[-1]

        trend = self.context.set_btc_trend(
            btc_close=btc_close,
            ema_short=calculate_ema(closes, cfg.btc_ema_short),
            ema_long=calculate_ema(closes, cfg.btc_ema_long),
        )
        return self._evaluate_btc_trend(trend)

    def _evaluate_btc_trend(self, trend: BtcTrend) -> CapitalPreservationResult:
        cfg = self.config
        btc, short, long_ = trend.btc_close, trend.ema_short, trend.ema_long

        if btc < long_:
            logger.info(
                f"Capital preservation: BTC below EMA{cfg.btc_ema_long} "
                f"(${btc:,.0f} < ${long_:,.0f}) - size x{cfg.below_long_multiplier}"
            )
            return _allow(
                f"BTC below EMA{cfg.btc_ema_long} (${btc:,.0f} < ${long_:,.0f}), cautious but opportunistic",
                cfg.below_long_multiplier,
                LAYER_BTC_TREND,
            )

        if btc < short:
            logger.info(
                f"Capital preservation: BTC below EMA{cfg.btc_ema_short} "
                f"(${btc:,.0f} < ${short:,.0f}) - size x{cfg.below_short_multiplier}"
            )
            return _allow(
                f"BTC below EMA{cfg.btc_ema_short} (${btc:,.0f} < ${short:,.0f}), above EMA{cfg.btc_ema_long}",
                cfg.below_short_multiplier,
                LAYER_BTC_TREND,
            )

        logger.debug(f"Capital preservation: BTC above EMA{cfg.btc_ema_short}, full trading")
        return _allow(f"BTC above EMA{cfg.btc_ema_short}, full trading")

    def clear_btc_cache(self) -> None:
        """Force the next trend check to refetch."""
        self.context.clear_btc_trend()

    # ------------------------------------------------------------------
    # Bot state
    # ------------------------------------------------------------------

    def get_state(self, bot_id: str) -> CapitalPreservationState:
        """Read the persisted pause and equity-peak state for a bot."""
        config = self.bot_store.get_config(bot_id)
        peak = config.get("cp_peak_equity")
        return CapitalPreservationState(
            peak_equity=float(peak) if peak is not None else None,
            paused_until=parse_utc(config.get("cp_paused_until")),
            pause_reason=config.get("cp_pause_reason"),
            streak_paused_until=parse_utc(config.get("cp_streak_paused_until")),
        )

    def _update_bot_config(self, bot_id: str, updates: dict[str, Any]) -> None:
        try:
            self.bot_store.merge_config(bot_id, updates)
        except PersistenceError as e:
            logger.error(
                f"Capital preservation: failed to update bot config for {bot_id} {updates}: {e}",
                exc_info=True,
            )

    @staticmethod
    def _now(now: Optional[datetime]) -> datetime:
        return parse_utc(now) if now else datetime.now(timezone.utc)

    # ------------------------------------------------------------------
    # Layer 2: rolling drawdown
    # ------------------------------------------------------------------

    def check_drawdown(
        self,
        bot_id: str,
        effective_balance: float,
        now: Optional[datetime] = None,
    ) -> CapitalPreservationResult:
        """Rolling drawdown circuit breaker.

        - Drawdown from equity peak >= stop pct: pause until BTC recovers to full size,
          then measure drawdown from the equity at recovery
        - Rolling loss >= pause pct: pause for ``drawdown_pause_hours``
        - Rolling loss >= reduce pct: half size
        - ``win_streak_reset`` consecutive wins reset the equity peak

        Args:
            bot_id: Bot instance ID
            effective_balance: Bot's trading balance in quote currency
            now: Evaluation time (defaults to now, UTC)
        """
        cfg = self.config
        if not cfg.drawdown_enabled:
            return _allow("Drawdown check disabled")

        now = self._now(now)
        try:
            bot_config = self.bot_store.get_config(bot_id)
            stop_lifted = False

            paused_until = parse_utc(bot_config.get("cp_paused_until"))
            if paused_until is not None:
                if now < paused_until:
                    if bot_config.get("cp_pause_reason") == PAUSE_REASON_DRAWDOWN_STOP:
                        btc_result = self.check_btc_trend_gate()
                        if btc_result.size_multiplier < 1.0:
                            return _block(
                                f"Paused: drawdown stop, waiting for BTC recovery "
                                f"(currently {btc_result.reason})",
                                LAYER_DRAWDOWN,
                            )
                        logger.info(f"Capital preservation: BTC recovered, lifting drawdown stop for {bot_id}")
                        self._update_bot_config(bot_id, {"cp_paused_until": None, "cp_pause_reason": None})
                        stop_lifted = True
                    else:
                        remaining = max(1, math.ceil((paused_until - now).total_seconds() / 60))
                        return _block(
                            f"Paused for {remaining}min (drawdown circuit breaker)",
                            LAYER_DRAWDOWN,
                        )
                else:
                    self._update_bot_config(bot_id, {"cp_paused_until": None, "cp_pause_reason": None})

            rolling_pnl = self.ledger.get_rolling_pnl(
                bot_id, now - timedelta(days=cfg.rolling_window_days)
            )
            rolling_pct = rolling_pnl / effective_balance * 100 if effective_balance > 0 else 0.0

            stored_peak = bot_config.get("cp_peak_equity")
            peak_equity = float(stored_peak) if stored_peak is not None else effective_balance
            current_equity = effective_balance + rolling_pnl

            if stop_lifted:
                # Drawdown restarts from the equity at recovery
                peak_equity = current_equity
                self._update_bot_config(bot_id, {"cp_peak_equity": current_equity})
            elif current_equity > peak_equity:
                self._update_bot_config(bot_id, {"cp_peak_equity": current_equity})

            drawdown_pct = (peak_equity - current_equity) / peak_equity * 100 if peak_equity > 0 else 0.0

            logger.debug(
                f"Capital preservation drawdown check for {bot_id}: rolling={rolling_pnl:.2f} "
                f"({rolling_pct:.2f}%) peak={peak_equity:.2f} current={current_equity:.2f} "
                f"drawdown={drawdown_pct:.2f}%"
            )

            if drawdown_pct >= cfg.drawdown_stop_pct:
                logger.info(
                    f"Capital preservation: {bot_id} {drawdown_pct:.1f}% drawdown from peak - "
                    f"pausing until BTC recovers"
                )
                self._update_bot_config(bot_id, {
                    "cp_paused_until": (now + INDEFINITE_PAUSE).isoformat(),
                    "cp_pause_reason": PAUSE_REASON_DRAWDOWN_STOP,
                })
                return _block(
                    f"{drawdown_pct:.1f}% drawdown from peak (>={cfg.drawdown_stop_pct:g}%), "
                    f"pausing until BTC recovers",
                    LAYER_DRAWDOWN,
                )

            if rolling_pnl < 0 and abs(rolling_pct) >= cfg.drawdown_pause_pct:
                logger.info(
                    f"Capital preservation: {bot_id} {rolling_pct:.1f}% "
                    f"{cfg.rolling_window_days}-day loss - pausing {cfg.drawdown_pause_hours:g}h"
                )
                self._update_bot_config(bot_id, {
                    "cp_paused_until": (now + timedelta(hours=cfg.drawdown_pause_hours)).isoformat(),
                    "cp_pause_reason": PAUSE_REASON_DRAWDOWN_PAUSE,
                })
                return _block(
                    f"{abs(rolling_pct):.1f}% {cfg.rolling_window_days}-day loss "
                    f"(>={cfg.drawdown_pause_pct:g}%), paused {cfg.drawdown_pause_hours:g}h",
                    LAYER_DRAWDOWN,
                )

            if rolling_pnl < 0 and abs(rolling_pct) >= cfg.drawdown_reduce_pct:
                logger.info(
                    f"Capital preservation: {bot_id} {rolling_pct:.1f}% "
                    f"{cfg.rolling_window_days}-day loss - reducing size 50%"
                )
                return _allow(
                    f"{abs(rolling_pct):.1f}% {cfg.rolling_window_days}-day loss "
                    f"(>={cfg.drawdown_reduce_pct:g}%), reducing size",
                    0.5,
                    LAYER_DRAWDOWN,
                )

            recent = self.ledger.get_recent_closed_trades(bot_id, cfg.win_streak_reset)
            if len(recent) == cfg.win_streak_reset and all(t.is_winner for t in recent):
                self._update_bot_config(bot_id, {"cp_peak_equity": current_equity})

            return _allow("Drawdown within limits")
        except PersistenceError as e:
            logger.error(f"Capital preservation: drawdown check error for {bot_id}: {e}", exc_info=True)
            return _allow("Drawdown check error, allowing trading")

    # ------------------------------------------------------------------
    # Layer 3: consecutive losses
    # ------------------------------------------------------------------

    def count_consecutive_losses(self, bot_id: str) -> int:
        """Leading run of losing trades, most recent first; the first non-loss ends it."""
        streak = 0
        for trade in self.ledger.get_recent_closed_trades(bot_id, self.config.loss_streak_lookback):
            if trade.profit_loss < 0:
                streak += 1
            else:
                break
        return streak

    def check_loss_streak(
        self,
        bot_id: str,
        now: Optional[datetime] = None,
    ) -> CapitalPreservationResult:
        """Reduce size or pause after consecutive losing trades."""
        cfg = self.config
        if not cfg.loss_streak_enabled:
            return _allow("Loss streak check disabled")

        now = self._now(now)
        try:
            bot_config = self.bot_store.get_config(bot_id)
            paused_until = parse_utc(bot_config.get("cp_streak_paused_until"))
            if paused_until is not None:
                if now < paused_until:
                    remaining = max(1, math.ceil((paused_until - now).total_seconds() / 60))
                    return _block(
                        f"Paused for {remaining}min ({cfg.loss_streak_pause}+ consecutive losses)",
                        LAYER_LOSS_STREAK,
                    )
                self._update_bot_config(bot_id, {"cp_streak_paused_until": None})

            losses = self.count_consecutive_losses(bot_id)
            logger.debug(f"Capital preservation loss streak for {bot_id}: {losses}")

            if losses >= cfg.loss_streak_pause:
                logger.info(
                    f"Capital preservation: {bot_id} {losses} consecutive losses - "
                    f"pausing {cfg.loss_streak_pause_hours:g}h"
                )
                self._update_bot_config(bot_id, {
                    "cp_streak_paused_until": (now + timedelta(hours=cfg.loss_streak_pause_hours)).isoformat(),
                })
                return _block(
                    f"{losses} consecutive losses (>={cfg.loss_streak_pause}), "
                    f"paused {cfg.loss_streak_pause_hours:g}h",
                    LAYER_LOSS_STREAK,
                )

            if losses >= cfg.loss_streak_quarter:
                logger.info(f"Capital preservation: {bot_id} {losses} consecutive losses - size 25%")
                return _allow(
                    f"{losses} consecutive losses, reducing to 25% size", 0.25, LAYER_LOSS_STREAK
                )

            if losses >= cfg.loss_streak_reduce:
                logger.info(f"Capital preservation: {bot_id} {losses} consecutive losses - size 50%")
                return _allow(
                    f"{losses} consecutive losses (>={cfg.loss_streak_reduce}), reducing size",
                    0.5,
                    LAYER_LOSS_STREAK,
                )

            return _allow("No significant loss streak")
        except PersistenceError as e:
            logger.error(f"Capital preservation: loss streak check error for {bot_id}: {e}", exc_info=True)
            return _allow("Loss streak check error, allowing trading")

    # ------------------------------------------------------------------
    # Combined
    # ------------------------------------------------------------------

    def evaluate_bot(
        self,
        bot_id: str,
        effective_balance: float,
        now: Optional[datetime] = None,
    ) -> CapitalPreservationResult:
        """Combine drawdown and loss-streak layers for one bot.

        Either layer's pause blocks trading. Otherwise the multipliers are
        multiplied together and floored at ``min_size_multiplier``.
        """
        drawdown = self.check_drawdown(bot_id, effective_balance, now)
        if not drawdown.allow_trading:
            return drawdown

        streak = self.check_loss_streak(bot_id, now)
        if not streak.allow_trading:
            return streak

        combined = max(self.config.min_size_multiplier, drawdown.size_multiplier * streak.size_multiplier)
        if combined < 1.0:
            reasons = [r.reason for r in (drawdown, streak) if r.size_multiplier < 1.0]
            return _allow("; ".join(reasons), combined, LAYER_COMBINED)

        return _allow("All per-bot checks passed")
