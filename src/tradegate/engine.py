"""Decision engine wiring indicators, regime, risk gate, position tracking
and capital preservation for one orchestrator cycle.

Per (bot, pair) evaluation is strictly sequential:
candles -> indicators -> regime -> stages 1-3 -> signal confidence -> stages 4-5
-> capital preservation sizing. Exit evaluation runs independently per open trade.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Sequence

from tradegate.config import EngineConfig
from tradegate.context import MarketContext
from tradegate.indicators import IndicatorEngine, candles_to_dataframe
from tradegate.models import (
    Candle,
    CapitalPreservationResult,
    ExitReason,
    OpenTrade,
    Regime,
    RegimeClassification,
    RiskFilterResult,
    TechnicalIndicators,
    Ticker,
)
from tradegate.persistence import BotConfigStore, PersistenceError, TradeLedger
from tradegate.regime import RegimeClassifier
from tradegate.risk import CapitalPreservation, PositionTracker, RiskGate
from tradegate.risk.capital_preservation import BtcDataSource


logger = logging.getLogger(__name__)


@dataclass
class EntryDecision:
    """Outcome of an entry evaluation for one bot and pair."""
    approve: bool
    bot_id: str
    pair: str
    reason: str
    indicators: Optional[TechnicalIndicators] = None
    regime: Optional[RegimeClassification] = None
    pre_signal: Optional[RiskFilterResult] = None
    post_signal: Optional[RiskFilterResult] = None
    btc_trend: Optional[CapitalPreservationResult] = None
    capital: Optional[CapitalPreservationResult] = None
    size_multiplier: float = 0.0
    profit_target_pct: float = 0.0

    @property
    def stage_results(self) -> list[RiskFilterResult]:
        return [r for r in (self.pre_signal, self.post_signal) if r is not None]


@dataclass
class OpenPosition:
    """Open trade as seen by the orchestrator this cycle."""
    trade_id: str
    pair: str
    current_profit_pct: float
    entry_time: Optional[datetime] = None


@dataclass
class ExitDecision:
    trade_id: str
    pair: str
    should_exit: bool
    regime: Regime
    exit_reason: Optional[ExitReason] = None
    reason: Optional[str] = None
    peak_profit_pct: float = 0.0
    details: Optional[object] = field(default=None, repr=False)


class DecisionEngine:
    """Explicitly constructed services for entry and exit decisions."""

    def __init__(
        self,
        config: EngineConfig,
        ledger: Optional[TradeLedger] = None,
        bot_store: Optional[BotConfigStore] = None,
        btc_source: Optional[BtcDataSource] = None,
        context: Optional[MarketContext] = None,
    ):
        """Initialize decision engine.

        Args:
            config: Loaded engine configuration
            ledger: Trade ledger. Opened at config.database_path if None.
            bot_store: Bot config store. Opened at config.database_path if None.
            btc_source: BTC daily data for the trend gate (fails open if None)
            context: Shared market context. A new one is created if None.
        """
        self.config = config
        self.context = context or MarketContext()
        self.ledger = ledger or TradeLedger(config.database_path)
        self.bot_store = bot_store or BotConfigStore(config.database_path)

        self.indicator_engine = IndicatorEngine(config.indicators)
        self.classifier = RegimeClassifier(
            config.regime,
            adx_fallback=config.indicators.adx_fallback,
            creeping_uptrend=config.creeping_uptrend,
        )
        self.risk_gate = RiskGate(
            config.risk, self.context, config.exchange, creeping_uptrend=config.creeping_uptrend
        )
        self.tracker = PositionTracker(self.ledger, config.position, self.risk_gate)
        self.capital = CapitalPreservation(
            self.ledger, self.bot_store, config.capital, btc_source, self.context
        )

        self._cycle_lock = threading.Lock()
        self._cycle_btc: Optional[CapitalPreservationResult] = None
        self._cycle_bots: dict[str, CapitalPreservationResult] = {}

    def start(self) -> int:
        """Hydrate position state from storage. Call once at process start."""
        return self.tracker.initialize_from_storage()

    def begin_cycle(self, btc_candles: Sequence[Candle]) -> float:
        """Publish BTC 1h momentum and reset per-cycle capital results.

        Args:
            btc_candles: Recent 15m BTC candles

        Returns:
            BTC 1h momentum in percent
        """
        momentum = 0.0
        if btc_candles:
            close = candles_to_dataframe(btc_candles)["close"]
            momentum = self.indicator_engine.calculate_momentum(
                close, self.config.indicators.momentum_1h_candles
            )
        self.context.update_btc_momentum(momentum)

        with self._cycle_lock:
            self._cycle_btc = None
            self._cycle_bots = {}
        return momentum

    def analyze(
        self, candles: Sequence[Candle]
    ) -> tuple[TechnicalIndicators, RegimeClassification]:
        """Compute indicators and regime for one pair.

        Raises:
            InsufficientDataError: If history is too short
        """
        indicators = self.indicator_engine.compute_indicators(candles)
        return indicators, self.classifier.classify(candles, indicators)

    def evaluate_capital(
        self,
        bot_id: str,
        effective_balance: float,
        now: Optional[datetime] = None,
    ) -> tuple[CapitalPreservationResult, CapitalPreservationResult]:
        """BTC trend gate and per-bot result, evaluated once per bot per cycle."""
        with self._cycle_lock:
            btc = self._cycle_btc
            bot = self._cycle_bots.get(bot_id)

        if btc is None:
            btc = self.capital.check_btc_trend_gate()
        if bot is None:
            bot = self.capital.evaluate_bot(bot_id, effective_balance, now)

        with self._cycle_lock:
            self._cycle_btc = btc
            self._cycle_bots[bot_id] = bot
        return btc, bot

    def evaluate_entry(
        self,
        bot_id: str,
        pair: str,
        candles: Sequence[Candle],
        ticker: Optional[Ticker],
        ai_confidence: Optional[float],
        effective_balance: float,
        now: Optional[datetime] = None,
    ) -> EntryDecision:
        """Decide whether a bot may open a position on a pair.

        With ``ai_confidence`` None only stages 1-3 run, so the caller can
        decide whether to request a signal.

        Raises:
            InsufficientDataError: If fewer candles than required are given
        """
        indicators, regime = self.analyze(candles)
        price = ticker.last if ticker and ticker.last else candles[-1].close
        decision = EntryDecision(
            approve=False,
            bot_id=bot_id,
            pair=pair,
            reason="",
            indicators=indicators,
            regime=regime,
        )

        decision.pre_signal = self.risk_gate.run_pre_signal_filter(pair, price, indicators, ticker)
        if not decision.pre_signal.passed:
            decision.reason = f"[{decision.pre_signal.stage.value}] {decision.pre_signal.reason}"
            return decision

        if ai_confidence is None:
            decision.reason = "Pre-signal stages passed, awaiting signal confidence"
            return decision

        decision.profit_target_pct = self.risk_gate.get_profit_target(regime.regime, indicators.adx_slope)
        decision.post_signal = self.risk_gate.run_post_signal_filter(
            pair, ai_confidence, decision.profit_target_pct, self.config.exchange
        )
        if not decision.post_signal.passed:
            decision.reason = f"[{decision.post_signal.stage.value}] {decision.post_signal.reason}"
            return decision

        decision.btc_trend, decision.capital = self.evaluate_capital(bot_id, effective_balance, now)
        if not decision.capital.allow_trading:
            decision.reason = f"[capital preservation] {decision.capital.reason}"
            return decision

        decision.size_multiplier = (
            decision.capital.size_multiplier
            * decision.btc_trend.size_multiplier
            * self.risk_gate.size_multiplier_for_regime(regime.regime)
        )
        decision.approve = True
        decision.reason = (
            f"Approved in {regime.regime.value} regime, target {decision.profit_target_pct:.2f}%, "
            f"size x{decision.size_multiplier:.2f}"
        )
        logger.info(f"Entry approved for {bot_id} {pair}: {decision.reason}")
        return decision

    def open_position(self, trade: OpenTrade) -> None:
        """Record a newly opened trade and start tracking its peak."""
        try:
            self.ledger.save_open_trade(trade)
        except PersistenceError as e:
            logger.error(f"Failed to record open trade {trade.id}: {e}", exc_info=True)
        self.tracker.record_peak(
            trade.id, trade.peak_profit_pct or 0.0, entry_time=trade.entry_time, reset=True
        )

    def evaluate_exits(
        self,
        positions: Sequence[OpenPosition],
        regimes: Optional[dict[str, Regime]] = None,
        now: Optional[datetime] = None,
    ) -> list[ExitDecision]:
        """Evaluate every open position against its pair's regime.

        Args:
            positions: Open positions with current profit
            regimes: Regime per pair (moderate when missing)
            now: Evaluation time (defaults to now, UTC)

        Returns:
            One decision per position, in input order
        """
        regimes = regimes or {}
        decisions = []
        for position in positions:
            regime = Regime.parse(regimes.get(position.pair, Regime.MODERATE))
            result = self.tracker.evaluate_exit(
                position.trade_id,
                position.pair,
                position.current_profit_pct,
                regime,
                entry_time=position.entry_time,
                now=now,
            )
            peak = self.tracker.get_peak(position.trade_id) or 0.0
            if result is None:
                decisions.append(ExitDecision(
                    trade_id=position.trade_id,
                    pair=position.pair,
                    should_exit=False,
                    regime=regime,
                    peak_profit_pct=peak,
                ))
                continue

            logger.info(f"Exit signalled for {position.trade_id} ({position.pair}): {result.reason}")
            decisions.append(ExitDecision(
                trade_id=position.trade_id,
                pair=position.pair,
                should_exit=True,
                regime=regime,
                exit_reason=result.exit_reason,
                reason=result.reason,
                peak_profit_pct=peak,
                details=result,
            ))
        return decisions

    def close_position(
        self,
        trade_id: str,
        profit_loss: Optional[float] = None,
        exit_time: Optional[datetime] = None,
    ) -> None:
        """Stop tracking a closed trade, recording its P&L when given."""
        self.tracker.clear_position(trade_id)
        if profit_loss is None:
            return
        try:
            self.ledger.close_trade(trade_id, profit_loss, exit_time)
        except PersistenceError as e:
            logger.error(f"Failed to record close of {trade_id}: {e}", exc_info=True)
