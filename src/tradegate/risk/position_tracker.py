"""Peak-profit tracking and exit checks for open trades.

Each open trade carries a peak profit (percent, never negative, never
decreasing while open). Three independent checks turn that state into exit
signals:

- Erosion cap: too much of the peak given back while still green
- Profit lock: profit fell to the regime's locked fraction of the peak
- Underwater timeout: a losing trade past its threshold and hold time,
  or a meaningfully profitable trade that slipped below breakeven
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Optional, Union

from tradegate.config import PositionConfig
from tradegate.models import (
    ErosionCheckResult,
    ExitReason,
    OpenTrade,
    PositionState,
    ProfitLockResult,
    Regime,
    UnderwaterCheckResult,
)
from tradegate.persistence import PersistenceError, TradeLedger, parse_utc
from tradegate.risk.gate import RiskGate


logger = logging.getLogger(__name__)

ExitCheckResult = Union[ErosionCheckResult, ProfitLockResult, UnderwaterCheckResult]


class PositionTracker:
    """Tracks peak profit per open trade and evaluates exit conditions.

    Updates to one trade are serialized by a per-trade lock so concurrent
    evaluations of the same trade cannot lose a peak update.
    """

    def __init__(
        self,
        ledger: Optional[TradeLedger] = None,
        config: Optional[PositionConfig] = None,
        risk_gate: Optional[RiskGate] = None,
    ):
        """Initialize position tracker.

        Args:
            ledger: Trade ledger for hydration and peak persistence. In-memory only if None.
            config: Exit thresholds. Uses defaults if None.
            risk_gate: Source of the regime erosion-cap table
        """
        self.ledger = ledger
        self.config = config or PositionConfig()
        self.risk_gate = risk_gate or RiskGate()
        self._positions: dict[str, PositionState] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._initialized = False

    def _lock_for(self, trade_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(trade_id)
            if lock is None:
                lock = self._locks[trade_id] = threading.Lock()
            return lock

    def initialize_from_storage(self) -> int:
        """Hydrate peak state for every open trade in the ledger.

        Safe to call more than once; after a successful load later calls
        are no-ops, after a failed one the next call retries. A trade
        already tracked keeps the higher of its in-memory and stored peak.

        Returns:
            Number of positions loaded
        """
        if self._initialized or self.ledger is None:
            return 0

        try:
            trades = self.ledger.get_open_trades()
        except PersistenceError as e:
            logger.error(f"Failed to hydrate position state from storage: {e}", exc_info=True)
            return 0

        for trade in trades:
            stored = max(0.0, trade.peak_profit_pct or 0.0)
            with self._lock_for(trade.id):
                state = self._positions.get(trade.id)
                if state is None:
                    self._positions[trade.id] = PositionState(
                        trade_id=trade.id,
                        peak_profit_pct=stored,
                        entry_timestamp=trade.entry_time,
                    )
                else:
                    state.peak_profit_pct = max(state.peak_profit_pct, stored)
                    state.entry_timestamp = state.entry_timestamp or trade.entry_time
            logger.debug(f"Restored {trade.id} ({trade.pair}) peak={stored:.4f}%")

        self._initialized = True
        logger.info(f"Position tracker initialized with {len(trades)} open trades")
        return len(trades)

    def _load_stored(self, trade_id: str) -> Optional[OpenTrade]:
        if self.ledger is None:
            return None
        try:
            return self.ledger.get_open_trade(trade_id)
        except PersistenceError as e:
            logger.warning(f"Failed to load stored state for {trade_id}: {e}", exc_info=True)
            return None

    def _persist_peak(self, trade_id: str, peak_pct: float, now: Optional[datetime] = None) -> None:
        if self.ledger is None:
            return
        try:
            self.ledger.update_peak_profit(trade_id, peak_pct, now)
        except PersistenceError as e:
            # In-memory peak stays authoritative for this cycle
            logger.warning(f"Failed to persist peak profit for {trade_id}: {e}", exc_info=True)

    def _raise_peak(
        self,
        trade_id: str,
        profit_pct: float,
        entry_time: Union[datetime, str, None] = None,
        now: Optional[datetime] = None,
    ) -> float:
        """Create or raise a trade's peak in one step under its lock.

        An untracked trade is seeded from its ledger row (stored peak and
        entry time) before the observation is applied.
        """
        observed = max(0.0, profit_pct)
        with self._lock_for(trade_id):
            state = self._positions.get(trade_id)
            if state is None:
                stored = self._load_stored(trade_id)
                state = PositionState(
                    trade_id=trade_id,
                    peak_profit_pct=max(0.0, stored.peak_profit_pct or 0.0) if stored else 0.0,
                    entry_timestamp=stored.entry_time if stored else None,
                )
                self._positions[trade_id] = state
                if stored is not None:
                    logger.info(f"Restored {trade_id} from ledger with peak={state.peak_profit_pct:.4f}%")
            if state.entry_timestamp is None and entry_time is not None:
                state.entry_timestamp = parse_utc(entry_time)

            old_peak = state.peak_profit_pct
            if observed <= old_peak:
                return old_peak
            state.peak_profit_pct = observed
            self._persist_peak(trade_id, observed, now)

        logger.info(f"Peak profit updated for {trade_id}: {old_peak:.4f}% -> {observed:.4f}%")
        return observed

    def record_peak(
        self,
        trade_id: str,
        profit_pct: float,
        entry_time: Union[datetime, str, None] = None,
        now: Optional[datetime] = None,
        reset: bool = False,
    ) -> float:
        """Start tracking a trade with peak = max(0, profit_pct).

        An existing peak is never lowered unless ``reset`` is set, which
        re-initialises the state for a freshly opened trade.

        Returns:
            The peak after recording
        """
        if not reset:
            return self._raise_peak(trade_id, profit_pct, entry_time=entry_time, now=now)

        peak = max(0.0, profit_pct)
        with self._lock_for(trade_id):
            self._positions[trade_id] = PositionState(
                trade_id=trade_id,
                peak_profit_pct=peak,
                entry_timestamp=parse_utc(entry_time),
            )
            if peak > 0:
                self._persist_peak(trade_id, peak, now)
        logger.debug(f"Tracking {trade_id} with peak={peak:.4f}%")
        return peak

    def update_peak_if_higher(
        self,
        trade_id: str,
        current_profit_pct: float,
        now: Optional[datetime] = None,
    ) -> float:
        """Raise the peak when current profit is positive and above it.

        Starts tracking lazily when the trade is unknown, seeded from the
        ledger. Persists synchronously on every increase.

        Returns:
            The peak after the update
        """
        return self._raise_peak(trade_id, current_profit_pct, now=now)

    def get_peak(self, trade_id: str) -> Optional[float]:
        state = self._positions.get(trade_id)
        return state.peak_profit_pct if state else None

    def get_tracked_positions(self) -> list[str]:
        """Get IDs of all currently tracked trades."""
        return list(self._positions.keys())

    def clear_position(self, trade_id: str) -> None:
        """Stop tracking a closed trade."""
        with self._registry_lock:
            self._positions.pop(trade_id, None)
            self._locks.pop(trade_id, None)
        logger.debug(f"Tracking cleared for {trade_id}")

    def _hold_minutes(self, entry: Optional[datetime], now: Optional[datetime]) -> Optional[float]:
        if entry is None:
            return None
        now = parse_utc(now) if now else datetime.now(timezone.utc)
        return (now - entry).total_seconds() / 60

    def check_erosion_cap(
        self,
        trade_id: str,
        pair: str,
        current_profit_pct: float,
        regime: Regime,
        now: Optional[datetime] = None,
    ) -> ErosionCheckResult:
        """Check whether a green trade has given back too much of its peak.

        Two independent checks:
        1. Regime cap: for peaks >= erosion_min_peak_pct, exit when the eroded
           fraction of peak exceeds the regime's erosion cap.
        2. Peak-relative: for trades held >= peak_relative_min_hold_minutes,
           exit when the eroded fraction reaches peak_relative_threshold. This
           covers small peaks exempt from check 1.

        Never fires while current profit is negative; losses belong to the
        underwater check.
        """
        cfg = self.config
        state = self._positions.get(trade_id)
        peak = state.peak_profit_pct if state else 0.0
        result = ErosionCheckResult(
            should_exit=False,
            current_profit_pct=current_profit_pct,
            peak_profit_pct=peak,
        )

        if state is None or peak <= 0:
            return result
        if current_profit_pct < 0:
            return result
        if current_profit_pct >= peak:
            return result

        erosion = peak - current_profit_pct
        erosion_fraction = erosion / peak
        cap = self.risk_gate.get_erosion_cap(regime)
        result.erosion_used = erosion
        result.erosion_cap = cap
        result.erosion_used_pct = min(1.0, max(0.0, erosion_fraction))

        if peak >= cfg.erosion_min_peak_pct and erosion_fraction > cap:
            logger.info(
                f"Erosion cap exceeded for {trade_id} ({pair}): peak={peak:.2f}% "
                f"current={current_profit_pct:.2f}% eroded={erosion_fraction:.2%} cap={cap:.2%}"
            )
            result.should_exit = True
            result.exit_reason = ExitReason.EROSION_CAP
            result.reason = (
                f"Erosion Cap Exceeded (eroded {erosion_fraction * 100:.2f}% from peak > "
                f"{cap * 100:.2f}% threshold)"
            )
            return result

        hold_minutes = self._hold_minutes(state.entry_timestamp, now)
        if hold_minutes is not None and hold_minutes >= cfg.peak_relative_min_hold_minutes:
            if erosion_fraction >= cfg.peak_relative_threshold:
                logger.info(
                    f"Peak-relative erosion for {trade_id} ({pair}): eroded={erosion_fraction:.2%} "
                    f"after {hold_minutes:.0f}min"
                )
                result.should_exit = True
                result.exit_reason = ExitReason.PEAK_RELATIVE_EROSION
                result.reason = (
                    f"Peak-Relative Erosion (profit dropped {erosion_fraction * 100:.1f}% from peak > "
                    f"{cfg.peak_relative_threshold * 100:.0f}% threshold after {hold_minutes:.0f}min)"
                )
        return result

    def check_profit_lock(
        self,
        trade_id: str,
        pair: str,
        current_profit_pct: float,
        regime: Regime,
    ) -> ProfitLockResult:
        """Exit when profit falls to the regime's locked fraction of peak.

        Applies once the peak exceeds the regime minimum. Stronger regimes
        lock a smaller fraction.
        """
        cfg = self.config
        regime = Regime.parse(regime)
        state = self._positions.get(trade_id)
        peak = state.peak_profit_pct if state else 0.0
        result = ProfitLockResult(
            should_exit=False,
            current_profit_pct=current_profit_pct,
            peak_profit_pct=peak,
            locked_profit_pct=0.0,
            regime=regime,
        )

        if state is None or peak <= 0 or current_profit_pct < 0:
            return result

        default_key = Regime.MODERATE.value
        min_peak = cfg.profit_lock_min_peak_pct.get(
            regime.value, cfg.profit_lock_min_peak_pct.get(default_key, 0.5)
        )
        fraction = cfg.profit_lock_fraction.get(
            regime.value, cfg.profit_lock_fraction.get(default_key, 0.4)
        )

        if peak < min_peak:
            return result

        locked = peak * fraction
        result.locked_profit_pct = locked

        if current_profit_pct <= locked:
            logger.info(
                f"Profit lock triggered for {trade_id} ({pair}): regime={regime.value} "
                f"peak={peak:.2f}% locked={locked:.2f}% current={current_profit_pct:.2f}%"
            )
            result.should_exit = True
            result.exit_reason = ExitReason.PROFIT_LOCK
            result.reason = (
                f"Profit Lock ({regime.value}: current {current_profit_pct:.2f}% <= "
                f"{fraction * 100:.0f}% of peak {peak:.2f}% = {locked:.2f}%)"
            )
        return result

    def check_underwater_timeout(
        self,
        trade_id: str,
        pair: str,
        current_profit_pct: float,
        entry_time: Union[datetime, str, int, float, None],
        threshold_pct: Optional[float] = None,
        min_hold_minutes: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> UnderwaterCheckResult:
        """Stop out losing trades.

        Only evaluated while current profit is negative. If the peak ever
        reached profit_collapse_min_peak_pct, the stop is breakeven and fires
        immediately. Otherwise the absolute threshold applies once the trade
        has been held for min_hold_minutes. An entry time in the future is a
        data error and does not hold the check back.

        Args:
            trade_id: Trade ID
            pair: Trading pair
            current_profit_pct: Current profit in percent
            entry_time: Trade entry time (naive values are UTC)
            threshold_pct: Absolute loss threshold in percent (negative)
            min_hold_minutes: Minimum age before the threshold applies
            now: Evaluation time (defaults to now, UTC)
        """
        cfg = self.config
        threshold_pct = cfg.underwater_threshold_pct if threshold_pct is None else threshold_pct
        min_hold_minutes = cfg.underwater_min_hold_minutes if min_hold_minutes is None else min_hold_minutes
        state = self._positions.get(trade_id)
        peak = state.peak_profit_pct if state else 0.0

        result = UnderwaterCheckResult(
            should_exit=False,
            current_profit_pct=current_profit_pct,
            age_minutes=0.0,
            peak_profit_pct=peak,
            threshold_pct=threshold_pct,
            min_time_minutes=min_hold_minutes,
        )

        if current_profit_pct >= 0:
            return result

        entry = parse_utc(entry_time) if entry_time is not None else (
            state.entry_timestamp if state else None
        )
        age_minutes = self._hold_minutes(entry, now)
        result.age_minutes = age_minutes if age_minutes is not None else 0.0

        if peak >= cfg.profit_collapse_min_peak_pct:
            logger.info(
                f"Profitable trade {trade_id} ({pair}) breached breakeven: "
                f"peak={peak:.2f}% current={current_profit_pct:.2f}%"
            )
            result.should_exit = True
            result.threshold_pct = 0.0
            result.exit_reason = ExitReason.PROFIT_COLLAPSE
            result.reason = (
                f"Profitable trade breached breakeven (peak +{peak:.2f}% >= "
                f"{cfg.profit_collapse_min_peak_pct:.2f}% min, current {current_profit_pct:.2f}%)"
            )
            return result

        if age_minutes is None or age_minutes < 0:
            logger.warning(
                f"Underwater check for {trade_id} ({pair}): entry time {entry} is missing or "
                f"in the future, evaluating without hold gate"
            )
        elif age_minutes < min_hold_minutes:
            return result

        if current_profit_pct < threshold_pct:
            logger.info(
                f"Underwater timeout for {trade_id} ({pair}): loss {current_profit_pct:.2f}% < "
                f"{threshold_pct:.2f}% after {result.age_minutes:.1f}min"
            )
            result.should_exit = True
            result.exit_reason = ExitReason.UNDERWATER_TIMEOUT
            result.reason = (
                f"Underwater Timeout (loss {current_profit_pct:.2f}% < {threshold_pct:.2f}%, "
                f"age {result.age_minutes:.1f}min >= {min_hold_minutes:g}min)"
            )
        return result

    def evaluate_exit(
        self,
        trade_id: str,
        pair: str,
        current_profit_pct: float,
        regime: Regime,
        entry_time: Union[datetime, str, None] = None,
        now: Optional[datetime] = None,
    ) -> Optional[ExitCheckResult]:
        """Update the peak, then run underwater, profit lock and erosion checks.

        Returns:
            The first check result that calls for an exit, or None
        """
        self._raise_peak(trade_id, current_profit_pct, entry_time=entry_time, now=now)

        checks = (
            lambda: self.check_underwater_timeout(trade_id, pair, current_profit_pct, entry_time, now=now),
            lambda: self.check_profit_lock(trade_id, pair, current_profit_pct, regime),
            lambda: self.check_erosion_cap(trade_id, pair, current_profit_pct, regime, now=now),
        )
        for check in checks:
            result = check()
            if result.should_exit:
                return result
        return None
