"""Database persistence for the trade ledger and bot configuration records.

Implements SQLite-based storage. Timestamps are written as UTC ISO-8601
strings; values read back without an offset are interpreted as UTC.
"""

import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Union

from tradegate.models import ClosedTrade, OpenTrade


logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """Raised when the trade ledger or bot config store cannot be read or written."""
    pass


def parse_utc(value: Union[str, datetime, int, float, None]) -> Optional[datetime]:
    """Parse a stored timestamp into an aware UTC datetime.

    Naive strings and naive datetimes are interpreted as UTC, never local
    time. Epoch numbers are accepted in seconds or milliseconds.

    Args:
        value: ISO-8601 string, datetime, epoch number or None

    Returns:
        Aware UTC datetime, or None for empty input

    Raises:
        ValueError: If a string cannot be parsed
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e12 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def to_utc_iso(value: datetime) -> str:
    """Format a datetime for storage as a UTC ISO-8601 string."""
    return parse_utc(value).isoformat()


class _SQLiteStore:
    """Shared connection handling for the SQLite-backed stores."""

    def __init__(self, db_path: str):
        self.db_path = str(db_path)
        self._ensure_database()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=10.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_database(self) -> None:
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            with self._connect() as conn:
                self._create_schema(conn)
                conn.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot initialize database {self.db_path}: {e}") from e

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        raise NotImplementedError


class TradeLedger(_SQLiteStore):
    """Manages the trade ledger.

    Stores open and closed trades per bot, the peak profit reached by each
    open trade, and provides the realized-P&L queries used by the capital
    preservation layers.
    """

    def __init__(self, db_path: str = "data/tradegate.db"):
        """Initialize trade ledger.

        Args:
            db_path: Path to SQLite database file
        """
        super().__init__(db_path)

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS trades (
                id TEXT PRIMARY KEY,
                bot_instance_id TEXT NOT NULL,
                pair TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'open',
                entry_time TEXT NOT NULL,
                exit_time TEXT,
                entry_price REAL DEFAULT 0.0,
                quantity REAL DEFAULT 0.0,
                profit_loss REAL,
                peak_profit_percent REAL,
                peak_profit_recorded_at TEXT
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_trades_bot_status
            ON trades(bot_instance_id, status)
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_trades_exit_time
            ON trades(exit_time)
        """)

    def save_open_trade(self, trade: OpenTrade) -> None:
        """Persist an opened trade.

        Args:
            trade: Open trade data
        """
        try:
            with self._connect() as conn:
                conn.execute("""
                    INSERT INTO trades (
                        id, bot_instance_id, pair, status, entry_time,
                        entry_price, quantity, peak_profit_percent
                    ) VALUES (?, ?, ?, 'open', ?, ?, ?, ?)
                """, (
                    trade.id,
                    trade.bot_id,
                    trade.pair,
                    to_utc_iso(trade.entry_time),
                    trade.entry_price,
                    trade.quantity,
                    trade.peak_profit_pct,
                ))
                conn.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to save trade {trade.id}: {e}") from e

    def close_trade(
        self,
        trade_id: str,
        profit_loss: float,
        exit_time: Optional[datetime] = None,
    ) -> bool:
        """Mark a trade as closed with its realized profit/loss.

        Args:
            trade_id: Trade ID
            profit_loss: Realized P&L in quote currency
            exit_time: Close time (defaults to now, UTC)

        Returns:
            True if an open trade was closed
        """
        exit_time = exit_time or datetime.now(timezone.utc)
        try:
            with self._connect() as conn:
                cursor = conn.execute("""
                    UPDATE trades
                    SET status = 'closed',
                        exit_time = ?,
                        profit_loss = ?
                    WHERE id = ? AND status = 'open'
                """, (to_utc_iso(exit_time), profit_loss, trade_id))
                conn.commit()
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to close trade {trade_id}: {e}") from e

    def get_open_trades(self, bot_id: Optional[str] = None) -> list[OpenTrade]:
        """Get open trades, optionally for one bot.

        Args:
            bot_id: Optional bot filter

        Returns:
            Open trades ordered by entry time
        """
        query = "SELECT * FROM trades WHERE status = 'open'"
        params: list[Any] = []
        if bot_id:
            query += " AND bot_instance_id = ?"
            params.append(bot_id)
        query += " ORDER BY entry_time ASC"

        try:
            with self._connect() as conn:
                rows = conn.execute(query, params).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to load open trades: {e}") from e

        return [self._row_to_open_trade(row) for row in rows]

    def get_open_trade(self, trade_id: str) -> Optional[OpenTrade]:
        """Get one open trade by ID, or None when it is unknown or closed."""
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM trades WHERE id = ? AND status = 'open'", (trade_id,)
                ).fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to load trade {trade_id}: {e}") from e

        return self._row_to_open_trade(row) if row else None

    def update_peak_profit(
        self,
        trade_id: str,
        peak_profit_pct: float,
        recorded_at: Optional[datetime] = None,
    ) -> bool:
        """Persist a new peak profit for an open trade.

        The stored peak only ever rises: a value at or below it leaves the
        row untouched.

        Returns:
            True if the stored peak was raised
        """
        recorded_at = recorded_at or datetime.now(timezone.utc)
        try:
            with self._connect() as conn:
                cursor = conn.execute("""
                    UPDATE trades
                    SET peak_profit_percent = ?,
                        peak_profit_recorded_at = ?
                    WHERE id = ?
                    AND COALESCE(peak_profit_percent, 0) < ?
                """, (peak_profit_pct, to_utc_iso(recorded_at), trade_id, peak_profit_pct))
                conn.commit()
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to update peak profit for {trade_id}: {e}") from e

    def get_recent_closed_trades(self, bot_id: str, limit: int = 20) -> list[ClosedTrade]:
        """Get the most recent closed trades for a bot.

        Args:
            bot_id: Bot instance ID
            limit: Maximum number of trades to return

        Returns:
            Closed trades, most recent exit first
        """
        try:
            with self._connect() as conn:
                rows = conn.execute("""
                    SELECT id, bot_instance_id, pair, exit_time, profit_loss
                    FROM trades
                    WHERE bot_instance_id = ?
                    AND status = 'closed'
                    AND exit_time IS NOT NULL
                """, (bot_id,)).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to load closed trades for {bot_id}: {e}") from e

        trades = [
            ClosedTrade(
                id=row["id"],
                bot_id=row["bot_instance_id"],
                pair=row["pair"],
                exit_time=parse_utc(row["exit_time"]),
                profit_loss=row["profit_loss"] or 0.0,
            )
            for row in rows
        ]
        # Sorted after parsing since legacy rows use a space separator
        trades.sort(key=lambda t: t.exit_time, reverse=True)
        return trades[:limit]

    def get_rolling_pnl(self, bot_id: str, since: datetime) -> float:
        """Sum of realized P&L for trades closed at or after ``since``."""
        since = parse_utc(since)
        try:
            with self._connect() as conn:
                rows = conn.execute("""
                    SELECT exit_time, profit_loss
                    FROM trades
                    WHERE bot_instance_id = ?
                    AND status = 'closed'
                    AND exit_time IS NOT NULL
                """, (bot_id,)).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to load rolling P&L for {bot_id}: {e}") from e

        # Filtered after parsing since legacy rows may lack an offset
        return float(sum(
            row["profit_loss"] or 0.0
            for row in rows
            if parse_utc(row["exit_time"]) >= since
        ))

    def _row_to_open_trade(self, row: sqlite3.Row) -> OpenTrade:
        return OpenTrade(
            id=row["id"],
            bot_id=row["bot_instance_id"],
            pair=row["pair"],
            entry_time=parse_utc(row["entry_time"]),
            entry_price=row["entry_price"] or 0.0,
            quantity=row["quantity"] or 0.0,
            peak_profit_pct=row["peak_profit_percent"],
        )


class BotConfigStore(_SQLiteStore):
    """JSON configuration record per bot instance.

    Updates are merged key by key so writers touching different keys never
    clobber each other.
    """

    def __init__(self, db_path: str = "data/tradegate.db"):
        super().__init__(db_path)

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS bot_instances (
                id TEXT PRIMARY KEY,
                config TEXT NOT NULL DEFAULT '{}'
            )
        """)

    def get_config(self, bot_id: str) -> dict[str, Any]:
        """Get a bot's configuration record (empty dict when the bot is unknown)."""
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT config FROM bot_instances WHERE id = ?", (bot_id,)
                ).fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to read config for bot {bot_id}: {e}") from e

        if row is None or not row["config"]:
            return {}
        try:
            config = json.loads(row["config"])
        except json.JSONDecodeError as e:
            raise PersistenceError(f"Corrupt config JSON for bot {bot_id}: {e}") from e
        return config if isinstance(config, dict) else {}

    def merge_config(self, bot_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        """Merge ``updates`` into a bot's configuration record.

        Keys whose value is None are removed; other keys are overwritten.
        Keys not named in ``updates`` are left untouched.

        Args:
            bot_id: Bot instance ID
            updates: Keys to set or remove

        Returns:
            The configuration after the merge
        """
        conn = self._connect()
        try:
            conn.isolation_level = None
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT config FROM bot_instances WHERE id = ?", (bot_id,)
            ).fetchone()
            config = json.loads(row["config"]) if row and row["config"] else {}
            if not isinstance(config, dict):
                config = {}

            for key, value in updates.items():
                if value is None:
                    config.pop(key, None)
                else:
                    config[key] = value

            conn.execute(
                """
                INSERT INTO bot_instances (id, config) VALUES (?, ?)
                ON CONFLICT(id) DO UPDATE SET config = excluded.config
                """,
                (bot_id, json.dumps(config)),
            )
            conn.execute("COMMIT")
            return config
        except (sqlite3.Error, json.JSONDecodeError) as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise PersistenceError(f"Failed to merge config for bot {bot_id}: {e}") from e
        finally:
            conn.close()
