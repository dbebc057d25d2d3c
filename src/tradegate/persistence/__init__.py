"""Trade ledger and bot configuration persistence."""
from tradegate.persistence.database import (
    BotConfigStore,
    PersistenceError,
    TradeLedger,
    parse_utc,
    to_utc_iso,
)

__all__ = [
    "BotConfigStore",
    "PersistenceError",
    "TradeLedger",
    "parse_utc",
    "to_utc_iso",
]
