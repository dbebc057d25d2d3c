"""
Tradegate - entry/exit decision core for automated crypto trading bots

Regime-aware indicator analysis, a five-stage entry risk filter, persisted
per-trade profit protection and account-level capital preservation.
"""

__version__ = "1.0.0"
__author__ = "Tradegate Team"

from .models import (
    Candle,
    ExitReason,
    Regime,
    RegimeClassification,
    RiskFilterResult,
    RiskStage,
    TechnicalIndicators,
    Ticker,
)

__all__ = [
    "Candle",
    "ExitReason",
    "Regime",
    "RegimeClassification",
    "RiskFilterResult",
    "RiskStage",
    "TechnicalIndicators",
    "Ticker",
]
