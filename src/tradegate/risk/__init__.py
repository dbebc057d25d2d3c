"""Risk management module."""
from tradegate.risk.capital_preservation import CapitalPreservation, ExchangeBtcSource
from tradegate.risk.gate import RiskGate
from tradegate.risk.position_tracker import PositionTracker

__all__ = [
    "CapitalPreservation",
    "ExchangeBtcSource",
    "PositionTracker",
    "RiskGate",
]
