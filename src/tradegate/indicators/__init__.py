"""Technical indicator calculation."""
from tradegate.indicators.calculator import (
    IndicatorEngine,
    InsufficientDataError,
    candles_to_dataframe,
)

__all__ = [
    "IndicatorEngine",
    "InsufficientDataError",
    "candles_to_dataframe",
]
