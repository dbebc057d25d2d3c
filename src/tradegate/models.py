"""Core data models for the Tradegate decision engine."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class Regime(Enum):
    """Trend strength classification derived from ADX."""
    CHOPPY = "choppy"
    TRANSITIONING = "transitioning"
    WEAK = "weak"
    MODERATE = "moderate"
    STRONG = "strong"

    @classmethod
    def parse(cls, value: "Regime | str | None") -> "Regime":
        """Coerce a stored regime name, defaulting to MODERATE when unknown."""
        if isinstance(value, Regime):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.MODERATE


class RiskStage(Enum):
    """Stages of the entry risk filter, in evaluation order."""
    HEALTH_GATE = "Health Gate"
    DROP_PROTECTION = "Drop Protection"
    ENTRY_QUALITY = "Entry Quality"
    AI_VALIDATION = "AI Validation"
    COST_FLOOR = "Cost Floor"

    @property
    def number(self) -> int:
        """1-based position of the stage in the pipeline."""
        return list(RiskStage).index(self) + 1


class ExitReason(Enum):
    """Reason for closing an open trade."""
    UNDERWATER_TIMEOUT = "underwater_timeout"
    PROFIT_COLLAPSE = "profit_collapse"
    PROFIT_LOCK = "profit_lock"
    EROSION_CAP = "erosion_cap"
    PEAK_RELATIVE_EROSION = "peak_relative_erosion"


@dataclass(frozen=True)
class Candle:
    """A single OHLCV candle. Sequences are ordered by ascending timestamp."""
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float

    @classmethod
    def from_list(cls, data: List) -> "Candle":
        """Create from exchange OHLCV format [timestamp_ms, o, h, l, c, v]."""
        return cls(
            timestamp=datetime.fromtimestamp(data[0] / 1000, tz=timezone.utc),
            open=float(data[1]),
            high=float(data[2]),
            low=float(data[3]),
            close=float(data[4]),
            volume=float(data[5]),
        )


@dataclass(frozen=True)
class Ticker:
    """Live top-of-book quote."""
    bid: Optional[float] = None
    ask: Optional[float] = None
    last: Optional[float] = None

    @property
    def spread_pct(self) -> Optional[float]:
        """Bid/ask spread in percent of bid, None when the book is incomplete."""
        if not self.bid or not self.ask or self.bid <= 0:
            return None
        return (self.ask - self.bid) / self.bid * 100


@dataclass(frozen=True)
class MACD:
    value: float
    signal: float
    histogram: float


@dataclass(frozen=True)
class BollingerBands:
    upper: float
    middle: float
    lower: float


@dataclass(frozen=True)
class MovingAverages:
    sma20: float
    sma50: float
    ema12: float
    ema26: float


@dataclass(frozen=True)
class TechnicalIndicators:
    """Immutable indicator snapshot for one pair at one evaluation.

    Momentum values are percent changes (1.2 means +1.2%).
    """
    rsi: float
    macd: MACD
    bollinger: BollingerBands
    moving_averages: MovingAverages
    atr: float
    obv: float
    adx: float
    adx_slope: float
    momentum_1h: float
    momentum_4h: float
    volume_ratio: float
    ema200: float
    recent_high: float
    recent_low: float

    def to_dict(self) -> dict:
        """Flatten to a dictionary for audit logging."""
        return {
            "rsi": self.rsi,
            "macd": self.macd.value,
            "macd_signal": self.macd.signal,
            "macd_histogram": self.macd.histogram,
            "bb_upper": self.bollinger.upper,
            "bb_middle": self.bollinger.middle,
            "bb_lower": self.bollinger.lower,
            "sma20": self.moving_averages.sma20,
            "sma50": self.moving_averages.sma50,
            "ema12": self.moving_averages.ema12,
            "ema26": self.moving_averages.ema26,
            "atr": self.atr,
            "obv": self.obv,
            "adx": self.adx,
            "adx_slope": self.adx_slope,
            "momentum_1h": self.momentum_1h,
            "momentum_4h": self.momentum_4h,
            "volume_ratio": self.volume_ratio,
            "ema200": self.ema200,
            "recent_high": self.recent_high,
            "recent_low": self.recent_low,
        }


@dataclass(frozen=True)
class RegimeClassification:
    """Regime plus the confidence derived from momentum alignment."""
    regime: Regime
    confidence: float
    trend: float
    volatility: float
    analysis: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class RiskFilterResult:
    """Outcome of one risk stage (or of the pipeline, reporting the last stage run)."""
    passed: bool
    stage: RiskStage
    reason: Optional[str] = None
    diagnostics: Dict[str, Any] = field(default_factory=dict)

    @property
    def stage_number(self) -> int:
        return self.stage.number


@dataclass
class PyramidCheckResult:
    passed: bool
    level: int
    required_confidence: float
    reason: Optional[str] = None


@dataclass
class PositionState:
    """Peak-profit state of one open trade.

    peak_profit_pct never decreases while the trade is open and is never negative.
    """
    trade_id: str
    peak_profit_pct: float = 0.0
    entry_timestamp: Optional[datetime] = None


@dataclass
class ErosionCheckResult:
    should_exit: bool
    current_profit_pct: float
    peak_profit_pct: float
    erosion_used: float = 0.0
    erosion_cap: float = 0.0
    erosion_used_pct: float = 0.0
    reason: Optional[str] = None
    exit_reason: Optional[ExitReason] = None


@dataclass
class ProfitLockResult:
    should_exit: bool
    current_profit_pct: float
    peak_profit_pct: float
    locked_profit_pct: float
    regime: Regime
    reason: Optional[str] = None
    exit_reason: Optional[ExitReason] = None


@dataclass
class UnderwaterCheckResult:
    should_exit: bool
    current_profit_pct: float
    age_minutes: float
    peak_profit_pct: float
    threshold_pct: float
    min_time_minutes: float
    reason: Optional[str] = None
    exit_reason: Optional[ExitReason] = None


@dataclass
class CapitalPreservationResult:
    """Size/pause decision from one capital preservation layer (or the combination)."""
    allow_trading: bool
    size_multiplier: float
    reason: str
    layer: Optional[str] = None


@dataclass
class CapitalPreservationState:
    """Per-bot pause and equity-peak fields stored in the bot config record."""
    peak_equity: Optional[float] = None
    paused_until: Optional[datetime] = None
    pause_reason: Optional[str] = None
    streak_paused_until: Optional[datetime] = None


@dataclass
class OpenTrade:
    """Open trade row from the trade ledger."""
    id: str
    bot_id: str
    pair: str
    entry_time: datetime
    entry_price: float = 0.0
    quantity: float = 0.0
    peak_profit_pct: Optional[float] = None


@dataclass
class ClosedTrade:
    """Closed trade row from the trade ledger."""
    id: str
    bot_id: str
    pair: str
    exit_time: datetime
    profit_loss: float

    @property
    def is_winner(self) -> bool:
        return self.profit_loss > 0
