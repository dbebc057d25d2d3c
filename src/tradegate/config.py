"""Configuration management module for Tradegate.

Every threshold used by the decision engine lives here. The configuration is
loaded once at startup (JSON file, then environment overrides) and the
resulting ``EngineConfig`` is passed by reference into each component.
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict

from dotenv import load_dotenv


logger = logging.getLogger(__name__)

ENV_PREFIX = "TRADEGATE_"

REGIMES = ("choppy", "transitioning", "weak", "moderate", "strong")


@dataclass
class IndicatorConfig:
    """Indicator periods and fallbacks."""
    rsi_period: int = 14
    atr_period: int = 14
    adx_period: int = 14
    bollinger_period: int = 20
    bollinger_std: float = 2.0
    momentum_1h_candles: int = 4    # 4 x 15m
    momentum_4h_candles: int = 16   # 16 x 15m
    volume_window: int = 20
    recent_window: int = 20
    adx_slope_lookback: int = 3
    min_candles: int = 26
    adx_fallback: float = 15.0


@dataclass
class RegimeConfig:
    """ADX bands and confidence table for regime classification."""
    choppy_adx: float = 12.0
    transition_max_adx: float = 20.0
    weak_max_adx: float = 30.0
    moderate_max_adx: float = 35.0
    adx_slope_rising: float = 2.0

    strong_confidence: float = 78.0
    moderate_confidence: float = 72.0
    weak_confidence: float = 65.0
    transitioning_confidence: float = 60.0
    choppy_extreme_confidence: float = 62.0
    neutral_confidence: float = 45.0
    misaligned_cap: float = 50.0
    both_negative_cap: float = 35.0
    choppy_extreme_momentum_1h: float = 1.5
    choppy_extreme_momentum_4h: float = 1.0

    volatility_penalty_atr_pct: float = 3.0
    volatility_penalty: float = 15.0
    volatility_floor: float = 35.0

    creeping_uptrend_weak_confidence: float = 68.0


@dataclass
class RiskGateConfig:
    """Thresholds for the five-stage entry filter."""
    # Stage 1
    min_adx_for_entry: float = 20.0
    transition_zone_min: float = 15.0
    adx_slope_rising: float = 2.0
    adx_slope_falling: float = -2.0
    momentum_override_min_1h: float = 1.5

    # Stage 2
    btc_dump_threshold_1h: float = -1.5
    volume_spike_max: float = 4.5
    volume_panic_momentum: float = -0.5
    spread_max_pct: float = 0.5

    # Stage 3
    price_top_threshold: float = 0.995
    pullback_threshold: float = 0.95
    ema200_downtrend_block: bool = False
    rsi_extreme_overbought: float = 85.0
    min_momentum_1h: float = 1.0
    min_momentum_4h: float = 0.5
    min_momentum_1h_confirmed: float = 0.5  # 1h bar when 4h also confirms
    volume_breakout_ratio: float = 1.3
    min_volume_ratio: float = 0.5
    pullback_momentum_4h_min: float = 0.25
    pullback_max_dip_1h: float = -0.3
    creeping_uptrend_min_momentum: float = 0.3
    creeping_uptrend_volume_ratio_min: float = 0.5

    # Stage 4
    ai_min_confidence: float = 70.0

    # Stage 5 (percent units)
    taker_fee_pct: Dict[str, float] = field(default_factory=lambda: {
        "kraken": 0.26,
        "binance": 0.10,
    })
    default_taker_fee_pct: float = 0.26
    spread_allowance_pct: float = 0.003
    slippage_allowance_pct: float = 0.01
    cost_floor_multiple: float = 3.0
    min_reward_cost_ratio: float = 2.0

    # Regime tables
    profit_target_pct: Dict[str, float] = field(default_factory=lambda: {
        "choppy": 1.5,
        "transitioning": 2.5,
        "weak": 2.5,
        "moderate": 5.0,
        "strong": 20.0,
    })
    erosion_cap: Dict[str, float] = field(default_factory=lambda: {
        "choppy": 0.25,
        "transitioning": 0.35,
        "weak": 0.35,
        "moderate": 0.45,
        "strong": 0.50,
    })
    transition_size_multiplier: float = 0.5

    # Pyramiding
    pyramid_l1_confidence_min: float = 85.0
    pyramid_l2_confidence_min: float = 90.0


@dataclass
class PositionConfig:
    """Exit thresholds for open trades (percent units unless noted)."""
    erosion_min_peak_pct: float = 0.5
    peak_relative_threshold: float = 0.40   # fraction of peak
    peak_relative_min_hold_minutes: float = 30.0
    profit_lock_min_peak_pct: Dict[str, float] = field(default_factory=lambda: {
        "choppy": 0.3,
        "transitioning": 0.4,
        "weak": 0.4,
        "moderate": 0.5,
        "strong": 0.8,
    })
    profit_lock_fraction: Dict[str, float] = field(default_factory=lambda: {
        "choppy": 0.60,
        "transitioning": 0.50,
        "weak": 0.50,
        "moderate": 0.40,
        "strong": 0.25,
    })
    underwater_threshold_pct: float = -0.8
    underwater_min_hold_minutes: float = 15.0
    profit_collapse_min_peak_pct: float = 0.5


@dataclass
class CapitalPreservationConfig:
    """Account-level circuit breaker settings."""
    btc_trend_gate_enabled: bool = True
    btc_pair: str = "BTC/USDT"
    btc_exchange: str = "binance"
    btc_ticker_url: str = "https://api.binance.com/api/v3/ticker/price?symbol=BTCUSDT"
    btc_ema_short: int = 50
    btc_ema_long: int = 200
    btc_daily_candles: int = 250
    btc_cache_ttl_seconds: float = 3600.0
    below_long_multiplier: float = 0.25
    below_short_multiplier: float = 0.5
    fetch_timeout_seconds: float = 10.0

    drawdown_enabled: bool = True
    rolling_window_days: int = 7
    drawdown_reduce_pct: float = 5.0
    drawdown_pause_pct: float = 10.0
    drawdown_stop_pct: float = 15.0
    drawdown_pause_hours: float = 24.0
    win_streak_reset: int = 3

    loss_streak_enabled: bool = True
    loss_streak_reduce: int = 3
    loss_streak_quarter: int = 5
    loss_streak_pause: int = 7
    loss_streak_pause_hours: float = 4.0
    loss_streak_lookback: int = 20

    min_size_multiplier: float = 0.25


@dataclass
class EngineConfig:
    """Main configuration container."""
    indicators: IndicatorConfig = field(default_factory=IndicatorConfig)
    regime: RegimeConfig = field(default_factory=RegimeConfig)
    risk: RiskGateConfig = field(default_factory=RiskGateConfig)
    position: PositionConfig = field(default_factory=PositionConfig)
    capital: CapitalPreservationConfig = field(default_factory=CapitalPreservationConfig)
    exchange: str = "kraken"
    database_path: str = "data/tradegate.db"
    log_level: str = "INFO"
    # Slow grinding markets: shared by regime confidence and entry momentum bars
    creeping_uptrend: bool = False


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""
    pass


SECTIONS = {
    "indicators": IndicatorConfig,
    "regime": RegimeConfig,
    "risk": RiskGateConfig,
    "position": PositionConfig,
    "capital": CapitalPreservationConfig,
}


def _coerce(raw: str, default: Any) -> Any:
    """Convert an environment string to the type of the field default."""
    if isinstance(default, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw


class ConfigManager:
    """Manages loading and validation of configuration."""

    def __init__(self, config_path: str | Path | None = None, load_env: bool = True):
        """Initialize configuration manager.

        Args:
            config_path: Path to config.json file. If None, uses default location.
            load_env: Whether to load .env file and apply TRADEGATE_* overrides.
                Set to False for testing.
        """
        self.config_path = Path(config_path) if config_path else Path("config/config.json")
        self._config: EngineConfig | None = None
        self._load_env = load_env
        if load_env:
            load_dotenv()

    def load(self) -> EngineConfig:
        """Load configuration from file and environment variables.

        Returns:
            Loaded and validated EngineConfig object.

        Raises:
            ConfigValidationError: If any value is missing or invalid.
        """
        config_data = self._load_json()
        self._config = self._parse_config(config_data)
        self._override_from_env()
        self._validate()
        logger.info(f"Configuration loaded from {self.config_path}")
        return self._config

    def _load_json(self) -> dict[str, Any]:
        """Load JSON configuration file."""
        if not self.config_path.exists():
            logger.debug(f"No config file at {self.config_path}, using defaults")
            return {}

        try:
            with open(self.config_path) as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigValidationError(f"Invalid JSON in {self.config_path}: {e}") from e

    def _parse_config(self, data: dict[str, Any]) -> EngineConfig:
        """Parse configuration dictionary into EngineConfig object."""
        sections = {}
        for name, cls in SECTIONS.items():
            section_data = data.get(name, {}) or {}
            sections[name] = self._parse_section(name, cls, section_data)

        return EngineConfig(
            **sections,
            exchange=data.get("exchange", "kraken"),
            database_path=data.get("database_path", "data/tradegate.db"),
            log_level=data.get("log_level", "INFO"),
            creeping_uptrend=bool(data.get("creeping_uptrend", False)),
        )

    def _parse_section(self, name: str, cls: type, section_data: dict[str, Any]) -> Any:
        known = {f.name for f in fields(cls)}
        unknown = set(section_data) - known
        if unknown:
            raise ConfigValidationError(
                f"Unknown keys in '{name}' section: {', '.join(sorted(unknown))}"
            )

        instance = cls()
        for key, value in section_data.items():
            default = getattr(instance, key)
            if isinstance(default, dict):
                # Regime tables merge over defaults so partial overrides are allowed
                merged = dict(default)
                merged.update({str(k).lower(): float(v) for k, v in value.items()})
                setattr(instance, key, merged)
            else:
                setattr(instance, key, value)
        return instance

    def _override_from_env(self) -> None:
        """Override scalar values from TRADEGATE_<SECTION>_<FIELD> variables."""
        if not self._config or not self._load_env:
            return

        for name in SECTIONS:
            section = getattr(self._config, name)
            for f in fields(section):
                default = getattr(section, f.name)
                if isinstance(default, dict):
                    continue
                env_name = f"{ENV_PREFIX}{name}_{f.name}".upper()
                raw = os.getenv(env_name)
                if raw is None:
                    continue
                try:
                    setattr(section, f.name, _coerce(raw, default))
                except ValueError as e:
                    raise ConfigValidationError(f"Invalid value for {env_name}: {raw!r}") from e

        if exchange := os.getenv(f"{ENV_PREFIX}EXCHANGE"):
            self._config.exchange = exchange
        if db_path := os.getenv(f"{ENV_PREFIX}DATABASE_PATH"):
            self._config.database_path = db_path
        if level := os.getenv(f"{ENV_PREFIX}LOG_LEVEL"):
            self._config.log_level = level
        if (creeping := os.getenv(f"{ENV_PREFIX}CREEPING_UPTREND")) is not None:
            self._config.creeping_uptrend = _coerce(creeping, False)

    def _validate(self) -> None:
        """Validate configuration values.

        Raises:
            ConfigValidationError: If validation fails.
        """
        if not self._config:
            raise ConfigValidationError("Configuration not loaded")

        errors = validate_config(self._config)
        if errors:
            raise ConfigValidationError(
                f"Invalid configuration: {'; '.join(errors)}"
            )

    @property
    def config(self) -> EngineConfig:
        """Get loaded configuration."""
        if not self._config:
            raise ConfigValidationError("Configuration not loaded. Call load() first.")
        return self._config


def validate_config(config: EngineConfig) -> list[str]:
    """Return a list of problems with the configuration (empty when valid)."""
    errors = []
    ind = config.indicators
    for name in ("rsi_period", "atr_period", "adx_period", "bollinger_period",
                 "momentum_1h_candles", "momentum_4h_candles", "volume_window",
                 "recent_window", "adx_slope_lookback", "min_candles"):
        if getattr(ind, name) <= 0:
            errors.append(f"indicators.{name} must be > 0")

    reg = config.regime
    if not (0 < reg.choppy_adx <= reg.transition_max_adx <= reg.weak_max_adx <= reg.moderate_max_adx):
        errors.append("regime ADX bands must be ordered: choppy <= transition <= weak <= moderate")

    risk = config.risk
    if not (0 <= risk.transition_zone_min <= risk.min_adx_for_entry):
        errors.append("risk.transition_zone_min must be between 0 and risk.min_adx_for_entry")
    if not (0 < risk.ai_min_confidence <= 100):
        errors.append("risk.ai_min_confidence must be in (0, 100]")
    if risk.spread_max_pct <= 0:
        errors.append("risk.spread_max_pct must be > 0")
    for table_name in ("profit_target_pct", "erosion_cap"):
        table = getattr(risk, table_name)
        missing = [r for r in REGIMES if r not in table]
        if missing:
            errors.append(f"risk.{table_name} missing regimes: {', '.join(missing)}")
    for regime, cap in risk.erosion_cap.items():
        if not 0 < cap <= 1:
            errors.append(f"risk.erosion_cap[{regime}] must be a fraction in (0, 1]")

    pos = config.position
    if not 0 < pos.peak_relative_threshold <= 1:
        errors.append("position.peak_relative_threshold must be a fraction in (0, 1]")
    if pos.underwater_threshold_pct >= 0:
        errors.append("position.underwater_threshold_pct must be negative")
    for regime, fraction in pos.profit_lock_fraction.items():
        if not 0 <= fraction <= 1:
            errors.append(f"position.profit_lock_fraction[{regime}] must be in [0, 1]")

    cap = config.capital
    if not (0 < cap.btc_ema_short < cap.btc_ema_long):
        errors.append("capital.btc_ema_short must be > 0 and < capital.btc_ema_long")
    if not (0 < cap.drawdown_reduce_pct <= cap.drawdown_pause_pct):
        errors.append("capital.drawdown_reduce_pct must be > 0 and <= drawdown_pause_pct")
    if not (0 < cap.loss_streak_reduce <= cap.loss_streak_quarter <= cap.loss_streak_pause):
        errors.append("capital loss streak thresholds must be ordered: reduce <= quarter <= pause")
    if cap.drawdown_pause_hours <= 0 or cap.loss_streak_pause_hours <= 0:
        errors.append("capital pause hours must be > 0")
    if not 0 < cap.min_size_multiplier <= 1:
        errors.append("capital.min_size_multiplier must be in (0, 1]")
    return errors
