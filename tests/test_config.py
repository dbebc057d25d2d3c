"""Tests for configuration loading and validation."""

import json

import pytest

from tradegate.config import (
    ConfigManager,
    ConfigValidationError,
    EngineConfig,
    RiskGateConfig,
    validate_config,
)


@pytest.fixture
def config_file(tmp_path):
    def write(data):
        path = tmp_path / "config.json"
        path.write_text(json.dumps(data))
        return path
    return write


class TestDefaults:

    def test_defaults_are_valid(self):
        assert validate_config(EngineConfig()) == []

    def test_default_thresholds(self):
        config = EngineConfig()
        assert config.indicators.min_candles == 26
        assert config.risk.min_adx_for_entry == 20.0
        assert config.risk.ai_min_confidence == 70.0
        assert config.risk.profit_target_pct["strong"] == 20.0
        assert config.position.underwater_threshold_pct == -0.8
        assert config.capital.drawdown_stop_pct == 15.0
        assert config.exchange == "kraken"

    def test_missing_file_uses_defaults(self, tmp_path):
        config = ConfigManager(tmp_path / "absent.json", load_env=False).load()
        assert config == EngineConfig()


class TestConfigManager:

    def test_loads_sections(self, config_file):
        path = config_file({
            "exchange": "binance",
            "risk": {"ai_min_confidence": 75.0, "spread_max_pct": 0.3},
            "capital": {"loss_streak_pause": 8},
        })
        config = ConfigManager(path, load_env=False).load()
        assert config.exchange == "binance"
        assert config.risk.ai_min_confidence == 75.0
        assert config.risk.spread_max_pct == 0.3
        assert config.capital.loss_streak_pause == 8
        assert config.risk.min_adx_for_entry == 20.0

    def test_partial_regime_table_merges_over_defaults(self, config_file):
        path = config_file({"risk": {"profit_target_pct": {"CHOPPY": 2.0}}})
        config = ConfigManager(path, load_env=False).load()
        assert config.risk.profit_target_pct["choppy"] == 2.0
        assert config.risk.profit_target_pct["strong"] == 20.0

    def test_unknown_key_rejected(self, config_file):
        path = config_file({"risk": {"ai_min_confidense": 75.0}})
        with pytest.raises(ConfigValidationError, match="ai_min_confidense"):
            ConfigManager(path, load_env=False).load()

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json")
        with pytest.raises(ConfigValidationError):
            ConfigManager(path, load_env=False).load()

    def test_invalid_values_rejected(self, config_file):
        path = config_file({"position": {"underwater_threshold_pct": 0.5}})
        with pytest.raises(ConfigValidationError, match="underwater_threshold_pct"):
            ConfigManager(path, load_env=False).load()

    def test_env_overrides(self, config_file, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("TRADEGATE_RISK_AI_MIN_CONFIDENCE", "80")
        monkeypatch.setenv("TRADEGATE_CAPITAL_BTC_TREND_GATE_ENABLED", "false")
        monkeypatch.setenv("TRADEGATE_EXCHANGE", "binance")
        path = config_file({"risk": {"ai_min_confidence": 75.0}})

        config = ConfigManager(path).load()

        assert config.risk.ai_min_confidence == 80.0
        assert config.capital.btc_trend_gate_enabled is False
        assert config.exchange == "binance"

    def test_creeping_uptrend_is_one_top_level_flag(self, config_file, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        assert ConfigManager(config_file({"creeping_uptrend": True}), load_env=False).load().creeping_uptrend

        monkeypatch.setenv("TRADEGATE_CREEPING_UPTREND", "false")
        assert not ConfigManager(config_file({"creeping_uptrend": True})).load().creeping_uptrend

        with pytest.raises(ConfigValidationError, match="creeping_uptrend_enabled"):
            ConfigManager(config_file({"risk": {"creeping_uptrend_enabled": True}}), load_env=False).load()

    def test_bad_env_value(self, config_file, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("TRADEGATE_INDICATORS_MIN_CANDLES", "many")
        with pytest.raises(ConfigValidationError):
            ConfigManager(config_file({})).load()

    def test_config_property_before_load(self):
        with pytest.raises(ConfigValidationError):
            ConfigManager(load_env=False).config


class TestValidation:

    def test_unordered_adx_bands(self):
        config = EngineConfig()
        config.regime.choppy_adx = 25.0
        assert any("ADX bands" in e for e in validate_config(config))

    def test_erosion_cap_must_be_fraction(self):
        config = EngineConfig(risk=RiskGateConfig(erosion_cap={
            "choppy": 25.0, "transitioning": 0.35, "weak": 0.35, "moderate": 0.45, "strong": 0.5,
        }))
        assert any("erosion_cap[choppy]" in e for e in validate_config(config))

    def test_missing_regime_in_table(self):
        config = EngineConfig(risk=RiskGateConfig(profit_target_pct={"strong": 20.0}))
        assert any("missing regimes" in e for e in validate_config(config))
