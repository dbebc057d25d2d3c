"""Tests for the five-stage entry risk filter.

Validates:
- Stage 1 health gate bands and transition zone
- Stage 2 BTC dump, volume panic and spread checks
- Stage 3 price position, overbought and momentum admission paths
- Stage 4 global confidence threshold
- Stage 5 cost floor per exchange
- Short-circuit ordering of the pipeline
"""

import math

import pytest
from hypothesis import given, settings, strategies as st

from tradegate.config import RiskGateConfig
from tradegate.context import MarketContext
from tradegate.models import Regime, RiskStage, Ticker
from tradegate.risk import RiskGate
from tradegate.risk.gate import is_btc_pair

from conftest import make_indicators


@pytest.fixture
def gate(context):
    return RiskGate(context=context)


class TestHealthGate:

    def test_choppy_adx_blocked(self, gate):
        result = gate.check_health_gate(15.0, adx_slope=0.0, momentum_1h=0.0)
        assert not result.passed
        assert result.stage == RiskStage.HEALTH_GATE
        assert result.stage_number == 1
        assert result.reason.startswith("Choppy")

    def test_low_adx_blocked_regardless_of_momentum(self, gate):
        result = gate.check_health_gate(14.9, adx_slope=5.0, momentum_1h=5.0)
        assert not result.passed
        assert "Choppy" in result.reason

    def test_trending_passes(self, gate):
        result = gate.check_health_gate(20.0)
        assert result.passed
        assert result.diagnostics["zone"] == "trending"

    def test_transition_zone_requires_slope_and_momentum(self, gate):
        assert gate.check_health_gate(17.0, adx_slope=2.0, momentum_1h=1.5).passed
        assert not gate.check_health_gate(17.0, adx_slope=2.0, momentum_1h=1.4).passed
        assert not gate.check_health_gate(17.0, adx_slope=1.9, momentum_1h=3.0).passed

    @pytest.mark.parametrize("adx", [0.0, -1.0, math.nan, math.inf, None])
    def test_unavailable_adx_blocked(self, gate, adx):
        result = gate.check_health_gate(adx)
        assert not result.passed
        assert "unavailable" in result.reason

    @given(adx=st.floats(min_value=0.01, max_value=14.99),
           slope=st.floats(min_value=-10, max_value=10),
           momentum=st.floats(min_value=-10, max_value=10))
    @settings(max_examples=100)
    def test_below_transition_zone_never_passes(self, adx, slope, momentum):
        assert not RiskGate().check_health_gate(adx, slope, momentum).passed


class TestDropProtection:

    def test_btc_dump_blocks_altcoins(self, gate, context, tight_ticker):
        context.update_btc_momentum(-2.0)
        result = gate.check_drop_protection("ETH/USDT", tight_ticker, make_indicators())
        assert not result.passed
        assert "BTC dumping" in result.reason

    def test_btc_dump_does_not_block_btc(self, gate, context, tight_ticker):
        context.update_btc_momentum(-2.0)
        assert gate.check_drop_protection("BTC/USDT", tight_ticker, make_indicators()).passed

    def test_volume_panic(self, gate, tight_ticker):
        indicators = make_indicators(volume_ratio=5.0, momentum_1h=-0.6)
        result = gate.check_drop_protection("ETH/USDT", tight_ticker, indicators)
        assert not result.passed
        assert "Volume panic" in result.reason

    def test_volume_spike_with_rising_price_allowed(self, gate, tight_ticker):
        indicators = make_indicators(volume_ratio=5.0, momentum_1h=2.0)
        assert gate.check_drop_protection("ETH/USDT", tight_ticker, indicators).passed

    def test_wide_spread(self, gate):
        ticker = Ticker(bid=100.0, ask=100.6, last=100.3)
        result = gate.check_drop_protection("ETH/USDT", ticker, make_indicators())
        assert not result.passed
        assert "Spread" in result.reason

    def test_missing_ticker_skips_spread(self, gate):
        assert gate.check_drop_protection("ETH/USDT", None, make_indicators()).passed


class TestEntryQuality:

    def test_trending_pullback_too_deep(self, gate):
        indicators = make_indicators(adx=32.0, recent_high=100.0)
        result = gate.check_entry_quality("ETH/USDT", 94.0, indicators)
        assert not result.passed
        assert "pulled back" in result.reason

    def test_non_trending_local_top(self, gate):
        indicators = make_indicators(adx=18.0, recent_high=100.0)
        result = gate.check_entry_quality("ETH/USDT", 99.8, indicators)
        assert not result.passed
        assert "local top" in result.reason

    def test_non_trending_below_top_passes(self, gate):
        indicators = make_indicators(adx=18.0, recent_high=100.0)
        assert gate.check_entry_quality("ETH/USDT", 99.0, indicators).passed

    def test_extreme_overbought(self, gate):
        result = gate.check_entry_quality("ETH/USDT", 100.0, make_indicators(rsi=86.0))
        assert not result.passed
        assert "overbought" in result.reason

    def test_low_volume(self, gate):
        result = gate.check_entry_quality("ETH/USDT", 100.0, make_indicators(volume_ratio=0.4))
        assert not result.passed
        assert "low volume" in result.reason

    def test_weak_momentum_blocked(self, gate):
        indicators = make_indicators(adx=18.0, momentum_1h=0.2, momentum_4h=0.1, recent_high=105.0)
        result = gate.check_entry_quality("ETH/USDT", 100.0, indicators)
        assert not result.passed
        assert "Weak momentum" in result.reason

    def test_both_positive_path(self, gate):
        indicators = make_indicators(adx=18.0, momentum_1h=0.6, momentum_4h=0.6, recent_high=105.0)
        result = gate.check_entry_quality("ETH/USDT", 100.0, indicators)
        assert result.passed
        assert result.diagnostics["momentum_paths"]["both_positive"]
        assert not result.diagnostics["momentum_paths"]["momentum_1h"]

    def test_volume_breakout_path(self, gate):
        indicators = make_indicators(
            adx=18.0, momentum_1h=0.1, momentum_4h=-0.5, volume_ratio=1.5, recent_high=105.0
        )
        result = gate.check_entry_quality("ETH/USDT", 100.0, indicators)
        assert result.passed
        assert result.diagnostics["momentum_paths"]["volume_breakout"]

    def test_trending_pullback_path(self, gate):
        indicators = make_indicators(adx=25.0, momentum_1h=-0.2, momentum_4h=0.3, recent_high=101.0)
        result = gate.check_entry_quality("ETH/USDT", 100.0, indicators)
        assert result.passed
        assert result.diagnostics["momentum_paths"]["trending_pullback"]

    def test_ema200_block_is_opt_in(self, context):
        indicators = make_indicators(ema200=110.0)
        assert RiskGate(context=context).check_entry_quality("ETH/USDT", 100.0, indicators).passed

        gate = RiskGate(RiskGateConfig(ema200_downtrend_block=True), context)
        result = gate.check_entry_quality("ETH/USDT", 100.0, indicators)
        assert not result.passed
        assert "EMA200" in result.reason

    def test_creeping_uptrend_lowers_thresholds(self, context):
        indicators = make_indicators(adx=18.0, momentum_1h=0.35, momentum_4h=0.0, recent_high=100.0)
        assert not RiskGate(context=context).check_entry_quality("ETH/USDT", 97.0, indicators).passed

        gate = RiskGate(context=context, creeping_uptrend=True)
        assert gate.check_entry_quality("ETH/USDT", 97.0, indicators).passed


class TestAiValidation:

    @pytest.mark.parametrize("regime", list(Regime))
    def test_threshold_is_the_same_for_every_regime(self, gate, regime):
        # The check takes no regime; the threshold cannot vary by it
        assert gate.check_ai_validation(70.0).passed
        assert not gate.check_ai_validation(69.9).passed

    def test_threshold_override(self, gate):
        assert not gate.check_ai_validation(72.0, threshold_override=75.0).passed

    def test_nan_confidence_rejected(self, gate):
        assert not gate.check_ai_validation(math.nan).passed


class TestCostFloor:

    def test_kraken_costs(self, gate):
        assert gate.total_cost_pct("kraken") == pytest.approx(0.533)

    def test_binance_costs(self, gate):
        assert gate.total_cost_pct("binance") == pytest.approx(0.213)

    def test_unknown_exchange_uses_default_fee(self, gate):
        assert gate.total_cost_pct("someexchange") == pytest.approx(0.533)

    def test_target_below_floor_blocked(self, gate):
        result = gate.check_cost_floor("ETH/USDT", 1.5, "kraken")
        assert not result.passed
        assert result.stage_number == 5
        assert result.diagnostics["cost_floor_pct"] == pytest.approx(1.599)

    def test_target_above_floor_passes(self, gate):
        result = gate.check_cost_floor("ETH/USDT", 2.5, "kraken")
        assert result.passed
        assert result.diagnostics["reward_cost_ratio"] == pytest.approx(2.5 / 0.533)

    def test_choppy_target_passes_on_binance(self, gate):
        assert gate.check_cost_floor("ETH/USDT", gate.get_profit_target(Regime.CHOPPY), "binance").passed


class TestRegimeTables:

    def test_profit_targets(self, gate):
        assert gate.get_profit_target(Regime.STRONG) == 20.0
        assert gate.get_profit_target(Regime.MODERATE) == 5.0
        assert gate.get_profit_target(Regime.WEAK) == 2.5
        assert gate.get_profit_target(Regime.CHOPPY) == 1.5

    def test_strong_with_falling_slope_uses_moderate_target(self, gate):
        assert gate.get_profit_target(Regime.STRONG, adx_slope=-2.0) == 5.0
        assert gate.get_profit_target(Regime.STRONG, adx_slope=-1.9) == 20.0

    def test_erosion_caps(self, gate):
        assert gate.get_erosion_cap(Regime.STRONG) == 0.50
        assert gate.get_erosion_cap(Regime.CHOPPY) == 0.25
        assert gate.get_erosion_cap("unknown") == 0.45

    def test_transition_size_multiplier(self, gate):
        assert gate.size_multiplier_for_regime(Regime.TRANSITIONING) == 0.5
        assert gate.size_multiplier_for_regime(Regime.STRONG) == 1.0


class TestPyramid:

    def test_level_thresholds(self, gate):
        assert gate.can_add_pyramid_level(1, 85.0).passed
        assert not gate.can_add_pyramid_level(1, 84.9).passed
        assert gate.can_add_pyramid_level(2, 90.0).passed
        assert not gate.can_add_pyramid_level(2, 89.0).passed

    def test_invalid_level(self, gate):
        with pytest.raises(ValueError):
            gate.can_add_pyramid_level(3, 99.0)


class TestPipeline:

    def test_trending_entry_passes_all_stages(self, gate, context, tight_ticker):
        context.update_btc_momentum(0.5)
        indicators = make_indicators(adx=32.0, momentum_1h=1.2, rsi=50.0, recent_high=101.0)

        result = gate.run_full_filter(
            "ETH/USDT", 100.0, indicators, tight_ticker, ai_confidence=75.0, regime=Regime.MODERATE
        )

        assert result.passed
        assert result.stage == RiskStage.COST_FLOOR
        assert result.diagnostics["stages_passed"] == [stage.value for stage in RiskStage]

    def test_trending_pair_passes_pre_signal_stages(self, gate, context):
        context.update_btc_momentum(0.5)
        ticker = Ticker(bid=100.0, ask=100.1, last=100.0)
        indicators = make_indicators(adx=32.0, momentum_1h=1.2, rsi=50.0)

        result = gate.run_pre_signal_filter("ETH/USDT", 100.0, indicators, ticker)

        assert result.passed
        assert result.diagnostics["stages_passed"] == [
            "Health Gate", "Drop Protection", "Entry Quality"
        ]

    def test_failure_stops_later_stages(self, gate, tight_ticker, monkeypatch):
        called = []

        def spy(name, original):
            def wrapper(*args, **kwargs):
                called.append(name)
                return original(*args, **kwargs)
            return wrapper

        for name in ("check_health_gate", "check_drop_protection", "check_entry_quality",
                     "check_ai_validation", "check_cost_floor"):
            monkeypatch.setattr(gate, name, spy(name, getattr(gate, name)))

        result = gate.run_full_filter(
            "ETH/USDT", 100.0, make_indicators(adx=10.0), tight_ticker, ai_confidence=99.0
        )

        assert not result.passed
        assert result.stage == RiskStage.HEALTH_GATE
        assert called == ["check_health_gate"]
        assert result.diagnostics["stages_passed"] == []

    def test_pre_and_post_signal_split(self, gate, tight_ticker):
        pre = gate.run_pre_signal_filter("ETH/USDT", 100.0, make_indicators(), tight_ticker)
        assert pre.passed
        assert pre.stage == RiskStage.ENTRY_QUALITY

        post = gate.run_post_signal_filter("ETH/USDT", 65.0, 5.0)
        assert not post.passed
        assert post.stage == RiskStage.AI_VALIDATION

    def test_shared_context_is_read_at_evaluation(self, tight_ticker):
        context = MarketContext()
        gate = RiskGate(context=context)
        indicators = make_indicators()
        assert gate.run_pre_signal_filter("ETH/USDT", 100.0, indicators, tight_ticker).passed

        context.update_btc_momentum(-3.0)
        result = gate.run_pre_signal_filter("ETH/USDT", 100.0, indicators, tight_ticker)
        assert result.stage == RiskStage.DROP_PROTECTION


def test_is_btc_pair():
    assert is_btc_pair("BTC/USDT")
    assert is_btc_pair("btc/eur")
    assert not is_btc_pair("WBTC/USDT")
