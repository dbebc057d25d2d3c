"""End-to-end tests for the decision engine."""

from datetime import timedelta

import pytest

from tradegate.engine import DecisionEngine, OpenPosition
from tradegate.indicators import InsufficientDataError
from tradegate.models import ExitReason, OpenTrade, Regime, RiskStage, Ticker

from conftest import FakeBtcSource, linear, make_candles, zigzag_uptrend


DOWNTREND = [50000.0 - 100 * i for i in range(250)]


@pytest.fixture
def engine(engine_config, ledger, bot_store):
    return DecisionEngine(engine_config, ledger=ledger, bot_store=bot_store)


@pytest.fixture
def trending_candles():
    return make_candles(zigzag_uptrend(60))


@pytest.fixture
def ticker(trending_candles):
    last = trending_candles[-1].close
    return Ticker(bid=last - 0.05, ask=last + 0.05, last=last)


class TestBeginCycle:

    def test_publishes_btc_momentum(self, engine):
        closes = linear(20, start=100.0, step=-1.0)
        momentum = engine.begin_cycle(make_candles(closes))
        assert momentum == pytest.approx((closes[-1] - closes[-4]) / closes[-4] * 100)
        assert engine.context.btc_momentum_1h == momentum

    def test_no_btc_data_is_flat(self, engine):
        engine.context.update_btc_momentum(-3.0)
        assert engine.begin_cycle([]) == 0.0
        assert engine.context.btc_momentum_1h == 0.0


class TestEvaluateEntry:

    def test_trending_pair_approved(self, engine, trending_candles, ticker):
        engine.begin_cycle(make_candles(linear(20)))
        decision = engine.evaluate_entry("bot", "ETH/USDT", trending_candles, ticker, 75.0, 1000.0)

        assert decision.approve, decision.reason
        assert decision.regime.regime == Regime.STRONG
        assert decision.profit_target_pct == 20.0
        assert decision.size_multiplier == 1.0
        assert [r.stage for r in decision.stage_results] == [
            RiskStage.ENTRY_QUALITY, RiskStage.COST_FLOOR
        ]

    def test_without_confidence_only_pre_signal_runs(self, engine, trending_candles, ticker):
        decision = engine.evaluate_entry("bot", "ETH/USDT", trending_candles, ticker, None, 1000.0)
        assert not decision.approve
        assert decision.pre_signal.passed
        assert decision.post_signal is None
        assert decision.capital is None

    def test_btc_dump_blocks(self, engine, trending_candles, ticker):
        engine.begin_cycle(make_candles(linear(20, start=100.0, step=-1.0)))
        decision = engine.evaluate_entry("bot", "ETH/USDT", trending_candles, ticker, 90.0, 1000.0)
        assert not decision.approve
        assert decision.pre_signal.stage == RiskStage.DROP_PROTECTION

    def test_low_confidence_blocks(self, engine, trending_candles, ticker):
        decision = engine.evaluate_entry("bot", "ETH/USDT", trending_candles, ticker, 60.0, 1000.0)
        assert not decision.approve
        assert decision.post_signal.stage == RiskStage.AI_VALIDATION
        assert decision.capital is None

    def test_flat_market_blocked_at_health_gate(self, engine):
        candles = make_candles([100.0] * 40, wick=0.5)
        decision = engine.evaluate_entry("bot", "ETH/USDT", candles, None, 90.0, 1000.0)
        assert not decision.approve
        assert decision.pre_signal.stage == RiskStage.HEALTH_GATE

    def test_insufficient_history_raises(self, engine, ticker):
        with pytest.raises(InsufficientDataError):
            engine.evaluate_entry("bot", "ETH/USDT", make_candles(linear(10)), ticker, 90.0, 1000.0)

    def test_btc_bear_market_reduces_size(self, engine_config, ledger, bot_store, trending_candles, ticker):
        engine = DecisionEngine(
            engine_config, ledger=ledger, bot_store=bot_store, btc_source=FakeBtcSource(DOWNTREND)
        )
        decision = engine.evaluate_entry("bot", "ETH/USDT", trending_candles, ticker, 80.0, 1000.0)
        assert decision.approve
        assert decision.btc_trend.size_multiplier == 0.25
        assert decision.size_multiplier == 0.25

    def test_loss_streak_pause_blocks(self, engine, ledger, trending_candles, ticker, now):
        for i in range(7):
            ledger.save_open_trade(OpenTrade(id=f"l{i}", bot_id="bot", pair="ETH/USDT", entry_time=now))
            ledger.close_trade(f"l{i}", -1.0, now - timedelta(minutes=10 * (7 - i)))

        decision = engine.evaluate_entry(
            "bot", "ETH/USDT", trending_candles, ticker, 80.0, 100000.0, now=now
        )
        assert not decision.approve
        assert decision.capital.layer == "loss_streak"

    def test_capital_evaluated_once_per_cycle(self, engine, trending_candles, ticker, monkeypatch):
        calls = []
        original = engine.capital.evaluate_bot

        def counting(*args, **kwargs):
            calls.append(args[0])
            return original(*args, **kwargs)

        monkeypatch.setattr(engine.capital, "evaluate_bot", counting)
        engine.begin_cycle([])
        for pair in ("ETH/USDT", "SOL/USDT"):
            engine.evaluate_entry("bot", pair, trending_candles, ticker, 80.0, 1000.0)
        assert calls == ["bot"]

        engine.begin_cycle([])
        engine.evaluate_entry("bot", "ETH/USDT", trending_candles, ticker, 80.0, 1000.0)
        assert calls == ["bot", "bot"]


class TestExits:

    def test_erosion_exit(self, engine, now):
        engine.open_position(OpenTrade(
            id="t1", bot_id="bot", pair="ETH/USDT", entry_time=now - timedelta(minutes=40)
        ))
        engine.evaluate_exits([OpenPosition("t1", "ETH/USDT", 1.0)], {"ETH/USDT": Regime.STRONG}, now=now)

        [decision] = engine.evaluate_exits(
            [OpenPosition("t1", "ETH/USDT", 0.48)], {"ETH/USDT": Regime.STRONG}, now=now
        )
        assert decision.should_exit
        assert decision.exit_reason == ExitReason.EROSION_CAP
        assert decision.peak_profit_pct == 1.0

    def test_underwater_exit(self, engine, now):
        entry = now - timedelta(minutes=20)
        [decision] = engine.evaluate_exits([OpenPosition("t2", "SOL/USDT", -1.0, entry)], now=now)
        assert decision.should_exit
        assert decision.exit_reason == ExitReason.UNDERWATER_TIMEOUT
        assert decision.regime == Regime.MODERATE

    def test_holding_position(self, engine, now):
        [decision] = engine.evaluate_exits(
            [OpenPosition("t3", "ETH/USDT", 0.3, now - timedelta(minutes=5))], now=now
        )
        assert not decision.should_exit
        assert decision.exit_reason is None

    def test_close_position(self, engine, ledger, now):
        engine.open_position(OpenTrade(id="t1", bot_id="bot", pair="ETH/USDT", entry_time=now))
        engine.close_position("t1", profit_loss=-2.0, exit_time=now)

        assert engine.tracker.get_peak("t1") is None
        assert ledger.get_open_trades() == []
        assert ledger.get_recent_closed_trades("bot")[0].profit_loss == -2.0

    def test_start_restores_peaks(self, engine_config, ledger, bot_store, now):
        first = DecisionEngine(engine_config, ledger=ledger, bot_store=bot_store)
        first.open_position(OpenTrade(id="t1", bot_id="bot", pair="ETH/USDT", entry_time=now))
        first.evaluate_exits([OpenPosition("t1", "ETH/USDT", 2.0)], now=now)

        restarted = DecisionEngine(engine_config, ledger=ledger, bot_store=bot_store)
        assert restarted.start() == 1
        assert restarted.tracker.get_peak("t1") == 2.0


class TestWiring:

    def test_creeping_uptrend_reaches_classifier_and_gate(self, engine_config, ledger, bot_store):
        engine_config.creeping_uptrend = True
        engine = DecisionEngine(engine_config, ledger=ledger, bot_store=bot_store)
        assert engine.classifier.creeping_uptrend
        assert engine.risk_gate.creeping_uptrend
        assert engine.classifier.base_confidence(Regime.WEAK, 0.2, 0.2) == 68.0

    def test_creeping_uptrend_off_by_default(self, engine):
        assert not engine.classifier.creeping_uptrend
        assert not engine.risk_gate.creeping_uptrend
