#!/usr/bin/env python3
"""Tradegate - decision engine entry point.

Loads configuration, hydrates open-position state from the trade ledger and
evaluates entry decisions for the given pairs from public exchange data.

Usage:
    python main.py --bot-id bot-1 --balance 1000 ETH/USDT SOL/USDT
    python main.py --config config/config.json --confidence 78 ETH/USDT
"""

import argparse
import logging
import sys

import ccxt

from tradegate.config import ConfigManager, ConfigValidationError
from tradegate.engine import DecisionEngine
from tradegate.indicators import InsufficientDataError
from tradegate.logging_setup import setup_logging
from tradegate.models import Candle, Ticker
from tradegate.risk import ExchangeBtcSource


logger = logging.getLogger("tradegate.main")

CANDLE_LIMIT = 250


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Tradegate entry/exit decision engine")
    parser.add_argument("pairs", nargs="+", help="Pairs to evaluate, e.g. ETH/USDT")
    parser.add_argument("--config", default=None, help="Path to config.json")
    parser.add_argument("--bot-id", default="default", help="Bot instance ID")
    parser.add_argument("--balance", type=float, default=1000.0, help="Effective balance in quote currency")
    parser.add_argument(
        "--confidence",
        type=float,
        default=None,
        help="Signal confidence to run stages 4-5 with (pre-signal stages only if omitted)",
    )
    parser.add_argument("--log-file", default=None, help="Optional log file path")
    return parser.parse_args(argv)


def fetch_candles(exchange, pair: str) -> list[Candle]:
    return [Candle.from_list(row) for row in exchange.fetch_ohlcv(pair, timeframe="15m", limit=CANDLE_LIMIT)]


def fetch_ticker(exchange, pair: str) -> Ticker:
    data = exchange.fetch_ticker(pair)
    return Ticker(bid=data.get("bid"), ask=data.get("ask"), last=data.get("last"))


def main(argv=None) -> int:
    """Main entry point for a single decision cycle."""
    args = parse_args(argv)

    try:
        config = ConfigManager(args.config).load()
    except ConfigValidationError as e:
        setup_logging("INFO", args.log_file)
        logger.error(f"Configuration error: {e}")
        return 1

    setup_logging(config.log_level, args.log_file)
    logger.info("=" * 70)
    logger.info("TRADEGATE - DECISION ENGINE")
    logger.info("=" * 70)

    exchange = getattr(ccxt, config.capital.btc_exchange)({
        "enableRateLimit": True,
        "timeout": int(config.capital.fetch_timeout_seconds * 1000),
        "options": {"defaultType": "spot"},
    })
    btc_source = ExchangeBtcSource(
        exchange_id=config.capital.btc_exchange,
        pair=config.capital.btc_pair,
        timeout_seconds=config.capital.fetch_timeout_seconds,
        ticker_url=config.capital.btc_ticker_url or None,
        exchange=exchange,
    )
    engine = DecisionEngine(config, btc_source=btc_source)
    restored = engine.start()
    logger.info(f"Restored {restored} open positions")

    try:
        engine.begin_cycle(fetch_candles(exchange, config.capital.btc_pair))
    except ccxt.BaseError as e:
        logger.warning(f"BTC momentum unavailable ({e}), assuming flat")
        engine.begin_cycle([])

    exit_code = 0
    for pair in args.pairs:
        try:
            candles = fetch_candles(exchange, pair)
            ticker = fetch_ticker(exchange, pair)
        except ccxt.BaseError as e:
            logger.error(f"Market data unavailable for {pair}: {e}")
            exit_code = 1
            continue

        try:
            decision = engine.evaluate_entry(
                args.bot_id, pair, candles, ticker, args.confidence, args.balance
            )
        except InsufficientDataError as e:
            logger.error(f"Skipping {pair}: {e}")
            exit_code = 1
            continue

        status = "APPROVE" if decision.approve else "REJECT"
        logger.info(
            f"{pair}: {status} | regime={decision.regime.regime.value} "
            f"confidence={decision.regime.confidence:.0f} | {decision.reason}"
        )

    return exit_code


if __name__ == "__main__":
    sys.exit(main())
