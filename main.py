#!/usr/bin/env python3
"""
Momentum Bot CLI
Usage:
  python main.py live [--config config.yaml]
"""

from __future__ import annotations
import argparse
import logging
import sys
from pathlib import Path

# Project root
ROOT = Path(__file__).resolve().parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from momentum_bot.core.config import load_config
from momentum_bot.core.errors import ConfigError
from momentum_bot.core.logger import setup_logging
from momentum_bot.core.types import TickOutcome
from momentum_bot.data.history import BinanceHistoryLoader
from momentum_bot.data.window import PriceWindowStore
from momentum_bot.engine import TradingEngine
from momentum_bot.execution.binance_futures import BinanceFuturesClient
from momentum_bot.lifecycle.manager import PositionLifecycleManager
from momentum_bot.lifecycle.persistence import TrailingStopStore
from momentum_bot.lifecycle.state import InstrumentRegistry
from momentum_bot.risk.manager import RiskManager
from momentum_bot.scheduler import Scheduler
from momentum_bot.strategies.signal_generator import MomentumSignalGenerator
from momentum_bot.utils.telegram import TelegramNotifier


def build_engine(config, notifier: TelegramNotifier) -> TradingEngine:
    """Wire every component from a validated Config."""
    gateway = BinanceFuturesClient(
        config.binance_api_key,
        config.binance_api_secret,
        testnet=config.use_testnet,
    )
    registry = InstrumentRegistry(config.instruments, lock_timeout=config.lock_timeout_seconds)
    state_file = config.state_file if config.state_file.is_absolute() else ROOT / config.state_file
    store = TrailingStopStore(state_file)
    risk = RiskManager.from_config(config)
    lifecycle = PositionLifecycleManager.from_config(config, gateway, registry, store, risk, notifier)
    strategy = MomentumSignalGenerator.from_config(config, registry.entry_block_reason)
    return TradingEngine(
        gateway=gateway,
        history=BinanceHistoryLoader(symbol_for=config.history_symbol),
        windows=PriceWindowStore(max_length=config.window_size),
        strategy=strategy,
        lifecycle=lifecycle,
        registry=registry,
        risk=risk,
        notifier=notifier,
        timeframe=config.timeframe,
        history_count=config.history_count,
        paper=not config.is_live,
    )


def run_live(config_path: Path | None) -> int:
    """Seed windows, recover open positions, then run the scheduler until Ctrl-C."""
    config = load_config(config_path, ROOT)
    log_dir = config.log_dir if config.log_dir.is_absolute() else ROOT / config.log_dir
    setup_logging(config.log_level, log_dir, config.log_file)
    logger = logging.getLogger("momentum_bot")
    try:
        config.validate()
    except ConfigError as e:
        logger.error("Invalid configuration: %s", e)
        return 1
    if config.is_live and (not config.binance_api_key or not config.binance_api_secret):
        logger.error("Missing BINANCE_API_KEY or BINANCE_API_SECRET in .env")
        return 1

    notifier = TelegramNotifier(config.telegram_bot_token, config.telegram_chat_id)
    notifier.start()
    engine = build_engine(config, notifier)
    if config.is_live:
        for instrument in config.instruments:
            engine.gateway.set_leverage(instrument, config.leverage)

    for result in engine.seed():
        if result.outcome is not TickOutcome.COMPLETED:
            logger.warning("Seed %s: %s", result.instrument, result.detail)
    recovery = engine.on_recover_all()
    logger.info("Recovery: %s %s", recovery.outcome.value, recovery.detail)

    scheduler = Scheduler.from_config(config, engine)
    notifier.send(
        f"🤖 Momentum bot starting | {', '.join(config.instruments)} | mode={config.trading_mode} "
        f"| testnet={config.use_testnet} | leverage={config.leverage}x"
    )
    scheduler.start()
    try:
        while not scheduler.wait(timeout=1.0):
            pass
    except KeyboardInterrupt:
        logger.info("Shutdown by user")
    finally:
        scheduler.stop()
        notifier.send("Momentum bot stopped.")
        notifier.stop()
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Momentum Bot CLI")
    parser.add_argument("mode", choices=["live"], help="Run the bot (trading_mode in config picks live or paper)")
    parser.add_argument("--config", type=Path, default=None, help="Path to config.yaml")
    args = parser.parse_args()
    return run_live(args.config)


if __name__ == "__main__":
    sys.exit(main())
