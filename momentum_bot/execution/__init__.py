"""Execution: gateway contract and Binance Futures implementation."""

from momentum_bot.execution.base import ExecutionClient
from momentum_bot.execution.binance_futures import BinanceFuturesClient

__all__ = ["ExecutionClient", "BinanceFuturesClient"]
