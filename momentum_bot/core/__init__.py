"""Core: config, types, errors, logging."""

from momentum_bot.core.config import load_config, Config
from momentum_bot.core.types import (
    Direction,
    OrderSide,
    OrderType,
    OrderStatus,
    PriceSample,
    Signal,
    TrailingStopState,
    Cooldown,
    CooldownKind,
)
from momentum_bot.core.logger import setup_logging

__all__ = [
    "load_config",
    "Config",
    "Direction",
    "OrderSide",
    "OrderType",
    "OrderStatus",
    "PriceSample",
    "Signal",
    "TrailingStopState",
    "Cooldown",
    "CooldownKind",
    "setup_logging",
]
