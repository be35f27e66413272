"""Data: rolling price windows, validation, historical loader."""

from momentum_bot.data.window import PriceWindowStore
from momentum_bot.data.validation import validate_samples
from momentum_bot.data.history import BinanceHistoryLoader, HistoryLoader

__all__ = ["PriceWindowStore", "validate_samples", "BinanceHistoryLoader", "HistoryLoader"]
