"""
Error taxonomy. Every failure inside a tick resolves to one of these and is
handled as "skip this tick" or "enter a cooldown", never as a crash.
"""

from __future__ import annotations


class TradingBotError(Exception):
    """Base class for all bot errors."""


class GatewayUnavailable(TradingBotError):
    """Transient exchange/network failure. Tick is skipped, no state change."""


class NoPriceData(GatewayUnavailable):
    """Gateway has no price for the instrument right now."""


class OrderRejected(TradingBotError):
    """Exchange refused an order. Starts a failed-order cooldown on entry."""


class InsufficientData(TradingBotError):
    """Fewer samples than an indicator or gate requires."""


class DataQualityViolation(InsufficientData):
    """Window failed validation (bad prices, gaps, stale data)."""


class InstrumentNotSupported(TradingBotError):
    """History feed does not carry this instrument. Non-fatal."""


class PersistenceFailure(TradingBotError):
    """Trailing-stop state could not be written. Trading continues in memory."""


class ConfigError(TradingBotError):
    """Invalid configuration detected at startup."""


class LockTimeout(TradingBotError):
    """Instrument lock not acquired in time. Treated as a skipped tick."""
