"""Momentum perpetual-futures bot: signal gating and position lifecycle."""

__version__ = "0.1.0"
