"""Position lifecycle: per-instrument state, persistence, state machine."""

from momentum_bot.lifecycle.manager import ClosedTrade, PositionLifecycleManager
from momentum_bot.lifecycle.persistence import TrailingStopStore
from momentum_bot.lifecycle.state import InstrumentRegistry, InstrumentState, PositionPhase

__all__ = [
    "ClosedTrade",
    "InstrumentRegistry",
    "InstrumentState",
    "PositionLifecycleManager",
    "PositionPhase",
    "TrailingStopStore",
]
