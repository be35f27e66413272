"""
Per-instrument state container. Each instrument has its own lock; no
global lock exists, so unrelated instruments never wait on each other.
"""

from __future__ import annotations
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterator, List, Optional

from momentum_bot.core.errors import LockTimeout
from momentum_bot.core.types import Cooldown, CooldownKind, Direction, ExitReason, Signal, TrailingStopState


class PositionPhase(str, Enum):
    IDLE = "IDLE"
    OPENING = "OPENING"
    ACTIVE = "ACTIVE"
    CLOSING = "CLOSING"


@dataclass
class InstrumentState:
    """Mutable; only touch while holding `lock`."""
    instrument: str
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    phase: PositionPhase = PositionPhase.IDLE
    signal: Optional[Signal] = None
    direction: Optional[Direction] = None
    entry_price: Optional[Decimal] = None
    quantity: Decimal = Decimal("0")
    trailing: Optional[TrailingStopState] = None
    tp_order_id: Optional[str] = None
    close_reason: Optional[ExitReason] = None
    opened_at: Optional[datetime] = None
    last_monitored_at: Optional[datetime] = None
    stale_alerted: bool = False
    # Set until startup recovery has resolved this instrument; blocks entries. Survives clear_position().
    recovery_pending: bool = False
    cooldowns: Dict[CooldownKind, Cooldown] = field(default_factory=dict)
    # Bumped on every phase transition; in-flight work compares it before applying results.
    version: int = 0

    def transition(self, phase: PositionPhase) -> int:
        self.phase = phase
        self.version += 1
        return self.version

    def clear_position(self) -> None:
        self.signal = None
        self.direction = None
        self.entry_price = None
        self.quantity = Decimal("0")
        self.trailing = None
        self.tp_order_id = None
        self.close_reason = None
        self.opened_at = None
        self.last_monitored_at = None
        self.stale_alerted = False
        self.transition(PositionPhase.IDLE)

    def active_cooldown(self, now: datetime) -> Optional[Cooldown]:
        for kind in (CooldownKind.LOSS, CooldownKind.FAILED_ORDER):
            cooldown = self.cooldowns.get(kind)
            if cooldown is not None:
                if cooldown.is_active(now):
                    return cooldown
                del self.cooldowns[kind]
        return None


class InstrumentRegistry:
    """Holds one InstrumentState per configured instrument."""

    def __init__(self, instruments: List[str], lock_timeout: float = 2.0):
        self.lock_timeout = lock_timeout
        self._states = {s: InstrumentState(instrument=s) for s in instruments}

    def __contains__(self, instrument: str) -> bool:
        return instrument in self._states

    def instruments(self) -> List[str]:
        return list(self._states)

    def peek(self, instrument: str) -> InstrumentState:
        """Unlocked access, for reads that tolerate a racing writer."""
        return self._states[instrument]

    @contextmanager
    def acquire(self, instrument: str, timeout: Optional[float] = None) -> Iterator[InstrumentState]:
        state = self._states[instrument]
        if not state.lock.acquire(timeout=self.lock_timeout if timeout is None else timeout):
            raise LockTimeout(f"{instrument}: lock not acquired")
        try:
            yield state
        finally:
            state.lock.release()

    def mark_recovery_pending(self) -> None:
        """Flag every IDLE instrument until recovery confirms whether the exchange holds a position."""
        for instrument in self._states:
            with self.acquire(instrument) as state:
                if state.phase is PositionPhase.IDLE:
                    state.recovery_pending = True

    def recovery_pending(self) -> List[str]:
        return [s for s, state in self._states.items() if state.recovery_pending]

    def occupied_count(self) -> int:
        """Instruments holding or reserving a position slot."""
        return sum(1 for s in self._states.values() if s.phase is not PositionPhase.IDLE)

    def entry_block_reason(self, instrument: str, now: datetime) -> Optional[str]:
        """Why a new entry is not allowed right now, or None."""
        if instrument not in self._states:
            return "instrument not configured"
        try:
            with self.acquire(instrument) as state:
                if state.phase is not PositionPhase.IDLE:
                    return f"position {state.phase.value.lower()}"
                if state.recovery_pending:
                    return "awaiting position recovery"
                cooldown = state.active_cooldown(now)
                if cooldown is not None:
                    remaining = int((cooldown.until - now).total_seconds() // 60) + 1
                    return f"in {cooldown.kind.value} cooldown ({remaining}m remaining)"
        except LockTimeout:
            return "instrument busy"
        return None
