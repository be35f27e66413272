"""
Core data types: price samples, signals, trailing stops, cooldowns,
gateway snapshots and tick results. Prices, volumes and quantities are Decimal.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

ONE = Decimal("1")
HUNDRED = Decimal("100")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Direction(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def entry_side(self) -> "OrderSide":
        return OrderSide.BUY if self is Direction.LONG else OrderSide.SELL

    @property
    def exit_side(self) -> "OrderSide":
        return OrderSide.SELL if self is Direction.LONG else OrderSide.BUY


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    @property
    def direction(self) -> Direction:
        return Direction.LONG if self is OrderSide.BUY else Direction.SHORT


class OrderType(str, Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    OPEN = "OPEN"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"
    # Exchange reported something we do not recognise. Never read as terminal.
    UNKNOWN = "UNKNOWN"

    @property
    def is_resting(self) -> bool:
        return self in (OrderStatus.PENDING, OrderStatus.OPEN, OrderStatus.PARTIALLY_FILLED)


class CooldownKind(str, Enum):
    LOSS = "loss"
    FAILED_ORDER = "failed-order"


class ExitReason(str, Enum):
    STOP_LOSS = "Stop Loss Hit"
    TAKE_PROFIT = "Take Profit Hit"
    TARGET_FILLED = "Take Profit Hit (Limit Order Filled)"
    MANUAL = "Manual Close"
    EXTERNAL = "Closed Externally"

    @property
    def starts_loss_cooldown(self) -> bool:
        return self in (ExitReason.STOP_LOSS, ExitReason.EXTERNAL)


@dataclass(frozen=True)
class PriceSample:
    """One fixed-size time bucket (e.g. a 5m candle)."""
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal
    timestamp: datetime


@dataclass(frozen=True)
class Signal:
    """Trade decision. Immutable; the authoritative stop/target reference while the position lives."""
    instrument: str
    direction: Direction
    entry_price: Decimal
    stop_loss: Decimal
    take_profit: Optional[Decimal]
    confidence: Decimal
    reason: str
    created_at: datetime = field(default_factory=utc_now)

    def with_stop(self, stop_loss: Decimal) -> "Signal":
        return replace(self, stop_loss=stop_loss)


@dataclass(frozen=True)
class TrailingStopState:
    """
    Trailing stop for one open position.
    high_water_mark is the best price seen since entry (highest for long, lowest for short).
    """
    instrument: str
    high_water_mark: Decimal
    current_stop_level: Decimal
    partial_profit_taken: bool = False
    updated_at: datetime = field(default_factory=utc_now)

    def advance(self, mark: Decimal, direction: Direction, trail_percent: Decimal) -> Optional["TrailingStopState"]:
        """
        Return the tightened state if mark makes a new extreme AND the resulting
        stop is strictly more protective than the current one, else None.
        """
        if direction is Direction.LONG:
            if mark <= self.high_water_mark:
                return None
            new_stop = mark * (ONE - trail_percent / HUNDRED)
            if new_stop <= self.current_stop_level:
                return None
        else:
            if mark >= self.high_water_mark:
                return None
            new_stop = mark * (ONE + trail_percent / HUNDRED)
            if new_stop >= self.current_stop_level:
                return None
        return replace(self, high_water_mark=mark, current_stop_level=new_stop, updated_at=utc_now())

    def is_crossed(self, mark: Decimal, direction: Direction) -> bool:
        """Strict cross: a mark exactly at the stop does not trigger."""
        if direction is Direction.LONG:
            return mark < self.current_stop_level
        return mark > self.current_stop_level


@dataclass(frozen=True)
class Cooldown:
    instrument: str
    until: datetime
    kind: CooldownKind

    def is_active(self, now: datetime) -> bool:
        return now < self.until


@dataclass(frozen=True)
class OrderHandle:
    """Exchange acknowledgment of a placed order."""
    order_id: str
    status: OrderStatus
    avg_price: Optional[Decimal] = None
    quantity: Optional[Decimal] = None


@dataclass(frozen=True)
class OpenOrder:
    order_id: str
    instrument: str
    side: OrderSide
    order_type: OrderType
    quantity: Decimal
    price: Optional[Decimal] = None
    reduce_only: bool = False


@dataclass(frozen=True)
class PositionSnapshot:
    """Exchange-reported open position. Ground truth whenever available."""
    instrument: str
    side: OrderSide
    quantity: Decimal
    entry_price: Decimal
    mark_price: Optional[Decimal] = None

    @property
    def direction(self) -> Direction:
        return self.side.direction

    def unrealized_pnl(self, price: Decimal) -> Decimal:
        if self.direction is Direction.LONG:
            return (price - self.entry_price) * self.quantity
        return (self.entry_price - price) * self.quantity


@dataclass(frozen=True)
class Balance:
    available: Decimal
    locked: Decimal
    total: Decimal


class TickOutcome(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class TickResult:
    """Return value of every scheduler-facing tick. Ticks never raise."""
    task: str
    instrument: Optional[str]
    outcome: TickOutcome
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome is not TickOutcome.FAILED
