"""Shared fakes: scripted gateway, stub notifier, controllable clock, window builders."""

from __future__ import annotations
import itertools
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_DOWN
from typing import Callable, Dict, List, Optional

import pytest

from momentum_bot.core.errors import GatewayUnavailable, NoPriceData
from momentum_bot.core.types import (
    Balance, Direction, OpenOrder, OrderHandle, OrderSide, OrderStatus, OrderType, PositionSnapshot,
    PriceSample, Signal,
)
from momentum_bot.execution.base import ExecutionClient
from momentum_bot.lifecycle.manager import PositionLifecycleManager
from momentum_bot.lifecycle.persistence import TrailingStopStore
from momentum_bot.lifecycle.state import InstrumentRegistry
from momentum_bot.risk.manager import RiskManager

D = Decimal
BUCKET = timedelta(minutes=5)
START = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@dataclass
class StubNotifier:
    messages: List[str] = field(default_factory=list)

    def send(self, message: str) -> None:
        self.messages.append(message)


class FakeGateway(ExecutionClient):
    """
    In-memory exchange. MARKET entry orders open a position at the current
    price; reduce-only MARKET orders shrink or remove it. LIMIT orders rest.
    """

    def __init__(self, lot_step: Decimal = D("0.001")):
        self.positions: Dict[str, PositionSnapshot] = {}
        self.prices: Dict[str, Decimal] = {}
        self.balance = Balance(available=D("10000"), locked=D("0"), total=D("10000"))
        self.orders: Dict[str, OpenOrder] = {}
        self.statuses: Dict[str, OrderStatus] = {}
        self.placed: List[dict] = []
        self.cancelled: List[str] = []
        self.lot_step = lot_step
        self.market_status = OrderStatus.FILLED
        self.fail_next_order: Optional[Exception] = None
        self.fail_reads = False
        self.on_place: Optional[Callable[[dict], None]] = None
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def set_price(self, instrument: str, price) -> None:
        price = D(str(price))
        self.prices[instrument] = price
        pos = self.positions.get(instrument)
        if pos is not None:
            self.positions[instrument] = PositionSnapshot(
                instrument=instrument, side=pos.side, quantity=pos.quantity,
                entry_price=pos.entry_price, mark_price=price,
            )

    def open_position(self, instrument: str, side: OrderSide, quantity, entry) -> None:
        self.positions[instrument] = PositionSnapshot(
            instrument=instrument, side=side, quantity=D(str(quantity)),
            entry_price=D(str(entry)), mark_price=self.prices.get(instrument, D(str(entry))),
        )

    def add_order(self, instrument: str, side: OrderSide, order_type: OrderType, quantity, price=None,
                  reduce_only: bool = False) -> str:
        order_id = str(next(self._ids))
        self.orders[order_id] = OpenOrder(
            order_id=order_id, instrument=instrument, side=side, order_type=order_type,
            quantity=D(str(quantity)), price=D(str(price)) if price is not None else None, reduce_only=reduce_only,
        )
        self.statuses[order_id] = OrderStatus.OPEN
        return order_id

    def _check_reads(self) -> None:
        if self.fail_reads:
            raise GatewayUnavailable("scripted read failure")

    def round_quantity(self, instrument: str, quantity: Decimal) -> Decimal:
        return (quantity / self.lot_step).to_integral_value(rounding=ROUND_DOWN) * self.lot_step

    def place_order(self, instrument, side, quantity, order_type, price=None, reduce_only=False) -> OrderHandle:
        call = {
            "instrument": instrument, "side": side, "quantity": quantity,
            "order_type": order_type, "price": price, "reduce_only": reduce_only,
        }
        self.placed.append(call)
        if self.on_place is not None:
            self.on_place(call)
        if self.fail_next_order is not None:
            exc, self.fail_next_order = self.fail_next_order, None
            raise exc
        if order_type is OrderType.LIMIT:
            order_id = self.add_order(instrument, side, order_type, quantity, price, reduce_only)
            return OrderHandle(order_id=order_id, status=OrderStatus.OPEN, quantity=quantity)

        order_id = str(next(self._ids))
        fill = self.prices[instrument]
        status = self.market_status
        self.statuses[order_id] = status
        if status is OrderStatus.FILLED:
            with self._lock:
                pos = self.positions.get(instrument)
                if reduce_only:
                    if pos is not None:
                        remaining = pos.quantity - quantity
                        if remaining > 0:
                            self.open_position(instrument, pos.side, remaining, pos.entry_price)
                        else:
                            del self.positions[instrument]
                else:
                    self.open_position(instrument, side, quantity, fill)
        return OrderHandle(order_id=order_id, status=status, avg_price=fill, quantity=quantity)

    def cancel_order(self, instrument: str, order_id: str) -> bool:
        self.cancelled.append(order_id)
        if self.orders.pop(order_id, None) is None:
            return False
        self.statuses[order_id] = OrderStatus.CANCELLED
        return True

    def fill_order(self, order_id: str) -> None:
        """Simulate a resting reduce-only order filling on the exchange."""
        order = self.orders.pop(order_id)
        self.statuses[order_id] = OrderStatus.FILLED
        self.positions.pop(order.instrument, None)

    def get_positions(self) -> List[PositionSnapshot]:
        self._check_reads()
        return list(self.positions.values())

    def get_balance(self) -> Balance:
        self._check_reads()
        return self.balance

    def get_last_price(self, instrument: str) -> Decimal:
        self._check_reads()
        if instrument not in self.prices:
            raise NoPriceData(instrument)
        return self.prices[instrument]

    def get_open_orders(self, instrument: Optional[str] = None) -> List[OpenOrder]:
        self._check_reads()
        return [o for o in self.orders.values() if instrument is None or o.instrument == instrument]

    def get_order_status(self, instrument: str, order_id: str) -> OrderStatus:
        self._check_reads()
        return self.statuses.get(order_id, OrderStatus.UNKNOWN)

    def entry_orders(self) -> List[dict]:
        return [c for c in self.placed if c["order_type"] is OrderType.MARKET and not c["reduce_only"]]


def make_samples(
    closes,
    volumes=None,
    end: datetime = START,
    bucket: timedelta = BUCKET,
    spread=D("0.5"),
) -> List[PriceSample]:
    """One sample per close; the last one is the in-progress bucket, opened a minute before `end`."""
    closes = [D(str(c)) for c in closes]
    volumes = [D(str(v)) for v in volumes] if volumes is not None else [D("10")] * len(closes)
    last_ts = end - timedelta(minutes=1)
    first_ts = last_ts - bucket * (len(closes) - 1)
    return [
        PriceSample(
            high=c + spread,
            low=c - spread,
            close=c,
            volume=v,
            timestamp=first_ts + bucket * i,
        )
        for i, (c, v) in enumerate(zip(closes, volumes))
    ]


def rising_closes(n: int = 260, start: Decimal = D("100"), step: Decimal = D("0.5")) -> List[Decimal]:
    return [start + step * i for i in range(n)]


def falling_closes(n: int = 260, start: Decimal = D("300"), step: Decimal = D("0.5")) -> List[Decimal]:
    return [start - step * i for i in range(n)]


def long_signal(instrument: str = "BTCUSDT", entry="100", stop="95", target="101.3", now: datetime = START) -> Signal:
    return Signal(
        instrument=instrument,
        direction=Direction.LONG,
        entry_price=D(entry),
        stop_loss=D(stop),
        take_profit=D(target) if target is not None else None,
        confidence=D("0.72"),
        reason="test",
        created_at=now,
    )


def short_signal(instrument: str = "BTCUSDT", entry="100", stop="105", target="98.7", now: datetime = START) -> Signal:
    return Signal(
        instrument=instrument,
        direction=Direction.SHORT,
        entry_price=D(entry),
        stop_loss=D(stop),
        take_profit=D(target) if target is not None else None,
        confidence=D("0.72"),
        reason="test",
        created_at=now,
    )


@dataclass
class Harness:
    gateway: FakeGateway
    registry: InstrumentRegistry
    store: TrailingStopStore
    risk: RiskManager
    notifier: StubNotifier
    clock: FakeClock
    manager: PositionLifecycleManager


def build_harness(tmp_path, instruments=("BTCUSDT", "ETHUSDT"), lock_timeout: float = 0.2, **manager_kwargs) -> Harness:
    gateway = FakeGateway()
    for s in instruments:
        gateway.set_price(s, "100")
    registry = InstrumentRegistry(list(instruments), lock_timeout=lock_timeout)
    store = TrailingStopStore(tmp_path / "trailing_stops.json")
    risk = RiskManager(
        position_sizes={s: D("1") for s in instruments},
        max_daily_loss_usd=D("1000"),
        max_positions=5,
        leverage=5,
    )
    notifier = StubNotifier()
    clock = FakeClock()
    manager = PositionLifecycleManager(
        gateway=gateway,
        registry=registry,
        store=store,
        risk=risk,
        notifier=notifier,
        clock=clock,
        **manager_kwargs,
    )
    return Harness(gateway, registry, store, risk, notifier, clock, manager)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> StubNotifier:
    return StubNotifier()


@pytest.fixture
def harness(tmp_path) -> Harness:
    return build_harness(tmp_path)
