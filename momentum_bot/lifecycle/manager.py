"""
Position lifecycle: IDLE -> OPENING -> ACTIVE -> CLOSING -> IDLE.

Locking rules:
- an instrument's lock is held only while reading or mutating its state
  (and during the synchronous trailing-stop write), never across gateway I/O;
- every result that comes back from the gateway is applied with a
  check-and-set against the (phase, version) observed before the call.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from functools import partial
from typing import Callable, Dict, List, Optional, Set

from momentum_bot.core.errors import GatewayUnavailable, LockTimeout, OrderRejected, PersistenceFailure
from momentum_bot.core.types import (
    Cooldown, CooldownKind, Direction, ExitReason, OpenOrder, OrderStatus, OrderType,
    PositionSnapshot, Signal, TickOutcome, TickResult, TrailingStopState, utc_now,
)
from momentum_bot.execution.base import ExecutionClient
from momentum_bot.lifecycle.persistence import TrailingStopStore
from momentum_bot.lifecycle.state import InstrumentRegistry, InstrumentState, PositionPhase
from momentum_bot.risk.manager import RiskManager
from momentum_bot.utils.telegram import format_alert, format_entry, format_exit, format_rejected

logger = logging.getLogger("momentum_bot.lifecycle")

ZERO = Decimal("0")
ONE = Decimal("1")
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class ClosedTrade:
    instrument: str
    direction: Direction
    entry_price: Decimal
    exit_price: Optional[Decimal]
    quantity: Decimal
    reason: ExitReason
    pnl: Optional[Decimal]
    tp_order_id: Optional[str]


def _result(task: str, instrument: Optional[str], outcome: TickOutcome, detail: str = "") -> TickResult:
    return TickResult(task=task, instrument=instrument, outcome=outcome, detail=detail)


def _pnl(direction: Direction, entry: Decimal, exit_price: Decimal, quantity: Decimal) -> Decimal:
    if direction is Direction.LONG:
        return (exit_price - entry) * quantity
    return (entry - exit_price) * quantity


def _gain_percent(direction: Direction, entry: Decimal, mark: Decimal) -> Decimal:
    if direction is Direction.LONG:
        return (mark - entry) / entry * HUNDRED
    return (entry - mark) / entry * HUNDRED


class PositionLifecycleManager:
    """Owns the per-instrument state machine. Raises LockTimeout / GatewayUnavailable to the caller."""

    def __init__(
        self,
        gateway: ExecutionClient,
        registry: InstrumentRegistry,
        store: TrailingStopStore,
        risk: RiskManager,
        notifier,
        trailing_stop_percent: Decimal = Decimal("5"),
        stop_loss_percent: Decimal = Decimal("5"),
        take_profit_percent: Optional[Decimal] = Decimal("1.3"),
        take_profit_close_percent: Decimal = HUNDRED,
        loss_cooldown: timedelta = timedelta(minutes=20),
        failed_order_cooldown: timedelta = timedelta(minutes=5),
        new_position_grace: timedelta = timedelta(seconds=30),
        monitor_stale_after: timedelta = timedelta(seconds=60),
        clock: Callable[[], datetime] = utc_now,
    ):
        self.gateway = gateway
        self.registry = registry
        self.store = store
        self.risk = risk
        self.notifier = notifier
        self.trailing_stop_percent = trailing_stop_percent
        self.stop_loss_percent = stop_loss_percent
        self.take_profit_percent = take_profit_percent
        self.take_profit_close_percent = take_profit_close_percent
        self.loss_cooldown = loss_cooldown
        self.failed_order_cooldown = failed_order_cooldown
        self.new_position_grace = new_position_grace
        self.monitor_stale_after = monitor_stale_after
        self.clock = clock
        self._unmanaged_alerted: Set[str] = set()

    @classmethod
    def from_config(cls, config, gateway, registry, store, risk, notifier, clock=utc_now) -> "PositionLifecycleManager":
        return cls(
            gateway=gateway,
            registry=registry,
            store=store,
            risk=risk,
            notifier=notifier,
            trailing_stop_percent=config.trailing_stop_percent,
            stop_loss_percent=config.stop_loss_percent,
            take_profit_percent=config.take_profit_percent,
            take_profit_close_percent=config.take_profit_close_percent,
            loss_cooldown=timedelta(minutes=config.loss_cooldown_minutes),
            failed_order_cooldown=timedelta(minutes=config.failed_order_cooldown_minutes),
            new_position_grace=timedelta(seconds=config.new_position_grace_seconds),
            monitor_stale_after=timedelta(seconds=config.monitor_stale_seconds),
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _persist(self, state: TrailingStopState) -> None:
        try:
            self.store.save(state)
        except PersistenceFailure as e:
            logger.error("%s: trailing stop kept in memory only: %s", state.instrument, e)
            self.notifier.send(format_alert(f"{state.instrument}: trailing stop not persisted ({e})"))

    def _forget(self, instrument: str) -> None:
        try:
            self.store.delete(instrument)
        except PersistenceFailure as e:
            logger.error("%s: could not remove persisted trailing stop: %s", instrument, e)

    def _release_reservation(self, instrument: str, version: int, cooldown: Optional[CooldownKind] = None) -> None:
        with self.registry.acquire(instrument) as st:
            if st.phase is not PositionPhase.OPENING or st.version != version:
                logger.warning("%s: reservation already superseded (phase %s)", instrument, st.phase.value)
                return
            st.clear_position()
            if cooldown is CooldownKind.FAILED_ORDER:
                until = self.clock() + self.failed_order_cooldown
                st.cooldowns[cooldown] = Cooldown(instrument=instrument, until=until, kind=cooldown)
                logger.info("%s: failed-order cooldown until %s", instrument, until.isoformat())

    def _initial_stop(self, direction: Direction, entry: Decimal) -> Decimal:
        if direction is Direction.LONG:
            return entry * (ONE - self.stop_loss_percent / HUNDRED)
        return entry * (ONE + self.stop_loss_percent / HUNDRED)

    def _target(self, direction: Direction, entry: Decimal) -> Optional[Decimal]:
        if not self.take_profit_percent:
            return None
        if direction is Direction.LONG:
            return entry * (ONE + self.take_profit_percent / HUNDRED)
        return entry * (ONE - self.take_profit_percent / HUNDRED)

    def _place_target_order(self, instrument: str, direction: Direction, quantity: Decimal, price: Decimal) -> Optional[str]:
        try:
            handle = self.gateway.place_order(
                instrument, direction.exit_side, quantity, OrderType.LIMIT, price=price, reduce_only=True,
            )
        except (OrderRejected, GatewayUnavailable) as e:
            logger.warning("%s: take-profit order not placed: %s", instrument, e)
            return None
        return handle.order_id

    def _cancel_quietly(self, instrument: str, order_id: str) -> bool:
        try:
            return self.gateway.cancel_order(instrument, order_id)
        except GatewayUnavailable as e:
            logger.warning("%s: cancel %s failed: %s", instrument, order_id, e)
            return False

    # ------------------------------------------------------------------
    # Opening
    # ------------------------------------------------------------------

    def open_position(self, signal: Signal) -> TickResult:
        """Reserve the slot, run the exposure guard, place the entry, then go ACTIVE."""
        instrument = signal.instrument
        now = self.clock()
        with self.registry.acquire(instrument) as st:
            if st.phase is not PositionPhase.IDLE:
                return _result("open", instrument, TickOutcome.SKIPPED, f"position {st.phase.value}")
            if st.recovery_pending:
                return _result("open", instrument, TickOutcome.SKIPPED, "awaiting position recovery")
            cooldown = st.active_cooldown(now)
            if cooldown is not None:
                return _result("open", instrument, TickOutcome.SKIPPED, f"{cooldown.kind.value} cooldown")
            version = st.transition(PositionPhase.OPENING)
            st.signal = signal
            st.direction = signal.direction

        try:
            balance = self.gateway.get_balance()
            verdict = self.risk.check_entry(
                instrument,
                signal.entry_price,
                open_positions=self.registry.occupied_count() - 1,
                balance=balance,
                round_quantity=partial(self.gateway.round_quantity, instrument),
            )
        except GatewayUnavailable as e:
            self._release_reservation(instrument, version)
            logger.warning("%s: guard check skipped, gateway unavailable: %s", instrument, e)
            return _result("open", instrument, TickOutcome.SKIPPED, str(e))

        if not verdict.allowed:
            self._release_reservation(instrument, version)
            logger.info("%s: %s signal blocked by risk guard: %s", instrument, signal.direction.value, verdict.reason)
            self.notifier.send(format_rejected(signal, verdict.reason))
            return _result("open", instrument, TickOutcome.SKIPPED, verdict.reason)

        try:
            handle = self.gateway.place_order(instrument, signal.direction.entry_side, verdict.quantity, OrderType.MARKET)
            if handle.status in (OrderStatus.REJECTED, OrderStatus.CANCELLED):
                raise OrderRejected(f"entry order {handle.order_id} {handle.status.value}")
        except OrderRejected as e:
            self._release_reservation(instrument, version, CooldownKind.FAILED_ORDER)
            logger.error("%s: entry order rejected: %s", instrument, e)
            self.notifier.send(format_rejected(signal, f"order rejected: {e}"))
            return _result("open", instrument, TickOutcome.FAILED, str(e))
        except GatewayUnavailable as e:
            self._release_reservation(instrument, version, CooldownKind.FAILED_ORDER)
            logger.error("%s: entry order outcome unknown: %s", instrument, e)
            self.notifier.send(format_alert(f"{instrument}: entry order outcome unknown ({e}), check the exchange"))
            return _result("open", instrument, TickOutcome.FAILED, str(e))

        fill_price = handle.avg_price or signal.entry_price
        quantity = handle.quantity or verdict.quantity
        trailing = TrailingStopState(
            instrument=instrument,
            high_water_mark=fill_price,
            current_stop_level=signal.stop_loss,
            updated_at=now,
        )
        with self.registry.acquire(instrument) as st:
            if st.phase is not PositionPhase.OPENING or st.version != version:
                logger.warning("%s: entry acknowledged after reservation was superseded", instrument)
                self.notifier.send(format_alert(f"{instrument}: entry filled after reservation was released, check the exchange"))
                return _result("open", instrument, TickOutcome.SKIPPED, "superseded")
            active_version = st.transition(PositionPhase.ACTIVE)
            st.entry_price = fill_price
            st.quantity = quantity
            st.trailing = trailing
            st.opened_at = now
            st.last_monitored_at = now
            self._persist(trailing)
        logger.info(
            "%s: opened %s qty=%s @ %s stop=%s target=%s",
            instrument, signal.direction.value, quantity, fill_price, signal.stop_loss, signal.take_profit,
        )

        if signal.take_profit is not None:
            order_id = self._place_target_order(instrument, signal.direction, quantity, signal.take_profit)
            if order_id is not None:
                with self.registry.acquire(instrument) as st:
                    still_open = st.phase is PositionPhase.ACTIVE and st.version == active_version
                    if still_open:
                        st.tp_order_id = order_id
                if not still_open:
                    self._cancel_quietly(instrument, order_id)

        self.notifier.send(format_entry(signal, quantity, fill_price))
        return _result("open", instrument, TickOutcome.COMPLETED, f"{signal.direction.value} {quantity} @ {fill_price}")

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    def monitor(self, instrument: str) -> TickResult:
        """One stop-monitor tick. A tick that cannot get fresh data changes nothing."""
        with self.registry.acquire(instrument) as st:
            phase, version = st.phase, st.version
            opened_at, tp_order_id = st.opened_at, st.tp_order_id
        if phase in (PositionPhase.IDLE, PositionPhase.OPENING):
            return _result("monitor", instrument, TickOutcome.SKIPPED, f"not monitorable ({phase.value})")

        try:
            position = self._find_position(instrument)
        except GatewayUnavailable as e:
            logger.warning("%s: monitor skipped, positions unavailable: %s", instrument, e)
            return _result("monitor", instrument, TickOutcome.SKIPPED, str(e))

        if phase is PositionPhase.CLOSING:
            return self._confirm_close(instrument, version, position)
        if position is None:
            return self._handle_missing_position(instrument, version, opened_at, tp_order_id)

        mark = position.mark_price
        if mark is None:
            try:
                mark = self.gateway.get_last_price(instrument)
            except GatewayUnavailable as e:
                logger.warning("%s: monitor skipped, no price: %s", instrument, e)
                return _result("monitor", instrument, TickOutcome.SKIPPED, str(e))
        return self._evaluate_exit(instrument, version, position, mark)

    def _find_position(self, instrument: str) -> Optional[PositionSnapshot]:
        for p in self.gateway.get_positions():
            if p.instrument == instrument:
                return p
        return None

    def _evaluate_exit(self, instrument: str, version: int, position: PositionSnapshot, mark: Decimal) -> TickResult:
        now = self.clock()
        partial_qty = ZERO
        partial_candidate = ZERO
        if self.take_profit_close_percent < HUNDRED:
            try:
                partial_candidate = self.gateway.round_quantity(
                    instrument, position.quantity * self.take_profit_close_percent / HUNDRED,
                )
            except GatewayUnavailable as e:
                logger.warning("%s: monitor skipped, lot size unavailable: %s", instrument, e)
                return _result("monitor", instrument, TickOutcome.SKIPPED, str(e))
        reason: Optional[ExitReason] = None
        with self.registry.acquire(instrument) as st:
            if st.phase is not PositionPhase.ACTIVE or st.version != version:
                return _result("monitor", instrument, TickOutcome.SKIPPED, "superseded")
            if st.stale_alerted:
                logger.info("%s: monitoring recovered", instrument)
                self.notifier.send(format_alert(f"{instrument}: stop monitoring recovered"))
            st.last_monitored_at = now
            st.stale_alerted = False
            st.quantity = position.quantity
            direction = st.direction or position.direction

            advanced = st.trailing.advance(mark, direction, self.trailing_stop_percent)
            if advanced is not None:
                logger.info(
                    "%s: trailing stop %s -> %s (extreme %s)",
                    instrument, st.trailing.current_stop_level, advanced.current_stop_level, mark,
                )
                st.trailing = advanced
                st.signal = st.signal.with_stop(advanced.current_stop_level) if st.signal else None
                self._persist(advanced)

            if st.trailing.is_crossed(mark, direction):
                reason = ExitReason.STOP_LOSS
            elif not st.trailing.partial_profit_taken and self._take_profit_reached(st, direction, mark):
                if self.take_profit_close_percent >= HUNDRED:
                    reason = ExitReason.TAKE_PROFIT
                else:
                    partial_qty = partial_candidate
                    if partial_qty <= 0 or partial_qty >= position.quantity:
                        reason = ExitReason.TAKE_PROFIT
                        partial_qty = ZERO
                    else:
                        taken = TrailingStopState(
                            instrument=instrument,
                            high_water_mark=st.trailing.high_water_mark,
                            current_stop_level=st.trailing.current_stop_level,
                            partial_profit_taken=True,
                            updated_at=now,
                        )
                        st.trailing = taken
                        self._persist(taken)

            if reason is not None:
                st.close_reason = reason
                close_version = st.transition(PositionPhase.CLOSING)
            stop_level = st.trailing.current_stop_level

        if reason is not None:
            logger.info("%s: %s at mark %s (stop %s)", instrument, reason.value, mark, stop_level)
            return self._execute_close(instrument, close_version, reason, position.quantity, mark)
        if partial_qty > 0:
            return self._reduce(instrument, version, direction, partial_qty, mark)
        return _result("monitor", instrument, TickOutcome.COMPLETED, f"mark {mark} stop {stop_level}")

    def _take_profit_reached(self, st: InstrumentState, direction: Direction, mark: Decimal) -> bool:
        if self.take_profit_percent and st.entry_price:
            if _gain_percent(direction, st.entry_price, mark) >= self.take_profit_percent:
                return True
        target = st.signal.take_profit if st.signal else None
        if target is None:
            return False
        return mark > target if direction is Direction.LONG else mark < target

    def _reduce(self, instrument: str, version: int, direction: Direction, quantity: Decimal, mark: Decimal) -> TickResult:
        try:
            handle = self.gateway.place_order(instrument, direction.exit_side, quantity, OrderType.MARKET, reduce_only=True)
            if handle.status in (OrderStatus.REJECTED, OrderStatus.CANCELLED):
                raise OrderRejected(f"reduce order {handle.order_id} {handle.status.value}")
        except (OrderRejected, GatewayUnavailable) as e:
            logger.error("%s: partial take-profit failed: %s", instrument, e)
            with self.registry.acquire(instrument) as st:
                if st.phase is PositionPhase.ACTIVE and st.version == version and st.trailing:
                    reverted = TrailingStopState(
                        instrument=instrument,
                        high_water_mark=st.trailing.high_water_mark,
                        current_stop_level=st.trailing.current_stop_level,
                        partial_profit_taken=False,
                        updated_at=self.clock(),
                    )
                    st.trailing = reverted
                    self._persist(reverted)
            return _result("monitor", instrument, TickOutcome.FAILED, f"partial take-profit: {e}")
        entry = None
        with self.registry.acquire(instrument) as st:
            if st.version == version:
                st.quantity = max(ZERO, st.quantity - quantity)
                entry = st.entry_price
        logger.info("%s: partial take-profit %s @ ~%s", instrument, quantity, mark)
        self.notifier.send(
            f"💰 Partial take-profit {instrument}: closed {quantity} @ ~{mark} "
            f"({self.take_profit_close_percent}% of position)"
        )
        if entry is not None:
            self.risk.record_trade_pnl(_pnl(direction, entry, handle.avg_price or mark, quantity))
        return _result("monitor", instrument, TickOutcome.COMPLETED, f"partial take-profit {quantity}")

    def _handle_missing_position(
        self, instrument: str, version: int, opened_at: Optional[datetime], tp_order_id: Optional[str],
    ) -> TickResult:
        now = self.clock()
        if opened_at is not None and now - opened_at < self.new_position_grace:
            logger.debug("%s: position not visible yet (grace period)", instrument)
            return _result("monitor", instrument, TickOutcome.SKIPPED, "grace period")

        reason = ExitReason.EXTERNAL
        exit_price: Optional[Decimal] = None
        if tp_order_id:
            try:
                status = self.gateway.get_order_status(instrument, tp_order_id)
            except GatewayUnavailable as e:
                logger.warning("%s: take-profit status unavailable: %s", instrument, e)
                return _result("monitor", instrument, TickOutcome.SKIPPED, str(e))
            if status is OrderStatus.FILLED:
                reason = ExitReason.TARGET_FILLED
            elif status is OrderStatus.UNKNOWN:
                logger.warning("%s: take-profit order %s status unknown, not assuming filled", instrument, tp_order_id)
                self.notifier.send(format_alert(
                    f"{instrument}: position gone but take-profit order {tp_order_id} status is unknown. "
                    "Treated as an external close; please verify."
                ))
        if reason is ExitReason.EXTERNAL:
            try:
                exit_price = self.gateway.get_last_price(instrument)
            except GatewayUnavailable:
                exit_price = None

        with self.registry.acquire(instrument) as st:
            if st.phase is not PositionPhase.ACTIVE or st.version != version:
                return _result("monitor", instrument, TickOutcome.SKIPPED, "superseded")
            if reason is ExitReason.TARGET_FILLED and st.signal is not None:
                exit_price = st.signal.take_profit
            closed = self._finalize_locked(st, reason, exit_price)
        self._after_close(closed, cancel_tp=reason is not ExitReason.TARGET_FILLED)
        return _result("monitor", instrument, TickOutcome.COMPLETED, reason.value)

    # ------------------------------------------------------------------
    # Closing
    # ------------------------------------------------------------------

    def close_position(self, instrument: str, reason: ExitReason = ExitReason.MANUAL) -> TickResult:
        """Market-close an ACTIVE position (manual close)."""
        with self.registry.acquire(instrument) as st:
            if st.phase is not PositionPhase.ACTIVE:
                return _result("close", instrument, TickOutcome.SKIPPED, f"position {st.phase.value}")
            st.close_reason = reason
            version = st.transition(PositionPhase.CLOSING)
            quantity = st.quantity
        return self._execute_close(instrument, version, reason, quantity, None)

    def _execute_close(
        self, instrument: str, version: int, reason: ExitReason, quantity: Decimal, mark: Optional[Decimal],
    ) -> TickResult:
        with self.registry.acquire(instrument) as st:
            direction = st.direction
        try:
            handle = self.gateway.place_order(instrument, direction.exit_side, quantity, OrderType.MARKET, reduce_only=True)
            if handle.status in (OrderStatus.REJECTED, OrderStatus.CANCELLED):
                raise OrderRejected(f"close order {handle.order_id} {handle.status.value}")
        except OrderRejected as e:
            with self.registry.acquire(instrument) as st:
                if st.phase is PositionPhase.CLOSING and st.version == version:
                    st.close_reason = None
                    st.transition(PositionPhase.ACTIVE)
            logger.error("%s: close order rejected, position stays ACTIVE: %s", instrument, e)
            self.notifier.send(format_alert(f"{instrument}: close order rejected ({e})"))
            return _result("close", instrument, TickOutcome.FAILED, str(e))
        except GatewayUnavailable as e:
            logger.warning("%s: close order outcome unknown, confirming next tick: %s", instrument, e)
            return _result("close", instrument, TickOutcome.SKIPPED, str(e))

        if handle.status is not OrderStatus.FILLED:
            logger.info("%s: close order %s is %s, confirming next tick", instrument, handle.order_id, handle.status.value)
            return _result("close", instrument, TickOutcome.COMPLETED, f"close pending ({handle.status.value})")

        with self.registry.acquire(instrument) as st:
            if st.phase is not PositionPhase.CLOSING or st.version != version:
                return _result("close", instrument, TickOutcome.SKIPPED, "superseded")
            closed = self._finalize_locked(st, reason, handle.avg_price or mark)
        self._after_close(closed)
        return _result("close", instrument, TickOutcome.COMPLETED, reason.value)

    def _confirm_close(self, instrument: str, version: int, position: Optional[PositionSnapshot]) -> TickResult:
        exit_price = None
        if position is None:
            try:
                exit_price = self.gateway.get_last_price(instrument)
            except GatewayUnavailable:
                exit_price = None
        with self.registry.acquire(instrument) as st:
            if st.phase is not PositionPhase.CLOSING or st.version != version:
                return _result("monitor", instrument, TickOutcome.SKIPPED, "superseded")
            if position is not None:
                logger.warning("%s: close not confirmed, position still open; back to ACTIVE", instrument)
                st.close_reason = None
                st.transition(PositionPhase.ACTIVE)
                return _result("monitor", instrument, TickOutcome.COMPLETED, "close not confirmed")
            closed = self._finalize_locked(st, st.close_reason or ExitReason.EXTERNAL, exit_price)
        self._after_close(closed)
        return _result("monitor", instrument, TickOutcome.COMPLETED, closed.reason.value)

    def _finalize_locked(self, st: InstrumentState, reason: ExitReason, exit_price: Optional[Decimal]) -> ClosedTrade:
        """Caller holds st.lock. Cooldown, persistence removal and slot release happen here."""
        now = self.clock()
        pnl = None
        if exit_price is not None and st.entry_price is not None:
            pnl = _pnl(st.direction, st.entry_price, exit_price, st.quantity)
        closed = ClosedTrade(
            instrument=st.instrument,
            direction=st.direction,
            entry_price=st.entry_price,
            exit_price=exit_price,
            quantity=st.quantity,
            reason=reason,
            pnl=pnl,
            tp_order_id=st.tp_order_id,
        )
        if reason.starts_loss_cooldown:
            until = now + self.loss_cooldown
            st.cooldowns[CooldownKind.LOSS] = Cooldown(instrument=st.instrument, until=until, kind=CooldownKind.LOSS)
            logger.info("%s: loss cooldown until %s", st.instrument, until.isoformat())
        self._forget(st.instrument)
        st.clear_position()
        return closed

    def _after_close(self, closed: ClosedTrade, cancel_tp: bool = True) -> None:
        """Post-close I/O, outside the lock."""
        for order_id in self._leftover_orders(closed, cancel_tp):
            self._cancel_quietly(closed.instrument, order_id)
        if closed.pnl is not None:
            self.risk.record_trade_pnl(closed.pnl)
        logger.info(
            "%s: closed %s (%s) entry=%s exit=%s pnl=%s",
            closed.instrument, closed.direction.value, closed.reason.value,
            closed.entry_price, closed.exit_price, closed.pnl,
        )
        self.notifier.send(format_exit(
            closed.instrument, closed.direction, closed.entry_price, closed.exit_price, closed.reason, closed.pnl,
        ))

    def _leftover_orders(self, closed: ClosedTrade, cancel_tp: bool) -> List[str]:
        """Order ids to cancel once a position is gone: its target plus anything still resting."""
        order_ids = [closed.tp_order_id] if cancel_tp and closed.tp_order_id else []
        try:
            resting = self.gateway.get_open_orders(closed.instrument)
        except GatewayUnavailable as e:
            logger.warning("%s: open orders unavailable after close, left to the sweep: %s", closed.instrument, e)
            return order_ids
        try:
            with self.registry.acquire(closed.instrument) as st:
                reopened = st.phase is not PositionPhase.IDLE
        except LockTimeout:
            reopened = True
        if reopened:
            # Resting orders may already belong to the next position.
            return order_ids
        for order in resting:
            if order.order_id not in order_ids:
                order_ids.append(order.order_id)
        return order_ids

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def recover_all(self) -> List[TickResult]:
        """
        Rebuild state for every exchange-reported position. Safe to run repeatedly.

        IDLE instruments are marked recovery-pending first, which blocks entries on
        them. An instrument whose recovery fails stays pending and is retried through
        recover_instrument() until the exchange answers.
        """
        self.registry.mark_recovery_pending()
        positions = self.gateway.get_positions()
        persisted = self.store.load_all()
        by_instrument: Dict[str, PositionSnapshot] = {p.instrument: p for p in positions}
        results = []
        failed = []

        for p in positions:
            if p.instrument not in self.registry:
                logger.warning("Exchange position on unconfigured instrument %s, not managed", p.instrument)
                if p.instrument not in self._unmanaged_alerted:
                    self._unmanaged_alerted.add(p.instrument)
                    self.notifier.send(format_alert(f"{p.instrument}: open position not managed by the bot"))

        for instrument in self.registry.instruments():
            try:
                result = self._recover_instrument(instrument, by_instrument.get(instrument), persisted.get(instrument))
            except (GatewayUnavailable, LockTimeout) as e:
                logger.warning("%s: recovery failed, retrying on the monitor cadence: %s", instrument, e)
                failed.append(instrument)
                result = _result("recover", instrument, TickOutcome.SKIPPED, f"recovery pending: {e}")
            if result is not None:
                results.append(result)
        if failed:
            self.notifier.send(format_alert(
                f"recovery incomplete for {', '.join(failed)}; entries blocked until it succeeds"
            ))
        return results

    def recover_instrument(self, instrument: str) -> TickResult:
        """Retry recovery for one pending instrument. Raises GatewayUnavailable / LockTimeout."""
        position = self._find_position(instrument)
        result = self._recover_instrument(instrument, position, self.store.get(instrument))
        if result is None:
            return _result("recover", instrument, TickOutcome.COMPLETED, "no position")
        return result

    def _recover_instrument(
        self, instrument: str, position: Optional[PositionSnapshot], persisted: Optional[TrailingStopState],
    ) -> Optional[TickResult]:
        if position is not None:
            return self._recover_one(instrument, position, persisted)
        with self.registry.acquire(instrument) as st:
            if st.phase is PositionPhase.IDLE and instrument in self.store.instruments():
                logger.info("%s: pruning persisted trailing stop with no position", instrument)
                self._forget(instrument)
            st.recovery_pending = False
        return None

    def _recover_one(
        self, instrument: str, position: PositionSnapshot, persisted: Optional[TrailingStopState],
    ) -> TickResult:
        now = self.clock()
        with self.registry.acquire(instrument) as st:
            if st.phase is not PositionPhase.IDLE:
                if st.phase is not PositionPhase.OPENING:
                    st.recovery_pending = False
                return _result("recover", instrument, TickOutcome.SKIPPED, f"already {st.phase.value}")
            version = st.transition(PositionPhase.OPENING)

        direction = position.direction
        try:
            orders = self.gateway.get_open_orders(instrument)
        except GatewayUnavailable:
            self._release_reservation(instrument, version)
            raise
        existing_tp = self._find_target_order(orders, direction)

        if persisted is not None:
            trailing = persisted
            logger.info(
                "%s: recovered trailing stop hwm=%s stop=%s",
                instrument, trailing.high_water_mark, trailing.current_stop_level,
            )
        else:
            trailing = TrailingStopState(
                instrument=instrument,
                high_water_mark=position.entry_price,
                current_stop_level=self._initial_stop(direction, position.entry_price),
                updated_at=now,
            )
            logger.info("%s: no persisted trailing stop, seeded at entry %s", instrument, position.entry_price)

        target = existing_tp.price if existing_tp else self._target(direction, position.entry_price)
        tp_order_id = existing_tp.order_id if existing_tp else None
        if tp_order_id is None and target is not None and not trailing.partial_profit_taken:
            tp_order_id = self._place_target_order(instrument, direction, position.quantity, target)

        signal = Signal(
            instrument=instrument,
            direction=direction,
            entry_price=position.entry_price,
            stop_loss=trailing.current_stop_level,
            take_profit=target,
            confidence=ZERO,
            reason="Recovered position",
            created_at=now,
        )
        with self.registry.acquire(instrument) as st:
            if st.phase is not PositionPhase.OPENING or st.version != version:
                return _result("recover", instrument, TickOutcome.SKIPPED, "superseded")
            st.transition(PositionPhase.ACTIVE)
            st.signal = signal
            st.direction = direction
            st.recovery_pending = False
            st.entry_price = position.entry_price
            st.quantity = position.quantity
            st.trailing = trailing
            st.tp_order_id = tp_order_id
            st.opened_at = now
            st.last_monitored_at = now
            if persisted is None:
                self._persist(trailing)
        self.notifier.send(
            f"♻️ Recovered {direction.value} {instrument} qty={position.quantity} entry={position.entry_price} "
            f"stop={trailing.current_stop_level}"
        )
        return _result("recover", instrument, TickOutcome.COMPLETED, f"stop {trailing.current_stop_level}")

    @staticmethod
    def _find_target_order(orders: List[OpenOrder], direction: Direction) -> Optional[OpenOrder]:
        for o in orders:
            if o.reduce_only and o.order_type is OrderType.LIMIT and o.side is direction.exit_side:
                return o
        return None

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def sweep_stale_orders(self) -> TickResult:
        """
        Cancel resting orders on idle instruments with no position, and
        same-side orders on instruments holding a position.
        """
        positions = {p.instrument: p for p in self.gateway.get_positions()}
        orders = self.gateway.get_open_orders()
        cancelled = 0
        for order in orders:
            instrument = order.instrument
            if instrument not in self.registry:
                continue
            position = positions.get(instrument)
            if position is None:
                try:
                    with self.registry.acquire(instrument) as st:
                        idle = st.phase is PositionPhase.IDLE
                except LockTimeout:
                    continue
                if not idle:
                    continue
                why = "no position"
            elif order.side is position.side:
                why = f"wrong side for {position.direction.value} position"
            else:
                continue
            logger.info("%s: cancelling stale order %s (%s)", instrument, order.order_id, why)
            if self._cancel_quietly(instrument, order.order_id):
                cancelled += 1
        return _result("sweep", None, TickOutcome.COMPLETED, f"cancelled {cancelled}")

    def check_monitor_health(self) -> List[str]:
        """One-shot alert per ACTIVE instrument whose last monitor tick is too old."""
        now = self.clock()
        stale = []
        for instrument in self.registry.instruments():
            try:
                with self.registry.acquire(instrument) as st:
                    if st.phase is not PositionPhase.ACTIVE or st.stale_alerted:
                        continue
                    if st.opened_at and now - st.opened_at < self.new_position_grace:
                        continue
                    last = st.last_monitored_at or st.opened_at
                    if last is None or now - last <= self.monitor_stale_after:
                        continue
                    st.stale_alerted = True
                    age = int((now - last).total_seconds())
            except LockTimeout:
                continue
            stale.append(instrument)
            logger.error("%s: stop monitoring stale for %ss", instrument, age)
            self.notifier.send(format_alert(f"{instrument}: no successful stop check for {age}s"))
        return stale
