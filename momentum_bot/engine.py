"""
Trading engine: the tick functions the scheduler calls.
Every tick returns a TickResult and never raises.
"""

from __future__ import annotations
import logging
from datetime import datetime
from functools import partial
from typing import Callable, List, Optional

from momentum_bot.core.errors import (
    GatewayUnavailable, InstrumentNotSupported, InsufficientData, LockTimeout, TradingBotError,
)
from momentum_bot.core.types import TickOutcome, TickResult, utc_now
from momentum_bot.data.history import HistoryLoader
from momentum_bot.data.window import PriceWindowStore
from momentum_bot.execution.base import ExecutionClient
from momentum_bot.lifecycle.manager import PositionLifecycleManager
from momentum_bot.lifecycle.state import InstrumentRegistry
from momentum_bot.risk.manager import RiskManager
from momentum_bot.strategies.base import BaseStrategy
from momentum_bot.utils.telegram import format_rejected

logger = logging.getLogger("momentum_bot.engine")

# Buckets pulled each decision tick: the in-progress one plus enough to close a gap.
RECENT_BUCKETS = 3


class TradingEngine:
    """Composition of window maintenance, signal generation and the lifecycle manager."""

    def __init__(
        self,
        gateway: ExecutionClient,
        history: HistoryLoader,
        windows: PriceWindowStore,
        strategy: BaseStrategy,
        lifecycle: PositionLifecycleManager,
        registry: InstrumentRegistry,
        risk: RiskManager,
        notifier,
        timeframe: str = "5m",
        history_count: int = 300,
        paper: bool = True,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.gateway = gateway
        self.history = history
        self.windows = windows
        self.strategy = strategy
        self.lifecycle = lifecycle
        self.registry = registry
        self.risk = risk
        self.notifier = notifier
        self.timeframe = timeframe
        self.history_count = history_count
        self.paper = paper
        self.clock = clock
        self._unsupported: set[str] = set()

    def instruments(self) -> List[str]:
        return self.registry.instruments()

    def _guarded(self, task: str, instrument: Optional[str], fn: Callable[[], TickResult]) -> TickResult:
        try:
            return fn()
        except LockTimeout as e:
            logger.debug("%s %s skipped: %s", task, instrument, e)
            return TickResult(task, instrument, TickOutcome.SKIPPED, "lock timeout")
        except InsufficientData as e:
            logger.info("%s %s skipped: %s", task, instrument, e)
            return TickResult(task, instrument, TickOutcome.SKIPPED, str(e))
        except GatewayUnavailable as e:
            logger.warning("%s %s skipped, gateway unavailable: %s", task, instrument, e)
            return TickResult(task, instrument, TickOutcome.SKIPPED, str(e))
        except TradingBotError as e:
            logger.error("%s %s failed: %s", task, instrument, e)
            return TickResult(task, instrument, TickOutcome.FAILED, str(e))
        except Exception as e:
            logger.exception("%s %s crashed: %s", task, instrument, e)
            return TickResult(task, instrument, TickOutcome.FAILED, f"{type(e).__name__}: {e}")

    # ------------------------------------------------------------------
    # Window maintenance
    # ------------------------------------------------------------------

    def _load(self, instrument: str, count: int):
        if instrument in self._unsupported:
            raise InstrumentNotSupported(f"{instrument} not on history feed")
        try:
            return self.history.get_recent_samples(instrument, self.timeframe, count)
        except InstrumentNotSupported:
            logger.warning("%s not available on history feed, skipping it", instrument)
            self._unsupported.add(instrument)
            raise

    def on_history_refresh(self, instrument: str) -> TickResult:
        def run() -> TickResult:
            try:
                samples = self._load(instrument, self.history_count)
            except InstrumentNotSupported as e:
                return TickResult("refresh", instrument, TickOutcome.SKIPPED, str(e))
            n = self.windows.replace(instrument, samples)
            logger.info("%s history refreshed: %d samples", instrument, n)
            return TickResult("refresh", instrument, TickOutcome.COMPLETED, f"{n} samples")
        return self._guarded("refresh", instrument, run)

    def seed(self) -> List[TickResult]:
        return [self.on_history_refresh(s) for s in self.instruments()]

    # ------------------------------------------------------------------
    # Scheduler-facing ticks
    # ------------------------------------------------------------------

    def on_decision_tick(self, instrument: str) -> TickResult:
        return self._guarded("decision", instrument, partial(self._decide, instrument))

    def _decide(self, instrument: str) -> TickResult:
        try:
            recent = self._load(instrument, RECENT_BUCKETS)
        except InstrumentNotSupported as e:
            return TickResult("decision", instrument, TickOutcome.SKIPPED, str(e))
        except GatewayUnavailable as e:
            # Stale data is caught by validation; the window as held is still usable until then.
            logger.warning("%s: recent buckets unavailable: %s", instrument, e)
            recent = []
        self.windows.merge(instrument, recent)

        samples = self.windows.snapshot(instrument)
        evaluation = self.strategy.evaluate(instrument, samples, self.clock())
        signal = evaluation.signal
        if signal is None:
            return TickResult("decision", instrument, TickOutcome.COMPLETED, f"{evaluation.rejected_at}: {evaluation.detail}")

        if self.paper:
            verdict = self.risk.check_entry(
                instrument,
                signal.entry_price,
                open_positions=self.registry.occupied_count(),
                round_quantity=partial(self.gateway.round_quantity, instrument),
            )
            why = "paper mode, would execute" if verdict.allowed else verdict.reason
            logger.info("%s: %s signal not executed (%s)", instrument, signal.direction.value, why)
            self.notifier.send(format_rejected(signal, why))
            return TickResult("decision", instrument, TickOutcome.COMPLETED, f"paper {signal.direction.value}")

        return self.lifecycle.open_position(signal)

    def on_monitor_tick(self, instrument: str) -> TickResult:
        if self.registry.peek(instrument).recovery_pending:
            return self._guarded("recover", instrument, partial(self.lifecycle.recover_instrument, instrument))
        return self._guarded("monitor", instrument, partial(self.lifecycle.monitor, instrument))

    def on_recover_all(self) -> TickResult:
        if self.paper:
            return TickResult("recover", None, TickOutcome.SKIPPED, "paper mode")

        def run() -> TickResult:
            results = self.lifecycle.recover_all()
            recovered = [r.instrument for r in results if r.outcome is TickOutcome.COMPLETED]
            if recovered:
                logger.info("Recovered positions: %s", ", ".join(recovered))
            pending = self.registry.recovery_pending()
            detail = f"recovered {len(recovered)}"
            if pending:
                detail += f"; pending: {', '.join(pending)}"
            return TickResult("recover", None, TickOutcome.COMPLETED, detail)
        return self._guarded("recover", None, run)

    def on_stale_order_sweep(self) -> TickResult:
        if self.paper:
            return TickResult("sweep", None, TickOutcome.SKIPPED, "paper mode")

        def run() -> TickResult:
            result = self.lifecycle.sweep_stale_orders()
            stale = self.lifecycle.check_monitor_health()
            if stale:
                return TickResult("sweep", None, result.outcome, f"{result.detail}; stale monitors: {', '.join(stale)}")
            return result
        return self._guarded("sweep", None, run)
