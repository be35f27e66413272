"""
Periodic task runner. One thread per task cadence; per-instrument work is
fanned out to a shared pool so a slow instrument never delays the others.
An instrument job is not resubmitted while its previous run is still in flight.
"""

from __future__ import annotations
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from functools import partial
from typing import Callable, List, Optional, Set, Tuple

from momentum_bot.core.types import TickResult
from momentum_bot.engine import TradingEngine

logger = logging.getLogger("momentum_bot.scheduler")


class Scheduler:
    """Runs decision, monitor, sweep and history-refresh ticks on their own intervals."""

    def __init__(
        self,
        engine: TradingEngine,
        decision_interval: float = 5.0,
        monitor_interval: float = 5.0,
        sweep_interval: float = 60.0,
        refresh_interval: float = 3600.0,
        max_workers: Optional[int] = None,
    ):
        self.engine = engine
        self.decision_interval = decision_interval
        self.monitor_interval = monitor_interval
        self.sweep_interval = sweep_interval
        self.refresh_interval = refresh_interval
        self.max_workers = max_workers or max(4, 2 * len(engine.instruments()))
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []
        self._executor: Optional[ThreadPoolExecutor] = None
        self._in_flight: Set[Tuple[str, str]] = set()
        self._in_flight_lock = threading.Lock()

    @classmethod
    def from_config(cls, config, engine: TradingEngine) -> "Scheduler":
        return cls(
            engine,
            decision_interval=config.decision_interval_seconds,
            monitor_interval=config.monitor_interval_seconds,
            sweep_interval=config.sweep_interval_seconds,
            refresh_interval=config.history_refresh_seconds,
        )

    @property
    def running(self) -> bool:
        return bool(self._threads) and not self._stop_event.is_set()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._ensure_executor()
        loops = [
            ("decision", self.decision_interval, lambda: self.fan_out("decision", self.engine.on_decision_tick), True),
            ("monitor", self.monitor_interval, lambda: self.fan_out("monitor", self.engine.on_monitor_tick), True),
            ("sweep", self.sweep_interval, self._sweep, False),
            ("refresh", self.refresh_interval, lambda: self.fan_out("refresh", self.engine.on_history_refresh), False),
        ]
        for name, interval, fn, run_first in loops:
            t = threading.Thread(target=self._loop, args=(name, interval, fn, run_first), daemon=True, name=f"sched-{name}")
            t.start()
            self._threads.append(t)
        logger.info(
            "Scheduler started: decision %ss, monitor %ss, sweep %ss, refresh %ss, workers %d",
            self.decision_interval, self.monitor_interval, self.sweep_interval, self.refresh_interval, self.max_workers,
        )

    def stop(self, timeout: float = 10.0) -> None:
        self._stop_event.set()
        for t in self._threads:
            t.join(timeout)
        self._threads = []
        if self._executor is not None:
            self._executor.shutdown(wait=True, cancel_futures=True)
            self._executor = None
        logger.info("Scheduler stopped")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until stop() is called (or timeout). Returns True if stopped."""
        return self._stop_event.wait(timeout)

    def _ensure_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="tick")
        return self._executor

    def _loop(self, name: str, interval: float, fn: Callable[[], None], run_first: bool) -> None:
        if not run_first and self._stop_event.wait(timeout=interval):
            return
        while not self._stop_event.is_set():
            try:
                fn()
            except Exception as e:
                logger.exception("Scheduler loop %s error: %s", name, e)
            self._stop_event.wait(timeout=interval)

    def _sweep(self) -> None:
        result = self.engine.on_stale_order_sweep()
        logger.debug("sweep: %s %s", result.outcome.value, result.detail)

    def fan_out(self, task: str, tick: Callable[[str], TickResult]) -> List[Future]:
        """Submit one job per instrument, skipping instruments whose previous job is still running."""
        futures = []
        for instrument in self.engine.instruments():
            key = (task, instrument)
            with self._in_flight_lock:
                if key in self._in_flight:
                    logger.debug("%s %s still running, tick skipped", task, instrument)
                    continue
                self._in_flight.add(key)
            try:
                future = self._ensure_executor().submit(tick, instrument)
            except RuntimeError:
                # Executor shut down between the stop check and submit.
                with self._in_flight_lock:
                    self._in_flight.discard(key)
                return futures
            future.add_done_callback(partial(self._done, key))
            futures.append(future)
        return futures

    def _done(self, key: Tuple[str, str], future: Future) -> None:
        with self._in_flight_lock:
            self._in_flight.discard(key)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("%s %s raised outside the tick boundary: %s", key[0], key[1], exc)
            return
        result = future.result()
        if not result.ok:
            logger.warning("%s %s failed: %s", key[0], key[1], result.detail)
