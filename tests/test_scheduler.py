"""Scheduler fan-out: one in-flight job per (task, instrument)."""

import threading
import time

from momentum_bot.core.types import TickOutcome, TickResult
from momentum_bot.scheduler import Scheduler


class StubEngine:
    def __init__(self, instruments):
        self._instruments = instruments
        self.sweeps = 0

    def instruments(self):
        return list(self._instruments)

    def on_decision_tick(self, instrument):
        return TickResult("decision", instrument, TickOutcome.COMPLETED)

    def on_monitor_tick(self, instrument):
        return TickResult("monitor", instrument, TickOutcome.COMPLETED)

    def on_history_refresh(self, instrument):
        return TickResult("refresh", instrument, TickOutcome.COMPLETED)

    def on_stale_order_sweep(self):
        self.sweeps += 1
        return TickResult("sweep", None, TickOutcome.COMPLETED)


def wait_released(scheduler, key, timeout=5.0):
    deadline = time.monotonic() + timeout
    while key in scheduler._in_flight:
        assert time.monotonic() < deadline, f"{key} never released"
        time.sleep(0.01)


def test_fan_out_skips_instrument_still_running():
    release = threading.Event()
    calls = []

    def slow_tick(instrument):
        calls.append(instrument)
        if instrument == "BTCUSDT":
            release.wait(5)
        return TickResult("decision", instrument, TickOutcome.COMPLETED)

    scheduler = Scheduler(StubEngine(["BTCUSDT", "ETHUSDT"]), max_workers=4)
    try:
        scheduler.fan_out("decision", slow_tick)
        wait_released(scheduler, ("decision", "ETHUSDT"))
        second = scheduler.fan_out("decision", slow_tick)
        assert len(second) == 1
        second[0].result(timeout=5)
        assert calls.count("ETHUSDT") == 2
        assert calls.count("BTCUSDT") == 1
    finally:
        release.set()
        scheduler.stop()


def test_same_instrument_different_task_runs_concurrently():
    release = threading.Event()

    def blocking(instrument):
        release.wait(5)
        return TickResult("monitor", instrument, TickOutcome.COMPLETED)

    scheduler = Scheduler(StubEngine(["BTCUSDT"]), max_workers=4)
    try:
        assert len(scheduler.fan_out("decision", blocking)) == 1
        assert len(scheduler.fan_out("monitor", blocking)) == 1
    finally:
        release.set()
        scheduler.stop()


def test_crashing_tick_frees_its_slot():
    def crash(instrument):
        raise RuntimeError("boom")

    scheduler = Scheduler(StubEngine(["BTCUSDT"]), max_workers=2)
    try:
        scheduler.fan_out("monitor", crash)
        wait_released(scheduler, ("monitor", "BTCUSDT"))
        assert len(scheduler.fan_out("monitor", crash)) == 1
    finally:
        scheduler.stop()


def test_start_runs_loops_until_stopped():
    engine = StubEngine(["BTCUSDT"])
    scheduler = Scheduler(engine, decision_interval=0.01, monitor_interval=0.01, sweep_interval=0.01)
    scheduler.start()
    assert scheduler.running
    deadline = time.monotonic() + 5
    while engine.sweeps == 0 and time.monotonic() < deadline:
        time.sleep(0.01)
    scheduler.stop(timeout=2)
    assert engine.sweeps >= 1
    assert not scheduler.running
