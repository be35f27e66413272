"""Engine tick boundaries: paper vs live, and error-to-outcome mapping."""

from datetime import datetime, timezone
from decimal import Decimal

from conftest import build_harness, long_signal, make_samples
from momentum_bot.core.errors import GatewayUnavailable, InsufficientData, InstrumentNotSupported
from momentum_bot.core.types import OrderSide, TickOutcome, TrailingStopState
from momentum_bot.data.history import HistoryLoader
from momentum_bot.data.window import PriceWindowStore
from momentum_bot.engine import TradingEngine
from momentum_bot.lifecycle.state import PositionPhase
from momentum_bot.strategies.base import BaseStrategy, Evaluation

D = Decimal


class FakeHistory(HistoryLoader):
    def __init__(self, samples=None, exc=None):
        self.samples = samples or make_samples([100, 101, 102])
        self.exc = exc
        self.calls = []

    def get_recent_samples(self, instrument, bucket_size, count):
        self.calls.append((instrument, count))
        if self.exc is not None:
            raise self.exc
        return self.samples[-count:]


class ScriptedStrategy(BaseStrategy):
    def __init__(self, evaluation=None, exc=None):
        self.evaluation = evaluation or Evaluation()
        self.exc = exc
        self.seen = []

    def evaluate(self, instrument, samples, now=None):
        self.seen.append(len(samples))
        if self.exc is not None:
            raise self.exc
        return self.evaluation


def make_engine(tmp_path, strategy, history=None, paper=False):
    h = build_harness(tmp_path)
    engine = TradingEngine(
        gateway=h.gateway,
        history=history or FakeHistory(),
        windows=PriceWindowStore(),
        strategy=strategy,
        lifecycle=h.manager,
        registry=h.registry,
        risk=h.risk,
        notifier=h.notifier,
        paper=paper,
        clock=h.clock,
    )
    return engine, h


def test_seed_fills_windows(tmp_path):
    engine, _ = make_engine(tmp_path, ScriptedStrategy())
    results = engine.seed()
    assert [r.outcome for r in results] == [TickOutcome.COMPLETED, TickOutcome.COMPLETED]
    assert len(engine.windows.snapshot("BTCUSDT")) == 3


def test_live_signal_opens_position(tmp_path):
    engine, h = make_engine(tmp_path, ScriptedStrategy(Evaluation(signal=long_signal())))
    engine.seed()
    result = engine.on_decision_tick("BTCUSDT")
    assert result.outcome is TickOutcome.COMPLETED
    assert h.registry.peek("BTCUSDT").phase is PositionPhase.ACTIVE
    assert len(h.gateway.entry_orders()) == 1


def test_paper_signal_notifies_without_orders(tmp_path):
    engine, h = make_engine(tmp_path, ScriptedStrategy(Evaluation(signal=long_signal())), paper=True)
    result = engine.on_decision_tick("BTCUSDT")
    assert result.detail == "paper LONG"
    assert h.gateway.placed == []
    assert any("paper mode" in m for m in h.notifier.messages)


def test_no_signal_reports_rejecting_gate(tmp_path):
    engine, _ = make_engine(tmp_path, ScriptedStrategy(Evaluation(rejected_at="volume", detail="volume 0.80x")))
    result = engine.on_decision_tick("BTCUSDT")
    assert result.outcome is TickOutcome.COMPLETED
    assert result.detail == "volume: volume 0.80x"


def test_insufficient_data_skips(tmp_path):
    engine, h = make_engine(tmp_path, ScriptedStrategy(exc=InsufficientData("need 201 samples")))
    result = engine.on_decision_tick("BTCUSDT")
    assert result.outcome is TickOutcome.SKIPPED
    assert h.gateway.placed == []


def test_unexpected_error_fails_tick_without_raising(tmp_path):
    engine, _ = make_engine(tmp_path, ScriptedStrategy(exc=ZeroDivisionError("boom")))
    result = engine.on_decision_tick("BTCUSDT")
    assert result.outcome is TickOutcome.FAILED
    assert "ZeroDivisionError" in result.detail


def test_recent_bucket_failure_keeps_window(tmp_path):
    history = FakeHistory()
    strategy = ScriptedStrategy()
    engine, _ = make_engine(tmp_path, strategy, history=history)
    engine.seed()
    history.exc = GatewayUnavailable("timeout")
    result = engine.on_decision_tick("BTCUSDT")
    assert result.outcome is TickOutcome.COMPLETED
    assert strategy.seen == [3]


def test_unsupported_instrument_is_remembered(tmp_path):
    history = FakeHistory(exc=InstrumentNotSupported("nope"))
    engine, _ = make_engine(tmp_path, ScriptedStrategy(), history=history)
    assert engine.on_history_refresh("BTCUSDT").outcome is TickOutcome.SKIPPED
    assert engine.on_decision_tick("BTCUSDT").outcome is TickOutcome.SKIPPED
    assert len(history.calls) == 1


def test_monitor_lock_timeout_is_skipped(tmp_path):
    engine, h = make_engine(tmp_path, ScriptedStrategy())
    h.manager.open_position(long_signal())
    with h.registry.acquire("BTCUSDT"):
        result = engine.on_monitor_tick("BTCUSDT")
    assert result.outcome is TickOutcome.SKIPPED
    assert result.detail == "lock timeout"


def test_paper_mode_skips_recovery_and_sweep(tmp_path):
    engine, _ = make_engine(tmp_path, ScriptedStrategy(), paper=True)
    assert engine.on_recover_all().outcome is TickOutcome.SKIPPED
    assert engine.on_stale_order_sweep().outcome is TickOutcome.SKIPPED


def test_sweep_reports_stale_monitors(tmp_path):
    engine, h = make_engine(tmp_path, ScriptedStrategy())
    h.manager.open_position(long_signal())
    h.clock.advance(seconds=120)
    result = engine.on_stale_order_sweep()
    assert "stale monitors: BTCUSDT" in result.detail


def test_failed_startup_recovery_blocks_entry_and_retries_on_monitor(tmp_path):
    engine, h = make_engine(tmp_path, ScriptedStrategy(Evaluation(signal=long_signal())))
    h.gateway.open_position("BTCUSDT", OrderSide.BUY, "1", "100")
    h.store.save(TrailingStopState(
        instrument="BTCUSDT",
        high_water_mark=D("110"),
        current_stop_level=D("104.5"),
        updated_at=datetime(2026, 3, 2, 11, 0, tzinfo=timezone.utc),
    ))

    h.gateway.fail_reads = True
    assert engine.on_recover_all().outcome is TickOutcome.SKIPPED
    assert h.registry.recovery_pending() == ["BTCUSDT", "ETHUSDT"]
    h.gateway.fail_reads = False

    decision = engine.on_decision_tick("BTCUSDT")
    assert decision.outcome is TickOutcome.SKIPPED
    assert decision.detail == "awaiting position recovery"
    assert h.gateway.entry_orders() == []
    assert h.registry.entry_block_reason("BTCUSDT", h.clock.now) == "awaiting position recovery"

    h.gateway.set_price("BTCUSDT", "90")
    retried = engine.on_monitor_tick("BTCUSDT")
    assert retried.task == "recover"
    assert retried.outcome is TickOutcome.COMPLETED
    st = h.registry.peek("BTCUSDT")
    assert st.phase is PositionPhase.ACTIVE
    assert st.trailing.high_water_mark == D("110")
    assert not st.recovery_pending

    assert engine.on_monitor_tick("BTCUSDT").detail == "Stop Loss Hit"
    assert "BTCUSDT" not in h.gateway.positions

    assert engine.on_monitor_tick("ETHUSDT").detail == "no position"
    assert h.registry.recovery_pending() == []


def test_recovery_detail_lists_pending_instruments(tmp_path):
    engine, h = make_engine(tmp_path, ScriptedStrategy())
    h.gateway.open_position("BTCUSDT", OrderSide.BUY, "1", "100")
    real_open_orders = h.gateway.get_open_orders

    def open_orders(instrument=None):
        if instrument == "BTCUSDT":
            raise GatewayUnavailable("timeout")
        return real_open_orders(instrument)

    h.gateway.get_open_orders = open_orders
    result = engine.on_recover_all()
    assert result.outcome is TickOutcome.COMPLETED
    assert result.detail == "recovered 0; pending: BTCUSDT"
