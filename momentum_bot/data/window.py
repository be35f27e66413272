"""
Per-instrument rolling price windows.
Single writer (history refresh / decision-tick updater), many readers.
Readers get an immutable tuple snapshot; writers swap the whole tuple.
"""

from __future__ import annotations
import logging
import threading
from typing import Iterable, Sequence

from momentum_bot.core.types import PriceSample

logger = logging.getLogger("momentum_bot.data.window")


class PriceWindowStore:
    """Capped, time-ordered sample windows keyed by instrument."""

    def __init__(self, max_length: int = 300):
        self.max_length = max_length
        self._windows: dict[str, tuple[PriceSample, ...]] = {}
        self._write_lock = threading.Lock()

    def snapshot(self, instrument: str) -> tuple[PriceSample, ...]:
        """Atomic read. The returned tuple never changes under the caller."""
        return self._windows.get(instrument, ())

    def replace(self, instrument: str, samples: Iterable[PriceSample]) -> int:
        """Replace the whole window (seed or hourly refresh)."""
        ordered = sorted(samples, key=lambda s: s.timestamp)
        window = tuple(ordered[-self.max_length:])
        with self._write_lock:
            self._windows[instrument] = window
        logger.debug("%s window replaced: %d samples", instrument, len(window))
        return len(window)

    def merge(self, instrument: str, recent: Sequence[PriceSample]) -> int:
        """
        Fold the latest buckets into the window. A bucket with a timestamp already
        present replaces it (the in-progress bucket keeps growing); newer ones append.
        """
        if not recent:
            return len(self.snapshot(instrument))
        with self._write_lock:
            current = list(self._windows.get(instrument, ()))
            by_ts = {s.timestamp: i for i, s in enumerate(current)}
            for sample in sorted(recent, key=lambda s: s.timestamp):
                idx = by_ts.get(sample.timestamp)
                if idx is not None:
                    current[idx] = sample
                elif not current or sample.timestamp > current[-1].timestamp:
                    current.append(sample)
                    by_ts[sample.timestamp] = len(current) - 1
            window = tuple(current[-self.max_length:])
            self._windows[instrument] = window
        return len(window)

    def instruments(self) -> list[str]:
        return list(self._windows)
