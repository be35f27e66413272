"""
Trailing-stop persistence: one JSON document mapping instrument to
{highWaterMark, currentStopLevel, partialProfitTaken, updatedAt}.
Written synchronously on every change; the file is replaced atomically.
"""

from __future__ import annotations
import json
import logging
import os
import tempfile
import threading
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Dict, Optional

from momentum_bot.core.errors import PersistenceFailure
from momentum_bot.core.types import TrailingStopState

logger = logging.getLogger("momentum_bot.lifecycle.persistence")


def state_to_record(state: TrailingStopState) -> dict:
    return {
        "highWaterMark": str(state.high_water_mark),
        "currentStopLevel": str(state.current_stop_level),
        "partialProfitTaken": state.partial_profit_taken,
        "updatedAt": state.updated_at.isoformat(),
    }


def record_to_state(instrument: str, record: dict) -> TrailingStopState:
    """Raises KeyError/ValueError/InvalidOperation/TypeError on a malformed record."""
    hwm = Decimal(str(record["highWaterMark"]))
    stop = Decimal(str(record["currentStopLevel"]))
    if not hwm.is_finite() or not stop.is_finite() or hwm <= 0 or stop <= 0:
        raise ValueError("non-positive or non-finite level")
    partial = record.get("partialProfitTaken", False)
    if not isinstance(partial, bool):
        raise TypeError(f"partialProfitTaken must be a boolean, got {partial!r}")
    return TrailingStopState(
        instrument=instrument,
        high_water_mark=hwm,
        current_stop_level=stop,
        partial_profit_taken=partial,
        updated_at=datetime.fromisoformat(record["updatedAt"]),
    )


class TrailingStopStore:
    """JSON-file key-value store. Missing or unreadable state reads as empty."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._records: Dict[str, dict] = self._read_file()

    def _read_file(self) -> Dict[str, dict]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Trailing-stop file %s unreadable, starting empty: %s", self.path, e)
            return {}
        if not isinstance(data, dict):
            logger.warning("Trailing-stop file %s is not a mapping, starting empty", self.path)
            return {}
        return {str(k): v for k, v in data.items() if isinstance(v, dict)}

    def load_all(self) -> Dict[str, TrailingStopState]:
        """Every record that parses; malformed ones are skipped with a warning."""
        with self._lock:
            records = dict(self._records)
        out = {}
        for instrument, record in records.items():
            state = self._parse(instrument, record)
            if state is not None:
                out[instrument] = state
        return out

    def get(self, instrument: str) -> Optional[TrailingStopState]:
        with self._lock:
            record = self._records.get(instrument)
        if record is None:
            return None
        return self._parse(instrument, record)

    def instruments(self) -> list[str]:
        with self._lock:
            return list(self._records)

    @staticmethod
    def _parse(instrument: str, record: dict) -> Optional[TrailingStopState]:
        try:
            return record_to_state(instrument, record)
        except (KeyError, ValueError, TypeError, InvalidOperation) as e:
            logger.warning("Ignoring malformed trailing-stop record for %s: %s", instrument, e)
            return None

    def save(self, state: TrailingStopState) -> None:
        """Persist before returning. Raises PersistenceFailure; the in-memory copy is kept either way."""
        with self._lock:
            self._records[state.instrument] = state_to_record(state)
            self._flush()

    def delete(self, instrument: str) -> None:
        with self._lock:
            if self._records.pop(instrument, None) is None:
                return
            self._flush()

    def _flush(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".trailing-", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(self._records, f, ensure_ascii=False, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp, self.path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        except OSError as e:
            raise PersistenceFailure(f"could not write {self.path}: {e}") from e
