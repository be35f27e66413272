"""Abstract strategy: turns a price window into an optional Signal."""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from momentum_bot.core.types import PriceSample, Signal


@dataclass(frozen=True)
class Evaluation:
    """Outcome of one decision tick for one instrument."""
    signal: Optional[Signal] = None
    rejected_at: str = ""
    detail: str = ""


class BaseStrategy(ABC):
    """Strategies carry no state between ticks other than what they are handed."""

    @abstractmethod
    def evaluate(self, instrument: str, samples: Sequence[PriceSample], now: Optional[datetime] = None) -> Evaluation:
        """
        Run the gates over an immutable window snapshot.
        Raises InsufficientData / DataQualityViolation when the window cannot be trusted.
        """
        pass

    def generate(self, instrument: str, samples: Sequence[PriceSample], now: Optional[datetime] = None) -> Optional[Signal]:
        return self.evaluate(instrument, samples, now).signal
