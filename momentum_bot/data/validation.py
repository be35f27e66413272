"""
Data-quality checks run before any indicator math.
A failing window is treated like missing data: skip the tick, do not trade.
"""

from __future__ import annotations
from datetime import datetime, timedelta
from typing import Optional, Sequence

from momentum_bot.core.errors import DataQualityViolation
from momentum_bot.core.types import PriceSample


def validate_samples(
    samples: Sequence[PriceSample],
    bucket: timedelta,
    now: Optional[datetime] = None,
    max_gap_buckets: int = 3,
    max_age_buckets: int = 3,
) -> None:
    """Raise DataQualityViolation on the first problem found."""
    prev: Optional[PriceSample] = None
    for i, s in enumerate(samples):
        if s.high <= 0 or s.low <= 0 or s.close <= 0:
            raise DataQualityViolation(f"non-positive price at index {i}")
        if s.high < s.low:
            raise DataQualityViolation(f"high < low at index {i}")
        if not (s.low <= s.close <= s.high):
            raise DataQualityViolation(f"close outside [low, high] at index {i}")
        if s.volume < 0:
            raise DataQualityViolation(f"negative volume at index {i}")
        if prev is not None:
            gap = s.timestamp - prev.timestamp
            if gap <= timedelta(0):
                raise DataQualityViolation(f"non-increasing timestamp at index {i}")
            if gap > bucket * max_gap_buckets:
                raise DataQualityViolation(f"gap of {gap} before index {i}")
        prev = s
    if prev is not None and now is not None:
        age = now - prev.timestamp
        if age > bucket * max_age_buckets:
            raise DataQualityViolation(f"newest sample is stale ({age} old)")
