"""
Momentum signal generator (trend -> volume -> momentum -> structure).

The last sample is the in-progress bucket: its close is the entry price,
but its volume is partial, so the volume gate compares the last completed
bucket against the average of the buckets before it.
"""

from __future__ import annotations
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from functools import partial
from typing import Callable, Mapping, Optional, Sequence

from momentum_bot.core.errors import InsufficientData
from momentum_bot.core.types import Direction, PriceSample, Signal, utc_now
from momentum_bot.data.validation import validate_samples
from momentum_bot.indicators import technical as ta
from momentum_bot.strategies.base import BaseStrategy, Evaluation
from momentum_bot.strategies.momentum import MomentumScore, score_momentum
from momentum_bot.utils.timeframes import timeframe_minutes

logger = logging.getLogger("momentum_bot.signals")

ONE = Decimal("1")
HUNDRED = Decimal("100")

Scorer = Callable[[Sequence[PriceSample], Direction], MomentumScore]
# Returns a human-readable reason when the instrument may not take a new entry.
EntryBlocker = Callable[[str, datetime], Optional[str]]


class MomentumSignalGenerator(BaseStrategy):
    """
    Long: EMA20 > EMA50 > EMA200, completed-bucket volume >= multiplier x average,
    momentum score >= threshold, structure not LOWER_LOWS and not CHOPPY.
    Short is the mirror image. Stop and target are fixed percentages from entry.
    """

    def __init__(
        self,
        entry_blocker: EntryBlocker,
        bucket: timedelta = timedelta(minutes=5),
        ema_fast: int = 20,
        ema_mid: int = 50,
        ema_slow: int = 200,
        volume_window: int = 20,
        volume_multiplier: Decimal = Decimal("1.5"),
        momentum_threshold: Decimal = Decimal("0.60"),
        structure_lookback: int = 10,
        stop_loss_percent: Decimal = Decimal("5"),
        take_profit_percent: Optional[Decimal] = Decimal("1.3"),
        momentum_weights: Optional[Mapping[str, Decimal]] = None,
        max_gap_buckets: int = 3,
        max_sample_age_buckets: int = 3,
        scorer: Optional[Scorer] = None,
    ):
        self.entry_blocker = entry_blocker
        self.bucket = bucket
        self.ema_fast = ema_fast
        self.ema_mid = ema_mid
        self.ema_slow = ema_slow
        self.volume_window = volume_window
        self.volume_multiplier = volume_multiplier
        self.momentum_threshold = momentum_threshold
        self.structure_lookback = structure_lookback
        self.stop_loss_percent = stop_loss_percent
        self.take_profit_percent = take_profit_percent
        self.max_gap_buckets = max_gap_buckets
        self.max_sample_age_buckets = max_sample_age_buckets
        self.scorer: Scorer = scorer or partial(score_momentum, weights=momentum_weights)
        self.min_samples = max(ema_slow, volume_window + 2, structure_lookback * 2)

    @classmethod
    def from_config(cls, config, entry_blocker: EntryBlocker, scorer: Optional[Scorer] = None) -> "MomentumSignalGenerator":
        return cls(
            entry_blocker=entry_blocker,
            bucket=timedelta(minutes=timeframe_minutes(config.timeframe)),
            ema_fast=config.ema_fast,
            ema_mid=config.ema_mid,
            ema_slow=config.ema_slow,
            volume_window=config.volume_window,
            volume_multiplier=config.volume_multiplier,
            momentum_threshold=config.momentum_threshold,
            structure_lookback=config.structure_lookback,
            stop_loss_percent=config.stop_loss_percent,
            take_profit_percent=config.take_profit_percent,
            momentum_weights=config.momentum_weights,
            max_gap_buckets=config.max_gap_buckets,
            max_sample_age_buckets=config.max_sample_age_buckets,
            scorer=scorer,
        )

    def evaluate(self, instrument: str, samples: Sequence[PriceSample], now: Optional[datetime] = None) -> Evaluation:
        now = now or utc_now()

        blocked = self.entry_blocker(instrument, now)
        if blocked:
            logger.debug("%s: %s - no signal", instrument, blocked)
            return Evaluation(rejected_at="blocked", detail=blocked)

        if len(samples) < self.min_samples:
            raise InsufficientData(f"{instrument}: have {len(samples)} samples, need {self.min_samples}")
        validate_samples(
            samples,
            self.bucket,
            now=now,
            max_gap_buckets=self.max_gap_buckets,
            max_age_buckets=self.max_sample_age_buckets,
        )
        values = ta.closes(samples)

        # 1. Trend: EMA stack must be fully aligned
        trend = ta.detect_ema_stack(values, self.ema_fast, self.ema_mid, self.ema_slow)
        if trend is ta.Trend.SIDEWAYS:
            logger.debug("%s: EMA stack is SIDEWAYS - no trade", instrument)
            return Evaluation(rejected_at="trend", detail="EMA stack sideways")
        direction = Direction.LONG if trend is ta.Trend.BULLISH else Direction.SHORT

        # 2. Volume: last completed bucket vs the average of the buckets before it
        completed = samples[:-1]
        last_volume = completed[-1].volume
        avg_volume = ta.average_volume(completed[:-1], self.volume_window)
        if avg_volume <= 0:
            return Evaluation(rejected_at="volume", detail="zero average volume")
        volume_ratio = last_volume / avg_volume
        if volume_ratio < self.volume_multiplier:
            logger.debug("%s: volume %.2fx below %sx - no trade", instrument, volume_ratio, self.volume_multiplier)
            return Evaluation(rejected_at="volume", detail=f"volume {volume_ratio:.2f}x")

        # 3. Momentum score for the direction the trend implies
        momentum = self.scorer(samples, direction)
        logger.debug(
            "%s momentum %.2f (%s) components=%s",
            instrument, momentum.score, direction.value,
            {k: f"{v:.2f}" for k, v in momentum.components.items()},
        )
        if momentum.score < self.momentum_threshold:
            return Evaluation(rejected_at="momentum", detail=f"momentum {momentum.score:.2f}")

        # 4. Structure must not contradict the direction
        structure = ta.detect_price_structure(samples, self.structure_lookback)
        if structure is ta.Structure.CHOPPY \
                or (direction is Direction.LONG and structure is ta.Structure.LOWER_LOWS) \
                or (direction is Direction.SHORT and structure is ta.Structure.HIGHER_HIGHS):
            logger.info("%s: %s signal rejected - structure %s", instrument, direction.value, structure.value)
            return Evaluation(rejected_at="structure", detail=f"structure {structure.value}")

        entry = values[-1]
        if direction is Direction.LONG:
            stop = entry * (ONE - self.stop_loss_percent / HUNDRED)
            target = entry * (ONE + self.take_profit_percent / HUNDRED) if self.take_profit_percent else None
        else:
            stop = entry * (ONE + self.stop_loss_percent / HUNDRED)
            target = entry * (ONE - self.take_profit_percent / HUNDRED) if self.take_profit_percent else None

        signal = Signal(
            instrument=instrument,
            direction=direction,
            entry_price=entry,
            stop_loss=stop,
            take_profit=target,
            confidence=momentum.score,
            reason=(
                f"MOMENTUM {direction.value}: score={momentum.score:.2f}, EMA={trend.value}, "
                f"vol={volume_ratio:.1f}x, structure={structure.value}"
            ),
            created_at=now,
        )
        logger.info("Signal %s %s @ %s (score %.2f, vol %.1fx)", instrument, direction.value, entry, momentum.score, volume_ratio)
        return Evaluation(signal=signal)
