"""
Composite momentum score in [0, 1] for a proposed direction.

Each component is graded in tiers. The tier points below are stated at the
default weights (RSI 0.20, MACD 0.20, EMA stack 0.25, Bollinger 0.15,
Stochastic 0.20) and scaled linearly when the weights are changed. A
component outside its favorable zone contributes zero.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Mapping, Optional, Sequence

from momentum_bot.core.errors import InsufficientData
from momentum_bot.core.types import Direction, PriceSample
from momentum_bot.indicators import technical as ta

D = Decimal
ZERO = D("0")

# Full points per component at the default weights.
FULL_POINTS = {
    "rsi": D("0.20"),
    "macd": D("0.20"),
    "ema": D("0.25"),
    "bollinger": D("0.15"),
    "stochastic": D("0.20"),
}
DEFAULT_WEIGHTS = dict(FULL_POINTS)
COMPONENTS = tuple(FULL_POINTS)
MIN_SAMPLES = 200


@dataclass(frozen=True)
class MomentumScore:
    score: Decimal
    components: Mapping[str, Decimal] = field(default_factory=dict)


def _rsi_points(value: Decimal, direction: Direction) -> Decimal:
    if direction is Direction.LONG:
        if 30 <= value <= 50:
            return D("0.20")
        if 50 < value <= 60:
            return D("0.15")
        if 60 < value <= 70:
            return D("0.08")
        if value < 30:
            return D("0.12")
        return ZERO
    if 50 <= value <= 70:
        return D("0.20")
    if 40 <= value < 50:
        return D("0.15")
    if 30 <= value < 40:
        return D("0.08")
    if value > 70:
        return D("0.12")
    return ZERO


def _macd_points(m: ta.Macd, direction: Direction) -> Decimal:
    if direction is Direction.LONG:
        crossed, histogram_ok = m.macd > m.signal, m.histogram > 0
    else:
        crossed, histogram_ok = m.macd < m.signal, m.histogram < 0
    if crossed and histogram_ok:
        return D("0.20")
    if crossed:
        return D("0.12")
    if histogram_ok:
        return D("0.08")
    return ZERO


def _ema_points(price: Decimal, fast: Decimal, mid: Decimal, slow: Decimal, direction: Direction) -> Decimal:
    if direction is Direction.LONG:
        a, b, c = price > fast, fast > mid, mid > slow
    else:
        a, b, c = price < fast, fast < mid, mid < slow
    if a and b and c:
        return D("0.25")
    if a and b:
        return D("0.18")
    if a:
        return D("0.10")
    return ZERO


def _bollinger_points(position: Decimal, direction: Direction) -> Decimal:
    if direction is Direction.LONG:
        if position <= D("0.3"):
            return D("0.15")
        if position <= D("0.5"):
            return D("0.10")
        if position <= D("0.7"):
            return D("0.05")
        return ZERO
    if position >= D("0.7"):
        return D("0.15")
    if position >= D("0.5"):
        return D("0.10")
    if position >= D("0.3"):
        return D("0.05")
    return ZERO


def _stochastic_points(s: ta.Stochastic, direction: Direction) -> Decimal:
    if direction is Direction.LONG:
        if s.k > s.d and s.k < 80:
            if s.k < 30:
                return D("0.20")
            if s.k < 50:
                return D("0.15")
            return D("0.08")
        return D("0.10") if s.k < 30 else ZERO
    if s.k < s.d and s.k > 20:
        if s.k > 70:
            return D("0.20")
        if s.k > 50:
            return D("0.15")
        return D("0.08")
    return D("0.10") if s.k > 70 else ZERO


def score_momentum(
    samples: Sequence[PriceSample],
    direction: Direction,
    weights: Optional[Mapping[str, Decimal]] = None,
) -> MomentumScore:
    """
    Pure function of (samples, direction, weights): same input, same output.
    Raises InsufficientData below 200 samples.
    """
    if len(samples) < MIN_SAMPLES:
        raise InsufficientData(f"momentum score: need {MIN_SAMPLES} samples, got {len(samples)}")
    weights = weights or DEFAULT_WEIGHTS
    values = ta.closes(samples)
    price = values[-1]

    bands = ta.bollinger_bands(values, 20, 2)
    span = bands.upper - bands.lower
    band_position = (price - bands.lower) / span if span != 0 else D("0.5")

    points = {
        "rsi": _rsi_points(ta.rsi(samples, 14), direction),
        "macd": _macd_points(ta.macd(values), direction),
        "ema": _ema_points(price, ta.ema(values, 20), ta.ema(values, 50), ta.ema(values, 200), direction),
        "bollinger": _bollinger_points(band_position, direction),
        "stochastic": _stochastic_points(ta.stochastic(samples), direction),
    }
    components = {
        name: points[name] * weights.get(name, ZERO) / FULL_POINTS[name]
        for name in COMPONENTS
    }
    return MomentumScore(score=sum(components.values(), ZERO), components=components)
