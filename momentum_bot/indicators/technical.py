"""
Technical indicators over PriceSample sequences.
Pure functions, Decimal arithmetic only. Short input raises InsufficientData.
"""

from __future__ import annotations
from decimal import Decimal
from enum import Enum
from typing import NamedTuple, Optional, Sequence

from momentum_bot.core.errors import InsufficientData
from momentum_bot.core.types import PriceSample

ZERO = Decimal("0")
ONE = Decimal("1")
TWO = Decimal("2")
FIFTY = Decimal("50")
HUNDRED = Decimal("100")


class Trend(str, Enum):
    BULLISH = "BULLISH"
    BEARISH = "BEARISH"
    SIDEWAYS = "SIDEWAYS"


class Structure(str, Enum):
    HIGHER_HIGHS = "HIGHER_HIGHS"
    LOWER_LOWS = "LOWER_LOWS"
    CHOPPY = "CHOPPY"


class Bands(NamedTuple):
    upper: Decimal
    middle: Decimal
    lower: Decimal


class Macd(NamedTuple):
    macd: Decimal
    signal: Decimal
    histogram: Decimal


class Stochastic(NamedTuple):
    k: Decimal
    d: Decimal


def _require(n: int, needed: int, what: str) -> None:
    if n < needed:
        raise InsufficientData(f"{what}: need {needed} periods, got {n}")


def closes(samples: Sequence[PriceSample]) -> list[Decimal]:
    return [s.close for s in samples]


def resistance(samples: Sequence[PriceSample], lookback: int) -> Decimal:
    """Highest high over the last `lookback` samples."""
    _require(len(samples), lookback, "resistance")
    return max(s.high for s in samples[-lookback:])


def support(samples: Sequence[PriceSample], lookback: int) -> Decimal:
    """Lowest low over the last `lookback` samples."""
    _require(len(samples), lookback, "support")
    return min(s.low for s in samples[-lookback:])


def average_volume(samples: Sequence[PriceSample], periods: int) -> Decimal:
    _require(len(samples), periods, "average_volume")
    return sum((s.volume for s in samples[-periods:]), ZERO) / periods


def is_volume_spike(current: Decimal, average: Decimal, multiplier: Decimal) -> bool:
    return current > average * multiplier


def atr(samples: Sequence[PriceSample], periods: int = 14) -> Decimal:
    """Average true range over the last `periods` bars."""
    _require(len(samples), periods + 1, "atr")
    true_ranges = []
    for prev, cur in zip(samples, samples[1:]):
        true_ranges.append(max(
            cur.high - cur.low,
            abs(cur.high - prev.close),
            abs(cur.low - prev.close),
        ))
    return sum(true_ranges[-periods:], ZERO) / periods


def rsi(samples: Sequence[PriceSample], periods: int = 14) -> Decimal:
    """Simple-average RSI over the last `periods` close-to-close changes."""
    _require(len(samples), periods + 1, "rsi")
    recent = [cur.close - prev.close for prev, cur in zip(samples[-periods - 1:], samples[-periods:])]
    avg_gain = sum((c for c in recent if c > 0), ZERO) / periods
    avg_loss = sum((-c for c in recent if c < 0), ZERO) / periods
    if avg_loss == 0:
        return HUNDRED
    rs = avg_gain / avg_loss
    return HUNDRED - HUNDRED / (rs + ONE)


def sma(values: Sequence[Decimal], periods: int) -> Decimal:
    _require(len(values), periods, "sma")
    return sum(values[-periods:], ZERO) / periods


def ema_series(values: Sequence[Decimal], periods: int) -> list[Decimal]:
    """
    EMA after each value, seeded with the SMA of the first `periods` values.
    Element i corresponds to values[periods - 1 + i].
    """
    _require(len(values), periods, "ema")
    k = TWO / (periods + 1)
    current = sma(values[:periods], periods)
    out = [current]
    for v in values[periods:]:
        current = v * k + current * (ONE - k)
        out.append(current)
    return out


def ema(values: Sequence[Decimal], periods: int) -> Decimal:
    return ema_series(values, periods)[-1]


def bollinger_bands(values: Sequence[Decimal], periods: int = 20, std_dev: int = 2) -> Bands:
    _require(len(values), periods, "bollinger_bands")
    middle = sma(values, periods)
    variance = sum(((v - middle) ** 2 for v in values[-periods:]), ZERO) / periods
    width = variance.sqrt() * std_dev
    return Bands(upper=middle + width, middle=middle, lower=middle - width)


def macd(values: Sequence[Decimal], fast: int = 12, slow: int = 26, signal: int = 9) -> Macd:
    _require(len(values), slow + signal, "macd")
    fast_series = ema_series(values, fast)
    slow_series = ema_series(values, slow)
    # Align both series on the index of the value they end at.
    offset = slow - fast
    macd_values = [f - s for f, s in zip(fast_series[offset:], slow_series)]
    macd_line = macd_values[-1]
    signal_line = ema(macd_values, signal)
    return Macd(macd=macd_line, signal=signal_line, histogram=macd_line - signal_line)


def stochastic(samples: Sequence[PriceSample], k_period: int = 14, d_period: int = 3) -> Stochastic:
    _require(len(samples), k_period + d_period, "stochastic")
    k_values = []
    for end in range(len(samples) - d_period, len(samples)):
        window = samples[end - k_period + 1:end + 1]
        highest = max(s.high for s in window)
        lowest = min(s.low for s in window)
        span = highest - lowest
        if span == 0:
            k_values.append(FIFTY)
        else:
            k_values.append((window[-1].close - lowest) / span * HUNDRED)
    return Stochastic(k=k_values[-1], d=sum(k_values, ZERO) / d_period)


def detect_breakout(price: Decimal, resist: Decimal, supp: Decimal, buffer: Decimal = Decimal("0.001")) -> Optional[Trend]:
    """BULLISH above resistance+buffer, BEARISH below support-buffer, else None."""
    if price > resist * (ONE + buffer):
        return Trend.BULLISH
    if price < supp * (ONE - buffer):
        return Trend.BEARISH
    return None


def detect_trend(samples: Sequence[PriceSample], short: int = 20, long: int = 50) -> Trend:
    """SMA crossover with a 0.2% hysteresis band. Short input reads as sideways."""
    if len(samples) < long:
        return Trend.SIDEWAYS
    values = closes(samples)
    fast = sma(values, short)
    slow = sma(values, long)
    band = slow * Decimal("0.002")
    if fast > slow + band:
        return Trend.BULLISH
    if fast < slow - band:
        return Trend.BEARISH
    return Trend.SIDEWAYS


def detect_ema_stack(values: Sequence[Decimal], fast: int = 20, mid: int = 50, slow: int = 200) -> Trend:
    """EMA20 > EMA50 > EMA200 is bullish, the mirror is bearish, anything mixed is sideways."""
    if len(values) < slow:
        return Trend.SIDEWAYS
    f, m, s = ema(values, fast), ema(values, mid), ema(values, slow)
    if f > m > s:
        return Trend.BULLISH
    if f < m < s:
        return Trend.BEARISH
    return Trend.SIDEWAYS


def detect_price_structure(samples: Sequence[PriceSample], lookback: int = 10) -> Structure:
    """Compare swing high/low of the last `lookback` bars against the `lookback` before them."""
    if len(samples) < lookback * 2:
        return Structure.CHOPPY
    recent = samples[-lookback * 2:]
    first, second = recent[:lookback], recent[lookback:]
    first_high, first_low = max(s.high for s in first), min(s.low for s in first)
    second_high, second_low = max(s.high for s in second), min(s.low for s in second)
    if second_high > first_high and second_low > first_low:
        return Structure.HIGHER_HIGHS
    if second_high < first_high and second_low < first_low:
        return Structure.LOWER_LOWS
    return Structure.CHOPPY


def is_trend_confirmed(samples: Sequence[PriceSample], expected: Trend) -> bool:
    """Both the SMA trend and the swing structure agree with `expected`."""
    trend = detect_trend(samples)
    structure = detect_price_structure(samples)
    if expected is Trend.BULLISH:
        return trend is Trend.BULLISH and structure is Structure.HIGHER_HIGHS
    if expected is Trend.BEARISH:
        return trend is Trend.BEARISH and structure is Structure.LOWER_LOWS
    return False
