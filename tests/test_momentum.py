"""Unit tests for strategies.momentum (composite score)."""

from decimal import Decimal

import pytest

from conftest import falling_closes, make_samples, rising_closes
from momentum_bot.core.errors import InsufficientData
from momentum_bot.core.types import Direction
from momentum_bot.strategies.momentum import COMPONENTS, score_momentum

D = Decimal


def test_score_is_pure_and_bounded():
    samples = make_samples(rising_closes(260))
    first = score_momentum(samples, Direction.LONG)
    second = score_momentum(samples, Direction.LONG)
    assert first == second
    assert D("0") <= first.score <= D("1")
    assert set(first.components) == set(COMPONENTS)
    assert first.score == sum(first.components.values(), D("0"))


def test_ema_component_only_weights():
    weights = {"rsi": D("0"), "macd": D("0"), "ema": D("1"), "bollinger": D("0"), "stochastic": D("0")}
    long_score = score_momentum(make_samples(rising_closes(260)), Direction.LONG, weights)
    assert long_score.score == D("1")
    # Same window scored against the trend gets nothing from the EMA stack.
    short_score = score_momentum(make_samples(rising_closes(260)), Direction.SHORT, weights)
    assert short_score.score == D("0")


def test_short_mirror_of_falling_market():
    weights = {"rsi": D("0"), "macd": D("0"), "ema": D("1"), "bollinger": D("0"), "stochastic": D("0")}
    result = score_momentum(make_samples(falling_closes(260)), Direction.SHORT, weights)
    assert result.score == D("1")


def test_unfavorable_component_contributes_zero():
    # Strong uptrend: RSI is 100, outside every long tier.
    result = score_momentum(make_samples(rising_closes(260)), Direction.LONG)
    assert result.components["rsi"] == D("0")


def test_needs_200_samples():
    with pytest.raises(InsufficientData):
        score_momentum(make_samples(rising_closes(199)), Direction.LONG)
