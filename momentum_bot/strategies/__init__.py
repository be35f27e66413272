"""Strategies: momentum scoring and gated signal generation."""

from momentum_bot.strategies.base import BaseStrategy, Evaluation
from momentum_bot.strategies.momentum import MomentumScore, score_momentum
from momentum_bot.strategies.signal_generator import MomentumSignalGenerator

__all__ = ["BaseStrategy", "Evaluation", "MomentumScore", "score_momentum", "MomentumSignalGenerator"]
