"""Technical indicators over price windows."""

from momentum_bot.indicators.technical import Bands, Macd, Stochastic, Structure, Trend

__all__ = ["Bands", "Macd", "Stochastic", "Structure", "Trend"]
