"""Utils: Telegram, timeframes, exchange filters."""

from momentum_bot.utils.telegram import TelegramNotifier, send_telegram
from momentum_bot.utils.timeframes import timeframe_delta, timeframe_minutes

__all__ = ["TelegramNotifier", "send_telegram", "timeframe_delta", "timeframe_minutes"]
