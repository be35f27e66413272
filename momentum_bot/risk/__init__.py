"""Risk: position sizing and exposure guard."""

from momentum_bot.risk.manager import RiskManager, RiskResult

__all__ = ["RiskManager", "RiskResult"]
