"""
Risk manager: position sizing from the configured size map and the
exposure guard evaluated before every entry (daily loss cap, max
concurrent positions, available margin).
"""

from __future__ import annotations
import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Callable, Mapping, Optional

from momentum_bot.core.types import Balance

logger = logging.getLogger("momentum_bot.risk")

ZERO = Decimal("0")


@dataclass
class RiskResult:
    """Result of risk check: allowed or rejected + reason."""
    allowed: bool
    quantity: Decimal = ZERO
    reason: str = ""


class RiskManager:
    """
    Enforces: configured size per instrument, daily loss cap,
    max concurrent positions, margin available at the configured leverage.
    """

    def __init__(
        self,
        position_sizes: Mapping[str, Decimal],
        max_daily_loss_usd: Decimal,
        max_positions: int,
        leverage: int = 1,
    ):
        self.position_sizes = dict(position_sizes)
        self.max_daily_loss_usd = max_daily_loss_usd
        self.max_positions = max_positions
        self.leverage = leverage
        self._daily_loss = ZERO
        self._daily_reset_date: Optional[date] = None
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config) -> "RiskManager":
        return cls(
            position_sizes=config.position_sizes,
            max_daily_loss_usd=config.max_daily_loss_usd,
            max_positions=config.max_positions,
            leverage=config.leverage,
        )

    def _roll_day(self, today: date) -> None:
        if self._daily_reset_date != today:
            self._daily_reset_date = today
            self._daily_loss = ZERO

    def daily_loss(self, as_of_date: Optional[date] = None) -> Decimal:
        with self._lock:
            self._roll_day(as_of_date or datetime.now(timezone.utc).date())
            return self._daily_loss

    def record_trade_pnl(self, pnl: Decimal, as_of_date: Optional[date] = None) -> None:
        """Record closed trade PnL; only losses count toward the daily cap."""
        with self._lock:
            self._roll_day(as_of_date or datetime.now(timezone.utc).date())
            if pnl < 0:
                self._daily_loss += -pnl

    def check_daily_loss(self, as_of_date: Optional[date] = None) -> bool:
        """Return False if daily loss cap reached."""
        loss = self.daily_loss(as_of_date)
        if loss >= self.max_daily_loss_usd:
            logger.warning("Daily loss cap reached: %.2f >= %.2f", loss, self.max_daily_loss_usd)
            return False
        return True

    def position_size(self, instrument: str, round_quantity: Optional[Callable[[Decimal], Decimal]] = None) -> Decimal:
        """Configured quantity for the instrument, rounded to the lot step when a rounder is given."""
        qty = self.position_sizes[instrument]
        return round_quantity(qty) if round_quantity else qty

    def check_entry(
        self,
        instrument: str,
        entry_price: Decimal,
        open_positions: int,
        balance: Optional[Balance] = None,
        round_quantity: Optional[Callable[[Decimal], Decimal]] = None,
        as_of_date: Optional[date] = None,
    ) -> RiskResult:
        """
        Validate a prospective entry and compute its quantity.
        open_positions counts instruments already holding or reserving a slot.
        """
        if instrument not in self.position_sizes:
            return RiskResult(allowed=False, reason=f"no configured size for {instrument}")
        if not self.check_daily_loss(as_of_date):
            return RiskResult(allowed=False, reason="daily loss cap")
        if open_positions >= self.max_positions:
            return RiskResult(allowed=False, reason=f"max positions {self.max_positions} reached")

        qty = self.position_size(instrument, round_quantity)
        if qty <= 0:
            return RiskResult(allowed=False, reason="qty rounded to 0")

        if balance is not None:
            margin = qty * entry_price / self.leverage
            if margin > balance.available:
                return RiskResult(
                    allowed=False,
                    reason=f"margin {margin:.2f} exceeds available {balance.available:.2f}",
                )
        return RiskResult(allowed=True, quantity=qty)
