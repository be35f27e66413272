"""Market/Account Gateway contract. Exchange-reported state is ground truth."""

from __future__ import annotations
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import List, Optional

from momentum_bot.core.types import Balance, OpenOrder, OrderHandle, OrderSide, OrderStatus, OrderType, PositionSnapshot


class ExecutionClient(ABC):
    """
    Orders, cancellations, positions, balance and last price.
    Implementations raise GatewayUnavailable for transient failures and
    OrderRejected when the exchange refuses an order.
    """

    @abstractmethod
    def place_order(
        self,
        instrument: str,
        side: OrderSide,
        quantity: Decimal,
        order_type: OrderType,
        price: Optional[Decimal] = None,
        reduce_only: bool = False,
    ) -> OrderHandle:
        pass

    @abstractmethod
    def cancel_order(self, instrument: str, order_id: str) -> bool:
        """True if cancelled; False if the exchange would not cancel it (filled, locked)."""
        pass

    @abstractmethod
    def get_positions(self) -> List[PositionSnapshot]:
        pass

    @abstractmethod
    def get_balance(self) -> Balance:
        pass

    @abstractmethod
    def get_last_price(self, instrument: str) -> Decimal:
        """Raises NoPriceData when nothing usable is cached or returned."""
        pass

    @abstractmethod
    def get_open_orders(self, instrument: Optional[str] = None) -> List[OpenOrder]:
        pass

    @abstractmethod
    def get_order_status(self, instrument: str, order_id: str) -> OrderStatus:
        pass

    def round_quantity(self, instrument: str, quantity: Decimal) -> Decimal:
        """Round to the exchange lot step. Default: unchanged."""
        return quantity

    def set_leverage(self, instrument: str, leverage: int) -> None:
        """Optional. Default no-op."""
        return None
