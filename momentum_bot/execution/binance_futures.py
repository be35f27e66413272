"""
Binance USDT-M Futures gateway with retry and rate-limit handling.
Reads retry on 429/418; order placement never retries (a retried market
order could double the position).
"""

from __future__ import annotations
import logging
import time
from decimal import Decimal
from functools import wraps
from typing import Dict, List, Optional

import requests
from binance.client import Client
from binance.exceptions import BinanceAPIException, BinanceRequestException

from momentum_bot.core.errors import GatewayUnavailable, NoPriceData, OrderRejected
from momentum_bot.core.types import (
    Balance, OpenOrder, OrderHandle, OrderSide, OrderStatus, OrderType, PositionSnapshot,
)
from momentum_bot.execution.base import ExecutionClient
from momentum_bot.utils.exchange_filters import parse_symbol_filters, round_price, round_quantity

logger = logging.getLogger("momentum_bot.execution.binance")

RATE_LIMIT_CODES = (429, 418)
UNKNOWN_ORDER = -2011
ORDER_NOT_FOUND = -2013
STATUS_MAP = {
    "NEW": OrderStatus.OPEN,
    "PENDING_NEW": OrderStatus.PENDING,
    "PARTIALLY_FILLED": OrderStatus.PARTIALLY_FILLED,
    "FILLED": OrderStatus.FILLED,
    "CANCELED": OrderStatus.CANCELLED,
    "EXPIRED": OrderStatus.CANCELLED,
    "EXPIRED_IN_MATCH": OrderStatus.CANCELLED,
    "REJECTED": OrderStatus.REJECTED,
}


def retry_on_rate_limit(max_retries: int = 3, base_delay: float = 1.0):
    """Decorator: retry on 429 or 418 (rate limit)."""
    def decorator(f):
        @wraps(f)
        def wrapped(*args, **kwargs):
            last_exc = None
            for attempt in range(max_retries):
                try:
                    return f(*args, **kwargs)
                except BinanceAPIException as e:
                    last_exc = e
                    if e.status_code in RATE_LIMIT_CODES and attempt < max_retries - 1:
                        delay = base_delay * (2 ** attempt)
                        logger.warning("Rate limited, retry in %.1fs (attempt %d)", delay, attempt + 1)
                        time.sleep(delay)
                    else:
                        raise
            raise last_exc
        return wrapped
    return decorator


def unavailable_on_error(f):
    """Decorator: transport and API failures on reads surface as GatewayUnavailable."""
    @wraps(f)
    def wrapped(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except (BinanceAPIException, BinanceRequestException, requests.RequestException) as e:
            raise GatewayUnavailable(f"{f.__name__}: {e}") from e
    return wrapped


def map_status(raw: Optional[str]) -> OrderStatus:
    status = STATUS_MAP.get((raw or "").upper())
    if status is None:
        logger.warning("Unrecognised order status %r, treating as UNKNOWN", raw)
        return OrderStatus.UNKNOWN
    return status


def _dec(value, default: str = "0") -> Decimal:
    if value in (None, ""):
        return Decimal(default)
    return Decimal(str(value))


def _fmt(value: Decimal) -> str:
    return format(value, "f")


class BinanceFuturesClient(ExecutionClient):
    """Binance USDT-M Futures client (testnet and live)."""

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        testnet: bool = True,
        quote_asset: str = "USDT",
        client: Optional[Client] = None,
    ):
        self._client = client or Client(api_key, api_secret, testnet=testnet)
        if testnet:
            logger.info("Binance Futures: using TESTNET")
        else:
            logger.info("Binance Futures: using LIVE")
        self.quote_asset = quote_asset
        self._symbol_info_cache: Optional[Dict[str, dict]] = None

    @unavailable_on_error
    @retry_on_rate_limit(max_retries=2)
    def get_symbol_info(self, symbol: str) -> Optional[dict]:
        if self._symbol_info_cache is None:
            info = self._client.futures_exchange_info()
            self._symbol_info_cache = {s.get("symbol"): s for s in info.get("symbols", [])}
        return self._symbol_info_cache.get(symbol)

    def round_quantity(self, instrument: str, quantity: Decimal) -> Decimal:
        min_qty, lot_step, _ = parse_symbol_filters(self.get_symbol_info(instrument))
        return round_quantity(quantity, min_qty, lot_step)

    def set_leverage(self, instrument: str, leverage: int) -> None:
        try:
            self._client.futures_change_leverage(symbol=instrument, leverage=leverage)
            logger.info("Leverage set to %sx for %s", leverage, instrument)
        except BinanceAPIException as e:
            logger.warning("Could not set leverage for %s: %s", instrument, e)

    def place_order(
        self,
        instrument: str,
        side: OrderSide,
        quantity: Decimal,
        order_type: OrderType,
        price: Optional[Decimal] = None,
        reduce_only: bool = False,
    ) -> OrderHandle:
        min_qty, lot_step, price_tick = parse_symbol_filters(self.get_symbol_info(instrument))
        qty = round_quantity(quantity, min_qty, lot_step)
        if qty <= 0:
            raise OrderRejected(f"{instrument}: quantity {quantity} below exchange minimum {min_qty}")
        params = {
            "symbol": instrument,
            "side": side.value,
            "type": order_type.value,
            "quantity": _fmt(qty),
        }
        if order_type is OrderType.LIMIT:
            if price is None:
                raise OrderRejected(f"{instrument}: limit order without a price")
            params["price"] = _fmt(round_price(price, price_tick))
            params["timeInForce"] = "GTC"
        else:
            params["newOrderRespType"] = "RESULT"
        if reduce_only:
            params["reduceOnly"] = "true"
        try:
            res = self._client.futures_create_order(**params)
        except BinanceAPIException as e:
            if e.status_code in RATE_LIMIT_CODES or e.status_code >= 500:
                raise GatewayUnavailable(f"order {instrument}: {e}") from e
            raise OrderRejected(f"order {instrument}: {e.message} (code {e.code})") from e
        except (BinanceRequestException, requests.RequestException) as e:
            raise GatewayUnavailable(f"order {instrument}: {e}") from e
        avg = _dec(res.get("avgPrice"))
        handle = OrderHandle(
            order_id=str(res.get("orderId")),
            status=map_status(res.get("status")),
            avg_price=avg if avg > 0 else None,
            quantity=_dec(res.get("executedQty") or res.get("origQty"), _fmt(qty)),
        )
        logger.info(
            "Order %s %s %s %s qty=%s%s -> %s",
            handle.order_id, instrument, side.value, order_type.value, _fmt(qty),
            " reduce-only" if reduce_only else "", handle.status.value,
        )
        return handle

    def cancel_order(self, instrument: str, order_id: str) -> bool:
        try:
            self._client.futures_cancel_order(symbol=instrument, orderId=order_id)
        except BinanceAPIException as e:
            if e.code == UNKNOWN_ORDER:
                logger.info("Cancel %s %s: order no longer open", instrument, order_id)
                return False
            raise GatewayUnavailable(f"cancel {instrument} {order_id}: {e}") from e
        except (BinanceRequestException, requests.RequestException) as e:
            raise GatewayUnavailable(f"cancel {instrument} {order_id}: {e}") from e
        logger.info("Cancelled order %s on %s", order_id, instrument)
        return True

    @unavailable_on_error
    @retry_on_rate_limit(max_retries=2)
    def get_positions(self) -> List[PositionSnapshot]:
        positions = []
        for p in self._client.futures_position_information():
            amt = _dec(p.get("positionAmt"))
            if amt == 0:
                continue
            mark = _dec(p.get("markPrice"))
            positions.append(PositionSnapshot(
                instrument=p.get("symbol"),
                side=OrderSide.BUY if amt > 0 else OrderSide.SELL,
                quantity=abs(amt),
                entry_price=_dec(p.get("entryPrice")),
                mark_price=mark if mark > 0 else None,
            ))
        return positions

    @unavailable_on_error
    @retry_on_rate_limit(max_retries=2)
    def get_balance(self) -> Balance:
        for row in self._client.futures_account_balance():
            if row.get("asset") == self.quote_asset:
                total = _dec(row.get("balance"))
                available = _dec(row.get("availableBalance"))
                return Balance(available=available, locked=total - available, total=total)
        return Balance(available=Decimal("0"), locked=Decimal("0"), total=Decimal("0"))

    @unavailable_on_error
    @retry_on_rate_limit(max_retries=2)
    def get_last_price(self, instrument: str) -> Decimal:
        ticker = self._client.futures_symbol_ticker(symbol=instrument)
        price = _dec(ticker.get("price") if isinstance(ticker, dict) else None)
        if price <= 0:
            raise NoPriceData(f"no last price for {instrument}")
        return price

    @unavailable_on_error
    @retry_on_rate_limit(max_retries=2)
    def get_open_orders(self, instrument: Optional[str] = None) -> List[OpenOrder]:
        raw = self._client.futures_get_open_orders(symbol=instrument) if instrument \
            else self._client.futures_get_open_orders()
        orders = []
        for o in raw:
            try:
                order_type = OrderType(o.get("type"))
            except ValueError:
                # STOP_MARKET and friends are not ours; still list them as market-like.
                order_type = OrderType.MARKET
            price = _dec(o.get("price"))
            orders.append(OpenOrder(
                order_id=str(o.get("orderId")),
                instrument=o.get("symbol"),
                side=OrderSide(o.get("side")),
                order_type=order_type,
                quantity=_dec(o.get("origQty")),
                price=price if price > 0 else None,
                reduce_only=bool(o.get("reduceOnly")),
            ))
        return orders

    @unavailable_on_error
    @retry_on_rate_limit(max_retries=2)
    def get_order_status(self, instrument: str, order_id: str) -> OrderStatus:
        try:
            res = self._client.futures_get_order(symbol=instrument, orderId=order_id)
        except BinanceAPIException as e:
            if e.code in (UNKNOWN_ORDER, ORDER_NOT_FOUND):
                logger.warning("Order %s on %s not found", order_id, instrument)
                return OrderStatus.UNKNOWN
            raise
        return map_status(res.get("status"))
