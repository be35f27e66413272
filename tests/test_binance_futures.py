"""Binance gateway mapping, with the python-binance client replaced by a stub."""

import json
from decimal import Decimal

import pytest
from binance.exceptions import BinanceAPIException

from momentum_bot.core.errors import GatewayUnavailable, NoPriceData, OrderRejected
from momentum_bot.core.types import OrderSide, OrderStatus, OrderType
from momentum_bot.execution import binance_futures
from momentum_bot.execution.binance_futures import BinanceFuturesClient, map_status

D = Decimal

EXCHANGE_INFO = {
    "symbols": [
        {
            "symbol": "BTCUSDT",
            "filters": [
                {"filterType": "PRICE_FILTER", "tickSize": "0.10"},
                {"filterType": "LOT_SIZE", "minQty": "0.001", "stepSize": "0.001"},
            ],
        }
    ]
}


def api_error(status, code, msg="error"):
    return BinanceAPIException(None, status, json.dumps({"code": code, "msg": msg}))


class StubClient:
    def __init__(self):
        self.created = []
        self.order_response = {"orderId": 42, "status": "FILLED", "avgPrice": "100.5", "executedQty": "0.002"}
        self.errors = {}
        self.positions = []
        self.ticker = {"symbol": "BTCUSDT", "price": "100.5"}
        self.order_status = {"status": "NEW"}
        self.open_orders = []
        self.info_calls = 0

    def _maybe_raise(self, name):
        err = self.errors.get(name)
        if isinstance(err, list):
            err = err.pop(0) if err else None
        if err is not None:
            raise err

    def futures_exchange_info(self):
        self.info_calls += 1
        return EXCHANGE_INFO

    def futures_create_order(self, **params):
        self.created.append(params)
        self._maybe_raise("create")
        return self.order_response

    def futures_cancel_order(self, **params):
        self._maybe_raise("cancel")
        return {}

    def futures_position_information(self):
        self._maybe_raise("positions")
        return self.positions

    def futures_account_balance(self):
        return [
            {"asset": "BNB", "balance": "1", "availableBalance": "1"},
            {"asset": "USDT", "balance": "1000", "availableBalance": "750.5"},
        ]

    def futures_symbol_ticker(self, symbol):
        return self.ticker

    def futures_get_open_orders(self, symbol=None):
        return self.open_orders

    def futures_get_order(self, **params):
        self._maybe_raise("get_order")
        return self.order_status


@pytest.fixture
def stub():
    return StubClient()


@pytest.fixture
def gateway(stub):
    return BinanceFuturesClient("k", "s", testnet=True, client=stub)


def test_status_mapping():
    assert map_status("NEW") is OrderStatus.OPEN
    assert map_status("canceled") is OrderStatus.CANCELLED
    assert map_status("EXPIRED") is OrderStatus.CANCELLED
    assert map_status("FILLED") is OrderStatus.FILLED


def test_unrecognised_status_is_unknown():
    assert map_status("NEW_INSURANCE") is OrderStatus.UNKNOWN
    assert map_status(None) is OrderStatus.UNKNOWN


def test_market_order_params_and_handle(gateway, stub):
    handle = gateway.place_order("BTCUSDT", OrderSide.BUY, D("0.0029"), OrderType.MARKET)
    params = stub.created[0]
    assert params["quantity"] == "0.002"
    assert params["newOrderRespType"] == "RESULT"
    assert "reduceOnly" not in params
    assert handle.order_id == "42"
    assert handle.status is OrderStatus.FILLED
    assert handle.avg_price == D("100.5")


def test_limit_reduce_only_rounds_price(gateway, stub):
    stub.order_response = {"orderId": 7, "status": "NEW", "avgPrice": "0", "origQty": "0.002"}
    handle = gateway.place_order("BTCUSDT", OrderSide.SELL, D("0.002"), OrderType.LIMIT, D("101.349"), reduce_only=True)
    params = stub.created[0]
    assert params["price"] == "101.3"
    assert params["timeInForce"] == "GTC"
    assert params["reduceOnly"] == "true"
    assert handle.status is OrderStatus.OPEN
    assert handle.avg_price is None


def test_exchange_info_is_cached(gateway, stub):
    gateway.round_quantity("BTCUSDT", D("1"))
    gateway.round_quantity("BTCUSDT", D("2"))
    assert stub.info_calls == 1


def test_quantity_below_minimum_rejected_without_call(gateway, stub):
    with pytest.raises(OrderRejected):
        gateway.place_order("BTCUSDT", OrderSide.BUY, D("0.0004"), OrderType.MARKET)
    assert stub.created == []


def test_client_error_is_rejection(gateway, stub):
    stub.errors["create"] = api_error(400, -2019, "Margin is insufficient.")
    with pytest.raises(OrderRejected, match="-2019"):
        gateway.place_order("BTCUSDT", OrderSide.BUY, D("0.002"), OrderType.MARKET)


def test_server_error_is_unavailable_and_not_retried(gateway, stub):
    stub.errors["create"] = api_error(503, -1001, "Internal error")
    with pytest.raises(GatewayUnavailable):
        gateway.place_order("BTCUSDT", OrderSide.BUY, D("0.002"), OrderType.MARKET)
    assert len(stub.created) == 1


def test_cancel_unknown_order_returns_false(gateway, stub):
    stub.errors["cancel"] = api_error(400, -2011, "Unknown order sent.")
    assert gateway.cancel_order("BTCUSDT", "1") is False


def test_cancel_success(gateway):
    assert gateway.cancel_order("BTCUSDT", "1") is True


def test_positions_skip_flat_and_map_side(gateway, stub):
    stub.positions = [
        {"symbol": "BTCUSDT", "positionAmt": "-0.002", "entryPrice": "100", "markPrice": "99.5"},
        {"symbol": "ETHUSDT", "positionAmt": "0", "entryPrice": "0", "markPrice": "0"},
    ]
    positions = gateway.get_positions()
    assert len(positions) == 1
    assert positions[0].side is OrderSide.SELL
    assert positions[0].quantity == D("0.002")
    assert positions[0].mark_price == D("99.5")


def test_read_retries_rate_limit_then_succeeds(gateway, stub, monkeypatch):
    monkeypatch.setattr(binance_futures.time, "sleep", lambda s: None)
    stub.errors["positions"] = [api_error(429, -1003, "Too many requests")]
    assert gateway.get_positions() == []


def test_read_failure_is_unavailable(gateway, stub, monkeypatch):
    monkeypatch.setattr(binance_futures.time, "sleep", lambda s: None)
    stub.errors["positions"] = [api_error(429, -1003), api_error(429, -1003)]
    with pytest.raises(GatewayUnavailable):
        gateway.get_positions()


def test_balance_for_quote_asset(gateway):
    bal = gateway.get_balance()
    assert bal.available == D("750.5")
    assert bal.locked == D("249.5")


def test_zero_price_is_no_price_data(gateway, stub):
    stub.ticker = {"symbol": "BTCUSDT", "price": "0"}
    with pytest.raises(NoPriceData):
        gateway.get_last_price("BTCUSDT")


def test_open_orders_mapping(gateway, stub):
    stub.open_orders = [
        {"orderId": 9, "symbol": "BTCUSDT", "side": "SELL", "type": "LIMIT", "origQty": "0.002",
         "price": "101.3", "reduceOnly": True},
    ]
    [order] = gateway.get_open_orders("BTCUSDT")
    assert order.order_id == "9"
    assert order.order_type is OrderType.LIMIT
    assert order.reduce_only is True
    assert order.price == D("101.3")


def test_missing_order_status_is_unknown(gateway, stub):
    stub.errors["get_order"] = api_error(400, -2013, "Order does not exist.")
    assert gateway.get_order_status("BTCUSDT", "5") is OrderStatus.UNKNOWN
