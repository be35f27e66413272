"""Kline parsing and the public history loader."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest
import requests

from momentum_bot.core.errors import GatewayUnavailable, InstrumentNotSupported
from momentum_bot.data.history import BinanceHistoryLoader, klines_to_samples

D = Decimal
T0 = 1772452800000  # 2026-03-02 12:00 UTC


def kline(open_time, close="100.10", high="100.50", low="99.90", volume="12.5"):
    return [open_time, "100.00", high, low, close, volume, open_time + 299999, "0", 10, "0", "0", "0"]


class FakeResponse:
    def __init__(self, status_code, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    def __init__(self, response=None, exc=None):
        self.response = response
        self.exc = exc
        self.calls = []

    def get(self, url, params=None, timeout=None):
        self.calls.append((url, params))
        if self.exc is not None:
            raise self.exc
        return self.response


def test_klines_parse_to_decimal_and_sort():
    raw = [kline(T0 + 300000, close="101.2"), kline(T0, close="100.1")]
    samples = klines_to_samples(raw)
    assert [s.close for s in samples] == [D("100.1"), D("101.2")]
    assert isinstance(samples[0].high, Decimal)
    assert samples[0].volume == D("12.5")
    assert samples[0].timestamp == datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def test_duplicate_buckets_keep_latest():
    raw = [kline(T0, close="100.1"), kline(T0, close="100.3")]
    samples = klines_to_samples(raw)
    assert len(samples) == 1
    assert samples[0].close == D("100.3")


def test_empty_payload():
    assert klines_to_samples([]) == []


def test_loader_maps_symbol_and_caps_limit():
    session = FakeSession(FakeResponse(200, [kline(T0)]))
    loader = BinanceHistoryLoader(symbol_for=lambda s: "XBT" + s[3:], session=session)
    samples = loader.get_recent_samples("BTCUSDT", "5m", 5000)
    assert len(samples) == 1
    url, params = session.calls[0]
    assert url.endswith("/api/v3/klines")
    assert params == {"symbol": "XBTUSDT", "interval": "5m", "limit": 1000}


def test_invalid_symbol_is_not_supported():
    session = FakeSession(FakeResponse(400, {"code": -1121, "msg": "Invalid symbol."}))
    loader = BinanceHistoryLoader(session=session)
    with pytest.raises(InstrumentNotSupported):
        loader.get_recent_samples("FOOUSDT", "5m", 300)


def test_other_bad_request_is_unavailable():
    session = FakeSession(FakeResponse(400, {"code": -1100, "msg": "bad"}))
    with pytest.raises(GatewayUnavailable):
        BinanceHistoryLoader(session=session).get_recent_samples("BTCUSDT", "5m", 300)


def test_server_error_is_unavailable():
    session = FakeSession(FakeResponse(502, text="bad gateway"))
    with pytest.raises(GatewayUnavailable, match="502"):
        BinanceHistoryLoader(session=session).get_recent_samples("BTCUSDT", "5m", 300)


def test_connection_error_is_unavailable():
    session = FakeSession(exc=requests.ConnectionError("reset"))
    with pytest.raises(GatewayUnavailable):
        BinanceHistoryLoader(session=session).get_recent_samples("BTCUSDT", "5m", 300)
