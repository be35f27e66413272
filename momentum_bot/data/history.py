"""
Historical data loader: recent klines from Binance's public REST API.
Used to seed windows, refresh them hourly and top them up each decision tick.
"""

from __future__ import annotations
import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Callable, List, Optional

import pandas as pd
import requests

from momentum_bot.core.errors import GatewayUnavailable, InstrumentNotSupported
from momentum_bot.core.types import PriceSample

logger = logging.getLogger("momentum_bot.data.history")

KLINE_COLUMNS = [
    "open_time", "open", "high", "low", "close", "volume",
    "close_time", "quote_av", "num_trades", "tb_base_av", "tb_quote_av", "ignore",
]
INVALID_SYMBOL = -1121


class HistoryLoader(ABC):
    """Producer of PriceSample batches."""

    @abstractmethod
    def get_recent_samples(self, instrument: str, bucket_size: str, count: int) -> List[PriceSample]:
        """Oldest-first samples. Raises InstrumentNotSupported or GatewayUnavailable."""
        pass


def klines_to_samples(raw: list) -> List[PriceSample]:
    """Binance kline rows -> PriceSample list. Prices parsed from strings, never via float."""
    if not raw:
        return []
    df = pd.DataFrame(raw, columns=KLINE_COLUMNS)
    for col in ("high", "low", "close", "volume"):
        df[col] = df[col].map(lambda v: Decimal(str(v)))
    df["time"] = pd.to_datetime(df["open_time"].astype("int64"), unit="ms", utc=True)
    df = df.sort_values("time").drop_duplicates("time", keep="last")
    return [
        PriceSample(
            high=row.high,
            low=row.low,
            close=row.close,
            volume=row.volume,
            timestamp=row.time.to_pydatetime(),
        )
        for row in df.itertuples(index=False)
    ]


class BinanceHistoryLoader(HistoryLoader):
    """Public kline endpoint, no key required."""

    def __init__(
        self,
        base_url: str = "https://api.binance.com",
        symbol_for: Optional[Callable[[str], str]] = None,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._symbol_for = symbol_for or (lambda s: s)
        self.timeout = timeout
        self._session = session or requests.Session()

    def get_recent_samples(self, instrument: str, bucket_size: str, count: int) -> List[PriceSample]:
        symbol = self._symbol_for(instrument)
        params = {"symbol": symbol, "interval": bucket_size, "limit": min(count, 1000)}
        try:
            r = self._session.get(f"{self.base_url}/api/v3/klines", params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise GatewayUnavailable(f"klines {symbol}: {e}") from e
        if r.status_code == 400:
            try:
                code = r.json().get("code")
            except ValueError:
                code = None
            if code == INVALID_SYMBOL:
                raise InstrumentNotSupported(f"{instrument} ({symbol}) not available on history feed")
        if r.status_code != 200:
            raise GatewayUnavailable(f"klines {symbol}: HTTP {r.status_code} {r.text[:200]}")
        samples = klines_to_samples(r.json())
        logger.debug("Loaded %d %s klines for %s", len(samples), bucket_size, instrument)
        return samples
