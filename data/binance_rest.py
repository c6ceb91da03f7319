# data/binance_rest.py
"""Binance USD-M futures REST client: paged klines, premium index, aggTrades."""
from __future__ import annotations

from typing import Any, Optional

import requests

from config.settings import HttpConfig
from core.constants import (
    AGG_TRADES_WINDOW_MS,
    API_PAGE_SIZE,
    DEFAULT_TIMEFRAME,
    timeframe_ms,
)
from core.exceptions import DataFetchError
from core.types import DataType, Page
from data.http_session import create_session
from data.interfaces import IncrementalClient
from data.records import frame_from_agg_trades, frame_from_klines, make_batch
from utils.logger import get_logger

log = get_logger(__name__)

_ENDPOINTS = {
    DataType.CANDLES: "/fapi/v1/klines",
    DataType.PREMIUM_INDEX: "/fapi/v1/premiumIndexKlines",
    DataType.AGG_TRADES: "/fapi/v1/aggTrades",
}


class BinanceRestClient(IncrementalClient):
    """
    One ``fetch_page`` call is one HTTP request.

    Klines advance by bar open time. AggTrades are queried in windows of
    under an hour, the widest span the endpoint accepts when both
    ``startTime`` and ``endTime`` are given.
    """

    def __init__(
        self,
        http_config: Optional[HttpConfig] = None,
        session: Optional[requests.Session] = None,
        page_size: int = API_PAGE_SIZE,
    ):
        self._config = http_config or HttpConfig()
        self._session = session or create_session(self._config)
        self._base_url = self._config.rest_base_url.rstrip("/")
        self._timeout = (self._config.connect_timeout, self._config.read_timeout)
        self.page_size = max(1, min(int(page_size), API_PAGE_SIZE))

    def close(self) -> None:
        self._session.close()

    def _get_json(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        url = f"{self._base_url}{path}"
        try:
            response = self._session.get(url, params=params, timeout=self._timeout)
        except requests.exceptions.RequestException as exc:
            raise DataFetchError(
                f"Request to {path} failed: {exc}",
                details={"url": url, "params": params},
            ) from exc

        if not response.ok:
            body = (response.text or "")[:200]
            log.debug("HTTP %d for %s: %s", response.status_code, url, body)
            raise DataFetchError(
                f"HTTP {response.status_code} from {path}: {body}",
                details={"url": url, "status": response.status_code, "params": params},
            )
        try:
            return response.json()
        except ValueError as exc:
            raise DataFetchError(f"Invalid JSON from {path}", details={"url": url}) from exc

    # ------------------------------------------------------------------

    def fetch_page(
        self,
        symbol: str,
        data_type: DataType,
        timeframe: Optional[str],
        start: int,
        end: int,
    ) -> Page:
        if data_type is DataType.AGG_TRADES:
            return self._agg_trades_page(symbol, int(start), int(end))
        return self._klines_page(symbol, data_type, timeframe or DEFAULT_TIMEFRAME, int(start), int(end))

    def _klines_page(
        self,
        symbol: str,
        data_type: DataType,
        timeframe: str,
        start: int,
        end: int,
    ) -> Page:
        rows = self._get_json(
            _ENDPOINTS[data_type],
            {
                "symbol": symbol,
                "interval": timeframe,
                "startTime": start,
                "endTime": end,
                "limit": self.page_size,
            },
        )
        if not isinstance(rows, list):
            raise DataFetchError(f"Unexpected klines payload for {symbol}", details={"payload": str(rows)[:200]})

        frame = frame_from_klines(rows, data_type)
        frame = frame[frame["timestamp"] <= end].reset_index(drop=True)
        batch = make_batch(symbol, data_type, timeframe, frame)

        next_cursor: Optional[int] = None
        if len(rows) >= self.page_size and not frame.empty:
            next_cursor = int(frame["timestamp"].iloc[-1]) + timeframe_ms(timeframe)
            if next_cursor > end:
                next_cursor = None
        return Page(records=batch, next_cursor=next_cursor)

    def _agg_trades_page(self, symbol: str, start: int, end: int) -> Page:
        window_end = min(end, start + AGG_TRADES_WINDOW_MS)
        rows = self._get_json(
            _ENDPOINTS[DataType.AGG_TRADES],
            {
                "symbol": symbol,
                "startTime": start,
                "endTime": window_end,
                "limit": self.page_size,
            },
        )
        if not isinstance(rows, list):
            raise DataFetchError(f"Unexpected aggTrades payload for {symbol}", details={"payload": str(rows)[:200]})

        frame = frame_from_agg_trades(rows)
        batch = make_batch(symbol, DataType.AGG_TRADES, None, frame)

        if len(rows) >= self.page_size and not frame.empty:
            # Window truncated by the page limit: resume at the last trade
            # time. Trades sharing that millisecond are re-read; upserts
            # make that harmless.
            last_time = int(frame["timestamp"].max())
            next_cursor = last_time if last_time > start else start + 1
        else:
            next_cursor = window_end + 1

        if next_cursor > end:
            return Page(records=batch, next_cursor=None)
        return Page(records=batch, next_cursor=next_cursor)

    # ------------------------------------------------------------------

    def server_time(self) -> int:
        payload = self._get_json("/fapi/v1/time")
        try:
            return int(payload["serverTime"])
        except (KeyError, TypeError, ValueError) as exc:
            raise DataFetchError("Malformed server time payload", details={"payload": str(payload)[:200]}) from exc

    def ping(self) -> bool:
        try:
            self._get_json("/fapi/v1/ping")
            return True
        except DataFetchError as exc:
            log.debug("Ping failed: %s", exc)
            return False
