"""Client for the Alpha Vantage quote endpoints."""

from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Sequence

import httpx


logger = logging.getLogger(__name__)

BASE_URL = "https://www.alphavantage.co/query"
INTRADAY_POINTS = 16
INTRADAY_SERIES_KEY = "Time Series (60min)"
# Alpha Vantage signals throttling in a 200 response body rather than a status code.
THROTTLE_KEYS = ("Note", "Information")


class UpstreamError(RuntimeError):
    """The upstream provider returned an error or an unusable payload."""


class UpstreamThrottledError(UpstreamError):
    """The upstream provider asked us to slow down."""


@dataclass(frozen=True)
class GlobalQuote:
    symbol: str
    price: float
    change: float
    change_percent: float


def normalize_series(values: Sequence[float]) -> List[float]:
    """Min-max scale ``values`` into [0, 1]; a flat series maps to zeros."""

    if not values:
        return []
    low = min(values)
    span = max(values) - low or 1.0
    return [(value - low) / span for value in values]


class AlphaVantageClient:
    """Retrieve global quotes and hourly closes from Alpha Vantage."""

    def __init__(
        self,
        api_key: str | None = None,
        *,
        session: httpx.AsyncClient | None = None,
        base_url: str = BASE_URL,
        timeout: float = 10.0,
    ) -> None:
        key = api_key or os.getenv("ALPHA_VANTAGE_API_KEY")
        if not key:
            raise ValueError("ALPHA_VANTAGE_API_KEY environment variable is required")

        self._api_key = key
        self._client = session
        self._base_url = base_url
        self._timeout = timeout
        self._owns_client = session is None

    async def _client_instance(self) -> httpx.AsyncClient:
        if self._client is None:
            timeout = httpx.Timeout(self._timeout, connect=5.0)
            self._client = httpx.AsyncClient(timeout=timeout)
        return self._client

    async def _query(self, function: str, symbol: str, **extra: str) -> Mapping[str, Any]:
        client = await self._client_instance()
        params = {"function": function, "symbol": symbol, "apikey": self._api_key, **extra}
        try:
            response = await client.get(self._base_url, params=params)
            response.raise_for_status()
            payload = response.json()
        except Exception as exc:
            raise UpstreamError(f"{function} request for {symbol} failed: {exc}") from exc

        if not isinstance(payload, Mapping):
            raise UpstreamError(f"unexpected {function} payload type for {symbol}: {type(payload)!r}")
        for key in THROTTLE_KEYS:
            if key in payload:
                raise UpstreamThrottledError(f"Alpha Vantage throttled {symbol}: {payload[key]}")
        return payload

    async def fetch_global_quote(self, symbol: str) -> GlobalQuote:
        payload = await self._query("GLOBAL_QUOTE", symbol)
        quote = payload.get("Global Quote")
        if not isinstance(quote, Mapping) or not quote:
            raise UpstreamError(f"no global quote returned for {symbol}")
        try:
            parsed = GlobalQuote(
                symbol=symbol,
                price=float(quote["05. price"]),
                change=float(quote["09. change"]),
                change_percent=float(str(quote["10. change percent"]).rstrip("%")),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise UpstreamError(f"malformed global quote for {symbol}: {exc}") from exc
        figures = (parsed.price, parsed.change, parsed.change_percent)
        if not all(math.isfinite(figure) for figure in figures) or parsed.price < 0:
            raise UpstreamError(f"implausible global quote for {symbol}: {figures}")
        return parsed

    async def fetch_intraday(self, symbol: str, points: int = INTRADAY_POINTS) -> List[float]:
        """Return the most recent hourly closes, oldest first (roughly two sessions)."""

        payload = await self._query("TIME_SERIES_INTRADAY", symbol, interval="60min", outputsize="compact")
        series = payload.get(INTRADAY_SERIES_KEY)
        if not isinstance(series, Mapping) or not series:
            raise UpstreamError(f"no intraday series returned for {symbol}")

        closes: Dict[str, float] = {}
        for timestamp, bar in series.items():
            try:
                closes[timestamp] = float(bar["4. close"])
            except (KeyError, TypeError, ValueError):
                logger.debug("Skipping malformed intraday bar %s for %s", timestamp, symbol)
        if not closes:
            raise UpstreamError(f"intraday series for {symbol} has no usable closes")
        ordered = [closes[timestamp] for timestamp in sorted(closes)]
        return ordered[-points:]

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
