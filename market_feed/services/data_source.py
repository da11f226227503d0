"""Authoritative refresh pass over the catalog with per-instrument fallback."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone, tzinfo
from typing import Awaitable, Callable, Dict, List

from pydantic import ValidationError

from ..models import TREND_LENGTH, DataSource, MarketData, MarketItem, Region, display_time, utc_now
from .alpha_vantage import AlphaVantageClient, UpstreamError, UpstreamThrottledError, normalize_series
from .catalog import DEFAULT_CATALOG, Catalog, IndexDefinition, display_rank
from .fallback import FallbackGenerator, random_trend
from .metrics import FALLBACK_INSTRUMENTS, UPSTREAM_CALLS


logger = logging.getLogger(__name__)

DEFAULT_CALL_BUDGET = 5
DEFAULT_CALL_DELAY = 0.25


class CallBudget:
    """Hard cap on upstream calls shared by a whole refresh pass."""

    def __init__(self, limit: int) -> None:
        self.limit = max(0, limit)
        self.used = 0

    @property
    def remaining(self) -> int:
        return self.limit - self.used

    @property
    def exhausted(self) -> bool:
        return self.used >= self.limit

    def consume(self) -> None:
        if self.exhausted:
            raise RuntimeError("call budget exhausted")
        self.used += 1


class DataSourceAdapter:
    """Build a dataset from upstream quotes, synthesising whatever cannot be fetched.

    A single instrument failing (HTTP error, throttling note, malformed body)
    never aborts the pass; it is replaced by a fallback row and the loop moves on.
    """

    def __init__(
        self,
        client: AlphaVantageClient | None,
        fallback: FallbackGenerator,
        *,
        call_budget: int = DEFAULT_CALL_BUDGET,
        call_delay: float = DEFAULT_CALL_DELAY,
        display_tz: tzinfo = timezone.utc,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._client = client
        self._fallback = fallback
        self._call_budget = call_budget
        self._call_delay = call_delay
        self._display_tz = display_tz
        self._sleep = sleep
        self._clock = clock

    async def fetch_all(self, catalog: Catalog | None = None) -> MarketData:
        catalog = catalog or DEFAULT_CATALOG
        budget = CallBudget(self._call_budget if self._client is not None else 0)
        regions: Dict[str, List[MarketItem]] = {}
        fetched = 0

        ordered = [
            (region, position, definition)
            for region in Region
            for position, definition in enumerate(catalog.get(region, ()))
        ]
        for index, (region, position, definition) in enumerate(ordered):
            item = await self._fetch_instrument(definition, region, position, budget)
            if item is None:
                item = self._fallback.generate_item(definition, region, position, self._clock())
            else:
                fetched += 1
            regions.setdefault(region.field_name, []).append(item)

            is_last = index == len(ordered) - 1
            if not is_last and not budget.exhausted:
                await self._sleep(self._call_delay)

        completed = self._clock()
        source = DataSource.AUTHORITATIVE if fetched else DataSource.SYNTHETIC
        logger.info(
            "Refresh pass complete: %d/%d instruments from upstream, %d calls used",
            fetched,
            len(ordered),
            budget.used,
        )
        return MarketData(
            **regions,
            last_updated=completed,
            last_full_refresh=completed,
            last_trend_update=completed,
            source=source,
        )

    async def _fetch_instrument(
        self,
        definition: IndexDefinition,
        region: Region,
        position: int,
        budget: CallBudget,
    ) -> MarketItem | None:
        if self._client is None:
            FALLBACK_INSTRUMENTS.labels(reason="no_client").inc()
            return None
        if budget.exhausted:
            logger.debug("Call budget exhausted, synthesising %s", definition.name)
            FALLBACK_INSTRUMENTS.labels(reason="budget").inc()
            return None

        budget.consume()
        try:
            quote = await self._client.fetch_global_quote(definition.symbol)
        except UpstreamThrottledError as exc:
            UPSTREAM_CALLS.labels(endpoint="global_quote", status="throttled").inc()
            FALLBACK_INSTRUMENTS.labels(reason="throttled").inc()
            logger.warning("Upstream throttled quote for %s: %s", definition.name, exc)
            return None
        except UpstreamError as exc:
            UPSTREAM_CALLS.labels(endpoint="global_quote", status="error").inc()
            FALLBACK_INSTRUMENTS.labels(reason="error").inc()
            logger.warning("Quote fetch failed for %s: %s", definition.name, exc)
            return None
        UPSTREAM_CALLS.labels(endpoint="global_quote", status="ok").inc()

        history: List[float] = []
        if not budget.exhausted:
            budget.consume()
            try:
                history = await self._client.fetch_intraday(definition.symbol)
                UPSTREAM_CALLS.labels(endpoint="intraday", status="ok").inc()
            except UpstreamThrottledError as exc:
                UPSTREAM_CALLS.labels(endpoint="intraday", status="throttled").inc()
                logger.warning("Upstream throttled intraday series for %s: %s", definition.name, exc)
            except UpstreamError as exc:
                UPSTREAM_CALLS.labels(endpoint="intraday", status="error").inc()
                logger.warning("Intraday fetch failed for %s: %s", definition.name, exc)

        rng = self._fallback.rng
        now = self._clock()
        normalized = normalize_series(history)
        if len(normalized) >= TREND_LENGTH:
            trend1 = normalized[:TREND_LENGTH]
            trend2 = normalized[-TREND_LENGTH:]
        else:
            trend1 = random_trend(rng)
            trend2 = random_trend(rng)

        # The quote endpoint carries no volume or YTD figures.
        ytd = definition.reference_ytd + rng.uniform(-1.0, 1.0)
        try:
            return MarketItem(
                id=definition.name,
                num=display_rank(region, position),
                value=quote.price,
                change=quote.change,
                pct_change=quote.change_percent,
                avat=rng.uniform(-50.0, 50.0),
                time=display_time(now, self._display_tz),
                ytd=ytd,
                ytd_cur=ytd * (1 + rng.uniform(-0.05, 0.05)),
                trend1=trend1,
                trend2=trend2,
                last_updated=now,
                trend_updated=now,
            )
        except ValidationError as exc:
            FALLBACK_INSTRUMENTS.labels(reason="malformed").inc()
            logger.warning("Rejected malformed quote for %s: %s", definition.name, exc)
            return None
