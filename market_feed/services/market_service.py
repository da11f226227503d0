"""Cache-first market data access with simulated ticks and authoritative refreshes."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from pydantic import ValidationError

from ..models import DataSource, MarketData, utc_now
from .baselines import YearStartBaselines
from .cache_store import CacheStore, StoreUnavailableError
from .data_source import DataSourceAdapter
from .fallback import FallbackGenerator
from .metrics import MARKET_DATA_READS, STORE_ERRORS
from .simulator import MarketSimulator


logger = logging.getLogger(__name__)

MARKET_DATA_KEY = "market_data"
TREND_UPDATE_KEY = "last_sparkline_update"

TICK_TTL_SECONDS = 60 * 60
REFRESH_TTL_SECONDS = 48 * 60 * 60
REFRESH_INTERVAL = timedelta(hours=24)
REFRESH_MAX_AGE = timedelta(hours=23)
MIN_INSTRUMENTS = 5


class InsufficientDataError(RuntimeError):
    """A refresh pass returned too few instruments to replace the cache."""


@dataclass
class MarketSnapshot:
    data: MarketData
    from_cache: bool
    store_available: bool = True
    error: Optional[str] = None


@dataclass
class SeedResult:
    data: MarketData
    stored: bool
    error: Optional[str] = None


class MarketDataService:
    """Entry point used by the HTTP layer and the scheduler.

    Reads never fail: a missing key, an unreachable store or an unreadable
    payload all degrade to freshly generated fallback data.
    """

    def __init__(
        self,
        store: CacheStore,
        simulator: MarketSimulator,
        fallback: FallbackGenerator,
        adapter: DataSourceAdapter,
        baselines: YearStartBaselines,
        *,
        clock: Callable[[], datetime] = utc_now,
        tick_ttl: int = TICK_TTL_SECONDS,
        refresh_ttl: int = REFRESH_TTL_SECONDS,
        refresh_max_age: timedelta = REFRESH_MAX_AGE,
        min_instruments: int = MIN_INSTRUMENTS,
    ) -> None:
        self._store = store
        self._simulator = simulator
        self._fallback = fallback
        self._adapter = adapter
        self._baselines = baselines
        self._clock = clock
        self._tick_ttl = tick_ttl
        self._refresh_ttl = refresh_ttl
        self._refresh_max_age = refresh_max_age
        self._min_instruments = min_instruments

    async def _load_cached(self) -> Optional[MarketData]:
        raw = await self._store.get(MARKET_DATA_KEY)
        if raw is None:
            return None
        return MarketData.model_validate_json(raw)

    def _fallback_snapshot(self, now: datetime, *, store_available: bool, error: str | None) -> MarketSnapshot:
        data = self._fallback.generate(now)
        self._baselines.observe(data, now)
        MARKET_DATA_READS.labels(source=DataSource.SYNTHETIC.value).inc()
        return MarketSnapshot(data=data, from_cache=False, store_available=store_available, error=error)

    async def read(self) -> MarketSnapshot:
        now = self._clock()
        try:
            cached = await self._load_cached()
        except StoreUnavailableError as exc:
            STORE_ERRORS.labels(operation="read").inc()
            logger.warning("Cache store unavailable, using fallback data: %s", exc)
            return self._fallback_snapshot(now, store_available=False, error=str(exc))
        except ValidationError as exc:
            logger.warning("Cached market data is unreadable, using fallback data: %s", exc)
            return self._fallback_snapshot(now, store_available=True, error="cached market data invalid")

        if cached is None:
            logger.info("No cached market data, using fallback data")
            return self._fallback_snapshot(now, store_available=True, error=None)

        MARKET_DATA_READS.labels(source=DataSource.CACHED.value).inc()
        return MarketSnapshot(
            data=cached.model_copy(update={"source": DataSource.CACHED}),
            from_cache=True,
        )

    async def _trend_reference(self) -> Optional[datetime]:
        try:
            raw = await self._store.get(TREND_UPDATE_KEY)
        except StoreUnavailableError as exc:
            logger.warning("Could not read last trend update time: %s", exc)
            return None
        if not raw:
            return None
        try:
            return datetime.fromtimestamp(int(raw) / 1000, tz=timezone.utc)
        except (TypeError, ValueError, OverflowError):
            logger.warning("Ignoring malformed %s value %r", TREND_UPDATE_KEY, raw)
            return None

    async def update(self) -> MarketData:
        """Apply one simulated tick and persist it for the next reader."""

        snapshot = await self.read()
        now = self._clock()
        reference = await self._trend_reference() if snapshot.store_available else None
        previous_trend_update = snapshot.data.last_trend_update
        updated = self._simulator.tick(snapshot.data, now, trend_reference=reference)

        if not snapshot.store_available:
            return updated
        # The trend key must never get ahead of the stored dataset.
        try:
            await self._store.set(MARKET_DATA_KEY, updated.to_cache_json(), ttl_seconds=self._tick_ttl)
            if updated.last_trend_update != previous_trend_update and updated.last_trend_update is not None:
                await self._store.set(TREND_UPDATE_KEY, str(int(updated.last_trend_update.timestamp() * 1000)))
        except StoreUnavailableError as exc:
            STORE_ERRORS.labels(operation="write").inc()
            logger.warning("Could not store simulated market data: %s", exc)
        return updated

    def refresh_due(self, data: MarketData | None, now: datetime) -> bool:
        if data is None or data.last_full_refresh is None:
            return True
        return now - data.last_full_refresh > self._refresh_max_age

    async def refresh_from_source(self, force: bool = False) -> str:
        """Scheduled task body: replace the cache with an authoritative pass if one is due."""

        now = self._clock()
        if not force:
            try:
                existing = await self._load_cached()
            except (StoreUnavailableError, ValidationError) as exc:
                logger.warning("Could not inspect cached market data before refresh: %s", exc)
                existing = None
            if not self.refresh_due(existing, now):
                logger.info("Recent market data found in cache, skipping refresh")
                return "skipped: cached data is recent"

        logger.info("Starting market data refresh from upstream provider")
        data = await self._adapter.fetch_all(self._fallback.catalog)
        count = data.instrument_count()
        if count < self._min_instruments:
            raise InsufficientDataError(f"refresh produced {count} instruments, need {self._min_instruments}")

        await self._store.set(MARKET_DATA_KEY, data.to_cache_json(), ttl_seconds=self._refresh_ttl)
        logger.info("Market data refreshed (%s, %d instruments)", data.source.value, count)
        return f"refreshed: {count} instruments ({data.source.value})"

    async def seed(self) -> SeedResult:
        """Populate the cache once, falling back to generated data if the pass fails."""

        now = self._clock()
        try:
            data = await self._adapter.fetch_all(self._fallback.catalog)
            if data.instrument_count() < self._min_instruments:
                raise InsufficientDataError("not enough data received from upstream")
        except Exception as exc:
            logger.warning("Upstream pass failed while seeding, using fallback data: %s", exc)
            data = self._fallback.generate(now)

        try:
            await self._store.set(MARKET_DATA_KEY, data.to_cache_json(), ttl_seconds=self._tick_ttl)
        except StoreUnavailableError as exc:
            STORE_ERRORS.labels(operation="seed").inc()
            logger.error("Error storing seed data: %s", exc)
            return SeedResult(data=data, stored=False, error=str(exc))
        return SeedResult(data=data, stored=True)
