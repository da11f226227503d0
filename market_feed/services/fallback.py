"""Locally fabricated market data used whenever nothing better is available."""

from __future__ import annotations

import random
from datetime import datetime, timezone, tzinfo
from typing import List

from ..models import TREND_LENGTH, DataSource, MarketData, MarketItem, Region, display_time, utc_now
from .catalog import DEFAULT_CATALOG, Catalog, IndexDefinition, display_rank


def random_trend(rng: random.Random, length: int = TREND_LENGTH) -> List[float]:
    return [min(1.0, max(0.0, rng.random())) for _ in range(length)]


class FallbackGenerator:
    """Fabricate plausible index rows without any external dependency.

    Every instrument is drawn independently around its catalog reference
    level; unlike the simulator there is no shared market factor.
    """

    def __init__(
        self,
        catalog: Catalog | None = None,
        *,
        rng: random.Random | None = None,
        display_tz: tzinfo = timezone.utc,
    ) -> None:
        self._catalog = catalog or DEFAULT_CATALOG
        self._rng = rng or random.Random()
        self._display_tz = display_tz

    @property
    def catalog(self) -> Catalog:
        return self._catalog

    @property
    def rng(self) -> random.Random:
        return self._rng

    def generate_item(
        self,
        definition: IndexDefinition,
        region: Region,
        position: int,
        now: datetime | None = None,
    ) -> MarketItem:
        now = now or utc_now()
        rng = self._rng
        value = definition.reference_level * (1 + rng.uniform(-0.02, 0.02))
        change = value * rng.uniform(-0.015, 0.015)
        ytd = definition.reference_ytd + rng.uniform(-1.0, 1.0)
        return MarketItem(
            id=definition.name,
            num=display_rank(region, position),
            value=value,
            change=change,
            pct_change=change / (value - change) * 100,
            avat=rng.uniform(-50.0, 50.0),
            time=display_time(now, self._display_tz),
            ytd=ytd,
            ytd_cur=ytd * (1 + rng.uniform(-0.05, 0.05)),
            trend1=random_trend(rng),
            trend2=random_trend(rng),
            last_updated=now,
            trend_updated=now,
        )

    def generate(self, now: datetime | None = None) -> MarketData:
        now = now or utc_now()
        regions = {
            region.field_name: [
                self.generate_item(definition, region, position, now)
                for position, definition in enumerate(self._catalog.get(region, ()))
            ]
            for region in Region
        }
        return MarketData(
            **regions,
            last_updated=now,
            last_trend_update=now,
            source=DataSource.SYNTHETIC,
        )
