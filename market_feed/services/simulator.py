"""Correlated random-walk simulator advancing index values between refreshes."""

from __future__ import annotations

import logging
import random
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Dict, List

from ..models import DataSource, MarketData, MarketItem, Region, display_time, utc_now
from .baselines import YearStartBaselines
from .catalog import volatility_multiplier
from .fallback import random_trend
from .metrics import INSTRUMENT_TICK_ERRORS, SIMULATED_TICKS


logger = logging.getLogger(__name__)

TREND_INTERVAL = timedelta(minutes=5)
# Percent move for a full-strength combined factor; keeps 30s ticks realistic.
TICK_MAGNITUDE = 0.2

SENTIMENT_WEIGHT = 0.4
REGION_WEIGHT = 0.4
IDIOSYNCRATIC_WEIGHT = 0.2
REGION_SENTIMENT_SHARE = 0.7


class MarketSimulator:
    """Produce the next tick of a dataset without calling any external service.

    One sentiment draw moves every instrument, each region adds its own
    factor on top, and instruments contribute a small idiosyncratic term, so
    indices move together the way real markets do. Draws happen in a fixed
    order, which makes a tick reproducible for a seeded ``rng``.
    """

    def __init__(
        self,
        baselines: YearStartBaselines,
        *,
        rng: random.Random | None = None,
        market_tz: tzinfo = timezone.utc,
        open_hour: int = 10,
        close_hour: int = 15,
        trend_interval: timedelta = TREND_INTERVAL,
    ) -> None:
        self._baselines = baselines
        self._rng = rng or random.Random()
        self._market_tz = market_tz
        self._open_hour = open_hour
        self._close_hour = close_hour
        self._trend_interval = trend_interval

    @property
    def baselines(self) -> YearStartBaselines:
        return self._baselines

    def trends_due(
        self,
        previous: MarketData,
        now: datetime,
        trend_reference: datetime | None = None,
    ) -> bool:
        references = [ref for ref in (previous.last_trend_update, trend_reference) if ref is not None]
        if not references:
            return True
        return now - max(references) >= self._trend_interval

    def volume_multiplier(self, now: datetime) -> float:
        """Volume swings harder around the open and the close."""

        hour = now.astimezone(self._market_tz).hour
        if hour < self._open_hour or hour > self._close_hour:
            return 1.5
        return 1.0

    def tick(
        self,
        previous: MarketData,
        now: datetime | None = None,
        trend_reference: datetime | None = None,
    ) -> MarketData:
        now = now or utc_now()
        rng = self._rng
        update_trends = self.trends_due(previous, now, trend_reference)

        sentiment = rng.uniform(-1.0, 1.0)
        region_factors: Dict[Region, float] = {
            region: sentiment * REGION_SENTIMENT_SHARE + rng.uniform(-0.3, 0.3) for region in Region
        }
        volume_mult = self.volume_multiplier(now)

        regions: Dict[str, List[MarketItem]] = {}
        for region in Region:
            regions[region.field_name] = [
                self._tick_item(item, sentiment, region_factors[region], volume_mult, update_trends, now)
                for item in previous.region(region)
            ]

        SIMULATED_TICKS.labels(trends_updated=str(update_trends).lower()).inc()
        if update_trends:
            logger.debug("Trend sequences advanced at %s", now.isoformat())
        return previous.model_copy(
            update={
                **regions,
                "last_updated": now,
                "last_trend_update": now if update_trends else previous.last_trend_update,
                "source": DataSource.SIMULATED,
            }
        )

    def _tick_item(
        self,
        item: MarketItem,
        sentiment: float,
        region_factor: float,
        volume_mult: float,
        update_trends: bool,
        now: datetime,
    ) -> MarketItem:
        rng = self._rng
        try:
            idiosyncratic = rng.uniform(-0.4, 0.4)
            combined = (
                sentiment * SENTIMENT_WEIGHT
                + region_factor * REGION_WEIGHT
                + idiosyncratic * IDIOSYNCRATIC_WEIGHT
            )
            move_pct = combined * TICK_MAGNITUDE * volatility_multiplier(item.id)
            value = max(0.0, item.value + item.value * move_pct / 100)
            change = item.change + (value - item.value)
            pct_change = change / (value - change) * 100

            avat = item.avat + rng.uniform(-1.0, 1.0) * volume_mult
            ytd = self._baselines.ytd_for(item, value, now)
            ytd_cur = ytd * (1 + rng.uniform(-0.05, 0.05))

            update = {
                "value": value,
                "change": change,
                "pct_change": pct_change,
                "avat": avat,
                "ytd": ytd,
                "ytd_cur": ytd_cur,
                "time": display_time(now, self._market_tz),
                "last_updated": now,
            }
            if update_trends:
                update["trend1"] = self._evolve(item.trend1)
                update["trend2"] = self._evolve(item.trend2)
                update["trend_updated"] = now
            return item.model_copy(update=update)
        except Exception as exc:
            INSTRUMENT_TICK_ERRORS.inc()
            logger.warning("Tick failed for %s, passing it through: %s", item.id, exc)
            return item.model_copy(
                update={
                    "trend1": item.trend1 or random_trend(rng),
                    "trend2": item.trend2 or random_trend(rng),
                    "time": display_time(now, self._market_tz),
                    "last_updated": now,
                }
            )

    def _evolve(self, trend: List[float]) -> List[float]:
        if not trend:
            return random_trend(self._rng)
        latest = trend[-1] + self._rng.uniform(-0.1, 0.1)
        return [*trend[1:], min(1.0, max(0.0, latest))]
