"""Year-start reference levels used to recompute YTD performance."""

from __future__ import annotations

import logging
from datetime import datetime, timezone, tzinfo
from threading import RLock
from typing import Dict

from ..models import MarketData, MarketItem


logger = logging.getLogger(__name__)


class YearStartBaselines:
    """Per-instrument year-start levels kept for the life of the process.

    The first dataset observed supplies ``value / (1 + ytd / 100)``. When the
    calendar year rolls over the map is discarded and each instrument's next
    observed value becomes its new baseline, so YTD starts again from zero
    instead of drifting on last year's reference.
    """

    def __init__(self, tz: tzinfo = timezone.utc) -> None:
        self._tz = tz
        self._values: Dict[str, float] = {}
        self._year: int | None = None
        self._rolled_over = False
        self._lock = RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)

    def __contains__(self, instrument_id: object) -> bool:
        with self._lock:
            return instrument_id in self._values

    def get(self, instrument_id: str) -> float | None:
        with self._lock:
            return self._values.get(instrument_id)

    def _roll(self, now: datetime) -> None:
        year = now.astimezone(self._tz).year
        if self._year is None:
            self._year = year
            return
        if year != self._year:
            logger.info("Calendar year changed to %d, resetting %d YTD baselines", year, len(self._values))
            self._values.clear()
            self._year = year
            self._rolled_over = True

    def observe_item(self, item: MarketItem, now: datetime) -> float:
        with self._lock:
            self._roll(now)
            baseline = self._values.get(item.id)
            if baseline is not None:
                return baseline
            if self._rolled_over:
                baseline = item.value
            else:
                growth = 1 + item.ytd / 100
                baseline = item.value / growth if growth > 0 else item.value * 0.9
            self._values[item.id] = baseline
            return baseline

    def observe(self, data: MarketData, now: datetime) -> None:
        for item in data.items():
            self.observe_item(item, now)

    def ytd_for(self, item: MarketItem, value: float, now: datetime) -> float:
        baseline = self.observe_item(item, now)
        if baseline == 0:
            raise ZeroDivisionError(f"zero year-start baseline for {item.id}")
        return (value - baseline) / baseline * 100
