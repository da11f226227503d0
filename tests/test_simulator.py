import random
from datetime import datetime, timedelta, timezone
from typing import List

import pytest

from market_feed.models import DataSource, MarketData, MarketItem, Region
from market_feed.services.baselines import YearStartBaselines
from market_feed.services.catalog import IndexDefinition
from market_feed.services.fallback import FallbackGenerator
from market_feed.services.simulator import MarketSimulator


NOW = datetime(2025, 3, 4, 14, 30, tzinfo=timezone.utc)


class _ScriptedRng:
    """Returns pre-recorded draws in order, so a tick can be checked by hand."""

    def __init__(self, values: List[float]) -> None:
        self._values = list(values)

    def uniform(self, a: float, b: float) -> float:
        value = self._values.pop(0)
        assert a <= value <= b
        return value

    def random(self) -> float:
        return 0.5


def _dataset(last_trend_update: datetime | None = NOW, seed: int = 7) -> MarketData:
    data = FallbackGenerator(rng=random.Random(seed)).generate(NOW)
    return data.model_copy(update={"last_trend_update": last_trend_update})


def _single_item_dataset(item: MarketItem, last_trend_update: datetime | None = None) -> MarketData:
    return MarketData(americas=[item], last_updated=NOW, last_trend_update=last_trend_update)


def _simulator(seed: int = 42) -> MarketSimulator:
    return MarketSimulator(YearStartBaselines(), rng=random.Random(seed))


def test_golden_tick_with_scripted_draws() -> None:
    item = MarketItem(
        id="TEST",
        num="11)",
        value=1000.0,
        change=10.0,
        pct_change=10 / 990 * 100,
        avat=5.0,
        ytd=25.0,
        ytd_cur=0.0,
        trend1=[0.5] * 8,
        trend2=[0.2] * 8,
    )
    previous = _single_item_dataset(item, last_trend_update=NOW - timedelta(minutes=10))
    draws = [
        0.5,  # sentiment
        0.1, 0.0, 0.0,  # region noise: americas, emea, asiaPacific
        0.2,  # idiosyncratic
        0.5,  # avat noise
        0.02,  # currency jitter
        0.05, -0.1,  # trend noise
    ]
    simulator = MarketSimulator(YearStartBaselines(), rng=_ScriptedRng(draws))

    result = simulator.tick(previous, NOW)
    ticked = result.americas[0]

    # combined = 0.5*0.4 + (0.5*0.7 + 0.1)*0.4 + 0.2*0.2 = 0.42 -> 0.084% move
    assert ticked.value == pytest.approx(1000.84)
    assert ticked.change == pytest.approx(10.84)
    assert ticked.pct_change == pytest.approx(10.84 / 990 * 100)
    assert ticked.avat == pytest.approx(5.5)
    # baseline = 1000 / 1.25 = 800
    assert ticked.ytd == pytest.approx(25.105)
    assert ticked.ytd_cur == pytest.approx(25.105 * 1.02)
    assert ticked.trend1 == pytest.approx([0.5] * 7 + [0.55])
    assert ticked.trend2 == pytest.approx([0.2] * 7 + [0.1])
    assert ticked.time == "14:30"
    assert ticked.trend_updated == NOW
    assert result.last_trend_update == NOW


def test_seeded_ticks_are_deterministic() -> None:
    previous = _dataset()

    first = _simulator(seed=11).tick(previous, NOW + timedelta(minutes=6))
    second = _simulator(seed=11).tick(previous, NOW + timedelta(minutes=6))

    assert first.model_dump() == second.model_dump()


def test_pct_change_matches_change_and_value_after_every_tick() -> None:
    simulator = _simulator()
    data = _dataset()

    for step in range(50):
        data = simulator.tick(data, NOW + timedelta(seconds=30 * step))
        for item in data.items():
            assert item.pct_change == pytest.approx(item.change / (item.value - item.change) * 100)

        display = data.to_display()
        for row in display["americas"] + display["emea"] + display["asiaPacific"]:
            recomputed = row["change"] / (row["value"] - row["change"]) * 100
            assert row["pctChange"] == pytest.approx(recomputed, abs=0.02)


def test_values_move_every_tick_but_trends_only_every_five_minutes() -> None:
    simulator = _simulator()
    data = _dataset(last_trend_update=NOW)
    original_trends = [item.trend1 for item in data.items()]

    for minute in range(1, 5):
        moved = simulator.tick(data, NOW + timedelta(minutes=minute))
        assert [item.value for item in moved.items()] != [item.value for item in data.items()]
        assert [item.trend1 for item in moved.items()] == original_trends
        assert moved.last_trend_update == NOW
        data = moved

    data = simulator.tick(data, NOW + timedelta(minutes=5))
    assert data.last_trend_update == NOW + timedelta(minutes=5)
    for before, after in zip(original_trends, [item.trend1 for item in data.items()]):
        assert after[:-1] == before[1:]
        assert 0.0 <= after[-1] <= 1.0

    shifted = [item.trend1 for item in data.items()]
    data = simulator.tick(data, NOW + timedelta(minutes=9))
    assert [item.trend1 for item in data.items()] == shifted


def test_trend_reference_postpones_trend_updates() -> None:
    simulator = _simulator()
    data = _dataset(last_trend_update=NOW - timedelta(hours=1))

    result = simulator.tick(data, NOW, trend_reference=NOW - timedelta(minutes=2))

    assert result.last_trend_update == data.last_trend_update
    assert [item.trend2 for item in result.items()] == [item.trend2 for item in data.items()]


def test_tick_preserves_shape_and_metadata() -> None:
    refreshed_at = NOW - timedelta(hours=3)
    data = _dataset().model_copy(update={"last_full_refresh": refreshed_at, "source": DataSource.AUTHORITATIVE})

    result = _simulator().tick(data, NOW + timedelta(seconds=30))

    assert result.source is DataSource.SIMULATED
    assert result.last_full_refresh == refreshed_at
    assert result.last_updated == NOW + timedelta(seconds=30)
    for region in Region:
        assert [item.id for item in result.region(region)] == [item.id for item in data.region(region)]
        assert [item.num for item in result.region(region)] == [item.num for item in data.region(region)]


def test_failing_instrument_is_passed_through() -> None:
    broken = MarketItem(id="BROKEN", value=100.0, change=100.0, avat=1.0, trend1=[], trend2=[0.3] * 8)
    healthy = MarketItem(id="HEALTHY", value=500.0, change=5.0, pct_change=5 / 495 * 100, trend1=[0.4] * 8, trend2=[0.4] * 8)
    data = MarketData(americas=[broken, healthy], last_trend_update=NOW)

    result = _simulator().tick(data, NOW + timedelta(minutes=1))
    passed, moved = result.americas

    assert passed.value == 100.0
    assert passed.change == 100.0
    assert passed.avat == 1.0
    assert len(passed.trend1) == 8
    assert passed.trend2 == [0.3] * 8
    assert passed.last_updated == NOW + timedelta(minutes=1)
    assert moved.value != 500.0


def test_hundred_ticks_stay_within_volatility_bounds() -> None:
    definition = IndexDefinition("HANG SENG", "^HSI", 20000.0, 5.0)
    generator = FallbackGenerator({Region.ASIA_PACIFIC: [definition]}, rng=random.Random(3))
    data = generator.generate(NOW)
    start = data.asia_pacific[0].value
    simulator = _simulator(seed=99)

    for step in range(100):
        data = simulator.tick(data, NOW + timedelta(seconds=30 * step))
        value = data.asia_pacific[0].value
        assert value >= 0
        assert start * 0.5 <= value <= start * 1.5


def test_volume_multiplier_is_higher_outside_core_hours() -> None:
    simulator = MarketSimulator(YearStartBaselines(), open_hour=10, close_hour=15)

    assert simulator.volume_multiplier(NOW.replace(hour=9)) == 1.5
    assert simulator.volume_multiplier(NOW.replace(hour=12)) == 1.0
    assert simulator.volume_multiplier(NOW.replace(hour=15)) == 1.0
    assert simulator.volume_multiplier(NOW.replace(hour=16)) == 1.5


def test_instruments_move_together_within_a_tick() -> None:
    # Strong positive sentiment, neutral regional and idiosyncratic draws.
    item_draws = [0.0, 0.0, 0.0]
    count = 3
    draws = [1.0, 0.0, 0.0, 0.0] + item_draws * count
    items = [
        MarketItem(id=f"IDX{i}", value=1000.0, change=0.0, trend1=[0.5] * 8, trend2=[0.5] * 8)
        for i in range(count)
    ]
    data = MarketData(americas=items, last_trend_update=NOW)
    simulator = MarketSimulator(YearStartBaselines(), rng=_ScriptedRng(draws))

    result = simulator.tick(data, NOW + timedelta(seconds=30))

    assert all(item.change > 0 for item in result.americas)
    assert len({round(item.value, 6) for item in result.americas}) == 1
