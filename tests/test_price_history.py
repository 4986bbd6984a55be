"""Tests for the price history stores and their summaries."""

from contextlib import asynccontextmanager

import pytest

from conftest import NOON
from peg_stabilizer.exceptions import PersistenceError
from peg_stabilizer.models import Deviation, PricePoint, PriceSnapshot
from peg_stabilizer.price_history import (
    InMemoryPriceHistoryStore,
    SqlitePriceHistoryStore,
    price_trend,
    summarize_prices,
)


def make_point(recorded_at=NOON, usd_price=0.01, liquidity=20_000.0, warnings=None):
    snapshot = PriceSnapshot(
        token_base_price=usd_price / 625.0,
        base_usd_price=625.0,
        reference_usd_price=62_500.0,
        token_usd_price=usd_price,
        token_reference_price=usd_price / 62_500.0,
        base_reference_price=0.01,
        token_reserve=1_000_000.0,
        base_reserve=16.0,
        liquidity_usd=liquidity,
        timestamp=recorded_at,
        block_number=42,
    )
    deviation = Deviation(
        current_price=usd_price,
        target_price=0.01,
        deviation_percent=(usd_price / 0.01 - 1) * 100,
        timestamp=recorded_at,
    )
    return PricePoint.from_snapshot(snapshot, deviation, warnings)


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryPriceHistoryStore()
    return SqlitePriceHistoryStore(str(tmp_path / "prices.db"))


@asynccontextmanager
async def opened(store):
    await store.initialize()
    try:
        yield store
    finally:
        await store.close()


class TestPricePoint:
    def test_from_snapshot(self):
        point = make_point(usd_price=0.0105)

        assert point.recorded_at == NOON
        assert point.deviation_percent == pytest.approx(5.0)
        assert point.target_price == 0.01
        assert point.block_number == 42
        assert point.is_valid is True

    def test_warnings_mark_point_invalid(self):
        point = make_point(warnings=["liquidity_usd 500.00 below minimum 1000.00"])
        assert point.is_valid is False
        assert point.to_dict()["warnings"] == ["liquidity_usd 500.00 below minimum 1000.00"]


class TestStores:
    @pytest.mark.asyncio
    async def test_recent_newest_first(self, store):
        async with opened(store):
            for offset in (0, 60, 120):
                await store.record(make_point(NOON + offset))

            points = await store.recent()
            latest = await store.latest()

        assert [p.recorded_at for p in points] == [NOON + 120, NOON + 60, NOON]
        assert latest.recorded_at == NOON + 120

    @pytest.mark.asyncio
    async def test_window_and_limit(self, store):
        async with opened(store):
            for offset in range(0, 600, 60):
                await store.record(make_point(NOON + offset))

            window = await store.recent(since=NOON + 120, until=NOON + 300)
            limited = await store.recent(limit=3)

        assert [p.recorded_at for p in window] == [NOON + 240, NOON + 180, NOON + 120]
        assert len(limited) == 3

    @pytest.mark.asyncio
    async def test_round_trip_keeps_warnings(self, store):
        async with opened(store):
            await store.record(make_point(warnings=["base_usd_price is not positive: 0"]))
            point = await store.latest()

        assert point.is_valid is False
        assert point.warnings == ["base_usd_price is not positive: 0"]
        assert point.block_number == 42

    @pytest.mark.asyncio
    async def test_prune(self, store):
        async with opened(store):
            for offset in (0, 60, 120):
                await store.record(make_point(NOON + offset))

            deleted = await store.prune(NOON + 60)
            remaining = await store.recent()

        assert deleted == 1
        assert len(remaining) == 2

    @pytest.mark.asyncio
    async def test_latest_when_empty(self, store):
        async with opened(store):
            assert await store.latest() is None
            assert await store.ping() is True

    @pytest.mark.asyncio
    async def test_statistics(self, store):
        async with opened(store):
            for offset, price in ((0, 0.01), (60, 0.0095), (120, 0.009)):
                await store.record(make_point(NOON + offset, usd_price=price))

            stats = await store.statistics(NOON, NOON + 180)

        assert stats.count == 3
        assert stats.price["current"] == pytest.approx(0.009)
        assert stats.price["min"] == pytest.approx(0.009)
        assert stats.price["median"] == pytest.approx(0.0095)
        assert stats.deviation["min"] == pytest.approx(-10.0)
        assert stats.trend == "DECREASING"


@pytest.mark.asyncio
async def test_memory_store_is_bounded():
    store = InMemoryPriceHistoryStore(max_points=2)
    for offset in (0, 60, 120):
        await store.record(make_point(NOON + offset))

    points = await store.recent()
    assert [p.recorded_at for p in points] == [NOON + 120, NOON + 60]


@pytest.mark.asyncio
async def test_sqlite_unwritable_path(tmp_path):
    store = SqlitePriceHistoryStore(str(tmp_path / "missing" / "prices.db"))
    with pytest.raises(PersistenceError) as exc_info:
        await store.initialize()
    assert exc_info.value.operation == "initialize"


class TestSummaries:
    def test_empty_window(self):
        stats = summarize_prices([], NOON, NOON + 3600)
        assert stats.count == 0
        assert stats.price is None
        assert stats.trend == "UNKNOWN"

    def test_volatility(self):
        points = [make_point(NOON + 60, usd_price=0.011), make_point(NOON, usd_price=0.009)]

        stats = summarize_prices(points, NOON, NOON + 120)

        # population stdev 0.001 over mean 0.01
        assert stats.volatility_percent == pytest.approx(10.0)
        assert stats.trend == "INCREASING"

    @pytest.mark.parametrize(
        "newest,oldest,expected",
        [(0.0102, 0.01, "INCREASING"), (0.0098, 0.01, "DECREASING"), (0.01005, 0.01, "STABLE")],
    )
    def test_trend(self, newest, oldest, expected):
        points = [make_point(NOON + 60, usd_price=newest), make_point(NOON, usd_price=oldest)]
        assert price_trend(points) == expected

    def test_trend_needs_two_points(self):
        assert price_trend([make_point()]) == "UNKNOWN"
