"""Tests for the trade record stores."""

from contextlib import asynccontextmanager

import pytest

from conftest import NOON
from peg_stabilizer.exceptions import InvalidTransitionError, PersistenceError
from peg_stabilizer.models import TradeAction, TradeRecord, TradeStatus
from peg_stabilizer.trade_store import (
    InMemoryTradeStore,
    SqliteTradeStore,
    summarize_trades,
)


def make_record(trade_id, created_at=NOON, action=TradeAction.BUY, amount=1.0, bot_id="test-bot"):
    buy = action == TradeAction.BUY
    return TradeRecord(
        trade_id=trade_id,
        action=action,
        input_amount=amount,
        input_token="BNB" if buy else "TOKEN",
        output_token="TOKEN" if buy else "BNB",
        min_output_amount=0.0,
        slippage=0.02,
        status=TradeStatus.PENDING,
        initiated_at=created_at,
        created_at=created_at,
        updated_at=created_at,
        bot_id=bot_id,
        tx_reference=f"pending-{trade_id}",
        liquidity_snapshot={"1": 0.2},
    )


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryTradeStore()
    return SqliteTradeStore(str(tmp_path / "trades.db"))


@asynccontextmanager
async def opened(store):
    await store.initialize()
    try:
        yield store
    finally:
        await store.close()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_create_and_get(self, store):
        async with opened(store):
            await store.create(make_record("t1"))
            record = await store.get("t1")

        assert record.status == TradeStatus.PENDING
        assert record.action == TradeAction.BUY
        assert record.liquidity_snapshot == {"1": 0.2}

    @pytest.mark.asyncio
    async def test_get_missing(self, store):
        async with opened(store):
            assert await store.get("nope") is None

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, store):
        async with opened(store):
            await store.create(make_record("t1"))
            with pytest.raises(PersistenceError, match="Duplicate"):
                await store.create(make_record("t1"))
            assert await store.count() == 1

    @pytest.mark.asyncio
    async def test_create_requires_pending(self, store):
        record = make_record("t1")
        record.status = TradeStatus.SUCCESS
        async with opened(store):
            with pytest.raises(PersistenceError):
                await store.create(record)

    @pytest.mark.asyncio
    async def test_mark_success(self, store):
        async with opened(store):
            await store.create(make_record("t1"))
            closed = await store.mark_success(
                "t1",
                executed_at=NOON + 5,
                output_amount=60_000.0,
                execution_price=1 / 60_000,
                tx_reference="0xabc",
                block_reference=101,
                gas_used=150_000,
                gas_price=5_000_000_000,
                gas_cost=0.00075,
            )
            stored = await store.get("t1")

        assert closed.status == TradeStatus.SUCCESS
        assert stored.status == TradeStatus.SUCCESS
        assert stored.tx_reference == "0xabc"
        assert stored.block_reference == 101
        assert stored.duration == 5

    @pytest.mark.asyncio
    async def test_mark_failed_keeps_provisional_reference(self, store):
        async with opened(store):
            await store.create(make_record("t1"))
            await store.mark_failed("t1", "Slippage tolerance exceeded", NOON + 1)
            stored = await store.get("t1")

        assert stored.status == TradeStatus.FAILED
        assert stored.error == "Slippage tolerance exceeded"
        assert stored.tx_reference == "pending-t1"
        assert stored.output_amount is None

    @pytest.mark.asyncio
    async def test_terminal_records_cannot_move(self, store):
        async with opened(store):
            await store.create(make_record("t1"))
            await store.mark_failed("t1", "boom", NOON + 1)

            with pytest.raises(InvalidTransitionError):
                await store.mark_success("t1", executed_at=NOON + 2)
            with pytest.raises(InvalidTransitionError):
                await store.mark_failed("t1", "again", NOON + 2)

            assert (await store.get("t1")).error == "boom"

    @pytest.mark.asyncio
    async def test_transition_of_unknown_trade(self, store):
        async with opened(store):
            with pytest.raises(PersistenceError, match="not found"):
                await store.mark_success("ghost", executed_at=NOON)

    @pytest.mark.asyncio
    async def test_ping(self, store):
        async with opened(store):
            assert await store.ping() is True


class TestQueries:
    @pytest.mark.asyncio
    async def test_query_newest_first_with_filters(self, store):
        async with opened(store):
            for i in range(5):
                await store.create(make_record(f"t{i}", created_at=NOON + i * 60))
            await store.create(make_record("other", created_at=NOON, bot_id="other-bot"))
            await store.mark_success("t1", executed_at=NOON + 61)
            await store.mark_failed("t2", "boom", NOON + 121)

            everything = await store.query("test-bot")
            limited = await store.query("test-bot", limit=2)
            windowed = await store.query("test-bot", since=NOON + 60, until=NOON + 180)
            failed = await store.query("test-bot", status=TradeStatus.FAILED)

        assert [r.trade_id for r in everything] == ["t4", "t3", "t2", "t1", "t0"]
        assert [r.trade_id for r in limited] == ["t4", "t3"]
        assert [r.trade_id for r in windowed] == ["t2", "t1"]
        assert [r.trade_id for r in failed] == ["t2"]

    @pytest.mark.asyncio
    async def test_daily_activity_counts_success_only(self, store):
        async with opened(store):
            await store.create(make_record("a", created_at=NOON, amount=2.0))
            await store.create(make_record("b", created_at=NOON + 10, amount=3.0))
            await store.create(make_record("c", created_at=NOON + 20, amount=4.0))
            await store.create(make_record("yesterday", created_at=NOON - 86_400, amount=9.0))
            await store.mark_success("a", executed_at=NOON + 1, gas_cost=0.001)
            await store.mark_success("yesterday", executed_at=NOON - 86_000)
            await store.mark_failed("b", "boom", NOON + 11)

            activity = await store.daily_activity("test-bot", NOON - 43_200, NOON + 43_200)

        assert activity.volume == 2.0
        assert activity.trade_count == 1
        assert activity.gas_cost == pytest.approx(0.001)

    @pytest.mark.asyncio
    async def test_find_stale_pending(self, store):
        async with opened(store):
            await store.create(make_record("old", created_at=NOON - 3_600))
            await store.create(make_record("fresh", created_at=NOON))
            await store.create(make_record("closed", created_at=NOON - 3_600))
            await store.mark_success("closed", executed_at=NOON - 3_500)

            stale = await store.find_stale_pending("test-bot", NOON - 600)

        assert [r.trade_id for r in stale] == ["old"]

    @pytest.mark.asyncio
    async def test_statistics(self, store):
        async with opened(store):
            await store.create(make_record("b1", created_at=NOON, amount=1.0))
            await store.create(
                make_record("s1", created_at=NOON + 1, action=TradeAction.SELL, amount=50_000.0)
            )
            await store.create(make_record("b2", created_at=NOON + 2, amount=2.0))
            await store.mark_success("b1", executed_at=NOON + 3, gas_cost=0.001)
            await store.mark_success("s1", executed_at=NOON + 4, gas_cost=0.002)
            await store.mark_failed("b2", "boom", NOON + 5)

            stats = await store.statistics("test-bot", NOON - 10, NOON + 10)

        assert stats.total == 3
        assert stats.successful == 2
        assert stats.failed == 1
        assert stats.pending == 0
        assert stats.buy_count == 2
        assert stats.sell_count == 1
        assert stats.volume_by_token == {"BNB": 1.0, "TOKEN": 50_000.0}
        assert stats.total_gas_cost == pytest.approx(0.003)


class TestSqlitePersistence:
    @pytest.mark.asyncio
    async def test_records_survive_reopen(self, tmp_path):
        path = str(tmp_path / "trades.db")
        async with opened(SqliteTradeStore(path)) as store:
            await store.create(make_record("t1"))

        async with opened(SqliteTradeStore(path)) as store:
            record = await store.get("t1")

        assert record.trade_id == "t1"
        assert record.status == TradeStatus.PENDING

    @pytest.mark.asyncio
    async def test_unwritable_path(self, tmp_path):
        store = SqliteTradeStore(str(tmp_path / "missing" / "trades.db"))
        with pytest.raises(PersistenceError) as exc_info:
            await store.initialize()
        assert exc_info.value.operation == "initialize"


def test_summarize_empty_window():
    stats = summarize_trades([], NOON, NOON + 3_600)
    assert stats.total == 0
    assert stats.volume_by_token == {}
    assert stats.total_gas_cost == 0.0
