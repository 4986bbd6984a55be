"""Tests for the configuration stores."""

import pytest

from peg_stabilizer.config_schema import BotConfiguration
from peg_stabilizer.config_store import InMemoryConfigStore, SqliteConfigStore
from peg_stabilizer.exceptions import PersistenceError


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryConfigStore()
    return SqliteConfigStore(str(tmp_path / "config.db"))


class TestConfigStore:
    @pytest.mark.asyncio
    async def test_load_unknown_bot(self, store):
        try:
            assert await store.load("missing") is None
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_save_and_load(self, store):
        config = BotConfiguration(bot_id="bot-a", enabled=True, target_peg=0.02)
        try:
            await store.save(config)
            loaded = await store.load("bot-a")
        finally:
            await store.close()

        assert loaded == config

    @pytest.mark.asyncio
    async def test_last_writer_wins(self, store):
        try:
            await store.save(BotConfiguration(bot_id="bot-a", bot_name="first"))
            await store.save(BotConfiguration(bot_id="bot-a", bot_name="second"))
            await store.save(BotConfiguration(bot_id="bot-b", bot_name="other"))
            loaded = await store.load("bot-a")
        finally:
            await store.close()

        assert loaded.bot_name == "second"

    @pytest.mark.asyncio
    async def test_ping(self, store):
        try:
            assert await store.ping() is True
        finally:
            await store.close()


class TestSqliteConfigStore:
    @pytest.mark.asyncio
    async def test_survives_reopen(self, tmp_path):
        path = str(tmp_path / "config.db")
        first = SqliteConfigStore(path)
        await first.save(BotConfiguration(bot_id="bot-a", enabled=True))
        await first.close()

        second = SqliteConfigStore(path)
        try:
            loaded = await second.load("bot-a")
        finally:
            await second.close()

        assert loaded.enabled is True

    @pytest.mark.asyncio
    async def test_unopenable_path(self, tmp_path):
        store = SqliteConfigStore(str(tmp_path / "missing" / "config.db"))
        with pytest.raises(PersistenceError) as exc_info:
            await store.load("bot-a")
        assert exc_info.value.operation == "initialize"
