"""
Bot configuration persistence.

One JSON document per bot identity. Saves are last-writer-wins.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Dict, Optional

import aiosqlite

from .config_schema import BotConfiguration
from .exceptions import PersistenceError
from .utils import get_logger

logger = get_logger(__name__)


class ConfigStore(ABC):
    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        pass

    @abstractmethod
    async def load(self, bot_id: str) -> Optional[BotConfiguration]:
        pass

    @abstractmethod
    async def save(self, config: BotConfiguration) -> None:
        pass

    async def ping(self) -> bool:
        await self.load("__ping__")
        return True


class InMemoryConfigStore(ConfigStore):
    def __init__(self):
        self._documents: Dict[str, str] = {}
        self.save_count = 0

    async def load(self, bot_id: str) -> Optional[BotConfiguration]:
        document = self._documents.get(bot_id)
        if document is None:
            return None
        return BotConfiguration.model_validate_json(document)

    async def save(self, config: BotConfiguration) -> None:
        self._documents[config.bot_id] = config.model_dump_json()
        self.save_count += 1


class SqliteConfigStore(ConfigStore):
    """aiosqlite-backed config store."""

    def __init__(self, db_path: str = "peg_config.db"):
        self.db_path = db_path
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self._initialized = False

    async def initialize(self) -> None:
        if self._initialized:
            return

        async with self._lock:
            if self._initialized:
                return
            try:
                self._conn = await aiosqlite.connect(self.db_path)
                await self._conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS bot_configs (
                        bot_id TEXT PRIMARY KEY,
                        document TEXT NOT NULL,
                        updated_at REAL
                    )
                """
                )
                await self._conn.commit()
            except Exception as e:
                raise PersistenceError(
                    f"Failed to open config store {self.db_path}: {e}",
                    operation="initialize",
                )
            self._initialized = True

    async def close(self) -> None:
        async with self._lock:
            if self._conn is not None:
                await self._conn.close()
                self._conn = None
            self._initialized = False

    async def load(self, bot_id: str) -> Optional[BotConfiguration]:
        await self.initialize()
        try:
            async with self._conn.execute(
                "SELECT document FROM bot_configs WHERE bot_id = ?", (bot_id,)
            ) as cursor:
                row = await cursor.fetchone()
        except Exception as e:
            raise PersistenceError(f"Config load failed: {e}", operation="load")

        if row is None:
            return None
        return BotConfiguration.model_validate(json.loads(row[0]))

    async def save(self, config: BotConfiguration) -> None:
        await self.initialize()
        try:
            await self._conn.execute(
                "INSERT OR REPLACE INTO bot_configs VALUES (?, ?, ?)",
                (config.bot_id, config.model_dump_json(), config.updated_at),
            )
            await self._conn.commit()
        except Exception as e:
            raise PersistenceError(f"Config save failed: {e}", operation="save")
        logger.debug(f"Saved configuration for bot {config.bot_id}")
