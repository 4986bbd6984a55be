"""
Trade record persistence.

Records are created PENDING and closed exactly once as SUCCESS or FAILED.
Stores never delete records. The transition rule is enforced here, below
the orchestrator, so no caller can reopen or double-close a trade.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Any, Dict, List, Optional

import aiosqlite

from .exceptions import InvalidTransitionError, PersistenceError
from .models import (
    DailyActivity,
    TradeAction,
    TradeRecord,
    TradeStatistics,
    TradeStatus,
)
from .utils import get_logger

logger = get_logger(__name__)


def summarize_trades(
    records: List[TradeRecord], window_start: float, window_end: float
) -> TradeStatistics:
    """Aggregate a window of records into TradeStatistics."""
    volume_by_token: Dict[str, float] = {}
    successful = failed = pending = buys = sells = 0
    gas_total = 0.0

    for record in records:
        if record.status == TradeStatus.SUCCESS:
            successful += 1
            volume_by_token[record.input_token] = (
                volume_by_token.get(record.input_token, 0.0) + record.input_amount
            )
            gas_total += record.gas_cost or 0.0
        elif record.status == TradeStatus.FAILED:
            failed += 1
        else:
            pending += 1

        if record.action == TradeAction.BUY:
            buys += 1
        else:
            sells += 1

    return TradeStatistics(
        window_start=window_start,
        window_end=window_end,
        total=len(records),
        successful=successful,
        failed=failed,
        pending=pending,
        volume_by_token=volume_by_token,
        total_gas_cost=gas_total,
        buy_count=buys,
        sell_count=sells,
    )


class TradeRecordStore(ABC):
    """Abstract trade record store with the lifecycle state machine."""

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        pass

    @abstractmethod
    async def create(self, record: TradeRecord) -> TradeRecord:
        """Persist a new PENDING record. Duplicate ids are rejected."""

    @abstractmethod
    async def get(self, trade_id: str) -> Optional[TradeRecord]:
        pass

    @abstractmethod
    async def _close_record(self, record: TradeRecord) -> None:
        """Write a terminal record, only if the stored one is still PENDING."""

    @abstractmethod
    async def count(self, bot_id: Optional[str] = None) -> int:
        pass

    @abstractmethod
    async def query(
        self,
        bot_id: str,
        since: Optional[float] = None,
        until: Optional[float] = None,
        status: Optional[TradeStatus] = None,
        limit: Optional[int] = None,
    ) -> List[TradeRecord]:
        """Records newest first, filtered by creation time and status."""

    async def ping(self) -> bool:
        await self.count()
        return True

    async def _transition(
        self, trade_id: str, target: TradeStatus, **fields: Any
    ) -> TradeRecord:
        record = await self.get(trade_id)
        if record is None:
            raise PersistenceError(
                f"Trade {trade_id} not found", operation="transition"
            )
        if not record.status.can_transition_to(target):
            raise InvalidTransitionError(trade_id, record.status.value, target.value)

        closed = replace(record, status=target, **fields)
        await self._close_record(closed)
        return closed

    async def mark_success(
        self,
        trade_id: str,
        executed_at: float,
        output_amount: Optional[float] = None,
        execution_price: Optional[float] = None,
        tx_reference: Optional[str] = None,
        block_reference: Optional[int] = None,
        gas_used: Optional[int] = None,
        gas_price: Optional[int] = None,
        gas_cost: Optional[float] = None,
        min_output_amount: Optional[float] = None,
    ) -> TradeRecord:
        fields: Dict[str, Any] = dict(
            executed_at=executed_at,
            updated_at=executed_at,
            output_amount=output_amount,
            execution_price=execution_price,
            tx_reference=tx_reference,
            block_reference=block_reference,
            gas_used=gas_used,
            gas_price=gas_price,
            gas_cost=gas_cost,
        )
        if min_output_amount is not None:
            fields["min_output_amount"] = min_output_amount
        return await self._transition(trade_id, TradeStatus.SUCCESS, **fields)

    async def mark_failed(
        self,
        trade_id: str,
        error: str,
        executed_at: float,
        tx_reference: Optional[str] = None,
        block_reference: Optional[int] = None,
    ) -> TradeRecord:
        fields: Dict[str, Any] = dict(
            error=error, executed_at=executed_at, updated_at=executed_at
        )
        # keep the provisional reference unless the chain produced a real one
        if tx_reference is not None:
            fields["tx_reference"] = tx_reference
        if block_reference is not None:
            fields["block_reference"] = block_reference
        return await self._transition(trade_id, TradeStatus.FAILED, **fields)

    async def daily_activity(
        self, bot_id: str, day_start: float, day_end: float
    ) -> DailyActivity:
        """SUCCESS volume and count for records created in [day_start, day_end)."""
        records = await self.query(
            bot_id, since=day_start, until=day_end, status=TradeStatus.SUCCESS
        )
        return DailyActivity(
            day_start=day_start,
            day_end=day_end,
            volume=sum(r.input_amount for r in records),
            trade_count=len(records),
            gas_cost=sum(r.gas_cost or 0.0 for r in records),
        )

    async def statistics(
        self, bot_id: str, since: float, until: float
    ) -> TradeStatistics:
        records = await self.query(bot_id, since=since, until=until)
        return summarize_trades(records, since, until)

    async def find_stale_pending(
        self, bot_id: str, older_than: float
    ) -> List[TradeRecord]:
        """PENDING records created before ``older_than``."""
        return await self.query(bot_id, until=older_than, status=TradeStatus.PENDING)


class InMemoryTradeStore(TradeRecordStore):
    """Dict-backed store for tests and paper runs."""

    def __init__(self):
        self._records: Dict[str, TradeRecord] = {}
        self._lock = asyncio.Lock()

    async def create(self, record: TradeRecord) -> TradeRecord:
        if record.status != TradeStatus.PENDING:
            raise PersistenceError(
                f"New trade {record.trade_id} must be PENDING", operation="create"
            )
        async with self._lock:
            if record.trade_id in self._records:
                raise PersistenceError(
                    f"Duplicate trade id {record.trade_id}", operation="create"
                )
            self._records[record.trade_id] = record
        return record

    async def get(self, trade_id: str) -> Optional[TradeRecord]:
        return self._records.get(trade_id)

    async def _close_record(self, record: TradeRecord) -> None:
        async with self._lock:
            current = self._records.get(record.trade_id)
            if current is None or current.status != TradeStatus.PENDING:
                raise InvalidTransitionError(
                    record.trade_id,
                    current.status.value if current else None,
                    record.status.value,
                )
            self._records[record.trade_id] = record

    async def count(self, bot_id: Optional[str] = None) -> int:
        if bot_id is None:
            return len(self._records)
        return sum(1 for r in self._records.values() if r.bot_id == bot_id)

    async def query(
        self,
        bot_id: str,
        since: Optional[float] = None,
        until: Optional[float] = None,
        status: Optional[TradeStatus] = None,
        limit: Optional[int] = None,
    ) -> List[TradeRecord]:
        matches = [
            r
            for r in self._records.values()
            if r.bot_id == bot_id
            and (since is None or r.created_at >= since)
            and (until is None or r.created_at < until)
            and (status is None or r.status == status)
        ]
        matches.sort(key=lambda r: r.created_at, reverse=True)
        return matches[:limit] if limit is not None else matches


_COLUMNS = [
    "trade_id",
    "bot_id",
    "action",
    "input_amount",
    "input_token",
    "output_token",
    "min_output_amount",
    "slippage",
    "urgency",
    "status",
    "market_price_at_execution",
    "peg_deviation_at_creation",
    "liquidity_snapshot",
    "tx_reference",
    "block_reference",
    "output_amount",
    "execution_price",
    "gas_used",
    "gas_price",
    "gas_cost",
    "error",
    "initiated_at",
    "created_at",
    "executed_at",
    "updated_at",
]


class SqliteTradeStore(TradeRecordStore):
    """aiosqlite-backed trade store."""

    def __init__(self, db_path: str = "peg_trades.db"):
        self.db_path = db_path
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self._initialized = False

    async def initialize(self) -> None:
        """Open the connection and create the schema"""
        if self._initialized:
            return

        async with self._lock:
            if self._initialized:
                return
            try:
                self._conn = await aiosqlite.connect(self.db_path)
                self._conn.row_factory = aiosqlite.Row
                await self._conn.execute("PRAGMA journal_mode=WAL")
                await self._conn.execute("PRAGMA synchronous=NORMAL")
                await self._init_schema()
            except Exception as e:
                raise PersistenceError(
                    f"Failed to open trade store {self.db_path}: {e}",
                    operation="initialize",
                )
            self._initialized = True
            logger.info(f"Trade store initialized at {self.db_path}")

    async def _init_schema(self) -> None:
        await self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS trades (
                trade_id TEXT PRIMARY KEY,
                bot_id TEXT NOT NULL,
                action TEXT NOT NULL,
                input_amount REAL NOT NULL,
                input_token TEXT NOT NULL,
                output_token TEXT NOT NULL,
                min_output_amount REAL NOT NULL,
                slippage REAL NOT NULL,
                urgency TEXT,
                status TEXT NOT NULL,
                market_price_at_execution REAL,
                peg_deviation_at_creation REAL,
                liquidity_snapshot TEXT,
                tx_reference TEXT,
                block_reference INTEGER,
                output_amount REAL,
                execution_price REAL,
                gas_used INTEGER,
                gas_price INTEGER,
                gas_cost REAL,
                error TEXT,
                initiated_at REAL NOT NULL,
                created_at REAL NOT NULL,
                executed_at REAL,
                updated_at REAL NOT NULL
            )
        """
        )
        await self._conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_trades_bot_created
            ON trades(bot_id, created_at)
        """
        )
        await self._conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_trades_bot_status
            ON trades(bot_id, status)
        """
        )
        await self._conn.commit()

    async def close(self) -> None:
        async with self._lock:
            if self._conn is not None:
                await self._conn.close()
                self._conn = None
            self._initialized = False

    @asynccontextmanager
    async def _connection(self, operation: str):
        if not self._initialized:
            await self.initialize()
        try:
            yield self._conn
        except (PersistenceError, InvalidTransitionError):
            raise
        except Exception as e:
            raise PersistenceError(
                f"Trade store {operation} failed: {e}", operation=operation
            )

    @staticmethod
    def _to_row(record: TradeRecord) -> tuple:
        data = record.to_dict()
        data["liquidity_snapshot"] = json.dumps(record.liquidity_snapshot)
        return tuple(data[c] for c in _COLUMNS)

    @staticmethod
    def _from_row(row) -> TradeRecord:
        data = dict(row)
        data["liquidity_snapshot"] = json.loads(data["liquidity_snapshot"] or "{}")
        return TradeRecord.from_dict(data)

    async def create(self, record: TradeRecord) -> TradeRecord:
        if record.status != TradeStatus.PENDING:
            raise PersistenceError(
                f"New trade {record.trade_id} must be PENDING", operation="create"
            )
        placeholders = ", ".join("?" for _ in _COLUMNS)
        async with self._connection("create") as conn:
            try:
                await conn.execute(
                    f"INSERT INTO trades ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
                    self._to_row(record),
                )
                await conn.commit()
            except aiosqlite.IntegrityError:
                raise PersistenceError(
                    f"Duplicate trade id {record.trade_id}", operation="create"
                )
        return record

    async def get(self, trade_id: str) -> Optional[TradeRecord]:
        async with self._connection("get") as conn:
            async with conn.execute(
                "SELECT * FROM trades WHERE trade_id = ?", (trade_id,)
            ) as cursor:
                row = await cursor.fetchone()
        return self._from_row(row) if row else None

    async def _close_record(self, record: TradeRecord) -> None:
        updates = [c for c in _COLUMNS if c != "trade_id"]
        row = dict(zip(_COLUMNS, self._to_row(record)))
        assignments = ", ".join(f"{c} = ?" for c in updates)

        async with self._connection("transition") as conn:
            cursor = await conn.execute(
                f"UPDATE trades SET {assignments} WHERE trade_id = ? AND status = ?",
                tuple(row[c] for c in updates)
                + (record.trade_id, TradeStatus.PENDING.value),
            )
            await conn.commit()
            if cursor.rowcount != 1:
                raise InvalidTransitionError(
                    record.trade_id, "non-PENDING", record.status.value
                )

    async def count(self, bot_id: Optional[str] = None) -> int:
        async with self._connection("count") as conn:
            if bot_id is None:
                cursor = await conn.execute("SELECT COUNT(*) FROM trades")
            else:
                cursor = await conn.execute(
                    "SELECT COUNT(*) FROM trades WHERE bot_id = ?", (bot_id,)
                )
            row = await cursor.fetchone()
            await cursor.close()
        return row[0]

    async def query(
        self,
        bot_id: str,
        since: Optional[float] = None,
        until: Optional[float] = None,
        status: Optional[TradeStatus] = None,
        limit: Optional[int] = None,
    ) -> List[TradeRecord]:
        clauses = ["bot_id = ?"]
        params: List[Any] = [bot_id]
        if since is not None:
            clauses.append("created_at >= ?")
            params.append(since)
        if until is not None:
            clauses.append("created_at < ?")
            params.append(until)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)

        sql = f"SELECT * FROM trades WHERE {' AND '.join(clauses)} ORDER BY created_at DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        async with self._connection("query") as conn:
            async with conn.execute(sql, params) as cursor:
                rows = await cursor.fetchall()
        return [self._from_row(row) for row in rows]

    async def daily_activity(
        self, bot_id: str, day_start: float, day_end: float
    ) -> DailyActivity:
        async with self._connection("daily_activity") as conn:
            async with conn.execute(
                """
                SELECT COALESCE(SUM(input_amount), 0), COUNT(*), COALESCE(SUM(gas_cost), 0)
                FROM trades
                WHERE bot_id = ? AND status = ? AND created_at >= ? AND created_at < ?
                """,
                (bot_id, TradeStatus.SUCCESS.value, day_start, day_end),
            ) as cursor:
                volume, count, gas = await cursor.fetchone()
        return DailyActivity(
            day_start=day_start,
            day_end=day_end,
            volume=float(volume),
            trade_count=int(count),
            gas_cost=float(gas),
        )
