"""
Price history persistence.

The monitoring loop records every oracle poll so operators can chart the
peg and read summary statistics over a window.
"""

import asyncio
import json
import statistics
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Sequence

import aiosqlite

from .exceptions import PersistenceError
from .models import PricePoint, PriceStatistics
from .utils import get_logger, percent_change

logger = get_logger(__name__)

TREND_THRESHOLD_PERCENT = 1.0


def _summary(values: Sequence[float]) -> Dict[str, float]:
    # values are newest first
    return {
        "current": values[0],
        "min": min(values),
        "max": max(values),
        "avg": statistics.fmean(values),
        "median": statistics.median(values),
    }


def price_trend(points: Sequence[PricePoint]) -> str:
    """INCREASING, DECREASING or STABLE from oldest to newest point."""
    if len(points) < 2:
        return "UNKNOWN"
    change = percent_change(points[0].token_usd_price, points[-1].token_usd_price)
    if change > TREND_THRESHOLD_PERCENT:
        return "INCREASING"
    if change < -TREND_THRESHOLD_PERCENT:
        return "DECREASING"
    return "STABLE"


def summarize_prices(
    points: List[PricePoint], window_start: float, window_end: float
) -> PriceStatistics:
    """Aggregate newest-first points into PriceStatistics."""
    if not points:
        return PriceStatistics(window_start=window_start, window_end=window_end, count=0)

    prices = [p.token_usd_price for p in points]
    mean_price = statistics.fmean(prices)
    volatility = (
        statistics.pstdev(prices) / mean_price * 100 if mean_price > 0 else 0.0
    )

    return PriceStatistics(
        window_start=window_start,
        window_end=window_end,
        count=len(points),
        period_start=points[-1].recorded_at,
        period_end=points[0].recorded_at,
        price=_summary(prices),
        deviation=_summary([p.deviation_percent for p in points]),
        liquidity=_summary([p.liquidity_usd for p in points]),
        volatility_percent=volatility,
        trend=price_trend(points),
    )


class PriceHistoryStore(ABC):
    """Append-only store of oracle polls."""

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        pass

    @abstractmethod
    async def record(self, point: PricePoint) -> PricePoint:
        pass

    @abstractmethod
    async def recent(
        self,
        since: Optional[float] = None,
        until: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> List[PricePoint]:
        """Points newest first, filtered by ``recorded_at`` in [since, until)."""

    @abstractmethod
    async def prune(self, older_than: float) -> int:
        """Delete points recorded before ``older_than``; returns the count."""

    async def latest(self) -> Optional[PricePoint]:
        points = await self.recent(limit=1)
        return points[0] if points else None

    async def statistics(self, since: float, until: float) -> PriceStatistics:
        points = await self.recent(since=since, until=until)
        return summarize_prices(points, since, until)

    async def ping(self) -> bool:
        await self.recent(limit=1)
        return True


class InMemoryPriceHistoryStore(PriceHistoryStore):
    """List-backed store, bounded to the newest ``max_points``."""

    def __init__(self, max_points: int = 10_000):
        self.max_points = max_points
        self._points: List[PricePoint] = []

    async def record(self, point: PricePoint) -> PricePoint:
        self._points.append(point)
        if len(self._points) > self.max_points:
            del self._points[: len(self._points) - self.max_points]
        return point

    async def recent(
        self,
        since: Optional[float] = None,
        until: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> List[PricePoint]:
        matches = [
            p
            for p in self._points
            if (since is None or p.recorded_at >= since)
            and (until is None or p.recorded_at < until)
        ]
        matches.sort(key=lambda p: p.recorded_at, reverse=True)
        return matches[:limit] if limit is not None else matches

    async def prune(self, older_than: float) -> int:
        before = len(self._points)
        self._points = [p for p in self._points if p.recorded_at >= older_than]
        return before - len(self._points)


_COLUMNS = [
    "recorded_at",
    "token_base_price",
    "base_usd_price",
    "reference_usd_price",
    "token_usd_price",
    "token_reference_price",
    "target_price",
    "deviation_percent",
    "token_reserve",
    "base_reserve",
    "liquidity_usd",
    "block_number",
    "is_valid",
    "warnings",
]


class SqlitePriceHistoryStore(PriceHistoryStore):
    """aiosqlite-backed price history."""

    def __init__(self, db_path: str = "peg_trades.db"):
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
                self._conn.row_factory = aiosqlite.Row
                await self._conn.execute("PRAGMA journal_mode=WAL")
                await self._conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS price_history (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        recorded_at REAL NOT NULL,
                        token_base_price REAL NOT NULL,
                        base_usd_price REAL NOT NULL,
                        reference_usd_price REAL NOT NULL,
                        token_usd_price REAL NOT NULL,
                        token_reference_price REAL NOT NULL,
                        target_price REAL NOT NULL,
                        deviation_percent REAL NOT NULL,
                        token_reserve REAL NOT NULL,
                        base_reserve REAL NOT NULL,
                        liquidity_usd REAL NOT NULL,
                        block_number INTEGER,
                        is_valid INTEGER NOT NULL,
                        warnings TEXT
                    )
                """
                )
                await self._conn.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_price_history_recorded
                    ON price_history(recorded_at)
                """
                )
                await self._conn.commit()
            except Exception as e:
                raise PersistenceError(
                    f"Failed to open price history {self.db_path}: {e}",
                    operation="initialize",
                )
            self._initialized = True
            logger.info(f"Price history initialized at {self.db_path}")

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
        except PersistenceError:
            raise
        except Exception as e:
            raise PersistenceError(
                f"Price history {operation} failed: {e}", operation=operation
            )

    @staticmethod
    def _from_row(row) -> PricePoint:
        data: Dict[str, Any] = dict(row)
        data["is_valid"] = bool(data["is_valid"])
        data["warnings"] = json.loads(data["warnings"] or "[]")
        return PricePoint.from_dict(data)

    async def record(self, point: PricePoint) -> PricePoint:
        data = point.to_dict()
        data["is_valid"] = int(point.is_valid)
        data["warnings"] = json.dumps(point.warnings)
        placeholders = ", ".join("?" for _ in _COLUMNS)

        async with self._connection("record") as conn:
            await conn.execute(
                f"INSERT INTO price_history ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
                tuple(data[c] for c in _COLUMNS),
            )
            await conn.commit()
        return point

    async def recent(
        self,
        since: Optional[float] = None,
        until: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> List[PricePoint]:
        clauses = []
        params: List[Any] = []
        if since is not None:
            clauses.append("recorded_at >= ?")
            params.append(since)
        if until is not None:
            clauses.append("recorded_at < ?")
            params.append(until)

        sql = "SELECT * FROM price_history"
        if clauses:
            sql += f" WHERE {' AND '.join(clauses)}"
        sql += " ORDER BY recorded_at DESC, id DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        async with self._connection("query") as conn:
            async with conn.execute(sql, params) as cursor:
                rows = await cursor.fetchall()
        return [self._from_row(row) for row in rows]

    async def prune(self, older_than: float) -> int:
        async with self._connection("prune") as conn:
            cursor = await conn.execute(
                "DELETE FROM price_history WHERE recorded_at < ?", (older_than,)
            )
            await conn.commit()
            deleted = cursor.rowcount
        if deleted:
            logger.info(f"Pruned {deleted} price history points")
        return deleted
