"""
Dependency injection interfaces for time handling.

The orchestrator, risk gate and stores read the clock through a
TimeProvider so tests can pin the calendar day and move time forward
without sleeping.
"""

import asyncio
import time
from typing import Protocol, runtime_checkable


@runtime_checkable
class TimeProvider(Protocol):
    """Protocol for time-related operations."""

    def current_timestamp(self) -> float:
        """Get current Unix timestamp."""
        ...

    async def sleep(self, duration: float) -> None:
        """Sleep for specified duration in seconds."""
        ...


class SystemTimeProvider:
    """Production time provider using system time."""

    def current_timestamp(self) -> float:
        return time.time()

    async def sleep(self, duration: float) -> None:
        await asyncio.sleep(duration)


class DeterministicTimeProvider:
    """Deterministic time provider for testing."""

    def __init__(self, start_time: float = 1704067200.0):  # 2024-01-01 00:00 UTC
        self._current_time = start_time

    def current_timestamp(self) -> float:
        return self._current_time

    async def sleep(self, duration: float) -> None:
        """Advance time by duration instead of actually sleeping."""
        self._current_time += duration
        await asyncio.sleep(0)

    def advance_time(self, seconds: float) -> None:
        """Manually advance time by specified seconds."""
        self._current_time += seconds


def get_default_time_provider() -> TimeProvider:
    """Get the production time provider."""
    return SystemTimeProvider()
