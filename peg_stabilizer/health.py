"""
Liveness checks for the price oracle, chain executor and stores.

Each check runs independently and concurrently; a check that raises or
times out reports False instead of propagating. Never mutates state.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, List, Optional, Tuple

from .chain_executor import ChainExecutor
from .config_store import ConfigStore
from .interfaces import TimeProvider, get_default_time_provider
from .price_oracle import PriceOracle
from .trade_store import TradeRecordStore
from .utils import get_logger

logger = get_logger(__name__)


@dataclass
class HealthReport:
    healthy: bool
    services: Dict[str, bool]
    errors: Dict[str, str] = field(default_factory=dict)
    stale_pending_trades: List[str] = field(default_factory=list)
    timestamp: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "healthy": self.healthy,
            "services": dict(self.services),
            "errors": dict(self.errors),
            "stale_pending_trades": list(self.stale_pending_trades),
            "timestamp": self.timestamp,
        }


class HealthAggregator:
    """Reduces independent service checks to one health verdict."""

    def __init__(
        self,
        price_oracle: PriceOracle,
        chain_executor: ChainExecutor,
        trade_store: TradeRecordStore,
        config_store: Optional[ConfigStore] = None,
        bot_id: str = "default",
        check_timeout: float = 5.0,
        stale_pending_after: float = 600.0,
        time_provider: Optional[TimeProvider] = None,
    ):
        self.price_oracle = price_oracle
        self.chain_executor = chain_executor
        self.trade_store = trade_store
        self.config_store = config_store
        self.bot_id = bot_id
        self.check_timeout = check_timeout
        self.stale_pending_after = stale_pending_after
        self.time_provider = time_provider or get_default_time_provider()

    async def _check_component(self, name: str, awaitable: Awaitable) -> Tuple[bool, Optional[str]]:
        try:
            await asyncio.wait_for(awaitable, self.check_timeout)
            return True, None
        except asyncio.TimeoutError:
            logger.warning(f"Health check {name} timed out after {self.check_timeout}s")
            return False, "timeout"
        except Exception as e:
            logger.warning(f"Health check {name} failed: {e}")
            return False, str(e)

    async def _stores(self) -> None:
        await self.trade_store.ping()
        if self.config_store is not None:
            await self.config_store.ping()

    async def _stale_pending(self) -> List[str]:
        cutoff = self.time_provider.current_timestamp() - self.stale_pending_after
        try:
            stale = await asyncio.wait_for(
                self.trade_store.find_stale_pending(self.bot_id, cutoff),
                self.check_timeout,
            )
        except Exception as e:
            logger.warning(f"Stale pending lookup failed: {e!r}")
            return []
        if stale:
            logger.warning(
                f"{len(stale)} trade(s) PENDING for more than {self.stale_pending_after}s"
            )
        return [record.trade_id for record in stale]

    async def check(self) -> HealthReport:
        (oracle, executor, store), stale = await asyncio.gather(
            asyncio.gather(
                self._check_component("price_oracle", self.price_oracle.get_all_prices()),
                self._check_component("chain_executor", self.chain_executor.ping()),
                self._check_component("store", self._stores()),
            ),
            self._stale_pending(),
        )

        results = {"price_oracle": oracle, "chain_executor": executor, "store": store}
        services = {name: ok for name, (ok, _) in results.items()}
        errors = {name: err for name, (ok, err) in results.items() if not ok}

        return HealthReport(
            healthy=all(services.values()),
            services=services,
            errors=errors,
            stale_pending_trades=stale,
            timestamp=self.time_provider.current_timestamp(),
        )
