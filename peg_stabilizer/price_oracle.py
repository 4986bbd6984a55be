"""
Price oracle for the pegged token.

Reads the token/base pool reserves from an AMM pair and the base/USD and
reference/USD prices from Chainlink-style aggregators, then derives the
token's USD and reference prices, pool liquidity and peg deviation.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from web3 import Web3

from .config_loader import ChainSettings
from .config_schema import BotConfiguration
from .exceptions import ConfigurationError, UpstreamUnavailable, ValidationError
from .interfaces import TimeProvider, get_default_time_provider
from .models import Deviation, LiquidityDepth, PriceSnapshot
from .utils import constant_product_output, get_logger, percent_change

logger = get_logger(__name__)

# Uniswap V2 / PancakeSwap pair ABI (minimal)
PAIR_ABI = [
    {
        "constant": True,
        "inputs": [],
        "name": "getReserves",
        "outputs": [
            {"name": "reserve0", "type": "uint112"},
            {"name": "reserve1", "type": "uint112"},
            {"name": "blockTimestampLast", "type": "uint32"},
        ],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "token0",
        "outputs": [{"name": "", "type": "address"}],
        "type": "function",
    },
]

# Chainlink aggregator ABI (minimal)
AGGREGATOR_ABI = [
    {
        "inputs": [],
        "name": "latestRoundData",
        "outputs": [
            {"name": "roundId", "type": "uint80"},
            {"name": "answer", "type": "int256"},
            {"name": "startedAt", "type": "uint256"},
            {"name": "updatedAt", "type": "uint256"},
            {"name": "answeredInRound", "type": "uint80"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function",
    },
]

DEFAULT_IMPACT_SIZES = (1.0, 5.0, 10.0)


@dataclass(frozen=True)
class PoolReserves:
    """Pair reserves in token units, ordered token/base."""

    token_reserve: float
    base_reserve: float
    block_timestamp: Optional[int] = None


@dataclass(frozen=True)
class FeedReading:
    """One aggregator answer scaled by its decimals."""

    price: float
    updated_at: Optional[int] = None
    round_id: Optional[int] = None


class PriceSource(ABC):
    """External market data the oracle derives prices from."""

    @abstractmethod
    async def get_pool_reserves(self) -> PoolReserves:
        """Current token/base reserves of the pair."""

    @abstractmethod
    async def get_base_usd(self) -> FeedReading:
        """Base asset price in USD."""

    @abstractmethod
    async def get_reference_usd(self) -> FeedReading:
        """Reference asset (BTC) price in USD."""

    async def get_block_number(self) -> Optional[int]:
        return None


class StaticPriceSource(PriceSource):
    """Fixed market data for paper runs and tests."""

    def __init__(
        self,
        token_reserve: float = 1_000_000.0,
        base_reserve: float = 16.0,
        base_usd: float = 625.0,
        reference_usd: float = 62_500.0,
    ):
        self.token_reserve = token_reserve
        self.base_reserve = base_reserve
        self.base_usd = base_usd
        self.reference_usd = reference_usd
        self.calls = 0

    def set_reserves(self, token_reserve: float, base_reserve: float) -> None:
        self.token_reserve = token_reserve
        self.base_reserve = base_reserve

    async def get_pool_reserves(self) -> PoolReserves:
        self.calls += 1
        return PoolReserves(self.token_reserve, self.base_reserve)

    async def get_base_usd(self) -> FeedReading:
        self.calls += 1
        return FeedReading(self.base_usd)

    async def get_reference_usd(self) -> FeedReading:
        self.calls += 1
        return FeedReading(self.reference_usd)


class Web3PriceSource(PriceSource):
    """
    Reads the pair and the two aggregators over JSON-RPC.

    web3's HTTP provider is blocking, so each read runs in a worker thread.
    """

    def __init__(self, settings: ChainSettings, w3: Optional[Web3] = None):
        missing = [
            name
            for name in ("rpc_url", "pair_address", "token_address", "base_usd_feed", "reference_usd_feed")
            if not getattr(settings, name)
        ]
        if missing and w3 is None:
            raise ConfigurationError(
                f"Missing chain settings for price source: {', '.join(missing)}",
                {"missing": missing},
            )

        self.settings = settings
        self.w3 = w3 or Web3(
            Web3.HTTPProvider(
                settings.rpc_url, request_kwargs={"timeout": settings.request_timeout}
            )
        )
        self.pair = self.w3.eth.contract(
            address=Web3.to_checksum_address(settings.pair_address), abi=PAIR_ABI
        )
        self.base_feed = self.w3.eth.contract(
            address=Web3.to_checksum_address(settings.base_usd_feed), abi=AGGREGATOR_ABI
        )
        self.reference_feed = self.w3.eth.contract(
            address=Web3.to_checksum_address(settings.reference_usd_feed),
            abi=AGGREGATOR_ABI,
        )
        self._token_is_token0: Optional[bool] = None

    async def _call(self, source: str, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except Exception as e:
            raise UpstreamUnavailable(f"{source} read failed: {e}", source=source)

    def _read_reserves(self) -> PoolReserves:
        reserve0, reserve1, block_ts = self.pair.functions.getReserves().call()
        if self._token_is_token0 is None:
            token0 = self.pair.functions.token0().call()
            self._token_is_token0 = (
                token0.lower() == self.settings.token_address.lower()
            )

        if self._token_is_token0:
            token_raw, base_raw = reserve0, reserve1
        else:
            token_raw, base_raw = reserve1, reserve0

        return PoolReserves(
            token_reserve=token_raw / 10**self.settings.token_decimals,
            base_reserve=base_raw / 10**self.settings.base_decimals,
            block_timestamp=int(block_ts),
        )

    @staticmethod
    def _read_feed(feed) -> FeedReading:
        round_id, answer, _, updated_at, _ = feed.functions.latestRoundData().call()
        decimals = feed.functions.decimals().call()
        return FeedReading(
            price=answer / 10**decimals,
            updated_at=int(updated_at),
            round_id=int(round_id),
        )

    async def get_pool_reserves(self) -> PoolReserves:
        return await self._call("pool", self._read_reserves)

    async def get_base_usd(self) -> FeedReading:
        return await self._call("base_usd_feed", self._read_feed, self.base_feed)

    async def get_reference_usd(self) -> FeedReading:
        return await self._call(
            "reference_usd_feed", self._read_feed, self.reference_feed
        )

    async def get_block_number(self) -> Optional[int]:
        return await self._call("rpc", lambda: self.w3.eth.block_number)


class PriceOracle:
    """
    Derives prices, liquidity and peg deviation from a PriceSource.

    Feed readings are cached for ``cache_ttl`` seconds; pool reserves are
    read fresh on every call. All public methods are read-only and can be
    awaited concurrently.
    """

    def __init__(
        self,
        source: PriceSource,
        config_provider: Optional[Callable[[], BotConfiguration]] = None,
        target_peg: float = 0.01,
        min_liquidity_usd: float = 1000.0,
        cache_ttl: float = 60.0,
        impact_sizes: Sequence[float] = DEFAULT_IMPACT_SIZES,
        fee_bps: int = 25,
        time_provider: Optional[TimeProvider] = None,
    ):
        self.source = source
        self.config_provider = config_provider
        self.default_target_peg = target_peg
        self.default_min_liquidity_usd = min_liquidity_usd
        self.cache_ttl = cache_ttl
        self.impact_sizes = tuple(impact_sizes)
        self.fee_bps = fee_bps
        self.time_provider = time_provider or get_default_time_provider()
        self._feed_cache: Dict[str, Tuple[FeedReading, float]] = {}

    @property
    def target_peg(self) -> float:
        if self.config_provider is not None:
            return self.config_provider().target_peg
        return self.default_target_peg

    @property
    def min_liquidity_usd(self) -> float:
        if self.config_provider is not None:
            return self.config_provider().strategy.min_liquidity_usd
        return self.default_min_liquidity_usd

    async def _cached_feed(self, name: str, fetch) -> FeedReading:
        now = self.time_provider.current_timestamp()
        cached = self._feed_cache.get(name)
        if cached is not None and now - cached[1] < self.cache_ttl:
            logger.debug(f"Cache hit for {name}: {cached[0].price}")
            return cached[0]

        reading = await self._guard(name, fetch())
        self._feed_cache[name] = (reading, now)
        return reading

    async def _guard(self, source: str, awaitable):
        try:
            return await awaitable
        except UpstreamUnavailable:
            raise
        except Exception as e:
            raise UpstreamUnavailable(f"{source} unavailable: {e}", source=source)

    def clear_cache(self) -> None:
        self._feed_cache.clear()
        logger.info("Price cache cleared")

    async def get_all_prices(self) -> PriceSnapshot:
        """
        Capture one PriceSnapshot.

        Raises:
            UpstreamUnavailable: If the pool or either feed cannot be read
        """
        reserves, base_usd, reference_usd, block_number = await asyncio.gather(
            self._guard("pool", self.source.get_pool_reserves()),
            self._cached_feed("base_usd", self.source.get_base_usd),
            self._cached_feed("reference_usd", self.source.get_reference_usd),
            self._block_number(),
        )

        if reserves.token_reserve <= 0 or reserves.base_reserve <= 0:
            raise UpstreamUnavailable(
                "Pool has no liquidity",
                source="pool",
                details={
                    "token_reserve": reserves.token_reserve,
                    "base_reserve": reserves.base_reserve,
                },
            )
        if reference_usd.price <= 0:
            raise UpstreamUnavailable(
                f"Reference feed returned {reference_usd.price}",
                source="reference_usd",
            )

        token_base = reserves.base_reserve / reserves.token_reserve
        token_usd = token_base * base_usd.price

        return PriceSnapshot(
            token_base_price=token_base,
            base_usd_price=base_usd.price,
            reference_usd_price=reference_usd.price,
            token_usd_price=token_usd,
            token_reference_price=token_usd / reference_usd.price,
            base_reference_price=base_usd.price / reference_usd.price,
            token_reserve=reserves.token_reserve,
            base_reserve=reserves.base_reserve,
            liquidity_usd=reserves.base_reserve * 2 * base_usd.price,
            timestamp=self.time_provider.current_timestamp(),
            block_number=block_number,
        )

    async def _block_number(self) -> Optional[int]:
        try:
            return await self.source.get_block_number()
        except Exception as e:
            logger.debug(f"Block number unavailable: {e}")
            return None

    @staticmethod
    def compute_deviation(
        current_price: float, target_price: float, timestamp: float
    ) -> Deviation:
        """Positive when the current price is above the peg."""
        return Deviation(
            current_price=current_price,
            target_price=target_price,
            deviation_percent=percent_change(current_price, target_price),
            timestamp=timestamp,
        )

    async def get_peg_deviation(self, target_price: Optional[float] = None) -> Deviation:
        """
        Deviation of the token's USD price from ``target_price``.

        Args:
            target_price: Peg in USD; defaults to the configured target peg
        """
        target = self._resolve_target(target_price)
        snapshot = await self.get_all_prices()
        return self.deviation_from(snapshot, target)

    def _resolve_target(self, target_price: Optional[float]) -> float:
        target = self.target_peg if target_price is None else target_price
        if target is None or target <= 0:
            raise ValidationError(
                f"Target price must be positive, got {target}", {"target": target}
            )
        return target

    def deviation_from(
        self, snapshot: PriceSnapshot, target_price: Optional[float] = None
    ) -> Deviation:
        """Deviation of an already captured snapshot, without another pool read."""
        target = self._resolve_target(target_price)
        return self.compute_deviation(
            snapshot.token_usd_price, target, snapshot.timestamp
        )

    def estimate_price_impact(
        self, amount_base: float, token_reserve: float, base_reserve: float
    ) -> float:
        """Percent price impact of buying with ``amount_base`` of the base asset."""
        if amount_base <= 0 or token_reserve <= 0 or base_reserve <= 0:
            return 0.0
        spot = base_reserve / token_reserve
        out = constant_product_output(
            amount_base, base_reserve, token_reserve, self.fee_bps
        )
        if out <= 0:
            return 100.0
        effective = amount_base / out
        return percent_change(effective, spot)

    async def get_liquidity_depth(self) -> LiquidityDepth:
        snapshot = await self.get_all_prices()
        minimum = self.min_liquidity_usd

        estimates = {
            f"{size:g}": self.estimate_price_impact(
                size, snapshot.token_reserve, snapshot.base_reserve
            )
            for size in self.impact_sizes
        }

        return LiquidityDepth(
            token_reserve=snapshot.token_reserve,
            base_reserve=snapshot.base_reserve,
            total_value_usd=snapshot.liquidity_usd,
            price_impact_estimates=estimates,
            healthy=snapshot.liquidity_usd >= minimum,
            minimum_usd=minimum,
        )

    def validate_prices(
        self,
        snapshot: PriceSnapshot,
        base_usd_range: Optional[Tuple[float, float]] = None,
        reference_usd_range: Optional[Tuple[float, float]] = None,
    ) -> List[str]:
        """
        Sanity-check a snapshot.

        Returns:
            List of problems; empty when the snapshot looks sane
        """
        problems = []

        for name in ("token_base_price", "base_usd_price", "reference_usd_price", "token_reference_price"):
            value = getattr(snapshot, name)
            if value <= 0:
                problems.append(f"{name} is not positive: {value}")

        if base_usd_range is not None:
            low, high = base_usd_range
            if not low <= snapshot.base_usd_price <= high:
                problems.append(
                    f"base_usd_price {snapshot.base_usd_price} outside [{low}, {high}]"
                )

        if reference_usd_range is not None:
            low, high = reference_usd_range
            if not low <= snapshot.reference_usd_price <= high:
                problems.append(
                    f"reference_usd_price {snapshot.reference_usd_price} outside [{low}, {high}]"
                )

        if snapshot.liquidity_usd < self.min_liquidity_usd:
            problems.append(
                f"liquidity_usd {snapshot.liquidity_usd:.2f} below minimum {self.min_liquidity_usd:.2f}"
            )

        for problem in problems:
            logger.warning(f"Price validation: {problem}")

        return problems
