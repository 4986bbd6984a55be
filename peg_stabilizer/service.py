"""
Peg bot service: the operation surface used by the web server and CLI,
plus the PegKeeper monitoring loop.
"""

import asyncio
from typing import Any, Dict, List, Optional, Union

from .chain_executor import ChainExecutor, PaperChainExecutor, Web3ChainExecutor
from .config_loader import ChainSettings
from .config_schema import BotConfiguration, ConfigPatch
from .config_store import ConfigStore, InMemoryConfigStore, SqliteConfigStore
from .exceptions import (
    PegStabilizerError,
    PersistenceError,
    SafetyViolation,
    UpstreamUnavailable,
    ValidationError,
)
from .health import HealthAggregator, HealthReport
from .interfaces import TimeProvider, get_default_time_provider
from .metrics import PegMetrics
from .models import (
    Balances,
    Deviation,
    LiquidityDepth,
    PricePoint,
    PriceSnapshot,
    PriceStatistics,
    SafetyStatus,
    TradeOutcome,
    TradeRecord,
    TradeRequest,
    TradeStatistics,
    TradeStatus,
)
from .orchestrator import OrchestratorTimeouts, TradeOrchestrator, TradeQuote
from .price_history import (
    InMemoryPriceHistoryStore,
    PriceHistoryStore,
    SqlitePriceHistoryStore,
)
from .price_oracle import PriceOracle, PriceSource, StaticPriceSource, Web3PriceSource
from .risk_gate import RiskGate
from .strategy import INVALID_PRICES, PegStrategy, TradeDecision
from .trade_store import InMemoryTradeStore, SqliteTradeStore, TradeRecordStore
from .utils import format_deviation, get_logger, utc_day_bounds

logger = get_logger(__name__)

MAX_HISTORY_LIMIT = 500
MAX_PRICE_HISTORY_LIMIT = 1000
PRICE_HISTORY_RETENTION = 90 * 86400
RECENT_ERROR_WINDOW = 3600
RECENT_ERROR_LIMIT = 3


class PegBotService:
    """Wires oracle, gate, orchestrator, stores and health for one bot."""

    def __init__(
        self,
        risk_gate: RiskGate,
        price_oracle: PriceOracle,
        chain_executor: ChainExecutor,
        trade_store: TradeRecordStore,
        config_store: ConfigStore,
        metrics: Optional[PegMetrics] = None,
        time_provider: Optional[TimeProvider] = None,
        timeouts: Optional[OrchestratorTimeouts] = None,
        token_symbol: str = "TOKEN",
        base_symbol: str = "BNB",
        price_history: Optional[PriceHistoryStore] = None,
    ):
        self.risk_gate = risk_gate
        self.price_oracle = price_oracle
        self.chain_executor = chain_executor
        self.trade_store = trade_store
        self.config_store = config_store
        self.price_history = price_history or InMemoryPriceHistoryStore()
        self.metrics = metrics or PegMetrics()
        self.time_provider = time_provider or get_default_time_provider()
        self.token_symbol = token_symbol
        self.base_symbol = base_symbol
        self.orchestrator = TradeOrchestrator(
            risk_gate,
            price_oracle,
            chain_executor,
            trade_store,
            time_provider=self.time_provider,
            metrics=self.metrics,
            timeouts=timeouts,
            token_symbol=token_symbol,
            base_symbol=base_symbol,
        )
        self.health = HealthAggregator(
            price_oracle,
            chain_executor,
            trade_store,
            config_store=config_store,
            bot_id=risk_gate.bot_id,
            time_provider=self.time_provider,
        )

    @property
    def bot_id(self) -> str:
        return self.risk_gate.bot_id

    async def close(self) -> None:
        await self.trade_store.close()
        await self.config_store.close()
        await self.price_history.close()

    # === Prices ===

    async def _read(self, source: str, awaitable):
        try:
            return await awaitable
        except UpstreamUnavailable as e:
            self.metrics.record_upstream_error(self.bot_id, e.source or source)
            raise

    async def get_current_prices(self) -> PriceSnapshot:
        return await self._read("prices", self.price_oracle.get_all_prices())

    async def get_deviation(self, target: Optional[float] = None) -> Deviation:
        deviation = await self._read(
            "prices", self.price_oracle.get_peg_deviation(target)
        )
        self.metrics.update_market(self.bot_id, deviation.deviation_percent)
        return deviation

    async def get_liquidity_depth(self) -> LiquidityDepth:
        depth = await self._read("pool", self.price_oracle.get_liquidity_depth())
        self.metrics.liquidity_usd.labels(bot_id=self.bot_id).set(depth.total_value_usd)
        return depth

    async def get_balances(self) -> Balances:
        return await self._read("balances", self.chain_executor.get_balances())

    # === Price history ===

    async def record_price(
        self,
        snapshot: PriceSnapshot,
        deviation: Deviation,
        warnings: Optional[List[str]] = None,
    ) -> PricePoint:
        """Append one poll and drop points past the retention window."""
        point = PricePoint.from_snapshot(snapshot, deviation, warnings)
        await self.price_history.record(point)
        await self.price_history.prune(
            self.time_provider.current_timestamp() - PRICE_HISTORY_RETENTION
        )
        return point

    def _window_start(self, hours: Any) -> float:
        if isinstance(hours, bool) or not isinstance(hours, (int, float)) or hours <= 0:
            raise ValidationError("hours must be positive", {"hours": hours})
        return self.time_provider.current_timestamp() - hours * 3600

    async def get_price_history(self, hours: float = 24, limit: int = 100) -> List[PricePoint]:
        """Recorded polls, newest first, within the last ``hours``."""
        if not isinstance(limit, int) or limit < 1 or limit > MAX_PRICE_HISTORY_LIMIT:
            raise ValidationError(
                f"limit must be between 1 and {MAX_PRICE_HISTORY_LIMIT}", {"limit": limit}
            )
        since = self._window_start(hours)
        return await self.price_history.recent(since=since, limit=limit)

    async def get_price_statistics(self, hours: float = 24) -> PriceStatistics:
        since = self._window_start(hours)
        now = self.time_provider.current_timestamp()
        return await self.price_history.statistics(since, now + 1e-6)

    # === Trading ===

    async def estimate_trade(self, amount: Any, action: Any) -> TradeQuote:
        return await self.orchestrator.estimate(amount, action)

    async def submit_trade(
        self,
        action: Any,
        amount: Any,
        min_output: Optional[float] = None,
        slippage: Optional[float] = None,
        urgency: Optional[str] = None,
    ) -> TradeOutcome:
        return await self.orchestrator.submit(
            TradeRequest(
                action=action,
                amount=amount,
                min_output=min_output,
                slippage=slippage,
                urgency=urgency,
            )
        )

    # === Trade queries ===

    async def get_trade(self, trade_id: str) -> Optional[TradeRecord]:
        return await self.trade_store.get(trade_id)

    async def get_trade_history(
        self,
        status: Optional[str] = None,
        hours: Optional[float] = None,
        limit: int = 50,
    ) -> List[TradeRecord]:
        """Newest first. ``hours`` is a rolling window ending now."""
        if not isinstance(limit, int) or limit < 1 or limit > MAX_HISTORY_LIMIT:
            raise ValidationError(
                f"limit must be between 1 and {MAX_HISTORY_LIMIT}", {"limit": limit}
            )

        status_filter = None
        if status is not None:
            try:
                status_filter = TradeStatus(str(status).upper())
            except ValueError:
                raise ValidationError(
                    "status must be PENDING, SUCCESS or FAILED", {"status": status}
                )

        since = None
        if hours is not None:
            if hours <= 0:
                raise ValidationError("hours must be positive", {"hours": hours})
            since = self.time_provider.current_timestamp() - hours * 3600

        return await self.trade_store.query(
            self.bot_id, since=since, status=status_filter, limit=limit
        )

    async def get_trade_statistics(self, window_hours: float = 24) -> TradeStatistics:
        if window_hours <= 0:
            raise ValidationError(
                "window_hours must be positive", {"window_hours": window_hours}
            )
        now = self.time_provider.current_timestamp()
        return await self.trade_store.statistics(
            self.bot_id, now - window_hours * 3600, now + 1e-6
        )

    # === Composite reads ===

    async def _optional(self, awaitable):
        try:
            return await awaitable
        except (UpstreamUnavailable, asyncio.TimeoutError) as e:
            logger.warning(f"Safety input unavailable: {e!r}")
            return None

    async def _recent_errors(self) -> List[Dict[str, Any]]:
        since = self.time_provider.current_timestamp() - RECENT_ERROR_WINDOW
        failed = await self.trade_store.query(
            self.bot_id, since=since, status=TradeStatus.FAILED, limit=RECENT_ERROR_LIMIT
        )
        return [
            {"trade_id": r.trade_id, "error": r.error, "executed_at": r.executed_at}
            for r in failed
        ]

    async def get_safety_status(self) -> SafetyStatus:
        balances, liquidity, limits, recent_errors = await asyncio.gather(
            self._optional(self.chain_executor.get_balances()),
            self._optional(self.price_oracle.get_liquidity_depth()),
            self.risk_gate.check_daily_limits(self.trade_store),
            self._recent_errors(),
        )
        return self.risk_gate.evaluate_safety(balances, liquidity, limits, recent_errors)

    async def get_health(self) -> HealthReport:
        return await self.health.check()

    async def get_portfolio_status(self) -> Dict[str, Any]:
        config = self.risk_gate.config
        day_start, day_end = utc_day_bounds(self.time_provider.current_timestamp())

        balances, snapshot, today, recent = await asyncio.gather(
            self.get_balances(),
            self.get_current_prices(),
            self.trade_store.daily_activity(self.bot_id, day_start, day_end),
            self.trade_store.query(self.bot_id, limit=5),
        )

        token_usd = balances.token * snapshot.token_usd_price
        base_usd = balances.base * snapshot.base_usd_price

        return {
            "bot_id": self.bot_id,
            "wallet": balances.address,
            "balances": {
                self.token_symbol: {"amount": balances.token, "usd": token_usd},
                self.base_symbol: {"amount": balances.base, "usd": base_usd},
                "total_usd": token_usd + base_usd,
            },
            "bot_status": {
                "enabled": config.enabled,
                "paused_at": config.paused_at,
                "pause_reason": config.pause_reason,
                "consecutive_errors": config.statistics.consecutive_errors,
            },
            "statistics": config.statistics.model_dump(),
            "today": today.to_dict(),
            "recent_trades": [r.to_dict() for r in recent],
            "prices": snapshot.to_dict(),
        }

    # === Configuration ===

    def get_config(self) -> BotConfiguration:
        return self.risk_gate.config

    async def update_config(
        self, patch: Union[ConfigPatch, Dict[str, Any]]
    ) -> BotConfiguration:
        return await self.risk_gate.update_config(patch)

    async def enable(self, reason: Optional[str] = None, actor: str = "operator") -> BotConfiguration:
        return await self.risk_gate.enable(reason, actor)

    async def disable(self, reason: Optional[str] = None, actor: str = "operator") -> BotConfiguration:
        return await self.risk_gate.disable(reason, actor)

    async def emergency_pause(
        self, reason: Optional[str] = None, actor: str = "operator"
    ) -> BotConfiguration:
        return await self.risk_gate.emergency_pause(reason, actor)

    async def reset_statistics(self, actor: str = "operator") -> BotConfiguration:
        return await self.risk_gate.reset_statistics(actor)


class PegKeeper:
    """
    Monitoring loop: poll the deviation, ask the strategy, submit through
    the orchestrator. Skips while the bot is disabled and honours
    ``strategy.min_time_between_trades_ms``.
    """

    def __init__(
        self,
        service: PegBotService,
        strategy: Optional[PegStrategy] = None,
        time_provider: Optional[TimeProvider] = None,
    ):
        self.service = service
        self.strategy = strategy or PegStrategy()
        self.time_provider = time_provider or service.time_provider
        self.last_submission_at: Optional[float] = None
        self.iterations = 0
        self._stopped = asyncio.Event()

    def stop(self) -> None:
        self._stopped.set()

    async def tick(self) -> Optional[TradeDecision]:
        """One monitoring pass. Returns the strategy decision, if one was made."""
        config = self.service.risk_gate.config
        if not config.enabled:
            logger.debug(f"Bot {config.bot_id} disabled, skipping check")
            return None

        now = self.time_provider.current_timestamp()
        cooldown = config.strategy.min_time_between_trades_ms / 1000
        if self.last_submission_at is not None and now - self.last_submission_at < cooldown:
            return None

        snapshot = await self.service.get_current_prices()
        deviation = self.service.price_oracle.deviation_from(snapshot, config.target_peg)
        self.service.metrics.update_market(
            config.bot_id, deviation.deviation_percent, snapshot.liquidity_usd
        )
        problems = self.service.price_oracle.validate_prices(snapshot)

        try:
            await self.service.record_price(snapshot, deviation, problems)
        except PersistenceError as e:
            logger.warning(f"Price history not recorded: {e}")

        if problems:
            decision = TradeDecision(
                band=INVALID_PRICES,
                deviation_percent=deviation.deviation_percent,
                reasons=problems,
            )
            logger.warning(f"PEG_CHECK: {decision.to_dict()}")
            return decision

        balances = await self.service.get_balances()

        decision = self.strategy.decide(
            deviation.deviation_percent, snapshot.token_base_price, balances, config
        )
        logger.info(f"PEG_CHECK: {decision.to_dict()}")

        if not decision.should_trade:
            return decision

        self.last_submission_at = now
        try:
            outcome = await self.service.orchestrator.submit(
                TradeRequest(
                    action=decision.action,
                    amount=decision.amount,
                    urgency=decision.urgency,
                )
            )
            logger.info(
                f"Keeper trade {outcome.trade.trade_id} closed {outcome.trade.status.value} "
                f"at deviation {format_deviation(decision.deviation_percent)}"
            )
        except (SafetyViolation, ValidationError) as e:
            logger.info(f"Keeper trade not submitted: {e}")
        return decision

    async def run(self, max_iterations: Optional[int] = None) -> None:
        logger.info(f"PegKeeper started for bot {self.service.bot_id}")
        self._stopped.clear()

        while not self._stopped.is_set():
            try:
                await self.tick()
            except PegStabilizerError as e:
                logger.warning(f"Keeper check failed: {e}")

            self.iterations += 1
            if max_iterations is not None and self.iterations >= max_iterations:
                break

            interval = self.service.risk_gate.config.strategy.price_check_interval_ms
            await self.time_provider.sleep(interval / 1000)

        logger.info(f"PegKeeper stopped after {self.iterations} checks")


def build_price_source(settings: ChainSettings) -> PriceSource:
    if settings.has_chain_access and settings.base_usd_feed and settings.reference_usd_feed:
        return Web3PriceSource(settings)
    logger.warning("Chain settings incomplete, using static price source")
    return StaticPriceSource()


async def create_service(
    bot_config: BotConfiguration,
    settings: ChainSettings,
    db_path: Optional[str] = None,
    metrics: Optional[PegMetrics] = None,
    time_provider: Optional[TimeProvider] = None,
) -> PegBotService:
    """
    Build a service from startup configuration.

    Paper mode uses the PaperChainExecutor; ``db_path`` selects SQLite
    stores, otherwise in-memory stores are used.
    """
    time_provider = time_provider or get_default_time_provider()
    metrics = metrics or PegMetrics()

    if db_path:
        trade_store: TradeRecordStore = SqliteTradeStore(db_path)
        config_store: ConfigStore = SqliteConfigStore(db_path)
        price_history: PriceHistoryStore = SqlitePriceHistoryStore(db_path)
    else:
        trade_store = InMemoryTradeStore()
        config_store = InMemoryConfigStore()
        price_history = InMemoryPriceHistoryStore()
    await trade_store.initialize()
    await config_store.initialize()
    await price_history.initialize()

    risk_gate = await RiskGate.load(
        bot_config.bot_id,
        config_store,
        defaults=bot_config,
        time_provider=time_provider,
        metrics=metrics,
    )

    source = build_price_source(settings)
    oracle = PriceOracle(
        source,
        config_provider=lambda: risk_gate.config,
        cache_ttl=settings.feed_cache_ttl,
        time_provider=time_provider,
    )

    if settings.paper_mode:
        executor: ChainExecutor = PaperChainExecutor(
            source, token_symbol=settings.token_symbol, base_symbol=settings.base_symbol
        )
        logger.info("Chain executor running in PAPER MODE")
    else:
        executor = Web3ChainExecutor(settings)

    return PegBotService(
        risk_gate,
        oracle,
        executor,
        trade_store,
        config_store,
        metrics=metrics,
        time_provider=time_provider,
        token_symbol=settings.token_symbol,
        base_symbol=settings.base_symbol,
        price_history=price_history,
    )
