"""
Risk gate for one bot identity.

Owns the BotConfiguration record and answers three questions for the
orchestrator: may a trade be opened right now, which slippage applies,
and what the outcome of a closed trade does to the error counters. The
circuit breaker (automatic pause after consecutive failures) lives here.
"""

import asyncio
from typing import Any, Dict, List, Optional, Union

from .config_schema import (
    BotConfiguration,
    ConfigPatch,
    Statistics,
    apply_config_patch,
    parse_config_patch,
)
from .config_store import ConfigStore
from .exceptions import SafetyViolation, ValidationError
from .interfaces import TimeProvider, get_default_time_provider
from .metrics import PegMetrics
from .models import (
    Balances,
    DailyLimitCheck,
    LiquidityDepth,
    SafetyCheck,
    SafetyStatus,
    TradeAction,
    TradeRecord,
    TradeStatus,
    Urgency,
)
from .utils import get_logger, utc_day_bounds

logger = get_logger(__name__)

CIRCUIT_BREAKER_REASON = "circuit breaker"


class RiskGate:
    """
    Configuration holder and safety evaluator for one bot identity.

    Reads of ``config`` are unsynchronized. Every mutation replaces the
    whole record under one lock, so the counter update and the automatic
    pause in record_trade_outcome() are atomic with respect to each other
    and to operator changes.
    """

    def __init__(
        self,
        config: BotConfiguration,
        config_store: ConfigStore,
        time_provider: Optional[TimeProvider] = None,
        metrics: Optional[PegMetrics] = None,
    ):
        self._config = config
        self.config_store = config_store
        self.time_provider = time_provider or get_default_time_provider()
        self.metrics = metrics
        self._lock = asyncio.Lock()

    @classmethod
    async def load(
        cls,
        bot_id: str,
        config_store: ConfigStore,
        defaults: Optional[BotConfiguration] = None,
        time_provider: Optional[TimeProvider] = None,
        metrics: Optional[PegMetrics] = None,
    ) -> "RiskGate":
        """Stored configuration wins; ``defaults`` only seed a new identity."""
        time_provider = time_provider or get_default_time_provider()
        stored = await config_store.load(bot_id)

        if stored is None:
            seed = (defaults or BotConfiguration()).model_copy(
                update={
                    "bot_id": bot_id,
                    "updated_at": time_provider.current_timestamp(),
                }
            )
            await config_store.save(seed)
            logger.info(f"Seeded configuration for bot {bot_id}")
            stored = seed

        gate = cls(stored, config_store, time_provider, metrics)
        gate._publish()
        return gate

    @property
    def config(self) -> BotConfiguration:
        return self._config

    @property
    def bot_id(self) -> str:
        return self._config.bot_id

    @property
    def is_enabled(self) -> bool:
        return self._config.enabled

    def _publish(self) -> None:
        if self.metrics is not None:
            self.metrics.update_bot_state(
                self.bot_id,
                self._config.enabled,
                self._config.statistics.consecutive_errors,
            )

    async def _commit(self, config: BotConfiguration) -> BotConfiguration:
        """Swap in ``config`` and persist it. Caller holds the lock."""
        config = config.model_copy(
            update={"updated_at": self.time_provider.current_timestamp()}
        )
        self._config = config
        self._publish()
        await self.config_store.save(config)
        return config

    # === Gate checks ===

    async def check_daily_limits(self, store) -> DailyLimitCheck:
        """
        Compare today's (UTC) successful activity against the daily limits.

        ``exceeded`` is true when either used value has reached its limit.
        With ``safety.enable_daily_limits`` off it is always false.
        """
        config = self._config
        day_start, day_end = utc_day_bounds(self.time_provider.current_timestamp())
        activity = await store.daily_activity(config.bot_id, day_start, day_end)

        volume_limit = config.limits.max_daily_volume
        trades_limit = config.limits.max_daily_trades
        exceeded = config.safety.enable_daily_limits and (
            activity.volume >= volume_limit or activity.trade_count >= trades_limit
        )

        if self.metrics is not None:
            self.metrics.update_daily_volume(config.bot_id, activity.volume)

        return DailyLimitCheck(
            exceeded=exceeded,
            volume_used=activity.volume,
            volume_limit=volume_limit,
            trades_used=activity.trade_count,
            trades_limit=trades_limit,
        )

    def screen_request(self, amount: float, limits: DailyLimitCheck) -> None:
        """
        Reject a submission before any record is opened.

        Raises:
            SafetyViolation: disabled, daily limit reached or would be
                passed, or amount above the per-trade maximum
        """
        config = self._config

        if not config.enabled:
            raise SafetyViolation(
                "bot disabled",
                details={
                    "pause_reason": config.pause_reason,
                    "paused_at": config.paused_at,
                },
            )

        if limits.exceeded:
            raise SafetyViolation("daily limit exceeded", details=limits.to_dict())

        if amount > config.limits.max_trade_size:
            raise SafetyViolation(
                "trade size exceeds limit",
                details={
                    "amount": amount,
                    "max_trade_size": config.limits.max_trade_size,
                },
            )

        if (
            config.safety.enable_daily_limits
            and limits.volume_used + amount > limits.volume_limit
        ):
            raise SafetyViolation(
                "daily limit exceeded",
                details={**limits.to_dict(), "requested": amount},
            )

    def evaluate_safety(
        self,
        balances: Optional[Balances],
        liquidity: Optional[LiquidityDepth],
        daily_limits: DailyLimitCheck,
        recent_errors: Optional[List[Dict[str, Any]]] = None,
    ) -> SafetyStatus:
        """
        Reduce the five safety checks to one verdict.

        A missing ``balances`` or ``liquidity`` (source unavailable) fails
        that check.
        """
        config = self._config
        minimum = config.limits.min_balance

        checks: Dict[str, SafetyCheck] = {}

        checks["bot_enabled"] = SafetyCheck(
            "bot_enabled",
            config.enabled,
            {"pause_reason": config.pause_reason},
        )

        if balances is None:
            checks["sufficient_balance"] = SafetyCheck(
                "sufficient_balance", False, {"error": "balances unavailable"}
            )
        else:
            checks["sufficient_balance"] = SafetyCheck(
                "sufficient_balance",
                balances.token >= minimum.token and balances.base >= minimum.base,
                {
                    "token": balances.token,
                    "base": balances.base,
                    "min_token": minimum.token,
                    "min_base": minimum.base,
                },
            )

        checks["daily_limits"] = SafetyCheck(
            "daily_limits", not daily_limits.exceeded, daily_limits.to_dict()
        )

        if liquidity is None:
            checks["liquidity"] = SafetyCheck(
                "liquidity", False, {"error": "liquidity unavailable"}
            )
        else:
            checks["liquidity"] = SafetyCheck(
                "liquidity",
                liquidity.healthy,
                {
                    "total_value_usd": liquidity.total_value_usd,
                    "minimum_usd": liquidity.minimum_usd,
                },
            )

        errors = config.statistics.consecutive_errors
        checks["error_rate"] = SafetyCheck(
            "error_rate",
            errors < config.safety.max_consecutive_errors,
            {
                "consecutive_errors": errors,
                "max_consecutive_errors": config.safety.max_consecutive_errors,
            },
        )

        return SafetyStatus(
            safe=all(check.passed for check in checks.values()),
            checks=checks,
            recent_errors=list(recent_errors or []),
        )

    def resolve_slippage(self, urgency: Any) -> float:
        """Slippage fraction for an urgency tier; unknown or absent -> default."""
        tiers = self._config.slippage
        mapping = {
            Urgency.LOW: tiers.low,
            Urgency.MEDIUM: tiers.medium,
            Urgency.HIGH: tiers.high,
            Urgency.EMERGENCY: tiers.emergency,
        }
        return mapping.get(Urgency.parse(urgency), tiers.default)

    # === Feedback ===

    async def record_trade_outcome(self, trade: TradeRecord) -> BotConfiguration:
        """
        Fold a closed trade into the statistics.

        SUCCESS resets the consecutive error counter, FAILED increments it.
        When auto-pause is on and the counter reaches the maximum the bot is
        disabled with reason "circuit breaker".
        """
        if not trade.status.is_terminal:
            raise ValidationError(
                f"Trade {trade.trade_id} is not closed", {"status": trade.status.value}
            )

        async with self._lock:
            config = self._config
            stats = config.statistics.model_copy()
            now = self.time_provider.current_timestamp()
            updates: Dict[str, Any] = {}

            stats.total_trades += 1
            if trade.status == TradeStatus.SUCCESS:
                stats.successful_trades += 1
                stats.consecutive_errors = 0
                stats.last_trade_at = now
                if trade.action == TradeAction.BUY:
                    stats.total_volume_base += trade.input_amount
                else:
                    stats.total_volume_token += trade.input_amount
                stats.total_gas_cost += trade.gas_cost or 0.0
            else:
                stats.failed_trades += 1
                stats.consecutive_errors += 1
                stats.last_error_at = now

                if (
                    config.enabled
                    and config.safety.auto_pause_on_errors
                    and stats.consecutive_errors >= config.safety.max_consecutive_errors
                ):
                    updates.update(
                        enabled=False,
                        paused_at=now,
                        pause_reason=CIRCUIT_BREAKER_REASON,
                        last_modified_by="risk_gate",
                    )
                    logger.warning(
                        f"CIRCUIT_BREAKER: bot {config.bot_id} paused after "
                        f"{stats.consecutive_errors} consecutive errors"
                    )
                    if self.metrics is not None:
                        self.metrics.record_circuit_breaker(config.bot_id)

            updates["statistics"] = stats
            return await self._commit(config.model_copy(update=updates))

    # === Operator mutations ===

    async def enable(self, reason: Optional[str] = None, actor: str = "operator") -> BotConfiguration:
        async with self._lock:
            config = await self._commit(
                self._config.model_copy(
                    update={
                        "enabled": True,
                        "paused_at": None,
                        "pause_reason": None,
                        "last_modified_by": actor,
                    }
                )
            )
        logger.info(f"Bot {self.bot_id} enabled by {actor}" + (f": {reason}" if reason else ""))
        return config

    async def disable(
        self, reason: Optional[str] = None, actor: str = "operator"
    ) -> BotConfiguration:
        async with self._lock:
            config = await self._commit(
                self._config.model_copy(
                    update={
                        "enabled": False,
                        "paused_at": self.time_provider.current_timestamp(),
                        "pause_reason": reason or "Manual disable",
                        "last_modified_by": actor,
                    }
                )
            )
        logger.info(f"Bot {self.bot_id} disabled by {actor}: {config.pause_reason}")
        return config

    async def emergency_pause(
        self, reason: Optional[str] = None, actor: str = "operator"
    ) -> BotConfiguration:
        """Disable with an emergency audit label."""
        config = await self.disable(f"EMERGENCY: {reason or 'Emergency pause'}", actor)
        logger.warning(f"EMERGENCY_PAUSE: bot {self.bot_id} by {actor}: {reason}")
        return config

    async def update_config(
        self, patch: Union[ConfigPatch, Dict[str, Any]]
    ) -> BotConfiguration:
        """
        Apply a validated partial update.

        Raises:
            ValidationError: unknown field, out-of-range value or a merged
                config that breaks a cross-field rule
        """
        if not isinstance(patch, ConfigPatch):
            patch = parse_config_patch(patch)

        async with self._lock:
            merged = apply_config_patch(self._config, patch)
            config = await self._commit(merged)
        logger.info(f"Configuration for bot {self.bot_id} updated by {config.last_modified_by}")
        return config

    async def reset_statistics(self, actor: str = "operator") -> BotConfiguration:
        async with self._lock:
            config = await self._commit(
                self._config.model_copy(
                    update={"statistics": Statistics(), "last_modified_by": actor}
                )
            )
        logger.info(f"Statistics for bot {self.bot_id} reset by {actor}")
        return config
