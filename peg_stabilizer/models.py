"""
Type definitions for the peg stabilizer.
Contains the enums and dataclasses shared by the oracle, risk gate,
orchestrator and stores.
"""

import math
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class TradeAction(str, Enum):
    """Swap direction relative to the pegged token."""

    BUY = "BUY"  # base -> token
    SELL = "SELL"  # token -> base

    @classmethod
    def parse(cls, value: Any) -> "TradeAction":
        if isinstance(value, cls):
            return value
        if isinstance(value, str) and value in cls.__members__:
            return cls[value]
        raise ValueError(f"Invalid action {value!r}. Must be BUY or SELL")


class TradeStatus(str, Enum):
    """
    Lifecycle of a persisted trade record.

    Values:
        PENDING: Record opened, chain execution not yet reconciled
        SUCCESS: Swap confirmed on chain
        FAILED: Executor reported an error or timed out
    """

    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (TradeStatus.SUCCESS, TradeStatus.FAILED)

    def can_transition_to(self, target: "TradeStatus") -> bool:
        return target in _ALLOWED_TRANSITIONS.get(self, frozenset())


_ALLOWED_TRANSITIONS = {
    TradeStatus.PENDING: frozenset({TradeStatus.SUCCESS, TradeStatus.FAILED}),
}


class Urgency(str, Enum):
    """Slippage tier requested for a trade."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    EMERGENCY = "EMERGENCY"

    @classmethod
    def parse(cls, value: Any) -> Optional["Urgency"]:
        """Return the matching tier, or None for absent/unrecognized values."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str) and value.upper() in cls.__members__:
            return cls[value.upper()]
        return None


@dataclass(frozen=True)
class PriceSnapshot:
    """Prices and pool reserves captured by one oracle poll."""

    token_base_price: float  # token priced in the pool's base asset
    base_usd_price: float
    reference_usd_price: float
    token_usd_price: float
    token_reference_price: float
    base_reference_price: float
    token_reserve: float
    base_reserve: float
    liquidity_usd: float
    timestamp: float
    block_number: Optional[int] = None

    @property
    def reference_satoshis(self) -> int:
        return int(math.floor(self.token_reference_price * 100_000_000))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["reference_satoshis"] = self.reference_satoshis
        return data


@dataclass(frozen=True)
class Deviation:
    """Signed distance of the current token price from the peg."""

    current_price: float
    target_price: float
    deviation_percent: float
    timestamp: float

    @property
    def direction(self) -> str:
        if self.deviation_percent > 0:
            return "above"
        if self.deviation_percent < 0:
            return "below"
        return "at"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["direction"] = self.direction
        return data


@dataclass(frozen=True)
class LiquidityDepth:
    """Pool depth and price-impact profile."""

    token_reserve: float
    base_reserve: float
    total_value_usd: float
    price_impact_estimates: Dict[str, float]
    healthy: bool
    minimum_usd: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TradeRequest:
    """Ephemeral submission input, validated before any side effect."""

    action: Any
    amount: Any
    min_output: Optional[float] = None
    slippage: Optional[float] = None
    urgency: Optional[Any] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TradeRequest":
        return cls(
            action=data.get("action"),
            amount=data.get("amount"),
            min_output=data.get("min_output", data.get("minOutput")),
            slippage=data.get("slippage"),
            urgency=data.get("urgency"),
        )


@dataclass
class TradeRecord:
    """Persisted trade attempt. Created PENDING, closed SUCCESS or FAILED."""

    trade_id: str
    action: TradeAction
    input_amount: float
    input_token: str
    output_token: str
    min_output_amount: float
    slippage: float
    status: TradeStatus
    initiated_at: float
    created_at: float
    updated_at: float
    bot_id: str = "default"
    urgency: Optional[Urgency] = None
    market_price_at_execution: Optional[float] = None
    peg_deviation_at_creation: Optional[float] = None
    liquidity_snapshot: Dict[str, Any] = field(default_factory=dict)
    tx_reference: Optional[str] = None
    block_reference: Optional[int] = None
    output_amount: Optional[float] = None
    execution_price: Optional[float] = None
    gas_used: Optional[int] = None
    gas_price: Optional[int] = None
    gas_cost: Optional[float] = None
    error: Optional[str] = None
    executed_at: Optional[float] = None

    @property
    def duration(self) -> Optional[float]:
        if self.executed_at is None:
            return None
        return self.executed_at - self.initiated_at

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["action"] = self.action.value
        data["status"] = self.status.value
        data["urgency"] = self.urgency.value if self.urgency else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TradeRecord":
        values = dict(data)
        values["action"] = TradeAction(values["action"])
        values["status"] = TradeStatus(values["status"])
        values["urgency"] = Urgency.parse(values.get("urgency"))
        values["liquidity_snapshot"] = values.get("liquidity_snapshot") or {}
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in values.items() if k in known})


@dataclass(frozen=True)
class DailyActivity:
    """Successful trade volume and count within one UTC calendar day."""

    day_start: float
    day_end: float
    volume: float
    trade_count: int
    gas_cost: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DailyLimitCheck:
    exceeded: bool
    volume_used: float
    volume_limit: float
    trades_used: int
    trades_limit: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ExecutionResult:
    """
    Result of one chain executor swap call.

    Attributes:
        success: Whether the swap was confirmed
        tx_hash: Transaction hash (if broadcast)
        block_number: Block the swap was mined in
        output_amount: Amount of the output token received
        gas_cost: Gas cost in the base asset
        error: Operator-facing error message (if failed)
    """

    success: bool
    action: TradeAction
    input_amount: float
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    output_amount: Optional[float] = None
    min_output_amount: Optional[float] = None
    gas_used: Optional[int] = None
    gas_price: Optional[int] = None
    gas_cost: Optional[float] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["action"] = self.action.value
        return data


@dataclass(frozen=True)
class SwapEstimate:
    """Quoted swap output without execution."""

    amount_in: float
    amount_out: float
    price: float  # base per token
    input_token: str
    output_token: str
    fee_percent: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Balances:
    token: float
    base: float
    address: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SafetyCheck:
    name: str
    passed: bool
    detail: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SafetyStatus:
    """AND-reduction of the individual safety checks, each kept for display."""

    safe: bool
    checks: Dict[str, SafetyCheck]
    recent_errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def failed_checks(self) -> List[str]:
        return [name for name, check in self.checks.items() if not check.passed]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "safe": self.safe,
            "checks": {
                name: {"passed": check.passed, **check.detail}
                for name, check in self.checks.items()
            },
            "failed_checks": self.failed_checks,
            "recent_errors": self.recent_errors,
        }


@dataclass
class TradeOutcome:
    """What submit() hands back: the terminal record plus the raw executor result."""

    trade: TradeRecord
    execution: Optional[ExecutionResult] = None

    @property
    def success(self) -> bool:
        return self.trade.status == TradeStatus.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "trade": self.trade.to_dict(),
            "execution": self.execution.to_dict() if self.execution else None,
        }


@dataclass(frozen=True)
class TradeStatistics:
    """Rolling-window trade summary (reporting only)."""

    window_start: float
    window_end: float
    total: int
    successful: int
    failed: int
    pending: int
    volume_by_token: Dict[str, float]
    total_gas_cost: float
    buy_count: int
    sell_count: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PricePoint:
    """One recorded oracle poll."""

    recorded_at: float
    token_base_price: float
    base_usd_price: float
    reference_usd_price: float
    token_usd_price: float
    token_reference_price: float
    target_price: float
    deviation_percent: float
    token_reserve: float
    base_reserve: float
    liquidity_usd: float
    block_number: Optional[int] = None
    is_valid: bool = True
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def from_snapshot(
        cls,
        snapshot: PriceSnapshot,
        deviation: Deviation,
        warnings: Optional[List[str]] = None,
    ) -> "PricePoint":
        warnings = list(warnings or [])
        return cls(
            recorded_at=snapshot.timestamp,
            token_base_price=snapshot.token_base_price,
            base_usd_price=snapshot.base_usd_price,
            reference_usd_price=snapshot.reference_usd_price,
            token_usd_price=snapshot.token_usd_price,
            token_reference_price=snapshot.token_reference_price,
            target_price=deviation.target_price,
            deviation_percent=deviation.deviation_percent,
            token_reserve=snapshot.token_reserve,
            base_reserve=snapshot.base_reserve,
            liquidity_usd=snapshot.liquidity_usd,
            block_number=snapshot.block_number,
            is_valid=not warnings,
            warnings=warnings,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PricePoint":
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass(frozen=True)
class PriceStatistics:
    """
    Summary of recorded polls over a window.

    ``price``, ``deviation`` and ``liquidity`` hold current/min/max/avg/median;
    ``volatility_percent`` is the population standard deviation of the USD
    price relative to its mean. All are None when nothing was recorded.
    """

    window_start: float
    window_end: float
    count: int
    period_start: Optional[float] = None
    period_end: Optional[float] = None
    price: Optional[Dict[str, float]] = None
    deviation: Optional[Dict[str, float]] = None
    liquidity: Optional[Dict[str, float]] = None
    volatility_percent: Optional[float] = None
    trend: str = "UNKNOWN"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
