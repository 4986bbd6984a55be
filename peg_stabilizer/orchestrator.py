"""
Trade orchestration: the only path that opens, executes and closes trades.

submit() runs seven steps:

1. validate the request shape
2. gate on the risk gate (enabled, daily limits, trade size)
3. snapshot prices and peg deviation concurrently
4. open a PENDING trade record
5. execute exactly one swap through the chain executor
6. close the record as SUCCESS or FAILED
7. feed the outcome back into the risk gate

Steps 2 through 7 run under a per-bot lock. Every external call has a
bounded timeout. Nothing before step 4 touches the trade store, and once a
record exists it always reaches a terminal state.
"""

import asyncio
import math
from dataclasses import asdict, dataclass, replace
from typing import Any, Dict, Optional, Tuple, Union

from .chain_executor import ChainExecutor
from .exceptions import (
    ExecutionFailure,
    InvalidTransitionError,
    PersistenceError,
    SafetyViolation,
    ValidationError,
)
from .interfaces import TimeProvider, get_default_time_provider
from .metrics import PegMetrics
from .models import (
    ExecutionResult,
    TradeAction,
    TradeOutcome,
    TradeRecord,
    TradeRequest,
    TradeStatus,
    Urgency,
)
from .price_oracle import PriceOracle
from .risk_gate import RiskGate
from .trade_store import TradeRecordStore
from .utils import generate_trade_id, get_logger, percent_change

logger = get_logger(__name__)


@dataclass(frozen=True)
class OrchestratorTimeouts:
    """Per-call deadlines in seconds."""

    gate: float = 10.0
    snapshot: float = 15.0
    persist: float = 10.0
    execution: float = 180.0


@dataclass(frozen=True)
class ValidatedRequest:
    action: TradeAction
    amount: float
    min_output: Optional[float]
    slippage: Optional[float]
    urgency: Optional[Urgency]


@dataclass(frozen=True)
class TradeQuote:
    """Result of the side-effect-free estimate path."""

    action: TradeAction
    amount_in: float
    amount_out: float
    price: float  # base per token
    market_price: float
    price_impact_percent: float
    input_token: str
    output_token: str
    fee_percent: float

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["action"] = self.action.value
        return data


def _as_number(name: str, value: Any, allow_zero: bool) -> float:
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{name} must be a number", {name: value})
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a number", {name: value})
    if not math.isfinite(number):
        raise ValidationError(f"{name} must be finite", {name: value})
    if number < 0 or (number == 0 and not allow_zero):
        raise ValidationError(
            f"{name} must be {'non-negative' if allow_zero else 'positive'}",
            {name: value},
        )
    return number


def validate_request(request: Union[TradeRequest, Dict[str, Any]]) -> ValidatedRequest:
    """
    Check a trade request before any side effect.

    Raises:
        ValidationError: bad action, non-positive amount, negative minimum
            output or slippage outside [0, 1]
    """
    if isinstance(request, dict):
        request = TradeRequest.from_dict(request)

    try:
        action = TradeAction.parse(request.action)
    except ValueError as e:
        raise ValidationError(str(e), {"action": request.action})

    amount = _as_number("amount", request.amount, allow_zero=False)

    min_output = None
    if request.min_output is not None:
        min_output = _as_number("min_output", request.min_output, allow_zero=True)

    slippage = None
    if request.slippage is not None:
        slippage = _as_number("slippage", request.slippage, allow_zero=True)
        if slippage > 1:
            raise ValidationError(
                "slippage is a fraction and must be <= 1", {"slippage": slippage}
            )

    return ValidatedRequest(
        action=action,
        amount=amount,
        min_output=min_output,
        slippage=slippage,
        urgency=Urgency.parse(request.urgency),
    )


def execution_price(action: TradeAction, input_amount: float, output_amount: Optional[float]) -> Optional[float]:
    """Effective price in base per token for either direction."""
    if not output_amount or output_amount <= 0 or input_amount <= 0:
        return None
    if action == TradeAction.BUY:
        return input_amount / output_amount
    return output_amount / input_amount


class TradeOrchestrator:
    """Runs trade submissions for one bot identity."""

    def __init__(
        self,
        risk_gate: RiskGate,
        price_oracle: PriceOracle,
        chain_executor: ChainExecutor,
        trade_store: TradeRecordStore,
        time_provider: Optional[TimeProvider] = None,
        metrics: Optional[PegMetrics] = None,
        timeouts: Optional[OrchestratorTimeouts] = None,
        persist_attempts: int = 3,
        persist_backoff: float = 0.5,
        token_symbol: str = "TOKEN",
        base_symbol: str = "BNB",
    ):
        self.risk_gate = risk_gate
        self.price_oracle = price_oracle
        self.chain_executor = chain_executor
        self.trade_store = trade_store
        self.time_provider = time_provider or get_default_time_provider()
        self.metrics = metrics
        self.timeouts = timeouts or OrchestratorTimeouts()
        self.persist_attempts = max(1, persist_attempts)
        self.persist_backoff = persist_backoff
        self.token_symbol = token_symbol
        self.base_symbol = base_symbol
        self._lock = asyncio.Lock()

    @property
    def bot_id(self) -> str:
        return self.risk_gate.bot_id

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def _tokens(self, action: TradeAction) -> Tuple[str, str]:
        if action == TradeAction.BUY:
            return self.base_symbol, self.token_symbol
        return self.token_symbol, self.base_symbol

    def _reject(self, reason: str, request: ValidatedRequest, details: Dict[str, Any]) -> None:
        log_data = {
            "bot_id": self.bot_id,
            "reason": reason,
            "action": request.action.value,
            "amount": request.amount,
            **details,
        }
        logger.info(f"TRADE_REJECTED: {log_data}")
        if self.metrics is not None:
            self.metrics.record_rejection(self.bot_id, reason)

    async def submit(self, request: Union[TradeRequest, Dict[str, Any]]) -> TradeOutcome:
        """
        Submit one corrective trade.

        Returns:
            TradeOutcome holding the terminal trade record; a failed swap is
            returned as a FAILED record, not raised

        Raises:
            ValidationError: malformed request (nothing persisted)
            SafetyViolation: rejected by the risk gate (nothing persisted)
            UpstreamUnavailable: price snapshot failed (nothing persisted)
            ExecutionFailure: a pre-open read timed out (nothing persisted)
            PersistenceError: the record could not be opened, or the
                terminal status could not be saved after retries
        """
        # 1. validate
        try:
            validated = validate_request(request)
        except ValidationError as e:
            if self.metrics is not None:
                self.metrics.record_rejection(self.bot_id, "validation")
            reject_log = {"bot_id": self.bot_id, "reason": "validation", "error": str(e)}
            logger.info(f"TRADE_REJECTED: {reject_log}")
            raise

        async with self._lock:
            # 2. gate
            limits = await self._bounded(
                self.risk_gate.check_daily_limits(self.trade_store),
                self.timeouts.gate,
                "daily limit check",
            )
            try:
                self.risk_gate.screen_request(validated.amount, limits)
            except SafetyViolation as e:
                self._reject(e.reason, validated, e.details)
                raise

            if self.metrics is not None:
                self.metrics.record_submission(self.bot_id, validated.action.value)

            # 3. snapshot; deviation comes from the same pool read
            snapshot = await self._bounded(
                self.price_oracle.get_all_prices(),
                self.timeouts.snapshot,
                "price snapshot",
            )
            deviation = self.price_oracle.deviation_from(snapshot)

            # 4. open
            record = await self._open(validated, snapshot, deviation)

            # 5. execute
            result, failure, elapsed = await self._execute(record, validated)

            # 6. reconcile
            status, fields = self._terminal_fields(record, result, failure)
            closed = self._provisional(record, status, fields)
            persist_error: Optional[PersistenceError] = None
            feedback_error: Optional[PersistenceError] = None
            try:
                closed, persist_error = await self._close(record, status, fields)
            finally:
                # 7. feedback
                try:
                    await self.risk_gate.record_trade_outcome(closed)
                except PersistenceError as e:
                    logger.error(f"Failed to persist outcome of {closed.trade_id}: {e}")
                    feedback_error = e

        result_log = {
            "bot_id": self.bot_id,
            "trade_id": closed.trade_id,
            "action": closed.action.value,
            "status": closed.status.value,
            "input_amount": closed.input_amount,
            "output_amount": closed.output_amount,
            "execution_price": closed.execution_price,
            "tx_reference": closed.tx_reference,
            "gas_cost": closed.gas_cost,
            "error": closed.error,
            "duration_seconds": round(elapsed, 3),
        }
        logger.info(f"TRADE_RESULT: {result_log}")
        if self.metrics is not None:
            self.metrics.record_outcome(
                self.bot_id, closed.action.value, closed.status.value, elapsed
            )

        if persist_error is not None:
            raise persist_error
        if feedback_error is not None:
            raise feedback_error
        return TradeOutcome(trade=closed, execution=result)

    async def _bounded(self, awaitable, timeout: float, what: str):
        try:
            return await asyncio.wait_for(awaitable, timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{what} timed out after {timeout}s")
            raise ExecutionFailure(
                f"{what} timed out after {timeout}s", details={"step": what}
            )

    async def _open(self, request: ValidatedRequest, snapshot, deviation) -> TradeRecord:
        now = self.time_provider.current_timestamp()
        trade_id = generate_trade_id(now)
        input_token, output_token = self._tokens(request.action)
        slippage = (
            request.slippage
            if request.slippage is not None
            else self.risk_gate.resolve_slippage(request.urgency)
        )

        record = TradeRecord(
            trade_id=trade_id,
            action=request.action,
            input_amount=request.amount,
            input_token=input_token,
            output_token=output_token,
            min_output_amount=request.min_output or 0.0,
            slippage=slippage,
            status=TradeStatus.PENDING,
            initiated_at=now,
            created_at=now,
            updated_at=now,
            bot_id=self.bot_id,
            urgency=request.urgency,
            market_price_at_execution=snapshot.token_base_price,
            peg_deviation_at_creation=deviation.deviation_percent,
            liquidity_snapshot={
                "token_reserve": snapshot.token_reserve,
                "base_reserve": snapshot.base_reserve,
                "liquidity_usd": snapshot.liquidity_usd,
                "token_usd_price": snapshot.token_usd_price,
                "block_number": snapshot.block_number,
            },
            tx_reference=f"pending_{trade_id}",
        )

        try:
            await asyncio.wait_for(self.trade_store.create(record), self.timeouts.persist)
        except asyncio.TimeoutError:
            raise PersistenceError(
                f"Opening trade {trade_id} timed out", operation="create"
            )

        open_log = {
            "bot_id": self.bot_id,
            "trade_id": trade_id,
            "action": record.action.value,
            "input_amount": record.input_amount,
            "input_token": input_token,
            "slippage": slippage,
            "urgency": record.urgency.value if record.urgency else None,
            "market_price": record.market_price_at_execution,
            "deviation_percent": record.peg_deviation_at_creation,
        }
        logger.info(f"TRADE_OPENED: {open_log}")
        return record

    async def _execute(
        self, record: TradeRecord, request: ValidatedRequest
    ) -> Tuple[Optional[ExecutionResult], Optional[ExecutionFailure], float]:
        loop = asyncio.get_running_loop()
        started = loop.time()
        result: Optional[ExecutionResult] = None
        failure: Optional[ExecutionFailure] = None

        try:
            result = await asyncio.wait_for(
                self.chain_executor.execute(
                    record.action,
                    record.input_amount,
                    request.min_output,
                    record.slippage,
                    record.urgency,
                ),
                self.timeouts.execution,
            )
            if not result.success:
                failure = ExecutionFailure(
                    result.error or "Execution failed", trade_id=record.trade_id
                )
        except asyncio.TimeoutError:
            failure = ExecutionFailure(
                f"Execution timed out after {self.timeouts.execution}s",
                trade_id=record.trade_id,
            )
        except Exception as e:
            failure = ExecutionFailure(
                f"Executor error: {e}", trade_id=record.trade_id
            )

        if failure is not None:
            logger.warning(f"Trade {record.trade_id} failed: {failure}")
        return result, failure, loop.time() - started

    def _terminal_fields(
        self,
        record: TradeRecord,
        result: Optional[ExecutionResult],
        failure: Optional[ExecutionFailure],
    ) -> Tuple[TradeStatus, Dict[str, Any]]:
        now = self.time_provider.current_timestamp()

        if failure is None and result is not None:
            fields = dict(
                executed_at=now,
                output_amount=result.output_amount,
                execution_price=execution_price(
                    record.action, record.input_amount, result.output_amount
                ),
                tx_reference=result.tx_hash,
                block_reference=result.block_number,
                gas_used=result.gas_used,
                gas_price=result.gas_price,
                gas_cost=result.gas_cost,
            )
            if result.min_output_amount is not None:
                fields["min_output_amount"] = result.min_output_amount
            return TradeStatus.SUCCESS, fields

        fields = dict(error=str(failure), executed_at=now)
        if result is not None and result.tx_hash:
            fields["tx_reference"] = result.tx_hash
            fields["block_reference"] = result.block_number
        return TradeStatus.FAILED, fields

    @staticmethod
    def _provisional(
        record: TradeRecord, status: TradeStatus, fields: Dict[str, Any]
    ) -> TradeRecord:
        return replace(
            record, status=status, updated_at=fields["executed_at"], **fields
        )

    async def _already_closed(
        self, trade_id: str, status: TradeStatus
    ) -> Optional[TradeRecord]:
        """Stored record when an earlier timed-out write did commit ``status``."""
        try:
            stored = await asyncio.wait_for(
                self.trade_store.get(trade_id), self.timeouts.persist
            )
        except (PersistenceError, asyncio.TimeoutError) as e:
            logger.warning(f"Re-reading trade {trade_id} failed: {e!r}")
            return None
        if stored is not None and stored.status == status:
            return stored
        return None

    async def _close(
        self,
        record: TradeRecord,
        status: TradeStatus,
        fields: Dict[str, Any],
    ) -> Tuple[TradeRecord, Optional[PersistenceError]]:
        """
        Persist the terminal status, retrying store failures.

        Returns the closed record and, when every attempt failed, the error
        to raise once feedback has run. Never raises.
        """
        if status == TradeStatus.SUCCESS:
            write = self.trade_store.mark_success
        else:
            write = self.trade_store.mark_failed

        last_error: Optional[Exception] = None
        for attempt in range(1, self.persist_attempts + 1):
            try:
                return (
                    await asyncio.wait_for(
                        write(record.trade_id, **fields), self.timeouts.persist
                    ),
                    None,
                )
            except InvalidTransitionError as e:
                stored = await self._already_closed(record.trade_id, status)
                if stored is not None:
                    logger.info(
                        f"Trade {record.trade_id} was already closed as {status.value}"
                    )
                    return stored, None
                last_error = e
                break
            except Exception as e:
                last_error = e
                logger.warning(
                    f"Closing trade {record.trade_id} as {status.value} failed "
                    f"(attempt {attempt}/{self.persist_attempts}): {e!r}"
                )
                if attempt < self.persist_attempts:
                    await self.time_provider.sleep(self.persist_backoff * attempt)

        logger.error(
            f"Terminal status {status.value} of trade {record.trade_id} not saved: {last_error!r}"
        )
        return self._provisional(record, status, fields), PersistenceError(
            f"Could not save terminal status for trade {record.trade_id}: {last_error}",
            operation="transition",
            details={"trade_id": record.trade_id, "status": status.value},
        )

    async def estimate(self, amount: Any, action: Any) -> TradeQuote:
        """
        Quote a trade without opening a record or touching the risk gate.

        Raises:
            ValidationError: bad action or amount
            UpstreamUnavailable: quote or price source unreachable
        """
        validated = validate_request(TradeRequest(action=action, amount=amount))

        quote, snapshot = await self._bounded(
            asyncio.gather(
                self.chain_executor.estimate_swap(validated.amount, validated.action),
                self.price_oracle.get_all_prices(),
            ),
            self.timeouts.snapshot,
            "trade estimate",
        )

        spot = snapshot.token_base_price
        if validated.action == TradeAction.BUY:
            impact = percent_change(quote.price, spot)
        else:
            impact = -percent_change(quote.price, spot)

        return TradeQuote(
            action=validated.action,
            amount_in=quote.amount_in,
            amount_out=quote.amount_out,
            price=quote.price,
            market_price=spot,
            price_impact_percent=impact,
            input_token=quote.input_token,
            output_token=quote.output_token,
            fee_percent=quote.fee_percent,
        )
