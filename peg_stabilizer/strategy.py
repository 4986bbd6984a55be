"""
Deviation-to-trade decisions for the monitoring loop.

The strategy only proposes trades; every proposal still goes through the
orchestrator and its risk gate.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .config_schema import BotConfiguration
from .models import Balances, TradeAction, Urgency
from .utils import format_deviation, get_logger

logger = get_logger(__name__)

HOLD = "HOLD"
CIRCUIT_BREAKER = "CIRCUIT_BREAKER"
INVALID_PRICES = "INVALID_PRICES"

# share of limits.max_trade_size available in each band
BAND_SHARES = {
    Urgency.LOW: 0.1,
    Urgency.MEDIUM: 0.3,
    Urgency.HIGH: 0.5,
    Urgency.EMERGENCY: 1.0,
}

BALANCE_USAGE_CAP = 0.8
DYNAMIC_DAMPING = 0.8


@dataclass
class TradeDecision:
    """
    Proposed corrective trade.

    ``amount`` is in the input asset of ``action``: base units for BUY,
    token units for SELL. ``band`` is HOLD, an urgency name,
    CIRCUIT_BREAKER or INVALID_PRICES.
    """

    band: str
    deviation_percent: float
    action: Optional[TradeAction] = None
    amount: float = 0.0
    urgency: Optional[Urgency] = None
    reasons: List[str] = field(default_factory=list)

    @property
    def should_trade(self) -> bool:
        return self.action is not None and self.amount > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "band": self.band,
            "deviation_percent": self.deviation_percent,
            "action": self.action.value if self.action else None,
            "amount": self.amount,
            "urgency": self.urgency.value if self.urgency else None,
            "reasons": self.reasons,
        }


class PegStrategy:
    """Maps |deviation| onto the threshold bands and sizes the trade."""

    def classify(self, deviation_percent: float, config: BotConfiguration) -> str:
        thresholds = config.thresholds
        magnitude = abs(deviation_percent)

        if magnitude < thresholds.hold:
            return HOLD
        if magnitude < thresholds.trade_low:
            return Urgency.LOW.value
        if magnitude < thresholds.trade_medium:
            return Urgency.MEDIUM.value
        if magnitude < thresholds.trade_high:
            return Urgency.HIGH.value
        if magnitude < thresholds.trade_emergency:
            return Urgency.EMERGENCY.value
        if config.safety.circuit_breaker_enabled:
            return CIRCUIT_BREAKER
        return Urgency.EMERGENCY.value

    def decide(
        self,
        deviation_percent: float,
        token_base_price: float,
        balances: Balances,
        config: BotConfiguration,
    ) -> TradeDecision:
        """
        Propose a trade for the current deviation.

        Positive deviation (token above peg) sells the token, negative buys it.
        """
        band = self.classify(deviation_percent, config)
        decision = TradeDecision(band=band, deviation_percent=deviation_percent)

        if band == HOLD:
            decision.reasons.append("deviation within hold band")
            return decision
        if band == CIRCUIT_BREAKER:
            decision.reasons.append("deviation beyond emergency threshold")
            logger.warning(
                f"Deviation {format_deviation(deviation_percent)} beyond emergency threshold, not trading"
            )
            return decision

        urgency = Urgency(band)
        magnitude = abs(deviation_percent)
        max_amount = config.limits.max_trade_size * BAND_SHARES[urgency]
        sizing = config.strategy.sizing

        if sizing == "FIXED":
            amount = config.strategy.fixed_amount
        elif sizing == "DYNAMIC":
            amount = max_amount * (magnitude / config.thresholds.trade_high) * DYNAMIC_DAMPING
        else:
            amount = max_amount * (magnitude / config.thresholds.trade_high)

        amount = min(amount, max_amount)

        if deviation_percent > 0:
            action = TradeAction.SELL
            amount = min(amount, balances.token * token_base_price * BALANCE_USAGE_CAP)
            # sized in base units so far; sell the token equivalent
            amount = amount / token_base_price if token_base_price > 0 else 0.0
            # limits apply to the input amount, which is token units here
            amount = min(amount, config.limits.max_trade_size)
        else:
            action = TradeAction.BUY
            amount = min(amount, balances.base * BALANCE_USAGE_CAP)

        decision.action = action
        decision.urgency = urgency
        decision.amount = max(amount, 0.0)
        if decision.amount == 0:
            decision.reasons.append("no balance available for trade")
        return decision
