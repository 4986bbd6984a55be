"""
Bot configuration schema using Pydantic.

BotConfiguration is the single mutable record per bot identity. Operator
updates arrive as per-section *Patch models which reject unknown and
out-of-range fields before anything is merged.
"""

from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from .exceptions import ConfigurationError, ValidationError
from .utils import deep_merge


class Thresholds(BaseModel):
    """Peg deviation bands in percent (absolute value of the deviation)"""

    hold: float = Field(default=0.5, ge=0, le=100)
    trade_low: float = Field(default=2.0, ge=0, le=100)
    trade_medium: float = Field(default=5.0, ge=0, le=100)
    trade_high: float = Field(default=10.0, ge=0, le=100)
    trade_emergency: float = Field(default=15.0, ge=0, le=100)

    @model_validator(mode="after")
    def validate_ascending(self):
        ordered = [
            ("hold", self.hold),
            ("trade_low", self.trade_low),
            ("trade_medium", self.trade_medium),
            ("trade_high", self.trade_high),
            ("trade_emergency", self.trade_emergency),
        ]
        for (lower_name, lower), (upper_name, upper) in zip(ordered, ordered[1:]):
            if lower >= upper:
                raise ValueError(
                    f"{lower_name} threshold must be less than {upper_name}"
                )
        return self


class MinBalance(BaseModel):
    """Wallet balances below which trading is unsafe"""

    token: float = Field(default=10.0, ge=0)
    base: float = Field(default=0.1, ge=0)


class Limits(BaseModel):
    """Per-trade and per-day trading limits"""

    max_trade_size: float = Field(default=1.0, ge=0)
    max_daily_volume: float = Field(default=10.0, ge=0)
    max_daily_trades: int = Field(default=100, ge=0)
    min_balance: MinBalance = Field(default_factory=MinBalance)

    @model_validator(mode="after")
    def validate_daily_volume(self):
        if self.max_daily_volume < self.max_trade_size:
            raise ValueError("max_daily_volume should be >= max_trade_size")
        return self


class Slippage(BaseModel):
    """Slippage tolerance per urgency tier, as a fraction (0.02 = 2%)"""

    low: float = Field(default=0.01, ge=0, le=1)
    medium: float = Field(default=0.02, ge=0, le=1)
    high: float = Field(default=0.05, ge=0, le=1)
    emergency: float = Field(default=0.10, ge=0, le=1)
    default: float = Field(default=0.02, ge=0, le=1)


class Strategy(BaseModel):
    """Monitoring cadence, trade sizing and liquidity floor"""

    price_check_interval_ms: int = Field(default=60_000, ge=0)
    min_time_between_trades_ms: int = Field(default=60_000, ge=0)
    min_liquidity_usd: float = Field(default=1000.0, ge=0)
    max_price_impact: float = Field(default=3.0, ge=0, le=100)
    sizing: Literal["FIXED", "PROPORTIONAL", "DYNAMIC"] = "PROPORTIONAL"
    fixed_amount: float = Field(default=0.1, ge=0)


class Safety(BaseModel):
    max_consecutive_errors: int = Field(default=5, ge=1, le=100)
    auto_pause_on_errors: bool = True
    circuit_breaker_enabled: bool = True
    enable_daily_limits: bool = True


class Statistics(BaseModel):
    """Runtime counters maintained by the risk gate"""

    total_trades: int = Field(default=0, ge=0)
    successful_trades: int = Field(default=0, ge=0)
    failed_trades: int = Field(default=0, ge=0)
    total_volume_base: float = Field(default=0.0, ge=0)
    total_volume_token: float = Field(default=0.0, ge=0)
    total_gas_cost: float = Field(default=0.0, ge=0)
    last_trade_at: Optional[float] = None
    last_error_at: Optional[float] = None
    consecutive_errors: int = Field(default=0, ge=0)


class BotConfiguration(BaseModel):
    """Complete configuration record for one bot identity"""

    bot_id: str = "default"
    bot_name: str = "Peg Stabilizer Bot"
    enabled: bool = False
    paused_at: Optional[float] = None
    pause_reason: Optional[str] = None
    target_peg: float = Field(default=0.01, gt=0, description="Target price in USD")
    thresholds: Thresholds = Field(default_factory=Thresholds)
    limits: Limits = Field(default_factory=Limits)
    slippage: Slippage = Field(default_factory=Slippage)
    strategy: Strategy = Field(default_factory=Strategy)
    safety: Safety = Field(default_factory=Safety)
    statistics: Statistics = Field(default_factory=Statistics)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    last_modified_by: str = "system"
    updated_at: Optional[float] = None


# === Partial updates ===


class _Patch(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ThresholdsPatch(_Patch):
    hold: Optional[float] = Field(default=None, ge=0, le=100)
    trade_low: Optional[float] = Field(default=None, ge=0, le=100)
    trade_medium: Optional[float] = Field(default=None, ge=0, le=100)
    trade_high: Optional[float] = Field(default=None, ge=0, le=100)
    trade_emergency: Optional[float] = Field(default=None, ge=0, le=100)


class MinBalancePatch(_Patch):
    token: Optional[float] = Field(default=None, ge=0)
    base: Optional[float] = Field(default=None, ge=0)


class LimitsPatch(_Patch):
    max_trade_size: Optional[float] = Field(default=None, ge=0)
    max_daily_volume: Optional[float] = Field(default=None, ge=0)
    max_daily_trades: Optional[int] = Field(default=None, ge=0)
    min_balance: Optional[MinBalancePatch] = None


class SlippagePatch(_Patch):
    low: Optional[float] = Field(default=None, ge=0, le=1)
    medium: Optional[float] = Field(default=None, ge=0, le=1)
    high: Optional[float] = Field(default=None, ge=0, le=1)
    emergency: Optional[float] = Field(default=None, ge=0, le=1)
    default: Optional[float] = Field(default=None, ge=0, le=1)


class StrategyPatch(_Patch):
    price_check_interval_ms: Optional[int] = Field(default=None, ge=0)
    min_time_between_trades_ms: Optional[int] = Field(default=None, ge=0)
    min_liquidity_usd: Optional[float] = Field(default=None, ge=0)
    max_price_impact: Optional[float] = Field(default=None, ge=0, le=100)
    sizing: Optional[Literal["FIXED", "PROPORTIONAL", "DYNAMIC"]] = None
    fixed_amount: Optional[float] = Field(default=None, ge=0)


class SafetyPatch(_Patch):
    max_consecutive_errors: Optional[int] = Field(default=None, ge=1, le=100)
    auto_pause_on_errors: Optional[bool] = None
    circuit_breaker_enabled: Optional[bool] = None
    enable_daily_limits: Optional[bool] = None


class ConfigPatch(_Patch):
    """Operator update; every section optional, unknown keys rejected"""

    target_peg: Optional[float] = Field(default=None, gt=0)
    bot_name: Optional[str] = None
    thresholds: Optional[ThresholdsPatch] = None
    limits: Optional[LimitsPatch] = None
    slippage: Optional[SlippagePatch] = None
    strategy: Optional[StrategyPatch] = None
    safety: Optional[SafetyPatch] = None
    modified_by: Optional[str] = None


PATCH_SECTIONS = ("thresholds", "limits", "slippage", "strategy", "safety")


def _pydantic_errors(error: PydanticValidationError) -> list:
    return [
        {"loc": ".".join(str(p) for p in e["loc"]), "msg": e["msg"]}
        for e in error.errors()
    ]


def parse_config_patch(raw: Dict[str, Any]) -> ConfigPatch:
    """Validate a raw update dict into a ConfigPatch."""
    if not isinstance(raw, dict):
        raise ValidationError("Config update must be an object")
    try:
        return ConfigPatch.model_validate(raw)
    except PydanticValidationError as e:
        raise ValidationError(
            "Invalid configuration update", {"errors": _pydantic_errors(e)}
        )


def apply_config_patch(
    config: BotConfiguration, patch: ConfigPatch
) -> BotConfiguration:
    """
    Merge a patch into a copy of ``config`` and revalidate the result.

    Cross-field rules (threshold ordering, daily volume vs. trade size) are
    checked on the merged record, so a patch that is valid on its own can
    still be rejected.
    """
    data = config.model_dump()

    for section in PATCH_SECTIONS:
        section_patch = getattr(patch, section)
        if section_patch is None:
            continue
        updates = section_patch.model_dump(exclude_none=True)
        data[section] = deep_merge(data[section], updates)

    if patch.target_peg is not None:
        data["target_peg"] = patch.target_peg
    if patch.bot_name is not None:
        data["bot_name"] = patch.bot_name
    data["last_modified_by"] = patch.modified_by or "api"

    try:
        return BotConfiguration.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(
            "Configuration update rejected", {"errors": _pydantic_errors(e)}
        )


def validate_bot_config(config_dict: Dict[str, Any]) -> BotConfiguration:
    """Build a BotConfiguration from a loaded dict."""
    try:
        return BotConfiguration.model_validate(config_dict)
    except PydanticValidationError as e:
        raise ConfigurationError(
            f"Invalid bot configuration: {e}", {"errors": _pydantic_errors(e)}
        )
