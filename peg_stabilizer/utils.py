"""
Common utilities and helper functions for the peg stabilizer.

Centralizes UTC day windows, trade ids, percentage and pool math and
logger construction so every module formats these the same way.
"""

import logging
import secrets
import sys
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple, Union


# Timestamp utilities
def utc_day_bounds(timestamp: float) -> Tuple[float, float]:
    """
    Get the [start, end) Unix timestamps of the UTC calendar day containing
    ``timestamp``.
    """
    moment = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    start = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    end = start + timedelta(days=1)
    return start.timestamp(), end.timestamp()


def generate_trade_id(timestamp: Optional[float] = None) -> str:
    """
    Build a trade id from the millisecond clock and a random suffix.

    Format: ``trade_<ms>_<12 hex chars>``.
    """
    if timestamp is None:
        timestamp = time.time()
    return f"trade_{int(timestamp * 1000)}_{secrets.token_hex(6)}"


# Math utilities
def percent_change(current: float, reference: float) -> float:
    """Signed percent difference of ``current`` against ``reference``."""
    if reference == 0:
        return 0.0
    return ((current - reference) / reference) * 100


def constant_product_output(
    amount_in: float, reserve_in: float, reserve_out: float, fee_bps: int = 25
) -> float:
    """
    Output of a constant product (x*y=k) swap after the pool fee.

    Formula: out = (in * (1 - fee) * reserve_out) / (reserve_in + in * (1 - fee))
    """
    if amount_in <= 0 or reserve_in <= 0 or reserve_out <= 0:
        return 0.0
    amount_in_with_fee = amount_in * (10000 - fee_bps) / 10000
    return (amount_in_with_fee * reserve_out) / (reserve_in + amount_in_with_fee)


def format_deviation(deviation_percent: float) -> str:
    """Format a signed deviation, e.g. ``+1.23%`` or ``-0.40%``."""
    if deviation_percent >= 0:
        return f"+{deviation_percent:.2f}%"
    return f"{deviation_percent:.2f}%"


# Dictionary utilities
def deep_merge(base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: Base dictionary
        update: Dictionary to merge into base

    Returns:
        Merged dictionary
    """
    result = base.copy()

    for key, value in update.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


# Logging utilities
def get_logger(
    name: str,
    level: Union[str, int] = logging.INFO,
    extra: Optional[Dict[str, Any]] = None,
) -> logging.Logger:
    """
    Get a structured logger with consistent formatting and extra context.

    Args:
        name: Logger name (typically __name__)
        level: Logging level
        extra: Additional context fields to include in all log messages

    Returns:
        Configured logger with structured output
    """
    logger = logging.getLogger(name)

    if logger.level == logging.NOTSET:
        logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler()
        format_str = (
            "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | " "%(message)s"
        )

        if extra:
            extra_fields = " | ".join([f"{k}=%(extra_{k})s" for k in extra.keys()])
            format_str = format_str.replace(
                " | %(message)s", f" | {extra_fields} | %(message)s"
            )

        formatter = logging.Formatter(format_str, datefmt="%H:%M:%S")
        handler.setFormatter(formatter)
        logger.addHandler(handler)

        if extra:
            logger = logging.LoggerAdapter(
                logger, {"extra_" + k: v for k, v in extra.items()}
            )

    return logger


def setup_logging(level: Union[str, int] = logging.INFO) -> None:
    """
    Configure root logging for CLI and server runs.

    Quiets the HTTP access log and the web3/urllib3 request chatter.
    """
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s | %(levelname)-7s | %(message)s", datefmt="%H:%M:%S"
        )
    )
    root.addHandler(console)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("web3").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("peg_stabilizer").setLevel(level)
