"""Tests for the exceptions module."""

import pytest
from peg_stabilizer.exceptions import (
    PegStabilizerError,
    ConfigurationError,
    ValidationError,
    SafetyViolation,
    ExecutionFailure,
    UpstreamUnavailable,
    PersistenceError,
    InvalidTransitionError,
)


def test_base_exception():
    """Test the base exception class."""
    error = PegStabilizerError("Test error")
    assert str(error) == "Test error"
    assert error.details == {}

    error_with_details = PegStabilizerError("Test error", {"key": "value"})
    assert error_with_details.details == {"key": "value"}


def test_configuration_error():
    """Test configuration error."""
    error = ConfigurationError("Config error", {"config_file": "bot.yaml"})
    assert str(error) == "Config error"
    assert error.details["config_file"] == "bot.yaml"
    assert isinstance(error, PegStabilizerError)


def test_validation_error():
    """Test validation error."""
    error = ValidationError("amount must be positive", {"amount": -1})
    assert str(error) == "amount must be positive"
    assert error.details == {"amount": -1}
    assert isinstance(error, PegStabilizerError)


def test_safety_violation():
    """Test safety violation carries the reason and checks."""
    error = SafetyViolation(
        "daily limit exceeded",
        checks={"daily_limits": False},
        details={"volume_used": 10.0, "volume_limit": 10.0},
    )
    assert str(error) == "daily limit exceeded"
    assert error.reason == "daily limit exceeded"
    assert error.checks == {"daily_limits": False}
    assert error.details["volume_used"] == 10.0
    assert isinstance(error, PegStabilizerError)


def test_safety_violation_defaults():
    error = SafetyViolation("bot disabled")
    assert error.checks == {}
    assert error.details == {}


def test_execution_failure():
    """Test execution failure."""
    error = ExecutionFailure("Execution timed out", trade_id="trade_1_abc")
    assert str(error) == "Execution timed out"
    assert error.trade_id == "trade_1_abc"
    assert isinstance(error, PegStabilizerError)


def test_upstream_unavailable():
    """Test upstream unavailable."""
    error = UpstreamUnavailable("feed down", source="base_usd")
    assert error.source == "base_usd"
    assert isinstance(error, PegStabilizerError)


def test_persistence_error():
    """Test persistence error."""
    error = PersistenceError("disk full", operation="create")
    assert error.operation == "create"
    assert isinstance(error, PegStabilizerError)


def test_invalid_transition_error():
    """Test invalid transition is a persistence error with both states."""
    error = InvalidTransitionError("trade_1_abc", "SUCCESS", "FAILED")
    assert isinstance(error, PersistenceError)
    assert error.trade_id == "trade_1_abc"
    assert error.from_status == "SUCCESS"
    assert error.to_status == "FAILED"
    assert error.operation == "transition"
    assert "SUCCESS" in str(error) and "FAILED" in str(error)


def test_exception_inheritance():
    """Test that all exceptions inherit from base exception."""
    exceptions = [
        ConfigurationError("test"),
        ValidationError("test"),
        SafetyViolation("test"),
        ExecutionFailure("test"),
        UpstreamUnavailable("test"),
        PersistenceError("test"),
        InvalidTransitionError("t", "PENDING", "PENDING"),
    ]

    for exc in exceptions:
        assert isinstance(exc, PegStabilizerError)
        assert isinstance(exc, Exception)


def test_exception_raising():
    """Test that exceptions can be raised and caught properly."""
    with pytest.raises(SafetyViolation) as exc_info:
        raise SafetyViolation("bot disabled", details={"pause_reason": "manual"})

    assert exc_info.value.details["pause_reason"] == "manual"

    with pytest.raises(PegStabilizerError):
        raise UpstreamUnavailable("rpc down")
