"""Tests for utils logging functionality."""

import io
import logging

from peg_stabilizer.utils import get_logger, setup_logging


def test_get_logger_basic():
    """Test basic get_logger functionality."""
    logger = get_logger(__name__)
    assert isinstance(logger, logging.Logger)
    assert logger.name == __name__


def test_get_logger_with_level():
    """Test get_logger with custom level."""
    logger = get_logger(__name__ + ".test1", level=logging.DEBUG)
    assert logger.level == logging.DEBUG


def test_get_logger_with_extra():
    """Test get_logger with extra context."""
    logger = get_logger(__name__ + ".test2", extra={"bot_id": "test-bot"})
    assert isinstance(logger, logging.LoggerAdapter)
    assert logger.extra == {"extra_bot_id": "test-bot"}


def test_get_logger_structured_format():
    """Test that get_logger produces structured log format."""
    logger_name = __name__ + ".test3"
    logger = get_logger(logger_name, level=logging.INFO)

    captured_output = io.StringIO()
    original_stream = logger.handlers[0].stream
    logger.handlers[0].stream = captured_output
    try:
        logger.info("TRADE_RESULT: {'status': 'SUCCESS'}")
    finally:
        logger.handlers[0].stream = original_stream

    log_output = captured_output.getvalue()
    assert "INFO" in log_output
    assert logger_name in log_output
    assert "TRADE_RESULT: {'status': 'SUCCESS'}" in log_output
    assert "|" in log_output


def test_get_logger_no_duplicate_handlers():
    """Test that get_logger doesn't add duplicate handlers."""
    logger_name = __name__ + ".test4"

    logger1 = get_logger(logger_name)
    handler_count = len(logger1.handlers)
    logger2 = get_logger(logger_name)

    assert logger1 is logger2
    assert len(logger2.handlers) == handler_count


def test_setup_logging_quiets_noisy_loggers():
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        setup_logging(logging.DEBUG)

        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert logging.getLogger("web3").level == logging.WARNING
        assert logging.getLogger("uvicorn.access").level == logging.WARNING
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
