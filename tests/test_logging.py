"""Tests for structured logging utilities."""

import io
import json
import logging

import pytest
import structlog

from kb_retrieval.utils.logging import (
    HANDLER_NAME,
    PACKAGE_LOGGER,
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
)

LOGGER_NAME = "kb_retrieval.test"


def reset_package_logger() -> None:
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in package_logger.handlers[:]:
        package_logger.removeHandler(handler)
    package_logger.setLevel(logging.NOTSET)
    package_logger.propagate = True


@pytest.fixture(autouse=True)
def reset_logging():
    """Reset logging configuration before and after each test."""
    structlog.reset_defaults()
    clear_context()
    reset_package_logger()
    yield
    structlog.reset_defaults()
    clear_context()
    reset_package_logger()


@pytest.fixture
def capture_logs():
    """Fixture returning a buffer and a configure call that writes into it."""
    log_buffer = io.StringIO()

    def configure(**kwargs) -> io.StringIO:
        configure_logging(stream=log_buffer, **kwargs)
        return log_buffer

    return configure


def test_configure_logging_json(capture_logs):
    """Test JSON logging configuration."""
    buffer = capture_logs(level="INFO", json_format=True, add_timestamps=True)
    logger = get_logger(LOGGER_NAME)

    logger.info("index built", chunks=5)

    output = buffer.getvalue()
    assert output, "No log output captured"

    log_entry = json.loads(output.strip())
    assert log_entry["event"] == "index built"
    assert log_entry["chunks"] == 5
    assert log_entry["level"] == "info"
    assert "timestamp" in log_entry
    assert log_entry["logger"] == LOGGER_NAME


def test_configure_logging_without_timestamps(capture_logs):
    """Test that timestamps can be turned off."""
    buffer = capture_logs(level="INFO", json_format=True, add_timestamps=False)
    get_logger(LOGGER_NAME).info("no clock")

    log_entry = json.loads(buffer.getvalue().strip())
    assert "timestamp" not in log_entry


def test_configure_logging_levels(capture_logs):
    """Test that messages below the configured level are dropped."""
    buffer = capture_logs(level="WARNING", json_format=True)
    logger = get_logger(LOGGER_NAME)

    logger.info("info message")
    logger.warning("warning message")
    logger.error("error message")

    output = buffer.getvalue()
    assert "info message" not in output
    assert "warning message" in output
    assert "error message" in output

    first_entry = json.loads(output.strip().split("\n")[0])
    assert first_entry["level"] == "warning"


def test_bind_context(capture_logs):
    """Test binding context variables."""
    buffer = capture_logs(level="INFO", json_format=True)
    logger = get_logger(LOGGER_NAME)

    bind_context(request_id="abc123")
    logger.info("retrieval_complete")

    log_entry = json.loads(buffer.getvalue().strip())
    assert log_entry["request_id"] == "abc123"


def test_clear_context(capture_logs):
    """Test clearing context variables."""
    buffer = capture_logs(level="INFO", json_format=True)
    logger = get_logger(LOGGER_NAME)

    bind_context(request_id="abc123")
    logger.info("first message")

    clear_context()
    logger.info("second message")

    lines = buffer.getvalue().strip().split("\n")
    first_entry = json.loads(lines[0])
    second_entry = json.loads(lines[1])

    assert first_entry["request_id"] == "abc123"
    assert "request_id" not in second_entry


def test_module_loggers_follow_level(capture_logs):
    """Test that standard library module loggers share the configured level."""
    buffer = capture_logs(level="WARNING", json_format=True)
    module_logger = logging.getLogger("kb_retrieval.indexing.bm25")

    module_logger.info("hidden")
    module_logger.warning("Skipped chunk without search_text")

    output = buffer.getvalue()
    assert "hidden" not in output
    assert "Skipped chunk without search_text" in output


def test_module_logger_records_rendered_as_json(capture_logs):
    """Test that a module logger warning is rendered with level, name and request id."""
    buffer = capture_logs(level="INFO", json_format=True)
    module_logger = logging.getLogger("kb_retrieval.retrieval.retriever")

    bind_context(request_id="req-42")
    module_logger.warning("Relevance reranking failed (%s), keeping fused order", "timeout")

    log_entry = json.loads(buffer.getvalue().strip())
    assert log_entry["event"] == "Relevance reranking failed (timeout), keeping fused order"
    assert log_entry["level"] == "warning"
    assert log_entry["logger"] == "kb_retrieval.retrieval.retriever"
    assert log_entry["request_id"] == "req-42"
    assert "timestamp" in log_entry


def test_module_logger_exception(capture_logs):
    """Test that a module logger traceback lands in the exception field."""
    buffer = capture_logs(level="INFO", json_format=True)
    module_logger = logging.getLogger("kb_retrieval.context.dedup")

    try:
        raise RuntimeError("cluster failure")
    except RuntimeError:
        module_logger.exception("Clustering failed")

    log_entry = json.loads(buffer.getvalue().strip())
    assert log_entry["event"] == "Clustering failed"
    assert "RuntimeError: cluster failure" in log_entry["exception"]


def test_reconfigure_replaces_handler(capture_logs):
    """Test that configuring twice leaves a single engine handler."""
    first = capture_logs(level="INFO", json_format=True)
    second = io.StringIO()
    configure_logging(level="INFO", json_format=True, stream=second)

    logging.getLogger("kb_retrieval.engine").warning("once")

    handlers = [
        h for h in logging.getLogger(PACKAGE_LOGGER).handlers if h.get_name() == HANDLER_NAME
    ]
    assert len(handlers) == 1
    assert first.getvalue() == ""
    assert json.loads(second.getvalue().strip())["event"] == "once"


def test_host_root_logger_untouched(capture_logs):
    """Test that configuration does not add root handlers or leak records to them."""
    root_handlers = list(logging.root.handlers)
    host_buffer = io.StringIO()
    host_handler = logging.StreamHandler(host_buffer)
    logging.root.addHandler(host_handler)
    try:
        buffer = capture_logs(level="INFO", json_format=True)
        logging.getLogger("kb_retrieval.engine").warning("engine only")
    finally:
        logging.root.removeHandler(host_handler)

    assert logging.root.handlers == root_handlers
    assert host_buffer.getvalue() == ""
    assert "engine only" in buffer.getvalue()


def test_console_format(capture_logs):
    """Test that the human-readable renderer is used when JSON is off."""
    buffer = capture_logs(level="INFO", json_format=False)
    get_logger(LOGGER_NAME).info("console line", chunks=3)

    output = buffer.getvalue()
    assert "console line" in output
    assert "chunks" in output
    with pytest.raises(json.JSONDecodeError):
        json.loads(output.strip())


def test_logger_with_exception(capture_logs):
    """Test logging exceptions with stack traces."""
    buffer = capture_logs(level="INFO", json_format=True)
    logger = get_logger(LOGGER_NAME)

    try:
        raise ValueError("test error")
    except ValueError:
        logger.error("error occurred", exc_info=True)

    log_entry = json.loads(buffer.getvalue().strip())

    assert log_entry["event"] == "error occurred"
    assert log_entry["level"] == "error"
    assert "ValueError: test error" in log_entry["exception"]
