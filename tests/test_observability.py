from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
import io
import logging
import sys

import pytest

from ticketmerge import observability
from ticketmerge.observability import configure_logging, log_event, logging_ticket_context


@pytest.fixture(autouse=True)
def restore_ticketmerge_logger_state() -> None:
    logger = logging.getLogger("ticketmerge")
    original_handlers = list(logger.handlers)
    original_level = logger.level
    original_propagate = logger.propagate
    try:
        yield
    finally:
        for handler in logger.handlers:
            if handler not in original_handlers:
                handler.close()
        logger.handlers.clear()
        for handler in original_handlers:
            logger.addHandler(handler)
        logger.setLevel(original_level)
        logger.propagate = original_propagate


def test_configure_logging_quiet_mode_is_idempotent() -> None:
    configure_logging(verbose=False)
    logger = logging.getLogger("ticketmerge")
    assert logger.propagate is False
    assert logger.level > logging.CRITICAL
    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0], logging.NullHandler)

    configure_logging(verbose=None)
    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0], logging.NullHandler)


def test_configure_logging_verbose_mode_writes_to_stderr() -> None:
    configure_logging(verbose=True)
    logger = logging.getLogger("ticketmerge")
    assert logger.level == logging.INFO
    assert len(logger.handlers) == 1
    handler = logger.handlers[0]
    assert isinstance(handler, logging.StreamHandler)
    assert handler.stream is sys.stderr
    assert handler.formatter is not None
    assert "%(threadName)s" in handler.formatter._fmt

    configure_logging(verbose="high")
    assert len(logger.handlers) == 1


def test_ticket_context_is_appended_to_output(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(verbose=True)
    logger = logging.getLogger("ticketmerge.tests.context")
    with logging_ticket_context("ABC-1"):
        logger.info("event=ticket_processing_started")
        logger.info("event=sub_pr_merged ticket_key=ABC-1 pr_number=4")
    logger.info("event=outside")

    lines = capsys.readouterr().err.splitlines()
    assert lines[0].endswith("event=ticket_processing_started ticket_key=ABC-1")
    assert lines[1].count("ticket_key=") == 1
    assert "ticket_key" not in lines[2]


def test_ticket_context_is_isolated_per_thread() -> None:
    def resolve(ticket_key: str) -> str | None:
        with logging_ticket_context(ticket_key):
            return observability._context_ticket_key()

    with ThreadPoolExecutor(max_workers=2) as pool:
        first = pool.submit(resolve, "ABC-1")
        second = pool.submit(resolve, "XYZ-2")

    assert first.result() == "ABC-1"
    assert second.result() == "XYZ-2"
    assert observability._context_ticket_key() is None


def test_ticket_context_restores_outer_key() -> None:
    with logging_ticket_context("ABC-1"):
        with logging_ticket_context("ABC-2"):
            assert observability._context_ticket_key() == "ABC-2"
        assert observability._context_ticket_key() == "ABC-1"


def test_configure_logging_low_mode_filters_to_high_signal_events(
    capsys: pytest.CaptureFixture[str],
) -> None:
    configure_logging(verbose="low")
    logger = logging.getLogger("ticketmerge.tests.low")

    logger.info("event=poll_started")
    logger.info("event=github_pr_created pr_number=1")
    logger.info("plain_message=ignored")
    logger.info("event=")
    logger.warning("event=jira_request_failed status_code=500")

    stderr = capsys.readouterr().err
    assert "event=poll_started" not in stderr
    assert "event=github_pr_created pr_number=1" in stderr
    assert "plain_message=ignored" not in stderr
    assert all(not line.endswith("event=") for line in stderr.splitlines())
    assert "event=jira_request_failed" in stderr


def test_configure_logging_rejects_unknown_mode() -> None:
    with pytest.raises(ValueError, match="Unsupported verbose mode"):
        configure_logging(verbose="noisy")


def test_log_event_formats_and_normalizes_fields() -> None:
    logger = logging.getLogger("ticketmerge.tests.observability")
    logger.handlers.clear()
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False

    log_event(
        logger,
        "test_event",
        b=2,
        a="multi\nline value",
        none_value=None,
        bool_value=True,
        empty="   ",
        long_text="x" * 121,
        names=("AZURE_WEBAPP_NAME", "ACR_USERNAME"),
        complex_value={"k": "v"},
    )

    message = stream.getvalue().strip()
    assert message.startswith("event=test_event a=")
    assert 'a="multi line value"' in message
    assert "b=2" in message
    assert "bool_value=true" in message
    assert "empty=<empty>" in message
    assert "none_value=null" in message
    assert f"long_text={'x' * 120}..." in message
    assert "names=AZURE_WEBAPP_NAME,ACR_USERNAME" in message
    assert "complex_value=<dict>" in message
