"""Tests for logging setup and the log-backed notifier."""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator

import pytest
from loguru import logger

from odzai.client.log import BRIDGED_LOGGERS, DETAIL_FORMAT, TOAST_FORMAT, format_record, setup_logging
from odzai.client.notify import LogNotifier
from odzai.client.settings import OdzaiSettings


@pytest.fixture(autouse=True)
def restore_logging() -> Iterator[None]:
    yield
    logger.remove()
    logger.add(sys.stderr)
    for name in BRIDGED_LOGGERS:
        stdlib = logging.getLogger(name)
        stdlib.handlers = []
        stdlib.propagate = True
        stdlib.setLevel(logging.NOTSET)


def _capture() -> list[str]:
    messages: list[str] = []
    logger.add(lambda m: messages.append(str(m)), format=format_record, level="DEBUG", colorize=False)
    return messages


def test_format_record_picks_toast_layout() -> None:
    assert format_record({"extra": {"toast": True}}).startswith(TOAST_FORMAT)  # type: ignore[arg-type]
    assert format_record({"extra": {}}).startswith(DETAIL_FORMAT)  # type: ignore[arg-type]


def test_notifier_records_are_bare_status_lines(tmp_path) -> None:
    setup_logging(OdzaiSettings(data_root=str(tmp_path), log_level="ERROR"))
    messages = _capture()

    LogNotifier().error("Failed to load workspace data", "boom")
    logger.error("plain diagnostic")

    toast, diagnostic = messages
    assert toast.rstrip().endswith("| Failed to load workspace data: boom")
    assert "test_log" not in toast
    assert "test_log" in diagnostic


def test_httpx_records_are_bridged_without_touching_root(tmp_path) -> None:
    root_handlers = list(logging.getLogger().handlers)
    setup_logging(OdzaiSettings(data_root=str(tmp_path), log_level="DEBUG"))
    messages = _capture()

    logging.getLogger("httpx").info("HTTP Request: GET http://api.test/api/items")

    assert logging.getLogger().handlers == root_handlers
    assert logging.getLogger("httpx").propagate is False
    assert len(messages) == 1
    assert "httpx:" in messages[0]
    assert "GET http://api.test/api/items" in messages[0]


def test_http_request_logs_hidden_above_debug(tmp_path) -> None:
    setup_logging(OdzaiSettings(data_root=str(tmp_path), log_level="INFO"))
    messages = _capture()

    logging.getLogger("httpcore").info("connect_tcp.started")
    logging.getLogger("httpcore").warning("connection reset")

    assert len(messages) == 1
    assert "connection reset" in messages[0]


def test_log_file_sink_receives_debug(tmp_path) -> None:
    log_file = tmp_path / "logs" / "odzai.log"
    setup_logging(OdzaiSettings(data_root=str(tmp_path), log_level="ERROR", log_file=str(log_file)))

    logger.debug("Storage: flushing 3 writes")
    logger.remove()

    assert "Storage: flushing 3 writes" in log_file.read_text(encoding="utf-8")
