from __future__ import annotations

import io
import json
import logging
from logging.handlers import RotatingFileHandler

from portflow.core.logging.context import get_log_context, log_context
from portflow.core.logging.json_formatter import JSONFormatter
from portflow.core.logging.setup import configure_logging


def _json_logger(name: str) -> tuple[logging.Logger, io.StringIO]:
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(JSONFormatter())

    logger = logging.getLogger(name)
    logger.handlers = [handler]
    logger.setLevel(logging.INFO)
    logger.propagate = False
    return logger, stream


def test_logging_json_line_with_context() -> None:
    logger, stream = _json_logger("portflow.test.json")

    with log_context(request_id="r1", session_id="s1", plan_id="p1"):
        logger.info("plan_created", extra={"extra_fields": {"tools": ["getBooking"]}})

    payload = json.loads(stream.getvalue().strip())
    assert payload["msg"] == "plan_created"
    assert payload["level"] == "INFO"
    assert payload["logger"] == "portflow.test.json"
    assert payload["request_id"] == "r1"
    assert payload["session_id"] == "s1"
    assert payload["plan_id"] == "p1"
    assert payload["tools"] == ["getBooking"]
    assert "subtask_id" not in payload
    assert "ts_iso_utc" in payload


def test_log_context_is_restored_after_block() -> None:
    with log_context(request_id="outer"):
        with log_context(subtask_id="t1"):
            assert get_log_context() == {"request_id": "outer", "subtask_id": "t1"}
        assert get_log_context() == {"request_id": "outer"}
    assert get_log_context() == {}


def test_credentials_are_redacted_from_log_lines() -> None:
    logger, stream = _json_logger("portflow.test.redact")

    logger.warning(
        "backend said Bearer abc.def.ghi was refused",
        extra={"extra_fields": {"credential": "tok-123", "path": "/carrier/bookings"}},
    )

    payload = json.loads(stream.getvalue().strip())
    assert "abc.def.ghi" not in payload["msg"]
    assert payload["credential"] == "***"
    assert payload["path"] == "/carrier/bookings"


def test_configure_logging_is_idempotent(monkeypatch) -> None:
    monkeypatch.setenv("PORTFLOW_LOG_TO_FILE", "off")
    logger = logging.getLogger("portflow")
    monkeypatch.setattr(logger, "handlers", [])

    configure_logging()
    first_count = len(logger.handlers)
    configure_logging()

    assert first_count == 1
    assert len(logger.handlers) == first_count


def test_file_rotation_handler_configured(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("PORTFLOW_LOG_TO_FILE", "on")
    monkeypatch.setenv("PORTFLOW_LOG_DIR", str(tmp_path / "custom-logs"))
    logger = logging.getLogger("portflow")
    monkeypatch.setattr(logger, "handlers", [])

    configure_logging()

    handlers = [handler for handler in logger.handlers if isinstance(handler, RotatingFileHandler)]
    assert len(handlers) == 1
    assert (tmp_path / "custom-logs" / "portflow.log").exists()
    handlers[0].close()
