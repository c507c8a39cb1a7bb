from __future__ import annotations

import json
import logging

from schema_orchestrator.utils.logging import ConsoleFormatter, _json_formatter, configure_logging

EXPECTED_ATTEMPTS = 3
EXPECTED_GROUP = 2


def _record(msg: str = "hello") -> logging.LogRecord:
    return logging.LogRecord(
        name="test.logger",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )


def test_json_formatter_promotes_standard_extra_fields() -> None:
    record = _record()
    record.attempts = EXPECTED_ATTEMPTS
    record.domain = "Services"

    payload = json.loads(_json_formatter(record))

    assert payload["level"] == "INFO"
    assert payload["logger"] == "test.logger"
    assert payload["message"] == "hello"
    assert payload["attempts"] == EXPECTED_ATTEMPTS
    assert payload["domain"] == "Services"
    assert "lineno" not in payload


def test_json_formatter_supports_nested_extra_field() -> None:
    record = _record()
    record.extra = {"group": EXPECTED_GROUP}

    payload = json.loads(_json_formatter(record))

    assert payload["group"] == EXPECTED_GROUP


def test_json_formatter_stringifies_unknown_types() -> None:
    record = _record()
    record.plan_id = object()

    payload = json.loads(_json_formatter(record))

    assert payload["plan_id"].startswith("<object")


def test_console_formatter_appends_context() -> None:
    record = _record("[DOMAIN SUCCESS] Services")
    record.domain = "Services"
    record.attempts = EXPECTED_ATTEMPTS

    line = ConsoleFormatter().format(record)

    assert "| INFO | test.logger | [DOMAIN SUCCESS] Services" in line
    assert line.endswith("| domain=Services attempts=3")


def test_console_formatter_without_context_is_plain() -> None:
    assert ConsoleFormatter().format(_record()).endswith("| hello")


def test_configure_logging_sets_root_level() -> None:
    configure_logging(level="WARNING", json_logs=True)
    root = logging.getLogger()
    try:
        assert root.level == logging.WARNING
        assert any(type(h.formatter).__name__ == "JsonFormatter" for h in root.handlers)
    finally:
        configure_logging(level="INFO")
