from __future__ import annotations

import json
import logging
import sys

from autobalancer.logging_context import with_cycle_context, with_item_context
from autobalancer.logging_utils import JsonFormatter, resolve_log_level, setup_logging


def _record(msg: str, *, extra: dict | None = None, exc_info=None) -> logging.LogRecord:
    record = logging.LogRecord(
        name="autobalancer.test",
        level=logging.ERROR if exc_info else logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )
    if extra is not None:
        record.extra = extra
    return record


def test_json_formatter_includes_exception_details() -> None:
    formatter = JsonFormatter()

    try:
        raise ValueError("boom")
    except ValueError:
        rendered = formatter.format(_record("cycle_failed", exc_info=sys.exc_info()))

    payload = json.loads(rendered)
    assert payload["message"] == "cycle_failed"
    assert payload["error_type"] == "ValueError"
    assert payload["error_message"] == "boom"
    assert "ValueError: boom" in payload["traceback"]


def test_json_formatter_merges_extra_and_context() -> None:
    formatter = JsonFormatter()

    with with_cycle_context("cycle-1", run_id="run-1"):
        with with_item_context(plan_id="plan-9", permission_id="perm-2"):
            rendered = formatter.format(
                _record("dca_execution_succeeded", extra={"tx_ref": "0xabc"})
            )
    payload = json.loads(rendered)

    assert payload["tx_ref"] == "0xabc"
    assert payload["cycle_id"] == "cycle-1"
    assert payload["run_id"] == "run-1"
    assert payload["plan_id"] == "plan-9"
    assert payload["permission_id"] == "perm-2"
    assert "config_id" not in payload

    outside = json.loads(formatter.format(_record("idle")))
    assert "cycle_id" not in outside


def test_json_formatter_redacts_secrets() -> None:
    formatter = JsonFormatter()
    rendered = formatter.format(
        _record(
            "analytics_request",
            extra={"api_key": "abcd1234efgh5678", "note": "Authorization: Bearer sekrit"},
        )
    )
    payload = json.loads(rendered)

    assert payload["api_key"] == "abcd********5678"
    assert "sekrit" not in payload["note"]


def test_resolve_log_level() -> None:
    assert resolve_log_level("debug") == logging.DEBUG
    assert resolve_log_level("nonsense", default=logging.WARNING) == logging.WARNING
    assert resolve_log_level(None) == logging.INFO
    assert resolve_log_level(logging.ERROR) == logging.ERROR


def test_setup_logging_uses_log_level_env(monkeypatch) -> None:
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")

    setup_logging()

    assert logging.getLogger().level == logging.DEBUG


def test_setup_logging_defaults_http_loggers_for_info() -> None:
    setup_logging("INFO")

    assert logging.getLogger("httpx").level == logging.INFO
    assert logging.getLogger("httpcore").level == logging.WARNING


def test_setup_logging_debug_enables_http_debug() -> None:
    setup_logging("DEBUG")

    assert logging.getLogger("httpx").level == logging.DEBUG
    assert logging.getLogger("httpcore").level == logging.DEBUG


def test_setup_logging_respects_http_env_overrides(monkeypatch) -> None:
    monkeypatch.setenv("HTTPX_LOG_LEVEL", "ERROR")
    monkeypatch.setenv("HTTPCORE_LOG_LEVEL", "CRITICAL")

    setup_logging("INFO")

    assert logging.getLogger("httpx").level == logging.ERROR
    assert logging.getLogger("httpcore").level == logging.CRITICAL
