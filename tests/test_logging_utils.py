from __future__ import annotations

import json
import logging
import sys

from lpbot.logging_context import get_logging_context, with_cycle_context, with_logging_context
from lpbot.logging_utils import JsonFormatter, setup_logging


def _record(msg: str = "hello", **kwargs) -> logging.LogRecord:
    return logging.LogRecord(
        name="lpbot.test",
        level=kwargs.pop("level", logging.INFO),
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=kwargs.pop("exc_info", None),
    )


def test_json_formatter_includes_exception_details() -> None:
    formatter = JsonFormatter()

    try:
        raise ValueError("boom")
    except ValueError:
        rendered = formatter.format(_record("Cycle failed", level=logging.ERROR, exc_info=sys.exc_info()))

    payload = json.loads(rendered)
    assert payload["message"] == "Cycle failed"
    assert payload["error_type"] == "ValueError"
    assert payload["error_message"] == "boom"
    assert "ValueError: boom" in payload["traceback"]


def test_json_formatter_merges_structured_extra() -> None:
    record = _record("capital_allocated")
    record.extra = {"trade_id": "t1", "amount": "250"}

    payload = json.loads(JsonFormatter().format(record))

    assert payload["trade_id"] == "t1"
    assert payload["amount"] == "250"


def test_json_formatter_includes_correlation_fields_even_when_unset() -> None:
    payload = json.loads(JsonFormatter().format(_record()))
    for field in ("run_id", "cycle_id", "trade_id", "pool"):
        assert field in payload
        assert payload[field] is None


def test_logging_context_is_scoped() -> None:
    with with_cycle_context("c-1", run_id="run-1"):
        with with_logging_context(trade_id="t-9", pool=None):
            payload = json.loads(JsonFormatter().format(_record()))
            assert payload["cycle_id"] == "c-1"
            assert payload["run_id"] == "run-1"
            assert payload["trade_id"] == "t-9"
            assert payload["pool"] is None
        assert "trade_id" not in get_logging_context()
    assert get_logging_context() == {}


def test_setup_logging_uses_log_level_env(monkeypatch) -> None:
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")

    setup_logging()

    assert logging.getLogger().level == logging.DEBUG


def test_setup_logging_falls_back_to_info_for_unknown_level() -> None:
    setup_logging("LOUD")

    root = logging.getLogger()
    assert root.level == logging.INFO
    assert len(root.handlers) == 1
    assert isinstance(root.handlers[0].formatter, JsonFormatter)
