"""Tests for the JSON log formatter and root handler setup."""

from __future__ import annotations

import json
import logging

from forgeflow.logging import JsonFormatter, configure_logging


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("forgeflow.engine", logging.INFO, __file__, 1, "run %s done", ("exec-1",), None)
    record.__dict__.update(extra)
    return record


def test_json_formatter_nests_extra_fields() -> None:
    payload = json.loads(JsonFormatter().format(_record(run_id="exec-1", results=3)))

    assert payload["level"] == "INFO"
    assert payload["logger"] == "forgeflow.engine"
    assert payload["message"] == "run exec-1 done"
    assert payload["extra"] == {"run_id": "exec-1", "results": 3}


def test_json_formatter_omits_empty_extra() -> None:
    payload = json.loads(JsonFormatter().format(_record()))

    assert "extra" not in payload
    assert "exception" not in payload


def test_configure_logging_replaces_root_handlers() -> None:
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        configure_logging("debug", json_output=True)
        configure_logging("debug", json_output=True)

        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JsonFormatter)
        assert root.level == logging.DEBUG
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
