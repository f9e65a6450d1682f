"""Tests for log formatting, redaction and run correlation."""

from __future__ import annotations

import json
import logging

from floorsync.core.exceptions import FatalFetchError, classify_status, TransientFetchError
from floorsync.core.logging import (
    SensitiveDataFilter,
    StructuredFormatter,
    TextFormatter,
    get_logger,
    run_id_var,
)


def _record(msg: str, *args) -> logging.LogRecord:
    return logging.LogRecord("floorsync.test", logging.INFO, __file__, 1, msg, args, None)


class TestFormatters:
    def test_json_includes_run_id(self):
        token = run_id_var.set(17)
        try:
            output = json.loads(StructuredFormatter().format(_record("synced %d", 3)))
        finally:
            run_id_var.reset(token)

        assert output["message"] == "synced 3"
        assert output["run_id"] == 17
        assert output["level"] == "INFO"

    def test_json_without_run(self):
        output = json.loads(StructuredFormatter().format(_record("idle")))
        assert "run_id" not in output

    def test_text_includes_run_id(self):
        token = run_id_var.set(5)
        try:
            line = TextFormatter().format(_record("hello"))
        finally:
            run_id_var.reset(token)
        assert "[run 5]" in line
        assert line.endswith("floorsync.test: hello")

    def test_logger_prefix(self):
        assert get_logger("services.sync").name == "floorsync.services.sync"


class TestSensitiveDataFilter:
    def test_redacts_api_key(self):
        record = _record("calling with api_key=abc123 now")
        SensitiveDataFilter().filter(record)
        assert record.getMessage() == "calling with api_key=[REDACTED] now"

    def test_redacts_header(self):
        record = _record("headers {'X-RapidAPI-Key': 'abc123'}")
        SensitiveDataFilter().filter(record)
        assert "abc123" not in record.getMessage()

    def test_leaves_plain_messages(self):
        record = _record("fetched %d points", 4)
        SensitiveDataFilter().filter(record)
        assert record.getMessage() == "fetched 4 points"


class TestStatusClassification:
    def test_fatal(self):
        for status in (400, 401, 403, 404):
            error = classify_status(status)
            assert isinstance(error, FatalFetchError)
            assert error.status_code == status

    def test_transient(self):
        for status in (408, 429, 500, 503):
            assert isinstance(classify_status(status), TransientFetchError)

    def test_to_dict(self):
        error = FatalFetchError("gone", status_code=404, details={"slug": "a"})
        assert error.to_dict() == {
            "error": "FATAL_FETCH_ERROR",
            "message": "gone",
            "details": {"slug": "a"},
        }
