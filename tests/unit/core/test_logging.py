# tests/unit/core/test_logging.py
"""Tests for structured logging configuration."""

from __future__ import annotations

import json
import logging

import pytest

from enricher.core.logging import bind_run_context, clear_run_context, configure_logging, get_logger


class TestConfigureLogging:
    """structlog and stdlib share one output format."""

    def test_json_output_includes_event_and_fields(self, capsys: pytest.CaptureFixture[str]) -> None:
        configure_logging(json_output=True, level="INFO")
        get_logger("tests.logging").info("Loaded input emails", rows=3)

        line = capsys.readouterr().out.strip().splitlines()[-1]
        payload = json.loads(line)
        assert payload["event"] == "Loaded input emails"
        assert payload["rows"] == 3
        assert payload["level"] == "info"
        assert "timestamp" in payload
        assert "_record" not in payload

    def test_stdlib_records_use_same_renderer(self, capsys: pytest.CaptureFixture[str]) -> None:
        configure_logging(json_output=True, level="INFO")
        logging.getLogger("tests.stdlib").warning("plain stdlib message")

        payload = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
        assert payload["event"] == "plain stdlib message"
        assert payload["level"] == "warning"

    def test_level_filters_debug(self, capsys: pytest.CaptureFixture[str]) -> None:
        configure_logging(json_output=True, level="INFO")
        get_logger("tests.logging").debug("hidden")
        assert "hidden" not in capsys.readouterr().out

    def test_noisy_http_loggers_are_quieted_in_debug(self) -> None:
        configure_logging(json_output=False, level="DEBUG")
        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("httpcore").level == logging.WARNING

    def test_run_context_is_bound_to_every_line(self, capsys: pytest.CaptureFixture[str]) -> None:
        configure_logging(json_output=True, level="INFO")
        bind_run_context(run_id="run-1", mode="stream")
        get_logger("tests.logging").info("first")
        clear_run_context()
        get_logger("tests.logging").info("second")

        first, second = (json.loads(line) for line in capsys.readouterr().out.strip().splitlines()[-2:])
        assert first["run_id"] == "run-1"
        assert first["mode"] == "stream"
        assert "run_id" not in second
