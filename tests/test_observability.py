"""
Tests for structured logging: credential masking, context correlation
and stage exchange records.
"""

import json
import logging

from deliberate.observability.logging import (
    HumanFormatter,
    JSONFormatter,
    log_request_end,
    log_stage_exchange,
    mask_sensitive_data,
    run_id_var,
    stage_var,
)


def _record(message: str = "hello", **extra) -> logging.LogRecord:
    record = logging.LogRecord("deliberate.test", logging.INFO, __file__, 10, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestMasking:

    def test_credential_keys_are_redacted(self):
        masked = mask_sensitive_data(
            {"api_key": "abc", "headers": {"Authorization": "Bearer xyz"}, "model": "m"}
        )

        assert masked["api_key"] == "[REDACTED]"
        assert masked["headers"]["Authorization"] == "[REDACTED]"
        assert masked["model"] == "m"

    def test_provider_keys_in_free_text(self):
        masked = mask_sensitive_data(["sk-ant-REDACTED", "short"])

        assert masked[0] == "sk-ant-0...[REDACTED]"
        assert masked[1] == "short"

    def test_depth_limit(self):
        nested: dict = {}
        current = nested
        for _ in range(15):
            current["next"] = {}
            current = current["next"]

        assert "[MAX_DEPTH_EXCEEDED]" in json.dumps(mask_sensitive_data(nested))


class TestFormatters:

    def test_json_includes_run_context(self):
        run_token = run_id_var.set("run-1234")
        stage_token = stage_var.set("reasoning")
        try:
            line = JSONFormatter().format(_record(outcome="done"))
        finally:
            stage_var.reset(stage_token)
            run_id_var.reset(run_token)

        data = json.loads(line)
        assert data["message"] == "hello"
        assert data["run_id"] == "run-1234"
        assert data["stage"] == "reasoning"
        assert data["extra"] == {"outcome": "done"}

    def test_json_masks_extra_fields(self):
        data = json.loads(JSONFormatter().format(_record(credential="key-a")))

        assert data["extra"]["credential"] == "[REDACTED]"

    def test_human_format_without_colors(self):
        run_token = run_id_var.set("abcdef123456")
        try:
            line = HumanFormatter(use_colors=False).format(_record())
        finally:
            run_id_var.reset(run_token)

        assert "INFO" in line
        assert "[run=abcdef12]" in line
        assert line.endswith("hello")


class TestStageExchangeLog:

    def test_successful_exchange_logs_info(self, caplog):
        with caplog.at_level(logging.INFO, logger="stage"):
            log_stage_exchange("reasoning", "deepseek", "deepseek-reasoner", 10, 20, 12.5)

        record = caplog.records[-1]
        assert record.levelno == logging.INFO
        assert record.outcome == "done"
        assert record.input_units == 10

    def test_failed_exchange_logs_warning(self, caplog):
        with caplog.at_level(logging.INFO, logger="stage"):
            log_stage_exchange(
                "synthesis", "anthropic", "claude-sonnet-4", None, None, 3.0,
                outcome="failed", error="HTTP 529",
            )

        record = caplog.records[-1]
        assert record.levelno == logging.WARNING
        assert record.error == "HTTP 529"
        assert "None+None units" in record.getMessage()


class TestRequestLog:

    def test_status_picks_the_level(self, caplog):
        with caplog.at_level(logging.INFO, logger="request"):
            log_request_end("POST", "/v1/chat/completions", 200, 5.0)
            log_request_end("POST", "/v1/chat/completions", 400, 1.0)
            log_request_end("POST", "/v1/chat/completions", 502, 9.0)

        assert [r.levelno for r in caplog.records[-3:]] == [
            logging.INFO,
            logging.WARNING,
            logging.ERROR,
        ]
        assert caplog.records[-1].status_code == 502

    def test_json_extra_omits_context_keys(self):
        run_token = run_id_var.set("run-1")
        try:
            data = json.loads(JSONFormatter().format(_record(stage="ignored", outcome="done")))
        finally:
            run_id_var.reset(run_token)

        assert data["run_id"] == "run-1"
        assert "stage" not in data["extra"]
