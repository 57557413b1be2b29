# Deliberate - Dual-Stage Reasoning Orchestrator
# Copyright (c) 2026 George Scott Foley
# ORCID: 0009-0006-4957-0540
# Email: Georgescottfoley@proton.me
# Licensed under the MIT License - see LICENSE file for details

"""
Observability: Structured Logging

Every record is tagged with the HTTP request, the orchestration run and
the stage it was emitted from, taken from context variables:
- request_id is set by the gateway middleware
- run_id is set in the run's producer task context
- stage is set while an upstream exchange is in flight

Credentials never reach a handler unmasked.
"""

import json
import logging
import sys
import traceback
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

# ============================================================
# CONTEXT VARIABLES
# ============================================================

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
run_id_var: ContextVar[str | None] = ContextVar("run_id", default=None)
stage_var: ContextVar[str | None] = ContextVar("stage", default=None)

_CONTEXT_VARS = {
    "request_id": request_id_var,
    "run_id": run_id_var,
    "stage": stage_var,
}


def _current_context() -> dict[str, str]:
    context = {}
    for key, var in _CONTEXT_VARS.items():
        value = var.get()
        if value:
            context[key] = value
    return context


# ============================================================
# CREDENTIAL MASKING
# ============================================================

# Any key containing one of these is redacted
SENSITIVE_FIELDS = frozenset(
    {"secret", "token", "api_key", "apikey", "authorization", "credential", "x-api-key", "bearer"}
)

# Provider keys and bearer strings embedded in free text
_KEY_PREFIXES = ("sk-", "sk-ant-", "Bearer ")


def mask_sensitive_data(data: Any, depth: int = 0, max_depth: int = 10) -> Any:
    """Recursively redact credentials in dicts, lists and strings."""
    if depth > max_depth:
        return "[MAX_DEPTH_EXCEEDED]"

    if isinstance(data, dict):
        return {
            key: "[REDACTED]"
            if any(s in str(key).lower() for s in SENSITIVE_FIELDS)
            else mask_sensitive_data(value, depth + 1, max_depth)
            for key, value in data.items()
        }
    if isinstance(data, list | tuple):
        return [mask_sensitive_data(item, depth + 1, max_depth) for item in data]
    if isinstance(data, str) and len(data) > 20 and data.startswith(_KEY_PREFIXES):
        return f"{data[:8]}...[REDACTED]"
    return data


# ============================================================
# FORMATTERS
# ============================================================

# Attributes every LogRecord carries; anything else came in through `extra`
_RECORD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__
) | {"message", "asctime"}


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RECORD_ATTRS and key not in _CONTEXT_VARS
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per line: context, location, extras and any exception."""

    def __init__(self, mask_sensitive: bool = True):
        super().__init__()
        self.mask_sensitive = mask_sensitive

    def format(self, record: logging.LogRecord) -> str:
        data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_current_context(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, exc_tb = record.exc_info
            data["error_type"] = exc_type.__name__
            data["error_message"] = str(exc_value)
            data["stack_trace"] = "".join(traceback.format_exception(exc_type, exc_value, exc_tb))

        extra = _extra_fields(record)
        if extra:
            data["extra"] = mask_sensitive_data(extra) if self.mask_sensitive else extra

        return json.dumps(data, default=str)


class HumanFormatter(logging.Formatter):
    """Single-line development format with short context tags."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        context = _current_context()
        tags = []
        if "request_id" in context:
            tags.append(f"req={context['request_id'][:8]}")
        if "run_id" in context:
            tags.append(f"run={context['run_id'][:8]}")
        if "stage" in context:
            tags.append(f"stage={context['stage']}")
        prefix = f"[{' '.join(tags)}] " if tags else ""

        level = record.levelname
        if self.use_colors and level in self.COLORS:
            level = f"{self.COLORS[level]}{level}{self.RESET}"

        timestamp = datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
        line = f"{timestamp} {level:8} {record.name}:{record.lineno} {prefix}{record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{''.join(traceback.format_exception(*record.exc_info))}"
        return line


def configure_logging(
    level: str = "INFO",
    format: str = "json",
    mask_sensitive: bool = True,
    use_colors: bool = True,
) -> logging.Logger:
    """
    Install a single stdout handler on the root logger.

    Args:
        level: Logging level name
        format: "json" for production, "human" for development
        mask_sensitive: Redact credentials in JSON extras
        use_colors: Colorize levels in human format
    """
    if format == "json":
        formatter: logging.Formatter = JSONFormatter(mask_sensitive=mask_sensitive)
    else:
        formatter = HumanFormatter(use_colors=use_colors)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(level.upper())
    for existing in root.handlers[:]:
        root.removeHandler(existing)
    root.addHandler(handler)

    for noisy in ("httpx", "httpcore", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return root


# ============================================================
# EVENT HELPERS
# ============================================================


def log_request_end(method: str, path: str, status_code: int, duration_ms: float) -> None:
    """One line per HTTP request; 4xx at WARNING, 5xx at ERROR."""
    if status_code >= 500:
        level = logging.ERROR
    elif status_code >= 400:
        level = logging.WARNING
    else:
        level = logging.INFO

    logging.getLogger("request").log(
        level,
        f"Request completed: {method} {path} -> {status_code} ({duration_ms:.1f}ms)",
        extra={
            "event": "request_end",
            "method": method,
            "path": path,
            "status_code": status_code,
            "duration_ms": duration_ms,
        },
    )


def log_stage_exchange(
    stage: str,
    provider: str,
    model: str | None,
    input_units: int | None,
    output_units: int | None,
    duration_ms: float,
    outcome: str = "done",
    error: str | None = None,
) -> None:
    """
    Log one upstream stage exchange.

    Units are logged as reported; None means the provider sent no usage.
    """
    logging.getLogger("stage").log(
        logging.INFO if outcome == "done" else logging.WARNING,
        f"Stage {stage}: {provider}/{model} -> {outcome} "
        f"({duration_ms:.1f}ms, {input_units}+{output_units} units)",
        extra={
            "event": "stage_exchange",
            "provider": provider,
            "model": model,
            "input_units": input_units,
            "output_units": output_units,
            "duration_ms": duration_ms,
            "outcome": outcome,
            "error": error,
        },
    )


# ============================================================
# EXPORTS
# ============================================================

__all__ = [
    "request_id_var",
    "run_id_var",
    "stage_var",
    "mask_sensitive_data",
    "JSONFormatter",
    "HumanFormatter",
    "configure_logging",
    "log_request_end",
    "log_stage_exchange",
]
