# Deliberate - Dual-Stage Reasoning Orchestrator
# Copyright (c) 2026 George Scott Foley
# ORCID: 0009-0006-4957-0540
# Email: Georgescottfoley@proton.me
# Licensed under the MIT License - see LICENSE file for details

"""
Exception Hierarchy

Structured exceptions for the orchestration core and its gateway.
All exceptions include context via `details` dict and a machine-readable
`kind` so a terminal failure can be reported identically over JSON and SSE.
"""

from enum import StrEnum
from typing import Any


class ErrorKind(StrEnum):
    """Machine-readable failure categories."""

    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    UPSTREAM_REJECTED = "upstream_rejected"
    UPSTREAM_PROTOCOL = "upstream_protocol"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    CANCELLED = "cancelled"
    INTERNAL = "internal"


class DeliberateError(Exception):
    """
    Base exception for all Deliberate errors.

    Attributes:
        message: Human-readable error message
        details: Additional context as key-value pairs
        kind: Machine-readable category
    """

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": self.__class__.__name__,
            "kind": str(self.kind),
            "message": self.message,
            "details": self.details,
        }


# ============================================================
# INPUT ERRORS
# ============================================================


class ValidationError(DeliberateError):
    """Malformed or contradictory input, rejected before any upstream call."""

    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, field: str | None = None, **kwargs):
        details = kwargs.get("details", {})
        if field:
            details["field"] = field
        super().__init__(message, details)


class ConfigurationError(DeliberateError):
    """Invalid configuration (unknown provider, missing credential)."""

    kind = ErrorKind.CONFIGURATION

    def __init__(self, message: str, config_key: str | None = None, **kwargs):
        details = kwargs.get("details", {})
        if config_key:
            details["config_key"] = config_key
        super().__init__(message, details)


# ============================================================
# UPSTREAM ERRORS
# ============================================================


class UpstreamError(DeliberateError):
    """Base class for failures of one upstream stage exchange."""

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        original_error: Exception | None = None,
        **kwargs,
    ):
        details = kwargs.get("details", {})
        if provider:
            details["provider"] = provider
        if original_error:
            details["original_error"] = str(original_error)
        super().__init__(message, details)


class UpstreamRejectedError(UpstreamError):
    """Upstream answered with a non-success status."""

    kind = ErrorKind.UPSTREAM_REJECTED

    def __init__(self, message: str, status: int, body: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.status = status
        self.body = body
        self.details["status"] = status
        self.details["body"] = body


class UpstreamProtocolError(UpstreamError):
    """Upstream response shape violates the expected contract."""

    kind = ErrorKind.UPSTREAM_PROTOCOL


class UpstreamUnavailableError(UpstreamError):
    """Network failure, timeout, or a stream that ended prematurely."""

    kind = ErrorKind.UPSTREAM_UNAVAILABLE


# ============================================================
# RUN ERRORS
# ============================================================


class CancelledRunError(DeliberateError):
    """The run was aborted by the caller or by backpressure."""

    kind = ErrorKind.CANCELLED

    def __init__(self, message: str = "Run cancelled", reason: str | None = None, **kwargs):
        details = kwargs.get("details", {})
        if reason:
            details["reason"] = reason
        super().__init__(message, details)
        self.reason = reason


class BackpressureExceededError(DeliberateError):
    """The outgoing buffer stayed full past the backpressure deadline."""

    def __init__(self, message: str, buffer_size: int | None = None, **kwargs):
        details = kwargs.get("details", {})
        if buffer_size is not None:
            details["buffer_size"] = buffer_size
        super().__init__(message, details)


class InvalidStateTransitionError(DeliberateError):
    """A run attempted a transition its state machine does not allow."""

    def __init__(self, current: str, target: str):
        super().__init__(
            f"Invalid run state transition: {current} -> {target}",
            {"current": current, "target": target},
        )


class RunFailedError(DeliberateError):
    """
    Terminal failure of a blocking run.

    Carries whatever the run produced before failing (thinking block,
    stage-A usage) in `details`.
    """

    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        stage: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = dict(details or {})
        if stage:
            details["stage"] = stage
        super().__init__(message, details)
        self.kind = kind
        self.stage = stage


class RunCancelledError(RunFailedError):
    """Terminal cancellation of a blocking run."""

    def __init__(self, message: str = "Run cancelled", details: dict[str, Any] | None = None):
        super().__init__(message, ErrorKind.CANCELLED, details=details)


# ============================================================
# EXPORTS
# ============================================================

__all__ = [
    "ErrorKind",
    "DeliberateError",
    # Input
    "ValidationError",
    "ConfigurationError",
    # Upstream
    "UpstreamError",
    "UpstreamRejectedError",
    "UpstreamProtocolError",
    "UpstreamUnavailableError",
    # Run
    "CancelledRunError",
    "BackpressureExceededError",
    "InvalidStateTransitionError",
    "RunFailedError",
    "RunCancelledError",
]
