# Deliberate - Dual-Stage Reasoning Orchestrator
# Copyright (c) 2026 George Scott Foley
# ORCID: 0009-0006-4957-0540
# Email: Georgescottfoley@proton.me
# Licensed under the MIT License - see LICENSE file for details

"""
Deliberate Core - Shared Primitives

This package contains primitives shared between:
- the orchestration engine (deliberate.core)
- the HTTP gateway and CLI (deliberate.gateway, deliberate.cli)

Modules:
    exceptions: Structured exception hierarchy
"""

__version__ = "1.0.0"

# Re-export exceptions
from .exceptions.hierarchy import (
    BackpressureExceededError,
    CancelledRunError,
    ConfigurationError,
    DeliberateError,
    ErrorKind,
    InvalidStateTransitionError,
    RunCancelledError,
    RunFailedError,
    UpstreamError,
    UpstreamProtocolError,
    UpstreamRejectedError,
    UpstreamUnavailableError,
    ValidationError,
)

__all__ = [
    # Version
    "__version__",
    # Exceptions
    "ErrorKind",
    "DeliberateError",
    "ValidationError",
    "ConfigurationError",
    "UpstreamError",
    "UpstreamRejectedError",
    "UpstreamProtocolError",
    "UpstreamUnavailableError",
    "CancelledRunError",
    "BackpressureExceededError",
    "InvalidStateTransitionError",
    "RunFailedError",
    "RunCancelledError",
]
