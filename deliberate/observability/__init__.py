# Deliberate - Dual-Stage Reasoning Orchestrator
# Copyright (c) 2026 George Scott Foley
# ORCID: 0009-0006-4957-0540
# Email: Georgescottfoley@proton.me
# Licensed under the MIT License - see LICENSE file for details

"""
Observability Module

- Structured JSON logging
- Request and run correlation
- Per-stage exchange logging
"""

from .logging import (
    HumanFormatter,
    JSONFormatter,
    configure_logging,
    log_request_end,
    log_stage_exchange,
    mask_sensitive_data,
    request_id_var,
    run_id_var,
    stage_var,
)


def init_observability(
    log_level: str = "INFO",
    log_format: str = "json",
    mask_sensitive: bool = True,
):
    """
    Initialize logging for the service.

    Args:
        log_level: Logging level
        log_format: Log format ("json" or "human")
        mask_sensitive: Whether to redact credentials
    """
    configure_logging(level=log_level, format=log_format, mask_sensitive=mask_sensitive)


__all__ = [
    # Initialization
    "init_observability",
    # Logging
    "configure_logging",
    "JSONFormatter",
    "HumanFormatter",
    "log_request_end",
    "log_stage_exchange",
    "mask_sensitive_data",
    "request_id_var",
    "run_id_var",
    "stage_var",
]
