# Deliberate - Dual-Stage Reasoning Orchestrator
# Copyright (c) 2026 George Scott Foley
# ORCID: 0009-0006-4957-0540
# Email: Georgescottfoley@proton.me
# Licensed under the MIT License - see LICENSE file for details

from .app import ERROR_STATUS_CODES, app, create_app
from .normalization import (
    ChatRequestIn,
    extract_credentials,
    normalize_request,
)
from .request_context import (
    REQUEST_ID_HEADER,
    RequestContextMiddleware,
    get_app_settings,
    sanitize_request_id,
)

__all__ = [
    # App
    "app",
    "create_app",
    "ERROR_STATUS_CODES",
    # Normalization
    "ChatRequestIn",
    "normalize_request",
    "extract_credentials",
    # Request context
    "RequestContextMiddleware",
    "REQUEST_ID_HEADER",
    "sanitize_request_id",
    "get_app_settings",
]
