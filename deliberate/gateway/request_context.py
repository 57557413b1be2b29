# Deliberate - Dual-Stage Reasoning Orchestrator
# Copyright (c) 2026 George Scott Foley
# ORCID: 0009-0006-4957-0540
# Email: Georgescottfoley@proton.me
# Licensed under the MIT License - see LICENSE file for details

"""
Request Context

- RequestContextMiddleware tags every log line of a request with its
  X-Request-ID (accepted from the client or generated) and echoes the ID
  on the response
- get_app_settings hands routes the settings the app was built with
"""

import logging
import secrets
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from ..core.settings import Settings, get_settings
from ..observability.logging import log_request_end, request_id_var

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
MAX_REQUEST_ID_LENGTH = 64


def _new_request_id() -> str:
    return secrets.token_hex(16)


def sanitize_request_id(raw: str | None) -> str:
    """Keep a client ID log-safe: alphanumerics, dashes and underscores only."""
    cleaned = "".join(c for c in (raw or "")[:MAX_REQUEST_ID_LENGTH] if c.isalnum() or c in "-_")
    return cleaned or _new_request_id()


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind the request ID for the duration of the request and log its outcome."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = sanitize_request_id(request.headers.get(REQUEST_ID_HEADER))
        request.state.request_id = request_id
        token = request_id_var.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id
            log_request_end(
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=(time.perf_counter() - started) * 1000,
            )
            return response
        except Exception:
            logger.error(f"Request failed: {request.method} {request.url.path}", exc_info=True)
            raise
        finally:
            request_id_var.reset(token)


def get_app_settings(request: Request) -> Settings:
    """FastAPI dependency for the settings the app was created with."""
    return getattr(request.app.state, "settings", None) or get_settings()


# ============================================================
# EXPORTS
# ============================================================

__all__ = [
    "REQUEST_ID_HEADER",
    "RequestContextMiddleware",
    "sanitize_request_id",
    "get_app_settings",
]
