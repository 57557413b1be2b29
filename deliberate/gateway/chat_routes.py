# Deliberate - Dual-Stage Reasoning Orchestrator
# Copyright (c) 2026 George Scott Foley
# ORCID: 0009-0006-4957-0540
# Email: Georgescottfoley@proton.me
# Licensed under the MIT License - see LICENSE file for details

"""
Chat Routes

POST /v1/chat/completions runs one dual-stage orchestration:
- stream=false → CombinedResult JSON
- stream=true  → Server-Sent Events, one frame per outgoing event,
                 terminated by `data: [DONE]`

Credentials travel in headers (X-Reasoning-API-Token,
X-Synthesis-API-Token) and are never logged.
"""

import asyncio
import logging
from contextlib import aclosing

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse

from ..core.async_base import CancellationToken
from ..core.models import DeliveryMode
from ..core.orchestrator import DualStageOrchestrator
from ..core.settings import Settings
from .normalization import ChatRequestIn, normalize_request
from .request_context import get_app_settings

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1", tags=["Chat"])

DISCONNECT_POLL_SECONDS = 0.5


# ============================================================
# DEPENDENCIES
# ============================================================


def get_orchestrator(request: Request) -> DualStageOrchestrator:
    """The orchestrator built at startup."""
    return request.app.state.orchestrator


async def watch_disconnect(http_request: Request, token: CancellationToken) -> None:
    """Poll the connection and cancel the run once the client has gone."""
    while not token.cancelled:
        if await http_request.is_disconnected():
            if token.cancel("client_disconnected"):
                logger.info("Client disconnected before the blocking run finished")
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


# ============================================================
# ROUTES
# ============================================================


@router.post("/chat/completions")
async def chat_completion(
    body: ChatRequestIn,
    http_request: Request,
    orchestrator: DualStageOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_app_settings),
):
    """
    Run reasoning then synthesis for one conversation.

    Validation and credential errors are raised before any upstream call
    and mapped to HTTP status codes by the application's error handler.
    """
    request = normalize_request(body, http_request.headers, settings)
    precision = orchestrator.config.cost_precision

    if request.delivery_mode == DeliveryMode.STREAMING:
        token = CancellationToken()
        # Created eagerly so validation errors surface as HTTP errors
        run = orchestrator.create_run(request, cancel_token=token)

        async def event_generator():
            async with aclosing(run.events()) as events:
                finished = False
                try:
                    async for event in events:
                        yield event.to_sse(precision)
                    finished = True
                finally:
                    if not finished and token.cancel("client_disconnected"):
                        logger.info(f"Client disconnected from run {run.run_id}")

            yield "data: [DONE]\n\n"

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",  # Disable nginx buffering
            },
        )

    token = CancellationToken()
    watcher = asyncio.create_task(watch_disconnect(http_request, token))
    try:
        result = await orchestrator.complete(request, cancel_token=token)
    finally:
        watcher.cancel()
    return JSONResponse(content=result.to_dict(include_raw=request.include_raw, precision=precision))


# ============================================================
# EXPORTS
# ============================================================

__all__ = ["router", "get_orchestrator", "watch_disconnect"]
