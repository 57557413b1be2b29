# Deliberate - Dual-Stage Reasoning Orchestrator
# Copyright (c) 2026 George Scott Foley
# ORCID: 0009-0006-4957-0540
# Email: Georgescottfoley@proton.me
# Licensed under the MIT License - see LICENSE file for details

"""
Health Check Endpoint

GET /health reports liveness plus the configured stage providers.
It never calls an upstream.
"""

import time
from datetime import UTC, datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ..core.settings import Settings
from .request_context import get_app_settings

router = APIRouter()

# Track startup time for uptime calculation
_startup_time = time.time()


class StageInfo(BaseModel):
    provider: str
    model: str
    timeout_seconds: float


class HealthResponse(BaseModel):
    """Liveness response."""

    status: str
    version: str
    environment: str
    timestamp: str
    uptime_seconds: float
    stages: dict[str, StageInfo]


@router.get("/health", response_model=HealthResponse)
async def health(settings: Settings = Depends(get_app_settings)) -> HealthResponse:
    return HealthResponse(
        status="healthy",
        version=settings.app_version,
        environment=settings.environment,
        timestamp=datetime.now(UTC).isoformat(),
        uptime_seconds=round(time.time() - _startup_time, 2),
        stages={
            "reasoning": StageInfo(
                provider=settings.reasoning.provider,
                model=settings.reasoning.model,
                timeout_seconds=settings.reasoning.timeout_seconds,
            ),
            "synthesis": StageInfo(
                provider=settings.synthesis.provider,
                model=settings.synthesis.model,
                timeout_seconds=settings.synthesis.timeout_seconds,
            ),
        },
    )


__all__ = ["router", "HealthResponse"]
