# Deliberate - Dual-Stage Reasoning Orchestrator
# Copyright (c) 2026 George Scott Foley
# ORCID: 0009-0006-4957-0540
# Email: Georgescottfoley@proton.me
# Licensed under the MIT License - see LICENSE file for details

"""
Request Normalization

Turns an inbound chat body plus headers into a validated
OrchestrationRequest:
- A top-level `system` field becomes the first message
- Conversations with more than one system message, or a misplaced one,
  are rejected
- Per-stage credentials come from headers, falling back to settings
"""

import logging
from collections.abc import Mapping
from typing import Any

from pydantic import AliasChoices, BaseModel, Field

from deliberate_core import ConfigurationError, ValidationError

from ..core.models import DeliveryMode, Message, OrchestrationRequest, Role
from ..core.orchestrator import validate_messages
from ..core.settings import Settings

logger = logging.getLogger(__name__)


# Header names, with the provider-specific aliases older clients send
REASONING_TOKEN_HEADERS = ("x-reasoning-api-token", "x-deepseek-api-token")
SYNTHESIS_TOKEN_HEADERS = ("x-synthesis-api-token", "x-anthropic-api-token")


# ============================================================
# REQUEST MODELS
# ============================================================


class ChatMessageIn(BaseModel):
    """One inbound conversation turn."""

    role: Role
    content: str


class StageConfigIn(BaseModel):
    """Per-stage overrides; `body` is layered over the provider defaults."""

    body: dict[str, Any] = Field(default_factory=dict)


class ChatRequestIn(BaseModel):
    """Request for a dual-stage chat completion."""

    messages: list[ChatMessageIn]
    system: str | None = None
    stream: bool = False
    verbose: bool = Field(default=False, description="Include raw upstream payloads")
    reasoning_config: StageConfigIn | None = Field(
        default=None,
        validation_alias=AliasChoices("reasoning_config", "deepseek_config"),
    )
    synthesis_config: StageConfigIn | None = Field(
        default=None,
        validation_alias=AliasChoices("synthesis_config", "anthropic_config"),
    )


# ============================================================
# CREDENTIALS
# ============================================================


def _header(headers: Mapping[str, str], names: tuple[str, ...]) -> str | None:
    lowered = {key.lower(): value for key, value in headers.items()}
    for name in names:
        value = lowered.get(name)
        if value:
            return value.strip()
    return None


def extract_credentials(headers: Mapping[str, str], settings: Settings) -> tuple[str, str]:
    """
    Resolve the stage A and stage B credentials.

    Headers win; the configured `api_key` of each stage is the fallback.

    Returns:
        (stage_a_credential, stage_b_credential)

    Raises:
        ConfigurationError: A stage has no credential
    """
    stage_a = _header(headers, REASONING_TOKEN_HEADERS) or settings.reasoning.api_key
    if not stage_a:
        raise ConfigurationError(
            "Missing reasoning stage credential (X-Reasoning-API-Token)",
            config_key="reasoning.api_key",
        )

    stage_b = _header(headers, SYNTHESIS_TOKEN_HEADERS) or settings.synthesis.api_key
    if not stage_b:
        raise ConfigurationError(
            "Missing synthesis stage credential (X-Synthesis-API-Token)",
            config_key="synthesis.api_key",
        )

    return stage_a, stage_b


# ============================================================
# NORMALIZATION
# ============================================================


def normalize_messages(body: ChatRequestIn) -> tuple[Message, ...]:
    """
    Merge the top-level system prompt into the message list.

    Raises:
        ValidationError: Contradictory or misplaced system messages
    """
    messages = tuple(Message(role=m.role, content=m.content) for m in body.messages)

    if body.system is not None:
        if any(m.role == Role.SYSTEM for m in messages):
            raise ValidationError(
                "Provide the system prompt either as `system` or as a system message, not both",
                field="system",
            )
        messages = (Message(Role.SYSTEM, body.system), *messages)

    return validate_messages(messages)


def normalize_request(
    body: ChatRequestIn,
    headers: Mapping[str, str],
    settings: Settings,
) -> OrchestrationRequest:
    """
    Build the validated OrchestrationRequest for one HTTP request.

    Args:
        body: Parsed request body
        headers: Request headers (credentials)
        settings: Application settings

    Returns:
        A request the orchestrator can run without further checks
    """
    messages = normalize_messages(body)
    stage_a_credential, stage_b_credential = extract_credentials(headers, settings)
    logger.debug(f"Normalized request: {len(messages)} messages, stream={body.stream}")

    return OrchestrationRequest(
        messages=messages,
        stage_a_options=settings.reasoning.resolve_options(
            body.reasoning_config.body if body.reasoning_config else None
        ),
        stage_b_options=settings.synthesis.resolve_options(
            body.synthesis_config.body if body.synthesis_config else None
        ),
        stage_a_credential=stage_a_credential,
        stage_b_credential=stage_b_credential,
        delivery_mode=DeliveryMode.STREAMING if body.stream else DeliveryMode.BLOCKING,
        include_raw=body.verbose,
    )


# ============================================================
# EXPORTS
# ============================================================

__all__ = [
    "REASONING_TOKEN_HEADERS",
    "SYNTHESIS_TOKEN_HEADERS",
    "ChatMessageIn",
    "StageConfigIn",
    "ChatRequestIn",
    "extract_credentials",
    "normalize_messages",
    "normalize_request",
]
