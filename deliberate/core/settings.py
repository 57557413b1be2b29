# Deliberate - Dual-Stage Reasoning Orchestrator
# Copyright (c) 2026 George Scott Foley
# ORCID: 0009-0006-4957-0540
# Email: Georgescottfoley@proton.me
# Licensed under the MIT License - see LICENSE file for details

"""
Application Settings

Configuration management using pydantic-settings.
Supports environment variables and .env files.

Each stage has its own settings group so the reasoning and synthesis
upstreams can point at different providers with independent timeouts.
"""

from collections.abc import Mapping
from functools import lru_cache
from types import MappingProxyType
from typing import Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Central model constants, change here to update everywhere
DEFAULT_REASONING_MODEL = "deepseek-reasoner"
DEFAULT_ANTHROPIC_MODEL = "claude-sonnet-4-20250514"

# Keys owned by the orchestration core, never taken from caller options
RESERVED_OPTION_KEYS = frozenset({"messages", "stream", "stream_options"})


def merge_options(
    defaults: Mapping[str, Any] | None, overrides: Mapping[str, Any] | None = None
) -> Mapping[str, Any]:
    """
    Layer caller overrides over provider defaults.

    Resolved once per stage request; the result is read-only and never
    contains reserved keys.

    Args:
        defaults: Configured per-provider options
        overrides: Caller-supplied options

    Returns:
        Immutable merged options
    """
    merged = {**(defaults or {}), **(overrides or {})}
    for key in RESERVED_OPTION_KEYS:
        merged.pop(key, None)
    return MappingProxyType(merged)


class StageSettings(BaseSettings):
    """Configuration shared by both stage groups."""

    provider: str = Field(default="openai")
    model: str = Field(default="gpt-4o")
    base_url: str | None = Field(default=None, description="Override the provider endpoint")
    api_key: str | None = Field(
        default=None, description="Server-side credential used when the caller sends none"
    )
    timeout_seconds: float = Field(default=300.0, gt=0, description="Whole-stage deadline")
    default_options: dict[str, Any] = Field(default_factory=dict)

    @field_validator("provider")
    @classmethod
    def normalize_provider(cls, v: str) -> str:
        return v.strip().lower()

    def resolve_options(self, overrides: Mapping[str, Any] | None = None) -> Mapping[str, Any]:
        """Merge caller overrides over this stage's default options."""
        return merge_options(self.default_options, overrides)


class ReasoningStageSettings(StageSettings):
    """Stage A (reasoning) upstream."""

    model_config = SettingsConfigDict(env_prefix="REASONING_")

    provider: str = Field(default="deepseek")
    model: str = Field(default=DEFAULT_REASONING_MODEL)
    default_options: dict[str, Any] = Field(default_factory=lambda: {"max_tokens": 8192})


class SynthesisStageSettings(StageSettings):
    """Stage B (synthesis) upstream."""

    model_config = SettingsConfigDict(env_prefix="SYNTHESIS_")

    provider: str = Field(default="anthropic")
    model: str = Field(default=DEFAULT_ANTHROPIC_MODEL)
    default_options: dict[str, Any] = Field(default_factory=lambda: {"max_tokens": 8192})


class StreamingSettings(BaseSettings):
    """Outgoing event buffer configuration."""

    model_config = SettingsConfigDict(env_prefix="STREAM_")

    buffer_size: int = Field(default=256, ge=1, le=65536)
    backpressure_timeout_seconds: float = Field(
        default=30.0, gt=0, description="How long a full buffer may stall the upstream read"
    )


class ObservabilitySettings(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(env_prefix="LOG_")

    level: str = Field(default="INFO")
    format: str = Field(default="json")  # json or human
    mask_sensitive: bool = Field(default=True)

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        if v not in ("json", "human"):
            raise ValueError("LOG_FORMAT must be 'json' or 'human'")
        return v


class Settings(BaseSettings):
    """
    Main application settings.

    Usage:
        settings = get_settings()
        print(settings.reasoning.model)
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="Deliberate")
    app_version: str = Field(default="1.0.0")
    environment: str = Field(default="development")  # development, staging, production

    # Server
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)
    workers: int = Field(default=1)
    cors_origins: list[str] = Field(default=["http://localhost:3000"])

    # Billing presentation
    cost_precision: int = Field(default=6, ge=0, le=12, description="Decimal places in output")

    # Sub-settings
    reasoning: ReasoningStageSettings = Field(default_factory=ReasoningStageSettings)
    synthesis: SynthesisStageSettings = Field(default_factory=SynthesisStageSettings)
    streaming: StreamingSettings = Field(default_factory=StreamingSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        return self.environment == "development"


@lru_cache
def get_settings() -> Settings:
    """
    Get cached application settings.

    Settings are loaded once and cached for the application lifetime.
    """
    return Settings()


# ============================================================
# EXPORTS
# ============================================================

__all__ = [
    "DEFAULT_REASONING_MODEL",
    "DEFAULT_ANTHROPIC_MODEL",
    "RESERVED_OPTION_KEYS",
    "merge_options",
    "Settings",
    "StageSettings",
    "ReasoningStageSettings",
    "SynthesisStageSettings",
    "StreamingSettings",
    "ObservabilitySettings",
    "get_settings",
]
