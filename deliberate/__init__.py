# Deliberate - Dual-Stage Reasoning Orchestrator
# Copyright (c) 2026 George Scott Foley
# ORCID: 0009-0006-4957-0540
# Email: Georgescottfoley@proton.me
# Licensed under the MIT License - see LICENSE file for details

"""
Deliberate - Dual-Stage Reasoning Orchestrator

"Think first, then answer."

Deliberate runs a reasoning model and a synthesis model back to back.
The reasoning model's chain of thought is wrapped in a thinking block and
handed to the synthesis model as context; both outputs reach the caller as
one response, streamed or blocking, with per-stage cost accounting.

Quick Start:
    from deliberate import DualStageOrchestrator, Message, OrchestrationRequest, Role

    async with DualStageOrchestrator.from_settings() as orchestrator:
        result = await orchestrator.complete(
            OrchestrationRequest(
                messages=(Message(Role.USER, "Why is the sky blue?"),),
                stage_a_credential=deepseek_key,
                stage_b_credential=anthropic_key,
            )
        )
        print(result.text)

Architecture:

    ┌─────────────────────────────────────────────────────┐
    │               Gateway (FastAPI, SSE)                │
    │  ┌─────────────────────────────────────────────┐   │
    │  │  DualStageOrchestrator (one run per request) │   │
    │  │  ┌──────────────┐      ┌──────────────┐     │   │
    │  │  │ Stage A      │ ───► │ Stage B      │     │   │
    │  │  │ reasoning    │      │ synthesis    │     │   │
    │  │  └──────────────┘      └──────────────┘     │   │
    │  │  EventSequencer · UsageAccumulator          │   │
    │  └─────────────────────────────────────────────┘   │
    └─────────────────────────────────────────────────────┘

All imports are lazy; ``import deliberate`` does not load httpx or FastAPI.
"""

from __future__ import annotations

import importlib
from typing import TYPE_CHECKING

__version__ = "1.0.0"
__author__ = "George Scott Foley"

if TYPE_CHECKING:
    from .core.models import (
        CombinedResult as CombinedResult,
    )
    from .core.models import (
        DeliveryMode as DeliveryMode,
    )
    from .core.models import (
        Message as Message,
    )
    from .core.models import (
        OrchestrationRequest as OrchestrationRequest,
    )
    from .core.models import (
        Role as Role,
    )
    from .core.orchestrator import (
        DualStageOrchestrator as DualStageOrchestrator,
    )
    from .core.settings import Settings as Settings
    from .core.settings import get_settings as get_settings

_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    # Settings
    "Settings": (".core.settings", "Settings"),
    "get_settings": (".core.settings", "get_settings"),
    # Request / result
    "Role": (".core.models", "Role"),
    "Message": (".core.models", "Message"),
    "DeliveryMode": (".core.models", "DeliveryMode"),
    "OrchestrationRequest": (".core.models", "OrchestrationRequest"),
    "CombinedResult": (".core.models", "CombinedResult"),
    # Orchestrator
    "DualStageOrchestrator": (".core.orchestrator", "DualStageOrchestrator"),
}

__all__ = [
    "__version__",
    *_LAZY_IMPORTS.keys(),
]


def __getattr__(name: str) -> object:
    if name in _LAZY_IMPORTS:
        module_path, attr_name = _LAZY_IMPORTS[name]
        module = importlib.import_module(module_path, __name__)
        value = getattr(module, attr_name)
        globals()[name] = value
        return value
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
