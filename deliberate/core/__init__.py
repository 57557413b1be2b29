# Deliberate - Dual-Stage Reasoning Orchestrator
# Copyright (c) 2026 George Scott Foley
# ORCID: 0009-0006-4957-0540
# Email: Georgescottfoley@proton.me
# Licensed under the MIT License - see LICENSE file for details

"""
Core Module

The dual-stage orchestration engine:
- Settings: Stage, streaming and logging configuration
- Models: Messages, stage events, thinking blocks, combined results
- Providers: httpx-based stage adapters (DeepSeek, OpenAI-compatible, Anthropic)
- Reasoning: Incremental reasoning extraction
- Multiplexer: Ordered, bounded outgoing event sequence
- Pricing / Usage: Decimal cost accounting per stage
- Orchestrator: The run state machine

All imports are lazy so that lightweight submodules like settings do not
pull in httpx.
"""

from __future__ import annotations

import importlib
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .async_base import CancellationToken as CancellationToken
    from .models import (
        CombinedResult as CombinedResult,
    )
    from .models import (
        CostBreakdown as CostBreakdown,
    )
    from .models import (
        DeliveryMode as DeliveryMode,
    )
    from .models import (
        Message as Message,
    )
    from .models import (
        OrchestrationRequest as OrchestrationRequest,
    )
    from .models import (
        Role as Role,
    )
    from .models import (
        Stage as Stage,
    )
    from .models import (
        ThinkingBlock as ThinkingBlock,
    )
    from .models import (
        UsageMetrics as UsageMetrics,
    )
    from .multiplexer import (
        OutgoingEvent as OutgoingEvent,
    )
    from .multiplexer import (
        OutgoingEventType as OutgoingEventType,
    )
    from .orchestrator import (
        DualStageOrchestrator as DualStageOrchestrator,
    )
    from .orchestrator import (
        OrchestratorConfig as OrchestratorConfig,
    )
    from .orchestrator import (
        RunState as RunState,
    )
    from .pricing import (
        PricingTable as PricingTable,
    )
    from .providers import (
        StageAdapter as StageAdapter,
    )
    from .providers import (
        create_stage_adapter as create_stage_adapter,
    )
    from .settings import Settings as Settings
    from .settings import get_settings as get_settings

# Map attribute names to (module, name) for lazy loading
_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    # Settings
    "Settings": (".settings", "Settings"),
    "get_settings": (".settings", "get_settings"),
    # Models
    "Role": (".models", "Role"),
    "Message": (".models", "Message"),
    "Stage": (".models", "Stage"),
    "DeliveryMode": (".models", "DeliveryMode"),
    "UsageMetrics": (".models", "UsageMetrics"),
    "CostBreakdown": (".models", "CostBreakdown"),
    "ThinkingBlock": (".models", "ThinkingBlock"),
    "CombinedResult": (".models", "CombinedResult"),
    "OrchestrationRequest": (".models", "OrchestrationRequest"),
    # Async primitives
    "CancellationToken": (".async_base", "CancellationToken"),
    # Providers
    "StageAdapter": (".providers", "StageAdapter"),
    "create_stage_adapter": (".providers", "create_stage_adapter"),
    # Pricing
    "PricingTable": (".pricing", "PricingTable"),
    # Multiplexer
    "OutgoingEvent": (".multiplexer", "OutgoingEvent"),
    "OutgoingEventType": (".multiplexer", "OutgoingEventType"),
    # Orchestrator
    "DualStageOrchestrator": (".orchestrator", "DualStageOrchestrator"),
    "OrchestratorConfig": (".orchestrator", "OrchestratorConfig"),
    "RunState": (".orchestrator", "RunState"),
}

__all__ = list(_LAZY_IMPORTS.keys())


def __getattr__(name: str) -> object:
    if name in _LAZY_IMPORTS:
        module_path, attr_name = _LAZY_IMPORTS[name]
        module = importlib.import_module(module_path, __name__)
        value = getattr(module, attr_name)
        globals()[name] = value
        return value
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
