# Deliberate - Dual-Stage Reasoning Orchestrator
# Copyright (c) 2026 George Scott Foley
# ORCID: 0009-0006-4957-0540
# Email: Georgescottfoley@proton.me
# Licensed under the MIT License - see LICENSE file for details

"""
Async Infrastructure Primitives

Provides:
- Timeout contexts
- Cancellation tokens
- Lifecycle management
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Coroutine
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Get current UTC time."""
    return datetime.now(UTC)


# ============================================================
# TIMEOUT UTILITIES
# ============================================================


@asynccontextmanager
async def timeout_context(
    seconds: float, operation: str = "operation"
) -> AsyncIterator[asyncio.Timeout]:
    """
    Async context manager with timeout.

    Yields the underlying asyncio.Timeout so callers can pause it.

    Usage:
        async with timeout_context(30, "reasoning stage") as deadline:
            async for event in adapter.run(request, mode):
                ...
    """
    try:
        async with asyncio.timeout(seconds) as deadline:
            yield deadline
    except TimeoutError:
        logger.error(f"{operation} timed out after {seconds}s")
        raise


@asynccontextmanager
async def paused_deadline(deadline: asyncio.Timeout) -> AsyncIterator[None]:
    """
    Stop a running timeout's clock for the duration of the block.

    The deadline resumes afterwards, pushed back by the time spent inside.
    """
    loop = asyncio.get_running_loop()
    when = deadline.when()
    paused_at = loop.time()
    deadline.reschedule(None)
    try:
        yield
    finally:
        if when is not None:
            deadline.reschedule(when + (loop.time() - paused_at))


# ============================================================
# CANCELLATION
# ============================================================


class CancellationToken:
    """
    Single cancellation signal shared by everything in one run.

    Callbacks registered with `on_cancel` fire exactly once, on the first
    call to `cancel`. Later calls keep the first reason.

    Usage:
        token = CancellationToken()
        token.on_cancel(lambda reason: task.cancel())
        ...
        token.cancel("caller_disconnected")
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._callbacks: list[Callable[[str], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def on_cancel(self, callback: Callable[[str], None]) -> None:
        """Register a callback; runs immediately if already cancelled."""
        if self.cancelled:
            callback(self._reason or "cancelled")
            return
        self._callbacks.append(callback)

    def cancel(self, reason: str = "cancelled") -> bool:
        """
        Trigger cancellation.

        Returns:
            True if this call cancelled the token, False if it already was
        """
        if self.cancelled:
            return False

        self._reason = reason
        self._event.set()
        logger.debug(f"Cancellation requested: {reason}")

        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(reason)
        return True


# ============================================================
# LIFECYCLE MANAGEMENT
# ============================================================


@dataclass
class Lifecycle:
    """
    Application lifecycle manager.

    Usage:
        lifecycle = Lifecycle()

        @lifecycle.on_startup
        async def build_adapters():
            ...

        @lifecycle.on_shutdown
        async def close_adapters():
            ...
    """

    _startup_hooks: list[Callable[[], Coroutine]] = field(default_factory=list)
    _shutdown_hooks: list[Callable[[], Coroutine]] = field(default_factory=list)
    _running: bool = False

    def on_startup(self, func: Callable[[], Coroutine]) -> Callable[[], Coroutine]:
        """Decorator to register startup hook."""
        self._startup_hooks.append(func)
        return func

    def on_shutdown(self, func: Callable[[], Coroutine]) -> Callable[[], Coroutine]:
        """Decorator to register shutdown hook."""
        self._shutdown_hooks.append(func)
        return func

    async def startup(self) -> None:
        """Execute all startup hooks."""
        logger.info("Starting application...")
        for hook in self._startup_hooks:
            try:
                await hook()
            except Exception as e:
                logger.error(f"Startup hook {hook.__name__} failed: {e}")
                raise
        self._running = True
        logger.info("Application started")

    async def shutdown(self) -> None:
        """Execute all shutdown hooks in reverse order."""
        if not self._running:
            return

        logger.info("Shutting down application...")
        self._running = False

        for hook in reversed(self._shutdown_hooks):
            try:
                await hook()
            except Exception as e:
                logger.error(f"Shutdown hook {hook.__name__} failed: {e}")

        logger.info("Application shut down")

    @property
    def is_running(self) -> bool:
        return self._running


# ============================================================
# EXPORTS
# ============================================================

__all__ = [
    "utcnow",
    "timeout_context",
    "paused_deadline",
    "CancellationToken",
    "Lifecycle",
]
