"""Base event system infrastructure.

Provides the core event classes and the in-process event bus that carries the
audit trail: every evidence capture, drift detection and rule transition is
published here and persisted by the audit listener.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from regwatch.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class BaseEvent:
    """Base class for all domain events.

    All events are immutable (frozen dataclass) and include standard metadata:
    - event_id: Unique identifier for this event instance
    - occurred_at: Timestamp when the event occurred (UTC)
    - context: Optional additional context data
    """

    event_id: UUID = field(default_factory=uuid4, init=False)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC), init=False)
    context: dict[str, Any] | None = field(default=None, kw_only=True)


def _handler_name(handler: Callable[..., Any]) -> str:
    return getattr(handler, "__qualname__", None) or repr(handler)


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


@dataclass
class _HandlerRegistration:
    """Internal registration data for event handlers."""

    handler: Callable[[BaseEvent], Any]
    priority: int
    is_async: bool


class GlobalEventBus:
    """In-memory event bus with sync/async handler support.

    Features:
    - Synchronous and asynchronous event handlers
    - Priority-based handler execution (higher priority = executed first)
    - Event type filtering, including base-class subscriptions
    - Error isolation (one handler failure doesn't affect others)
    """

    def __init__(self) -> None:
        self._handlers: dict[type[BaseEvent], list[_HandlerRegistration]] = defaultdict(list)
        self._event_count: dict[str, int] = defaultdict(int)

    def subscribe(
        self,
        event_type: type[BaseEvent],
        handler: Callable[[BaseEvent], Any],
        priority: int = 0,
    ) -> None:
        """Register a handler for the given event type.

        Args:
            event_type: The event class to listen for
            handler: Callable that processes the event (can be sync or async)
            priority: Handler priority (higher = executed first). Default: 0
        """
        is_async = asyncio.iscoroutinefunction(handler)

        registration = _HandlerRegistration(
            handler=handler,
            priority=priority,
            is_async=is_async,
        )

        self._handlers[event_type].append(registration)
        self._handlers[event_type].sort(key=lambda r: r.priority, reverse=True)

        logger.debug(
            "handler_registered",
            event_type=event_type.__name__,
            handler=_handler_name(handler),
            priority=priority,
            is_async=is_async,
        )

    def unsubscribe(
        self,
        event_type: type[BaseEvent],
        handler: Callable[[BaseEvent], Any],
    ) -> None:
        """Remove a handler for the given event type."""
        if event_type in self._handlers:
            self._handlers[event_type] = [
                reg for reg in self._handlers[event_type] if reg.handler != handler
            ]

    def is_subscribed(self, event_type: type[BaseEvent], handler: Callable[[BaseEvent], Any]) -> bool:
        return any(reg.handler == handler for reg in self._handlers.get(event_type, []))

    def publish(self, event: BaseEvent) -> None:
        """Publish an event synchronously to all registered handlers.

        Sync handlers run immediately. Async handlers are scheduled on the
        running loop (fire-and-forget) and skipped when no loop is running.
        """
        event_type = type(event)
        event_name = event_type.__name__

        self._event_count[event_name] += 1

        logger.info(
            "event_published",
            event_type=event_name,
            event_id=str(event.event_id),
            occurred_at=event.occurred_at.isoformat(),
        )

        handlers = self._get_handlers_for_event(event)

        if not handlers:
            logger.debug("no_handlers_found", event_type=event_name)
            return

        loop = _running_loop()
        for registration in handlers:
            try:
                if not registration.is_async:
                    registration.handler(event)
                elif loop is not None:
                    loop.create_task(self._execute_async_handler(registration, event))
                else:
                    logger.warning(
                        "async_handler_skipped",
                        event_type=event_name,
                        handler=_handler_name(registration.handler),
                        reason="no running event loop",
                    )

            except Exception as e:
                # Isolate handler failures - log but don't propagate
                logger.error(
                    "handler_failed",
                    event_type=event_name,
                    handler=_handler_name(registration.handler),
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )

    async def _execute_async_handler(
        self,
        registration: _HandlerRegistration,
        event: BaseEvent,
    ) -> None:
        """Execute an async handler with error handling."""
        try:
            await registration.handler(event)
        except Exception as e:
            logger.error(
                "async_handler_failed",
                event_type=type(event).__name__,
                handler=_handler_name(registration.handler),
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )

    def _get_handlers_for_event(self, event: BaseEvent) -> list[_HandlerRegistration]:
        """Get all handlers that should receive this event (exact type or base class)."""
        handlers: list[_HandlerRegistration] = []

        for event_type, registrations in self._handlers.items():
            if isinstance(event, event_type):
                handlers.extend(registrations)

        handlers.sort(key=lambda r: r.priority, reverse=True)

        return handlers

    def get_stats(self) -> dict[str, Any]:
        """Get event bus statistics."""
        handler_count = sum(len(regs) for regs in self._handlers.values())

        return {
            "total_handlers": handler_count,
            "event_types": len(self._handlers),
            "events_published": dict(self._event_count),
            "total_events": sum(self._event_count.values()),
        }


# Global singleton instance
_global_event_bus: GlobalEventBus | None = None


def get_global_event_bus() -> GlobalEventBus:
    """Get the global event bus singleton instance."""
    global _global_event_bus
    if _global_event_bus is None:
        _global_event_bus = GlobalEventBus()
        logger.info("global_event_bus_initialized")
    return _global_event_bus
