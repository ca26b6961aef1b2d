"""Lifecycle events emitted by the data source manager."""

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Annotated, Any, Literal

import structlog
from pydantic import BaseModel, ConfigDict, Field


logger = structlog.get_logger()


class _EventBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    source_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class RequestStartEvent(_EventBase):
    """A fetch started (before cache lookup)."""

    type: Literal["request_start"] = "request_start"
    method: str | None = None
    url: str | None = None


class CacheHitEvent(_EventBase):
    """A fetch was served from the cache."""

    type: Literal["cache_hit"] = "cache_hit"
    key: str
    hit_count: int


class RetryEvent(_EventBase):
    """A failed attempt will be retried after ``delay_ms``."""

    type: Literal["retry"] = "retry"
    attempt: int
    delay_ms: int
    code: str


class CircuitOpenEvent(_EventBase):
    """The source's circuit breaker tripped to OPEN."""

    type: Literal["circuit_open"] = "circuit_open"
    next_retry_at: float | None = None
    failure_count: int = 0


class SuccessEvent(_EventBase):
    """A fetch completed successfully."""

    type: Literal["success"] = "success"
    duration_ms: float
    from_cache: bool = False


class ErrorEvent(_EventBase):
    """A fetch failed with a classified error."""

    type: Literal["error"] = "error"
    code: str
    message: str
    retryable: bool
    duration_ms: float = 0.0
    details: dict[str, Any] = Field(default_factory=dict)


DataSourceEvent = Annotated[
    RequestStartEvent
    | CacheHitEvent
    | RetryEvent
    | CircuitOpenEvent
    | SuccessEvent
    | ErrorEvent,
    Field(discriminator="type"),
]

EventHandler = Callable[[Any], None]


class EventEmitter:
    """Synchronous event fan-out.

    Handlers run in registration order. A handler that raises is logged and
    skipped; it never interrupts the emitter or the caller.
    """

    def __init__(self) -> None:
        """Initialize with no handlers."""
        self._handlers: list[EventHandler] = []
        self._log = logger.bind(component="events")

    def on_event(self, handler: EventHandler) -> Callable[[], None]:
        """Register a handler.

        Args:
            handler: Callable receiving each event.

        Returns:
            Function that unregisters the handler; calling it twice is a no-op.
        """
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    @property
    def handler_count(self) -> int:
        """Number of registered handlers."""
        return len(self._handlers)

    def emit(self, event: Any) -> None:
        """Deliver an event to every handler."""
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception as e:  # noqa: BLE001
                self._log.warning(
                    "event_handler_failed",
                    event_type=getattr(event, "type", None),
                    source_id=getattr(event, "source_id", None),
                    error=str(e),
                    error_type=type(e).__name__,
                )

    def clear(self) -> None:
        """Remove every handler."""
        self._handlers.clear()
