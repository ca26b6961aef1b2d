"""Runtime data models for the data source layer."""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class EvalContext(BaseModel):
    """Read-only snapshot of form state passed to every fetch.

    Attributes:
        ctx: Arbitrary contextual data (user, flow, consent records).
        fields: Field states keyed by field name, e.g. ``{"vin": {"value": ...}}``.
        flags: Derived boolean or computed flags, e.g. ``{"high_mileage": True}``.
        data: Optional data scope used by response mapping.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    ctx: dict[str, Any] = Field(default_factory=dict)
    fields: dict[str, Any] = Field(default_factory=dict)
    flags: dict[str, Any] = Field(default_factory=dict)
    data: dict[str, Any] | None = None


@dataclass(frozen=True)
class FetchOptions:
    """Per-call overrides for a fetch.

    Attributes:
        abort_signal: Event that cancels this caller's wait when set.
        force_refresh: Bypass the cache read (the result is still stored).
        extra_headers: Headers merged over the definition's headers.
        silent: Suppress lifecycle events for this call.
        trace_id: Correlation id sent as ``X-Trace-Id``.
    """

    abort_signal: asyncio.Event | None = None
    force_refresh: bool = False
    extra_headers: dict[str, str] = field(default_factory=dict)
    silent: bool = False
    trace_id: str | None = None


class CacheMeta(BaseModel):
    """Bookkeeping for one cache entry.

    Timestamps are seconds on the cache's clock.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    key: str
    stored_at: float
    expires_at: float
    hit_count: int = Field(default=0, ge=0)

    @property
    def ttl_ms(self) -> int:
        """Total lifetime of the entry in milliseconds."""
        return int((self.expires_at - self.stored_at) * 1000)


class FetchResult(BaseModel):
    """Success envelope returned by the manager.

    Attributes:
        data: Validated response payload.
        from_cache: Whether the payload came from the cache.
        cache_meta: Cache bookkeeping when cached or stored.
        duration_ms: Wall-clock duration of the call.
        mapped: Output of the definition's ``map_response``, if declared.
    """

    model_config = ConfigDict(frozen=True, extra="forbid", arbitrary_types_allowed=True)

    data: Any = None
    from_cache: bool = False
    cache_meta: CacheMeta | None = None
    duration_ms: float = Field(default=0.0, ge=0.0)
    mapped: dict[str, Any] | None = None


class CircuitState(str, Enum):
    """State of a per-source circuit breaker.

    - CLOSED: Normal operation
    - OPEN: Failing, reject immediately
    - HALF_OPEN: Single trial permitted
    """

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreakerState(BaseModel):
    """Snapshot of one source's circuit breaker."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    state: CircuitState = CircuitState.CLOSED
    failure_count: int = Field(default=0, ge=0)
    last_failure_at: float | None = None
    next_retry_at: float | None = None
