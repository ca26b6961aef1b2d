"""Per-source circuit breakers.

States:
- CLOSED: Normal operation
- OPEN: Failing, reject immediately
- HALF_OPEN: A single trial is permitted to test recovery
"""

import threading
import time
from collections import deque
from collections.abc import Callable
from typing import Annotated

import structlog
from pydantic import BaseModel, ConfigDict, Field, model_validator

from src.datasources.constants import (
    DEFAULT_FAILURE_THRESHOLD,
    DEFAULT_FAILURE_WINDOW_MS,
    DEFAULT_MAX_RESET_TIMEOUT_MS,
    DEFAULT_RESET_TIMEOUT_MS,
)
from src.datasources.models import CircuitBreakerState, CircuitState


logger = structlog.get_logger()

StateChangeHandler = Callable[[str, CircuitState, CircuitState], None]

# Valid state transitions
_VALID_TRANSITIONS: dict[CircuitState, set[CircuitState]] = {
    CircuitState.CLOSED: {CircuitState.OPEN},
    CircuitState.OPEN: {CircuitState.HALF_OPEN, CircuitState.CLOSED},
    CircuitState.HALF_OPEN: {CircuitState.CLOSED, CircuitState.OPEN},
}


class CircuitBreakerConfig(BaseModel):
    """Circuit breaker policy.

    Attributes:
        failure_threshold: Failures within the window that trip the breaker.
        failure_window_ms: Rolling window for counting failures.
        reset_timeout_ms: Cooldown before the first trial.
        backoff_multiplier: Growth of the cooldown after each failed trial.
        max_reset_timeout_ms: Cap for the grown cooldown.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    failure_threshold: Annotated[int, Field(ge=1, le=100)] = DEFAULT_FAILURE_THRESHOLD
    failure_window_ms: Annotated[int, Field(ge=1)] = DEFAULT_FAILURE_WINDOW_MS
    reset_timeout_ms: Annotated[int, Field(ge=0)] = DEFAULT_RESET_TIMEOUT_MS
    backoff_multiplier: Annotated[float, Field(ge=1.0, le=10.0)] = 1.0
    max_reset_timeout_ms: Annotated[int, Field(ge=0)] = DEFAULT_MAX_RESET_TIMEOUT_MS

    @model_validator(mode="after")
    def validate_reset_cap(self) -> "CircuitBreakerConfig":
        """Ensure the cooldown cap is not below the base cooldown."""
        if self.max_reset_timeout_ms < self.reset_timeout_ms:
            msg = "max_reset_timeout_ms must be >= reset_timeout_ms"
            raise ValueError(msg)
        return self


class CircuitBreakerTransitionError(Exception):
    """Raised when an illegal state transition is attempted."""

    def __init__(
        self,
        source_id: str,
        from_state: CircuitState,
        to_state: CircuitState,
    ) -> None:
        """Initialize the transition error.

        Args:
            source_id: Identifier of the source.
            from_state: Current state.
            to_state: Attempted target state.
        """
        self.source_id = source_id
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Illegal circuit transition for source '{source_id}': "
            f"{from_state.value} -> {to_state.value}"
        )


class CircuitBreaker:
    """Circuit breaker guarding one source.

    Check-then-act sequences run under a lock so the breaker stays
    consistent when shared across threads.
    """

    def __init__(
        self,
        source_id: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.time,
        on_state_change: StateChangeHandler | None = None,
    ) -> None:
        """Initialize the breaker in CLOSED state.

        Args:
            source_id: Identifier of the guarded source.
            config: Breaker policy.
            clock: Time source in seconds.
            on_state_change: Called with (source_id, from, to) after transitions.
        """
        self._source_id = source_id
        self._config = config or CircuitBreakerConfig()
        self._clock = clock
        self._on_state_change = on_state_change
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures: deque[float] = deque()
        self._last_failure_at: float | None = None
        self._next_retry_at: float | None = None
        self._reset_timeout_ms = float(self._config.reset_timeout_ms)
        self._trial_in_flight = False
        self._log = logger.bind(component="circuit_breaker", source_id=source_id)

    @property
    def source_id(self) -> str:
        """Get the source identifier."""
        return self._source_id

    @property
    def state(self) -> CircuitState:
        """Get the current state."""
        return self._state

    def _transition_to(self, target: CircuitState) -> tuple[CircuitState, CircuitState]:
        """Change state. Caller holds the lock.

        Raises:
            CircuitBreakerTransitionError: If the transition is invalid.
        """
        if target not in _VALID_TRANSITIONS[self._state]:
            raise CircuitBreakerTransitionError(self._source_id, self._state, target)
        old_state = self._state
        self._state = target
        self._log.info(
            "circuit_state_transition",
            from_state=old_state.value,
            to_state=target.value,
            failure_count=len(self._failures),
        )
        return old_state, target

    def _notify(self, change: tuple[CircuitState, CircuitState] | None) -> None:
        if change is not None and self._on_state_change is not None:
            self._on_state_change(self._source_id, *change)

    def _prune(self, now: float) -> None:
        window_start = now - self._config.failure_window_ms / 1000
        while self._failures and self._failures[0] < window_start:
            self._failures.popleft()

    def _open(self, now: float) -> tuple[CircuitState, CircuitState]:
        self._next_retry_at = now + self._reset_timeout_ms / 1000
        self._trial_in_flight = False
        return self._transition_to(CircuitState.OPEN)

    def can_attempt(self) -> bool:
        """Check whether a network attempt may start now.

        An OPEN breaker whose cooldown has elapsed moves to HALF_OPEN and
        grants exactly one trial; later callers are refused until the trial
        is recorded.

        Returns:
            True if the caller may issue a request.
        """
        change = None
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.OPEN:
                if self._next_retry_at is None or self._clock() < self._next_retry_at:
                    return False
                change = self._transition_to(CircuitState.HALF_OPEN)
                self._trial_in_flight = True
                allowed = True
            elif self._trial_in_flight:
                allowed = False
            else:
                self._trial_in_flight = True
                allowed = True
        self._notify(change)
        return allowed

    def record_success(self) -> None:
        """Record a successful attempt; a successful trial closes the breaker."""
        change = None
        with self._lock:
            self._failures.clear()
            self._trial_in_flight = False
            if self._state != CircuitState.CLOSED:
                self._reset_timeout_ms = float(self._config.reset_timeout_ms)
                self._next_retry_at = None
                change = self._transition_to(CircuitState.CLOSED)
        self._notify(change)

    def record_failure(self) -> None:
        """Record a failure that indicates service degradation."""
        change = None
        with self._lock:
            now = self._clock()
            self._last_failure_at = now
            self._failures.append(now)
            self._prune(now)

            if self._state == CircuitState.HALF_OPEN:
                self._reset_timeout_ms = min(
                    self._reset_timeout_ms * self._config.backoff_multiplier,
                    float(self._config.max_reset_timeout_ms),
                )
                change = self._open(now)
            elif (
                self._state == CircuitState.CLOSED
                and len(self._failures) >= self._config.failure_threshold
            ):
                change = self._open(now)
        self._notify(change)

    def release(self) -> None:
        """Free a granted trial without recording an outcome.

        Used when the trial ended in a way that says nothing about service
        health (cancelled, rejected by policy, client error).
        """
        with self._lock:
            self._trial_in_flight = False

    def snapshot(self) -> CircuitBreakerState:
        """Get an immutable view of the breaker."""
        with self._lock:
            self._prune(self._clock())
            return CircuitBreakerState(
                state=self._state,
                failure_count=len(self._failures),
                last_failure_at=self._last_failure_at,
                next_retry_at=self._next_retry_at,
            )

    def reset(self) -> None:
        """Return to a fresh CLOSED breaker."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failures.clear()
            self._last_failure_at = None
            self._next_retry_at = None
            self._reset_timeout_ms = float(self._config.reset_timeout_ms)
            self._trial_in_flight = False

    def force_open(self) -> None:
        """Open the breaker immediately (for testing and manual isolation)."""
        change = None
        with self._lock:
            now = self._clock()
            self._last_failure_at = now
            if self._state != CircuitState.OPEN:
                change = self._open(now)
            else:
                self._next_retry_at = now + self._reset_timeout_ms / 1000
        self._notify(change)


class CircuitBreakerRegistry:
    """Lazily creates and owns one breaker per source id."""

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.time,
        on_state_change: StateChangeHandler | None = None,
    ) -> None:
        """Initialize the registry.

        Args:
            config: Policy applied to every breaker.
            clock: Time source in seconds.
            on_state_change: Forwarded to every breaker.
        """
        self._config = config or CircuitBreakerConfig()
        self._clock = clock
        self._on_state_change = on_state_change
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, source_id: str) -> CircuitBreaker:
        """Get or create the breaker for a source."""
        with self._lock:
            breaker = self._breakers.get(source_id)
            if breaker is None:
                breaker = CircuitBreaker(
                    source_id,
                    config=self._config,
                    clock=self._clock,
                    on_state_change=self._on_state_change,
                )
                self._breakers[source_id] = breaker
            return breaker

    def states(self) -> dict[str, CircuitBreakerState]:
        """Snapshot every known breaker."""
        with self._lock:
            breakers = list(self._breakers.values())
        return {b.source_id: b.snapshot() for b in breakers}

    def reset_all(self) -> None:
        """Forget every breaker."""
        with self._lock:
            self._breakers.clear()
