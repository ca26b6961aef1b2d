"""Metrics collection for the data source manager."""

from dataclasses import dataclass, field

from src.datasources.errors import DataSourceErrorCode


@dataclass
class DataSourceMetrics:
    """Counters for one manager instance.

    Tracks requests issued to the transport, cache hits, coalesced waits,
    retries, failures by code, and circuit trips.
    """

    requests_total: int = 0
    transport_calls_total: int = 0
    cache_hits_total: int = 0
    coalesced_total: int = 0
    retry_total: int = 0
    circuit_open_total: int = 0
    failures_total: dict[str, int] = field(default_factory=dict)
    duration_ms_total: float = 0.0
    success_total: int = 0

    def record_request(self) -> None:
        """Record a call to ``fetch``."""
        self.requests_total += 1

    def record_transport_call(self) -> None:
        """Record a network attempt handed to the transport."""
        self.transport_calls_total += 1

    def record_cache_hit(self) -> None:
        """Record a result served from the cache."""
        self.cache_hits_total += 1

    def record_coalesced(self) -> None:
        """Record a caller that joined an in-flight request."""
        self.coalesced_total += 1

    def record_retry(self) -> None:
        """Record a retry attempt."""
        self.retry_total += 1

    def record_circuit_open(self) -> None:
        """Record a breaker transition to OPEN."""
        self.circuit_open_total += 1

    def record_failure(self, code: DataSourceErrorCode) -> None:
        """Record a failed fetch.

        Args:
            code: Classified error code.
        """
        key = code.value
        self.failures_total[key] = self.failures_total.get(key, 0) + 1

    def record_success(self, duration_ms: float) -> None:
        """Record a successful fetch and its duration.

        Args:
            duration_ms: Duration in milliseconds.
        """
        self.success_total += 1
        self.duration_ms_total += duration_ms

    def reset(self) -> None:
        """Zero every counter."""
        self.requests_total = 0
        self.transport_calls_total = 0
        self.cache_hits_total = 0
        self.coalesced_total = 0
        self.retry_total = 0
        self.circuit_open_total = 0
        self.failures_total = {}
        self.duration_ms_total = 0.0
        self.success_total = 0

    def to_dict(self) -> dict[str, int | float | dict[str, int]]:
        """Convert metrics to dictionary.

        Returns:
            Dictionary of metric name to value.
        """
        return {
            "requests_total": self.requests_total,
            "transport_calls_total": self.transport_calls_total,
            "cache_hits_total": self.cache_hits_total,
            "coalesced_total": self.coalesced_total,
            "retry_total": self.retry_total,
            "circuit_open_total": self.circuit_open_total,
            "failures_total": dict(self.failures_total),
            "duration_ms_total": self.duration_ms_total,
            "success_total": self.success_total,
        }

    @property
    def avg_duration_ms(self) -> float:
        """Calculate average duration of successful fetches.

        Returns:
            Average duration in milliseconds.
        """
        if self.success_total == 0:
            return 0.0
        return self.duration_ms_total / self.success_total
