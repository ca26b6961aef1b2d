"""Unit tests for DataSourceManager."""

import asyncio
from typing import Any

import pytest
from pydantic import BaseModel

from src.datasources.circuit_breaker import CircuitBreakerConfig
from src.datasources.config import DataSourceConfig, FeatureFlags
from src.datasources.definitions import load_data_source_def
from src.datasources.errors import DataSourceError, DataSourceErrorCode
from src.datasources.manager import DataSourceManager
from src.datasources.models import CircuitState, EvalContext, FetchOptions, FetchResult
from src.datasources.retry import RetryPolicy
from src.datasources.url_validator import URLValidationConfig
from tests.helpers.clock import FakeClock
from tests.helpers.transports import SpyTransport, failing, sequence


VIN_CONTEXT = EvalContext(fields={"vin": {"value": "1HGCM"}})


def vin_def(**overrides: Any):
    """Build the standard VIN lookup definition."""
    raw = {"kind": "http.get", "name": "vin", "url": "/api/vin/{{fields.vin.value}}"}
    raw.update(overrides)
    return load_data_source_def(raw)


def make_config(max_retries: int = 2, **flags: bool) -> DataSourceConfig:
    """Build a config with fast retries and a small breaker threshold."""
    return DataSourceConfig(
        url_policy=URLValidationConfig(),
        retry_policy=RetryPolicy(max_retries=max_retries, base_delay_ms=10, max_delay_ms=50),
        circuit_breaker=CircuitBreakerConfig(failure_threshold=3, reset_timeout_ms=1000),
        feature_flags=FeatureFlags(**flags),
    )


async def no_sleep(_seconds: float) -> None:
    """Backoff sleep that returns immediately."""


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def events() -> list[Any]:
    return []


def make_manager(
    transport: SpyTransport,
    clock: FakeClock,
    events: list[Any] | None = None,
    **kwargs: Any,
) -> DataSourceManager:
    """Build a manager wired to deterministic time."""
    kwargs.setdefault("config", make_config())
    manager = DataSourceManager(transport, clock=clock, sleep=no_sleep, **kwargs)
    if events is not None:
        manager.on_event(events.append)
    return manager


def event_types(events: list[Any]) -> list[str]:
    return [event.type for event in events]


class TestFetchBasics:
    """Tests for the basic fetch path."""

    @pytest.mark.asyncio
    async def test_successful_fetch(self, clock: FakeClock, events: list[Any]) -> None:
        """Test that a fetch resolves the URL and returns the envelope."""
        spy = SpyTransport(lambda request: {"make": "Toyota"})
        manager = make_manager(spy, clock, events)

        result = await manager.fetch(vin_def(), VIN_CONTEXT)

        assert result.data == {"make": "Toyota"}
        assert result.from_cache is False
        assert result.cache_meta is not None
        assert result.duration_ms >= 0
        assert spy.calls[0].url == "/api/vin/1HGCM"
        assert spy.calls[0].method == "GET"
        assert event_types(events) == ["request_start", "success"]
        assert manager.metrics.requests_total == 1
        assert manager.metrics.transport_calls_total == 1

    @pytest.mark.asyncio
    async def test_cache_hit(self, clock: FakeClock, events: list[Any]) -> None:
        """Test that a repeated fetch is served from the cache."""
        spy = SpyTransport()
        manager = make_manager(spy, clock, events)

        await manager.fetch(vin_def(), VIN_CONTEXT)
        result = await manager.fetch(vin_def(), VIN_CONTEXT)

        assert result.from_cache is True
        assert result.cache_meta.hit_count == 1
        assert spy.call_count == 1
        assert manager.metrics.cache_hits_total == 1
        assert event_types(events)[-3:] == ["request_start", "cache_hit", "success"]

    @pytest.mark.asyncio
    async def test_cache_expires(self, clock: FakeClock) -> None:
        """Test that an expired entry is refetched."""
        spy = SpyTransport()
        manager = make_manager(spy, clock)
        definition = vin_def(cache={"ttl_ms": 5000})

        await manager.fetch(definition, VIN_CONTEXT)
        clock.advance_ms(5000)
        result = await manager.fetch(definition, VIN_CONTEXT)

        assert result.from_cache is False
        assert spy.call_count == 2

    @pytest.mark.asyncio
    async def test_force_refresh_bypasses_cache(self, clock: FakeClock) -> None:
        """Test that force_refresh skips the cache read."""
        spy = SpyTransport()
        manager = make_manager(spy, clock)

        await manager.fetch(vin_def(), VIN_CONTEXT)
        result = await manager.fetch(
            vin_def(), VIN_CONTEXT, FetchOptions(force_refresh=True)
        )

        assert result.from_cache is False
        assert spy.call_count == 2

    @pytest.mark.asyncio
    async def test_cache_disabled(self, clock: FakeClock) -> None:
        """Test that ``cache: none`` never stores results."""
        spy = SpyTransport()
        manager = make_manager(spy, clock)
        definition = vin_def(cache="none")

        await manager.fetch(definition, VIN_CONTEXT)
        result = await manager.fetch(definition, VIN_CONTEXT)

        assert result.cache_meta is None
        assert spy.call_count == 2
        assert manager.cache.size() == 0

    @pytest.mark.asyncio
    async def test_different_contexts_do_not_collide(self, clock: FakeClock) -> None:
        """Test that distinct resolved URLs get distinct cache entries."""
        spy = SpyTransport(lambda request: request.url)
        manager = make_manager(spy, clock)

        first = await manager.fetch(vin_def(), VIN_CONTEXT)
        second = await manager.fetch(
            vin_def(), EvalContext(fields={"vin": {"value": "5YJ3E"}})
        )

        assert first.data == "/api/vin/1HGCM"
        assert second.data == "/api/vin/5YJ3E"
        assert spy.call_count == 2

    @pytest.mark.asyncio
    async def test_silent_suppresses_events(self, clock: FakeClock, events: list[Any]) -> None:
        """Test that silent fetches emit no events."""
        manager = make_manager(SpyTransport(), clock, events)

        await manager.fetch(vin_def(), VIN_CONTEXT, FetchOptions(silent=True))

        assert events == []

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_fetch(
        self, clock: FakeClock, events: list[Any]
    ) -> None:
        """Test that a raising handler is isolated from the fetch."""
        manager = make_manager(SpyTransport(), clock)

        def broken(_event: Any) -> None:
            raise RuntimeError("listener bug")

        manager.on_event(broken)
        manager.on_event(events.append)
        result = await manager.fetch(vin_def(), VIN_CONTEXT)

        assert result.data == {"ok": True}
        assert event_types(events) == ["request_start", "success"]

    @pytest.mark.asyncio
    async def test_unsubscribe(self, clock: FakeClock, events: list[Any]) -> None:
        """Test that unsubscribed handlers receive nothing."""
        manager = make_manager(SpyTransport(), clock)
        unsubscribe = manager.on_event(events.append)
        unsubscribe()
        unsubscribe()

        await manager.fetch(vin_def(), VIN_CONTEXT)

        assert events == []


class TestRequestBuilding:
    """Tests for header, body and URL handling."""

    @pytest.mark.asyncio
    async def test_headers_are_allowlisted(self, clock: FakeClock) -> None:
        """Test that non-allowlisted headers never reach the transport."""
        spy = SpyTransport()
        manager = make_manager(spy, clock)
        definition = vin_def(
            headers={"Authorization": "Bearer secret", "X-Tenant": "{{ctx.tenant}}"}
        )

        await manager.fetch(
            definition, EvalContext(ctx={"tenant": "acme"}, fields=VIN_CONTEXT.fields)
        )

        assert spy.calls[0].headers == {"X-Tenant": "acme"}

    @pytest.mark.asyncio
    async def test_trace_id_sent_but_not_part_of_cache_key(self, clock: FakeClock) -> None:
        """Test that X-Trace-Id is attached without changing the signature."""
        spy = SpyTransport()
        manager = make_manager(spy, clock)

        await manager.fetch(vin_def(), VIN_CONTEXT, FetchOptions(trace_id="t-1"))
        result = await manager.fetch(vin_def(), VIN_CONTEXT, FetchOptions(trace_id="t-2"))

        assert spy.calls[0].headers["X-Trace-Id"] == "t-1"
        assert result.from_cache is True

    @pytest.mark.asyncio
    async def test_post_body_and_idempotency_key(self, clock: FakeClock) -> None:
        """Test that POST bodies resolve with native types and send the dedupe key."""
        spy = SpyTransport()
        manager = make_manager(spy, clock)
        definition = load_data_source_def(
            {
                "kind": "http.post",
                "name": "quote",
                "url": "/api/quote",
                "body": {"vin": "{{fields.vin.value}}", "year": "{{fields.year.value}}"},
                "dedupe_key": "quote-{{fields.vin.value}}",
            }
        )
        context = EvalContext(fields={"vin": {"value": "1HGCM"}, "year": {"value": 2020}})

        await manager.fetch(definition, context)

        request = spy.calls[0]
        assert request.method == "POST"
        assert request.body == {"vin": "1HGCM", "year": 2020}
        assert request.headers["Idempotency-Key"] == "quote-1HGCM"
        assert request.headers["Content-Type"] == "application/json"

    @pytest.mark.asyncio
    async def test_private_ip_blocked_before_transport(
        self, clock: FakeClock, events: list[Any]
    ) -> None:
        """Test that SSRF attempts fail without any network call."""
        spy = SpyTransport()
        manager = make_manager(spy, clock, events)
        definition = load_data_source_def(
            {"kind": "http.get", "name": "meta", "url": "http://169.254.169.254/latest"}
        )

        with pytest.raises(DataSourceError) as exc_info:
            await manager.fetch(definition)

        assert exc_info.value.code == DataSourceErrorCode.SSRF_BLOCKED
        assert exc_info.value.source_id == "meta"
        assert spy.call_count == 0
        assert event_types(events) == ["request_start", "error"]

    @pytest.mark.asyncio
    async def test_oversized_payload_blocked(self, clock: FakeClock) -> None:
        """Test that request bodies over the payload limit are rejected."""
        spy = SpyTransport()
        manager = make_manager(spy, clock)
        definition = load_data_source_def(
            {
                "kind": "http.post",
                "name": "upload",
                "url": "/api/upload",
                "body": {"blob": "{{fields.blob.value}}"},
            }
        )
        context = EvalContext(fields={"blob": {"value": "x" * 200_000}})

        with pytest.raises(DataSourceError) as exc_info:
            await manager.fetch(definition, context)

        assert exc_info.value.code == DataSourceErrorCode.PRIVACY_BLOCKED
        assert spy.call_count == 0


class TestPrivacy:
    """Tests for privacy enforcement."""

    PRIVATE = {"classification": "SENSITIVE", "allow_in_ai": True}

    @pytest.mark.asyncio
    async def test_blocked_without_consent(self, clock: FakeClock, events: list[Any]) -> None:
        """Test that sensitive sources need consent and never hit the network."""
        spy = SpyTransport()
        manager = make_manager(spy, clock, events)

        with pytest.raises(DataSourceError) as exc_info:
            await manager.fetch(vin_def(privacy=self.PRIVATE), VIN_CONTEXT)

        assert exc_info.value.code == DataSourceErrorCode.PRIVACY_BLOCKED
        assert exc_info.value.details["violations"][0]["field"] == "vin"
        assert spy.call_count == 0
        assert events[-1].type == "error"
        assert events[-1].code == "PRIVACY_BLOCKED"

    @pytest.mark.asyncio
    async def test_allowed_with_consent(self, clock: FakeClock) -> None:
        """Test that recorded consent lets the fetch proceed."""
        spy = SpyTransport()
        manager = make_manager(spy, clock)
        context = EvalContext(ctx={"consent": {"vin": True}}, fields=VIN_CONTEXT.fields)

        result = await manager.fetch(vin_def(privacy=self.PRIVATE), context)

        assert result.data == {"ok": True}
        assert spy.call_count == 1


class TestInFlightDedupe:
    """Tests for request coalescing."""

    @pytest.mark.asyncio
    async def test_concurrent_fetches_share_one_call(self, clock: FakeClock) -> None:
        """Test that identical concurrent fetches hit the transport once."""
        gate = asyncio.Event()
        spy = SpyTransport(lambda request: {"make": "Toyota"}, gate=gate)
        manager = make_manager(spy, clock)

        tasks = [
            asyncio.ensure_future(manager.fetch(vin_def(), VIN_CONTEXT)) for _ in range(5)
        ]
        await asyncio.sleep(0)
        assert manager.in_flight_stats().count == 1
        gate.set()
        results = await asyncio.gather(*tasks)

        assert spy.call_count == 1
        assert all(r.data == {"make": "Toyota"} for r in results)
        assert manager.metrics.coalesced_total == 4
        assert manager.in_flight_stats().count == 0

    @pytest.mark.asyncio
    async def test_failure_reaches_every_waiter(self, clock: FakeClock) -> None:
        """Test that a shared failure is delivered to all callers."""
        spy = SpyTransport(failing(DataSourceErrorCode.HTTP_4XX, "HTTP 404"))
        manager = make_manager(spy, clock)

        results = await asyncio.gather(
            *(manager.fetch(vin_def(), VIN_CONTEXT) for _ in range(3)),
            return_exceptions=True,
        )

        assert spy.call_count == 1
        assert all(isinstance(r, DataSourceError) for r in results)
        assert {r.code for r in results} == {DataSourceErrorCode.HTTP_4XX}

    @pytest.mark.asyncio
    async def test_dedupe_disabled(self, clock: FakeClock) -> None:
        """Test that every caller reaches the transport when dedupe is off."""
        gate = asyncio.Event()
        spy = SpyTransport(gate=gate)
        manager = make_manager(
            spy, clock, config=make_config(enable_in_flight_dedupe=False)
        )

        tasks = [
            asyncio.ensure_future(manager.fetch(vin_def(), VIN_CONTEXT)) for _ in range(3)
        ]
        await asyncio.sleep(0)
        gate.set()
        await asyncio.gather(*tasks)

        assert spy.call_count == 3

    @pytest.mark.asyncio
    async def test_abort_single_caller(self, clock: FakeClock, events: list[Any]) -> None:
        """Test that aborting the only waiter raises ABORTED and drops the entry."""
        gate = asyncio.Event()
        manager = make_manager(SpyTransport(gate=gate), clock, events)
        abort = asyncio.Event()

        task = asyncio.ensure_future(
            manager.fetch(vin_def(), VIN_CONTEXT, FetchOptions(abort_signal=abort))
        )
        await asyncio.sleep(0)
        abort.set()

        with pytest.raises(DataSourceError) as exc_info:
            await task
        await asyncio.sleep(0)

        assert exc_info.value.code == DataSourceErrorCode.ABORTED
        assert manager.in_flight_stats().count == 0
        assert manager.cache.size() == 0
        assert events[-1].code == "ABORTED"
        assert manager.get_circuit_breaker("vin").state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_abort_one_of_many(self, clock: FakeClock) -> None:
        """Test that other waiters still receive the shared result."""
        gate = asyncio.Event()
        spy = SpyTransport(gate=gate)
        manager = make_manager(spy, clock)
        abort = asyncio.Event()

        aborting = asyncio.ensure_future(
            manager.fetch(vin_def(), VIN_CONTEXT, FetchOptions(abort_signal=abort))
        )
        staying = asyncio.ensure_future(manager.fetch(vin_def(), VIN_CONTEXT))
        await asyncio.sleep(0)
        abort.set()
        with pytest.raises(DataSourceError):
            await aborting
        gate.set()
        result = await staying

        assert result.data == {"ok": True}
        assert spy.call_count == 1

    @pytest.mark.asyncio
    async def test_abort_with_dedupe_disabled(self, clock: FakeClock, events: list[Any]) -> None:
        """Test that a pre-set abort signal is honored without coalescing."""
        spy = SpyTransport()
        manager = make_manager(
            spy, clock, events, config=make_config(enable_in_flight_dedupe=False)
        )
        abort = asyncio.Event()
        abort.set()

        with pytest.raises(DataSourceError) as exc_info:
            await manager.fetch(vin_def(), VIN_CONTEXT, FetchOptions(abort_signal=abort))

        assert exc_info.value.code == DataSourceErrorCode.ABORTED
        assert spy.call_count == 0
        assert event_types(events) == ["request_start", "error"]

    @pytest.mark.asyncio
    async def test_abort_during_backoff_with_dedupe_disabled(self, clock: FakeClock) -> None:
        """Test that aborting stops a pending retry wait without coalescing."""

        async def stalled_sleep(_seconds: float) -> None:
            await asyncio.Event().wait()

        spy = SpyTransport(failing(DataSourceErrorCode.HTTP_5XX, "HTTP 503"))
        manager = DataSourceManager(
            spy,
            config=make_config(enable_in_flight_dedupe=False),
            clock=clock,
            sleep=stalled_sleep,
        )
        abort = asyncio.Event()

        task = asyncio.ensure_future(
            manager.fetch(vin_def(), VIN_CONTEXT, FetchOptions(abort_signal=abort))
        )
        for _ in range(3):
            await asyncio.sleep(0)
        assert spy.call_count == 1
        abort.set()

        with pytest.raises(DataSourceError) as exc_info:
            await task

        assert exc_info.value.code == DataSourceErrorCode.ABORTED
        assert spy.call_count == 1
        assert manager.get_circuit_breaker("vin").snapshot().failure_count == 0

    @pytest.mark.asyncio
    async def test_reset_fails_pending_fetch_with_aborted(
        self, clock: FakeClock, events: list[Any]
    ) -> None:
        """Test that resetting the manager fails a pending fetch with ABORTED."""
        gate = asyncio.Event()
        manager = make_manager(SpyTransport(gate=gate), clock, events)

        task = asyncio.ensure_future(manager.fetch(vin_def(), VIN_CONTEXT))
        await asyncio.sleep(0)
        manager.reset()

        with pytest.raises(DataSourceError) as exc_info:
            await task

        assert exc_info.value.code == DataSourceErrorCode.ABORTED
        assert exc_info.value.source_id == "vin"
        assert events[-1].type == "error"
        assert events[-1].code == "ABORTED"
        assert manager.in_flight_stats().count == 0

    @pytest.mark.asyncio
    async def test_aclose_fails_pending_fetch_with_aborted(self, clock: FakeClock) -> None:
        """Test that closing the manager fails a pending fetch with ABORTED."""
        gate = asyncio.Event()
        manager = make_manager(SpyTransport(gate=gate), clock)

        task = asyncio.ensure_future(manager.fetch(vin_def(), VIN_CONTEXT))
        await asyncio.sleep(0)
        await manager.aclose()

        with pytest.raises(DataSourceError) as exc_info:
            await task

        assert exc_info.value.code == DataSourceErrorCode.ABORTED


class TestRetryAndCircuitBreaker:
    """Tests for retry and breaker integration."""

    @pytest.mark.asyncio
    async def test_transient_failure_retried(self, clock: FakeClock, events: list[Any]) -> None:
        """Test that a 5xx is retried and the retry is observable."""
        spy = SpyTransport(
            sequence(DataSourceError(DataSourceErrorCode.HTTP_5XX, "HTTP 503"), {"ok": 1})
        )
        manager = make_manager(spy, clock, events)

        result = await manager.fetch(vin_def(), VIN_CONTEXT)

        assert result.data == {"ok": 1}
        assert spy.call_count == 2
        assert event_types(events) == ["request_start", "retry", "success"]
        assert events[1].attempt == 1
        assert events[1].code == "HTTP_5XX"
        assert manager.metrics.retry_total == 1

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, clock: FakeClock, events: list[Any]) -> None:
        """Test that a 4xx fails after a single attempt."""
        spy = SpyTransport(failing(DataSourceErrorCode.HTTP_4XX, "HTTP 404"))
        manager = make_manager(spy, clock, events)

        with pytest.raises(DataSourceError) as exc_info:
            await manager.fetch(vin_def(), VIN_CONTEXT)

        assert exc_info.value.code == DataSourceErrorCode.HTTP_4XX
        assert spy.call_count == 1
        assert event_types(events) == ["request_start", "error"]
        assert manager.metrics.failures_total == {"HTTP_4XX": 1}
        assert manager.cache.size() == 0

    @pytest.mark.asyncio
    async def test_unsafe_post_not_retried(self, clock: FakeClock) -> None:
        """Test that non-idempotent POSTs are sent once."""
        spy = SpyTransport(failing(DataSourceErrorCode.HTTP_5XX, "HTTP 502"))
        manager = make_manager(spy, clock)
        definition = load_data_source_def(
            {"kind": "http.post", "name": "submit", "url": "/api/submit"}
        )

        with pytest.raises(DataSourceError):
            await manager.fetch(definition)

        assert spy.call_count == 1

    @pytest.mark.asyncio
    async def test_circuit_opens_and_recovers(self, clock: FakeClock, events: list[Any]) -> None:
        """Test trip, fast rejection and half-open recovery."""
        error = DataSourceError(DataSourceErrorCode.HTTP_5XX, "HTTP 503")
        spy = SpyTransport(sequence(error, error, error, {"ok": True}))
        manager = make_manager(spy, clock, events, config=make_config(max_retries=0))

        for _ in range(3):
            with pytest.raises(DataSourceError):
                await manager.fetch(vin_def(), VIN_CONTEXT)

        assert manager.get_circuit_breaker("vin").state == CircuitState.OPEN
        assert event_types(events).count("circuit_open") == 1
        assert manager.metrics.circuit_open_total == 1

        with pytest.raises(DataSourceError) as exc_info:
            await manager.fetch(vin_def(), VIN_CONTEXT)

        assert exc_info.value.code == DataSourceErrorCode.CB_OPEN
        assert exc_info.value.retryable is False
        assert exc_info.value.details["next_retry_at"] == pytest.approx(clock.now + 1.0)
        assert spy.call_count == 3

        clock.advance_ms(1000)
        result = await manager.fetch(vin_def(), VIN_CONTEXT)

        assert result.data == {"ok": True}
        assert spy.call_count == 4
        assert manager.get_circuit_breaker("vin").state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_client_errors_do_not_trip(self, clock: FakeClock) -> None:
        """Test that 4xx responses are not counted as degradation."""
        spy = SpyTransport(failing(DataSourceErrorCode.HTTP_4XX, "HTTP 400"))
        manager = make_manager(spy, clock)

        for _ in range(5):
            with pytest.raises(DataSourceError):
                await manager.fetch(vin_def(), VIN_CONTEXT)

        assert manager.get_circuit_breaker("vin").state == CircuitState.CLOSED
        assert spy.call_count == 5

    @pytest.mark.asyncio
    async def test_breaker_disabled(self, clock: FakeClock) -> None:
        """Test that the breaker flag turns off fast rejection."""
        spy = SpyTransport(failing(DataSourceErrorCode.TIMEOUT, "timed out"))
        manager = make_manager(
            spy,
            clock,
            config=make_config(max_retries=0, enable_circuit_breaker=False),
        )

        for _ in range(5):
            with pytest.raises(DataSourceError) as exc_info:
                await manager.fetch(vin_def(), VIN_CONTEXT)
            assert exc_info.value.code == DataSourceErrorCode.TIMEOUT

        assert spy.call_count == 5

    @pytest.mark.asyncio
    async def test_aborted_caller_leaves_breaker_usable(self, clock: FakeClock) -> None:
        """Test that an already-aborted caller does not take the half-open slot."""
        error = DataSourceError(DataSourceErrorCode.HTTP_5XX, "HTTP 503")
        spy = SpyTransport(sequence(error, error, error, {"ok": True}))
        manager = make_manager(spy, clock, config=make_config(max_retries=0))
        for _ in range(3):
            with pytest.raises(DataSourceError):
                await manager.fetch(vin_def(), VIN_CONTEXT)
        clock.advance_ms(1000)
        abort = asyncio.Event()
        abort.set()

        with pytest.raises(DataSourceError) as exc_info:
            await manager.fetch(vin_def(), VIN_CONTEXT, FetchOptions(abort_signal=abort))
        assert exc_info.value.code == DataSourceErrorCode.ABORTED
        assert manager.get_circuit_breaker("vin").state == CircuitState.OPEN

        result = await manager.fetch(vin_def(), VIN_CONTEXT)

        assert result.data == {"ok": True}
        assert spy.call_count == 4
        assert manager.get_circuit_breaker("vin").state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_cancelled_trial_frees_breaker(self, clock: FakeClock) -> None:
        """Test that cancelling the half-open request lets the next one through."""
        error = DataSourceError(DataSourceErrorCode.HTTP_5XX, "HTTP 503")
        gate = asyncio.Event()
        gate.set()
        spy = SpyTransport(sequence(error, error, error, {"ok": True}), gate=gate)
        manager = make_manager(spy, clock, config=make_config(max_retries=0))
        for _ in range(3):
            with pytest.raises(DataSourceError):
                await manager.fetch(vin_def(), VIN_CONTEXT)
        clock.advance_ms(1000)
        gate.clear()

        task = asyncio.ensure_future(manager.fetch(vin_def(), VIN_CONTEXT))
        for _ in range(3):
            await asyncio.sleep(0)
        assert spy.call_count == 4
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        for _ in range(3):
            await asyncio.sleep(0)
        gate.set()

        result = await manager.fetch(vin_def(), VIN_CONTEXT)

        assert result.data == {"ok": True}
        assert spy.call_count == 5
        assert manager.get_circuit_breaker("vin").state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_allows_single_attempt(
        self, clock: FakeClock, events: list[Any]
    ) -> None:
        """Test that the half-open request is not retried."""
        spy = SpyTransport(failing(DataSourceErrorCode.HTTP_5XX, "HTTP 503"))
        manager = make_manager(spy, clock, events, config=make_config(max_retries=3))
        for _ in range(3):
            with pytest.raises(DataSourceError):
                await manager.fetch(vin_def(), VIN_CONTEXT)
        assert spy.call_count == 12
        clock.advance_ms(1000)
        events.clear()

        with pytest.raises(DataSourceError) as exc_info:
            await manager.fetch(vin_def(), VIN_CONTEXT)

        assert exc_info.value.code == DataSourceErrorCode.HTTP_5XX
        assert spy.call_count == 13
        assert "retry" not in event_types(events)
        assert manager.get_circuit_breaker("vin").state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_half_open_single_attempt_without_dedupe(self, clock: FakeClock) -> None:
        """Test that the half-open request is not retried when coalescing is off."""
        spy = SpyTransport(failing(DataSourceErrorCode.HTTP_5XX, "HTTP 503"))
        manager = make_manager(
            spy,
            clock,
            config=make_config(max_retries=3, enable_in_flight_dedupe=False),
        )
        for _ in range(3):
            with pytest.raises(DataSourceError):
                await manager.fetch(vin_def(), VIN_CONTEXT)
        clock.advance_ms(1000)

        with pytest.raises(DataSourceError):
            await manager.fetch(vin_def(), VIN_CONTEXT)

        assert spy.call_count == 13
        assert manager.get_circuit_breaker("vin").state == CircuitState.OPEN


class VehicleInfo(BaseModel):
    make: str
    year: int


class TestResponseValidation:
    """Tests for schema validation of responses."""

    @pytest.mark.asyncio
    async def test_named_schema(self, clock: FakeClock) -> None:
        """Test that a schema referenced by name validates the payload."""
        spy = SpyTransport(lambda request: {"make": "Toyota", "year": "2020"})
        manager = make_manager(spy, clock, schemas={"vehicle": VehicleInfo})

        result = await manager.fetch(vin_def(response_schema="vehicle"), VIN_CONTEXT)

        assert result.data == VehicleInfo(make="Toyota", year=2020)

    @pytest.mark.asyncio
    async def test_bad_shape_fails_and_is_not_cached(self, clock: FakeClock) -> None:
        """Test that a mismatched payload is a VALIDATION error."""
        spy = SpyTransport(lambda request: {"make": "Toyota"})
        manager = make_manager(spy, clock)

        with pytest.raises(DataSourceError) as exc_info:
            await manager.fetch(vin_def(response_schema=VehicleInfo), VIN_CONTEXT)

        assert exc_info.value.code == DataSourceErrorCode.VALIDATION
        assert exc_info.value.details["issues"][0]["path"] == "year"
        assert manager.cache.size() == 0

    @pytest.mark.asyncio
    async def test_unknown_schema_name(self, clock: FakeClock) -> None:
        """Test that an unknown schema name is a configuration error."""
        spy = SpyTransport()
        manager = make_manager(spy, clock)

        with pytest.raises(DataSourceError) as exc_info:
            await manager.fetch(vin_def(response_schema="missing"), VIN_CONTEXT)

        assert exc_info.value.code == DataSourceErrorCode.INVALID_CONFIG
        assert spy.call_count == 0

    @pytest.mark.asyncio
    async def test_validation_disabled(self, clock: FakeClock) -> None:
        """Test that the validation flag passes payloads through."""
        spy = SpyTransport(lambda request: {"make": "Toyota"})
        manager = make_manager(
            spy, clock, config=make_config(enable_response_validation=False)
        )

        result = await manager.fetch(vin_def(response_schema=VehicleInfo), VIN_CONTEXT)

        assert result.data == {"make": "Toyota"}


class TestRegistry:
    """Tests for registered sources, mocks, chains and prefetch."""

    @pytest.mark.asyncio
    async def test_register_and_fetch_source(self, clock: FakeClock) -> None:
        """Test fetching a registered source by name."""
        spy = SpyTransport()
        manager = make_manager(spy, clock)

        names = manager.register(
            "quote", {"vin": {"kind": "http.get", "url": "/api/vin/{{fields.vin.value}}"}}
        )
        result = await manager.fetch_source("quote", "vin", VIN_CONTEXT)

        assert names == ["vin"]
        assert manager.get_source("quote", "vin").flow_id == "quote"
        assert result.data == {"ok": True}

    @pytest.mark.asyncio
    async def test_unknown_source(self, clock: FakeClock) -> None:
        """Test that unknown names raise SOURCE_NOT_FOUND."""
        manager = make_manager(SpyTransport(), clock)

        with pytest.raises(DataSourceError) as exc_info:
            await manager.fetch_source("quote", "missing")

        assert exc_info.value.code == DataSourceErrorCode.SOURCE_NOT_FOUND
        assert exc_info.value.message == 'Data source "missing" not found'

    def test_chain_with_unknown_step_rejected(self, clock: FakeClock) -> None:
        """Test that chains must reference registered steps."""
        manager = make_manager(SpyTransport(), clock)

        with pytest.raises(DataSourceError) as exc_info:
            manager.register("quote", {"all": {"kind": "chain", "steps": ["nope"]}})

        assert exc_info.value.code == DataSourceErrorCode.INVALID_CONFIG
        assert manager.get_source("quote", "all") is None

    @pytest.mark.asyncio
    async def test_mock_short_circuits(self, clock: FakeClock, events: list[Any]) -> None:
        """Test that mocks bypass the transport and events."""
        spy = SpyTransport()
        manager = make_manager(spy, clock, events)
        manager.register("quote", {"vin": {"kind": "http.get", "url": "/api/vin"}})

        manager.set_mock("quote", "vin", {"make": "Mock"})
        static = await manager.fetch_source("quote", "vin")
        manager.set_mock("quote", "vin", lambda ctx: ctx.fields["vin"]["value"])
        dynamic = await manager.fetch_source("quote", "vin", VIN_CONTEXT)
        manager.clear_mock("quote", "vin")
        real = await manager.fetch_source("quote", "vin")

        assert static.data == {"make": "Mock"}
        assert dynamic.data == "1HGCM"
        assert real.data == {"ok": True}
        assert spy.call_count == 1
        assert event_types(events) == ["request_start", "success"]

    @pytest.mark.asyncio
    async def test_computed_and_chain(self, clock: FakeClock) -> None:
        """Test computed values and sequential chains."""

        def evaluator(expression: str, context: EvalContext) -> Any:
            assert expression == "fields.a.value * 2"
            return context.fields["a"]["value"] * 2

        spy = SpyTransport()
        manager = make_manager(spy, clock, evaluator=evaluator)
        manager.register(
            "quote",
            {
                "vin": {"kind": "http.get", "url": "/api/vin"},
                "double": {"kind": "computed", "compute": "fields.a.value * 2"},
                "all": {"kind": "chain", "steps": ["vin", "double"]},
            },
        )

        result = await manager.fetch_source(
            "quote", "all", EvalContext(fields={"a": {"value": 21}})
        )

        assert result.data == [{"ok": True}, 42]
        assert result.from_cache is False

    @pytest.mark.asyncio
    async def test_computed_requires_evaluator(self, clock: FakeClock) -> None:
        """Test that computed sources fail without an evaluator."""
        manager = make_manager(SpyTransport(), clock)
        definition = load_data_source_def(
            {"kind": "computed", "name": "double", "compute": "fields.a.value * 2"}
        )

        with pytest.raises(DataSourceError) as exc_info:
            await manager.fetch(definition)

        assert exc_info.value.code == DataSourceErrorCode.INVALID_CONFIG

    @pytest.mark.asyncio
    async def test_chain_step_failure(self, clock: FakeClock) -> None:
        """Test that a failing step fails the chain with its code."""
        spy = SpyTransport(failing(DataSourceErrorCode.HTTP_4XX, "HTTP 404"))
        manager = make_manager(spy, clock)
        manager.register(
            "quote",
            {
                "vin": {"kind": "http.get", "url": "/api/vin"},
                "all": {"kind": "chain", "steps": ["vin"]},
            },
        )

        with pytest.raises(DataSourceError) as exc_info:
            await manager.fetch_source("quote", "all")

        assert exc_info.value.code == DataSourceErrorCode.HTTP_4XX
        assert exc_info.value.message.startswith('Chain step "vin" failed')
        assert exc_info.value.source_id == "all"

    @pytest.mark.asyncio
    async def test_prefetch(self, clock: FakeClock, events: list[Any]) -> None:
        """Test that prefetch collects results and errors silently."""

        def respond(request: Any) -> Any:
            if request.url.endswith("broken"):
                raise DataSourceError(DataSourceErrorCode.HTTP_4XX, "HTTP 404")
            return {"ok": True}

        manager = make_manager(SpyTransport(respond), clock, events)
        manager.register(
            "quote",
            {
                "vin": {"kind": "http.get", "url": "/api/vin"},
                "broken": {"kind": "http.get", "url": "/api/broken"},
            },
        )

        results = await manager.prefetch("quote", ["vin", "broken", "missing"])

        assert isinstance(results[0], FetchResult)
        assert results[1].code == DataSourceErrorCode.HTTP_4XX
        assert results[2].code == DataSourceErrorCode.SOURCE_NOT_FOUND
        assert events == []


class TestMappingAndCacheManagement:
    """Tests for response mapping and cache helpers."""

    @pytest.mark.asyncio
    async def test_map_response(self, clock: FakeClock) -> None:
        """Test that mapped output is built without touching the payload."""
        payload = {"make": "Toyota", "model": "Camry"}
        manager = make_manager(SpyTransport(lambda request: payload), clock)
        definition = vin_def(
            map_response={"vehicle.make": "{{data.make}}", "vehicle.label": "{{data.make}} {{data.model}}"}
        )

        result = await manager.fetch(definition, VIN_CONTEXT)

        assert result.mapped == {"vehicle": {"make": "Toyota", "label": "Toyota Camry"}}
        assert result.data == {"make": "Toyota", "model": "Camry"}

    @pytest.mark.asyncio
    async def test_invalidate_source(self, clock: FakeClock) -> None:
        """Test that invalidating a source forces a refetch."""
        spy = SpyTransport()
        manager = make_manager(spy, clock)

        await manager.fetch(vin_def(), VIN_CONTEXT)
        key = manager.cache_key_for(vin_def(), VIN_CONTEXT)
        assert manager.get_cache_info(key) is not None

        assert manager.invalidate_source("vin") == 1
        assert manager.get_cache_info(key) is None
        await manager.fetch(vin_def(), VIN_CONTEXT)

        assert spy.call_count == 2

    @pytest.mark.asyncio
    async def test_custom_cache_key(self, clock: FakeClock) -> None:
        """Test that a cache key template names the entry."""
        manager = make_manager(SpyTransport(), clock)
        definition = vin_def(cache={"key": "{{fields.vin.value}}", "ttl_ms": 60_000})

        await manager.fetch(definition, VIN_CONTEXT)

        meta = manager.get_cache_info("vin:1HGCM")
        assert meta is not None
        assert meta.ttl_ms == 60_000
        assert manager.invalidate("vin:1HGCM") is True

    @pytest.mark.asyncio
    async def test_reset(self, clock: FakeClock) -> None:
        """Test that reset clears cache, breakers and counters."""
        manager = make_manager(SpyTransport(), clock)
        await manager.fetch(vin_def(), VIN_CONTEXT)
        manager.get_circuit_breaker("vin").force_open()

        manager.reset()

        assert manager.cache.size() == 0
        assert manager.metrics.requests_total == 0
        assert manager.get_circuit_breaker("vin").state == CircuitState.CLOSED
