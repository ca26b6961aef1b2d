"""Data source manager.

Orchestrates a single fetch in a fixed order:

1. Privacy check (fails before any URL is resolved)
2. Template resolution and URL validation
3. Cache lookup
4. Abort check, in-flight coalescing, then circuit breaker
5. Transport call with retry
6. Response validation, cache store, breaker update
7. Lifecycle events and result envelope

Every failure leaving ``fetch`` is a ``DataSourceError``.
"""

import asyncio
import inspect
import random
import time
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import replace
from typing import Any

import structlog
from pydantic import BaseModel

from src.datasources.cache import DataSourceCache, build_cache_key, compute_signature
from src.datasources.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from src.datasources.config import DataSourceConfig, get_data_source_config
from src.datasources.definitions import (
    ChainDef,
    ComputedDef,
    HttpGetDef,
    HttpPostDef,
    load_data_source_def,
)
from src.datasources.errors import (
    DEGRADATION_CODES,
    DataSourceError,
    DataSourceErrorCode,
    to_data_source_error,
)
from src.datasources.events import (
    CacheHitEvent,
    CircuitOpenEvent,
    ErrorEvent,
    EventEmitter,
    EventHandler,
    RequestStartEvent,
    RetryEvent,
    SuccessEvent,
)
from src.datasources.in_flight import InFlightRegistry, InFlightStats, get_in_flight_key
from src.datasources.metrics import DataSourceMetrics
from src.datasources.models import (
    CacheMeta,
    CircuitState,
    EvalContext,
    FetchOptions,
    FetchResult,
)
from src.datasources.privacy import (
    PrivacyPolicy,
    allowlist_headers,
    check_payload_size,
    check_privacy_violations,
    mask_for_logs,
    sensitive_keys_for,
)
from src.datasources.redact import redact_headers, redact_url_credentials
from src.datasources.response_validator import validate_response
from src.datasources.retry import effective_retry_policy, execute_with_retry
from src.datasources.template import (
    ExpressionEvaluator,
    apply_map_response,
    resolve_template,
    resolve_value,
)
from src.datasources.transport import (
    HttpxTransport,
    Transport,
    TransportRequest,
)
from src.datasources.url_validator import validate_url
from src.observability import trace_context
from src.settings import get_settings


logger = structlog.get_logger()

AnyDef = HttpGetDef | HttpPostDef | ComputedDef | ChainDef
MockValue = Any
Emit = Callable[[Any], None]


def _mock_key(flow_id: str | None, name: str) -> str:
    return f"{flow_id}:{name}"


def _silence(_event: Any) -> None:
    return None


class DataSourceManager:
    """Resilient, declarative data fetching for forms.

    One instance owns its cache, circuit breakers, in-flight registry and
    metrics. Construct it once per application and pass it by reference.
    """

    def __init__(
        self,
        transport: Transport | None = None,
        *,
        config: DataSourceConfig | None = None,
        cache: DataSourceCache | None = None,
        evaluator: ExpressionEvaluator | None = None,
        schemas: Mapping[str, Any] | None = None,
        privacy_policy: PrivacyPolicy | None = None,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        """Initialize the manager.

        Args:
            transport: Network transport; an ``HttpxTransport`` using
                ``DATASOURCES_BASE_URL`` is built when omitted.
            config: Policy bundle; read from the environment when omitted.
            cache: Cache instance; sized from the cache policy when omitted.
            evaluator: Expression evaluator for non-path template expressions
                and computed sources.
            schemas: Named response schemas referenced by definitions.
            privacy_policy: Privacy policy (consent key, header allowlist).
            clock: Time source in seconds for cache and breakers.
            sleep: Awaitable sleep used for retry backoff.
            rng: Jitter source for retry backoff.
        """
        self._config = config or get_data_source_config()
        self._clock = clock or time.time
        self._transport: Transport = transport or HttpxTransport(
            base_url=get_settings().base_url
        )
        self._cache = cache or DataSourceCache(
            max_entries=self._config.cache_policy.max_entries,
            clock=self._clock,
        )
        self._evaluator = evaluator
        self._schemas: dict[str, Any] = dict(schemas or {})
        self._privacy_policy = privacy_policy or PrivacyPolicy()
        self._sleep = sleep
        self._rng = rng
        self._events = EventEmitter()
        self._metrics = DataSourceMetrics()
        self._in_flight = InFlightRegistry()
        self._breakers = CircuitBreakerRegistry(
            self._config.circuit_breaker,
            clock=self._clock,
            on_state_change=self._on_circuit_change,
        )
        self._sources: dict[str, dict[str, AnyDef]] = {}
        self._mocks: dict[str, MockValue] = {}
        self._log = logger.bind(component="datasource_manager", env=self._config.env.value)

    # ===== Accessors =====

    @property
    def config(self) -> DataSourceConfig:
        """Active policy bundle."""
        return self._config

    @property
    def metrics(self) -> DataSourceMetrics:
        """Per-instance counters."""
        return self._metrics

    @property
    def cache(self) -> DataSourceCache:
        """The manager's cache."""
        return self._cache

    def in_flight_stats(self) -> InFlightStats:
        """Snapshot of pending shared requests."""
        return self._in_flight.stats()

    def get_circuit_breaker(self, source_id: str) -> CircuitBreaker:
        """Get (creating if absent) the breaker for a source."""
        return self._breakers.get(source_id)

    def on_event(self, handler: EventHandler) -> Callable[[], None]:
        """Subscribe to lifecycle events.

        Returns:
            Function that removes the subscription.
        """
        return self._events.on_event(handler)

    # ===== Registration and mocks =====

    def register(
        self,
        flow_id: str,
        sources: Mapping[str, Mapping[str, Any] | BaseModel],
    ) -> list[str]:
        """Validate and store the data sources of a flow.

        Args:
            flow_id: Flow identifier.
            sources: Source name -> raw definition.

        Returns:
            Names of the registered sources.

        Raises:
            DataSourceError: INVALID_CONFIG if any definition is malformed or
                a chain references an unknown step.
        """
        loaded = {
            name: load_data_source_def(raw, name=name, flow_id=flow_id)
            for name, raw in sources.items()
        }
        for definition in loaded.values():
            if isinstance(definition, ChainDef):
                missing = [s for s in definition.steps if s not in loaded]
                if missing:
                    raise DataSourceError(
                        DataSourceErrorCode.INVALID_CONFIG,
                        f"Chain '{definition.name}' references unknown steps: "
                        f"{', '.join(missing)}",
                        details={"missing_steps": missing},
                        source_id=definition.name,
                    )

        self._sources.setdefault(flow_id, {}).update(loaded)
        self._log.info("sources_registered", flow_id=flow_id, count=len(loaded))
        return list(loaded)

    def get_source(self, flow_id: str, name: str) -> AnyDef | None:
        """Look up a registered definition."""
        return self._sources.get(flow_id, {}).get(name)

    def set_mock(self, flow_id: str, name: str, data: MockValue) -> None:
        """Short-circuit a source with static data or ``callable(ctx)``."""
        self._mocks[_mock_key(flow_id, name)] = data

    def clear_mock(self, flow_id: str, name: str) -> None:
        """Remove a mock."""
        self._mocks.pop(_mock_key(flow_id, name), None)

    # ===== Cache management =====

    def invalidate(self, key: str) -> bool:
        """Drop one cache entry by key."""
        return self._cache.invalidate(key)

    def invalidate_source(self, source_id: str) -> int:
        """Drop every cache entry of a source."""
        return self._cache.invalidate_prefix(f"{source_id}:")

    def get_cache_info(self, key: str) -> CacheMeta | None:
        """Get cache bookkeeping for a key."""
        return self._cache.get_meta(key)

    def cache_key_for(self, definition: AnyDef, context: EvalContext) -> str:
        """Compute the cache key an HTTP definition resolves to."""
        if not isinstance(definition, HttpGetDef | HttpPostDef):
            msg = f"Source '{definition.name}' has no request cache key"
            raise DataSourceError(DataSourceErrorCode.INVALID_CONFIG, msg)
        request = self._build_request(definition, context, FetchOptions())
        return self._cache_key(definition, context, request)[0]

    # ===== Fetching =====

    async def fetch_source(
        self,
        flow_id: str,
        name: str,
        context: EvalContext | None = None,
        options: FetchOptions | None = None,
    ) -> FetchResult:
        """Fetch a registered source by flow and name.

        Raises:
            DataSourceError: SOURCE_NOT_FOUND for unknown names, or any
                error raised by ``fetch``.
        """
        definition = self.get_source(flow_id, name)
        if definition is None:
            error = DataSourceError(
                DataSourceErrorCode.SOURCE_NOT_FOUND,
                f'Data source "{name}" not found',
                details={"flow_id": flow_id},
                source_id=name,
            )
            self._metrics.record_failure(error.code)
            raise error
        return await self.fetch(definition, context, options)

    async def prefetch(
        self,
        flow_id: str,
        names: Iterable[str],
        context: EvalContext | None = None,
        options: FetchOptions | None = None,
    ) -> list[FetchResult | DataSourceError]:
        """Fetch several sources concurrently without emitting events.

        Returns:
            One result or error per name, in order.
        """
        silent = replace(options or FetchOptions(), silent=True)
        outcomes = await asyncio.gather(
            *(self.fetch_source(flow_id, name, context, silent) for name in names),
            return_exceptions=True,
        )
        results: list[FetchResult | DataSourceError] = []
        for outcome in outcomes:
            if isinstance(outcome, FetchResult | DataSourceError):
                results.append(outcome)
            else:
                raise outcome
        return results

    def apply_map_response(
        self,
        mapping: Mapping[str, str],
        context: EvalContext,
        data: Any,
    ) -> dict[str, Any]:
        """Map a payload into a new dictionary; inputs are never mutated."""
        return apply_map_response(mapping, context, data, self._evaluator)

    async def fetch(
        self,
        definition: AnyDef,
        context: EvalContext | None = None,
        options: FetchOptions | None = None,
    ) -> FetchResult:
        """Fetch a data source.

        Args:
            definition: Validated definition.
            context: Read-only evaluation context.
            options: Per-call overrides.

        Returns:
            Success envelope.

        Raises:
            DataSourceError: On any failure, after emitting an ``error`` event.
        """
        context = context or EvalContext()
        options = options or FetchOptions()
        source_id = definition.name
        emit: Emit = _silence if options.silent else self._events.emit
        start = time.perf_counter()

        mock_key = _mock_key(definition.flow_id, source_id)
        if mock_key in self._mocks:
            return await self._fetch_mock(mock_key, context, start)

        self._metrics.record_request()
        with trace_context(options.trace_id):
            emit(
                RequestStartEvent(
                    source_id=source_id,
                    method=getattr(definition, "method", None),
                    url=redact_url_credentials(definition.url)
                    if isinstance(definition, HttpGetDef | HttpPostDef)
                    else None,
                )
            )
            try:
                result = await self._dispatch(definition, context, options, emit, start)
            except asyncio.CancelledError:
                self._log.info("fetch_cancelled", source_id=source_id)
                raise
            except Exception as e:
                error = to_data_source_error(e, source_id)
                self._fail(error, emit, start)
                if error is e:
                    raise
                raise error from e

            self._metrics.record_success(result.duration_ms)
            emit(
                SuccessEvent(
                    source_id=source_id,
                    duration_ms=result.duration_ms,
                    from_cache=result.from_cache,
                )
            )
            self._log.info(
                "fetch_complete",
                source_id=source_id,
                from_cache=result.from_cache,
                duration_ms=round(result.duration_ms, 2),
            )
            return result

    async def _fetch_mock(
        self,
        mock_key: str,
        context: EvalContext,
        start: float,
    ) -> FetchResult:
        mock = self._mocks[mock_key]
        data = mock(context) if callable(mock) else mock
        if inspect.isawaitable(data):
            data = await data
        self._log.debug("mock_served", key=mock_key)
        return FetchResult(data=data, duration_ms=_elapsed_ms(start))

    async def _dispatch(
        self,
        definition: AnyDef,
        context: EvalContext,
        options: FetchOptions,
        emit: Emit,
        start: float,
    ) -> FetchResult:
        violations = check_privacy_violations(definition, context, self._privacy_policy)
        if violations:
            raise DataSourceError(
                DataSourceErrorCode.PRIVACY_BLOCKED,
                f"Privacy policy blocked source '{definition.name}'",
                details={"violations": [v.model_dump() for v in violations]},
                source_id=definition.name,
            )

        cache_meta: CacheMeta | None = None
        from_cache = False
        if isinstance(definition, ComputedDef):
            data = self._compute(definition, context)
        elif isinstance(definition, ChainDef):
            data = await self._run_chain(definition, context, options)
        else:
            data, cache_meta, from_cache = await self._fetch_http(
                definition, context, options, emit
            )

        mapped = None
        if definition.map_response:
            mapped = apply_map_response(
                definition.map_response, context, data, self._evaluator
            )

        return FetchResult(
            data=data,
            from_cache=from_cache,
            cache_meta=cache_meta,
            duration_ms=_elapsed_ms(start),
            mapped=mapped,
        )

    def _fail(self, error: DataSourceError, emit: Emit, start: float) -> None:
        duration_ms = _elapsed_ms(start)
        self._metrics.record_failure(error.code)
        emit(
            ErrorEvent(
                source_id=error.source_id or "",
                code=error.code.value,
                message=error.message,
                retryable=error.retryable,
                duration_ms=duration_ms,
                details=error.details,
            )
        )
        self._log.warning(
            "fetch_failed",
            source_id=error.source_id,
            code=error.code.value,
            error=error.message,
            duration_ms=round(duration_ms, 2),
        )

    # ===== Kinds =====

    def _compute(self, definition: ComputedDef, context: EvalContext) -> Any:
        if self._evaluator is None:
            raise DataSourceError(
                DataSourceErrorCode.INVALID_CONFIG,
                "Computed sources require an expression evaluator",
                source_id=definition.name,
            )
        return self._evaluator(definition.compute, context)

    async def _run_chain(
        self,
        definition: ChainDef,
        context: EvalContext,
        options: FetchOptions,
    ) -> list[Any]:
        if definition.flow_id is None:
            raise DataSourceError(
                DataSourceErrorCode.INVALID_CONFIG,
                f"Chain '{definition.name}' must be registered with a flow",
                source_id=definition.name,
            )
        results: list[Any] = []
        for step in definition.steps:
            try:
                result = await self.fetch_source(definition.flow_id, step, context, options)
            except DataSourceError as e:
                raise DataSourceError(
                    e.code,
                    f'Chain step "{step}" failed: {e.message}',
                    details={"step": step, **e.details},
                    source_id=definition.name,
                ) from e
            results.append(result.data)
        return results

    # ===== HTTP =====

    def _resolve_schema(self, definition: HttpGetDef | HttpPostDef) -> Any:
        schema = definition.response_schema
        if not isinstance(schema, str):
            return schema
        if schema not in self._schemas:
            raise DataSourceError(
                DataSourceErrorCode.INVALID_CONFIG,
                f"Unknown response schema '{schema}'",
                source_id=definition.name,
            )
        return self._schemas[schema]

    def _build_request(
        self,
        definition: HttpGetDef | HttpPostDef,
        context: EvalContext,
        options: FetchOptions,
    ) -> TransportRequest:
        url = resolve_template(definition.url, context, evaluator=self._evaluator)
        validate_url(url, self._config.url_policy)

        raw_headers: dict[str, str] = {}
        for key, value in {**definition.headers, **options.extra_headers}.items():
            raw_headers[key] = resolve_template(value, context, evaluator=self._evaluator)
        headers = allowlist_headers(raw_headers, self._privacy_policy.allowed_headers)

        body = None
        if isinstance(definition, HttpPostDef):
            headers.setdefault("Content-Type", "application/json")
            body = resolve_value(definition.body, context, evaluator=self._evaluator)
            size = check_payload_size(body, self._privacy_policy.max_payload_kb)
            if not size.ok:
                raise DataSourceError(
                    DataSourceErrorCode.PRIVACY_BLOCKED,
                    f"Request payload of {size.size_kb:.1f}KB exceeds "
                    f"{self._privacy_policy.max_payload_kb}KB",
                    details={"size_kb": size.size_kb},
                    source_id=definition.name,
                )
            if definition.dedupe_key:
                headers["Idempotency-Key"] = resolve_template(
                    definition.dedupe_key, context, evaluator=self._evaluator
                )

        return TransportRequest(
            url=url,
            method=definition.method,
            headers=headers,
            body=body,
            timeout_ms=definition.timeout_ms,
        )

    def _cache_key(
        self,
        definition: HttpGetDef | HttpPostDef,
        context: EvalContext,
        request: TransportRequest,
    ) -> tuple[str, str]:
        """Return ``(cache_key, signature)`` for a resolved request."""
        cache_config = definition.cache_config
        signature = compute_signature(
            request.url,
            request.method,
            request.headers,
            request.body,
            cache_config.key_fields,
        )
        if cache_config.key:
            custom = resolve_template(cache_config.key, context, evaluator=self._evaluator)
            return build_cache_key(definition.name, custom), signature
        return build_cache_key(definition.name, signature), signature

    async def _fetch_http(
        self,
        definition: HttpGetDef | HttpPostDef,
        context: EvalContext,
        options: FetchOptions,
        emit: Emit,
    ) -> tuple[Any, CacheMeta | None, bool]:
        source_id = definition.name
        flags = self._config.feature_flags
        schema = self._resolve_schema(definition)
        request = self._build_request(definition, context, options)
        cache_key, signature = self._cache_key(definition, context, request)

        if definition.cache_enabled and not options.force_refresh:
            entry = self._cache.get(cache_key)
            if entry is not None:
                self._metrics.record_cache_hit()
                emit(
                    CacheHitEvent(
                        source_id=source_id,
                        key=cache_key,
                        hit_count=entry.meta.hit_count,
                    )
                )
                self._log.debug("cache_hit", source_id=source_id, key=cache_key)
                return entry.value, entry.meta, True

        if options.trace_id:
            request = request.model_copy(
                update={"headers": {**request.headers, "X-Trace-Id": options.trace_id}}
            )

        self._log.debug(
            "fetch_request",
            source_id=source_id,
            method=request.method,
            url=redact_url_credentials(request.url),
            headers=redact_headers(request.headers),
            body=mask_for_logs(request.body, sensitive_keys_for(definition)),
        )

        if options.abort_signal is not None and options.abort_signal.is_set():
            raise DataSourceError(
                DataSourceErrorCode.ABORTED, "Request aborted", source_id=source_id
            )

        breaker = self._breakers.get(source_id) if flags.enable_circuit_breaker else None
        in_flight_key = get_in_flight_key(source_id, signature)

        if not flags.enable_in_flight_dedupe:
            single_attempt = self._check_breaker(breaker, source_id)
            try:
                data, meta = await self._execute(
                    definition,
                    request,
                    schema,
                    cache_key,
                    emit,
                    single_attempt=single_attempt,
                    abort_signal=options.abort_signal,
                )
            except BaseException as e:
                _record_outcome(breaker, e)
                raise
            _record_outcome(breaker, None)
            return data, meta, False

        on_settled: Callable[[asyncio.Task[Any]], None] | None = None
        single_attempt = False
        if self._in_flight.is_in_flight(in_flight_key):
            self._metrics.record_coalesced()
            self._log.debug("in_flight_coalesced", source_id=source_id)
        else:
            single_attempt = self._check_breaker(breaker, source_id)
            if breaker is not None:
                on_settled = _settle_callback(breaker)

        def factory() -> Awaitable[tuple[Any, CacheMeta | None]]:
            return self._execute(
                definition,
                request,
                schema,
                cache_key,
                emit,
                single_attempt=single_attempt,
            )

        data, meta = await self._in_flight.run_once(
            in_flight_key, factory, options.abort_signal, on_settled
        )
        return data, meta, False

    def _check_breaker(self, breaker: CircuitBreaker | None, source_id: str) -> bool:
        """Admit a request through the breaker.

        Returns:
            True when the request is the single half-open trial, which gets
            one attempt and no retries.

        Raises:
            DataSourceError: CB_OPEN when the breaker refuses the request.
        """
        if breaker is None:
            return False
        if breaker.can_attempt():
            return breaker.state == CircuitState.HALF_OPEN
        snapshot = breaker.snapshot()
        raise DataSourceError(
            DataSourceErrorCode.CB_OPEN,
            f"Circuit breaker is open for '{source_id}'",
            details={
                "next_retry_at": snapshot.next_retry_at,
                "failure_count": snapshot.failure_count,
            },
            source_id=source_id,
        )

    async def _execute(
        self,
        definition: HttpGetDef | HttpPostDef,
        request: TransportRequest,
        schema: Any,
        cache_key: str,
        emit: Emit,
        *,
        single_attempt: bool = False,
        abort_signal: asyncio.Event | None = None,
    ) -> tuple[Any, CacheMeta | None]:
        """Run the network work for one signature.

        The breaker outcome is recorded by the caller, so a task cancelled
        before it ever runs still frees its half-open slot.
        """
        source_id = definition.name
        flags = self._config.feature_flags
        policy = effective_retry_policy(definition, self._config.retry_policy)
        if single_attempt or not flags.enable_retry:
            policy = policy.model_copy(update={"max_retries": 0})

        def on_retry(attempt: int, delay_ms: int, error: DataSourceError) -> None:
            self._metrics.record_retry()
            emit(
                RetryEvent(
                    source_id=source_id,
                    attempt=attempt,
                    delay_ms=delay_ms,
                    code=error.code.value,
                )
            )

        async def attempt() -> Any:
            self._metrics.record_transport_call()
            response = await self._transport(request)
            return response.data

        data = await execute_with_retry(
            attempt,
            policy,
            on_retry=on_retry,
            abort_signal=abort_signal,
            source_id=source_id,
            sleep=self._sleep,
            rng=self._rng,
        )
        if schema is not None and flags.enable_response_validation:
            data = validate_response(data, schema, source_id)

        meta = None
        if definition.cache_enabled:
            ttl_ms = self._config.cache_policy.clamp_ttl(definition.cache_config.ttl_ms)
            meta = self._cache.set(cache_key, data, ttl_ms)
        return data, meta

    def _on_circuit_change(
        self,
        source_id: str,
        from_state: CircuitState,
        to_state: CircuitState,
    ) -> None:
        if to_state != CircuitState.OPEN:
            return
        self._metrics.record_circuit_open()
        snapshot = self._breakers.get(source_id).snapshot()
        self._events.emit(
            CircuitOpenEvent(
                source_id=source_id,
                next_retry_at=snapshot.next_retry_at,
                failure_count=snapshot.failure_count,
            )
        )
        self._log.warning(
            "circuit_opened",
            source_id=source_id,
            from_state=from_state.value,
            next_retry_at=snapshot.next_retry_at,
        )

    # ===== Lifecycle =====

    def reset(self) -> None:
        """Drop cached data, breaker state, pending requests and counters."""
        self._cache.clear()
        self._breakers.reset_all()
        self._in_flight.clear()
        self._metrics.reset()

    async def aclose(self) -> None:
        """Release transport resources."""
        self._in_flight.clear()
        close = getattr(self._transport, "aclose", None)
        if close is not None:
            await close()


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000


def _record_outcome(breaker: CircuitBreaker | None, error: BaseException | None) -> None:
    """Feed a finished request into its breaker.

    Only degradation codes count as failures. Cancellation and other errors
    say nothing about service health and just free a half-open slot.
    """
    if breaker is None:
        return
    if error is None:
        breaker.record_success()
    elif isinstance(error, DataSourceError) and error.code in DEGRADATION_CODES:
        breaker.record_failure()
    else:
        breaker.release()


def _settle_callback(breaker: CircuitBreaker) -> Callable[[asyncio.Task[Any]], None]:
    def settle(task: asyncio.Task[Any]) -> None:
        if task.cancelled():
            breaker.release()
        else:
            _record_outcome(breaker, task.exception())

    return settle
