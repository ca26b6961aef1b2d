"""Retry executor with exponential backoff and full jitter."""

import asyncio
import random
from collections.abc import Awaitable, Callable
from typing import Annotated, TypeVar

import structlog
from pydantic import BaseModel, ConfigDict, Field

from src.datasources.constants import (
    DEFAULT_BASE_DELAY_MS,
    DEFAULT_MAX_DELAY_MS,
    DEFAULT_MAX_RETRIES,
    MAX_RETRIES_LIMIT,
)
from src.datasources.definitions import BackoffKind, HttpGetDef, HttpPostDef
from src.datasources.errors import (
    DataSourceError,
    DataSourceErrorCode,
    classify_error,
    to_data_source_error,
)


logger = structlog.get_logger()

T = TypeVar("T")

RetryCallback = Callable[[int, int, DataSourceError], None]
SleepFunc = Callable[[float], Awaitable[None]]


class RetryPolicy(BaseModel):
    """Configuration for retry behavior.

    ``max_retries`` counts retries after the first attempt, so a policy with
    ``max_retries=3`` makes at most four attempts.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_retries: Annotated[int, Field(ge=0, le=MAX_RETRIES_LIMIT)] = DEFAULT_MAX_RETRIES
    base_delay_ms: Annotated[int, Field(ge=0, le=60000)] = DEFAULT_BASE_DELAY_MS
    max_delay_ms: Annotated[int, Field(ge=0, le=300000)] = DEFAULT_MAX_DELAY_MS
    backoff: BackoffKind = BackoffKind.EXPONENTIAL

    def should_retry(self, error: object, attempt: int) -> bool:
        """Determine if a request should be retried.

        Args:
            error: The error that occurred.
            attempt: Current attempt number (0-indexed).

        Returns:
            True if the request should be retried.
        """
        if attempt >= self.max_retries:
            return False
        return classify_error(error).retryable

    def ceiling_ms(self, attempt: int) -> float:
        """Upper bound of the delay before the retry following ``attempt``."""
        if self.backoff == BackoffKind.FIXED:
            delay = float(self.base_delay_ms)
        elif self.backoff == BackoffKind.LINEAR:
            delay = float(self.base_delay_ms * (attempt + 1))
        else:
            delay = float(self.base_delay_ms * (2**attempt))
        return min(delay, float(self.max_delay_ms))


def compute_backoff_ms(
    attempt: int,
    policy: RetryPolicy,
    rng: Callable[[], float] = random.random,
) -> int:
    """Calculate a full-jitter delay.

    The delay is uniformly drawn from ``[0, min(base * 2^attempt, max)]`` so
    concurrent clients do not retry in lockstep.

    Args:
        attempt: Current attempt number (0-indexed).
        policy: Retry policy.
        rng: Source of uniform values in ``[0, 1)``.

    Returns:
        Delay in milliseconds, never above ``max_delay_ms``.
    """
    return int(policy.ceiling_ms(attempt) * rng())


def effective_retry_policy(
    definition: HttpGetDef | HttpPostDef,
    base_policy: RetryPolicy,
) -> RetryPolicy:
    """Merge a definition's retry overrides into the environment policy.

    POSTs that are neither idempotent nor carry a dedupe key are never
    retried.
    """
    overrides = definition.retry
    policy = base_policy
    if overrides is not None:
        update: dict[str, object] = {}
        if overrides.retries is not None:
            update["max_retries"] = overrides.retries
        if overrides.base_ms is not None:
            update["base_delay_ms"] = overrides.base_ms
        if overrides.max_ms is not None:
            update["max_delay_ms"] = overrides.max_ms
        if overrides.backoff is not None:
            update["backoff"] = overrides.backoff
        policy = RetryPolicy.model_validate({**base_policy.model_dump(), **update})

    if not definition.retry_safe:
        policy = policy.model_copy(update={"max_retries": 0})
    return policy


async def _wait_or_abort(
    delay_ms: int,
    abort_signal: asyncio.Event | None,
    sleep: SleepFunc,
) -> None:
    if abort_signal is None:
        await sleep(delay_ms / 1000)
        return

    sleeper = asyncio.ensure_future(sleep(delay_ms / 1000))
    aborter = asyncio.ensure_future(abort_signal.wait())
    try:
        await asyncio.wait({sleeper, aborter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        sleeper.cancel()
        aborter.cancel()
    if abort_signal.is_set():
        raise DataSourceError(
            DataSourceErrorCode.ABORTED,
            "Request aborted during retry backoff",
        )


async def execute_with_retry(
    attempt_fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    on_retry: RetryCallback | None = None,
    abort_signal: asyncio.Event | None = None,
    source_id: str | None = None,
    sleep: SleepFunc = asyncio.sleep,
    rng: Callable[[], float] = random.random,
) -> T:
    """Run an attempt, retrying transient failures.

    Args:
        attempt_fn: Zero-argument coroutine function making one attempt.
        policy: Retry policy.
        on_retry: Called with ``(attempt, delay_ms, error)`` before each wait;
            ``attempt`` is the 1-based number of the retry about to happen.
        abort_signal: Cancels a pending backoff wait with ABORTED.
        source_id: Attached to normalized errors.
        sleep: Awaitable sleep, injectable for tests.
        rng: Jitter source.

    Returns:
        The first successful attempt's result.

    Raises:
        DataSourceError: The last attempt's error, normalized, or ABORTED.
    """
    log = logger.bind(component="retry", source_id=source_id)
    attempt = 0
    while True:
        if abort_signal is not None and abort_signal.is_set():
            raise DataSourceError(
                DataSourceErrorCode.ABORTED, "Request aborted", source_id=source_id
            )
        try:
            return await attempt_fn()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = to_data_source_error(e, source_id)
            if not policy.should_retry(error, attempt):
                if error.retryable:
                    log.warning(
                        "retry_exhausted",
                        attempts=attempt + 1,
                        code=error.code.value,
                    )
                if error is e:
                    raise
                raise error from e

            delay_ms = compute_backoff_ms(attempt, policy, rng)
            attempt += 1
            log.info(
                "retry_scheduled",
                attempt=attempt,
                delay_ms=delay_ms,
                code=error.code.value,
            )
            if on_retry is not None:
                on_retry(attempt, delay_ms, error)
            await _wait_or_abort(delay_ms, abort_signal, sleep)
