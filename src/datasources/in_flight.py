"""In-flight request coalescing.

Concurrent callers asking for the same (source id, signature) share one
underlying task: only the first caller starts work, and every caller observes
the same outcome. The entry is dropped as soon as the task settles so the
next call starts fresh.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel, ConfigDict

from src.datasources.errors import DataSourceError, DataSourceErrorCode


logger = structlog.get_logger()

T = TypeVar("T")


def get_in_flight_key(source_id: str, signature: str) -> str:
    """Build the registry key for a source and request signature."""
    return f"inflight:{source_id}:{signature}"


@dataclass
class InFlightEntry:
    """A pending shared task and the number of callers awaiting it."""

    task: asyncio.Task[Any]
    started_at: float = field(default_factory=time.monotonic)
    subscribers: int = 0


class InFlightStats(BaseModel):
    """Snapshot of the registry."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    count: int
    keys: list[str]
    total_subscribers: int


class InFlightRegistry:
    """Registry of shared in-progress tasks keyed by request signature.

    Relies on the event loop for atomicity: no await happens between the
    lookup and the registration of a new entry.
    """

    def __init__(self) -> None:
        """Initialize an empty registry."""
        self._entries: dict[str, InFlightEntry] = {}
        self._log = logger.bind(component="in_flight")

    def is_in_flight(self, key: str) -> bool:
        """Check whether a task is pending under a key."""
        return key in self._entries

    def keys(self) -> list[str]:
        """List the keys of pending tasks."""
        return list(self._entries)

    def get_subscribers(self, key: str) -> int:
        """Number of callers currently awaiting a key (0 when absent)."""
        entry = self._entries.get(key)
        return entry.subscribers if entry is not None else 0

    def stats(self) -> InFlightStats:
        """Get a snapshot of the registry."""
        return InFlightStats(
            count=len(self._entries),
            keys=list(self._entries),
            total_subscribers=sum(e.subscribers for e in self._entries.values()),
        )

    def _start(
        self,
        key: str,
        factory: Callable[[], Awaitable[T]],
        on_settled: Callable[[asyncio.Task[Any]], None] | None,
    ) -> InFlightEntry:
        async def _run() -> T:
            try:
                return await factory()
            finally:
                # A cancelled entry may already have been replaced
                if self._entries.get(key) is entry:
                    del self._entries[key]

        entry = InFlightEntry(task=asyncio.ensure_future(_run()))
        if on_settled is not None:
            # Runs even if the task is cancelled before its first step
            entry.task.add_done_callback(on_settled)
        self._entries[key] = entry
        self._log.debug("in_flight_started", key=key)
        return entry

    def _abandon(self, key: str, entry: InFlightEntry) -> None:
        """Cancel a task nobody awaits any more."""
        if self._entries.get(key) is entry:
            del self._entries[key]
        entry.task.cancel()
        self._log.debug("in_flight_cancelled", key=key)

    async def run_once(
        self,
        key: str,
        factory: Callable[[], Awaitable[T]],
        abort_signal: asyncio.Event | None = None,
        on_settled: Callable[[asyncio.Task[Any]], None] | None = None,
    ) -> T:
        """Run ``factory`` once per key, sharing the outcome with every caller.

        Args:
            key: Registry key (see ``get_in_flight_key``).
            factory: Zero-argument coroutine function doing the actual work.
            abort_signal: When set, stops this caller's wait with ABORTED. The
                shared task is cancelled only if no other caller awaits it.
            on_settled: Done callback attached to the shared task when this
                call starts it; ignored when joining an existing task.

        Returns:
            The shared task's result.

        Raises:
            DataSourceError: ABORTED if the caller's abort signal fires or the
                shared task is cancelled from outside (``clear``).
            Exception: Whatever the shared task raised.
        """
        if abort_signal is not None and abort_signal.is_set():
            raise DataSourceError(DataSourceErrorCode.ABORTED, "Request aborted")

        entry = self._entries.get(key)
        if entry is None:
            entry = self._start(key, factory, on_settled)
        else:
            self._log.debug("in_flight_joined", key=key, subscribers=entry.subscribers)

        entry.subscribers += 1
        try:
            if abort_signal is None:
                try:
                    return await asyncio.shield(entry.task)
                except asyncio.CancelledError:
                    if entry.task.cancelled() and not _caller_cancelling():
                        raise _cancelled_error() from None
                    raise

            abort_wait = asyncio.ensure_future(abort_signal.wait())
            try:
                await asyncio.wait(
                    {entry.task, abort_wait},
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                abort_wait.cancel()

            if entry.task.done():
                if entry.task.cancelled():
                    raise _cancelled_error()
                return entry.task.result()
            raise DataSourceError(DataSourceErrorCode.ABORTED, "Request aborted")
        finally:
            entry.subscribers -= 1
            if entry.subscribers == 0 and not entry.task.done():
                self._abandon(key, entry)

    def clear(self) -> None:
        """Cancel every pending task and empty the registry.

        Callers still waiting receive ABORTED.
        """
        entries = list(self._entries.values())
        self._entries.clear()
        for entry in entries:
            entry.task.cancel()


def _caller_cancelling() -> bool:
    """Whether the current task itself has a pending cancellation request."""
    task = asyncio.current_task()
    return task is not None and task.cancelling() > 0


def _cancelled_error() -> DataSourceError:
    return DataSourceError(
        DataSourceErrorCode.ABORTED,
        "Request cancelled before completion",
        details={"reason": "cancelled"},
    )
