"""LRU cache with per-entry TTL for data source responses.

Entries are keyed by a canonical request signature. Expired entries are
treated as misses and evicted lazily on read.
"""

import hashlib
import json
import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

import structlog

from src.datasources.constants import DEFAULT_CACHE_MAX_ENTRIES
from src.datasources.models import CacheMeta


logger = structlog.get_logger()


@dataclass
class CacheEntry:
    """A cached value with its bookkeeping."""

    value: Any
    meta: CacheMeta


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def _select(mapping: Mapping[str, Any], key_fields: Iterable[str] | None) -> dict[str, Any]:
    if key_fields is None:
        return dict(mapping)
    wanted = {f.lower() for f in key_fields}
    return {k: v for k, v in mapping.items() if k.lower() in wanted}


def compute_signature(
    url: str,
    method: str,
    headers: Mapping[str, str] | None = None,
    body: Any = None,
    key_fields: Iterable[str] | None = None,
) -> str:
    """Compute an order-independent signature for a resolved request.

    Header names are case-folded and both headers and body are serialized
    with sorted keys, so logically identical requests always collide.

    Args:
        url: Resolved URL.
        method: HTTP method.
        headers: Resolved request headers.
        body: Resolved request body.
        key_fields: Header/body keys that participate; all when None.

    Returns:
        Hex SHA-256 digest (first 32 characters).
    """
    normalized_headers = {k.lower(): v for k, v in (headers or {}).items()}
    selected_body = (
        _select(body, key_fields) if isinstance(body, Mapping) else body
    )
    parts = [
        f"method:{method.upper()}",
        f"url:{url}",
        f"headers:{_canonical(_select(normalized_headers, key_fields))}",
        f"body:{_canonical(selected_body)}",
    ]
    content = "\n".join(parts)
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:32]


def build_cache_key(source_id: str, signature: str) -> str:
    """Build the cache key for a source and request signature."""
    return f"{source_id}:{signature}"


class DataSourceCache:
    """LRU cache with independent per-entry TTL.

    Thread-safe so a single instance can be shared by hosts that run the
    manager on several threads.
    """

    def __init__(
        self,
        max_entries: int = DEFAULT_CACHE_MAX_ENTRIES,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the cache.

        Args:
            max_entries: Maximum number of entries before LRU eviction.
            clock: Time source in seconds.
        """
        if max_entries < 1:
            msg = f"max_entries must be >= 1, got {max_entries}"
            raise ValueError(msg)
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._max_entries = max_entries
        self._clock = clock
        self._lock = threading.Lock()
        self._log = logger.bind(component="cache")

    @property
    def max_entries(self) -> int:
        """Maximum number of entries."""
        return self._max_entries

    def _live_entry(self, key: str) -> CacheEntry | None:
        """Return the entry if present and unexpired. Caller holds the lock."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.meta.expires_at:
            del self._entries[key]
            self._log.debug("cache_expired", key=key)
            return None
        return entry

    def get(self, key: str) -> CacheEntry | None:
        """Get an entry, counting the hit and refreshing its LRU position.

        Args:
            key: Cache key.

        Returns:
            The entry, or None if absent or expired.
        """
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return None
            entry.meta = entry.meta.model_copy(
                update={"hit_count": entry.meta.hit_count + 1}
            )
            self._entries.move_to_end(key)
            return entry

    def set(self, key: str, value: Any, ttl_ms: int) -> CacheMeta:
        """Store a value.

        Args:
            key: Cache key.
            value: Value to store.
            ttl_ms: Lifetime in milliseconds.

        Returns:
            Metadata of the stored entry.
        """
        now = self._clock()
        meta = CacheMeta(key=key, stored_at=now, expires_at=now + ttl_ms / 1000)
        with self._lock:
            if key in self._entries:
                del self._entries[key]
            while len(self._entries) >= self._max_entries:
                evicted, _ = self._entries.popitem(last=False)
                self._log.debug("cache_evicted", key=evicted)
            self._entries[key] = CacheEntry(value=value, meta=meta)
        return meta

    def invalidate(self, key: str) -> bool:
        """Remove an entry.

        Returns:
            True if an entry was removed.
        """
        with self._lock:
            return self._entries.pop(key, None) is not None

    def invalidate_prefix(self, prefix: str) -> int:
        """Remove every entry whose key starts with a prefix (e.g. a source id).

        Returns:
            Number of entries removed.
        """
        with self._lock:
            doomed = [k for k in self._entries if k.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def has(self, key: str) -> bool:
        """Check if a key is present and unexpired (does not count a hit)."""
        with self._lock:
            return self._live_entry(key) is not None

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.has(key)

    def get_meta(self, key: str) -> CacheMeta | None:
        """Get entry metadata without counting a hit."""
        with self._lock:
            entry = self._live_entry(key)
            return entry.meta if entry else None

    def clear(self) -> None:
        """Remove all entries."""
        with self._lock:
            self._entries.clear()

    def size(self) -> int:
        """Number of stored entries (including not-yet-evicted expired ones)."""
        with self._lock:
            return len(self._entries)

    def __len__(self) -> int:
        return self.size()

    def keys(self) -> list[str]:
        """Keys in LRU order, least recently used first."""
        with self._lock:
            return list(self._entries.keys())

    def clean_expired(self) -> int:
        """Evict all expired entries.

        Returns:
            Number of entries removed.
        """
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if now >= e.meta.expires_at]
            for key in expired:
                del self._entries[key]
        return len(expired)
