"""TTL + size-bounded cache for remote responses and downloaded assets.

Entries expire ``ttl`` seconds after they were stored; an expired entry is
dropped the next time it is read (or by ``purge_expired``). When a ``set``
pushes the total size over ``max_size_bytes`` the oldest entries are evicted
until the total is back under 80% of the limit, so a burst of writes does not
trigger an eviction pass on every call.

Values are either ``bytes`` (sized by length) or anything JSON-serialisable
(sized by its UTF-8 JSON encoding). With a ``DurableStore`` attached, every
mutation is written through: each entry under its own key (raw bytes or
JSON) plus a small index of entry metadata, so a write touches only the
entries it changed. ``load()`` restores them.
"""

from __future__ import annotations

import json
import time
from collections.abc import Callable, Iterable
from typing import Any

import structlog
from pydantic import ValidationError

from genflow.errors import CacheEntryTooLargeError, PersistenceError
from genflow.models.contracts import CacheEntry, CacheIndex, CacheRecord, CacheStats
from genflow.storage import DurableStore

logger = structlog.get_logger()

EVICTION_TARGET_RATIO = 0.8
INDEX_KEY = "cache/index"
ENTRY_KEY_PREFIX = "cache/entry/"

_MISSING = object()


def entry_store_key(key: str) -> str:
    return ENTRY_KEY_PREFIX + key


def _measure(value: Any) -> tuple[int, str]:
    if isinstance(value, (bytes, bytearray)):
        return len(value), "bytes"
    try:
        encoded = json.dumps(value, separators=(",", ":"))
    except TypeError as exc:
        raise TypeError(f"Cache values must be bytes or JSON-serialisable: {exc}") from exc
    return len(encoded.encode()), "json"


def _encode(entry: CacheEntry) -> bytes:
    if entry.encoding == "bytes":
        return entry.payload
    return json.dumps(entry.payload, separators=(",", ":")).encode()


def api_cache_key(endpoint: str, params: dict[str, Any] | None = None) -> str:
    """``endpoint?a=1&b=2`` with parameters sorted so argument order never matters."""
    query = "&".join(f"{k}={v}" for k, v in sorted((params or {}).items()))
    return f"{endpoint}?{query}"


def format_bytes(size: int) -> str:
    if size == 0:
        return "0 B"
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.2f} {unit}" if unit != "B" else f"{int(value)} B"
        value /= 1024
    return f"{size} B"


class BoundedCache:
    def __init__(
        self,
        max_size_bytes: int,
        default_ttl: float,
        *,
        store: DurableStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_size_bytes <= 0:
            raise ValueError("max_size_bytes must be positive")
        self.max_size_bytes = max_size_bytes
        self.default_ttl = default_ttl
        self._store = store
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._total_size = 0
        self._hits = 0
        self._misses = 0
        self._last_cleanup: float | None = None

    # --- Core operations ---

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return default
        if entry.is_expired(self._clock()):
            self._remove(key)
            self._misses += 1
            logger.debug("cache_expired", key=key)
            self._persist(dropped=[key])
            return default
        self._hits += 1
        return entry.payload

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        size, encoding = _measure(value)
        if size > self.max_size_bytes:
            raise CacheEntryTooLargeError(key, size, self.max_size_bytes)

        self._remove(key)
        self._entries[key] = CacheEntry(
            key=key,
            payload=bytes(value) if encoding == "bytes" else value,
            encoding=encoding,  # type: ignore[arg-type]
            stored_at=self._clock(),
            ttl=self.default_ttl if ttl is None else ttl,
            size_bytes=size,
        )
        self._total_size += size
        logger.debug("cache_set", key=key, size=format_bytes(size))

        evicted: list[str] = []
        if self._total_size > self.max_size_bytes:
            evicted = self._evict(keep=key)
        self._persist(written=key, dropped=evicted)

    def delete(self, key: str) -> bool:
        if self._remove(key) is None:
            return False
        self._persist(dropped=[key])
        return True

    def clear(self) -> None:
        dropped = list(self._entries)
        self._entries.clear()
        self._total_size = 0
        self._hits = 0
        self._misses = 0
        logger.info("cache_cleared", count=len(dropped))
        self._persist(dropped=dropped)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = self._expired_keys(now)
        freed = sum(self._entries[key].size_bytes for key in expired)
        for key in expired:
            self._remove(key)
        self._last_cleanup = now
        if expired:
            logger.info("cache_purged_expired", count=len(expired), freed=format_bytes(freed))
            self._persist(dropped=expired)
        return len(expired)

    # --- API response helpers ---

    def cache_api_response(
        self,
        endpoint: str,
        params: dict[str, Any] | None,
        data: Any,
        ttl: float | None = None,
    ) -> None:
        self.set(api_cache_key(endpoint, params), data, ttl)

    def get_cached_api_response(self, endpoint: str, params: dict[str, Any] | None = None) -> Any:
        return self.get(api_cache_key(endpoint, params))

    # --- Observability ---

    @property
    def total_size(self) -> int:
        return self._total_size

    @property
    def hit_rate(self) -> float:
        requests = self._hits + self._misses
        return self._hits / requests if requests else 0.0

    def stats(self) -> CacheStats:
        return CacheStats(
            hits=self._hits,
            misses=self._misses,
            total_requests=self._hits + self._misses,
            entry_count=len(self._entries),
            total_size_bytes=self._total_size,
            hit_rate=self.hit_rate,
            last_cleanup=self._last_cleanup,
        )

    def keys(self) -> list[str]:
        return list(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    # --- Persistence ---

    def load(self) -> None:
        """Restore persisted entries, then drop expired ones and re-apply the size bound.

        The index is read first; an entry whose payload is missing or unreadable
        is dropped on its own without discarding the rest.
        """
        if self._store is None:
            return
        try:
            raw = self._store.get(INDEX_KEY)
        except PersistenceError:
            logger.exception("cache_load_failed")
            return
        if not raw:
            return
        try:
            index = CacheIndex.model_validate_json(raw)
        except ValidationError:
            logger.warning("cache_index_corrupt", size=len(raw))
            return

        self._entries.clear()
        self._total_size = 0
        lost: list[str] = []
        for record in sorted(index.records, key=lambda r: r.stored_at):
            payload = self._read_payload(record)
            if payload is _MISSING:
                lost.append(record.key)
                continue
            self._entries[record.key] = CacheEntry(**record.model_dump(), payload=payload)
            self._total_size += record.size_bytes

        now = self._clock()
        dropped = self._expired_keys(now)
        for key in dropped:
            self._remove(key)
        self._last_cleanup = now
        if self._total_size > self.max_size_bytes:
            dropped += self._evict()
        if lost or dropped:
            self._persist(dropped=lost + dropped)
        logger.info(
            "cache_loaded",
            entries=len(self._entries),
            lost=len(lost),
            total_size=format_bytes(self._total_size),
        )

    def _persist(self, *, written: str | None = None, dropped: Iterable[str] = ()) -> None:
        """Write through one changed entry and any removed ones, then the index."""
        if self._store is None:
            return
        try:
            if written is not None and written in self._entries:
                entry = self._entries[written]
                self._store.set(entry_store_key(written), _encode(entry))
            for key in dropped:
                self._store.delete(entry_store_key(key))
            index = CacheIndex(
                records=[
                    CacheRecord(**entry.model_dump(exclude={"payload"}))
                    for entry in self._entries.values()
                ]
            )
            self._store.set(INDEX_KEY, index.model_dump_json().encode())
        except PersistenceError:
            # The in-memory cache stays authoritative for this process
            logger.exception("cache_persist_failed", entries=len(self._entries))

    def _read_payload(self, record: CacheRecord) -> Any:
        try:
            raw = self._store.get(entry_store_key(record.key)) if self._store else None
        except PersistenceError:
            logger.exception("cache_entry_read_failed", key=record.key)
            return _MISSING
        if raw is None:
            logger.warning("cache_entry_missing", key=record.key)
            return _MISSING
        if record.encoding == "bytes":
            return raw
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("cache_entry_corrupt", key=record.key, size=len(raw))
            return _MISSING

    # --- Internals ---

    def _expired_keys(self, now: float) -> list[str]:
        return [key for key, entry in self._entries.items() if entry.is_expired(now)]

    def _remove(self, key: str) -> CacheEntry | None:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._total_size -= entry.size_bytes
        return entry

    def _evict(self, keep: str | None = None) -> list[str]:
        target = self.max_size_bytes * EVICTION_TARGET_RATIO
        evicted: list[str] = []
        freed = 0
        for entry in sorted(self._entries.values(), key=lambda e: e.stored_at):
            if self._total_size <= target:
                break
            if entry.key == keep:
                continue
            self._remove(entry.key)
            evicted.append(entry.key)
            freed += entry.size_bytes
        self._last_cleanup = self._clock()
        logger.info(
            "cache_evicted",
            count=len(evicted),
            freed=format_bytes(freed),
            total_size=format_bytes(self._total_size),
        )
        return evicted
