"""Local durable key/value store and the append-only job history built on it.

Two stores share the ``DurableStore`` protocol:

- ``FileStore`` writes one file per key under a root directory, named by a
  hash of the key, so arbitrary keys ("jobs/history", "cache/index") map to
  flat, filesystem-safe names.
- ``MemoryStore`` keeps bytes in a dict (tests, and ``store_dir`` unset).

OS-level failures surface as ``PersistenceError``. Callers decide whether that
is fatal; for history and cache it never is.
"""

from __future__ import annotations

import hashlib
import os
from pathlib import Path
from typing import Protocol

import structlog
from pydantic import TypeAdapter, ValidationError

from genflow.errors import PersistenceError
from genflow.models.contracts import GenerationJob

logger = structlog.get_logger()

HISTORY_KEY = "jobs/history"
IN_FLIGHT_KEY = "jobs/in_flight"


class DurableStore(Protocol):
    def get(self, key: str) -> bytes | None: ...

    def set(self, key: str, data: bytes) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryStore:
    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}

    def get(self, key: str) -> bytes | None:
        return self._data.get(key)

    def set(self, key: str, data: bytes) -> None:
        self._data[key] = bytes(data)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class FileStore:
    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    def _path(self, key: str) -> Path:
        namespace, _, _ = key.partition("/")
        digest = hashlib.sha256(key.encode()).hexdigest()[:32]
        return self._root / (namespace or "default") / f"{digest}.bin"

    def get(self, key: str) -> bytes | None:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise PersistenceError(f"Read failed for {key!r}: {exc}") from exc

    def set(self, key: str, data: bytes) -> None:
        path = self._path(key)
        tmp = path.with_suffix(".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(data)
            # Atomic on POSIX: readers see the old or the new file, never half of one
            os.replace(tmp, path)
        except OSError as exc:
            raise PersistenceError(f"Write failed for {key!r}: {exc}") from exc
        logger.debug("store_write", key=key, size=len(data))

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as exc:
            raise PersistenceError(f"Delete failed for {key!r}: {exc}") from exc


_JOBS = TypeAdapter(list[GenerationJob])


def load_jobs(store: DurableStore, key: str) -> list[GenerationJob]:
    """Decode a persisted job list. Missing or corrupt data loads as empty."""
    try:
        raw = store.get(key)
    except PersistenceError:
        logger.exception("store_read_failed", key=key)
        return []
    if not raw:
        return []
    try:
        return _JOBS.validate_json(raw)
    except ValidationError:
        logger.warning("store_corrupt_jobs", key=key, size=len(raw))
        return []


def save_jobs(store: DurableStore, key: str, jobs: list[GenerationJob]) -> None:
    store.set(key, _JOBS.dump_json(jobs))


class JobHistory:
    """Terminal jobs in completion order. Entries are appended, never rewritten."""

    def __init__(self, store: DurableStore, key: str = HISTORY_KEY) -> None:
        self._store = store
        self._key = key
        self._jobs: list[GenerationJob] = []

    def load(self) -> None:
        self._jobs = load_jobs(self._store, self._key)
        logger.info("history_loaded", count=len(self._jobs))

    def append(self, job: GenerationJob) -> None:
        """Record a terminal job and persist the whole list.

        The in-memory append always happens; a failed write raises
        ``PersistenceError`` and is retried implicitly by the next append.
        """
        if not job.is_terminal:
            raise ValueError(f"Only terminal jobs belong in history (job {job.id} is {job.status})")
        self._jobs.append(job.model_copy(deep=True))
        save_jobs(self._store, self._key, self._jobs)

    def entries(self) -> list[GenerationJob]:
        return [job.model_copy(deep=True) for job in self._jobs]

    def __len__(self) -> int:
        return len(self._jobs)
