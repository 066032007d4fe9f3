"""genflow contract models.

Shared by the ledger, poller, orchestrator and the remote service clients.
Field names on the ``*Response`` models are the client's normalised view;
the HTTP clients translate wire payloads into them.
"""

from __future__ import annotations

import time
from typing import Any, Literal

from pydantic import BaseModel, Field

# === Enumerations ===

ReservationStatus = Literal["reserved", "committed", "refunded", "failed"]
Disposition = Literal["commit", "refund"]
JobStatus = Literal["pending", "submitted", "processing", "completed", "failed", "cancelled"]
RemoteStatus = Literal["processing", "completed", "failed"]
GenerationMode = Literal[
    "presets",
    "custom-prompt",
    "emotion-mask",
    "ghibli-reaction",
    "neo-glitch",
    "edit-photo",
]
ErrorCategory = Literal[
    "credits",
    "generation",
    "network",
    "timeout",
    "cancelled",
    "storage",
    "validation",
    "unknown",
]

TERMINAL_JOB_STATUSES: frozenset[str] = frozenset({"completed", "failed", "cancelled"})
IN_FLIGHT_JOB_STATUSES: frozenset[str] = frozenset({"pending", "submitted", "processing"})


def _now() -> float:
    return time.time()


# === Credits ===


class Reservation(BaseModel):
    """A tentative debit. ``id`` doubles as the idempotency key for the credit service."""

    id: str
    action: str
    cost: int = Field(ge=0)
    status: ReservationStatus = "reserved"
    created_at: float = Field(default_factory=_now)
    finalized_at: float | None = None
    balance_after: int | None = None
    # Set when the ledger gave up finalizing; retried by reconcile()
    pending_disposition: Disposition | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in ("committed", "refunded")


class FinalizeResult(BaseModel):
    reservation_id: str
    disposition: Disposition
    status: ReservationStatus
    balance: int | None = None


class ReserveResponse(BaseModel):
    request_id: str
    balance: int


class FinalizeResponse(BaseModel):
    request_id: str
    disposition: Disposition
    balance: int | None = None


# === Generation ===


class InputSpec(BaseModel):
    """What to generate. ``source_url`` points at an already-uploaded image."""

    source_url: str
    mode: GenerationMode
    preset_id: str | None = None
    custom_prompt: str | None = None
    parameters: dict[str, Any] = {}


class SubmitResponse(BaseModel):
    job_id: str
    estimated_seconds: float | None = None


class StatusResponse(BaseModel):
    status: RemoteStatus
    progress: float | None = None
    result_reference: str | None = None
    error: str | None = None


class JobError(BaseModel):
    category: ErrorCategory
    message: str
    retryable: bool


class GenerationJob(BaseModel):
    id: str
    input_spec: InputSpec
    status: JobStatus = "pending"
    progress: int = Field(ge=0, le=100, default=0)
    status_message: str | None = None
    result_reference: str | None = None
    error: JobError | None = None
    reservation_id: str | None = None
    remote_job_id: str | None = None
    created_at: float = Field(default_factory=_now)
    finished_at: float | None = None
    estimated_seconds: float | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


class JobUpdate(BaseModel):
    """One element of the UI update stream."""

    job_id: str
    status: JobStatus
    progress: int
    message: str | None = None
    result_reference: str | None = None
    error: JobError | None = None


# === Polling ===


class ProgressUpdate(BaseModel):
    job_id: str
    attempt: int
    progress: int = Field(ge=0, le=100)
    message: str
    estimated_remaining_seconds: float | None = None


# === Cache ===


class CacheRecord(BaseModel):
    """Everything about an entry except its payload; the persisted index holds these."""

    key: str
    encoding: Literal["json", "bytes"] = "json"
    stored_at: float
    ttl: float
    size_bytes: int = Field(ge=0)

    def is_expired(self, now: float) -> bool:
        return now > self.stored_at + self.ttl


class CacheEntry(CacheRecord):
    payload: Any


class CacheIndex(BaseModel):
    records: list[CacheRecord] = []


class CacheStats(BaseModel):
    hits: int = 0
    misses: int = 0
    total_requests: int = 0
    entry_count: int = 0
    total_size_bytes: int = 0
    hit_rate: float = 0.0
    last_cleanup: float | None = None
