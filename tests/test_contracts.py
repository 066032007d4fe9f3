"""Tests for the pydantic contract models."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from genflow.models.contracts import (
    IN_FLIGHT_JOB_STATUSES,
    TERMINAL_JOB_STATUSES,
    CacheEntry,
    GenerationJob,
    InputSpec,
    Reservation,
)

SPEC = InputSpec(source_url="https://cdn.example.com/in.jpg", mode="edit-photo")


class TestReservation:
    def test_defaults(self) -> None:
        reservation = Reservation(id="mobile_1", action="image.gen", cost=2)
        assert reservation.status == "reserved"
        assert reservation.pending_disposition is None
        assert reservation.is_terminal is False

    def test_negative_cost_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Reservation(id="mobile_1", action="image.gen", cost=-1)

    @pytest.mark.parametrize(
        ("status", "terminal"),
        [("reserved", False), ("committed", True), ("refunded", True), ("failed", False)],
    )
    def test_terminal_statuses(self, status: str, terminal: bool) -> None:
        reservation = Reservation(id="r", action="a", cost=1, status=status)  # type: ignore[arg-type]
        assert reservation.is_terminal is terminal


class TestGenerationJob:
    def test_new_job_is_pending(self) -> None:
        job = GenerationJob(id="job_1", input_spec=SPEC)
        assert job.status == "pending"
        assert job.progress == 0
        assert job.is_terminal is False

    def test_progress_bounds(self) -> None:
        with pytest.raises(ValidationError):
            GenerationJob(id="job_1", input_spec=SPEC, progress=101)

    def test_unknown_mode_rejected(self) -> None:
        with pytest.raises(ValidationError):
            InputSpec(source_url="x", mode="sketch")  # type: ignore[arg-type]

    def test_status_sets_partition(self) -> None:
        assert TERMINAL_JOB_STATUSES.isdisjoint(IN_FLIGHT_JOB_STATUSES)
        assert len(TERMINAL_JOB_STATUSES | IN_FLIGHT_JOB_STATUSES) == 6

    def test_json_round_trip_keeps_nested_input(self) -> None:
        job = GenerationJob(id="job_1", input_spec=SPEC, status="completed", progress=100)
        restored = GenerationJob.model_validate_json(job.model_dump_json())
        assert restored == job


class TestCacheEntry:
    def test_expiry_boundary(self) -> None:
        entry = CacheEntry(key="k", payload=1, stored_at=100.0, ttl=10.0, size_bytes=1)
        assert entry.is_expired(110.0) is False
        assert entry.is_expired(110.1) is True
