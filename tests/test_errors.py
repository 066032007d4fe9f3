"""Tests for the error taxonomy and its user-facing mapping."""

from __future__ import annotations

import pytest

from genflow.errors import (
    CacheEntryTooLargeError,
    CancelledByUserError,
    GenflowError,
    InsufficientFundsError,
    JobNotFoundError,
    LedgerUnavailableError,
    PersistenceError,
    PollTimeoutError,
    RemoteJobError,
    SubmissionError,
    SubmissionSlotBusyError,
    TransientPollError,
    TransportError,
    to_job_error,
)


class TestCategories:
    @pytest.mark.parametrize(
        ("error", "category"),
        [
            (InsufficientFundsError(balance=1, required=2), "credits"),
            (LedgerUnavailableError(), "credits"),
            (SubmissionError("x"), "generation"),
            (TransientPollError("x"), "network"),
            (RemoteJobError("x"), "generation"),
            (PollTimeoutError(30), "timeout"),
            (CancelledByUserError(), "cancelled"),
            (PersistenceError("x"), "storage"),
            (TransportError("x"), "network"),
            (JobNotFoundError("run-1"), "network"),
            (SubmissionSlotBusyError("job_1"), "validation"),
            (CacheEntryTooLargeError("k", 10, 5), "validation"),
        ],
    )
    def test_category(self, error: GenflowError, category: str) -> None:
        assert error.category == category
        assert to_job_error(error).category == category


class TestRetryable:
    def test_defaults(self) -> None:
        assert InsufficientFundsError(balance=0, required=2).retryable is False
        assert LedgerUnavailableError().retryable is True
        assert PollTimeoutError(30).retryable is True
        assert CancelledByUserError().retryable is False

    def test_override(self) -> None:
        assert SubmissionError("rejected", retryable=False).retryable is False
        assert TransportError("bad request", retryable=False).retryable is False

    def test_not_found_carries_status(self) -> None:
        error = JobNotFoundError("run-1")
        assert error.status_code == 404
        assert error.job_id == "run-1"
        assert isinstance(error, TransportError)


class TestToJobError:
    def test_user_message_not_raw_text(self) -> None:
        job_error = to_job_error(SubmissionError("HTTP 503 from unified-generate"))
        assert "503" not in job_error.message
        assert job_error.message == SubmissionError.user_message

    def test_unknown_exception_is_generic(self) -> None:
        job_error = to_job_error(KeyError("boom"))
        assert job_error.category == "unknown"
        assert job_error.message == "Something went wrong. Please try again."
        assert job_error.retryable is True

    def test_empty_message_falls_back_to_user_message(self) -> None:
        assert str(CancelledByUserError()) == CancelledByUserError.user_message

    def test_timeout_message_mentions_attempts(self) -> None:
        assert "30" in str(PollTimeoutError(30))
