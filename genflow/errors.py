"""Error taxonomy for the generation lifecycle.

Every error carries a ``category`` (what the UI groups it under), a
``user_message`` (safe to display) and a ``retryable`` flag. The raw
``str(exc)`` is for logs only; use :func:`to_job_error` for anything a user
will see.
"""

from __future__ import annotations

from genflow.models.contracts import ErrorCategory, JobError


class GenflowError(Exception):
    category: ErrorCategory = "unknown"
    user_message: str = "Something went wrong. Please try again."
    default_retryable: bool = False

    def __init__(self, message: str = "", *, retryable: bool | None = None) -> None:
        super().__init__(message or self.user_message)
        self.retryable = self.default_retryable if retryable is None else retryable


# --- Credits ---


class InsufficientFundsError(GenflowError):
    category = "credits"
    user_message = "Not enough credits. Wait for the daily reset or upgrade your plan."

    def __init__(self, balance: int, required: int) -> None:
        super().__init__(f"Insufficient credits: balance {balance}, required {required}")
        self.balance = balance
        self.required = required


class LedgerUnavailableError(GenflowError):
    category = "credits"
    user_message = "Could not reserve credits. Check your connection and try again."
    default_retryable = True


# --- Transport ---


class TransportError(GenflowError):
    """An HTTP call failed. ``retryable`` follows the status code (429/5xx) or network error."""

    category = "network"
    user_message = "Check your internet connection and try again."

    def __init__(
        self, message: str, *, retryable: bool = True, status_code: int | None = None
    ) -> None:
        super().__init__(message, retryable=retryable)
        self.status_code = status_code


class JobNotFoundError(TransportError):
    """The status endpoint has no result for the job yet."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"No status for job {job_id} yet", retryable=True, status_code=404)
        self.job_id = job_id


# --- Generation lifecycle ---


class SubmissionError(GenflowError):
    category = "generation"
    user_message = "The generation could not be started. Your credits were refunded."
    default_retryable = True


class TransientPollError(GenflowError):
    category = "network"
    user_message = "Having trouble checking on your image. Still trying."
    default_retryable = True


class RemoteJobError(GenflowError):
    category = "generation"
    user_message = "Generation failed. Try again with different settings."
    default_retryable = True


class PollTimeoutError(GenflowError):
    category = "timeout"
    user_message = "Generation timed out. Please try again."
    default_retryable = True

    def __init__(self, attempts: int) -> None:
        super().__init__(f"No terminal status after {attempts} attempts")
        self.attempts = attempts


class CancelledByUserError(GenflowError):
    category = "cancelled"
    user_message = "Generation cancelled. Your credits were refunded."


# --- Local state ---


class PersistenceError(GenflowError):
    category = "storage"
    user_message = "Could not save to this device."


class CacheEntryTooLargeError(GenflowError):
    category = "validation"
    user_message = "This item is too large to keep offline."

    def __init__(self, key: str, size: int, max_size: int) -> None:
        super().__init__(f"Cache entry {key!r} is {size} bytes, limit is {max_size}")
        self.size = size
        self.max_size = max_size


class SubmissionSlotBusyError(GenflowError):
    category = "validation"
    user_message = "A generation is already in progress."

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} is still in flight")
        self.job_id = job_id


def to_job_error(exc: BaseException) -> JobError:
    """User-facing view of an exception. Unknown exceptions get a generic message."""
    if isinstance(exc, GenflowError):
        return JobError(category=exc.category, message=exc.user_message, retryable=exc.retryable)
    return JobError(category="unknown", message=GenflowError.user_message, retryable=True)
