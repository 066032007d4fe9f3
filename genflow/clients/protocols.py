"""Remote collaborators consumed by the ledger, poller and orchestrator.

Implementations raise ``TransportError`` (or a subclass) for transport
failures so callers can tell retryable problems from hard rejections.
"""

from __future__ import annotations

from typing import Protocol

from genflow.models.contracts import (
    Disposition,
    FinalizeResponse,
    InputSpec,
    ReserveResponse,
    StatusResponse,
    SubmitResponse,
)


class CreditService(Protocol):
    async def reserve(self, cost: int, action: str, request_id: str) -> ReserveResponse:
        """Debit ``cost``. Raises ``InsufficientFundsError`` when the balance is too low."""
        ...

    async def finalize(self, request_id: str, disposition: Disposition) -> FinalizeResponse:
        """Commit or refund a reservation. Must be idempotent by ``request_id``."""
        ...


class SubmissionService(Protocol):
    async def submit(self, input_spec: InputSpec, run_id: str) -> SubmitResponse: ...


class StatusService(Protocol):
    async def get_status(self, job_id: str) -> StatusResponse:
        """Current remote status. Raises ``JobNotFoundError`` while no result exists."""
        ...
