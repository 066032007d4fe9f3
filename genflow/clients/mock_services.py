"""In-process stand-ins for the remote credit and generation services.

Used when ``use_mock_services`` is on (local development without a backend)
and as the fake collaborators in tests. They honour the same contracts as
the HTTP clients: the credit service is idempotent by request id, and the
status service raises ``JobNotFoundError`` until a result exists.
"""

from __future__ import annotations

from collections import deque

from genflow.errors import InsufficientFundsError, JobNotFoundError, SubmissionError, TransportError
from genflow.models.contracts import (
    Disposition,
    FinalizeResponse,
    InputSpec,
    ReserveResponse,
    StatusResponse,
    SubmitResponse,
)

StatusStep = StatusResponse | Exception


class MockCreditService:
    def __init__(self, balance: int = 10) -> None:
        self.balance = balance
        self._reservations: dict[str, tuple[int, Disposition | None]] = {}
        self.reserve_calls: list[str] = []
        self.finalize_calls: list[tuple[str, Disposition]] = []
        # Number of upcoming calls that fail with a retryable transport error
        self.reserve_outages = 0
        self.finalize_outages = 0

    async def reserve(self, cost: int, action: str, request_id: str) -> ReserveResponse:
        self.reserve_calls.append(request_id)
        if self.reserve_outages:
            self.reserve_outages -= 1
            raise TransportError("Mock credit service unavailable", retryable=True, status_code=503)
        if request_id in self._reservations:
            return ReserveResponse(request_id=request_id, balance=self.balance)
        if cost > self.balance:
            raise InsufficientFundsError(balance=self.balance, required=cost)
        self.balance -= cost
        self._reservations[request_id] = (cost, None)
        return ReserveResponse(request_id=request_id, balance=self.balance)

    async def finalize(self, request_id: str, disposition: Disposition) -> FinalizeResponse:
        self.finalize_calls.append((request_id, disposition))
        if self.finalize_outages:
            self.finalize_outages -= 1
            raise TransportError("Mock credit service unavailable", retryable=True, status_code=503)
        if request_id not in self._reservations:
            raise TransportError(
                f"Unknown reservation {request_id}", retryable=False, status_code=404
            )
        cost, applied = self._reservations[request_id]
        if applied is not None:
            return FinalizeResponse(request_id=request_id, disposition=applied, balance=self.balance)
        if disposition == "refund":
            self.balance += cost
        self._reservations[request_id] = (cost, disposition)
        return FinalizeResponse(request_id=request_id, disposition=disposition, balance=self.balance)

    def disposition_of(self, request_id: str) -> Disposition | None:
        return self._reservations[request_id][1]


class MockGenerationService:
    """Fake submission + status service.

    Without a script, a submitted job reports "not found" for
    ``polls_until_complete - 1`` queries and then completes. ``queue_script``
    replaces that behaviour for the next submission with an explicit sequence
    of responses (or exceptions); the last step repeats forever.
    """

    def __init__(self, *, polls_until_complete: int = 3, estimated_seconds: float = 45.0) -> None:
        self.polls_until_complete = polls_until_complete
        self.estimated_seconds = estimated_seconds
        self.submissions: dict[str, InputSpec] = {}
        self.status_calls: list[str] = []
        self.submit_error: Exception | None = None
        self._pending_scripts: deque[list[StatusStep]] = deque()
        self._scripts: dict[str, deque[StatusStep]] = {}
        self._poll_counts: dict[str, int] = {}

    def queue_script(self, steps: list[StatusStep]) -> None:
        if not steps:
            raise ValueError("A status script needs at least one step")
        self._pending_scripts.append(list(steps))

    def script_job(self, job_id: str, steps: list[StatusStep]) -> None:
        """Attach a script to a job id directly (jobs submitted before a restart)."""
        self._scripts[job_id] = deque(steps)

    async def submit(self, input_spec: InputSpec, run_id: str) -> SubmitResponse:
        if self.submit_error is not None:
            if isinstance(self.submit_error, SubmissionError):
                raise self.submit_error
            raise SubmissionError(str(self.submit_error)) from self.submit_error
        self.submissions[run_id] = input_spec
        if self._pending_scripts:
            self._scripts[run_id] = deque(self._pending_scripts.popleft())
        return SubmitResponse(job_id=run_id, estimated_seconds=self.estimated_seconds)

    async def get_status(self, job_id: str) -> StatusResponse:
        self.status_calls.append(job_id)
        script = self._scripts.get(job_id)
        if script is not None:
            step = script.popleft() if len(script) > 1 else script[0]
            if isinstance(step, Exception):
                raise step
            return step

        if job_id not in self.submissions:
            raise JobNotFoundError(job_id)
        count = self._poll_counts.get(job_id, 0) + 1
        self._poll_counts[job_id] = count
        if count < self.polls_until_complete:
            raise JobNotFoundError(job_id)
        return StatusResponse(
            status="completed",
            progress=100,
            result_reference=f"https://cdn.example.com/mock/{job_id}.png",
        )
