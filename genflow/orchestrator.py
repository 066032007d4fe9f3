"""JobOrchestrator — one reserve → submit → poll → settle saga per generation request.

Job states::

    pending → submitted → processing → completed | failed | cancelled

Credits are always settled before a job is reported terminal:

- reserve fails             → failed, nothing to settle
- submit fails              → refund, failed
- poller completes          → commit, completed
- poller errors / times out → refund, failed
- user cancels              → refund, cancelled

Every refund goes through ``_settle_failure``; there is no second compensating
path. Terminal jobs are appended to the persisted history and never touched
again. Jobs still in flight are persisted separately so ``recover()`` can
drive them to a terminal state after a restart.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Callable

import structlog

from genflow.cache import BoundedCache, api_cache_key
from genflow.clients.protocols import SubmissionService
from genflow.errors import (
    CacheEntryTooLargeError,
    CancelledByUserError,
    GenflowError,
    InsufficientFundsError,
    LedgerUnavailableError,
    PersistenceError,
    SubmissionError,
    SubmissionSlotBusyError,
    to_job_error,
)
from genflow.ledger import CreditLedger
from genflow.logging import job_context
from genflow.models.contracts import (
    IN_FLIGHT_JOB_STATUSES,
    GenerationJob,
    InputSpec,
    JobStatus,
    JobUpdate,
    ProgressUpdate,
    StatusResponse,
)
from genflow.poller import PollHandlers, StatusPoller
from genflow.storage import IN_FLIGHT_KEY, DurableStore, JobHistory, load_jobs, save_jobs

logger = structlog.get_logger()

JobListener = Callable[[JobUpdate], None]


def result_cache_key(job_id: str) -> str:
    return api_cache_key("generation-result", {"job_id": job_id})


def _new_job_id() -> str:
    return f"job_{uuid.uuid4().hex}"


class JobOrchestrator:
    def __init__(
        self,
        *,
        ledger: CreditLedger,
        submission: SubmissionService,
        poller: StatusPoller,
        cache: BoundedCache,
        store: DurableStore,
        poll_interval: float,
        poll_max_attempts: int,
        default_estimated_seconds: float,
        default_cost: int,
        default_action: str,
        id_factory: Callable[[], str] = _new_job_id,
    ) -> None:
        self._ledger = ledger
        self._submission = submission
        self._poller = poller
        self._cache = cache
        self._store = store
        self._poll_interval = poll_interval
        self._poll_max_attempts = poll_max_attempts
        self._default_estimated_seconds = default_estimated_seconds
        self._default_cost = default_cost
        self._default_action = default_action
        self._id_factory = id_factory

        self._history = JobHistory(store)
        self._jobs: dict[str, GenerationJob] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, asyncio.Future[GenerationJob]] = {}
        self._listeners: list[JobListener] = []
        self._cancel_requested: set[str] = set()
        self._current_job_id: str | None = None

    # --- Queries ---

    def load(self) -> None:
        self._history.load()

    @property
    def current_job(self) -> GenerationJob | None:
        if self._current_job_id is None:
            return None
        return self._jobs[self._current_job_id].model_copy(deep=True)

    def get_job(self, job_id: str) -> GenerationJob | None:
        job = self._jobs.get(job_id)
        if job is not None:
            return job.model_copy(deep=True)
        for past in self._history.entries():
            if past.id == job_id:
                return past
        return None

    def history(self) -> list[GenerationJob]:
        return self._history.entries()

    def cached_result(self, job_id: str) -> str | None:
        cached = self._cache.get(result_cache_key(job_id))
        return cached.get("result_reference") if isinstance(cached, dict) else None

    # --- UI channel ---

    def subscribe(self, listener: JobListener) -> Callable[[], None]:
        """Register for every job update. Returns a function that unsubscribes."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def wait_for(self, job_id: str) -> GenerationJob:
        """Resolve once, with the job's terminal snapshot."""
        job = self._jobs.get(job_id)
        if job is None:
            past = self.get_job(job_id)
            if past is None:
                raise KeyError(f"Unknown job {job_id}")
            return past
        if job.is_terminal:
            return job.model_copy(deep=True)
        waiter = self._waiters.get(job_id)
        if waiter is None:
            waiter = self._waiters[job_id] = asyncio.get_running_loop().create_future()
        return await asyncio.shield(waiter)

    # --- Saga ---

    async def submit(
        self,
        input_spec: InputSpec,
        cost: int | None = None,
        action: str | None = None,
    ) -> GenerationJob:
        if self._current_job_id is not None:
            raise SubmissionSlotBusyError(self._current_job_id)

        cost = self._default_cost if cost is None else cost
        action = action or self._default_action
        if cost < 0:
            raise ValueError(f"cost must be >= 0, got {cost}")
        job = GenerationJob(id=self._id_factory(), input_spec=input_spec)
        self._jobs[job.id] = job
        self._current_job_id = job.id

        with job_context(job.id, mode=input_spec.mode):
            logger.info("job_created", cost=cost, action=action)
            self._persist_in_flight()
            self._publish(job)

            try:
                reservation = await self._ledger.reserve(cost, action)
            except (InsufficientFundsError, LedgerUnavailableError) as exc:
                logger.info("job_reserve_failed", error_type=type(exc).__name__)
                await self._finish(job, "failed", error=exc)
                return job.model_copy(deep=True)
            except Exception as exc:
                # Nothing is known to be reserved; the slot is freed all the same
                logger.exception("job_reserve_crashed")
                await self._finish(job, "failed", error=exc)
                return job.model_copy(deep=True)

            job.reservation_id = reservation.id
            self._persist_in_flight()
            if await self._honour_cancel(job):
                return job.model_copy(deep=True)

            self._set_status(job, "submitted")
            self._persist_in_flight()
            try:
                response = await self._submission.submit(input_spec, job.id)
            except Exception as exc:
                logger.warning(
                    "job_submit_failed", error=str(exc), error_type=type(exc).__name__
                )
                error = exc if isinstance(exc, SubmissionError) else SubmissionError(str(exc))
                await self._settle_failure(job, error)
                return job.model_copy(deep=True)

            job.remote_job_id = response.job_id
            job.estimated_seconds = response.estimated_seconds or self._default_estimated_seconds
            if await self._honour_cancel(job):
                return job.model_copy(deep=True)

            self._set_status(job, "processing")
            self._persist_in_flight()
            self._start_polling(job)
            return job.model_copy(deep=True)

    async def cancel(self, job_id: str) -> GenerationJob:
        job = self._jobs.get(job_id)
        if job is None:
            past = self.get_job(job_id)
            if past is None:
                raise KeyError(f"Unknown job {job_id}")
            return past

        with job_context(job_id):
            if job.is_terminal:
                logger.info("job_cancel_ignored", status=job.status)
                return job.model_copy(deep=True)
            if job.status in ("pending", "submitted"):
                # Honoured by submit() as soon as the in-flight remote call returns
                self._cancel_requested.add(job_id)
                logger.info("job_cancel_deferred", status=job.status)
                return job.model_copy(deep=True)

            async with self._lock(job_id):
                if job.status != "processing":
                    return job.model_copy(deep=True)
                if job.remote_job_id:
                    self._poller.stop(job.remote_job_id)
                logger.info("job_cancelled_by_user", progress=job.progress)
                await self._settle_failure(job, CancelledByUserError())
        return job.model_copy(deep=True)

    async def recover(self) -> list[str]:
        """Drive jobs left in flight by a previous process to a terminal state.

        Every recovered job is polled again from scratch; the poller's first,
        immediate query settles jobs that finished while the process was down.
        Jobs that never got a reservation are failed with nothing to refund.
        Afterwards the ledger retries any finalize it previously gave up on.
        """
        recovered: list[str] = []
        for job in load_jobs(self._store, IN_FLIGHT_KEY):
            if job.id in self._jobs:
                continue
            self._jobs[job.id] = job
            with job_context(job.id):
                reservation = self._ledger.get(job.reservation_id) if job.reservation_id else None
                if reservation is None:
                    logger.warning("job_recovered_without_reservation", status=job.status)
                    await self._finish(
                        job, "failed", error=GenflowError("Interrupted before credits were reserved")
                    )
                    continue
                if reservation.status == "refunded":
                    # Refunded before the crash; only the job record was lost
                    await self._finish(
                        job, "failed", error=GenflowError("Interrupted after credits were refunded")
                    )
                    continue
                # The run id doubles as the remote id when submit never returned
                job.remote_job_id = job.remote_job_id or job.id
                job.estimated_seconds = job.estimated_seconds or self._default_estimated_seconds
                self._set_status(job, "processing")
                logger.info("job_recovered", reservation_status=reservation.status)
                self._start_polling(job)
                recovered.append(job.id)
        self._persist_in_flight()
        await self._ledger.reconcile()
        return recovered

    def shutdown(self) -> None:
        """Stop polling without settling; in-flight jobs stay persisted for ``recover``."""
        self._poller.stop_all()
        self._persist_in_flight()
        logger.info("orchestrator_shutdown", in_flight=len(self._in_flight()))

    # --- Poller callbacks ---

    def _start_polling(self, job: GenerationJob) -> None:
        job_id = job.id
        if job.remote_job_id is None:
            raise GenflowError(f"Job {job_id} has no remote id to poll")

        async def on_progress(update: ProgressUpdate) -> None:
            current = self._jobs.get(job_id)
            if current is None or current.status != "processing":
                return
            current.progress = update.progress
            current.status_message = update.message
            self._publish(current)

        async def on_complete(status: StatusResponse) -> None:
            with job_context(job_id):
                try:
                    await self._complete(job_id, status)
                except Exception as exc:
                    await self._settlement_crashed(job_id, exc)

        async def on_error(error: GenflowError) -> None:
            with job_context(job_id):
                try:
                    async with self._lock(job_id):
                        current = self._jobs.get(job_id)
                        if current is None or current.status != "processing":
                            logger.info("job_poll_error_ignored")
                            return
                        await self._settle_failure(current, error)
                except Exception as exc:
                    await self._settlement_crashed(job_id, exc)

        self._poller.start(
            job.remote_job_id,
            interval=self._poll_interval,
            max_attempts=self._poll_max_attempts,
            estimated_seconds=job.estimated_seconds or self._default_estimated_seconds,
            handlers=PollHandlers(on_progress=on_progress, on_complete=on_complete, on_error=on_error),
        )

    async def _complete(self, job_id: str, status: StatusResponse) -> None:
        async with self._lock(job_id):
            job = self._jobs.get(job_id)
            if job is None or job.status != "processing":
                logger.info("job_completion_ignored")
                return
            if job.reservation_id is None:
                logger.error("job_completed_without_reservation")
                await self._finish(
                    job, "failed", error=GenflowError("Completed job has no credit reservation")
                )
                return

            self._cache_result(job, status.result_reference or "")
            result = await self._ledger.finalize(job.reservation_id, "commit")
            if result.status == "refunded":
                # Credit service had already refunded this id; a completed job needs a charge
                logger.error("job_commit_rejected", reservation_id=job.reservation_id)
                await self._finish(
                    job, "failed", error=GenflowError("Charge for this generation was reversed")
                )
                return

            job.result_reference = status.result_reference
            job.progress = 100
            job.status_message = "Complete!"
            await self._finish(job, "completed")

    # --- Settlement ---

    async def _settle_failure(self, job: GenerationJob, error: GenflowError) -> None:
        """The one compensating path: refund, then mark failed or cancelled."""
        if job.reservation_id is not None:
            result = await self._ledger.finalize(job.reservation_id, "refund")
            if result.status == "committed":
                logger.error("job_refund_rejected", reservation_id=job.reservation_id)
        status: JobStatus = "cancelled" if isinstance(error, CancelledByUserError) else "failed"
        await self._finish(job, status, error=error)

    async def _settlement_crashed(self, job_id: str, exc: Exception) -> None:
        """A settlement step raised. The job still ends failed so its slot and waiters are released."""
        logger.exception("job_settlement_failed", error_type=type(exc).__name__)
        job = self._jobs.get(job_id)
        if job is None or job.is_terminal:
            return
        await self._finish(job, "failed", error=exc)

    async def _honour_cancel(self, job: GenerationJob) -> bool:
        if job.id not in self._cancel_requested:
            return False
        self._cancel_requested.discard(job.id)
        logger.info("job_cancel_applied", status=job.status)
        await self._settle_failure(job, CancelledByUserError())
        return True

    async def _finish(
        self, job: GenerationJob, status: JobStatus, *, error: BaseException | None = None
    ) -> None:
        job.status = status
        job.finished_at = time.time()
        if error is not None:
            job.error = to_job_error(error)
        if self._current_job_id == job.id:
            self._current_job_id = None
        # Terminal jobs are served from history from here on
        self._jobs.pop(job.id, None)
        self._locks.pop(job.id, None)
        self._cancel_requested.discard(job.id)

        try:
            self._history.append(job)
        except PersistenceError:
            logger.exception("job_history_persist_failed")
        self._persist_in_flight()
        logger.info(
            "job_finished",
            status=status,
            reservation_id=job.reservation_id,
            error_category=job.error.category if job.error else None,
        )
        self._publish(job)

        waiter = self._waiters.pop(job.id, None)
        if waiter is not None and not waiter.done():
            waiter.set_result(job.model_copy(deep=True))

    # --- Internals ---

    def _cache_result(self, job: GenerationJob, result_reference: str) -> None:
        try:
            self._cache.set(
                result_cache_key(job.id),
                {
                    "job_id": job.id,
                    "mode": job.input_spec.mode,
                    "result_reference": result_reference,
                },
            )
        except (CacheEntryTooLargeError, TypeError):
            logger.warning("job_result_not_cached", exc_info=True)

    def _set_status(self, job: GenerationJob, status: JobStatus) -> None:
        job.status = status
        logger.info("job_status", status=status)
        self._publish(job)

    def _in_flight(self) -> list[GenerationJob]:
        return [job for job in self._jobs.values() if job.status in IN_FLIGHT_JOB_STATUSES]

    def _persist_in_flight(self) -> None:
        try:
            save_jobs(self._store, IN_FLIGHT_KEY, self._in_flight())
        except PersistenceError:
            logger.exception("job_in_flight_persist_failed")

    def _publish(self, job: GenerationJob) -> None:
        update = JobUpdate(
            job_id=job.id,
            status=job.status,
            progress=job.progress,
            message=job.status_message,
            result_reference=job.result_reference,
            error=job.error,
        )
        for listener in list(self._listeners):
            try:
                listener(update)
            except Exception:
                # A broken subscriber must not stall settlement
                logger.exception("job_listener_failed", listener=repr(listener))

    def _lock(self, job_id: str) -> asyncio.Lock:
        lock = self._locks.get(job_id)
        if lock is None:
            lock = self._locks[job_id] = asyncio.Lock()
        return lock
