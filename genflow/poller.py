"""Status poller — one cancellable asyncio task per in-flight job.

Per job::

    idle → polling → completed | failed | timed_out | cancelled

The first status query goes out immediately when ``start`` is called; each
later query is scheduled ``interval`` seconds after the previous response
arrives. Every query counts as an attempt, whether it returned "not found",
"processing" or a retryable transport error. Once ``max_attempts`` queries
have gone out without a terminal answer, ``on_error`` receives a
``PollTimeoutError``.

Each session owns a liveness flag captured when it is scheduled. ``stop``
clears the flag before cancelling the task, and every callback checks it, so
a response that lands after ``stop`` is dropped even if the same job id is
polled again later.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import structlog

from genflow.clients.protocols import StatusService
from genflow.errors import (
    GenflowError,
    JobNotFoundError,
    PollTimeoutError,
    RemoteJobError,
    TransientPollError,
    TransportError,
)
from genflow.models.contracts import ProgressUpdate, StatusResponse

logger = structlog.get_logger()

MAX_PROCESSING_PROGRESS = 95
MIN_ESTIMATED_SECONDS = 10.0

ProgressHandler = Callable[[ProgressUpdate], Awaitable[None]]
CompleteHandler = Callable[[StatusResponse], Awaitable[None]]
ErrorHandler = Callable[[GenflowError], Awaitable[None]]


@dataclass
class PollHandlers:
    on_progress: ProgressHandler
    on_complete: CompleteHandler
    on_error: ErrorHandler


@dataclass
class PollSession:
    job_id: str
    interval: float
    max_attempts: int
    estimated_seconds: float
    handlers: PollHandlers
    attempt: int = 0
    alive: bool = True
    eta_seconds: float = 0.0
    last_transient: TransientPollError | None = None
    # Set while a terminal handler runs; stop() must not cancel it mid-settlement
    delivering: bool = False
    task: asyncio.Task | None = field(default=None, repr=False)  # type: ignore[type-arg]


class PollHandle:
    """Opaque handle returned by ``StatusPoller.start``."""

    def __init__(self, poller: StatusPoller, session: PollSession) -> None:
        self._poller = poller
        self._session = session

    @property
    def job_id(self) -> str:
        return self._session.job_id

    @property
    def active(self) -> bool:
        return self._session.alive

    @property
    def attempts(self) -> int:
        return self._session.attempt

    def cancel(self) -> None:
        self._poller._stop_session(self._session)

    async def wait(self) -> None:
        """Wait for the session task to finish (terminal delivery or cancellation)."""
        task = self._session.task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)


def stage_message(progress: float) -> str:
    if progress < 20:
        return "Getting it ready"
    if progress < 50:
        return "Processing your image"
    if progress < 80:
        return "Adding artistic touches"
    return "Finalizing your creation"


def estimate_progress(
    attempt: int, interval: float, estimated_seconds: float, reported: float | None = None
) -> int:
    """Remote progress when reported, else elapsed/estimated; capped below 100 while processing."""
    if reported is not None:
        value = float(reported)
    elif estimated_seconds > 0:
        value = attempt * interval / estimated_seconds * 100
    else:
        value = 0.0
    return round(min(max(value, 0.0), MAX_PROCESSING_PROGRESS))


class StatusPoller:
    def __init__(
        self,
        status_service: StatusService,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._service = status_service
        self._sleep = sleep
        self._sessions: dict[str, PollSession] = {}

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    def is_polling(self, job_id: str) -> bool:
        return job_id in self._sessions

    def start(
        self,
        job_id: str,
        *,
        interval: float,
        max_attempts: int,
        handlers: PollHandlers,
        estimated_seconds: float = 45.0,
    ) -> PollHandle:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        existing = self._sessions.get(job_id)
        if existing is not None:
            logger.warning("poll_restarted", job_id=job_id, previous_attempts=existing.attempt)
            self._stop_session(existing)

        session = PollSession(
            job_id=job_id,
            interval=interval,
            max_attempts=max_attempts,
            estimated_seconds=estimated_seconds,
            handlers=handlers,
            eta_seconds=estimated_seconds,
        )
        self._sessions[job_id] = session
        session.task = asyncio.create_task(self._run(session), name=f"poll:{job_id}")
        logger.info("poll_started", job_id=job_id, interval=interval, max_attempts=max_attempts)
        return PollHandle(self, session)

    def stop(self, job_id: str) -> None:
        session = self._sessions.get(job_id)
        if session is not None:
            self._stop_session(session)

    def stop_all(self) -> None:
        for session in list(self._sessions.values()):
            self._stop_session(session)

    def _stop_session(self, session: PollSession) -> None:
        if not session.alive:
            return
        session.alive = False
        if self._sessions.get(session.job_id) is session:
            del self._sessions[session.job_id]
        if session.task is not None and not session.delivering:
            session.task.cancel()
        logger.info("poll_stopped", job_id=session.job_id, attempts=session.attempt)

    async def _run(self, session: PollSession) -> None:
        log = logger.bind(job_id=session.job_id)
        try:
            while session.alive:
                session.attempt += 1
                status: StatusResponse | None = None
                try:
                    status = await self._service.get_status(session.job_id)
                except JobNotFoundError:
                    log.debug("poll_not_ready", attempt=session.attempt)
                except TransportError as exc:
                    if not exc.retryable:
                        if session.alive:
                            log.warning(
                                "poll_unrecoverable", attempt=session.attempt, error=str(exc)
                            )
                            await self._finish(session, error=exc)
                        return
                    session.last_transient = TransientPollError(str(exc))
                    log.warning("poll_transient_failure", attempt=session.attempt, error=str(exc))

                if not session.alive:
                    return

                if status is not None and status.status == "completed" and status.result_reference:
                    await self._emit_progress(session, 100, "Complete!")
                    await self._finish(session, result=status)
                    return
                if status is not None and status.status == "failed":
                    await self._finish(
                        session, error=RemoteJobError(status.error or "Generation failed")
                    )
                    return

                progress = estimate_progress(
                    session.attempt,
                    session.interval,
                    session.estimated_seconds,
                    status.progress if status is not None else None,
                )
                await self._emit_progress(session, progress, stage_message(progress))
                if not session.alive:
                    return

                if session.attempt >= session.max_attempts:
                    transient = session.last_transient
                    log.warning(
                        "poll_timed_out",
                        attempts=session.attempt,
                        last_transient=str(transient) if transient else None,
                    )
                    await self._finish(session, error=PollTimeoutError(session.attempt))
                    return

                await self._sleep(session.interval)
        except asyncio.CancelledError:
            log.debug("poll_cancelled", attempt=session.attempt)
            raise
        except Exception as exc:
            # Unexpected failure in a handler or the status client. Unless the terminal
            # callback already ran, deliver one now so the job still settles its credits.
            log.exception("poll_handler_failed", attempt=session.attempt)
            if session.alive:
                await self._finish(session, error=GenflowError(f"Polling crashed: {exc}"))
        finally:
            if self._sessions.get(session.job_id) is session:
                del self._sessions[session.job_id]

    async def _emit_progress(self, session: PollSession, progress: int, message: str) -> None:
        if not session.alive:
            return
        elapsed = session.attempt * session.interval
        if 0 < progress < 100:
            # Re-fit the ETA from the observed rate; the remote gives none
            session.eta_seconds = max(elapsed / progress * 100, MIN_ESTIMATED_SECONDS)
        remaining = max(session.eta_seconds - elapsed, 0.0) if progress < 100 else 0.0
        update = ProgressUpdate(
            job_id=session.job_id,
            attempt=session.attempt,
            progress=progress,
            message=message,
            estimated_remaining_seconds=remaining,
        )
        await session.handlers.on_progress(update)

    async def _finish(
        self,
        session: PollSession,
        *,
        result: StatusResponse | None = None,
        error: GenflowError | None = None,
    ) -> None:
        """Deliver the single terminal callback, then retire the session."""
        if not session.alive:
            return
        session.delivering = True
        session.alive = False
        if self._sessions.get(session.job_id) is session:
            del self._sessions[session.job_id]
        if result is not None:
            logger.info("poll_completed", job_id=session.job_id, attempts=session.attempt)
            await session.handlers.on_complete(result)
        else:
            error = error or RemoteJobError("Polling ended without a result")
            logger.info(
                "poll_failed",
                job_id=session.job_id,
                attempts=session.attempt,
                error_type=type(error).__name__,
            )
            await session.handlers.on_error(error)
