"""Credit ledger client — two-phase reserve → commit/refund against the credit service.

Each reservation is a small state machine::

    reserved ──commit──▶ committed
        │  └───refund──▶ refunded
        └─(finalize gave up)──▶ failed ──reconcile()──▶ committed | refunded

The first disposition requested for a reservation wins. Later ``finalize``
calls on a committed/refunded reservation return the stored result without
touching the remote service, and a reservation stuck in ``failed`` can only be
retried with the disposition it already carries, so one reservation can never
be both committed and refunded.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable

import structlog
from pydantic import TypeAdapter, ValidationError

from genflow.clients.protocols import CreditService
from genflow.errors import (
    InsufficientFundsError,
    LedgerUnavailableError,
    PersistenceError,
    TransportError,
)
from genflow.models.contracts import Disposition, FinalizeResult, Reservation
from genflow.storage import DurableStore

logger = structlog.get_logger()

RESERVATIONS_KEY = "ledger/reservations"
# Settled reservations kept for duplicate finalize calls; open ones are never dropped
RETAINED_SETTLED = 200

_RESERVATIONS = TypeAdapter(list[Reservation])

_TERMINAL_STATUS: dict[Disposition, str] = {"commit": "committed", "refund": "refunded"}


def generate_request_id() -> str:
    return f"mobile_{int(time.time() * 1000)}_{uuid.uuid4().hex[:12]}"


class CreditLedger:
    def __init__(
        self,
        service: CreditService,
        *,
        store: DurableStore | None = None,
        finalize_max_attempts: int = 5,
        finalize_backoff_seconds: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        id_factory: Callable[[], str] = generate_request_id,
        retained_settled: int = RETAINED_SETTLED,
    ) -> None:
        self._service = service
        self._store = store
        self._finalize_max_attempts = max(1, finalize_max_attempts)
        self._finalize_backoff = finalize_backoff_seconds
        self._sleep = sleep
        self._id_factory = id_factory
        self._retained_settled = retained_settled
        self._reservations: dict[str, Reservation] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self.balance: int | None = None

    # --- Queries ---

    def get(self, reservation_id: str) -> Reservation | None:
        reservation = self._reservations.get(reservation_id)
        return reservation.model_copy() if reservation else None

    def reservations(self) -> list[Reservation]:
        return [r.model_copy() for r in self._reservations.values()]

    def has_enough_credits(self, cost: int) -> bool:
        """Best-effort UI hint from the last known balance. ``reserve`` is the real check."""
        return self.balance is not None and self.balance >= cost

    # --- Phase 1 ---

    async def reserve(self, cost: int, action: str) -> Reservation:
        if cost < 0:
            raise ValueError(f"cost must be >= 0, got {cost}")
        request_id = self._id_factory()
        log = logger.bind(reservation_id=request_id, action=action, cost=cost)

        try:
            response = await self._service.reserve(cost, action, request_id)
        except InsufficientFundsError as exc:
            self.balance = exc.balance
            log.info("ledger_insufficient_funds", balance=exc.balance)
            raise
        except TransportError as exc:
            log.warning("ledger_reserve_unavailable", error=str(exc), retryable=exc.retryable)
            raise LedgerUnavailableError(
                f"Could not reserve credits: {exc}", retryable=exc.retryable
            ) from exc

        reservation = Reservation(
            id=request_id,
            action=action,
            cost=cost,
            balance_after=response.balance,
        )
        self._reservations[request_id] = reservation
        self.balance = response.balance
        self._persist()
        log.info("ledger_reserved", balance=response.balance)
        return reservation.model_copy()

    # --- Phase 2 ---

    async def finalize(self, reservation_id: str, disposition: Disposition) -> FinalizeResult:
        if reservation_id not in self._reservations:
            raise KeyError(f"Unknown reservation {reservation_id}")

        async with self._lock(reservation_id):
            reservation = self._reservations[reservation_id]
            log = logger.bind(reservation_id=reservation_id, disposition=disposition)

            if reservation.is_terminal:
                log.info("ledger_finalize_duplicate", status=reservation.status)
                return self._result(reservation)

            if reservation.pending_disposition and reservation.pending_disposition != disposition:
                log.warning(
                    "ledger_disposition_conflict",
                    pending=reservation.pending_disposition,
                )
                disposition = reservation.pending_disposition

            last_error: Exception | None = None
            for attempt in range(1, self._finalize_max_attempts + 1):
                try:
                    response = await self._service.finalize(reservation_id, disposition)
                except TransportError as exc:
                    last_error = exc
                    if not exc.retryable or attempt == self._finalize_max_attempts:
                        break
                    delay = self._finalize_backoff * 2 ** (attempt - 1)
                    log.warning(
                        "ledger_finalize_retry",
                        attempt=attempt,
                        delay=delay,
                        error=str(exc),
                    )
                    await self._sleep(delay)
                    continue
                except Exception as exc:
                    # The response broke the client contract; retrying will not fix it
                    log.exception("ledger_finalize_unexpected", attempt=attempt)
                    last_error = exc
                    break

                applied = response.disposition
                if applied != disposition:
                    # The service already settled this id the other way; its answer is the truth
                    log.warning("ledger_disposition_overridden", applied=applied)
                reservation.status = _TERMINAL_STATUS[applied]  # type: ignore[assignment]
                reservation.pending_disposition = None
                reservation.finalized_at = time.time()
                if response.balance is not None:
                    reservation.balance_after = response.balance
                    self.balance = response.balance
                elif applied == "refund" and self.balance is not None:
                    self.balance += reservation.cost
                self._prune_settled()
                self._persist()
                log.info("ledger_finalized", status=reservation.status, balance=self.balance)
                return self._result(reservation)

            reservation.status = "failed"
            reservation.pending_disposition = disposition
            self._persist()
            log.error(
                "ledger_unreconciled_reservation",
                cost=reservation.cost,
                attempts=attempt,
                error=str(last_error),
                error_type=type(last_error).__name__,
            )
            return self._result(reservation)

    async def reconcile(self) -> list[FinalizeResult]:
        """Retry every reservation whose finalize previously gave up."""
        stuck = [
            (r.id, r.pending_disposition)
            for r in self._reservations.values()
            if r.status == "failed" and r.pending_disposition is not None
        ]
        results = []
        for reservation_id, pending in stuck:
            results.append(await self.finalize(reservation_id, pending))
        if stuck:
            logger.info(
                "ledger_reconciled",
                attempted=len(stuck),
                settled=sum(1 for r in results if r.status != "failed"),
            )
        return results

    # --- Persistence ---

    def load(self) -> None:
        if self._store is None:
            return
        try:
            raw = self._store.get(RESERVATIONS_KEY)
        except PersistenceError:
            logger.exception("ledger_load_failed")
            return
        if not raw:
            return
        try:
            loaded = _RESERVATIONS.validate_json(raw)
        except ValidationError:
            logger.warning("ledger_store_corrupt", size=len(raw))
            return
        self._reservations = {r.id: r for r in loaded}
        self._prune_settled()
        logger.info(
            "ledger_loaded",
            count=len(loaded),
            open=sum(1 for r in loaded if not r.is_terminal),
        )

    def _persist(self) -> None:
        if self._store is None:
            return
        try:
            self._store.set(
                RESERVATIONS_KEY, _RESERVATIONS.dump_json(list(self._reservations.values()))
            )
        except PersistenceError:
            logger.exception("ledger_persist_failed")

    # --- Internals ---

    def _prune_settled(self) -> None:
        settled = sorted(
            (r for r in self._reservations.values() if r.is_terminal),
            key=lambda r: r.finalized_at or r.created_at,
        )
        for reservation in settled[: max(0, len(settled) - self._retained_settled)]:
            del self._reservations[reservation.id]
            self._locks.pop(reservation.id, None)

    def _lock(self, reservation_id: str) -> asyncio.Lock:
        lock = self._locks.get(reservation_id)
        if lock is None:
            lock = self._locks[reservation_id] = asyncio.Lock()
        return lock

    @staticmethod
    def _result(reservation: Reservation) -> FinalizeResult:
        if reservation.status == "committed":
            disposition: Disposition = "commit"
        elif reservation.status == "refunded":
            disposition = "refund"
        else:
            disposition = reservation.pending_disposition or "refund"
        return FinalizeResult(
            reservation_id=reservation.id,
            disposition=disposition,
            status=reservation.status,
            balance=reservation.balance_after,
        )
