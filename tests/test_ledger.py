"""Tests for CreditLedger — reserve, idempotent finalize, retry/give-up and reconcile."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from genflow.clients.mock_services import MockCreditService
from genflow.errors import InsufficientFundsError, LedgerUnavailableError, TransportError
from genflow.ledger import RESERVATIONS_KEY, CreditLedger, generate_request_id
from genflow.models.contracts import FinalizeResponse
from genflow.storage import MemoryStore


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def service() -> MockCreditService:
    return MockCreditService(balance=10)


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def ledger(service: MockCreditService, sleep: RecordingSleep) -> CreditLedger:
    return CreditLedger(service, store=MemoryStore(), sleep=sleep)


class TestRequestIds:
    def test_prefix_and_uniqueness(self) -> None:
        ids = {generate_request_id() for _ in range(100)}
        assert len(ids) == 100
        assert all(i.startswith("mobile_") for i in ids)


class TestReserve:
    """Phase one: tentative debit."""

    @pytest.mark.asyncio
    async def test_reserve_debits_balance(
        self, ledger: CreditLedger, service: MockCreditService
    ) -> None:
        reservation = await ledger.reserve(2, "image.gen")
        assert reservation.status == "reserved"
        assert reservation.cost == 2
        assert service.balance == 8
        assert ledger.balance == 8
        assert ledger.get(reservation.id) is not None

    @pytest.mark.asyncio
    async def test_insufficient_funds_leaves_no_reservation(
        self, ledger: CreditLedger, service: MockCreditService
    ) -> None:
        with pytest.raises(InsufficientFundsError) as exc_info:
            await ledger.reserve(11, "image.gen")
        assert exc_info.value.balance == 10
        assert exc_info.value.required == 11
        assert ledger.reservations() == []
        assert ledger.balance == 10
        assert service.balance == 10

    @pytest.mark.asyncio
    async def test_transport_failure_is_unavailable(
        self, ledger: CreditLedger, service: MockCreditService
    ) -> None:
        service.reserve_outages = 1
        with pytest.raises(LedgerUnavailableError):
            await ledger.reserve(2, "image.gen")
        assert ledger.reservations() == []

    @pytest.mark.asyncio
    async def test_non_retryable_transport_failure_keeps_flag(
        self, ledger: CreditLedger, service: MockCreditService
    ) -> None:
        service.reserve = AsyncMock(  # type: ignore[method-assign]
            side_effect=TransportError("Malformed response from credits-reserve", retryable=False)
        )
        with pytest.raises(LedgerUnavailableError) as exc_info:
            await ledger.reserve(2, "image.gen")
        assert exc_info.value.retryable is False
        assert ledger.reservations() == []

    @pytest.mark.asyncio
    async def test_negative_cost_rejected(self, ledger: CreditLedger) -> None:
        with pytest.raises(ValueError):
            await ledger.reserve(-1, "image.gen")

    @pytest.mark.asyncio
    async def test_zero_cost_allowed(self, ledger: CreditLedger) -> None:
        reservation = await ledger.reserve(0, "image.gen")
        assert reservation.cost == 0

    @pytest.mark.asyncio
    async def test_has_enough_credits_uses_last_balance(self, ledger: CreditLedger) -> None:
        assert ledger.has_enough_credits(1) is False
        await ledger.reserve(2, "image.gen")
        assert ledger.has_enough_credits(8) is True
        assert ledger.has_enough_credits(9) is False


class TestFinalize:
    """Phase two: commit or refund exactly once."""

    @pytest.mark.asyncio
    async def test_commit_keeps_debit(
        self, ledger: CreditLedger, service: MockCreditService
    ) -> None:
        reservation = await ledger.reserve(2, "image.gen")
        result = await ledger.finalize(reservation.id, "commit")
        assert result.status == "committed"
        assert result.disposition == "commit"
        assert service.balance == 8
        assert ledger.get(reservation.id).finalized_at is not None

    @pytest.mark.asyncio
    async def test_refund_restores_balance(
        self, ledger: CreditLedger, service: MockCreditService
    ) -> None:
        reservation = await ledger.reserve(2, "image.gen")
        result = await ledger.finalize(reservation.id, "refund")
        assert result.status == "refunded"
        assert service.balance == 10
        assert ledger.balance == 10

    @pytest.mark.asyncio
    async def test_second_finalize_is_a_local_noop(
        self, ledger: CreditLedger, service: MockCreditService
    ) -> None:
        reservation = await ledger.reserve(2, "image.gen")
        first = await ledger.finalize(reservation.id, "refund")
        second = await ledger.finalize(reservation.id, "refund")
        assert first == second
        assert len(service.finalize_calls) == 1
        assert service.balance == 10

    @pytest.mark.asyncio
    async def test_first_disposition_wins(
        self, ledger: CreditLedger, service: MockCreditService
    ) -> None:
        reservation = await ledger.reserve(2, "image.gen")
        await ledger.finalize(reservation.id, "commit")
        result = await ledger.finalize(reservation.id, "refund")
        assert result.status == "committed"
        assert service.balance == 8

    @pytest.mark.asyncio
    async def test_concurrent_finalize_calls_remote_once(
        self, ledger: CreditLedger, service: MockCreditService
    ) -> None:
        reservation = await ledger.reserve(2, "image.gen")
        results = await asyncio.gather(
            ledger.finalize(reservation.id, "refund"),
            ledger.finalize(reservation.id, "commit"),
        )
        assert {r.status for r in results} == {"refunded"}
        assert len(service.finalize_calls) == 1

    @pytest.mark.asyncio
    async def test_unknown_reservation(self, ledger: CreditLedger) -> None:
        with pytest.raises(KeyError):
            await ledger.finalize("mobile_0_nope", "commit")

    @pytest.mark.asyncio
    async def test_server_disposition_is_authoritative(self, sleep: RecordingSleep) -> None:
        service = MockCreditService(balance=10)
        ledger = CreditLedger(service, sleep=sleep)
        reservation = await ledger.reserve(2, "image.gen")
        service.finalize = AsyncMock(  # type: ignore[method-assign]
            return_value=FinalizeResponse(
                request_id=reservation.id, disposition="refund", balance=10
            )
        )
        result = await ledger.finalize(reservation.id, "commit")
        assert result.status == "refunded"
        assert ledger.balance == 10


class TestFinalizeRetries:
    """Transient failures are retried with exponential backoff."""

    @pytest.mark.asyncio
    async def test_retries_until_success(
        self, ledger: CreditLedger, service: MockCreditService, sleep: RecordingSleep
    ) -> None:
        reservation = await ledger.reserve(2, "image.gen")
        service.finalize_outages = 2
        result = await ledger.finalize(reservation.id, "refund")
        assert result.status == "refunded"
        assert sleep.delays == [0.5, 1.0]
        assert service.balance == 10

    @pytest.mark.asyncio
    async def test_gives_up_and_marks_unreconciled(
        self, ledger: CreditLedger, service: MockCreditService, sleep: RecordingSleep
    ) -> None:
        reservation = await ledger.reserve(2, "image.gen")
        service.finalize_outages = 5
        result = await ledger.finalize(reservation.id, "refund")

        assert result.status == "failed"
        assert result.disposition == "refund"
        stored = ledger.get(reservation.id)
        assert stored.pending_disposition == "refund"
        assert len(service.finalize_calls) == 5
        assert sleep.delays == [0.5, 1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_non_retryable_error_stops_immediately(
        self, ledger: CreditLedger, service: MockCreditService, sleep: RecordingSleep
    ) -> None:
        reservation = await ledger.reserve(2, "image.gen")
        service.finalize = AsyncMock(  # type: ignore[method-assign]
            side_effect=TransportError("bad request", retryable=False, status_code=400)
        )
        result = await ledger.finalize(reservation.id, "commit")
        assert result.status == "failed"
        assert service.finalize.await_count == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_unexpected_exception_marks_unreconciled(
        self, ledger: CreditLedger, service: MockCreditService, sleep: RecordingSleep
    ) -> None:
        reservation = await ledger.reserve(2, "image.gen")
        service.finalize = AsyncMock(  # type: ignore[method-assign]
            side_effect=ValueError("unknown disposition 'void'")
        )
        result = await ledger.finalize(reservation.id, "commit")

        assert result.status == "failed"
        assert ledger.get(reservation.id).pending_disposition == "commit"
        assert service.finalize.await_count == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_unreconciled_keeps_its_disposition(
        self, ledger: CreditLedger, service: MockCreditService
    ) -> None:
        reservation = await ledger.reserve(2, "image.gen")
        service.finalize_outages = 5
        await ledger.finalize(reservation.id, "refund")

        result = await ledger.finalize(reservation.id, "commit")
        assert result.status == "refunded"
        assert service.balance == 10


class TestReconcile:
    @pytest.mark.asyncio
    async def test_reconcile_settles_stuck_reservations(
        self, ledger: CreditLedger, service: MockCreditService
    ) -> None:
        stuck = await ledger.reserve(2, "image.gen")
        healthy = await ledger.reserve(2, "image.gen")
        service.finalize_outages = 5
        await ledger.finalize(stuck.id, "refund")
        await ledger.finalize(healthy.id, "commit")

        results = await ledger.reconcile()
        assert [r.reservation_id for r in results] == [stuck.id]
        assert results[0].status == "refunded"
        assert service.disposition_of(stuck.id) == "refund"
        assert service.disposition_of(healthy.id) == "commit"
        assert service.balance == 8

    @pytest.mark.asyncio
    async def test_reconcile_with_nothing_stuck(self, ledger: CreditLedger) -> None:
        assert await ledger.reconcile() == []


class TestPersistence:
    @pytest.mark.asyncio
    async def test_reservations_survive_restart(
        self, service: MockCreditService, sleep: RecordingSleep
    ) -> None:
        store = MemoryStore()
        ledger = CreditLedger(service, store=store, sleep=sleep)
        reservation = await ledger.reserve(2, "image.gen")
        service.finalize_outages = 5
        await ledger.finalize(reservation.id, "refund")

        restarted = CreditLedger(service, store=store, sleep=sleep)
        restarted.load()
        assert restarted.get(reservation.id).status == "failed"
        results = await restarted.reconcile()
        assert results[0].status == "refunded"

    def test_corrupt_store_loads_empty(self, service: MockCreditService) -> None:
        store = MemoryStore()
        store.set(RESERVATIONS_KEY, b"[{broken")
        ledger = CreditLedger(service, store=store)
        ledger.load()
        assert ledger.reservations() == []


class TestRetention:
    """Settled reservations are bounded; open and stuck ones are kept."""

    @pytest.mark.asyncio
    async def test_keeps_most_recent_settled(
        self, service: MockCreditService, sleep: RecordingSleep
    ) -> None:
        ledger = CreditLedger(service, sleep=sleep, retained_settled=2)
        ids = []
        for _ in range(4):
            reservation = await ledger.reserve(1, "image.gen")
            await ledger.finalize(reservation.id, "commit")
            ids.append(reservation.id)

        assert [r.id for r in ledger.reservations()] == ids[2:]
        assert ledger.get(ids[0]) is None

    @pytest.mark.asyncio
    async def test_open_and_stuck_reservations_survive(
        self, service: MockCreditService, sleep: RecordingSleep
    ) -> None:
        ledger = CreditLedger(service, sleep=sleep, retained_settled=0)
        open_ = await ledger.reserve(1, "image.gen")
        stuck = await ledger.reserve(1, "image.gen")
        settled = await ledger.reserve(1, "image.gen")
        service.finalize_outages = 5
        await ledger.finalize(stuck.id, "refund")
        await ledger.finalize(settled.id, "commit")

        assert {r.id for r in ledger.reservations()} == {open_.id, stuck.id}
        assert ledger.get(stuck.id).status == "failed"

    @pytest.mark.asyncio
    async def test_load_applies_retention(
        self, service: MockCreditService, sleep: RecordingSleep
    ) -> None:
        store = MemoryStore()
        ledger = CreditLedger(service, store=store, sleep=sleep)
        for _ in range(3):
            reservation = await ledger.reserve(1, "image.gen")
            await ledger.finalize(reservation.id, "refund")

        restarted = CreditLedger(service, store=store, sleep=sleep, retained_settled=1)
        restarted.load()
        assert [r.id for r in restarted.reservations()] == [reservation.id]
