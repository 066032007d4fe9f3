"""Process entrypoint — builds the service graph and runs restart reconciliation.

Run locally with:
    python -m genflow.runtime

With ``GENFLOW_USE_MOCK_SERVICES=true`` (the default) the remote services are
in-process fakes; otherwise they are httpx clients against ``api_base_url``.
"""

from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass

import httpx
import structlog

from genflow.cache import BoundedCache
from genflow.clients.credits import HttpCreditService
from genflow.clients.generation import HttpGenerationService
from genflow.clients.http import build_client
from genflow.clients.mock_services import MockCreditService, MockGenerationService
from genflow.clients.protocols import CreditService, StatusService, SubmissionService
from genflow.config import Settings, settings
from genflow.ledger import CreditLedger
from genflow.logging import configure_logging
from genflow.orchestrator import JobOrchestrator
from genflow.poller import StatusPoller
from genflow.storage import DurableStore, FileStore, MemoryStore

logger = structlog.get_logger()


@dataclass
class Services:
    store: DurableStore
    cache: BoundedCache
    ledger: CreditLedger
    poller: StatusPoller
    orchestrator: JobOrchestrator
    http_client: httpx.AsyncClient | None = None

    async def aclose(self) -> None:
        self.orchestrator.shutdown()
        if self.http_client is not None:
            await self.http_client.aclose()


def _remote_services(
    config: Settings,
) -> tuple[CreditService, SubmissionService, StatusService, httpx.AsyncClient | None]:
    """Mock or real remote services based on config."""
    if config.use_mock_services:
        generation = MockGenerationService(estimated_seconds=config.default_estimated_seconds)
        return MockCreditService(), generation, generation, None
    client = build_client(config)
    http_generation = HttpGenerationService(client)
    return HttpCreditService(client), http_generation, http_generation, client


def build_services(config: Settings = settings) -> Services:
    """Wire every component once and restore persisted state."""
    store: DurableStore = FileStore(config.store_dir) if config.store_dir else MemoryStore()
    credit_service, submission, status, client = _remote_services(config)

    cache = BoundedCache(
        config.cache_max_size_bytes, config.cache_ttl_seconds, store=store
    )
    ledger = CreditLedger(
        credit_service,
        store=store,
        finalize_max_attempts=config.finalize_max_attempts,
        finalize_backoff_seconds=config.finalize_backoff_seconds,
    )
    poller = StatusPoller(status)
    orchestrator = JobOrchestrator(
        ledger=ledger,
        submission=submission,
        poller=poller,
        cache=cache,
        store=store,
        poll_interval=config.poll_interval_seconds,
        poll_max_attempts=config.poll_max_attempts,
        default_estimated_seconds=config.default_estimated_seconds,
        default_cost=config.credit_cost,
        default_action=config.credit_action,
    )

    cache.load()
    ledger.load()
    orchestrator.load()

    if config.use_mock_services and config.environment != "development":
        logger.warning(
            "runtime_using_mock_services",
            environment=config.environment,
            hint="Set GENFLOW_USE_MOCK_SERVICES=false for the real backend",
        )
    logger.info(
        "runtime_services_built",
        store="file" if config.store_dir else "memory",
        mock_services=config.use_mock_services,
        cache_entries=len(cache),
    )
    return Services(
        store=store,
        cache=cache,
        ledger=ledger,
        poller=poller,
        orchestrator=orchestrator,
        http_client=client,
    )


async def run(config: Settings = settings) -> list[str]:
    """Recover jobs left in flight by the previous process and wait for them to settle."""
    services = build_services(config)
    try:
        recovered = await services.orchestrator.recover()
        logger.info("runtime_recovery_started", jobs=len(recovered))
        for job_id in recovered:
            job = await services.orchestrator.wait_for(job_id)
            logger.info("runtime_job_recovered", job_id=job_id, status=job.status)
        removed = services.cache.purge_expired()
        logger.info("runtime_recovery_finished", jobs=len(recovered), cache_purged=removed)
        return recovered
    finally:
        await services.aclose()


def main() -> None:
    """Entrypoint for `python -m genflow.runtime`."""
    configure_logging()
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass
    except Exception:
        logger.exception("runtime_fatal_error")
        sys.exit(1)


if __name__ == "__main__":
    main()
