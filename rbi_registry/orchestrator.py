"""
RBI Registry — Background worker.

Startup sequence:
1. Configure logging
2. Connect to the registry database and create missing tables
3. Wire hierarchy store, provisioning service and re-drive queue
4. Loop: sweep stuck signups, drive due ones, audit hierarchy integrity

Run with: python -m rbi_registry.orchestrator
"""

from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import dataclass

import structlog

from rbi_registry.config import settings
from rbi_registry.core.roles import RoleCatalog
from rbi_registry.geography.hierarchy import HierarchyStore
from rbi_registry.provisioning.backoff import BackoffPolicy
from rbi_registry.provisioning.identity_client import IdentityProviderClient
from rbi_registry.provisioning.queue import DriveStatus, ProvisioningQueue
from rbi_registry.provisioning.service import ProvisioningService
from rbi_registry.store.database import Database


def configure_logging() -> None:
    """Configure structured logging for the worker and stdlib loggers."""
    logging.basicConfig(level=logging.getLevelName(settings.log_level), format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            (
                structlog.dev.ConsoleRenderer()
                if settings.log_format != "json"
                else structlog.processors.JSONRenderer()
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(settings.log_level)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


@dataclass
class CycleResult:
    swept: int
    provisioned: int
    requeued: int
    failed: int
    integrity_violations: int


def run_cycle(queue: ProvisioningQueue, store: HierarchyStore) -> CycleResult:
    """One worker pass. Blocking; the async loop runs it in a thread."""
    swept = queue.sweep()
    outcomes = queue.run_due()
    violations = store.verify_integrity()
    return CycleResult(
        swept=swept,
        provisioned=sum(o.status == DriveStatus.PROVISIONED for o in outcomes),
        requeued=sum(o.status == DriveStatus.REQUEUED for o in outcomes),
        failed=sum(o.status in (DriveStatus.REJECTED, DriveStatus.ESCALATED) for o in outcomes),
        integrity_violations=len(violations),
    )


async def main() -> None:
    """Main worker loop."""
    configure_logging()
    log = structlog.get_logger()

    log.info(
        "rbi_registry.worker.starting",
        sweep_interval=settings.sweep_interval_seconds,
        max_redrives=settings.provisioning_max_redrives,
    )

    # Phase 1: Infrastructure
    db = Database(settings.database_url_sync)
    db.initialize()
    log.info("rbi_registry.worker.database_ready")

    # Phase 2: Services
    store = HierarchyStore(db)
    identity_client = IdentityProviderClient(
        settings.identity_provider_url,
        settings.identity_service_key,
        timeout=settings.identity_timeout_seconds,
    )
    service = ProvisioningService(
        db,
        store,
        identity_client,
        roles=RoleCatalog(default_role_name=settings.default_role_name),
        backoff=BackoffPolicy.from_settings(settings),
        max_redrives=settings.provisioning_max_redrives,
        redrive_base_delay=settings.redrive_base_delay_seconds,
    )
    queue = ProvisioningQueue(
        service,
        max_redrives=settings.provisioning_max_redrives,
        base_delay=settings.redrive_base_delay_seconds,
    )
    log.info("rbi_registry.worker.running", levels=store.count_by_level())

    try:
        while True:
            result = await asyncio.to_thread(run_cycle, queue, store)
            if result.integrity_violations:
                log.critical(
                    "rbi_registry.worker.integrity_failure",
                    violations=result.integrity_violations,
                )
            log.info(
                "rbi_registry.worker.sweep_complete",
                swept=result.swept,
                provisioned=result.provisioned,
                requeued=result.requeued,
                failed=result.failed,
                operator_queue=len(queue.operator_queue),
            )
            await asyncio.sleep(settings.sweep_interval_seconds)

    except (KeyboardInterrupt, asyncio.CancelledError):
        log.info("rbi_registry.worker.shutdown")
    except Exception as e:
        log.exception("rbi_registry.worker.fatal_error", error=str(e))
        sys.exit(1)
    finally:
        identity_client.close()
        db.dispose()


if __name__ == "__main__":
    asyncio.run(main())
