"""Background jobs: the auto-release sweep and the refund reconciliation pass."""

from __future__ import annotations

from typing import TYPE_CHECKING

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from marketplace_escrow.config import get_settings
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.services.auto_release import AutoReleaseSweep
from marketplace_escrow.services.reconciliation import RefundReconciler

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from marketplace_escrow.config import Settings

logger = get_logger(__name__)

AUTO_RELEASE_JOB_ID = "auto_release_sweep"
RECONCILIATION_JOB_ID = "refund_reconciliation"


def build_scheduler(
    settings: Settings | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncIOScheduler:
    """Create (but do not start) the scheduler with the enabled jobs registered."""
    settings = settings or get_settings()
    scheduler = AsyncIOScheduler(
        jobstores={"default": MemoryJobStore()},
        executors={"default": AsyncIOExecutor()},
        job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 120},
        timezone="UTC",
    )

    if settings.auto_release_enabled:
        sweep = AutoReleaseSweep(session_factory, settings)
        scheduler.add_job(
            sweep.run,
            trigger=IntervalTrigger(seconds=settings.auto_release_interval_seconds),
            id=AUTO_RELEASE_JOB_ID,
            name="Auto-release due orders",
            replace_existing=True,
        )

    if settings.reconciliation_enabled:
        reconciler = RefundReconciler(session_factory, settings)
        scheduler.add_job(
            reconciler.run,
            trigger=IntervalTrigger(seconds=settings.reconciliation_interval_seconds),
            id=RECONCILIATION_JOB_ID,
            name="Reconcile refunds against orders",
            replace_existing=True,
        )

    logger.info(
        "scheduler.configured",
        jobs=[job.id for job in scheduler.get_jobs()],
    )
    return scheduler
