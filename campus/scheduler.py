"""
Background job scheduling.

The member lifecycle jobs run on independent interval triggers of the shared
AsyncIOScheduler; each job allows one instance at a time.
"""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from campus.services.lifecycle_service import MemberLifecycleService

scheduler = AsyncIOScheduler()

logger = logging.getLogger(__name__)

GRADUATION_JOB_ID = "lifecycle_graduation"
WARNING_JOB_ID = "lifecycle_deletion_warnings"
DELETION_JOB_ID = "lifecycle_deletions"


async def run_graduation_job(service: MemberLifecycleService) -> None:
    summary = await service.run_graduation()
    logger.info(f"[Scheduler] graduation: {summary.succeeded} graduated, {summary.failed} failed")


async def run_warning_job(service: MemberLifecycleService) -> None:
    summary = await service.run_warnings()
    logger.info(f"[Scheduler] warnings: {summary.warned} sent, {summary.failed} failed")


async def run_deletion_job(service: MemberLifecycleService) -> None:
    summary = await service.run_deletions()
    logger.info(
        f"[Scheduler] deletions: {summary.deleted} queued, {summary.orphaned} orphaned, {summary.failed} failed"
    )


def install_lifecycle_jobs(
    scheduler,
    service: MemberLifecycleService,
    graduation_interval_hours: int = 24,
    warning_interval_hours: int = 24,
    deletion_interval_hours: int = 24,
) -> None:
    """
    Register the graduation, warning and deletion jobs.

    Args:
        scheduler: The application's AsyncIOScheduler.
        service: Lifecycle service the jobs delegate to.
    """
    jobs = (
        (GRADUATION_JOB_ID, run_graduation_job, graduation_interval_hours),
        (WARNING_JOB_ID, run_warning_job, warning_interval_hours),
        (DELETION_JOB_ID, run_deletion_job, deletion_interval_hours),
    )
    for job_id, func, interval_hours in jobs:
        scheduler.add_job(
            func,
            trigger=IntervalTrigger(hours=interval_hours),
            args=[service],
            id=job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
    logger.info(
        "lifecycle jobs installed (graduation=%dh, warnings=%dh, deletions=%dh)",
        graduation_interval_hours,
        warning_interval_hours,
        deletion_interval_hours,
    )
