"""
Tests for lifecycle job scheduling
"""

from unittest.mock import AsyncMock, MagicMock

from apscheduler.triggers.interval import IntervalTrigger

from campus.scheduler import (
    DELETION_JOB_ID,
    GRADUATION_JOB_ID,
    WARNING_JOB_ID,
    install_lifecycle_jobs,
    run_deletion_job,
    run_graduation_job,
    run_warning_job,
)
from campus.services.lifecycle_service import JobSummary


class TestInstallLifecycleJobs:
    def test_registers_three_independent_jobs(self):
        scheduler = MagicMock()
        service = MagicMock()

        install_lifecycle_jobs(scheduler, service, graduation_interval_hours=24, warning_interval_hours=12, deletion_interval_hours=6)

        assert scheduler.add_job.call_count == 3
        jobs = {c.kwargs["id"]: c for c in scheduler.add_job.call_args_list}
        assert set(jobs) == {GRADUATION_JOB_ID, WARNING_JOB_ID, DELETION_JOB_ID}
        assert jobs[GRADUATION_JOB_ID].args == (run_graduation_job,)
        for job in jobs.values():
            assert job.kwargs["max_instances"] == 1
            assert job.kwargs["replace_existing"] is True
            assert job.kwargs["args"] == [service]
            assert isinstance(job.kwargs["trigger"], IntervalTrigger)
        assert jobs[WARNING_JOB_ID].kwargs["trigger"].interval.total_seconds() == 12 * 3600
        assert jobs[DELETION_JOB_ID].kwargs["trigger"].interval.total_seconds() == 6 * 3600


class TestJobRunners:
    async def test_runners_delegate_to_service(self):
        service = MagicMock()
        service.run_graduation = AsyncMock(return_value=JobSummary(job="graduation", succeeded=2))
        service.run_warnings = AsyncMock(return_value=JobSummary(job="warnings", warned=1))
        service.run_deletions = AsyncMock(return_value=JobSummary(job="deletions", deleted=1))

        await run_graduation_job(service)
        await run_warning_job(service)
        await run_deletion_job(service)

        service.run_graduation.assert_awaited_once()
        service.run_warnings.assert_awaited_once()
        service.run_deletions.assert_awaited_once()
