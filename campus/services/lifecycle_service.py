"""
Member Lifecycle Service

Three unattended jobs move graduated students out of the platform:

- graduation marks graduating students as alumni and starts their grace period
- warnings e-mail members whose grace period ends within the warning window
- deletions queue account removal once the grace period has passed

Every job opens its own sessions, commits record by record and returns a
JobSummary. A failing record is rolled back, logged and counted; only a
failure to load the candidate set aborts a run.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from campus.config import settings
from campus.models.member import EnrollmentStatus, Member, MemberRole
from campus.models.member_lifecycle import MemberLifecycleRecord
from campus.models.tenant import Tenant
from campus.services.billing_service import BillingLedger
from campus.services.deletion_queue import AccountDeletionQueue
from campus.services.notification_service import DeletionNotifier
from campus.utils.clock import utcnow
from campus.utils.metrics import record_lifecycle_record

logger = logging.getLogger(__name__)

JOB_GRADUATION = "graduation"
JOB_WARNINGS = "warnings"
JOB_DELETIONS = "deletions"


@dataclass(frozen=True)
class LifecycleConfig:
    grace_period_days: int = 30
    warning_window_days: int = 7

    @classmethod
    def from_settings(cls) -> "LifecycleConfig":
        return cls(
            grace_period_days=settings.grace_period_days,
            warning_window_days=settings.deletion_warning_days,
        )


@dataclass
class JobSummary:
    job: str
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    warned: int = 0
    deleted: int = 0
    orphaned: int = 0
    errors: list[str] = field(default_factory=list)

    def record_failure(self, message: str) -> None:
        self.failed += 1
        self.errors.append(message)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class GraduationPolicy(Protocol):
    async def graduating_members(self, db: AsyncSession, tenant_id: int, now: datetime) -> list[Member]: ...


class GraduationDatePolicy:
    """Active students whose recorded graduation date has been reached."""

    async def graduating_members(self, db: AsyncSession, tenant_id: int, now: datetime) -> list[Member]:
        result = await db.execute(
            select(Member)
            .where(
                Member.tenant_id == tenant_id,
                Member.role == MemberRole.student.value,
                Member.enrollment_status == EnrollmentStatus.active.value,
                Member.graduation_date.is_not(None),
                Member.graduation_date <= now,
            )
            .order_by(Member.id)
        )
        return list(result.scalars().all())


class MemberLifecycleService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: DeletionNotifier,
        deletion_queue: AccountDeletionQueue,
        config: LifecycleConfig | None = None,
        policy: GraduationPolicy | None = None,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.deletion_queue = deletion_queue
        self.config = config or LifecycleConfig.from_settings()
        self.policy = policy or GraduationDatePolicy()

    async def _candidate_ids(self, job: str, query) -> list[int]:
        try:
            async with self.session_factory() as db:
                result = await db.execute(query)
                return list(result.scalars().all())
        except Exception:
            logger.exception("[Lifecycle] %s job could not load its candidates", job)
            raise

    def _fail(self, summary: JobSummary, subject: str, error: Exception) -> None:
        logger.error(f"[Lifecycle] {summary.job} failed for {subject}: {error}")
        summary.record_failure(f"{subject}: {error}")
        record_lifecycle_record(summary.job, "failed")

    # ------------------------------------------------------------------
    # Graduation
    # ------------------------------------------------------------------

    async def run_graduation(self, now: datetime | None = None) -> JobSummary:
        now = now or utcnow()
        summary = JobSummary(job=JOB_GRADUATION)
        tenant_ids = await self._candidate_ids(
            JOB_GRADUATION,
            select(Tenant.id).where(Tenant.is_active.is_(True)).order_by(Tenant.id),
        )

        for tenant_id in tenant_ids:
            try:
                async with self.session_factory() as db:
                    members = await self.policy.graduating_members(db, tenant_id, now)
                    member_ids = [member.id for member in members]
            except Exception as e:
                self._fail(summary, f"tenant {tenant_id}", e)
                continue

            graduated_here = 0
            for member_id in member_ids:
                summary.processed += 1
                async with self.session_factory() as db:
                    try:
                        started = await self._graduate_member(db, member_id, now)
                        await db.commit()
                    except Exception as e:
                        await db.rollback()
                        self._fail(summary, f"member {member_id}", e)
                        continue

                if started:
                    summary.succeeded += 1
                    graduated_here += 1
                    record_lifecycle_record(JOB_GRADUATION, "graduated")
                else:
                    summary.skipped += 1
                    record_lifecycle_record(JOB_GRADUATION, "skipped")

            if graduated_here:
                await self._sync_member_count(tenant_id)

        logger.info(f"[Lifecycle] graduation run finished: {summary.as_dict()}")
        return summary

    async def _graduate_member(self, db: AsyncSession, member_id: int, now: datetime) -> bool:
        """Graduate one member; False when there was nothing left to do."""
        member = await db.get(Member, member_id)
        if member is None:
            return False

        member.enrollment_status = EnrollmentStatus.graduated.value
        member.is_alumni = True
        graduated_at = member.graduation_date or now
        grace = timedelta(days=self.config.grace_period_days)

        result = await db.execute(select(MemberLifecycleRecord).where(MemberLifecycleRecord.member_id == member_id))
        record = result.scalars().first()
        if record is None:
            db.add(
                MemberLifecycleRecord(
                    tenant_id=member.tenant_id,
                    member_id=member_id,
                    graduated_at=graduated_at,
                    grace_period_ends_at=graduated_at + grace,
                )
            )
        elif record.grace_period_ends_at is None:
            record.graduated_at = record.graduated_at or graduated_at
            record.grace_period_ends_at = record.graduated_at + grace
        else:
            return False

        logger.info("[Lifecycle] member %d graduated; grace period ends %s", member_id, graduated_at + grace)
        return True

    async def _sync_member_count(self, tenant_id: int) -> None:
        async with self.session_factory() as db:
            ledger = BillingLedger(db)
            try:
                if await ledger.get_authoritative_record(tenant_id) is not None:
                    await ledger.sync_member_count(tenant_id)
            except Exception as e:
                await db.rollback()
                logger.error(f"[Lifecycle] member count sync failed for tenant {tenant_id}: {e}")

    # ------------------------------------------------------------------
    # Warnings
    # ------------------------------------------------------------------

    async def run_warnings(self, now: datetime | None = None) -> JobSummary:
        now = now or utcnow()
        summary = JobSummary(job=JOB_WARNINGS)
        cutoff = now + timedelta(days=self.config.warning_window_days)
        record_ids = await self._candidate_ids(
            JOB_WARNINGS,
            select(MemberLifecycleRecord.id)
            .where(
                MemberLifecycleRecord.grace_period_ends_at.is_not(None),
                MemberLifecycleRecord.grace_period_ends_at <= cutoff,
                MemberLifecycleRecord.notified_about_deletion.is_(False),
            )
            .order_by(MemberLifecycleRecord.id),
        )

        for record_id in record_ids:
            summary.processed += 1
            async with self.session_factory() as db:
                try:
                    record = await db.get(MemberLifecycleRecord, record_id)
                    if record is None or record.notified_about_deletion:
                        summary.skipped += 1
                        continue
                    if await db.get(Member, record.member_id) is None:
                        # Left for the deletion job
                        summary.skipped += 1
                        record_lifecycle_record(JOB_WARNINGS, "orphaned")
                        continue

                    await self.notifier.send_deletion_warning(record.member_id, record.grace_period_ends_at)
                    record.notified_about_deletion = True
                    record.notified_at = now
                    await db.commit()
                except Exception as e:
                    await db.rollback()
                    self._fail(summary, f"lifecycle record {record_id}", e)
                    continue

            summary.succeeded += 1
            summary.warned += 1
            record_lifecycle_record(JOB_WARNINGS, "warned")

        logger.info(f"[Lifecycle] warning run finished: {summary.as_dict()}")
        return summary

    # ------------------------------------------------------------------
    # Deletions
    # ------------------------------------------------------------------

    async def run_deletions(self, now: datetime | None = None) -> JobSummary:
        now = now or utcnow()
        summary = JobSummary(job=JOB_DELETIONS)
        record_ids = await self._candidate_ids(
            JOB_DELETIONS,
            select(MemberLifecycleRecord.id)
            .where(
                MemberLifecycleRecord.grace_period_ends_at.is_not(None),
                MemberLifecycleRecord.grace_period_ends_at < now,
            )
            .order_by(MemberLifecycleRecord.id),
        )

        for record_id in record_ids:
            summary.processed += 1
            async with self.session_factory() as db:
                try:
                    record = await db.get(MemberLifecycleRecord, record_id)
                    if record is None or record.grace_period_ends_at is None or record.grace_period_ends_at >= now:
                        summary.skipped += 1
                        continue

                    member_id = record.member_id
                    orphaned = await db.get(Member, member_id) is None
                    if not orphaned:
                        await self.deletion_queue.enqueue_account_deletion(member_id)
                    await db.delete(record)
                    await db.commit()
                except Exception as e:
                    await db.rollback()
                    self._fail(summary, f"lifecycle record {record_id}", e)
                    continue

            summary.succeeded += 1
            if orphaned:
                summary.orphaned += 1
                record_lifecycle_record(JOB_DELETIONS, "orphaned")
                logger.warning("[Lifecycle] removed orphaned lifecycle record %d (member %d gone)", record_id, member_id)
            else:
                summary.deleted += 1
                record_lifecycle_record(JOB_DELETIONS, "deleted")

        logger.info(f"[Lifecycle] deletion run finished: {summary.as_dict()}")
        return summary
