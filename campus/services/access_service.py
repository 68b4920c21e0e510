"""
Access Suspension Cascade

Suspends and restores tenants, cuts the sessions of every affected student,
answers "may this member use the platform?" and reports on suspended tenants.

Suspend and restore are idempotent. The gateway is told first; if it refuses,
nothing is written locally. Teachers, staff and tenant admins are never
locked out or counted as affected.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from campus.exceptions import CampusError, GatewayError
from campus.models.member import Member, billable_member_clause
from campus.models.suspension_event import AccessAction, SuspensionEvent
from campus.models.tenant import SubscriptionStatus, Tenant
from campus.services.billing_service import BillingLedger
from campus.services.payment_gateway import PaymentGateway
from campus.utils.clock import utcnow
from campus.utils.locks import tenant_lock
from campus.utils.metrics import record_access_action
from campus.utils.session import SessionStore

logger = logging.getLogger(__name__)

# Reason codes returned by access_decision
ACCESS_GRANTED = "ACCESS_GRANTED"
PRIVILEGED_ROLE = "PRIVILEGED_ROLE"
NO_TENANT = "NO_TENANT"
SUBSCRIPTION_SUSPENDED = "SUBSCRIPTION_SUSPENDED"
SUBSCRIPTION_CANCELLED = "SUBSCRIPTION_CANCELLED"
PAYMENT_OVERDUE = "PAYMENT_OVERDUE"
SUBSCRIPTION_REQUIRED = "SUBSCRIPTION_REQUIRED"

_DENIAL_REASONS = {
    SubscriptionStatus.suspended.value: SUBSCRIPTION_SUSPENDED,
    SubscriptionStatus.cancelled.value: SUBSCRIPTION_CANCELLED,
    SubscriptionStatus.past_due.value: PAYMENT_OVERDUE,
    SubscriptionStatus.pending.value: SUBSCRIPTION_REQUIRED,
}


@dataclass
class AccessActionResult:
    tenant_id: int
    action: str
    changed: bool
    status: str
    affected_members: int = 0
    sessions_invalidated: bool = True
    message: str = ""


@dataclass
class AccessDecision:
    allowed: bool
    reason: str
    tenant_status: str | None = None


@dataclass
class SuspensionInfo:
    tenant_id: int
    suspended: bool
    status: str
    suspended_at: datetime | None = None
    reason: str | None = None
    actor_id: int | None = None
    affected_members: int = 0


@dataclass
class BulkSuspendResult:
    succeeded: list[int] = field(default_factory=list)
    unchanged: list[int] = field(default_factory=list)
    failed: dict[int, str] = field(default_factory=dict)


class AccessService:
    def __init__(
        self,
        db: AsyncSession,
        gateway: PaymentGateway | None = None,
        session_store: SessionStore | None = None,
        ledger: BillingLedger | None = None,
    ):
        self.db = db
        self.gateway = gateway
        self.session_store = session_store
        self.ledger = ledger or BillingLedger(db)

    async def _latest_event(self, tenant_id: int, action: AccessAction | None = None) -> SuspensionEvent | None:
        query = select(SuspensionEvent).where(SuspensionEvent.tenant_id == tenant_id)
        if action is not None:
            query = query.where(SuspensionEvent.action == action.value)
        result = await self.db.execute(query.order_by(SuspensionEvent.id.desc()).limit(1))
        return result.scalars().first()

    async def _live_subscription_id(self, tenant_id: int) -> str | None:
        record = await self.ledger.get_authoritative_record(tenant_id)
        if record is not None and record.has_live_subscription:
            return record.gateway_subscription_id
        return None

    # ------------------------------------------------------------------
    # Suspend / restore
    # ------------------------------------------------------------------

    async def suspend(
        self,
        tenant_id: int,
        reason: str,
        actor_id: int | None = None,
        notify_gateway: bool = True,
    ) -> AccessActionResult:
        """
        Suspend a tenant and log out its students.

        Suspending an already suspended tenant succeeds without changes.
        """
        async with tenant_lock(tenant_id):
            tenant = await self.ledger.get_tenant(tenant_id)
            current_status = await self.ledger.resolve_status(tenant)

            if current_status == SubscriptionStatus.suspended.value:
                record_access_action(AccessAction.suspend.value, "noop")
                return AccessActionResult(
                    tenant_id=tenant_id,
                    action=AccessAction.suspend.value,
                    changed=False,
                    status=current_status,
                    message="Tenant is already suspended",
                )

            subscription_id = await self._live_subscription_id(tenant_id) if notify_gateway else None
            if subscription_id and self.gateway is not None:
                try:
                    await self.gateway.suspend_subscription(subscription_id, reason)
                except GatewayError:
                    record_access_action(AccessAction.suspend.value, "failed")
                    logger.error("Gateway refused to suspend subscription %s for tenant %d", subscription_id, tenant_id)
                    raise

            member_ids = await self.ledger.billable_member_ids(tenant_id)
            locked_out_ids = await self.ledger.restricted_member_ids(tenant_id)
            previous_override = tenant.status_override
            tenant.status_override = SubscriptionStatus.suspended.value
            self.db.add(
                SuspensionEvent(
                    tenant_id=tenant_id,
                    action=AccessAction.suspend.value,
                    reason=reason,
                    actor_id=actor_id,
                    previous_status=previous_override,
                    affected_member_count=len(member_ids),
                )
            )
            try:
                await self.ledger.commit(tenant_id)
            except Exception:
                await self.db.rollback()
                if subscription_id and self.gateway is not None:
                    await self._undo_gateway(self.gateway.resume_subscription, subscription_id, tenant_id)
                record_access_action(AccessAction.suspend.value, "failed")
                raise

        sessions_invalidated = await self._invalidate_sessions(tenant_id, locked_out_ids)
        record_access_action(AccessAction.suspend.value, "changed")
        logger.warning(
            "AUDIT tenant_suspended tenant_id=%d actor=%s reason=%r affected_members=%d",
            tenant_id,
            actor_id,
            reason,
            len(member_ids),
        )
        return AccessActionResult(
            tenant_id=tenant_id,
            action=AccessAction.suspend.value,
            changed=True,
            status=SubscriptionStatus.suspended.value,
            affected_members=len(member_ids),
            sessions_invalidated=sessions_invalidated,
            message=f"Tenant suspended; {len(member_ids)} member(s) lost access",
        )

    async def restore(
        self,
        tenant_id: int,
        reason: str,
        actor_id: int | None = None,
        notify_gateway: bool = True,
    ) -> AccessActionResult:
        """Lift a suspension, returning the tenant to its pre-suspension status."""
        async with tenant_lock(tenant_id):
            tenant = await self.ledger.get_tenant(tenant_id)
            current_status = await self.ledger.resolve_status(tenant)

            if current_status != SubscriptionStatus.suspended.value:
                record_access_action(AccessAction.restore.value, "noop")
                return AccessActionResult(
                    tenant_id=tenant_id,
                    action=AccessAction.restore.value,
                    changed=False,
                    status=current_status,
                    message="Tenant is not suspended",
                )

            subscription_id = await self._live_subscription_id(tenant_id) if notify_gateway else None
            if subscription_id and self.gateway is not None:
                try:
                    await self.gateway.resume_subscription(subscription_id)
                except GatewayError:
                    record_access_action(AccessAction.restore.value, "failed")
                    logger.error("Gateway refused to resume subscription %s for tenant %d", subscription_id, tenant_id)
                    raise

            last_suspension = await self._latest_event(tenant_id, AccessAction.suspend)
            tenant.status_override = last_suspension.previous_status if last_suspension is not None else None
            if tenant.status_override == SubscriptionStatus.suspended.value:
                tenant.status_override = None
            if await self.ledger.resolve_status(tenant) == SubscriptionStatus.suspended.value:
                # The billing record itself says suspended; an explicit restore overrides it
                tenant.status_override = SubscriptionStatus.active.value

            affected = await self.ledger.count_billable_members(tenant_id)
            self.db.add(
                SuspensionEvent(
                    tenant_id=tenant_id,
                    action=AccessAction.restore.value,
                    reason=reason,
                    actor_id=actor_id,
                    previous_status=SubscriptionStatus.suspended.value,
                    affected_member_count=affected,
                )
            )
            try:
                await self.ledger.commit(tenant_id)
            except Exception:
                await self.db.rollback()
                if subscription_id and self.gateway is not None:
                    await self._undo_gateway(
                        lambda sub_id: self.gateway.suspend_subscription(sub_id, "restore_failed"),
                        subscription_id,
                        tenant_id,
                    )
                record_access_action(AccessAction.restore.value, "failed")
                raise

            new_status = await self.ledger.resolve_status(tenant)

        record_access_action(AccessAction.restore.value, "changed")
        logger.warning(
            "AUDIT tenant_restored tenant_id=%d actor=%s reason=%r status=%s",
            tenant_id,
            actor_id,
            reason,
            new_status,
        )
        return AccessActionResult(
            tenant_id=tenant_id,
            action=AccessAction.restore.value,
            changed=True,
            status=new_status,
            affected_members=affected,
            message=f"Tenant restored to {new_status}",
        )

    async def _undo_gateway(self, call, subscription_id: str, tenant_id: int) -> None:
        try:
            await call(subscription_id)
        except GatewayError as e:
            logger.critical(
                f"Gateway state for subscription {subscription_id} (tenant {tenant_id}) "
                f"no longer matches the local status: {e}"
            )

    async def _invalidate_sessions(self, tenant_id: int, member_ids: list[int]) -> bool:
        if not member_ids or self.session_store is None:
            return True
        try:
            count = await self.session_store.invalidate_sessions_for_members(member_ids)
        except Exception as e:
            logger.error(f"Session invalidation failed for tenant {tenant_id}: {e}")
            return False
        logger.info("Invalidated %d session(s) for %d member(s) of tenant %d", count, len(member_ids), tenant_id)
        return True

    async def bulk_suspend(self, tenant_ids: list[int], reason: str, actor_id: int | None = None) -> BulkSuspendResult:
        summary = BulkSuspendResult()
        for tenant_id in tenant_ids:
            try:
                result = await self.suspend(tenant_id, reason, actor_id=actor_id)
            except CampusError as e:
                logger.error(f"Bulk suspend failed for tenant {tenant_id}: {e.message}")
                summary.failed[tenant_id] = e.message
                continue
            if result.changed:
                summary.succeeded.append(tenant_id)
            else:
                summary.unchanged.append(tenant_id)
        logger.info(
            "Bulk suspend: %d suspended, %d already suspended, %d failed",
            len(summary.succeeded),
            len(summary.unchanged),
            len(summary.failed),
        )
        return summary

    # ------------------------------------------------------------------
    # Access checks
    # ------------------------------------------------------------------

    async def access_decision(self, member: Member, tenant: Tenant | None = None) -> AccessDecision:
        if member.is_privileged:
            return AccessDecision(allowed=True, reason=PRIVILEGED_ROLE)
        if member.tenant_id is None:
            return AccessDecision(allowed=True, reason=NO_TENANT)

        if tenant is None:
            tenant = await self.ledger.get_tenant(member.tenant_id)
        status = await self.ledger.resolve_status(tenant)
        if status == SubscriptionStatus.active.value:
            return AccessDecision(allowed=True, reason=ACCESS_GRANTED, tenant_status=status)
        return AccessDecision(allowed=False, reason=_DENIAL_REASONS.get(status, SUBSCRIPTION_REQUIRED), tenant_status=status)

    async def resolve_access(self, member: Member, tenant: Tenant | None = None) -> bool:
        decision = await self.access_decision(member, tenant)
        return decision.allowed

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def get_suspension_info(self, tenant_id: int) -> SuspensionInfo:
        tenant = await self.ledger.get_tenant(tenant_id)
        status = await self.ledger.resolve_status(tenant)
        if status != SubscriptionStatus.suspended.value:
            return SuspensionInfo(tenant_id=tenant_id, suspended=False, status=status)

        event = await self._latest_event(tenant_id, AccessAction.suspend)
        return SuspensionInfo(
            tenant_id=tenant_id,
            suspended=True,
            status=status,
            suspended_at=event.created_at if event else None,
            reason=event.reason if event else None,
            actor_id=event.actor_id if event else None,
            affected_members=await self.ledger.count_billable_members(tenant_id),
        )

    async def generate_audit_report(self) -> dict[str, Any]:
        """
        Every currently suspended tenant with when, why and how many billable
        members are affected.
        """
        result = await self.db.execute(
            select(Tenant).where(Tenant.status_override == SubscriptionStatus.suspended.value).order_by(Tenant.id)
        )
        tenants = list(result.scalars().all())

        entries = []
        total_members = 0
        for tenant in tenants:
            event = await self._latest_event(tenant.id, AccessAction.suspend)
            count_result = await self.db.execute(select(func.count(Member.id)).where(billable_member_clause(tenant.id)))
            student_count = count_result.scalar_one()
            total_members += student_count
            entries.append(
                {
                    "tenant_id": tenant.id,
                    "tenant_name": tenant.name,
                    "suspended_at": event.created_at if event else None,
                    "reason": event.reason if event else None,
                    "actor_id": event.actor_id if event else None,
                    "student_count": student_count,
                }
            )

        return {
            "generated_at": utcnow(),
            "total_suspended_tenants": len(entries),
            "total_suspended_members": total_members,
            "tenants": entries,
        }

    get_suspension_audit_report = generate_audit_report

