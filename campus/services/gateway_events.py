"""
Gateway Event Processor

Applies Stripe webhook events to the billing ledger and cascades the outcome
to tenant access. Each event id is applied at most once.
"""

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from campus.models.billing_record import BillingRecord
from campus.models.gateway_event import ProcessedGatewayEvent
from campus.models.suspension_event import AccessAction, SuspensionEvent
from campus.models.tenant import SubscriptionStatus
from campus.services.access_service import AccessService
from campus.services.billing_service import BillingLedger
from campus.services.payment_gateway import from_timestamp, map_subscription_status
from campus.utils.clock import utcnow

logger = logging.getLogger(__name__)

SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
PAYMENT_FAILED = "invoice.payment_failed"
PAYMENT_SUCCEEDED = "invoice.payment_succeeded"

REASON_PAYMENT_FAILED = "payment_failed"
REASON_SUBSCRIPTION_CANCELLED = "subscription_cancelled"


@dataclass
class GatewayEventResult:
    event_id: str
    event_type: str
    tenant_id: int | None = None
    action: str = "ignored"
    duplicate: bool = False


class GatewayEventProcessor:
    def __init__(self, db: AsyncSession, access_service: AccessService | None = None):
        self.db = db
        self.access = access_service or AccessService(db)
        self.ledger = self.access.ledger

    async def _already_processed(self, event_id: str) -> bool:
        result = await self.db.execute(
            select(ProcessedGatewayEvent.id).where(ProcessedGatewayEvent.event_id == event_id)
        )
        return result.scalar_one_or_none() is not None

    async def _find_record(self, obj: dict[str, Any]) -> BillingRecord | None:
        """Billing record an event object refers to, by tenant metadata or gateway handles."""
        metadata = obj.get("metadata") or {}
        tenant_id = metadata.get("tenant_id")
        if tenant_id is not None:
            try:
                record = await self.ledger.get_authoritative_record(int(tenant_id))
            except (TypeError, ValueError):
                logger.warning("Ignoring malformed tenant_id metadata %r", tenant_id)
                record = None
            if record is not None:
                return record

        if obj.get("object") == "subscription":
            subscription_id = obj.get("id")
        else:
            subscription_id = obj.get("subscription")
        customer_id = obj.get("customer")

        handles = []
        if subscription_id:
            handles.append(BillingRecord.gateway_subscription_id == subscription_id)
        if customer_id:
            handles.append(BillingRecord.gateway_customer_id == customer_id)
        if not handles:
            return None

        result = await self.db.execute(
            select(BillingRecord.tenant_id)
            .where(or_(*handles))
            .order_by(BillingRecord.created_at.desc(), BillingRecord.id.desc())
            .limit(1)
        )
        found_tenant_id = result.scalar_one_or_none()
        if found_tenant_id is None:
            return None
        return await self.ledger.get_authoritative_record(found_tenant_id)

    async def process(self, event_id: str, event_type: str, payload: dict[str, Any]) -> GatewayEventResult:
        """
        Apply one gateway event.

        Args:
            event_id: The gateway's unique event id
            event_type: e.g. ``invoice.payment_failed``
            payload: The event's ``data.object``
        """
        if await self._already_processed(event_id):
            logger.info(f"Gateway event {event_id} already processed; skipping")
            return GatewayEventResult(event_id=event_id, event_type=event_type, duplicate=True)

        result = GatewayEventResult(event_id=event_id, event_type=event_type)
        record = await self._find_record(payload)

        if record is None:
            logger.warning("No tenant found for gateway event %s (%s)", event_id, event_type)
        else:
            result.tenant_id = record.tenant_id
            try:
                result.action = await self._apply(event_type, payload, record)
            except Exception:
                await self.db.rollback()
                logger.exception("Failed to apply gateway event %s (%s)", event_id, event_type)
                raise

        self.db.add(ProcessedGatewayEvent(event_id=event_id, event_type=event_type, tenant_id=result.tenant_id))
        try:
            await self.db.commit()
        except IntegrityError:
            # Delivered twice concurrently; the other delivery recorded it
            await self.db.rollback()
            result.duplicate = True

        logger.info(
            "Gateway event %s (%s) for tenant %s: %s",
            event_id,
            event_type,
            result.tenant_id,
            result.action,
        )
        return result

    async def _apply(self, event_type: str, obj: dict[str, Any], record: BillingRecord) -> str:
        tenant_id = record.tenant_id

        if event_type in (SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED):
            record.status = map_subscription_status(obj.get("status"))
            record.gateway_subscription_id = obj.get("id") or record.gateway_subscription_id
            record.gateway_customer_id = obj.get("customer") or record.gateway_customer_id
            period_start = from_timestamp(obj.get("current_period_start"))
            period_end = from_timestamp(obj.get("current_period_end"))
            if period_start is not None:
                record.current_period_start = period_start
            if period_end is not None:
                record.current_period_end = period_end
                record.next_payment_at = period_end
            return f"status_{record.status}"

        if event_type == SUBSCRIPTION_DELETED:
            record.status = SubscriptionStatus.cancelled.value
            await self.access.suspend(tenant_id, REASON_SUBSCRIPTION_CANCELLED, notify_gateway=False)
            return "cancelled"

        if event_type == PAYMENT_FAILED:
            record.status = SubscriptionStatus.past_due.value
            await self.access.suspend(tenant_id, REASON_PAYMENT_FAILED, notify_gateway=False)
            return "suspended"

        if event_type == PAYMENT_SUCCEEDED:
            record.status = SubscriptionStatus.active.value
            paid_at = from_timestamp((obj.get("status_transitions") or {}).get("paid_at"))
            record.last_payment_at = paid_at or utcnow()

            if await self._suspended_for_nonpayment(tenant_id):
                await self.access.restore(tenant_id, "payment_succeeded", notify_gateway=False)
                return "restored"
            return "payment_recorded"

        logger.debug("Unhandled gateway event type %s", event_type)
        return "ignored"

    async def _suspended_for_nonpayment(self, tenant_id: int) -> bool:
        tenant = await self.ledger.get_tenant(tenant_id)
        if tenant.status_override != SubscriptionStatus.suspended.value:
            return False
        result = await self.db.execute(
            select(SuspensionEvent)
            .where(SuspensionEvent.tenant_id == tenant_id, SuspensionEvent.action == AccessAction.suspend.value)
            .order_by(SuspensionEvent.id.desc())
            .limit(1)
        )
        event = result.scalars().first()
        return event is not None and event.reason == REASON_PAYMENT_FAILED
