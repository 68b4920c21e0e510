"""
Membership Cap Service

Validates and applies membership-cap changes, charges the prorated cost of
an increase, and admits registrations under the cap.

A cap change that needs an immediate charge is written in two steps: the new
cap and a `pending` CapChangeEntry are committed first, then the gateway is
charged. Success marks the entry `charged`; a GatewayError restores the
previous cap and deletes the entry. A pending entry that outlives its
operation means the process died between the two steps; `check_consistency`
refuses further cap changes until `reconcile` has run.

Changes that need no charge (decreases, free tenants) update the live
subscription quantity before committing; a gateway failure leaves the cap
untouched.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from campus.exceptions import (
    BillingRecordNotFoundError,
    CapacityExceededError,
    ConsistencyError,
    GatewayError,
    GatewayNotConfiguredError,
    ValidationError,
)
from campus.models.billing_record import BillingMode, BillingRecord
from campus.models.cap_change import CapChangeEntry, CapChangeType, ChargeStatus
from campus.models.tenant import Tenant
from campus.services.billing_service import BillingLedger
from campus.services.payment_gateway import PaymentGateway
from campus.services.rate_service import ZERO, PriceCatalog, resolve_tenant_rate, to_cents
from campus.utils.clock import utcnow
from campus.utils.locks import tenant_lock
from campus.utils.metrics import record_cap_change, record_consistency_error

logger = logging.getLogger(__name__)


@dataclass
class CapChangeResult:
    tenant_id: int
    previous_cap: int | None
    new_cap: int | None
    delta: int
    rate: Decimal
    additional_cost: Decimal
    new_total_amount: Decimal | None
    charged: bool = False
    deferred: bool = False
    gateway_reference: str | None = None
    message: str = ""


@dataclass
class CapStatus:
    tenant_id: int
    cap: int | None
    enforced: bool
    active_count: int
    remaining: int | None
    billed_cap: int | None
    consistent: bool


class CapService:
    def __init__(
        self,
        db: AsyncSession,
        gateway: PaymentGateway | None,
        catalog: PriceCatalog,
        ledger: BillingLedger | None = None,
    ):
        self.db = db
        self.gateway = gateway
        self.catalog = catalog
        self.ledger = ledger or BillingLedger(db, catalog.config)

    # ------------------------------------------------------------------
    # Cap changes
    # ------------------------------------------------------------------

    async def set_cap(
        self,
        tenant_id: int,
        new_cap: int,
        actor_id: int | None = None,
        reason: str | None = None,
    ) -> CapChangeResult:
        """Set (or first enable) the membership cap of a tenant."""
        return await self._change_cap(tenant_id, new_cap, actor_id, reason, CapChangeType.set)

    async def request_cap_increase(
        self,
        tenant_id: int,
        new_cap: int,
        actor_id: int | None = None,
        reason: str | None = None,
    ) -> CapChangeResult:
        """Raise an already enforced cap; the tenant-admin path."""
        return await self._change_cap(tenant_id, new_cap, actor_id, reason, CapChangeType.increase)

    async def _change_cap(
        self,
        tenant_id: int,
        new_cap: int,
        actor_id: int | None,
        reason: str | None,
        change_type: CapChangeType,
    ) -> CapChangeResult:
        async with tenant_lock(tenant_id):
            await self.check_consistency(tenant_id)

            tenant = await self.ledger.get_tenant(tenant_id)
            previous_cap = tenant.membership_cap
            record = await self.ledger.get_authoritative_record(tenant_id)

            self._validate_new_cap(tenant, new_cap, change_type)
            if record is None:
                raise BillingRecordNotFoundError(tenant_id)

            active_count = await self.ledger.count_billable_members(tenant_id)
            if new_cap < active_count:
                record_cap_change(change_type.value, "rejected")
                raise ValidationError(
                    f"Cannot set cap to {new_cap}: tenant has {active_count} active members",
                    field="membership_cap",
                    details={"active_count": active_count, "requested_cap": new_cap},
                )

            rate = await resolve_tenant_rate(tenant, self.catalog)
            delta = new_cap - (previous_cap or 0)
            needs_charge = delta > 0 and rate > ZERO
            additional_cost = to_cents(Decimal(delta) * rate) if needs_charge else ZERO

            if not needs_charge:
                charge_status = ChargeStatus.not_required
            elif record.has_live_subscription:
                if self.gateway is None:
                    raise GatewayNotConfiguredError(operation="charge_prorated_amount")
                charge_status = ChargeStatus.pending
            else:
                charge_status = ChargeStatus.deferred

            # A cap change without a charge still moves the subscription quantity
            resize_subscription_id = None
            if charge_status is not ChargeStatus.pending and record.has_live_subscription:
                if self.gateway is None:
                    raise GatewayNotConfiguredError(operation="update_subscription_quantity")
                resize_subscription_id = record.gateway_subscription_id
            previous_quantity = record.billed_members

            snapshot = tenant.cap_snapshot()
            tenant.membership_cap = new_cap
            tenant.cap_enforced = True
            tenant.cap_set_at = utcnow()
            tenant.cap_set_by = actor_id

            entry = CapChangeEntry(
                tenant_id=tenant_id,
                previous_cap=previous_cap,
                new_cap=new_cap,
                change_type=change_type.value,
                actor_id=actor_id,
                reason=reason,
                active_member_count=active_count,
                rate=rate,
                additional_cost=additional_cost,
                charge_status=charge_status.value,
            )
            self.db.add(entry)

            if charge_status is not ChargeStatus.pending:
                if resize_subscription_id:
                    try:
                        await self.gateway.update_subscription_quantity(resize_subscription_id, new_cap)
                    except GatewayError:
                        await self.db.rollback()
                        record_cap_change(change_type.value, "rolled_back")
                        logger.warning(
                            "Cap change %s -> %s for tenant %d abandoned: subscription quantity not updated",
                            previous_cap,
                            new_cap,
                            tenant_id,
                        )
                        raise

                try:
                    async with self.ledger.version_guard(tenant_id):
                        replacement = await self._bill_cap(record, new_cap, active_count, rate)
                        await self.db.commit()
                except Exception:
                    await self.db.rollback()
                    if resize_subscription_id:
                        await self.ledger.restore_gateway_quantity(
                            self.gateway, resize_subscription_id, previous_quantity
                        )
                    raise

                outcome = "deferred" if charge_status is ChargeStatus.deferred else "applied"
                record_cap_change(change_type.value, outcome)
                logger.info(
                    "Cap for tenant %d changed %s -> %s by %s (%s)",
                    tenant_id,
                    previous_cap,
                    new_cap,
                    actor_id,
                    outcome,
                )
                message = f"Membership cap set to {new_cap}"
                if charge_status is ChargeStatus.deferred:
                    message += f"; ${additional_cost} will be billed when the subscription starts"
                return CapChangeResult(
                    tenant_id=tenant_id,
                    previous_cap=previous_cap,
                    new_cap=new_cap,
                    delta=delta,
                    rate=rate,
                    additional_cost=additional_cost,
                    new_total_amount=replacement.total_amount,
                    deferred=charge_status is ChargeStatus.deferred,
                    message=message,
                )

            # Charge path: persist the intent before talking to the gateway
            await self.ledger.commit(tenant_id)
            return await self._charge_and_confirm(
                tenant, record, entry, snapshot, change_type, delta, rate, additional_cost, active_count
            )

    def _validate_new_cap(self, tenant: Tenant, new_cap: int, change_type: CapChangeType) -> None:
        if isinstance(new_cap, bool) or not isinstance(new_cap, int) or new_cap < 1:
            record_cap_change(change_type.value, "rejected")
            raise ValidationError("Membership cap must be a whole number of at least 1", field="membership_cap")

        if change_type is CapChangeType.increase:
            if not tenant.cap_enforced or tenant.membership_cap is None:
                record_cap_change(change_type.value, "rejected")
                raise ValidationError(
                    "Cap enforcement is not enabled for this tenant; an administrator must set a cap first",
                    field="membership_cap",
                )
            if new_cap <= tenant.membership_cap:
                record_cap_change(change_type.value, "rejected")
                raise ValidationError(
                    f"New cap must be greater than the current cap of {tenant.membership_cap}",
                    field="membership_cap",
                )

    async def _bill_cap(self, record: BillingRecord, new_cap: int, active_count: int, rate: Decimal) -> BillingRecord:
        return await self.ledger.supersede_record(
            record,
            "cap_change",
            billing_mode=BillingMode.prepaid_cap.value,
            billed_cap=new_cap,
            member_count=active_count,
            rate_per_member=rate,
        )

    async def _charge_and_confirm(
        self,
        tenant: Tenant,
        record: BillingRecord,
        entry: CapChangeEntry,
        snapshot: tuple,
        change_type: CapChangeType,
        delta: int,
        rate: Decimal,
        additional_cost: Decimal,
        active_count: int,
    ) -> CapChangeResult:
        tenant_id = tenant.id
        previous_cap = snapshot[0]
        new_cap = entry.new_cap
        billed_cap = record.billed_cap

        try:
            charge = await self.gateway.charge_prorated_amount(record.gateway_customer_id, delta, rate)
        except GatewayError:
            await self._compensate(tenant, snapshot, entry)
            record_cap_change(change_type.value, "rolled_back")
            logger.warning(
                "Cap change %s -> %s for tenant %d rolled back after gateway failure",
                previous_cap,
                new_cap,
                tenant_id,
            )
            raise

        try:
            entry.charge_status = ChargeStatus.charged.value
            entry.gateway_reference = charge.reference
            async with self.ledger.version_guard(tenant_id):
                replacement = await self._bill_cap(record, new_cap, active_count, rate)
                await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            record_consistency_error()
            logger.critical(
                f"Tenant {tenant_id} was charged ({charge.reference}) for cap {new_cap} "
                f"but the charge could not be recorded: {e}"
            )
            raise ConsistencyError(
                f"Charge {charge.reference} succeeded but was not recorded; reconcile tenant {tenant_id}",
                tenant_id=tenant_id,
                local_cap=new_cap,
                billed_cap=billed_cap,
            ) from e

        await self._sync_subscription_quantity(record.gateway_subscription_id, new_cap)

        record_cap_change(change_type.value, "charged")
        logger.info(
            "Cap for tenant %d raised %s -> %s; charged %s (%s)",
            tenant_id,
            previous_cap,
            new_cap,
            additional_cost,
            charge.reference,
        )
        return CapChangeResult(
            tenant_id=tenant_id,
            previous_cap=previous_cap,
            new_cap=new_cap,
            delta=delta,
            rate=rate,
            additional_cost=additional_cost,
            new_total_amount=replacement.total_amount,
            charged=True,
            gateway_reference=charge.reference,
            message=f"Membership cap raised to {new_cap}; charged ${additional_cost}",
        )

    async def _compensate(self, tenant: Tenant, snapshot: tuple, entry: CapChangeEntry) -> None:
        """Undo a committed cap write whose charge failed."""
        tenant_id = tenant.id
        local_cap = entry.new_cap
        try:
            tenant.restore_cap_snapshot(snapshot)
            await self.db.delete(entry)
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            record_consistency_error()
            logger.critical(f"Failed to roll back cap change for tenant {tenant_id}; reconciliation required: {e}")
            raise ConsistencyError(
                f"Cap change for tenant {tenant_id} could not be rolled back",
                tenant_id=tenant_id,
                local_cap=local_cap,
                billed_cap=snapshot[0],
            ) from e

    async def _sync_subscription_quantity(self, subscription_id: str | None, quantity: int) -> None:
        # Renewal quantity; the current period was already charged
        if not subscription_id or self.gateway is None:
            return
        try:
            await self.gateway.update_subscription_quantity(subscription_id, quantity)
        except GatewayError as e:
            logger.error(f"Subscription {subscription_id} quantity not updated to {quantity}: {e}")

    # ------------------------------------------------------------------
    # Consistency
    # ------------------------------------------------------------------

    async def _pending_entries(self, tenant_id: int) -> list[CapChangeEntry]:
        result = await self.db.execute(
            select(CapChangeEntry)
            .where(
                CapChangeEntry.tenant_id == tenant_id,
                CapChangeEntry.charge_status == ChargeStatus.pending.value,
            )
            .order_by(CapChangeEntry.id)
        )
        return list(result.scalars().all())

    async def _find_inconsistency(self, tenant: Tenant, record: BillingRecord | None) -> str | None:
        pending = await self._pending_entries(tenant.id)
        if pending:
            return f"cap change {pending[-1].id} to {pending[-1].new_cap} has an unconfirmed charge"
        if (
            record is not None
            and record.billing_mode == BillingMode.prepaid_cap.value
            and record.has_live_subscription
            and record.billed_cap != tenant.membership_cap
        ):
            return f"local cap {tenant.membership_cap} differs from billed cap {record.billed_cap}"
        return None

    async def check_consistency(self, tenant_id: int) -> None:
        """
        Raise ConsistencyError if the local cap no longer matches what the
        gateway last confirmed.
        """
        tenant = await self.ledger.get_tenant(tenant_id)
        record = await self.ledger.get_authoritative_record(tenant_id)
        problem = await self._find_inconsistency(tenant, record)
        if problem is None:
            return

        record_consistency_error()
        logger.critical(f"Billing inconsistency for tenant {tenant_id}: {problem}")
        raise ConsistencyError(
            f"Billing state for tenant {tenant_id} is inconsistent ({problem}); reconcile before changing the cap",
            tenant_id=tenant_id,
            local_cap=tenant.membership_cap,
            billed_cap=record.billed_cap if record is not None else None,
        )

    async def reconcile(self, tenant_id: int, actor_id: int | None = None, reason: str | None = None) -> CapChangeResult:
        """Reset the cap to the last confirmed billed cap and revert unconfirmed changes."""
        async with tenant_lock(tenant_id):
            tenant = await self.ledger.get_tenant(tenant_id)
            record = await self.ledger.get_authoritative_record(tenant_id)
            pending = await self._pending_entries(tenant_id)
            previous_cap = tenant.membership_cap
            rate = Decimal(record.rate_per_member) if record is not None else ZERO

            if await self._find_inconsistency(tenant, record) is None:
                return CapChangeResult(
                    tenant_id=tenant_id,
                    previous_cap=previous_cap,
                    new_cap=previous_cap,
                    delta=0,
                    rate=rate,
                    additional_cost=ZERO,
                    new_total_amount=record.total_amount if record is not None else None,
                    message="Billing state already consistent",
                )

            if record is not None and record.billing_mode == BillingMode.prepaid_cap.value and record.billed_cap:
                confirmed_cap = record.billed_cap
            elif pending:
                confirmed_cap = pending[0].previous_cap
            else:
                confirmed_cap = previous_cap

            active_count = await self.ledger.count_billable_members(tenant_id)
            tenant.membership_cap = confirmed_cap
            tenant.cap_enforced = confirmed_cap is not None
            tenant.cap_set_at = utcnow()
            tenant.cap_set_by = actor_id
            for entry in pending:
                entry.charge_status = ChargeStatus.reverted.value

            self.db.add(
                CapChangeEntry(
                    tenant_id=tenant_id,
                    previous_cap=previous_cap,
                    new_cap=confirmed_cap if confirmed_cap is not None else 0,
                    change_type=CapChangeType.reconcile.value,
                    actor_id=actor_id,
                    reason=reason or "Reset to last confirmed billed cap",
                    active_member_count=active_count,
                    rate=rate,
                    charge_status=ChargeStatus.not_required.value,
                )
            )
            await self.ledger.commit(tenant_id)

        record_cap_change(CapChangeType.reconcile.value, "applied")
        logger.warning(
            "Tenant %d reconciled: cap %s -> %s, %d pending change(s) reverted",
            tenant_id,
            previous_cap,
            confirmed_cap,
            len(pending),
        )
        return CapChangeResult(
            tenant_id=tenant_id,
            previous_cap=previous_cap,
            new_cap=confirmed_cap,
            delta=(confirmed_cap or 0) - (previous_cap or 0),
            rate=rate,
            additional_cost=ZERO,
            new_total_amount=record.total_amount if record is not None else None,
            message=f"Cap reset to last confirmed value {confirmed_cap}",
        )

    # ------------------------------------------------------------------
    # Reads & admission
    # ------------------------------------------------------------------

    async def get_cap_status(self, tenant_id: int) -> CapStatus:
        tenant = await self.ledger.get_tenant(tenant_id)
        record = await self.ledger.get_authoritative_record(tenant_id)
        active_count = await self.ledger.count_billable_members(tenant_id)
        enforced = bool(tenant.cap_enforced) and tenant.membership_cap is not None
        return CapStatus(
            tenant_id=tenant_id,
            cap=tenant.membership_cap,
            enforced=enforced,
            active_count=active_count,
            remaining=max(tenant.membership_cap - active_count, 0) if enforced else None,
            billed_cap=record.billed_cap if record is not None else None,
            consistent=await self._find_inconsistency(tenant, record) is None,
        )

    @asynccontextmanager
    async def reserve_registration_slot(self, tenant_id: int) -> AsyncIterator[Tenant]:
        """
        Admit one billable member under the tenant's cap.

        The caller adds the member inside the block; the block's work and the
        refreshed member count of the billing record are committed on exit.
        Touching `last_admission_at` bumps the tenant version, so a cap change
        committed by another process in the meantime makes this commit fail
        with ConcurrentModificationError.
        """
        async with tenant_lock(tenant_id):
            tenant = await self.ledger.get_tenant(tenant_id)
            if tenant.cap_enforced and tenant.membership_cap is not None:
                active_count = await self.ledger.count_billable_members(tenant_id)
                if active_count >= tenant.membership_cap:
                    logger.info(
                        "Registration refused for tenant %d: cap %d reached",
                        tenant_id,
                        tenant.membership_cap,
                    )
                    raise CapacityExceededError(tenant_id, tenant.membership_cap, active_count)

            tenant.last_admission_at = utcnow()
            try:
                yield tenant
                async with self.ledger.version_guard(tenant_id):
                    await self.db.flush()
                    record = await self.ledger.get_authoritative_record(tenant_id)
                    if record is not None:
                        record.member_count = await self.ledger.count_billable_members(tenant_id)
                    await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise
