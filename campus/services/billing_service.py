"""
Billing Ledger

Owns the billing records of each tenant: which record is authoritative, the
tenant's effective status, onboarding, billing-mode switches, member-count
sync, rate changes and subscription activation.

Records are never edited for mode or cap changes; `supersede_record` writes a
new row and links the old one to it. `total_amount` is maintained by the
BillingRecord mapper hooks, never assigned here.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from campus.exceptions import (
    BillingRecordNotFoundError,
    ConcurrentModificationError,
    GatewayError,
    GatewayNotConfiguredError,
    TenantNotFoundError,
    ValidationError,
)
from campus.models.billing_record import BillingMode, BillingRecord
from campus.models.cap_change import CapChangeEntry, ChargeStatus
from campus.models.member import Member, billable_member_clause, restricted_member_clause
from campus.models.rate_change import RateChangeEntry
from campus.models.tenant import SubscriptionStatus, Tenant, TenantBillingOverrides
from campus.services.payment_gateway import PaymentGateway, map_subscription_status
from campus.services.rate_service import (
    ZERO,
    PriceCatalog,
    PricingConfig,
    prorate_rate_change,
    resolve_effective_rate,
    resolve_tenant_rate,
    validate_overrides,
)
from campus.utils.clock import utcnow
from campus.utils.locks import tenant_lock

logger = logging.getLogger(__name__)

# Columns carried over from a superseded record unless overridden
_CARRIED_COLUMNS = (
    "tenant_id",
    "billing_mode",
    "status",
    "billing_cycle",
    "current_period_start",
    "current_period_end",
    "member_count",
    "rate_per_member",
    "billed_cap",
    "currency",
    "gateway_customer_id",
    "gateway_subscription_id",
    "last_payment_at",
    "next_payment_at",
)


class BillingLedger:
    """Billing-record bookkeeping for tenants. Takes an injected AsyncSession."""

    def __init__(self, db: AsyncSession, pricing: PricingConfig | None = None):
        self.db = db
        self.pricing = pricing or PricingConfig.from_settings()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_tenant(self, tenant_id: int) -> Tenant:
        result = await self.db.execute(select(Tenant).where(Tenant.id == tenant_id))
        tenant = result.scalars().first()
        if tenant is None:
            raise TenantNotFoundError(tenant_id)
        return tenant

    async def count_billable_members(self, tenant_id: int) -> int:
        result = await self.db.execute(select(func.count(Member.id)).where(billable_member_clause(tenant_id)))
        return result.scalar_one()

    async def billable_member_ids(self, tenant_id: int) -> list[int]:
        result = await self.db.execute(
            select(Member.id).where(billable_member_clause(tenant_id)).order_by(Member.id)
        )
        return list(result.scalars().all())

    async def restricted_member_ids(self, tenant_id: int) -> list[int]:
        """Every non-privileged member of the tenant, billable or not."""
        result = await self.db.execute(
            select(Member.id).where(restricted_member_clause(tenant_id)).order_by(Member.id)
        )
        return list(result.scalars().all())

    async def get_authoritative_record(self, tenant_id: int) -> BillingRecord | None:
        """
        The record that currently drives billing for a tenant.

        Prefers the newest unsuperseded record holding a live gateway
        subscription (a subscription id whose status is not cancelled), then
        the newest record of any kind.
        """
        newest_first = (BillingRecord.created_at.desc(), BillingRecord.id.desc())

        result = await self.db.execute(
            select(BillingRecord)
            .where(
                BillingRecord.tenant_id == tenant_id,
                BillingRecord.superseded_at.is_(None),
                BillingRecord.gateway_subscription_id.is_not(None),
                BillingRecord.status != SubscriptionStatus.cancelled.value,
            )
            .order_by(*newest_first)
            .limit(1)
        )
        record = result.scalars().first()
        if record is not None:
            return record

        result = await self.db.execute(
            select(BillingRecord).where(BillingRecord.tenant_id == tenant_id).order_by(*newest_first).limit(1)
        )
        return result.scalars().first()

    async def require_authoritative_record(self, tenant_id: int) -> BillingRecord:
        record = await self.get_authoritative_record(tenant_id)
        if record is None:
            raise BillingRecordNotFoundError(tenant_id)
        return record

    async def resolve_status(self, tenant: Tenant, record: BillingRecord | None = None) -> str:
        """
        Effective subscription status of a tenant.

        An explicit override wins; a free tenant without a gateway
        subscription is active; otherwise the authoritative record decides,
        and a tenant with no record at all is pending.
        """
        if tenant.status_override:
            return tenant.status_override

        if record is None:
            record = await self.get_authoritative_record(tenant.id)

        if tenant.billing_overrides.is_free and (record is None or not record.has_live_subscription):
            return SubscriptionStatus.active.value
        if record is not None:
            return record.status
        return SubscriptionStatus.pending.value

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def supersede_record(self, current: BillingRecord, reason: str, **changes) -> BillingRecord:
        """
        Replace `current` with a new record carrying its gateway handles and
        period data plus `changes`. Flushes but does not commit.
        """
        unknown = set(changes) - set(_CARRIED_COLUMNS)
        if unknown:
            raise ValueError(f"Cannot supersede with unknown columns: {sorted(unknown)}")

        values = {column: getattr(current, column) for column in _CARRIED_COLUMNS}
        values.update(changes)
        replacement = BillingRecord(**values, created_via=reason)
        self.db.add(replacement)
        await self.db.flush()

        current.superseded_at = utcnow()
        current.superseded_by_id = replacement.id
        await self.db.flush()

        logger.debug(
            "Billing record %d superseded by %d for tenant %d (%s)",
            current.id,
            replacement.id,
            current.tenant_id,
            reason,
        )
        return replacement

    @asynccontextmanager
    async def version_guard(self, tenant_id: int | None = None) -> AsyncIterator[None]:
        """Turn an optimistic-version conflict raised by a flush into ConcurrentModificationError."""
        try:
            yield
        except StaleDataError as e:
            await self.db.rollback()
            logger.warning(f"Concurrent modification of tenant {tenant_id}: {e}")
            raise ConcurrentModificationError("Tenant", tenant_id) from e

    async def commit(self, tenant_id: int | None = None) -> None:
        async with self.version_guard(tenant_id):
            await self.db.commit()

    async def onboard_tenant(
        self,
        name: str,
        contact_email: str | None = None,
        overrides: TenantBillingOverrides | None = None,
        catalog: PriceCatalog | None = None,
        billing_cycle: str | None = None,
    ) -> tuple[Tenant, BillingRecord]:
        """Create a tenant together with its first billing record."""
        overrides = overrides or TenantBillingOverrides()
        catalog = catalog or PriceCatalog(None, self.pricing)
        validate_overrides(overrides)

        tenant = Tenant(name=name, contact_email=contact_email)
        tenant.apply_overrides(overrides)
        rate = await resolve_tenant_rate(tenant, catalog)

        self.db.add(tenant)
        try:
            await self.db.flush()
        except IntegrityError as e:
            await self.db.rollback()
            raise ValidationError(f"Tenant '{name}' already exists", field="name") from e

        record = BillingRecord(
            tenant_id=tenant.id,
            billing_mode=BillingMode.per_member.value,
            status=SubscriptionStatus.active.value if overrides.is_free else SubscriptionStatus.pending.value,
            billing_cycle=billing_cycle or self.pricing.billing_cycle,
            member_count=0,
            rate_per_member=rate,
            currency=self.pricing.currency,
            created_via="onboarding",
        )
        self.db.add(record)
        await self.db.commit()

        logger.info("Tenant onboarded: id=%d name=%s rate=%s free=%s", tenant.id, name, rate, overrides.is_free)
        return tenant, record

    async def set_billing_mode(
        self,
        tenant_id: int,
        mode: str | BillingMode,
        actor_id: int | None = None,
        reason: str | None = None,
        gateway: PaymentGateway | None = None,
    ) -> BillingRecord:
        """
        Switch a tenant between per-member and prepaid-cap billing.

        Switching to the current mode is a no-op. With a live subscription the
        gateway quantity is updated before anything is written locally; a
        GatewayError leaves the ledger untouched.
        """
        try:
            target = BillingMode(mode)
        except ValueError as e:
            raise ValidationError(f"Unknown billing mode '{mode}'", field="billing_mode") from e

        async with tenant_lock(tenant_id):
            tenant = await self.get_tenant(tenant_id)
            current = await self.require_authoritative_record(tenant_id)

            if current.billing_mode == target.value:
                logger.info("Tenant %d already billed %s; nothing to switch", tenant_id, target.value)
                return current

            if target is BillingMode.prepaid_cap and (not tenant.cap_enforced or tenant.membership_cap is None):
                raise ValidationError(
                    "Prepaid-cap billing requires an enforced membership cap",
                    field="billing_mode",
                )

            active_count = await self.count_billable_members(tenant_id)
            changes = {"billing_mode": target.value, "member_count": active_count}
            if target is BillingMode.prepaid_cap:
                changes["billed_cap"] = tenant.membership_cap
                new_quantity = tenant.membership_cap
            else:
                changes["billed_cap"] = None
                new_quantity = active_count

            previous_quantity = current.billed_members
            subscription_id = current.gateway_subscription_id if current.has_live_subscription else None
            if subscription_id and gateway is not None:
                await gateway.update_subscription_quantity(subscription_id, max(new_quantity, 1))

            try:
                replacement = await self.supersede_record(current, "mode_switch", **changes)
                await self.commit(tenant_id)
            except Exception:
                await self.db.rollback()
                if subscription_id and gateway is not None:
                    await self.restore_gateway_quantity(gateway, subscription_id, previous_quantity)
                raise

        logger.info(
            "Billing mode for tenant %d switched to %s by %s (%s)",
            tenant_id,
            target.value,
            actor_id,
            reason or "no reason given",
        )
        return replacement

    async def restore_gateway_quantity(self, gateway: PaymentGateway, subscription_id: str, quantity: int) -> None:
        try:
            await gateway.update_subscription_quantity(subscription_id, max(quantity, 1))
        except GatewayError as e:
            logger.critical(f"Could not restore quantity {quantity} on subscription {subscription_id}: {e}")

    async def sync_member_count(self, tenant_id: int) -> BillingRecord:
        """Refresh the authoritative record's member count from the members table."""
        record = await self.require_authoritative_record(tenant_id)
        record.member_count = await self.count_billable_members(tenant_id)
        await self.commit(tenant_id)
        return record

    async def set_billing_overrides(
        self,
        tenant_id: int,
        overrides: TenantBillingOverrides,
        gateway: PaymentGateway | None = None,
        catalog: PriceCatalog | None = None,
        actor_id: int | None = None,
        reason: str | None = None,
    ) -> BillingRecord | None:
        """
        Store new overrides and re-rate the tenant.

        A rate change supersedes the authoritative record and is appended to
        the rate history. With a live subscription the gateway moves first:
        the subscription gets the new price and the rest of the current
        period is settled as a prorated charge or credit. Becoming free
        cancels the subscription instead. A gateway failure before the
        subscription changes leaves everything as it was.
        """
        catalog = catalog or PriceCatalog(gateway, self.pricing)
        standard_rate = await catalog.get_standard_rate()
        validate_overrides(overrides, standard_rate)
        new_rate = resolve_effective_rate(overrides, standard_rate)

        async with tenant_lock(tenant_id):
            tenant = await self.get_tenant(tenant_id)
            record = await self.get_authoritative_record(tenant_id)

            if record is None or Decimal(record.rate_per_member) == new_rate:
                tenant.apply_overrides(overrides)
                await self.commit(tenant_id)
                logger.info("Billing overrides updated for tenant %d; rate unchanged at %s", tenant_id, new_rate)
                return record

            previous_rate = Decimal(record.rate_per_member)
            subscription_id = record.gateway_subscription_id if record.has_live_subscription else None
            if subscription_id and gateway is None:
                raise GatewayNotConfiguredError(operation="update_subscription_rate")

            entry = RateChangeEntry(
                tenant_id=tenant_id,
                previous_rate=previous_rate,
                new_rate=new_rate,
                billed_members=record.billed_members,
                actor_id=actor_id,
                reason=reason,
            )
            changes: dict = {"rate_per_member": new_rate}

            if subscription_id:
                proration = prorate_rate_change(
                    previous_rate,
                    new_rate,
                    record.billed_members,
                    record.current_period_start,
                    record.current_period_end,
                    utcnow(),
                )
                if new_rate == ZERO:
                    await gateway.cancel_subscription(subscription_id)
                    entry.cancelled_subscription_id = subscription_id
                    changes.update(
                        gateway_subscription_id=None,
                        status=SubscriptionStatus.active.value,
                        next_payment_at=None,
                    )
                else:
                    await gateway.update_subscription_rate(subscription_id, new_rate)
                await self._settle_rate_proration(gateway, record, entry, proration)

            tenant.apply_overrides(overrides)
            try:
                self.db.add(entry)
                replacement = await self.supersede_record(record, "rate_change", **changes)
                await self.commit(tenant_id)
            except Exception:
                await self.db.rollback()
                if entry.gateway_reference:
                    logger.critical(
                        f"Proration {entry.gateway_reference} for tenant {tenant_id} was applied but not recorded"
                    )
                if subscription_id and new_rate > ZERO:
                    await self._restore_gateway_rate(gateway, subscription_id, previous_rate)
                elif subscription_id:
                    logger.critical(
                        f"Subscription {subscription_id} of tenant {tenant_id} was cancelled "
                        "but the free conversion was not recorded"
                    )
                raise

        logger.info(
            "Rate for tenant %d changed %s -> %s by %s (proration %s, %s)",
            tenant_id,
            previous_rate,
            new_rate,
            actor_id,
            entry.proration_amount,
            entry.proration_status,
        )
        return replacement

    async def _settle_rate_proration(
        self,
        gateway: PaymentGateway,
        record: BillingRecord,
        entry: RateChangeEntry,
        proration: Decimal,
    ) -> None:
        entry.proration_amount = proration
        if proration == ZERO:
            entry.proration_status = ChargeStatus.not_required.value
            return
        if not record.gateway_customer_id:
            entry.proration_status = ChargeStatus.failed.value
            logger.error(f"Tenant {record.tenant_id} has no gateway customer; proration of {proration} not applied")
            return

        description = f"Rate change {entry.previous_rate} -> {entry.new_rate} for the rest of the billing period"
        try:
            adjustment = await gateway.adjust_balance(record.gateway_customer_id, proration, description)
        except GatewayError as e:
            # The subscription already carries the new rate; the proration is settled by hand
            entry.proration_status = ChargeStatus.failed.value
            logger.error(f"Proration of {proration} for tenant {record.tenant_id} failed: {e}")
            return
        entry.gateway_reference = adjustment.reference
        entry.proration_status = (ChargeStatus.charged if proration > ZERO else ChargeStatus.credited).value

    async def _restore_gateway_rate(self, gateway: PaymentGateway, subscription_id: str, rate: Decimal) -> None:
        try:
            await gateway.update_subscription_rate(subscription_id, rate)
        except GatewayError as e:
            logger.critical(f"Could not restore rate {rate} on subscription {subscription_id}: {e}")

    async def activate_subscription(
        self,
        tenant_id: int,
        gateway: PaymentGateway,
        catalog: PriceCatalog,
        payment_method_id: str | None = None,
    ) -> BillingRecord:
        """
        Start prepaid-cap billing at the gateway for the tenant's current cap.

        Cap increases made before activation were deferred; creating the
        subscription at the full cap settles them.
        """
        async with tenant_lock(tenant_id):
            tenant = await self.get_tenant(tenant_id)
            if not tenant.cap_enforced or tenant.membership_cap is None:
                raise ValidationError("A membership cap must be set before activating a subscription", field="membership_cap")

            record = await self.require_authoritative_record(tenant_id)
            if record.has_live_subscription:
                logger.info("Tenant %d already has subscription %s", tenant_id, record.gateway_subscription_id)
                return record

            cap = tenant.membership_cap
            active_count = await self.count_billable_members(tenant_id)

            if tenant.billing_overrides.is_free:
                replacement = await self.supersede_record(
                    record,
                    "activation",
                    billing_mode=BillingMode.prepaid_cap.value,
                    status=SubscriptionStatus.active.value,
                    rate_per_member=ZERO,
                    billed_cap=cap,
                    member_count=active_count,
                )
                await self._settle_deferred_entries(tenant_id, reference="free_activation")
                await self.commit(tenant_id)
                logger.info("Tenant %d activated without a gateway subscription (free)", tenant_id)
                return replacement

            rate = await resolve_tenant_rate(tenant, catalog)
            customer_id = record.gateway_customer_id
            if not customer_id:
                customer_id = await gateway.create_customer(tenant.id, tenant.name, tenant.contact_email)

            subscription = await gateway.create_subscription(
                customer_id,
                rate,
                max(cap, 1),
                metadata={"tenant_id": tenant.id},
                payment_method_id=payment_method_id,
            )

            try:
                replacement = await self.supersede_record(
                    record,
                    "activation",
                    billing_mode=BillingMode.prepaid_cap.value,
                    status=map_subscription_status(subscription.status),
                    rate_per_member=rate,
                    billed_cap=cap,
                    member_count=active_count,
                    gateway_customer_id=customer_id,
                    gateway_subscription_id=subscription.subscription_id,
                    current_period_start=subscription.current_period_start,
                    current_period_end=subscription.current_period_end,
                    next_payment_at=subscription.current_period_end,
                )
                await self._settle_deferred_entries(tenant_id, reference=subscription.subscription_id)
                await self.commit(tenant_id)
            except Exception:
                await self.db.rollback()
                logger.error(
                    "Failed to record subscription %s for tenant %d; cancelling it",
                    subscription.subscription_id,
                    tenant_id,
                )
                try:
                    await gateway.cancel_subscription(subscription.subscription_id)
                except GatewayError as cancel_error:
                    logger.critical(
                        f"Orphaned gateway subscription {subscription.subscription_id} for tenant {tenant_id}: "
                        f"{cancel_error}"
                    )
                raise

        logger.info(
            "Subscription %s activated for tenant %d: cap=%d rate=%s",
            subscription.subscription_id,
            tenant_id,
            cap,
            rate,
        )
        return replacement

    async def _settle_deferred_entries(self, tenant_id: int, reference: str) -> None:
        await self.db.execute(
            update(CapChangeEntry)
            .where(
                CapChangeEntry.tenant_id == tenant_id,
                CapChangeEntry.charge_status == ChargeStatus.deferred.value,
            )
            .values(charge_status=ChargeStatus.charged.value, gateway_reference=reference)
        )
