"""
Tests for the billing ledger

Covers total-amount bookkeeping, authoritative-record selection, status
resolution, record supersession, onboarding, billing-mode switches and
subscription activation.
"""

from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from campus.exceptions import BillingRecordNotFoundError, GatewayError, TenantNotFoundError, ValidationError
from campus.models.billing_record import BillingMode, BillingRecord
from campus.models.cap_change import CapChangeEntry, ChargeStatus
from campus.models.member import MemberRole
from campus.models.rate_change import RateChangeEntry
from campus.models.tenant import SubscriptionStatus, TenantBillingOverrides
from campus.services.rate_service import PriceCatalog
from utils.mock_utils import create_test_members, create_test_tenant


async def count_records(db, tenant_id: int) -> int:
    result = await db.execute(select(func.count(BillingRecord.id)).where(BillingRecord.tenant_id == tenant_id))
    return result.scalar_one()


class TestTotalAmount:
    """Test that total_amount always equals billed members x rate"""

    async def test_per_member_total(self, test_db, ledger):
        """40 billable members at $1.25 bill $50.00"""
        tenant, _ = await create_test_tenant(test_db, rate=Decimal("1.25"))
        await create_test_members(test_db, tenant.id, 40)

        record = await ledger.sync_member_count(tenant.id)

        assert record.member_count == 40
        assert record.total_amount == Decimal("50.00")

    async def test_non_billable_members_not_counted(self, test_db, ledger):
        tenant, _ = await create_test_tenant(test_db)
        await create_test_members(test_db, tenant.id, 3)
        await create_test_members(test_db, tenant.id, 2, role=MemberRole.teacher.value)
        await create_test_members(test_db, tenant.id, 1, prefix="alum", is_alumni=True)
        await create_test_members(test_db, tenant.id, 1, prefix="exempt", billing_exempt=True)

        assert await ledger.count_billable_members(tenant.id) == 3

    async def test_total_recomputed_on_rate_change(self, test_db, ledger):
        tenant, record = await create_test_tenant(test_db, rate=Decimal("1.25"))
        await create_test_members(test_db, tenant.id, 10)
        await ledger.sync_member_count(tenant.id)

        record.rate_per_member = Decimal("2.00")
        await test_db.commit()

        assert record.total_amount == Decimal("20.00")

    async def test_prepaid_total_uses_billed_cap(self, test_db):
        tenant, record = await create_test_tenant(
            test_db, rate=Decimal("1.25"), cap=100, billing_mode=BillingMode.prepaid_cap.value
        )
        assert record.total_amount == Decimal("125.00")

    async def test_total_cannot_be_assigned_directly(self, test_db):
        _, record = await create_test_tenant(test_db, rate=Decimal("1.25"))
        record.member_count = 4
        record.total_amount = Decimal("999.99")
        await test_db.commit()

        assert record.total_amount == Decimal("5.00")


class TestAuthoritativeRecord:
    """Test which record drives billing"""

    async def test_prefers_live_subscription_over_newer_record(self, test_db, ledger):
        tenant, live = await create_test_tenant(test_db, subscription_id="sub_live", customer_id="cus_1")
        live.created_at = datetime(2025, 1, 1)
        test_db.add(BillingRecord(tenant_id=tenant.id, status="pending", created_at=datetime(2025, 6, 1)))
        await test_db.commit()

        record = await ledger.get_authoritative_record(tenant.id)
        assert record.id == live.id

    async def test_cancelled_subscription_is_not_live(self, test_db, ledger):
        tenant, cancelled = await create_test_tenant(
            test_db, status=SubscriptionStatus.cancelled.value, subscription_id="sub_old"
        )
        cancelled.created_at = datetime(2025, 1, 1)
        newer = BillingRecord(tenant_id=tenant.id, status="pending", created_at=datetime(2025, 6, 1))
        test_db.add(newer)
        await test_db.commit()

        record = await ledger.get_authoritative_record(tenant.id)
        assert record.id == newer.id

    async def test_newest_record_when_none_live(self, test_db, ledger):
        tenant, first = await create_test_tenant(test_db)
        first.created_at = datetime(2025, 1, 1)
        second = BillingRecord(tenant_id=tenant.id, status="active", created_at=datetime(2025, 3, 1))
        test_db.add(second)
        await test_db.commit()

        assert (await ledger.get_authoritative_record(tenant.id)).id == second.id

    async def test_no_record(self, test_db, ledger):
        tenant, record = await create_test_tenant(test_db)
        await test_db.delete(record)
        await test_db.commit()

        assert await ledger.get_authoritative_record(tenant.id) is None
        with pytest.raises(BillingRecordNotFoundError):
            await ledger.require_authoritative_record(tenant.id)

    async def test_unknown_tenant(self, ledger):
        with pytest.raises(TenantNotFoundError):
            await ledger.get_tenant(9999)


class TestResolveStatus:
    """Test effective tenant status"""

    async def test_override_wins(self, test_db, ledger):
        tenant, _ = await create_test_tenant(test_db, status=SubscriptionStatus.active.value)
        tenant.status_override = SubscriptionStatus.suspended.value
        assert await ledger.resolve_status(tenant) == SubscriptionStatus.suspended.value

    async def test_free_tenant_without_subscription_is_active(self, test_db, ledger):
        tenant, _ = await create_test_tenant(test_db, status=SubscriptionStatus.pending.value, admin_override=True)
        assert await ledger.resolve_status(tenant) == SubscriptionStatus.active.value

    async def test_free_tenant_with_live_subscription_uses_record(self, test_db, ledger):
        tenant, _ = await create_test_tenant(
            test_db,
            status=SubscriptionStatus.past_due.value,
            subscription_id="sub_1",
            free_activation=True,
        )
        assert await ledger.resolve_status(tenant) == SubscriptionStatus.past_due.value

    async def test_record_status(self, test_db, ledger):
        tenant, _ = await create_test_tenant(test_db, status=SubscriptionStatus.past_due.value)
        assert await ledger.resolve_status(tenant) == SubscriptionStatus.past_due.value

    async def test_pending_without_record(self, test_db, ledger):
        tenant, record = await create_test_tenant(test_db)
        await test_db.delete(record)
        await test_db.commit()
        assert await ledger.resolve_status(tenant) == SubscriptionStatus.pending.value


class TestSupersedeRecord:
    """Test that records are replaced, never edited"""

    async def test_creates_linked_replacement(self, test_db, ledger):
        tenant, current = await create_test_tenant(test_db, subscription_id="sub_1", customer_id="cus_1")

        replacement = await ledger.supersede_record(current, "mode_switch", billing_mode=BillingMode.prepaid_cap.value, billed_cap=20)
        await test_db.commit()

        assert replacement.id != current.id
        assert current.superseded_at is not None
        assert current.superseded_by_id == replacement.id
        assert replacement.gateway_subscription_id == "sub_1"
        assert replacement.gateway_customer_id == "cus_1"
        assert replacement.created_via == "mode_switch"
        assert replacement.total_amount == Decimal("25.00")
        assert (await ledger.get_authoritative_record(tenant.id)).id == replacement.id

    async def test_unknown_column_rejected(self, test_db, ledger):
        _, current = await create_test_tenant(test_db)
        with pytest.raises(ValueError):
            await ledger.supersede_record(current, "oops", total_amount=Decimal("1"))


class TestOnboarding:
    async def test_onboard_paid_tenant(self, test_db, ledger):
        tenant, record = await ledger.onboard_tenant("Riverdale High", "office@riverdale.edu")

        assert tenant.id is not None
        assert record.status == SubscriptionStatus.pending.value
        assert record.rate_per_member == Decimal("1.25")
        assert record.billing_mode == BillingMode.per_member.value
        assert record.total_amount == Decimal("0.00")

    async def test_onboard_free_tenant(self, test_db, ledger):
        tenant, record = await ledger.onboard_tenant(
            "Pilot Academy", overrides=TenantBillingOverrides(free_activation=True)
        )
        assert record.status == SubscriptionStatus.active.value
        assert record.rate_per_member == Decimal("0.00")
        assert tenant.free_activation is True

    async def test_onboard_rejects_invalid_overrides(self, test_db, ledger):
        with pytest.raises(ValidationError):
            await ledger.onboard_tenant("Bad Rate School", overrides=TenantBillingOverrides(custom_rate=Decimal("0")))

    async def test_duplicate_name(self, test_db, ledger):
        await ledger.onboard_tenant("Twin Peaks High")
        with pytest.raises(ValidationError) as exc_info:
            await ledger.onboard_tenant("Twin Peaks High")
        assert exc_info.value.details["field"] == "name"


class TestSetBillingMode:
    async def test_switch_to_prepaid_cap(self, test_db, ledger):
        tenant, _ = await create_test_tenant(test_db, rate=Decimal("1.25"), cap=100)
        await create_test_members(test_db, tenant.id, 30)

        record = await ledger.set_billing_mode(tenant.id, "prepaid_cap", actor_id=1, reason="annual plan")

        assert record.billing_mode == BillingMode.prepaid_cap.value
        assert record.billed_cap == 100
        assert record.member_count == 30
        assert record.total_amount == Decimal("125.00")
        assert await count_records(test_db, tenant.id) == 2

    async def test_switch_back_to_per_member(self, test_db, ledger):
        tenant, _ = await create_test_tenant(
            test_db, rate=Decimal("1.25"), cap=100, billing_mode=BillingMode.prepaid_cap.value
        )
        await create_test_members(test_db, tenant.id, 30)

        record = await ledger.set_billing_mode(tenant.id, BillingMode.per_member)

        assert record.billed_cap is None
        assert record.total_amount == Decimal("37.50")

    async def test_prepaid_requires_cap(self, test_db, ledger):
        tenant, _ = await create_test_tenant(test_db)
        with pytest.raises(ValidationError):
            await ledger.set_billing_mode(tenant.id, BillingMode.prepaid_cap)
        assert await count_records(test_db, tenant.id) == 1

    async def test_same_mode_is_noop(self, test_db, ledger):
        tenant, current = await create_test_tenant(test_db)
        record = await ledger.set_billing_mode(tenant.id, BillingMode.per_member)
        assert record.id == current.id
        assert await count_records(test_db, tenant.id) == 1

    async def test_unknown_mode(self, test_db, ledger):
        tenant, _ = await create_test_tenant(test_db)
        with pytest.raises(ValidationError):
            await ledger.set_billing_mode(tenant.id, "per_seat")

    async def test_updates_gateway_quantity(self, test_db, ledger, gateway):
        tenant, _ = await create_test_tenant(test_db, cap=80, subscription_id="sub_1", customer_id="cus_1")

        await ledger.set_billing_mode(tenant.id, BillingMode.prepaid_cap, gateway=gateway)

        assert gateway.calls_to("update_subscription_quantity") == [("sub_1", 80)]

    async def test_gateway_failure_leaves_ledger_untouched(self, test_db, ledger, gateway):
        tenant, current = await create_test_tenant(test_db, cap=80, subscription_id="sub_1", customer_id="cus_1")
        gateway.fail("update_subscription_quantity")

        with pytest.raises(GatewayError):
            await ledger.set_billing_mode(tenant.id, BillingMode.prepaid_cap, gateway=gateway)

        assert await count_records(test_db, tenant.id) == 1
        assert (await ledger.get_authoritative_record(tenant.id)).billing_mode == BillingMode.per_member.value


async def rate_entries(db, tenant_id: int) -> list[RateChangeEntry]:
    result = await db.execute(
        select(RateChangeEntry).where(RateChangeEntry.tenant_id == tenant_id).order_by(RateChangeEntry.id)
    )
    return list(result.scalars().all())


async def prepaid_subscriber(db):
    """100 prepaid seats at $1.25 on sub_1, a quarter of the period left on 2025-09-28"""
    tenant, record = await create_test_tenant(
        db,
        cap=100,
        billing_mode=BillingMode.prepaid_cap.value,
        subscription_id="sub_1",
        customer_id="cus_1",
    )
    record.current_period_start = datetime(2025, 1, 1)
    record.current_period_end = datetime(2025, 12, 27)
    await db.commit()
    return tenant, record


@pytest.fixture
def frozen_now(monkeypatch) -> datetime:
    now = datetime(2025, 9, 28)
    monkeypatch.setattr("campus.services.billing_service.utcnow", lambda: now)
    return now


class TestSetBillingOverrides:
    async def test_rerates_record(self, test_db, ledger):
        tenant, original = await create_test_tenant(test_db, rate=Decimal("1.25"))
        await create_test_members(test_db, tenant.id, 10)
        await ledger.sync_member_count(tenant.id)

        record = await ledger.set_billing_overrides(
            tenant.id, TenantBillingOverrides(custom_rate=Decimal("2.00")), actor_id=3, reason="board decision"
        )

        assert record.rate_per_member == Decimal("2.00")
        assert record.total_amount == Decimal("20.00")
        assert record.created_via == "rate_change"
        assert original.superseded_by_id == record.id
        assert tenant.custom_rate == Decimal("2.00")

        [entry] = await rate_entries(test_db, tenant.id)
        assert entry.previous_rate == Decimal("1.25")
        assert entry.new_rate == Decimal("2.00")
        assert entry.billed_members == 10
        assert entry.actor_id == 3
        assert entry.reason == "board decision"
        assert entry.proration_status == ChargeStatus.not_required.value

    async def test_unchanged_rate_writes_no_history(self, test_db, ledger):
        tenant, _ = await create_test_tenant(test_db, rate=Decimal("1.25"))

        await ledger.set_billing_overrides(tenant.id, TenantBillingOverrides(custom_rate=Decimal("1.25")))

        assert tenant.custom_rate == Decimal("1.25")
        assert await rate_entries(test_db, tenant.id) == []
        assert await count_records(test_db, tenant.id) == 1

    async def test_pushes_new_rate_to_live_subscription(self, test_db, ledger, gateway, catalog):
        tenant, _ = await create_test_tenant(test_db, subscription_id="sub_1", customer_id="cus_1")

        await ledger.set_billing_overrides(
            tenant.id, TenantBillingOverrides(discount_percent=Decimal("20")), gateway=gateway, catalog=catalog
        )

        assert gateway.calls_to("update_subscription_rate") == [("sub_1", Decimal("1.00"))]

    async def test_rate_increase_charges_rest_of_period(self, test_db, ledger, gateway, catalog, frozen_now):
        """$1.00 more per seat, 100 seats, a quarter of the year left: $25.00"""
        tenant, _ = await prepaid_subscriber(test_db)

        record = await ledger.set_billing_overrides(
            tenant.id, TenantBillingOverrides(custom_rate=Decimal("2.25")), gateway=gateway, catalog=catalog
        )

        assert record.rate_per_member == Decimal("2.25")
        assert record.total_amount == Decimal("225.00")
        assert gateway.calls_to("adjust_balance") == [("cus_1", Decimal("25.00"))]
        [entry] = await rate_entries(test_db, tenant.id)
        assert entry.proration_amount == Decimal("25.00")
        assert entry.proration_status == ChargeStatus.charged.value
        assert entry.gateway_reference.startswith("in_")

    async def test_rate_decrease_credits_rest_of_period(self, test_db, ledger, gateway, catalog, frozen_now):
        tenant, _ = await prepaid_subscriber(test_db)

        await ledger.set_billing_overrides(
            tenant.id, TenantBillingOverrides(custom_rate=Decimal("0.25")), gateway=gateway, catalog=catalog
        )

        assert gateway.calls_to("adjust_balance") == [("cus_1", Decimal("-25.00"))]
        [entry] = await rate_entries(test_db, tenant.id)
        assert entry.proration_status == ChargeStatus.credited.value

    async def test_free_conversion_cancels_subscription(self, test_db, ledger, gateway, catalog, frozen_now):
        tenant, _ = await prepaid_subscriber(test_db)

        record = await ledger.set_billing_overrides(
            tenant.id, TenantBillingOverrides(admin_override=True), gateway=gateway, catalog=catalog
        )

        assert gateway.calls_to("cancel_subscription") == [("sub_1",)]
        assert gateway.calls_to("update_subscription_rate") == []
        assert gateway.calls_to("adjust_balance") == [("cus_1", Decimal("-31.25"))]
        assert record.rate_per_member == Decimal("0.00")
        assert record.gateway_subscription_id is None
        assert record.has_live_subscription is False
        assert await ledger.resolve_status(tenant) == SubscriptionStatus.active.value
        [entry] = await rate_entries(test_db, tenant.id)
        assert entry.cancelled_subscription_id == "sub_1"

    async def test_gateway_refusal_changes_nothing(self, test_db, ledger, gateway, catalog):
        tenant, record = await prepaid_subscriber(test_db)
        gateway.fail("update_subscription_rate")

        with pytest.raises(GatewayError):
            await ledger.set_billing_overrides(
                tenant.id, TenantBillingOverrides(custom_rate=Decimal("2.25")), gateway=gateway, catalog=catalog
            )

        assert tenant.custom_rate is None
        assert record.rate_per_member == Decimal("1.25")
        assert await count_records(test_db, tenant.id) == 1
        assert await rate_entries(test_db, tenant.id) == []

    async def test_failed_proration_keeps_rate_change(self, test_db, ledger, gateway, catalog, frozen_now):
        tenant, _ = await prepaid_subscriber(test_db)
        gateway.fail("adjust_balance")

        record = await ledger.set_billing_overrides(
            tenant.id, TenantBillingOverrides(custom_rate=Decimal("2.25")), gateway=gateway, catalog=catalog
        )

        assert record.rate_per_member == Decimal("2.25")
        [entry] = await rate_entries(test_db, tenant.id)
        assert entry.proration_status == ChargeStatus.failed.value
        assert entry.gateway_reference is None

    async def test_live_subscription_needs_gateway(self, test_db, ledger):
        tenant, _ = await create_test_tenant(test_db, subscription_id="sub_1", customer_id="cus_1")

        with pytest.raises(GatewayError):
            await ledger.set_billing_overrides(tenant.id, TenantBillingOverrides(custom_rate=Decimal("2.00")))

        assert await rate_entries(test_db, tenant.id) == []

    async def test_rejects_invalid_discount(self, test_db, ledger):
        tenant, record = await create_test_tenant(test_db)
        with pytest.raises(ValidationError):
            await ledger.set_billing_overrides(tenant.id, TenantBillingOverrides(discount_percent=Decimal("100")))
        assert record.rate_per_member == Decimal("1.25")


class TestActivateSubscription:
    async def test_requires_cap(self, test_db, ledger, gateway, catalog):
        tenant, _ = await create_test_tenant(test_db)
        with pytest.raises(ValidationError):
            await ledger.activate_subscription(tenant.id, gateway, catalog)
        assert gateway.calls == []

    async def test_creates_subscription_for_cap(self, test_db, ledger, gateway, catalog):
        tenant, _ = await create_test_tenant(test_db, cap=100, status=SubscriptionStatus.pending.value)

        record = await ledger.activate_subscription(tenant.id, gateway, catalog, payment_method_id="pm_1")

        assert record.status == SubscriptionStatus.active.value
        assert record.billing_mode == BillingMode.prepaid_cap.value
        assert record.billed_cap == 100
        assert record.gateway_subscription_id is not None
        assert record.total_amount == Decimal("125.00")
        (customer_id, rate, quantity, metadata) = gateway.calls_to("create_subscription")[0]
        assert rate == Decimal("1.25")
        assert quantity == 100
        assert metadata == {"tenant_id": tenant.id}

    async def test_settles_deferred_cap_changes(self, test_db, ledger, gateway, catalog):
        tenant, _ = await create_test_tenant(test_db, cap=100, status=SubscriptionStatus.pending.value)
        test_db.add(
            CapChangeEntry(
                tenant_id=tenant.id,
                previous_cap=None,
                new_cap=100,
                rate=Decimal("1.25"),
                additional_cost=Decimal("125.00"),
                charge_status=ChargeStatus.deferred.value,
            )
        )
        await test_db.commit()

        record = await ledger.activate_subscription(tenant.id, gateway, catalog)

        result = await test_db.execute(select(CapChangeEntry).where(CapChangeEntry.tenant_id == tenant.id))
        entry = result.scalars().one()
        await test_db.refresh(entry)
        assert entry.charge_status == ChargeStatus.charged.value
        assert entry.gateway_reference == record.gateway_subscription_id

    async def test_free_tenant_skips_gateway(self, test_db, ledger, gateway, catalog):
        tenant, _ = await create_test_tenant(test_db, cap=50, admin_override=True)

        record = await ledger.activate_subscription(tenant.id, gateway, catalog)

        assert record.status == SubscriptionStatus.active.value
        assert record.total_amount == Decimal("0.00")
        assert gateway.calls == []

    async def test_already_active_subscription(self, test_db, ledger, gateway, catalog):
        tenant, current = await create_test_tenant(test_db, cap=50, subscription_id="sub_1", customer_id="cus_1")

        record = await ledger.activate_subscription(tenant.id, gateway, catalog)

        assert record.id == current.id
        assert gateway.calls == []

    async def test_gateway_failure_writes_nothing(self, test_db, ledger, gateway):
        tenant, _ = await create_test_tenant(test_db, cap=50, status=SubscriptionStatus.pending.value)
        gateway.fail("create_subscription")

        with pytest.raises(GatewayError):
            await ledger.activate_subscription(tenant.id, gateway, PriceCatalog(None, ledger.pricing))

        assert await count_records(test_db, tenant.id) == 1
