"""
Tests for rate resolution and the price catalog

Covers override priority, rounding, override validation and the cached
standard rate with its gateway fallback.
"""

from datetime import datetime
from decimal import Decimal

import pytest

from campus.exceptions import ValidationError
from campus.models.tenant import Tenant, TenantBillingOverrides
from campus.services.rate_service import (
    PriceCatalog,
    PricingConfig,
    prorate_rate_change,
    resolve_effective_rate,
    resolve_tenant_rate,
    to_cents,
    validate_overrides,
)
from utils.mocks import MockGateway

STANDARD = Decimal("1.25")


class TestResolveEffectiveRate:
    """Test the override priority order"""

    def test_standard_rate_without_overrides(self):
        assert resolve_effective_rate(TenantBillingOverrides(), STANDARD) == Decimal("1.25")

    def test_admin_override_is_free(self):
        overrides = TenantBillingOverrides(admin_override=True, custom_rate=Decimal("3.00"))
        assert resolve_effective_rate(overrides, STANDARD) == Decimal("0.00")

    def test_free_activation_is_free(self):
        assert resolve_effective_rate(TenantBillingOverrides(free_activation=True), STANDARD) == Decimal("0.00")

    def test_paid_flag_cancels_free_override(self):
        overrides = TenantBillingOverrides(admin_override=True, paid_subscription_despite_free=True)
        assert resolve_effective_rate(overrides, STANDARD) == STANDARD

    def test_custom_rate_beats_discount(self):
        overrides = TenantBillingOverrides(custom_rate=Decimal("0.99"), discount_percent=Decimal("50"))
        assert resolve_effective_rate(overrides, STANDARD) == Decimal("0.99")

    def test_discount_rounds_half_up(self):
        # 1.25 * 0.9 = 1.125
        overrides = TenantBillingOverrides(discount_percent=Decimal("10"))
        assert resolve_effective_rate(overrides, STANDARD) == Decimal("1.13")

    def test_zero_discount_keeps_standard_rate(self):
        overrides = TenantBillingOverrides(discount_percent=Decimal("0"))
        assert resolve_effective_rate(overrides, STANDARD) == STANDARD

    def test_negative_standard_rate_rejected(self):
        with pytest.raises(ValidationError):
            resolve_effective_rate(TenantBillingOverrides(), Decimal("-1"))

    def test_custom_rate_rounded_to_cents(self):
        overrides = TenantBillingOverrides(custom_rate=Decimal("2.005"))
        assert resolve_effective_rate(overrides, STANDARD) == Decimal("2.01")


class TestValidateOverrides:
    """Test rejection of overrides that cannot yield a positive rate"""

    @pytest.mark.parametrize("custom_rate", [Decimal("0"), Decimal("-5"), Decimal("0.004")])
    def test_non_positive_custom_rate(self, custom_rate):
        with pytest.raises(ValidationError) as exc_info:
            validate_overrides(TenantBillingOverrides(custom_rate=custom_rate))
        assert exc_info.value.details["field"] == "custom_rate"

    @pytest.mark.parametrize("discount", [Decimal("-1"), Decimal("100"), Decimal("150")])
    def test_discount_out_of_range(self, discount):
        with pytest.raises(ValidationError) as exc_info:
            validate_overrides(TenantBillingOverrides(discount_percent=discount))
        assert exc_info.value.details["field"] == "discount_percent"

    def test_discount_that_rounds_to_zero(self):
        # 0.01 * 0.4 = 0.004 -> 0.00
        with pytest.raises(ValidationError):
            validate_overrides(TenantBillingOverrides(discount_percent=Decimal("60")), Decimal("0.01"))

    def test_valid_overrides_pass(self):
        validate_overrides(TenantBillingOverrides(custom_rate=Decimal("2.50"), discount_percent=Decimal("20")), STANDARD)


class TestToCents:
    def test_rounds_half_up(self):
        assert to_cents(Decimal("62.505")) == Decimal("62.51")
        assert to_cents(50) == Decimal("50.00")

    def test_invalid_amount(self):
        with pytest.raises(ValidationError):
            to_cents("not-a-number")


class TestProrateRateChange:
    """A year-ish period of 360 days with 90 days left"""

    START = datetime(2025, 1, 1)
    END = datetime(2025, 12, 27)
    NOW = datetime(2025, 9, 28)

    def test_increase_is_positive(self):
        amount = prorate_rate_change(Decimal("1.25"), Decimal("2.25"), 100, self.START, self.END, self.NOW)
        assert amount == Decimal("25.00")

    def test_decrease_is_negative(self):
        amount = prorate_rate_change(Decimal("1.25"), Decimal("0.00"), 100, self.START, self.END, self.NOW)
        assert amount == Decimal("-31.25")

    def test_tiny_difference_ignored(self):
        # $0.02 x 90/360 is half a cent per member
        assert prorate_rate_change(Decimal("1.25"), Decimal("1.27"), 1000, self.START, self.END, self.NOW) == 0

    def test_before_period_counts_full_period(self):
        amount = prorate_rate_change(
            Decimal("1.00"), Decimal("2.00"), 10, self.START, self.END, datetime(2024, 12, 1)
        )
        assert amount == Decimal("10.00")

    @pytest.mark.parametrize(
        "start, end, now",
        [
            (None, END, NOW),
            (START, None, NOW),
            (START, END, datetime(2026, 1, 1)),
            (END, START, NOW),
        ],
    )
    def test_no_period_left(self, start, end, now):
        assert prorate_rate_change(Decimal("1.25"), Decimal("2.25"), 100, start, end, now) == 0

    def test_no_members(self):
        assert prorate_rate_change(Decimal("1.25"), Decimal("2.25"), 0, self.START, self.END, self.NOW) == 0


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestPriceCatalog:
    """Test the cached standard rate"""

    @pytest.fixture
    def config(self):
        return PricingConfig(default_rate=Decimal("15.00"), cache_ttl_seconds=60, price_id="price_member")

    async def test_fetches_and_caches_gateway_price(self, config):
        gateway = MockGateway(standard_rate=Decimal("1.25"))
        clock = FakeClock()
        catalog = PriceCatalog(gateway, config, clock=clock)

        assert await catalog.get_standard_rate() == Decimal("1.25")
        clock.now += 30
        assert await catalog.get_standard_rate() == Decimal("1.25")
        assert len(gateway.calls_to("fetch_standard_price")) == 1

    async def test_refetches_after_ttl(self, config):
        gateway = MockGateway(standard_rate=Decimal("1.25"))
        clock = FakeClock()
        catalog = PriceCatalog(gateway, config, clock=clock)

        await catalog.get_standard_rate()
        clock.now += 61
        gateway.standard_rate = Decimal("1.50")
        assert await catalog.get_standard_rate() == Decimal("1.50")
        assert len(gateway.calls_to("fetch_standard_price")) == 2

    async def test_falls_back_to_default_on_gateway_error(self, config):
        gateway = MockGateway()
        gateway.fail("fetch_standard_price")
        catalog = PriceCatalog(gateway, config, clock=FakeClock())

        assert await catalog.get_standard_rate() == Decimal("15.00")
        # The fallback is not cached; the next call reaches the gateway again
        assert await catalog.get_standard_rate() == gateway.standard_rate
        assert len(gateway.calls_to("fetch_standard_price")) == 2

    async def test_default_without_price_id(self):
        gateway = MockGateway()
        catalog = PriceCatalog(gateway, PricingConfig(default_rate=Decimal("9.99")))
        assert await catalog.get_standard_rate() == Decimal("9.99")
        assert gateway.calls == []

    async def test_clear_cache(self, config):
        gateway = MockGateway()
        catalog = PriceCatalog(gateway, config, clock=FakeClock())
        await catalog.get_standard_rate()
        catalog.clear_cache()
        await catalog.get_standard_rate()
        assert len(gateway.calls_to("fetch_standard_price")) == 2


class TestResolveTenantRate:
    async def test_free_tenant_skips_catalog(self):
        gateway = MockGateway()
        catalog = PriceCatalog(gateway, PricingConfig(price_id="price_member"))
        tenant = Tenant(name="Free School", admin_override=True)
        assert await resolve_tenant_rate(tenant, catalog) == Decimal("0.00")
        assert gateway.calls == []

    async def test_discounted_tenant(self):
        catalog = PriceCatalog(None, PricingConfig(default_rate=Decimal("2.00")))
        tenant = Tenant(name="Discount School", discount_percent=Decimal("25"))
        assert await resolve_tenant_rate(tenant, catalog) == Decimal("1.50")
