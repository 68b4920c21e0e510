"""
Rate resolution for per-member billing.

`resolve_effective_rate` turns a tenant's billing overrides and the platform
standard rate into the rate actually charged per billable member. The
standard rate comes from the gateway's price catalog through `PriceCatalog`,
which caches it for a configurable TTL and falls back to the configured
default when the gateway cannot be reached.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import TYPE_CHECKING

from campus.config import settings
from campus.exceptions import GatewayError, ValidationError
from campus.models.tenant import Tenant, TenantBillingOverrides

if TYPE_CHECKING:
    from campus.services.payment_gateway import PaymentGateway

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")


def to_cents(value: Decimal | int | float | str) -> Decimal:
    """Round a monetary amount to cents, half up."""
    try:
        return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation as e:
        raise ValidationError(f"Invalid monetary amount: {value!r}") from e


@dataclass(frozen=True)
class PricingConfig:
    default_rate: Decimal = Decimal("15.00")
    currency: str = "USD"
    billing_cycle: str = "yearly"
    cache_ttl_seconds: int = 300
    price_id: str | None = None

    @classmethod
    def from_settings(cls) -> "PricingConfig":
        return cls(
            default_rate=to_cents(settings.default_rate_per_member),
            currency=settings.default_currency,
            billing_cycle=settings.default_billing_cycle,
            cache_ttl_seconds=settings.price_cache_ttl_seconds,
            price_id=settings.stripe_member_price_id,
        )


def _discounted(standard_rate: Decimal, discount_percent: Decimal) -> Decimal:
    return to_cents(standard_rate * (HUNDRED - discount_percent) / HUNDRED)


def validate_overrides(overrides: TenantBillingOverrides, standard_rate: Decimal | None = None) -> None:
    """
    Reject custom rates and discounts that cannot produce a positive rate.

    Raises:
        ValidationError: custom rate <= 0 or rounding to 0.00, discount outside
            [0, 100), or a discount that rounds the standard rate to 0.00
    """
    if overrides.custom_rate is not None:
        custom = Decimal(str(overrides.custom_rate))
        if custom <= 0 or to_cents(custom) <= ZERO:
            raise ValidationError(
                f"Custom rate must be greater than $0.00 (got {overrides.custom_rate})",
                field="custom_rate",
            )

    if overrides.discount_percent is not None:
        discount = Decimal(str(overrides.discount_percent))
        if discount < 0 or discount >= HUNDRED:
            raise ValidationError(
                f"Discount percent must be in [0, 100) (got {overrides.discount_percent})",
                field="discount_percent",
            )
        if standard_rate is not None and _discounted(Decimal(standard_rate), discount) <= ZERO:
            raise ValidationError(
                f"A {discount}% discount reduces the rate to $0.00; use a free override instead",
                field="discount_percent",
            )


def resolve_effective_rate(overrides: TenantBillingOverrides, standard_rate: Decimal) -> Decimal:
    """
    Resolve the per-member rate for a set of overrides.

    Priority: free override, then custom rate, then percentage discount off
    the standard rate, then the standard rate. The result is rounded to cents.
    """
    standard = Decimal(str(standard_rate))
    if standard < 0:
        raise ValidationError(f"Standard rate cannot be negative (got {standard_rate})", field="standard_rate")

    if overrides.is_free:
        return ZERO

    validate_overrides(overrides, standard)

    if overrides.custom_rate is not None:
        return to_cents(overrides.custom_rate)
    if overrides.discount_percent is not None:
        return _discounted(standard, Decimal(str(overrides.discount_percent)))
    return to_cents(standard)


def prorate_rate_change(
    previous_rate: Decimal,
    new_rate: Decimal,
    billed_members: int,
    period_start: datetime | None,
    period_end: datetime | None,
    now: datetime,
) -> Decimal:
    """
    Signed amount owed for the rest of the current billing period after a
    rate change: positive is charged, negative credited.

    Zero when the period is unknown or already over, or when the difference
    is below one cent per member.
    """
    if period_start is None or period_end is None or billed_members <= 0 or now >= period_end:
        return ZERO
    period_seconds = Decimal(str((period_end - period_start).total_seconds()))
    if period_seconds <= 0:
        return ZERO
    remaining_seconds = min(Decimal(str((period_end - max(now, period_start)).total_seconds())), period_seconds)

    per_member = (Decimal(new_rate) - Decimal(previous_rate)) * remaining_seconds / period_seconds
    if abs(per_member) < CENT:
        return ZERO
    return to_cents(per_member * billed_members)


class PriceCatalog:
    """Caches the platform's standard per-member rate fetched from the gateway."""

    def __init__(
        self,
        gateway: "PaymentGateway | None",
        config: PricingConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.gateway = gateway
        self.config = config or PricingConfig.from_settings()
        self._clock = clock
        self._cached_rate: Decimal | None = None
        self._cached_at: float | None = None

    async def get_standard_rate(self) -> Decimal:
        now = self._clock()
        if (
            self._cached_rate is not None
            and self._cached_at is not None
            and now - self._cached_at < self.config.cache_ttl_seconds
        ):
            return self._cached_rate

        if self.gateway is None or not self.config.price_id:
            rate = self.config.default_rate
        else:
            try:
                price = await self.gateway.fetch_standard_price(self.config.price_id)
                rate = to_cents(price.unit_amount)
            except GatewayError as e:
                logger.error(
                    "Failed to fetch standard price %s, using default $%s: %s",
                    self.config.price_id,
                    self.config.default_rate,
                    e,
                )
                # Not cached so the next call retries the gateway
                return self.config.default_rate

        self._cached_rate = rate
        self._cached_at = now
        return rate

    def clear_cache(self) -> None:
        self._cached_rate = None
        self._cached_at = None


async def resolve_tenant_rate(tenant: Tenant, catalog: PriceCatalog) -> Decimal:
    """Effective per-member rate for a tenant; free tenants never hit the catalog."""
    overrides = tenant.billing_overrides
    if overrides.is_free:
        return ZERO
    standard_rate = await catalog.get_standard_rate()
    return resolve_effective_rate(overrides, standard_rate)
