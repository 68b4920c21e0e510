"""
Payment Gateway Adapter

`PaymentGateway` is the interface the billing services depend on;
`StripeGateway` implements it on top of the async Stripe API. Every call goes
through `call_with_retries`, so transient Stripe failures (connection errors,
rate limits, 5xx API errors) are retried with exponential backoff before a
`GatewayError` is raised.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, TypeVar

import stripe

from campus.config import settings
from campus.exceptions import GatewayError, GatewayNotConfiguredError
from campus.models.tenant import SubscriptionStatus
from campus.services.rate_service import to_cents
from campus.utils.metrics import record_gateway_call
from campus.utils.retry import call_with_retries

T = TypeVar("T")

logger = logging.getLogger(__name__)

TRANSIENT_STRIPE_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)

BILLING_CYCLE_INTERVALS = {"monthly": "month", "yearly": "year"}


@dataclass(frozen=True)
class PriceInfo:
    price_id: str
    unit_amount: Decimal
    currency: str
    interval: str | None = None


@dataclass(frozen=True)
class GatewaySubscription:
    subscription_id: str
    customer_id: str
    status: str
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None


@dataclass(frozen=True)
class GatewayCharge:
    reference: str
    amount: Decimal
    currency: str


def to_minor_units(amount: Decimal) -> int:
    return int(to_cents(amount) * 100)


def from_timestamp(value: int | None) -> datetime | None:
    """Stripe epoch seconds to a naive UTC datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)


def stripe_field(obj: Any, name: str, default: Any = None) -> Any:
    """Optional field of a Stripe object (or plain dict); Stripe objects are not dicts."""
    if obj is None or name not in obj:
        return default
    return obj[name]


def subscription_period(subscription: Any) -> tuple[datetime | None, datetime | None]:
    """
    Current billing period of a subscription.

    Newer Stripe API versions report the period on each subscription item
    instead of on the subscription itself.
    """
    start = stripe_field(subscription, "current_period_start")
    end = stripe_field(subscription, "current_period_end")
    if start is None or end is None:
        items = stripe_field(stripe_field(subscription, "items"), "data") or []
        if items:
            start = start if start is not None else stripe_field(items[0], "current_period_start")
            end = end if end is not None else stripe_field(items[0], "current_period_end")
    return from_timestamp(start), from_timestamp(end)


class PaymentGateway(ABC):
    @abstractmethod
    async def create_customer(self, tenant_id: int, name: str, email: str | None = None) -> str:
        """Create a customer for a tenant and return its gateway id."""

    @abstractmethod
    async def create_subscription(
        self,
        customer_id: str,
        rate: Decimal,
        quantity: int,
        metadata: dict[str, Any] | None = None,
        payment_method_id: str | None = None,
    ) -> GatewaySubscription: ...

    @abstractmethod
    async def update_subscription_rate(self, subscription_id: str, rate: Decimal) -> None: ...

    @abstractmethod
    async def update_subscription_quantity(self, subscription_id: str, quantity: int) -> None: ...

    @abstractmethod
    async def charge_prorated_amount(self, customer_id: str, delta: int, rate: Decimal) -> GatewayCharge:
        """Immediately invoice ``delta`` additional members at ``rate``."""

    @abstractmethod
    async def adjust_balance(self, customer_id: str, amount: Decimal, description: str) -> GatewayCharge:
        """Invoice a positive amount now; a negative amount is credited against the next invoice."""

    @abstractmethod
    async def cancel_subscription(self, subscription_id: str) -> None: ...

    @abstractmethod
    async def suspend_subscription(self, subscription_id: str, reason: str | None = None) -> None: ...

    @abstractmethod
    async def resume_subscription(self, subscription_id: str) -> None: ...

    @abstractmethod
    async def fetch_standard_price(self, price_id: str) -> PriceInfo: ...


class StripeGateway(PaymentGateway):
    """PaymentGateway backed by Stripe's async resource methods."""

    def __init__(
        self,
        api_key: str | None,
        *,
        product_id: str | None = None,
        currency: str = "USD",
        billing_cycle: str = "yearly",
        max_attempts: int = 3,
        backoff_base_seconds: float = 0.5,
        backoff_max_seconds: float = 8.0,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ):
        self.api_key = api_key
        self.product_id = product_id
        self.currency = currency.lower()
        self.interval = BILLING_CYCLE_INTERVALS.get(billing_cycle, "year")
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self._sleep = sleep

    @classmethod
    def from_settings(cls) -> "StripeGateway":
        return cls(
            settings.stripe_secret_key,
            product_id=settings.stripe_product_id,
            currency=settings.default_currency,
            billing_cycle=settings.default_billing_cycle,
            max_attempts=settings.gateway_max_attempts,
            backoff_base_seconds=settings.gateway_backoff_base_seconds,
            backoff_max_seconds=settings.gateway_backoff_max_seconds,
        )

    async def _call(self, operation: str, func: Callable[[], Awaitable[T]]) -> T:
        if not self.api_key:
            raise GatewayNotConfiguredError(operation=operation)

        attempts = 0

        async def attempt() -> T:
            nonlocal attempts
            attempts += 1
            return await func()

        retry_kwargs: dict[str, Any] = {
            "max_attempts": self.max_attempts,
            "base_delay": self.backoff_base_seconds,
            "max_delay": self.backoff_max_seconds,
            "retry_on": TRANSIENT_STRIPE_ERRORS,
        }
        if self._sleep is not None:
            retry_kwargs["sleep"] = self._sleep

        try:
            result = await call_with_retries(f"stripe.{operation}", attempt, **retry_kwargs)
        except stripe.StripeError as e:
            record_gateway_call(operation, success=False)
            logger.error(f"Stripe {operation} failed after {attempts} attempt(s): {e}")
            raise GatewayError(
                f"Payment gateway {operation} failed: {e.user_message or e}",
                operation=operation,
                attempts=attempts,
                retryable=isinstance(e, TRANSIENT_STRIPE_ERRORS),
            ) from e

        record_gateway_call(operation, success=True)
        return result

    def _price_data(self, rate: Decimal) -> dict[str, Any]:
        if not self.product_id:
            raise GatewayNotConfiguredError(missing="stripe_product_id", operation="price_data")
        return {
            "currency": self.currency,
            "product": self.product_id,
            "unit_amount": to_minor_units(rate),
            "recurring": {"interval": self.interval},
        }

    async def create_customer(self, tenant_id: int, name: str, email: str | None = None) -> str:
        customer = await self._call(
            "create_customer",
            lambda: stripe.Customer.create_async(
                api_key=self.api_key,
                name=name,
                email=email,
                metadata={"tenant_id": str(tenant_id)},
            ),
        )
        logger.info(f"Created Stripe customer {customer.id} for tenant {tenant_id}")
        return customer.id

    async def create_subscription(
        self,
        customer_id: str,
        rate: Decimal,
        quantity: int,
        metadata: dict[str, Any] | None = None,
        payment_method_id: str | None = None,
    ) -> GatewaySubscription:
        params: dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price_data": self._price_data(rate), "quantity": quantity}],
            "metadata": {k: str(v) for k, v in (metadata or {}).items()},
        }
        if payment_method_id:
            params["default_payment_method"] = payment_method_id

        subscription = await self._call(
            "create_subscription",
            lambda: stripe.Subscription.create_async(api_key=self.api_key, **params),
        )
        period_start, period_end = subscription_period(subscription)
        return GatewaySubscription(
            subscription_id=subscription.id,
            customer_id=customer_id,
            status=stripe_field(subscription, "status", "incomplete"),
            current_period_start=period_start,
            current_period_end=period_end,
        )

    async def _first_item_id(self, subscription_id: str) -> str:
        subscription = await self._call(
            "retrieve_subscription",
            lambda: stripe.Subscription.retrieve_async(subscription_id, api_key=self.api_key),
        )
        items = stripe_field(stripe_field(subscription, "items"), "data") or []
        if not items:
            raise GatewayError(
                f"Subscription {subscription_id} has no items",
                operation="retrieve_subscription",
            )
        return stripe_field(items[0], "id")

    async def update_subscription_rate(self, subscription_id: str, rate: Decimal) -> None:
        item_id = await self._first_item_id(subscription_id)
        price_data = self._price_data(rate)
        await self._call(
            "update_subscription_rate",
            lambda: stripe.Subscription.modify_async(
                subscription_id,
                api_key=self.api_key,
                items=[{"id": item_id, "price_data": price_data}],
                proration_behavior="none",
            ),
        )

    async def update_subscription_quantity(self, subscription_id: str, quantity: int) -> None:
        item_id = await self._first_item_id(subscription_id)
        await self._call(
            "update_subscription_quantity",
            lambda: stripe.Subscription.modify_async(
                subscription_id,
                api_key=self.api_key,
                items=[{"id": item_id, "quantity": quantity}],
                proration_behavior="none",
            ),
        )

    async def _invoice_now(self, operation: str, customer_id: str, amount: Decimal, description: str) -> str:
        # Reused across retries so a retried call cannot bill twice
        idempotency_key = str(uuid.uuid4())

        async def invoice_and_finalize():
            await stripe.InvoiceItem.create_async(
                api_key=self.api_key,
                customer=customer_id,
                amount=to_minor_units(amount),
                currency=self.currency,
                description=description,
                idempotency_key=f"{idempotency_key}-item",
            )
            invoice = await stripe.Invoice.create_async(
                api_key=self.api_key,
                customer=customer_id,
                pending_invoice_items_behavior="include",
                auto_advance=True,
                idempotency_key=f"{idempotency_key}-invoice",
            )
            return await stripe.Invoice.finalize_invoice_async(invoice.id, api_key=self.api_key)

        invoice = await self._call(operation, invoice_and_finalize)
        logger.info(f"Charged {amount} {self.currency} to {customer_id} (invoice {invoice.id})")
        return invoice.id

    async def charge_prorated_amount(self, customer_id: str, delta: int, rate: Decimal) -> GatewayCharge:
        amount = to_cents(Decimal(delta) * Decimal(rate))
        description = f"Membership cap increase: {delta} member(s) at {rate}"
        reference = await self._invoice_now("charge_prorated_amount", customer_id, amount, description)
        return GatewayCharge(reference=reference, amount=amount, currency=self.currency)

    async def adjust_balance(self, customer_id: str, amount: Decimal, description: str) -> GatewayCharge:
        amount = to_cents(amount)
        if amount > 0:
            reference = await self._invoice_now("adjust_balance", customer_id, amount, description)
            return GatewayCharge(reference=reference, amount=amount, currency=self.currency)

        # A negative pending item is picked up by the next invoice as a credit
        idempotency_key = str(uuid.uuid4())
        item = await self._call(
            "adjust_balance",
            lambda: stripe.InvoiceItem.create_async(
                api_key=self.api_key,
                customer=customer_id,
                amount=to_minor_units(amount),
                currency=self.currency,
                description=description,
                idempotency_key=f"{idempotency_key}-credit",
            ),
        )
        logger.info(f"Credited {-amount} {self.currency} to {customer_id} (item {item.id})")
        return GatewayCharge(reference=item.id, amount=amount, currency=self.currency)

    async def cancel_subscription(self, subscription_id: str) -> None:
        await self._call(
            "cancel_subscription",
            lambda: stripe.Subscription.cancel_async(subscription_id, api_key=self.api_key),
        )

    async def suspend_subscription(self, subscription_id: str, reason: str | None = None) -> None:
        await self._call(
            "suspend_subscription",
            lambda: stripe.Subscription.modify_async(
                subscription_id,
                api_key=self.api_key,
                pause_collection={"behavior": "void"},
                metadata={"suspension_reason": reason or ""},
            ),
        )

    async def resume_subscription(self, subscription_id: str) -> None:
        await self._call(
            "resume_subscription",
            lambda: stripe.Subscription.modify_async(
                subscription_id,
                api_key=self.api_key,
                pause_collection="",
                metadata={"suspension_reason": ""},
            ),
        )

    async def fetch_standard_price(self, price_id: str) -> PriceInfo:
        price = await self._call(
            "fetch_standard_price",
            lambda: stripe.Price.retrieve_async(price_id, api_key=self.api_key),
        )
        return PriceInfo(
            price_id=price.id,
            unit_amount=to_cents(Decimal(stripe_field(price, "unit_amount") or 0) / 100),
            currency=(stripe_field(price, "currency") or self.currency).upper(),
            interval=stripe_field(stripe_field(price, "recurring"), "interval"),
        )


GATEWAY_STATUS_MAP = {
    "active": SubscriptionStatus.active.value,
    "trialing": SubscriptionStatus.active.value,
    "past_due": SubscriptionStatus.past_due.value,
    "unpaid": SubscriptionStatus.past_due.value,
    "canceled": SubscriptionStatus.cancelled.value,
    "incomplete_expired": SubscriptionStatus.cancelled.value,
    "incomplete": SubscriptionStatus.pending.value,
    "paused": SubscriptionStatus.suspended.value,
}


def map_subscription_status(gateway_status: str | None) -> str:
    """Map a Stripe subscription status onto the local billing status."""
    return GATEWAY_STATUS_MAP.get(gateway_status or "", SubscriptionStatus.pending.value)
