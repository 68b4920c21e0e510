"""
BillingRecord model: one row per billing configuration of a tenant.

Rows are superseded rather than edited when the billing mode or cap changes,
so the table doubles as the billing history. `total_amount` is written only
by the mapper hooks at the bottom of this module.
"""

import enum
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Numeric, String, event

from campus.database import Base
from campus.models.tenant import SubscriptionStatus
from campus.utils.clock import utcnow

CENT = Decimal("0.01")


class BillingMode(str, enum.Enum):
    per_member = "per_member"
    prepaid_cap = "prepaid_cap"


class BillingRecord(Base):
    __tablename__ = "billing_records"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)

    billing_mode = Column(String(32), nullable=False, default=BillingMode.per_member.value)
    status = Column(String(32), nullable=False, default=SubscriptionStatus.pending.value)
    billing_cycle = Column(String(32), nullable=False, default="yearly")
    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)

    member_count = Column(Integer, nullable=False, default=0)
    rate_per_member = Column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    total_amount = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    billed_cap = Column(Integer, nullable=True)  # only meaningful in prepaid_cap mode
    currency = Column(String(3), nullable=False, default="USD")

    gateway_customer_id = Column(String(128), nullable=True, index=True)
    gateway_subscription_id = Column(String(128), nullable=True, index=True)
    last_payment_at = Column(DateTime, nullable=True)
    next_payment_at = Column(DateTime, nullable=True)

    created_via = Column(String(64), nullable=False, default="onboarding")
    superseded_at = Column(DateTime, nullable=True)
    superseded_by_id = Column(Integer, ForeignKey("billing_records.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_billing_tenant_created", "tenant_id", "created_at"),
        Index("idx_billing_status", "status"),
    )

    @property
    def has_live_subscription(self) -> bool:
        return bool(self.gateway_subscription_id) and self.status != SubscriptionStatus.cancelled.value

    @property
    def billed_members(self) -> int:
        if self.billing_mode == BillingMode.prepaid_cap.value:
            return self.billed_cap or 0
        return self.member_count or 0

    def compute_total_amount(self) -> Decimal:
        rate = Decimal(self.rate_per_member or 0)
        return (Decimal(self.billed_members) * rate).quantize(CENT, rounding=ROUND_HALF_UP)

    def __repr__(self) -> str:
        return (
            f"<BillingRecord id={self.id} tenant={self.tenant_id} mode={self.billing_mode} "
            f"status={self.status} total={self.total_amount}>"
        )


@event.listens_for(BillingRecord, "before_insert")
@event.listens_for(BillingRecord, "before_update")
def _recompute_total_amount(mapper, connection, target: BillingRecord) -> None:
    target.total_amount = target.compute_total_amount()
