"""
Tenant model: a billed school.

Billing overrides are stored as typed columns and exposed through
TenantBillingOverrides. `status_override` holds a status set by an
administrative action; when NULL the effective status is derived from the
tenant's billing records. The `version` column backs optimistic locking of
cap mutations against concurrent registrations and suspensions.
"""

import enum
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, Numeric, String

from campus.database import Base
from campus.utils.clock import utcnow


class SubscriptionStatus(str, enum.Enum):
    pending = "pending"
    active = "active"
    suspended = "suspended"
    cancelled = "cancelled"
    past_due = "past_due"


@dataclass(frozen=True)
class TenantBillingOverrides:
    admin_override: bool = False
    free_activation: bool = False
    paid_subscription_despite_free: bool = False
    custom_rate: Decimal | None = None
    discount_percent: Decimal | None = None

    @property
    def is_free(self) -> bool:
        return (self.admin_override or self.free_activation) and not self.paid_subscription_despite_free


class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False, unique=True)
    contact_email = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    # Billing overrides
    admin_override = Column(Boolean, nullable=False, default=False)
    free_activation = Column(Boolean, nullable=False, default=False)
    paid_subscription_despite_free = Column(Boolean, nullable=False, default=False)
    custom_rate = Column(Numeric(10, 2), nullable=True)
    discount_percent = Column(Numeric(5, 2), nullable=True)

    # Membership cap
    membership_cap = Column(Integer, nullable=True)
    cap_enforced = Column(Boolean, nullable=False, default=False)
    cap_set_at = Column(DateTime, nullable=True)
    cap_set_by = Column(Integer, nullable=True)

    status_override = Column(String(20), nullable=True)
    last_admission_at = Column(DateTime, nullable=True)

    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (Index("idx_tenant_status_override", "status_override"),)

    @property
    def billing_overrides(self) -> TenantBillingOverrides:
        return TenantBillingOverrides(
            admin_override=bool(self.admin_override),
            free_activation=bool(self.free_activation),
            paid_subscription_despite_free=bool(self.paid_subscription_despite_free),
            custom_rate=self.custom_rate,
            discount_percent=self.discount_percent,
        )

    def apply_overrides(self, overrides: TenantBillingOverrides) -> None:
        self.admin_override = overrides.admin_override
        self.free_activation = overrides.free_activation
        self.paid_subscription_despite_free = overrides.paid_subscription_despite_free
        self.custom_rate = overrides.custom_rate
        self.discount_percent = overrides.discount_percent

    def cap_snapshot(self) -> tuple[int | None, bool, datetime | None, int | None]:
        return (self.membership_cap, bool(self.cap_enforced), self.cap_set_at, self.cap_set_by)

    def restore_cap_snapshot(self, snapshot: tuple[int | None, bool, datetime | None, int | None]) -> None:
        self.membership_cap, self.cap_enforced, self.cap_set_at, self.cap_set_by = snapshot

    def __repr__(self) -> str:
        return f"<Tenant id={self.id} name={self.name!r} cap={self.membership_cap}>"
