"""Append-only history of membership-cap changes."""

import enum
from decimal import Decimal

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Text

from campus.database import Base
from campus.utils.clock import utcnow


class CapChangeType(str, enum.Enum):
    set = "set"
    increase = "increase"
    reconcile = "reconcile"


class ChargeStatus(str, enum.Enum):
    not_required = "not_required"
    deferred = "deferred"  # no live subscription; billed when the subscription is created
    pending = "pending"  # cap written, gateway charge not yet confirmed
    charged = "charged"
    credited = "credited"  # negative adjustment left for the next invoice
    failed = "failed"  # rate changed but the proration did not reach the gateway
    reverted = "reverted"


class CapChangeEntry(Base):
    __tablename__ = "cap_change_entries"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    previous_cap = Column(Integer, nullable=True)
    new_cap = Column(Integer, nullable=False)
    change_type = Column(String(20), nullable=False, default=CapChangeType.set.value)
    actor_id = Column(Integer, nullable=True)
    reason = Column(Text, nullable=True)
    active_member_count = Column(Integer, nullable=False, default=0)
    rate = Column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    additional_cost = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    charge_status = Column(String(20), nullable=False, default=ChargeStatus.not_required.value)
    gateway_reference = Column(String(128), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_cap_change_tenant", "tenant_id", "id"),
        Index("idx_cap_change_charge_status", "charge_status"),
    )
