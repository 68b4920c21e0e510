"""Append-only history of per-member rate changes."""

from decimal import Decimal

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Text

from campus.database import Base
from campus.models.cap_change import ChargeStatus
from campus.utils.clock import utcnow


class RateChangeEntry(Base):
    __tablename__ = "rate_change_entries"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    previous_rate = Column(Numeric(10, 2), nullable=False)
    new_rate = Column(Numeric(10, 2), nullable=False)
    billed_members = Column(Integer, nullable=False, default=0)
    actor_id = Column(Integer, nullable=True)
    reason = Column(Text, nullable=True)
    # Signed: positive was charged, negative credited
    proration_amount = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    proration_status = Column(String(20), nullable=False, default=ChargeStatus.not_required.value)
    gateway_reference = Column(String(128), nullable=True)
    cancelled_subscription_id = Column(String(128), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (Index("idx_rate_change_tenant", "tenant_id", "id"),)
