"""Append-only audit trail of tenant suspensions and restorations."""

import enum

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text

from campus.database import Base
from campus.utils.clock import utcnow


class AccessAction(str, enum.Enum):
    suspend = "suspend"
    restore = "restore"


class SuspensionEvent(Base):
    __tablename__ = "suspension_events"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    action = Column(String(20), nullable=False)
    reason = Column(Text, nullable=True)
    actor_id = Column(Integer, nullable=True)
    # status_override in effect before a suspension, restored by the matching restore
    previous_status = Column(String(20), nullable=True)
    affected_member_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (Index("idx_suspension_tenant", "tenant_id", "id"),)
