"""
MemberLifecycleRecord model: a graduated member waiting out the grace period.

Created by the graduation job and removed only by the deletion job once
`grace_period_ends_at` has passed. `member_id` carries no foreign key: the
deletion job has to see records whose account was already removed.
"""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String

from campus.database import Base
from campus.utils.clock import utcnow


class MemberLifecycleRecord(Base):
    __tablename__ = "member_lifecycle_records"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    member_id = Column(Integer, nullable=False, unique=True)
    graduated_at = Column(DateTime, nullable=False)
    grace_period_ends_at = Column(DateTime, nullable=True)
    notified_about_deletion = Column(Boolean, nullable=False, default=False)
    notified_at = Column(DateTime, nullable=True)
    verification_status = Column(String(32), nullable=False, default="pending")
    alumni_status = Column(String(32), nullable=False, default="graduated")
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_lifecycle_grace_end", "grace_period_ends_at"),
        Index("idx_lifecycle_tenant", "tenant_id"),
    )
