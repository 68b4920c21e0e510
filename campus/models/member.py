"""
Member model: the slice of a user account the billing engine reads.

Accounts are owned by the registration subsystem; this engine only counts
billable members, flips them into the graduated state and looks them up
before queuing deletion.
"""

import enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, and_

from campus.database import Base
from campus.utils.clock import utcnow


class MemberRole(str, enum.Enum):
    student = "student"
    teacher = "teacher"
    staff = "staff"
    tenant_admin = "tenant_admin"


class EnrollmentStatus(str, enum.Enum):
    active = "active"
    graduated = "graduated"
    withdrawn = "withdrawn"


# Roles that keep access regardless of the tenant's billing status
PRIVILEGED_ROLES = frozenset({MemberRole.teacher.value, MemberRole.staff.value, MemberRole.tenant_admin.value})


class Member(Base):
    __tablename__ = "members"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="SET NULL"), nullable=True)
    username = Column(String(100), nullable=False, unique=True)
    email = Column(String(255), nullable=True)
    role = Column(String(20), nullable=False, default=MemberRole.student.value)
    enrollment_status = Column(String(20), nullable=False, default=EnrollmentStatus.active.value)
    is_alumni = Column(Boolean, nullable=False, default=False)
    billing_exempt = Column(Boolean, nullable=False, default=False)
    graduation_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (Index("idx_member_tenant_role_status", "tenant_id", "role", "enrollment_status"),)

    @property
    def is_privileged(self) -> bool:
        return self.role in PRIVILEGED_ROLES


def billable_member_clause(tenant_id: int):
    """Filter for members counted toward billing: active, non-alumni, non-exempt students."""
    return and_(
        Member.tenant_id == tenant_id,
        Member.role == MemberRole.student.value,
        Member.enrollment_status == EnrollmentStatus.active.value,
        Member.is_alumni.is_(False),
        Member.billing_exempt.is_(False),
    )


def restricted_member_clause(tenant_id: int):
    """Filter for members who lose access while the tenant is suspended."""
    return and_(Member.tenant_id == tenant_id, Member.role.notin_(PRIVILEGED_ROLES))
