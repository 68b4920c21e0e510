from .billing_record import BillingMode, BillingRecord
from .cap_change import CapChangeEntry, CapChangeType, ChargeStatus
from .gateway_event import ProcessedGatewayEvent
from .member import EnrollmentStatus, Member, MemberRole
from .member_lifecycle import MemberLifecycleRecord
from .rate_change import RateChangeEntry
from .suspension_event import AccessAction, SuspensionEvent
from .tenant import SubscriptionStatus, Tenant, TenantBillingOverrides

__all__ = [
    "AccessAction",
    "BillingMode",
    "BillingRecord",
    "CapChangeEntry",
    "CapChangeType",
    "ChargeStatus",
    "EnrollmentStatus",
    "Member",
    "MemberLifecycleRecord",
    "MemberRole",
    "ProcessedGatewayEvent",
    "RateChangeEntry",
    "SubscriptionStatus",
    "SuspensionEvent",
    "Tenant",
    "TenantBillingOverrides",
]
