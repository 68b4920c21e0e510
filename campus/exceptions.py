"""
Custom Exception Classes for the billing engine

This module defines the exceptions raised by the billing, cap, access and
lifecycle services. Every exception carries an HTTP status code and a
machine-readable error code so request handlers can render them uniformly.
"""

import enum
from typing import Any

from fastapi import status


class ErrorCode(str, enum.Enum):
    """Machine-readable error codes returned to API clients."""

    VALIDATION_FAILED = "VALIDATION_FAILED"
    CAPACITY_EXCEEDED = "CAPACITY_EXCEEDED"
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    RESOURCE_TENANT_NOT_FOUND = "RESOURCE_TENANT_NOT_FOUND"
    RESOURCE_BILLING_RECORD_NOT_FOUND = "RESOURCE_BILLING_RECORD_NOT_FOUND"
    RESOURCE_MEMBER_NOT_FOUND = "RESOURCE_MEMBER_NOT_FOUND"
    GATEWAY_FAILED = "GATEWAY_FAILED"
    GATEWAY_NOT_CONFIGURED = "GATEWAY_NOT_CONFIGURED"
    BILLING_INCONSISTENT = "BILLING_INCONSISTENT"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"
    NOTIFICATION_FAILED = "NOTIFICATION_FAILED"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class CampusError(Exception):
    """Base exception class for all billing-engine exceptions"""

    error_code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
        error_code: ErrorCode | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        if error_code is not None:
            self.error_code = error_code
        super().__init__(self.message)


# ============================================================================
# Validation Exceptions
# ============================================================================


class ValidationError(CampusError):
    """Raised when input is rejected before any write happens"""

    error_code = ErrorCode.VALIDATION_FAILED

    def __init__(self, message: str, field: str | None = None, details: dict[str, Any] | None = None):
        error_details = details or {}
        if field:
            error_details["field"] = field
        super().__init__(message=message, status_code=status.HTTP_400_BAD_REQUEST, details=error_details)


class CapacityExceededError(ValidationError):
    """Raised when a registration would exceed the tenant's membership cap"""

    error_code = ErrorCode.CAPACITY_EXCEEDED

    def __init__(self, tenant_id: int, cap: int, active_count: int):
        super().__init__(
            message=f"Membership cap reached for tenant {tenant_id} ({active_count}/{cap})",
            details={"tenant_id": tenant_id, "cap": cap, "active_count": active_count},
        )
        self.status_code = status.HTTP_409_CONFLICT


# ============================================================================
# Resource Not Found Exceptions
# ============================================================================


class NotFoundError(CampusError):
    """Base class for resource not found errors"""

    error_code = ErrorCode.RESOURCE_NOT_FOUND

    def __init__(self, resource_type: str, resource_id: Any | None = None):
        message = f"{resource_type} not found"
        if resource_id is not None:
            message = f"{resource_type} with id '{resource_id}' not found"
        super().__init__(
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource_type": resource_type, "resource_id": resource_id},
        )


class TenantNotFoundError(NotFoundError):
    """Raised when a tenant is not found"""

    error_code = ErrorCode.RESOURCE_TENANT_NOT_FOUND

    def __init__(self, tenant_id: Any | None = None):
        super().__init__(resource_type="Tenant", resource_id=tenant_id)


class BillingRecordNotFoundError(NotFoundError):
    """Raised when a tenant has no billing record"""

    error_code = ErrorCode.RESOURCE_BILLING_RECORD_NOT_FOUND

    def __init__(self, tenant_id: Any | None = None):
        CampusError.__init__(
            self,
            message=f"No billing record found for tenant '{tenant_id}'",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource_type": "BillingRecord", "tenant_id": tenant_id},
        )


class MemberNotFoundError(NotFoundError):
    """Raised when a member is not found"""

    error_code = ErrorCode.RESOURCE_MEMBER_NOT_FOUND

    def __init__(self, member_id: Any | None = None):
        super().__init__(resource_type="Member", resource_id=member_id)


# ============================================================================
# Gateway & Consistency Exceptions
# ============================================================================


class GatewayError(CampusError):
    """Raised when a payment-gateway call fails after all retry attempts"""

    error_code = ErrorCode.GATEWAY_FAILED

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        attempts: int = 1,
        retryable: bool = False,
    ):
        self.operation = operation
        self.attempts = attempts
        self.retryable = retryable
        details: dict[str, Any] = {"attempts": attempts, "retryable": retryable}
        if operation:
            details["operation"] = operation
        super().__init__(message=message, status_code=status.HTTP_502_BAD_GATEWAY, details=details)


class GatewayNotConfiguredError(GatewayError):
    """Raised when the gateway is used without credentials"""

    error_code = ErrorCode.GATEWAY_NOT_CONFIGURED

    def __init__(self, missing: str = "stripe_secret_key", operation: str | None = None):
        super().__init__(message=f"Payment gateway misconfigured: missing {missing}", operation=operation)
        self.status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class ConsistencyError(CampusError):
    """Raised when local cap/billing state diverges from the last confirmed gateway charge"""

    error_code = ErrorCode.BILLING_INCONSISTENT

    def __init__(
        self,
        message: str,
        tenant_id: int | None = None,
        local_cap: int | None = None,
        billed_cap: int | None = None,
    ):
        self.tenant_id = tenant_id
        self.local_cap = local_cap
        self.billed_cap = billed_cap
        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            details={"tenant_id": tenant_id, "local_cap": local_cap, "billed_cap": billed_cap},
        )


class ConcurrentModificationError(CampusError):
    """Raised when an optimistic version check fails on commit"""

    error_code = ErrorCode.CONCURRENT_MODIFICATION

    def __init__(self, resource_type: str = "Tenant", resource_id: Any | None = None):
        super().__init__(
            message=f"{resource_type} '{resource_id}' was modified concurrently; retry the operation",
            status_code=status.HTTP_409_CONFLICT,
            details={"resource_type": resource_type, "resource_id": resource_id},
        )


class NotificationError(CampusError):
    """Raised when a member notification could not be delivered"""

    error_code = ErrorCode.NOTIFICATION_FAILED

    def __init__(self, message: str, member_id: int | None = None):
        self.member_id = member_id
        super().__init__(message=message, status_code=status.HTTP_502_BAD_GATEWAY, details={"member_id": member_id})
