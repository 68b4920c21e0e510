"""
Prometheus Metrics Module

Billing-engine counters exposed at the /metrics endpoint.
"""

from prometheus_client import Counter, Info

# =============================================================================
# Application Info
# =============================================================================

APP_INFO = Info("campus_app", "Campus billing application information")


def set_app_info(version: str, environment: str) -> None:
    """Set application info labels."""
    APP_INFO.info({"version": version, "environment": environment})


# =============================================================================
# Payment Gateway Metrics
# =============================================================================

GATEWAY_CALLS_TOTAL = Counter(
    "campus_gateway_calls_total",
    "Payment gateway calls",
    ["operation", "outcome"],  # outcome: success, failure
)

# =============================================================================
# Billing Metrics
# =============================================================================

CAP_CHANGES_TOTAL = Counter(
    "campus_cap_changes_total",
    "Membership cap changes",
    ["change_type", "outcome"],  # outcome: applied, charged, deferred, rejected, rolled_back
)

CONSISTENCY_ERRORS_TOTAL = Counter(
    "campus_consistency_errors_total",
    "Detected divergences between local cap state and the last confirmed gateway charge",
)

# =============================================================================
# Access & Lifecycle Metrics
# =============================================================================

ACCESS_ACTIONS_TOTAL = Counter(
    "campus_access_actions_total",
    "Tenant suspensions and restorations",
    ["action", "outcome"],  # outcome: changed, noop, failed
)

LIFECYCLE_RECORDS_TOTAL = Counter(
    "campus_lifecycle_records_total",
    "Records handled by the member lifecycle jobs",
    ["job", "outcome"],
)


# =============================================================================
# Helpers
# =============================================================================


def record_gateway_call(operation: str, success: bool) -> None:
    GATEWAY_CALLS_TOTAL.labels(operation=operation, outcome="success" if success else "failure").inc()


def record_cap_change(change_type: str, outcome: str) -> None:
    CAP_CHANGES_TOTAL.labels(change_type=change_type, outcome=outcome).inc()


def record_access_action(action: str, outcome: str) -> None:
    ACCESS_ACTIONS_TOTAL.labels(action=action, outcome=outcome).inc()


def record_lifecycle_record(job: str, outcome: str) -> None:
    LIFECYCLE_RECORDS_TOTAL.labels(job=job, outcome=outcome).inc()


def record_consistency_error() -> None:
    CONSISTENCY_ERRORS_TOTAL.inc()
