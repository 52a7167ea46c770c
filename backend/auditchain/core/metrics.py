"""Prometheus counters for the activity log."""

from __future__ import annotations

from prometheus_client import Counter

ENTRIES_APPENDED = Counter(
    "auditchain_activity_entries_appended_total",
    "Activity entries appended to the chain",
    ["resource"],
)

VERIFICATIONS = Counter(
    "auditchain_activity_verifications_total",
    "Chain verification runs by mode and outcome",
    ["mode", "outcome"],
)

LOG_FAILURES = Counter(
    "auditchain_activity_log_failures_total",
    "Activity log writes that failed after the business mutation succeeded",
    ["code"],
)

LOGIN_FAILURES_THROTTLED = Counter(
    "auditchain_activity_login_failures_throttled_total",
    "Failed sign-ins not recorded because the client IP exceeded its limit",
)
