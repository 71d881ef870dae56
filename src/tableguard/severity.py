"""Severity levels shared by configuration, detection and monitoring."""

from enum import StrEnum


class Severity(StrEnum):
    """Security event severity levels."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Numeric rank for ordering (low=1 ... critical=4)."""
        return _RANKS[self]


_RANKS = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}

# Alert priority: 1 is the most urgent
ALERT_PRIORITY = {
    Severity.CRITICAL: 1,
    Severity.HIGH: 2,
    Severity.MEDIUM: 3,
    Severity.LOW: 4,
}

# Default severity per event type; unknown types are LOW
EVENT_SEVERITIES: dict[str, Severity] = {
    "sql_injection_attempt": Severity.CRITICAL,
    "xss_attempt": Severity.HIGH,
    "path_traversal_attempt": Severity.HIGH,
    "command_injection_attempt": Severity.CRITICAL,
    "rate_limit_exceeded": Severity.MEDIUM,
    "malicious_pattern_detected": Severity.HIGH,
    "suspicious_user_agent": Severity.MEDIUM,
    "invalid_input_validation": Severity.MEDIUM,
    "security_violation_blocked": Severity.HIGH,
    "authentication_failure": Severity.MEDIUM,
    "authorization_failure": Severity.HIGH,
    "data_exfiltration_attempt": Severity.CRITICAL,
    "anomaly_detected": Severity.MEDIUM,
}


def resolve_severity(event_type: str, overrides: dict[str, Severity] | None = None) -> Severity:
    """Severity for an event type, honouring configured overrides."""
    if overrides and event_type in overrides:
        return Severity(overrides[event_type])
    return EVENT_SEVERITIES.get(event_type, Severity.LOW)
