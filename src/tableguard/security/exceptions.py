"""Exception types for the security layer.

Only :class:`SecurityValidationError` and its subclasses are meant to reach
callers. Their string form is a fixed message per violation and never echoes
the offending payload; details travel in ``context`` for logging.
"""

from typing import Any


class SecurityValidationError(Exception):
    """Base class for input validation failures."""

    public_message = "Invalid input"
    default_message = "Input validation failed"

    def __init__(
        self,
        message: str | None = None,
        violation: str = "invalid_input",
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message or self.default_message)
        self.violation = violation
        self.context = context or {}


class InvalidIdentifier(SecurityValidationError):
    """Identifier (table, column or array key) is malformed or not allowed."""

    default_message = "Invalid identifier"


class InputTooLong(SecurityValidationError):
    """Input exceeds its maximum length or nesting depth."""

    default_message = "Input exceeds maximum length"


class InjectionDetected(SecurityValidationError):
    """SQL injection or path traversal payload detected."""

    default_message = "Injection attempt detected"


class XssDetected(SecurityValidationError):
    """Markup or script injection payload detected."""

    default_message = "XSS attempt detected"


class CounterStoreError(Exception):
    """Counter store is unavailable."""


class CounterStoreTimeout(CounterStoreError):
    """Counter store operation did not complete within its time box."""


class EventStoreError(Exception):
    """Event store read or write failed."""


class DetectorDegraded(Exception):
    """A detector could not complete. Internal to the engine, never propagated."""

    def __init__(self, detector: str, reason: str):
        super().__init__(f"{detector} detector degraded: {reason}")
        self.detector = detector
        self.reason = reason


class DispatchFailure(Exception):
    """A notification channel could not deliver an alert."""


class RotationFailure(Exception):
    """Retention/rotation failed for one severity."""

    def __init__(self, severity: str, cutoff: Any, reason: str):
        super().__init__(f"Rotation failed for {severity} (cutoff {cutoff}): {reason}")
        self.severity = severity
        self.cutoff = cutoff
