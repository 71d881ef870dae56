"""Security anomaly detection and monitoring for tableguard.

Components:

- **Input Validation** (:class:`InputValidator`) - Identifier whitelisting and value sanitization
- **Anomaly Detection** (:class:`AnomalyDetectionEngine`) - Five detectors fused into one verdict
- **Monitoring** (:class:`SecurityMonitoringService`) - Event enrichment, thresholds, alerts, retention
- **Alerting** (:class:`AlertDispatcher`) - Asynchronous multi-channel notification
- **Storage** (:class:`SQLiteEventStore`, :class:`InMemoryCounterStore`) - Event history and counters
- **Dashboard** (:class:`SecurityDashboard`) - Aggregated security reports
"""

from .alert_rules import (
    Alert,
    AlertDispatcher,
    DatabaseNotifier,
    EmailNotifier,
    LogNotifier,
    NotificationChannel,
    NotificationResult,
    Notifier,
    SlackNotifier,
    SMSNotifier,
    build_notifiers,
)
from .counters import CounterStore, InMemoryCounterStore
from .dashboard import DashboardReport, MetricsCache, SecurityDashboard
from .detection import AnomalyDetectionEngine, AnomalyVerdict, DetectionResult
from .event_store import (
    ActionTaken,
    EventStore,
    InMemoryEventStore,
    SecurityEvent,
    SQLiteEventStore,
)
from .exceptions import (
    CounterStoreError,
    CounterStoreTimeout,
    DetectorDegraded,
    DispatchFailure,
    EventStoreError,
    InjectionDetected,
    InputTooLong,
    InvalidIdentifier,
    RotationFailure,
    SecurityValidationError,
    XssDetected,
)
from .geo import GeoLocator, GeoLookup
from .monitoring import RotationReport, RotationResult, SecurityMonitoringService
from .patterns import BLOCK_RULES, SCORED_RULES, PatternMatch, PatternRule, RuleSet, ThreatFamily
from .redaction import SensitiveDataRedactor
from .validator import FieldRule, IdentifierKind, InputValidator, ValueType

__all__ = [
    "BLOCK_RULES",
    "SCORED_RULES",
    "ActionTaken",
    "Alert",
    "AlertDispatcher",
    "AnomalyDetectionEngine",
    "AnomalyVerdict",
    "CounterStore",
    "CounterStoreError",
    "CounterStoreTimeout",
    "DetectorDegraded",
    "DashboardReport",
    "DatabaseNotifier",
    "DetectionResult",
    "DispatchFailure",
    "EmailNotifier",
    "EventStore",
    "EventStoreError",
    "FieldRule",
    "GeoLocator",
    "GeoLookup",
    "IdentifierKind",
    "InMemoryCounterStore",
    "InMemoryEventStore",
    "InjectionDetected",
    "InputTooLong",
    "InputValidator",
    "InvalidIdentifier",
    "LogNotifier",
    "MetricsCache",
    "NotificationChannel",
    "NotificationResult",
    "Notifier",
    "PatternMatch",
    "PatternRule",
    "RotationFailure",
    "RotationReport",
    "RotationResult",
    "RuleSet",
    "SMSNotifier",
    "SQLiteEventStore",
    "SecurityDashboard",
    "SecurityEvent",
    "SecurityMonitoringService",
    "SecurityValidationError",
    "SensitiveDataRedactor",
    "SlackNotifier",
    "ThreatFamily",
    "ValueType",
    "XssDetected",
]
