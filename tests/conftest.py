"""Pytest configuration and shared fixtures."""

from datetime import datetime, timedelta
from typing import Any

import pytest

from tableguard.config.schema import MonitoringConfig, TableguardConfig
from tableguard.security.alert_rules import Alert
from tableguard.security.counters import InMemoryCounterStore
from tableguard.security.event_store import ActionTaken, InMemoryEventStore, SecurityEvent
from tableguard.severity import Severity

# Aligned to every default alert window (60s, 300s, 900s, 3600s)
FIXED_NOW = datetime(2024, 1, 15, 12, 0, 0)


class FixedClock:
    """Settable clock returning naive UTC datetimes."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingDispatcher:
    """Alert sink that keeps submitted alerts."""

    def __init__(self, accept: bool = True):
        self.accept = accept
        self.alerts: list[Alert] = []

    def submit(self, alert: Alert) -> bool:
        self.alerts.append(alert)
        return self.accept


class RecordingSink:
    """Security event sink that keeps reported events."""

    def __init__(self):
        self.events: list[tuple[str, dict[str, Any], Severity | None]] = []

    def log_security_event(self, event_type, context=None, severity=None):
        self.events.append((event_type, dict(context or {}), severity))

    def types(self) -> list[str]:
        return [event_type for event_type, _, _ in self.events]


@pytest.fixture
def default_config() -> TableguardConfig:
    """Provide a default configuration for tests."""
    return TableguardConfig()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def counters() -> InMemoryCounterStore:
    return InMemoryCounterStore()


@pytest.fixture
def event_store() -> InMemoryEventStore:
    return InMemoryEventStore()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def monitoring_config(tmp_path) -> MonitoringConfig:
    """Monitoring config with anomaly detection off and paths under tmp_path."""
    return MonitoringConfig(
        db_path=str(tmp_path / "events.db"),
        archive_dir=str(tmp_path / "archive"),
        detect_anomalies=False,
    )


def make_event(
    event_id: str,
    timestamp: datetime = FIXED_NOW,
    event_type: str = "xss_attempt",
    severity: Severity = Severity.HIGH,
    ip_address: str | None = "198.51.100.7",
    context: dict[str, Any] | None = None,
    action_taken: ActionTaken = ActionTaken.LOGGED,
) -> SecurityEvent:
    return SecurityEvent(
        event_id=event_id,
        timestamp=timestamp,
        event_type=event_type,
        severity=severity,
        ip_address=ip_address,
        context=context or {},
        action_taken=action_taken,
    )


@pytest.fixture(name="make_event")
def make_event_fixture():
    """Factory for SecurityEvent records."""
    return make_event
