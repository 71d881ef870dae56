"""Tests for the security monitoring service."""

import gzip
import json
from datetime import timedelta

import pytest

from tableguard.config.schema import MonitoringConfig, TableguardConfig
from tableguard.security.counters import InMemoryCounterStore
from tableguard.security.event_store import ActionTaken, InMemoryEventStore
from tableguard.security.exceptions import CounterStoreTimeout, EventStoreError
from tableguard.security.monitoring import SecurityMonitoringService
from tableguard.severity import Severity


class BrokenEventStore(InMemoryEventStore):
    def append(self, event):
        raise EventStoreError("disk full")


class UnavailableCounters:
    def increment(self, key, amount=1, ttl=None):
        raise CounterStoreTimeout("cache down")

    def get(self, key, default=None):
        return default


class FailingRotationStore(InMemoryEventStore):
    def select_expired(self, severity, cutoff):
        if severity is Severity.HIGH:
            raise EventStoreError("database is locked")
        return super().select_expired(severity, cutoff)


@pytest.fixture
def service(monitoring_config, event_store, counters, dispatcher, clock):
    service = SecurityMonitoringService(
        monitoring_config,
        event_store=event_store,
        counters=counters,
        dispatcher=dispatcher,
        clock=clock,
    )
    yield service
    service.close()


class TestThresholdAlerts:
    def test_alert_on_tenth_medium_event_only(self, service, dispatcher, clock):
        for i in range(9):
            service.log_security_event("authentication_failure", {"ip_address": "10.0.0.1"})
            clock.advance(seconds=10)
        assert dispatcher.alerts == []

        service.log_security_event("authentication_failure", {"ip_address": "10.0.0.1"})
        assert len(dispatcher.alerts) == 1
        alert = dispatcher.alerts[0]
        assert alert.severity is Severity.MEDIUM
        assert alert.threshold["count"] == 10
        assert alert.recipients == ["security-team@example.com"]

        service.log_security_event("authentication_failure", {"ip_address": "10.0.0.1"})
        assert len(dispatcher.alerts) == 1
        assert service.get_stats()["alerts_suppressed"] == 1

    def test_medium_xss_alerts_on_tenth_event(self, service, dispatcher, clock):
        for _ in range(4):
            service.log_security_event("xss_attempt", {"ip_address": "10.0.0.1"}, Severity.MEDIUM)
            clock.advance(seconds=30)
        # The high threshold of 3 does not apply to medium events
        assert dispatcher.alerts == []

        for _ in range(5):
            service.log_security_event("xss_attempt", {"ip_address": "10.0.0.1"}, Severity.MEDIUM)
        assert dispatcher.alerts == []

        service.log_security_event("xss_attempt", {"ip_address": "10.0.0.1"}, Severity.MEDIUM)
        assert len(dispatcher.alerts) == 1
        assert dispatcher.alerts[0].severity is Severity.MEDIUM
        assert dispatcher.alerts[0].event_type == "xss_attempt"

    def test_new_window_counts_from_zero(self, service, dispatcher, clock):
        for _ in range(9):
            service.log_security_event("authentication_failure")
        clock.advance(minutes=15)
        service.log_security_event("authentication_failure")

        assert dispatcher.alerts == []

    def test_critical_alerts_immediately(self, service, dispatcher):
        service.log_security_event("sql_injection_attempt", {"ip_address": "10.0.0.1"})

        assert len(dispatcher.alerts) == 1
        assert dispatcher.alerts[0].priority == 1

    def test_event_types_counted_separately(self, service, dispatcher):
        for event_type in ("xss_attempt", "xss_attempt", "path_traversal_attempt"):
            service.log_security_event(event_type)

        assert dispatcher.alerts == []

    def test_rejected_alert_counted_as_dropped(self, service, dispatcher):
        dispatcher.accept = False

        service.log_security_event("sql_injection_attempt")

        stats = service.get_stats()
        assert stats["alerts_dropped"] == 1
        assert stats["alerts_dispatched"] == 0

    def test_severity_override(self, tmp_path, event_store, dispatcher, clock):
        config = MonitoringConfig(
            db_path=str(tmp_path / "events.db"),
            detect_anomalies=False,
            severity_overrides={"page_view": Severity.CRITICAL},
        )
        service = SecurityMonitoringService(
            config, event_store=event_store, dispatcher=dispatcher, clock=clock
        )

        event = service.log_security_event("page_view")

        assert event.severity is Severity.CRITICAL
        assert len(dispatcher.alerts) == 1


class TestEnrichment:
    def test_context_is_enriched_and_redacted(self, service, event_store):
        event = service.log_security_event(
            "xss_attempt",
            {
                "ip_address": "8.8.8.8",
                "session_id": "s-1",
                "user_id": 42,
                "password": "hunter2",
                "note": "mail me at bob@example.com",
                "action_taken": "blocked",
            },
        )

        stored = event_store.get(event.event_id)
        assert stored == event
        assert event.event_id.startswith("sec_")
        assert event.action_taken is ActionTaken.BLOCKED
        assert event.context["password"] == "[REDACTED]"
        assert event.context["note"] == "mail me at [REDACTED]"
        assert event.context["geographic_info"]["scope"] == "public"
        assert event.context["threat_intel"] == {"prior_events_24h": 0, "prior_event_types_24h": []}
        assert event.context["session_info"] == {"session_id": "s-1", "user_id": 42, "user_agent": None}
        assert "hostname" in event.context["server_info"]

    def test_threat_intel_counts_prior_events(self, service):
        service.log_security_event("xss_attempt", {"ip_address": "10.0.0.1"})
        event = service.log_security_event("path_traversal_attempt", {"ip_address": "10.0.0.1"})

        assert event.context["threat_intel"] == {
            "prior_events_24h": 1,
            "prior_event_types_24h": ["xss_attempt"],
        }

    def test_long_strings_truncated(self, service):
        event = service.log_security_event("xss_attempt", {"comment": "x" * 5000})

        assert event.context["comment"].endswith("...[4000 more]")

    def test_unknown_action_defaults_to_logged(self, service):
        event = service.log_security_event("xss_attempt", {"action_taken": "ignored"})
        assert event.action_taken is ActionTaken.LOGGED

    def test_explicit_severity(self, service):
        event = service.log_security_event("xss_attempt", severity="low")
        assert event.severity is Severity.LOW


class TestFailureIsolation:
    def test_persist_failure_is_swallowed(self, monitoring_config, dispatcher, clock):
        service = SecurityMonitoringService(
            monitoring_config, event_store=BrokenEventStore(), dispatcher=dispatcher, clock=clock
        )

        event = service.log_security_event("sql_injection_attempt", {"ip_address": "10.0.0.1"})

        assert event.event_type == "sql_injection_attempt"
        stats = service.get_stats()
        assert stats["persist_failures"] == 1
        assert stats["events_persisted"] == 0
        # Counting and alerting still happen
        assert len(dispatcher.alerts) == 1

    def test_counter_failure_skips_threshold(self, monitoring_config, event_store, dispatcher, clock):
        service = SecurityMonitoringService(
            monitoring_config,
            event_store=event_store,
            counters=UnavailableCounters(),
            dispatcher=dispatcher,
            clock=clock,
        )

        service.log_security_event("sql_injection_attempt")

        assert dispatcher.alerts == []
        assert service.get_stats()["counter_failures"] == 1
        assert len(event_store) == 1

    def test_health_reports_degraded(self, monitoring_config, dispatcher, clock):
        service = SecurityMonitoringService(
            monitoring_config, event_store=BrokenEventStore(), dispatcher=dispatcher, clock=clock
        )
        service.log_security_event("xss_attempt")

        health = service._system_health()

        assert health["status"] == "degraded"
        assert health["persist_failure_rate"] == 1.0


class TestAnomalyReporting:
    @pytest.fixture
    def detecting_service(self, tmp_path, event_store, counters, dispatcher, clock):
        config = MonitoringConfig(
            db_path=str(tmp_path / "events.db"), archive_dir=str(tmp_path / "archive")
        )
        service = SecurityMonitoringService(
            config, event_store=event_store, counters=counters, dispatcher=dispatcher, clock=clock
        )
        yield service
        service.close()

    def test_anomaly_logged_as_second_event(self, detecting_service, event_store):
        original = detecting_service.log_security_event(
            "sql_injection_attempt",
            {"ip_address": "10.0.0.9", "query": "'; DROP TABLE users; --"},
        )

        events = event_store.query()
        assert sorted(e.event_type for e in events) == ["anomaly_detected", "sql_injection_attempt"]
        anomaly = next(e for e in events if e.event_type == "anomaly_detected")
        assert anomaly.severity is Severity.MEDIUM
        assert anomaly.action_taken is ActionTaken.FLAGGED
        assert anomaly.context["original_event_id"] == original.event_id
        assert anomaly.context["anomaly"]["severity"] == "critical"
        assert anomaly.context["anomaly"]["signature_override"] is True

        stats = detecting_service.get_stats()
        assert stats["anomalies_reported"] == 1
        # The synthetic event is not analyzed again
        assert stats["engine"]["analyses"] == 1

    def test_benign_event_not_reported(self, detecting_service, event_store):
        detecting_service.log_security_event("authentication_failure", {"username": "alice"})

        assert [e.event_type for e in event_store.query()] == ["authentication_failure"]

    def test_record_request_feeds_learner(self, detecting_service):
        detecting_service.record_request({"ip_address": "10.0.0.1", "endpoint": "/orders"})

        assert detecting_service.learner.sample_count == 1
        # Far below the minimum sample count
        assert detecting_service.learn_baseline() is None

    def test_from_config(self, tmp_path, event_store, dispatcher):
        config = TableguardConfig(
            monitoring=MonitoringConfig(db_path=str(tmp_path / "events.db"))
        )
        service = SecurityMonitoringService.from_config(
            config, event_store=event_store, dispatcher=dispatcher
        )
        try:
            assert service.engine is not None
            assert service.engine.config == config.detection
        finally:
            service.close()


class TestLogRotation:
    def test_rotation_archives_and_deletes(self, service, event_store, make_event, clock, tmp_path):
        event_store.append(
            make_event("low-old", clock.now - timedelta(days=31), "page_view", Severity.LOW)
        )
        event_store.append(
            make_event("low-new", clock.now - timedelta(days=29), "page_view", Severity.LOW)
        )
        event_store.append(
            make_event(
                "crit-old",
                clock.now - timedelta(days=366),
                "sql_injection_attempt",
                Severity.CRITICAL,
            )
        )

        report = service.manage_log_rotation()

        assert report.total_deleted == 2
        assert report.failures == []
        assert [r.severity for r in report.results] == [
            Severity.CRITICAL,
            Severity.HIGH,
            Severity.MEDIUM,
            Severity.LOW,
        ]
        assert {e.event_id for e in event_store.query()} == {"low-new"}

        archive = tmp_path / "archive" / "low" / "security-events-20240115.jsonl.gz"
        with gzip.open(archive, "rt", encoding="utf-8") as f:
            lines = [json.loads(line) for line in f]
        assert [line["event_id"] for line in lines] == ["low-old"]

    def test_rotation_is_idempotent(self, service, event_store, make_event, clock):
        event_store.append(
            make_event("low-old", clock.now - timedelta(days=31), "page_view", Severity.LOW)
        )

        assert service.manage_log_rotation().total_deleted == 1
        assert service.manage_log_rotation().total_deleted == 0

    def test_failing_severity_does_not_stop_others(
        self, monitoring_config, dispatcher, make_event, clock
    ):
        store = FailingRotationStore()
        store.append(make_event("low-old", clock.now - timedelta(days=31), "page_view", Severity.LOW))
        store.append(make_event("high-old", clock.now - timedelta(days=181)))
        service = SecurityMonitoringService(
            monitoring_config, event_store=store, dispatcher=dispatcher, clock=clock
        )

        report = service.manage_log_rotation()

        assert [r.severity for r in report.failures] == [Severity.HIGH]
        assert "database is locked" in report.failures[0].error
        assert report.total_deleted == 1
        assert [e.event_id for e in store.query()] == ["high-old"]


class TestReadPaths:
    def test_rebuild_counters(self, service, event_store, dispatcher, make_event, clock):
        for i in range(2):
            event_store.append(make_event(f"x{i}", clock.now))

        assert service.rebuild_counters() == 1

        # Third high event in the window crosses the threshold of 3
        service.log_security_event("xss_attempt")
        assert len(dispatcher.alerts) == 1

    def test_rebuild_keeps_alert_once_per_bucket(
        self, service, monitoring_config, event_store, dispatcher, clock
    ):
        for _ in range(3):
            service.log_security_event("xss_attempt")
        assert len(dispatcher.alerts) == 1

        restarted = SecurityMonitoringService(
            monitoring_config,
            event_store=event_store,
            counters=InMemoryCounterStore(),
            dispatcher=dispatcher,
            clock=clock,
        )
        restarted.rebuild_counters()
        restarted.log_security_event("xss_attempt")

        assert len(dispatcher.alerts) == 1
        assert restarted.get_stats()["alerts_suppressed"] == 1

    def test_rebuild_below_threshold_still_alerts(
        self, monitoring_config, event_store, dispatcher, make_event, clock
    ):
        event_store.append(make_event("x0", clock.now))
        service = SecurityMonitoringService(
            monitoring_config, event_store=event_store, dispatcher=dispatcher, clock=clock
        )
        service.rebuild_counters()

        service.log_security_event("xss_attempt")
        assert dispatcher.alerts == []
        service.log_security_event("xss_attempt")
        assert len(dispatcher.alerts) == 1

    def test_audit_trail(self, service):
        service.log_security_event("xss_attempt", {"ip_address": "10.0.0.1"})
        service.log_security_event("authentication_failure", {"ip_address": "10.0.0.2"})

        trail = service.get_audit_trail(ip_address="10.0.0.2")

        assert [e.event_type for e in trail] == ["authentication_failure"]
        assert len(service.get_audit_trail(severity=Severity.HIGH)) == 1

    def test_dashboard_data(self, service):
        service.log_security_event("xss_attempt", {"ip_address": "10.0.0.1"})

        report = service.get_dashboard_data(hours=24)

        assert report.summary["total_events"] == 1
        assert report.system_health["status"] == "healthy"
        assert report.system_health["anomaly_detection"] is False
