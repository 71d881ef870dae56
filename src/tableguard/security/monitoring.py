"""Security monitoring service.

Single ingestion point for security events. Each logged event moves through
``received -> enriched -> persisted -> counted -> (alert dispatched)`` and,
once older than its severity's retention period, is archived and deleted by
:meth:`SecurityMonitoringService.manage_log_rotation`.

Nothing on the ingestion path raises to the caller: store, counter,
detection and dispatch failures are logged and the event flow continues.
"""

import gzip
import json
import logging
import platform
import socket
import threading
import uuid
from collections import Counter
from collections.abc import Mapping
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, Field

from tableguard import __version__
from tableguard.clock import Clock, to_epoch, utcnow
from tableguard.config.schema import DetectionConfig, MonitoringConfig, TableguardConfig
from tableguard.logging_setup import CRITICAL_LOGGER, EVENTS_LOGGER, level_for_severity
from tableguard.severity import Severity, resolve_severity

from .alert_rules import Alert, AlertDispatcher
from .counters import CounterStore, InMemoryCounterStore
from .dashboard import DashboardReport, SecurityDashboard
from .detection import (
    AnomalyDetectionEngine,
    BaselineLearner,
    BaselineStore,
    BehavioralBaseline,
)
from .event_store import ActionTaken, EventStore, SecurityEvent, SQLiteEventStore
from .exceptions import CounterStoreError, RotationFailure
from .geo import GeoLocator, GeoLookup
from .redaction import SensitiveDataRedactor, truncate_strings

logger = logging.getLogger(__name__)
events_log = logging.getLogger(EVENTS_LOGGER)
critical_log = logging.getLogger(CRITICAL_LOGGER)

ANOMALY_EVENT_TYPE = "anomaly_detected"
THREAT_INTEL_WINDOW = timedelta(hours=24)


class AlertSink(Protocol):
    """Anything that accepts alerts without blocking (normally the dispatcher)."""

    def submit(self, alert: Alert) -> bool: ...


class RotationResult(BaseModel):
    """Outcome of rotating one severity."""

    severity: Severity
    cutoff: datetime
    archived: int = 0
    deleted: int = 0
    archive_file: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class RotationReport(BaseModel):
    """Outcome of one rotation run."""

    started_at: datetime
    results: list[RotationResult] = Field(default_factory=list)

    @property
    def total_deleted(self) -> int:
        return sum(r.deleted for r in self.results)

    @property
    def failures(self) -> list[RotationResult]:
        return [r for r in self.results if not r.ok]


class SecurityMonitoringService:
    """Logs, counts, alerts on and retains security events.

    Usage:
        service = SecurityMonitoringService.from_config(load_config())

        service.log_security_event(
            "xss_attempt", {"ip_address": "198.51.100.7", "field": "comment"}
        )
        report = service.get_dashboard_data(hours=24)
        service.manage_log_rotation()   # daily, from cron/timer
    """

    def __init__(
        self,
        config: MonitoringConfig | None = None,
        event_store: EventStore | None = None,
        counters: CounterStore | None = None,
        dispatcher: AlertSink | None = None,
        engine: AnomalyDetectionEngine | None = None,
        detection_config: DetectionConfig | None = None,
        geo: GeoLookup | None = None,
        clock: Clock = utcnow,
    ):
        """Initialize monitoring service.

        Args:
            config: Monitoring configuration
            event_store: Durable event store (SQLite at ``config.db_path`` if None)
            counters: Counter store for thresholds and behavior tracking
            dispatcher: Alert sink (an :class:`AlertDispatcher` if None)
            engine: Anomaly engine (built from ``detection_config`` if None
                and anomaly detection is enabled)
            detection_config: Detection configuration for the default engine
            geo: IP geolocation lookup
            clock: Source of the current naive UTC time
        """
        self.config = config or MonitoringConfig()
        self._clock = clock
        self.store: EventStore = (
            event_store
            if event_store is not None
            else SQLiteEventStore(self.config.db_path, timeout=self.config.store_timeout_seconds)
        )
        self.counters = counters if counters is not None else InMemoryCounterStore()
        self.dispatcher = (
            dispatcher
            if dispatcher is not None
            else AlertDispatcher.from_config(self.config, self.store)
        )
        self.geo = geo or GeoLocator(self.config.geo_networks)

        self.engine = engine
        if self.engine is None and self.config.detect_anomalies:
            self.engine = AnomalyDetectionEngine(
                detection_config,
                event_store=self.store,
                counters=self.counters,
                alert_thresholds=self.config.alert_thresholds,
                severity_overrides=self.config.severity_overrides,
                clock=clock,
            )
        self.learner = BaselineLearner(clock=clock)

        self.dashboard = SecurityDashboard(
            self.store,
            alert_thresholds=self.config.alert_thresholds,
            health_provider=self._system_health,
            clock=clock,
        )

        self._server_info = {
            "hostname": socket.gethostname(),
            "python_version": platform.python_version(),
            "platform": platform.system(),
            "tableguard_version": __version__,
        }
        self._stats_lock = threading.Lock()
        self.stats: dict[str, int] = {
            "events_logged": 0,
            "events_persisted": 0,
            "persist_failures": 0,
            "counter_failures": 0,
            "alerts_dispatched": 0,
            "alerts_suppressed": 0,
            "alerts_dropped": 0,
            "anomalies_reported": 0,
            "detection_failures": 0,
        }

    @classmethod
    def from_config(cls, config: TableguardConfig, **kwargs: Any) -> "SecurityMonitoringService":
        return cls(config.monitoring, detection_config=config.detection, **kwargs)

    # -- ingestion -------------------------------------------------------

    def log_security_event(
        self,
        event_type: str,
        context: Mapping[str, Any] | None = None,
        severity: Severity | str | None = None,
    ) -> SecurityEvent:
        """Record a security event.

        Args:
            event_type: Event type (e.g. ``sql_injection_attempt``)
            context: Caller context; ``ip_address``, ``user_id``,
                ``session_id`` and ``action_taken`` are recognised
            severity: Explicit severity (resolved from the event type if None)

        Returns:
            The event as persisted (redacted and truncated context)
        """
        context = dict(context or {})
        severity = (
            Severity(severity)
            if severity
            else resolve_severity(event_type, self.config.severity_overrides)
        )
        now = self._clock()

        enriched = self._enrich(event_type, severity, context, now)
        cleaned = truncate_strings(
            SensitiveDataRedactor.redact_dict(enriched), self.config.max_context_value_chars
        )
        event = SecurityEvent(
            event_id=enriched["event_id"],
            timestamp=now,
            event_type=event_type,
            severity=severity,
            ip_address=str(context["ip_address"]) if context.get("ip_address") else None,
            context=cleaned,
            action_taken=self._action_taken(context),
        )

        self._bump("events_logged")
        self._write_log(event)
        self._persist(event)
        self._count_and_alert(event)

        if self.engine is not None and event_type != ANOMALY_EVENT_TYPE:
            self._detect(event, enriched)

        return event

    def record_request(self, context: Mapping[str, Any]) -> None:
        """Feed request activity to behavioral tracking."""
        if self.engine is None:
            return
        try:
            snapshot = self.engine.tracker.record_request(context)
        except CounterStoreError as e:
            logger.warning("Behavior tracking unavailable: %s", e)
            self._bump("counter_failures")
            return
        if snapshot is not None:
            self.learner.observe(snapshot)

    def learn_baseline(self) -> BehavioralBaseline | None:
        """Publish a baseline learned from recorded requests.

        Engines built afterwards pick it up; existing engines keep theirs.
        """
        return self.learner.learn(BaselineStore(self.counters))

    # -- read paths ------------------------------------------------------

    def get_dashboard_data(self, hours: int = 24) -> DashboardReport:
        """Aggregate the last ``hours`` of events for dashboards."""
        return self.dashboard.get_report(hours)

    def get_audit_trail(
        self,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        event_type: str | None = None,
        severity: Severity | None = None,
        ip_address: str | None = None,
        limit: int = 100,
    ) -> list[SecurityEvent]:
        """Persisted events matching the filters, newest first."""
        return self.store.query(start_time, end_time, event_type, severity, ip_address, limit)

    def get_stats(self) -> dict[str, Any]:
        with self._stats_lock:
            stats: dict[str, Any] = dict(self.stats)
        if isinstance(self.dispatcher, AlertDispatcher):
            stats["dispatcher"] = self.dispatcher.get_stats()
        if self.engine is not None:
            stats["engine"] = self.engine.get_stats()
        return stats

    # -- retention -------------------------------------------------------

    def manage_log_rotation(self) -> RotationReport:
        """Archive and delete events past their severity's retention period.

        Only the events selected for archival are deleted, so events written
        while rotation runs are untouched. Running it twice with no new
        expired events changes nothing. A failing severity is reported and
        does not undo the others.
        """
        now = self._clock()
        report = RotationReport(started_at=now)

        for severity in sorted(Severity, key=lambda s: s.rank, reverse=True):
            cutoff = now - timedelta(days=self.config.retention_days[severity])
            try:
                report.results.append(self._rotate(severity, cutoff, now))
            except Exception as e:
                failure = RotationFailure(severity.value, cutoff, f"{type(e).__name__}: {e}")
                logger.error("%s", failure, exc_info=True)
                report.results.append(
                    RotationResult(severity=severity, cutoff=cutoff, error=str(failure))
                )

        logger.info(
            "Log rotation finished: %d deleted, %d failed severities",
            report.total_deleted,
            len(report.failures),
        )
        return report

    def _rotate(self, severity: Severity, cutoff: datetime, now: datetime) -> RotationResult:
        expired = self.store.select_expired(severity, cutoff)
        if not expired:
            return RotationResult(severity=severity, cutoff=cutoff)

        archive = self._archive(severity, expired, now)
        deleted = self.store.delete([e.event_id for e in expired])
        logger.info(
            "Rotated %d %s events older than %s into %s", deleted, severity, cutoff, archive
        )
        return RotationResult(
            severity=severity,
            cutoff=cutoff,
            archived=len(expired),
            deleted=deleted,
            archive_file=str(archive),
        )

    def _archive(self, severity: Severity, events: list[SecurityEvent], now: datetime) -> Path:
        directory = Path(self.config.archive_dir).expanduser() / severity.value
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"security-events-{now:%Y%m%d}.jsonl.gz"
        # Appending adds a gzip member; readers see one continuous stream
        with gzip.open(path, "at", encoding="utf-8") as f:
            for event in events:
                f.write(json.dumps(event.model_dump(mode="json")) + "\n")
        return path

    def rebuild_counters(self) -> int:
        """Repopulate current-bucket threshold counters from the event store.

        A rebuilt count already at its threshold also marks the bucket as
        alerted, so the next event in that bucket does not alert again.

        Returns:
            Number of counters written
        """
        now = self._clock()
        epoch = to_epoch(now)
        written = 0
        for severity, threshold in self.config.alert_thresholds.items():
            window = threshold.time_window_seconds
            bucket = int(epoch // window)
            bucket_start = now - timedelta(seconds=epoch - bucket * window)
            events = self.store.query(start_time=bucket_start, severity=severity, limit=100000)
            for event_type, count in Counter(e.event_type for e in events).items():
                ttl = (bucket + 1) * window - epoch
                self.counters.set(self._counter_key(event_type, severity, bucket), count, ttl=ttl)
                if count >= threshold.count_threshold:
                    self.counters.add_if_absent(
                        self._alert_key(event_type, severity, bucket), "rebuilt", ttl=ttl
                    )
                written += 1
        logger.info("Rebuilt %d threshold counters from the event store", written)
        return written

    def close(self) -> None:
        if isinstance(self.dispatcher, AlertDispatcher):
            self.dispatcher.close()
        if self.engine is not None:
            self.engine.close()

    # -- internals -------------------------------------------------------

    def _bump(self, key: str, amount: int = 1) -> None:
        with self._stats_lock:
            self.stats[key] += amount

    @staticmethod
    def _action_taken(context: Mapping[str, Any]) -> ActionTaken:
        try:
            return ActionTaken(context.get("action_taken") or ActionTaken.LOGGED)
        except ValueError:
            return ActionTaken.LOGGED

    def _enrich(
        self,
        event_type: str,
        severity: Severity,
        context: dict[str, Any],
        now: datetime,
    ) -> dict[str, Any]:
        enriched = dict(context)
        enriched.update(
            {
                "event_id": f"sec_{uuid.uuid4().hex}",
                "timestamp": now.isoformat(),
                "event_type": event_type,
                "severity": severity.value,
                "server_info": dict(self._server_info),
            }
        )

        ip = context.get("ip_address")
        if ip:
            enriched["geographic_info"] = self.geo.lookup(str(ip))
            enriched["threat_intel"] = self._threat_intel(str(ip), now)

        if context.get("session_id"):
            enriched["session_info"] = {
                "session_id": context["session_id"],
                "user_id": context.get("user_id"),
                "user_agent": context.get("user_agent"),
            }
        return enriched

    def _threat_intel(self, ip: str, now: datetime) -> dict[str, Any]:
        since = now - THREAT_INTEL_WINDOW
        try:
            return {
                "prior_events_24h": self.store.count_since(since, ip_address=ip),
                "prior_event_types_24h": sorted(
                    self.store.distinct_values("event_type", since, ip_address=ip)
                ),
            }
        except Exception as e:
            logger.warning("Threat intel lookup failed for %s: %s", ip, e)
            return {}

    def _write_log(self, event: SecurityEvent) -> None:
        args = (
            event.event_type,
            event.severity.value,
            event.ip_address or "-",
            event.action_taken.value,
            event.event_id,
        )
        message = "Security event %s [%s] ip=%s action=%s id=%s"
        events_log.log(level_for_severity(event.severity), message, *args)
        if event.severity is Severity.CRITICAL:
            critical_log.critical(message, *args)

    def _persist(self, event: SecurityEvent) -> None:
        try:
            self.store.append(event)
        except Exception:
            logger.exception("Failed to persist security event %s", event.event_id)
            self._bump("persist_failures")
            return
        self._bump("events_persisted")

    @staticmethod
    def _counter_key(event_type: str, severity: Severity, bucket: int) -> str:
        return f"security_events:{event_type}:{severity.value}:{bucket}"

    @staticmethod
    def _alert_key(event_type: str, severity: Severity, bucket: int) -> str:
        return f"security_alert_sent:{event_type}:{severity.value}:{bucket}"

    def _count_and_alert(self, event: SecurityEvent) -> None:
        threshold = self.config.alert_thresholds[event.severity]
        window = threshold.time_window_seconds
        bucket = int(to_epoch(event.timestamp) // window)
        key = self._counter_key(event.event_type, event.severity, bucket)

        try:
            count = self.counters.increment(key, ttl=window)
            if count < threshold.count_threshold:
                return
            # Alert once per (event type, severity, bucket)
            first = self.counters.add_if_absent(
                self._alert_key(event.event_type, event.severity, bucket),
                event.event_id,
                ttl=window,
            )
        except CounterStoreError as e:
            logger.warning("Counter store unavailable, skipping threshold check: %s", e)
            self._bump("counter_failures")
            return

        if not first:
            self._bump("alerts_suppressed")
            return

        alert = Alert.from_breach(
            event,
            count=count,
            threshold=threshold,
            bucket=bucket,
            recipients=self.config.alert_recipients.get(event.severity, []),
            now=self._clock(),
        )
        try:
            accepted = self.dispatcher.submit(alert)
        except Exception:
            logger.exception("Failed to submit alert %s", alert.alert_id)
            accepted = False

        self._bump("alerts_dispatched" if accepted else "alerts_dropped")
        if accepted:
            logger.info(
                "Alert %s dispatched for %s (%s): %d in bucket %d",
                alert.alert_id,
                event.event_type,
                event.severity,
                count,
                bucket,
            )

    def _detect(self, event: SecurityEvent, enriched: dict[str, Any]) -> None:
        try:
            verdict = self.engine.analyze(event.event_type, enriched)
        except Exception:
            logger.exception("Anomaly detection failed for %s", event.event_id)
            self._bump("detection_failures")
            return

        if not verdict.is_anomaly:
            return

        evidence = [
            e.model_dump()
            for result in verdict.results.values()
            for e in result.evidence[:5]
        ]
        self._bump("anomalies_reported")
        self.log_security_event(
            ANOMALY_EVENT_TYPE,
            {
                "original_event_type": event.event_type,
                "original_event_id": event.event_id,
                "ip_address": event.ip_address,
                "user_id": enriched.get("user_id"),
                "action_taken": ActionTaken.FLAGGED.value,
                "anomaly": verdict.summary(),
                "evidence": evidence,
            },
            Severity.MEDIUM,
        )

    def _system_health(self) -> dict[str, Any]:
        stats = self.get_stats()
        persisted = stats["events_persisted"]
        failures = stats["persist_failures"]
        return {
            "status": "degraded"
            if failures or stats["counter_failures"] or stats["detection_failures"]
            else "healthy",
            "anomaly_detection": self.engine is not None,
            "persist_failure_rate": round(failures / (persisted + failures), 4)
            if persisted + failures
            else 0.0,
            "service": stats,
        }
