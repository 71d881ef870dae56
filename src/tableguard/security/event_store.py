"""Durable security event store.

Events are append-only: created by the monitoring service on every logged
security event and removed only by retention/rotation.

Schema Design:
- security_events: one row per event, indexed on event_id, timestamp,
  event_type, severity and ip_address; full enriched context as JSON
- security_alerts: alerts written by the database notification channel
- store_metadata: schema version

Timestamps are stored as ISO-8601 text of naive UTC datetimes so range
queries compare lexicographically.
"""

import json
import logging
import sqlite3
import threading
from collections import Counter
from collections.abc import Iterable
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, Field

from tableguard.clock import utcnow
from tableguard.severity import Severity

from .exceptions import EventStoreError

logger = logging.getLogger(__name__)


class ActionTaken(StrEnum):
    """What the system did about an event."""

    BLOCKED = "blocked"
    SANITIZED = "sanitized"
    LOGGED = "logged"
    FLAGGED = "flagged"


class SecurityEvent(BaseModel):
    """Persisted security event record."""

    event_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    event_type: str
    severity: Severity
    ip_address: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    action_taken: ActionTaken = ActionTaken.LOGGED


class EventStore(Protocol):
    """Durable event log used by monitoring, detection and dashboards."""

    def append(self, event: SecurityEvent) -> None: ...

    def get(self, event_id: str) -> SecurityEvent | None: ...

    def query(
        self,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        event_type: str | None = None,
        severity: Severity | None = None,
        ip_address: str | None = None,
        limit: int = 1000,
    ) -> list[SecurityEvent]: ...

    def count_since(
        self,
        since: datetime,
        event_type: str | None = None,
        ip_address: str | None = None,
    ) -> int: ...

    def count_by_type(self, since: datetime, ip_address: str | None = None) -> dict[str, int]: ...

    def distinct_values(
        self,
        column: str,
        since: datetime,
        event_type: str | None = None,
        ip_address: str | None = None,
    ) -> set[str]: ...

    def select_expired(self, severity: Severity, cutoff: datetime) -> list[SecurityEvent]: ...

    def delete(self, event_ids: Iterable[str]) -> int: ...

    def log_alert(self, alert: dict[str, Any]) -> None: ...

    def recent_alerts(self, since: datetime, limit: int = 100) -> list[dict[str, Any]]: ...


# Columns distinct_values() may be asked about
_DISTINCT_COLUMNS = frozenset({"event_type", "ip_address", "severity"})


def _ts(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


class SQLiteEventStore:
    """SQLite-backed event store.

    Each operation opens its own connection, so the store is safe to share
    between threads. The busy timeout bounds how long a write can wait on a
    concurrent rotation.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: str | Path = "~/.tableguard/events.db", timeout: float = 2.0):
        """Initialize event store.

        Args:
            db_path: Path to SQLite database file
            timeout: Seconds to wait for a locked database
        """
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.timeout = timeout
        self._initialize_schema()

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection with optimized settings."""
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        # Enable WAL mode for better concurrency
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        return conn

    def _initialize_schema(self) -> None:
        """Create database schema if not exists."""
        conn = self._get_connection()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS store_metadata (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "INSERT OR IGNORE INTO store_metadata (key, value) VALUES ('schema_version', ?)",
                (str(self.SCHEMA_VERSION),),
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS security_events (
                    event_id TEXT PRIMARY KEY,
                    timestamp TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    severity TEXT NOT NULL,
                    ip_address TEXT,
                    context TEXT,
                    action_taken TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS security_alerts (
                    alert_id TEXT PRIMARY KEY,
                    timestamp TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    severity TEXT NOT NULL,
                    priority INTEGER NOT NULL,
                    title TEXT NOT NULL,
                    payload TEXT,
                    status TEXT NOT NULL DEFAULT 'open'
                )
                """
            )

            # Indexes for efficient queries
            for column in ("timestamp", "event_type", "severity", "ip_address"):
                conn.execute(
                    f"CREATE INDEX IF NOT EXISTS idx_events_{column} ON security_events({column})"
                )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_alerts_timestamp ON security_alerts(timestamp)"
            )
            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> SecurityEvent:
        return SecurityEvent(
            event_id=row["event_id"],
            timestamp=datetime.fromisoformat(row["timestamp"]),
            event_type=row["event_type"],
            severity=Severity(row["severity"]),
            ip_address=row["ip_address"],
            context=json.loads(row["context"]) if row["context"] else {},
            action_taken=ActionTaken(row["action_taken"]),
        )

    def append(self, event: SecurityEvent) -> None:
        """Persist an event.

        Raises:
            EventStoreError: If the write fails (including lock timeout)
        """
        try:
            conn = self._get_connection()
            try:
                conn.execute(
                    """
                    INSERT INTO security_events (
                        event_id, timestamp, event_type, severity,
                        ip_address, context, action_taken
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        event.event_id,
                        _ts(event.timestamp),
                        event.event_type,
                        event.severity.value,
                        event.ip_address,
                        json.dumps(event.context, default=str),
                        event.action_taken.value,
                    ),
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise EventStoreError(f"Failed to persist event {event.event_id}: {e}") from e

    def get(self, event_id: str) -> SecurityEvent | None:
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT * FROM security_events WHERE event_id = ?", (event_id,)
            ).fetchone()
            return self._row_to_event(row) if row else None
        finally:
            conn.close()

    @staticmethod
    def _filters(
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        event_type: str | None = None,
        severity: Severity | None = None,
        ip_address: str | None = None,
    ) -> tuple[str, list[Any]]:
        where = " WHERE 1=1"
        params: list[Any] = []

        if start_time:
            where += " AND timestamp >= ?"
            params.append(_ts(start_time))

        if end_time:
            where += " AND timestamp <= ?"
            params.append(_ts(end_time))

        if event_type:
            where += " AND event_type = ?"
            params.append(event_type)

        if severity:
            where += " AND severity = ?"
            params.append(Severity(severity).value)

        if ip_address:
            where += " AND ip_address = ?"
            params.append(ip_address)

        return where, params

    def query(
        self,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        event_type: str | None = None,
        severity: Severity | None = None,
        ip_address: str | None = None,
        limit: int = 1000,
    ) -> list[SecurityEvent]:
        """Get events matching the filters, newest first.

        Args:
            start_time: Filter by start time (optional)
            end_time: Filter by end time (optional)
            event_type: Filter by event type (optional)
            severity: Filter by severity (optional)
            ip_address: Filter by source IP (optional)
            limit: Maximum number of events to return

        Returns:
            List of events
        """
        where, params = self._filters(start_time, end_time, event_type, severity, ip_address)
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                f"SELECT * FROM security_events{where} ORDER BY timestamp DESC LIMIT ?",
                [*params, limit],
            )
            return [self._row_to_event(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def count_since(
        self,
        since: datetime,
        event_type: str | None = None,
        ip_address: str | None = None,
    ) -> int:
        where, params = self._filters(since, None, event_type, None, ip_address)
        conn = self._get_connection()
        try:
            row = conn.execute(f"SELECT COUNT(*) FROM security_events{where}", params).fetchone()
            return int(row[0])
        finally:
            conn.close()

    def count_by_type(self, since: datetime, ip_address: str | None = None) -> dict[str, int]:
        """Event counts per event type since a moment."""
        where, params = self._filters(since, None, None, None, ip_address)
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                f"SELECT event_type, COUNT(*) AS n FROM security_events{where} GROUP BY event_type",
                params,
            )
            return {row["event_type"]: row["n"] for row in cursor.fetchall()}
        finally:
            conn.close()

    def distinct_values(
        self,
        column: str,
        since: datetime,
        event_type: str | None = None,
        ip_address: str | None = None,
    ) -> set[str]:
        """Distinct non-null values of a column since a moment."""
        if column not in _DISTINCT_COLUMNS:
            raise ValueError(f"Unsupported column: {column}")
        where, params = self._filters(since, None, event_type, None, ip_address)
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                f"SELECT DISTINCT {column} FROM security_events{where} AND {column} IS NOT NULL",
                params,
            )
            return {row[0] for row in cursor.fetchall()}
        finally:
            conn.close()

    def select_expired(self, severity: Severity, cutoff: datetime) -> list[SecurityEvent]:
        """Events of a severity strictly older than cutoff, oldest first."""
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                """
                SELECT * FROM security_events
                WHERE severity = ? AND timestamp < ?
                ORDER BY timestamp
                """,
                (Severity(severity).value, _ts(cutoff)),
            )
            return [self._row_to_event(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def delete(self, event_ids: Iterable[str]) -> int:
        """Delete exactly the given events.

        Returns:
            Number of rows deleted
        """
        ids = list(event_ids)
        if not ids:
            return 0
        conn = self._get_connection()
        try:
            deleted = 0
            # Stay under SQLite's bound-parameter limit
            for start in range(0, len(ids), 500):
                chunk = ids[start : start + 500]
                placeholders = ",".join("?" for _ in chunk)
                cursor = conn.execute(
                    f"DELETE FROM security_events WHERE event_id IN ({placeholders})", chunk
                )
                deleted += cursor.rowcount
            conn.commit()
            return deleted
        finally:
            conn.close()

    def log_alert(self, alert: dict[str, Any]) -> None:
        """Persist an alert record (database notification channel)."""
        conn = self._get_connection()
        try:
            conn.execute(
                """
                INSERT OR REPLACE INTO security_alerts (
                    alert_id, timestamp, event_type, severity, priority, title, payload
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    alert["alert_id"],
                    _ts(alert["timestamp"]),
                    alert["event_type"],
                    str(alert["severity"]),
                    alert["priority"],
                    alert["title"],
                    json.dumps(alert, default=str),
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def recent_alerts(self, since: datetime, limit: int = 100) -> list[dict[str, Any]]:
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                """
                SELECT alert_id, timestamp, event_type, severity, priority, title, status
                FROM security_alerts
                WHERE timestamp >= ?
                ORDER BY timestamp DESC
                LIMIT ?
                """,
                (_ts(since), limit),
            )
            return [dict(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def get_statistics(
        self,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
    ) -> dict[str, Any]:
        """Get event store statistics.

        Args:
            start_time: Start of time range (optional)
            end_time: End of time range (optional)

        Returns:
            Dictionary with statistics
        """
        where, params = self._filters(start_time, end_time)
        conn = self._get_connection()
        try:
            totals = dict(
                conn.execute(
                    f"""
                    SELECT
                        COUNT(*) as total_events,
                        COUNT(DISTINCT ip_address) as unique_ips,
                        COUNT(DISTINCT event_type) as event_types
                    FROM security_events{where}
                    """,
                    params,
                ).fetchone()
            )
            cursor = conn.execute(
                f"SELECT severity, COUNT(*) as count FROM security_events{where} GROUP BY severity",
                params,
            )
            totals["by_severity"] = {row["severity"]: row["count"] for row in cursor.fetchall()}
            return totals
        finally:
            conn.close()


class InMemoryEventStore:
    """In-process event store with the same semantics as :class:`SQLiteEventStore`."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: dict[str, SecurityEvent] = {}
        self._alerts: list[dict[str, Any]] = []

    def append(self, event: SecurityEvent) -> None:
        with self._lock:
            if event.event_id in self._events:
                raise EventStoreError(f"Duplicate event id: {event.event_id}")
            self._events[event.event_id] = event

    def get(self, event_id: str) -> SecurityEvent | None:
        with self._lock:
            return self._events.get(event_id)

    def _select(
        self,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        event_type: str | None = None,
        severity: Severity | None = None,
        ip_address: str | None = None,
    ) -> list[SecurityEvent]:
        with self._lock:
            events = list(self._events.values())
        return [
            e
            for e in events
            if (start_time is None or e.timestamp >= start_time)
            and (end_time is None or e.timestamp <= end_time)
            and (event_type is None or e.event_type == event_type)
            and (severity is None or e.severity == severity)
            and (ip_address is None or e.ip_address == ip_address)
        ]

    def query(
        self,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        event_type: str | None = None,
        severity: Severity | None = None,
        ip_address: str | None = None,
        limit: int = 1000,
    ) -> list[SecurityEvent]:
        events = self._select(start_time, end_time, event_type, severity, ip_address)
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events[:limit]

    def count_since(
        self,
        since: datetime,
        event_type: str | None = None,
        ip_address: str | None = None,
    ) -> int:
        return len(self._select(since, None, event_type, None, ip_address))

    def count_by_type(self, since: datetime, ip_address: str | None = None) -> dict[str, int]:
        return dict(Counter(e.event_type for e in self._select(since, ip_address=ip_address)))

    def distinct_values(
        self,
        column: str,
        since: datetime,
        event_type: str | None = None,
        ip_address: str | None = None,
    ) -> set[str]:
        if column not in _DISTINCT_COLUMNS:
            raise ValueError(f"Unsupported column: {column}")
        events = self._select(since, None, event_type, None, ip_address)
        return {str(getattr(e, column)) for e in events if getattr(e, column) is not None}

    def select_expired(self, severity: Severity, cutoff: datetime) -> list[SecurityEvent]:
        events = [e for e in self._select(severity=severity) if e.timestamp < cutoff]
        return sorted(events, key=lambda e: e.timestamp)

    def delete(self, event_ids: Iterable[str]) -> int:
        deleted = 0
        with self._lock:
            for event_id in event_ids:
                if self._events.pop(event_id, None) is not None:
                    deleted += 1
        return deleted

    def log_alert(self, alert: dict[str, Any]) -> None:
        with self._lock:
            self._alerts.append(dict(alert))

    def recent_alerts(self, since: datetime, limit: int = 100) -> list[dict[str, Any]]:
        with self._lock:
            alerts = [a for a in self._alerts if a["timestamp"] >= since]
        alerts.sort(key=lambda a: a["timestamp"], reverse=True)
        return alerts[:limit]

    def __len__(self) -> int:
        return len(self._events)
