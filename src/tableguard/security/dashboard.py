"""Security dashboard aggregation.

Every sub-report is a pure function of an event list and a time range, so
dashboards can be tested against fixture events. :class:`SecurityDashboard`
reads the event store, composes the sub-reports and caches the result.

Sub-reports:
- summary: totals by severity, type and action
- timeline: event counts per interval (15 min up to 6 h, hourly up to
  48 h, 6-hourly up to a week, daily beyond)
- top threats: most frequent event types, source IPs and attack patterns
- geographic data: events per country and address scope
- alert status: recent alerts and threshold utilization
- threat intelligence: emerging threats, sophistication, threat actors,
  attack success rate and defense effectiveness
"""

import logging
import time
from collections import Counter, defaultdict
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel, Field

from tableguard.clock import Clock, utcnow
from tableguard.config.schema import AlertThreshold, default_alert_thresholds
from tableguard.severity import Severity

from .event_store import ActionTaken, EventStore, SecurityEvent

logger = logging.getLogger(__name__)

TOP_LIMIT = 10

# Actions that stopped an attack before it reached the application
_STOPPED = frozenset({ActionTaken.BLOCKED, ActionTaken.SANITIZED})


class DashboardReport(BaseModel):
    """Complete dashboard data for one time range."""

    generated_at: datetime
    hours: int
    summary: dict[str, Any] = Field(default_factory=dict)
    timeline: dict[str, Any] = Field(default_factory=dict)
    top_threats: dict[str, Any] = Field(default_factory=dict)
    geographic_data: dict[str, Any] = Field(default_factory=dict)
    alert_status: dict[str, Any] = Field(default_factory=dict)
    system_health: dict[str, Any] = Field(default_factory=dict)
    threat_intelligence: dict[str, Any] = Field(default_factory=dict)


class MetricsCache:
    """Simple TTL-based metrics cache."""

    def __init__(self, ttl_seconds: float = 60.0):
        self.ttl_seconds = ttl_seconds
        self._cache: dict[str, tuple[float, Any]] = {}

    def get(self, key: str) -> Any | None:
        """Get a cached value if not expired."""
        if key in self._cache:
            timestamp, value = self._cache[key]
            if time.monotonic() - timestamp < self.ttl_seconds:
                return value
            del self._cache[key]
        return None

    def set(self, key: str, value: Any) -> None:
        self._cache[key] = (time.monotonic(), value)

    def invalidate(self, key: str | None = None) -> None:
        """Invalidate a specific key or all keys."""
        if key is None:
            self._cache.clear()
        else:
            self._cache.pop(key, None)

    @property
    def size(self) -> int:
        return len(self._cache)


def _in_range(events: Iterable[SecurityEvent], start: datetime, end: datetime) -> list[SecurityEvent]:
    return [e for e in events if start <= e.timestamp <= end]


def summarize_events(
    events: Iterable[SecurityEvent], start: datetime, end: datetime
) -> dict[str, Any]:
    """Totals by severity, event type and action."""
    events = _in_range(events, start, end)
    hours = max((end - start).total_seconds() / 3600, 1e-9)

    by_severity = {s.value: 0 for s in Severity}
    by_severity.update(Counter(e.severity.value for e in events))

    return {
        "total_events": len(events),
        "by_severity": by_severity,
        "by_type": dict(Counter(e.event_type for e in events).most_common()),
        "by_action": dict(Counter(e.action_taken.value for e in events)),
        "unique_ips": len({e.ip_address for e in events if e.ip_address}),
        "blocked": sum(1 for e in events if e.action_taken is ActionTaken.BLOCKED),
        "critical_events": by_severity[Severity.CRITICAL.value],
        "events_per_hour": round(len(events) / hours, 2),
        "time_range": {"start": start.isoformat(), "end": end.isoformat()},
    }


def timeline_interval(start: datetime, end: datetime) -> timedelta:
    """Bucket size used by :func:`build_timeline` for a range."""
    hours = (end - start).total_seconds() / 3600
    if hours <= 6:
        return timedelta(minutes=15)
    if hours <= 48:
        return timedelta(hours=1)
    if hours <= 168:
        return timedelta(hours=6)
    return timedelta(days=1)


def build_timeline(
    events: Iterable[SecurityEvent], start: datetime, end: datetime
) -> dict[str, Any]:
    """Event counts per interval, oldest first."""
    interval = timeline_interval(start, end)
    slots = max(1, int((end - start) / interval) + (1 if (end - start) % interval else 0))
    points = [
        {
            "start": (start + i * interval).isoformat(),
            "total": 0,
            "by_severity": {s.value: 0 for s in Severity},
        }
        for i in range(slots)
    ]

    for event in _in_range(events, start, end):
        index = min(int((event.timestamp - start) / interval), slots - 1)
        points[index]["total"] += 1
        points[index]["by_severity"][event.severity.value] += 1

    return {"interval_minutes": int(interval.total_seconds() // 60), "points": points}


def _event_patterns(event: SecurityEvent) -> list[str]:
    patterns = [
        p["rule"]
        for p in event.context.get("detected_patterns", [])
        if isinstance(p, dict) and "rule" in p
    ]
    anomaly = event.context.get("anomaly")
    if isinstance(anomaly, dict):
        patterns.extend(anomaly.get("matched_patterns", []))
    return patterns


def top_threats(events: Iterable[SecurityEvent], limit: int = TOP_LIMIT) -> dict[str, Any]:
    """Most frequent event types, source IPs and attack patterns."""
    events = list(events)
    ip_types: dict[str, set[str]] = defaultdict(set)
    for e in events:
        if e.ip_address:
            ip_types[e.ip_address].add(e.event_type)

    ip_counts = Counter(e.ip_address for e in events if e.ip_address)
    pattern_counts = Counter(p for e in events for p in _event_patterns(e))

    return {
        "event_types": [
            {"event_type": t, "count": n}
            for t, n in Counter(e.event_type for e in events).most_common(limit)
        ],
        "source_ips": [
            {"ip_address": ip, "count": n, "event_types": sorted(ip_types[ip])}
            for ip, n in ip_counts.most_common(limit)
        ],
        "attack_patterns": [
            {"pattern": p, "count": n} for p, n in pattern_counts.most_common(limit)
        ],
    }


def geographic_distribution(events: Iterable[SecurityEvent]) -> dict[str, Any]:
    """Events per country and per address scope."""
    countries: Counter[str] = Counter()
    scopes: Counter[str] = Counter()
    for e in events:
        geo = e.context.get("geographic_info")
        if not isinstance(geo, dict):
            continue
        countries[geo.get("country") or "unknown"] += 1
        scopes[geo.get("scope") or "invalid"] += 1

    return {
        "countries": dict(countries.most_common()),
        "scopes": dict(scopes),
        "top_countries": [c for c, _ in countries.most_common(TOP_LIMIT)],
    }


def _parse_timestamp(ts: Any) -> datetime | None:
    """Parse a timestamp from a store row."""
    if isinstance(ts, datetime):
        return ts
    if isinstance(ts, str):
        try:
            return datetime.fromisoformat(ts)
        except ValueError:
            return None
    return None


def alert_status(
    events: Iterable[SecurityEvent],
    alerts: Iterable[dict[str, Any]],
    thresholds: dict[Severity, AlertThreshold],
    now: datetime,
) -> dict[str, Any]:
    """Recent alerts and how close each severity is to its threshold."""
    events = list(events)
    alerts = list(alerts)

    utilization = {}
    for severity, threshold in thresholds.items():
        since = now - timedelta(seconds=threshold.time_window_seconds)
        per_type = Counter(
            e.event_type for e in events if e.severity == severity and e.timestamp >= since
        )
        busiest = per_type.most_common(1)[0][1] if per_type else 0
        utilization[Severity(severity).value] = {
            "count_threshold": threshold.count_threshold,
            "time_window_seconds": threshold.time_window_seconds,
            "current_max_count": busiest,
            "utilization": round(busiest / threshold.count_threshold, 2),
        }

    latest = sorted(
        alerts, key=lambda a: _parse_timestamp(a.get("timestamp")) or datetime.min, reverse=True
    )[:5]
    return {
        "total_alerts": len(alerts),
        "by_severity": dict(Counter(str(a.get("severity")) for a in alerts)),
        "thresholds": utilization,
        "latest": [
            {
                "alert_id": a.get("alert_id"),
                "timestamp": str(a.get("timestamp")),
                "severity": str(a.get("severity")),
                "title": a.get("title"),
            }
            for a in latest
        ],
    }


def _sophistication(event: SecurityEvent) -> int:
    points = 0
    anomaly = event.context.get("anomaly")
    if isinstance(anomaly, dict):
        points += 1
        patterns = anomaly.get("matched_patterns", [])
        if "encoded_xss" in patterns:
            points += 1
        if anomaly.get("detectors", {}).get("correlation", 0) > 0:
            points += 1
    families = {
        p.get("family")
        for p in event.context.get("detected_patterns", [])
        if isinstance(p, dict)
    }
    if len(families) > 1:
        points += 1
    return min(points, 3)


def threat_intelligence(
    events: Iterable[SecurityEvent], start: datetime, end: datetime
) -> dict[str, Any]:
    """Derived threat indicators for the range."""
    events = _in_range(events, start, end)
    midpoint = start + (end - start) / 2

    first_half = Counter(e.event_type for e in events if e.timestamp < midpoint)
    second_half = Counter(e.event_type for e in events if e.timestamp >= midpoint)
    emerging = [
        {"event_type": t, "recent": n, "previous": first_half.get(t, 0)}
        for t, n in second_half.most_common()
        if n >= 3 and n > 2 * first_half.get(t, 0)
    ]

    scores = [_sophistication(e) for e in events]
    sophistication = sum(scores) / (3 * len(scores)) if scores else 0.0
    level = "high" if sophistication >= 0.6 else "medium" if sophistication >= 0.3 else "low"

    actors: dict[str, list[SecurityEvent]] = defaultdict(list)
    for e in events:
        if e.ip_address:
            actors[e.ip_address].append(e)
    threat_actors = sorted(
        (
            {
                "ip_address": ip,
                "events": len(items),
                "event_types": sorted({e.event_type for e in items}),
                "first_seen": min(e.timestamp for e in items).isoformat(),
                "last_seen": max(e.timestamp for e in items).isoformat(),
            }
            for ip, items in actors.items()
            if len(items) >= 5 or len({e.event_type for e in items}) >= 2
        ),
        key=lambda a: a["events"],
        reverse=True,
    )[:TOP_LIMIT]

    attacks = [e for e in events if e.severity is not Severity.LOW]
    succeeded = sum(1 for e in attacks if e.action_taken not in _STOPPED)
    success_rate = succeeded / len(attacks) * 100 if attacks else 0.0

    return {
        "emerging_threats": emerging,
        "attack_sophistication": {"level": level, "score": round(sophistication, 2)},
        "threat_actors": threat_actors,
        "attack_success_rate": round(success_rate, 1),
        "defense_effectiveness": round(100.0 - success_rate, 1) if attacks else 100.0,
    }


class SecurityDashboard:
    """Composes dashboard reports from the event store, with caching.

    Usage:
        dashboard = SecurityDashboard(event_store)
        report = dashboard.get_report(hours=24)
    """

    def __init__(
        self,
        store: EventStore,
        alert_thresholds: dict[Severity, AlertThreshold] | None = None,
        health_provider: Callable[[], dict[str, Any]] | None = None,
        cache_ttl_seconds: float = 60.0,
        max_events: int = 10000,
        clock: Clock = utcnow,
    ):
        """Initialize dashboard.

        Args:
            store: Event store to aggregate
            alert_thresholds: Thresholds shown in alert status
            health_provider: Callable returning service health details
            cache_ttl_seconds: Report cache TTL in seconds
            max_events: Maximum events read per report
            clock: Source of the current naive UTC time
        """
        self.store = store
        self.alert_thresholds = alert_thresholds or default_alert_thresholds()
        self.health_provider = health_provider
        self.cache = MetricsCache(ttl_seconds=cache_ttl_seconds)
        self.max_events = max_events
        self._clock = clock
        self.stats: dict[str, Any] = {
            "reports_computed": 0,
            "cache_hits": 0,
            "cache_misses": 0,
            "avg_computation_ms": 0.0,
        }

    def get_report(self, hours: int = 24) -> DashboardReport:
        """Get the dashboard report for the last ``hours`` hours.

        Uses cache if available, otherwise computes from the store.
        """
        cache_key = f"report_{hours}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            self.stats["cache_hits"] += 1
            return cached

        self.stats["cache_misses"] += 1
        start = time.perf_counter()

        report = self._compute_report(hours)

        elapsed_ms = (time.perf_counter() - start) * 1000
        self.stats["reports_computed"] += 1
        total = self.stats["reports_computed"]
        prev_avg = self.stats["avg_computation_ms"]
        self.stats["avg_computation_ms"] = prev_avg + (elapsed_ms - prev_avg) / total

        self.cache.set(cache_key, report)
        return report

    def _compute_report(self, hours: int) -> DashboardReport:
        now = self._clock()
        start = now - timedelta(hours=hours)
        events = self.store.query(start_time=start, end_time=now, limit=self.max_events)
        alerts = self.store.recent_alerts(start, limit=1000)
        if len(events) >= self.max_events:
            logger.warning("Dashboard limited to the newest %d events", self.max_events)

        return DashboardReport(
            generated_at=now,
            hours=hours,
            summary=summarize_events(events, start, now),
            timeline=build_timeline(events, start, now),
            top_threats=top_threats(events),
            geographic_data=geographic_distribution(events),
            alert_status=alert_status(events, alerts, self.alert_thresholds, now),
            system_health=self._system_health(),
            threat_intelligence=threat_intelligence(events, start, now),
        )

    def _system_health(self) -> dict[str, Any]:
        health: dict[str, Any] = {}
        if self.health_provider is not None:
            try:
                health.update(self.health_provider())
            except Exception:
                logger.exception("Health provider failed")
                health["status"] = "unknown"
        health["dashboard"] = dict(self.stats)
        return health

    def invalidate_cache(self) -> None:
        """Force cache invalidation for next refresh."""
        self.cache.invalidate()

    def get_stats(self) -> dict[str, Any]:
        return dict(self.stats)
