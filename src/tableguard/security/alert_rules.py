"""Alerts and notification fan-out.

This module turns threshold breaches into structured alerts and delivers
them through the enabled notification channels (email, Slack, SMS, database,
log) without blocking the request path.

Features:
- Structured alerts with evidence, recommended actions and priority
- Email via SMTP, Slack via incoming webhook, SMS via HTTP gateway
- Database and log channels for local record keeping
- Bounded queue drained by a background thread (submit never blocks)
- Per-channel retries with exponential backoff (at-least-once delivery)
- Statistics tracking
"""

import asyncio
import logging
import queue
import threading
import time
import uuid
from datetime import datetime
from email.message import EmailMessage
from enum import StrEnum
from typing import Any

import aiosmtplib
import httpx
from pydantic import BaseModel, Field

from tableguard.clock import utcnow
from tableguard.config.schema import AlertThreshold, MonitoringConfig
from tableguard.logging_setup import ALERTS_LOGGER, level_for_severity
from tableguard.severity import ALERT_PRIORITY, Severity

from .event_store import EventStore, SecurityEvent
from .exceptions import DispatchFailure

logger = logging.getLogger(__name__)
alert_log = logging.getLogger(ALERTS_LOGGER)


class NotificationChannel(StrEnum):
    """Supported notification channels."""

    EMAIL = "email"
    SLACK = "slack"
    SMS = "sms"
    DATABASE = "database"
    LOG = "log"


_EVENT_ACTIONS = {
    "sql_injection_attempt": [
        "Block the source IP address",
        "Audit query construction for unbound parameters",
    ],
    "xss_attempt": [
        "Verify output encoding on the affected forms",
        "Review the content security policy",
    ],
    "path_traversal_attempt": ["Review file path handling", "Block the source IP address"],
    "command_injection_attempt": [
        "Block the source IP address",
        "Audit shell invocation paths",
    ],
    "rate_limit_exceeded": ["Tighten rate limits for the source"],
    "authentication_failure": ["Check for credential stuffing", "Consider locking the account"],
    "authorization_failure": ["Review role assignments for the user"],
    "data_exfiltration_attempt": [
        "Suspend the session immediately",
        "Review data access logs for the user",
    ],
    "anomaly_detected": ["Review the anomaly evidence and correlated events"],
}


class Alert(BaseModel):
    """A threshold-breach alert."""

    alert_id: str = Field(default_factory=lambda: f"alert_{uuid.uuid4().hex}")
    timestamp: datetime = Field(default_factory=utcnow)
    event_type: str
    severity: Severity
    title: str
    description: str
    evidence: dict[str, Any] = Field(default_factory=dict)
    recommended_actions: list[str] = Field(default_factory=list)
    priority: int = Field(ge=1, le=4)
    recipients: list[str] = Field(default_factory=list)
    threshold: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_breach(
        cls,
        event: SecurityEvent,
        count: int,
        threshold: AlertThreshold,
        bucket: int,
        recipients: list[str] | None = None,
        now: datetime | None = None,
    ) -> "Alert":
        """Build the alert for an event whose bucket crossed its threshold."""
        actions = list(_EVENT_ACTIONS.get(event.event_type, ["Investigate the triggering events"]))
        if event.severity is Severity.CRITICAL and "Escalate to the on-call engineer" not in actions:
            actions.append("Escalate to the on-call engineer")

        window_minutes = threshold.time_window_seconds / 60
        return cls(
            timestamp=now or utcnow(),
            event_type=event.event_type,
            severity=event.severity,
            title=f"Security alert: {event.event_type} ({event.severity.value})",
            description=(
                f"{count} {event.event_type} event(s) within {window_minutes:g} minute(s), "
                f"threshold {threshold.count_threshold}"
            ),
            evidence={
                "event_id": event.event_id,
                "ip_address": event.ip_address,
                "action_taken": event.action_taken.value,
                "detected_patterns": event.context.get("detected_patterns", []),
                "anomaly": event.context.get("anomaly"),
            },
            recommended_actions=actions,
            priority=ALERT_PRIORITY[event.severity],
            recipients=list(recipients or []),
            threshold={
                "count": count,
                "count_threshold": threshold.count_threshold,
                "time_window_seconds": threshold.time_window_seconds,
                "bucket": bucket,
            },
        )

    def to_record(self) -> dict[str, Any]:
        return self.model_dump()


class NotificationResult(BaseModel):
    """Result of sending a notification."""

    channel: NotificationChannel
    success: bool
    skipped: bool = False
    error: str | None = None
    latency_ms: float = 0.0


class Notifier:
    """Base class for notification channels."""

    channel: NotificationChannel = NotificationChannel.LOG

    async def send(self, alert: Alert) -> NotificationResult:
        """Send an alert notification, reporting failures in the result."""
        start = time.perf_counter()
        try:
            skipped = await self._send(alert) is False
        except Exception as e:
            return NotificationResult(
                channel=self.channel,
                success=False,
                error=f"{type(e).__name__}: {e}",
                latency_ms=(time.perf_counter() - start) * 1000,
            )
        return NotificationResult(
            channel=self.channel,
            success=True,
            skipped=skipped,
            latency_ms=(time.perf_counter() - start) * 1000,
        )

    async def _send(self, alert: Alert) -> bool | None:
        """Deliver the alert; return False when intentionally skipped."""
        raise NotImplementedError

    async def close(self) -> None:
        """Release transport resources."""


class EmailNotifier(Notifier):
    """Send alerts via SMTP."""

    channel = NotificationChannel.EMAIL

    def __init__(
        self,
        smtp_host: str = "localhost",
        smtp_port: int = 25,
        from_address: str = "tableguard@localhost",
        timeout: float = 10.0,
    ):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.from_address = from_address
        self.timeout = timeout

    def build_message(self, alert: Alert) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = f"[{alert.severity.value.upper()}] {alert.title}"
        message["From"] = self.from_address
        message["To"] = ", ".join(alert.recipients)
        lines = [
            alert.description,
            "",
            f"Alert ID: {alert.alert_id}",
            f"Time (UTC): {alert.timestamp.isoformat()}",
            f"Priority: {alert.priority}",
            "",
            "Recommended actions:",
            *[f"- {action}" for action in alert.recommended_actions],
        ]
        message.set_content("\n".join(lines))
        return message

    async def _send(self, alert: Alert) -> bool | None:
        if not alert.recipients:
            return False
        await aiosmtplib.send(
            self.build_message(alert),
            hostname=self.smtp_host,
            port=self.smtp_port,
            timeout=self.timeout,
        )
        return None


class _WebhookNotifier(Notifier):
    """Shared httpx transport for HTTP-based channels."""

    def __init__(self, timeout: float = 10.0, transport: httpx.AsyncBaseTransport | None = None):
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout), transport=self._transport
            )
        return self._client

    async def _post(self, url: str, payload: dict[str, Any], headers: dict[str, str] | None = None) -> None:
        client = await self._get_client()
        response = await client.post(url, json=payload, headers=headers)
        response.raise_for_status()

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


class SlackNotifier(_WebhookNotifier):
    """Send alerts via Slack incoming webhook."""

    channel = NotificationChannel.SLACK

    SEVERITY_EMOJI = {
        Severity.LOW: ":white_circle:",
        Severity.MEDIUM: ":large_orange_circle:",
        Severity.HIGH: ":red_circle:",
        Severity.CRITICAL: ":rotating_light:",
    }

    def __init__(self, webhook_url: str, channel_name: str = "#security-alerts", **kwargs: Any):
        super().__init__(**kwargs)
        self.webhook_url = webhook_url
        self.channel_name = channel_name

    def build_payload(self, alert: Alert) -> dict[str, Any]:
        actions = "\n".join(f"• {a}" for a in alert.recommended_actions)
        return {
            "channel": self.channel_name,
            "username": "Tableguard Security",
            "text": (
                f"{self.SEVERITY_EMOJI.get(alert.severity, ':bell:')} *{alert.title}*\n"
                f"{alert.description}\n{actions}"
            ),
        }

    async def _send(self, alert: Alert) -> bool | None:
        await self._post(self.webhook_url, self.build_payload(alert))
        return None


class SMSNotifier(_WebhookNotifier):
    """Send critical alerts through an HTTP SMS gateway."""

    channel = NotificationChannel.SMS

    def __init__(
        self,
        gateway_url: str,
        numbers: list[str],
        token: str = "",
        min_severity: Severity = Severity.CRITICAL,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self.gateway_url = gateway_url
        self.numbers = list(numbers)
        self.token = token
        self.min_severity = min_severity

    async def _send(self, alert: Alert) -> bool | None:
        if alert.severity.rank < self.min_severity.rank or not self.numbers:
            return False
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else None
        # SMS bodies stay short
        text = f"{alert.title}: {alert.description}"[:160]
        await self._post(self.gateway_url, {"to": self.numbers, "message": text}, headers)
        return None


class DatabaseNotifier(Notifier):
    """Persist alerts in the event store's alerts table."""

    channel = NotificationChannel.DATABASE

    def __init__(self, store: EventStore):
        self.store = store

    async def _send(self, alert: Alert) -> bool | None:
        await asyncio.to_thread(self.store.log_alert, alert.to_record())
        return None


class LogNotifier(Notifier):
    """Write alerts to the dedicated alerts logger."""

    channel = NotificationChannel.LOG

    async def _send(self, alert: Alert) -> bool | None:
        alert_log.log(
            level_for_severity(alert.severity),
            "%s | %s | priority=%d id=%s",
            alert.title,
            alert.description,
            alert.priority,
            alert.alert_id,
        )
        return None


def build_notifiers(config: MonitoringConfig, store: EventStore | None = None) -> list[Notifier]:
    """Create notifiers for the enabled channels.

    Channels that are enabled but lack required settings are skipped with a
    warning.
    """
    channels = config.notification_channels
    timeout = config.dispatch_timeout_seconds
    notifiers: list[Notifier] = []

    if channels.email:
        notifiers.append(
            EmailNotifier(config.smtp_host, config.smtp_port, config.smtp_sender, timeout)
        )
    if channels.slack:
        if config.slack_webhook_url:
            notifiers.append(
                SlackNotifier(config.slack_webhook_url, config.slack_channel, timeout=timeout)
            )
        else:
            logger.warning("Slack notifications enabled but no webhook URL configured")
    if channels.sms:
        if config.sms_gateway_url and config.sms_numbers:
            notifiers.append(
                SMSNotifier(
                    config.sms_gateway_url,
                    config.sms_numbers,
                    config.sms_gateway_token,
                    timeout=timeout,
                )
            )
        else:
            logger.warning("SMS notifications enabled but gateway or numbers missing")
    if channels.database:
        if store is not None:
            notifiers.append(DatabaseNotifier(store))
        else:
            logger.warning("Database notifications enabled but no event store supplied")
    if channels.log:
        notifiers.append(LogNotifier())

    return notifiers


class AlertDispatcher:
    """Delivers alerts off the request path.

    Alerts go into a bounded queue drained by a daemon thread that runs its
    own asyncio loop. Each channel is retried with exponential backoff; a
    channel that still fails is logged and does not affect the others.

    Usage:
        dispatcher = AlertDispatcher(build_notifiers(config.monitoring, store))
        dispatcher.submit(alert)      # returns immediately
        dispatcher.flush(timeout=5)   # wait for delivery (tests, shutdown)
        dispatcher.close()
    """

    def __init__(
        self,
        notifiers: list[Notifier],
        queue_size: int = 1000,
        max_retries: int = 3,
        retry_delay_seconds: float = 1.0,
    ):
        """Initialize dispatcher.

        Args:
            notifiers: Channels every alert is sent to
            queue_size: Maximum queued alerts; further alerts are dropped
            max_retries: Retries per channel after the first attempt
            retry_delay_seconds: Base delay, doubled on every retry
        """
        self.notifiers = list(notifiers)
        self.max_retries = max_retries
        self.retry_delay_seconds = retry_delay_seconds

        self._queue: queue.Queue[Alert | None] = queue.Queue(maxsize=queue_size)
        self._pending = 0
        self._idle = threading.Condition()
        self._thread: threading.Thread | None = None
        self._start_lock = threading.Lock()
        self._closed = False

        self._stats_lock = threading.Lock()
        self.stats: dict[str, Any] = {
            "alerts_submitted": 0,
            "alerts_dropped": 0,
            "alerts_delivered": 0,
            "notifications_sent": 0,
            "notifications_failed": 0,
            "notifications_skipped": 0,
            "retries": 0,
        }

    @classmethod
    def from_config(cls, config: MonitoringConfig, store: EventStore | None = None) -> "AlertDispatcher":
        return cls(
            build_notifiers(config, store),
            queue_size=config.dispatch_queue_size,
            max_retries=config.dispatch_max_retries,
            retry_delay_seconds=config.dispatch_retry_delay_seconds,
        )

    def submit(self, alert: Alert) -> bool:
        """Queue an alert for delivery without blocking.

        Returns:
            False if the dispatcher is closed or the queue is full
        """
        if self._closed:
            logger.warning("Dispatcher closed, dropping alert %s", alert.alert_id)
            return False

        self._ensure_worker()
        with self._idle:
            self._pending += 1
        try:
            self._queue.put_nowait(alert)
        except queue.Full:
            with self._idle:
                self._pending -= 1
                self._idle.notify_all()
            self._bump("alerts_dropped")
            logger.error("Alert queue full, dropping alert %s", alert.alert_id)
            return False

        self._bump("alerts_submitted")
        return True

    def flush(self, timeout: float | None = None) -> bool:
        """Wait until every submitted alert has been processed.

        Returns:
            True if the queue drained within the timeout
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._idle:
            while self._pending:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._idle.wait(remaining)
        return True

    def close(self, timeout: float | None = 5.0) -> None:
        """Drain pending alerts and stop the worker thread."""
        if self._closed:
            return
        self.flush(timeout)
        self._closed = True
        if self._thread is not None:
            try:
                self._queue.put_nowait(None)
            except queue.Full:
                logger.warning("Alert queue full at shutdown; worker exits with the process")
            self._thread.join(timeout)

    async def deliver(self, alert: Alert) -> list[NotificationResult]:
        """Send one alert to every channel, retrying failed channels."""
        results = await asyncio.gather(*(self._deliver_channel(n, alert) for n in self.notifiers))
        self._bump("alerts_delivered")
        return list(results)

    async def _deliver_channel(self, notifier: Notifier, alert: Alert) -> NotificationResult:
        try:
            return await self._send_with_retry(notifier, alert)
        except DispatchFailure as e:
            logger.error("Alert %s not delivered: %s", alert.alert_id, e)
            return NotificationResult(channel=notifier.channel, success=False, error=str(e))

    async def _send_with_retry(self, notifier: Notifier, alert: Alert) -> NotificationResult:
        last_error = None
        for attempt in range(self.max_retries + 1):
            result = await notifier.send(alert)
            if result.success:
                key = "notifications_skipped" if result.skipped else "notifications_sent"
                self._bump(key)
                return result

            last_error = result.error
            self._bump("notifications_failed")
            logger.warning(
                "Channel %s failed for alert %s (attempt %d): %s",
                notifier.channel,
                alert.alert_id,
                attempt + 1,
                result.error,
            )
            if attempt < self.max_retries:
                self._bump("retries")
                await asyncio.sleep(self.retry_delay_seconds * (2**attempt))

        raise DispatchFailure(
            f"{notifier.channel} failed after {self.max_retries + 1} attempts: {last_error}"
        )

    def get_stats(self) -> dict[str, Any]:
        """Get dispatcher statistics."""
        with self._stats_lock:
            stats = dict(self.stats)
        stats["queued"] = self._queue.qsize()
        return stats

    def _bump(self, key: str) -> None:
        with self._stats_lock:
            self.stats[key] += 1

    def _ensure_worker(self) -> None:
        with self._start_lock:
            if self._thread is None or not self._thread.is_alive():
                self._thread = threading.Thread(
                    target=self._run, name="tableguard-alert-dispatcher", daemon=True
                )
                self._thread.start()

    def _run(self) -> None:
        loop = asyncio.new_event_loop()
        try:
            while True:
                alert = self._queue.get()
                if alert is None:
                    break
                try:
                    loop.run_until_complete(self.deliver(alert))
                except Exception:
                    logger.exception("Unexpected error delivering alert %s", alert.alert_id)
                finally:
                    with self._idle:
                        self._pending -= 1
                        self._idle.notify_all()
            loop.run_until_complete(self._close_notifiers())
        finally:
            loop.close()

    async def _close_notifiers(self) -> None:
        for notifier in self.notifiers:
            try:
                await notifier.close()
            except Exception:
                logger.exception("Failed to close %s notifier", notifier.channel)
