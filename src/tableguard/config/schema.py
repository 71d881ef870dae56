"""Pydantic models for tableguard.yaml configuration."""

from pydantic import BaseModel, ConfigDict, Field, model_validator

from tableguard.severity import Severity


class ValidatorConfig(BaseModel):
    """Input validator configuration."""

    model_config = ConfigDict(frozen=True)

    table_name_max_length: int = Field(default=64, description="Maximum table name length", ge=1)
    column_name_max_length: int = Field(
        default=64, description="Maximum column name length (after prefix strip)", ge=1
    )
    max_lengths: dict[str, int] = Field(
        default_factory=lambda: {
            "string": 255,
            "text": 65535,
            "search": 100,
            "filter": 50,
            "order": 20,
        },
        description="Default maximum value length per value type",
    )
    whitelist_columns: list[str] = Field(
        default_factory=list,
        description="Custom column names added to the built-in whitelist",
    )
    sql_injection_protection: bool = Field(default=True, description="Reject SQL injection")
    xss_protection: bool = Field(default=True, description="Reject XSS payloads")
    path_traversal_protection: bool = Field(default=True, description="Reject path traversal")
    max_nesting_depth: int = Field(
        default=16, description="Maximum nesting depth for array input", ge=1
    )
    logged_value_max_chars: int = Field(
        default=100, description="Offending values are truncated to this in events", ge=1
    )


class DetectorWeights(BaseModel):
    """Weights used to fuse the five detector confidences."""

    model_config = ConfigDict(frozen=True)

    pattern: float = Field(default=0.35, ge=0.0, le=1.0)
    behavioral: float = Field(default=0.25, ge=0.0, le=1.0)
    frequency: float = Field(default=0.15, ge=0.0, le=1.0)
    entropy: float = Field(default=0.15, ge=0.0, le=1.0)
    correlation: float = Field(default=0.10, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_sum(self) -> "DetectorWeights":
        total = self.pattern + self.behavioral + self.frequency + self.entropy + self.correlation
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"Detector weights must sum to 1.0 (got {total:.4f})")
        return self

    def as_dict(self) -> dict[str, float]:
        """Weights keyed by detector name."""
        return self.model_dump()


class DetectionConfig(BaseModel):
    """Anomaly detection engine configuration."""

    model_config = ConfigDict(frozen=True)

    weights: DetectorWeights = Field(default_factory=DetectorWeights)
    anomaly_threshold: float = Field(
        default=0.70, description="Confidence at or above which an event is anomalous", ge=0.0, le=1.0
    )
    severity_thresholds: dict[Severity, float] = Field(
        default_factory=lambda: {
            Severity.CRITICAL: 0.90,
            Severity.HIGH: 0.80,
            Severity.MEDIUM: 0.70,
            Severity.LOW: 0.60,
        },
        description="Minimum confidence for each severity bucket",
    )

    # Multi-indicator boost
    boost_min_detectors: int = Field(default=3, ge=1, le=5)
    boost_indicator_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    boost_factor: float = Field(default=1.2, ge=1.0)

    # A single near-certain signature decides the verdict on its own
    signature_override_threshold: float | None = Field(
        default=0.90,
        description=(
            "Pattern confidence that sets the verdict alone, so the verdict can exceed "
            "the weighted sum; None keeps the verdict at or below the unboosted sum"
        ),
    )

    # Entropy
    entropy_threshold: float = Field(default=7.0, description="Bits per character", ge=0.0)
    entropy_max_confidence: float = Field(default=0.85, ge=0.0, le=1.0)

    # Frequency
    frequency_window_seconds: int = Field(default=300, ge=1)
    request_frequency_threshold: int = Field(
        default=100, description="Events per window treated as flooding", ge=1
    )

    # Correlation
    correlation_window_seconds: int = Field(default=3600, ge=1)
    coordinated_window_seconds: int = Field(default=600, ge=1)
    coordinated_min_ips: int = Field(default=5, ge=2)

    # Behavioral
    timing_variance_threshold: float = Field(default=0.1, ge=0.0)
    session_duration_threshold: int = Field(default=7200, description="Seconds", ge=1)
    user_agent_limit: int = Field(default=3, ge=1)

    # Cost bounds
    max_context_depth: int = Field(default=32, ge=1)
    max_context_fields: int = Field(default=512, ge=1)
    max_field_chars: int = Field(
        default=4096, description="Characters scanned per field (head and tail)", ge=64
    )
    detector_timeout_seconds: float = Field(
        default=0.5, description="Time box for store and cache backed detectors", gt=0.0
    )


class AlertThreshold(BaseModel):
    """Count threshold within a time window for one severity."""

    model_config = ConfigDict(frozen=True)

    count_threshold: int = Field(ge=1)
    time_window_seconds: int = Field(ge=1)


def default_alert_thresholds() -> dict[Severity, AlertThreshold]:
    return {
        Severity.CRITICAL: AlertThreshold(count_threshold=1, time_window_seconds=60),
        Severity.HIGH: AlertThreshold(count_threshold=3, time_window_seconds=300),
        Severity.MEDIUM: AlertThreshold(count_threshold=10, time_window_seconds=900),
        Severity.LOW: AlertThreshold(count_threshold=50, time_window_seconds=3600),
    }


class NotificationChannelsConfig(BaseModel):
    """Notification channel toggles."""

    model_config = ConfigDict(frozen=True)

    email: bool = Field(default=True, description="Send alerts by email")
    slack: bool = Field(default=False, description="Send alerts to Slack")
    sms: bool = Field(default=False, description="Send SMS for critical alerts")
    database: bool = Field(default=True, description="Persist alerts in the event store")
    log: bool = Field(default=True, description="Write alerts to the alert log")


class MonitoringConfig(BaseModel):
    """Monitoring service configuration."""

    model_config = ConfigDict(frozen=True)

    db_path: str = Field(default="~/.tableguard/events.db", description="Event store path")
    archive_dir: str = Field(
        default="~/.tableguard/archive", description="Directory for rotated event archives"
    )
    store_timeout_seconds: float = Field(
        default=2.0, description="Event store lock timeout in seconds", gt=0.0
    )
    detect_anomalies: bool = Field(
        default=True, description="Run the anomaly engine on every logged event"
    )

    notification_channels: NotificationChannelsConfig = Field(
        default_factory=NotificationChannelsConfig
    )
    alert_recipients: dict[Severity, list[str]] = Field(
        default_factory=lambda: {
            Severity.CRITICAL: ["security-team@example.com", "cto@example.com"],
            Severity.HIGH: ["security-team@example.com", "tech-lead@example.com"],
            Severity.MEDIUM: ["security-team@example.com"],
            Severity.LOW: ["security-team@example.com"],
        }
    )
    alert_thresholds: dict[Severity, AlertThreshold] = Field(default_factory=default_alert_thresholds)
    retention_days: dict[Severity, int] = Field(
        default_factory=lambda: {
            Severity.CRITICAL: 365,
            Severity.HIGH: 180,
            Severity.MEDIUM: 90,
            Severity.LOW: 30,
        }
    )
    severity_overrides: dict[str, Severity] = Field(
        default_factory=dict, description="Per-event-type severity overrides"
    )
    geo_networks: dict[str, str] = Field(
        default_factory=dict,
        description="CIDR -> country code map used for geographic enrichment",
    )
    max_context_value_chars: int = Field(
        default=1000, description="Strings in persisted context are truncated to this", ge=16
    )

    # Transports
    smtp_host: str = Field(default="localhost")
    smtp_port: int = Field(default=25, ge=1, le=65535)
    smtp_sender: str = Field(default="tableguard@localhost")
    slack_webhook_url: str = Field(default="")
    slack_channel: str = Field(default="#security-alerts")
    sms_gateway_url: str = Field(default="")
    sms_gateway_token: str = Field(default="")
    sms_numbers: list[str] = Field(default_factory=list)

    # Dispatcher
    dispatch_queue_size: int = Field(default=1000, ge=1)
    dispatch_max_retries: int = Field(default=3, ge=0, le=10)
    dispatch_retry_delay_seconds: float = Field(default=1.0, ge=0.0, le=60.0)
    dispatch_timeout_seconds: float = Field(default=10.0, gt=0.0)

    @model_validator(mode="after")
    def _fill_missing_severities(self) -> "MonitoringConfig":
        # Partial YAML overrides must not drop the other severities
        defaults = default_alert_thresholds()
        for severity in Severity:
            if severity not in self.alert_thresholds:
                self.alert_thresholds[severity] = defaults[severity]
            self.alert_recipients.setdefault(severity, [])
            self.retention_days.setdefault(severity, 30)
        return self


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="INFO", description="Root log level")
    file: str | None = Field(default=None, description="Optional log file path")


class TableguardConfig(BaseModel):
    """Root configuration for tableguard."""

    validator: ValidatorConfig = Field(default_factory=ValidatorConfig)
    detection: DetectionConfig = Field(default_factory=DetectionConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
