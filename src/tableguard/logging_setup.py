"""Logging setup for tableguard processes.

Components log through module-level ``logging.getLogger(__name__)`` loggers.
Security events, critical events and alerts use dedicated logger names so a
host application can route them to separate sinks.
"""

import logging
from pathlib import Path

from tableguard.config.schema import LoggingConfig
from tableguard.severity import Severity

EVENTS_LOGGER = "tableguard.security.events"
CRITICAL_LOGGER = "tableguard.security.critical"
ALERTS_LOGGER = "tableguard.security.alerts"

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_SEVERITY_LEVELS = {
    Severity.CRITICAL: logging.CRITICAL,
    Severity.HIGH: logging.ERROR,
    Severity.MEDIUM: logging.WARNING,
    Severity.LOW: logging.INFO,
}


def level_for_severity(severity: Severity) -> int:
    """Map an event severity to a logging level."""
    return _SEVERITY_LEVELS.get(severity, logging.INFO)


def configure_logging(config: LoggingConfig | None = None) -> None:
    """Install root handlers according to config.

    Args:
        config: Logging configuration (defaults if None)
    """
    config = config or LoggingConfig()
    root = logging.getLogger()
    root.setLevel(config.level.upper())

    formatter = logging.Formatter(LOG_FORMAT)
    if not any(isinstance(h, logging.StreamHandler) for h in root.handlers):
        stream = logging.StreamHandler()
        stream.setFormatter(formatter)
        root.addHandler(stream)

    if config.file:
        path = Path(config.file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
