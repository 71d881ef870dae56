"""Tableguard - security anomaly detection and monitoring for admin tables and forms.

Tableguard sits between user-supplied table/form input and the query layer.
It rejects malformed identifiers and payloads, scores every security event
for anomalies, and keeps a durable, alertable record of what happened.

Key modules:

- :mod:`tableguard.security.validator` - Identifier and value validation/sanitization
- :mod:`tableguard.security.detection` - Multi-signal anomaly detection engine
- :mod:`tableguard.security.monitoring` - Event ingestion, alerting, retention
- :mod:`tableguard.security.dashboard` - Read-only dashboard aggregation
- :mod:`tableguard.config` - YAML configuration schema and loader
- :mod:`tableguard.cli` - Operator CLI (dashboard, audit trail, rotation)
"""

__version__ = "0.1.0"
