"""Tests for CLI commands."""

import pytest
import yaml
from typer.testing import CliRunner

from tableguard.cli.app import app
from tableguard.clock import utcnow
from tableguard.security.event_store import ActionTaken, SecurityEvent, SQLiteEventStore
from tableguard.severity import Severity

runner = CliRunner()

DROP_TABLE = "'; DROP TABLE users; --"


@pytest.fixture
def config_file(tmp_path):
    """Config whose event store and archive live under tmp_path."""
    path = tmp_path / "tableguard.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "monitoring": {
                    "db_path": str(tmp_path / "events.db"),
                    "archive_dir": str(tmp_path / "archive"),
                    "notification_channels": {"email": False},
                },
                "logging": {"level": "WARNING"},
            }
        )
    )
    return path


@pytest.fixture
def populated(tmp_path, config_file):
    store = SQLiteEventStore(tmp_path / "events.db")
    now = utcnow()
    store.append(
        SecurityEvent(
            event_id="sec_1",
            timestamp=now,
            event_type="xss_attempt",
            severity=Severity.HIGH,
            ip_address="10.0.0.1",
            action_taken=ActionTaken.BLOCKED,
        )
    )
    store.append(
        SecurityEvent(
            event_id="sec_2",
            timestamp=now,
            event_type="authentication_failure",
            severity=Severity.MEDIUM,
            ip_address="10.0.0.2",
        )
    )
    return config_file


def test_version_command():
    """Test version command."""
    result = runner.invoke(app, ["version"])

    assert result.exit_code == 0
    assert "tableguard version" in result.stdout


def test_help_command():
    """Test help output."""
    result = runner.invoke(app, ["--help"])

    assert result.exit_code == 0
    for command in ("dashboard", "events", "rotate", "scan", "check-identifier"):
        assert command in result.stdout


def test_invalid_config_exits(tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text("monitoring: [unclosed")

    result = runner.invoke(app, ["events", "--config", str(path)])

    assert result.exit_code == 1
    assert "Invalid YAML" in result.stdout


class TestEventsCommand:
    def test_table(self, populated):
        result = runner.invoke(app, ["events", "--config", str(populated)])

        assert result.exit_code == 0
        assert "Security Events (2 records)" in result.stdout
        assert "xss_attempt" in result.stdout

    def test_filters(self, populated):
        result = runner.invoke(
            app, ["events", "--config", str(populated), "--ip", "10.0.0.2", "--format", "json"]
        )

        assert result.exit_code == 0
        assert '"event_id": "sec_2"' in result.stdout
        assert "sec_1" not in result.stdout

    def test_severity_filter(self, populated):
        result = runner.invoke(
            app, ["events", "--config", str(populated), "--severity", "HIGH", "--hours", "1"]
        )

        assert result.exit_code == 0
        assert "Security Events (1 records)" in result.stdout

    def test_unknown_severity(self, populated):
        result = runner.invoke(app, ["events", "--config", str(populated), "-s", "urgent"])

        assert result.exit_code == 1
        assert "Unknown severity" in result.stdout

    def test_no_events(self, config_file):
        result = runner.invoke(app, ["events", "--config", str(config_file)])

        assert result.exit_code == 0
        assert "No events found" in result.stdout


class TestDashboardCommand:
    def test_table(self, populated):
        result = runner.invoke(app, ["dashboard", "--config", str(populated)])

        assert result.exit_code == 0
        assert "Security Dashboard (last 24h)" in result.stdout
        assert "Top Event Types" in result.stdout
        assert "10.0.0.1" in result.stdout

    def test_json(self, populated):
        result = runner.invoke(
            app, ["dashboard", "--config", str(populated), "--hours", "2", "-f", "json"]
        )

        assert result.exit_code == 0
        assert '"total_events": 2' in result.stdout
        assert '"hours": 2' in result.stdout


class TestRotateCommand:
    def test_nothing_to_rotate(self, populated):
        result = runner.invoke(app, ["rotate", "--config", str(populated)])

        assert result.exit_code == 0
        assert "Log Rotation" in result.stdout
        assert "ok" in result.stdout


class TestScanCommand:
    def test_destructive_payload(self, config_file):
        result = runner.invoke(
            app, ["scan", DROP_TABLE, "--field", "notes", "--config", str(config_file)]
        )

        assert result.exit_code == 0
        assert "Scan: malicious_pattern_detected" in result.stdout
        assert "Anomaly: yes" in result.stdout
        assert "destructive_statement" in result.stdout

    def test_json(self, config_file):
        result = runner.invoke(
            app, ["scan", "hello there", "--format", "json", "--config", str(config_file)]
        )

        assert result.exit_code == 0
        assert '"is_anomaly": false' in result.stdout


class TestCheckIdentifierCommand:
    def test_valid_table(self, config_file):
        result = runner.invoke(app, ["check-identifier", "users", "--config", str(config_file)])

        assert result.exit_code == 0
        assert "Valid table name: users" in result.stdout

    def test_rejected_table(self, config_file):
        result = runner.invoke(
            app, ["check-identifier", "users-list", "--config", str(config_file)]
        )

        assert result.exit_code == 1
        assert "Rejected table name" in result.stdout

    def test_unknown_kind(self, config_file):
        result = runner.invoke(
            app, ["check-identifier", "users", "-k", "index", "--config", str(config_file)]
        )

        assert result.exit_code == 1
        assert "Unknown identifier kind" in result.stdout
