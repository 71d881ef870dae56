"""Security CLI commands.

Operator views over the event store (dashboard, audit trail), retention,
and one-off checks of values and identifiers.
"""

import json
from datetime import datetime, timedelta

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from tableguard.clock import utcnow
from tableguard.config.loader import ConfigError, load_config
from tableguard.config.schema import TableguardConfig
from tableguard.logging_setup import configure_logging
from tableguard.severity import Severity

console = Console()

_SEVERITY_STYLES = {
    Severity.CRITICAL: "bold red",
    Severity.HIGH: "red",
    Severity.MEDIUM: "yellow",
    Severity.LOW: "green",
}


def _load(config_path: str | None) -> TableguardConfig:
    try:
        config = load_config(config_path)
    except ConfigError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1) from None
    configure_logging(config.logging)
    return config


def _format_timestamp(ts: str | datetime) -> str:
    """Format timestamp for display."""
    if isinstance(ts, str):
        try:
            ts = datetime.fromisoformat(ts)
        except ValueError:
            return ts
    return ts.strftime("%Y-%m-%d %H:%M:%S")


def _styled(severity: Severity | str | None) -> str:
    if not severity:
        return "-"
    style = _SEVERITY_STYLES.get(Severity(severity), "white")
    return f"[{style}]{severity}[/{style}]"


def dashboard_command(config_path: str | None, hours: int, output_format: str) -> None:
    """Show the security dashboard."""
    from tableguard.security.dashboard import SecurityDashboard
    from tableguard.security.event_store import SQLiteEventStore

    config = _load(config_path)
    try:
        store = SQLiteEventStore(
            config.monitoring.db_path, timeout=config.monitoring.store_timeout_seconds
        )
        report = SecurityDashboard(
            store, alert_thresholds=config.monitoring.alert_thresholds
        ).get_report(hours)
    except Exception as e:
        console.print(f"[red]Error building dashboard: {e}[/red]")
        raise typer.Exit(1) from None

    if output_format == "json":
        console.print_json(report.model_dump_json())
        return

    summary = report.summary
    by_severity = "  ".join(
        f"{_styled(s)}: {summary['by_severity'].get(s.value, 0)}" for s in Severity
    )
    intel = report.threat_intelligence
    console.print(
        Panel(
            f"Events: [bold]{summary['total_events']}[/bold]  "
            f"Unique IPs: {summary['unique_ips']}  "
            f"Blocked: {summary['blocked']}  "
            f"Per hour: {summary['events_per_hour']}\n"
            f"{by_severity}\n"
            f"Defense effectiveness: {intel['defense_effectiveness']}%  "
            f"Sophistication: {intel['attack_sophistication']['level']}",
            title=f"Security Dashboard (last {hours}h)",
        )
    )

    types_table = Table(title="Top Event Types")
    types_table.add_column("Event Type", style="magenta")
    types_table.add_column("Count", justify="right")
    for row in report.top_threats["event_types"]:
        types_table.add_row(row["event_type"], str(row["count"]))
    console.print(types_table)

    ip_table = Table(title="Top Source IPs")
    ip_table.add_column("IP Address", style="cyan")
    ip_table.add_column("Count", justify="right")
    ip_table.add_column("Event Types")
    for row in report.top_threats["source_ips"]:
        ip_table.add_row(row["ip_address"], str(row["count"]), ", ".join(row["event_types"]))
    console.print(ip_table)

    alerts = report.alert_status
    console.print(f"Alerts in range: [bold]{alerts['total_alerts']}[/bold]")


def events_command(
    config_path: str | None,
    ip_address: str | None,
    event_type: str | None,
    severity: str | None,
    hours: int | None,
    limit: int,
    output_format: str,
) -> None:
    """Query the security event audit trail."""
    from tableguard.security.event_store import SQLiteEventStore

    config = _load(config_path)
    try:
        severity_filter = Severity(severity.lower()) if severity else None
    except ValueError:
        console.print(f"[red]Unknown severity: {severity}[/red]")
        raise typer.Exit(1) from None

    try:
        store = SQLiteEventStore(
            config.monitoring.db_path, timeout=config.monitoring.store_timeout_seconds
        )
        start_time = utcnow() - timedelta(hours=hours) if hours else None
        events = store.query(
            start_time=start_time,
            event_type=event_type,
            severity=severity_filter,
            ip_address=ip_address,
            limit=limit,
        )
    except Exception as e:
        console.print(f"[red]Error querying events: {e}[/red]")
        raise typer.Exit(1) from None

    if not events:
        console.print("[yellow]No events found[/yellow]")
        return

    if output_format == "json":
        console.print_json(json.dumps([e.model_dump(mode="json") for e in events]))
        return

    table = Table(title=f"Security Events ({len(events)} records)")
    table.add_column("Timestamp", style="cyan")
    table.add_column("Type", style="magenta")
    table.add_column("Severity")
    table.add_column("IP Address", style="green")
    table.add_column("Action", style="blue")
    table.add_column("Event ID", style="dim")

    for event in events:
        table.add_row(
            _format_timestamp(event.timestamp),
            event.event_type,
            _styled(event.severity),
            event.ip_address or "N/A",
            event.action_taken.value,
            event.event_id,
        )
    console.print(table)


def rotate_command(config_path: str | None) -> None:
    """Archive and delete events past their retention period."""
    from tableguard.security.monitoring import SecurityMonitoringService

    config = _load(config_path)
    service = SecurityMonitoringService.from_config(config)
    try:
        report = service.manage_log_rotation()
    finally:
        service.close()

    table = Table(title="Log Rotation")
    table.add_column("Severity")
    table.add_column("Cutoff", style="cyan")
    table.add_column("Deleted", justify="right")
    table.add_column("Archive")
    table.add_column("Status", style="bold")
    for result in report.results:
        status = "[green]ok[/green]" if result.ok else f"[red]{result.error}[/red]"
        table.add_row(
            _styled(result.severity),
            _format_timestamp(result.cutoff),
            str(result.deleted),
            result.archive_file or "-",
            status,
        )
    console.print(table)

    if report.failures:
        raise typer.Exit(1)


def scan_command(
    value: str,
    field: str,
    event_type: str,
    ip_address: str | None,
    output_format: str,
    config_path: str | None,
) -> None:
    """Run the anomaly detectors against a value and show the evidence."""
    from tableguard.security.detection import AnomalyDetectionEngine

    config = _load(config_path)
    engine = AnomalyDetectionEngine(
        config.detection,
        alert_thresholds=config.monitoring.alert_thresholds,
        severity_overrides=config.monitoring.severity_overrides,
    )
    context = {field: value}
    if ip_address:
        context["ip_address"] = ip_address
    try:
        verdict = engine.analyze(event_type, context)
    finally:
        engine.close()

    if output_format == "json":
        console.print_json(verdict.model_dump_json())
        return

    verdict_style = "red" if verdict.is_anomaly else "green"
    console.print(
        Panel(
            f"Anomaly: [{verdict_style}]{'yes' if verdict.is_anomaly else 'no'}[/{verdict_style}]  "
            f"Confidence: [bold]{verdict.confidence:.2f}[/bold]  "
            f"Severity: {_styled(verdict.severity)}\n"
            f"Boosted: {verdict.boosted}  Signature override: {verdict.signature_override}",
            title=f"Scan: {event_type}",
        )
    )

    table = Table(title="Detectors")
    table.add_column("Detector", style="cyan")
    table.add_column("Confidence", justify="right")
    table.add_column("Evidence")
    for name, result in verdict.results.items():
        evidence = ", ".join(e.indicator for e in result.evidence) or "-"
        if result.degraded:
            evidence = f"[yellow]degraded: {result.details.get('error')}[/yellow]"
        table.add_row(name.value, f"{result.confidence:.2f}", evidence)
    console.print(table)

    for action in verdict.recommended_actions:
        console.print(f"  - {action}")


def check_identifier_command(name: str, kind: str, config_path: str | None) -> None:
    """Check whether a table or column name passes validation."""
    from tableguard.security.exceptions import SecurityValidationError
    from tableguard.security.validator import IdentifierKind, InputValidator

    config = _load(config_path)
    try:
        identifier_kind = IdentifierKind(kind.lower())
    except ValueError:
        console.print(f"[red]Unknown identifier kind: {kind}[/red]")
        raise typer.Exit(1) from None

    validator = InputValidator(config.validator)
    try:
        validator.validate_identifier(name, identifier_kind)
    except SecurityValidationError as e:
        console.print(f"[red]Rejected {identifier_kind} name {name!r}: {e.violation}[/red]")
        raise typer.Exit(1) from None

    console.print(f"[green]Valid {identifier_kind} name: {name}[/green]")
