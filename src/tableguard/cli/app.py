"""Main CLI application using Typer."""

import typer
from rich.console import Console

from tableguard import __version__

# Create Typer app
app = typer.Typer(
    name="tableguard",
    help="tableguard - Security anomaly detection and monitoring for data-driven web applications",
    no_args_is_help=True,
)

console = Console()


def _config_option() -> str | None:
    return typer.Option(
        None,
        "--config",
        "-c",
        help="Path to config file (default: ~/.tableguard/tableguard.yaml)",
    )


@app.command()
def version():
    """Show tableguard version."""
    console.print(f"tableguard version {__version__}")


@app.command()
def dashboard(
    hours: int = typer.Option(24, "--hours", "-h", help="Report on the last N hours", min=1),
    output_format: str = typer.Option(
        "table", "--format", "-f", help="Output format (table, json)"
    ),
    config_path: str = _config_option(),
):
    """Show the security dashboard."""
    from tableguard.cli.security_cmd import dashboard_command

    dashboard_command(config_path=config_path, hours=hours, output_format=output_format)


@app.command()
def events(
    ip_address: str = typer.Option(None, "--ip", help="Filter by source IP address"),
    event_type: str = typer.Option(None, "--type", "-t", help="Filter by event type"),
    severity: str = typer.Option(None, "--severity", "-s", help="Filter by severity"),
    hours: int = typer.Option(None, "--hours", "-h", help="Only show events from last N hours"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum number of events to show"),
    output_format: str = typer.Option(
        "table", "--format", "-f", help="Output format (table, json)"
    ),
    config_path: str = _config_option(),
):
    """Query the security event audit trail."""
    from tableguard.cli.security_cmd import events_command

    events_command(
        config_path=config_path,
        ip_address=ip_address,
        event_type=event_type,
        severity=severity,
        hours=hours,
        limit=limit,
        output_format=output_format,
    )


@app.command()
def rotate(
    config_path: str = _config_option(),
):
    """Archive and delete events past their retention period."""
    from tableguard.cli.security_cmd import rotate_command

    rotate_command(config_path=config_path)


@app.command()
def scan(
    value: str = typer.Argument(..., help="Value to analyze"),
    field: str = typer.Option("input", "--field", help="Context field name for the value"),
    event_type: str = typer.Option(
        "malicious_pattern_detected", "--event-type", "-e", help="Event type to analyze as"
    ),
    ip_address: str = typer.Option(None, "--ip", help="Source IP address"),
    output_format: str = typer.Option(
        "table", "--format", "-f", help="Output format (table, json)"
    ),
    config_path: str = _config_option(),
):
    """Run the anomaly detectors against a value and show the evidence."""
    from tableguard.cli.security_cmd import scan_command

    scan_command(
        value=value,
        field=field,
        event_type=event_type,
        ip_address=ip_address,
        output_format=output_format,
        config_path=config_path,
    )


@app.command("check-identifier")
def check_identifier(
    name: str = typer.Argument(..., help="Table or column name"),
    kind: str = typer.Option("table", "--kind", "-k", help="Identifier kind (table, column)"),
    config_path: str = _config_option(),
):
    """Check whether a table or column name passes validation."""
    from tableguard.cli.security_cmd import check_identifier_command

    check_identifier_command(name=name, kind=kind, config_path=config_path)
