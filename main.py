#!/usr/bin/env python3
"""Operations Monitor - CLI Entry Point."""
import sys
import json
import logging
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

import click
from rich.console import Console
from rich.table import Table

from __version__ import __version__

console = Console()
logger = logging.getLogger("opsmonitor.cli")


def _init_components(config_path=None, verbose=False):
    """Lazy initialization of all components."""
    from utils.logger import setup_logging
    from config import load_config
    from monitor.pipeline import build_pipeline

    config = load_config(config_path)
    setup_logging("DEBUG" if verbose else config["logging"]["level"], config["logging"].get("file"))
    pipeline = build_pipeline(config)
    return {"config": config, "pipeline": pipeline}


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config YAML")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.version_option(__version__, prog_name="opsmonitor")
@click.pass_context
def cli(ctx, config_path, verbose):
    """Operations Monitor - metrics, threshold alerts and multi-channel notifications."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose


def _get_components(ctx):
    if "_components" not in ctx.obj:
        ctx.obj["_components"] = _init_components(ctx.obj.get("config_path"), ctx.obj.get("verbose"))
        ctx.find_root().call_on_close(ctx.obj["_components"]["pipeline"].close)
    return ctx.obj["_components"]


def _severity_cell(severity):
    from utils.formatters import format_severity
    return format_severity(severity, with_color=True)


def _fail(message):
    console.print(f"[red]{message}[/red]")
    sys.exit(1)


# ──────────────────────────────────────────────────────
# PIPELINE
# ──────────────────────────────────────────────────────
@cli.command()
@click.pass_context
def run(ctx):
    """Run collection, evaluation and notification workers until interrupted."""
    c = _get_components(ctx)
    pipeline = c["pipeline"]
    console.print(f"[bold]Ops Monitor[/bold] running with {len(pipeline.registry)} rules. "
                  f"Ctrl+C to stop.")
    try:
        pipeline.run_forever()
    except KeyboardInterrupt:
        console.print("\n[dim]Stopping...[/dim]")
        pipeline.stop()


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def collect(ctx, as_json):
    """Collect one round of metrics and evaluate them."""
    c = _get_components(ctx)
    samples = c["pipeline"].collect_once()
    if as_json:
        click.echo(json.dumps([s.to_dict() for s in samples], indent=2))
        return
    _print_metrics(samples, title="Collected Metrics")


@cli.command()
@click.argument("metric_type")
@click.argument("name")
@click.argument("value", type=float)
@click.option("--threshold", default=0.0, type=float, help="Sample threshold for classification")
@click.option("--unit", default="", help="Unit label, e.g. % or ms")
@click.pass_context
def record(ctx, metric_type, name, value, threshold, unit):
    """Record one metric sample (e.g. business metrics from a script)."""
    c = _get_components(ctx)
    sample = c["pipeline"].record_metric(metric_type, name, value, threshold=threshold, unit=unit)
    console.print(f"Recorded {sample.type}/{sample.name} = {sample.value} "
                  f"({sample.status}, id {sample.id})")


# ──────────────────────────────────────────────────────
# ALERTS
# ──────────────────────────────────────────────────────
@cli.group()
def alerts():
    """Alert management."""
    pass


@alerts.command("list")
@click.option("--status", type=click.Choice(["active", "acknowledged", "resolved"]), default=None)
@click.option("--severity", type=click.Choice(["info", "warning", "critical", "emergency"]), default=None)
@click.option("--limit", default=50, help="Max alerts to show")
@click.pass_context
def alerts_list(ctx, status, severity, limit):
    """Show alerts, newest first."""
    from utils.formatters import time_ago
    c = _get_components(ctx)
    found = c["pipeline"].list_alerts(status=status, severity=severity, limit=limit)
    if not found:
        console.print("[dim]No alerts[/dim]")
        return
    table = Table(title="Alerts", show_header=True)
    table.add_column("ID", style="dim")
    table.add_column("Fired")
    table.add_column("Severity")
    table.add_column("Status")
    table.add_column("Rule")
    table.add_column("Value", justify="right")
    table.add_column("Esc", justify="right")
    for a in found:
        status_cell = a.status + (" (suppressed)" if a.suppressed else "")
        table.add_row(str(a.id), time_ago(a.fired_at), _severity_cell(a.severity), status_cell,
                      a.rule_name, f"{a.value:.2f}", str(a.escalation_level))
    console.print(table)


@alerts.command("ack")
@click.argument("alert_id", type=int)
@click.option("--by", "actor", default="cli", help="Who is acknowledging")
@click.option("--note", default=None, help="Optional note")
@click.pass_context
def alerts_ack(ctx, alert_id, actor, note):
    """Acknowledge an active alert."""
    from utils.errors import AlertNotFoundError, AlertStateError
    c = _get_components(ctx)
    try:
        alert = c["pipeline"].acknowledge(alert_id, actor, note)
    except (AlertNotFoundError, AlertStateError) as e:
        _fail(str(e))
    console.print(f"[green]Alert {alert.id} acknowledged by {actor}[/green]")


@alerts.command("resolve")
@click.argument("alert_id", type=int)
@click.option("--by", "actor", default="cli", help="Who is resolving")
@click.option("--note", default=None, help="Optional note")
@click.pass_context
def alerts_resolve(ctx, alert_id, actor, note):
    """Resolve an alert and send the resolve notification."""
    from utils.errors import AlertNotFoundError, AlertStateError
    c = _get_components(ctx)
    try:
        alert = c["pipeline"].resolve(alert_id, actor, note)
    except (AlertNotFoundError, AlertStateError) as e:
        _fail(str(e))
    console.print(f"[green]Alert {alert.id} resolved by {actor}[/green]")


@alerts.command("escalate")
@click.pass_context
def alerts_escalate(ctx):
    """Run one escalation pass over active alerts."""
    c = _get_components(ctx)
    escalated = c["pipeline"].check_escalations() or []
    if not escalated:
        console.print("[dim]Nothing to escalate[/dim]")
        return
    for a in escalated:
        console.print(f"  Alert {a.id} ({a.rule_name}) -> level {a.escalation_level}")


# ──────────────────────────────────────────────────────
# RULES
# ──────────────────────────────────────────────────────
@cli.group()
def rules():
    """Alert rule inspection."""
    pass


@rules.command("list")
@click.pass_context
def rules_list(ctx):
    """List all configured alert rules."""
    from utils.formatters import format_duration
    c = _get_components(ctx)
    table = Table(title="Alert Rules", show_header=True)
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Condition")
    table.add_column("Severity")
    table.add_column("Window")
    table.add_column("Escalation")
    table.add_column("Channels")
    table.add_column("Enabled")
    for r in c["pipeline"].list_rules():
        escalation = (f"after {format_duration(r.escalation.delay_seconds)}, max L{r.escalation.max_level}"
                      if r.escalation.enabled else "-")
        table.add_row(r.id, r.name,
                      f"{r.metric_type}/{r.metric_name} {r.condition} {r.threshold:g}",
                      _severity_cell(r.severity),
                      format_duration(r.suppression_window_seconds),
                      escalation,
                      ", ".join(ref.channel for ref in r.channels) or "-",
                      "[green]✓[/green]" if r.enabled else "[red]✗[/red]")
    console.print(table)


@rules.command("validate")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
def rules_validate(path):
    """Validate a rules YAML file without loading it into a pipeline."""
    import yaml
    from alerts.registry import validate_rule
    from models.alerts import AlertRule
    from models.enums import ChannelType
    from utils.errors import RuleValidationError

    with open(path) as f:
        data = yaml.safe_load(f) or {}
    known = {c.value for c in ChannelType}
    errors = 0
    seen = set()
    for raw in data.get("rules", []):
        try:
            rule = AlertRule.from_dict(raw)
            validate_rule(rule, known)
            if rule.id in seen:
                raise RuleValidationError(f"Duplicate rule id {rule.id!r}", rule_id=rule.id)
            seen.add(rule.id)
            console.print(f"  [green]✓[/green] {rule.id}")
        except (RuleValidationError, TypeError, ValueError, AttributeError) as e:
            errors += 1
            console.print(f"  [red]✗[/red] {e}")
    if errors:
        _fail(f"{errors} invalid rule(s)")
    console.print(f"[green]{len(seen)} rule(s) valid[/green]")


# ──────────────────────────────────────────────────────
# QUERIES
# ──────────────────────────────────────────────────────
def _print_metrics(samples, title="Metrics"):
    from utils.formatters import format_value, format_timestamp
    if not samples:
        console.print("[dim]No metrics[/dim]")
        return
    table = Table(title=title, show_header=True)
    table.add_column("Time", style="dim")
    table.add_column("Type")
    table.add_column("Name")
    table.add_column("Value", justify="right")
    table.add_column("Status")
    colors = {"critical": "red", "warning": "yellow", "normal": "green"}
    for s in samples:
        color = colors.get(s.status, "white")
        table.add_row(format_timestamp(s.timestamp)[:19], s.type, s.name,
                      format_value(s.value, s.unit), f"[{color}]{s.status}[/{color}]")
    console.print(table)


@cli.command()
@click.option("--type", "metric_type", default=None, help="Filter by metric type")
@click.option("--name", default=None, help="Filter by metric name")
@click.option("--limit", default=50, help="Max samples to show")
@click.pass_context
def metrics(ctx, metric_type, name, limit):
    """Show recent metric samples."""
    c = _get_components(ctx)
    _print_metrics(c["pipeline"].list_metrics(metric_type=metric_type, name=name, limit=limit))


@cli.command()
@click.option("--alert", "alert_id", default=None, type=int, help="Filter by alert id")
@click.option("--status", type=click.Choice(["pending", "sent", "retrying", "failed"]), default=None)
@click.option("--limit", default=50, help="Max records to show")
@click.pass_context
def notifications(ctx, alert_id, status, limit):
    """Show notification delivery records."""
    c = _get_components(ctx)
    records = c["pipeline"].list_notifications(alert_id=alert_id, status=status, limit=limit)
    if not records:
        console.print("[dim]No notifications[/dim]")
        return
    table = Table(title="Notifications", show_header=True)
    table.add_column("ID", style="dim")
    table.add_column("Alert")
    table.add_column("Channel")
    table.add_column("Event")
    table.add_column("Status")
    table.add_column("Tries", justify="right")
    table.add_column("Error")
    for r in records:
        table.add_row(str(r.id), str(r.alert_id), r.channel, r.event, r.status,
                      f"{r.retry_count}/{r.max_retries}", (r.error or "")[:50])
    console.print(table)


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def stats(ctx, as_json):
    """Show alert, notification and pipeline statistics."""
    from utils.formatters import format_compact
    c = _get_components(ctx)
    data = c["pipeline"].get_stats()
    if as_json:
        click.echo(json.dumps(data, indent=2))
        return
    for section, values in data.items():
        table = Table(title=section.capitalize(), show_header=False)
        table.add_column("Key", style="dim")
        table.add_column("Value")
        for key, value in values.items():
            if isinstance(value, dict):
                value = ", ".join(f"{k}={format_compact(v)}" for k, v in value.items()) or "-"
            elif isinstance(value, int) and not isinstance(value, bool):
                value = format_compact(value)
            table.add_row(key, str(value))
        console.print(table)


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def health(ctx, as_json):
    """Show overall health derived from active alerts."""
    c = _get_components(ctx)
    data = c["pipeline"].get_health()
    if as_json:
        click.echo(json.dumps(data, indent=2))
        return
    color = {"healthy": "green", "warning": "yellow", "critical": "red"}[data["status"]]
    console.print(f"Health: [bold {color}]{data['status'].upper()}[/bold {color}] "
                  f"({data['active_alerts']} active alerts)")
    for severity, count in sorted(data["active_by_severity"].items()):
        console.print(f"  {_severity_cell(severity)}: {count}")


@cli.command()
@click.pass_context
def sweep(ctx):
    """Apply the retention policy now."""
    c = _get_components(ctx)
    result = c["pipeline"].sweep()
    console.print(f"Removed {result.metrics} samples, {result.alerts} alerts, "
                  f"{result.notifications} notification records")


@cli.command("test-email")
@click.option("--to", "recipient", default=None, help="Also send a test message to this address")
@click.pass_context
def test_email(ctx, recipient):
    """Check SMTP connectivity for the email channel."""
    from notifications.email_sender import EmailSender
    from utils.errors import DeliveryError

    c = _get_components(ctx)
    sender = EmailSender(c["config"]["notifications"]["channels"].get("email", {}))
    if not sender.is_configured():
        _fail("Email not configured: set notifications.channels.email.smtp_host and from_address")

    result = sender.test_connection()
    if result["status"] != "ok":
        _fail(f"SMTP connection failed: {result['message']}")
    console.print(f"[green]SMTP connection to {sender.smtp_host}:{sender.smtp_port} OK[/green]")

    if recipient:
        try:
            sender.send_message(recipient, "[INFO] Ops Monitor test",
                                "Email notifications are working.")
        except DeliveryError as e:
            _fail(f"Send failed: {e}")
        console.print(f"[green]Test message sent to {recipient}[/green]")


# ──────────────────────────────────────────────────────
# WEB API
# ──────────────────────────────────────────────────────
@cli.command()
@click.option("--port", default=None, type=int, help="Port to bind to")
@click.option("--host", default=None, type=str, help="Host to bind to")
@click.option("--with-workers", is_flag=True, help="Also run the monitoring workers")
@click.pass_context
def web(ctx, port, host, with_workers):
    """Serve the read-only JSON API."""
    from web.app import create_app

    c = _get_components(ctx)
    web_cfg = c["config"].get("web", {})
    host = host or web_cfg.get("host", "127.0.0.1")
    port = port or web_cfg.get("port", 5000)

    app = create_app(c["config"], c["pipeline"])
    if with_workers:
        c["pipeline"].start()
    console.print(f"[bold]Ops Monitor API[/bold] on http://{host}:{port}/api/health")
    app.run(host=host, port=port, debug=False, use_reloader=False)


if __name__ == "__main__":
    cli()
