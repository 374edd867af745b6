"""Command-line interface for PO sync alerts.

Provides commands for configuration validation, email import, thread
inspection, alert cycles and alert management.

Usage:
    python -m posync validate-config
    python -m posync import-emails export.json
    python -m posync threads --since 2026-01-01
    python -m posync run-alerts --threads po_threads.json
    python -m posync watch
    python -m posync alerts
    python -m posync dismiss 42
"""

from __future__ import annotations

import asyncio
import json
import sys
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING

import click
from rich.console import Console
from rich.table import Table

from posync.config import validate_config_file
from posync.core.logging import configure_logging

if TYPE_CHECKING:
    from posync.accounting.customer_matcher import CustomerMatcher
    from posync.accounting.gateway import AccountingGateway
    from posync.config_schema import AppConfig
    from posync.db.store import Alert, DatabaseStore
    from posync.engine.alerts import AlertCycleResult, AlertManager

console = Console()


@dataclass(frozen=True, slots=True)
class CLIDeps:
    """Shared dependencies initialized by _init_cli_deps()."""

    config: AppConfig
    store: DatabaseStore
    gateway: AccountingGateway
    matcher: CustomerMatcher
    manager: AlertManager


async def _init_cli_deps() -> CLIDeps:
    """Initialize shared CLI dependencies.

    Loads config, opens the database and builds the accounting gateway.
    Prints an actionable error and calls sys.exit(1) on failure.
    """
    from posync.accounting.customer_matcher import CustomerMatcher
    from posync.accounting.gateway import build_gateway
    from posync.config import get_config
    from posync.core.errors import ConfigLoadError, ConfigValidationError, DatabaseError
    from posync.db.store import DatabaseStore
    from posync.engine.alerts import AlertManager

    try:
        config = get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        console.print(
            f"[red]Config error:[/red] {e}\n\n"
            "Create config/config.yaml with at least [cyan]our_domain[/cyan] set.\n"
            "See config/config.yaml.example."
        )
        sys.exit(1)

    store = DatabaseStore(config.database.path)
    try:
        await store.initialize()
    except DatabaseError as e:
        console.print(f"[red]Database error:[/red] {e}")
        sys.exit(1)

    gateway = build_gateway(config.accounting)
    matcher = CustomerMatcher(gateway)
    manager = AlertManager(store, gateway, matcher=matcher, config=config.alerts)

    return CLIDeps(config=config, store=store, gateway=gateway, matcher=matcher, manager=manager)


def _run(coro) -> None:
    """Run an async command with the standard interrupt/error handling."""
    try:
        asyncio.run(coro)
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled.[/yellow]")
        sys.exit(130)
    except SystemExit:
        raise
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """PO sync alerts - make sure every purchase order gets a Sales Order."""
    log_level = "DEBUG" if debug else "INFO"
    # Human-readable output for the CLI; JSON for scheduled runs
    configure_logging(log_level=log_level, json_output=False)


@cli.command("validate-config")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file (default: config/config.yaml)",
)
def validate_config(config_path: Path | None) -> None:
    """Validate the configuration file.

    Checks that config.yaml exists and passes Pydantic schema validation.
    Reports specific errors for invalid fields.
    """
    console.print(f"Validating config: [cyan]{config_path or 'config/config.yaml'}[/cyan]")

    is_valid, message = validate_config_file(config_path)

    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    else:
        console.print(f"\n[red]✗[/red] {message}")
        sys.exit(1)


@cli.command("test-connection")
def test_connection() -> None:
    """Check the Conductor credentials by fetching the configured end user."""
    _run(_run_test_connection())


async def _run_test_connection() -> None:
    from posync.accounting.gateway import ConductorGateway

    deps = await _init_cli_deps()
    if not isinstance(deps.gateway, ConductorGateway):
        console.print(
            "[yellow]Accounting not configured.[/yellow] Set CONDUCTOR_API_KEY and "
            "CONDUCTOR_END_USER_ID to enable customer and Sales Order matching."
        )
        sys.exit(1)

    end_user = await asyncio.to_thread(deps.gateway.client.test_connection)
    console.print(
        f"[green]✓[/green] Connected to Conductor as "
        f"[cyan]{end_user.get('companyName') or end_user.get('id', 'unknown')}[/cyan]"
    )


@cli.command("import-emails")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def import_emails(path: Path) -> None:
    """Import emails exported by the mailbox sync (JSON array)."""
    _run(_run_import_emails(path))


async def _run_import_emails(path: Path) -> None:
    from posync.db.store import EmailRecord

    deps = await _init_cli_deps()
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, list):
        raise click.BadParameter("expected a JSON array of emails", param_hint="PATH")

    records = [EmailRecord.from_dict(item) for item in data]
    saved = await deps.store.save_emails_batch(records)
    console.print(f"[green]✓[/green] Imported {saved} emails into {deps.config.database.path}")


@cli.command("trusted-domains")
def trusted_domains() -> None:
    """Show the trusted-domain set and where each domain came from."""
    _run(_run_trusted_domains())


async def _run_trusted_domains() -> None:
    from posync.engine.trusted_domains import get_trusted_domains

    deps = await _init_cli_deps()
    trusted = await get_trusted_domains(deps.store, deps.config.trust, deps.matcher)
    stats = trusted.stats()

    console.print("\n[bold]Trusted Domains[/bold]")
    console.print(f"  Total:            {stats['total_trusted']}")
    console.print(f"  From sent email:  {stats['from_sent_emails']}")
    console.print(f"  Manual allowlist: {stats['from_manual_allowlist']}")
    console.print(f"  From customers:   {stats['from_customers']}")
    for domain in stats["domains"]:
        console.print(f"    {domain}")


@cli.command("threads")
@click.option(
    "--since",
    type=click.DateTime(),
    default=None,
    help="Window start (default: 24 hours ago)",
)
@click.option(
    "--until",
    type=click.DateTime(),
    default=None,
    help="Window end and history cutoff (default: now)",
)
def threads(since: datetime | None, until: datetime | None) -> None:
    """Group the emails in a time window into full threads."""
    _run(_run_threads(since, until))


async def _run_threads(since: datetime | None, until: datetime | None) -> None:
    from posync.engine.threader import (
        fetch_full_thread_emails,
        group_emails_into_threads,
        identify_external_contact,
    )

    deps = await _init_cli_deps()
    threading_config = deps.config.threading
    end = until.replace(tzinfo=UTC) if until else datetime.now(UTC)
    start = since.replace(tzinfo=UTC) if since else end - timedelta(hours=24)

    window = await deps.store.get_emails_in_window(start, end)
    emails = await fetch_full_thread_emails(
        window,
        deps.store,
        cutoff=end,
        generic_subjects=threading_config.generic_subjects,
        min_specific_length=threading_config.min_specific_subject_length,
        max_hops=threading_config.max_reference_hops,
    )
    grouped = group_emails_into_threads(
        emails,
        generic_subjects=threading_config.generic_subjects,
        min_specific_length=threading_config.min_specific_subject_length,
    )

    table = Table(title=f"Threads ({len(window)} emails in window, {len(emails)} with history)")
    table.add_column("Thread key", overflow="fold")
    table.add_column("Subject")
    table.add_column("Contact")
    table.add_column("Emails", justify="right")
    for thread_key, members in grouped.items():
        contact = identify_external_contact(members, deps.config.our_domain)
        table.add_row(
            thread_key[:48],
            (members[0].subject or "")[:60],
            contact.email if contact else "-",
            str(len(members)),
        )
    console.print(table)


@cli.command("run-alerts")
@click.option(
    "--threads",
    "threads_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="JSON file of PO-received threads from the categorizer",
)
def run_alerts(threads_path: Path | None) -> None:
    """Run one full alert cycle and print the results."""
    _run(_run_alert_cycle(threads_path))


async def _load_po_threads(deps: CLIDeps, threads_path: Path | None):
    from posync.engine.alerts import CategorizedThread
    from posync.engine.trusted_domains import flag_untrusted_threads, get_trusted_domains

    if threads_path is None:
        return []

    data = json.loads(threads_path.read_text(encoding="utf-8"))
    if not isinstance(data, list):
        raise click.BadParameter("expected a JSON array of threads", param_hint="--threads")

    po_threads = [CategorizedThread.from_dict(item) for item in data]
    trusted = await get_trusted_domains(deps.store, deps.config.trust, deps.matcher)
    return flag_untrusted_threads(po_threads, trusted)


async def _run_alert_cycle(threads_path: Path | None) -> None:
    deps = await _init_cli_deps()
    po_threads = await _load_po_threads(deps, threads_path)

    result = await deps.manager.run_full_alert_check(po_threads)
    _print_cycle_summary(result)
    if result.open_alerts:
        _print_alerts(result.open_alerts, title="Open Alerts")
    if result.errors:
        sys.exit(1)


def _print_cycle_summary(result: AlertCycleResult) -> None:
    console.print(f"\n[bold]Alert Cycle Summary[/bold] (cycle {result.cycle_id[:8]}...)")
    console.print(f"  Duration:     {result.duration_ms}ms")
    console.print(f"  New alerts:   {len(result.new_alerts)}")
    console.print(f"  Escalated:    {len(result.escalated)}")
    console.print(f"  Resolved:     {len(result.resolved)}")
    console.print(f"  SO to close:  {len(result.so_should_be_closed)}")
    console.print(f"  Open alerts:  {len(result.open_alerts)}")
    if result.degraded_mode:
        console.print("  [yellow]Degraded mode: accounting system unavailable[/yellow]")
    for error in result.errors:
        console.print(f"  [red]Phase failed:[/red] {error}")


def _print_alerts(alerts: list[Alert], title: str) -> None:
    from posync.accounting.models import format_cents

    table = Table(title=title)
    table.add_column("ID", justify="right")
    table.add_column("Type")
    table.add_column("Detected")
    table.add_column("Contact")
    table.add_column("Customer")
    table.add_column("PO")
    table.add_column("PO total", justify="right")
    table.add_column("Sales Order")
    for alert in alerts:
        table.add_row(
            str(alert.id),
            alert.alert_type,
            alert.detected_at.strftime("%Y-%m-%d %H:%M"),
            alert.contact_email or "-",
            alert.qb_customer_name or "-",
            alert.po_number or "-",
            format_cents(alert.po_total),
            alert.sales_order_ref or alert.estimate_ref or "-",
        )
    console.print(table)


@cli.command("watch")
def watch() -> None:
    """Run escalation, auto-resolution and integrity checks on a schedule.

    New PO threads are fed in with run-alerts; this keeps existing alerts
    moving between categorizer runs.
    """
    try:
        asyncio.run(_run_watch())
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped.[/yellow]")
        sys.exit(0)
    except SystemExit:
        raise
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)


async def _run_watch() -> None:
    import signal

    from apscheduler.schedulers.asyncio import AsyncIOScheduler

    from posync.config import get_config, reload_config_if_changed

    deps = await _init_cli_deps()
    configure_logging(
        log_level=deps.config.logging.level, json_output=deps.config.logging.json_output
    )
    interval = deps.config.alerts.check_interval_minutes

    async def run_cycle():
        if reload_config_if_changed():
            console.print("[dim]Configuration reloaded[/dim]")
        deps.manager.update_config(get_config().alerts)
        result = await deps.manager.run_full_alert_check([])
        console.print(
            f"[dim]Cycle {result.cycle_id[:8]}...[/dim] "
            f"escalated={len(result.escalated)} resolved={len(result.resolved)} "
            f"so_to_close={len(result.so_should_be_closed)} open={len(result.open_alerts)} "
            f"({result.duration_ms}ms)"
        )

    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        run_cycle,
        "interval",
        minutes=interval,
        id="alert_cycle",
        max_instances=1,
        coalesce=True,
        next_run_time=datetime.now(),
    )
    scheduler.start()

    console.print(f"Alert checks running every {interval} minutes. Press Ctrl+C to stop.")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, stop_event.set)
    loop.add_signal_handler(signal.SIGTERM, stop_event.set)
    await stop_event.wait()

    scheduler.shutdown(wait=False)


@cli.command("alerts")
@click.option("--actionable", is_flag=True, help="Only alerts never included in a notification")
@click.option(
    "--mark-notified",
    is_flag=True,
    help="Record that the listed alerts were notified",
)
def alerts(actionable: bool, mark_notified: bool) -> None:
    """List open alerts grouped by type."""
    _run(_run_alerts(actionable, mark_notified))


async def _run_alerts(actionable: bool, mark_notified: bool) -> None:
    deps = await _init_cli_deps()

    if actionable:
        listed = await deps.manager.get_actionable_alerts()
        if listed:
            _print_alerts(listed, title="Actionable Alerts")
        else:
            console.print("No actionable alerts.")
    else:
        summary = await deps.manager.get_open_alerts_summary()
        listed = [alert for group in summary.values() for alert in group]
        for alert_type, group in summary.items():
            if group:
                _print_alerts(group, title=f"{alert_type} ({len(group)})")
        if not listed:
            console.print("[green]No open alerts.[/green]")

    if mark_notified and listed:
        count = await deps.manager.mark_alerts_notified([alert.id for alert in listed])
        console.print(f"Marked {count} alerts as notified.")


@cli.command("dismiss")
@click.argument("alert_id", type=int)
def dismiss(alert_id: int) -> None:
    """Dismiss an open alert."""
    _run(_run_dismiss(alert_id))


async def _run_dismiss(alert_id: int) -> None:
    deps = await _init_cli_deps()
    if await deps.manager.dismiss_alert(alert_id):
        console.print(f"[green]✓[/green] Alert {alert_id} dismissed")
    else:
        console.print(f"[yellow]Alert {alert_id} is not open (or does not exist)[/yellow]")
        sys.exit(1)


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
