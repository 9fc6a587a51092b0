"""Typer-based CLI for Budgetr."""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .app import BudgetrApp, open_app
from .config import BudgetrConfig
from .errors import BudgetrError
from .ledger import TimeLedger
from .models.ledger import Meter

app = typer.Typer(
    name="budgetr",
    help="Budgetr - time budget meters with cloud backup",
    add_completion=False,
)
meters_app = typer.Typer(help="Meter registry commands")
events_app = typer.Typer(help="Event history commands")
sync_app = typer.Typer(help="Backup and auto-sync commands")
app.add_typer(meters_app, name="meters")
app.add_typer(events_app, name="events")
app.add_typer(sync_app, name="sync")

console = Console()

HOME_HELP = "Data directory (default: BUDGETR_HOME env or ~/.budgetr)"
WATCH_INTERVAL_SECONDS = 1.0


@app.callback()
def main(
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
):
    """Budgetr command line."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


def _run(home: Optional[str], action):
    """Open the app, run ``action(app)`` and turn config and Budgetr errors into exit code 1."""
    try:
        config = BudgetrConfig.from_env(cli_home=home)
    except ValueError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1)

    async def runner():
        budgetr = await open_app(config)
        return await action(budgetr)

    try:
        return asyncio.run(runner())
    except BudgetrError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1)


def _format_hours(hours: float) -> str:
    sign = "-" if hours < 0 else ""
    total_minutes = int(round(abs(hours) * 60))
    return f"{sign}{total_minutes // 60}h {total_minutes % 60:02d}m"


def _resolve_meter(ledger: TimeLedger, ref: str) -> Meter:
    """Find a meter by id, exact name (case-insensitive) or factor."""
    try:
        meter = ledger.get_meter(uuid.UUID(ref))
        if meter is not None:
            return meter
    except ValueError:
        pass
    for meter in ledger.meters:
        if meter.name.lower() == ref.lower():
            return meter
    try:
        factor = float(ref.rstrip("xX"))
    except ValueError:
        factor = None
    if factor is not None:
        for meter in ledger.meters:
            if abs(meter.factor - factor) < 0.001:
                return meter
    console.print(f"[red]Error: No meter matches '{ref}'[/red]")
    raise typer.Exit(code=1)


@app.command()
def status(
    home: str = typer.Option(None, "--home", help=HOME_HELP),
):
    """Show the current balance, active meter and sync state."""

    async def action(budgetr: BudgetrApp):
        ledger = budgetr.ledger
        balance = ledger.get_current_balance_hours()
        color = "green" if balance >= 0 else "red"
        console.print(f"[bold]Balance:[/bold] [{color}]{_format_hours(balance)}[/{color}]")

        active = ledger.get_active_event()
        if active is None:
            console.print("[dim]No meter running[/dim]")
        else:
            elapsed = (ledger.clock() - active.start_time).total_seconds() / 3600
            console.print(
                f"[bold]Running:[/bold] {active.meter_name} ({active.factor:+g}x) "
                f"for {_format_hours(elapsed)}"
            )

        enabled = await budgetr.storage.get_item("budgetr_autosync_enabled") == "true"
        last_sync = await budgetr.storage.get_item("budgetr_autosync_lastsync")
        console.print(
            f"[dim]Auto-sync:[/dim] {'on' if enabled else 'off'} via {budgetr.remote.name}"
            f"  [dim]Last sync:[/dim] {last_sync or '-'}"
        )

    _run(home, action)


@app.command()
def start(
    meter: str = typer.Argument(..., help="Meter name, id or factor (e.g. +1x)"),
    home: str = typer.Option(None, "--home", help=HOME_HELP),
):
    """Start a meter, stopping the one currently running."""

    async def action(budgetr: BudgetrApp):
        target = _resolve_meter(budgetr.ledger, meter)
        await budgetr.ledger.activate_meter(target.id)
        console.print(f"[green]Started[/green] {target.name} ({target.factor:+g}x)")

    _run(home, action)


@app.command()
def stop(
    home: str = typer.Option(None, "--home", help=HOME_HELP),
):
    """Stop the running meter."""

    async def action(budgetr: BudgetrApp):
        active = budgetr.ledger.get_active_event()
        if active is None:
            console.print("[dim]No meter running[/dim]")
            return
        await budgetr.ledger.deactivate_meter()
        console.print(f"[green]Stopped[/green] {active.meter_name}")

    _run(home, action)


@app.command()
def timeline(
    hours: float = typer.Option(None, "--hours", help="Window length in hours (default: saved period)"),
    save: bool = typer.Option(False, "--save", help="Remember --hours as the default period"),
    home: str = typer.Option(None, "--home", help=HOME_HELP),
):
    """Print the balance timeline for a recent window."""

    async def action(budgetr: BudgetrApp):
        ledger = budgetr.ledger
        period = timedelta(hours=hours) if hours else None
        if period is not None and save:
            await ledger.set_timeline_period(period)

        points = ledger.get_timeline_data(period)
        table = Table(title=f"Balance over the last {(period or ledger.timeline_period).total_seconds() / 3600:g}h")
        table.add_column("Time (UTC)", style="cyan", no_wrap=True)
        table.add_column("Balance", justify="right")
        for point in points:
            table.add_row(point.timestamp.strftime("%Y-%m-%d %H:%M:%S"), _format_hours(point.balance_hours))
        console.print(table)

    _run(home, action)


@app.command("export")
def export_cmd(
    output: Path = typer.Option(None, "--output", "-o", help="Write to file instead of stdout"),
    home: str = typer.Option(None, "--home", help=HOME_HELP),
):
    """Export meters and events as JSON."""

    async def action(budgetr: BudgetrApp):
        data = budgetr.ledger.export_data()
        if output is None:
            typer.echo(data)
            return
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(data, encoding="utf-8")
        console.print(f"[green]+[/green] Exported to {output}")

    _run(home, action)


@app.command("import")
def import_cmd(
    file: Path = typer.Argument(..., help="Export file to import"),
    home: str = typer.Option(None, "--home", help=HOME_HELP),
):
    """Replace all meters and events with the contents of an export file."""
    if not file.exists():
        console.print(f"[red]Error: File not found: {file}[/red]")
        raise typer.Exit(code=1)

    async def action(budgetr: BudgetrApp):
        await budgetr.ledger.import_data(file.read_text(encoding="utf-8"))
        ledger = budgetr.ledger
        console.print(f"[green]Imported[/green] {len(ledger.meters)} meter(s), {len(ledger.events)} event(s)")

    _run(home, action)


# ------------------------------------------------------------------ meters


@meters_app.command("list")
def meters_list(
    home: str = typer.Option(None, "--home", help=HOME_HELP),
):
    """List meters in display order."""

    async def action(budgetr: BudgetrApp):
        active = budgetr.ledger.get_active_event()
        table = Table(title="Meters")
        table.add_column("#", justify="right", style="dim")
        table.add_column("Name", style="magenta")
        table.add_column("Factor", justify="right")
        table.add_column("ID", style="dim")
        for meter in budgetr.ledger.meters:
            running = active is not None and active.meter_name == meter.name
            name = f"{meter.name} [green](running)[/green]" if running else meter.name
            table.add_row(str(meter.display_order), name, f"{meter.factor:+g}x", str(meter.id)[:8])
        console.print(table)

    _run(home, action)


@meters_app.command("add")
def meters_add(
    name: str = typer.Argument(..., help="Meter name (1-40 characters)"),
    factor: float = typer.Argument(..., help="Rate multiplier between -10 and 10"),
    home: str = typer.Option(None, "--home", help=HOME_HELP),
):
    """Add a meter."""

    async def action(budgetr: BudgetrApp):
        meter = await budgetr.ledger.add_meter(name, factor)
        console.print(f"[green]+[/green] Added {meter.name} ({meter.factor:+g}x)")

    _run(home, action)


@meters_app.command("rename")
def meters_rename(
    meter: str = typer.Argument(..., help="Meter name, id or factor"),
    new_name: str = typer.Argument(..., help="New name (1-40 characters)"),
    home: str = typer.Option(None, "--home", help=HOME_HELP),
):
    """Rename a meter; past events keep their recorded name."""

    async def action(budgetr: BudgetrApp):
        target = _resolve_meter(budgetr.ledger, meter)
        await budgetr.ledger.rename_meter(target.id, new_name)
        console.print(f"[green]Renamed[/green] to {new_name.strip()}")

    _run(home, action)


@meters_app.command("delete")
def meters_delete(
    meter: str = typer.Argument(..., help="Meter name, id or factor"),
    home: str = typer.Option(None, "--home", help=HOME_HELP),
):
    """Delete a meter that is not running."""

    async def action(budgetr: BudgetrApp):
        target = _resolve_meter(budgetr.ledger, meter)
        await budgetr.ledger.delete_meter(target.id)
        console.print(f"[green]Deleted[/green] {target.name}")

    _run(home, action)


# ------------------------------------------------------------------ events


@events_app.command("list")
def events_list(
    n: int = typer.Option(20, "--n", help="Number of recent events to display"),
    home: str = typer.Option(None, "--home", help=HOME_HELP),
):
    """Show the most recent events."""

    async def action(budgetr: BudgetrApp):
        ledger = budgetr.ledger
        events = ledger.events[-n:]
        if not events:
            console.print("[dim]No events recorded[/dim]")
            return
        now = ledger.clock()
        table = Table(title=f"Last {len(events)} Event(s)")
        table.add_column("ID", style="dim", no_wrap=True)
        table.add_column("Start (UTC)", style="cyan", no_wrap=True)
        table.add_column("End (UTC)", style="cyan", no_wrap=True)
        table.add_column("Meter", style="magenta")
        table.add_column("Contribution", justify="right")
        for event in events:
            end = event.end_time.strftime("%Y-%m-%d %H:%M:%S") if event.end_time else "[green]running[/green]"
            table.add_row(
                str(event.id),
                event.start_time.strftime("%Y-%m-%d %H:%M:%S"),
                end,
                f"{event.meter_name} ({event.factor:+g}x)",
                _format_hours(event.contribution_hours(now)),
            )
        console.print(table)

    _run(home, action)


@events_app.command("delete")
def events_delete(
    event_id: str = typer.Argument(..., help="Event id (see 'events list')"),
    home: str = typer.Option(None, "--home", help=HOME_HELP),
):
    """Delete an event from the history."""
    try:
        parsed = uuid.UUID(event_id)
    except ValueError:
        console.print(f"[red]Error: Not an event id: {event_id}[/red]")
        raise typer.Exit(code=1)

    async def action(budgetr: BudgetrApp):
        before = len(budgetr.ledger.events)
        await budgetr.ledger.delete_event(parsed)
        if len(budgetr.ledger.events) == before:
            console.print(f"[yellow]No event with id {event_id}[/yellow]")
        else:
            console.print("[green]Deleted[/green] event")

    _run(home, action)


# ------------------------------------------------------------------ sync


@sync_app.command("login")
def sync_login(
    home: str = typer.Option(None, "--home", help=HOME_HELP),
):
    """Sign in to the configured backup provider."""

    async def action(budgetr: BudgetrApp):
        if await budgetr.remote.authenticate():
            console.print(f"[green]Signed in[/green] to {budgetr.remote.name}")
        else:
            console.print(f"[red]Error: Sign-in to {budgetr.remote.name} failed[/red]")
            raise typer.Exit(code=1)

    _run(home, action)


@sync_app.command("logout")
def sync_logout(
    home: str = typer.Option(None, "--home", help=HOME_HELP),
):
    """Sign out of the backup provider and turn auto-sync off."""

    async def action(budgetr: BudgetrApp):
        await budgetr.storage.set_item("budgetr_autosync_enabled", "false")
        await budgetr.remote.sign_out()
        console.print(f"[green]Signed out[/green] of {budgetr.remote.name}")

    _run(home, action)


@sync_app.command("status")
def sync_status(
    home: str = typer.Option(None, "--home", help=HOME_HELP),
):
    """Show provider, session and auto-sync details."""

    async def action(budgetr: BudgetrApp):
        remote = budgetr.remote
        enabled = await budgetr.storage.get_item("budgetr_autosync_enabled") == "true"
        last_sync = await budgetr.storage.get_item("budgetr_autosync_lastsync")
        signed_in = await remote.is_authenticated()

        table = Table(title="Sync")
        table.add_column("Setting", style="cyan")
        table.add_column("Value")
        table.add_row("Provider", remote.name)
        table.add_row("Configured", "yes" if remote.is_configured else "no")
        table.add_row("Signed in", "yes" if signed_in else "no")
        table.add_row("Auto-sync", "on" if enabled else "off")
        table.add_row("Last sync", last_sync or "-")
        if signed_in:
            modified = await remote.get_last_modified_time()
            table.add_row("Remote backup", modified.isoformat() if modified else "none")
        console.print(table)

    _run(home, action)


@sync_app.command("push")
def sync_push(
    home: str = typer.Option(None, "--home", help=HOME_HELP),
):
    """Upload the current ledger to the backup provider now."""

    async def action(budgetr: BudgetrApp):
        await budgetr.sync.sync_now()
        console.print(f"[green]Backup uploaded[/green] to {budgetr.remote.name}")

    _run(home, action)


@sync_app.command("pull")
def sync_pull(
    home: str = typer.Option(None, "--home", help=HOME_HELP),
):
    """Replace local data with the backup from the provider."""

    async def action(budgetr: BudgetrApp):
        if await budgetr.sync.restore_now():
            console.print(f"[green]Restored[/green] backup from {budgetr.remote.name}")
        else:
            console.print("[yellow]No backup found[/yellow]")

    _run(home, action)


@sync_app.command("enable")
def sync_enable(
    home: str = typer.Option(None, "--home", help=HOME_HELP),
):
    """Turn auto-sync on (takes effect while 'sync watch' runs)."""

    async def action(budgetr: BudgetrApp):
        await budgetr.sync.enable()
        await budgetr.sync.close()
        console.print("[green]Auto-sync enabled[/green]")

    _run(home, action)


@sync_app.command("disable")
def sync_disable(
    home: str = typer.Option(None, "--home", help=HOME_HELP),
):
    """Turn auto-sync off."""

    async def action(budgetr: BudgetrApp):
        await budgetr.storage.set_item("budgetr_autosync_enabled", "false")
        console.print("[green]Auto-sync disabled[/green]")

    _run(home, action)


@sync_app.command("watch")
def sync_watch(
    home: str = typer.Option(None, "--home", help=HOME_HELP),
):
    """Run auto-sync in the foreground until interrupted."""

    async def action(budgetr: BudgetrApp):
        engine = budgetr.sync
        if not await engine.try_restore_state():
            await engine.enable()
        engine.on_status_changed(
            lambda s: console.print(f"[dim]{datetime.now(timezone.utc):%H:%M:%S}[/dim] sync {s.value}")
        )
        console.print(f"[green]Watching[/green] {budgetr.remote.name} (Ctrl+C to stop)")
        try:
            while engine.is_enabled:
                await asyncio.sleep(WATCH_INTERVAL_SECONDS)
                # Other budgetr commands edit state.json directly
                await budgetr.reload_if_changed()
        finally:
            await engine.close()
        console.print("[yellow]Auto-sync stopped[/yellow]")

    try:
        _run(home, action)
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/yellow]")


if __name__ == "__main__":
    app()
