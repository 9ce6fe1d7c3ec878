"""
Main CLI application using Typer.
"""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Annotated, Iterator, List, Optional

import pendulum
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from ..adapters.calendar_sync import HttpCalendarSync
from ..adapters.json_repository import JsonFileRepository
from ..adapters.notifications import LoggingNotifier
from ..config import AppConfig, get_default_config_path
from ..domain.exceptions import InfrastructureError, SchedulingError
from ..domain.models import (
    AvailabilityKind,
    Booking,
    BookingResult,
    BookingStatus,
    RecurrenceRule,
    TimeRange,
)
from ..services.scheduling_engine import SchedulingEngine

app = typer.Typer(
    name="minderbook",
    help="Manage childminder availability and bookings",
    add_completion=False,
)

console = Console()

WEEKDAYS = {"MO": 0, "TU": 1, "WE": 2, "TH": 3, "FR": 4, "SA": 5, "SU": 6}

STATUS_STYLES = {
    "PENDING": "yellow",
    "CONFIRMED": "green",
    "CANCELLED": "red",
    "LATE_CANCELLED": "bold red",
    "COMPLETED": "cyan",
    "available": "green",
    "unavailable": "red",
    "pending": "yellow",
    "confirmed": "green",
    "cancelled": "dim",
    "completed": "cyan",
}


class State:
    config_file: Optional[Path] = None
    _engine: Optional[SchedulingEngine] = None
    _config: Optional[AppConfig] = None

    @property
    def config(self) -> AppConfig:
        if self._config is None:
            self._config = _load_config(self.config_file)
        return self._config

    @property
    def engine(self) -> SchedulingEngine:
        if self._engine is None:
            self._engine = build_engine(self.config)
        return self._engine


def _load_config(config_file: Optional[Path]) -> AppConfig:
    if config_file is not None:
        return AppConfig.load_from_yaml(config_file)

    default_path = get_default_config_path()
    if default_path.exists():
        return AppConfig.load_from_yaml(default_path)
    return AppConfig()


def build_engine(config: AppConfig) -> SchedulingEngine:
    """Wire the engine to the file repository and configured collaborators."""
    calendar = None
    if config.calendar_sync is not None:
        calendar = HttpCalendarSync(
            base_url=config.calendar_sync.base_url,
            calendar_id=config.calendar_sync.calendar_id,
            access_token=config.calendar_sync.access_token,
            timezone=config.timezone,
            timeout_seconds=config.calendar_sync.timeout_seconds,
        )

    return SchedulingEngine(
        JsonFileRepository(config.data_file, timezone=config.timezone),
        notifier=LoggingNotifier(),
        calendar=calendar,
        policy=config.build_policy(),
    )


@contextmanager
def _handle_errors() -> Iterator[None]:
    """Turn expected failures into a readable message and exit code 1."""
    try:
        yield
    except SchedulingError as e:
        console.print(f"[bold red]Error ({e.code}):[/bold red] {e.message}")
        for key, value in e.details.items():
            console.print(f"   {key}: {value}")
        raise typer.Exit(1)
    except (InfrastructureError, FileNotFoundError, ValueError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)


def _parse_range(tz: str, date: str, start: str, end: str) -> TimeRange:
    try:
        start_dt = pendulum.from_format(f"{date} {start}", "YYYY-MM-DD HH:mm", tz=tz)
        end_dt = pendulum.from_format(f"{date} {end}", "YYYY-MM-DD HH:mm", tz=tz)
    except ValueError as e:
        raise typer.BadParameter(f"Could not parse date/time: {e}")

    # An end at or before the start means the range runs past midnight.
    if end_dt <= start_dt:
        end_dt = end_dt.add(days=1)
    return TimeRange(start=start_dt, end=end_dt)


def _parse_days(value: str) -> frozenset:
    days = set()
    for item in value.split(","):
        item = item.strip().upper()
        if not item:
            continue
        if item.isdigit():
            days.add(int(item))
        elif item[:2] in WEEKDAYS:
            days.add(WEEKDAYS[item[:2]])
        else:
            raise typer.BadParameter(f"Unknown weekday '{item}'. Use MO,TU,... or 0-6.")
    return frozenset(days)


def _parse_rule(days: Optional[str], until: Optional[str]) -> Optional[RecurrenceRule]:
    if days is None and until is None:
        return None
    if days is None or until is None:
        raise typer.BadParameter("--days and --until must be given together")
    try:
        horizon = pendulum.from_format(until, "YYYY-MM-DD").date()
    except ValueError as e:
        raise typer.BadParameter(f"Could not parse --until: {e}")
    return RecurrenceRule(days_of_week=_parse_days(days), horizon_end=horizon)


def _style(label: str) -> str:
    style = STATUS_STYLES.get(label, "white")
    return f"[{style}]{label}[/{style}]"


def _bookings_table(bookings: List[Booking], title: str) -> Table:
    table = Table(title=title)
    table.add_column("ID", style="dim")
    table.add_column("Zeitraum")
    table.add_column("Status")
    table.add_column("Consumer")
    table.add_column("Provider")
    table.add_column("Kinder")
    for booking in bookings:
        flags = " ⚡" if booking.is_emergency else ""
        table.add_row(
            booking.id,
            f"{booking.range}{flags}",
            _style(booking.status.value),
            booking.consumer_id,
            booking.provider_id,
            ", ".join(booking.children),
        )
    return table


def _print_result(result: BookingResult) -> None:
    if result.bookings:
        console.print(_bookings_table(result.bookings, "Angefragte Buchungen"))
    for rejection in result.rejections:
        console.print(
            f"[red]✗ {rejection.date.isoformat()}[/red] "
            f"({rejection.error.code}): {rejection.error.message}"
        )
    if result.is_partial:
        console.print(
            f"[yellow]⚠  {len(result.bookings)} gebucht, "
            f"{len(result.rejections)} abgelehnt[/yellow]"
        )


@app.callback()
def main(
    ctx: typer.Context,
    config_file: Annotated[Optional[Path], typer.Option("--config", "-c", help="Path to config file. Defaults to ./minderbook.yaml")] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable debug logging.")] = False,
):
    """Booking and availability scheduling for childminders."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )
    state = State()
    state.config_file = config_file
    ctx.obj = state


@app.command()
def declare(
    ctx: typer.Context,
    provider: Annotated[str, typer.Argument(help="Provider (childminder) id")],
    date: Annotated[str, typer.Option("--date", help="Date (YYYY-MM-DD)")],
    start: Annotated[str, typer.Option("--start", help="Start time (HH:mm)")],
    end: Annotated[str, typer.Option("--end", help="End time (HH:mm)")],
    kind: Annotated[AvailabilityKind, typer.Option("--kind", case_sensitive=False, help="AVAILABLE or UNAVAILABLE")] = AvailabilityKind.AVAILABLE,
    days: Annotated[Optional[str], typer.Option("--days", help="Repeat weekly on these days, e.g. MO,WE,FR")] = None,
    until: Annotated[Optional[str], typer.Option("--until", help="Last date of the recurrence (YYYY-MM-DD)")] = None,
    title: Annotated[Optional[str], typer.Option("--title", help="Label shown in calendars")] = None,
):
    """Declare an availability block."""
    state: State = ctx.obj
    with _handle_errors():
        time_range = _parse_range(state.config.timezone, date, start, end)
        block_id = state.engine.declare_availability(
            provider, time_range, kind, recurrence_rule=_parse_rule(days, until), title=title
        )
    console.print(f"[green]✓ {kind.value} {time_range} eingetragen[/green] (id: {block_id})")


@app.command("update-block")
def update_block(
    ctx: typer.Context,
    block_id: Annotated[str, typer.Argument(help="Availability block id")],
    actor: Annotated[str, typer.Argument(help="Provider id of the owner")],
    date: Annotated[str, typer.Option("--date", help="Date (YYYY-MM-DD)")],
    start: Annotated[str, typer.Option("--start", help="Start time (HH:mm)")],
    end: Annotated[str, typer.Option("--end", help="End time (HH:mm)")],
    kind: Annotated[AvailabilityKind, typer.Option("--kind", case_sensitive=False)] = AvailabilityKind.AVAILABLE,
    days: Annotated[Optional[str], typer.Option("--days")] = None,
    until: Annotated[Optional[str], typer.Option("--until")] = None,
    title: Annotated[Optional[str], typer.Option("--title")] = None,
):
    """Edit an availability block."""
    state: State = ctx.obj
    with _handle_errors():
        time_range = _parse_range(state.config.timezone, date, start, end)
        block = state.engine.update_availability(
            block_id, actor, time_range, kind, recurrence_rule=_parse_rule(days, until), title=title
        )
    console.print(f"[green]✓ Block {block.id} aktualisiert: {block.kind.value} {block.range}[/green]")


@app.command()
def retract(
    ctx: typer.Context,
    block_id: Annotated[str, typer.Argument(help="Availability block id")],
    actor: Annotated[str, typer.Argument(help="Provider id of the owner")],
):
    """Remove an availability block."""
    state: State = ctx.obj
    with _handle_errors():
        state.engine.retract_availability(block_id, actor)
    console.print(f"[green]✓ Block {block_id} entfernt[/green]")


@app.command()
def request(
    ctx: typer.Context,
    consumer: Annotated[str, typer.Argument(help="Consumer (parent) id")],
    provider: Annotated[str, typer.Argument(help="Provider (childminder) id")],
    date: Annotated[str, typer.Option("--date", help="Date (YYYY-MM-DD)")],
    start: Annotated[str, typer.Option("--start", help="Start time (HH:mm)")],
    end: Annotated[str, typer.Option("--end", help="End time (HH:mm)")],
    child: Annotated[List[str], typer.Option("--child", help="Child id (repeatable)")],
    emergency: Annotated[bool, typer.Option("--emergency", help="Emergency booking within the next hours")] = False,
    days: Annotated[Optional[str], typer.Option("--days", help="Repeat weekly on these days, e.g. MO,WE")] = None,
    until: Annotated[Optional[str], typer.Option("--until", help="Last date of the recurrence (YYYY-MM-DD)")] = None,
):
    """Request a booking, optionally recurring."""
    state: State = ctx.obj
    with _handle_errors():
        time_range = _parse_range(state.config.timezone, date, start, end)
        result = state.engine.request_booking(
            consumer,
            provider,
            time_range,
            children=child,
            is_emergency=emergency,
            recurrence_rule=_parse_rule(days, until),
        )
    _print_result(result)
    if not result.bookings:
        raise typer.Exit(1)


@app.command()
def respond(
    ctx: typer.Context,
    booking_id: Annotated[str, typer.Argument(help="Booking id")],
    actor: Annotated[str, typer.Argument(help="Provider id")],
    action: Annotated[str, typer.Argument(help="accept or decline")],
    note: Annotated[Optional[str], typer.Option("--note", help="Reason (required to decline)")] = None,
):
    """Accept or decline a pending booking."""
    state: State = ctx.obj
    with _handle_errors():
        booking = state.engine.respond_to_booking(booking_id, actor, action.lower(), note)
    console.print(f"Buchung {booking.id}: {_style(booking.status.value)}")


@app.command()
def cancel(
    ctx: typer.Context,
    booking_id: Annotated[str, typer.Argument(help="Booking id")],
    actor: Annotated[str, typer.Argument(help="Consumer or provider id")],
    note: Annotated[Optional[str], typer.Option("--note", help="Cancellation note")] = None,
):
    """Cancel a booking."""
    state: State = ctx.obj
    with _handle_errors():
        booking = state.engine.cancel_booking(booking_id, actor, note)
    console.print(f"Buchung {booking.id}: {_style(booking.status.value)}")
    if booking.status is BookingStatus.LATE_CANCELLED:
        console.print("[yellow]⚠  Kurzfristige Stornierung (weniger als 24 Stunden vor Beginn)[/yellow]")


@app.command()
def sweep(ctx: typer.Context):
    """Mark confirmed bookings that have ended as completed."""
    state: State = ctx.obj
    with _handle_errors():
        count = state.engine.sweep_completions()
    console.print(f"[green]✓ {count} Buchung(en) abgeschlossen[/green]")


@app.command()
def calendar(
    ctx: typer.Context,
    provider: Annotated[str, typer.Argument(help="Provider (childminder) id")],
    start: Annotated[Optional[str], typer.Option("--start", help="Start date (YYYY-MM-DD)")] = None,
    end: Annotated[Optional[str], typer.Option("--end", help="End date (YYYY-MM-DD)")] = None,
):
    """Show a provider's calendar."""
    state: State = ctx.obj
    with _handle_errors():
        tz = state.config.timezone
        window_start = (
            pendulum.from_format(start, "YYYY-MM-DD", tz=tz) if start else pendulum.now(tz)
        ).start_of("day")
        window_end = (
            pendulum.from_format(end, "YYYY-MM-DD", tz=tz) if end else window_start.add(days=6)
        ).end_of("day")
        entries = state.engine.calendar_events(provider, TimeRange(start=window_start, end=window_end))

    if not entries:
        console.print(Panel("[yellow]Keine Einträge im Zeitraum[/yellow]", title=provider))
        return

    table = Table(title=f"Kalender {provider}")
    table.add_column("Zeitraum")
    table.add_column("Art")
    table.add_column("Titel")
    table.add_column("ID", style="dim")
    for entry in entries:
        table.add_row(str(entry.range), _style(entry.category), entry.title, entry.booking_id or entry.block_id)
    console.print(table)


@app.command()
def bookings(
    ctx: typer.Context,
    user: Annotated[str, typer.Argument(help="Consumer or provider id")],
    status: Annotated[Optional[List[BookingStatus]], typer.Option("--status", case_sensitive=False, help="Filter by status (repeatable)")] = None,
):
    """List a user's bookings."""
    state: State = ctx.obj
    with _handle_errors():
        found = state.engine.list_bookings(user, status or None)
    if not found:
        console.print("[yellow]Keine Buchungen gefunden[/yellow]")
        return
    console.print(_bookings_table(found, f"Buchungen von {user}"))


if __name__ == "__main__":
    app()
