"""
Main CLI application using Typer.
"""

import json
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Annotated, Iterator, Optional, Tuple

import pendulum
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from ..adapters.config_store import ConfigPolicyStore
from ..bootstrap import build_booking_service
from ..config import AppConfig, get_default_config_path
from ..domain.exceptions import BookingError, ConfigurationError
from ..domain.models import Booking, BookingQuery, BookingRequest, BookingStatus, ClientInfo
from ..services.booking_service import BookingService

app = typer.Typer(
    name="slotbooker",
    help="Check availability and book appointments with service providers",
    add_completion=False
)

console = Console()

ConfigOption = Annotated[
    Optional[Path],
    typer.Option("--config", "-c", help="Path to config file. Defaults to ./config.yaml"),
]
JsonOption = Annotated[bool, typer.Option("--json", help="Print machine-readable JSON")]


@app.callback()
def main(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Show debug logging")] = False,
):
    """
    Appointment booking engine: availability, admission and booking lifecycle.
    """
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        )


@contextmanager
def _reporting_errors() -> Iterator[None]:
    """Render application errors and exit non-zero; configuration problems exit 2."""
    try:
        yield
    except (FileNotFoundError, ConfigurationError) as e:
        console.print(f"[bold red]Configuration error:[/bold red] {escape(str(e))}")
        raise typer.Exit(2)
    except BookingError as e:
        console.print(f"[bold red]Error:[/bold red] {escape(str(e))}")
        raise typer.Exit(1)


def _load(config_file: Optional[Path]) -> Tuple[AppConfig, BookingService]:
    config_path = config_file or get_default_config_path()
    config = AppConfig.load_from_yaml(config_path)
    return config, build_booking_service(config)


def _parse_instant(value: str, tz: str, label: str) -> pendulum.DateTime:
    try:
        parsed = pendulum.parse(value, tz=tz)
    except ValueError as e:
        console.print(f"[bold red]Error:[/bold red] Invalid {label} '{escape(value)}': {escape(str(e))}")
        raise typer.Exit(1)
    if not isinstance(parsed, pendulum.DateTime):
        console.print(f"[bold red]Error:[/bold red] {label} must be a date and time, got '{escape(value)}'")
        raise typer.Exit(1)
    return parsed


def _parse_date(value: Optional[str], tz: str, label: str):
    if value is None:
        return None
    try:
        return pendulum.from_format(value, "YYYY-MM-DD", tz=tz).date()
    except ValueError as e:
        console.print(f"[bold red]Error:[/bold red] Invalid {label} '{escape(value)}': {escape(str(e))}")
        raise typer.Exit(1)


def _print_booking(booking: Booking, tz: str, title: str) -> None:
    start = booking.start.in_timezone(tz)
    console.print(Panel.fit(
        f"[bold]Code:[/bold] {booking.confirmation_code}\n"
        f"[bold]Id:[/bold] {booking.booking_id}\n"
        f"[bold]When:[/bold] {start.format('dddd, YYYY-MM-DD h:mm A')} "
        f"({booking.service_duration} min)\n"
        f"[bold]Service:[/bold] {escape(booking.service_name)} with {escape(booking.provider_name)}\n"
        f"[bold]Client:[/bold] {escape(booking.client.name)} <{escape(booking.client.email)}>\n"
        f"[bold]Status:[/bold] {booking.status.value}",
        title=title
    ))


@app.command()
def providers(config_file: ConfigOption = None):
    """
    List active providers and the services they offer.
    """
    with _reporting_errors():
        config = AppConfig.load_from_yaml(config_file or get_default_config_path())
        store = ConfigPolicyStore(config)

        table = Table(title="Providers", show_header=True, header_style="bold cyan")
        table.add_column("Provider", style="bold yellow")
        table.add_column("Name")
        table.add_column("Service")
        table.add_column("Duration", justify="right")
        table.add_column("Price", justify="right")

        for provider in store.list_providers():
            for offering in store.offerings_for(provider.provider_id) or [None]:
                if offering is None:
                    table.add_row(provider.provider_id, provider.name, "-", "-", "-")
                    continue
                table.add_row(
                    provider.provider_id,
                    provider.name,
                    f"{offering.service_name} ({offering.service_id})",
                    f"{offering.duration_minutes} min",
                    str(offering.price),
                )

        console.print()
        console.print(table)
        console.print()


@app.command()
def dates(
    provider_id: Annotated[str, typer.Argument(help="Provider id")],
    service_id: Annotated[str, typer.Argument(help="Service id")],
    month: Annotated[Optional[str], typer.Option("--month", "-m", help="Month (YYYY-MM)")] = None,
    start: Annotated[Optional[str], typer.Option("--start", help="First date (YYYY-MM-DD)")] = None,
    end: Annotated[Optional[str], typer.Option("--end", help="Last date (YYYY-MM-DD)")] = None,
    config_file: ConfigOption = None,
):
    """
    List dates that may have open slots.
    """
    with _reporting_errors():
        config, service = _load(config_file)
        tz = config.timezone

        try:
            available = service.list_available_dates(
                provider_id,
                service_id,
                now=pendulum.now(tz),
                month=month,
                start_date=_parse_date(start, tz, "start date"),
                end_date=_parse_date(end, tz, "end date"),
            )
        except ValueError as e:
            console.print(f"[bold red]Error:[/bold red] {escape(str(e))}")
            raise typer.Exit(1)

        if not available:
            console.print("[yellow]No available dates in this range.[/yellow]")
            return

        console.print(f"[bold green]{len(available)} available date(s):[/bold green]")
        for day in available:
            console.print(f"  {day.strftime('%A, %Y-%m-%d')}")


@app.command()
def slots(
    provider_id: Annotated[str, typer.Argument(help="Provider id")],
    service_id: Annotated[str, typer.Argument(help="Service id")],
    day: Annotated[str, typer.Argument(help="Date (YYYY-MM-DD)")],
    as_json: JsonOption = False,
    config_file: ConfigOption = None,
):
    """
    Show bookable slots of one date.
    """
    with _reporting_errors():
        config, service = _load(config_file)
        tz = config.timezone

        found = service.list_slots(
            provider_id, service_id, _parse_date(day, tz, "date"), now=pendulum.now(tz)
        )

        if as_json:
            typer.echo(json.dumps([slot.to_dict(tz) for slot in found], indent=2))
            return

        if not found:
            console.print("[yellow]No open slots on this date.[/yellow]")
            return

        console.print(f"[bold green]{len(found)} open slot(s):[/bold green]\n")
        for slot in found:
            console.print(f"  {slot.display(tz):>8}  {slot.format_display(tz)}")


@app.command()
def book(
    provider_id: Annotated[str, typer.Argument(help="Provider id")],
    service_id: Annotated[str, typer.Argument(help="Service id")],
    start: Annotated[str, typer.Argument(help="Start, e.g. '2026-11-02 10:00' (business timezone)")],
    name: Annotated[str, typer.Option("--name", help="Client name")],
    email: Annotated[str, typer.Option("--email", help="Client email")],
    phone: Annotated[Optional[str], typer.Option("--phone", help="Client phone")] = None,
    notes: Annotated[Optional[str], typer.Option("--notes", help="Notes for the provider")] = None,
    as_json: JsonOption = False,
    config_file: ConfigOption = None,
):
    """
    Book an appointment.

    Examples:

        slotbooker book ana cut "2026-11-02 10:00" --name "Jo Doe" --email jo@example.com
    """
    with _reporting_errors():
        config, service = _load(config_file)
        tz = config.timezone

        try:
            client = ClientInfo(name=name, email=email, phone=phone, notes=notes)
        except ValueError as e:
            console.print(f"[bold red]Error:[/bold red] {escape(str(e))}")
            raise typer.Exit(1)

        booking = service.submit_booking(
            BookingRequest(
                provider_id=provider_id,
                service_id=service_id,
                start=_parse_instant(start, tz, "start"),
                client=client,
            ),
            now=pendulum.now(tz),
        )

        if as_json:
            typer.echo(json.dumps(booking.to_dict(), indent=2))
            return

        _print_booking(booking, tz, "Booking confirmed")


@app.command()
def cancel(
    booking_id: Annotated[str, typer.Argument(help="Booking id")],
    code: Annotated[Optional[str], typer.Option("--code", help="Confirmation code (client cancellation)")] = None,
    reason: Annotated[Optional[str], typer.Option("--reason", help="Cancellation reason")] = None,
    actor: Annotated[str, typer.Option("--by", help="Who cancels")] = "client",
    config_file: ConfigOption = None,
):
    """
    Cancel a booking; the slot becomes bookable again.
    """
    with _reporting_errors():
        config, service = _load(config_file)
        booking = service.cancel_booking(
            booking_id,
            now=pendulum.now(config.timezone),
            actor=actor,
            reason=reason,
            confirmation_code=code,
        )
        console.print(f"[green]Booking {booking.confirmation_code} cancelled.[/green]")


@app.command()
def reschedule(
    booking_id: Annotated[str, typer.Argument(help="Booking id")],
    new_start: Annotated[str, typer.Argument(help="New start (business timezone)")],
    config_file: ConfigOption = None,
):
    """
    Move a booking to a new start time.
    """
    with _reporting_errors():
        config, service = _load(config_file)
        tz = config.timezone
        booking = service.reschedule_booking(
            booking_id, _parse_instant(new_start, tz, "new start"), now=pendulum.now(tz)
        )
        _print_booking(booking, tz, "Booking rescheduled")


@app.command()
def status(
    booking_id: Annotated[str, typer.Argument(help="Booking id")],
    new_status: Annotated[BookingStatus, typer.Argument(help="Target status")],
    notes: Annotated[Optional[str], typer.Option("--notes", help="Internal notes")] = None,
    config_file: ConfigOption = None,
):
    """
    Change a booking's status (confirm, complete, no-show, cancel).
    """
    with _reporting_errors():
        config, service = _load(config_file)
        booking = service.update_status(
            booking_id,
            new_status,
            now=pendulum.now(config.timezone),
            internal_notes=notes,
        )
        console.print(f"[green]Booking {booking.confirmation_code} is now {booking.status.value}.[/green]")


@app.command()
def lookup(
    code: Annotated[str, typer.Argument(help="Confirmation code")],
    config_file: ConfigOption = None,
):
    """
    Find a booking by its confirmation code.
    """
    with _reporting_errors():
        config, service = _load(config_file)
        _print_booking(service.lookup_booking(code), config.timezone, "Booking")


@app.command()
def bookings(
    provider_id: Annotated[Optional[str], typer.Option("--provider", "-p", help="Filter by provider")] = None,
    booking_status: Annotated[Optional[BookingStatus], typer.Option("--status", help="Filter by status")] = None,
    start: Annotated[Optional[str], typer.Option("--from", help="Earliest start date (YYYY-MM-DD)")] = None,
    end: Annotated[Optional[str], typer.Option("--to", help="Latest start date (YYYY-MM-DD)")] = None,
    limit: Annotated[int, typer.Option("--limit", help="Maximum rows (1-100)")] = 50,
    offset: Annotated[int, typer.Option("--offset", help="Rows to skip")] = 0,
    config_file: ConfigOption = None,
):
    """
    List bookings, latest first.
    """
    with _reporting_errors():
        config, service = _load(config_file)
        tz = config.timezone

        start_from = _parse_date(start, tz, "from date")
        start_to = _parse_date(end, tz, "to date")

        query = BookingQuery(
            provider_id=provider_id,
            status=booking_status,
            start_from=pendulum.datetime(start_from.year, start_from.month, start_from.day, tz=tz)
            if start_from else None,
            start_to=pendulum.datetime(start_to.year, start_to.month, start_to.day, tz=tz).end_of("day")
            if start_to else None,
            limit=limit,
            offset=offset,
        )
        found = service.list_bookings(query)

        if not found:
            console.print("[yellow]No bookings found.[/yellow]")
            return

        table = Table(title="Bookings", show_header=True, header_style="bold cyan")
        table.add_column("Code", style="bold yellow")
        table.add_column("Start")
        table.add_column("Service")
        table.add_column("Provider")
        table.add_column("Client", style="dim")
        table.add_column("Status")

        for booking in found:
            table.add_row(
                booking.confirmation_code,
                booking.start.in_timezone(tz).format("YYYY-MM-DD HH:mm"),
                booking.service_name,
                booking.provider_name,
                booking.client.name,
                booking.status.value,
            )

        console.print()
        console.print(table)
        console.print()


@app.command()
def version():
    """
    Show version information.
    """
    from .. import __version__
    console.print(f"\n[bold cyan]slotbooker[/bold cyan] version [bold]{__version__}[/bold]\n")


if __name__ == "__main__":
    app()
