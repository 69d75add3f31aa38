"""CLI for medminder — manage medications and doses from a terminal."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import UTC, date, datetime, timedelta
from pathlib import Path
from typing import Any, TypeVar

import click

from medminder.config import ConfigError, MedminderConfig, StorageBackend, load_config
from medminder.core.logging import configure_logging
from medminder.core.reminders import LogNotifier
from medminder.core.store import MemoryStore, PostgresStore, Store, ensure_schema
from medminder.db import Database
from medminder.errors import (
    AlreadyTakenError,
    MedminderError,
    NothingToUndoError,
    ValidationError,
)
from medminder.models import ONGOING, Medication
from medminder.tools.medications import (
    DoseLedger,
    add_medication,
    delete_medication,
    list_medications,
    load,
    month_overview,
    parse_duration,
    recompute,
    refill,
    supply_percentage,
    supply_tier,
    take_dose,
    undo_dose,
    update_schedule,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@asynccontextmanager
async def _open_store(config: MedminderConfig) -> AsyncIterator[Store]:
    """Yield the configured store, closing any pool on exit."""
    if config.storage is StorageBackend.MEMORY:
        logger.warning("Using in-memory storage; nothing will persist after this command")
        yield MemoryStore()
        return

    db = Database.from_env(config.db.name, schema=config.db.schema)
    pool = await db.connect()
    try:
        await ensure_schema(pool)
        yield PostgresStore(pool)
    finally:
        await db.close()


def _run(config: MedminderConfig, fn: Callable[[Store], Awaitable[T]]) -> T:
    """Open the store, run *fn* against it, and map engine errors to CLI errors."""

    async def _main() -> T:
        async with _open_store(config) as store:
            return await fn(store)

    try:
        return asyncio.run(_main())
    except ValidationError as exc:
        lines = [f"  {field}: {msg}" for field, msg in sorted(exc.errors.items())]
        raise click.ClickException("Invalid medication:\n" + "\n".join(lines)) from exc
    except MedminderError as exc:
        raise click.ClickException(str(exc)) from exc


def _describe(med: Medication) -> str:
    times = ", ".join(t.strftime("%H:%M") for t in med.schedule) or "as needed"
    duration = "ongoing" if med.duration_days == ONGOING else f"{med.duration_days} days"
    return f"{med.id}  {med.name} {med.dosage}  [{times}]  from {med.start_date} ({duration})"


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("."),
    help="Directory containing medminder.toml",
)
@click.pass_context
def cli(ctx: click.Context, config_dir: Path) -> None:
    """medminder — medication reminders and supply tracking."""
    try:
        config = load_config(config_dir)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_file=Path(config.logging.file) if config.logging.file else None,
        profile=config.profile,
    )
    ctx.obj = config


@cli.command()
@click.argument("name")
@click.argument("dosage")
@click.option("--frequency", default="Once daily", show_default=True)
@click.option("--time", "times", multiple=True, help="Reminder time HH:MM (repeatable)")
@click.option("--start", type=click.DateTime(formats=["%Y-%m-%d"]), default=None)
@click.option(
    "--duration", default="Ongoing", show_default=True, help="e.g. '7 days' or 'Ongoing'"
)
@click.option("--supply", "current_supply", type=int, default=0, show_default=True)
@click.option("--total", "total_supply", type=int, default=None)
@click.option("--refill-at", "refill_threshold", type=int, default=0, show_default=True)
@click.option("--reminders/--no-reminders", default=True, show_default=True)
@click.option("--refill-reminder/--no-refill-reminder", default=False, show_default=True)
@click.option("--notes", default=None)
@click.pass_obj
def add(
    config: MedminderConfig,
    name: str,
    dosage: str,
    frequency: str,
    times: tuple[str, ...],
    start: datetime | None,
    duration: str,
    current_supply: int,
    total_supply: int | None,
    refill_threshold: int,
    reminders: bool,
    refill_reminder: bool,
    notes: str | None,
) -> None:
    """Add a medication."""
    try:
        duration_days = parse_duration(duration)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--duration") from exc

    med = _run(
        config,
        lambda store: add_medication(
            store,
            name=name,
            dosage=dosage,
            frequency=frequency,
            schedule=list(times) if times else None,
            start_date=start.date() if start else None,
            duration_days=duration_days,
            current_supply=current_supply,
            total_supply=total_supply,
            refill_threshold=refill_threshold,
            reminder_enabled=reminders,
            refill_reminder_enabled=refill_reminder,
            notes=notes,
            notifier=LogNotifier(),
            tz=config.tz,
        ),
    )
    click.echo(f"Added {_describe(med)}")


@cli.command("list")
@click.pass_obj
def list_cmd(config: MedminderConfig) -> None:
    """List all medications."""
    meds = _run(config, list_medications)
    if not meds:
        click.echo("No medications.")
        return
    for med in meds:
        click.echo(_describe(med))


@cli.command()
@click.option("--date", "on", type=click.DateTime(formats=["%Y-%m-%d"]), default=None)
@click.pass_obj
def today(config: MedminderConfig, on: datetime | None) -> None:
    """Show the medications due on a day and the day's progress.

    Next-reminder times are only shown for the current day.
    """
    if on is None:
        now: datetime | None = datetime.now(UTC)
        day = now.astimezone(config.tz).date()
    else:
        now = None
        day = on.date()

    async def _view(store: Store) -> Any:
        medications, events = await load(store, config.tz)
        return recompute(
            medications,
            events,
            day,
            config.tz,
            now=now,
            doses_per_day=config.doses_per_day,
            medium_threshold=config.supply.medium_threshold,
        )

    view = _run(config, _view)
    click.echo(f"{view.day}: {len(view.medications)} active medication(s)")
    for status in view.medications:
        mark = "x" if status.taken else " "
        nxt = status.next_reminder.strftime("%H:%M") if status.next_reminder else "-"
        click.echo(
            f"  [{mark}] {status.medication.name} {status.medication.dosage}"
            f"  next {nxt}  supply {status.tier.label}"
        )
    progress = view.progress
    click.echo(f"Progress: {progress.completed}/{progress.expected} ({progress.percentage:.0%})")


@cli.command()
@click.argument("medication_id")
@click.pass_obj
def take(config: MedminderConfig, medication_id: str) -> None:
    """Record today's dose of a medication."""

    async def _take(store: Store) -> Medication | None:
        try:
            return await take_dose(
                store,
                medication_id,
                ledger=DoseLedger(store, config.tz),
                notifier=LogNotifier(),
                cas_retries=config.cas_retries,
                medium_threshold=config.supply.medium_threshold,
            )
        except AlreadyTakenError:
            return None

    med = _run(config, _take)
    if med is None:
        click.echo(f"Already taken today: {medication_id}")
        return
    click.echo(f"Took {med.name}; {med.current_supply}/{med.total_supply} left")


@cli.command()
@click.argument("medication_id")
@click.pass_obj
def undo(config: MedminderConfig, medication_id: str) -> None:
    """Undo the most recent dose of a medication."""

    async def _undo(store: Store) -> Medication | None:
        try:
            return await undo_dose(
                store,
                medication_id,
                ledger=DoseLedger(store, config.tz),
                cas_retries=config.cas_retries,
            )
        except NothingToUndoError:
            return None

    med = _run(config, _undo)
    if med is None:
        click.echo(f"Nothing to undo for {medication_id}")
        return
    click.echo(f"Undid dose of {med.name}; {med.current_supply}/{med.total_supply} left")


@cli.command("refill")
@click.argument("medication_id")
@click.pass_obj
def refill_cmd(config: MedminderConfig, medication_id: str) -> None:
    """Record a refill, restoring supply to total."""
    med = _run(config, lambda store: refill(store, medication_id, cas_retries=config.cas_retries))
    click.echo(f"{med.name} has been refilled to {med.total_supply} units.")


@cli.command()
@click.pass_obj
def supply(config: MedminderConfig) -> None:
    """Show remaining supply and refill urgency."""
    meds = _run(config, list_medications)
    for med in meds:
        pct = supply_percentage(med)
        tier = supply_tier(med, config.supply.medium_threshold)
        shown = f"{pct:.0f}%" if pct is not None else "n/a"
        refilled = med.last_refill_date.date().isoformat() if med.last_refill_date else "never"
        click.echo(
            f"{med.name}: {med.current_supply}/{med.total_supply} ({shown}) {tier.label}"
            f"  last refill {refilled}"
        )


@cli.command()
@click.option("--month", "month", default=None, help="YYYY-MM (defaults to current month)")
@click.pass_obj
def calendar(config: MedminderConfig, month: str | None) -> None:
    """Show which days of a month have dose events."""
    if month:
        try:
            first = datetime.strptime(month, "%Y-%m").date()
        except ValueError as exc:
            raise click.BadParameter("expected YYYY-MM", param_hint="--month") from exc
    else:
        first = datetime.now(UTC).astimezone(config.tz).date().replace(day=1)

    async def _month(store: Store) -> Any:
        next_month = date(first.year + first.month // 12, first.month % 12 + 1, 1)
        last = next_month - timedelta(days=1)
        events = await DoseLedger(store, config.tz).events_between(first, last)
        return month_overview(events, first.year, first.month, config.tz)

    days = _run(config, _month)
    marked = " ".join(f"{d.day.day:2d}{'*' if d.has_doses else ' '}" for d in days)
    click.echo(f"{first:%B %Y}")
    click.echo(marked)


@cli.command()
@click.argument("medication_id")
@click.option("--time", "times", multiple=True, required=True, help="Reminder time HH:MM")
@click.option("--frequency", default=None)
@click.pass_obj
def schedule(
    config: MedminderConfig, medication_id: str, times: tuple[str, ...], frequency: str | None
) -> None:
    """Replace a medication's reminder times."""
    med = _run(
        config,
        lambda store: update_schedule(
            store, medication_id, list(times), frequency=frequency, notifier=LogNotifier()
        ),
    )
    click.echo(f"Updated {_describe(med)}")


@cli.command()
@click.argument("medication_id")
@click.pass_obj
def delete(config: MedminderConfig, medication_id: str) -> None:
    """Delete a medication (its dose history is kept)."""
    _run(config, lambda store: delete_medication(store, medication_id))
    click.echo(f"Deleted {medication_id}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
