"""Medications — add, list, update schedule, and delete."""

from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Awaitable, Callable, Iterable
from datetime import UTC, date, datetime, time, tzinfo
from typing import Any

from medminder.config import DEFAULT_CAS_RETRIES
from medminder.core.logging import medication_operation
from medminder.core.reminders import Notifier, schedule_medication_reminders
from medminder.core.store import MEDICATIONS, Store
from medminder.errors import CASConflictError, MedicationNotFoundError, ValidationError
from medminder.models import ONGOING, Medication
from medminder.tools.medications.schedule import local_day

logger = logging.getLogger(__name__)

# Frequency label -> default reminder times.
FREQUENCIES: dict[str, list[str]] = {
    "Once daily": ["09:00"],
    "Twice daily": ["09:00", "21:00"],
    "Three times daily": ["09:00", "15:00", "21:00"],
    "Four times daily": ["09:00", "13:00", "17:00", "21:00"],
    "As needed": [],
}

# Duration label -> days (ONGOING for no end date).
DURATIONS: dict[str, int] = {
    "7 days": 7,
    "14 days": 14,
    "30 days": 30,
    "90 days": 90,
    "Ongoing": ONGOING,
}

_TIME_PATTERN = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")
_DURATION_PATTERN = re.compile(r"^\s*(-?\d+)(\s*days?)?\s*$", re.IGNORECASE)


def parse_time(value: str | time) -> time:
    """Parse an ``HH:MM`` string (or pass a time through)."""
    if isinstance(value, time):
        return value.replace(second=0, microsecond=0, tzinfo=None)
    match = _TIME_PATTERN.match(str(value).strip())
    if match is None:
        raise ValueError(f"Invalid time of day: {value!r} (expected HH:MM)")
    return time(int(match.group(1)), int(match.group(2)))


def parse_duration(value: str | int) -> int:
    """Parse a duration label (``"7 days"``, ``"Ongoing"``) or a day count."""
    if isinstance(value, int):
        return value
    for label, days in DURATIONS.items():
        if value.strip().lower() == label.lower():
            return days
    match = _DURATION_PATTERN.match(value)
    if match is None:
        raise ValueError(f"Invalid duration: {value!r}")
    return int(match.group(1))


def _parse_schedule(schedule: Iterable[str | time], errors: dict[str, str]) -> list[time]:
    times: list[time] = []
    for raw in schedule:
        try:
            times.append(parse_time(raw))
        except ValueError as exc:
            errors["schedule"] = str(exc)
    return sorted(set(times))


def validate_medication(
    *,
    name: str,
    dosage: str,
    duration_days: int,
    current_supply: int,
    total_supply: int,
    refill_threshold: int,
    refill_reminder_enabled: bool,
) -> dict[str, str]:
    """Return field -> message for every invalid field (empty when valid)."""
    errors: dict[str, str] = {}
    if not name or not name.strip():
        errors["name"] = "Medication name is required"
    if not dosage or not dosage.strip():
        errors["dosage"] = "Dosage is required"
    if duration_days != ONGOING and duration_days <= 0:
        errors["duration_days"] = "Duration must be a positive number of days or ongoing"
    if current_supply < 0:
        errors["current_supply"] = "Current supply cannot be negative"
    elif current_supply > total_supply:
        errors["current_supply"] = "Current supply cannot exceed total supply"
    if not 0 <= refill_threshold <= 100:
        errors["refill_threshold"] = "Refill threshold must be a percentage between 0 and 100"
    if refill_reminder_enabled:
        if current_supply <= 0:
            errors["current_supply"] = "Current supply is required for refill tracking"
        elif refill_threshold >= current_supply:
            errors["refill_threshold"] = "Refill alert must be less than current supply"
    return errors


async def add_medication(
    store: Store,
    *,
    name: str,
    dosage: str,
    frequency: str = "",
    schedule: Iterable[str | time] | None = None,
    start_date: date | None = None,
    duration_days: int = ONGOING,
    current_supply: int = 0,
    total_supply: int | None = None,
    refill_threshold: int = 0,
    reminder_enabled: bool = True,
    refill_reminder_enabled: bool = False,
    notes: str | None = None,
    medication_id: str | None = None,
    notifier: Notifier | None = None,
    tz: tzinfo | None = None,
) -> Medication:
    """Validate, persist, and schedule reminders for a new medication.

    ``total_supply`` defaults to ``current_supply``. When ``schedule`` is
    omitted, the default times for ``frequency`` are used. A caller-supplied
    ``medication_id`` must not belong to an existing medication.

    Raises:
        ValidationError: If any field is invalid. Nothing is persisted.
    """
    if schedule is None:
        schedule = FREQUENCIES.get(frequency, [])
    if total_supply is None:
        total_supply = current_supply

    errors = validate_medication(
        name=name,
        dosage=dosage,
        duration_days=duration_days,
        current_supply=current_supply,
        total_supply=total_supply,
        refill_threshold=refill_threshold,
        refill_reminder_enabled=refill_reminder_enabled,
    )
    times = _parse_schedule(schedule, errors)
    if medication_id is not None and await store.get(MEDICATIONS, medication_id) is not None:
        errors["id"] = "Medication id already exists"
    if errors:
        raise ValidationError(errors)

    medication = Medication(
        id=medication_id or uuid.uuid4().hex,
        name=name.strip(),
        dosage=dosage.strip(),
        frequency=frequency,
        schedule=times,
        start_date=start_date or local_day(datetime.now(UTC), tz),
        duration_days=duration_days,
        current_supply=current_supply,
        total_supply=total_supply,
        refill_threshold=refill_threshold,
        reminder_enabled=reminder_enabled,
        refill_reminder_enabled=refill_reminder_enabled,
        notes=notes,
    )
    with medication_operation("add_medication", medication.id):
        await store.put(MEDICATIONS, medication.to_record())
        logger.info("Added medication %s (%s)", medication.id, medication.name)
        await schedule_medication_reminders(notifier, medication)
    return medication


async def list_medications(store: Store) -> list[Medication]:
    """All medications in insertion order."""
    return [Medication.model_validate(row) for row in await store.get_all(MEDICATIONS)]


async def get_medication(store: Store, medication_id: str) -> Medication:
    """Fetch one medication.

    Raises:
        MedicationNotFoundError: If no medication has *medication_id*.
    """
    row = await store.get(MEDICATIONS, medication_id)
    if row is None:
        raise MedicationNotFoundError(medication_id)
    return Medication.model_validate(row)


async def modify_medication(
    store: Store,
    medication_id: str,
    transition: Callable[[Medication], Medication],
    *,
    cas_retries: int = DEFAULT_CAS_RETRIES,
    snapshot: tuple[dict[str, Any], int] | None = None,
    on_conflict: Callable[[], Awaitable[None]] | None = None,
) -> Medication:
    """Apply *transition* to the stored medication with compare-and-set.

    Every change to a stored medication goes through here so that no writer
    persists fields it read before another writer's update. The first attempt
    uses *snapshot* (a ``get_versioned`` result) when given. After a version
    conflict *on_conflict* is awaited, and may raise to abandon the write; then
    the record is re-read and *transition* re-applied, up to *cas_retries*
    attempts in all.

    Raises:
        MedicationNotFoundError: If the medication does not exist.
        CASConflictError: If every attempt lost a version race.
    """
    found = snapshot
    attempt = 0
    while True:
        if found is None:
            found = await store.get_versioned(MEDICATIONS, medication_id)
            if found is None:
                raise MedicationNotFoundError(medication_id)
        record, version = found
        updated = transition(Medication.model_validate(record))
        try:
            await store.put(MEDICATIONS, updated.to_record(), expected_version=version)
        except CASConflictError:
            attempt += 1
            if on_conflict is not None:
                await on_conflict()
            if attempt >= cas_retries:
                raise
            logger.warning(
                "Update of %s lost a version race (attempt %d/%d); retrying",
                medication_id,
                attempt,
                cas_retries,
            )
            found = None
            continue
        return updated


async def update_schedule(
    store: Store,
    medication_id: str,
    schedule: Iterable[str | time],
    *,
    frequency: str | None = None,
    notifier: Notifier | None = None,
    cas_retries: int = DEFAULT_CAS_RETRIES,
) -> Medication:
    """Replace a medication's reminder times and reschedule its reminders.

    Only ``schedule`` (and ``frequency`` when given) change; supply written
    concurrently by a dose or refill is kept.
    """
    errors: dict[str, str] = {}
    times = _parse_schedule(schedule, errors)
    if errors:
        raise ValidationError(errors)

    changes: dict[str, Any] = {"schedule": times}
    if frequency is not None:
        changes["frequency"] = frequency

    with medication_operation("update_schedule", medication_id):
        updated = await modify_medication(
            store,
            medication_id,
            lambda m: m.model_copy(update=changes),
            cas_retries=cas_retries,
        )
        logger.info("Updated schedule: %s", [t.isoformat() for t in times])
        await schedule_medication_reminders(notifier, updated)
    return updated


async def delete_medication(store: Store, medication_id: str) -> None:
    """Delete a medication. Its dose events are left in the ledger."""
    with medication_operation("delete_medication", medication_id):
        await get_medication(store, medication_id)
        await store.remove(MEDICATIONS, medication_id)
        logger.info("Deleted medication %s", medication_id)
