"""Supply and progress derivations over explicit medication/event collections.

Every function here is pure: callers pass the collections they loaded (see
``supply.load``) and get values back. Nothing reads the store or holds state
between calls, so a host can recompute its view after any write.
"""

from __future__ import annotations

import calendar
from collections.abc import Iterable, Sequence
from datetime import UTC, date, datetime, timedelta, tzinfo

from medminder.config import DEFAULT_DOSES_PER_DAY, DEFAULT_MEDIUM_THRESHOLD
from medminder.core.reminders import next_reminder_at
from medminder.models import (
    CalendarDay,
    DailyProgress,
    DoseEvent,
    Medication,
    MedicationStatus,
    SupplyTier,
    TodayView,
)
from medminder.tools.medications.schedule import is_active_on, local_day


def todays_medications(
    medications: Iterable[Medication],
    today: date | datetime,
    tz: tzinfo | None = None,
) -> list[Medication]:
    """Medications active on *today*, in input order."""
    return [m for m in medications if is_active_on(m, today, tz)]


def is_taken(medication_id: str, events: Iterable[DoseEvent]) -> bool:
    """True if any of *events* is a taken dose of *medication_id*.

    *events* is expected to be one day's events.
    """
    return any(e.medication_id == medication_id and e.taken for e in events)


def daily_progress(
    active_medications: Sequence[Medication],
    events: Iterable[DoseEvent],
    doses_per_day: int = DEFAULT_DOSES_PER_DAY,
) -> DailyProgress:
    """Fraction of the day's expected doses that were taken.

    Only taken events of active medications count; orphaned events (deleted
    medications) are ignored.
    """
    active_ids = {m.id for m in active_medications}
    expected = len(active_ids) * doses_per_day
    completed = sum(1 for e in events if e.taken and e.medication_id in active_ids)
    if expected == 0:
        return DailyProgress(completed=completed, expected=0, percentage=0.0)
    percentage = min(max(completed / expected, 0.0), 1.0)
    return DailyProgress(completed=completed, expected=expected, percentage=percentage)


def supply_percentage(medication: Medication) -> float | None:
    """Remaining supply as a percentage of total, or ``None`` if total is zero."""
    if medication.total_supply <= 0:
        return None
    return medication.current_supply / medication.total_supply * 100


def supply_tier(
    medication: Medication,
    medium_threshold: int = DEFAULT_MEDIUM_THRESHOLD,
) -> SupplyTier:
    """Refill urgency from remaining supply.

    ``LOW`` at or below the medication's refill threshold (and whenever the
    total is zero), ``MEDIUM`` at or below *medium_threshold*, else ``GOOD``.
    """
    percentage = supply_percentage(medication)
    if percentage is None or percentage <= medication.refill_threshold:
        return SupplyTier.LOW
    if percentage <= medium_threshold:
        return SupplyTier.MEDIUM
    return SupplyTier.GOOD


def needs_refill(
    medications: Iterable[Medication],
    medium_threshold: int = DEFAULT_MEDIUM_THRESHOLD,
) -> list[Medication]:
    """Medications currently in the ``LOW`` tier."""
    return [m for m in medications if supply_tier(m, medium_threshold) is SupplyTier.LOW]


def _events_on(events: Iterable[DoseEvent], day: date, tz: tzinfo) -> list[DoseEvent]:
    return [e for e in events if local_day(e.timestamp, tz) == day]


def day_view(
    medications: Iterable[Medication],
    events: Iterable[DoseEvent],
    day: date,
    tz: tzinfo | None = None,
    *,
    now: datetime | None = None,
    medium_threshold: int = DEFAULT_MEDIUM_THRESHOLD,
) -> list[MedicationStatus]:
    """Status rows for the medications active on *day*.

    *events* may span any range; only those on *day* are considered. When
    *now* is given, each row carries the next reminder time after it.
    """
    tz = tz or UTC
    day_events = _events_on(events, day, tz)
    statuses: list[MedicationStatus] = []
    for med in todays_medications(medications, day, tz):
        statuses.append(
            MedicationStatus(
                medication=med,
                taken=is_taken(med.id, day_events),
                tier=supply_tier(med, medium_threshold),
                next_reminder=next_reminder_at(med, now, tz) if now is not None else None,
            )
        )
    return statuses


def recompute(
    medications: Sequence[Medication],
    events: Iterable[DoseEvent],
    today: date,
    tz: tzinfo | None = None,
    *,
    now: datetime | None = None,
    doses_per_day: int = DEFAULT_DOSES_PER_DAY,
    medium_threshold: int = DEFAULT_MEDIUM_THRESHOLD,
) -> TodayView:
    """Build the view model for *today* from freshly loaded collections."""
    tz = tz or UTC
    events = list(events)
    statuses = day_view(
        medications, events, today, tz, now=now, medium_threshold=medium_threshold
    )
    progress = daily_progress(
        [s.medication for s in statuses],
        _events_on(events, today, tz),
        doses_per_day,
    )
    return TodayView(day=today, medications=statuses, progress=progress)


def month_overview(
    events: Iterable[DoseEvent],
    year: int,
    month: int,
    tz: tzinfo | None = None,
) -> list[CalendarDay]:
    """One entry per day of the month, flagging days with any dose event."""
    tz = tz or UTC
    days_with_doses = {local_day(e.timestamp, tz) for e in events}
    first = date(year, month, 1)
    _, length = calendar.monthrange(year, month)
    return [
        CalendarDay(day=d, has_doses=d in days_with_doses)
        for d in (first + timedelta(days=offset) for offset in range(length))
    ]
