"""Schedule resolver — is a medication's treatment window open on a given day?

All comparisons are by calendar day in the user's local timezone. The window
end is computed on dates, not elapsed time, so daylight-saving shifts cannot
move it by a day.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta, tzinfo

from medminder.models import Medication


def local_day(instant: datetime, tz: tzinfo | None = None) -> date:
    """Return the calendar day of *instant* in *tz* (UTC when omitted).

    Naive datetimes are treated as UTC.
    """
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=UTC)
    return instant.astimezone(tz or UTC).date()


def as_day(value: date | datetime, tz: tzinfo | None = None) -> date:
    """Normalize a date or datetime to a local calendar day."""
    if isinstance(value, datetime):
        return local_day(value, tz)
    return value


def end_date(medication: Medication) -> date | None:
    """Last active day of the treatment (inclusive), or ``None`` when ongoing."""
    if medication.is_ongoing:
        return None
    return medication.start_date + timedelta(days=medication.duration_days)


def is_active_on(
    medication: Medication,
    day: date | datetime,
    tz: tzinfo | None = None,
) -> bool:
    """Return True when *medication* is active on *day*."""
    target = as_day(day, tz)
    if target < medication.start_date:
        return False
    last = end_date(medication)
    return last is None or target <= last
