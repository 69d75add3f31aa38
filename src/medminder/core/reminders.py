"""Reminder scheduling — best-effort calls into the host's notification capability.

The host platform owns delivery (OS alarms, push notifications). The engine
only asks it to schedule a daily reminder per medication time, and a refill
reminder when supply runs low. Failures are logged and never block the
medication or dose write that triggered them.
"""

from __future__ import annotations

import logging
from datetime import datetime, time, tzinfo
from typing import Any, Protocol

from croniter import croniter

from medminder.errors import NotificationSchedulingError
from medminder.models import Medication

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Protocol for the host's notification capability.

    Implementations raise :exc:`NotificationSchedulingError` when a reminder
    could not be scheduled.
    """

    async def schedule_reminder(self, medication_id: str, local_time: time) -> Any:
        """Schedule a daily reminder at *local_time*; return an opaque handle."""
        ...

    async def schedule_refill_reminder(self, medication_id: str) -> Any:
        """Schedule a one-off reminder that the medication needs a refill."""
        ...


class LogNotifier:
    """Notifier that only logs; used when no host delivery channel is attached."""

    async def schedule_reminder(self, medication_id: str, local_time: time) -> str:
        expr = reminder_cron(local_time)
        logger.info("Reminder for %s scheduled at %s (%s)", medication_id, local_time, expr)
        return f"{medication_id}@{local_time.strftime('%H:%M')}"

    async def schedule_refill_reminder(self, medication_id: str) -> str:
        logger.info("Refill reminder scheduled for %s", medication_id)
        return f"{medication_id}@refill"


def reminder_cron(local_time: time) -> str:
    """Return the daily cron expression firing at *local_time*."""
    return f"{local_time.minute} {local_time.hour} * * *"


def next_reminder_at(medication: Medication, now: datetime, tz: tzinfo) -> datetime | None:
    """Return the next scheduled dose time after *now*, in *tz*.

    ``None`` for "as needed" medications with no schedule.
    """
    if not medication.schedule:
        return None
    # croniter iterates local wall-clock time; attach the zone afterwards.
    local_now = now.astimezone(tz).replace(tzinfo=None)
    upcoming = [
        croniter(reminder_cron(t), local_now).get_next(datetime) for t in medication.schedule
    ]
    return min(upcoming).replace(tzinfo=tz)


async def schedule_medication_reminders(
    notifier: Notifier | None,
    medication: Medication,
) -> list[Any]:
    """Schedule one reminder per schedule time; return the handles that succeeded."""
    if notifier is None or not medication.reminder_enabled:
        return []

    handles: list[Any] = []
    for local_time in medication.schedule:
        try:
            handles.append(await notifier.schedule_reminder(medication.id, local_time))
        except NotificationSchedulingError:
            logger.warning(
                "Failed to schedule reminder for %s at %s",
                medication.id,
                local_time,
                exc_info=True,
            )
    return handles


async def schedule_refill_alert(notifier: Notifier | None, medication: Medication) -> Any | None:
    """Schedule a refill reminder if enabled; return its handle or ``None``."""
    if notifier is None or not medication.refill_reminder_enabled:
        return None
    try:
        return await notifier.schedule_refill_reminder(medication.id)
    except NotificationSchedulingError:
        logger.warning("Failed to schedule refill reminder for %s", medication.id, exc_info=True)
        return None
