"""Dose ledger — the persisted log of take/skip events.

Events are appended on record and deleted on undo; they are never edited.
The ledger writes only to the ``dose_events`` collection. Keeping the
medication's supply in step is the caller's job (see ``supply``).
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, date, datetime, tzinfo

from medminder.core.store import DOSE_EVENTS, Store
from medminder.errors import DoseNotFoundError
from medminder.models import DoseEvent
from medminder.tools.medications.schedule import local_day

logger = logging.getLogger(__name__)


class DoseLedger:
    """Dose events for all medications, read fresh from the store on every call."""

    def __init__(self, store: Store, tz: tzinfo | None = None) -> None:
        self._store = store
        self._tz = tz or UTC

    @property
    def tz(self) -> tzinfo:
        return self._tz

    async def all_events(self) -> list[DoseEvent]:
        """Return every event in insertion order."""
        rows = await self._store.get_all(DOSE_EVENTS)
        return [DoseEvent.model_validate(row) for row in rows]

    async def record(
        self,
        medication_id: str,
        taken: bool = True,
        timestamp: datetime | None = None,
    ) -> DoseEvent:
        """Append a dose event. No duplicate check is made here."""
        event = DoseEvent(
            id=uuid.uuid4().hex,
            medication_id=medication_id,
            timestamp=timestamp or datetime.now(UTC),
            taken=taken,
        )
        await self._store.put(DOSE_EVENTS, event.to_record())
        logger.debug("Recorded dose event %s for %s (taken=%s)", event.id, medication_id, taken)
        return event

    async def discard(self, event: DoseEvent) -> None:
        """Delete *event*; a no-op if it is already gone."""
        await self._store.remove(DOSE_EVENTS, event.id)
        logger.debug("Discarded dose event %s for %s", event.id, event.medication_id)

    async def undo_last(self, medication_id: str) -> DoseEvent:
        """Delete and return the most recent taken event for *medication_id*.

        Raises:
            DoseNotFoundError: If the medication has no taken events.
        """
        taken = [
            e for e in await self.all_events() if e.medication_id == medication_id and e.taken
        ]
        if not taken:
            raise DoseNotFoundError(medication_id)
        latest = max(taken, key=lambda e: e.timestamp)
        await self._store.remove(DOSE_EVENTS, latest.id)
        logger.debug("Removed dose event %s for %s", latest.id, medication_id)
        return latest

    async def events_on(self, medication_id: str, day: date) -> list[DoseEvent]:
        """Events for one medication on a local calendar day, in insertion order."""
        events = await self.events_on_all_medications(day)
        return [e for e in events if e.medication_id == medication_id]

    async def events_on_all_medications(self, day: date) -> list[DoseEvent]:
        """Events for every medication on a local calendar day."""
        return [e for e in await self.all_events() if local_day(e.timestamp, self._tz) == day]

    async def events_between(self, first_day: date, last_day: date) -> list[DoseEvent]:
        """Events whose local day falls within ``[first_day, last_day]``."""
        return [
            e
            for e in await self.all_events()
            if first_day <= local_day(e.timestamp, self._tz) <= last_day
        ]

    async def history(self, medication_id: str) -> list[DoseEvent]:
        """All events for one medication, newest first."""
        events = [e for e in await self.all_events() if e.medication_id == medication_id]
        return sorted(events, key=lambda e: e.timestamp, reverse=True)
