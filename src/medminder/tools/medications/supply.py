"""Dose taking, undo, and refill — the writes that move a medication's supply.

Each write re-reads the medication and the ledger from the store right before
mutating, instead of trusting a copy the caller may have held across an await.
Take and undo touch two records in a fixed order: the ledger entry first, the
supply counter second. A crash in between leaves the dose recorded with the
supply not yet adjusted; a dose is never lost.

Supply updates go through :func:`~medminder.tools.medications.registry.modify_medication`,
a compare-and-set on the medication record's version.

The once-a-day rule for ``take_dose`` is checked against the ledger and then
confirmed by that compare-and-set against the version read *before* the
check. When two takes overlap, both may append; the one whose supply write
loses the race and finds the other's dose for the day withdraws its own entry
and reports ``AlreadyTakenError``. If a third writer makes both lose, both
may withdraw: the day is left untaken with supply untouched, never
double-counted.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, tzinfo

from medminder.config import DEFAULT_CAS_RETRIES, DEFAULT_MEDIUM_THRESHOLD
from medminder.core.logging import medication_operation
from medminder.core.reminders import Notifier, schedule_refill_alert
from medminder.core.store import MEDICATIONS, Store
from medminder.errors import (
    AlreadyTakenError,
    DoseNotFoundError,
    MedicationNotFoundError,
    NothingToUndoError,
)
from medminder.models import DoseEvent, Medication, SupplyTier
from medminder.tools.medications.ledger import DoseLedger
from medminder.tools.medications.progress import is_taken, supply_tier
from medminder.tools.medications.registry import (
    get_medication,
    list_medications,
    modify_medication,
)
from medminder.tools.medications.schedule import local_day

logger = logging.getLogger(__name__)


def _clamped(medication: Medication, current_supply: int) -> Medication:
    bounded = min(max(current_supply, 0), max(medication.total_supply, 0))
    return medication.model_copy(update={"current_supply": bounded})


def apply_take(medication: Medication) -> Medication:
    """One dose fewer, floored at zero."""
    return _clamped(medication, medication.current_supply - 1)


def apply_undo(medication: Medication) -> Medication:
    """One dose back, capped at the total supply."""
    return _clamped(medication, medication.current_supply + 1)


def apply_refill(medication: Medication, now: datetime) -> Medication:
    """Supply reset to total and refill time stamped."""
    return medication.model_copy(
        update={"current_supply": medication.total_supply, "last_refill_date": now}
    )


def _medication_id(medication: Medication | str) -> str:
    return medication if isinstance(medication, str) else medication.id


async def load(store: Store, tz: tzinfo | None = None) -> tuple[list[Medication], list[DoseEvent]]:
    """Read the current medications and dose events for a recompute."""
    medications = await list_medications(store)
    events = await DoseLedger(store, tz).all_events()
    return medications, events


async def take_dose(
    store: Store,
    medication: Medication | str,
    *,
    ledger: DoseLedger | None = None,
    now: datetime | None = None,
    notifier: Notifier | None = None,
    cas_retries: int = DEFAULT_CAS_RETRIES,
    medium_threshold: int = DEFAULT_MEDIUM_THRESHOLD,
) -> Medication:
    """Record today's dose and decrement supply.

    Raises:
        MedicationNotFoundError: If the medication does not exist.
        AlreadyTakenError: If a taken dose is already recorded for today,
            including one recorded by an overlapping call. The ledger and
            supply are left unchanged.
    """
    medication_id = _medication_id(medication)
    ledger = ledger or DoseLedger(store)
    now = now or datetime.now(UTC)

    with medication_operation("take_dose", medication_id) as span:
        snapshot = await store.get_versioned(MEDICATIONS, medication_id)
        if snapshot is None:
            raise MedicationNotFoundError(medication_id)
        current = Medication.model_validate(snapshot[0])
        today = local_day(now, ledger.tz)
        if is_taken(medication_id, await ledger.events_on(medication_id, today)):
            raise AlreadyTakenError(medication_id, today)

        event = await ledger.record(medication_id, True, now)

        async def _yield_to_overlapping_take() -> None:
            others = [
                e
                for e in await ledger.events_on(medication_id, today)
                if e.taken and e.id != event.id
            ]
            if others:
                await ledger.discard(event)
                logger.info("Withdrew dose %s; another take recorded today", event.id)
                raise AlreadyTakenError(medication_id, today)

        updated = await modify_medication(
            store,
            medication_id,
            apply_take,
            cas_retries=cas_retries,
            snapshot=snapshot,
            on_conflict=_yield_to_overlapping_take,
        )
        span.set_attribute("current_supply", updated.current_supply)
        logger.info("Dose taken; supply %d/%d", updated.current_supply, updated.total_supply)

        was_low = supply_tier(current, medium_threshold) is SupplyTier.LOW
        if not was_low and supply_tier(updated, medium_threshold) is SupplyTier.LOW:
            await schedule_refill_alert(notifier, updated)
        return updated


async def undo_dose(
    store: Store,
    medication: Medication | str,
    *,
    ledger: DoseLedger | None = None,
    cas_retries: int = DEFAULT_CAS_RETRIES,
) -> Medication:
    """Remove the most recent taken dose and restore one unit of supply.

    Raises:
        MedicationNotFoundError: If the medication does not exist.
        NothingToUndoError: If the ledger holds no taken dose for it.
    """
    medication_id = _medication_id(medication)
    ledger = ledger or DoseLedger(store)

    with medication_operation("undo_dose", medication_id) as span:
        await get_medication(store, medication_id)
        try:
            removed = await ledger.undo_last(medication_id)
        except DoseNotFoundError as exc:
            raise NothingToUndoError(medication_id) from exc

        updated = await modify_medication(store, medication_id, apply_undo, cas_retries=cas_retries)
        span.set_attribute("current_supply", updated.current_supply)
        logger.info(
            "Undid dose %s; supply %d/%d",
            removed.id,
            updated.current_supply,
            updated.total_supply,
        )
        return updated


async def refill(
    store: Store,
    medication: Medication | str,
    *,
    now: datetime | None = None,
    cas_retries: int = DEFAULT_CAS_RETRIES,
) -> Medication:
    """Reset supply to total and stamp ``last_refill_date``. The ledger is untouched."""
    medication_id = _medication_id(medication)
    now = now or datetime.now(UTC)

    with medication_operation("refill", medication_id):
        updated = await modify_medication(
            store, medication_id, lambda m: apply_refill(m, now), cas_retries=cas_retries
        )
        logger.info("Refilled to %d", updated.total_supply)
        return updated
