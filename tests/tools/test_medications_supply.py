"""Tests for medminder.tools.medications.supply — take, undo, and refill."""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
from typing import Any

import pytest

from medminder.core.store import DOSE_EVENTS, MEDICATIONS, MemoryStore
from medminder.errors import (
    AlreadyTakenError,
    CASConflictError,
    MedicationNotFoundError,
    NothingToUndoError,
)
from medminder.models import Medication, SupplyTier
from medminder.tools.medications.ledger import DoseLedger
from medminder.tools.medications.progress import supply_tier
from medminder.tools.medications.supply import (
    apply_refill,
    apply_take,
    apply_undo,
    load,
    refill,
    take_dose,
    undo_dose,
)

pytestmark = pytest.mark.unit

NOW = datetime(2024, 1, 5, 9, 0, tzinfo=UTC)


async def _stored(store: MemoryStore, med_id: str = "med-1") -> Medication:
    return Medication.model_validate(await store.get(MEDICATIONS, med_id))


# ---------------------------------------------------------------------------
# Pure transitions
# ---------------------------------------------------------------------------


class TestTransitions:
    def test_take_floors_at_zero(self, make_medication):
        med = make_medication(current_supply=0, total_supply=10)
        assert apply_take(med).current_supply == 0

    def test_undo_caps_at_total(self, make_medication):
        med = make_medication(current_supply=10, total_supply=10)
        assert apply_undo(med).current_supply == 10

    def test_refill_sets_total_and_timestamp(self, make_medication):
        med = make_medication(current_supply=2, total_supply=10)
        refilled = apply_refill(med, NOW)
        assert refilled.current_supply == 10
        assert refilled.last_refill_date == NOW
        assert med.current_supply == 2  # original untouched


# ---------------------------------------------------------------------------
# take_dose
# ---------------------------------------------------------------------------


async def test_take_dose_records_event_then_decrements(store, stored_medication):
    updated = await take_dose(store, stored_medication, now=NOW)

    assert updated.current_supply == 29
    assert (await _stored(store)).current_supply == 29
    events = await store.get_all(DOSE_EVENTS)
    assert len(events) == 1
    assert events[0]["medication_id"] == "med-1"
    assert events[0]["taken"] is True


async def test_take_dose_twice_same_day_raises_and_changes_nothing(store, stored_medication):
    await take_dose(store, stored_medication, now=NOW)

    with pytest.raises(AlreadyTakenError):
        await take_dose(store, stored_medication, now=NOW + timedelta(hours=10))

    assert (await _stored(store)).current_supply == 29
    assert len(await store.get_all(DOSE_EVENTS)) == 1


async def test_take_dose_allowed_again_next_day(store, stored_medication):
    await take_dose(store, stored_medication, now=NOW)
    updated = await take_dose(store, stored_medication, now=NOW + timedelta(days=1))
    assert updated.current_supply == 28


async def test_skip_event_does_not_block_take(store, stored_medication):
    await DoseLedger(store).record("med-1", False, NOW)
    updated = await take_dose(store, "med-1", now=NOW)
    assert updated.current_supply == 29


async def test_take_dose_never_goes_negative(store, make_medication):
    await store.put(MEDICATIONS, make_medication(current_supply=0, total_supply=10).to_record())

    updated = await take_dose(store, "med-1", now=NOW)

    assert updated.current_supply == 0
    assert len(await store.get_all(DOSE_EVENTS)) == 1


async def test_take_dose_rereads_stale_medication(store, stored_medication):
    """A stale in-memory copy must not overwrite the stored supply."""
    stale = stored_medication.model_copy(update={"current_supply": 3})

    updated = await take_dose(store, stale, now=NOW)

    assert updated.current_supply == 29


async def test_take_dose_unknown_medication(store):
    with pytest.raises(MedicationNotFoundError):
        await take_dose(store, "missing", now=NOW)
    assert await store.get_all(DOSE_EVENTS) == []


async def test_take_dose_uses_ledger_timezone_for_today(store, stored_medication):
    from zoneinfo import ZoneInfo

    ledger = DoseLedger(store, ZoneInfo("Asia/Tokyo"))
    # 14:00 UTC Jan 5 and 16:00 UTC Jan 5 are Jan 5 23:00 and Jan 6 01:00 in Tokyo.
    await take_dose(store, "med-1", ledger=ledger, now=datetime(2024, 1, 5, 14, tzinfo=UTC))
    updated = await take_dose(
        store, "med-1", ledger=ledger, now=datetime(2024, 1, 5, 16, tzinfo=UTC)
    )
    assert updated.current_supply == 28


async def test_scenario_twenty_five_days_reaches_low(store, stored_medication):
    assert supply_tier(stored_medication) is SupplyTier.GOOD

    for day in range(25):
        med = await take_dose(store, "med-1", now=NOW + timedelta(days=day))

    assert med.current_supply == 5
    assert supply_tier(med) is SupplyTier.LOW
    assert len(await store.get_all(DOSE_EVENTS)) == 25


async def test_refill_alert_scheduled_when_crossing_into_low(store, make_medication, notifier):
    med = make_medication(current_supply=7, total_supply=30, refill_reminder_enabled=True)
    await store.put(MEDICATIONS, med.to_record())

    await take_dose(store, "med-1", now=NOW, notifier=notifier)  # 6/30 = 20% -> LOW
    await take_dose(store, "med-1", now=NOW + timedelta(days=1), notifier=notifier)

    notifier.schedule_refill_reminder.assert_awaited_once_with("med-1")


async def test_no_refill_alert_when_disabled(store, make_medication, notifier):
    med = make_medication(current_supply=7, total_supply=30, refill_reminder_enabled=False)
    await store.put(MEDICATIONS, med.to_record())

    await take_dose(store, "med-1", now=NOW, notifier=notifier)

    notifier.schedule_refill_reminder.assert_not_awaited()


# ---------------------------------------------------------------------------
# undo_dose
# ---------------------------------------------------------------------------


async def test_take_then_undo_round_trip(store, stored_medication):
    before = (await _stored(store)).current_supply

    await take_dose(store, "med-1", now=NOW)
    restored = await undo_dose(store, "med-1")

    assert restored.current_supply == before
    assert await store.get_all(DOSE_EVENTS) == []


async def test_undo_then_take_again_same_day(store, stored_medication):
    await take_dose(store, "med-1", now=NOW)
    await undo_dose(store, "med-1")
    updated = await take_dose(store, "med-1", now=NOW + timedelta(minutes=5))
    assert updated.current_supply == 29


async def test_undo_without_dose_raises_nothing_to_undo(store, stored_medication):
    with pytest.raises(NothingToUndoError):
        await undo_dose(store, "med-1")
    assert (await _stored(store)).current_supply == 30


async def test_undo_caps_supply_at_total(store, stored_medication):
    await take_dose(store, "med-1", now=NOW)
    await refill(store, "med-1", now=NOW)

    restored = await undo_dose(store, "med-1")

    assert restored.current_supply == 30
    assert await store.get_all(DOSE_EVENTS) == []


async def test_undo_unknown_medication(store):
    with pytest.raises(MedicationNotFoundError):
        await undo_dose(store, "missing")


# ---------------------------------------------------------------------------
# refill
# ---------------------------------------------------------------------------


async def test_refill_is_idempotent(store, make_medication):
    await store.put(MEDICATIONS, make_medication(current_supply=4).to_record())

    once = await refill(store, "med-1", now=NOW)
    twice = await refill(store, "med-1", now=NOW)

    assert once.current_supply == twice.current_supply == 30
    assert twice.last_refill_date == NOW


async def test_refill_does_not_touch_ledger(store, stored_medication):
    await take_dose(store, "med-1", now=NOW)
    await refill(store, "med-1", now=NOW)
    assert len(await store.get_all(DOSE_EVENTS)) == 1


async def test_supply_stays_bounded_over_mixed_sequence(store, make_medication):
    await store.put(MEDICATIONS, make_medication(current_supply=2, total_supply=3).to_record())
    ops = ["take", "undo", "undo", "take", "take", "take", "take", "refill", "undo", "take"]

    for day, op in enumerate(ops):
        when = NOW + timedelta(days=day)
        try:
            if op == "take":
                med = await take_dose(store, "med-1", now=when)
            elif op == "undo":
                med = await undo_dose(store, "med-1")
            else:
                med = await refill(store, "med-1", now=when)
        except NothingToUndoError:
            med = await _stored(store)
        assert 0 <= med.current_supply <= med.total_supply


# ---------------------------------------------------------------------------
# Compare-and-set retries
# ---------------------------------------------------------------------------


class RacingStore(MemoryStore):
    """Simulates another writer landing a refill between read and write."""

    def __init__(self, races: int) -> None:
        super().__init__()
        self.races = races

    async def put(self, collection: str, item: dict[str, Any], *, expected_version=None) -> int:
        if expected_version is not None and self.races > 0:
            self.races -= 1
            current = await self.get(collection, item["id"])
            current["current_supply"] = current["total_supply"]
            await super().put(collection, current)
        return await super().put(collection, item, expected_version=expected_version)


async def test_supply_update_retries_after_conflict(make_medication):
    store = RacingStore(races=1)
    await store.put(MEDICATIONS, make_medication(current_supply=10).to_record())

    updated = await take_dose(store, "med-1", now=NOW)

    # The refill won the race; the dose is applied on top of it.
    assert updated.current_supply == 29
    assert len(await store.get_all(DOSE_EVENTS)) == 1


async def test_supply_update_gives_up_after_retries(make_medication):
    store = RacingStore(races=10)
    await store.put(MEDICATIONS, make_medication(current_supply=10).to_record())

    with pytest.raises(CASConflictError):
        await take_dose(store, "med-1", now=NOW, cas_retries=2)

    # The ledger entry was written first and survives.
    assert len(await store.get_all(DOSE_EVENTS)) == 1


# ---------------------------------------------------------------------------
# Overlapping takes
# ---------------------------------------------------------------------------


class OverlappingTakeStore(MemoryStore):
    """Lets a second take run just before the first one's ledger entry lands."""

    def __init__(self) -> None:
        super().__init__()
        self.overlap: Any = None

    async def put(self, collection: str, item: dict[str, Any], *, expected_version=None) -> int:
        if collection == DOSE_EVENTS and self.overlap is not None:
            other, self.overlap = self.overlap, None
            await other()
        return await super().put(collection, item, expected_version=expected_version)


async def test_overlapping_takes_record_one_dose(make_medication):
    store = OverlappingTakeStore()
    await store.put(MEDICATIONS, make_medication(current_supply=10, total_supply=10).to_record())
    store.overlap = lambda: take_dose(store, "med-1", now=NOW + timedelta(minutes=1))

    with pytest.raises(AlreadyTakenError):
        await take_dose(store, "med-1", now=NOW)

    events = await store.get_all(DOSE_EVENTS)
    assert len(events) == 1
    assert (await _stored(store)).current_supply == 9


# ---------------------------------------------------------------------------
# load
# ---------------------------------------------------------------------------


async def test_load_returns_fresh_collections(store, stored_medication):
    await take_dose(store, "med-1", now=NOW)

    medications, events = await load(store)

    assert [m.id for m in medications] == ["med-1"]
    assert medications[0].current_supply == 29
    assert [e.medication_id for e in events] == ["med-1"]
    assert events[0].timestamp.date() == date(2024, 1, 5)
