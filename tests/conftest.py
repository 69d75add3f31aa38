"""Shared test fixtures for the medminder test suite."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, date, datetime
from typing import Any
from unittest.mock import AsyncMock

import pytest

from medminder.core.store import MEDICATIONS, MemoryStore
from medminder.models import ONGOING, DoseEvent, Medication


def _utc(*args: int) -> datetime:
    """Shorthand for an aware UTC datetime."""
    return datetime(*args, tzinfo=UTC)


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def make_medication() -> Callable[..., Medication]:
    """Factory for Medication models with sensible defaults."""

    def _make(**overrides: Any) -> Medication:
        fields: dict[str, Any] = {
            "id": "med-1",
            "name": "Amoxicillin",
            "dosage": "500mg",
            "frequency": "Twice daily",
            "schedule": ["09:00", "21:00"],
            "start_date": date(2024, 1, 1),
            "duration_days": ONGOING,
            "current_supply": 30,
            "total_supply": 30,
            "refill_threshold": 20,
        }
        fields.update(overrides)
        return Medication.model_validate(fields)

    return _make


@pytest.fixture
def make_event() -> Callable[..., DoseEvent]:
    counter = iter(range(1, 10_000))

    def _make(medication_id: str = "med-1", timestamp: datetime | None = None, **kw: Any):
        return DoseEvent(
            id=f"evt-{next(counter)}",
            medication_id=medication_id,
            timestamp=timestamp or _utc(2024, 1, 1, 9, 0),
            **kw,
        )

    return _make


@pytest.fixture
async def stored_medication(store, make_medication) -> Medication:
    """A medication already persisted in the in-memory store."""
    med = make_medication()
    await store.put(MEDICATIONS, med.to_record())
    return med


@pytest.fixture
def notifier() -> AsyncMock:
    """A mock notification capability recording scheduled reminders."""
    mock = AsyncMock()
    mock.schedule_reminder = AsyncMock(side_effect=lambda mid, t: f"{mid}@{t:%H:%M}")
    mock.schedule_refill_reminder = AsyncMock(side_effect=lambda mid: f"{mid}@refill")
    return mock
