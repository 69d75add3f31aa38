"""Pydantic models for medications, dose events, and derived views.

Records round-trip through the store as JSON-compatible dicts via
``to_record()`` / ``model_validate()``.
"""

from __future__ import annotations

import enum
from datetime import UTC, date, datetime, time

from pydantic import BaseModel, Field, field_validator

# Sentinel duration for treatments with no end date.
ONGOING = -1


class SupplyTier(enum.IntEnum):
    """Refill urgency, ordered ``LOW < MEDIUM < GOOD``."""

    LOW = 0
    MEDIUM = 1
    GOOD = 2

    @property
    def label(self) -> str:
        return self.name.capitalize()


class Medication(BaseModel):
    """A medication with its treatment window, reminder times and supply."""

    id: str
    name: str
    dosage: str
    frequency: str = ""
    schedule: list[time] = Field(default_factory=list)
    start_date: date
    duration_days: int = ONGOING
    current_supply: int = 0
    total_supply: int = 0
    refill_threshold: int = 0  # percentage of total_supply
    reminder_enabled: bool = True
    refill_reminder_enabled: bool = False
    last_refill_date: datetime | None = None
    notes: str | None = None

    @field_validator("last_refill_date")
    @classmethod
    def _aware_refill_date(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @property
    def is_ongoing(self) -> bool:
        return self.duration_days == ONGOING

    def to_record(self) -> dict:
        """Return the JSON-compatible dict persisted in the store."""
        return self.model_dump(mode="json")


class DoseEvent(BaseModel):
    """A ledger entry: one take (or skip) action at an instant."""

    id: str
    medication_id: str
    timestamp: datetime
    taken: bool = True

    @field_validator("timestamp")
    @classmethod
    def _aware_timestamp(cls, value: datetime) -> datetime:
        # Naive instants are treated as UTC.
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    def to_record(self) -> dict:
        return self.model_dump(mode="json")


class DailyProgress(BaseModel):
    """Completion of the day's expected doses."""

    completed: int
    expected: int
    percentage: float  # 0.0 - 1.0


class MedicationStatus(BaseModel):
    """Per-medication status row for a given day."""

    medication: Medication
    taken: bool
    tier: SupplyTier
    next_reminder: datetime | None = None


class TodayView(BaseModel):
    """View model a host screen renders for one calendar day."""

    day: date
    medications: list[MedicationStatus] = Field(default_factory=list)
    progress: DailyProgress


class CalendarDay(BaseModel):
    """One cell of a month calendar."""

    day: date
    has_doses: bool = False
