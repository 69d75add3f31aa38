"""Error taxonomy for the medication engine.

Callers branch on these types:

- ``ValidationError`` — malformed add/update input, shown to the user for
  correction.
- ``AlreadyTakenError`` / ``NothingToUndoError`` — expected, recoverable
  conditions surfaced as no-ops or user messages.
- ``PersistenceError`` — the underlying store failed; the mutation must not be
  assumed to have happened.
- ``NotificationSchedulingError`` — reminder scheduling failed; logged and
  swallowed by the reminder helpers.
"""

from __future__ import annotations

from typing import Any


class MedminderError(Exception):
    """Base class for all engine errors."""


class ValidationError(MedminderError):
    """Raised when medication input fails validation.

    Attributes:
        errors: Mapping of field name to a human-readable message.
    """

    def __init__(self, errors: dict[str, str]) -> None:
        self.errors = dict(errors)
        detail = "; ".join(f"{field}: {msg}" for field, msg in sorted(self.errors.items()))
        super().__init__(f"Invalid medication: {detail}")


class MedicationNotFoundError(MedminderError):
    """Raised when a medication id does not resolve to a stored record."""

    def __init__(self, medication_id: str) -> None:
        self.medication_id = medication_id
        super().__init__(f"Medication {medication_id} not found")


class DoseNotFoundError(MedminderError):
    """Raised by the ledger when no taken dose exists for a medication."""

    def __init__(self, medication_id: str) -> None:
        self.medication_id = medication_id
        super().__init__(f"No taken dose recorded for medication {medication_id}")


class AlreadyTakenError(MedminderError):
    """Raised when a dose was already taken today for the medication."""

    def __init__(self, medication_id: str, day: Any) -> None:
        self.medication_id = medication_id
        self.day = day
        super().__init__(f"Dose for medication {medication_id} already taken on {day}")


class NothingToUndoError(MedminderError):
    """Raised when undo is requested but the ledger has no taken dose."""

    def __init__(self, medication_id: str) -> None:
        self.medication_id = medication_id
        super().__init__(f"Nothing to undo for medication {medication_id}")


class PersistenceError(MedminderError):
    """Raised when the underlying store fails to read or write."""


class CASConflictError(PersistenceError):
    """Raised by a compare-and-set write when the expected version does not match.

    Attributes:
        collection: The collection holding the record.
        record_id: The id of the record involved in the conflict.
        expected_version: The version the caller expected.
        actual_version: The version found in the store (or None if absent).
    """

    def __init__(
        self,
        collection: str,
        record_id: str,
        expected_version: int,
        actual_version: int | None,
    ) -> None:
        self.collection = collection
        self.record_id = record_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"CAS conflict on {collection}/{record_id}: expected version {expected_version}, "
            f"got {actual_version!r}"
        )


class NotificationSchedulingError(MedminderError):
    """Raised by a notifier when a reminder could not be scheduled."""
