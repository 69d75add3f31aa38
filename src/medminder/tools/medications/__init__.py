"""Medication tools — schedule resolution, dose ledger, supply and progress.

Re-exports all public symbols so callers can ``from medminder.tools.medications
import X`` without knowing which submodule defines it.
"""

from medminder.tools.medications.ledger import DoseLedger
from medminder.tools.medications.progress import (
    daily_progress,
    day_view,
    is_taken,
    month_overview,
    needs_refill,
    recompute,
    supply_percentage,
    supply_tier,
    todays_medications,
)
from medminder.tools.medications.registry import (
    DURATIONS,
    FREQUENCIES,
    add_medication,
    delete_medication,
    get_medication,
    list_medications,
    modify_medication,
    parse_duration,
    parse_time,
    update_schedule,
    validate_medication,
)
from medminder.tools.medications.schedule import as_day, end_date, is_active_on, local_day
from medminder.tools.medications.supply import (
    apply_refill,
    apply_take,
    apply_undo,
    load,
    refill,
    take_dose,
    undo_dose,
)

__all__ = [
    "DURATIONS",
    "FREQUENCIES",
    "DoseLedger",
    "add_medication",
    "apply_refill",
    "apply_take",
    "apply_undo",
    "as_day",
    "daily_progress",
    "day_view",
    "delete_medication",
    "end_date",
    "get_medication",
    "is_active_on",
    "is_taken",
    "list_medications",
    "load",
    "local_day",
    "modify_medication",
    "month_overview",
    "needs_refill",
    "parse_duration",
    "parse_time",
    "recompute",
    "refill",
    "supply_percentage",
    "supply_tier",
    "take_dose",
    "todays_medications",
    "undo_dose",
    "update_schedule",
    "validate_medication",
]
