"""
Occurrence status resolution.

A non-recurring item carries its own status. A recurring item never does:
each occurrence is pending unless the ledger holds an action for it.
"""

from datetime import datetime

from hearthlog.errors import InvalidRuleError
from hearthlog.item import Item, OccurrenceStatus
from hearthlog.ledger import OccurrenceLedger
from hearthlog.recurrence import handle_for, iter_occurrences
from hearthlog.shared import log_msg, normalize_instant

# ledger action kind -> occurrence status
ACTION_STATUS: dict[str, OccurrenceStatus] = {
    "completed": "completed",
    "cancelled": "cancelled",
    "postponed": "postponed",
    "reopened": "pending",
}

# upper bound on consecutive actioned occurrences skipped by next_pending
MAX_SKIPPED = 10_000


def resolve(
    item: Item, occurrence_at: datetime | None, ledger: OccurrenceLedger
) -> OccurrenceStatus:
    if not item.is_recurring:
        if item.status in ("completed", "cancelled"):
            return item.status
        return "pending"
    if occurrence_at is None:
        return "pending"
    action = ledger.active(item.id, normalize_instant(occurrence_at))
    if action is None:
        return "pending"
    return ACTION_STATUS[action.kind]


def resolve_by_id(
    item_id: str, occurrence_at: datetime | None, items, ledger: OccurrenceLedger
) -> OccurrenceStatus | None:
    """
    Same as ``resolve`` but looks the item up in ``items`` (an ``ItemStore``).
    A deleted item has no occurrences, so ``None`` is returned rather than
    an error.
    """
    item = items.get(item_id)
    if item is None:
        return None
    return resolve(item, occurrence_at, ledger)


def next_pending(
    item: Item, after: datetime, ledger: OccurrenceLedger, inclusive: bool = True
) -> datetime | None:
    """
    The first natural occurrence at (or after) ``after`` that nobody has
    acted on yet. A rule that does not parse is logged and yields ``None``.
    """
    if not item.is_recurring:
        anchor = item.anchor
        if resolve(item, anchor, ledger) != "pending":
            return None
        return anchor
    try:
        handle = handle_for(item)
    except InvalidRuleError as e:
        log_msg(f"skipping {item.id} ({item.title}): {e.message}")
        return None
    occurrences = iter_occurrences(handle, after, limit=MAX_SKIPPED)
    if not inclusive:
        after = normalize_instant(after)
        occurrences = (dt for dt in occurrences if dt > after)
    for instant in occurrences:
        if resolve(item, instant, ledger) == "pending":
            return instant
    return None
