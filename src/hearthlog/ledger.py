"""
The occurrence action ledger.

Entries are appended, never edited. For every (item id, occurrence) key
the ledger keeps an index entry pointing at the most recent action, so
reads never scan the whole log.
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Iterator

from hearthlog.item import OccurrenceAction
from hearthlog.shared import fmt_utc_z


@dataclass(frozen=True)
class ItemStats:
    """Per-item tallies over the active action of each occurrence."""

    item_id: str
    completed_count: int = 0
    postponed_count: int = 0
    cancelled_count: int = 0
    reopened_count: int = 0
    total_actions: int = 0
    last_completed_at: datetime | None = None


class OccurrenceLedger:
    def __init__(self, entries: Iterable[OccurrenceAction] = ()):
        self._entries: dict[str, OccurrenceAction] = {}
        # (item_id, occurrence key) -> id of the latest entry
        self._latest: dict[tuple[str, str], str] = {}
        self._keys_by_item: dict[str, set[str]] = defaultdict(set)
        self._count = 0
        for entry in entries:
            self.add(entry)

    @classmethod
    def from_store(cls, store, item_id: str | None = None) -> "OccurrenceLedger":
        """Build a ledger view from a ``LedgerStore``."""
        if item_id is None:
            return cls(store.list_all())
        return cls(store.list_for_item(item_id))

    def add(self, entry: OccurrenceAction) -> OccurrenceAction:
        """
        Index ``entry``. It becomes the active action for its key unless the
        current one is newer (last write wins by ``created_at`` then ``seq``).
        Entries without a store-assigned ``seq`` are ordered by arrival.
        """
        if entry.seq is None:
            entry.seq = self._count
        self._count += 1
        self._entries[entry.id] = entry
        key = entry.key
        current_id = self._latest.get(key)
        if current_id is None or self._entries[current_id].order <= entry.order:
            self._latest[key] = entry.id
        self._keys_by_item[entry.item_id].add(key[1])
        return entry

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[OccurrenceAction]:
        return iter(sorted(self._entries.values(), key=lambda e: e.order))

    def active(self, item_id: str, occurrence_at: datetime) -> OccurrenceAction | None:
        """The action currently in force for one occurrence, if any."""
        entry_id = self._latest.get((item_id, fmt_utc_z(occurrence_at)))
        if entry_id is None:
            return None
        return self._entries[entry_id]

    def active_for_item(self, item_id: str) -> list[OccurrenceAction]:
        """Active actions of an item, ordered by occurrence instant."""
        actions = [
            self._entries[self._latest[(item_id, key)]]
            for key in self._keys_by_item.get(item_id, ())
        ]
        return sorted(actions, key=lambda a: a.occurrence_at)

    def history(
        self, item_id: str, occurrence_at: datetime | None = None
    ) -> list[OccurrenceAction]:
        """Every entry of an item (or of one occurrence), oldest first."""
        key = fmt_utc_z(occurrence_at) if occurrence_at is not None else None
        return [
            e
            for e in self
            if e.item_id == item_id and (key is None or e.key[1] == key)
        ]

    def postponements(self, item_id: str) -> list[OccurrenceAction]:
        """Active postponements of an item that name a target instant."""
        return [
            a
            for a in self.active_for_item(item_id)
            if a.kind == "postponed" and a.postponed_to is not None
        ]

    def is_postponed_target(self, item_id: str, instant: datetime) -> bool:
        key = fmt_utc_z(instant)
        return any(fmt_utc_z(a.postponed_to) == key for a in self.postponements(item_id))

    def item_ids(self) -> set[str]:
        return {item_id for item_id, keys in self._keys_by_item.items() if keys}

    def stats(self, item_id: str) -> ItemStats:
        counts: dict[str, int] = defaultdict(int)
        last_completed = None
        for action in self.active_for_item(item_id):
            counts[action.kind] += 1
            if action.kind == "completed" and (
                last_completed is None or action.created_at > last_completed
            ):
                last_completed = action.created_at
        return ItemStats(
            item_id=item_id,
            completed_count=counts["completed"],
            postponed_count=counts["postponed"],
            cancelled_count=counts["cancelled"],
            reopened_count=counts["reopened"],
            total_actions=len(self.history(item_id)),
            last_completed_at=last_completed,
        )
