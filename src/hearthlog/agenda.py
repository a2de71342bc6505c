"""
Agenda grouping and the auto-archive policy.

Every active item contributes its relevant occurrence (plus any
occurrences moved by a postponement) to exactly one bucket:

    Overdue, Today, Tomorrow, Upcoming[date], Completed

Completed and cancelled occurrences dated before the start of the current
week (Monday 00:00, in the zone of ``now``) are hidden.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, time
from typing import Iterable

from hearthlog.errors import InvalidRuleError
from hearthlog.item import DONE_STATUSES, Item, Occurrence, OccurrenceStatus
from hearthlog.ledger import OccurrenceLedger
from hearthlog.recurrence import RuleHandle, handle_for, is_occurrence
from hearthlog.shared import (
    UTC,
    fmt_utc_z,
    log_msg,
    normalize_instant,
    start_of_week,
)
from hearthlog.status import next_pending, resolve

DEFAULT_LOOKBACK = timedelta(weeks=4)


@dataclass
class AgendaEntry:
    item: Item
    instant: datetime | None
    status: OccurrenceStatus = "pending"
    postponed_from: datetime | None = None
    fault: str | None = None

    @property
    def occurrence(self) -> Occurrence:
        return Occurrence(self.item.id, self.instant)

    @property
    def key(self) -> str | None:
        return self.occurrence.key


@dataclass
class Agenda:
    now: datetime
    week_start: datetime
    overdue: list[AgendaEntry] = field(default_factory=list)
    today: list[AgendaEntry] = field(default_factory=list)
    tomorrow: list[AgendaEntry] = field(default_factory=list)
    upcoming: dict[date, list[AgendaEntry]] = field(default_factory=dict)
    completed: list[AgendaEntry] = field(default_factory=list)
    # completed/cancelled occurrences hidden by the auto-archive rule
    archived: int = 0

    def buckets(self) -> list[tuple[str, list[AgendaEntry]]]:
        """Non-empty buckets in display order, upcoming days by date."""
        named = [
            ("Overdue", self.overdue),
            ("Today", self.today),
            ("Tomorrow", self.tomorrow),
            *[(day.isoformat(), self.upcoming[day]) for day in sorted(self.upcoming)],
            ("Completed", self.completed),
        ]
        return [(name, entries) for name, entries in named if entries]

    def entries(self) -> list[AgendaEntry]:
        return [entry for _, entries in self.buckets() for entry in entries]

    def bucket_of(self, item_id: str, instant: datetime | None = None) -> str | None:
        """Name of the bucket that shows ``item_id`` (at ``instant``), if any."""
        key = fmt_utc_z(instant) if instant is not None else None
        for name, entries in self.buckets():
            for entry in entries:
                if entry.item.id == item_id and (key is None or entry.key == key):
                    return name
        return None

    def progress(self) -> dict:
        entries = self.entries()
        total = len(entries)
        completed = len([e for e in entries if e.status in DONE_STATUSES])
        percentage = (completed * 100 + total // 2) // total if total else 0
        return {
            "total": total,
            "completed": completed,
            "pending": total - completed,
            "percentage": percentage,
        }


def _sort_key(entry: AgendaEntry):
    if entry.instant is None:
        return (1, datetime.max.replace(tzinfo=UTC), entry.item.title)
    return (0, entry.instant, entry.item.title)


def _place(agenda: Agenda, entry: AgendaEntry, today: date, buckets: dict):
    if entry.status in DONE_STATUSES:
        if entry.instant is not None and entry.instant < agenda.week_start:
            agenda.archived += 1
            return
        agenda.completed.append(entry)
        return
    if entry.status != "pending":
        # postponed away: shown at its target, if any
        return
    if entry.instant is None:
        agenda.today.append(entry)
        return
    day = entry.instant.astimezone(agenda.now.tzinfo).date()
    if day == today:
        agenda.today.append(entry)
    elif entry.instant < agenda.now:
        agenda.overdue.append(entry)
    elif day == today + timedelta(days=1):
        agenda.tomorrow.append(entry)
    else:
        buckets[day].append(entry)


def _relevant_occurrence(
    item: Item,
    handle: RuleHandle,
    ledger: OccurrenceLedger,
    now: datetime,
    tomorrow_start: datetime,
    week_start: datetime,
    lookback: timedelta,
) -> AgendaEntry | None:
    """
    The one natural occurrence of a repeating item that the agenda shows.

    ``latest`` is the most recent occurrence before tomorrow that somebody
    acted on and ``upcoming`` the first one after it still pending.
    ``upcoming`` wins when it is due by the end of today; otherwise the last
    acted-on occurrence stays in front if it was completed this week, even
    one completed ahead of time.
    """
    acted = [
        a
        for a in ledger.active_for_item(item.id)
        if a.kind != "reopened" and is_occurrence(handle, a.occurrence_at)
    ]
    past = [a for a in acted if a.occurrence_at < tomorrow_start]
    latest = past[-1] if past else None
    window_start = max(item.rule.anchor, normalize_instant(now - lookback))
    if latest is not None and latest.occurrence_at >= window_start:
        upcoming = next_pending(item, latest.occurrence_at, ledger, inclusive=False)
    else:
        upcoming = next_pending(item, window_start, ledger)

    if upcoming is not None and upcoming < tomorrow_start:
        return AgendaEntry(item, upcoming)
    last = acted[-1] if acted else None
    if (
        last is not None
        and last.kind in DONE_STATUSES
        and (upcoming is None or last.occurrence_at >= week_start)
    ):
        return AgendaEntry(item, last.occurrence_at, last.kind)
    if upcoming is not None:
        return AgendaEntry(item, upcoming)
    return None


def build_agenda(
    items: Iterable[Item],
    ledger: OccurrenceLedger,
    now: datetime,
    week_start: datetime | None = None,
    lookback: timedelta | None = None,
) -> Agenda:
    """
    Group ``items`` into agenda buckets as seen at ``now``.

    Day boundaries follow the zone of ``now`` (naive values are taken as
    UTC). A repeating item whose rule cannot be parsed is listed under
    Today with ``fault`` set; the others are unaffected.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    if week_start is None:
        week_start = start_of_week(now)
    lookback = lookback if lookback is not None else DEFAULT_LOOKBACK
    today = now.date()
    tomorrow_start = datetime.combine(
        today + timedelta(days=1), time(0, 0), tzinfo=now.tzinfo
    )
    agenda = Agenda(now=now, week_start=week_start)
    upcoming: dict[date, list[AgendaEntry]] = defaultdict(list)

    for item in items:
        if item.status == "archived":
            continue
        if not item.is_recurring:
            anchor = item.anchor
            entry = AgendaEntry(item, anchor, resolve(item, anchor, ledger))
            _place(agenda, entry, today, upcoming)
            continue

        try:
            handle = handle_for(item)
        except InvalidRuleError as e:
            log_msg(f"agenda: {item.id} ({item.title}): {e.message}")
            agenda.today.append(AgendaEntry(item, None, fault=e.message))
            continue

        shown = set()
        entry = _relevant_occurrence(
            item, handle, ledger, now, tomorrow_start, week_start, lookback
        )
        if entry is not None:
            shown.add(entry.key)
            _place(agenda, entry, today, upcoming)

        # occurrences moved here by a postponement
        for action in ledger.postponements(item.id):
            target = action.postponed_to
            key = fmt_utc_z(target)
            if key in shown:
                continue
            state = resolve(item, target, ledger)
            if state == "pending" and target < normalize_instant(now - lookback):
                continue
            shown.add(key)
            _place(
                agenda,
                AgendaEntry(item, target, state, postponed_from=action.occurrence_at),
                today,
                upcoming,
            )

    for bucket in (agenda.overdue, agenda.today, agenda.tomorrow):
        bucket.sort(key=_sort_key)
    agenda.upcoming = {day: sorted(upcoming[day], key=_sort_key) for day in sorted(upcoming)}
    agenda.completed = _descending(agenda.completed)
    return agenda


def _descending(entries: list[AgendaEntry]) -> list[AgendaEntry]:
    dated = sorted(
        (e for e in entries if e.instant is not None),
        key=lambda e: e.instant,
        reverse=True,
    )
    return dated + [e for e in entries if e.instant is None]
