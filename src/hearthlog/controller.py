from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, Literal

from hearthlog.agenda import Agenda, build_agenda
from hearthlog.errors import (
    CascadeFailure,
    InvalidTransitionError,
    ItemNotFoundError,
    StaleWriteWarning,
    UnsupportedPostponeKindError,
)
from hearthlog.hearthlog_env import HearthlogConfig, HearthlogEnvironment
from hearthlog.item import (
    DONE_STATUSES,
    POSTPONE_KINDS,
    ActionKind,
    Item,
    OccurrenceAction,
    PostponeKind,
    utc_now,
)
from hearthlog.ledger import ItemStats, OccurrenceLedger
from hearthlog.model import DatabaseManager, ItemStore, LedgerStore
from hearthlog.notify import LogNotifier, Notifier, needs_notice
from hearthlog.recurrence import handle_for, is_occurrence, next_occurrence
from hearthlog.shared import (
    fmt_utc_z,
    get_local_tz,
    local_now,
    log_msg,
    normalize_instant,
    parse_timestamp,
    td_str_to_td,
    with_time_of,
)
from hearthlog import status as occurrence_status


@dataclass
class ActionResult:
    """
    Outcome of a write. ``kind`` tells whether a ledger entry was written
    ("occurrence") or the item itself was changed ("item"). ``duplicate``
    is set when the request repeated the state already in force and
    nothing was written.
    """

    item: Item
    kind: Literal["occurrence", "item"]
    action: OccurrenceAction | None = None
    postponed_to: datetime | None = None
    duplicate: bool = False


class Controller:
    """
    The write side of the engine: completing, cancelling, postponing and
    reopening occurrences, and deleting items along with their ledger.
    """

    def __init__(
        self,
        items: ItemStore,
        ledger_store: LedgerStore,
        env: HearthlogEnvironment | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.items = items
        self.ledger_store = ledger_store
        self.env = env
        self.config = env.config if env else HearthlogConfig()
        self.zone = get_local_tz(self.config.ui.timezone)
        self.lookback = td_str_to_td(self.config.agenda.lookback)
        self.strict_writes = self.config.ledger.strict_writes
        self.notifications = self.config.notifications.enabled
        self.notifier = notifier if notifier is not None else LogNotifier()
        self.clock = clock or utc_now

    @classmethod
    def from_database(
        cls, database_path: str, env: HearthlogEnvironment, reset: bool = False, **kwargs
    ) -> "Controller":
        db_manager = DatabaseManager(database_path, env, reset=reset)
        return cls(db_manager, db_manager, env=env, **kwargs)

    # ─── reads ──────────────────────────────────────────────

    def ledger(self, item_id: str | None = None) -> OccurrenceLedger:
        """A fresh ledger view; every call sees all writes made so far."""
        return OccurrenceLedger.from_store(self.ledger_store, item_id)

    def get_item(self, item_id: str) -> Item:
        item = self.items.get(item_id)
        if item is None:
            raise ItemNotFoundError(item_id)
        return item

    def status(self, item_id: str, occurrence_at: datetime | None):
        return occurrence_status.resolve_by_id(
            item_id, occurrence_at, self.items, self.ledger(item_id)
        )

    def next_pending(self, item_id: str, after: datetime | None = None):
        item = self.get_item(item_id)
        after = after if after is not None else self.clock()
        return occurrence_status.next_pending(item, after, self.ledger(item_id))

    def history(self, item_id: str) -> list[OccurrenceAction]:
        return self.ledger(item_id).history(item_id)

    def stats(self, item_id: str) -> ItemStats:
        return self.ledger(item_id).stats(item_id)

    def get_agenda(self, now: datetime | None = None) -> Agenda:
        now = now if now is not None else local_now(self.zone)
        return build_agenda(
            self.items.list(), self.ledger(), now, lookback=self.lookback
        )

    # ─── writes ─────────────────────────────────────────────

    def add_item(self, item: Item) -> Item:
        if item.is_recurring:
            handle_for(item)  # raises InvalidRuleError before anything is stored
        return self.items.add(item)

    def complete(
        self,
        item: Item | str,
        occurrence_at: datetime | None = None,
        reason: str | None = None,
        *,
        acting_user_id: str | None = None,
        reassign_to: str | None = None,
        observed_at: datetime | None = None,
    ) -> ActionResult:
        return self._finish(
            "completed", item, occurrence_at, reason, acting_user_id, reassign_to, observed_at
        )

    def cancel(
        self,
        item: Item | str,
        occurrence_at: datetime | None = None,
        reason: str | None = None,
        *,
        acting_user_id: str | None = None,
        reassign_to: str | None = None,
        observed_at: datetime | None = None,
    ) -> ActionResult:
        return self._finish(
            "cancelled", item, occurrence_at, reason, acting_user_id, reassign_to, observed_at
        )

    def reopen(
        self,
        item: Item | str,
        occurrence_at: datetime | None = None,
        reason: str | None = None,
        *,
        acting_user_id: str | None = None,
        observed_at: datetime | None = None,
    ) -> ActionResult:
        """Undo a completion or cancellation (or a postponement)."""
        return self._finish(
            "reopened", item, occurrence_at, reason, acting_user_id, None, observed_at
        )

    def postpone(
        self,
        item: Item | str,
        occurrence_at: datetime | None = None,
        kind: PostponeKind = "next_occurrence",
        reason: str | None = None,
        target: datetime | date | None = None,
        *,
        acting_user_id: str | None = None,
        reassign_to: str | None = None,
        observed_at: datetime | None = None,
    ) -> ActionResult:
        """
        Move one occurrence.

        For a repeating item a ``postponed`` entry is appended and the rule is
        left alone; ``next_occurrence`` skips the occurrence, ``tomorrow`` and
        ``custom`` also schedule it again at a new instant. A one-off item is
        rescheduled in place and no ledger entry is written.
        """
        if kind == "ai_slot" or kind not in POSTPONE_KINDS:
            raise UnsupportedPostponeKindError(kind)
        item = self._load(item)
        base = self._occurrence_of(item, occurrence_at)

        if not item.is_recurring:
            if kind == "next_occurrence":
                raise InvalidTransitionError(
                    item.id, "Only repeating items have a next occurrence"
                )
            if item.status in DONE_STATUSES:
                raise InvalidTransitionError(
                    item.id, f"A {item.status} item must be reopened before postponing"
                )
            new_target = self._postpone_target(item, base, kind, target)
            self._check_stale_item(item, observed_at)
            if item.anchor == new_target:
                return ActionResult(item, "item", postponed_to=new_target, duplicate=True)
            item = self.items.update(item.id, **item.moved_to(new_target))
            note = f": {reason}" if reason else ""
            log_msg(f"moved {item.id} ({item.title}) to {fmt_utc_z(new_target)}{note}")
            item = self._reassign(item, acting_user_id, reassign_to)
            return ActionResult(item, "item", postponed_to=new_target)

        handle = handle_for(item)
        new_target = None
        if kind != "next_occurrence":
            new_target = self._postpone_target(item, base, kind, target)
        entry, duplicate = self._record(
            item,
            base,
            "postponed",
            reason=reason,
            postpone_kind=kind,
            postponed_to=new_target,
            acting_user_id=acting_user_id,
            observed_at=observed_at,
        )
        if not duplicate:
            item = self._reassign(item, acting_user_id, reassign_to)
        return ActionResult(
            item,
            "occurrence",
            action=entry,
            postponed_to=new_target or next_occurrence(handle, base),
            duplicate=duplicate,
        )

    def delete(self, item: Item | str) -> int:
        """
        Delete an item, then every ledger entry that refers to it. Returns
        the number of entries purged.
        """
        item_id = item.id if isinstance(item, Item) else item
        deleted = self.items.delete(item_id)
        try:
            purged = self.ledger_store.purge_item(item_id)
        except Exception as e:
            log_msg(f"item {item_id} deleted but purging its ledger failed: {e!r}")
            raise CascadeFailure(item_id, e) from e
        if not deleted and not purged:
            raise ItemNotFoundError(item_id)
        log_msg(f"deleted {item_id} ({purged} occurrence actions)")
        return purged

    def repair_orphans(self) -> int:
        """Purge ledger entries left behind by an interrupted delete."""
        removed = 0
        orphans = {e.item_id for e in self.ledger_store.list_all()}
        for item_id in sorted(orphans):
            if self.items.get(item_id) is None:
                removed += self.ledger_store.purge_item(item_id)
        if removed:
            log_msg(f"removed {removed} orphaned occurrence actions")
        return removed

    # ─── helpers ────────────────────────────────────────────

    def _load(self, item: Item | str) -> Item:
        item_id = item.id if isinstance(item, Item) else item
        found = self.get_item(item_id)
        if found.status == "archived":
            raise InvalidTransitionError(item_id, f"Item {item_id} is archived")
        return found

    def _occurrence_of(self, item: Item, occurrence_at: datetime | None) -> datetime:
        if occurrence_at is not None:
            return normalize_instant(occurrence_at)
        if item.is_recurring:
            raise InvalidTransitionError(
                item.id, "An occurrence instant is required for a repeating item"
            )
        return item.anchor

    def _zone_for(self, item: Item):
        if item.rule and item.rule.timezone:
            return get_local_tz(item.rule.timezone)
        return self.zone

    def _postpone_target(
        self, item: Item, base: datetime | None, kind: str, target
    ) -> datetime:
        if kind == "tomorrow":
            if base is None:
                raise InvalidTransitionError(item.id, f"{item.title!r} has no date to move")
            new_target = base + timedelta(hours=24)
        elif target is None:
            raise ValueError("A custom postponement needs a target date or datetime")
        elif isinstance(target, datetime):
            new_target = normalize_instant(target)
        elif isinstance(target, date):
            if base is None:
                raise ValueError(f"{item.title!r} has no time to carry over; give a datetime")
            new_target = normalize_instant(with_time_of(target, base, self._zone_for(item)))
        else:
            raise TypeError(f"Expected a date or datetime target, got {target!r}")
        if new_target == base:
            raise InvalidTransitionError(
                item.id, "The target is the occurrence being postponed"
            )
        return new_target

    def _finish(
        self,
        kind: ActionKind,
        item: Item | str,
        occurrence_at: datetime | None,
        reason: str | None,
        acting_user_id: str | None,
        reassign_to: str | None,
        observed_at: datetime | None,
    ) -> ActionResult:
        item = self._load(item)
        instant = self._occurrence_of(item, occurrence_at)

        if not item.is_recurring:
            new_status = "pending" if kind == "reopened" else kind
            self._check_stale_item(item, observed_at)
            already = item.status == new_status or (
                new_status == "pending" and item.status not in DONE_STATUSES
            )
            if already:
                return ActionResult(item, "item", duplicate=True)
            item = self.items.update(item.id, status=new_status)
            note = f": {reason}" if reason else ""
            log_msg(f"{item.id} ({item.title}) is now {new_status}{note}")
            item = self._reassign(item, acting_user_id, reassign_to)
            return ActionResult(item, "item")

        entry, duplicate = self._record(
            item,
            instant,
            kind,
            reason=reason,
            acting_user_id=acting_user_id,
            observed_at=observed_at,
        )
        if not duplicate:
            item = self._reassign(item, acting_user_id, reassign_to)
        return ActionResult(item, "occurrence", action=entry, duplicate=duplicate)

    def _record(
        self,
        item: Item,
        instant: datetime,
        kind: ActionKind,
        reason: str | None = None,
        postpone_kind: PostponeKind | None = None,
        postponed_to: datetime | None = None,
        acting_user_id: str | None = None,
        observed_at: datetime | None = None,
    ) -> tuple[OccurrenceAction | None, bool]:
        handle = handle_for(item)
        ledger = self.ledger(item.id)
        active = ledger.active(item.id, instant)
        if not (
            active is not None
            or is_occurrence(handle, instant)
            or ledger.is_postponed_target(item.id, instant)
        ):
            raise InvalidTransitionError(
                item.id,
                f"{fmt_utc_z(instant)} is not an occurrence of {item.title!r}",
            )
        self._check_stale(item, instant, active, observed_at)

        if active is None and kind == "reopened":
            return None, True
        if (
            active is not None
            and active.kind == kind
            and _same_instant(active.postponed_to, postponed_to)
        ):
            return active, True

        entry = OccurrenceAction(
            item_id=item.id,
            occurrence_at=instant,
            kind=kind,
            reason=reason,
            postpone_kind=postpone_kind,
            postponed_to=postponed_to,
            created_at=self.clock(),
            created_by=acting_user_id,
        )
        entry = self.ledger_store.append(entry)
        log_msg(f"{item.id}@{fmt_utc_z(instant)} {kind}")
        return entry, False

    def _check_stale(
        self,
        item: Item,
        instant: datetime,
        active: OccurrenceAction | None,
        observed_at: datetime | None,
    ):
        if observed_at is None or active is None:
            return
        observed = parse_timestamp(observed_at)
        if active.created_at <= observed:
            return
        self._stale(item.id, fmt_utc_z(instant), observed, active.created_at)

    def _check_stale_item(self, item: Item, observed_at: datetime | None):
        if observed_at is None:
            return
        observed = parse_timestamp(observed_at)
        if item.updated_at > observed:
            self._stale(item.id, "item", observed, item.updated_at)

    def _stale(self, item_id: str, key: str, observed: datetime, latest: datetime):
        if self.strict_writes:
            raise StaleWriteWarning(item_id, key, observed.isoformat(), latest.isoformat())
        log_msg(
            f"stale write on {item_id}@{key}: based on {observed.isoformat()}, "
            f"replacing the action recorded at {latest.isoformat()}"
        )

    def _reassign(
        self, item: Item, acting_user_id: str | None, reassign_to: str | None
    ) -> Item:
        if not reassign_to or reassign_to == item.responsible_user_id:
            return item
        previous = item.responsible_user_id
        item = self.items.update(item.id, responsible_user_id=reassign_to)
        if self.notifications and needs_notice(reassign_to, previous, acting_user_id):
            try:
                self.notifier.notify_assignment(
                    item.id,
                    item.title,
                    item.type,
                    reassign_to,
                    previous,
                    acting_user_id,
                )
            except Exception as e:
                log_msg(f"assignment notice for {item.id} failed: {e!r}")
        return item


def _same_instant(a: datetime | None, b: datetime | None) -> bool:
    if a is None or b is None:
        return a is b
    return fmt_utc_z(a) == fmt_utc_z(b)
