import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Literal

from hearthlog.shared import (
    fmt_utc_z,
    normalize_instant,
    parse_instant,
    parse_timestamp,
    UTC,
)

ItemType = Literal["reminder", "event", "task"]
ItemStatus = Literal["pending", "in_progress", "completed", "cancelled", "archived"]
ActionKind = Literal["completed", "cancelled", "postponed", "reopened"]
PostponeKind = Literal["next_occurrence", "tomorrow", "custom", "ai_slot"]
OccurrenceStatus = Literal["pending", "completed", "cancelled", "postponed"]

ITEM_TYPES = ("reminder", "event", "task")
ITEM_STATUSES = ("pending", "in_progress", "completed", "cancelled", "archived")
ACTION_KINDS = ("completed", "cancelled", "postponed", "reopened")
POSTPONE_KINDS = ("next_occurrence", "tomorrow", "custom", "ai_slot")

# statuses that take an occurrence off the agenda at its own instant
DONE_STATUSES = ("completed", "cancelled")


def new_id() -> str:
    return uuid.uuid4().hex


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class RecurrenceRule:
    """
    An RRULE text plus the instant that anchors it (DTSTART). ``until``
    and ``count`` mirror the bounds some callers store next to the rule;
    when present they are folded into the text handed to the parser.
    ``timezone`` names the zone whose wall clock the rule follows (UTC
    when unset).
    """

    rrule: str
    anchor: datetime
    until: datetime | None = None
    count: int | None = None
    timezone: str | None = None

    def __post_init__(self):
        object.__setattr__(self, "anchor", parse_instant(self.anchor))
        if self.until is not None:
            object.__setattr__(self, "until", parse_instant(self.until))

    @property
    def rule_text(self) -> str:
        text = self.rrule.strip()
        upper = text.upper()
        if self.until is not None and "UNTIL=" not in upper and "COUNT=" not in upper:
            text = f"{text};UNTIL={fmt_utc_z(self.until)[:-1]}00Z"
        elif self.count is not None and "COUNT=" not in upper and "UNTIL=" not in upper:
            text = f"{text};COUNT={self.count}"
        return text


@dataclass
class Item:
    """
    A reminder, task or event definition.

    Reminders and tasks are anchored by ``due_at``, events by ``start_at``
    (``end_at`` is carried along when an event is moved). ``status`` is the
    effective status of a non-recurring item only; a recurring item stays
    ``pending`` and keeps per-occurrence state in the ledger.
    """

    title: str
    type: ItemType = "reminder"
    id: str = field(default_factory=new_id)
    description: str | None = None
    due_at: datetime | None = None
    start_at: datetime | None = None
    end_at: datetime | None = None
    rule: RecurrenceRule | None = None
    status: ItemStatus = "pending"
    user_id: str | None = None
    responsible_user_id: str | None = None
    is_public: bool = True
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        if self.type not in ITEM_TYPES:
            raise ValueError(f"Unknown item type: {self.type!r}")
        if self.status not in ITEM_STATUSES:
            raise ValueError(f"Unknown item status: {self.status!r}")
        for name in ("due_at", "start_at", "end_at"):
            value = getattr(self, name)
            if value is not None:
                setattr(self, name, parse_instant(value))
        self.created_at = parse_timestamp(self.created_at)
        self.updated_at = parse_timestamp(self.updated_at)
        if self.responsible_user_id is None:
            self.responsible_user_id = self.user_id

    @property
    def is_recurring(self) -> bool:
        return self.rule is not None and bool(self.rule.rrule.strip())

    @property
    def anchor_field(self) -> str:
        return "start_at" if self.type == "event" else "due_at"

    @property
    def anchor(self) -> datetime | None:
        return getattr(self, self.anchor_field)

    def moved_to(self, target: datetime) -> dict:
        """
        Fields that reschedule this (single) occurrence to ``target``.
        Events keep their duration.
        """
        target = normalize_instant(target)
        fields = {self.anchor_field: target}
        if self.type == "event" and self.start_at and self.end_at:
            fields["end_at"] = target + (self.end_at - self.start_at)
        return fields

    def copy(self, **changes) -> "Item":
        return replace(self, **changes)


@dataclass(frozen=True)
class Occurrence:
    """One concrete instance of an item; derived, never stored."""

    item_id: str
    instant: datetime | None

    @property
    def key(self) -> str | None:
        return fmt_utc_z(self.instant) if self.instant else None


@dataclass
class OccurrenceAction:
    """
    A ledger entry: what a user decided about one occurrence.

    ``seq`` is assigned by the store on append and orders entries whose
    ``created_at`` values are equal.
    """

    item_id: str
    occurrence_at: datetime
    kind: ActionKind
    reason: str | None = None
    postpone_kind: PostponeKind | None = None
    postponed_to: datetime | None = None
    created_at: datetime = field(default_factory=utc_now)
    created_by: str | None = None
    id: str = field(default_factory=new_id)
    seq: int | None = None

    def __post_init__(self):
        if self.kind not in ACTION_KINDS:
            raise ValueError(f"Unknown action kind: {self.kind!r}")
        if self.postpone_kind is not None and self.postpone_kind not in POSTPONE_KINDS:
            raise ValueError(f"Unknown postpone kind: {self.postpone_kind!r}")
        self.occurrence_at = parse_instant(self.occurrence_at)
        if self.postponed_to is not None:
            self.postponed_to = parse_instant(self.postponed_to)
        self.created_at = parse_timestamp(self.created_at)

    @property
    def key(self) -> tuple[str, str]:
        return self.item_id, fmt_utc_z(self.occurrence_at)

    @property
    def order(self) -> tuple[datetime, int]:
        return self.created_at, self.seq if self.seq is not None else -1
