"""
Recurrence resolver: a thin adapter over ``dateutil.rrule``.

Rules are RRULE text plus an anchor instant (DTSTART). Everything handed
out is a normalized UTC instant (see ``shared.normalize_instant``), so an
occurrence produced here can be used directly as a ledger key.
"""

from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Iterator

from dateutil.rrule import rrulestr

from hearthlog.errors import InvalidRuleError
from hearthlog.item import Item, RecurrenceRule
from hearthlog.shared import get_local_tz, normalize_instant, UTC


@dataclass(frozen=True, eq=False)
class RuleHandle:
    text: str
    anchor: datetime
    rule: object  # dateutil rrule or rruleset


def parse_rule(rule_text: str, anchor: datetime, zone: str | None = None) -> RuleHandle:
    """
    Parse ``rule_text`` anchored at ``anchor``.

    With ``zone`` (an IANA name or ``local``) the rule is expanded in that
    zone's wall-clock time, so a weekly 08:00 reminder stays at 08:00 across
    DST changes; otherwise it is expanded in UTC. Raises
    ``InvalidRuleError`` for anything dateutil rejects.
    """
    if not rule_text or not rule_text.strip():
        raise InvalidRuleError(rule_text or "", "empty rule")
    return _parse(rule_text.strip(), normalize_instant(anchor), zone or "")


@lru_cache(maxsize=512)
def _parse(rule_text: str, anchor: datetime, zone: str) -> RuleHandle:
    try:
        dtstart = anchor.astimezone(get_local_tz(zone)) if zone else anchor
        rule = rrulestr(rule_text, dtstart=dtstart, cache=True)
        # force evaluation of the first instance so that bad BY* parts
        # surface here rather than in the middle of an agenda
        rule.after(dtstart, inc=True)
    except Exception as e:
        raise InvalidRuleError(rule_text, str(e)) from e
    return RuleHandle(text=rule_text, anchor=anchor, rule=rule)


def handle_for(item: Item) -> RuleHandle:
    """Parsed rule of a recurring item."""
    rule: RecurrenceRule | None = item.rule
    if rule is None:
        raise InvalidRuleError("", f"item {item.id} has no recurrence rule")
    return parse_rule(rule.rule_text, rule.anchor, rule.timezone)


def _aware(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


def next_occurrence(
    handle: RuleHandle, after: datetime, inclusive: bool = False
) -> datetime | None:
    """First occurrence after (or at, when ``inclusive``) ``after``."""
    hit = handle.rule.after(_aware(after), inc=inclusive)
    if hit is None:
        return None
    return normalize_instant(hit)


def is_occurrence(handle: RuleHandle, instant: datetime) -> bool:
    """True when ``instant`` is, to the minute, an occurrence of the rule."""
    instant = normalize_instant(instant)
    return next_occurrence(handle, instant, inclusive=True) == instant


def iter_occurrences(
    handle: RuleHandle,
    start: datetime,
    end: datetime | None = None,
    limit: int | None = None,
) -> Iterator[datetime]:
    """
    Occurrences from ``start`` (inclusive) up to ``end`` (inclusive), at most
    ``limit`` of them. Without ``end`` or ``limit`` an infinite rule yields
    forever.
    """
    end = normalize_instant(end) if end is not None else None
    count = 0
    raw = handle.rule.after(_aware(start), inc=True)
    while raw is not None:
        cur = normalize_instant(raw)
        if end is not None and cur > end:
            return
        if limit is not None and count >= limit:
            return
        yield cur
        count += 1
        raw = handle.rule.after(raw, inc=False)


def occurrences_between(
    handle: RuleHandle, start: datetime, end: datetime
) -> list[datetime]:
    """All occurrences in the closed interval ``[start, end]``."""
    return list(iter_occurrences(handle, start, end))
