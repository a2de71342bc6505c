from __future__ import annotations

import os
import sqlite3
from abc import ABC, abstractmethod
from itertools import count

from hearthlog.errors import ItemNotFoundError
from hearthlog.hearthlog_env import HearthlogEnvironment
from hearthlog.item import Item, OccurrenceAction, RecurrenceRule, utc_now
from hearthlog.shared import fmt_utc_z, log_msg, parse_timestamp, parse_utc_z


# ─── Store interfaces ───────────────────────────────────────


class ItemStore(ABC):
    """Where item definitions live."""

    @abstractmethod
    def get(self, item_id: str) -> Item | None:
        pass

    @abstractmethod
    def list(self, filter: dict | None = None) -> list[Item]:
        """Items whose attributes equal every value in ``filter``."""
        pass

    @abstractmethod
    def add(self, item: Item) -> Item:
        pass

    @abstractmethod
    def update(self, item_id: str, **fields) -> Item:
        """Replace the named fields; raises ``ItemNotFoundError``."""
        pass

    @abstractmethod
    def delete(self, item_id: str) -> bool:
        pass


class LedgerStore(ABC):
    """Append-only storage for occurrence actions."""

    @abstractmethod
    def append(self, entry: OccurrenceAction) -> OccurrenceAction:
        """Persist ``entry`` and assign its ``seq``."""
        pass

    @abstractmethod
    def list_for_item(self, item_id: str) -> list[OccurrenceAction]:
        pass

    @abstractmethod
    def list_all(self) -> list[OccurrenceAction]:
        pass

    @abstractmethod
    def purge_item(self, item_id: str) -> int:
        """Remove every entry of an item; returns how many were removed."""
        pass


def _matches(item: Item, filter: dict | None) -> bool:
    if not filter:
        return True
    return all(getattr(item, name) == value for name, value in filter.items())


def _updated(item: Item, fields: dict) -> Item:
    fields.setdefault("updated_at", utc_now())
    return item.copy(**fields)


# ─── In-memory stores ───────────────────────────────────────


class MemoryItemStore(ItemStore):
    def __init__(self, items=()):
        self._items: dict[str, Item] = {}
        for item in items:
            self.add(item)

    def get(self, item_id: str) -> Item | None:
        return self._items.get(item_id)

    def list(self, filter: dict | None = None) -> list[Item]:
        return [item for item in self._items.values() if _matches(item, filter)]

    def add(self, item: Item) -> Item:
        if item.id in self._items:
            raise ValueError(f"Duplicate item id: {item.id}")
        self._items[item.id] = item
        return item

    def update(self, item_id: str, **fields) -> Item:
        item = self._items.get(item_id)
        if item is None:
            raise ItemNotFoundError(item_id)
        self._items[item_id] = _updated(item, fields)
        return self._items[item_id]

    def delete(self, item_id: str) -> bool:
        return self._items.pop(item_id, None) is not None


class MemoryLedgerStore(LedgerStore):
    def __init__(self):
        self._entries: list[OccurrenceAction] = []
        self._seq = count(1)

    def append(self, entry: OccurrenceAction) -> OccurrenceAction:
        entry.seq = next(self._seq)
        self._entries.append(entry)
        return entry

    def list_for_item(self, item_id: str) -> list[OccurrenceAction]:
        return [e for e in self._entries if e.item_id == item_id]

    def list_all(self) -> list[OccurrenceAction]:
        return list(self._entries)

    def purge_item(self, item_id: str) -> int:
        before = len(self._entries)
        self._entries = [e for e in self._entries if e.item_id != item_id]
        return before - len(self._entries)


# ─── SQLite ─────────────────────────────────────────────────


def _fmt_utc(dt) -> str | None:
    return fmt_utc_z(dt) if dt is not None else None


def _parse_utc(s: str | None):
    return parse_utc_z(s) if s else None


def _fmt_stamp(dt) -> str:
    # full precision: these order ledger entries
    return parse_timestamp(dt).isoformat()


ITEM_COLUMNS = (
    "id",
    "type",
    "title",
    "description",
    "due_at",
    "start_at",
    "end_at",
    "rrule",
    "rule_anchor",
    "rule_until",
    "rule_count",
    "rule_timezone",
    "status",
    "user_id",
    "responsible_user_id",
    "is_public",
    "created",
    "modified",
)

ACTION_COLUMNS = (
    "seq",
    "id",
    "item_id",
    "occurrence_at",
    "kind",
    "reason",
    "postpone_kind",
    "postponed_to",
    "created_at",
    "created_by",
)


class DatabaseManager(ItemStore, LedgerStore):
    """
    SQLite persistence for items (``Items``) and the occurrence ledger
    (``OccurrenceActions``). Instants are stored as compact UTC strings
    ('YYYYMMDDTHHMMZ'); ledger stamps keep microseconds.
    """

    def __init__(
        self,
        db_path: str,
        env: HearthlogEnvironment | None = None,
        reset: bool = False,
    ):
        self.db_path = str(db_path)
        self.env = env

        if reset and os.path.exists(self.db_path):
            os.remove(self.db_path)

        self.conn = sqlite3.connect(self.db_path)
        self.cursor = self.conn.cursor()
        self.setup_database()

    def setup_database(self):
        """Create (if missing) all tables and indexes."""
        # ---------------- Items ----------------
        self.cursor.execute("""
            CREATE TABLE IF NOT EXISTS Items (
                id                  TEXT PRIMARY KEY,
                type                TEXT NOT NULL,              -- 'reminder','event','task'
                title               TEXT NOT NULL,
                description         TEXT,
                due_at              TEXT,                       -- 'YYYYMMDDTHHMMZ'
                start_at            TEXT,
                end_at              TEXT,
                rrule               TEXT,                       -- NULL for one-off items
                rule_anchor         TEXT,
                rule_until          TEXT,
                rule_count          INTEGER,
                rule_timezone       TEXT,
                status              TEXT NOT NULL DEFAULT 'pending',
                user_id             TEXT,
                responsible_user_id TEXT,
                is_public           INTEGER NOT NULL DEFAULT 1,
                created             TEXT,                       -- ISO-8601 UTC
                modified            TEXT
            );
        """)

        # ---------------- OccurrenceActions ----------------
        # No foreign key: purging is done explicitly after the item is gone.
        self.cursor.execute("""
            CREATE TABLE IF NOT EXISTS OccurrenceActions (
                seq           INTEGER PRIMARY KEY AUTOINCREMENT,
                id            TEXT UNIQUE NOT NULL,
                item_id       TEXT NOT NULL,
                occurrence_at TEXT NOT NULL,                    -- 'YYYYMMDDTHHMMZ'
                kind          TEXT NOT NULL,                    -- 'completed','cancelled','postponed','reopened'
                reason        TEXT,
                postpone_kind TEXT,
                postponed_to  TEXT,
                created_at    TEXT NOT NULL,                    -- ISO-8601 UTC, microseconds
                created_by    TEXT
            );
        """)
        self.cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_actions_item_occurrence
            ON OccurrenceActions(item_id, occurrence_at);
        """)
        self.conn.commit()

    def close(self):
        self.conn.close()

    # ---------------- rows ----------------

    def _item_row(self, item: Item) -> tuple:
        rule = item.rule
        return (
            item.id,
            item.type,
            item.title,
            item.description,
            _fmt_utc(item.due_at),
            _fmt_utc(item.start_at),
            _fmt_utc(item.end_at),
            rule.rrule if rule else None,
            _fmt_utc(rule.anchor) if rule else None,
            _fmt_utc(rule.until) if rule else None,
            rule.count if rule else None,
            rule.timezone if rule else None,
            item.status,
            item.user_id,
            item.responsible_user_id,
            1 if item.is_public else 0,
            _fmt_stamp(item.created_at),
            _fmt_stamp(item.updated_at),
        )

    def _row_item(self, row) -> Item:
        data = dict(zip(ITEM_COLUMNS, row))
        rule = None
        if data["rrule"]:
            rule = RecurrenceRule(
                rrule=data["rrule"],
                anchor=_parse_utc(data["rule_anchor"]),
                until=_parse_utc(data["rule_until"]),
                count=data["rule_count"],
                timezone=data["rule_timezone"],
            )
        return Item(
            id=data["id"],
            type=data["type"],
            title=data["title"],
            description=data["description"],
            due_at=_parse_utc(data["due_at"]),
            start_at=_parse_utc(data["start_at"]),
            end_at=_parse_utc(data["end_at"]),
            rule=rule,
            status=data["status"],
            user_id=data["user_id"],
            responsible_user_id=data["responsible_user_id"],
            is_public=bool(data["is_public"]),
            created_at=data["created"],
            updated_at=data["modified"],
        )

    def _row_action(self, row) -> OccurrenceAction:
        data = dict(zip(ACTION_COLUMNS, row))
        return OccurrenceAction(
            seq=data["seq"],
            id=data["id"],
            item_id=data["item_id"],
            occurrence_at=_parse_utc(data["occurrence_at"]),
            kind=data["kind"],
            reason=data["reason"],
            postpone_kind=data["postpone_kind"],
            postponed_to=_parse_utc(data["postponed_to"]),
            created_at=data["created_at"],
            created_by=data["created_by"],
        )

    # ---------------- ItemStore ----------------

    def get(self, item_id: str) -> Item | None:
        self.cursor.execute(
            f"SELECT {', '.join(ITEM_COLUMNS)} FROM Items WHERE id = ?", (item_id,)
        )
        row = self.cursor.fetchone()
        return self._row_item(row) if row else None

    def list(self, filter: dict | None = None) -> list[Item]:
        self.cursor.execute(
            f"SELECT {', '.join(ITEM_COLUMNS)} FROM Items ORDER BY created, id"
        )
        items = [self._row_item(row) for row in self.cursor.fetchall()]
        return [item for item in items if _matches(item, filter)]

    def add(self, item: Item) -> Item:
        placeholders = ", ".join("?" for _ in ITEM_COLUMNS)
        self.cursor.execute(
            f"INSERT INTO Items ({', '.join(ITEM_COLUMNS)}) VALUES ({placeholders})",
            self._item_row(item),
        )
        self.conn.commit()
        return item

    def update(self, item_id: str, **fields) -> Item:
        item = self.get(item_id)
        if item is None:
            raise ItemNotFoundError(item_id)
        item = _updated(item, fields)
        assignments = ", ".join(f"{col} = ?" for col in ITEM_COLUMNS[1:])
        row = self._item_row(item)
        self.cursor.execute(
            f"UPDATE Items SET {assignments} WHERE id = ?", (*row[1:], item_id)
        )
        self.conn.commit()
        return item

    def delete(self, item_id: str) -> bool:
        self.cursor.execute("DELETE FROM Items WHERE id = ?", (item_id,))
        self.conn.commit()
        return self.cursor.rowcount > 0

    # ---------------- LedgerStore ----------------

    def append(self, entry: OccurrenceAction) -> OccurrenceAction:
        self.cursor.execute(
            """
            INSERT INTO OccurrenceActions (
                id, item_id, occurrence_at, kind, reason,
                postpone_kind, postponed_to, created_at, created_by
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.id,
                entry.item_id,
                _fmt_utc(entry.occurrence_at),
                entry.kind,
                entry.reason,
                entry.postpone_kind,
                _fmt_utc(entry.postponed_to),
                _fmt_stamp(entry.created_at),
                entry.created_by,
            ),
        )
        self.conn.commit()
        entry.seq = self.cursor.lastrowid
        return entry

    def list_for_item(self, item_id: str) -> list[OccurrenceAction]:
        self.cursor.execute(
            f"""
            SELECT {', '.join(ACTION_COLUMNS)} FROM OccurrenceActions
            WHERE item_id = ? ORDER BY seq
            """,
            (item_id,),
        )
        return [self._row_action(row) for row in self.cursor.fetchall()]

    def list_all(self) -> list[OccurrenceAction]:
        self.cursor.execute(
            f"SELECT {', '.join(ACTION_COLUMNS)} FROM OccurrenceActions ORDER BY seq"
        )
        return [self._row_action(row) for row in self.cursor.fetchall()]

    def purge_item(self, item_id: str) -> int:
        self.cursor.execute(
            "DELETE FROM OccurrenceActions WHERE item_id = ?", (item_id,)
        )
        self.conn.commit()
        removed = self.cursor.rowcount
        if removed:
            log_msg(f"purged {removed} occurrence actions of {item_id}")
        return removed
