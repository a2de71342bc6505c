"""
Shared pytest fixtures for hearthlog tests.

This module provides common fixtures used across all test files, including:
- An isolated home directory (config, database and logs)
- Time freezing utilities
- In-memory and SQLite stores
- Controllers and an item factory
"""

import pytest
from datetime import datetime
from freezegun import freeze_time

from hearthlog.hearthlog_env import HearthlogEnvironment
from hearthlog.controller import Controller
from hearthlog.item import Item, RecurrenceRule
from hearthlog.model import DatabaseManager, MemoryItemStore, MemoryLedgerStore
from hearthlog.notify import Notifier
from hearthlog.shared import UTC


def utc(*args) -> datetime:
    """utc(2024, 1, 8, 8) -> 2024-01-08 08:00 UTC"""
    return datetime(*args, tzinfo=UTC)


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """
    Every test gets its own HEARTHLOG_HOME so that config files and
    log_msg output never touch the real workspace.
    """
    home = tmp_path / "hearthlog-home"
    monkeypatch.setenv("HEARTHLOG_HOME", str(home))
    return home


@pytest.fixture
def frozen_time():
    """
    Freezes time to 2024-01-10 12:00:00 UTC (a Wednesday).

    Usage:
        def test_something(frozen_time):
            frozen_time.tick(delta=timedelta(hours=2))
    """
    with freeze_time("2024-01-10 12:00:00") as frozen:
        yield frozen


@pytest.fixture
def freeze_at():
    """
    Returns a function that freezes time to a specific datetime.

    Usage:
        def test_something(freeze_at):
            with freeze_at("2024-01-15 10:00:00"):
                ...
    """
    return freeze_time


@pytest.fixture
def test_env(isolated_home):
    """A HearthlogEnvironment rooted in the isolated home."""
    env = HearthlogEnvironment()
    env.ensure(init_config=True)
    return env


@pytest.fixture
def temp_db_path(tmp_path):
    return tmp_path / "test_hearthlog.db"


class RecordingNotifier(Notifier):
    """Keeps every assignment notice; optionally fails like a dead transport."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    def notify_assignment(self, item_id, item_title, item_type,
                          new_responsible_user_id, previous_responsible_user_id,
                          acting_user_id):
        if self.fail:
            raise ConnectionError("notification service unavailable")
        self.sent.append(
            {
                "item_id": item_id,
                "title": item_title,
                "type": item_type,
                "to": new_responsible_user_id,
                "previous": previous_responsible_user_id,
                "by": acting_user_id,
            }
        )
        return True


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def item_store():
    return MemoryItemStore()


@pytest.fixture
def ledger_store():
    return MemoryLedgerStore()


@pytest.fixture
def test_controller(item_store, ledger_store, notifier):
    """A Controller over in-memory stores with default configuration."""
    return Controller(item_store, ledger_store, notifier=notifier)


@pytest.fixture
def utc_controller(isolated_home, item_store, ledger_store, notifier):
    """A Controller whose configured zone is UTC, whatever the machine's."""
    isolated_home.mkdir(parents=True, exist_ok=True)
    (isolated_home / "config.toml").write_text('[ui]\ntimezone = "UTC"\n', encoding="utf-8")
    return Controller(item_store, ledger_store, env=HearthlogEnvironment(), notifier=notifier)


@pytest.fixture
def db_manager(temp_db_path):
    """
    Provides a DatabaseManager with a fresh test database.

    The connection is closed after the test.
    """
    dbm = DatabaseManager(str(temp_db_path), reset=True)
    yield dbm
    dbm.close()


@pytest.fixture
def db_controller(db_manager, notifier):
    """A Controller whose items and ledger live in SQLite."""
    return Controller(db_manager, db_manager, notifier=notifier)


@pytest.fixture
def item_factory(item_store):
    """
    Provides a factory that creates an Item and stores it.

    Usage:
        def test_something(item_factory):
            trash = item_factory("Take out trash", rrule="FREQ=WEEKLY;BYDAY=MO",
                                 due_at=utc(2024, 1, 1, 8))
    """

    def _create_item(title: str = "item", rrule: str | None = None, store=None, **fields) -> Item:
        if rrule is not None:
            anchor_field = "start_at" if fields.get("type") == "event" else "due_at"
            fields["rule"] = RecurrenceRule(
                rrule=rrule,
                anchor=fields[anchor_field],
                timezone=fields.pop("timezone", None),
            )
        item = Item(title=title, **fields)
        return (store or item_store).add(item)

    return _create_item


@pytest.fixture
def weekly_trash(item_factory):
    """'Take out trash' every Monday at 08:00 UTC from 2024-01-01."""
    return item_factory(
        "Take out trash", rrule="FREQ=WEEKLY;BYDAY=MO", due_at=utc(2024, 1, 1, 8)
    )
