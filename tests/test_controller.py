"""
Tests for the Controller (the write side of the occurrence engine).
"""

from datetime import date, timedelta

import pytest

from hearthlog.controller import Controller
from hearthlog.errors import (
    CascadeFailure,
    InvalidRuleError,
    InvalidTransitionError,
    ItemNotFoundError,
    StaleWriteWarning,
    UnsupportedPostponeKindError,
)
from hearthlog.item import Item, RecurrenceRule
from hearthlog.model import MemoryLedgerStore

from conftest import RecordingNotifier, utc

MONDAY = utc(2024, 1, 8, 8)


class FlakyLedgerStore(MemoryLedgerStore):
    def __init__(self):
        super().__init__()
        self.broken = True

    def purge_item(self, item_id):
        if self.broken:
            raise OSError("disk I/O error")
        return super().purge_item(item_id)


class ManualClock:
    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kw):
        self.now += timedelta(**kw)
        return self.now


@pytest.mark.unit
class TestComplete:
    def test_complete_is_idempotent(self, test_controller, ledger_store, weekly_trash):
        first = test_controller.complete(weekly_trash, MONDAY)
        second = test_controller.complete(weekly_trash, MONDAY)
        assert not first.duplicate
        assert second.duplicate
        assert second.action.id == first.action.id
        assert len(ledger_store.list_for_item(weekly_trash.id)) == 1
        assert test_controller.status(weekly_trash.id, MONDAY) == "completed"

    def test_non_interference(self, test_controller, weekly_trash):
        test_controller.complete(weekly_trash.id, MONDAY)
        assert test_controller.status(weekly_trash.id, utc(2024, 1, 1, 8)) == "pending"
        assert test_controller.status(weekly_trash.id, utc(2024, 1, 15, 8)) == "pending"

    def test_one_off_item_changes_status(self, test_controller, ledger_store, item_factory):
        rent = item_factory("Pay rent", due_at=utc(2024, 1, 9, 9))
        result = test_controller.complete(rent)
        assert result.kind == "item"
        assert result.item.status == "completed"
        assert ledger_store.list_all() == []
        assert test_controller.complete(rent).duplicate

    def test_cancel_mirrors_complete(self, test_controller, weekly_trash, item_factory):
        test_controller.cancel(weekly_trash, MONDAY, reason="holiday")
        assert test_controller.status(weekly_trash.id, MONDAY) == "cancelled"
        party = item_factory("Party", type="event", start_at=utc(2024, 1, 12, 19))
        assert test_controller.cancel(party).item.status == "cancelled"

    def test_not_an_occurrence(self, test_controller, weekly_trash):
        with pytest.raises(InvalidTransitionError):
            test_controller.complete(weekly_trash, utc(2024, 1, 9, 8))

    def test_recurring_needs_an_instant(self, test_controller, weekly_trash):
        with pytest.raises(InvalidTransitionError):
            test_controller.complete(weekly_trash)

    def test_missing_and_archived_items(self, test_controller, item_factory):
        with pytest.raises(ItemNotFoundError):
            test_controller.complete("nope", MONDAY)
        old = item_factory("Old", due_at=utc(2023, 1, 1), status="archived")
        with pytest.raises(InvalidTransitionError):
            test_controller.complete(old)

    def test_broken_rule_reaches_the_caller(self, test_controller, item_store):
        broken = item_store.add(
            Item("Broken", due_at=MONDAY, rule=RecurrenceRule("FREQ=SOMETIMES", MONDAY))
        )
        with pytest.raises(InvalidRuleError):
            test_controller.complete(broken, MONDAY)

    def test_add_item_rejects_broken_rule(self, test_controller, item_store):
        with pytest.raises(InvalidRuleError):
            test_controller.add_item(
                Item("Broken", due_at=MONDAY, rule=RecurrenceRule("FREQ=SOMETIMES", MONDAY))
            )
        assert item_store.list() == []


@pytest.mark.unit
class TestLastWriteWins:
    def test_postponed_then_completed(self, test_controller, weekly_trash):
        test_controller.postpone(weekly_trash, MONDAY, "next_occurrence")
        test_controller.complete(weekly_trash, MONDAY)
        assert test_controller.status(weekly_trash.id, MONDAY) == "completed"

    def test_reopen_undoes_completion(self, test_controller, weekly_trash):
        test_controller.complete(weekly_trash, MONDAY)
        result = test_controller.reopen(weekly_trash, MONDAY)
        assert result.action.kind == "reopened"
        assert test_controller.status(weekly_trash.id, MONDAY) == "pending"
        assert len(test_controller.history(weekly_trash.id)) == 2

    def test_reopen_without_action_writes_nothing(self, test_controller, ledger_store, weekly_trash):
        result = test_controller.reopen(weekly_trash, MONDAY)
        assert result.duplicate
        assert result.action is None
        assert ledger_store.list_all() == []

    def test_reopen_one_off(self, test_controller, item_factory):
        rent = item_factory("Pay rent", due_at=utc(2024, 1, 9, 9), status="completed")
        assert test_controller.reopen(rent).item.status == "pending"

    def test_equal_timestamps_use_append_order(self, item_store, ledger_store, weekly_trash):
        clock = ManualClock(utc(2024, 1, 8, 9))
        controller = Controller(item_store, ledger_store, clock=clock)
        controller.complete(weekly_trash, MONDAY)
        controller.cancel(weekly_trash, MONDAY)
        assert controller.status(weekly_trash.id, MONDAY) == "cancelled"


@pytest.mark.unit
class TestPostpone:
    def test_rule_is_preserved(self, test_controller, item_store, weekly_trash):
        before = item_store.get(weekly_trash.id).rule
        result = test_controller.postpone(weekly_trash, MONDAY, "tomorrow")
        assert item_store.get(weekly_trash.id).rule == before
        assert result.kind == "occurrence"
        assert result.action.postpone_kind == "tomorrow"
        assert result.postponed_to == utc(2024, 1, 9, 8)
        assert test_controller.status(weekly_trash.id, MONDAY) == "postponed"
        assert test_controller.status(weekly_trash.id, utc(2024, 1, 9, 8)) == "pending"

    def test_next_occurrence_has_no_target(self, test_controller, weekly_trash):
        result = test_controller.postpone(weekly_trash, MONDAY)
        assert result.action.postponed_to is None
        assert result.postponed_to == utc(2024, 1, 15, 8)

    def test_moved_occurrence_can_be_completed(self, test_controller, weekly_trash):
        test_controller.postpone(weekly_trash, MONDAY, "tomorrow")
        test_controller.complete(weekly_trash, utc(2024, 1, 9, 8))
        assert test_controller.status(weekly_trash.id, utc(2024, 1, 9, 8)) == "completed"

    def test_custom_date_keeps_time_of_day(self, utc_controller, weekly_trash):
        result = utc_controller.postpone(
            weekly_trash, MONDAY, "custom", target=date(2024, 1, 11)
        )
        assert result.postponed_to == utc(2024, 1, 11, 8)
        assert result.action.postponed_to == utc(2024, 1, 11, 8)

    def test_custom_date_in_rule_zone(self, test_controller, item_factory):
        walk = item_factory(
            "Walk the dog",
            rrule="FREQ=DAILY",
            due_at=utc(2024, 1, 8, 7),
            timezone="Europe/Paris",
        )
        result = test_controller.postpone(walk, utc(2024, 1, 8, 7), "custom", target=date(2024, 1, 20))
        assert result.postponed_to == utc(2024, 1, 20, 7)

    def test_custom_datetime(self, test_controller, weekly_trash):
        result = test_controller.postpone(
            weekly_trash, MONDAY, "custom", target=utc(2024, 1, 10, 18, 30)
        )
        assert result.postponed_to == utc(2024, 1, 10, 18, 30)

    def test_custom_needs_target(self, test_controller, weekly_trash):
        with pytest.raises(ValueError):
            test_controller.postpone(weekly_trash, MONDAY, "custom")

    def test_same_target_is_idempotent(self, test_controller, ledger_store, weekly_trash):
        test_controller.postpone(weekly_trash, MONDAY, "tomorrow")
        assert test_controller.postpone(weekly_trash, MONDAY, "tomorrow").duplicate
        assert len(ledger_store.list_all()) == 1

    def test_ai_slot_is_not_supported(self, test_controller, weekly_trash):
        with pytest.raises(UnsupportedPostponeKindError):
            test_controller.postpone(weekly_trash, MONDAY, "ai_slot")
        with pytest.raises(UnsupportedPostponeKindError):
            test_controller.postpone(weekly_trash, MONDAY, "someday")

    def test_one_off_is_rescheduled(self, test_controller, ledger_store, item_factory):
        rent = item_factory("Pay rent", due_at=utc(2024, 1, 9, 9))
        result = test_controller.postpone(rent, None, "tomorrow")
        assert result.kind == "item"
        assert result.item.due_at == utc(2024, 1, 10, 9)
        assert ledger_store.list_all() == []

    def test_event_keeps_duration(self, test_controller, item_factory):
        dinner = item_factory(
            "Dinner", type="event", start_at=utc(2024, 1, 9, 18), end_at=utc(2024, 1, 9, 20)
        )
        result = test_controller.postpone(dinner, None, "custom", target=utc(2024, 1, 12, 19))
        assert result.item.start_at == utc(2024, 1, 12, 19)
        assert result.item.end_at == utc(2024, 1, 12, 21)

    def test_one_off_has_no_next_occurrence(self, test_controller, item_factory):
        rent = item_factory("Pay rent", due_at=utc(2024, 1, 9, 9))
        with pytest.raises(InvalidTransitionError):
            test_controller.postpone(rent, None, "next_occurrence")

    def test_completed_one_off_must_be_reopened(self, test_controller, item_factory):
        rent = item_factory("Pay rent", due_at=utc(2024, 1, 9, 9), status="completed")
        with pytest.raises(InvalidTransitionError):
            test_controller.postpone(rent, None, "tomorrow")

    def test_one_off_reason_is_logged(self, test_controller, item_factory, isolated_home):
        rent = item_factory("Pay rent", due_at=utc(2024, 1, 9, 9))
        test_controller.postpone(rent, None, "tomorrow", reason="paycheck is late")
        test_controller.cancel(rent, reason="landlord waived it")
        text = "".join(p.read_text() for p in (isolated_home / "logs").glob("log_*.md"))
        assert "paycheck is late" in text
        assert "landlord waived it" in text


@pytest.mark.unit
class TestDelete:
    def test_cascade_delete(self, test_controller, item_store, ledger_store, weekly_trash):
        test_controller.complete(weekly_trash, MONDAY)
        test_controller.postpone(weekly_trash, utc(2024, 1, 15, 8), "tomorrow")
        assert test_controller.delete(weekly_trash.id) == 2
        assert item_store.get(weekly_trash.id) is None
        assert ledger_store.list_for_item(weekly_trash.id) == []
        assert test_controller.status(weekly_trash.id, MONDAY) is None

    def test_delete_missing(self, test_controller):
        with pytest.raises(ItemNotFoundError):
            test_controller.delete("nope")

    def test_purge_failure_and_repair(self, item_store, item_factory, weekly_trash):
        ledger = FlakyLedgerStore()
        controller = Controller(item_store, ledger)
        controller.complete(weekly_trash, MONDAY)
        with pytest.raises(CascadeFailure) as excinfo:
            controller.delete(weekly_trash.id)
        assert excinfo.value.item_id == weekly_trash.id
        assert isinstance(excinfo.value.cause, OSError)
        assert item_store.get(weekly_trash.id) is None
        assert len(ledger.list_all()) == 1

        ledger.broken = False
        assert controller.repair_orphans() == 1
        assert ledger.list_all() == []


@pytest.mark.unit
class TestStaleWrites:
    def test_stale_write_overwrites_by_default(self, item_store, ledger_store, weekly_trash):
        clock = ManualClock(utc(2024, 1, 8, 9))
        controller = Controller(item_store, ledger_store, clock=clock)
        seen = controller.complete(weekly_trash, MONDAY).action.created_at
        clock.advance(minutes=5)
        controller.reopen(weekly_trash, MONDAY)  # another device
        clock.advance(minutes=5)
        controller.cancel(weekly_trash, MONDAY, observed_at=seen)
        assert controller.status(weekly_trash.id, MONDAY) == "cancelled"

    def test_stale_write_rejected_in_strict_mode(self, item_store, ledger_store, weekly_trash):
        clock = ManualClock(utc(2024, 1, 8, 9))
        controller = Controller(item_store, ledger_store, clock=clock)
        controller.strict_writes = True
        seen = controller.complete(weekly_trash, MONDAY).action.created_at
        clock.advance(minutes=5)
        controller.reopen(weekly_trash, MONDAY)
        clock.advance(minutes=5)
        with pytest.raises(StaleWriteWarning):
            controller.cancel(weekly_trash, MONDAY, observed_at=seen)
        assert controller.status(weekly_trash.id, MONDAY) == "pending"

    def test_current_observation_is_accepted(self, item_store, ledger_store, weekly_trash):
        clock = ManualClock(utc(2024, 1, 8, 9))
        controller = Controller(item_store, ledger_store, clock=clock)
        controller.strict_writes = True
        seen = controller.complete(weekly_trash, MONDAY).action.created_at
        clock.advance(minutes=5)
        controller.cancel(weekly_trash, MONDAY, observed_at=seen)
        assert controller.status(weekly_trash.id, MONDAY) == "cancelled"


@pytest.mark.unit
class TestReassignment:
    def test_reassign_notifies(self, test_controller, notifier, item_factory):
        chore = item_factory(
            "Vacuum", rrule="FREQ=WEEKLY", due_at=MONDAY, user_id="ann", responsible_user_id="ann"
        )
        result = test_controller.postpone(
            chore, MONDAY, "tomorrow", acting_user_id="ann", reassign_to="bob"
        )
        assert result.item.responsible_user_id == "bob"
        assert notifier.sent == [
            {
                "item_id": chore.id,
                "title": "Vacuum",
                "type": "reminder",
                "to": "bob",
                "previous": "ann",
                "by": "ann",
            }
        ]

    def test_self_assignment_is_silent(self, test_controller, notifier, item_factory):
        chore = item_factory("Vacuum", due_at=MONDAY, user_id="ann", responsible_user_id="bob")
        result = test_controller.complete(chore, acting_user_id="ann", reassign_to="ann")
        assert result.item.responsible_user_id == "ann"
        assert notifier.sent == []

    def test_notifier_failure_keeps_the_action(self, item_store, ledger_store, item_factory):
        controller = Controller(item_store, ledger_store, notifier=RecordingNotifier(fail=True))
        chore = item_factory("Vacuum", rrule="FREQ=WEEKLY", due_at=MONDAY, user_id="ann")
        result = controller.complete(chore, MONDAY, acting_user_id="ann", reassign_to="bob")
        assert result.item.responsible_user_id == "bob"
        assert controller.status(chore.id, MONDAY) == "completed"


@pytest.mark.integration
def test_sqlite_controller_round_trip(db_controller, db_manager):
    trash = db_controller.add_item(
        Item(
            "Take out trash",
            due_at=utc(2024, 1, 1, 8),
            rule=RecurrenceRule("FREQ=WEEKLY;BYDAY=MO", utc(2024, 1, 1, 8)),
        )
    )
    db_controller.complete(trash, MONDAY)
    assert db_controller.complete(trash, MONDAY).duplicate
    db_controller.postpone(trash, utc(2024, 1, 15, 8), "tomorrow")
    assert db_controller.status(trash.id, MONDAY) == "completed"
    assert db_controller.status(trash.id, utc(2024, 1, 15, 8)) == "postponed"
    assert db_controller.stats(trash.id).completed_count == 1
    assert db_controller.delete(trash.id) == 2
    assert db_manager.list_all() == []
