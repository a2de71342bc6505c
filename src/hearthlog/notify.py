"""
Assignment notices: telling a user that an item is now theirs.
Delivery (in-app, push) belongs to the host application.
"""

from abc import ABC, abstractmethod

from hearthlog.shared import log_msg


class Notifier(ABC):
    @abstractmethod
    def notify_assignment(
        self,
        item_id: str,
        item_title: str,
        item_type: str,
        new_responsible_user_id: str,
        previous_responsible_user_id: str | None,
        acting_user_id: str | None,
    ) -> bool:
        """Send the notice; returns whether it was accepted for delivery."""
        pass


class LogNotifier(Notifier):
    """Records notices in the log file instead of delivering them."""

    def notify_assignment(
        self,
        item_id: str,
        item_title: str,
        item_type: str,
        new_responsible_user_id: str,
        previous_responsible_user_id: str | None,
        acting_user_id: str | None,
    ) -> bool:
        log_msg(
            f"New {item_type} assigned to {new_responsible_user_id}: "
            f'"{item_title}" ({item_id}) by {acting_user_id or "someone"}, '
            f"previously {previous_responsible_user_id or 'unassigned'}"
        )
        return True


def needs_notice(
    new_responsible_user_id: str | None,
    previous_responsible_user_id: str | None,
    acting_user_id: str | None,
) -> bool:
    """Only a change of hands to somebody other than the actor is announced."""
    if not new_responsible_user_id:
        return False
    if new_responsible_user_id == previous_responsible_user_id:
        return False
    return new_responsible_user_id != acting_user_id
