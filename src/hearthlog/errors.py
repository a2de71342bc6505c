"""
Exceptions raised by the occurrence engine.

Agenda computation recovers from ``InvalidRuleError`` one item at a time;
everything raised on the write side reaches the caller unmodified.
"""

from typing import Any


class HearthlogError(Exception):
    """Base exception for all hearthlog errors."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class InvalidRuleError(HearthlogError):
    """Recurrence rule text could not be parsed."""

    def __init__(self, rule_text: str, reason: str = ""):
        super().__init__(
            f"Invalid recurrence rule {rule_text!r}: {reason}".rstrip(": "),
            code="INVALID_RULE",
            details={"rule": rule_text, "reason": reason},
        )


class UnsupportedPostponeKindError(HearthlogError):
    def __init__(self, kind: str):
        super().__init__(
            f"Postponing with {kind!r} is not implemented",
            code="UNSUPPORTED_POSTPONE_KIND",
            details={"kind": kind},
        )


class StaleWriteWarning(HearthlogError):
    """
    The occurrence was acted on after the caller last looked at it.
    Raised only when ``ledger.strict_writes`` is enabled.
    """

    def __init__(self, item_id: str, occurrence_key: str, observed: str, latest: str):
        super().__init__(
            f"Action on {item_id}@{occurrence_key} is based on {observed}, "
            f"but a newer action was recorded at {latest}",
            code="STALE_WRITE",
            details={
                "item_id": item_id,
                "occurrence": occurrence_key,
                "observed": observed,
                "latest": latest,
            },
        )


class CascadeFailure(HearthlogError):
    """
    The item was deleted but its ledger entries were not. Stray entries
    would resurface if the id were reused, so this needs a retry or
    ``Controller.repair_orphans()``.
    """

    def __init__(self, item_id: str, cause: Exception):
        super().__init__(
            f"Item {item_id} deleted but its occurrence actions remain: {cause}",
            code="CASCADE_FAILURE",
            details={"item_id": item_id, "cause": repr(cause)},
        )
        self.item_id = item_id
        self.cause = cause


class ItemNotFoundError(HearthlogError):
    def __init__(self, item_id: str):
        super().__init__(
            f"Item not found: {item_id}",
            code="ITEM_NOT_FOUND",
            details={"item_id": item_id},
        )


class InvalidTransitionError(HearthlogError):
    """The requested action does not apply to this item or occurrence."""

    def __init__(self, item_id: str, message: str):
        super().__init__(
            message,
            code="INVALID_TRANSITION",
            details={"item_id": item_id},
        )
