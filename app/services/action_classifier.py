from __future__ import annotations

from enum import StrEnum


class EmailAction(StrEnum):
    book = "book"
    cancel = "cancel"
    change = "change"
    unknown = "unknown"


_CANCEL_PHRASES: tuple[str, ...] = (
    "has been cancelled",
    "has been canceled",
    "confirmation of cancellation",
)
_CHANGE_PHRASES: tuple[str, ...] = (
    "rescheduled",
    "changed",
    "updated",
    "booking change",
)
_BOOK_PHRASES: tuple[str, ...] = (
    "has booked",
    "booked an appointment",
    "confirmation of booking",
)


def classify_email_action(
    subject: str,
    text: str,
    unknown_policy: str = "reject",
) -> EmailAction:
    haystack = f"{subject or ''} {text or ''}".lower()
    if _contains_any(haystack, _CANCEL_PHRASES):
        return EmailAction.cancel
    if _contains_any(haystack, _CHANGE_PHRASES):
        return EmailAction.change
    if _contains_any(haystack, _BOOK_PHRASES):
        return EmailAction.book
    if unknown_policy == "book":
        return EmailAction.book
    return EmailAction.unknown


def _contains_any(haystack: str, phrases: tuple[str, ...]) -> bool:
    return any(phrase in haystack for phrase in phrases)
