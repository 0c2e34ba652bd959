"""Error taxonomy surfaced by the chat client core."""

from __future__ import annotations


class ChatError(Exception):
    pass


class InvalidIdentifier(ChatError, ValueError):
    """Malformed addressing input; a programming error, not a user error."""


class SubscriptionError(ChatError):
    """The store failed to deliver live updates for a subscription."""


class SendError(ChatError):
    """A write on the send path failed.

    ``appended`` is true when the message itself reached the log and only
    the thread-summary upsert failed.
    """

    def __init__(self, message: str, *, appended: bool = False) -> None:
        super().__init__(message)
        self.appended = appended


class AuthRequired(ChatError):
    """No signed-in principal for an operation that needs one."""
