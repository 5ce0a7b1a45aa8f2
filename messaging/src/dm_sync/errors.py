"""Failure conditions surfaced by the messaging engine.

None of these is fatal: each maps to a visible, recoverable conversation
state. Duplicate deliveries are not represented here; they are absorbed by
the timeline and reported as "not inserted".
"""

from __future__ import annotations


class MessagingError(Exception):
    pass


class FetchUnavailable(MessagingError):
    """The historical load for a conversation failed."""

    def __init__(self, conversation_key: str, reason: str = "history unavailable") -> None:
        self.conversation_key = conversation_key
        super().__init__(f"{reason} ({conversation_key})")


class WriteError(MessagingError):
    """The message store rejected a write."""


class SendFailed(MessagingError):
    """An optimistic send was rolled back after the store rejected it."""

    def __init__(self, conversation_key: str, local_id: str, content: str) -> None:
        self.conversation_key = conversation_key
        self.local_id = local_id
        self.content = content
        super().__init__(f"send failed for {local_id} in {conversation_key}")


class MalformedEvent(MessagingError, ValueError):
    """An inbound payload is missing required fields."""
