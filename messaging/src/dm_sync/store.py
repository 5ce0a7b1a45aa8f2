from __future__ import annotations

from typing import Callable, Dict, List

from .channel import BroadcastChannel
from .errors import WriteError
from .keys import key_participants
from .models import Message, MessageDraft, new_server_id
from .scheduling import now_ms


def validate_draft(draft: MessageDraft) -> None:
    if draft.sender_id not in key_participants(draft.conversation_key):
        raise WriteError("sender is not a participant of the conversation")
    if not draft.content.strip():
        raise WriteError("content must not be empty")


class InMemoryMessageStore:
    """In-memory message log; assigns ids and timestamps on write.

    When a channel is attached every accepted write is also broadcast to the
    conversation's subscribers, mirroring a database change feed.
    """

    def __init__(
        self,
        channel: BroadcastChannel | None = None,
        *,
        now_func: Callable[[], int] = now_ms,
    ) -> None:
        self._channel = channel
        self._now = now_func
        self._messages: Dict[str, List[Message]] = {}
        self._log: List[Message] = []
        self._last_ts = 0
        self.fail_writes = False

    async def list_messages(self, conversation_key: str) -> list[Message]:
        """Return the conversation's messages ordered by creation time."""

        return list(self._messages.get(conversation_key, []))

    async def create_message(self, draft: MessageDraft) -> Message:
        if self.fail_writes:
            raise WriteError("store rejected the write")
        validate_draft(draft)
        created_at = max(self._now(), self._last_ts)
        self._last_ts = created_at
        message = Message(
            id=new_server_id(),
            conversation_key=draft.conversation_key,
            sender_id=draft.sender_id,
            content=draft.content,
            created_at=created_at,
            media_url=draft.media_url,
        )
        self._messages.setdefault(draft.conversation_key, []).append(message)
        self._log.append(message)
        if self._channel is not None:
            self._channel.publish_message(message)
        return message

    async def list_recent(self, user_id: str, limit: int = 50) -> list[Message]:
        """Return the user's messages across conversations, most recent first."""

        mine = [m for m in self._log if user_id in key_participants(m.conversation_key)]
        mine.reverse()
        return mine[: max(limit, 0)]
