from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from .errors import MalformedEvent

LOCAL_ID_PREFIX = "local_"
SERVER_ID_PREFIX = "msg_"


def new_local_id() -> str:
    return f"{LOCAL_ID_PREFIX}{secrets.token_urlsafe(12)}"


def new_server_id() -> str:
    return f"{SERVER_ID_PREFIX}{secrets.token_urlsafe(12)}"


def is_local_id(message_id: str) -> bool:
    return message_id.startswith(LOCAL_ID_PREFIX)


def _require(payload: Mapping[str, Any], name: str, kind: type | tuple[type, ...]) -> Any:
    value = payload.get(name)
    if isinstance(value, bool) and kind is int:
        raise MalformedEvent(f"{name} must be {kind.__name__}")
    if not isinstance(value, kind):
        raise MalformedEvent(f"{name} missing or invalid")
    return value


@dataclass(frozen=True)
class Message:
    """A single timeline entry; ``created_at`` is epoch milliseconds."""

    id: str
    conversation_key: str
    sender_id: str
    content: str
    created_at: int
    media_url: Optional[str] = None
    reactions: Optional[Mapping[str, Tuple[str, ...]]] = field(default=None, compare=False)

    @property
    def is_pending(self) -> bool:
        return is_local_id(self.id)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "conversation_key": self.conversation_key,
            "sender_id": self.sender_id,
            "content": self.content,
            "created_at": self.created_at,
            "media_url": self.media_url,
        }
        if self.reactions:
            data["reactions"] = {emoji: list(users) for emoji, users in self.reactions.items()}
        return data

    @classmethod
    def from_dict(cls, payload: Any) -> "Message":
        if not isinstance(payload, Mapping):
            raise MalformedEvent("message payload must be an object")
        message_id = _require(payload, "id", str)
        if not message_id:
            raise MalformedEvent("id must not be empty")
        media_url = payload.get("media_url")
        if media_url is not None and not isinstance(media_url, str):
            raise MalformedEvent("media_url must be a string")
        reactions = payload.get("reactions")
        parsed_reactions: Optional[Dict[str, Tuple[str, ...]]] = None
        if reactions is not None:
            if not isinstance(reactions, Mapping):
                raise MalformedEvent("reactions must be an object")
            parsed_reactions = {}
            for emoji, users in reactions.items():
                if not isinstance(users, (list, tuple)) or any(not isinstance(u, str) for u in users):
                    raise MalformedEvent("reaction users must be a list of ids")
                parsed_reactions[str(emoji)] = tuple(users)
        return cls(
            id=message_id,
            conversation_key=_require(payload, "conversation_key", str),
            sender_id=_require(payload, "sender_id", str),
            content=_require(payload, "content", str),
            created_at=_require(payload, "created_at", int),
            media_url=media_url,
            reactions=parsed_reactions,
        )


@dataclass(frozen=True)
class MessageDraft:
    conversation_key: str
    sender_id: str
    content: str
    media_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversation_key": self.conversation_key,
            "sender_id": self.sender_id,
            "content": self.content,
            "media_url": self.media_url,
        }


@dataclass(frozen=True)
class PendingSend:
    local_id: str
    conversation_key: str
    content: str
    submitted_at: int


@dataclass(frozen=True)
class TypingSignal:
    conversation_key: str
    user_id: str
    is_typing: bool
    observed_at: int

    @classmethod
    def from_dict(cls, payload: Any, observed_at: int) -> "TypingSignal":
        if not isinstance(payload, Mapping):
            raise MalformedEvent("typing payload must be an object")
        return cls(
            conversation_key=_require(payload, "conversation_key", str),
            user_id=_require(payload, "user_id", str),
            is_typing=_require(payload, "is_typing", bool),
            observed_at=observed_at,
        )


@dataclass(frozen=True)
class Profile:
    id: str
    username: str
    avatar_url: Optional[str] = None
    full_name: Optional[str] = None
    is_verified: bool = False


@dataclass(frozen=True)
class ConversationSummary:
    partner_id: str
    partner_profile: Optional[Profile]
    last_message: Message
    last_message_at: int

    def preview(self, length: int = 30) -> str:
        content = self.last_message.content
        if len(content) > length:
            return f"{content[:length]}..."
        return content
