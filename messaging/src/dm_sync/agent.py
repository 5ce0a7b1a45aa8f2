"""Scripted stand-in participant for conversations with the assistant account.

Replies are chosen by classifying the user's text against topic keyword
sets checked in priority order; the first topic whose keyword occurs in the
lowercased text supplies the reply pool. A seeded ``random.Random`` makes the
choice reproducible. Nothing here touches the message store or the channel.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from .keys import key_participants
from .models import Message, new_server_id
from .scheduling import LoopScheduler, now_ms

logger = logging.getLogger(__name__)

DEFAULT_AGENT_ID = "plaza-ai"
DEFAULT_REPLY_DELAY_S = 1.5


@dataclass(frozen=True)
class Topic:
    name: str
    keywords: Tuple[str, ...]
    responses: Tuple[str, ...]

    def matches(self, normalized: str) -> bool:
        return any(keyword in normalized for keyword in self.keywords)


DEFAULT_TOPICS: Tuple[Topic, ...] = (
    Topic(
        name="caption",
        keywords=("caption", "describe my post", "what should i write"),
        responses=(
            "Try this caption: \"Living in the future, one post at a time.\"",
            "Caption idea: \"Neon nights and digital dreams.\"",
            "How about: \"Powered by curiosity, styled by the cosmos.\"",
            "Keep it short: \"Vibes loading... 100%.\"",
        ),
    ),
    Topic(
        name="hashtag",
        keywords=("hashtag", "#", "tags", "tag "),
        responses=(
            "Trending right now: #PlazaGram #Futuristic #Neon #Tech",
            "Mix broad and niche tags: #Digital #Virtual #Cyber #Hologram",
            "For reach, try #Viral #Trending #Aesthetic alongside one niche tag.",
            "Keep it to 3-5 tags, for example #Future #Innovation #Vibes.",
        ),
    ),
    Topic(
        name="growth",
        keywords=("grow", "followers", "engagement", "reach", "tip"),
        responses=(
            "Post consistently: the same time each day helps your followers find you.",
            "Reply to every comment in the first hour, it boosts engagement.",
            "Stories keep you visible between posts. Aim for a few each day.",
            "Collaborate with creators in your niche to reach new audiences.",
        ),
    ),
    Topic(
        name="content_ideas",
        keywords=("idea", "content", "post about", "inspire", "what to post"),
        responses=(
            "Share a behind-the-scenes look at your day.",
            "Try a before/after post. People love transformations.",
            "Post a quick tutorial on something you're good at.",
            "Ask your followers a question and feature the best answers.",
        ),
    ),
)

FALLBACK_RESPONSE = (
    "I'm your PlazaGram assistant! Ask me for captions, hashtags, growth tips or content ideas."
)

Deliver = Callable[[Message], None]


class ScriptedAgent:
    def __init__(
        self,
        agent_id: str = DEFAULT_AGENT_ID,
        *,
        seed: Optional[int] = None,
        topics: Sequence[Topic] = DEFAULT_TOPICS,
        fallback: str = FALLBACK_RESPONSE,
        reply_delay_s: float = DEFAULT_REPLY_DELAY_S,
        scheduler=None,
        now_func: Callable[[], int] = now_ms,
    ) -> None:
        self.agent_id = agent_id
        self.topics = tuple(topics)
        self.fallback = fallback
        self.reply_delay_s = reply_delay_s
        self._rng = random.Random(seed)
        self._scheduler = scheduler or LoopScheduler()
        self._now = now_func
        self._pending: List[Tuple[object, int]] = []

    def handles(self, conversation_key: str) -> bool:
        return self.agent_id in key_participants(conversation_key)

    def classify(self, text: str) -> Optional[Topic]:
        normalized = text.lower()
        for topic in self.topics:
            if topic.matches(normalized):
                return topic
        return None

    def choose_reply(self, text: str) -> str:
        topic = self.classify(text)
        if topic is None:
            return self.fallback
        return self._rng.choice(topic.responses)

    def schedule_reply(self, conversation_key: str, text: str, deliver: Deliver, typing=None):
        """Answer ``text`` after ``reply_delay_s``; the peer shows as typing meanwhile.

        The returned handle is cancellable; ``cancel_all`` drops every reply
        still waiting so nothing lands in a closed conversation.
        """

        reply = self.choose_reply(text)
        if typing is not None:
            typing.force_peer_typing(self.reply_delay_s)
        handle = None

        def fire() -> None:
            self._pending = [entry for entry in self._pending if entry[0] is not handle]
            now = self._now()
            message = Message(
                id=new_server_id(),
                conversation_key=conversation_key,
                sender_id=self.agent_id,
                content=reply,
                created_at=now,
            )
            if typing is not None:
                if self._pending:
                    # another reply is still due; keep typing until the last one lands
                    last_due = max(due for _, due in self._pending)
                    typing.force_peer_typing(max(last_due - now, 0) / 1000)
                else:
                    typing.stop_peer_typing()
            logger.debug("agent %s replying on %s", self.agent_id, conversation_key)
            deliver(message)

        due = self._now() + int(round(self.reply_delay_s * 1000))
        handle = self._scheduler.call_later(self.reply_delay_s, fire)
        self._pending.append((handle, due))
        return handle

    @property
    def pending_replies(self) -> int:
        return len(self._pending)

    def cancel_all(self) -> None:
        for handle, _ in self._pending:
            handle.cancel()
        self._pending.clear()
