"""Ordered, duplicate-free message timeline for one open conversation.

The timeline merges three sources: the historical fetch, optimistic local
entries created by the send pipeline and messages pushed by the broadcast
channel. Entries are indexed by id and the sorted view is recomputed after
every mutation, ordering by ``created_at``. Ties follow the store order for
fetched history and arrival order for everything else.
"""

from __future__ import annotations

import itertools
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .channel import ChannelSubscription
from .errors import FetchUnavailable, MalformedEvent
from .models import Message
from .observable import Observable

logger = logging.getLogger(__name__)

TypingCallback = Callable[[Dict[str, Any]], None]


class Timeline:
    def __init__(self) -> None:
        self._entries: Dict[str, Tuple[int, Message]] = {}
        self._counter = itertools.count()
        self._view: List[Message] = []

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._entries

    def get(self, message_id: str) -> Optional[Message]:
        entry = self._entries.get(message_id)
        return entry[1] if entry else None

    def insert(self, message: Message) -> bool:
        """Insert ``message`` unless its id is already present."""

        if message.id in self._entries:
            return False
        self._entries[message.id] = (next(self._counter), message)
        self._resort()
        return True

    def merge_history(self, history: Iterable[Message]) -> bool:
        """Merge a store snapshot; returns True when the ordered view changed.

        The snapshot's order is the store's order, so its entries are ranked
        first and entries not in it (pushed later, or still pending) keep
        their relative order after them. Equal timestamps then resolve the
        way the store wrote them. An id already present keeps its copy.
        """

        before = [message.id for message in self._view]
        ranked = sorted(self._entries.values(), key=lambda entry: entry[0])
        counter = itertools.count()
        merged: Dict[str, Tuple[int, Message]] = {}
        for message in history:
            if message.id in merged:
                continue
            existing = self._entries.get(message.id)
            merged[message.id] = (next(counter), existing[1] if existing else message)
        for _, message in ranked:
            if message.id not in merged:
                merged[message.id] = (next(counter), message)
        self._entries = merged
        self._counter = counter
        self._resort()
        return [message.id for message in self._view] != before

    def remove(self, message_id: str) -> Optional[Message]:
        entry = self._entries.pop(message_id, None)
        if entry is None:
            return None
        self._resort()
        return entry[1]

    def clear(self) -> None:
        self._entries.clear()
        self._view = []

    def messages(self) -> List[Message]:
        return list(self._view)

    def _resort(self) -> None:
        ordered = sorted(self._entries.values(), key=lambda entry: (entry[1].created_at, entry[0]))
        self._view = [message for _, message in ordered]


class TimelineReconciler:
    """Owns the timeline and channel subscription of one open conversation."""

    def __init__(self, store, channel, *, on_typing: TypingCallback | None = None) -> None:
        self._store = store
        self._channel = channel
        self._on_typing = on_typing
        self._timeline = Timeline()
        self._subscription: ChannelSubscription | None = None
        self._conversation_key: str | None = None
        self._generation = 0
        self._alive = False
        self.timeline: Observable[List[Message]] = Observable([])

    @property
    def conversation_key(self) -> str | None:
        return self._conversation_key

    @property
    def is_open(self) -> bool:
        return self._alive

    @property
    def is_subscribed(self) -> bool:
        return self._subscription is not None

    def messages(self) -> List[Message]:
        return self._timeline.messages()

    def get(self, message_id: str) -> Optional[Message]:
        return self._timeline.get(message_id)

    def attach(self, conversation_key: str) -> int:
        """Bind to ``conversation_key`` and (re)create the channel subscription.

        Any previous subscription is torn down first so a re-entered
        conversation never receives the same event twice. Returns the
        generation token that callbacks of this subscription are bound to.
        """

        generation = self.bind_local(conversation_key)

        def on_message(payload: Dict[str, Any]) -> None:
            if generation != self._generation:
                logger.debug("dropping message for closed subscription on %s", conversation_key)
                return
            self.on_remote_message(payload)

        def on_typing(payload: Dict[str, Any]) -> None:
            if generation != self._generation or self._on_typing is None:
                return
            self._on_typing(payload)

        self._subscription = self._channel.subscribe(conversation_key, on_message, on_typing)
        return generation

    def bind_local(self, conversation_key: str) -> int:
        """Bind to ``conversation_key`` without any channel subscription."""

        self._teardown()
        self._generation += 1
        if conversation_key != self._conversation_key:
            self._timeline.clear()
            self._publish()
        self._conversation_key = conversation_key
        self._alive = True
        return self._generation

    async def initialize(self, conversation_key: str) -> List[Message]:
        """Subscribe, then load history for ``conversation_key``.

        Pushed events that arrive while the fetch is in flight are merged as
        they come; the fetched history is merged afterwards and duplicates are
        absorbed by id. Raises ``FetchUnavailable`` when the store fails; no
        retry is attempted here.
        """

        generation = self.attach(conversation_key)
        try:
            history = await self._store.list_messages(conversation_key)
        except Exception as exc:
            if generation != self._generation:
                return []
            logger.warning("history fetch failed for %s: %s", conversation_key, exc)
            if isinstance(exc, FetchUnavailable):
                raise
            raise FetchUnavailable(conversation_key, str(exc) or "history unavailable") from exc
        if generation != self._generation:
            logger.debug("discarding history for closed conversation %s", conversation_key)
            return []
        if self._timeline.merge_history(history):
            self._publish()
        return self.messages()

    def on_remote_message(self, payload: Any) -> bool:
        """Merge a pushed message; returns True when the timeline changed."""

        if not self._alive:
            return False
        try:
            message = payload if isinstance(payload, Message) else Message.from_dict(payload)
        except MalformedEvent as exc:
            logger.warning("dropping malformed message event on %s: %s", self._conversation_key, exc)
            return False
        if message.conversation_key != self._conversation_key:
            logger.warning(
                "dropping message %s for %s on %s", message.id, message.conversation_key, self._conversation_key
            )
            return False
        if not self._timeline.insert(message):
            logger.debug("duplicate delivery of %s ignored", message.id)
            return False
        self._publish()
        return True

    def add_optimistic(self, message: Message) -> bool:
        if not self._alive or message.conversation_key != self._conversation_key:
            return False
        if not self._timeline.insert(message):
            return False
        self._publish()
        return True

    def append_authoritative(self, message: Message) -> bool:
        return self.add_optimistic(message)

    def on_local_message_accepted(self, temp_id: str, message: Message) -> Message:
        """Replace the optimistic ``temp_id`` entry with the store's copy.

        The authoritative entry lands at the position implied by its own
        timestamp. If the channel already delivered the same id, that copy
        is kept and only the placeholder goes away.
        """

        if not self._alive:
            return message
        self._timeline.remove(temp_id)
        existing = self._timeline.get(message.id)
        if existing is None:
            self._timeline.insert(message)
            existing = message
        else:
            logger.debug("echo of %s already delivered; keeping pushed copy", message.id)
        self._publish()
        return existing

    def rollback(self, temp_id: str) -> Optional[Message]:
        if not self._alive:
            return None
        removed = self._timeline.remove(temp_id)
        if removed is not None:
            self._publish()
        return removed

    def close(self) -> None:
        """Unsubscribe; later deliveries and in-flight fetches become no-ops."""

        self._generation += 1
        self._alive = False
        self._teardown()

    def _teardown(self) -> None:
        if self._subscription is not None:
            self._channel.unsubscribe(self._subscription)
            self._subscription = None

    def _publish(self) -> None:
        self.timeline.set(self._timeline.messages(), force=True)
