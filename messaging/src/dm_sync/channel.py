from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List

from .models import Message

logger = logging.getLogger(__name__)

EventCallback = Callable[[Dict[str, Any]], None]


@dataclass(eq=False)
class ChannelSubscription:
    conversation_key: str
    on_message: EventCallback
    on_typing: EventCallback
    active: bool = True


class BroadcastChannel:
    """In-process publish/subscribe channel scoped by conversation key.

    Payloads are delivered as plain dicts, the same shape the WebSocket
    gateway forwards, so subscribers validate them before use.
    """

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[ChannelSubscription]] = {}

    def subscribe(
        self,
        conversation_key: str,
        on_message: EventCallback,
        on_typing: EventCallback,
    ) -> ChannelSubscription:
        subscription = ChannelSubscription(
            conversation_key=conversation_key,
            on_message=on_message,
            on_typing=on_typing,
        )
        self._subscriptions.setdefault(conversation_key, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: ChannelSubscription) -> None:
        subscription.active = False
        subs = self._subscriptions.get(subscription.conversation_key)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.conversation_key, None)

    def subscriber_count(self, conversation_key: str) -> int:
        return len(self._subscriptions.get(conversation_key, []))

    def publish_message(self, message: Message) -> None:
        self.publish_message_payload(message.conversation_key, message.to_dict())

    def publish_message_payload(self, conversation_key: str, payload: Dict[str, Any]) -> None:
        for subscription in list(self._subscriptions.get(conversation_key, [])):
            if subscription.active:
                self._deliver(subscription.on_message, payload)

    def publish_typing(self, conversation_key: str, user_id: str, is_typing: bool) -> None:
        payload = {"conversation_key": conversation_key, "user_id": user_id, "is_typing": is_typing}
        for subscription in list(self._subscriptions.get(conversation_key, [])):
            if subscription.active:
                self._deliver(subscription.on_typing, payload)

    @staticmethod
    def _deliver(callback: EventCallback, payload: Dict[str, Any]) -> None:
        try:
            callback(dict(payload))
        except Exception:
            logger.exception("channel listener failed")
