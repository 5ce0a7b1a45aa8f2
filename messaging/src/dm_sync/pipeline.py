from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, List

from .errors import SendFailed, WriteError
from .models import Message, MessageDraft, PendingSend, new_local_id, new_server_id
from .scheduling import now_ms
from .timeline import TimelineReconciler

logger = logging.getLogger(__name__)


class SendPipeline:
    """Optimistic outbound sends for one open conversation.

    Each call inserts its optimistic entry immediately, then waits its turn:
    store writes are issued one at a time in call order, so placeholders and
    their acknowledgements never interleave out of order.
    """

    def __init__(
        self,
        store,
        reconciler: TimelineReconciler,
        typing_publisher,
        self_id: str,
        *,
        agent=None,
        typing=None,
        now_func: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._reconciler = reconciler
        self._typing_publisher = typing_publisher
        self.self_id = self_id
        self._agent = agent
        self._typing = typing
        self._now = now_func
        self._locks: Dict[str, asyncio.Lock] = {}
        self._pending: Dict[str, PendingSend] = {}

    def pending(self) -> List[PendingSend]:
        return list(self._pending.values())

    async def send(self, conversation_key: str, content: str, media_url: str | None = None) -> Message:
        text = content.strip() if isinstance(content, str) else ""
        if not text:
            raise ValueError("message content must not be empty")

        self._typing_publisher.force_stop()

        if self._agent is not None and self._agent.handles(conversation_key):
            return self._send_to_agent(conversation_key, text, media_url)

        pending = PendingSend(
            local_id=new_local_id(),
            conversation_key=conversation_key,
            content=text,
            submitted_at=self._now(),
        )
        self._pending[pending.local_id] = pending
        self._reconciler.add_optimistic(
            Message(
                id=pending.local_id,
                conversation_key=conversation_key,
                sender_id=self.self_id,
                content=text,
                created_at=pending.submitted_at,
                media_url=media_url,
            )
        )

        lock = self._locks.setdefault(conversation_key, asyncio.Lock())
        try:
            async with lock:
                stored = await self._store.create_message(
                    MessageDraft(
                        conversation_key=conversation_key,
                        sender_id=self.self_id,
                        content=text,
                        media_url=media_url,
                    )
                )
        except WriteError as exc:
            logger.warning("send %s on %s rejected: %s", pending.local_id, conversation_key, exc)
            self._reconciler.rollback(pending.local_id)
            raise SendFailed(conversation_key, pending.local_id, text) from exc
        except asyncio.CancelledError:
            logger.debug("send %s on %s cancelled", pending.local_id, conversation_key)
            self._reconciler.rollback(pending.local_id)
            raise
        finally:
            self._pending.pop(pending.local_id, None)

        return self._reconciler.on_local_message_accepted(pending.local_id, stored)

    async def send_reaction(self, conversation_key: str, emoji: str) -> Message:
        """Quick reactions travel as ordinary messages whose body is the emoji."""

        return await self.send(conversation_key, emoji)

    def _send_to_agent(self, conversation_key: str, text: str, media_url: str | None) -> Message:
        message = Message(
            id=new_server_id(),
            conversation_key=conversation_key,
            sender_id=self.self_id,
            content=text,
            created_at=self._now(),
            media_url=media_url,
        )
        self._reconciler.append_authoritative(message)
        self._agent.schedule_reply(
            conversation_key,
            text,
            self._reconciler.append_authoritative,
            typing=self._typing,
        )
        return message

    def close(self) -> None:
        if self._agent is not None:
            self._agent.cancel_all()
