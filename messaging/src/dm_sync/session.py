from __future__ import annotations

import contextlib
import logging
from typing import AsyncIterator, Callable, List, Mapping, Optional

from .agent import ScriptedAgent
from .aggregator import load_conversations
from .config import EngineConfig
from .errors import FetchUnavailable
from .keys import conversation_key
from .models import ConversationSummary, Message, Profile
from .observable import Observable
from .pipeline import SendPipeline
from .presence import LocalTypingPublisher, TypingStateMachine
from .scheduling import LoopScheduler, now_ms
from .timeline import TimelineReconciler

logger = logging.getLogger(__name__)

STATUS_LOADING = "loading"
STATUS_READY = "ready"
STATUS_UNAVAILABLE = "unavailable"
STATUS_CLOSED = "closed"


class ConversationSession:
    """Handle returned to the UI layer for one open conversation."""

    def __init__(
        self,
        messenger: "Messenger",
        partner_id: str,
        key: str,
        reconciler: TimelineReconciler,
        publisher: LocalTypingPublisher,
        pipeline: SendPipeline,
        *,
        local_only: bool,
    ) -> None:
        self._messenger = messenger
        self.partner_id = partner_id
        self.conversation_key = key
        self._reconciler = reconciler
        self._publisher = publisher
        self._pipeline = pipeline
        self.local_only = local_only
        self.status: Observable[str] = Observable(STATUS_LOADING)
        self.closed = False

    @property
    def timeline(self) -> Observable[List[Message]]:
        return self._reconciler.timeline

    @property
    def typing(self) -> Observable[bool]:
        return self._messenger.typing_machine.typing

    def messages(self) -> List[Message]:
        return self._reconciler.messages()

    async def load(self) -> None:
        if self.local_only:
            self._reconciler.bind_local(self.conversation_key)
            self.status.set(STATUS_READY)
            return
        self.status.set(STATUS_LOADING)
        try:
            await self._reconciler.initialize(self.conversation_key)
        except FetchUnavailable:
            if not self.closed:
                self.status.set(STATUS_UNAVAILABLE)
            return
        if not self.closed:
            self.status.set(STATUS_READY)

    async def reload(self) -> None:
        """Retry the historical fetch; the subscription is recreated too."""

        self._ensure_open()
        await self.load()

    async def send(self, content: str, media_url: str | None = None) -> Message:
        self._ensure_open()
        return await self._pipeline.send(self.conversation_key, content, media_url)

    async def send_reaction(self, emoji: str) -> Message:
        self._ensure_open()
        return await self._pipeline.send_reaction(self.conversation_key, emoji)

    def set_typing(self, is_typing: bool) -> None:
        if self.closed:
            return
        self._publisher.set_typing(bool(is_typing))

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._publisher.is_typing:
            self._publisher.force_stop()
        self._pipeline.close()
        self._reconciler.close()
        self.status.set(STATUS_CLOSED)
        self._messenger._release(self)

    def _ensure_open(self) -> None:
        if self.closed:
            raise RuntimeError("conversation is closed")


class Messenger:
    """Entry point for one signed-in user.

    At most one conversation is open at a time; opening another closes the
    previous one, releasing its channel subscription and typing timer.
    """

    def __init__(
        self,
        self_id: str,
        store,
        channel,
        *,
        config: EngineConfig | None = None,
        scheduler=None,
        now_func: Callable[[], int] = now_ms,
    ) -> None:
        self.self_id = self_id
        self.config = config or EngineConfig()
        self._store = store
        self._channel = channel
        self._scheduler = scheduler or LoopScheduler()
        self._now = now_func
        self.typing_machine = TypingStateMachine(
            self_id,
            scheduler=self._scheduler,
            timeout_s=self.config.typing_timeout_s,
            now_func=now_func,
        )
        self.agent = ScriptedAgent(
            self.config.agent_user_id,
            seed=self.config.agent_seed,
            reply_delay_s=self.config.agent_reply_delay_s,
            scheduler=self._scheduler,
            now_func=now_func,
        )
        self.current: ConversationSession | None = None

    async def open_conversation(self, partner_id: str) -> ConversationSession:
        key = conversation_key(self.self_id, partner_id)
        if self.current is not None:
            self.current.close()

        local_only = partner_id == self.agent.agent_id
        self.typing_machine.reset(key)
        reconciler = TimelineReconciler(
            self._store,
            self._channel,
            on_typing=self.typing_machine.on_typing_event,
        )
        publisher = LocalTypingPublisher(None if local_only else self._channel, key, self.self_id)
        pipeline = SendPipeline(
            self._store,
            reconciler,
            publisher,
            self.self_id,
            agent=self.agent if local_only else None,
            typing=self.typing_machine,
            now_func=self._now,
        )
        session = ConversationSession(
            self,
            partner_id,
            key,
            reconciler,
            publisher,
            pipeline,
            local_only=local_only,
        )
        self.current = session
        logger.debug("opening conversation %s", key)
        await session.load()
        return session

    @contextlib.asynccontextmanager
    async def conversation(self, partner_id: str) -> AsyncIterator[ConversationSession]:
        session = await self.open_conversation(partner_id)
        try:
            yield session
        finally:
            session.close()

    async def conversations(
        self, profiles: Optional[Mapping[str, Profile]] = None
    ) -> List[ConversationSummary]:
        return await load_conversations(
            self._store, self.self_id, profiles, limit=self.config.conversation_list_limit
        )

    def close(self) -> None:
        if self.current is not None:
            self.current.close()

    def _release(self, session: ConversationSession) -> None:
        if self.current is session:
            self.current = None
            self.typing_machine.close()
