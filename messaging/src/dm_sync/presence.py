from __future__ import annotations

import enum
import logging
from typing import Any, Callable, Dict

from .errors import MalformedEvent
from .models import TypingSignal
from .observable import Observable
from .scheduling import LoopScheduler, now_ms

logger = logging.getLogger(__name__)

DEFAULT_TYPING_TIMEOUT_S = 3.0


class TypingState(enum.Enum):
    IDLE = "idle"
    PEER_TYPING = "peer_typing"


class TypingStateMachine:
    """Tracks whether the remote participant of the open conversation is typing.

    ``IDLE -> PEER_TYPING`` on a typing-start from the peer, a repeated start
    re-arms the expiry timer, and ``PEER_TYPING -> IDLE`` happens on an
    explicit stop or when ``timeout_s`` elapses after the last start. The
    local user's own signals are ignored.
    """

    def __init__(
        self,
        self_user_id: str,
        *,
        scheduler=None,
        timeout_s: float = DEFAULT_TYPING_TIMEOUT_S,
        now_func: Callable[[], int] = now_ms,
    ) -> None:
        self.self_user_id = self_user_id
        self.timeout_s = timeout_s
        self._scheduler = scheduler or LoopScheduler()
        self._now = now_func
        self._conversation_key: str | None = None
        self._state = TypingState.IDLE
        self._timer = None
        self._timer_generation = 0
        self.last_signal: TypingSignal | None = None
        self.typing: Observable[bool] = Observable(False)

    @property
    def state(self) -> TypingState:
        return self._state

    @property
    def conversation_key(self) -> str | None:
        return self._conversation_key

    def reset(self, conversation_key: str | None) -> None:
        """Switch to ``conversation_key``, dropping any state of the previous one."""

        self._cancel_timer()
        self._conversation_key = conversation_key
        self.last_signal = None
        self._set_state(TypingState.IDLE)

    def close(self) -> None:
        self.reset(None)

    def on_typing_event(self, payload: Dict[str, Any]) -> bool:
        """Apply a typing payload from the channel; returns True if it was applied."""

        if self._conversation_key is None:
            return False
        try:
            signal = TypingSignal.from_dict(payload, observed_at=self._now())
        except MalformedEvent as exc:
            logger.warning("dropping malformed typing event on %s: %s", self._conversation_key, exc)
            return False
        if signal.conversation_key != self._conversation_key or signal.user_id == self.self_user_id:
            return False
        self.last_signal = signal
        if signal.is_typing:
            self._start(self.timeout_s)
        else:
            self.stop_peer_typing()
        return True

    def force_peer_typing(self, duration_s: float) -> None:
        """Show the peer as typing for ``duration_s`` without a channel event."""

        if self._conversation_key is None:
            return
        self._start(duration_s)

    def stop_peer_typing(self) -> None:
        self._cancel_timer()
        self._set_state(TypingState.IDLE)

    def _start(self, timeout_s: float) -> None:
        self._cancel_timer()
        self._timer_generation += 1
        generation = self._timer_generation

        def expire() -> None:
            if generation != self._timer_generation:
                return
            self._timer = None
            logger.debug("typing indicator expired on %s", self._conversation_key)
            self._set_state(TypingState.IDLE)

        self._timer = self._scheduler.call_later(timeout_s, expire)
        self._set_state(TypingState.PEER_TYPING)

    def _cancel_timer(self) -> None:
        self._timer_generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _set_state(self, state: TypingState) -> None:
        self._state = state
        self.typing.set(state is TypingState.PEER_TYPING)


class LocalTypingPublisher:
    """Publishes the local user's typing signal, suppressing repeats.

    With no channel (a conversation with the scripted agent) signals are
    tracked but go nowhere.
    """

    def __init__(self, channel, conversation_key: str, user_id: str) -> None:
        self._channel = channel
        self.conversation_key = conversation_key
        self.user_id = user_id
        self._is_typing = False

    @property
    def is_typing(self) -> bool:
        return self._is_typing

    def set_typing(self, is_typing: bool) -> None:
        if is_typing == self._is_typing:
            return
        self._publish(is_typing)

    def force_stop(self) -> None:
        self._publish(False)

    def _publish(self, is_typing: bool) -> None:
        self._is_typing = is_typing
        if self._channel is not None:
            self._channel.publish_typing(self.conversation_key, self.user_id, is_typing)
