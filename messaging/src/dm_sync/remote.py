"""aiohttp adapters that let the engine run against a remote gateway.

``RemoteMessageStore`` speaks the gateway's REST routes and
``RemoteChannel`` multiplexes conversation subscriptions over one
WebSocket. Both expose the same interface as their in-process
counterparts, so a ``Messenger`` can be built on either.
"""

from __future__ import annotations

import asyncio
import logging
import urllib.parse
from typing import Any, Dict, List, Optional

import aiohttp

from .channel import ChannelSubscription, EventCallback
from .errors import FetchUnavailable, MalformedEvent, WriteError
from .models import Message, MessageDraft

logger = logging.getLogger(__name__)


def _build_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}{path}"


def _conversation_path(conversation_key: str) -> str:
    return f"/v1/conversations/{urllib.parse.quote(conversation_key, safe=':')}/messages"


def _parse_messages(payload: Any) -> List[Message]:
    if not isinstance(payload, dict) or not isinstance(payload.get("messages"), list):
        raise MalformedEvent("messages list missing")
    return [Message.from_dict(item) for item in payload["messages"]]


class RemoteMessageStore:
    def __init__(self, session: aiohttp.ClientSession, base_url: str) -> None:
        self._session = session
        self._base_url = base_url

    async def list_messages(self, conversation_key: str) -> list[Message]:
        url = _build_url(self._base_url, _conversation_path(conversation_key))
        try:
            async with self._session.get(url) as response:
                if response.status != 200:
                    raise FetchUnavailable(conversation_key, f"gateway returned {response.status}")
                payload = await response.json()
            return _parse_messages(payload)
        except (aiohttp.ClientError, asyncio.TimeoutError, MalformedEvent) as exc:
            raise FetchUnavailable(conversation_key, str(exc) or type(exc).__name__) from exc

    async def create_message(self, draft: MessageDraft) -> Message:
        url = _build_url(self._base_url, _conversation_path(draft.conversation_key))
        body = draft.to_dict()
        try:
            async with self._session.post(url, json=body) as response:
                payload = await response.json(content_type=None)
                if response.status != 200:
                    message = payload.get("message") if isinstance(payload, dict) else None
                    raise WriteError(message or f"gateway returned {response.status}")
            if not isinstance(payload, dict):
                raise WriteError("unexpected response body")
            return Message.from_dict(payload.get("message"))
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise WriteError(str(exc) or type(exc).__name__) from exc

    async def list_recent(self, user_id: str, limit: int = 50) -> list[Message]:
        url = _build_url(self._base_url, f"/v1/users/{urllib.parse.quote(user_id, safe='')}/recent")
        try:
            async with self._session.get(url, params={"limit": str(limit)}) as response:
                if response.status != 200:
                    raise FetchUnavailable(f"recent:{user_id}", f"gateway returned {response.status}")
                payload = await response.json()
            return _parse_messages(payload)
        except (aiohttp.ClientError, asyncio.TimeoutError, MalformedEvent) as exc:
            raise FetchUnavailable(f"recent:{user_id}", str(exc) or type(exc).__name__) from exc


class RemoteChannel:
    """Broadcast channel backed by the gateway WebSocket.

    ``subscribe``, ``unsubscribe`` and ``publish_typing`` never block: frames
    are queued and flushed by a writer task. Call ``connect`` before use and
    ``close`` when done.
    """

    def __init__(self, session: aiohttp.ClientSession, base_url: str, *, queue_size: int = 1000) -> None:
        self._session = session
        self._base_url = base_url
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._outbound: asyncio.Queue[Optional[dict]] = asyncio.Queue(maxsize=queue_size)
        self._subscriptions: Dict[str, List[ChannelSubscription]] = {}
        self._acked: Dict[str, asyncio.Event] = {}
        self._reader_task: Optional[asyncio.Task] = None
        self._writer_task: Optional[asyncio.Task] = None
        self._request_seq = 0

    async def connect(self) -> None:
        if self._ws is not None:
            return
        self._ws = await self._session.ws_connect(_build_url(self._base_url, "/v1/ws"))
        self._writer_task = asyncio.create_task(self._writer())
        self._reader_task = asyncio.create_task(self._reader())

    async def close(self) -> None:
        if self._ws is None:
            return
        try:
            self._outbound.put_nowait(None)
        except asyncio.QueueFull:
            if self._writer_task is not None:
                self._writer_task.cancel()
        if self._writer_task is not None:
            await asyncio.gather(self._writer_task, return_exceptions=True)
        await self._ws.close()
        if self._reader_task is not None:
            self._reader_task.cancel()
            await asyncio.gather(self._reader_task, return_exceptions=True)
        self._ws = None

    def subscribe(
        self,
        conversation_key: str,
        on_message: EventCallback,
        on_typing: EventCallback,
    ) -> ChannelSubscription:
        subscription = ChannelSubscription(conversation_key, on_message, on_typing)
        subs = self._subscriptions.setdefault(conversation_key, [])
        subs.append(subscription)
        if len(subs) == 1:
            self._acked[conversation_key] = asyncio.Event()
            self._send("conv.subscribe", {"conversation_key": conversation_key})
        return subscription

    def unsubscribe(self, subscription: ChannelSubscription) -> None:
        subscription.active = False
        subs = self._subscriptions.get(subscription.conversation_key)
        if not subs or subscription not in subs:
            return
        subs.remove(subscription)
        if not subs:
            self._subscriptions.pop(subscription.conversation_key, None)
            self._acked.pop(subscription.conversation_key, None)
            self._send("conv.unsubscribe", {"conversation_key": subscription.conversation_key})

    def publish_typing(self, conversation_key: str, user_id: str, is_typing: bool) -> None:
        self._send(
            "typing.set",
            {"conversation_key": conversation_key, "user_id": user_id, "is_typing": is_typing},
        )

    async def wait_subscribed(self, conversation_key: str, timeout: float = 5.0) -> None:
        event = self._acked.get(conversation_key)
        if event is None:
            raise KeyError(conversation_key)
        await asyncio.wait_for(event.wait(), timeout=timeout)

    def _send(self, frame_type: str, body: Dict[str, Any]) -> None:
        self._request_seq += 1
        frame = {"v": 1, "t": frame_type, "id": f"r{self._request_seq}", "body": body}
        try:
            self._outbound.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning("dropping %s frame: outbound queue full", frame_type)

    async def _writer(self) -> None:
        assert self._ws is not None
        try:
            while True:
                frame = await self._outbound.get()
                if frame is None:
                    break
                await self._ws.send_json(frame)
        except asyncio.CancelledError:
            return
        except ConnectionResetError:
            logger.warning("gateway connection lost while sending")

    async def _reader(self) -> None:
        assert self._ws is not None
        async for msg in self._ws:
            if msg.type != aiohttp.WSMsgType.TEXT:
                if msg.type in {aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR}:
                    break
                continue
            try:
                frame = msg.json()
            except ValueError:
                logger.warning("dropping non-json frame from gateway")
                continue
            self._dispatch(frame)

    def _dispatch(self, frame: Any) -> None:
        if not isinstance(frame, dict):
            logger.warning("dropping malformed frame from gateway")
            return
        frame_type = frame.get("t")
        body = frame.get("body")
        if frame_type == "error":
            logger.warning("gateway error: %s", body)
            return
        if not isinstance(body, dict):
            return
        key = body.get("conversation_key")
        if frame_type == "conv.subscribed":
            event = self._acked.get(key)
            if event is not None:
                event.set()
            return
        if frame_type not in {"conv.message", "conv.typing"}:
            return
        for subscription in list(self._subscriptions.get(key, [])):
            if not subscription.active:
                continue
            callback = subscription.on_message if frame_type == "conv.message" else subscription.on_typing
            try:
                callback(dict(body))
            except Exception:
                logger.exception("channel listener failed")
