from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Union

from aiohttp import WSMsgType, web

from .channel import BroadcastChannel, ChannelSubscription
from .errors import WriteError
from .keys import key_participants
from .models import MessageDraft
from .sqlite_store import SQLiteBackend, SQLiteMessageStore
from .store import InMemoryMessageStore

logger = logging.getLogger(__name__)


class Runtime:
    def __init__(self, *, store, channel: BroadcastChannel, backend: SQLiteBackend | None = None) -> None:
        self.store = store
        self.channel = channel
        self.backend = backend


RUNTIME_KEY = web.AppKey("runtime", Runtime)
WS_CONFIG_KEY = web.AppKey("ws_config", dict)


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


def _invalid_request(message: str) -> web.Response:
    return web.json_response({"code": "invalid_request", "message": message}, status=400)


def _write_rejected(message: str) -> web.Response:
    return web.json_response({"code": "write_rejected", "message": message}, status=422)


def _with_no_store(response: web.Response) -> web.Response:
    response.headers["Cache-Control"] = "no-store"
    return response


def _conversation_key_from(request: web.Request) -> str | None:
    key = request.match_info.get("key", "")
    try:
        key_participants(key)
    except ValueError:
        return None
    return key


async def handle_list_messages(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    key = _conversation_key_from(request)
    if key is None:
        return _invalid_request("malformed conversation key")
    messages = await runtime.store.list_messages(key)
    return _with_no_store(web.json_response({"messages": [m.to_dict() for m in messages]}))


async def handle_create_message(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    key = _conversation_key_from(request)
    if key is None:
        return _invalid_request("malformed conversation key")
    try:
        body = await request.json()
    except Exception:
        return _invalid_request("malformed json")
    if not isinstance(body, dict):
        return _invalid_request("body must be an object")

    sender_id = body.get("sender_id")
    content = body.get("content")
    media_url = body.get("media_url")
    if not isinstance(sender_id, str) or not isinstance(content, str):
        return _invalid_request("sender_id and content required")
    if media_url is not None and not isinstance(media_url, str):
        return _invalid_request("media_url must be a string")
    try:
        message = await runtime.store.create_message(
            MessageDraft(conversation_key=key, sender_id=sender_id, content=content, media_url=media_url)
        )
    except WriteError as exc:
        return _write_rejected(str(exc))
    return web.json_response({"message": message.to_dict()})


async def handle_recent(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    user_id = request.match_info.get("user_id", "")
    try:
        limit = int(request.query.get("limit", "50"))
    except ValueError:
        return _invalid_request("limit must be an integer")
    messages = await runtime.store.list_recent(user_id, limit)
    return _with_no_store(web.json_response({"messages": [m.to_dict() for m in messages]}))


def create_app(
    *,
    db_path: str | None = None,
    store=None,
    channel: BroadcastChannel | None = None,
    max_msg_size: int = 1_048_576,
    outbound_queue_size: int = 1000,
) -> web.Application:
    channel = channel or BroadcastChannel()
    backend: SQLiteBackend | None = None
    if store is None:
        if db_path is not None:
            backend = SQLiteBackend(db_path)
            store = SQLiteMessageStore(backend, channel)
        else:
            store = InMemoryMessageStore(channel)

    app = web.Application()
    app[RUNTIME_KEY] = Runtime(store=store, channel=channel, backend=backend)
    app[WS_CONFIG_KEY] = {"max_msg_size": max_msg_size, "outbound_queue_size": outbound_queue_size}
    app.router.add_get("/healthz", handle_health)
    app.router.add_get("/v1/conversations/{key}/messages", handle_list_messages)
    app.router.add_post("/v1/conversations/{key}/messages", handle_create_message)
    app.router.add_get("/v1/users/{user_id}/recent", handle_recent)
    app.router.add_get("/v1/ws", websocket_handler)
    if backend is not None:
        async def close_db(_: web.Application) -> None:
            backend.close()

        app.on_cleanup.append(close_db)
    return app


def _error_frame(code: str, message: str, *, request_id: str | None = None) -> dict[str, Any]:
    return {"v": 1, "t": "error", "id": request_id, "body": {"code": code, "message": message}}


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    runtime = request.app[RUNTIME_KEY]
    ws_config: dict[str, Any] = request.app[WS_CONFIG_KEY]

    ws = web.WebSocketResponse(max_msg_size=ws_config["max_msg_size"])
    await ws.prepare(request)

    outbound: asyncio.Queue[Union[dict, None]] = asyncio.Queue(maxsize=ws_config["outbound_queue_size"])
    subscriptions: Dict[str, ChannelSubscription] = {}
    closed = False

    async def close_with_error(message: str) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        await ws.close(code=1011, message=message.encode("utf-8"))

    def enqueue(frame: dict) -> None:
        try:
            outbound.put_nowait(frame)
        except asyncio.QueueFull:
            asyncio.create_task(close_with_error("backpressure"))

    def on_message(payload: Dict[str, Any]) -> None:
        enqueue({"v": 1, "t": "conv.message", "body": payload})

    def on_typing(payload: Dict[str, Any]) -> None:
        enqueue({"v": 1, "t": "conv.typing", "body": payload})

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                await ws.send_json(frame)
        except asyncio.CancelledError:
            return
        except ConnectionResetError:
            return

    writer_task = asyncio.create_task(writer())

    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except Exception:
                    enqueue(_error_frame("invalid_request", "malformed json"))
                    continue
                if not isinstance(frame, dict) or frame.get("v") != 1:
                    request_id = frame.get("id") if isinstance(frame, dict) else None
                    enqueue(_error_frame("invalid_request", "unsupported version", request_id=request_id))
                    continue

                frame_type = frame.get("t")
                request_id = frame.get("id")
                body = frame.get("body")
                if not isinstance(body, dict):
                    body = {}
                key = body.get("conversation_key")

                if frame_type == "ping":
                    enqueue({"v": 1, "t": "pong", "id": request_id})
                elif frame_type == "conv.subscribe":
                    if not isinstance(key, str):
                        enqueue(_error_frame("invalid_request", "conversation_key required", request_id=request_id))
                        continue
                    previous = subscriptions.pop(key, None)
                    if previous is not None:
                        runtime.channel.unsubscribe(previous)
                    subscriptions[key] = runtime.channel.subscribe(key, on_message, on_typing)
                    logger.debug("websocket subscribed to %s", key)
                    enqueue({"v": 1, "t": "conv.subscribed", "id": request_id, "body": {"conversation_key": key}})
                elif frame_type == "conv.unsubscribe":
                    subscription = subscriptions.pop(key, None) if isinstance(key, str) else None
                    if subscription is not None:
                        runtime.channel.unsubscribe(subscription)
                    enqueue({"v": 1, "t": "conv.unsubscribed", "id": request_id, "body": {"conversation_key": key}})
                elif frame_type == "typing.set":
                    user_id = body.get("user_id")
                    is_typing = body.get("is_typing")
                    if not isinstance(key, str) or not isinstance(user_id, str) or not isinstance(is_typing, bool):
                        enqueue(
                            _error_frame(
                                "invalid_request",
                                "conversation_key, user_id, is_typing required",
                                request_id=request_id,
                            )
                        )
                        continue
                    runtime.channel.publish_typing(key, user_id, is_typing)
                else:
                    enqueue(_error_frame("invalid_request", "unknown frame type", request_id=request_id))
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        for subscription in subscriptions.values():
            runtime.channel.unsubscribe(subscription)
        subscriptions.clear()
        try:
            outbound.put_nowait(None)
        except asyncio.QueueFull:
            writer_task.cancel()
        await asyncio.gather(writer_task, return_exceptions=True)

    return ws
