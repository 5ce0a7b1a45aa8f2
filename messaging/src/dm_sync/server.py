"""Command line entry points: run the gateway or replay a scripted session."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, Iterable, List, TextIO

from aiohttp import web

from .channel import BroadcastChannel
from .config import EngineConfig, load_config
from .errors import SendFailed
from .models import Message
from .session import Messenger
from .store import InMemoryMessageStore
from .ws_transport import create_app

logger = logging.getLogger(__name__)


def _message_row(message: Message) -> Dict[str, Any]:
    return {
        "id": message.id,
        "sender_id": message.sender_id,
        "content": message.content,
        "pending": message.is_pending,
    }


async def simulate_async(frames: Iterable[dict], output: TextIO, config: EngineConfig | None = None) -> None:
    """Drive one engine per user through ``frames`` and emit JSON lines.

    Supported frames: ``open`` (user, partner), ``send`` (user, content),
    ``react`` (user, emoji), ``typing`` (user, is_typing), ``wait``
    (seconds), ``close`` (user) and ``conversations`` (user).
    """

    config = config or EngineConfig()
    channel = BroadcastChannel()
    store = InMemoryMessageStore(channel)
    messengers: Dict[str, Messenger] = {}

    def emit(payload: Dict[str, Any]) -> None:
        output.write(json.dumps(payload, ensure_ascii=False) + "\n")

    def messenger_for(user_id: str) -> Messenger:
        if user_id not in messengers:
            messengers[user_id] = Messenger(user_id, store, channel, config=config)
        return messengers[user_id]

    def current_session(user_id: str):
        session = messenger_for(user_id).current
        if session is None:
            raise ValueError(f"{user_id} has no open conversation")
        return session

    for frame in frames:
        frame_type = frame.get("t")
        logger.debug("simulating %s frame", frame_type)
        if frame_type == "open":
            user_id = frame["user"]
            session = await messenger_for(user_id).open_conversation(frame["partner"])
            session.timeline.subscribe(
                lambda messages, user=user_id: emit(
                    {"t": "timeline", "user": user, "messages": [_message_row(m) for m in messages]}
                )
            )
            session.typing.subscribe(
                lambda typing, user=user_id: emit({"t": "typing", "user": user, "peer_typing": typing})
            )
            emit(
                {
                    "t": "opened",
                    "user": user_id,
                    "conversation_key": session.conversation_key,
                    "status": session.status.value,
                    "messages": [_message_row(m) for m in session.messages()],
                }
            )
        elif frame_type in {"send", "react"}:
            user_id = frame["user"]
            session = current_session(user_id)
            try:
                if frame_type == "send":
                    await session.send(frame["content"])
                else:
                    await session.send_reaction(frame["emoji"])
            except SendFailed as exc:
                emit({"t": "send_failed", "user": user_id, "local_id": exc.local_id, "content": exc.content})
        elif frame_type == "typing":
            current_session(frame["user"]).set_typing(bool(frame.get("is_typing", True)))
        elif frame_type == "wait":
            await asyncio.sleep(float(frame.get("seconds", 0)))
        elif frame_type == "close":
            messenger_for(frame["user"]).close()
        elif frame_type == "conversations":
            user_id = frame["user"]
            summaries = await messenger_for(user_id).conversations()
            emit(
                {
                    "t": "conversations",
                    "user": user_id,
                    "items": [
                        {
                            "partner_id": summary.partner_id,
                            "preview": summary.preview(config.preview_length),
                            "last_message_at": summary.last_message_at,
                        }
                        for summary in summaries
                    ],
                }
            )
        else:
            raise ValueError(f"unsupported frame type: {frame_type}")

    for messenger in messengers.values():
        messenger.close()


def simulate(frames: Iterable[dict], output: TextIO, config: EngineConfig | None = None) -> None:
    asyncio.run(simulate_async(frames, output, config))


def _load_frames(handle: TextIO) -> List[dict]:
    """Read frames given as a JSON list, a single JSON object or JSON lines."""

    text = handle.read().strip()
    if not text:
        return []
    try:
        document = json.loads(text)
    except json.JSONDecodeError:
        frames = [json.loads(line) for line in text.splitlines() if line.strip()]
    else:
        frames = document if isinstance(document, list) else [document]
    for index, frame in enumerate(frames):
        if not isinstance(frame, dict):
            raise ValueError(f"frame {index} is not a JSON object")
    return frames


def _run_simulation(args: argparse.Namespace, output: TextIO) -> int:
    frames = _load_frames(args.file or sys.stdin)
    simulate(frames, output, load_config(args.config))
    return 0


def _run_serve(args: argparse.Namespace) -> int:
    app = create_app(db_path=args.db)
    web.run_app(app, host=args.host, port=args.port)
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="Direct message sync engine")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (DEBUG, INFO, ...)")
    parser.add_argument("--config", default=None, help="Path to a JSON engine config")
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Replay scripted frames through the engine")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp message gateway")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port to bind")
    serve_parser.add_argument("--db", type=str, default=None, help="Path to SQLite database for durability")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "simulate":
        return _run_simulation(args, output or sys.stdout)
    return _run_serve(args)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
