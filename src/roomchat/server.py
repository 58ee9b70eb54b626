"""Command line entry points: the aiohttp server and an offline frame simulator."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import replace
from typing import Any, Iterable, TextIO

from aiohttp import web

from .chat import ChatService
from .config import load_config_from_env
from .errors import ChatError
from .hub import Subscription
from .logging import configure_logging
from .topics import BROADCAST, PrivateTopic, Topic, UserTopic
from .ws_transport import create_app


class _FrameClock:
    """Simulation time: advances to each frame's ``ts_ms`` and never goes back."""

    def __init__(self) -> None:
        self.now_ms = 0

    def advance(self, ts_ms: Any) -> None:
        if isinstance(ts_ms, int) and ts_ms > self.now_ms:
            self.now_ms = ts_ms

    def __call__(self) -> int:
        return self.now_ms


def _frame_topic(frame: dict, user_id: str) -> Topic:
    name = frame.get("topic")
    if name == "broadcast":
        return BROADCAST
    if name == "user":
        return UserTopic(user_id)
    if name == "private":
        return PrivateTopic.for_pair(user_id, frame["with"])
    raise ValueError(f"unsupported topic: {name}")


def simulate(frames: Iterable[dict], output: TextIO) -> None:
    """Process JSON frames through the messaging core and emit events."""

    clock = _FrameClock()
    service = ChatService.in_memory(now_func=clock)
    subscriptions: dict[tuple[str, str], Subscription] = {}

    def emit(message: dict) -> None:
        output.write(json.dumps(message, sort_keys=True) + "\n")

    def flush() -> None:
        for (user_id, _), subscription in sorted(subscriptions.items()):
            for event in subscription.drain():
                emit({"t": "event", "user_id": user_id, **event.as_dict()})

    for frame in frames:
        frame_type = frame.get("t")
        user_id = frame.get("user_id")
        clock.advance(frame.get("ts_ms"))
        try:
            if frame_type == "sub":
                topic = _frame_topic(frame, user_id)
                if (user_id, topic.key) not in subscriptions:
                    subscriptions[(user_id, topic.key)] = service.subscribe(user_id, topic)
            elif frame_type == "unsub":
                topic = _frame_topic(frame, user_id)
                subscription = subscriptions.pop((user_id, topic.key), None)
                if subscription is not None:
                    service.hub.unsubscribe(subscription)
            elif frame_type == "send":
                receiver = frame.get("to")
                kind = frame.get("kind", "text")
                if receiver is None:
                    message = service.send_broadcast(
                        user_id, frame.get("content"), kind, frame.get("media_ref"), created_at_ms=frame.get("ts_ms")
                    )
                else:
                    message = service.send_private(
                        user_id,
                        receiver,
                        frame.get("content"),
                        kind,
                        frame.get("media_ref"),
                        created_at_ms=frame.get("ts_ms"),
                    )
                emit({"t": "stored", "user_id": user_id, "message": message.as_dict()})
            elif frame_type == "delete":
                service.delete_private(frame["message_id"], user_id)
            elif frame_type == "read":
                topic = _frame_topic(frame, user_id)
                if isinstance(topic, PrivateTopic):
                    service.open_private(user_id, topic.counterpart(user_id))
                else:
                    service.open_broadcast(user_id)
            elif frame_type == "viewer.active":
                service.viewer_active(user_id, _frame_topic(frame, user_id))
            elif frame_type == "viewer.inactive":
                service.viewer_inactive(user_id, _frame_topic(frame, user_id))
            elif frame_type == "notify":
                service.create_notification(frame["to"], frame.get("type", "system"), frame.get("message", ""))
            elif frame_type == "unread":
                emit({"t": "unread", "user_id": user_id, **service.unread_summary(user_id)})
            elif frame_type == "conversations":
                emit({"t": "conversations", "user_id": user_id, **service.list_conversations(user_id).as_dict()})
            else:
                raise ValueError(f"unsupported frame type: {frame_type}")
        except ChatError as exc:
            emit({"t": "error", "user_id": user_id, "code": exc.code, "message": exc.message})
        flush()


def _load_frames(handle: TextIO) -> Iterable[dict]:
    content = handle.read()
    if not content.strip():
        return []

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = None

    if parsed is None:
        frames: list[dict] = []
        for line in content.splitlines():
            if line.strip():
                frames.append(json.loads(line))
        return frames

    if isinstance(parsed, list):
        return parsed
    return [parsed]


def _run_simulation(args: argparse.Namespace, output: TextIO) -> int:
    frames = _load_frames(args.file or sys.stdin)
    simulate(frames, output)
    return 0


def _run_serve(args: argparse.Namespace) -> int:
    config = load_config_from_env()
    overrides: dict[str, Any] = {}
    if args.db is not None:
        overrides["db_path"] = args.db
    if args.media_dir is not None:
        overrides["media_dir"] = args.media_dir
    if args.profiles is not None:
        overrides["profiles_path"] = args.profiles
    if args.ping_interval is not None:
        overrides["ping_interval_s"] = args.ping_interval
    if args.log_format is not None:
        overrides["log_json"] = args.log_format == "json"
    config = replace(config, **overrides)

    configure_logging(json_format=config.log_json, level=logging.DEBUG if args.verbose else logging.INFO)
    app = create_app(config)
    web.run_app(app, host=args.host, port=args.port)
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="Room chat server")
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Replay chat frames through the core")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp chat server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port to bind")
    serve_parser.add_argument("--ping-interval", type=int, default=None, help="Seconds between heartbeat pings")
    serve_parser.add_argument("--db", type=str, default=None, help="Path to SQLite database for durability")
    serve_parser.add_argument("--media-dir", type=str, default=None, help="Directory for uploaded media")
    serve_parser.add_argument("--profiles", type=str, default=None, help="Path to a JSON profiles file")
    serve_parser.add_argument("--log-format", choices=("json", "console"), default=None)
    serve_parser.add_argument("-v", "--verbose", action="store_true", help="Log at debug level")

    args = parser.parse_args(argv)

    if args.command == "simulate":
        return _run_simulation(args, output or sys.stdout)
    return _run_serve(args)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
