"""Command line entry points: run the development relay or replay frames offline."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Iterable, TextIO

from aiohttp import web

from .chat_store import ChatStore
from .models import Chat
from .presence import PresenceTracker
from .relay import create_app
from .router import EventRouter


class _OfflineEmitter:
    def emit(self, kind: str, body: dict | None = None) -> bool:
        return False


def simulate(
    frames: Iterable[dict],
    output: TextIO,
    *,
    chats: Iterable[dict] = (),
    identity: str | None = None,
    active_chat_id: str | None = None,
) -> dict:
    """Apply inbound frames to a fresh store and write the resulting snapshot."""

    store = ChatStore()
    presence = PresenceTracker(store)
    router = EventRouter(store, presence, _OfflineEmitter(), identity_func=lambda: identity)
    store.set_chats([Chat.from_wire(entry) for entry in chats])
    if active_chat_id is not None:
        active = store.get_chat(active_chat_id)
        if active is not None:
            store.set_active_chat(active)

    for frame in frames:
        router.handle_frame(frame)

    snapshot = {"store": store.snapshot(), "presence": presence.snapshot()}
    output.write(json.dumps(snapshot, sort_keys=True) + "\n")
    return snapshot


def _load_frames(handle: TextIO) -> list[dict]:
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
    try:
        frames = _load_frames(args.file or sys.stdin)
        chats: list[dict] = []
        if args.chats is not None:
            loaded = json.load(args.chats)
            chats = loaded if isinstance(loaded, list) else [loaded]
        simulate(frames, output, chats=chats, identity=args.identity, active_chat_id=args.active)
    except ValueError as exc:  # bad frames or chats input
        sys.stderr.write(f"Error: {exc}\n")
        return 1
    return 0


def _run_serve(args: argparse.Namespace) -> int:
    app = create_app(ping_interval_s=args.ping_interval)
    web.run_app(app, host=args.host, port=args.port)
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="chatsync realtime engine tools")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (DEBUG, INFO, WARNING, ...)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Replay inbound frames through a local store")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )
    simulate_parser.add_argument(
        "--chats",
        type=argparse.FileType("r"),
        default=None,
        help="Path to a JSON list of chats to load before replaying",
    )
    simulate_parser.add_argument("--identity", default=None, help="Local user id")
    simulate_parser.add_argument("--active", default=None, help="Chat id to mark as active")

    serve_parser = subparsers.add_parser("serve", help="Run the development relay")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port to bind")
    serve_parser.add_argument(
        "--ping-interval",
        type=int,
        default=30,
        help="Seconds between heartbeat pings",
    )

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "serve":
        return _run_serve(args)
    return _run_simulation(args, output or sys.stdout)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
