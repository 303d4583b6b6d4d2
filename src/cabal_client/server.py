"""Command line entry point: replay upstream frames through a cabal, or serve one over HTTP."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, Iterable, TextIO

from aiohttp import web

from .cabal import CabalState
from .client import ClientRegistry
from .errors import CabalError
from .events import EVENT_TYPES, CabalEvent
from .log import InMemoryCabalLog
from .settings import DEFAULT_SETTINGS_PATH, InMemorySettingsStore, JsonSettingsStore
from .web import create_app, jsonable

logger = logging.getLogger(__name__)


async def _apply_frame(state: CabalState, log: InMemoryCabalLog, frame: Dict[str, Any], output: TextIO) -> None:
    frame_type = frame.get("t")
    if frame_type == "peer":
        log.add_peer(frame["key"], frame.get("name", ""))
        log.peer_connected(frame["key"])
    elif frame_type == "peer.drop":
        log.peer_dropped(frame["key"])
    elif frame_type == "receive":
        log.receive(frame["author"], frame["message"], timestamp=frame.get("timestamp"))
    elif frame_type == "flags":
        log.apply_flags(
            frame["by"],
            frame["id"],
            frame.get("channel", "@"),
            frame.get("flags", []),
            frame.get("type", "add"),
            frame.get("reason", ""),
        )
    elif frame_type == "publish":
        await state.publish_message(frame["message"])
    elif frame_type == "nick":
        await state.publish_nick(frame["name"])
    elif frame_type == "join":
        await state.join_channel(frame["channel"])
    elif frame_type == "leave":
        await state.leave_channel(frame.get("channel"))
    elif frame_type == "focus":
        state.focus_channel(frame.get("channel"), keep_unread=bool(frame.get("keep_unread")))
    elif frame_type == "page":
        details = state.get_channel(frame.get("channel"))
        messages = await details.get_page(limit=frame.get("limit")) if details is not None else []
        output.write(json.dumps({"t": "page", "channel": frame.get("channel"), "messages": jsonable(messages)}) + "\n")
    else:
        raise ValueError(f"unsupported frame type: {frame_type}")
    await state.flush()


async def _simulate(frames: Iterable[dict], output: TextIO, nick: str | None = None) -> None:
    log = InMemoryCabalLog()
    state = CabalState(log)

    def write_event(event: CabalEvent) -> None:
        output.write(json.dumps({"t": "event", "type": event.type, "body": jsonable(event.payload)}) + "\n")

    for event_type in sorted(EVENT_TYPES - {"update"}):
        state.on(event_type, write_event)

    await state.initialize()
    if nick:
        await state.publish_nick(nick)
        await state.flush()
    try:
        for frame in frames:
            try:
                await _apply_frame(state, log, frame, output)
            except CabalError as exc:
                output.write(json.dumps({"t": "error", "code": exc.code, "message": str(exc)}) + "\n")
    finally:
        await state.destroy()


def simulate(frames: Iterable[dict], output: TextIO, nick: str | None = None) -> None:
    """Replay JSON frames against an in-memory cabal and write every emitted event as a JSON line."""

    asyncio.run(_simulate(frames, output, nick))


def _load_frames(handle: TextIO) -> Iterable[dict]:
    content = handle.read()
    if not content.strip():
        return []

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = None

    if parsed is None:
        return [json.loads(line) for line in content.splitlines() if line.strip()]
    if isinstance(parsed, list):
        return parsed
    return [parsed]


def _run_simulation(args: argparse.Namespace, output: TextIO) -> int:
    if args.file is None:
        frames = _load_frames(sys.stdin)
    else:
        with args.file:
            frames = _load_frames(args.file)
    simulate(frames, output, nick=args.nick)
    return 0


def _run_serve(args: argparse.Namespace) -> int:
    settings = JsonSettingsStore(args.settings) if args.settings else InMemorySettingsStore()
    registry = ClientRegistry(settings=settings)
    app = create_app(registry)

    async def open_cabal(_: web.Application) -> None:
        details = await registry.add_cabal(args.key) if args.key else await registry.create_cabal()
        if args.nick:
            await details.publish_nick(args.nick)
        logger.info("serving cabal %s", details.key)

    app.on_startup.append(open_cabal)
    web.run_app(app, host=args.host, port=args.port)
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="Cabal client CLI")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (DEBUG, INFO, ...)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Replay upstream frames through an in-memory cabal")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )
    simulate_parser.add_argument("--nick", default=None, help="Nickname to publish for the local user")

    serve_parser = subparsers.add_parser("serve", help="Serve cabal state over HTTP and WebSocket")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port to bind")
    serve_parser.add_argument("--key", default=None, help="Cabal key to open; a new one is created if omitted")
    serve_parser.add_argument("--nick", default=None, help="Nickname to publish for the local user")
    serve_parser.add_argument(
        "--settings",
        default=None,
        help=f"Path to the settings JSON file (e.g. {DEFAULT_SETTINGS_PATH}); in-memory if omitted",
    )

    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, str(args.log_level).upper(), logging.WARNING))

    if args.command == "simulate":
        return _run_simulation(args, output or sys.stdout)
    return _run_serve(args)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
