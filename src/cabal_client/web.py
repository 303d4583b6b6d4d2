"""HTTP + WebSocket surface over a :class:`ClientRegistry` for UIs."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List

from aiohttp import WSMsgType, web

from .cabal import CabalState
from .channels import ChannelState, Mention
from .client import ClientRegistry
from .errors import CabalError, InvalidChannelName, NotAuthorized, NotAvailable, NotFound, UnsupportedMessageType
from .events import EVENT_TYPES, CabalEvent
from .user import User

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR = (
    (NotFound, 404),
    (NotAvailable, 409),
    (NotAuthorized, 403),
    (InvalidChannelName, 400),
    (UnsupportedMessageType, 400),
)


def _status_for(exc: CabalError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 502


def _error_response(code: str, message: str, status: int) -> web.Response:
    return web.json_response({"code": code, "message": message}, status=status)


def jsonable(value: Any) -> Any:
    """Convert event payloads and query results into plain JSON values."""

    if isinstance(value, (User, ChannelState, CabalState)):
        return value.to_dict()
    if isinstance(value, Mention):
        return {"message": jsonable(value.message), "direct": value.direct}
    if isinstance(value, BaseException):
        return str(value)
    if isinstance(value, dict):
        return {str(key): jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [jsonable(item) for item in value]
    return value


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except CabalError as exc:
        return _error_response(exc.code, str(exc), _status_for(exc))
    except ValueError as exc:
        return _error_response("invalid_request", str(exc), 400)


def _flag(request: web.Request, name: str) -> bool:
    return request.query.get(name, "").lower() in {"1", "true", "yes"}


def _number(request: web.Request, name: str) -> float | None:
    raw = request.query.get(name)
    if raw is None or raw == "":
        return None
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number") from None


async def _json_body(request: web.Request) -> Dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except ValueError:
        raise ValueError("body must be JSON") from None
    if not isinstance(body, dict):
        raise ValueError("body must be a JSON object")
    return body


def _details(request: web.Request) -> CabalState:
    registry: ClientRegistry = request.app["registry"]
    return registry.get_details(request.match_info["key"])


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


async def handle_list_cabals(request: web.Request) -> web.Response:
    registry: ClientRegistry = request.app["registry"]
    current = registry.get_current_cabal()
    return web.json_response(
        {
            "cabals": [registry.cabals[key].to_dict() for key in registry.get_cabal_keys()],
            "current": current.key if current is not None else None,
        }
    )


async def handle_add_cabal(request: web.Request) -> web.Response:
    registry: ClientRegistry = request.app["registry"]
    body = await _json_body(request)
    key = body.get("key")
    if key is not None and not isinstance(key, str):
        raise ValueError("key must be a string")
    details = await registry.add_cabal(key) if key else await registry.create_cabal()
    return web.json_response(details.to_dict())


async def handle_focus_cabal(request: web.Request) -> web.Response:
    registry: ClientRegistry = request.app["registry"]
    details = registry.focus_cabal(request.match_info["key"])
    return web.json_response(details.to_dict())


async def handle_remove_cabal(request: web.Request) -> web.Response:
    registry: ClientRegistry = request.app["registry"]
    await registry.remove_cabal(request.match_info["key"])
    return web.json_response({"status": "ok"})


async def handle_channels(request: web.Request) -> web.Response:
    details = _details(request)
    names = details.get_channels(
        include_archived=_flag(request, "include_archived"),
        include_pm=_flag(request, "include_pm"),
        only_joined=_flag(request, "only_joined"),
    )
    return web.json_response(
        {"current": details.get_current_channel(), "channels": [details.channels[name].to_dict() for name in names]}
    )


async def handle_users(request: web.Request) -> web.Response:
    details = _details(request)
    users: List[Dict[str, Any]] = [user.to_dict() for _, user in sorted(details.get_users().items())]
    return web.json_response({"users": users})


async def handle_get_messages(request: web.Request) -> web.Response:
    registry: ClientRegistry = request.app["registry"]
    details = _details(request)
    channel = request.match_info["channel"]
    limit = _number(request, "limit")
    messages = await registry.get_messages(
        older_than=_number(request, "older_than"),
        newer_than=_number(request, "newer_than"),
        amount=int(limit) if limit is not None else None,
        channel=channel,
        cabal=details,
    )
    return web.json_response({"messages": jsonable(messages)})


async def handle_publish(request: web.Request) -> web.Response:
    details = _details(request)
    body = await _json_body(request)
    text = body.get("text")
    if not isinstance(text, str) or not text:
        raise ValueError("text must be a non-empty string")
    message = {"type": body.get("type") or "chat/text", "content": {"channel": request.match_info["channel"], "text": text}}
    published = await details.publish_message(message)
    return web.json_response({"message": jsonable(published)})


async def handle_focus(request: web.Request) -> web.Response:
    details = _details(request)
    body = await _json_body(request)
    details.focus_channel(request.match_info["channel"], keep_unread=bool(body.get("keep_unread")))
    return web.json_response({"current": details.get_current_channel()})


async def handle_join(request: web.Request) -> web.Response:
    details = _details(request)
    joined = await details.join_channel(request.match_info["channel"])
    return web.json_response({"changed": joined, "current": details.get_current_channel()})


async def handle_leave(request: web.Request) -> web.Response:
    details = _details(request)
    left = await details.leave_channel(request.match_info["channel"])
    return web.json_response({"changed": left, "current": details.get_current_channel()})


def _event_frame(event: CabalEvent) -> Dict[str, Any]:
    return {"t": "event", "type": event.type, "cabal": event.cabal_key, "body": jsonable(event.payload)}


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    """Stream every named event of one cabal (``?cabal=<key>``, default: current) as JSON frames."""

    registry: ClientRegistry = request.app["registry"]
    details = registry.get_details(request.query.get("cabal") or None)

    ws = web.WebSocketResponse()
    await ws.prepare(request)

    outbound: asyncio.Queue[Dict[str, Any] | None] = asyncio.Queue(maxsize=request.app["ws_queue_size"])
    closed = False

    async def close_with_error(message: str) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        await ws.close(code=1011, message=message.encode("utf-8"))

    def enqueue_event(event: CabalEvent) -> None:
        try:
            outbound.put_nowait(_event_frame(event))
        except asyncio.QueueFull:
            asyncio.create_task(close_with_error("backpressure"))

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                await ws.send_json(frame)
        except asyncio.CancelledError:
            return

    await ws.send_json({"t": "ready", "body": details.to_dict()})
    for event_type in sorted(EVENT_TYPES):
        details.on(event_type, enqueue_event)
    writer_task = asyncio.create_task(writer())
    logger.debug("event stream opened for cabal %s", details.key[:8])

    try:
        async for msg in ws:
            if msg.type != WSMsgType.TEXT:
                continue
            try:
                payload = msg.json()
            except ValueError:
                await ws.send_json({"t": "error", "body": {"code": "invalid_request", "message": "invalid json"}})
                continue
            if isinstance(payload, dict) and payload.get("t") == "ping":
                await ws.send_json({"t": "pong"})
    finally:
        for event_type in sorted(EVENT_TYPES):
            details.off(event_type, enqueue_event)
        writer_task.cancel()
        await asyncio.gather(writer_task, return_exceptions=True)
        logger.debug("event stream closed for cabal %s", details.key[:8])
    return ws


def create_app(registry: ClientRegistry | None = None, *, ws_queue_size: int = 1000) -> web.Application:
    registry = registry or ClientRegistry()
    app = web.Application(middlewares=[error_middleware])
    app["registry"] = registry
    app["ws_queue_size"] = ws_queue_size
    app.router.add_get("/healthz", handle_health)
    app.router.add_get("/v1/cabals", handle_list_cabals)
    app.router.add_post("/v1/cabals", handle_add_cabal)
    app.router.add_post("/v1/cabals/{key}/focus", handle_focus_cabal)
    app.router.add_delete("/v1/cabals/{key}", handle_remove_cabal)
    app.router.add_get("/v1/cabals/{key}/channels", handle_channels)
    app.router.add_get("/v1/cabals/{key}/users", handle_users)
    app.router.add_get("/v1/cabals/{key}/channels/{channel}/messages", handle_get_messages)
    app.router.add_post("/v1/cabals/{key}/channels/{channel}/messages", handle_publish)
    app.router.add_post("/v1/cabals/{key}/channels/{channel}/focus", handle_focus)
    app.router.add_post("/v1/cabals/{key}/channels/{channel}/join", handle_join)
    app.router.add_post("/v1/cabals/{key}/channels/{channel}/leave", handle_leave)
    app.router.add_get("/v1/ws", websocket_handler)

    async def close_registry(_: web.Application) -> None:
        await registry.close()

    app.on_cleanup.append(close_registry)
    return app
