"""Development relay speaking the realtime wire contract.

A small in-memory aiohttp backend: it accepts the ``session.start``
handshake keyed by user id, fans presence changes out to every other
connected user, routes ``message:send`` to the receiver and echoes it back
to the sender with the same message id, and relays typing and viewing
signals to the other members of a joined chat room.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from aiohttp import WSMsgType, web

from .hub import RoomHub, RoomSubscription

logger = logging.getLogger("chatsync.relay")


@dataclass
class RelayConnection:
    user_id: str
    ws: web.WebSocketResponse
    outbound: "asyncio.Queue[Optional[dict]]"
    rooms: Dict[str, RoomSubscription] = field(default_factory=dict)
    closed: bool = False

    def enqueue(self, frame: dict) -> None:
        if self.closed:
            return
        try:
            self.outbound.put_nowait(frame)
        except asyncio.QueueFull:
            self.closed = True
            asyncio.create_task(self.ws.close(code=1011, message=b"backpressure"))


class RelayRuntime:
    def __init__(self, *, dedupe_window: int = 10_000) -> None:
        self.hub = RoomHub()
        self.connections: Dict[str, List[RelayConnection]] = {}
        self.dedupe_window = max(1, dedupe_window)
        # Most recent (chat_id, message_id) pairs; the oldest is evicted first.
        self._delivered: "OrderedDict[Tuple[str, str], None]" = OrderedDict()

    def online_users(self) -> List[str]:
        return sorted(user_id for user_id, conns in self.connections.items() if conns)

    def register(self, conn: RelayConnection) -> None:
        others = [user_id for user_id in self.online_users() if user_id != conn.user_id]
        first = not self.connections.get(conn.user_id)
        self.connections.setdefault(conn.user_id, []).append(conn)
        for user_id in others:
            conn.enqueue(_frame("user:online", {"userId": user_id}))
        if first:
            self._broadcast_users(_frame("user:online", {"userId": conn.user_id}), exclude=conn.user_id)

    def unregister(self, conn: RelayConnection) -> None:
        for subscription in conn.rooms.values():
            self.hub.unsubscribe(subscription)
        conn.rooms.clear()
        conns = self.connections.get(conn.user_id, [])
        if conn in conns:
            conns.remove(conn)
        if not conns:
            self.connections.pop(conn.user_id, None)
            self._broadcast_users(_frame("user:offline", {"userId": conn.user_id}), exclude=conn.user_id)

    def send_to_user(self, user_id: str, frame: dict) -> None:
        for conn in list(self.connections.get(user_id, [])):
            conn.enqueue(frame)

    def route_message(self, sender_id: str, chat_id: str, message: Dict[str, Any]) -> Dict[str, Any]:
        delivered = dict(message)
        delivered["senderId"] = sender_id
        delivered["timestamp"] = datetime.now(timezone.utc).isoformat()
        delivered["isRead"] = False
        delivered.setdefault("isEncrypted", True)
        frame = _frame("message:receive", {"chatId": chat_id, "message": delivered})
        key = (chat_id, str(message["id"]))
        receiver_id = str(message["receiverId"])
        if key not in self._delivered:
            self._remember(key)
            if receiver_id != sender_id:
                self.send_to_user(receiver_id, frame)
        self.send_to_user(sender_id, frame)
        return delivered

    def _remember(self, key: Tuple[str, str]) -> None:
        self._delivered[key] = None
        while len(self._delivered) > self.dedupe_window:
            self._delivered.popitem(last=False)

    async def kick(self, user_id: str) -> int:
        conns = list(self.connections.get(user_id, []))
        for conn in conns:
            await conn.ws.close(code=1001, message=b"kicked")
        return len(conns)

    def _broadcast_users(self, frame: dict, *, exclude: str) -> None:
        for user_id in self.online_users():
            if user_id != exclude:
                self.send_to_user(user_id, frame)


RUNTIME_KEY = web.AppKey("runtime", RelayRuntime)
WS_CONFIG_KEY = web.AppKey("ws_config", dict)


def _frame(kind: str, body: Dict[str, Any], *, request_id: str | None = None) -> Dict[str, Any]:
    frame: Dict[str, Any] = {"v": 1, "t": kind, "body": body}
    if request_id is not None:
        frame["id"] = request_id
    return frame


def _error_frame(code: str, message: str, *, request_id: str | None = None) -> dict[str, Any]:
    return {"v": 1, "t": "error", "id": request_id, "body": {"code": code, "message": message}}


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


def create_app(
    *,
    ping_interval_s: int = 30,
    ping_miss_limit: int = 2,
    max_msg_size: int = 1_048_576,
    outbound_queue_size: int = 1000,
    dedupe_window: int = 10_000,
) -> web.Application:
    app = web.Application()
    app[RUNTIME_KEY] = RelayRuntime(dedupe_window=dedupe_window)
    app[WS_CONFIG_KEY] = {
        "ping_interval_s": ping_interval_s,
        "ping_miss_limit": ping_miss_limit,
        "max_msg_size": max_msg_size,
        "outbound_queue_size": outbound_queue_size,
    }
    app.router.add_get("/healthz", handle_health)
    app.router.add_get("/v1/ws", websocket_handler)
    return app


def _chat_id(body: Dict[str, Any]) -> Optional[str]:
    chat_id = body.get("chatId")
    return chat_id if isinstance(chat_id, str) and chat_id else None


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    runtime = request.app[RUNTIME_KEY]
    ws_config = request.app[WS_CONFIG_KEY]

    ws = web.WebSocketResponse(max_msg_size=ws_config["max_msg_size"])
    await ws.prepare(request)

    loop = asyncio.get_running_loop()
    last_activity = loop.time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[Optional[dict]] = asyncio.Queue(maxsize=ws_config["outbound_queue_size"])
    conn: RelayConnection | None = None

    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = loop.time()
        missed_heartbeats = 0

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                await ws.send_json(frame)
        except (asyncio.CancelledError, ConnectionResetError):
            return

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(ws_config["ping_interval_s"])
                if ws.closed:
                    return
                if loop.time() - last_activity >= ws_config["ping_interval_s"]:
                    await ws.send_json({"v": 1, "t": "ping"})
                    missed_heartbeats += 1
                    if missed_heartbeats > ws_config["ping_miss_limit"]:
                        await ws.close(code=1001, message=b"heartbeat timeout")
                        return
        except (asyncio.CancelledError, ConnectionResetError):
            return

    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())

    try:
        first_msg = await ws.receive()
        if first_msg.type != WSMsgType.TEXT:
            await ws.close(code=1002, message=b"invalid handshake")
            return ws
        try:
            payload = first_msg.json()
        except ValueError:
            await ws.close(code=1002, message=b"invalid json")
            return ws

        if not isinstance(payload, dict) or payload.get("v") != 1:
            await ws.send_json(_error_frame("invalid_request", "unsupported version"))
            await ws.close()
            return ws

        body = payload.get("body")
        user_id = body.get("user_id") if isinstance(body, dict) else None
        if payload.get("t") != "session.start" or not isinstance(user_id, str) or not user_id:
            await ws.send_json(
                _error_frame("invalid_request", "first frame must start a session", request_id=payload.get("id"))
            )
            await ws.close()
            return ws

        mark_activity()
        await ws.send_json(_frame("session.ready", {"user_id": user_id}, request_id=payload.get("id")))
        conn = RelayConnection(user_id=user_id, ws=ws, outbound=outbound)
        runtime.register(conn)
        logger.info("relay session started for %s", user_id)

        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except ValueError:
                    conn.enqueue(_error_frame("invalid_request", "malformed json"))
                    continue

                mark_activity()
                if not isinstance(frame, dict) or frame.get("v") != 1:
                    conn.enqueue(_error_frame("invalid_request", "unsupported version"))
                    continue

                frame_type = frame.get("t")
                body = frame.get("body")
                if body is None:
                    body = {}
                request_id = frame.get("id")
                if not isinstance(body, dict):
                    conn.enqueue(_error_frame("invalid_request", "body must be an object", request_id=request_id))
                    continue

                if frame_type == "ping":
                    conn.enqueue({"v": 1, "t": "pong", "id": request_id})
                elif frame_type == "pong":
                    continue
                elif frame_type == "message:send":
                    chat_id = _chat_id(body)
                    message = body.get("message")
                    if (
                        chat_id is None
                        or not isinstance(message, dict)
                        or not isinstance(message.get("id"), str)
                        or not isinstance(message.get("receiverId"), str)
                    ):
                        conn.enqueue(
                            _error_frame(
                                "invalid_request", "chatId, message.id, message.receiverId required", request_id=request_id
                            )
                        )
                        continue
                    runtime.route_message(user_id, chat_id, message)
                elif frame_type in {"chat:join", "chat:leave"}:
                    chat_id = _chat_id(body)
                    if chat_id is None:
                        conn.enqueue(_error_frame("invalid_request", "chatId required", request_id=request_id))
                        continue
                    if frame_type == "chat:join":
                        conn.rooms[chat_id] = runtime.hub.subscribe(user_id, chat_id, conn.enqueue)
                    else:
                        subscription = conn.rooms.pop(chat_id, None)
                        if subscription is not None:
                            runtime.hub.unsubscribe(subscription)
                elif frame_type in {"typing:start", "typing:stop"}:
                    chat_id = _chat_id(body)
                    if chat_id is None:
                        conn.enqueue(_error_frame("invalid_request", "chatId required", request_id=request_id))
                        continue
                    runtime.hub.broadcast(
                        chat_id, _frame(frame_type, {"chatId": chat_id, "userId": user_id}), exclude_user=user_id
                    )
                elif frame_type in {"chat:viewing", "chat:not-viewing"}:
                    chat_id = _chat_id(body)
                    if chat_id is None:
                        conn.enqueue(_error_frame("invalid_request", "chatId required", request_id=request_id))
                        continue
                    kind = "user:viewing" if frame_type == "chat:viewing" else "user:not-viewing"
                    runtime.hub.broadcast(
                        chat_id, _frame(kind, {"chatId": chat_id, "userId": user_id}), exclude_user=user_id
                    )
                else:
                    conn.enqueue(_error_frame("invalid_request", "unknown frame type", request_id=request_id))
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        heartbeat_task.cancel()
        if conn is not None:
            conn.closed = True
            runtime.unregister(conn)
            logger.info("relay session ended for %s", conn.user_id)
        try:
            outbound.put_nowait(None)
        except asyncio.QueueFull:
            writer_task.cancel()
        await asyncio.gather(heartbeat_task, writer_task, return_exceptions=True)

    return ws
