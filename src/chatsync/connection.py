from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import aiohttp
from aiohttp import WSMsgType

from .config import EngineConfig
from .events import build_frame

logger = logging.getLogger("chatsync.connection")

FrameHandler = Callable[[Dict[str, Any]], None]
ErrorHandler = Callable[["TransportError"], None]
StateListener = Callable[["ConnectionState"], None]

_CONTROL_FRAMES = {"ping", "pong", "session.ready", "error"}


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class TransportError(Exception):
    pass


class HandshakeError(TransportError):
    pass


class ConnectionManager:
    """Owns the single realtime connection and its lifecycle.

    Only this class creates or destroys the ``aiohttp.ClientSession`` and the
    websocket. Inbound frames are handed to ``on_frame`` one at a time, in
    the order the transport delivers them. ``auth_guard`` is consulted before
    every connect or reconnect attempt; while it returns False no connection
    is opened.
    """

    def __init__(
        self,
        config: EngineConfig,
        *,
        on_frame: FrameHandler,
        on_error: ErrorHandler | None = None,
        auth_guard: Callable[[], bool] | None = None,
        session_factory: Callable[[], aiohttp.ClientSession] = aiohttp.ClientSession,
    ) -> None:
        self.config = config
        self._on_frame = on_frame
        self._on_error = on_error
        self._auth_guard = auth_guard or (lambda: True)
        self._session_factory = session_factory
        self._state = ConnectionState.DISCONNECTED
        self._identity: Optional[str] = None
        self._generation = 0
        self._http: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._outbound: asyncio.Queue[Optional[Dict[str, Any]]] | None = None
        self._connect_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._writer_task: Optional[asyncio.Task] = None
        self._closing: List[asyncio.Task] = []
        self._listeners: List[StateListener] = []

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def identity(self) -> Optional[str]:
        return self._identity

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def add_state_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        logger.info("connection %s -> %s (identity=%s)", self._state.value, state.value, self._identity)
        self._state = state
        for listener in list(self._listeners):
            listener(state)

    def _report(self, error: TransportError) -> None:
        logger.warning("transport error: %s", error)
        if self._on_error is not None:
            self._on_error(error)

    async def connect(self, identity: str) -> None:
        if not self._auth_guard():
            logger.warning("refusing to connect %s without an authenticated session", identity)
            return
        if self._identity == identity and self._state is not ConnectionState.DISCONNECTED:
            return
        if self._state is not ConnectionState.DISCONNECTED:
            await self.disconnect()
            # The session may have ended while the old socket was closing.
            if not self._auth_guard():
                logger.warning("session ended before %s could connect", identity)
                return

        self._generation += 1
        generation = self._generation
        self._identity = identity
        self._set_state(ConnectionState.CONNECTING)

        task = asyncio.create_task(self._open(identity))
        self._connect_task = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            if task.done() and not task.cancelled() and task.exception() is None:
                self._schedule_close(*task.result())
            if generation == self._generation:
                self._identity = None
                self._set_state(ConnectionState.DISCONNECTED)
            raise
        finally:
            if not task.done():
                task.cancel()
            if self._connect_task is task:
                self._connect_task = None

        if task.cancelled() or generation != self._generation:
            if not task.cancelled() and task.exception() is None:
                self._schedule_close(*task.result())
            return
        exc = task.exception()
        if exc is not None:
            self._identity = None
            self._set_state(ConnectionState.DISCONNECTED)
            self._report(_as_transport_error(exc))
            return
        http, ws = task.result()
        if not self._auth_guard():
            self._schedule_close(http, ws)
            self._identity = None
            self._set_state(ConnectionState.DISCONNECTED)
            return
        self._attach(http, ws, generation)

    async def disconnect(self) -> None:
        self.abort()
        current = asyncio.current_task()
        pending = [task for task in self._closing if task is not current]
        self._closing = []
        if not pending:
            return
        # Close tasks keep running if this caller is cancelled.
        done, _ = await asyncio.wait(pending)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.warning("transport close failed: %s", task.exception())

    def abort(self) -> None:
        """Tear down synchronously; socket closing is left to the running loop."""

        self._generation += 1
        self._closing = [task for task in self._closing if not task.done()]
        current = None
        try:
            current = asyncio.current_task()
        except RuntimeError:
            pass
        for task in (self._connect_task, self._reconnect_task, self._reader_task, self._writer_task):
            if task is not None and not task.done() and task is not current:
                task.cancel()
                self._closing.append(task)
        self._connect_task = None
        self._reconnect_task = None
        self._reader_task = None
        self._writer_task = None
        self._outbound = None
        if self._http is not None or self._ws is not None:
            self._schedule_close(self._http, self._ws)
        self._http = None
        self._ws = None
        self._identity = None
        self._set_state(ConnectionState.DISCONNECTED)

    def emit(self, kind: str, body: Dict[str, Any] | None = None) -> bool:
        """Queue an outbound frame without waiting for it to be written."""

        if self._state is not ConnectionState.CONNECTED or self._outbound is None:
            logger.debug("discarding %s while %s", kind, self._state.value)
            return False
        try:
            self._outbound.put_nowait(build_frame(kind, body))
        except asyncio.QueueFull:
            logger.warning("outbound queue full, dropping %s", kind)
            return False
        return True

    async def _open(self, identity: str) -> Tuple[aiohttp.ClientSession, aiohttp.ClientWebSocketResponse]:
        http = self._session_factory()
        try:
            ws = await asyncio.wait_for(self._handshake(http, identity), self.config.connect_timeout_s)
        except BaseException:
            await http.close()
            raise
        return http, ws

    async def _handshake(
        self, http: aiohttp.ClientSession, identity: str
    ) -> aiohttp.ClientWebSocketResponse:
        ws = await http.ws_connect(
            self.config.ws_url,
            heartbeat=self.config.heartbeat_s,
            max_msg_size=self.config.max_msg_size,
        )
        try:
            await ws.send_json(build_frame("session.start", {"user_id": identity}, frame_id="start"))
            while True:
                msg = await ws.receive()
                if msg.type == WSMsgType.TEXT:
                    try:
                        frame = msg.json()
                    except ValueError:
                        continue
                    if not isinstance(frame, dict):
                        continue
                    if frame.get("t") == "session.ready":
                        return ws
                    if frame.get("t") == "error":
                        body = frame.get("body")
                        message = body.get("message") if isinstance(body, dict) else None
                        raise HandshakeError(str(message or "handshake rejected"))
                elif msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED, WSMsgType.ERROR):
                    raise HandshakeError("connection closed during handshake")
        except BaseException:
            await ws.close()
            raise

    def _attach(
        self,
        http: aiohttp.ClientSession,
        ws: aiohttp.ClientWebSocketResponse,
        generation: int,
    ) -> None:
        self._http = http
        self._ws = ws
        self._outbound = asyncio.Queue(maxsize=self.config.outbound_queue_size)
        self._reader_task = asyncio.create_task(self._read_loop(ws, generation))
        self._writer_task = asyncio.create_task(self._write_loop(ws, self._outbound))
        self._set_state(ConnectionState.CONNECTED)

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse, generation: int) -> None:
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    try:
                        frame = msg.json()
                    except ValueError:
                        logger.warning("ignoring malformed inbound frame")
                        continue
                    if not isinstance(frame, dict):
                        continue
                    self._handle_frame(frame)
                elif msg.type == WSMsgType.ERROR:
                    break
        except asyncio.CancelledError:
            return
        if generation == self._generation:
            self._connection_lost(generation, ws.exception())

    def _handle_frame(self, frame: Dict[str, Any]) -> None:
        kind = frame.get("t")
        if kind in _CONTROL_FRAMES:
            if kind == "ping":
                self.emit("pong")
            elif kind == "error":
                body = frame.get("body")
                if not isinstance(body, dict):
                    body = {}
                logger.warning("server error frame: %s %s", body.get("code"), body.get("message"))
            return
        try:
            self._on_frame(frame)
        except Exception:
            logger.exception("inbound handler failed for %s", kind)

    async def _write_loop(
        self,
        ws: aiohttp.ClientWebSocketResponse,
        outbound: asyncio.Queue[Optional[Dict[str, Any]]],
    ) -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                await ws.send_json(frame)
        except asyncio.CancelledError:
            return
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            logger.warning("outbound write failed: %s", exc)

    def _connection_lost(self, generation: int, exc: BaseException | None) -> None:
        identity = self._identity
        if self._writer_task is not None:
            self._writer_task.cancel()
            self._closing.append(self._writer_task)
        self._writer_task = None
        self._reader_task = None
        self._outbound = None
        self._schedule_close(self._http, self._ws)
        self._http = None
        self._ws = None
        self._report(TransportError(f"connection lost: {exc}" if exc else "connection lost"))
        if identity is None or self.config.reconnect_max_attempts <= 0 or not self._auth_guard():
            self._identity = None
            self._set_state(ConnectionState.DISCONNECTED)
            return
        self._set_state(ConnectionState.CONNECTING)
        self._reconnect_task = asyncio.create_task(self._reconnect_loop(identity, generation))

    async def _reconnect_loop(self, identity: str, generation: int) -> None:
        backoff_s = self.config.reconnect_initial_backoff_s
        try:
            for attempt in range(1, self.config.reconnect_max_attempts + 1):
                await asyncio.sleep(backoff_s)
                if generation != self._generation or not self._auth_guard():
                    break
                logger.info("reconnect attempt %d for %s", attempt, identity)
                try:
                    http, ws = await self._open(identity)
                except (aiohttp.ClientError, asyncio.TimeoutError, OSError, TransportError) as exc:
                    self._report(_as_transport_error(exc))
                    backoff_s = min(backoff_s * 2, self.config.reconnect_max_backoff_s)
                    continue
                if generation != self._generation or not self._auth_guard():
                    self._schedule_close(http, ws)
                    break
                self._reconnect_task = None
                self._attach(http, ws, generation)
                return
        except asyncio.CancelledError:
            return
        if generation == self._generation:
            self._reconnect_task = None
            self._identity = None
            self._set_state(ConnectionState.DISCONNECTED)
            self._report(TransportError(f"gave up reconnecting {identity}"))

    def _schedule_close(
        self,
        http: Optional[aiohttp.ClientSession],
        ws: Optional[aiohttp.ClientWebSocketResponse],
    ) -> None:
        async def _close() -> None:
            if ws is not None and not ws.closed:
                await ws.close()
            if http is not None and not http.closed:
                await http.close()

        try:
            self._closing.append(asyncio.get_running_loop().create_task(_close()))
        except RuntimeError:
            logger.warning("no running loop; transport left for garbage collection")


def _as_transport_error(exc: BaseException) -> TransportError:
    if isinstance(exc, TransportError):
        return exc
    if isinstance(exc, asyncio.TimeoutError):
        return TransportError("connect timed out")
    return TransportError(str(exc) or exc.__class__.__name__)
