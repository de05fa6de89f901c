from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Optional

import aiohttp

from .auth import AuthApi, AuthController
from .chat_store import ChatStore
from .config import EngineConfig
from .connection import ConnectionManager, TransportError
from .presence import PresenceTracker
from .router import EventRouter
from .session import Session

logger = logging.getLogger("chatsync.engine")


class SyncEngine:
    """One client's synchronization state, created at session start.

    Owns a single instance of each component and binds the connection
    lifecycle to authentication: gaining an identity connects, losing it
    tears the connection down before control returns to whoever changed the
    session, and clears the chat and presence mirrors.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        auth_api: AuthApi | None = None,
        session_factory: Callable[[], aiohttp.ClientSession] = aiohttp.ClientSession,
    ) -> None:
        self.config = config or EngineConfig()
        self.session = Session(resend_cooldown_s=self.config.resend_cooldown_s)
        self.store = ChatStore()
        self.presence = PresenceTracker(self.store)
        self.connection = ConnectionManager(
            self.config,
            on_frame=self._on_frame,
            on_error=self._on_transport_error,
            auth_guard=lambda: self.session.is_authenticated,
            session_factory=session_factory,
        )
        self.router = EventRouter(
            self.store,
            self.presence,
            self.connection,
            identity_func=lambda: self.session.identity,
        )
        self.auth = AuthController(auth_api, self.session) if auth_api is not None else None
        self._connect_task: Optional[asyncio.Task] = None
        self._bound_identity: Optional[str] = None
        self.session.register_auth_callback(self._on_auth_changed)

    async def __aenter__(self) -> "SyncEngine":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def start(self) -> None:
        identity = self.session.identity
        if identity is not None:
            self._on_auth_changed(identity)
            await self.wait_connected()

    async def close(self) -> None:
        self.session.unregister_auth_callback(self._on_auth_changed)
        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()
        await self.connection.disconnect()
        if self._connect_task is not None:
            await asyncio.gather(self._connect_task, return_exceptions=True)
            self._connect_task = None

    async def wait_connected(self) -> bool:
        # A newer identity may replace the task while waiting.
        while self._connect_task is not None:
            task = self._connect_task
            await asyncio.gather(task, return_exceptions=True)
            if task is self._connect_task:
                break
        return self.connection.is_connected

    def snapshot(self) -> Dict[str, Any]:
        return {
            "session": {
                "state": self.session.state.value,
                "identity": self.session.identity,
                "otpEmail": self.session.otp_email,
                "error": self.session.error,
                "connectionError": self.session.connection_error,
            },
            "connection": self.connection.state.value,
            "store": self.store.snapshot(),
            "presence": self.presence.snapshot(),
        }

    def _on_frame(self, frame: Dict[str, Any]) -> None:
        self.router.handle_frame(frame)

    def _on_transport_error(self, error: TransportError) -> None:
        self.session.connection_error = str(error)

    def _on_auth_changed(self, identity: Optional[str]) -> None:
        self._cancel_pending_connect()
        if identity is None:
            self.connection.abort()
            self._teardown_mirror()
            return
        if self._bound_identity is not None and self._bound_identity != identity:
            self._teardown_mirror()
        self._bound_identity = identity
        self._connect_task = asyncio.get_running_loop().create_task(self.connection.connect(identity))

    def _cancel_pending_connect(self) -> None:
        task = self._connect_task
        if task is not None and not task.done():
            task.cancel()
        self._connect_task = None

    def _teardown_mirror(self) -> None:
        logger.info("clearing local mirror for %s", self._bound_identity)
        self._bound_identity = None
        self.store.clear()
        self.presence.clear()
