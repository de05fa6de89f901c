import asyncio
import importlib
import unittest

_aiohttp_spec = importlib.util.find_spec("aiohttp")
if _aiohttp_spec is None:
    raise RuntimeError("aiohttp must be installed for connection tests")

from aiohttp.test_utils import TestServer

from chatsync.config import EngineConfig
from chatsync.connection import ConnectionManager, ConnectionState, TransportError
from chatsync.relay import RUNTIME_KEY, create_app
from tests.ws_receive_util import wait_until


class ConnectionManagerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.app = create_app(ping_interval_s=3600)
        self.server = TestServer(self.app)
        await self.server.start_server()
        self.runtime = self.app[RUNTIME_KEY]
        self.managers: list[ConnectionManager] = []

    async def asyncTearDown(self):
        for manager in self.managers:
            await manager.disconnect()
        await self.server.close()

    def _config(self, **overrides) -> EngineConfig:
        values = {
            "ws_url": str(self.server.make_url("/v1/ws")),
            "connect_timeout_s": 2.0,
            "reconnect_initial_backoff_s": 0.05,
            "reconnect_max_backoff_s": 0.2,
        }
        values.update(overrides)
        return EngineConfig(**values)

    def _manager(self, *, guard=lambda: True, **overrides):
        frames: list[dict] = []
        errors: list[TransportError] = []
        states: list[ConnectionState] = []
        manager = ConnectionManager(
            self._config(**overrides),
            on_frame=frames.append,
            on_error=errors.append,
            auth_guard=guard,
        )
        manager.add_state_listener(states.append)
        self.managers.append(manager)
        return manager, frames, errors, states

    async def test_connect_and_disconnect(self):
        manager, _, errors, states = self._manager()

        await manager.connect("u1")

        self.assertTrue(manager.is_connected)
        self.assertEqual(manager.identity, "u1")
        self.assertEqual(self.runtime.online_users(), ["u1"])

        await manager.disconnect()

        self.assertEqual(manager.state, ConnectionState.DISCONNECTED)
        self.assertIsNone(manager.identity)
        self.assertEqual(states, [ConnectionState.CONNECTING, ConnectionState.CONNECTED, ConnectionState.DISCONNECTED])
        self.assertEqual(errors, [])
        await wait_until(lambda: self.runtime.online_users() == [])

    async def test_connect_same_identity_is_idempotent(self):
        manager, _, _, _ = self._manager()

        await manager.connect("u1")
        await manager.connect("u1")

        self.assertEqual(len(self.runtime.connections["u1"]), 1)

    async def test_connect_other_identity_replaces_connection(self):
        manager, _, _, _ = self._manager()
        await manager.connect("u1")

        await manager.connect("u2")

        self.assertEqual(manager.identity, "u2")
        await wait_until(lambda: self.runtime.online_users() == ["u2"])

    async def test_guard_refuses_connection(self):
        manager, _, _, states = self._manager(guard=lambda: False)

        await manager.connect("u1")

        self.assertEqual(manager.state, ConnectionState.DISCONNECTED)
        self.assertEqual(states, [])
        self.assertEqual(self.runtime.online_users(), [])

    async def test_guard_rechecked_after_tearing_down_previous_identity(self):
        authenticated = {"value": True}
        manager, _, _, states = self._manager(guard=lambda: authenticated["value"])
        await manager.connect("u1")
        states.clear()

        switch = asyncio.create_task(manager.connect("u2"))
        await asyncio.sleep(0)
        authenticated["value"] = False
        await switch

        self.assertEqual(manager.state, ConnectionState.DISCONNECTED)
        self.assertEqual(states, [ConnectionState.DISCONNECTED])
        await wait_until(lambda: self.runtime.online_users() == [])

    async def test_cancelled_connect_returns_to_disconnected(self):
        manager, _, _, states = self._manager()

        pending = asyncio.create_task(manager.connect("u1"))
        await asyncio.sleep(0)
        pending.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await pending

        self.assertEqual(manager.state, ConnectionState.DISCONNECTED)
        self.assertIsNone(manager.identity)
        self.assertEqual(states, [ConnectionState.CONNECTING, ConnectionState.DISCONNECTED])

    async def test_emit_requires_open_connection(self):
        manager, _, _, _ = self._manager()

        self.assertFalse(manager.emit("chat:join", {"chatId": "c1"}))
        await manager.connect("u1")
        self.assertTrue(manager.emit("chat:join", {"chatId": "c1"}))

        await wait_until(lambda: self.runtime.hub.members("c1") == ["u1"])

    async def test_inbound_frames_delivered_in_order(self):
        manager, frames, _, _ = self._manager()
        other, _, _, _ = self._manager()
        await manager.connect("u1")
        await other.connect("u2")
        await other.disconnect()

        await wait_until(lambda: len(frames) >= 2)

        self.assertEqual(
            [(frame["t"], frame["body"]) for frame in frames[:2]],
            [("user:online", {"userId": "u2"}), ("user:offline", {"userId": "u2"})],
        )

    async def test_failed_connect_reports_error(self):
        dead = TestServer(create_app(ping_interval_s=3600))
        await dead.start_server()
        url = str(dead.make_url("/v1/ws"))
        await dead.close()
        manager, _, errors, states = self._manager(ws_url=url)

        await manager.connect("u1")

        self.assertEqual(manager.state, ConnectionState.DISCONNECTED)
        self.assertIsNone(manager.identity)
        self.assertEqual(len(errors), 1)
        self.assertEqual(states, [ConnectionState.CONNECTING, ConnectionState.DISCONNECTED])

    async def test_reconnects_after_connection_lost(self):
        manager, _, errors, states = self._manager()
        await manager.connect("u1")

        await self.runtime.kick("u1")

        await wait_until(lambda: states.count(ConnectionState.CONNECTED) == 2)
        self.assertTrue(manager.is_connected)
        self.assertEqual(manager.identity, "u1")
        self.assertIn(ConnectionState.CONNECTING, states[2:])
        self.assertTrue(any("connection lost" in str(error) for error in errors))
        await wait_until(lambda: self.runtime.online_users() == ["u1"])

    async def test_no_reconnect_when_attempts_disabled(self):
        manager, _, errors, _ = self._manager(reconnect_max_attempts=0)
        await manager.connect("u1")

        await self.runtime.kick("u1")

        await wait_until(lambda: manager.state is ConnectionState.DISCONNECTED)
        self.assertIsNone(manager.identity)
        self.assertEqual(len(errors), 1)

    async def test_reconnect_stops_when_guard_revoked(self):
        authenticated = {"value": True}
        manager, _, _, _ = self._manager(guard=lambda: authenticated["value"], reconnect_initial_backoff_s=0.2)
        await manager.connect("u1")

        await self.runtime.kick("u1")
        await wait_until(lambda: manager.state is ConnectionState.CONNECTING)
        authenticated["value"] = False

        await wait_until(lambda: manager.state is ConnectionState.DISCONNECTED)
        await wait_until(lambda: self.runtime.online_users() == [])

    async def test_abort_cancels_pending_reconnect(self):
        manager, _, _, _ = self._manager(reconnect_initial_backoff_s=5.0, reconnect_max_backoff_s=5.0)
        await manager.connect("u1")
        await self.runtime.kick("u1")
        await wait_until(lambda: manager.state is ConnectionState.CONNECTING)

        manager.abort()

        self.assertEqual(manager.state, ConnectionState.DISCONNECTED)
        self.assertFalse(manager.emit("chat:join", {"chatId": "c1"}))
        await manager.disconnect()


if __name__ == "__main__":
    unittest.main()
