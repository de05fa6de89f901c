import unittest
from unittest import mock

from chatsync.config import EngineConfig, load_config_from_env


class ConfigTests(unittest.TestCase):
    def test_defaults_when_environment_empty(self):
        with mock.patch.dict("os.environ", {}, clear=True):
            config = load_config_from_env()

        self.assertEqual(config, EngineConfig())
        self.assertEqual(config.reconnect_initial_backoff_s, 0.5)
        self.assertEqual(config.reconnect_max_backoff_s, 5.0)
        self.assertEqual(config.resend_cooldown_s, 60)

    def test_values_read_from_environment(self):
        env = {
            "CHATSYNC_WS_URL": "http://relay.test/v1/ws",
            "CHATSYNC_HEARTBEAT_S": "5",
            "CHATSYNC_CONNECT_TIMEOUT_S": "2.5",
            "CHATSYNC_RECONNECT_INITIAL_BACKOFF_S": "1",
            "CHATSYNC_RECONNECT_MAX_BACKOFF_S": "8",
            "CHATSYNC_RECONNECT_MAX_ATTEMPTS": "0",
            "CHATSYNC_RESEND_COOLDOWN_S": "30",
            "CHATSYNC_OUTBOUND_QUEUE_SIZE": "10",
        }
        with mock.patch.dict("os.environ", env, clear=True):
            config = load_config_from_env()

        self.assertEqual(config.ws_url, "http://relay.test/v1/ws")
        self.assertEqual(config.heartbeat_s, 5.0)
        self.assertEqual(config.connect_timeout_s, 2.5)
        self.assertEqual(config.reconnect_initial_backoff_s, 1.0)
        self.assertEqual(config.reconnect_max_backoff_s, 8.0)
        self.assertEqual(config.reconnect_max_attempts, 0)
        self.assertEqual(config.resend_cooldown_s, 30)
        self.assertEqual(config.outbound_queue_size, 10)

    def test_max_backoff_never_below_initial(self):
        env = {"CHATSYNC_RECONNECT_INITIAL_BACKOFF_S": "3", "CHATSYNC_RECONNECT_MAX_BACKOFF_S": "1"}
        with mock.patch.dict("os.environ", env, clear=True):
            config = load_config_from_env()

        self.assertEqual(config.reconnect_max_backoff_s, 3.0)

    def test_queue_size_has_floor_of_one(self):
        with mock.patch.dict("os.environ", {"CHATSYNC_OUTBOUND_QUEUE_SIZE": "0"}, clear=True):
            self.assertEqual(load_config_from_env().outbound_queue_size, 1)

    def test_invalid_values_raise(self):
        cases = [
            ("CHATSYNC_HEARTBEAT_S", "soon", "must be a number"),
            ("CHATSYNC_HEARTBEAT_S", "0", "must be positive"),
            ("CHATSYNC_RECONNECT_MAX_ATTEMPTS", "1.5", "must be an integer"),
            ("CHATSYNC_RESEND_COOLDOWN_S", "-1", "must be non-negative"),
        ]
        for name, raw, message in cases:
            with self.subTest(name=name, raw=raw):
                with mock.patch.dict("os.environ", {name: raw}, clear=True):
                    with self.assertRaisesRegex(ValueError, message):
                        load_config_from_env()


if __name__ == "__main__":
    unittest.main()
