from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class EngineConfig:
    ws_url: str = "http://127.0.0.1:8080/v1/ws"
    heartbeat_s: float = 20.0
    connect_timeout_s: float = 10.0
    reconnect_initial_backoff_s: float = 0.5
    reconnect_max_backoff_s: float = 5.0
    reconnect_max_attempts: int = 5
    resend_cooldown_s: int = 60
    outbound_queue_size: int = 1000
    max_msg_size: int = 1_048_576


def _parse_positive_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc
    if parsed <= 0:
        raise ValueError(f"{name} must be positive")
    return parsed


def _parse_non_negative_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def load_config_from_env() -> EngineConfig:
    defaults = EngineConfig()
    initial_backoff = _parse_positive_float(
        "CHATSYNC_RECONNECT_INITIAL_BACKOFF_S", defaults.reconnect_initial_backoff_s
    )
    max_backoff = _parse_positive_float("CHATSYNC_RECONNECT_MAX_BACKOFF_S", defaults.reconnect_max_backoff_s)
    return EngineConfig(
        ws_url=os.environ.get("CHATSYNC_WS_URL") or defaults.ws_url,
        heartbeat_s=_parse_positive_float("CHATSYNC_HEARTBEAT_S", defaults.heartbeat_s),
        connect_timeout_s=_parse_positive_float("CHATSYNC_CONNECT_TIMEOUT_S", defaults.connect_timeout_s),
        reconnect_initial_backoff_s=initial_backoff,
        reconnect_max_backoff_s=max(initial_backoff, max_backoff),
        reconnect_max_attempts=_parse_non_negative_int(
            "CHATSYNC_RECONNECT_MAX_ATTEMPTS", defaults.reconnect_max_attempts
        ),
        resend_cooldown_s=_parse_non_negative_int("CHATSYNC_RESEND_COOLDOWN_S", defaults.resend_cooldown_s),
        outbound_queue_size=max(
            1, _parse_non_negative_int("CHATSYNC_OUTBOUND_QUEUE_SIZE", defaults.outbound_queue_size)
        ),
    )
