"""Realtime synchronization engine for an encrypted one-to-one messenger."""

from .auth import AuthApi, AuthApiError, AuthController
from .chat_store import ChatStore
from .config import EngineConfig, load_config_from_env
from .connection import ConnectionManager, ConnectionState, TransportError
from .engine import SyncEngine
from .models import Chat, Message, PresenceRecord
from .presence import PresenceTracker
from .router import EventRouter
from .session import AuthState, OtpPurpose, ResendTimer, Session, SessionStateError, User

__all__ = [
    "AuthApi",
    "AuthApiError",
    "AuthController",
    "AuthState",
    "Chat",
    "ChatStore",
    "ConnectionManager",
    "ConnectionState",
    "EngineConfig",
    "EventRouter",
    "Message",
    "OtpPurpose",
    "PresenceRecord",
    "PresenceTracker",
    "ResendTimer",
    "Session",
    "SessionStateError",
    "SyncEngine",
    "TransportError",
    "User",
    "load_config_from_env",
]
