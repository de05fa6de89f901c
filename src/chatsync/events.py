"""Wire vocabulary for the realtime channel.

Frames are JSON objects ``{"v": 1, "t": <kind>, "body": {...}}``. Inbound
domain frames are parsed into one of the event dataclasses below; outbound
intents are built with :func:`build_frame`.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple, Union

from .models import Message

PROTOCOL_VERSION = 1


class FrameError(ValueError):
    pass


@dataclass(frozen=True)
class MessageReceived:
    chat_id: str
    message: Message


@dataclass(frozen=True)
class TypingChanged:
    chat_id: Optional[str]
    is_typing: bool


@dataclass(frozen=True)
class OnlineChanged:
    user_id: str
    is_online: bool


@dataclass(frozen=True)
class ViewingChanged:
    user_id: str
    is_viewing: bool


InboundEvent = Union[MessageReceived, TypingChanged, OnlineChanged, ViewingChanged]
INBOUND_EVENT_TYPES: Tuple[type, ...] = (MessageReceived, TypingChanged, OnlineChanged, ViewingChanged)


class OutboundIntent(str, Enum):
    SEND_MESSAGE = "message:send"
    START_TYPING = "typing:start"
    STOP_TYPING = "typing:stop"
    JOIN_CHAT = "chat:join"
    LEAVE_CHAT = "chat:leave"
    MARK_VIEWING = "chat:viewing"
    MARK_NOT_VIEWING = "chat:not-viewing"


def _require_str(body: Dict[str, Any], key: str) -> str:
    value = body.get(key)
    if not isinstance(value, str) or not value:
        raise FrameError(f"{key} required")
    return value


def _optional_str(body: Dict[str, Any], key: str) -> Optional[str]:
    value = body.get(key)
    return value if isinstance(value, str) and value else None


def _parse_message(body: Dict[str, Any]) -> InboundEvent:
    chat_id = _require_str(body, "chatId")
    try:
        message = Message.from_wire(body.get("message"))
    except ValueError as exc:
        raise FrameError(str(exc)) from exc
    return MessageReceived(chat_id=chat_id, message=message)


def _typing(is_typing: bool) -> Callable[[Dict[str, Any]], InboundEvent]:
    def _parse(body: Dict[str, Any]) -> InboundEvent:
        return TypingChanged(chat_id=_optional_str(body, "chatId"), is_typing=is_typing)

    return _parse


def _online(is_online: bool) -> Callable[[Dict[str, Any]], InboundEvent]:
    def _parse(body: Dict[str, Any]) -> InboundEvent:
        return OnlineChanged(user_id=_require_str(body, "userId"), is_online=is_online)

    return _parse


def _viewing(is_viewing: bool) -> Callable[[Dict[str, Any]], InboundEvent]:
    def _parse(body: Dict[str, Any]) -> InboundEvent:
        return ViewingChanged(user_id=_require_str(body, "userId"), is_viewing=is_viewing)

    return _parse


INBOUND_PARSERS: Dict[str, Callable[[Dict[str, Any]], InboundEvent]] = {
    "message:receive": _parse_message,
    "typing:start": _typing(True),
    "typing:stop": _typing(False),
    "user:online": _online(True),
    "user:offline": _online(False),
    "user:viewing": _viewing(True),
    "user:not-viewing": _viewing(False),
}


def parse_inbound(frame: Dict[str, Any]) -> InboundEvent:
    if not isinstance(frame, dict):
        raise FrameError("frame must be an object")
    if frame.get("v") != PROTOCOL_VERSION:
        raise FrameError("unsupported version")
    kind = frame.get("t")
    parser = INBOUND_PARSERS.get(kind) if isinstance(kind, str) else None
    if parser is None:
        raise FrameError(f"unknown frame type: {kind}")
    body = frame.get("body")
    if body is None:
        body = {}
    if not isinstance(body, dict):
        raise FrameError("body must be an object")
    return parser(body)


def build_frame(kind: str, body: Dict[str, Any] | None = None, *, frame_id: str | None = None) -> Dict[str, Any]:
    frame: Dict[str, Any] = {"v": PROTOCOL_VERSION, "t": kind, "body": body or {}}
    if frame_id is not None:
        frame["id"] = frame_id
    return frame
