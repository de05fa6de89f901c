"""Records mirrored locally: chats, messages and per-user presence."""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def new_client_message_id() -> str:
    return f"cm_{secrets.token_urlsafe(12)}"


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _count(raw: Any) -> int:
    if raw is None:
        return 0
    if isinstance(raw, bool):
        raise ValueError("unreadCount must be an integer")
    try:
        return max(0, int(raw))
    except (TypeError, ValueError) as exc:
        raise ValueError("unreadCount must be an integer") from exc


@dataclass
class Message:
    """A single message. ``content`` is opaque and may be ciphertext."""

    id: str
    sender_id: str
    receiver_id: str
    content: str
    timestamp: str
    is_encrypted: bool = True
    is_read: bool = False
    attachments: List[str] = field(default_factory=list)
    pending: bool = False

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "Message":
        if not isinstance(data, dict):
            raise ValueError("message must be an object")
        message_id = data.get("id") or data.get("_id")
        if not isinstance(message_id, str) or not message_id:
            raise ValueError("message id required")
        attachments = data.get("attachments")
        if attachments is None:
            attachments = []
        if not isinstance(attachments, list):
            raise ValueError("attachments must be a list")
        return cls(
            id=message_id,
            sender_id=str(data.get("senderId", "")),
            receiver_id=str(data.get("receiverId", "")),
            content=str(data.get("content", "")),
            timestamp=str(data.get("timestamp", "")),
            is_encrypted=bool(data.get("isEncrypted", True)),
            is_read=bool(data.get("isRead", False)),
            attachments=[item for item in attachments if isinstance(item, str)],
        )

    def to_wire(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "senderId": self.sender_id,
            "receiverId": self.receiver_id,
            "content": self.content,
            "timestamp": self.timestamp,
            "isEncrypted": self.is_encrypted,
            "isRead": self.is_read,
        }
        if self.attachments:
            payload["attachments"] = list(self.attachments)
        return payload


@dataclass
class Chat:
    """A one-to-one conversation with a single remote participant.

    ``messages`` is kept in arrival order, which is not necessarily
    timestamp order.
    """

    id: str
    participant_id: str
    participant_name: str = ""
    participant_username: str = ""
    participant_avatar: Optional[str] = None
    messages: List[Message] = field(default_factory=list)
    last_message: Optional[Message] = None
    unread_count: int = 0
    is_online: bool = False
    is_viewing: bool = False

    def find_message(self, message_id: str) -> Optional[Message]:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "Chat":
        if not isinstance(data, dict):
            raise ValueError("chat must be an object")
        chat_id = data.get("id") or data.get("_id")
        if not isinstance(chat_id, str) or not chat_id:
            raise ValueError("chat id required")
        raw_messages = data.get("messages")
        if raw_messages is None:
            raw_messages = []
        if not isinstance(raw_messages, list):
            raise ValueError("messages must be a list")
        messages = [Message.from_wire(item) for item in raw_messages if isinstance(item, dict)]
        last_raw = data.get("lastMessage")
        last_message = Message.from_wire(last_raw) if isinstance(last_raw, dict) else None
        if messages and (last_message is None or last_message.id == messages[-1].id):
            last_message = messages[-1]
        avatar = data.get("participantAvatar")
        return cls(
            id=chat_id,
            participant_id=str(data.get("participantId", "")),
            participant_name=str(data.get("participantName", "")),
            participant_username=str(data.get("participantUsername", "")),
            participant_avatar=avatar if isinstance(avatar, str) else None,
            messages=messages,
            last_message=last_message,
            unread_count=_count(data.get("unreadCount")),
            is_online=bool(data.get("isOnline", False)),
            is_viewing=bool(data.get("isViewing", False)),
        )

    def to_wire(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "participantId": self.participant_id,
            "participantName": self.participant_name,
            "participantUsername": self.participant_username,
            "participantAvatar": self.participant_avatar,
            "lastMessage": self.last_message.to_wire() if self.last_message else None,
            "unreadCount": self.unread_count,
            "messages": [message.to_wire() for message in self.messages],
            "isOnline": self.is_online,
            "isViewing": self.is_viewing,
        }


@dataclass
class PresenceRecord:
    is_online: bool = False
    is_viewing: bool = False
    last_seen_ms: Optional[int] = None

    def to_wire(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"isOnline": self.is_online, "isViewing": self.is_viewing}
        if self.last_seen_ms is not None:
            payload["lastSeen"] = self.last_seen_ms
        return payload
