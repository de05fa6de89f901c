from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Protocol

from .chat_store import ChatStore
from .events import (
    INBOUND_EVENT_TYPES,
    FrameError,
    InboundEvent,
    MessageReceived,
    OnlineChanged,
    OutboundIntent,
    TypingChanged,
    ViewingChanged,
    parse_inbound,
)
from .models import Chat, Message, new_client_message_id, utc_timestamp
from .presence import PresenceTracker

logger = logging.getLogger("chatsync.router")


class Emitter(Protocol):
    def emit(self, kind: str, body: Dict[str, Any] | None = None) -> bool: ...


class EventRouter:
    """Routes inbound events into the stores and outbound intents onto the wire.

    Inbound events are applied one at a time, to completion, in the order
    they are handed over. Outbound intents are fire-and-forget: nothing here
    waits for, or correlates, a reply.
    """

    def __init__(
        self,
        store: ChatStore,
        presence: PresenceTracker,
        emitter: Emitter,
        *,
        identity_func: Callable[[], Optional[str]] = lambda: None,
    ) -> None:
        self.store = store
        self.presence = presence
        self._emitter = emitter
        self._identity = identity_func
        self._handlers: Dict[type, Callable[[Any], None]] = {
            MessageReceived: self._on_message_received,
            TypingChanged: self._on_typing_changed,
            OnlineChanged: self._on_online_changed,
            ViewingChanged: self._on_viewing_changed,
        }
        if set(self._handlers) != set(INBOUND_EVENT_TYPES):
            raise RuntimeError("inbound dispatch table does not cover every event type")

    def handled_event_types(self) -> List[type]:
        return list(self._handlers)

    def handle_frame(self, frame: Dict[str, Any]) -> None:
        try:
            event = parse_inbound(frame)
        except FrameError as exc:
            logger.debug("ignoring inbound frame %r: %s", frame.get("t") if isinstance(frame, dict) else None, exc)
            return
        self.dispatch(event)

    def dispatch(self, event: InboundEvent) -> None:
        self._handlers[type(event)](event)

    def _on_message_received(self, event: MessageReceived) -> None:
        chat = self.store.get_chat(event.chat_id)
        if chat is None:
            logger.debug("message %s for unknown chat %s absorbed", event.message.id, event.chat_id)
            return
        existing = chat.find_message(event.message.id)
        if existing is not None:
            if existing.pending:
                self.store.confirm_message(event.chat_id, event.message)
            else:
                logger.debug("duplicate delivery of %s ignored", event.message.id)
            return
        self.store.add_message(event.chat_id, event.message)
        identity = self._identity()
        own = identity is not None and event.message.sender_id == identity
        if not own and not self.store.is_active(event.chat_id):
            self.store.increment_unread(event.chat_id)

    def _on_typing_changed(self, event: TypingChanged) -> None:
        active = self.store.active_chat
        if event.chat_id is not None and (active is None or active.id != event.chat_id):
            return
        self.store.set_typing(event.is_typing)

    def _on_online_changed(self, event: OnlineChanged) -> None:
        self.presence.set_online(event.user_id, event.is_online)

    def _on_viewing_changed(self, event: ViewingChanged) -> None:
        self.presence.set_viewing(event.user_id, event.is_viewing)

    def send_message(
        self,
        chat_id: str,
        content: str,
        *,
        receiver_id: str | None = None,
        is_encrypted: bool = True,
        attachments: List[str] | None = None,
    ) -> Optional[Message]:
        """Insert a pending message and emit it.

        The backend echoes the message back with the same id; that echo
        confirms the pending copy instead of appending a second one. Returns
        None when the chat is unknown or the intent was discarded.
        """

        chat = self.store.get_chat(chat_id)
        if chat is None:
            return None
        sender_id = self._identity() or ""
        message = Message(
            id=new_client_message_id(),
            sender_id=sender_id,
            receiver_id=receiver_id or chat.participant_id,
            content=content,
            timestamp=utc_timestamp(),
            is_encrypted=is_encrypted,
            is_read=False,
            attachments=list(attachments or []),
            pending=True,
        )
        body = {"chatId": chat_id, "message": message.to_wire()}
        if not self._emitter.emit(OutboundIntent.SEND_MESSAGE.value, body):
            return None
        self.store.add_message(chat_id, message)
        return message

    def start_typing(self, chat_id: str) -> bool:
        return self._emit_for_chat(OutboundIntent.START_TYPING, chat_id)

    def stop_typing(self, chat_id: str) -> bool:
        return self._emit_for_chat(OutboundIntent.STOP_TYPING, chat_id)

    def join_chat(self, chat_id: str) -> bool:
        return self._emit_for_chat(OutboundIntent.JOIN_CHAT, chat_id)

    def leave_chat(self, chat_id: str) -> bool:
        return self._emit_for_chat(OutboundIntent.LEAVE_CHAT, chat_id)

    def mark_viewing(self, chat_id: str) -> bool:
        return self._emit_for_chat(OutboundIntent.MARK_VIEWING, chat_id)

    def mark_not_viewing(self, chat_id: str) -> bool:
        return self._emit_for_chat(OutboundIntent.MARK_NOT_VIEWING, chat_id)

    def open_chat(self, chat: Chat) -> None:
        previous = self.store.active_chat
        if previous is not None and previous.id != chat.id:
            self.close_chat()
        self.store.set_active_chat(chat)
        self.store.mark_messages_read(chat.id)
        self.join_chat(chat.id)
        self.mark_viewing(chat.id)

    def close_chat(self) -> None:
        active = self.store.active_chat
        if active is None:
            return
        self.mark_not_viewing(active.id)
        self.leave_chat(active.id)
        self.store.set_active_chat(None)

    def _emit_for_chat(self, intent: OutboundIntent, chat_id: str) -> bool:
        return self._emitter.emit(intent.value, {"chatId": chat_id})
