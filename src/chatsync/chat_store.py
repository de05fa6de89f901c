from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from .models import Chat, Message, PresenceRecord

logger = logging.getLogger("chatsync.chat_store")

PresenceLookup = Callable[[str], Optional[PresenceRecord]]


class ChatStore:
    """Authoritative local mirror of chats and their message lists.

    The active chat is not a copy: it is the same ``Chat`` object held in the
    collection, so every mutation is visible through both views. Operations
    that name an unknown chat id are no-ops and never raise, since inbound
    events may race with chat-list loading.
    """

    def __init__(self) -> None:
        self._chats: Dict[str, Chat] = {}
        self._active_chat_id: Optional[str] = None
        self._presence_lookup: Optional[PresenceLookup] = None
        self.unlocked_message_id: Optional[str] = None
        self.is_typing = False
        self.is_loading = False
        self.error: Optional[str] = None

    def bind_presence(self, lookup: PresenceLookup) -> None:
        self._presence_lookup = lookup

    @property
    def chats(self) -> List[Chat]:
        return list(self._chats.values())

    @property
    def active_chat(self) -> Optional[Chat]:
        if self._active_chat_id is None:
            return None
        return self._chats.get(self._active_chat_id)

    def get_chat(self, chat_id: str) -> Optional[Chat]:
        return self._chats.get(chat_id)

    def chats_with_participant(self, user_id: str) -> List[Chat]:
        return [chat for chat in self._chats.values() if chat.participant_id == user_id]

    def is_active(self, chat_id: str) -> bool:
        return self._active_chat_id is not None and self._active_chat_id == chat_id

    def set_chats(self, chats: Iterable[Chat]) -> None:
        """Replace the whole collection; no merge with what was there before."""

        self._chats = {}
        for chat in chats:
            self._chats[chat.id] = chat
            self._apply_known_presence(chat)
        if self._active_chat_id is not None and self._active_chat_id not in self._chats:
            self._active_chat_id = None
            self.is_typing = False

    def upsert_chat(self, chat: Chat) -> Chat:
        self._chats[chat.id] = chat
        self._apply_known_presence(chat)
        return chat

    def set_active_chat(self, chat: Optional[Chat]) -> None:
        """Mark one chat as currently viewed. Unread counts are left alone."""

        if chat is None:
            self._active_chat_id = None
            self.is_typing = False
            return
        if chat.id not in self._chats:
            self.upsert_chat(chat)
        if self._active_chat_id != chat.id:
            self.is_typing = False
        self._active_chat_id = chat.id

    def add_message(self, chat_id: str, message: Message) -> bool:
        chat = self._chats.get(chat_id)
        if chat is None:
            logger.debug("dropping message %s for unknown chat %s", message.id, chat_id)
            return False
        chat.messages.append(message)
        chat.last_message = message
        return True

    def confirm_message(self, chat_id: str, message: Message) -> bool:
        """Replace a pending message with its server-confirmed copy, in place."""

        chat = self._chats.get(chat_id)
        if chat is None:
            return False
        for idx, existing in enumerate(chat.messages):
            if existing.id != message.id:
                continue
            message.pending = False
            message.is_read = message.is_read or existing.is_read
            chat.messages[idx] = message
            if chat.last_message is existing:
                chat.last_message = message
            return True
        return False

    def increment_unread(self, chat_id: str) -> None:
        chat = self._chats.get(chat_id)
        if chat is not None:
            chat.unread_count += 1

    def mark_messages_read(self, chat_id: str) -> None:
        chat = self._chats.get(chat_id)
        if chat is None:
            return
        for message in chat.messages:
            message.is_read = True
        chat.unread_count = 0

    def unlock_message(self, message_id: str) -> None:
        # Unlocking one message implicitly re-locks the previous one.
        self.unlocked_message_id = message_id

    def lock_message(self) -> None:
        self.unlocked_message_id = None

    def is_unlocked(self, message_id: str) -> bool:
        return self.unlocked_message_id is not None and self.unlocked_message_id == message_id

    def set_typing(self, is_typing: bool) -> None:
        self.is_typing = is_typing

    def set_loading(self, is_loading: bool) -> None:
        self.is_loading = is_loading

    def set_error(self, error: Optional[str]) -> None:
        self.error = error

    def set_participant_presence(
        self,
        user_id: str,
        *,
        is_online: Optional[bool] = None,
        is_viewing: Optional[bool] = None,
    ) -> None:
        for chat in self.chats_with_participant(user_id):
            if is_online is not None:
                chat.is_online = is_online
            if is_viewing is not None:
                chat.is_viewing = is_viewing

    def clear(self) -> None:
        self._chats = {}
        self._active_chat_id = None
        self.unlocked_message_id = None
        self.is_typing = False
        self.is_loading = False
        self.error = None

    def snapshot(self) -> Dict[str, Any]:
        return {
            "chats": [chat.to_wire() for chat in self._chats.values()],
            "activeChatId": self._active_chat_id,
            "unlockedMessageId": self.unlocked_message_id,
            "isTyping": self.is_typing,
            "isLoading": self.is_loading,
            "error": self.error,
        }

    def _apply_known_presence(self, chat: Chat) -> None:
        if self._presence_lookup is None:
            return
        record = self._presence_lookup(chat.participant_id)
        if record is not None:
            chat.is_online = record.is_online
            chat.is_viewing = record.is_viewing
