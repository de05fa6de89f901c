from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Optional

from .chat_store import ChatStore
from .models import PresenceRecord

logger = logging.getLogger("chatsync.presence")


def _now_ms() -> int:
    return int(time.time() * 1000)


class PresenceTracker:
    """Online and actively-viewing status per remote user.

    Records exist independently of chats. When a store is attached, every
    update is mirrored into each chat whose participant is that user. The two
    axes are not correlated: a user may be viewing while offline and nothing
    here corrects that.
    """

    def __init__(self, store: ChatStore | None = None, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._now = now_func
        self._records: Dict[str, PresenceRecord] = {}
        self._store = store
        if store is not None:
            store.bind_presence(self.lookup)

    def get(self, user_id: str) -> PresenceRecord:
        record = self._records.get(user_id)
        if record is None:
            record = PresenceRecord()
            self._records[user_id] = record
        return record

    def lookup(self, user_id: str) -> Optional[PresenceRecord]:
        return self._records.get(user_id)

    def set_online(self, user_id: str, is_online: bool) -> None:
        record = self.get(user_id)
        if record.is_online and not is_online:
            record.last_seen_ms = self._now()
        record.is_online = is_online
        logger.debug("presence %s online=%s", user_id, is_online)
        if self._store is not None:
            self._store.set_participant_presence(user_id, is_online=is_online)

    def set_viewing(self, user_id: str, is_viewing: bool) -> None:
        record = self.get(user_id)
        record.is_viewing = is_viewing
        logger.debug("presence %s viewing=%s", user_id, is_viewing)
        if self._store is not None:
            self._store.set_participant_presence(user_id, is_viewing=is_viewing)

    def snapshot(self) -> Dict[str, dict]:
        return {user_id: record.to_wire() for user_id, record in self._records.items()}

    def clear(self) -> None:
        self._records = {}
