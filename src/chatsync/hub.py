from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List

Callback = Callable[[dict], None]


@dataclass
class RoomSubscription:
    user_id: str
    chat_id: str
    callback: Callback

    def deliver(self, frame: dict) -> None:
        self.callback(frame)


class RoomHub:
    """Tracks which connections joined which chat room and fans frames out."""

    def __init__(self) -> None:
        self._rooms: Dict[str, List[RoomSubscription]] = {}

    def subscribe(self, user_id: str, chat_id: str, callback: Callback) -> RoomSubscription:
        for existing in self._rooms.get(chat_id, []):
            if existing.user_id == user_id and existing.callback == callback:
                return existing
        subscription = RoomSubscription(user_id=user_id, chat_id=chat_id, callback=callback)
        self._rooms.setdefault(chat_id, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: RoomSubscription) -> None:
        subs = self._rooms.get(subscription.chat_id)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._rooms.pop(subscription.chat_id, None)

    def members(self, chat_id: str) -> List[str]:
        return sorted({sub.user_id for sub in self._rooms.get(chat_id, [])})

    def broadcast(self, chat_id: str, frame: dict, *, exclude_user: str | None = None) -> None:
        for subscription in list(self._rooms.get(chat_id, [])):
            if exclude_user is not None and subscription.user_id == exclude_user:
                continue
            subscription.deliver(frame)
