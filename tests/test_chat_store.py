import unittest

from chatsync.chat_store import ChatStore
from chatsync.models import Chat, Message


def _message(message_id: str, *, sender: str = "u2", receiver: str = "u1", content: str = "hi") -> Message:
    return Message(
        id=message_id,
        sender_id=sender,
        receiver_id=receiver,
        content=content,
        timestamp="2024-01-01T00:00:00+00:00",
    )


def _chat(chat_id: str = "c1", participant: str = "u2") -> Chat:
    return Chat(id=chat_id, participant_id=participant, participant_name="Bob", participant_username="bob")


class ChatStoreTests(unittest.TestCase):
    def test_add_message_appends_in_call_order(self):
        store = ChatStore()
        store.set_chats([_chat()])

        for idx in range(5):
            self.assertTrue(store.add_message("c1", _message(f"m{idx}")))

        chat = store.get_chat("c1")
        self.assertEqual([m.id for m in chat.messages], ["m0", "m1", "m2", "m3", "m4"])
        self.assertEqual(chat.last_message.id, "m4")

    def test_add_message_keeps_arrival_order_over_timestamps(self):
        store = ChatStore()
        store.set_chats([_chat()])
        late = _message("late")
        late.timestamp = "2024-01-02T00:00:00+00:00"
        early = _message("early")
        early.timestamp = "2023-12-31T00:00:00+00:00"

        store.add_message("c1", late)
        store.add_message("c1", early)

        self.assertEqual([m.id for m in store.get_chat("c1").messages], ["late", "early"])

    def test_add_message_to_unknown_chat_is_dropped(self):
        store = ChatStore()
        store.set_chats([_chat()])
        before = store.snapshot()

        self.assertFalse(store.add_message("ghost", _message("m1")))
        self.assertEqual(store.snapshot(), before)

    def test_active_chat_sees_appended_messages(self):
        store = ChatStore()
        chat = _chat()
        store.set_chats([chat])
        store.set_active_chat(chat)

        store.add_message("c1", _message("m1"))

        self.assertIs(store.active_chat, store.get_chat("c1"))
        self.assertEqual([m.id for m in store.active_chat.messages], ["m1"])
        self.assertEqual(store.active_chat.last_message.id, "m1")

    def test_set_active_chat_leaves_unread_counts_alone(self):
        store = ChatStore()
        chat = _chat()
        chat.unread_count = 3
        store.set_chats([chat, _chat("c2", "u3")])

        store.set_active_chat(chat)

        self.assertEqual(store.get_chat("c1").unread_count, 3)
        self.assertTrue(store.is_active("c1"))
        self.assertFalse(store.is_active("c2"))

    def test_set_active_chat_registers_unknown_chat(self):
        store = ChatStore()
        opened = _chat("c9", "u9")

        store.set_active_chat(opened)

        self.assertIs(store.get_chat("c9"), opened)
        store.set_active_chat(None)
        self.assertIsNone(store.active_chat)

    def test_set_chats_replaces_without_merge(self):
        store = ChatStore()
        store.set_chats([_chat("c1"), _chat("c2", "u3")])
        store.add_message("c1", _message("m1"))

        store.set_chats([_chat("c3", "u4")])

        self.assertEqual([c.id for c in store.chats], ["c3"])
        self.assertIsNone(store.get_chat("c1"))

    def test_set_chats_clears_active_chat_missing_from_new_list(self):
        store = ChatStore()
        chat = _chat()
        store.set_chats([chat])
        store.set_active_chat(chat)
        store.set_typing(True)

        store.set_chats([_chat("c2", "u3")])

        self.assertIsNone(store.active_chat)
        self.assertFalse(store.is_typing)

    def test_mark_messages_read_is_idempotent(self):
        store = ChatStore()
        chat = _chat()
        chat.unread_count = 2
        store.set_chats([chat])
        store.add_message("c1", _message("m1"))
        store.add_message("c1", _message("m2"))

        store.mark_messages_read("c1")
        once = store.snapshot()
        store.mark_messages_read("c1")

        self.assertEqual(store.snapshot(), once)
        self.assertEqual(store.get_chat("c1").unread_count, 0)
        self.assertTrue(all(m.is_read for m in store.get_chat("c1").messages))

    def test_mark_messages_read_unknown_chat_is_noop(self):
        store = ChatStore()
        store.mark_messages_read("ghost")
        store.increment_unread("ghost")
        self.assertEqual(store.chats, [])

    def test_unlock_keeps_single_message_unlocked(self):
        store = ChatStore()

        store.unlock_message("A")
        store.unlock_message("B")

        self.assertEqual(store.unlocked_message_id, "B")
        self.assertTrue(store.is_unlocked("B"))
        self.assertFalse(store.is_unlocked("A"))

        store.lock_message()
        self.assertFalse(store.is_unlocked("B"))

    def test_unlock_does_not_touch_read_state(self):
        store = ChatStore()
        store.set_chats([_chat()])
        store.add_message("c1", _message("m1"))

        store.unlock_message("m1")

        self.assertFalse(store.get_chat("c1").messages[0].is_read)

    def test_confirm_message_replaces_pending_in_place(self):
        store = ChatStore()
        store.set_chats([_chat()])
        pending = _message("cm_1", sender="u1", receiver="u2")
        pending.pending = True
        pending.is_read = True
        store.add_message("c1", pending)
        store.add_message("c1", _message("m2"))

        echo = _message("cm_1", sender="u1", receiver="u2")
        echo.timestamp = "2024-01-01T00:00:05+00:00"
        self.assertTrue(store.confirm_message("c1", echo))

        chat = store.get_chat("c1")
        self.assertEqual([m.id for m in chat.messages], ["cm_1", "m2"])
        self.assertFalse(chat.messages[0].pending)
        self.assertTrue(chat.messages[0].is_read)
        self.assertEqual(chat.messages[0].timestamp, "2024-01-01T00:00:05+00:00")
        self.assertEqual(chat.last_message.id, "m2")

    def test_confirm_message_without_match_returns_false(self):
        store = ChatStore()
        store.set_chats([_chat()])
        self.assertFalse(store.confirm_message("c1", _message("nope")))
        self.assertFalse(store.confirm_message("ghost", _message("nope")))

    def test_participant_presence_mirrors_every_matching_chat(self):
        store = ChatStore()
        store.set_chats([_chat("c1", "u2"), _chat("c2", "u2"), _chat("c3", "u3")])

        store.set_participant_presence("u2", is_online=True)

        self.assertEqual([c.is_online for c in store.chats], [True, True, False])
        self.assertEqual([c.is_viewing for c in store.chats], [False, False, False])

    def test_clear_resets_everything(self):
        store = ChatStore()
        chat = _chat()
        store.set_chats([chat])
        store.set_active_chat(chat)
        store.unlock_message("m1")
        store.set_error("boom")
        store.set_loading(True)

        store.clear()

        self.assertEqual(store.chats, [])
        self.assertIsNone(store.active_chat)
        self.assertIsNone(store.unlocked_message_id)
        self.assertIsNone(store.error)
        self.assertFalse(store.is_loading)


class ChatWireTests(unittest.TestCase):
    def test_chat_from_wire_parses_messages_and_last_message(self):
        chat = Chat.from_wire(
            {
                "id": "c1",
                "participantId": "u2",
                "participantName": "Bob",
                "participantUsername": "bob",
                "unreadCount": 2,
                "messages": [
                    {"id": "m1", "senderId": "u2", "receiverId": "u1", "content": "x", "timestamp": "t1"},
                    {"id": "m2", "senderId": "u1", "receiverId": "u2", "content": "y", "timestamp": "t2", "isRead": True},
                ],
            }
        )

        self.assertEqual(chat.unread_count, 2)
        self.assertEqual([m.id for m in chat.messages], ["m1", "m2"])
        self.assertIs(chat.last_message, chat.messages[-1])
        self.assertTrue(chat.messages[1].is_read)
        self.assertTrue(chat.messages[0].is_encrypted)
        self.assertIsNone(chat.participant_avatar)

    def test_message_from_wire_requires_id(self):
        with self.assertRaises(ValueError):
            Message.from_wire({"content": "x"})

    def test_from_wire_rejects_non_list_collections(self):
        with self.assertRaises(ValueError):
            Message.from_wire({"id": "m1", "attachments": ""})
        with self.assertRaises(ValueError):
            Chat.from_wire({"id": "c1", "participantId": "u2", "messages": {}})

    def test_chat_from_wire_rejects_bad_unread_count(self):
        for raw in ("many", [1], True):
            with self.subTest(raw=raw):
                with self.assertRaises(ValueError):
                    Chat.from_wire({"id": "c1", "participantId": "u2", "unreadCount": raw})

    def test_message_to_wire_includes_attachments_only_when_present(self):
        message = _message("m1")
        self.assertNotIn("attachments", message.to_wire())
        message.attachments = ["a.png"]
        self.assertEqual(message.to_wire()["attachments"], ["a.png"])


if __name__ == "__main__":
    unittest.main()
