import unittest
from datetime import timedelta
from unittest import mock

from marketchat.errors import BackendError, BlockedSenderError, ValidationError
from marketchat.message_store import MessageStore
from marketchat.models import DELETED_PLACEHOLDER, Message

from tests.support import SEED_START, FakeClock, make_backend, seed_messages


class MessageStoreTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.backend = make_backend(clock=self.clock)
        self.conv_id = await self.backend.create_conversation("u1", "u2", "i1")
        self.changes = 0

    def _store(self, user_id: str = "u1") -> MessageStore:
        def _changed():
            self.changes += 1

        return MessageStore(self.backend, self.conv_id, user_id, on_change=_changed)

    def _assert_sorted(self, store: MessageStore) -> None:
        stamps = [message.created_at for message in store.messages]
        self.assertEqual(stamps, sorted(stamps))
        self.assertEqual(len(store.message_ids), len(set(store.message_ids)))

    async def test_load_keeps_most_recent_page_ascending(self):
        ids = seed_messages(self.backend, self.conv_id, 60)
        store = self._store()

        await store.load()

        self.assertEqual(store.message_ids, ids[10:])
        self.assertTrue(store.has_more)
        self.assertFalse(store.is_loading)
        self.assertEqual(store.detail.other_participant("u1"), "u2")
        self.assertEqual(self.backend.call_count("mark_messages_read"), 1)

    async def test_short_history_has_no_more_pages(self):
        seed_messages(self.backend, self.conv_id, 3)
        store = self._store()

        await store.load()

        self.assertEqual(len(store), 3)
        self.assertFalse(store.has_more)

    async def test_pagination_prepends_older_pages(self):
        ids = seed_messages(self.backend, self.conv_id, 75)
        store = self._store()
        await store.load()
        oldest_loaded = store.messages[0].created_at

        page = await store.load_more_messages()

        self.assertEqual([message.id for message in page], ids[5:25])
        self.assertTrue(all(message.created_at < oldest_loaded for message in page))
        self.assertEqual(store.message_ids, ids[5:])
        self._assert_sorted(store)

        last_page = await store.load_more_messages()
        self.assertEqual([message.id for message in last_page], ids[:5])
        self.assertFalse(store.has_more)
        self.assertEqual(await store.load_more_messages(), [])
        self.assertEqual(store.message_ids, ids)

    async def test_load_more_without_messages_is_noop(self):
        store = self._store()
        await store.load()

        self.assertEqual(await store.load_more_messages(), [])
        self.assertEqual(self.backend.call_count("fetch_messages"), 1)

    async def test_send_then_push_keeps_single_copy(self):
        store = self._store()
        await store.load()

        message = await store.send_message("Is this still available?")

        self.assertFalse(store.receive(message))
        self.assertEqual(store.message_ids, [message.id])

    async def test_push_before_send_response_keeps_single_copy(self):
        store = self._store()
        await store.load()
        real = self.backend.insert_message

        async def insert_and_push(row):
            inserted = await real(row)
            store.receive(Message.from_row(inserted))
            return inserted

        with mock.patch.object(self.backend, "insert_message", side_effect=insert_and_push):
            message = await store.send_message("hello")

        self.assertEqual(store.message_ids.count(message.id), 1)

    async def test_out_of_order_push_is_inserted_by_timestamp(self):
        ids = seed_messages(self.backend, self.conv_id, 3)
        store = self._store()
        await store.load()
        late = Message(
            id="late",
            conversation_id=self.conv_id,
            sender_id="u2",
            message_type="text",
            content="delayed",
            created_at=SEED_START + timedelta(milliseconds=1500),
        )

        self.assertTrue(store.receive(late))

        self.assertEqual(store.message_ids, [ids[0], ids[1], "late", ids[2]])
        self._assert_sorted(store)

    async def test_push_for_other_conversation_is_ignored(self):
        store = self._store()
        await store.load()
        stray = Message(
            id="stray",
            conversation_id="elsewhere",
            sender_id="u2",
            message_type="text",
            content="hi",
            created_at=SEED_START,
        )

        self.assertFalse(store.receive(stray))
        self.assertEqual(len(store), 0)

    async def test_refresh_keeps_pushed_messages(self):
        seed_messages(self.backend, self.conv_id, 2)
        store = self._store()
        await store.load()
        pushed = Message(
            id="pushed",
            conversation_id=self.conv_id,
            sender_id="u2",
            message_type="text",
            content="only pushed",
            created_at=SEED_START + timedelta(minutes=5),
        )
        store.receive(pushed)

        await store.refresh()

        self.assertIn("pushed", store)
        self.assertEqual(len(store), 3)

    async def test_send_validates_input(self):
        store = self._store()
        await store.load()

        with self.assertRaises(ValidationError):
            await store.send_message("   ")
        with self.assertRaises(ValidationError):
            await store.send_message("hi", "sticker")
        with self.assertRaises(ValidationError):
            await store.send_message("Would you take this?", "offer")
        with self.assertRaises(ValidationError):
            await store.send_message("Would you take this?", "offer", -5)
        with self.assertRaises(ValidationError):
            await store.send_message("", "image")
        self.assertEqual(self.backend.call_count("insert_message"), 0)

    async def test_offer_amount_is_stored_in_metadata(self):
        store = self._store()
        await store.load()

        message = await store.send_message("Would you take 200?", "offer", 200)

        self.assertEqual(message.message_type, "offer")
        self.assertEqual(message.offer_amount, 200.0)

    async def test_blocked_sender_cannot_send(self):
        await self.backend.block_user("u2", "u1")
        store = self._store()
        await store.load()

        with self.assertRaises(BlockedSenderError) as ctx:
            await store.send_message("hello?")

        self.assertEqual(str(ctx.exception), "You are blocked from sending messages to this user")
        self.assertEqual(self.backend.call_count("insert_message"), 0)
        self.assertEqual(self.backend.calls[-1], ("is_blocked", ("u2", "u1")))

    async def test_send_bumps_conversation_and_recipient_unread(self):
        store = self._store()
        await store.load()

        await store.send_message("hello")

        self.assertEqual(self.backend.unread_count(self.conv_id, "u2"), 1)
        self.assertEqual(self.backend.unread_count(self.conv_id, "u1"), 0)
        self.assertEqual(self.backend.call_count("touch_conversation"), 1)

    async def test_failed_bookkeeping_does_not_fail_send(self):
        store = self._store()
        await store.load()

        with mock.patch.object(
            self.backend, "touch_conversation", side_effect=BackendError("boom", status=500)
        ), self.assertLogs("marketchat.message_store", level="ERROR"):
            message = await store.send_message("hello")

        self.assertIn(message.id, store)

    async def test_load_failure_sets_error(self):
        store = self._store()

        with mock.patch.object(
            self.backend, "fetch_messages", side_effect=BackendError("boom", status=500)
        ), self.assertLogs("marketchat.message_store", level="ERROR"):
            await store.load()

        self.assertEqual(store.error, "Failed to load messages")
        self.assertFalse(store.is_loading)
        self.assertEqual(store.messages, [])

    async def test_load_resets_unread_unless_disabled(self):
        await self.backend.mark_conversation_unread(self.conv_id, "u2")
        await self._store().load()
        self.assertEqual(self.backend.unread_count(self.conv_id, "u1"), 0)

        await self.backend.mark_conversation_unread(self.conv_id, "u2")
        store = MessageStore(self.backend, self.conv_id, "u1", reset_unread=False)
        await store.load()

        self.assertEqual(self.backend.unread_count(self.conv_id, "u1"), 1)
        self.assertEqual(self.backend.call_count("mark_conversation_read"), 1)
        self.assertEqual(self.backend.call_count("mark_messages_read"), 2)

    async def test_load_more_failure_sets_error(self):
        seed_messages(self.backend, self.conv_id, 60)
        store = self._store()
        await store.load()

        with mock.patch.object(
            self.backend, "fetch_messages", side_effect=BackendError("boom", status=500)
        ), self.assertLogs("marketchat.message_store", level="ERROR"):
            self.assertEqual(await store.load_more_messages(), [])

        self.assertEqual(store.error, "Failed to load older messages")
        self.assertEqual(len(store), 50)

    async def test_results_after_close_are_dropped(self):
        seed_messages(self.backend, self.conv_id, 4)
        store = self._store()
        real = self.backend.fetch_messages

        async def close_then_fetch(*args, **kwargs):
            store.close()
            return await real(*args, **kwargs)

        with mock.patch.object(self.backend, "fetch_messages", side_effect=close_then_fetch):
            result = await store.load()

        self.assertEqual(result, [])
        self.assertEqual(store.messages, [])
        self.assertEqual(self.changes, 0)

    async def test_apply_deletion_replaces_content(self):
        ids = seed_messages(self.backend, self.conv_id, 2)
        store = self._store()
        await store.load()

        self.assertTrue(store.apply_deletion(ids[0]))

        self.assertTrue(store.messages[0].is_deleted)
        self.assertEqual(store.messages[0].content, DELETED_PLACEHOLDER)
        self.assertFalse(store.apply_deletion("missing"))


if __name__ == "__main__":
    unittest.main()
