import asyncio
import unittest

from chat_sync.models import Message, PendingMessage, parse_timestamp
from chat_sync.threads import MessageThreadCache
from chat_sync.unread import UnreadTracker

from tests.fake_service import ServiceTestCase, ts, wait_until


class MessageThreadCacheTests(ServiceTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.unread = UnreadTracker(self.client)
        self.thread = MessageThreadCache(self.client, self.unread)
        self.service.add_conversation("c1")
        self.service.add_conversation("c2")

    def _pending(self, content: str, seconds: float, temp_id: str = "local-1") -> PendingMessage:
        return PendingMessage(
            temp_id=temp_id,
            conversation_id="c1",
            sender_id="buyer-1",
            content=content,
            created_at=parse_timestamp(ts(seconds)),
        )

    async def test_load_dedupes_and_orders(self):
        self.service.add_message("c1", "seller-1", "third", created_at=ts(30))
        self.service.add_message("c1", "seller-1", "first", created_at=ts(10))
        self.service.add_message("c1", "buyer-1", "second", created_at=ts(20))
        self.service.duplicate_messages = True

        entries = await self.thread.load("c1")

        self.assertEqual([entry.content for entry in entries], ["first", "second", "third"])
        self.assertEqual(len({entry.id for entry in entries}), 3)
        self.assertTrue(self.thread.loaded)
        self.assertEqual(self.thread.conversation_id, "c1")

    async def test_fetch_for_closed_conversation_is_dropped(self):
        self.service.add_message("c1", "seller-1", "late", created_at=ts(5))
        self.service.messages_delay = 0.2
        self.thread.open("c1")

        task = asyncio.create_task(self.thread.load("c1"))
        self.assertTrue(
            await wait_until(lambda: self.service.in_flight.get("/api/conversations/c1/messages", 0) > 0)
        )
        self.thread.open("c2")
        fetched = await task

        self.assertEqual([message.content for message in fetched], ["late"])
        self.assertEqual(self.thread.conversation_id, "c2")
        self.assertEqual(self.thread.messages, [])
        self.assertFalse(self.thread.loaded)

    async def test_mark_read_flips_others_and_zeroes_count(self):
        self.service.add_message("c1", "seller-1", "one", created_at=ts(10))
        self.service.add_message("c1", "seller-1", "two", created_at=ts(20))
        self.service.add_message("c1", "buyer-1", "mine", created_at=ts(15))
        self.unread.counts["c1"] = 2
        await self.thread.load("c1")

        flipped = self.thread.mark_read("c1", reader_id="buyer-1")

        self.assertEqual(flipped, 2)
        self.assertTrue(all(entry.is_read for entry in self.thread.messages if entry.sender_id == "seller-1"))
        self.assertEqual(self.unread.counts["c1"], 0)
        self.assertEqual(self.unread.cursors.read_through("c1"), parse_timestamp(ts(20)))

    async def test_mark_read_ignores_other_conversation(self):
        await self.thread.load("c1")
        self.unread.counts["c2"] = 3
        self.assertEqual(self.thread.mark_read("c2", reader_id="buyer-1"), 0)
        self.assertEqual(self.unread.counts["c2"], 3)

    async def test_pending_entry_survives_refresh_in_order(self):
        self.service.add_message("c1", "seller-1", "before", created_at=ts(10))
        self.service.add_message("c1", "seller-1", "after", created_at=ts(30))
        await self.thread.load("c1")

        self.assertTrue(self.thread.append_pending(self._pending("hello", 20)))
        await self.thread.load("c1")

        self.assertEqual([entry.content for entry in self.thread.messages], ["before", "hello", "after"])
        self.assertEqual(self.thread.messages[1].status, "pending")

    async def test_polled_copy_absorbs_pending_entry(self):
        await self.thread.load("c1")
        pending = self._pending("hello", 20)
        self.thread.append_pending(pending)
        record = self.service.add_message("c1", "buyer-1", "hello", created_at=ts(21))

        await self.thread.load("c1")

        self.assertEqual(self.thread.pending(), [])
        self.assertEqual([entry.id for entry in self.thread.messages], [record["id"]])

        # The late POST response must not add a second copy.
        self.assertTrue(self.thread.confirm(pending.temp_id, Message.from_json(record)))
        self.assertEqual(len(self.thread), 1)

    async def test_first_fetch_absorbs_pending_entry(self):
        self.thread.open("c1")
        self.thread.append_pending(self._pending("hello", 20))
        record = self.service.add_message("c1", "buyer-1", "hello", created_at=ts(21))

        await self.thread.load("c1")

        self.assertEqual(self.thread.pending(), [])
        self.assertEqual([entry.id for entry in self.thread.messages], [record["id"]])

    async def test_first_fetch_ignores_old_message_with_same_text(self):
        self.thread.open("c1")
        self.service.add_message("c1", "buyer-1", "ok", created_at=ts(0))
        self.thread.append_pending(self._pending("ok", 600))

        await self.thread.load("c1")

        self.assertEqual([entry.status for entry in self.thread.messages], ["confirmed", "pending"])

    async def test_confirm_replaces_pending_in_place(self):
        self.service.add_message("c1", "seller-1", "before", created_at=ts(10))
        await self.thread.load("c1")
        pending = self._pending("hello", 20)
        self.thread.append_pending(pending)
        record = self.service.add_message("c1", "buyer-1", "hello", created_at=ts(20))

        self.assertTrue(self.thread.confirm(pending.temp_id, Message.from_json(record)))

        self.assertEqual(self.thread.pending(), [])
        self.assertEqual([entry.content for entry in self.thread.messages], ["before", "hello"])
        self.assertEqual(self.thread.messages[1].status, "confirmed")

        await self.thread.load("c1")
        self.assertEqual([entry.content for entry in self.thread.messages], ["before", "hello"])

    async def test_confirm_resorts_when_server_time_differs(self):
        self.service.add_message("c1", "seller-1", "reply", created_at=ts(10))
        await self.thread.load("c1")
        pending = self._pending("hello", 20)
        self.thread.append_pending(pending)
        record = self.service.add_message("c1", "buyer-1", "hello", created_at=ts(5))

        self.thread.confirm(pending.temp_id, Message.from_json(record))

        self.assertEqual([entry.content for entry in self.thread.messages], ["hello", "reply"])

    async def test_pending_for_other_conversation_is_rejected(self):
        self.thread.open("c2")
        self.assertFalse(self.thread.append_pending(self._pending("hello", 1)))
        self.assertEqual(len(self.thread), 0)

    async def test_discard_removes_only_that_pending_entry(self):
        await self.thread.load("c1")
        self.thread.append_pending(self._pending("a", 1, temp_id="local-a"))
        self.thread.append_pending(self._pending("b", 2, temp_id="local-b"))
        self.assertTrue(self.thread.discard("local-a"))
        self.assertFalse(self.thread.discard("local-a"))
        self.assertEqual([entry.content for entry in self.thread.messages], ["b"])


if __name__ == "__main__":
    unittest.main()
