import asyncio
import unittest

from chat_sync.client import NoTokenError, ServiceError
from chat_sync.hub import TOPIC_COMPOSE, TOPIC_NOTICE, TOPIC_THREAD, SubscriptionHub
from chat_sync.models import TEMP_ID_PREFIX, parse_timestamp
from chat_sync.sending import (
    SEND_FAILED_NOTICE,
    STATE_CONFIRMED,
    STATE_PENDING,
    STATE_ROLLED_BACK,
    ComposeState,
    OptimisticSendPipeline,
    new_temp_id,
)
from chat_sync.threads import MessageThreadCache
from chat_sync.unread import UnreadTracker

from tests.fake_service import ServiceTestCase, ts, wait_until


class OptimisticSendPipelineTests(ServiceTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.service.add_conversation("c1")
        self.service.add_message("c1", "seller-1", "hi there", created_at=ts(1))
        self.hub = SubscriptionHub()
        self.events = []
        self.hub.subscribe_all("test", self.events.append)
        self.thread = MessageThreadCache(self.client, UnreadTracker(self.client))
        self.compose = ComposeState()
        self.pipeline = OptimisticSendPipeline(
            self.client,
            self.thread,
            self.hub,
            self.compose,
            clock=lambda: parse_timestamp(ts(60)),
        )
        await self.thread.load("c1")

    def _topics(self):
        return [event.topic for event in self.events]

    async def test_begin_shows_pending_entry_immediately(self):
        self.compose.text = "hello"
        attempt = self.pipeline.begin("c1", self.compose.text, "buyer-1")

        self.assertEqual(attempt.state, STATE_PENDING)
        self.assertTrue(attempt.pending.temp_id.startswith(TEMP_ID_PREFIX))
        self.assertEqual(self.thread.last_entry().key, attempt.pending.key)
        self.assertEqual(self.compose.text, "")
        self.assertTrue(self.compose.sending)
        self.assertEqual(self.service.count("POST", "/api/conversations/c1/messages"), 0)
        self.assertTrue(self.events[0].scroll_to_end)

    async def test_round_trip_confirms_in_place(self):
        attempt = await self.pipeline.submit("c1", "hello", "buyer-1")

        self.assertEqual(attempt.state, STATE_CONFIRMED)
        self.assertEqual(attempt.message.content, "hello")
        self.assertEqual(self.thread.pending(), [])
        self.assertEqual([entry.content for entry in self.thread.messages], ["hi there", "hello"])
        self.assertFalse(self.compose.sending)
        self.assertNotIn(TOPIC_NOTICE, self._topics())

    async def test_content_is_trimmed_before_sending(self):
        attempt = await self.pipeline.submit("c1", "  hello  ", "buyer-1")
        self.assertEqual(attempt.message.content, "hello")

    async def test_failed_send_rolls_back_and_restores_draft(self):
        self.service.fail_send = True
        self.compose.text = "hello"

        attempt = await self.pipeline.submit("c1", self.compose.text, "buyer-1")

        self.assertEqual(attempt.state, STATE_ROLLED_BACK)
        self.assertIsInstance(attempt.error, ServiceError)
        self.assertEqual(self.compose.text, "hello")
        self.assertEqual(len(self.thread), 1)
        self.assertFalse(self.compose.sending)
        notices = [event for event in self.events if event.topic == TOPIC_NOTICE]
        self.assertEqual([event.message for event in notices], [SEND_FAILED_NOTICE])

    async def test_missing_token_rolls_back_without_request(self):
        self.tokens.token = None

        attempt = await self.pipeline.submit("c1", "hello", "buyer-1")

        self.assertEqual(attempt.state, STATE_ROLLED_BACK)
        self.assertIsInstance(attempt.error, NoTokenError)
        self.assertEqual(self.service.count("POST", "/api/conversations/c1/messages"), 0)
        self.assertEqual(self.compose.text, "hello")
        self.assertIn(TOPIC_NOTICE, self._topics())

    async def test_blank_or_unaddressed_content_is_ignored(self):
        self.assertIsNone(await self.pipeline.submit("c1", "   ", "buyer-1"))
        self.assertIsNone(await self.pipeline.submit("c1", None, "buyer-1"))
        self.assertIsNone(await self.pipeline.submit(None, "hello", "buyer-1"))
        self.assertIsNone(await self.pipeline.submit("c1", "hello", None))
        self.assertEqual(self.events, [])
        self.assertEqual(self.service.count("POST", "/api/conversations/c1/messages"), 0)

    async def test_concurrent_sends_are_independent(self):
        self.service.send_delay = 0.05
        first = asyncio.create_task(self.pipeline.submit("c1", "one", "buyer-1"))
        second = asyncio.create_task(self.pipeline.submit("c1", "two", "buyer-1"))

        self.assertTrue(await wait_until(lambda: self.compose.in_flight == 2))
        results = await asyncio.gather(first, second)

        self.assertEqual([attempt.state for attempt in results], [STATE_CONFIRMED, STATE_CONFIRMED])
        self.assertEqual(self.thread.pending(), [])
        self.assertEqual(sorted(entry.content for entry in self.thread.messages), ["hi there", "one", "two"])
        self.assertEqual(self.compose.in_flight, 0)

    async def test_compose_events_bracket_the_request(self):
        await self.pipeline.submit("c1", "hello", "buyer-1")
        topics = self._topics()
        self.assertEqual(topics[0], TOPIC_THREAD)
        self.assertEqual(topics.count(TOPIC_COMPOSE), 2)
        self.assertEqual(topics[-1], TOPIC_COMPOSE)


class TempIdTests(unittest.TestCase):
    def test_temp_ids_are_unique_and_prefixed(self):
        ids = {new_temp_id() for _ in range(50)}
        self.assertEqual(len(ids), 50)
        self.assertTrue(all(temp_id.startswith(TEMP_ID_PREFIX) for temp_id in ids))


if __name__ == "__main__":
    unittest.main()
