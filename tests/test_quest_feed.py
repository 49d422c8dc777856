"""
Unit tests for the quest event feed.
"""
import json
import unittest
from unittest.mock import AsyncMock, Mock, patch

import redis.asyncio as redis

from prakriti.quest_feed import FEED_CHANNEL, QUEST_CREATED, QuestFeed


def fake_socket(fail=False):
    ws = Mock()
    ws.accept = AsyncMock()
    ws.send_text = AsyncMock(side_effect=RuntimeError("closed") if fail else None)
    return ws


class TestInProcessFeed(unittest.IsolatedAsyncioTestCase):

    async def test_publish_reaches_connected_clients(self):
        feed = QuestFeed()
        ws = fake_socket()
        await feed.connect(ws)

        await feed.publish(QUEST_CREATED, {"quest_id": "q-1", "title": "Rain Garden"})

        ws.accept.assert_awaited_once()
        sent = json.loads(ws.send_text.await_args.args[0])
        self.assertEqual(sent, {"type": QUEST_CREATED, "quest_id": "q-1", "title": "Rain Garden"})

    async def test_failed_clients_are_dropped(self):
        feed = QuestFeed()
        good, bad = fake_socket(), fake_socket(fail=True)
        await feed.connect(good)
        await feed.connect(bad)

        await feed.publish(QUEST_CREATED, {"quest_id": "q-1"})

        self.assertEqual(feed.connections, {good})

    async def test_disconnect(self):
        feed = QuestFeed()
        ws = fake_socket()
        await feed.connect(ws)

        feed.disconnect(ws)
        feed.disconnect(ws)

        self.assertEqual(feed.connections, set())

    async def test_listener_is_noop_without_redis(self):
        feed = QuestFeed()

        await feed.start_listener()
        await feed.stop()

        self.assertIsNone(feed._pubsub_task)


class TestRedisFeed(unittest.IsolatedAsyncioTestCase):

    async def test_publish_goes_to_channel(self):
        with patch("prakriti.quest_feed.redis.from_url") as from_url:
            from_url.return_value.publish = AsyncMock()
            feed = QuestFeed("redis://localhost:6379")

            await feed.publish(QUEST_CREATED, {"quest_id": "q-1"})

        channel, message = from_url.return_value.publish.await_args.args
        self.assertEqual(channel, FEED_CHANNEL)
        self.assertEqual(json.loads(message)["quest_id"], "q-1")

    async def test_publish_failure_is_swallowed(self):
        with patch("prakriti.quest_feed.redis.from_url") as from_url:
            from_url.return_value.publish = AsyncMock(side_effect=redis.ConnectionError("down"))
            feed = QuestFeed("redis://localhost:6379")

            with self.assertLogs("prakriti.quest_feed", level="WARNING"):
                await feed.publish(QUEST_CREATED, {"quest_id": "q-1"})

    async def test_broadcast_from_pubsub_message(self):
        with patch("prakriti.quest_feed.redis.from_url"):
            feed = QuestFeed("redis://localhost:6379")
        ws = fake_socket()
        await feed.connect(ws)

        await feed._broadcast('{"type": "QUEST_COMPLETED"}')

        ws.send_text.assert_awaited_once_with('{"type": "QUEST_COMPLETED"}')


if __name__ == "__main__":
    unittest.main()
