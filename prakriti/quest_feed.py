# prakriti/quest_feed.py
import asyncio
import json
import logging
from typing import Optional, Set

import redis.asyncio as redis
from fastapi import WebSocket

logger = logging.getLogger(__name__)

FEED_CHANNEL = "prakriti:events"

QUEST_CREATED = "QUEST_CREATED"
QUEST_COMPLETED = "QUEST_COMPLETED"


class QuestFeed:
    """
    Fans catalog and history events out to connected WebSocket clients.
    With a Redis URL, events travel over pub/sub so every worker sees them;
    without one, events are broadcast in-process.
    """

    def __init__(self, redis_url: Optional[str] = None):
        self.redis = redis.from_url(redis_url, decode_responses=True) if redis_url else None
        self.connections: Set[WebSocket] = set()
        self._pubsub_task: Optional[asyncio.Task] = None
        logger.info("QuestFeed initialized (%s)", "redis" if self.redis else "in-process")

    async def start_listener(self):
        if self.redis is None:
            return
        if self._pubsub_task and not self._pubsub_task.done():
            logger.info("PubSub listener already running.")
            return
        logger.info("Starting Redis PubSub listener...")
        self._pubsub_task = asyncio.create_task(self._listen_pubsub())
        self._pubsub_task.add_done_callback(self._handle_listener_completion)

    async def stop(self):
        if self._pubsub_task and not self._pubsub_task.done():
            self._pubsub_task.cancel()
            try:
                await self._pubsub_task
            except asyncio.CancelledError:
                pass
        if self.redis is not None:
            await self.redis.aclose()

    def _handle_listener_completion(self, task: asyncio.Task):
        try:
            task.result()
            logger.info("PubSub listener task finished cleanly.")
        except asyncio.CancelledError:
            logger.info("PubSub listener task was cancelled.")
        except Exception:
            logger.exception("PubSub listener task failed unexpectedly!")

    async def _listen_pubsub(self):
        async with self.redis.pubsub() as ps:
            await ps.subscribe(FEED_CHANNEL)
            logger.info(f"Subscribed to Redis channel: {FEED_CHANNEL}")
            while True:
                try:
                    message = await ps.get_message(ignore_subscribe_messages=True, timeout=1.0)
                    if message is None:
                        await asyncio.sleep(0.01)
                        continue
                    if message.get("type") == "message":
                        await self._broadcast(message.get("data"))
                except redis.ConnectionError:
                    logger.error("Redis connection error in listener. Retrying in 5s...")
                    await asyncio.sleep(5)
                    await ps.subscribe(FEED_CHANNEL)

    async def _broadcast(self, data: str):
        if not self.connections:
            return
        sockets = list(self.connections)
        results = await asyncio.gather(
            *(ws.send_text(data) for ws in sockets), return_exceptions=True
        )
        stale = [ws for ws, result in zip(sockets, results) if isinstance(result, Exception)]
        for ws in stale:
            logger.warning("Dropping feed client after failed send")
            self.connections.discard(ws)

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.connections.add(websocket)
        logger.info(f"Feed client connected. Total connections: {len(self.connections)}")

    def disconnect(self, websocket: WebSocket):
        self.connections.discard(websocket)
        logger.info(f"Feed client disconnected. Remaining connections: {len(self.connections)}")

    async def publish(self, event_type: str, payload: dict):
        """Best effort: a failed publish is logged, never raised to the request."""
        message = json.dumps({"type": event_type, **payload})
        if self.redis is None:
            await self._broadcast(message)
            return
        try:
            await self.redis.publish(FEED_CHANNEL, message)
        except (redis.RedisError, OSError):
            logger.warning("Failed to publish %s event", event_type, exc_info=True)
