"""Live delivery of message events to connected WebSocket clients.

Each process keeps its own :class:`ConnectionManager` keyed by profile id. A
broker sits in front of it: the in-process broker hands frames straight to the
local manager, the Redis broker publishes them on a pub/sub channel so every
API process relays them to the sockets it holds.
"""
from fastapi import WebSocket
from typing import Dict, Iterable, Optional, Set
from schemas import MessageResponse, ReadReceipt
import asyncio
import json
import logging
import os

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger("messaging.feed")

REDIS_URL = os.getenv("REDIS_URL")
FEED_CHANNEL = os.getenv("FEED_CHANNEL", "messaging:feed")


class ConnectionManager:
    def __init__(self):
        self.active_connections: Dict[int, Set[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, user_id: int):
        await websocket.accept()
        self.active_connections.setdefault(user_id, set()).add(websocket)
        logger.info("Feed connected for profile %s (%d open)", user_id, len(self.active_connections[user_id]))

    def disconnect(self, websocket: WebSocket, user_id: int):
        connections = self.active_connections.get(user_id)
        if connections is None:
            return
        connections.discard(websocket)
        if not connections:
            del self.active_connections[user_id]
        logger.info("Feed disconnected for profile %s", user_id)

    def connection_count(self, user_id: Optional[int] = None) -> int:
        if user_id is not None:
            return len(self.active_connections.get(user_id, ()))
        return sum(len(connections) for connections in self.active_connections.values())

    async def send_to_users(self, frame: dict, user_ids: Iterable[int]) -> int:
        """Deliver ``frame`` to every socket of the given profiles. Returns sockets reached."""
        text = json.dumps(frame, default=str)
        delivered = 0
        for user_id in set(user_ids):
            for connection in list(self.active_connections.get(user_id, ())):
                try:
                    await connection.send_text(text)
                    delivered += 1
                except Exception as exc:
                    logger.debug("Dropping dead feed socket for profile %s: %s", user_id, exc)
                    self.disconnect(connection, user_id)
        return delivered


def message_created_frame(message) -> dict:
    return {
        "type": "message.created",
        "data": MessageResponse.model_validate(message).model_dump(mode="json"),
    }


def messages_read_frame(receipt: ReadReceipt) -> dict:
    return {"type": "messages.read", "data": receipt.model_dump(mode="json")}


class LocalBroker:
    """Single-process fan-out."""

    def __init__(self, manager: ConnectionManager):
        self.manager = manager

    async def start(self):
        return None

    async def stop(self):
        return None

    async def publish(self, frame: dict, recipients: Iterable[int]):
        await self.manager.send_to_users(frame, recipients)


class RedisBroker:
    """Fan-out across API processes through a Redis pub/sub channel."""

    def __init__(self, manager: ConnectionManager, url: str, channel: str = FEED_CHANNEL,
                 retry_delay: float = 1.0):
        self.manager = manager
        self.url = url
        self.channel = channel
        self.retry_delay = retry_delay
        self._redis = None
        self._pubsub = None
        self._listener: Optional[asyncio.Task] = None

    async def start(self):
        self._redis = aioredis.from_url(self.url, decode_responses=True)
        self._pubsub = self._redis.pubsub()
        await self._pubsub.subscribe(self.channel)
        self._listener = asyncio.create_task(self._listen())
        logger.info("Feed broker subscribed to redis channel %s", self.channel)

    async def stop(self):
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self._pubsub is not None:
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.close()
            self._pubsub = None
        if self._redis is not None:
            await self._redis.close()
            self._redis = None

    async def publish(self, frame: dict, recipients: Iterable[int]):
        envelope = json.dumps({"recipients": sorted(set(recipients)), "frame": frame}, default=str)
        await self._redis.publish(self.channel, envelope)

    async def _listen(self):
        """Relay envelopes until cancelled, resubscribing whenever the connection drops."""
        resubscribe = False
        while True:
            try:
                if resubscribe:
                    await self._resubscribe()
                await self._consume()
                logger.warning("Redis feed subscription on %s ended", self.channel)
            except (RedisError, OSError) as exc:
                logger.warning("Redis feed subscription on %s lost: %s", self.channel, exc)
            except Exception:
                logger.exception("Redis feed listener failed")
            resubscribe = True
            await asyncio.sleep(self.retry_delay)

    async def _resubscribe(self):
        stale, self._pubsub = self._pubsub, None
        if stale is not None:
            try:
                await stale.close()
            except (RedisError, OSError) as exc:
                logger.debug("Closing dropped pubsub failed: %s", exc)
        self._pubsub = self._redis.pubsub()
        await self._pubsub.subscribe(self.channel)
        logger.info("Feed broker resubscribed to redis channel %s", self.channel)

    async def _consume(self):
        async for item in self._pubsub.listen():
            if item.get("type") != "message":
                continue
            try:
                envelope = json.loads(item["data"])
                await self.manager.send_to_users(envelope["frame"], envelope["recipients"])
            except (ValueError, KeyError) as exc:
                logger.warning("Discarding malformed feed envelope: %s", exc)


manager = ConnectionManager()


def build_broker(url: Optional[str] = REDIS_URL):
    if url:
        return RedisBroker(manager, url)
    return LocalBroker(manager)


broker = build_broker()
