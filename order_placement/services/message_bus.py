"""Per-user message topics for the two-factor channel and order status.

The WebSocket endpoint is just one subscriber; anything that can publish a
pydantic message can talk to the user.
"""
import asyncio
import json
import logging
from collections import defaultdict
from typing import AsyncIterator, Dict, List, Union

from pydantic import BaseModel
from redis.asyncio import Redis

from order_placement.core.redis import get_redis

logger = logging.getLogger(__name__)


def user_topic(user_id: int) -> str:
    return f"two_factor:user:{user_id}"


def _encode(message: Union[BaseModel, dict]) -> dict:
    if isinstance(message, BaseModel):
        return message.model_dump(mode="json")
    return message


class MessageBus:
    async def publish(self, user_id: int, message: Union[BaseModel, dict]) -> None:
        raise NotImplementedError

    def subscribe(self, user_id: int) -> AsyncIterator[dict]:
        raise NotImplementedError


class RedisMessageBus(MessageBus):
    def __init__(self, redis: Redis, poll_timeout: float = 5.0):
        self.redis = redis
        self.poll_timeout = poll_timeout

    async def publish(self, user_id: int, message: Union[BaseModel, dict]) -> None:
        payload = _encode(message)
        await self.redis.publish(user_topic(user_id), json.dumps(payload))
        logger.debug(f"[MessageBus] {payload.get('type')} -> user {user_id}")

    async def subscribe(self, user_id: int) -> AsyncIterator[dict]:
        topic = user_topic(user_id)
        pubsub = self.redis.pubsub(ignore_subscribe_messages=True)
        await pubsub.subscribe(topic)
        try:
            while True:
                message = await pubsub.get_message(timeout=self.poll_timeout)
                if not message:
                    continue
                data = message.get("data")
                if isinstance(data, bytes):
                    data = data.decode()
                try:
                    yield json.loads(data)
                except ValueError:
                    logger.warning(f"[MessageBus] Dropping malformed message on {topic}")
        finally:
            await pubsub.unsubscribe(topic)
            await pubsub.close()


class InMemoryMessageBus(MessageBus):
    """Single-process bus; also records everything published."""

    def __init__(self):
        self.published: Dict[int, List[dict]] = defaultdict(list)
        self._queues: Dict[int, List[asyncio.Queue]] = defaultdict(list)

    async def publish(self, user_id: int, message: Union[BaseModel, dict]) -> None:
        payload = _encode(message)
        self.published[user_id].append(payload)
        for queue in self._queues[user_id]:
            queue.put_nowait(payload)

    async def subscribe(self, user_id: int) -> AsyncIterator[dict]:
        queue: asyncio.Queue = asyncio.Queue()
        self._queues[user_id].append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._queues[user_id].remove(queue)

    def messages(self, user_id: int, message_type: str = None) -> List[dict]:
        return [m for m in self.published[user_id] if message_type is None or m.get("type") == message_type]


def get_message_bus() -> MessageBus:
    return RedisMessageBus(get_redis())
