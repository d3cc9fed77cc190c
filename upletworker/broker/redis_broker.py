"""Broker on Redis lists.

Key layout, with ``<prefix>`` from ``REDIS_KEY_PREFIX``:

- ``<prefix>:queue:<topic>``: pending messages, pushed left and taken from the right
- ``<prefix>:processing:<topic>:<consumer>``: messages a consumer holds in flight
- ``<prefix>:dead:<topic>``: messages whose retry budget ran out

A message moves atomically from its queue to the consumer's processing list
(BLMOVE), so a worker that dies mid-task leaves it there for
:meth:`RedisBroker.recover_inflight` to put back.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, TimeoutError as RedisTimeoutError

from upletworker.utils.errors import NetworkError

from .base import Broker, Message

logger = logging.getLogger(__name__)


class RedisBroker(Broker):
    name = "redis"

    def __init__(self, redis_client: redis.Redis, key_prefix: str = "upletworker", max_retries: int = 3):
        super().__init__(max_retries=max_retries)
        self.redis = redis_client
        self.key_prefix = key_prefix
        # message id -> (processing key, raw entry) for messages this process holds
        self._held: Dict[str, Tuple[str, bytes]] = {}

    def queue_key(self, topic: str) -> str:
        return f"{self.key_prefix}:queue:{topic}"

    def processing_key(self, topic: str, consumer: str) -> str:
        return f"{self.key_prefix}:processing:{topic}:{consumer}"

    def dead_key(self, topic: str) -> str:
        return f"{self.key_prefix}:dead:{topic}"

    async def _call(self, what: str, coro):
        try:
            return await coro
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise NetworkError(f"redis {what} failed: {e}", url=self.key_prefix, original_error=e) from e
        except RedisError as e:
            raise NetworkError(f"redis {what} error: {e}", url=self.key_prefix, original_error=e) from e

    async def push(self, topic: str, body: bytes) -> Message:
        message = Message(topic=topic, body=body)
        await self._call("push", self.redis.lpush(self.queue_key(topic), message.encode()))
        return message

    async def receive(self, topic: str, consumer: str, timeout: float) -> Optional[Message]:
        processing = self.processing_key(topic, consumer)
        raw = await self._call(
            "receive",
            self.redis.blmove(self.queue_key(topic), processing, timeout, src="RIGHT", dest="LEFT"),
        )
        if raw is None:
            return None
        if isinstance(raw, str):
            raw = raw.encode("utf-8")
        try:
            message = Message.decode(raw)
        except (ValueError, KeyError, AttributeError) as e:
            logger.error(f"Unreadable entry on {topic}, moving it to {self.dead_key(topic)}: {e}")
            await self._call("dead-letter", self.redis.lpush(self.dead_key(topic), raw))
            await self._call("ack", self.redis.lrem(processing, 1, raw))
            return None
        self._held[message.id] = (processing, raw)
        return message

    async def _release(self, message: Message) -> None:
        held = self._held.pop(message.id, None)
        if held is None:
            logger.warning(f"Message {message.id} is not held by this broker")
            return
        processing, raw = held
        await self._call("release", self.redis.lrem(processing, 1, raw))

    async def ack(self, message: Message) -> None:
        await self._release(message)

    async def requeue(self, message: Message) -> bool:
        if message.attempts >= self.max_retries:
            await self._call("dead-letter", self.redis.lpush(self.dead_key(message.topic), message.encode()))
            await self._release(message)
            return False
        message.attempts += 1
        # Pushed to the tail so other pending work goes first.
        await self._call("requeue", self.redis.lpush(self.queue_key(message.topic), message.encode()))
        await self._release(message)
        return True

    async def recover_inflight(self, topic: str, consumer: str) -> int:
        processing = self.processing_key(topic, consumer)
        recovered = 0
        while True:
            raw = await self._call(
                "recover", self.redis.lmove(processing, self.queue_key(topic), src="LEFT", dest="RIGHT")
            )
            if raw is None:
                break
            recovered += 1
        if recovered:
            logger.info(f"Recovered {recovered} in-flight message(s) from {processing}")
        return recovered

    async def dead_letters(self, topic: str):
        raws = await self._call("list dead letters", self.redis.lrange(self.dead_key(topic), 0, -1))
        return [Message.decode(raw) for raw in raws]

    async def close(self) -> None:
        await self.redis.close()
