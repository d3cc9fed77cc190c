"""In-process broker backed by asyncio queues."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Dict, List, Optional, Tuple

from .base import Broker, Message

logger = logging.getLogger(__name__)


class InMemoryBroker(Broker):
    """Same delivery contract as the Redis broker, without persistence."""

    name = "memory"

    def __init__(self, max_retries: int = 3):
        super().__init__(max_retries=max_retries)
        self._queues: Dict[str, asyncio.Queue] = {}
        self.inflight: Dict[str, Tuple[str, Message]] = {}
        self.dead: Dict[str, List[Message]] = defaultdict(list)
        self.acked: List[Message] = []

    def _queue(self, topic: str) -> asyncio.Queue:
        if topic not in self._queues:
            self._queues[topic] = asyncio.Queue()
        return self._queues[topic]

    def pending(self, topic: str) -> int:
        return self._queue(topic).qsize()

    async def push(self, topic: str, body: bytes) -> Message:
        message = Message(topic=topic, body=body)
        await self._queue(topic).put(message)
        return message

    async def receive(self, topic: str, consumer: str, timeout: float) -> Optional[Message]:
        try:
            message = await asyncio.wait_for(self._queue(topic).get(), timeout)
        except asyncio.TimeoutError:
            return None
        self.inflight[message.id] = (consumer, message)
        return message

    async def ack(self, message: Message) -> None:
        self.inflight.pop(message.id, None)
        self.acked.append(message)

    async def requeue(self, message: Message) -> bool:
        self.inflight.pop(message.id, None)
        if message.attempts >= self.max_retries:
            self.dead[message.topic].append(message)
            return False
        message.attempts += 1
        await self._queue(message.topic).put(message)
        return True

    async def recover_inflight(self, topic: str, consumer: str) -> int:
        stale = [m for c, m in self.inflight.values() if c == consumer and m.topic == topic]
        for message in stale:
            del self.inflight[message.id]
            await self._queue(topic).put(message)
        return len(stale)
