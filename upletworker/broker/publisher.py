"""Publishes checked uplets onto their topics."""

from __future__ import annotations

import json
import logging
from typing import Mapping, Optional

from upletworker.common import UpletType
from upletworker.schema import UpletTask

from .base import Message, Producer

logger = logging.getLogger(__name__)


class TaskPublisher:
    def __init__(self, producer: Producer, topics: Optional[Mapping[UpletType, str]] = None):
        self.producer = producer
        self.topics = dict(topics or {UpletType.LEARN: "learn", UpletType.PREDICT: "predict"})

    async def publish(self, task: UpletTask) -> Message:
        """Validate ``task`` and push it; a malformed task never reaches the queue."""
        task.check()
        topic = self.topics[task.uplet_type]
        message = await self.producer.push(topic, json.dumps(task.to_dict()))
        logger.info(f"Published {task.uplet_type.value} {task.id} to {topic} as message {message.id}")
        return message
