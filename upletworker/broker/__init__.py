"""Work queue, producer side and the consumer that drives handlers."""

from .base import Broker, Consumer, HandlerSpec, Message, Producer
from .memory import InMemoryBroker
from .publisher import TaskPublisher
from .redis_broker import RedisBroker
from .registry import broker_from_settings, get_broker, list_brokers, register_broker

__all__ = [
    "Broker",
    "Consumer",
    "HandlerSpec",
    "Message",
    "Producer",
    "InMemoryBroker",
    "TaskPublisher",
    "RedisBroker",
    "broker_from_settings",
    "get_broker",
    "list_brokers",
    "register_broker",
]
