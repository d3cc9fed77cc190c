"""Broker registry and lookup helpers."""

from __future__ import annotations

from typing import Dict, Type

import redis.asyncio as redis

from upletworker.config import Settings
from upletworker.core import Registry

from .base import Broker
from .memory import InMemoryBroker
from .redis_broker import RedisBroker

_BROKER_REGISTRY = Registry(kind="broker")
_BROKER_REGISTRY.register("memory", InMemoryBroker)
_BROKER_REGISTRY.register("redis", RedisBroker)


def get_broker(name: str, **kwargs) -> Broker:
    return _BROKER_REGISTRY.create(name or "redis", **kwargs)


def register_broker(name: str, broker_cls: Type[Broker]) -> None:
    _BROKER_REGISTRY.register(name, broker_cls)


def list_brokers() -> Dict[str, Type[Broker]]:
    return _BROKER_REGISTRY.items()


def broker_from_settings(settings: Settings) -> Broker:
    name = settings.broker_backend.strip().lower()
    if name == "redis":
        return get_broker(
            name,
            redis_client=redis.from_url(settings.redis_url),
            key_prefix=settings.redis_key_prefix,
            max_retries=settings.max_retries,
        )
    return get_broker(name, max_retries=settings.max_retries)
