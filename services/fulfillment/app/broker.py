"""
Fulfillment Service — Live order updates

After every committed mutation the state machine publishes the new order
document; QueryService.subscribe() listens here for the tracking view.

    LocalBroker   in-process asyncio queues (single instance, tests)
    RedisBroker   Redis Pub/Sub channel order_updates:{order_id}

Pub/Sub is fire-and-forget: a listener that misses a message notices the
version gap and re-reads the store, so nothing here needs to be reliable.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator
from uuid import UUID

import redis.asyncio as aioredis

from .schemas import Order

logger = logging.getLogger(__name__)


def channel_name(order_id: UUID) -> str:
    return f"order_updates:{order_id}"


class Broker(ABC):
    @abstractmethod
    async def publish(self, order: Order) -> None: ...

    @abstractmethod
    def listen(self, order_id: UUID) -> "AsyncIterator[AsyncIterator[Order]]":
        """
        Async context manager yielding an async iterator of published
        documents. Registration happens on enter, so nothing published after
        enter is missed.
        """

    async def close(self) -> None:
        pass


class LocalBroker(Broker):
    def __init__(self) -> None:
        self._listeners: dict[UUID, set[asyncio.Queue]] = defaultdict(set)

    async def publish(self, order: Order) -> None:
        for queue in self._listeners.get(order.id, ()):
            queue.put_nowait(order.model_copy(deep=True))

    @asynccontextmanager
    async def listen(self, order_id: UUID) -> AsyncIterator[AsyncIterator[Order]]:
        queue: asyncio.Queue = asyncio.Queue()
        self._listeners[order_id].add(queue)

        async def updates() -> AsyncIterator[Order]:
            while True:
                yield await queue.get()

        try:
            yield updates()
        finally:
            listeners = self._listeners.get(order_id)
            if listeners is not None:
                listeners.discard(queue)
                if not listeners:
                    del self._listeners[order_id]


class RedisBroker(Broker):
    def __init__(self, redis: aioredis.Redis) -> None:
        self.redis = redis

    async def publish(self, order: Order) -> None:
        await self.redis.publish(channel_name(order.id), order.model_dump_json())

    @asynccontextmanager
    async def listen(self, order_id: UUID) -> AsyncIterator[AsyncIterator[Order]]:
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(channel_name(order_id))
        logger.info("Subscribed to %s", channel_name(order_id))

        async def updates() -> AsyncIterator[Order]:
            while True:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message and message["type"] == "message":
                    try:
                        yield Order.model_validate_json(message["data"])
                    except ValueError:
                        logger.exception("Malformed update on %s", channel_name(order_id))
                else:
                    await asyncio.sleep(0.1)

        try:
            yield updates()
        finally:
            await pubsub.unsubscribe(channel_name(order_id))
            await pubsub.aclose()
