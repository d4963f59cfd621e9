"""
Wiring: builds the service objects from Settings.

    DATABASE_URL set  → SqlStore     else MemoryStore
    REDIS_URL set     → RedisBroker + RedisSink   else LocalBroker
    WEBHOOK_URLS      → one WebhookSink per URL
    LogSink is always on.
"""

from dataclasses import dataclass

import redis.asyncio as aioredis

from .broker import Broker, LocalBroker, RedisBroker
from .config import Settings
from .inventory import InventoryLedger
from .notifications import LogSink, NotificationDispatcher, NotificationSink, RedisSink, WebhookSink
from .queries import QueryService
from .sql_store import SqlStore
from .state_machine import OrderStateMachine
from .store import MemoryStore, Store


@dataclass
class Services:
    settings: Settings
    store: Store
    broker: Broker
    dispatcher: NotificationDispatcher
    ledger: InventoryLedger
    machine: OrderStateMachine
    queries: QueryService
    redis: aioredis.Redis | None = None

    async def start(self) -> None:
        await self.store.initialize()
        await self.dispatcher.start()

    async def stop(self) -> None:
        await self.dispatcher.stop()
        await self.broker.close()
        await self.store.close()
        if self.redis is not None:
            await self.redis.aclose()


def build_services(
    settings: Settings,
    store: Store | None = None,
    sinks: list[NotificationSink] | None = None,
) -> Services:
    redis = aioredis.from_url(settings.redis_url, decode_responses=True) if settings.redis_url else None

    if store is None:
        store = (
            SqlStore(settings.database_url, settings.auto_create_schema)
            if settings.database_url
            else MemoryStore()
        )
    broker = RedisBroker(redis) if redis is not None else LocalBroker()

    if sinks is None:
        sinks = [LogSink()]
        if redis is not None:
            sinks.append(RedisSink(redis))
        sinks.extend(WebhookSink(url) for url in settings.webhook_urls)
    dispatcher = NotificationDispatcher(
        sinks,
        max_attempts=settings.notification_max_attempts,
        retry_delay=settings.notification_retry_delay,
    )

    ledger = InventoryLedger(store, retry_limit=settings.inventory_retry_limit)
    machine = OrderStateMachine(store, ledger, dispatcher, broker, settings)
    return Services(
        settings=settings,
        store=store,
        broker=broker,
        dispatcher=dispatcher,
        ledger=ledger,
        machine=machine,
        queries=QueryService(store, broker),
        redis=redis,
    )
