from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

import aiohttp
import redis.asyncio as redis

from core.config import RedisConfig, WebhookLogConfig
from utils.constants import CHANGE_TYPES

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    table: str
    event_type: str
    record: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(
            {"table": self.table, "event_type": self.event_type, "record": self.record},
            ensure_ascii=False,
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> ChangeEvent:
        data = json.loads(raw)
        return cls(table=data["table"], event_type=data["event_type"], record=data.get("record") or {})


def _event_filter(event_types: Iterable[str] | None) -> frozenset[str]:
    wanted = frozenset(event_types or CHANGE_TYPES)
    unknown = wanted - set(CHANGE_TYPES)
    if unknown:
        raise ValueError(f"Unknown change event types: {', '.join(sorted(unknown))}")
    return wanted


class Subscription(Protocol):
    def __aiter__(self) -> Subscription: ...
    async def __anext__(self) -> ChangeEvent: ...
    async def close(self) -> None: ...


class NotificationBus(Protocol):
    async def publish(self, event: ChangeEvent) -> None: ...
    async def subscribe(self, table: str, event_types: Iterable[str] | None = None) -> Subscription: ...
    async def close(self) -> None: ...


class MemorySubscription:
    def __init__(self, bus: MemoryNotificationBus, table: str, event_types: frozenset[str]) -> None:
        self.table = table
        self.event_types = event_types
        self._bus = bus
        self._queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()

    def matches(self, event: ChangeEvent) -> bool:
        return event.table == self.table and event.event_type in self.event_types

    def deliver(self, event: ChangeEvent) -> None:
        self._queue.put_nowait(event)

    def pending(self) -> int:
        return self._queue.qsize()

    def __aiter__(self) -> MemorySubscription:
        return self

    async def __anext__(self) -> ChangeEvent:
        return await self._queue.get()

    async def close(self) -> None:
        self._bus.unsubscribe(self)


class MemoryNotificationBus(NotificationBus):
    """In-process fan-out; every matching subscription gets its own copy."""

    def __init__(self) -> None:
        self._subscriptions: list[MemorySubscription] = []

    async def publish(self, event: ChangeEvent) -> None:
        for subscription in list(self._subscriptions):
            if subscription.matches(event):
                subscription.deliver(event)

    async def subscribe(self, table: str, event_types: Iterable[str] | None = None) -> MemorySubscription:
        subscription = MemorySubscription(self, table, _event_filter(event_types))
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: MemorySubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    async def close(self) -> None:
        self._subscriptions.clear()


class RedisSubscription:
    def __init__(self, pubsub: Any, event_types: frozenset[str]) -> None:
        self._pubsub = pubsub
        self.event_types = event_types

    def __aiter__(self) -> RedisSubscription:
        return self

    async def __anext__(self) -> ChangeEvent:
        while True:
            message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            if not message or message.get("type") != "message":
                continue
            try:
                event = ChangeEvent.from_json(message["data"])
            except (ValueError, KeyError):
                LOGGER.warning("Dropping malformed change event on %s", message.get("channel"))
                continue
            if event.event_type in self.event_types:
                return event

    async def close(self) -> None:
        await self._pubsub.unsubscribe()
        await self._pubsub.aclose()


class RedisNotificationBus(NotificationBus):
    """Change events over Redis pub/sub, one channel per table."""

    def __init__(self, url: str, channel_prefix: str = "crm") -> None:
        self._client = redis.from_url(url, decode_responses=True)
        self._prefix = channel_prefix

    def channel(self, table: str) -> str:
        return f"{self._prefix}:changes:{table}"

    async def publish(self, event: ChangeEvent) -> None:
        await self._client.publish(self.channel(event.table), event.to_json())

    async def subscribe(self, table: str, event_types: Iterable[str] | None = None) -> RedisSubscription:
        wanted = _event_filter(event_types)
        pubsub = self._client.pubsub()
        await pubsub.subscribe(self.channel(table))
        return RedisSubscription(pubsub, wanted)

    async def close(self) -> None:
        await self._client.aclose()


async def build_notification_bus(config: RedisConfig) -> NotificationBus:
    if config.enabled:
        return RedisNotificationBus(config.url, channel_prefix=config.channel_prefix)
    return MemoryNotificationBus()


class WebhookNotifier:
    """Forwards change events to an HTTP webhook as a compact log line."""

    def __init__(self, config: WebhookLogConfig) -> None:
        self.config = config

    @property
    def enabled(self) -> bool:
        return self.config.enabled and bool(self.config.url)

    async def send(self, event: ChangeEvent) -> None:
        if not self.enabled:
            return
        try:
            async with aiohttp.ClientSession() as session:
                await session.post(
                    self.config.url,
                    json={
                        "table": event.table,
                        "event_type": event.event_type,
                        "record": event.record,
                        "sent_at": datetime.now(UTC).isoformat(),
                    },
                    timeout=aiohttp.ClientTimeout(total=10),
                )
        except Exception:
            LOGGER.exception("Failed to send change event to webhook")


class ChangeNotifier:
    """What services call after a write. Never raises."""

    def __init__(self, bus: NotificationBus, webhook: WebhookNotifier | None = None) -> None:
        self.bus = bus
        self.webhook = webhook

    async def notify(self, table: str, event_type: str, record: dict[str, Any]) -> None:
        event = ChangeEvent(table=table, event_type=event_type, record=record)
        try:
            await self.bus.publish(event)
        except Exception:
            LOGGER.exception("Failed to publish change event. table=%s type=%s", table, event_type)
        if self.webhook is not None:
            await self.webhook.send(event)
