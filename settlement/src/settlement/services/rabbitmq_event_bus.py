"""
RabbitMQ event bus for the settlement workers.

This module provides a durable event bus backed by RabbitMQ using the
``aio_pika`` library.  It implements the same interface as the in-memory
:class:`~settlement.services.event_bus.EventBus`: consumer groups declare
their topics, messages are routed on a topic exchange with the routing key
``<topic>.<partition>``, and each ``(group, partition)`` pair owns one
durable queue bound to all of the group's topics.  Messages are persistent
and acknowledged only after the consumer has handled them (prefetch 1), so
a crash mid-handling leads to redelivery rather than loss.
"""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from typing import Any, AsyncGenerator, Dict, Iterable, Optional, Set, Tuple

import aio_pika

from .event_bus import partition_for

logger = logging.getLogger(__name__)


class RabbitMQEventBus:
    """Partitioned publish/subscribe bus implemented on RabbitMQ."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 5672,
        username: str | None = None,
        password: str | None = None,
        *,
        partitions: int = 8,
        exchange_name: str = "settlement_bus",
    ) -> None:
        self.host = host
        self.port = port
        self.username = username or "guest"
        self.password = password or "guest"
        self.partitions = partitions
        self.exchange_name = exchange_name
        self._groups: Dict[str, Set[str]] = defaultdict(set)
        self._connection: aio_pika.abc.AbstractRobustConnection | None = None
        self._channel: aio_pika.abc.AbstractChannel | None = None
        self._exchange: aio_pika.abc.AbstractExchange | None = None

    async def _connect(self) -> None:
        if self._connection is None:
            url = f"amqp://{self.username}:{self.password}@{self.host}:{self.port}/"
            self._connection = await aio_pika.connect_robust(url)
            self._channel = await self._connection.channel()
            await self._channel.set_qos(prefetch_count=1)
            self._exchange = await self._channel.declare_exchange(
                self.exchange_name, aio_pika.ExchangeType.TOPIC, durable=True
            )

    def partition_for(self, key: str) -> int:
        return partition_for(key, self.partitions)

    def declare(self, group: str, topics: Iterable[str]) -> None:
        self._groups[group].update(topics)

    async def publish(self, topic: str, data: Dict[str, Any], key: Optional[str] = None) -> None:
        """Publish a JSON-serialisable message on ``topic``."""
        await self._connect()
        assert self._exchange is not None
        partition = self.partition_for(key or "")
        message = aio_pika.Message(
            json.dumps(data).encode("utf-8"),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            headers={"topic": topic},
        )
        await self._exchange.publish(message, routing_key=f"{topic}.{partition}")

    async def subscribe(self, group: str, partition: int) -> AsyncGenerator[Tuple[str, Any], None]:
        """Yield ``(topic, payload)`` from the group's queue for ``partition``."""
        await self._connect()
        assert self._channel is not None and self._exchange is not None
        queue = await self._channel.declare_queue(f"{group}.{partition}", durable=True)
        for topic in sorted(self._groups.get(group, ())):
            await queue.bind(self._exchange, routing_key=f"{topic}.{partition}")
        async with queue.iterator() as qit:
            async for message in qit:
                async with message.process(requeue=True):
                    topic = str((message.headers or {}).get("topic") or message.routing_key.rsplit(".", 1)[0])
                    try:
                        payload = json.loads(message.body.decode("utf-8"))
                    except ValueError:
                        logger.error("Dropping malformed message on %s", message.routing_key)
                        continue
                    yield topic, payload

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
