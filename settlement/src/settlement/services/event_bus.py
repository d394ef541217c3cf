"""
In-memory partitioned event bus.

Stages subscribe as consumer *groups*.  A group declares the topics it
consumes; every message published on one of those topics is delivered to
each declaring group exactly once, on the partition chosen by a stable hash
of the message key (the ``event_id``).  Each ``(group, partition)`` pair has
one asyncio queue, so a single worker per partition sees all messages for
one event in publish order while other partitions run in parallel.

A message counts as handled when its consumer asks for the next one, which
mirrors the manual acknowledgement of the RabbitMQ bus.  :meth:`wait_idle`
resolves once every delivered message has been handled, which the tests and
the dry-run driver use to wait for the pipeline to settle.
"""

from __future__ import annotations

import asyncio
import logging
import zlib
from collections import defaultdict
from typing import Any, AsyncIterator, Dict, Iterable, Optional, Set, Tuple

logger = logging.getLogger(__name__)


def partition_for(key: str, partitions: int) -> int:
    """Stable partition of ``key`` (same result in every process)."""
    return zlib.crc32(key.encode("utf-8")) % partitions


class EventBus:
    """Topic fan-out to consumer groups over per-partition asyncio queues."""

    def __init__(self, partitions: int = 8) -> None:
        if partitions < 1:
            raise ValueError("partitions must be >= 1")
        self.partitions = partitions
        self._subscribers: Dict[str, Set[str]] = defaultdict(set)
        self._queues: Dict[Tuple[str, int], asyncio.Queue] = {}
        self._pending = 0
        self._idle = asyncio.Event()
        self._idle.set()

    def partition_for(self, key: str) -> int:
        return partition_for(key, self.partitions)

    def declare(self, group: str, topics: Iterable[str]) -> None:
        """Register ``group`` as a consumer of ``topics``."""
        for topic in topics:
            self._subscribers[topic].add(group)

    def groups_for(self, topic: str) -> Set[str]:
        return set(self._subscribers.get(topic, ()))

    def _queue(self, group: str, partition: int) -> asyncio.Queue:
        key = (group, partition)
        if key not in self._queues:
            self._queues[key] = asyncio.Queue()
        return self._queues[key]

    async def publish(self, topic: str, data: Any, key: Optional[str] = None) -> None:
        """Deliver ``data`` to every group consuming ``topic``."""
        groups = self._subscribers.get(topic)
        if not groups:
            logger.debug("No consumer for %s; dropping message", topic)
            return
        partition = self.partition_for(key or "")
        for group in sorted(groups):
            self._pending += 1
            self._idle.clear()
            await self._queue(group, partition).put((topic, data))

    async def subscribe(self, group: str, partition: int) -> AsyncIterator[Tuple[str, Any]]:
        """Yield ``(topic, data)`` for one partition of ``group`` as they arrive."""
        queue = self._queue(group, partition)
        while True:
            item = await queue.get()
            try:
                yield item
            finally:
                queue.task_done()
                self._pending -= 1
                if self._pending == 0:
                    self._idle.set()

    async def wait_idle(self) -> None:
        await self._idle.wait()

    @property
    def pending(self) -> int:
        return self._pending
