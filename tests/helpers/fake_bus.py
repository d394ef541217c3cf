"""Fake in-memory event bus for testing.

This helper provides a simple event bus implementation that records
published messages.  Each call to ``publish(topic, data, key)`` appends a
tuple ``(topic, data)`` to the ``events`` list and remembers the key.
Tests inspect the events afterwards to assert on topics and payloads.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Tuple


class FakeBus:
    """A minimal event bus used for capturing messages in tests."""

    partitions = 1

    def __init__(self) -> None:
        self.events: List[Tuple[str, Any]] = []
        self.keys: List[Optional[str]] = []
        self.groups: Dict[str, Tuple[str, ...]] = {}

    def declare(self, group: str, topics: Iterable[str]) -> None:
        self.groups[group] = tuple(topics)

    async def publish(self, topic: str, data: Any, key: Optional[str] = None) -> None:
        """Record a message.

        Parameters
        ----------
        topic : str
            The topic the message was published on (e.g. ``"ledger.posted"``).
        data : Any
            The message payload, the JSON form of a pipeline message.
        key : str, optional
            The partition key, always the ``event_id`` for pipeline messages.
        """
        self.events.append((topic, data))
        self.keys.append(key)

    def topics(self) -> List[str]:
        return [topic for topic, _ in self.events]

    def of(self, topic: str) -> List[Any]:
        return [data for t, data in self.events if t == topic]
