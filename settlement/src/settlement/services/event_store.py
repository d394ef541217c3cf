"""Append-only audit log of pipeline messages in JSON Lines format.

Each call to ``log`` appends one line holding the topic and the message
payload.  File writes are performed via ``asyncio.to_thread`` to avoid
blocking the event loop.  Set ``EVENT_STORE_PATH`` to enable it; the worker
then passes the store to :func:`~settlement.services.publishers.publish_message`.
"""

from __future__ import annotations

import asyncio
import json
import os
from typing import Any, Dict, List


class EventStore:
    """Append-only JSON Lines event logger."""

    def __init__(self, path: str) -> None:
        self.path = os.path.abspath(path)
        os.makedirs(os.path.dirname(self.path), exist_ok=True)
        self._lock = asyncio.Lock()

    async def log(self, event_type: str, data: Dict[str, Any]) -> None:
        """Append an event to the log file.

        Args:
            event_type: The topic of the message.
            data: The JSON payload of the message.
        """
        line = json.dumps({"type": event_type, "data": data}, ensure_ascii=False, default=str) + "\n"
        async with self._lock:
            await asyncio.to_thread(self._append_to_file, line)

    def _append_to_file(self, line: str) -> None:
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line)

    async def read(self) -> List[Dict[str, Any]]:
        """Return all logged events (used by scripts and tests)."""
        async with self._lock:
            return await asyncio.to_thread(self._read_lines)

    def _read_lines(self) -> List[Dict[str, Any]]:
        if not os.path.exists(self.path):
            return []
        with open(self.path, "r", encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]
