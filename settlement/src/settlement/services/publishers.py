"""Message publishing helpers shared by all stages.

Every stage emits its output through :func:`publish_message` so that all
callers produce the same payload shape and partition key regardless of the
bus in use:

1. The typed message is serialised with :meth:`Message.to_payload`.
2. It is published on ``message.topic`` keyed by ``message.partition_key``
   (the ``event_id``), which keeps one event on one partition.
3. When an :class:`~settlement.services.event_store.EventStore` is given,
   the message is also appended to the audit log.  Audit failures are logged
   and never block the pipeline.

The bus must implement ``publish(topic, data, key)``.  A missing bus raises
``RuntimeError`` instead of silently dropping the message.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from ..models_events import Message

logger = logging.getLogger(__name__)


async def publish_message(event_bus: Any, message: Message, event_store: Optional[Any] = None) -> Message:
    """Publish a typed pipeline message and return it.

    Raises
    ------
    RuntimeError
        If ``event_bus`` is ``None`` or does not provide ``publish``.
    """
    if event_bus is None or not hasattr(event_bus, "publish"):
        raise RuntimeError(f"event_bus must implement publish() for {message.topic}")
    payload = message.to_payload()
    await event_bus.publish(message.topic, payload, key=message.partition_key)
    logger.debug("Published %s for %s", message.topic, message.event_id)
    if event_store is not None:
        try:
            await event_store.log(message.topic, payload)
        except OSError as exc:
            logger.warning("Audit log write failed for %s/%s: %s", message.topic, message.event_id, exc)
    return message
