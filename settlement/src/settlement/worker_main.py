"""
Entry point for the settlement worker service.

Builds the pipeline from the environment and runs every stage in this
process until one of them exits unexpectedly.  The infrastructure is chosen
by configuration:

* ``RABBITMQ_HOST`` set: durable RabbitMQ bus, otherwise the in-memory bus;
* ``STATE_STORE_URI`` set: SQLAlchemy store (tables are created if
  missing), otherwise the in-memory store;
* ``REDIS_HOST`` set: verification results are cached in Redis;
* ``EVENT_STORE_PATH`` set: every published message is appended to a JSON
  Lines audit log.

With ``REQUESTS_FILE`` pointing at a JSON Lines file of requests, those
requests are submitted once the pipeline is up, which is how dry runs are
driven without an ingress in front of the workers.
"""

import asyncio
import json
import logging
import os
from typing import Any, Optional

from .config import Settings
from .pipeline import SettlementPipeline
from .services.event_bus import EventBus
from .services.event_store import EventStore
from .services.metrics_service import start_metrics_server
from .services.state_store import InMemorySettlementStore


def _build_bus(settings: Settings) -> Any:
    if settings.rabbitmq_host:
        from .services.rabbitmq_event_bus import RabbitMQEventBus

        return RabbitMQEventBus(
            settings.rabbitmq_host,
            settings.rabbitmq_port,
            settings.rabbitmq_user,
            settings.rabbitmq_password,
            partitions=settings.bus_partitions,
        )
    return EventBus(settings.bus_partitions)


async def _build_store(settings: Settings) -> Any:
    if settings.state_store_uri:
        from .services.db_state_store import DatabaseSettlementStore

        store = DatabaseSettlementStore.from_uri(settings.state_store_uri)
        await store.init_db()
        return store
    return InMemorySettlementStore()


def _build_cache(settings: Settings) -> Optional[Any]:
    if settings.redis_host:
        from .services.verification_cache import RedisVerificationCache

        return RedisVerificationCache(
            settings.redis_host, settings.redis_port, settings.verification.cache_ttl_seconds
        )
    return None


async def _submit_file(pipeline: SettlementPipeline, path: str) -> None:
    """Submit every request in a JSON Lines file, then wait for them to settle."""
    logger = logging.getLogger(__name__)
    with open(path, "r", encoding="utf-8") as fh:
        lines = [line for line in fh if line.strip()]
    for number, line in enumerate(lines, start=1):
        try:
            event_id = await pipeline.submit(json.loads(line))
        except ValueError as exc:
            logger.error("Skipping request on line %d of %s: %s", number, path, exc)
            continue
        logger.info("Submitted %s from %s", event_id, path)
    if isinstance(pipeline.bus, EventBus):
        await pipeline.drain()
        logger.info("All submitted requests settled")


async def main() -> None:
    """Run all pipeline stages concurrently and wait for them to finish."""
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))
    logger = logging.getLogger(__name__)

    settings = Settings.from_env()
    start_metrics_server(settings.prometheus_port)
    bus = _build_bus(settings)
    store = await _build_store(settings)
    event_store = EventStore(settings.event_store_path) if settings.event_store_path else None
    pipeline = SettlementPipeline.from_settings(
        settings, store=store, bus=bus, cache=_build_cache(settings), event_store=event_store
    )

    tasks = pipeline.start()
    requests_file = os.environ.get("REQUESTS_FILE")
    if requests_file:
        tasks.append(asyncio.create_task(_submit_file(pipeline, requests_file)))
    logger.info("Worker manager started %d pipeline tasks.", len(tasks))
    # Wait for any task to fail; if one exits with an error, cancel the others
    done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    for task in pending:
        task.cancel()
    for task in done:
        if task.cancelled():
            continue
        exc = task.exception()
        if exc:
            logger.exception("Worker task raised an exception", exc_info=exc)
    if hasattr(bus, "close"):
        await bus.close()
    if hasattr(store, "dispose"):
        await store.dispose()
    logger.info("Worker manager exiting")


def cli() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    cli()
