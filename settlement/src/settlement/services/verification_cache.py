"""
Cache of payment verification results keyed by ``(proof, chain)``.

Only definitive results are stored (valid, or invalid for a reason that will
not change on retry); backend errors never are.  Two implementations share
one interface:

* :class:`VerificationCache` keeps results in process memory with a TTL and
  an asyncio lock, so it can be shared across coroutines.
* :class:`RedisVerificationCache` stores the JSON form of the result with
  ``SETEX`` so that all workers share it.  Redis errors degrade to a miss.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from ..models import Chain, VerificationResult

logger = logging.getLogger(__name__)


def cache_key(proof: str, chain: Optional[Chain]) -> str:
    return f"verification:{chain.value if chain else '-'}:{proof}"


class VerificationCache:
    """In-memory TTL cache of verification results."""

    def __init__(self, ttl_seconds: float = 600, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[float, VerificationResult]] = {}
        self._lock = asyncio.Lock()

    async def get(self, proof: str, chain: Optional[Chain]) -> Optional[VerificationResult]:
        key = cache_key(proof, chain)
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, result = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return result

    async def put(self, proof: str, chain: Optional[Chain], result: VerificationResult) -> None:
        async with self._lock:
            self._entries[cache_key(proof, chain)] = (self._clock() + self.ttl_seconds, result)

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()


class RedisVerificationCache:
    """Verification results shared between workers through Redis."""

    def __init__(self, host: str = "localhost", port: int = 6379, ttl_seconds: int = 600, client=None) -> None:
        self.ttl_seconds = int(ttl_seconds)
        self._redis = client or aioredis.Redis(host=host, port=port, decode_responses=True)

    async def get(self, proof: str, chain: Optional[Chain]) -> Optional[VerificationResult]:
        try:
            raw = await self._redis.get(cache_key(proof, chain))
        except RedisError as exc:
            logger.warning("Verification cache read failed: %s", exc)
            return None
        if raw is None:
            return None
        return VerificationResult.model_validate_json(raw)

    async def put(self, proof: str, chain: Optional[Chain], result: VerificationResult) -> None:
        try:
            await self._redis.setex(cache_key(proof, chain), self.ttl_seconds, result.model_dump_json())
        except RedisError as exc:
            logger.warning("Verification cache write failed: %s", exc)
