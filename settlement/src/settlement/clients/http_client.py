"""
Shared aiohttp plumbing for the external adapters.

:class:`JsonHttpClient` owns one ``aiohttp.ClientSession`` per adapter and
translates transport outcomes into the pipeline's error taxonomy so that
the resilience policy can tell what is worth retrying:

* connection errors, timeouts, HTTP 429 and 5xx -> :class:`BackendUnavailableError`
* HTTP 404 -> :class:`NotFoundError`
* any other 4xx -> :class:`PermanentError` (via :meth:`JsonHttpClient.client_error`)

Subclasses choose the failure reasons reported for their backend.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import aiohttp

from ..errors import (
    BackendUnavailableError,
    FailureReason,
    NotFoundError,
    PermanentError,
    SettlementError,
)

logger = logging.getLogger(__name__)


class JsonHttpClient:
    """Minimal JSON-over-HTTP client with error mapping."""

    unavailable_reason = FailureReason.PROVIDER_UNAVAILABLE
    not_found_reason = FailureReason.PAYMENT_NOT_COMPLETE
    rejected_reason = FailureReason.INPUT_INVALID

    def __init__(
        self,
        name: str,
        base_url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.default_headers = dict(headers or {})
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

    def build_headers(self, method: str, path: str, body: str) -> Dict[str, str]:
        """Per-request headers; subclasses add signatures here."""
        headers = {"Accept": "application/json", **self.default_headers}
        if body:
            headers["Content-Type"] = "application/json"
        return headers

    def client_error(self, status: int, payload: Any) -> SettlementError:
        """Map a non-404 4xx answer to a typed error."""
        return PermanentError(self.rejected_reason, f"{self.name} HTTP {status}: {payload}")

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        data = json.dumps(body, separators=(",", ":"), default=str) if body is not None else ""
        headers = self.build_headers(method, path, data)
        session = await self._get_session()
        try:
            async with session.request(
                method, url, params=params, data=data or None, headers=headers
            ) as resp:
                text = await resp.text()
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("%s %s %s failed: %s", self.name, method, path, exc)
            raise BackendUnavailableError(
                self.unavailable_reason, f"{self.name} unreachable: {exc!r}"
            ) from exc
        try:
            payload: Any = json.loads(text) if text else None
        except ValueError:
            payload = text
        if status == 429 or status >= 500:
            raise BackendUnavailableError(self.unavailable_reason, f"{self.name} HTTP {status}")
        if status == 404:
            raise NotFoundError(self.not_found_reason, f"{self.name}: {path} not found")
        if status >= 400:
            raise self.client_error(status, payload)
        return payload

    async def get(self, path: str, **params: Any) -> Any:
        query = {key: value for key, value in params.items() if value is not None}
        return await self.request("GET", path, params=query or None)

    async def post(self, path: str, body: Dict[str, Any]) -> Any:
        return await self.request("POST", path, body=body)
