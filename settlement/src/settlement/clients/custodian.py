"""
Asset custodian adapter.

The custodian holds the asset in per-account vaults and exposes three calls:

* ``issue``: mint new units into a vault (treasury issuance);
* ``change_owner``: move units from one vault to another;
* ``reveal_ownership``: the oracle view of what a vault currently holds.

Requests are signed with HMAC-SHA256 over ``timestamp + method + path +
body`` and carry the caller's idempotency key, so a retried call returns the
original asset receipt instead of moving units twice.  Business rejections
come back as ``{"error": {"code": ...}}`` and map onto permanent failure
reasons; timeouts and 5xx are transient.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from typing import Any, Dict, Optional

from ..errors import FailureReason, PermanentError, SettlementError
from ..models import Holdings, OwnershipEntry
from .http_client import JsonHttpClient

logger = logging.getLogger(__name__)

ERROR_CODES: Dict[str, FailureReason] = {
    "VAULT_NOT_FOUND": FailureReason.VAULT_NOT_FOUND,
    "LOCKER_UNAVAILABLE": FailureReason.LOCKER_UNAVAILABLE,
    "POLICY_DENIED": FailureReason.POLICY_DENIED,
    "INSUFFICIENT_BALANCE": FailureReason.INSUFFICIENT_BALANCE,
    "CONSENT_REJECTED": FailureReason.CONSENT_REJECTED,
    "CONSENT_TIMEOUT": FailureReason.CONSENT_TIMEOUT,
    "INVALID_INPUT": FailureReason.INPUT_INVALID,
}


class CustodianClient(JsonHttpClient):
    """HTTP client for the asset custodian."""

    unavailable_reason = FailureReason.PROVIDER_UNAVAILABLE
    not_found_reason = FailureReason.VAULT_NOT_FOUND
    rejected_reason = FailureReason.INPUT_INVALID

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__("custodian", base_url, **kwargs)
        self.api_key = api_key or ""
        self.api_secret = api_secret or ""

    def _sign(self, timestamp: str, method: str, path: str, body: str) -> str:
        message = f"{timestamp}{method.upper()}{path}{body}".encode()
        return hmac.new(self.api_secret.encode(), message, hashlib.sha256).hexdigest()

    def build_headers(self, method: str, path: str, body: str) -> Dict[str, str]:
        headers = super().build_headers(method, path, body)
        timestamp = str(int(time.time()))
        headers.update(
            {
                "X-API-Key": self.api_key,
                "X-Timestamp": timestamp,
                "X-Signature": self._sign(timestamp, method, path, body),
            }
        )
        return headers

    def client_error(self, status: int, payload: Any) -> SettlementError:
        code = ""
        message = ""
        if isinstance(payload, dict):
            error = payload.get("error") or {}
            code = str(error.get("code", "")).upper()
            message = str(error.get("message", ""))
        reason = ERROR_CODES.get(code, FailureReason.INPUT_INVALID)
        return PermanentError(reason, message or f"custodian HTTP {status}")

    async def issue(self, idempotency_key: str, to_vault: str, amount: int) -> str:
        response = await self.post(
            "/v1/assets/issue",
            {"idempotencyKey": idempotency_key, "to": to_vault, "amount": amount},
        )
        return str(response["assetReceiptId"])

    async def change_owner(self, idempotency_key: str, from_vault: str, to_vault: str, amount: int) -> str:
        response = await self.post(
            "/v1/assets/change-owner",
            {
                "idempotencyKey": idempotency_key,
                "from": from_vault,
                "to": to_vault,
                "amount": amount,
            },
        )
        return str(response["assetReceiptId"])

    async def reveal_ownership(self, vault_id: str) -> Holdings:
        response = await self.get(f"/v1/vaults/{vault_id}/ownership")
        entries = tuple(
            OwnershipEntry(
                asset_receipt_id=str(item["assetReceiptId"]),
                owner_id=str(item.get("owner", vault_id)),
                amount=int(item["amount"]),
            )
            for item in (response or {}).get("entries", [])
        )
        return Holdings(owner_id=vault_id, entries=entries)
