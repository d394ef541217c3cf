"""
Paper custodian for dry-run mode.

Keeps vault holdings in memory as a set of asset receipts.  ``issue`` mints
a new receipt, ``change_owner`` consumes the sender's receipts oldest first
and mints one receipt for the receiver, and ``reveal_ownership`` lists the
receipts a vault still holds.  Calls are idempotent on the idempotency key.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Dict, List

from ..errors import FailureReason, PermanentError
from ..models import Holdings, OwnershipEntry


class PaperCustodianClient:
    def __init__(self, latency: float = 0.0) -> None:
        self.latency = latency
        self.entries: Dict[str, OwnershipEntry] = {}
        self.by_key: Dict[str, str] = {}
        self.calls: List[str] = []

    def balance(self, vault_id: str) -> int:
        return sum(e.amount for e in self.entries.values() if e.owner_id == vault_id)

    def _mint(self, vault_id: str, amount: int) -> str:
        receipt_id = f"ar-{uuid.uuid4().hex[:16]}"
        self.entries[receipt_id] = OwnershipEntry(asset_receipt_id=receipt_id, owner_id=vault_id, amount=amount)
        return receipt_id

    def seed(self, vault_id: str, amount: int) -> str:
        """Give ``vault_id`` units without an idempotency key (test setup)."""
        return self._mint(vault_id, amount)

    async def issue(self, idempotency_key: str, to_vault: str, amount: int) -> str:
        if self.latency:
            await asyncio.sleep(self.latency)
        self.calls.append(f"issue:{idempotency_key}")
        if idempotency_key not in self.by_key:
            if amount <= 0:
                raise PermanentError(FailureReason.INPUT_INVALID, "amount must be positive")
            self.by_key[idempotency_key] = self._mint(to_vault, amount)
        return self.by_key[idempotency_key]

    async def change_owner(self, idempotency_key: str, from_vault: str, to_vault: str, amount: int) -> str:
        if self.latency:
            await asyncio.sleep(self.latency)
        self.calls.append(f"change_owner:{idempotency_key}")
        if idempotency_key in self.by_key:
            return self.by_key[idempotency_key]
        if amount <= 0 or from_vault == to_vault:
            raise PermanentError(FailureReason.INPUT_INVALID, "invalid change-owner request")
        if self.balance(from_vault) < amount:
            raise PermanentError(
                FailureReason.INSUFFICIENT_BALANCE,
                f"{from_vault} holds {self.balance(from_vault)}, needs {amount}",
            )
        remaining = amount
        for receipt_id, entry in list(self.entries.items()):
            if remaining == 0:
                break
            if entry.owner_id != from_vault:
                continue
            take = min(entry.amount, remaining)
            remaining -= take
            if take == entry.amount:
                del self.entries[receipt_id]
            else:
                self.entries[receipt_id] = entry.model_copy(update={"amount": entry.amount - take})
        self.by_key[idempotency_key] = self._mint(to_vault, amount)
        return self.by_key[idempotency_key]

    async def reveal_ownership(self, vault_id: str) -> Holdings:
        if self.latency:
            await asyncio.sleep(self.latency)
        entries = tuple(e for e in self.entries.values() if e.owner_id == vault_id)
        return Holdings(owner_id=vault_id, entries=entries)
