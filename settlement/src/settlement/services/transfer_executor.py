"""
Asset transfer executor.

Moves ownership at the custodian for one settlement leg:

* treasury issuance: ``issue`` new units to the buyer's vault;
* every other leg: ``change_owner`` from the sender's vault to the
  receiver's (seller to settlement locker for a listing lock, settlement
  locker to buyer for a purchase, sender to receiver for a peer transfer).

The leg's idempotency key is passed to the custodian, so a retried call
cannot move units twice.  Transient errors are retried by the resilience
policy; when it gives up, or the custodian reports a permanent error, the
outcome is a ``transfer.failed`` message rather than an exception.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, List, Optional, Union

from ..config import SystemAccounts
from ..errors import FailureReason, NotFoundError, PermanentError, Stage, TransientError
from ..models import EventState, TransferOperation, TransferRecord, utcnow
from ..models_events import Message, OwnershipChanged, SettlementInstruction, TransferFailed
from ..resilience import ResiliencePolicy

logger = logging.getLogger(__name__)


class TransferExecutor:
    def __init__(
        self,
        store: Any,
        custodian: Any,
        identity: Any,
        policy: ResiliencePolicy,
        identity_policy: Optional[ResiliencePolicy] = None,
        accounts: Optional[SystemAccounts] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.custodian = custodian
        self.identity = identity
        self.policy = policy
        self.identity_policy = identity_policy
        self.accounts = accounts or SystemAccounts()
        self.clock = clock

    async def vault_of(self, account_id: str) -> str:
        vault = self.accounts.vault_for(account_id)
        if vault is not None:
            return vault
        try:
            if self.identity_policy is not None:
                profile = await self.identity_policy.call(self.identity.resolve, account_id)
            else:
                profile = await self.identity.resolve(account_id)
        except NotFoundError as exc:
            raise PermanentError(
                FailureReason.VAULT_NOT_FOUND, f"no vault for {account_id}", stage=Stage.TRANSFER
            ) from exc
        return profile.vault_id

    async def _execute(self, instruction: SettlementInstruction) -> TransferRecord:
        key = instruction.idempotency_key
        to_vault = await self.vault_of(instruction.receiver)
        from_vault: Optional[str] = None
        if instruction.sender is None:
            operation = TransferOperation.ISSUE
            receipt_id = await self.policy.call(self.custodian.issue, key, to_vault, instruction.amount)
        else:
            operation = TransferOperation.CHANGE_OWNER
            from_vault = await self.vault_of(instruction.sender)
            receipt_id = await self.policy.call(
                self.custodian.change_owner, key, from_vault, to_vault, instruction.amount
            )
        return TransferRecord(
            event_id=instruction.event_id,
            match_id=instruction.match_id,
            idempotency_key=key,
            operation=operation,
            asset_receipt_id=receipt_id,
            from_account=instruction.sender,
            to_account=instruction.receiver,
            from_vault=from_vault,
            to_vault=to_vault,
            amount=instruction.amount,
            delivered_at=self.clock(),
        )

    async def transfer(self, instruction: SettlementInstruction) -> Union[OwnershipChanged, TransferFailed]:
        existing = await self.store.get_transfer(instruction.idempotency_key)
        if existing is not None:
            logger.info("Transfer %s already done; re-announcing", existing.idempotency_key)
            return OwnershipChanged(event_id=existing.event_id, match_id=existing.match_id, record=existing)
        try:
            record = await self._execute(instruction)
        except PermanentError as exc:
            logger.error("Transfer %s failed permanently: %s", instruction.idempotency_key, exc)
            return TransferFailed(
                event_id=instruction.event_id,
                match_id=instruction.match_id,
                reason=exc.reason,
                detail=exc.detail,
                attempts=int(exc.context.get("attempts", 1)),
            )
        except TransientError as exc:
            attempts = int(exc.context.get("attempts", self.policy.max_attempts))
            logger.error(
                "Transfer %s gave up after %d attempt(s): %s", instruction.idempotency_key, attempts, exc
            )
            return TransferFailed(
                event_id=instruction.event_id,
                match_id=instruction.match_id,
                reason=FailureReason.PROVIDER_UNAVAILABLE,
                detail=exc.detail or str(exc),
                attempts=attempts,
            )
        stored = await self.store.save_transfer(record)
        await self.store.advance_state(instruction.event_id, EventState.ASSET_TRANSFERRED, self.clock())
        logger.info(
            "%s %d unit(s) %s -> %s as %s",
            stored.operation.value,
            stored.amount,
            stored.from_vault or "-",
            stored.to_vault,
            stored.asset_receipt_id,
        )
        return OwnershipChanged(event_id=stored.event_id, match_id=stored.match_id, record=stored)

    async def handle(self, message: Message) -> List[Message]:
        assert isinstance(message, SettlementInstruction)
        return [await self.transfer(message)]
