"""
Admission stage.

Resolves both parties of a request through the identity resolver, rejects
accounts that do not exist or are not active before anything else happens,
and snapshots their roles into the request.  The stored request is
put-if-absent on ``event_id``: a redelivered or resubmitted request always
continues with the snapshot taken the first time.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, List

from ..errors import FailureReason, NotFoundError, PermanentError, Stage
from ..models import AccountProfile, EventState, Request, utcnow
from ..models_events import Message, OrderAdmitted, RequestAdmitted
from ..resilience import ResiliencePolicy

logger = logging.getLogger(__name__)

_SNAPSHOT_FIELDS = {"from_role", "to_role", "received_at"}


class AdmissionService:
    def __init__(self, store: Any, identity: Any, policy: ResiliencePolicy, clock: Callable = utcnow) -> None:
        self.store = store
        self.identity = identity
        self.policy = policy
        self.clock = clock

    async def _resolve(self, account_id: str) -> AccountProfile:
        try:
            profile = await self.policy.call(self.identity.resolve, account_id)
        except NotFoundError as exc:
            raise PermanentError(
                FailureReason.ACCOUNT_NOT_FOUND, exc.detail or account_id, stage=Stage.ADMISSION
            ) from exc
        if not profile.active:
            raise PermanentError(
                FailureReason.ACCOUNT_INACTIVE,
                f"{account_id} is {profile.status.value}",
                stage=Stage.ADMISSION,
            )
        return profile

    async def admit(self, request: Request) -> OrderAdmitted:
        existing = await self.store.get_request(request.event_id)
        if existing is not None:
            if existing.model_dump(exclude=_SNAPSHOT_FIELDS) != request.model_dump(exclude=_SNAPSHOT_FIELDS):
                logger.warning("Event %s resubmitted with a different body; keeping the original", request.event_id)
            if existing.from_role is not None:
                return OrderAdmitted(event_id=existing.event_id, request=existing)
            request = existing
        await self.store.advance_state(request.event_id, EventState.RECEIVED, self.clock())
        try:
            sender = await self._resolve(request.from_account)
            receiver = await self._resolve(request.to_account)
        except PermanentError:
            await self.store.save_request(request)
            raise
        snapshot = request.model_copy(update={"from_role": sender.role, "to_role": receiver.role})
        stored = await self.store.save_request(snapshot)
        logger.info(
            "Admitted %s: %s (%s) -> %s (%s), amount=%d",
            stored.event_id,
            stored.from_account,
            sender.role.value,
            stored.to_account,
            receiver.role.value,
            stored.amount,
        )
        return OrderAdmitted(event_id=stored.event_id, request=stored)

    async def handle(self, message: Message) -> List[Message]:
        assert isinstance(message, RequestAdmitted)
        if await self.store.get_receipt(message.event_id) is not None:
            logger.info("Event %s already has a receipt; ignoring resubmission", message.event_id)
            return []
        return [await self.admit(message.request)]
