"""Offline doubles of the external systems used across the test suite."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from settlement.clients.paper_custodian import PaperCustodianClient
from settlement.clients.paper_ledger import PaperLedgerClient
from settlement.clients.payment_backends import ProofKind
from settlement.errors import BackendUnavailableError, FailureReason, NotFoundError
from settlement.models import Chain, Holdings, JournalPosting, PaymentObservation, PaymentStatus

TX_HASH = "ab" * 32
OTHER_TX_HASH = "cd" * 32
PROCESSOR_ID = "npmt_5077263251"

USDT_CONTRACTS = {
    Chain.TRON: "TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t",
    Chain.ETH: "0xdac17f958d2ee523a2206206994597c13d831ec7",
    Chain.BSC: "0x55d398326f99059ff775485246999027b3197955",
}


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


async def no_sleep(_delay: float) -> None:
    return None


def observation(
    amount: str = "1010.00",
    *,
    network: Chain = Chain.BSC,
    confirmations: Optional[int] = 15,
    status: PaymentStatus = PaymentStatus.CONFIRMED,
    currency: str = "USDT",
    provider: str = "bscscan",
    timestamp: Optional[datetime] = None,
    payment_id: str = TX_HASH,
    token_contract: Optional[str] = None,
) -> PaymentObservation:
    return PaymentObservation(
        provider=provider,
        network=network,
        payment_id=payment_id,
        status=status,
        token_contract=token_contract or USDT_CONTRACTS[network],
        currency=currency,
        amount=Decimal(amount),
        confirmations=confirmations,
        timestamp=timestamp or datetime(2026, 10, 19, 11, 50, tzinfo=timezone.utc),
    )


class FakeBackend:
    """Payment backend answering from a dict of observations.

    ``failures`` are raised, in order, before any lookup is answered;
    ``down=True`` makes every call fail as unreachable.
    """

    def __init__(
        self,
        name: str,
        observations: Optional[Dict[str, PaymentObservation]] = None,
        *,
        kinds: Iterable[ProofKind] = (ProofKind.TX_HASH,),
        chains: Iterable[Chain] = tuple(Chain),
        failures: Optional[List[Exception]] = None,
        down: bool = False,
    ) -> None:
        self.name = name
        self.observations = dict(observations or {})
        self.kinds = tuple(kinds)
        self.chains = tuple(chains)
        self.failures = list(failures or [])
        self.down = down
        self.calls: List[str] = []

    def supports(self, kind: ProofKind, chain: Chain) -> bool:
        return kind in self.kinds and chain in self.chains

    async def fetch(self, proof: str, chain: Chain) -> PaymentObservation:
        self.calls.append(proof)
        if self.down:
            raise BackendUnavailableError(FailureReason.VERIFICATION_ERROR, f"{self.name} timed out")
        if self.failures:
            raise self.failures.pop(0)
        if proof not in self.observations:
            raise NotFoundError(FailureReason.PAYMENT_NOT_COMPLETE, f"{self.name} does not know {proof}")
        return self.observations[proof]


class FlakyCustodian(PaperCustodianClient):
    """Paper custodian whose movements time out ``failures`` times first."""

    def __init__(self, failures: int = 0) -> None:
        super().__init__()
        self.failures = failures
        self.attempts = 0

    def _maybe_fail(self) -> None:
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise BackendUnavailableError(FailureReason.PROVIDER_UNAVAILABLE, "custodian timed out")

    async def issue(self, idempotency_key: str, to_vault: str, amount: int) -> str:
        self._maybe_fail()
        return await super().issue(idempotency_key, to_vault, amount)

    async def change_owner(self, idempotency_key: str, from_vault: str, to_vault: str, amount: int) -> str:
        self._maybe_fail()
        return await super().change_owner(idempotency_key, from_vault, to_vault, amount)


class BlindOracleCustodian(PaperCustodianClient):
    """Paper custodian whose ownership oracle never shows any holdings."""

    async def reveal_ownership(self, vault_id: str) -> Holdings:
        return Holdings(owner_id=vault_id, entries=())


class FlakyLedger(PaperLedgerClient):
    """Paper accounting system that is unavailable ``failures`` times first."""

    def __init__(self, failures: int = 0) -> None:
        super().__init__()
        self.failures = failures

    async def post_posting(self, posting: JournalPosting) -> str:
        if self.failures > 0:
            self.failures -= 1
            raise BackendUnavailableError(FailureReason.LEDGER_UNAVAILABLE, "ledger HTTP 503")
        return await super().post_posting(posting)


class FinalPostingOutageLedger(PaperLedgerClient):
    """Paper accounting system that never takes the settlement of a payable."""

    async def post_posting(self, posting: JournalPosting) -> str:
        if posting.posting_id.endswith(":final"):
            raise BackendUnavailableError(FailureReason.LEDGER_UNAVAILABLE, "ledger HTTP 503")
        return await super().post_posting(posting)
