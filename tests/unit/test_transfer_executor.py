"""Transfer executor tests with a paper custodian that can time out."""

from __future__ import annotations

from decimal import Decimal

import pytest  # type: ignore

from settlement.clients.identity import StaticIdentityResolver
from settlement.config import SystemAccounts
from settlement.errors import FailureReason
from settlement.models import EventState, Intent, TransferOperation
from settlement.models_events import OwnershipChanged, SettlementInstruction, TransferFailed
from settlement.resilience import ResiliencePolicy
from settlement.services.transfer_executor import TransferExecutor

from tests.helpers.fakes import FlakyCustodian, no_sleep


def _leg(sender, receiver="usr-alice", amount=1000, event_id="evt-1") -> SettlementInstruction:
    return SettlementInstruction(
        event_id=event_id,
        match_id="m-1",
        intent=Intent.TREASURY_ISSUANCE if sender is None else Intent.PEER_TRANSFER,
        sender=sender,
        receiver=receiver,
        buyer_id=receiver,
        seller_id=sender or "usr-treasury-vault-system",
        amount=amount,
        paid=Decimal("0"),
    )


def _executor(store, custodian, settings, clock, *, strict=False) -> TransferExecutor:
    accounts = SystemAccounts()
    return TransferExecutor(
        store,
        custodian,
        StaticIdentityResolver(accounts, strict=strict),
        ResiliencePolicy("custodian", settings.retry, sleep=no_sleep),
        accounts=accounts,
        clock=clock,
    )


@pytest.mark.asyncio  # type: ignore
async def test_two_timeouts_then_success(store, settings, clock) -> None:
    custodian = FlakyCustodian(failures=2)
    executor = _executor(store, custodian, settings, clock)
    outcome = await executor.transfer(_leg(None))
    assert isinstance(outcome, OwnershipChanged)
    assert custodian.attempts == 3
    assert list(custodian.by_key) == ["evt-1:m-1"]
    assert custodian.balance("vault-usr-alice") == 1000
    assert outcome.record.operation == TransferOperation.ISSUE
    assert await store.get_state("evt-1") == EventState.ASSET_TRANSFERRED


@pytest.mark.asyncio  # type: ignore
async def test_exhausted_retries_become_transfer_failed(store, settings, clock) -> None:
    custodian = FlakyCustodian(failures=10)
    outcome = await _executor(store, custodian, settings, clock).transfer(_leg(None))
    assert isinstance(outcome, TransferFailed)
    assert outcome.reason == FailureReason.PROVIDER_UNAVAILABLE
    assert outcome.attempts == settings.retry.max_attempts
    assert custodian.by_key == {}
    assert await store.transfers_for_event("evt-1") == []


@pytest.mark.asyncio  # type: ignore
async def test_insufficient_balance_is_permanent(store, settings, clock) -> None:
    custodian = FlakyCustodian()
    custodian.seed("vault-usr-bob", 5)
    outcome = await _executor(store, custodian, settings, clock).transfer(_leg("usr-bob", amount=7))
    assert isinstance(outcome, TransferFailed)
    assert outcome.reason == FailureReason.INSUFFICIENT_BALANCE
    assert custodian.attempts == 1


@pytest.mark.asyncio  # type: ignore
async def test_unknown_account_has_no_vault(store, settings, clock) -> None:
    custodian = FlakyCustodian()
    executor = _executor(store, custodian, settings, clock, strict=True)
    outcome = await executor.transfer(_leg("usr-ghost", amount=1))
    assert isinstance(outcome, TransferFailed)
    assert outcome.reason == FailureReason.VAULT_NOT_FOUND
    assert custodian.attempts == 0


@pytest.mark.asyncio  # type: ignore
async def test_change_owner_and_redelivery(store, settings, clock) -> None:
    custodian = FlakyCustodian()
    custodian.seed("vault-usr-bob", 10)
    executor = _executor(store, custodian, settings, clock)
    first = await executor.transfer(_leg("usr-bob", receiver="usr-carol", amount=7))
    second = await executor.transfer(_leg("usr-bob", receiver="usr-carol", amount=7))
    assert isinstance(first, OwnershipChanged) and isinstance(second, OwnershipChanged)
    assert first.record == second.record
    assert first.record.from_vault == "vault-usr-bob"
    assert first.record.to_vault == "vault-usr-carol"
    assert custodian.attempts == 1
    assert custodian.balance("vault-usr-bob") == 3
    assert custodian.balance("vault-usr-carol") == 7
