"""
Payment verification backends.

Two kinds of evidence are accepted as a payment proof:

* a payment-processor id (``npmt_`` followed by 6-64 alphanumerics), looked
  up at a NOWPayments-style processor;
* an on-chain transaction hash (64 hex characters, optional ``0x``), looked
  up at a block-explorer indexer for the payment's chain (TronScan for TRON,
  Etherscan-compatible APIs for ETH and BSC).

Every backend turns its native answer into a :class:`PaymentObservation`;
judging the observation (status, amount, confirmations, age) is the
verifier's job, not the backend's.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from ..errors import BackendUnavailableError, FailureReason, NotFoundError
from ..models import Chain, PaymentObservation, PaymentStatus
from .http_client import JsonHttpClient

logger = logging.getLogger(__name__)

PROCESSOR_ID_RE = re.compile(r"^npmt_[A-Za-z0-9]{6,64}$")
TX_HASH_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")

# keccak256("Transfer(address,address,uint256)")
ERC20_TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


class ProofKind(str, Enum):
    PROCESSOR_ID = "processor_id"
    TX_HASH = "tx_hash"


def classify_proof(proof: str) -> Optional[ProofKind]:
    if PROCESSOR_ID_RE.match(proof):
        return ProofKind.PROCESSOR_ID
    if TX_HASH_RE.match(proof):
        return ProofKind.TX_HASH
    return None


def _from_epoch(value: Any, *, millis: bool = False) -> datetime:
    seconds = int(value) / 1000 if millis else int(value)
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


class PaymentBackend(JsonHttpClient):
    """Base class: one named source of payment facts."""

    not_found_reason = FailureReason.PAYMENT_NOT_COMPLETE
    unavailable_reason = FailureReason.VERIFICATION_ERROR

    def supports(self, kind: ProofKind, chain: Chain) -> bool:  # pragma: no cover - override
        raise NotImplementedError

    async def fetch(self, proof: str, chain: Chain) -> PaymentObservation:  # pragma: no cover - override
        raise NotImplementedError


class TronScanIndexer(PaymentBackend):
    """TRC-20 transfers through the TronScan public API."""

    def __init__(self, base_url: str, usdt_contract: str, *, api_key: Optional[str] = None, **kwargs: Any) -> None:
        headers = {"TRON-PRO-API-KEY": api_key} if api_key else None
        super().__init__("tronscan", base_url, headers=headers, **kwargs)
        self.usdt_contract = usdt_contract

    def supports(self, kind: ProofKind, chain: Chain) -> bool:
        return kind == ProofKind.TX_HASH and chain == Chain.TRON

    async def fetch(self, proof: str, chain: Chain) -> PaymentObservation:
        tx_hash = proof[2:] if proof.startswith("0x") else proof
        info = await self.get("/api/transaction-info", hash=tx_hash)
        if not info or not info.get("hash"):
            raise NotFoundError(FailureReason.PAYMENT_NOT_COMPLETE, f"tron tx {tx_hash} not found")
        status = PaymentStatus.PENDING
        if info.get("contractRet") == "SUCCESS":
            status = PaymentStatus.CONFIRMED
        elif info.get("contractRet"):
            status = PaymentStatus.FAILED
        transfer = self._usdt_transfer(info.get("trc20TransferInfo") or [])
        latest = await self.get("/api/system/status")
        head = int(((latest or {}).get("database") or {}).get("block", 0))
        block = int(info.get("block") or 0)
        confirmations = max(0, head - block + 1) if block else 0
        if transfer is None:
            other = (info.get("trc20TransferInfo") or [{}])[0]
            return PaymentObservation(
                provider=self.name,
                network=Chain.TRON,
                payment_id=tx_hash,
                status=status,
                currency=str(other.get("symbol", "")),
                token_contract=other.get("contract_address"),
                amount=Decimal("0"),
                confirmations=confirmations,
                timestamp=_from_epoch(info.get("timestamp", 0), millis=True),
            )
        decimals = int(transfer.get("decimals", 6))
        amount = Decimal(str(transfer.get("amount_str", "0"))).scaleb(-decimals)
        return PaymentObservation(
            provider=self.name,
            network=Chain.TRON,
            payment_id=tx_hash,
            status=status,
            currency="USDT",
            token_contract=transfer.get("contract_address"),
            amount=amount,
            confirmations=confirmations,
            timestamp=_from_epoch(info.get("timestamp", 0), millis=True),
        )

    def _usdt_transfer(self, transfers: Any) -> Optional[Dict[str, Any]]:
        for item in transfers:
            if item.get("contract_address") == self.usdt_contract:
                return item
        return None


class EvmScanIndexer(PaymentBackend):
    """ERC-20/BEP-20 transfers through an Etherscan-compatible proxy API."""

    def __init__(
        self,
        name: str,
        chain: Chain,
        base_url: str,
        usdt_contract: str,
        *,
        decimals: int = 6,
        api_key: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(name, base_url, **kwargs)
        self.chain = chain
        self.usdt_contract = usdt_contract.lower()
        self.decimals = decimals
        self.api_key = api_key

    def supports(self, kind: ProofKind, chain: Chain) -> bool:
        return kind == ProofKind.TX_HASH and chain == self.chain

    async def _proxy(self, action: str, **params: Any) -> Any:
        payload = await self.get("", module="proxy", action=action, apikey=self.api_key, **params)
        result = (payload or {}).get("result")
        if isinstance(result, str) and "rate limit" in result.lower():
            raise BackendUnavailableError(self.unavailable_reason, f"{self.name}: {result}")
        return result

    async def fetch(self, proof: str, chain: Chain) -> PaymentObservation:
        tx_hash = proof if proof.startswith("0x") else f"0x{proof}"
        receipt = await self._proxy("eth_getTransactionReceipt", txhash=tx_hash)
        if not receipt:
            raise NotFoundError(FailureReason.PAYMENT_NOT_COMPLETE, f"{self.chain.value} tx {tx_hash} not found")
        status = PaymentStatus.CONFIRMED if receipt.get("status") == "0x1" else PaymentStatus.FAILED
        block = int(receipt.get("blockNumber", "0x0"), 16)
        head = int(await self._proxy("eth_blockNumber") or "0x0", 16)
        header = await self._proxy("eth_getBlockByNumber", tag=hex(block), boolean="false") or {}
        timestamp = _from_epoch(int(header.get("timestamp", "0x0"), 16))
        amount = Decimal("0")
        currency = ""
        token_contract: Optional[str] = None
        for log in receipt.get("logs") or []:
            topics = log.get("topics") or []
            if not topics or topics[0].lower() != ERC20_TRANSFER_TOPIC:
                continue
            address = str(log.get("address", "")).lower()
            token_contract = token_contract or address
            if address == self.usdt_contract:
                token_contract = address
                currency = "USDT"
                amount += Decimal(int(log.get("data", "0x0"), 16)).scaleb(-self.decimals)
        return PaymentObservation(
            provider=self.name,
            network=self.chain,
            payment_id=tx_hash,
            status=status,
            currency=currency,
            token_contract=token_contract,
            amount=amount,
            confirmations=max(0, head - block + 1),
            timestamp=timestamp,
        )


_PROCESSOR_STATUS = {
    "finished": PaymentStatus.CONFIRMED,
    "partially_paid": PaymentStatus.CONFIRMED,
    "failed": PaymentStatus.FAILED,
    "refunded": PaymentStatus.FAILED,
    "expired": PaymentStatus.FAILED,
}

_PROCESSOR_NETWORKS = {
    "usdttrc20": Chain.TRON,
    "usdterc20": Chain.ETH,
    "usdtbsc": Chain.BSC,
}


class NowPaymentsProcessor(PaymentBackend):
    """Payment lookups at a NOWPayments-style processor."""

    def __init__(self, base_url: str, api_key: Optional[str], *, hash_lookup: bool = False, **kwargs: Any) -> None:
        headers = {"x-api-key": api_key} if api_key else None
        super().__init__("nowpayments", base_url, headers=headers, **kwargs)
        self.hash_lookup = hash_lookup

    def supports(self, kind: ProofKind, chain: Chain) -> bool:
        return kind == ProofKind.PROCESSOR_ID or (kind == ProofKind.TX_HASH and self.hash_lookup)

    async def fetch(self, proof: str, chain: Chain) -> PaymentObservation:
        if classify_proof(proof) == ProofKind.PROCESSOR_ID:
            payment = await self.get(f"/payment/{proof[len('npmt_'):]}")
        else:
            listing = await self.get("/payment/", payin_hash=proof)
            matches = (listing or {}).get("data") or []
            if not matches:
                raise NotFoundError(FailureReason.PAYMENT_NOT_COMPLETE, f"no processor payment for {proof}")
            payment = matches[0]
        pay_currency = str(payment.get("pay_currency", "")).lower()
        network = _PROCESSOR_NETWORKS.get(pay_currency, chain)
        updated = payment.get("updated_at") or payment.get("created_at")
        timestamp = datetime.fromisoformat(str(updated).replace("Z", "+00:00"))
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        return PaymentObservation(
            provider=self.name,
            network=network,
            payment_id=str(payment.get("payment_id", proof)),
            status=_PROCESSOR_STATUS.get(str(payment.get("payment_status")), PaymentStatus.PENDING),
            currency="USDT" if pay_currency.startswith("usdt") else pay_currency.upper(),
            amount=Decimal(str(payment.get("actually_paid") or "0")),
            confirmations=None,
            timestamp=timestamp,
        )
