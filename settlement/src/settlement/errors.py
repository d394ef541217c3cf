"""
Error taxonomy for the settlement pipeline.

Every failure that can end an ``event_id`` carries a :class:`Stage` and a
:class:`FailureReason`.  Stages raise subclasses of :class:`SettlementError`;
the consumer loop decides what to do with them based on the class alone:

* :class:`TransientError` is retried (first by the resilience policy around
  the external call, then by bounded redelivery of the message).
* :class:`PermanentError` is never retried and becomes a ``stage.failed``
  message, which the reconciler turns into a FAILED receipt.
* :class:`UnbalancedPostingError` is a programming invariant violation.  It is
  permanent and is logged at CRITICAL.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class Stage(str, Enum):
    ADMISSION = "admission"
    VERIFICATION = "verification"
    CLASSIFICATION = "classification"
    MATCHING = "matching"
    LEDGER = "ledger"
    TRANSFER = "transfer"
    RECONCILIATION = "reconciliation"


class FailureReason(str, Enum):
    # admission
    ACCOUNT_NOT_FOUND = "account.not_found"
    ACCOUNT_INACTIVE = "account.inactive"
    REQUEST_INVALID = "request.invalid"
    # verification
    PROOF_MISSING = "proof.missing"
    PROOF_INVALID_FORMAT = "proof.invalid_format"
    PROOF_ALREADY_USED = "proof.already_used"
    INSUFFICIENT_CONFIRMATIONS = "insufficient.confirmations"
    AMOUNT_MISMATCH = "amount.mismatch"
    PAYMENT_NOT_COMPLETE = "payment.not_complete"
    INVALID_TOKEN = "invalid.token"
    TIMESTAMP_EXPIRED = "timestamp.expired"
    VERIFICATION_ERROR = "verification.error"
    # matching
    LISTING_NOT_FOUND = "listing.not_found"
    LISTING_INSUFFICIENT = "listing.insufficient"
    LISTING_EXPIRED = "listing.expired"
    AMOUNT_BELOW_MINIMUM = "amount.below_minimum"
    RESERVATION_EXPIRED = "reservation.expired"
    # ledger
    LEDGER_IMBALANCE = "ledger.imbalance"
    LEDGER_UNAVAILABLE = "ledger.unavailable"
    LEDGER_REJECTED = "ledger.rejected"
    # transfer
    VAULT_NOT_FOUND = "vault.not_found"
    LOCKER_UNAVAILABLE = "locker.unavailable"
    POLICY_DENIED = "policy.denied"
    INPUT_INVALID = "input.invalid"
    CONSENT_REJECTED = "consent.rejected"
    CONSENT_TIMEOUT = "consent.timeout"
    INSUFFICIENT_BALANCE = "insufficient.balance"
    PROVIDER_UNAVAILABLE = "provider.unavailable"
    # reconciliation
    ORACLE_VERIFICATION_FAILED = "oracle.verification_failed"
    ORACLE_UNAVAILABLE = "oracle.unavailable"
    # anything a stage did not anticipate
    INTERNAL_ERROR = "internal.error"


class SettlementError(Exception):
    """Base class for all typed pipeline failures."""

    retryable = False

    def __init__(
        self,
        reason: FailureReason,
        detail: str = "",
        *,
        stage: Optional[Stage] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(f"{reason.value}: {detail}" if detail else reason.value)
        self.reason = reason
        self.detail = detail
        self.stage = stage
        self.context = context or {}


class TransientError(SettlementError):
    """A failure expected to clear on its own (timeouts, 5xx, open circuit)."""

    retryable = True


class PermanentError(SettlementError):
    """A failure that will not change on retry."""


class CircuitOpenError(TransientError):
    """Raised without a network round-trip while a breaker is open."""

    def __init__(self, name: str) -> None:
        super().__init__(
            FailureReason.PROVIDER_UNAVAILABLE, f"circuit {name} is open", context={"breaker": name}
        )
        self.breaker = name


class BackendUnavailableError(TransientError):
    """An external backend could not be reached or answered with a 5xx."""


class NotFoundError(PermanentError):
    """An external lookup answered that the object does not exist."""


class UnbalancedPostingError(PermanentError):
    """A journal posting whose debits and credits differ for some currency."""

    def __init__(self, posting_id: str, imbalances: Dict[str, Any]) -> None:
        super().__init__(
            FailureReason.LEDGER_IMBALANCE,
            f"posting {posting_id} is unbalanced: {imbalances}",
            stage=Stage.LEDGER,
            context={"posting_id": posting_id, "imbalances": imbalances},
        )
        self.posting_id = posting_id
        self.imbalances = imbalances


__all__ = [
    "Stage",
    "FailureReason",
    "SettlementError",
    "TransientError",
    "PermanentError",
    "CircuitOpenError",
    "BackendUnavailableError",
    "NotFoundError",
    "UnbalancedPostingError",
]
