"""
Payment verification.

:class:`PaymentVerifier` answers one question: does this proof show a final
USDT payment of at least the expected amount, deep enough in its chain and
recent enough?  It classifies the proof format, routes it to the backends
that can look it up (chain indexers before the payment processor), and
falls through to the next backend when one is unreachable or its breaker is
open.  The caller only learns which provider answered.

Checks, in the order their failure is reported:

1. status is final                  -> ``payment.not_complete``
2. currency (and token contract)    -> ``invalid.token``
3. amount within tolerance          -> ``amount.mismatch``
4. confirmations >= chain minimum   -> ``insufficient.confirmations``
5. payment inside freshness window  -> ``timestamp.expired``

Evaluated results are cached by ``(proof, chain)``; lookups that found
nothing or failed are not.

:class:`VerificationStage` is the pipeline stage around it: it quotes what
each order should have paid, enforces that a proof is used by one event only
and confirms reservations for which a proof arrives after matching.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..classifier import Classifier
from ..clients.payment_backends import PaymentBackend, classify_proof
from ..config import Settings, VerificationSettings
from ..errors import FailureReason, NotFoundError, PermanentError, Stage, TransientError
from ..fees import FeeSchedule
from ..models import (
    Chain,
    EventState,
    Intent,
    PaymentObservation,
    PaymentStatus,
    Request,
    VerificationChecks,
    VerificationResult,
    utcnow,
)
from ..models_events import MatchProofSubmission, Message, OrderAdmitted, OrderValidated
from ..resilience import ResiliencePolicy

logger = logging.getLogger(__name__)

CLOCK_SKEW = timedelta(seconds=60)


class PaymentVerifier:
    def __init__(
        self,
        backends: Sequence[PaymentBackend],
        policies: Dict[str, ResiliencePolicy],
        settings: Optional[VerificationSettings] = None,
        cache: Optional[Any] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.backends = list(backends)
        self.policies = policies
        self.settings = settings or VerificationSettings()
        self.cache = cache
        self.clock = clock

    def _invalid(self, reason: FailureReason, proof: Optional[str], **fields: Any) -> VerificationResult:
        return VerificationResult(valid=False, proof=proof, failure_reason=reason, verified_at=self.clock(), **fields)

    async def verify(
        self,
        proof: Optional[str],
        chain: Optional[Chain] = None,
        expected: Optional[Decimal] = None,
    ) -> VerificationResult:
        """Verify ``proof``; raises :class:`TransientError` if no backend could answer."""
        if not proof:
            return self._invalid(FailureReason.PROOF_MISSING, proof)
        kind = classify_proof(proof)
        if kind is None:
            return self._invalid(FailureReason.PROOF_INVALID_FORMAT, proof)
        chain = chain or self.settings.default_chain
        if self.cache is not None:
            cached = await self.cache.get(proof, chain)
            if cached is not None:
                logger.debug("Verification cache hit for %s", proof)
                return cached

        candidates = [b for b in self.backends if b.supports(kind, chain)]
        if not candidates:
            raise TransientError(
                FailureReason.VERIFICATION_ERROR,
                f"no backend for {kind.value} on {chain.value}",
                stage=Stage.VERIFICATION,
            )
        not_found: Optional[str] = None
        errors: List[str] = []
        for backend in candidates:
            policy = self.policies.get(backend.name)
            try:
                if policy is not None:
                    observation = await policy.call(backend.fetch, proof, chain)
                else:
                    observation = await backend.fetch(proof, chain)
            except NotFoundError:
                logger.info("%s does not know %s; trying next backend", backend.name, proof)
                not_found = backend.name
                continue
            except TransientError as exc:
                logger.warning("%s unavailable for %s: %s; falling through", backend.name, proof, exc)
                errors.append(f"{backend.name}: {exc}")
                continue
            result = self.evaluate(proof, observation, expected)
            if self.cache is not None:
                await self.cache.put(proof, chain, result)
            logger.info(
                "Verified %s via %s: valid=%s reason=%s",
                proof,
                observation.provider,
                result.valid,
                result.failure_reason.value if result.failure_reason else "-",
            )
            return result

        if not_found is not None and not errors:
            return self._invalid(FailureReason.PAYMENT_NOT_COMPLETE, proof, provider=not_found, network=chain)
        raise TransientError(
            FailureReason.VERIFICATION_ERROR,
            "; ".join(errors) or "no backend answered",
            stage=Stage.VERIFICATION,
        )

    def evaluate(self, proof: str, observation: PaymentObservation, expected: Optional[Decimal]) -> VerificationResult:
        """Judge one backend observation against the configured thresholds."""
        settings = self.settings
        now = self.clock()
        minimum = settings.confirmations_for(observation.network)
        contract = settings.usdt_contracts.get(observation.network)

        status_ok = observation.status == PaymentStatus.CONFIRMED
        currency_ok = observation.currency.upper() == settings.currency and (
            observation.token_contract is None
            or contract is None
            or observation.token_contract.lower() == contract.lower()
        )
        if expected is None:
            amount_ok = observation.amount > 0
        else:
            floor = expected * (Decimal(100) - settings.amount_tolerance_pct) / Decimal(100)
            amount_ok = observation.amount >= floor
        if observation.confirmations is None:
            confirmations_ok = status_ok
            depth = minimum if status_ok else 0
        else:
            confirmations_ok = observation.confirmations >= minimum
            depth = observation.confirmations
        age = now - observation.timestamp
        timestamp_ok = -CLOCK_SKEW <= age <= timedelta(seconds=settings.max_payment_age_seconds)

        checks = VerificationChecks(
            status=status_ok,
            amount=amount_ok,
            currency=currency_ok,
            confirmations=confirmations_ok,
            timestamp=timestamp_ok,
        )
        reason: Optional[FailureReason] = None
        if not status_ok:
            reason = FailureReason.PAYMENT_NOT_COMPLETE
        elif not currency_ok:
            reason = FailureReason.INVALID_TOKEN
        elif not amount_ok:
            reason = FailureReason.AMOUNT_MISMATCH
        elif not confirmations_ok:
            reason = FailureReason.INSUFFICIENT_CONFIRMATIONS
        elif not timestamp_ok:
            reason = FailureReason.TIMESTAMP_EXPIRED
        return VerificationResult(
            valid=reason is None,
            proof=proof,
            provider=observation.provider,
            network=observation.network,
            payment_id=observation.payment_id,
            expected_amount=expected,
            confirmed_amount=observation.amount,
            confirmation_count=depth,
            checks=checks,
            failure_reason=reason,
            verified_at=now,
        )


class VerificationStage:
    """Consumes ``order.admitted`` and ``payment.proof_submitted``."""

    def __init__(
        self,
        verifier: PaymentVerifier,
        store: Any,
        matching: Any,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.verifier = verifier
        self.store = store
        self.matching = matching
        self.settings = settings or Settings()
        self.classifier = Classifier(self.settings.accounts)
        self.fees = FeeSchedule(self.settings.fees)
        self.clock = clock

    async def expected_amount(self, request: Request, intent: Intent) -> Optional[Decimal]:
        """USDT the order should have paid, or ``None`` when it cannot be known yet."""
        if request.payment_amount is not None:
            return request.payment_amount
        if intent == Intent.TREASURY_ISSUANCE:
            principal = self.settings.matching.treasury_unit_price * request.amount
            return principal + self.fees.issuance_fee(request.amount)
        if intent == Intent.MARKET_SELL:
            return self.fees.listing_fee(request.amount)
        if intent == Intent.MARKET_PURCHASE and request.listing_id:
            listing = await self.store.get_listing(request.listing_id)
            if listing is not None:
                return listing.price_per_unit * request.amount
        return None

    def proof_required(self, request: Request, intent: Intent) -> bool:
        if intent == Intent.TREASURY_ISSUANCE:
            return True
        if intent == Intent.MARKET_SELL:
            return self.fees.listing_fee(request.amount) > 0
        return False

    async def _check(self, event_id: str, proof: str, chain: Optional[Chain], expected: Optional[Decimal]) -> VerificationResult:
        result = await self.verifier.verify(proof, chain, expected)
        if result.valid:
            owner = await self.store.claim_proof(proof, event_id)
            if owner != event_id:
                logger.warning("Proof %s for %s was already used by %s", proof, event_id, owner)
                result = result.model_copy(update={"valid": False, "failure_reason": FailureReason.PROOF_ALREADY_USED})
        if not result.valid:
            raise PermanentError(
                result.failure_reason or FailureReason.VERIFICATION_ERROR,
                f"proof {proof} rejected",
                stage=Stage.VERIFICATION,
                context={"verification": result},
            )
        return result

    async def validate(self, request: Request) -> OrderValidated:
        intent = self.classifier.intent_of(request)
        if intent == Intent.PEER_TRANSFER:
            return OrderValidated(event_id=request.event_id, request=request)
        if not request.payment_proof:
            if self.proof_required(request, intent):
                raise PermanentError(
                    FailureReason.PROOF_MISSING,
                    f"{intent.value} requires a payment proof",
                    stage=Stage.VERIFICATION,
                )
            await self.store.advance_state(request.event_id, EventState.PAYMENT_PENDING, self.clock())
            return OrderValidated(event_id=request.event_id, request=request)
        expected = await self.expected_amount(request, intent)
        result = await self._check(request.event_id, request.payment_proof, request.chain, expected)
        await self.store.advance_state(request.event_id, EventState.PAYMENT_CONFIRMED, self.clock())
        return OrderValidated(event_id=request.event_id, request=request, verification=result)

    async def confirm_match_payment(self, submission: MatchProofSubmission) -> List[Message]:
        reservation = await self.store.get_reservation(submission.match_id)
        if reservation is None or reservation.event_id != submission.event_id:
            raise PermanentError(
                FailureReason.REQUEST_INVALID,
                f"no reservation {submission.match_id} for {submission.event_id}",
                stage=Stage.VERIFICATION,
                context={"match_id": submission.match_id},
            )
        existing = await self.store.get_instruction(submission.match_id)
        if existing is not None:
            return [existing]
        expected = await self.matching.amount_due(reservation)
        result = await self._check(submission.event_id, submission.proof, submission.chain, expected)
        instruction = await self.matching.confirm_payment(reservation, result)
        await self.store.advance_state(submission.event_id, EventState.PAYMENT_CONFIRMED, self.clock())
        return [instruction]

    async def handle(self, message: Message) -> List[Message]:
        if isinstance(message, MatchProofSubmission):
            return await self.confirm_match_payment(message)
        assert isinstance(message, OrderAdmitted)
        return [await self.validate(message.request)]
