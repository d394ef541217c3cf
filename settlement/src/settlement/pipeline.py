"""
Settlement pipeline wiring.

:class:`SettlementPipeline` builds every stage, declares one consumer group
per stage on the event bus and runs one :class:`StageWorker` per group and
partition.  A worker rebuilds the typed message, hands it to the stage and
publishes what the stage returns.  Errors are settled here, in one place:

* :class:`TransientError` is redelivered in place with exponential backoff
  up to ``max_redeliveries`` times, then reported as ``stage.failed``;
* :class:`PermanentError` becomes ``stage.failed`` at once;
* :class:`UnbalancedPostingError` does too, logged at CRITICAL;
* anything else is logged with its traceback and reported as
  ``internal.error``.

The reconciler is the stage that consumes ``stage.failed``, so its worker
hands its own failures straight to ``on_failure`` (the reconciler's fail
path) instead of publishing them.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Union

from .classifier import Classifier
from .clients import (
    AccountingClient,
    CustodianClient,
    EvmScanIndexer,
    IdentityClient,
    NowPaymentsProcessor,
    PaperCustodianClient,
    PaperLedgerClient,
    PaymentBackend,
    StaticIdentityResolver,
    TronScanIndexer,
)
from .config import Settings
from .errors import FailureReason, PermanentError, Stage, TransientError, UnbalancedPostingError
from .models import Chain, Receipt, Request, utcnow
from .models_events import (
    LEDGER_POSTED,
    ORDER_ADMITTED,
    ORDER_CLASSIFIED,
    ORDER_MATCHED,
    ORDER_VALIDATED,
    OWNERSHIP_CHANGED,
    PAYMENT_CONFIRMED,
    PAYMENT_PROOF_SUBMITTED,
    REQUEST_ADMITTED,
    STAGE_FAILED,
    TRANSFER_FAILED,
    MatchProofSubmission,
    Message,
    RequestAdmitted,
    StageFailed,
    parse_message,
)
from .resilience import ResiliencePolicy, build_policy
from .services.admission import AdmissionService
from .services.classification import ClassificationStage
from .services.event_bus import EventBus
from .services.ledger_poster import LedgerPoster
from .services.matching_engine import MatchingEngine
from .services.metrics_service import MetricsService, record_circuit_state, record_stage
from .services.payment_verifier import PaymentVerifier, VerificationStage
from .services.publishers import publish_message
from .services.reconciler import Reconciler
from .services.state_store import InMemorySettlementStore
from .services.transfer_executor import TransferExecutor
from .services.verification_cache import VerificationCache

logger = logging.getLogger(__name__)

Handler = Callable[[Message], Awaitable[List[Message]]]
FailureHandler = Callable[[StageFailed], Awaitable[List[Message]]]
Sleep = Callable[[float], Awaitable[None]]


class StageWorker:
    """Consumes one group's partitions and runs its stage handler."""

    def __init__(
        self,
        group: str,
        stage: Stage,
        topics: Sequence[str],
        handler: Handler,
        bus: Any,
        *,
        max_redeliveries: int = 5,
        backoff: float = 0.5,
        sleep: Sleep = asyncio.sleep,
        event_store: Optional[Any] = None,
        on_failure: Optional[FailureHandler] = None,
    ) -> None:
        self.group = group
        self.stage = stage
        self.topics = tuple(topics)
        self.handler = handler
        self.bus = bus
        self.max_redeliveries = max_redeliveries
        self.backoff = backoff
        self._sleep = sleep
        self.event_store = event_store
        self.on_failure = on_failure
        bus.declare(group, self.topics)

    def _failure(self, message: Message, exc: Exception, reason: FailureReason, detail: str) -> StageFailed:
        context: Dict[str, Any] = getattr(exc, "context", {}) or {}
        stage = getattr(exc, "stage", None) or self.stage
        return StageFailed(
            event_id=message.event_id,
            stage=stage,
            reason=reason,
            detail=detail,
            match_id=context.get("match_id") or getattr(message, "match_id", None),
            verification=context.get("verification"),
        )

    async def process(self, topic: str, payload: Any) -> None:
        """Handle one delivery, including in-place redelivery of transient failures."""
        try:
            message = parse_message(topic, payload)
        except ValueError as exc:
            logger.error("[%s] dropping malformed %s message: %s", self.group, topic, exc)
            record_stage(self.group, "malformed")
            return
        started = time.perf_counter()
        attempt = 0
        while True:
            attempt += 1
            try:
                out = await self.handler(message)
            except TransientError as exc:
                if attempt <= self.max_redeliveries:
                    delay = self.backoff * (2 ** (attempt - 1))
                    logger.warning(
                        "[%s] %s for %s failed transiently (%s); redelivery %d/%d in %.2fs",
                        self.group,
                        topic,
                        message.event_id,
                        exc,
                        attempt,
                        self.max_redeliveries,
                        delay,
                    )
                    await self._sleep(delay)
                    continue
                logger.error("[%s] %s for %s exhausted redeliveries: %s", self.group, topic, message.event_id, exc)
                outcome = "exhausted"
                failure = self._failure(message, exc, exc.reason, exc.detail or str(exc))
            except UnbalancedPostingError as exc:
                logger.critical("[%s] %s for %s: %s", self.group, topic, message.event_id, exc)
                outcome = "invariant"
                failure = self._failure(message, exc, exc.reason, exc.detail)
            except PermanentError as exc:
                logger.error("[%s] %s for %s failed: %s", self.group, topic, message.event_id, exc)
                outcome = "failed"
                failure = self._failure(message, exc, exc.reason, exc.detail)
            except Exception as exc:
                logger.exception("[%s] unexpected error handling %s for %s", self.group, topic, message.event_id)
                outcome = "error"
                failure = self._failure(message, exc, FailureReason.INTERNAL_ERROR, f"{type(exc).__name__}: {exc}")
            else:
                for result in out:
                    await publish_message(self.bus, result, self.event_store)
                record_stage(self.group, "ok", time.perf_counter() - started)
                return
            break
        record_stage(self.group, outcome, time.perf_counter() - started)
        if self.on_failure is None:
            await publish_message(self.bus, failure, self.event_store)
            return
        try:
            out = await self.on_failure(failure)
        except Exception:
            logger.exception("[%s] could not record the failure of %s", self.group, message.event_id)
            return
        for result in out:
            await publish_message(self.bus, result, self.event_store)

    async def consume(self, partition: int) -> None:
        async for topic, payload in self.bus.subscribe(self.group, partition):
            await self.process(topic, payload)


class SettlementPipeline:
    """All stages of the settlement pipeline on one event bus."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[Any] = None,
        bus: Optional[Any] = None,
        identity: Any = None,
        ledger_client: Any = None,
        custodian: Any = None,
        backends: Iterable[PaymentBackend] = (),
        cache: Optional[Any] = None,
        event_store: Optional[Any] = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or Settings()
        self.store = store or InMemorySettlementStore()
        self.bus = bus or EventBus(self.settings.bus_partitions)
        self.identity = identity or StaticIdentityResolver(self.settings.accounts)
        self.ledger_client = ledger_client or PaperLedgerClient()
        self.custodian = custodian or PaperCustodianClient()
        self.backends = list(backends)
        self.event_store = event_store
        self.clock = clock
        self._sleep = sleep

        self.policies: Dict[str, ResiliencePolicy] = {}
        for name in ["identity", "ledger", "custodian", "oracle", *(b.name for b in self.backends)]:
            self.policies[name] = build_policy(
                name, self.settings.retry, self.settings.breaker, sleep=sleep, listener=record_circuit_state
            )

        s = self.settings
        self.classifier = Classifier(s.accounts)
        self.verifier = PaymentVerifier(
            self.backends,
            self.policies,
            s.verification,
            cache if cache is not None else VerificationCache(s.verification.cache_ttl_seconds),
            clock,
        )
        self.admission = AdmissionService(self.store, self.identity, self.policies["identity"], clock)
        self.matching = MatchingEngine(self.store, s, clock)
        self.verification = VerificationStage(self.verifier, self.store, self.matching, s, clock)
        self.classification = ClassificationStage(self.store, self.classifier)
        self.ledger = LedgerPoster(self.store, self.ledger_client, self.policies["ledger"], s, clock)
        self.transfers = TransferExecutor(
            self.store,
            self.custodian,
            self.identity,
            self.policies["custodian"],
            self.policies["identity"],
            s.accounts,
            clock,
        )
        self.reconciler = Reconciler(self.store, self.custodian, self.policies["oracle"], self.ledger, clock)
        self.metrics = MetricsService(self.bus)

        def worker(
            group: str,
            stage: Stage,
            topics: Sequence[str],
            handler: Handler,
            on_failure: Optional[FailureHandler] = None,
        ) -> StageWorker:
            return StageWorker(
                group,
                stage,
                topics,
                handler,
                self.bus,
                max_redeliveries=s.max_redeliveries,
                backoff=s.redelivery_backoff_seconds,
                sleep=sleep,
                event_store=event_store,
                on_failure=on_failure,
            )

        self.workers = [
            worker("admission", Stage.ADMISSION, [REQUEST_ADMITTED], self.admission.handle),
            worker("verification", Stage.VERIFICATION, [ORDER_ADMITTED, PAYMENT_PROOF_SUBMITTED], self.verification.handle),
            worker("classification", Stage.CLASSIFICATION, [ORDER_VALIDATED], self.classification.handle),
            worker("matching", Stage.MATCHING, [ORDER_CLASSIFIED], self.matching.handle),
            worker("ledger", Stage.LEDGER, [PAYMENT_CONFIRMED], self.ledger.handle),
            worker("transfer", Stage.TRANSFER, [PAYMENT_CONFIRMED], self.transfers.handle),
            worker(
                "reconciliation",
                Stage.RECONCILIATION,
                [ORDER_MATCHED, LEDGER_POSTED, OWNERSHIP_CHANGED, TRANSFER_FAILED, STAGE_FAILED],
                self.reconciler.handle,
                on_failure=self.reconciler.handle,
            ),
        ]
        self._tasks: List[asyncio.Task] = []

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "SettlementPipeline":
        """Build the pipeline with the adapters ``settings`` asks for.

        In dry-run mode the accounting system and the custodian are the
        in-memory paper doubles and accounts resolve statically; payment
        backends are always the configured HTTP indexers and processor.
        """
        be = settings.backends
        contracts = settings.verification.usdt_contracts
        timeout = be.request_timeout
        backends: List[PaymentBackend] = [
            TronScanIndexer(be.tronscan_url, contracts[Chain.TRON], api_key=be.trongrid_api_key, timeout=timeout),
            EvmScanIndexer("etherscan", Chain.ETH, be.etherscan_url, contracts[Chain.ETH], api_key=be.etherscan_api_key, timeout=timeout),
            EvmScanIndexer(
                "bscscan", Chain.BSC, be.bscscan_url, contracts[Chain.BSC], decimals=18, api_key=be.bscscan_api_key, timeout=timeout
            ),
            NowPaymentsProcessor(be.nowpayments_url, be.nowpayments_api_key, hash_lookup=True, timeout=timeout),
        ]
        if settings.dry_run:
            logger.info("DRY_RUN enabled: using paper accounting and custodian")
            identity: Any = StaticIdentityResolver(settings.accounts)
            ledger_client: Any = PaperLedgerClient()
            custodian: Any = PaperCustodianClient()
        else:
            identity = (
                IdentityClient(be.identity_url, be.identity_api_key, settings.accounts, timeout=timeout)
                if be.identity_url
                else StaticIdentityResolver(settings.accounts, strict=True)
            )
            ledger_client = AccountingClient(be.ledger_url, be.ledger_token, timeout=timeout)
            custodian = CustodianClient(
                be.custodian_url, be.custodian_api_key or "", be.custodian_api_secret or "", timeout=timeout
            )
        return cls(
            settings,
            identity=identity,
            ledger_client=ledger_client,
            custodian=custodian,
            backends=backends,
            **kwargs,
        )

    # ingress ------------------------------------------------------------------

    async def submit(self, request: Union[Request, Dict[str, Any]]) -> str:
        """Admit a request into the pipeline; returns its ``event_id``.

        Raises ``pydantic.ValidationError`` when a dict payload is malformed.
        """
        if not isinstance(request, Request):
            request = Request.model_validate(request)
        await publish_message(self.bus, RequestAdmitted(event_id=request.event_id, request=request), self.event_store)
        return request.event_id

    async def submit_match_proof(
        self, event_id: str, match_id: str, proof: str, chain: Optional[Chain] = None
    ) -> None:
        """Provide the payment proof for a reservation waiting in ``PAYMENT_PENDING``."""
        submission = MatchProofSubmission(event_id=event_id, match_id=match_id, proof=proof, chain=chain)
        await publish_message(self.bus, submission, self.event_store)

    async def get_receipt(self, event_id: str) -> Optional[Receipt]:
        return await self.store.get_receipt(event_id)

    # reservations -----------------------------------------------------------

    async def sweep_once(self, now: Optional[datetime] = None) -> List[StageFailed]:
        """Expire lapsed reservations and report them to the reconciler."""
        failures = await self.matching.expire_due(now)
        for failure in failures:
            await publish_message(self.bus, failure, self.event_store)
        return failures

    async def _sweeper(self) -> None:
        interval = self.settings.matching.sweep_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep_once()
            except Exception:
                logger.exception("Reservation sweep failed")

    # lifecycle --------------------------------------------------------------

    def start(self, *, sweeper: bool = True) -> List[asyncio.Task]:
        """Start all consumers; returns the tasks."""
        if self._tasks:
            return self._tasks
        partitions = self.bus.partitions
        for stage_worker in self.workers:
            for partition in range(partitions):
                self._tasks.append(asyncio.create_task(stage_worker.consume(partition)))
        self._tasks.append(asyncio.create_task(self.metrics.run()))
        if sweeper and self.settings.matching.sweep_interval_seconds > 0:
            self._tasks.append(asyncio.create_task(self._sweeper()))
        logger.info("Settlement pipeline started: %d stages x %d partitions", len(self.workers), partitions)
        return self._tasks

    async def drain(self) -> None:
        """Wait until every published message has been handled."""
        await self.bus.wait_idle()

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Settlement pipeline stopped")

    async def run(self) -> None:
        """Run until any consumer dies, then stop the rest."""
        tasks = self.start()
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        await self.stop()
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()  # type: ignore[misc]
