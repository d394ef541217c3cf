"""Service layer for the settlement workers.

This package exposes the pipeline stages (admission, verification,
classification, matching, ledger posting, asset transfer and
reconciliation) together with the infrastructure they share: event buses,
settlement stores, the verification cache, the audit log and metrics.
"""

from .admission import AdmissionService  # noqa: F401
from .classification import ClassificationStage  # noqa: F401
from .event_bus import EventBus  # noqa: F401
from .event_store import EventStore  # noqa: F401
from .ledger_poster import LedgerPoster  # noqa: F401
from .matching_engine import MatchingEngine  # noqa: F401
from .payment_verifier import PaymentVerifier, VerificationStage  # noqa: F401
from .reconciler import Reconciler  # noqa: F401
from .state_store import InMemorySettlementStore  # noqa: F401
from .transfer_executor import TransferExecutor  # noqa: F401
from .verification_cache import RedisVerificationCache, VerificationCache  # noqa: F401
