"""
Settlement pipeline for a prepaid digital-asset exchange.

A transfer request is admitted once, its USDT payment is proven against a
chain indexer or a payment processor, it is classified and matched against
treasury supply or the resident order book, posted as a balanced
double-entry journal, moved at the asset custodian and finally reconciled
against the custodian's ownership oracle before one canonical receipt is
written.  :class:`~settlement.pipeline.SettlementPipeline` wires the stages
together; ``worker_main`` runs them as a long-lived service.
"""

from .config import Settings  # noqa: F401
from .errors import FailureReason, PermanentError, Stage, TransientError  # noqa: F401
from .models import Intent, Receipt, ReceiptStatus, Request  # noqa: F401
from .pipeline import SettlementPipeline  # noqa: F401
