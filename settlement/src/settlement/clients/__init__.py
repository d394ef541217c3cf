"""
Client utilities for the systems the settlement pipeline talks to.

This package provides aiohttp adapters for the payment verification
backends, the accounting system, the asset custodian and the identity
resolver, plus in-memory "paper" doubles of the accounting system and the
custodian used in dry-run mode.
"""

from .accounting import AccountingClient  # noqa: F401
from .custodian import CustodianClient  # noqa: F401
from .identity import IdentityClient, StaticIdentityResolver  # noqa: F401
from .paper_custodian import PaperCustodianClient  # noqa: F401
from .paper_ledger import PaperLedgerClient  # noqa: F401
from .payment_backends import (  # noqa: F401
    EvmScanIndexer,
    NowPaymentsProcessor,
    PaymentBackend,
    ProofKind,
    TronScanIndexer,
    classify_proof,
)
