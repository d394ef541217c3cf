"""
Intent classification.

:class:`Classifier` maps an admitted request to the transaction type the
rest of the pipeline settles.  It reads nothing but the request itself
(including the role snapshot taken at admission) and the static system
account configuration, so a redelivered request always lands on the same
intent.  Rules are evaluated in order and the first match wins:

1. an explicit ``listing_id``                   -> market purchase
2. destination is the treasury                  -> treasury issuance
3. a proceeds address is present                -> market sell (listing)
4. destination is the market/liquidity account  -> market purchase (book walk)
5. anything else                                -> peer transfer
"""

from __future__ import annotations

from typing import Tuple

from .config import SystemAccounts
from .models import AccountRole, Intent, Request


class Classifier:
    def __init__(self, accounts: SystemAccounts | None = None) -> None:
        self.accounts = accounts or SystemAccounts()

    def is_treasury(self, request: Request) -> bool:
        if request.to_role == AccountRole.TREASURY:
            return True
        destination = request.to_account
        return destination == self.accounts.treasury or "treasury" in destination.lower()

    def is_market(self, request: Request) -> bool:
        return (
            request.to_account == self.accounts.market
            or request.to_role == AccountRole.LIQUIDITY_PROVIDER
        )

    def classify(self, request: Request) -> Tuple[Intent, str]:
        """Return the intent and the rule that produced it."""
        if request.listing_id:
            return Intent.MARKET_PURCHASE, f"listing {request.listing_id}"
        if self.is_treasury(request):
            return Intent.TREASURY_ISSUANCE, "destination is treasury"
        if request.proceeds_address:
            return Intent.MARKET_SELL, "proceeds address present"
        if self.is_market(request):
            return Intent.MARKET_PURCHASE, "destination is market account"
        return Intent.PEER_TRANSFER, "default"

    def intent_of(self, request: Request) -> Intent:
        return self.classify(request)[0]
