"""Marketplace fee schedule.

Three fees exist, each credited to a different system account:

* listing fee: a flat amount charged to a seller whose listing reaches the
  threshold size (operator account);
* issuance fee: per unit issued from the treasury (treasury account);
* liquidity fee: a percentage of the principal of purchases routed through
  the market account, i.e. filled by walking the book (market maker).
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from .config import FeeSettings
from .models import FeeBreakdown, Intent

CENT = Decimal("0.01")


def quantize(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


class FeeSchedule:
    def __init__(self, settings: FeeSettings | None = None) -> None:
        self.settings = settings or FeeSettings()

    def listing_fee(self, amount: int) -> Decimal:
        if amount >= self.settings.listing_threshold:
            return quantize(self.settings.listing_flat)
        return Decimal("0.00")

    def issuance_fee(self, amount: int) -> Decimal:
        return quantize(self.settings.issuance_per_unit * amount)

    def liquidity_fee(self, principal: Decimal) -> Decimal:
        return quantize(principal * self.settings.liquidity_rate_pct / Decimal(100))

    def quote(
        self,
        intent: Intent,
        amount: int,
        *,
        principal: Decimal = Decimal("0"),
        via_market: bool = False,
    ) -> FeeBreakdown:
        """Fees owed for one settlement leg of ``amount`` units."""
        if intent == Intent.TREASURY_ISSUANCE:
            return FeeBreakdown(issuance=self.issuance_fee(amount))
        if intent == Intent.MARKET_SELL:
            return FeeBreakdown(listing=self.listing_fee(amount))
        if intent == Intent.MARKET_PURCHASE and via_market:
            return FeeBreakdown(liquidity=self.liquidity_fee(principal))
        return FeeBreakdown()
