"""
Pricing Calculator.

Prices one validated usage record against the owning representative's
pricing profile. The calculator is a pure function of its inputs: no storage
access, no clock reads, no randomness.

- Limited tiers: line total = GB volume x tier per-GB rate
- Unlimited tiers: unit price = monthly rate x duration in months;
  line total = unit price x subscription count
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Tuple

from .models import TIERS, ZERO, InvoiceLineItem, PricingProfile, SubscriptionType, UsageRecord


@dataclass(frozen=True)
class PricingResult:
    """Line items and total for one usage record"""
    items: Tuple[InvoiceLineItem, ...]
    total_amount: Decimal

    @property
    def is_chargeable(self) -> bool:
        return len(self.items) > 0


def limited_description(tier: int, volume: Decimal) -> str:
    return f"Limited {tier}-month subscription ({volume.normalize():f} GB)"


def unlimited_description(tier: int) -> str:
    return f"Unlimited {tier}-month subscription"


class PricingCalculator:
    """Turns usage records into invoice line items"""

    def __init__(self, currency_minor_unit: Decimal = Decimal("1")):
        if currency_minor_unit <= 0:
            raise ValueError("currency_minor_unit must be positive")
        self.currency_minor_unit = currency_minor_unit

    def _round(self, amount: Decimal) -> Decimal:
        return amount.quantize(self.currency_minor_unit, rounding=ROUND_HALF_UP)

    def calculate(self, record: UsageRecord, profile: Optional[PricingProfile]) -> PricingResult:
        """
        Price a usage record.

        Tiers with no effective rate produce no line item. A record whose
        profile prices none of its used tiers yields an empty result with a
        zero total, which is not an error.

        Args:
            record: Validated usage record
            profile: Representative pricing, already carrying any row overrides

        Returns:
            PricingResult with items in tier order, limited before unlimited
        """
        if profile is None:
            return PricingResult(items=(), total_amount=ZERO)

        items: List[InvoiceLineItem] = []

        for tier, volume in zip(TIERS, record.limited_volumes):
            rate = profile.limited_rate(tier)
            if volume <= 0 or rate is None:
                continue
            items.append(InvoiceLineItem(
                description=limited_description(tier, volume),
                quantity=volume,
                unit_price=rate,
                total_price=self._round(volume * rate),
                subscription_type=SubscriptionType.LIMITED,
                duration_months=tier,
            ))

        monthly = profile.unlimited_rate()
        if monthly is not None:
            for tier, count in zip(TIERS, record.unlimited_counts):
                if count <= 0:
                    continue
                unit_price = monthly * tier
                items.append(InvoiceLineItem(
                    description=unlimited_description(tier),
                    quantity=Decimal(count),
                    unit_price=unit_price,
                    total_price=self._round(unit_price * count),
                    subscription_type=SubscriptionType.UNLIMITED,
                    duration_months=tier,
                ))

        total = sum((item.total_price for item in items), ZERO)
        return PricingResult(items=tuple(items), total_amount=total)
