"""
Hosting Bridge Pricing
======================

Billing-cycle table and server-side price recomputation.

The client sends the price it displayed; the server recomputes it from the
monthly rate and the cycle's multiplier/discount. When the two differ by more
than ``PRICE_TOLERANCE`` the recomputed price is charged.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict

from .errors import InvalidInput

logger = logging.getLogger(__name__)

PRICE_TOLERANCE = 0.01


@dataclass(frozen=True)
class BillingCycle:
    """One billing cycle and its Stripe recurring interval."""
    name: str
    interval: str
    interval_count: int
    multiplier: int
    discount: float

    @property
    def label(self) -> str:
        months = "month" if self.multiplier == 1 else "months"
        return f"{self.name} billing ({self.multiplier} {months})"


BILLING_CYCLES: Dict[str, BillingCycle] = {
    "monthly": BillingCycle("monthly", "month", 1, 1, 0.0),
    "quarterly": BillingCycle("quarterly", "month", 3, 3, 0.05),
    "semiannual": BillingCycle("semiannual", "month", 6, 6, 0.10),
    "annual": BillingCycle("annual", "year", 1, 12, 0.15),
}


@dataclass
class PriceQuote:
    """Server-side price breakdown for one checkout."""
    monthly_rate: float
    cycle: BillingCycle
    total_before_discount: float
    discount_amount: float
    final_price: float

    def to_dict(self) -> Dict[str, float]:
        return {
            "monthlyPrice": self.monthly_rate,
            "totalBeforeDiscount": self.total_before_discount,
            "discountAmount": self.discount_amount,
            "finalPrice": self.final_price,
        }


def get_billing_cycle(name: str) -> BillingCycle:
    """
    Look up a billing cycle by name.

    Raises:
        InvalidInput: If the cycle is unknown
    """
    cycle = BILLING_CYCLES.get(name)
    if cycle is None:
        raise InvalidInput(
            f"Invalid billing cycle {name!r}. Must be one of: {', '.join(BILLING_CYCLES)}"
        )
    return cycle


def calculate_pricing(monthly_rate: float, billing_cycle: str) -> PriceQuote:
    """
    Compute the price of one billing period.

    Args:
        monthly_rate: Price per month in USD
        billing_cycle: Name of a cycle in BILLING_CYCLES

    Returns:
        PriceQuote with the discounted total
    """
    if monthly_rate <= 0:
        raise InvalidInput("Monthly rate must be positive")

    cycle = get_billing_cycle(billing_cycle)
    total = monthly_rate * cycle.multiplier
    discount_amount = total * cycle.discount
    return PriceQuote(
        monthly_rate=monthly_rate,
        cycle=cycle,
        total_before_discount=total,
        discount_amount=discount_amount,
        final_price=total - discount_amount,
    )


def reconcile_price(client_price: float, quote: PriceQuote) -> float:
    """
    Pick the price to charge.

    The client-supplied price is accepted only when it is within
    PRICE_TOLERANCE of the recomputed one.
    """
    difference = abs(quote.final_price - client_price)
    if difference > PRICE_TOLERANCE:
        logger.warning(
            f"Price mismatch: client={client_price} server={quote.final_price:.2f} "
            f"difference={difference:.2f}; charging server price"
        )
        return quote.final_price
    return client_price


def to_cents(amount: float) -> int:
    """Dollar amount as integer cents, rounded half up (19.995 -> 2000)."""
    cents = Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP) * 100
    return int(cents)
