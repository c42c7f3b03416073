"""
Subscriber pricing: ₹1 per 50 subscribers with a single bulk discount tier.

Only the best tier a count qualifies for is applied; tiers never stack.
"""

from typing import Optional

from pydantic import BaseModel

MIN_SUBSCRIBERS = 50
MAX_SUBSCRIBERS = 100_000
SUBSCRIBERS_PER_UNIT = 50

# (threshold, discount percent), highest threshold first
DISCOUNT_TIERS: tuple[tuple[int, int], ...] = (
    (50_000, 20),
    (10_000, 15),
    (5_000, 10),
)


class PricingError(ValueError):
    pass


class PriceQuote(BaseModel):
    subscribers: int
    base_price: int
    discount_percentage: int
    discount_amount: int
    final_price: int
    rate: str = "₹1 for 50 subscribers"
    bulk_discount: Optional[str] = None


def _ceil_div(numerator: int, denominator: int) -> int:
    return -(-numerator // denominator)


def validate_subscribers(subscribers: int) -> None:
    if isinstance(subscribers, bool) or not isinstance(subscribers, int):
        raise PricingError("Subscriber count must be an integer")
    if subscribers < MIN_SUBSCRIBERS:
        raise PricingError(f"Minimum {MIN_SUBSCRIBERS} subscribers required")
    if subscribers > MAX_SUBSCRIBERS:
        raise PricingError(f"Maximum {MAX_SUBSCRIBERS:,} subscribers per order")


def base_price(subscribers: int) -> int:
    return _ceil_div(subscribers, SUBSCRIBERS_PER_UNIT)


def discount_percentage(subscribers: int) -> int:
    for threshold, percent in DISCOUNT_TIERS:
        if subscribers >= threshold:
            return percent
    return 0


def price(subscribers: int) -> int:
    base = base_price(subscribers)
    discount = discount_percentage(subscribers)
    # ceil(base * (100 - discount) / 100), kept in integers
    return max(1, _ceil_div(base * (100 - discount), 100))


def quote(subscribers: int) -> PriceQuote:
    validate_subscribers(subscribers)
    base = base_price(subscribers)
    discount = discount_percentage(subscribers)
    final = price(subscribers)
    return PriceQuote(
        subscribers=subscribers,
        base_price=base,
        discount_percentage=discount,
        discount_amount=base - final,
        final_price=final,
        bulk_discount=f"{discount}% off for bulk order" if discount else None,
    )
