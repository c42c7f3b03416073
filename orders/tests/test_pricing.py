"""
Unit Tests for subscriber pricing

Tests cover:
1. Base price per 50 subscribers, rounded up
2. Single best discount tier
3. Range validation
4. Quotes
"""

import pytest

from orders.pricing import (
    PricingError,
    base_price,
    discount_percentage,
    price,
    quote,
    validate_subscribers,
)


class TestPrice:
    """Known price points."""

    @pytest.mark.parametrize(
        "subscribers,expected",
        [
            (50, 1),
            (51, 2),
            (500, 10),
            (4_999, 100),
            (5_000, 90),
            (10_000, 170),
            (50_000, 800),
            (100_000, 1_600),
        ],
    )
    def test_price_points(self, subscribers, expected):
        assert price(subscribers) == expected

    def test_base_price_rounds_up(self):
        assert base_price(50) == 1
        assert base_price(99) == 2
        assert base_price(100) == 2

    def test_price_never_below_one(self):
        for n in range(50, 300):
            assert price(n) >= 1


class TestDiscountTiers:
    """Only the best qualifying tier applies."""

    def test_tier_thresholds(self):
        assert discount_percentage(4_999) == 0
        assert discount_percentage(5_000) == 10
        assert discount_percentage(9_999) == 10
        assert discount_percentage(10_000) == 15
        assert discount_percentage(49_999) == 15
        assert discount_percentage(50_000) == 20

    def test_discount_is_monotonic(self):
        previous = 0
        for n in range(50, 100_001, 250):
            current = discount_percentage(n)
            assert current >= previous
            previous = current

    def test_tiers_do_not_stack(self):
        # 20% alone, not 10 + 15 + 20
        assert price(50_000) == 1_000 * 80 // 100


class TestValidation:
    """Subscriber count must be an integer in [50, 100000]."""

    @pytest.mark.parametrize("subscribers", [0, 49, 100_001, -50])
    def test_out_of_range(self, subscribers):
        with pytest.raises(PricingError):
            validate_subscribers(subscribers)

    @pytest.mark.parametrize("subscribers", [50.0, "500", True, None])
    def test_non_integer(self, subscribers):
        with pytest.raises(PricingError):
            validate_subscribers(subscribers)

    def test_bounds_accepted(self):
        validate_subscribers(50)
        validate_subscribers(100_000)


class TestQuote:
    """Tests for the price breakdown."""

    def test_quote_without_discount(self):
        result = quote(500)

        assert result.base_price == 10
        assert result.discount_percentage == 0
        assert result.discount_amount == 0
        assert result.final_price == 10
        assert result.bulk_discount is None

    def test_quote_with_discount(self):
        result = quote(10_000)

        assert result.base_price == 200
        assert result.discount_percentage == 15
        assert result.final_price == 170
        assert result.discount_amount == 30
        assert result.bulk_discount == "15% off for bulk order"

    def test_quote_validates(self):
        with pytest.raises(PricingError):
            quote(10)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
