"""
Tests for discount codes, stacking and bulk tiers.
"""
from datetime import timedelta

import pytest

from discounts import (
    CartLine, DiscountApplication, DiscountCodeCreate, DiscountEngine,
    DiscountError, DiscountType, PromoBatchRequest,
)
from errors import ConflictError
from models import utcnow


def gaming_cart(price=60000, quantity=1):
    return [CartLine(id=1, name="Performance Gamer", category="Performance Gamers",
                     price=price, quantity=quantity)]


@pytest.fixture
def engine():
    return DiscountEngine()


class TestApplyCode:

    def test_percentage_with_cap(self, engine):
        result = engine.apply_code("gaming20", gaming_cart(100000), "a@example.com")
        assert result.discount_code == "GAMING20"
        assert result.discount_amount == 15000  # capped at maximum_discount
        assert result.final_amount == 85000

    def test_unknown_code(self, engine):
        with pytest.raises(DiscountError, match="Invalid discount code"):
            engine.apply_code("NOPE", gaming_cart(), "a@example.com")

    def test_minimum_order_value(self, engine):
        with pytest.raises(DiscountError, match="Minimum order value of ₹50,000 required"):
            engine.apply_code("GAMING20", gaming_cart(40000), "a@example.com")

    def test_category_restriction(self, engine):
        cart = [CartLine(id=2, name="Office Box", category="Office Productivity", price=60000, quantity=1)]
        with pytest.raises(DiscountError, match="not applicable"):
            engine.apply_code("GAMING20", cart, "a@example.com")

    def test_per_customer_limit(self, engine):
        engine.apply_code("WELCOME10", gaming_cart(), "a@example.com")
        engine.confirm_usage("WELCOME10", "A@example.com")
        with pytest.raises(DiscountError, match="maximum number of times"):
            engine.apply_code("WELCOME10", gaming_cart(), "a@example.com")
        # another customer is unaffected
        engine.apply_code("WELCOME10", gaming_cart(), "b@example.com")

    def test_expired_code(self, engine):
        now = utcnow()
        engine.create_code(DiscountCodeCreate(
            code="OLD", name="Old", type=DiscountType.PERCENTAGE, value=5,
            valid_from=now - timedelta(days=10), valid_until=now - timedelta(days=1)))
        with pytest.raises(DiscountError, match="expired"):
            engine.apply_code("OLD", gaming_cart(), "a@example.com")

    def test_fixed_amount_split_across_lines(self, engine):
        cart = [
            CartLine(id=1, name="A", category="x", price=60000, quantity=1),
            CartLine(id=2, name="B", category="y", price=40000, quantity=1),
        ]
        result = engine.apply_code("BULK5000", cart, "a@example.com")
        assert result.discount_amount == pytest.approx(5000)
        assert result.applicable_items[0].discounted_price == pytest.approx(57000)
        assert result.applicable_items[1].discounted_price == pytest.approx(38000)

    def test_free_shipping_uses_code_value(self, engine):
        result = engine.apply_code("FREESHIP", gaming_cart(30000), "a@example.com")
        assert result.discount_amount == 1500

    def test_discount_error_is_bad_request(self):
        assert DiscountError("x").status_code == 400


class TestStacking:

    def test_non_stackable_after_first_is_rejected(self, engine):
        results = engine.stack_codes(["WELCOME10", "GAMING20"], gaming_cart(100000), "a@example.com")
        applied = [r for r in results if isinstance(r, DiscountApplication)]
        errors = [r for r in results if isinstance(r, DiscountError)]
        assert [a.discount_code for a in applied] == ["GAMING20"]
        assert "cannot be combined" in errors[0].message

    def test_stackable_codes_compound(self, engine):
        results = engine.stack_codes(["GAMING20", "BULK5000"], gaming_cart(150000), "a@example.com")
        applied = [r for r in results if isinstance(r, DiscountApplication)]
        assert [a.discount_code for a in applied] == ["GAMING20", "BULK5000"]
        assert applied[1].original_amount == pytest.approx(135000)
        assert applied[1].final_amount == pytest.approx(130000)

    def test_unknown_codes_are_ignored(self, engine):
        assert engine.stack_codes(["NOPE"], gaming_cart(), "a@example.com") == []


class TestBulkAndAdmin:

    def test_bulk_tier_selection(self, engine):
        bulk = engine.bulk_discount(gaming_cart(50000, quantity=12))
        assert bulk.tier_name == "Enterprise (11-25 PCs)"
        assert bulk.discount_amount == pytest.approx(600000 * 0.12)

    def test_bulk_needs_minimum_quantity(self, engine):
        assert engine.bulk_discount(gaming_cart(quantity=2)) is None

    def test_duplicate_code_conflicts(self, engine):
        with pytest.raises(ConflictError):
            engine.create_code(DiscountCodeCreate(
                code="welcome10", name="dup", type=DiscountType.PERCENTAGE, value=5,
                valid_until=utcnow() + timedelta(days=1)))

    def test_generate_promotional_codes(self, engine):
        codes = engine.generate_promotional_codes(PromoBatchRequest(
            campaign="diwali", count=5, value=12, valid_days=10))
        assert len({c.code for c in codes}) == 5
        assert all(c.code.startswith("DIWA") and len(c.code) == 8 for c in codes)
        assert all(c.usage_per_customer == 1 for c in codes)

    def test_analytics_counts_usage(self, engine):
        engine.confirm_usage("BULK5000", "a@example.com")
        stats = engine.analytics()
        assert stats["total_codes"] == 5
        assert stats["total_usage"] == 1
        assert stats["total_discount_given"] == 5000
        assert stats["top_performing_codes"][0]["code"] == "BULK5000"
