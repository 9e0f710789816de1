"""Discount rule engine: rates, gating, tiers and the automatic campaign."""

import pytest

from commerce.cart import make_item
from commerce.config import AutoPromotion, Settings
from commerce.discounts import compute_discounts, discountable_total, normalize_mult_value
from commerce.errors import MalformedDiscount
from commerce.models import Discount, Price, Product


def product(sku, value=1000, **kwargs):
    return Product(id=f"p-{sku}", sku=sku, name=sku, price=Price(value=value, **kwargs))


def cart(*lines):
    """lines: (Product, quantity) pairs -> (items, product_map)"""
    items = [make_item(p, qty) for p, qty in lines]
    return items, {p.sku: p for p, _ in lines}


@pytest.fixture
def settings():
    return Settings(auto_promotions=[])


class TestNormalizeMult:
    def test_fraction_is_kept(self):
        assert normalize_mult_value(Discount(code="A", discount_type="mult", value=0.25)) == 0.25

    def test_whole_percentage_is_divided(self):
        assert normalize_mult_value(Discount(code="A", discount_type="mult", value=50)) == 0.5

    def test_fractional_value_above_one_is_malformed(self):
        with pytest.raises(MalformedDiscount) as exc:
            normalize_mult_value(Discount(code="BAD", discount_type="mult", value=2.5))
        assert exc.value.key == "BAD"

    def test_percentage_above_hundred_is_malformed(self):
        with pytest.raises(MalformedDiscount):
            normalize_mult_value(Discount(code="BAD", discount_type="mult", value=150))


class TestComputeDiscounts:
    def test_mult_percentage(self, settings):
        items, products = cart((product("bar-box"), 2))
        applied = compute_discounts(items, [Discount(code="HALF", discount_type="mult", value=50)], products, settings)
        assert [(d.code, d.amount) for d in applied] == [("HALF", 1000)]

    def test_amounts_are_truncated(self, settings):
        items, products = cart((product("bar-box", value=999), 1))
        applied = compute_discounts(items, [Discount(code="T", discount_type="mult", value=0.15)], products, settings)
        assert applied[0].amount == 149

    def test_minus_is_dollars(self, settings):
        items, products = cart((product("bar-box"), 1))
        applied = compute_discounts(items, [Discount(code="FIVE", discount_type="minus", value=5)], products, settings)
        assert applied[0].amount == 500

    def test_trial_requires_starter_pouch(self, settings):
        trial = Discount(code="TRY", discount_type="Trial", value=3)
        items, products = cart((product("bar-box"), 1))
        assert compute_discounts(items, [trial], products, settings) == []

        items, products = cart((product("bar-box"), 1), (product("sampler-pouch", value=300), 1))
        applied = compute_discounts(items, [trial], products, settings)
        assert applied[0].amount == 300

    def test_referral_shares_trial_gate(self, settings):
        referral = Discount(code="FRIEND", discount_type="Referral", value=2)
        items, products = cart((product("sampler-pouch", value=300), 1))
        assert compute_discounts(items, [referral], products, settings)[0].amount == 200

    def test_starter_requires_starter_kit(self, settings):
        starter = Discount(code="KIT", discount_type="starter", value=10)
        items, products = cart((product("bar-box"), 1))
        assert compute_discounts(items, [starter], products, settings) == []

        items, products = cart((product("starter-kit", value=4000), 1))
        assert compute_discounts(items, [starter], products, settings)[0].amount == 1000

    @pytest.mark.parametrize(
        "value,expected",
        [(6000, [900]), (5000, [750]), (3000, [300]), (2999, [])],
    )
    def test_ogverbfam_tiers(self, settings, value, expected):
        items, products = cart((product("bar-box", value=value), 1))
        applied = compute_discounts(items, [Discount(code="FAM", discount_type="ogverbfam")], products, settings)
        assert [d.amount for d in applied] == expected

    def test_unknown_type_is_skipped(self, settings):
        items, products = cart((product("bar-box"), 1))
        applied = compute_discounts(
            items,
            [Discount(code="?", discount_type="bogus", value=10), Discount(code="FIVE", discount_type="minus", value=5)],
            products,
            settings,
        )
        assert [d.code for d in applied] == ["FIVE"]

    def test_auto_discount_codes_are_ignored(self, settings):
        items, products = cart((product("bar-box"), 1))
        holiday = Discount(code="HOLIDAYBUNDLEPROMO", discount_type="minus", value=5)
        assert compute_discounts(items, [holiday], products, settings) == []

    def test_input_order_is_kept(self, settings):
        items, products = cart((product("bar-box"), 2))
        applied = compute_discounts(
            items,
            [Discount(code="B", discount_type="minus", value=1), Discount(code="A", discount_type="mult", value=10)],
            products,
            settings,
        )
        assert [d.code for d in applied] == ["B", "A"]

    def test_input_discounts_are_not_mutated(self, settings):
        items, products = cart((product("bar-box"), 1))
        original = Discount(code="FIVE", discount_type="minus", value=5)
        compute_discounts(items, [original], products, settings)
        assert original.amount is None


class TestDiscountableBase:
    def test_marked_down_and_excluded_skus_are_left_out(self):
        settings = Settings(auto_promotions=[], non_discountable_skus=frozenset({"gift-card"}))
        items, products = cart(
            (product("bar-box"), 2),
            (product("clearance", value=500, original=800), 1),
            (product("gift-card", value=2500), 1),
        )
        assert discountable_total(items, products, settings) == 2000

        applied = compute_discounts(items, [Discount(code="HALF", discount_type="mult", value=50)], products, settings)
        assert applied[0].amount == 1000


class TestAutoPromotion:
    def test_appended_after_explicit_codes(self):
        settings = Settings(auto_promotions=[AutoPromotion(code="PSLFALL2021", sku="ps-pouch", rate=0.2)])
        items, products = cart((product("bar-box"), 1), (product("ps-pouch", value=1500), 2))
        applied = compute_discounts(items, [Discount(code="FIVE", discount_type="minus", value=5)], products, settings)

        assert [d.code for d in applied] == ["FIVE", "PSLFALL2021"]
        promo = applied[-1]
        assert promo.discount_type == "auto-generated"
        assert promo.amount == 600

    def test_stale_auto_generated_entry_is_recomputed(self):
        settings = Settings(auto_promotions=[AutoPromotion(code="PSLFALL2021", sku="ps-pouch", rate=0.2)])
        items, products = cart((product("ps-pouch", value=1500), 1))
        stale = Discount(code="PSLFALL2021", discount_type="auto-generated", value=0.2, amount=9999)
        applied = compute_discounts(items, [stale], products, settings)
        assert [(d.code, d.amount) for d in applied] == [("PSLFALL2021", 300)]

    def test_absent_trigger_sku(self):
        settings = Settings()
        items, products = cart((product("bar-box"), 1))
        assert compute_discounts(items, [], products, settings) == []
