"""
Tests for cart computation (pure, no database).
"""

from decimal import Decimal

import pytest

from settlement.services.cart_service import (
    NO_DISCOUNT,
    AbsoluteDiscount,
    CartError,
    CourierRate,
    Delivery,
    LineItemDraft,
    PercentageDiscount,
    compute_cart,
    courier_delivery_charge,
    parse_discount,
)
from settlement.validation import ValidationError


EXPRESS = CourierRate(first_kg_price_cents=500, additional_kg_price_cents=200, name="Express")


def _line(qty, price, discount=NO_DISCOUNT, weight_grams=0):
    return LineItemDraft(
        description="Item",
        quantity=qty,
        unit_price_cents=price,
        discount=discount,
        weight_grams=weight_grams,
    )


def test_totals_follow_the_cart_identity():
    cart = compute_cart(
        [_line(2, 1000, PercentageDiscount(Decimal(10))), _line(1, 500)],
        AbsoluteDiscount(300),
        Delivery(charge_cents=400),
    )

    assert cart.subtotal_cents == 2500
    assert cart.item_discount_cents == 200
    assert cart.overall_discount_cents == 300
    assert cart.delivery_charge_cents == 400
    assert cart.total_cents == 2500 - 200 - 300 + 400


def test_line_discount_is_clamped_to_line_value():
    cart = compute_cart([_line(1, 1000, AbsoluteDiscount(5000))])

    assert cart.lines[0].discount_cents == 1000
    assert cart.total_cents == 0


def test_overall_discount_is_capped_after_item_discounts():
    cart = compute_cart(
        [_line(1, 1000, AbsoluteDiscount(400))],
        AbsoluteDiscount(10_000),
    )

    assert cart.overall_discount_cents == 600
    assert cart.total_cents == 0


def test_percentage_overall_discount_resolves_against_subtotal():
    cart = compute_cart([_line(4, 2500)], PercentageDiscount(Decimal(25)))

    assert cart.overall_discount_cents == 2500
    assert cart.total_cents == 7500


def test_percentage_rounds_half_up():
    # 15% of 333 = 49.95 cents
    cart = compute_cart([_line(1, 333)], PercentageDiscount(Decimal(15)))

    assert cart.overall_discount_cents == 50


def test_courier_charge_uses_cart_weight():
    # 2 x 1500g = 3kg -> 500 + 2 * 200
    cart = compute_cart([_line(2, 1000, weight_grams=1500)], delivery=Delivery(courier=EXPRESS))

    assert cart.weight_kg == Decimal(3)
    assert cart.delivery_charge_cents == 900


def test_courier_charge_is_pro_rata_above_first_kg():
    assert courier_delivery_charge(EXPRESS, Decimal("2.5")) == 800
    assert courier_delivery_charge(EXPRESS, Decimal("0.4")) == 500


def test_courier_charge_is_zero_without_weight():
    assert courier_delivery_charge(EXPRESS, 0) == 0


def test_free_shipping_wins_over_courier():
    cart = compute_cart(
        [_line(1, 1000, weight_grams=5000)],
        delivery=Delivery(courier=EXPRESS, free_shipping=True),
    )

    assert cart.delivery_charge_cents == 0
    assert cart.total_cents == 1000


def test_empty_cart_totals_zero():
    cart = compute_cart([])

    assert cart.subtotal_cents == 0
    assert cart.total_cents == 0


def test_negative_quantity_rejected():
    with pytest.raises(CartError) as exc:
        compute_cart([_line(-1, 1000)])
    assert exc.value.details["line_index"] == 0


def test_negative_price_rejected():
    with pytest.raises(CartError):
        compute_cart([_line(1, 1000), _line(1, -5)])


def test_negative_manual_delivery_rejected():
    with pytest.raises(ValidationError):
        compute_cart([_line(1, 1000)], delivery=Delivery(charge_cents=-100))


@pytest.mark.parametrize("text,expected", [
    ("10%", PercentageDiscount(Decimal("10"))),
    (" 12.5% ", PercentageDiscount(Decimal("12.5"))),
    ("5.50", AbsoluteDiscount(550)),
    ("3", AbsoluteDiscount(300)),
    ("", NO_DISCOUNT),
    (None, NO_DISCOUNT),
])
def test_parse_discount(text, expected):
    assert parse_discount(text) == expected


def test_parse_discount_rejects_negative():
    with pytest.raises(CartError):
        parse_discount("-1")
    with pytest.raises(CartError):
        parse_discount("-5%")


def test_parse_discount_rejects_garbage():
    with pytest.raises(ValidationError):
        parse_discount("ten")
