"""
Cart Computation

WHY: One pure function owns the arithmetic that turns line items,
discounts and delivery into the pre-credit total. Checkout, repair billing
and replacement invoicing all go through it, so the invariant

    total == subtotal - item_discount_total - overall_discount + delivery_charge

holds for every invoice regardless of where it came from.

DESIGN PRINCIPLES:
- Pure: no DB, no app context, no mutation of inputs
- Money in integer cents; percentages resolved with Decimal, half-up
- Discounts above their bound are CLAMPED, not rejected
- Negative quantity / price / manual delivery charge is a validation error
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Union

from ..validation import (
    ValidationError,
    clamp,
    money_to_cents,
    multiply_cents,
    percent_of,
    require_cents,
    require_quantity,
    to_decimal,
)


class CartError(ValidationError):
    """Raised for malformed cart input."""


# =============================================================================
# DISCOUNTS
# =============================================================================

@dataclass(frozen=True)
class AbsoluteDiscount:
    amount_cents: int = 0


@dataclass(frozen=True)
class PercentageDiscount:
    percent: Decimal = Decimal(0)


Discount = Union[AbsoluteDiscount, PercentageDiscount]

NO_DISCOUNT = AbsoluteDiscount(0)


def parse_discount(value) -> Discount:
    """
    Free-text discount entry -> tagged Discount.

    "10%" -> PercentageDiscount(10); "5.50" -> AbsoluteDiscount(550);
    "" / None -> NO_DISCOUNT. Discount values already tagged pass through.
    """
    if value is None:
        return NO_DISCOUNT
    if isinstance(value, (AbsoluteDiscount, PercentageDiscount)):
        return value
    text = str(value).strip()
    if not text:
        return NO_DISCOUNT
    if text.endswith("%"):
        percent = to_decimal(text[:-1], "discount")
        if percent < 0:
            raise CartError("Discount cannot be negative", {"discount": text})
        return PercentageDiscount(percent)
    amount = money_to_cents(text, "discount")
    if amount < 0:
        raise CartError("Discount cannot be negative", {"discount": text})
    return AbsoluteDiscount(amount)


def resolve_discount(discount: Discount, base_cents: int, cap_cents: int | None = None) -> int:
    """Absolute discount in cents, clamped to [0, cap] (cap defaults to base)."""
    if cap_cents is None:
        cap_cents = base_cents
    if isinstance(discount, PercentageDiscount):
        amount = percent_of(base_cents, discount.percent)
    else:
        amount = discount.amount_cents
    return clamp(amount, 0, max(0, cap_cents))


# =============================================================================
# LINES AND DELIVERY
# =============================================================================

@dataclass(frozen=True)
class LineItemDraft:
    """
    One cart line. product_id is None for custom (non-catalog) items.

    components: (product_id, quantity per unit) for bundles.
    stock_tracked=False for goods that already left stock (repair parts).
    """
    description: str
    quantity: int
    unit_price_cents: int
    discount: Discount = NO_DISCOUNT
    product_id: int | None = None
    unit: str | None = None
    warranty_period: int | None = None
    warranty_unit: str | None = None
    weight_grams: int = 0
    components: tuple[tuple[int, int], ...] = ()
    stock_tracked: bool = True

    @property
    def gross_cents(self) -> int:
        return self.quantity * self.unit_price_cents


@dataclass(frozen=True)
class CourierRate:
    first_kg_price_cents: int
    additional_kg_price_cents: int
    name: str = ""


@dataclass(frozen=True)
class Delivery:
    """
    Delivery choice.

    - free_shipping: charge is 0 whatever else is set
    - courier: charge derived from weight (cart weight when weight_kg is None)
    - otherwise: manual charge_cents
    """
    charge_cents: int = 0
    courier: CourierRate | None = None
    weight_kg: Decimal | None = None
    free_shipping: bool = False


NO_DELIVERY = Delivery()


def courier_delivery_charge(rate: CourierRate, weight_kg) -> int:
    """first kg flat, each further kg (pro rata) at the additional rate; 0 if weight <= 0."""
    weight = to_decimal(weight_kg, "weight_kg")
    if weight <= 0:
        return 0
    extra_kg = max(Decimal(0), weight - 1)
    return rate.first_kg_price_cents + multiply_cents(rate.additional_kg_price_cents, extra_kg)


def cart_weight_kg(lines: Iterable[LineItemDraft]) -> Decimal:
    grams = sum((line.weight_grams or 0) * line.quantity for line in lines)
    return Decimal(grams) / Decimal(1000)


def resolve_delivery_charge(delivery: Delivery | None, lines: Iterable[LineItemDraft] = ()) -> int:
    if delivery is None or delivery.free_shipping:
        return 0
    if delivery.courier is not None:
        weight = delivery.weight_kg if delivery.weight_kg is not None else cart_weight_kg(lines)
        return courier_delivery_charge(delivery.courier, weight)
    return require_cents(delivery.charge_cents, "delivery_charge_cents")


# =============================================================================
# COMPUTATION
# =============================================================================

@dataclass(frozen=True)
class CartLineTotals:
    gross_cents: int
    discount_cents: int
    net_cents: int


@dataclass(frozen=True)
class CartTotals:
    lines: tuple[CartLineTotals, ...] = field(default_factory=tuple)
    subtotal_cents: int = 0
    item_discount_cents: int = 0
    overall_discount_cents: int = 0
    delivery_charge_cents: int = 0
    total_cents: int = 0
    weight_kg: Decimal = Decimal(0)

    def to_dict(self) -> dict:
        return {
            "subtotal_cents": self.subtotal_cents,
            "item_discount_cents": self.item_discount_cents,
            "overall_discount_cents": self.overall_discount_cents,
            "delivery_charge_cents": self.delivery_charge_cents,
            "total_cents": self.total_cents,
            "weight_kg": str(self.weight_kg),
            "lines": [
                {"gross_cents": l.gross_cents, "discount_cents": l.discount_cents, "net_cents": l.net_cents}
                for l in self.lines
            ],
        }


def validate_line(line: LineItemDraft, index: int = 0) -> None:
    try:
        require_quantity(line.quantity, "quantity")
        require_cents(line.unit_price_cents, "unit_price_cents")
    except ValidationError as exc:
        raise CartError(exc.message, {"line_index": index, **exc.details}) from exc


def compute_cart(
    lines: Iterable[LineItemDraft],
    overall_discount: Discount = NO_DISCOUNT,
    delivery: Delivery | None = None,
) -> CartTotals:
    """
    Derive every cart figure from scratch.

    - line discount clamped to [0, quantity * unit_price]
    - overall discount resolved against subtotal, clamped to
      [0, subtotal - item_discount_total]
    """
    lines = tuple(lines)
    line_totals = []
    for index, line in enumerate(lines):
        validate_line(line, index)
        gross = line.gross_cents
        discount = resolve_discount(line.discount, gross)
        line_totals.append(CartLineTotals(gross_cents=gross, discount_cents=discount, net_cents=gross - discount))

    subtotal = sum(l.gross_cents for l in line_totals)
    item_discount = sum(l.discount_cents for l in line_totals)
    overall = resolve_discount(overall_discount or NO_DISCOUNT, subtotal, cap_cents=subtotal - item_discount)
    delivery_charge = resolve_delivery_charge(delivery, lines)

    return CartTotals(
        lines=tuple(line_totals),
        subtotal_cents=subtotal,
        item_discount_cents=item_discount,
        overall_discount_cents=overall,
        delivery_charge_cents=delivery_charge,
        total_cents=subtotal - item_discount - overall + delivery_charge,
        weight_kg=cart_weight_kg(lines),
    )
