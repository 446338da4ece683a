"""Money roll-up: lines and percentage modifiers to subtotal/tax/total.

Two modes are supported and are not interchangeable:

* ``FLAT_ADDITIVE`` -- markup, tax and contingency are each computed from
  the subtotal and summed once (invoices, estimates with lines).
* ``CHAINED`` -- markup, then tax, then contingency are applied as
  successive multiplications of the running total (material lists).

Every named output is rounded to cents (half-up) as it is produced.
"""

import logging
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Iterable

from schemas.workflow import Discount, DiscountKind, LineAmount, RollupMode, Totals
from workflow.errors import InvalidInputError

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")


def round_money(value) -> Decimal:
    """Round to 2 decimal places, half-up."""
    return _to_decimal(value, "amount").quantize(CENT, rounding=ROUND_HALF_UP)


def _to_decimal(value, name: str) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    try:
        # str() avoids binary float artefacts (0.1 -> 0.1000000000000000055...)
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise InvalidInputError(f"{name} is not a number: {value!r}") from e


def _non_negative(value, name: str) -> Decimal:
    d = _to_decimal(value, name)
    if d < 0:
        raise InvalidInputError(f"{name} must not be negative (got {d})")
    return d


def _line_pair(line) -> tuple[Decimal, Decimal]:
    """Accept (qty, price) tuples, LineAmount models or ORM line rows."""
    if isinstance(line, (tuple, list)):
        quantity, unit_price = line
    else:
        quantity, unit_price = line.quantity, line.unit_price
    return _non_negative(quantity, "quantity"), _non_negative(unit_price, "unit_price")


def line_total(quantity, unit_price) -> Decimal:
    """Extended price of one line."""
    q = _non_negative(quantity, "quantity")
    p = _non_negative(unit_price, "unit_price")
    return round_money(q * p)


def _discount_amount(discount, base: Decimal) -> Decimal:
    if discount is None:
        return ZERO
    if not isinstance(discount, Discount):
        # A bare number is a flat amount
        discount = Discount(kind=DiscountKind.AMOUNT, value=_to_decimal(discount, "discount"))
    value = _to_decimal(discount.value, "discount")
    if value < 0:
        raise InvalidInputError(f"discount must not be negative (got {value})")
    if discount.kind == DiscountKind.PERCENT:
        return round_money(base * value / HUNDRED)
    return round_money(value)


def compute_totals(
    lines: Iterable = (),
    markup_percent=0,
    tax_percent=0,
    contingency_percent=0,
    discount: Discount | Decimal | float | None = None,
    tax_included: bool = False,
    mode: RollupMode = RollupMode.FLAT_ADDITIVE,
    markup_amount=None,
) -> Totals:
    """
    Roll up line amounts into a Totals breakdown.

    Args:
        lines: (quantity, unit_price) pairs or objects exposing those attributes.
        markup_percent: Markup as a percentage; ignored when markup_amount is given.
        tax_percent: Tax rate; ignored when tax_included is True.
        contingency_percent: Contingency allowance as a percentage.
        discount: Discount model, or a bare number meaning a flat amount.
        tax_included: Unit prices already include tax.
        mode: RollupMode.FLAT_ADDITIVE or RollupMode.CHAINED.
        markup_amount: Flat markup (or flat fee) in currency.

    Raises:
        InvalidInputError: on any negative quantity, price, rate or discount,
            or a discount larger than the pre-discount total.
    """
    mode = RollupMode(mode)
    markup_pct = _non_negative(markup_percent, "markup_percent")
    tax_pct = _non_negative(tax_percent, "tax_percent")
    contingency_pct = _non_negative(contingency_percent, "contingency_percent")
    flat_markup = None if markup_amount is None else round_money(_non_negative(markup_amount, "markup_amount"))

    subtotal = round_money(sum((q * p for q, p in map(_line_pair, lines)), Decimal("0")))

    if mode == RollupMode.FLAT_ADDITIVE:
        markup = flat_markup if flat_markup is not None else round_money(subtotal * markup_pct / HUNDRED)
        tax = ZERO if tax_included else round_money(subtotal * tax_pct / HUNDRED)
        contingency = round_money(subtotal * contingency_pct / HUNDRED)
        before_discount = subtotal + markup + tax + contingency
        after_markup = after_tax = None
    else:
        if flat_markup is not None:
            after_markup = round_money(subtotal + flat_markup)
        else:
            after_markup = round_money(subtotal * (1 + markup_pct / HUNDRED))
        after_tax = after_markup if tax_included else round_money(after_markup * (1 + tax_pct / HUNDRED))
        before_discount = round_money(after_tax * (1 + contingency_pct / HUNDRED))
        markup = after_markup - subtotal
        tax = after_tax - after_markup
        contingency = before_discount - after_tax

    discount_amount = _discount_amount(discount, before_discount)
    if discount_amount > before_discount:
        raise InvalidInputError(
            f"discount {discount_amount} exceeds the pre-discount total {before_discount}"
        )

    return Totals(
        mode=mode,
        subtotal=subtotal,
        markup_amount=markup,
        tax_amount=tax,
        contingency_amount=contingency,
        discount_amount=discount_amount,
        total=round_money(before_discount - discount_amount),
        after_markup=after_markup,
        after_tax=after_tax,
    )


def recompute_estimate_totals(estimate) -> Totals:
    """Refresh an estimate's line totals, subtotal and total in place (flat-additive)."""
    for line in estimate.lines:
        line.line_total = line_total(line.quantity, line.unit_price)
    totals = compute_totals(
        estimate.lines,
        markup_percent=estimate.markup_percent,
        tax_percent=estimate.tax_percent,
        contingency_percent=estimate.contingency_percent,
    )
    estimate.subtotal = totals.subtotal
    estimate.total = totals.total
    logger.debug(f"Estimate {estimate.estimate_number} totals: {totals.subtotal} -> {totals.total}")
    return totals


def material_list_total(subtotal, markup_percent=0, tax_percent=0, contingency_percent=0) -> Totals:
    """Chained roll-up of a material list whose subtotal is already known."""
    return compute_totals(
        [LineAmount(quantity=Decimal("1"), unit_price=_non_negative(subtotal, "subtotal"))],
        markup_percent=markup_percent,
        tax_percent=tax_percent,
        contingency_percent=contingency_percent,
        mode=RollupMode.CHAINED,
    )
