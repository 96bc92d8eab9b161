"""
MRA-compliant VAT computation for tax-inclusive invoice lines (17.5% standard rate).
base = round2(net / (1 + rate)); vat = round2(net - base)

Rounding is applied once per line. Invoice totals are the sum of rounded line
components and are never re-derived from the invoice-level total.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

VAT_RATE = Decimal("0.175")
ZERO = Decimal("0.00")
_CENT = Decimal("0.01")


class InvalidLineItem(ValueError):
    """Line item with negative amounts or a discount above its gross value. Never retryable."""

    def __init__(self, message: str, position: int | None = None):
        if position is not None:
            message = f"Line {position}: {message}"
        super().__init__(message)
        self.position = position


@dataclass(frozen=True)
class LineAmounts:
    base_amount: Decimal
    vat_amount: Decimal
    line_total: Decimal


@dataclass(frozen=True)
class InvoiceTotals:
    base_amount: Decimal
    vat_amount: Decimal
    invoice_total: Decimal


@dataclass(frozen=True)
class VatBreakdown:
    base_amount: Decimal
    vat_amount: Decimal


def to_decimal(value: Decimal | int | str | float) -> Decimal:
    """Decimal from str() so floats keep their printed value."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round2(value: Decimal | int | str | float) -> Decimal:
    """Round to 2 decimals with ROUND_HALF_UP."""
    return to_decimal(value).quantize(_CENT, rounding=ROUND_HALF_UP)


def compute_line_vat(
    unit_price: Decimal | int | str | float,
    quantity: Decimal | int | str | float,
    discount: Decimal | int | str | float = 0,
    rate: Decimal | str = VAT_RATE,
    position: int | None = None,
) -> LineAmounts:
    """
    Split one tax-inclusive line into base and VAT.

    Raises:
        InvalidLineItem: negative unit price, quantity or discount, or discount > gross.
    """
    price = to_decimal(unit_price)
    qty = to_decimal(quantity)
    disc = to_decimal(discount)
    if price < 0:
        raise InvalidLineItem(f"unit price must not be negative (got {price})", position)
    if qty < 0:
        raise InvalidLineItem(f"quantity must not be negative (got {qty})", position)
    if disc < 0:
        raise InvalidLineItem(f"discount must not be negative (got {disc})", position)

    gross = price * qty
    if disc > gross:
        raise InvalidLineItem(f"discount {disc} exceeds gross amount {gross}", position)

    net = gross - disc
    base = round2(net / (1 + to_decimal(rate)))
    vat = round2(net - base)
    return LineAmounts(base_amount=base, vat_amount=vat, line_total=base + vat)


def line_fields(line, index: int) -> tuple:
    """(unit_price, quantity, discount, position) from a LineItem, mapping or tuple."""
    if isinstance(line, Mapping):
        if "total" in line and "unit_price" not in line and "unitPrice" not in line:
            return line["total"], 1, line.get("discount", 0), line.get("position", index)
        return (
            line.get("unit_price", line.get("unitPrice", 0)),
            line.get("quantity", 1),
            line.get("discount", 0),
            line.get("position", index),
        )
    if isinstance(line, (tuple, list)):
        price, qty, *rest = line
        return price, qty, rest[0] if rest else 0, index
    return line.unit_price, line.quantity, line.discount, getattr(line, "position", index)


def compute_line_amounts(lines: Iterable, rate: Decimal | str = VAT_RATE) -> list[LineAmounts]:
    """Per-line amounts, in input order. Lines may be LineItem models, mappings or tuples."""
    amounts = []
    for index, line in enumerate(lines, start=1):
        price, qty, disc, position = line_fields(line, index)
        amounts.append(compute_line_vat(price, qty, disc, rate=rate, position=position))
    return amounts


def compute_invoice_totals(lines: Iterable, rate: Decimal | str = VAT_RATE) -> InvoiceTotals:
    """Sum of already-rounded line components. No re-rounding at invoice level."""
    base = ZERO
    vat = ZERO
    for amounts in compute_line_amounts(lines, rate=rate):
        base += amounts.base_amount
        vat += amounts.vat_amount
    return InvoiceTotals(base_amount=base, vat_amount=vat, invoice_total=base + vat)


def derive_vat_from_total(
    total_amount: Decimal | int | str | float,
    rate: Decimal | str = VAT_RATE,
) -> VatBreakdown:
    """
    Approximate base/VAT split for a total captured without line detail.
    Per-line summation is authoritative whenever lines exist; do not mix the two
    derivations for the same invoice.
    """
    total = round2(total_amount)
    base = round2(total / (1 + to_decimal(rate)))
    return VatBreakdown(base_amount=base, vat_amount=total - base)
