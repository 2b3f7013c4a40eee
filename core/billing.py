"""
Invoice arithmetic.

Pure functions over Decimal, no I/O. Every money value leaving this module is
rounded to cents with ROUND_HALF_UP; percents are rounded to 2 places.

Totals are computed once from aggregates:

    subtotal       = Σ quantity × unit_price
    discount       = subtotal × discount_percentage / 100, else the explicit amount
    taxable_amount = Σ taxable line totals − discount   (never below 0)
    tax_amount     = taxable_amount × tax_rate / 100
    total          = subtotal − discount + tax_amount

Per-item tax is stored for display only and is never re-summed into the total.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Sequence

from core.models import InvoiceStatus, LineItemInput

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
HUNDRED = Decimal("100")
ZERO = Decimal("0.00")


def round_money(value) -> Decimal:
    """Round to cents, half up."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def round_percent(value) -> Decimal:
    """Round a percent (10 = 10%) to 2 places."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount) -> int:
    """Money to integer cents, as card gateways expect."""
    return int(round_money(amount) * HUNDRED)


def from_minor_units(cents: int) -> Decimal:
    """Integer cents back to money."""
    return round_money(Decimal(cents) / HUNDRED)


@dataclass(frozen=True)
class LineItemTotals:
    """Computed figures for one line item."""

    total: Decimal
    tax_rate: Decimal
    tax_amount: Decimal


@dataclass(frozen=True)
class InvoiceTotals:
    """Computed invoice figures, ready to persist."""

    subtotal: Decimal
    discount_percentage: Decimal
    discount_amount: Decimal
    taxable_amount: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    total: Decimal
    line_items: tuple[LineItemTotals, ...]


def calculate_invoice_totals(
    line_items: Sequence[LineItemInput],
    tax_rate: Decimal | None = None,
    discount_percentage: Decimal | None = None,
    discount_amount: Decimal | None = None,
) -> InvoiceTotals:
    """
    Compute subtotal, discount, tax and total for a set of line items.

    A non-zero discount_percentage wins over discount_amount. The discount is
    capped at the subtotal so the total can never go negative.

    Args:
        line_items: Items to bill
        tax_rate: Percent applied to the taxable amount (None = 0)
        discount_percentage: Percent of the subtotal to take off
        discount_amount: Fixed amount to take off when no percentage is given

    Returns:
        InvoiceTotals with one LineItemTotals per input item, same order
    """
    rate = round_percent(tax_rate or 0)

    subtotal = ZERO
    taxable_sum = ZERO
    item_totals = []
    for item in line_items:
        line_total = round_money(item.quantity * item.unit_price)
        subtotal += line_total
        if item.taxable:
            taxable_sum += line_total
            item_rate = rate
            item_tax = round_money(line_total * rate / HUNDRED)
        else:
            item_rate = ZERO
            item_tax = ZERO
        item_totals.append(LineItemTotals(total=line_total, tax_rate=item_rate, tax_amount=item_tax))

    if discount_percentage:
        percentage = round_percent(discount_percentage)
        discount = round_money(subtotal * percentage / HUNDRED)
    else:
        percentage = ZERO
        discount = round_money(discount_amount or 0)

    if discount > subtotal:
        logger.warning(f"Discount {discount} exceeds subtotal {subtotal}, capping")
        discount = subtotal

    taxable_amount = max(taxable_sum - discount, ZERO)
    tax_amount = round_money(taxable_amount * rate / HUNDRED)
    total = subtotal - discount + tax_amount

    return InvoiceTotals(
        subtotal=subtotal,
        discount_percentage=percentage,
        discount_amount=discount,
        taxable_amount=taxable_amount,
        tax_rate=rate,
        tax_amount=tax_amount,
        total=total,
        line_items=tuple(item_totals),
    )


@dataclass(frozen=True)
class InvoiceBalance:
    """Invoice payment position derived from its payments."""

    amount_paid: Decimal
    amount_due: Decimal
    status: InvoiceStatus

    @property
    def is_paid(self) -> bool:
        return self.status == InvoiceStatus.PAID


def sum_net_payments(payments: Iterable[tuple[Decimal, Decimal]]) -> Decimal:
    """Σ(amount − refund_amount) over (amount, refund_amount) pairs."""
    return round_money(sum((amount - (refunded or 0) for amount, refunded in payments), ZERO))


def resolve_invoice_balance(
    total: Decimal,
    amount_paid: Decimal,
    current_status: InvoiceStatus,
) -> InvoiceBalance:
    """
    Derive amount_due and status from what has been paid.

    - amount_paid ≥ total → PAID
    - 0 < amount_paid < total → PARTIALLY_PAID
    - nothing paid → current status, except a PAID / PARTIALLY_PAID invoice
      falls back to SENT (everything was refunded)

    amount_due never goes below 0. A cancelled invoice keeps its status.
    """
    total = round_money(total)
    amount_paid = round_money(amount_paid)
    amount_due = max(total - amount_paid, ZERO)

    if current_status == InvoiceStatus.CANCELLED:
        status = InvoiceStatus.CANCELLED
    elif amount_paid > 0 and amount_paid >= total:
        status = InvoiceStatus.PAID
    elif amount_paid > 0:
        status = InvoiceStatus.PARTIALLY_PAID
    elif current_status in (InvoiceStatus.PAID, InvoiceStatus.PARTIALLY_PAID):
        status = InvoiceStatus.SENT
    else:
        status = current_status

    if amount_paid > total:
        logger.warning(f"Overpayment: paid {amount_paid} against total {total}")

    return InvoiceBalance(amount_paid=amount_paid, amount_due=amount_due, status=status)


def reminder_due(
    days_overdue: int,
    schedule: Sequence[int],
    last_reminder_days: int | None,
) -> bool:
    """True when today's offset is on the schedule and not already reminded for it."""
    if days_overdue not in schedule:
        return False
    return last_reminder_days != days_overdue
