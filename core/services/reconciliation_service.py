"""
Payment reconciliation: keeps an invoice's balance in step with its payments.

amount_paid is always recomputed from the payment rows (amount minus refunds
of every completed or refunded payment), never incremented. Applying the same
payment twice, or reconciling after a refund, therefore lands on the same
numbers.
"""

import logging
from dataclasses import dataclass
from uuid import UUID

from clients.postgres_client import PostgresClient, PostgresTransaction
from core.audit import AuditLogger, AuditAction, compute_changes
from core.billing import resolve_invoice_balance, sum_net_payments
from core.errors import NotFoundError, ValidationError
from core.event_bus import EventBus
from core.events import InvoicePaid
from core.models import Invoice, InvoiceStatus, PaymentStatus
from core.services.booking_service import BookingService
from utils.timezone import now_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Reconciliation:
    """Invoice before and after a reconcile."""

    before: Invoice
    after: Invoice

    @property
    def became_paid(self) -> bool:
        return self.after.status == InvoiceStatus.PAID and self.before.status != InvoiceStatus.PAID


class PaymentReconciler:
    """Applies payments and refunds to invoices."""

    def __init__(
        self,
        postgres: PostgresClient,
        audit: AuditLogger,
        event_bus: EventBus,
        bookings: BookingService,
    ):
        self.postgres = postgres
        self.audit = audit
        self.event_bus = event_bus
        self.bookings = bookings

    def reconcile(
        self,
        tx: PostgresTransaction,
        invoice_id: UUID,
        payment_id: UUID | None = None,
    ) -> Reconciliation:
        """
        Recompute an invoice's balance inside the caller's transaction.

        Locks the invoice row, sums its payments, writes amount_paid,
        amount_due, status and paid_at, and confirms a pending booking once
        the invoice is paid. Publishing events is left to the caller, after
        commit.

        Raises:
            NotFoundError: Invoice missing
        """
        row = tx.execute_single(
            "SELECT * FROM invoices WHERE id = %s FOR UPDATE",
            (invoice_id,)
        )
        if row is None:
            raise NotFoundError(f"Invoice {invoice_id} not found")
        current = Invoice.model_validate(row)

        payments = tx.execute(
            """
            SELECT amount, refund_amount FROM payments
            WHERE invoice_id = %s AND status = ANY(%s)
            """,
            (invoice_id, [PaymentStatus.COMPLETED.value, PaymentStatus.REFUNDED.value])
        )
        amount_paid = sum_net_payments((p["amount"], p["refund_amount"]) for p in payments)

        balance = resolve_invoice_balance(current.total, amount_paid, current.status)
        now = now_utc()

        if balance.is_paid:
            paid_at = current.paid_at or now
        else:
            paid_at = None

        if current.status == InvoiceStatus.CANCELLED and amount_paid > 0:
            logger.warning(f"Payment recorded against cancelled invoice {current.invoice_number}")

        updated_row = tx.execute_returning(
            """
            UPDATE invoices SET
                amount_paid = %(amount_paid)s,
                amount_due = %(amount_due)s,
                status = %(status)s,
                paid_at = %(paid_at)s,
                updated_at = %(updated_at)s
            WHERE id = %(id)s
            RETURNING *
            """,
            {
                "id": invoice_id,
                "amount_paid": balance.amount_paid,
                "amount_due": balance.amount_due,
                "status": balance.status.value,
                "paid_at": paid_at,
                "updated_at": now,
            }
        )[0]
        updated = Invoice.model_validate(updated_row)

        if updated.credit_amount > 0:
            logger.warning(
                f"Invoice {updated.invoice_number} overpaid by {updated.credit_amount} {updated.currency}"
            )

        if balance.is_paid and updated.booking_id is not None:
            self.bookings.confirm_paid(updated.booking_id, tx)

        changes = compute_changes(
            current.model_dump(mode="json"),
            updated.model_dump(mode="json")
        )
        if changes:
            self.audit.log_change(
                entity_type="invoice",
                entity_id=invoice_id,
                action=AuditAction.PAYMENT_APPLIED,
                changes=changes,
                metadata={"payment_id": str(payment_id) if payment_id else None},
                tx=tx,
            )

        return Reconciliation(before=current, after=updated)

    def apply_payment_to_invoice(self, payment_id: UUID, invoice_id: UUID) -> Invoice:
        """
        Apply a recorded payment to its invoice.

        Raises:
            NotFoundError: Payment or invoice missing
            ValidationError: Payment belongs to a different invoice
        """
        with self.postgres.transaction() as tx:
            payment = tx.execute_single(
                "SELECT id, invoice_id FROM payments WHERE id = %s",
                (payment_id,)
            )
            if payment is None:
                raise NotFoundError(f"Payment {payment_id} not found")
            if payment["invoice_id"] is None or str(payment["invoice_id"]) != str(invoice_id):
                raise ValidationError(f"Payment {payment_id} is not linked to invoice {invoice_id}")

            result = self.reconcile(tx, invoice_id, payment_id=payment_id)

        if result.became_paid:
            self.event_bus.publish(InvoicePaid.create(invoice=result.after))

        logger.info(
            f"Payment {payment_id} applied to invoice {result.after.invoice_number}: "
            f"paid {result.after.amount_paid}, due {result.after.amount_due}, {result.after.status.value}"
        )
        return result.after
