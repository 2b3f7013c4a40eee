"""
Invoice service: building, editing, sending and listing invoices.

Invoices are built from line items and priced once from aggregates (see
core.billing). Every mutation that touches money runs in one transaction
with the invoice row locked, so totals, balance and status are always
written together.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Sequence
from uuid import UUID, uuid4

from clients.postgres_client import PostgresClient, PostgresTransaction
from core.audit import AuditLogger, AuditAction, compute_changes
from core.billing import InvoiceTotals, calculate_invoice_totals, resolve_invoice_balance
from core.config import BillingConfig
from core.errors import ConflictError, ErrorCodes, NotFoundError, ValidationError
from core.event_bus import EventBus
from core.events import InvoicePaid, InvoiceSent
from core.models import (
    Invoice, InvoiceCreate, InvoiceUpdate, InvoiceFilters, InvoiceStatus,
    LineItem, LineItemInput, OUTSTANDING_STATUSES,
)
from core.services.booking_service import BookingService
from core.services.client_service import ClientService
from core.services.studio_service import StudioService
from utils.tenant_context import get_current_user_id
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

_MAX_PAGE_SIZE = 100


class InvoiceService:
    """Service for invoice operations."""

    def __init__(
        self,
        postgres: PostgresClient,
        audit: AuditLogger,
        event_bus: EventBus,
        studios: StudioService,
        clients: ClientService,
        bookings: BookingService,
        config: BillingConfig | None = None,
    ):
        self.postgres = postgres
        self.audit = audit
        self.event_bus = event_bus
        self.studios = studios
        self.clients = clients
        self.bookings = bookings
        self.config = config or BillingConfig()

    # =========================================================================
    # CREATE / EDIT
    # =========================================================================

    def _generate_invoice_number(self, tx: PostgresTransaction, studio_id: UUID, now: datetime) -> str:
        """
        Next invoice number for the studio.

        Format: INV-YYYYMMDD-NNNN where NNNN restarts at 0001 each day.
        """
        prefix = f"INV-{now.strftime('%Y%m%d')}-"

        result = tx.execute_single(
            """
            SELECT invoice_number FROM invoices
            WHERE studio_id = %s AND invoice_number LIKE %s
            ORDER BY invoice_number DESC
            LIMIT 1
            """,
            (studio_id, f"{prefix}%")
        )

        if result is None:
            sequence = 1
        else:
            try:
                sequence = int(result["invoice_number"].split("-")[-1]) + 1
            except (ValueError, IndexError):
                sequence = 1

        return f"{prefix}{sequence:04d}"

    def _insert_line_items(
        self,
        tx: PostgresTransaction,
        invoice_id: UUID,
        items: Sequence[LineItemInput],
        totals: InvoiceTotals,
        now: datetime,
    ) -> None:
        for sort_order, (item, figures) in enumerate(zip(items, totals.line_items)):
            tx.execute(
                """
                INSERT INTO invoice_line_items (
                    id, invoice_id, description, quantity, unit_price, total,
                    taxable, tax_rate, tax_amount, category, sort_order, created_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    uuid4(), invoice_id, item.description, item.quantity, item.unit_price,
                    figures.total, item.taxable, figures.tax_rate, figures.tax_amount,
                    item.category, sort_order, now
                )
            )

    def create_invoice(self, data: InvoiceCreate) -> Invoice:
        """
        Create a DRAFT invoice with its line items.

        Tax rate defaults to the studio's rate, currency to the studio's
        currency.

        Raises:
            ValidationError: No line items, or booking belongs to another client
            NotFoundError: Studio, client or booking missing
        """
        if not data.line_items:
            raise ValidationError("Invoice must have at least one line item")

        studio = self.studios.get_current()
        client = self.clients.require(data.client_id)

        if data.booking_id is not None:
            booking = self.bookings.get_by_id(data.booking_id)
            if booking is None:
                raise NotFoundError(f"Booking {data.booking_id} not found")
            if booking.client_id != client.id:
                raise ValidationError(
                    f"Booking {data.booking_id} does not belong to client {client.id}"
                )

        tax_rate = data.tax_rate if data.tax_rate is not None else studio.tax_rate
        totals = calculate_invoice_totals(
            data.line_items,
            tax_rate=tax_rate,
            discount_percentage=data.discount_percentage,
            discount_amount=data.discount_amount,
        )

        now = now_utc()
        currency = (data.currency or studio.currency or self.config.default_currency).upper()

        with self.postgres.transaction() as tx:
            invoice_number = self._generate_invoice_number(tx, studio.id, now)

            row = tx.execute_returning(
                """
                INSERT INTO invoices (
                    id, studio_id, client_id, booking_id, created_by,
                    invoice_number, status, currency,
                    subtotal, discount_percentage, discount_amount,
                    tax_rate, tax_amount, total, amount_paid, amount_due,
                    issue_date, due_date, payment_terms, notes,
                    created_at, updated_at
                ) VALUES (
                    %(id)s, %(studio_id)s, %(client_id)s, %(booking_id)s, %(created_by)s,
                    %(invoice_number)s, %(status)s, %(currency)s,
                    %(subtotal)s, %(discount_percentage)s, %(discount_amount)s,
                    %(tax_rate)s, %(tax_amount)s, %(total)s, %(amount_paid)s, %(amount_due)s,
                    %(issue_date)s, %(due_date)s, %(payment_terms)s, %(notes)s,
                    %(created_at)s, %(updated_at)s
                )
                RETURNING *
                """,
                {
                    "id": uuid4(),
                    "studio_id": studio.id,
                    "client_id": client.id,
                    "booking_id": data.booking_id,
                    "created_by": get_current_user_id(),
                    "invoice_number": invoice_number,
                    "status": InvoiceStatus.DRAFT.value,
                    "currency": currency,
                    "subtotal": totals.subtotal,
                    "discount_percentage": totals.discount_percentage,
                    "discount_amount": totals.discount_amount,
                    "tax_rate": totals.tax_rate,
                    "tax_amount": totals.tax_amount,
                    "total": totals.total,
                    "amount_paid": Decimal("0.00"),
                    "amount_due": totals.total,
                    "issue_date": data.issue_date or now,
                    "due_date": data.due_date,
                    "payment_terms": data.payment_terms,
                    "notes": data.notes,
                    "created_at": now,
                    "updated_at": now,
                }
            )[0]

            invoice = Invoice.model_validate(row)
            self._insert_line_items(tx, invoice.id, data.line_items, totals, now)

            self.audit.log_change(
                entity_type="invoice",
                entity_id=invoice.id,
                action=AuditAction.CREATE,
                changes={
                    "created": {
                        "invoice_number": invoice.invoice_number,
                        "client_id": str(client.id),
                        "booking_id": str(data.booking_id) if data.booking_id else None,
                        "line_item_count": len(data.line_items),
                        "subtotal": str(totals.subtotal),
                        "discount_amount": str(totals.discount_amount),
                        "tax_amount": str(totals.tax_amount),
                        "total": str(totals.total),
                    }
                },
                tx=tx,
            )

        self.clients.update_statistics(client.id)

        logger.info(f"Invoice {invoice.invoice_number} created for client {client.id}: {invoice.total}")
        return invoice

    def _lock(self, tx: PostgresTransaction, invoice_id: UUID) -> Invoice:
        row = tx.execute_single(
            "SELECT * FROM invoices WHERE id = %s FOR UPDATE",
            (invoice_id,)
        )
        if row is None:
            raise NotFoundError(f"Invoice {invoice_id} not found")
        return Invoice.model_validate(row)

    def _ensure_editable(self, invoice: Invoice) -> None:
        if invoice.status == InvoiceStatus.PAID:
            raise ConflictError(
                f"Invoice {invoice.invoice_number} is paid and cannot be changed",
                code=ErrorCodes.INVOICE_ALREADY_PAID,
            )
        if invoice.status == InvoiceStatus.CANCELLED:
            raise ConflictError(
                f"Invoice {invoice.invoice_number} is cancelled",
                code=ErrorCodes.INVOICE_CANCELLED,
            )

    def update_invoice(self, invoice_id: UUID, data: InvoiceUpdate) -> Invoice:
        """
        Edit an unpaid invoice.

        New line items replace the old ones. Totals are recomputed whenever
        line items, discount or tax change; amount_due is re-derived from
        what has already been paid. Moving to SENT for the first time sends
        the invoice email.

        Raises:
            NotFoundError: Invoice missing
            ConflictError: Invoice is PAID or CANCELLED
            ValidationError: Replacement line items are empty
        """
        updates = data.model_dump(exclude_unset=True)
        now = now_utc()

        with self.postgres.transaction() as tx:
            current = self._lock(tx, invoice_id)
            self._ensure_editable(current)

            if data.line_items is not None:
                if not data.line_items:
                    raise ValidationError("Invoice must have at least one line item")
                items = data.line_items
            else:
                items = [
                    LineItemInput(
                        description=item.description,
                        quantity=item.quantity,
                        unit_price=item.unit_price,
                        taxable=item.taxable,
                        category=item.category,
                    )
                    for item in self._line_items(tx, invoice_id)
                ]

            if "discount_percentage" in updates or "discount_amount" in updates:
                discount_percentage = data.discount_percentage
                discount_amount = data.discount_amount
            else:
                discount_percentage = current.discount_percentage
                discount_amount = current.discount_amount

            tax_rate = data.tax_rate if data.tax_rate is not None else current.tax_rate

            totals = calculate_invoice_totals(
                items,
                tax_rate=tax_rate,
                discount_percentage=discount_percentage,
                discount_amount=discount_amount,
            )

            # Once money is in, status follows the balance, not the request
            balance = resolve_invoice_balance(totals.total, current.amount_paid, current.status)
            if current.amount_paid > 0:
                status = balance.status
            else:
                status = data.status or current.status
            amount_due = balance.amount_due
            became_paid = status == InvoiceStatus.PAID
            paid_at = (current.paid_at or now) if became_paid else None

            first_send = status == InvoiceStatus.SENT and current.sent_at is None

            if data.line_items is not None:
                tx.execute("DELETE FROM invoice_line_items WHERE invoice_id = %s", (invoice_id,))
                self._insert_line_items(tx, invoice_id, items, totals, now)

            row = tx.execute_returning(
                """
                UPDATE invoices SET
                    status = %(status)s,
                    subtotal = %(subtotal)s,
                    discount_percentage = %(discount_percentage)s,
                    discount_amount = %(discount_amount)s,
                    tax_rate = %(tax_rate)s,
                    tax_amount = %(tax_amount)s,
                    total = %(total)s,
                    amount_due = %(amount_due)s,
                    due_date = %(due_date)s,
                    payment_terms = %(payment_terms)s,
                    notes = %(notes)s,
                    sent_at = %(sent_at)s,
                    paid_at = %(paid_at)s,
                    updated_at = %(updated_at)s
                WHERE id = %(id)s
                RETURNING *
                """,
                {
                    "id": invoice_id,
                    "status": status.value,
                    "paid_at": paid_at,
                    "subtotal": totals.subtotal,
                    "discount_percentage": totals.discount_percentage,
                    "discount_amount": totals.discount_amount,
                    "tax_rate": totals.tax_rate,
                    "tax_amount": totals.tax_amount,
                    "total": totals.total,
                    "amount_due": amount_due,
                    "due_date": data.due_date or current.due_date,
                    "payment_terms": updates.get("payment_terms", current.payment_terms),
                    "notes": updates.get("notes", current.notes),
                    "sent_at": now if first_send else current.sent_at,
                    "updated_at": now,
                }
            )[0]

            updated = Invoice.model_validate(row)

            if became_paid and updated.booking_id is not None:
                self.bookings.confirm_paid(updated.booking_id, tx)

            changes = compute_changes(
                current.model_dump(mode="json"),
                updated.model_dump(mode="json")
            )
            if data.line_items is not None:
                changes["line_items"] = {"replaced": len(items)}
            if changes:
                self.audit.log_change(
                    entity_type="invoice",
                    entity_id=invoice_id,
                    action=AuditAction.UPDATE,
                    changes=changes,
                    tx=tx,
                )

        if first_send:
            self.event_bus.publish(InvoiceSent.create(invoice=updated))
        if became_paid:
            logger.info(
                f"Invoice {updated.invoice_number} settled by edit: "
                f"total {updated.total}, paid {updated.amount_paid}"
            )
            self.event_bus.publish(InvoicePaid.create(invoice=updated))

        return updated

    def send_invoice(self, invoice_id: UUID) -> Invoice:
        """
        Send an invoice to its client.

        First send moves DRAFT to SENT and stamps sent_at. Sending again
        re-sends the email and leaves sent_at alone.

        Raises:
            NotFoundError: Invoice missing
            ConflictError: Invoice is PAID or CANCELLED
        """
        now = now_utc()

        with self.postgres.transaction() as tx:
            current = self._lock(tx, invoice_id)
            self._ensure_editable(current)

            resend = current.sent_at is not None
            if resend:
                invoice = current
            else:
                status = InvoiceStatus.SENT if current.status == InvoiceStatus.DRAFT else current.status
                row = tx.execute_returning(
                    """
                    UPDATE invoices
                    SET status = %s, sent_at = %s, updated_at = %s
                    WHERE id = %s
                    RETURNING *
                    """,
                    (status.value, now, now, invoice_id)
                )[0]
                invoice = Invoice.model_validate(row)

            self.audit.log_change(
                entity_type="invoice",
                entity_id=invoice_id,
                action=AuditAction.INVOICE_SENT,
                changes={
                    "status": {"old": current.status.value, "new": invoice.status.value},
                    "sent_at": {
                        "old": current.sent_at.isoformat() if current.sent_at else None,
                        "new": invoice.sent_at.isoformat() if invoice.sent_at else None,
                    },
                },
                metadata={"resend": resend},
                tx=tx,
            )

        self.event_bus.publish(InvoiceSent.create(invoice=invoice, resend=resend))

        logger.info(f"Invoice {invoice.invoice_number} {'re-sent' if resend else 'sent'}")
        return invoice

    def mark_viewed(self, invoice_id: UUID) -> Invoice:
        """
        Record that the client opened the invoice.

        SENT becomes VIEWED; other statuses only get viewed_at stamped.
        Repeat views change nothing.
        """
        current = self.require(invoice_id)
        if current.viewed_at is not None:
            return current

        if current.status in (InvoiceStatus.DRAFT, InvoiceStatus.CANCELLED):
            raise ConflictError(f"Invoice {current.invoice_number} has not been sent")

        status = InvoiceStatus.VIEWED if current.status == InvoiceStatus.SENT else current.status
        now = now_utc()
        row = self.postgres.execute_returning(
            """
            UPDATE invoices
            SET status = %s, viewed_at = %s, updated_at = %s
            WHERE id = %s
            RETURNING *
            """,
            (status.value, now, now, invoice_id)
        )[0]

        updated = Invoice.model_validate(row)

        self.audit.log_change(
            entity_type="invoice",
            entity_id=invoice_id,
            action=AuditAction.UPDATE,
            changes={
                "status": {"old": current.status.value, "new": status.value},
                "viewed_at": {"old": None, "new": now.isoformat()},
            }
        )

        return updated

    def cancel_invoice(self, invoice_id: UUID) -> Invoice:
        """
        Cancel an invoice nobody has paid anything on.

        Raises:
            NotFoundError: Invoice missing
            ConflictError: Invoice is PAID or has payments applied
        """
        now = now_utc()

        with self.postgres.transaction() as tx:
            current = self._lock(tx, invoice_id)

            if current.status == InvoiceStatus.CANCELLED:
                return current
            if current.status == InvoiceStatus.PAID or current.amount_paid > 0:
                raise ConflictError(
                    f"Invoice {current.invoice_number} has payments and cannot be cancelled",
                    code=ErrorCodes.INVOICE_ALREADY_PAID,
                )

            row = tx.execute_returning(
                """
                UPDATE invoices
                SET status = %s, cancelled_at = %s, updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (InvoiceStatus.CANCELLED.value, now, now, invoice_id)
            )[0]

            updated = Invoice.model_validate(row)

            self.audit.log_change(
                entity_type="invoice",
                entity_id=invoice_id,
                action=AuditAction.INVOICE_CANCELLED,
                changes={
                    "status": {"old": current.status.value, "new": InvoiceStatus.CANCELLED.value},
                    "cancelled_at": {"old": None, "new": now.isoformat()},
                },
                tx=tx,
            )

        return updated

    # =========================================================================
    # REMINDERS
    # =========================================================================

    def list_reminder_candidates(self, now: datetime) -> list[Invoice]:
        """Outstanding invoices already past their due date."""
        rows = self.postgres.execute(
            """
            SELECT * FROM invoices
            WHERE status = ANY(%s) AND due_date < %s
            ORDER BY due_date ASC
            """,
            ([s.value for s in OUTSTANDING_STATUSES], now)
        )
        return [Invoice.model_validate(row) for row in rows]

    def record_reminder(self, invoice_id: UUID, days_overdue: int) -> Invoice | None:
        """
        Mark invoice OVERDUE and remember which reminder offset went out.

        Only outstanding invoices are touched. None when the invoice was
        paid or cancelled after the sweep listed it.
        """
        now = now_utc()
        rows = self.postgres.execute_returning(
            """
            UPDATE invoices
            SET status = %s, last_reminder_days = %s, last_reminder_sent_at = %s, updated_at = %s
            WHERE id = %s AND status = ANY(%s)
            RETURNING *
            """,
            (
                InvoiceStatus.OVERDUE.value, days_overdue, now, now, invoice_id,
                [s.value for s in OUTSTANDING_STATUSES],
            )
        )
        if not rows:
            return None
        return Invoice.model_validate(rows[0])

    # =========================================================================
    # READ
    # =========================================================================

    def get_by_id(self, invoice_id: UUID) -> Invoice | None:
        """Get invoice by ID, None if not in this studio."""
        row = self.postgres.execute_single(
            "SELECT * FROM invoices WHERE id = %s",
            (invoice_id,)
        )

        if row is None:
            return None

        return Invoice.model_validate(row)

    def require(self, invoice_id: UUID) -> Invoice:
        """Get invoice by ID or raise NotFoundError."""
        invoice = self.get_by_id(invoice_id)
        if invoice is None:
            raise NotFoundError(f"Invoice {invoice_id} not found")
        return invoice

    def _line_items(self, executor, invoice_id: UUID) -> list[LineItem]:
        rows = executor.execute(
            """
            SELECT * FROM invoice_line_items
            WHERE invoice_id = %s
            ORDER BY sort_order ASC
            """,
            (invoice_id,)
        )
        return [LineItem.model_validate(row) for row in rows]

    def list_line_items(self, invoice_id: UUID) -> list[LineItem]:
        """Line items of an invoice in display order."""
        return self._line_items(self.postgres, invoice_id)

    def _filter_clause(self, filters: InvoiceFilters) -> tuple[str, list[Any]]:
        conditions = []
        params: list[Any] = []

        if filters.search:
            pattern = f"%{filters.search}%"
            conditions.append(
                "(i.invoice_number ILIKE %s OR c.first_name ILIKE %s"
                " OR c.last_name ILIKE %s OR c.email ILIKE %s)"
            )
            params.extend([pattern] * 4)
        if filters.status is not None:
            conditions.append("i.status = %s")
            params.append(filters.status.value)
        if filters.client_id is not None:
            conditions.append("i.client_id = %s")
            params.append(filters.client_id)
        if filters.booking_id is not None:
            conditions.append("i.booking_id = %s")
            params.append(filters.booking_id)
        if filters.start_date is not None:
            conditions.append("i.issue_date >= %s")
            params.append(filters.start_date)
        if filters.end_date is not None:
            conditions.append("i.issue_date <= %s")
            params.append(filters.end_date)
        if filters.min_amount is not None:
            conditions.append("i.total >= %s")
            params.append(filters.min_amount)
        if filters.max_amount is not None:
            conditions.append("i.total <= %s")
            params.append(filters.max_amount)
        if filters.overdue:
            conditions.append("i.due_date < %s AND i.status = ANY(%s)")
            params.extend([now_utc(), [s.value for s in OUTSTANDING_STATUSES]])

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        return where, params

    def list_invoices(
        self,
        filters: InvoiceFilters | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> list[Invoice]:
        """
        List invoices matching filters, newest first.

        Args:
            filters: Optional filters (search matches number and client name/email)
            page: 1-based page number
            limit: Page size, capped at 100
        """
        page = max(page, 1)
        limit = min(max(limit, 1), _MAX_PAGE_SIZE)
        where, params = self._filter_clause(filters or InvoiceFilters())

        rows = self.postgres.execute(
            f"""
            SELECT i.* FROM invoices i
            JOIN clients c ON c.id = i.client_id
            {where}
            ORDER BY i.created_at DESC
            LIMIT %s OFFSET %s
            """,
            tuple(params + [limit, (page - 1) * limit])
        )

        return [Invoice.model_validate(row) for row in rows]

    def count_invoices(self, filters: InvoiceFilters | None = None) -> int:
        """Total matching invoices, for pagination."""
        where, params = self._filter_clause(filters or InvoiceFilters())
        result = self.postgres.execute_scalar(
            f"""
            SELECT COUNT(*) FROM invoices i
            JOIN clients c ON c.id = i.client_id
            {where}
            """,
            tuple(params)
        )
        return int(result or 0)

    def list_for_client(self, client_id: UUID, limit: int = 50) -> list[Invoice]:
        """Invoices of one client, newest first."""
        rows = self.postgres.execute(
            """
            SELECT * FROM invoices
            WHERE client_id = %s
            ORDER BY created_at DESC
            LIMIT %s
            """,
            (client_id, limit)
        )

        return [Invoice.model_validate(row) for row in rows]
