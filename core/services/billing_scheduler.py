"""
Periodic billing sweeps: recurring invoices and overdue reminders.

Both sweeps are best-effort. Each booking or invoice is its own unit of
work; a failure is logged with the record id and the sweep moves on. An
external trigger (cron) calls run() once a day.
"""

import logging
from decimal import Decimal
from typing import Any, Iterable
from uuid import UUID

from core.billing import reminder_due
from core.config import BillingConfig
from core.models import Invoice, InvoiceCreate, LineItemInput
from core.notifications import BillingMailer
from core.services.booking_service import BookingService
from core.services.invoice_service import InvoiceService
from core.services.studio_service import StudioService
from utils.tenant_context import tenant_context
from utils.timezone import days_from_now, now_utc, whole_days_between

logger = logging.getLogger(__name__)


class BillingScheduler:
    """Runs the recurring-invoice and payment-reminder sweeps."""

    def __init__(
        self,
        invoices: InvoiceService,
        bookings: BookingService,
        studios: StudioService,
        mailer: BillingMailer,
        config: BillingConfig | None = None,
    ):
        self.invoices = invoices
        self.bookings = bookings
        self.studios = studios
        self.mailer = mailer
        self.config = config or BillingConfig()

    def process_recurring_invoices(self, studio_id: UUID) -> list[Invoice]:
        """
        Invoice every completed recurring booking that has no invoice yet.

        Each invoice has one line item for the booking's full amount and
        the configured terms (Net 30 by default). Runs as the system user.

        Returns:
            Invoices created in this run
        """
        created = []

        with tenant_context(studio_id):
            bookings = self.bookings.list_uninvoiced_recurring()

            for booking in bookings:
                try:
                    invoice = self.invoices.create_invoice(InvoiceCreate(
                        client_id=booking.client_id,
                        booking_id=booking.id,
                        due_date=days_from_now(self.config.recurring_invoice_terms_days),
                        line_items=[LineItemInput(
                            description=booking.title,
                            quantity=Decimal("1"),
                            unit_price=booking.total_amount,
                            category=booking.booking_type,
                        )],
                        currency=booking.currency,
                        payment_terms=self.config.recurring_payment_terms,
                    ))
                    created.append(invoice)
                except Exception as e:
                    logger.error(
                        f"Recurring invoice failed for booking {booking.id} in studio {studio_id}: {e}"
                    )

        logger.info(
            f"Recurring sweep for studio {studio_id}: {len(created)} of {len(bookings)} bookings invoiced"
        )
        return created

    def send_payment_reminders(self, studio_id: UUID) -> dict[str, int]:
        """
        Email reminders for invoices whose days past due hit the schedule.

        An invoice is reminded at most once per offset (last_reminder_days),
        so running the sweep twice on the same day sends nothing new. The
        first reminder moves the invoice to OVERDUE.

        Returns:
            Counts: checked, sent, failed
        """
        summary = {"checked": 0, "sent": 0, "failed": 0}
        schedule = self.config.reminder_schedule_days

        with tenant_context(studio_id):
            now = now_utc()
            candidates = self.invoices.list_reminder_candidates(now)
            summary["checked"] = len(candidates)

            for invoice in candidates:
                days_overdue = whole_days_between(invoice.due_date, now)
                if not reminder_due(days_overdue, schedule, invoice.last_reminder_days):
                    continue

                try:
                    self.mailer.send_payment_reminder(invoice, days_overdue)
                    if self.invoices.record_reminder(invoice.id, days_overdue) is None:
                        logger.warning(
                            f"Invoice {invoice.invoice_number} settled during the reminder sweep, left as is"
                        )
                        continue
                    summary["sent"] += 1
                except Exception as e:
                    summary["failed"] += 1
                    logger.error(
                        f"Reminder failed for invoice {invoice.invoice_number} "
                        f"({days_overdue} days overdue): {e}"
                    )

        logger.info(f"Reminder sweep for studio {studio_id}: {summary}")
        return summary

    def run(self, studio_ids: Iterable[UUID] | None = None) -> dict[UUID, dict[str, Any]]:
        """
        Run both sweeps for every studio, or only the given ones.

        A studio whose sweep blows up is recorded with its error; the
        remaining studios still run.
        """
        if studio_ids is None:
            studio_ids = self.studios.list_ids()

        results: dict[UUID, dict[str, Any]] = {}
        for studio_id in studio_ids:
            try:
                invoices = self.process_recurring_invoices(studio_id)
                reminders = self.send_payment_reminders(studio_id)
                results[studio_id] = {
                    "recurring_invoices": len(invoices),
                    "reminders": reminders,
                }
            except Exception as e:
                logger.exception(f"Billing sweep failed for studio {studio_id}")
                results[studio_id] = {"error": str(e)}

        return results
