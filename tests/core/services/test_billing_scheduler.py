"""
Tests for BillingScheduler.

The reminder sweep runs against a real InvoiceService and BillingMailer over
the route-based fake database; the recurring sweep and run() use mocked
services to isolate per-record and per-studio failure handling.
"""

from datetime import timedelta
from decimal import Decimal
from unittest.mock import Mock
from uuid import uuid4

import pytest

from clients.email_client import EmailGatewayError
from core.config import BillingConfig
from core.models import Booking, Invoice, InvoiceCreate
from core.notifications import BillingMailer
from core.services.billing_scheduler import BillingScheduler
from core.services.booking_service import BookingService
from core.services.client_service import ClientService
from core.services.invoice_service import InvoiceService
from core.services.studio_service import StudioService
from utils.tenant_context import get_current_studio_id, get_current_user_id
from utils.timezone import now_utc

from tests.factories import (
    TEST_STUDIO_B_ID, TEST_STUDIO_ID, booking_row, client_row, invoice_row, studio_row,
)


# =============================================================================
# PAYMENT REMINDERS
# =============================================================================


@pytest.fixture
def overdue_invoice(db):
    """Invoice state served to the candidate query and updated by record_reminder."""
    state = invoice_row(due_date=now_utc() - timedelta(days=7, hours=2))

    def record(params):
        state.update(status=params[0], last_reminder_days=params[1], last_reminder_sent_at=params[2])
        return [dict(state)]

    db.on("WHERE status = ANY(%s) AND due_date < %s", lambda params: [dict(state)])
    db.on("SET status = %s, last_reminder_days = %s", record)
    return state


@pytest.fixture
def scheduler(db, audit, event_bus, email_client):
    db.on("SELECT * FROM studios WHERE id", [studio_row()])
    db.on("SELECT * FROM clients WHERE id", [client_row()])
    studios = StudioService(db)
    clients = ClientService(db)
    bookings = BookingService(db)
    invoices = InvoiceService(db, audit, event_bus, studios, clients, bookings)
    mailer = BillingMailer(email_client, clients, studios)
    return BillingScheduler(invoices, bookings, studios, mailer)


class TestPaymentReminders:
    """Tests for send_payment_reminders."""

    def test_seven_days_overdue_sends_one_reminder(self, scheduler, overdue_invoice, email_client):
        summary = scheduler.send_payment_reminders(TEST_STUDIO_ID)

        assert summary == {"checked": 1, "sent": 1, "failed": 0}
        assert overdue_invoice["status"] == "overdue"
        assert overdue_invoice["last_reminder_days"] == 7
        email_client.send_email.assert_called_once()
        kwargs = email_client.send_email.call_args.kwargs
        assert kwargs["to"] == "maya@example.com"
        assert "7 days overdue" in kwargs["subject"]

    def test_second_run_same_day_sends_nothing(self, scheduler, overdue_invoice, email_client):
        scheduler.send_payment_reminders(TEST_STUDIO_ID)
        summary = scheduler.send_payment_reminders(TEST_STUDIO_ID)

        assert summary == {"checked": 1, "sent": 0, "failed": 0}
        assert email_client.send_email.call_count == 1

    def test_off_schedule_day_skipped(self, db, scheduler, overdue_invoice, email_client):
        overdue_invoice["due_date"] = now_utc() - timedelta(days=5, hours=2)

        summary = scheduler.send_payment_reminders(TEST_STUDIO_ID)

        assert summary["sent"] == 0
        email_client.send_email.assert_not_called()
        assert db.queries("SET status = %s, last_reminder_days = %s") == []

    def test_next_offset_sends_again(self, scheduler, overdue_invoice, email_client):
        overdue_invoice.update(
            status="overdue",
            last_reminder_days=7,
            due_date=now_utc() - timedelta(days=14, hours=1),
        )

        summary = scheduler.send_payment_reminders(TEST_STUDIO_ID)

        assert summary["sent"] == 1
        assert overdue_invoice["last_reminder_days"] == 14

    def test_email_failure_leaves_invoice_unmarked(self, db, scheduler, overdue_invoice, email_client):
        email_client.send_email.side_effect = EmailGatewayError("gateway down")

        summary = scheduler.send_payment_reminders(TEST_STUDIO_ID)

        assert summary == {"checked": 1, "sent": 0, "failed": 1}
        assert overdue_invoice["last_reminder_days"] is None
        assert overdue_invoice["status"] == "sent"

    def test_client_without_email_still_marked(self, db, scheduler, overdue_invoice, email_client):
        db.on("SELECT * FROM clients WHERE id", [client_row(email=None)])

        scheduler.send_payment_reminders(TEST_STUDIO_ID)

        email_client.send_email.assert_not_called()
        assert overdue_invoice["last_reminder_days"] == 7

    def test_invoice_paid_mid_sweep_not_marked_overdue(self, db, scheduler, overdue_invoice, caplog):
        db.on("SET status = %s, last_reminder_days = %s", [])

        summary = scheduler.send_payment_reminders(TEST_STUDIO_ID)

        assert summary == {"checked": 1, "sent": 0, "failed": 0}
        assert overdue_invoice["status"] == "sent"
        assert "settled during the reminder sweep" in caplog.text

    def test_custom_schedule(self, db, audit, event_bus, email_client, overdue_invoice):
        db.on("SELECT * FROM studios WHERE id", [studio_row()])
        db.on("SELECT * FROM clients WHERE id", [client_row()])
        studios = StudioService(db)
        clients = ClientService(db)
        bookings = BookingService(db)
        scheduler = BillingScheduler(
            InvoiceService(db, audit, event_bus, studios, clients, bookings),
            bookings,
            studios,
            BillingMailer(email_client, clients, studios),
            BillingConfig(reminder_schedule_days=(1, 5)),
        )

        assert scheduler.send_payment_reminders(TEST_STUDIO_ID)["sent"] == 0


# =============================================================================
# RECURRING INVOICES
# =============================================================================


def recurring_booking(**overrides) -> Booking:
    return Booking.model_validate(booking_row(status="completed", is_recurring=True, **overrides))


@pytest.fixture
def mocked():
    invoices = Mock(spec=InvoiceService)
    bookings = Mock(spec=BookingService)
    studios = Mock(spec=StudioService)
    mailer = Mock(spec=BillingMailer)
    invoices.list_reminder_candidates.return_value = []
    return BillingScheduler(invoices, bookings, studios, mailer)


class TestRecurringInvoices:
    """Tests for process_recurring_invoices."""

    def test_one_invoice_per_booking(self, mocked):
        booking = recurring_booking(title="Weekly rehearsal", total_amount=Decimal("180.00"), booking_type="rehearsal")
        mocked.bookings.list_uninvoiced_recurring.return_value = [booking]
        seen = {}

        def create(data):
            seen["studio"] = get_current_studio_id()
            seen["user"] = get_current_user_id()
            return Mock(spec=Invoice)

        mocked.invoices.create_invoice.side_effect = create

        created = mocked.process_recurring_invoices(TEST_STUDIO_ID)

        assert len(created) == 1
        (data,), _ = mocked.invoices.create_invoice.call_args
        assert isinstance(data, InvoiceCreate)
        assert data.booking_id == booking.id
        assert data.client_id == booking.client_id
        assert data.payment_terms == "Net 30"
        assert data.currency == "USD"
        [item] = data.line_items
        assert item.description == "Weekly rehearsal"
        assert item.quantity == Decimal("1")
        assert item.unit_price == Decimal("180.00")
        assert item.category == "rehearsal"
        assert 29 <= (data.due_date - now_utc()).days <= 30
        assert seen == {"studio": TEST_STUDIO_ID, "user": None}

    def test_failed_booking_does_not_stop_sweep(self, mocked, caplog):
        bad = recurring_booking()
        good = recurring_booking()
        mocked.bookings.list_uninvoiced_recurring.return_value = [bad, good]
        mocked.invoices.create_invoice.side_effect = [RuntimeError("constraint violated"), Mock(spec=Invoice)]

        created = mocked.process_recurring_invoices(TEST_STUDIO_ID)

        assert len(created) == 1
        assert mocked.invoices.create_invoice.call_count == 2
        assert str(bad.id) in caplog.text

    def test_nothing_to_invoice(self, mocked):
        mocked.bookings.list_uninvoiced_recurring.return_value = []

        assert mocked.process_recurring_invoices(TEST_STUDIO_ID) == []
        mocked.invoices.create_invoice.assert_not_called()

    def test_tenant_cleared_after_sweep(self, mocked):
        mocked.bookings.list_uninvoiced_recurring.return_value = []

        mocked.process_recurring_invoices(TEST_STUDIO_ID)

        with pytest.raises(RuntimeError):
            get_current_studio_id()


# =============================================================================
# RUN
# =============================================================================


class TestRun:
    """Tests for run() across studios."""

    def test_runs_every_studio(self, mocked):
        mocked.studios.list_ids.return_value = [TEST_STUDIO_ID, TEST_STUDIO_B_ID]
        mocked.bookings.list_uninvoiced_recurring.return_value = []

        results = mocked.run()

        assert set(results) == {TEST_STUDIO_ID, TEST_STUDIO_B_ID}
        assert results[TEST_STUDIO_ID] == {
            "recurring_invoices": 0,
            "reminders": {"checked": 0, "sent": 0, "failed": 0},
        }

    def test_failing_studio_isolated(self, mocked):
        mocked.studios.list_ids.return_value = [TEST_STUDIO_ID, TEST_STUDIO_B_ID]
        mocked.bookings.list_uninvoiced_recurring.side_effect = [RuntimeError("db down"), []]

        results = mocked.run()

        assert results[TEST_STUDIO_ID] == {"error": "db down"}
        assert results[TEST_STUDIO_B_ID]["recurring_invoices"] == 0

    def test_explicit_studios_skip_listing(self, mocked):
        mocked.bookings.list_uninvoiced_recurring.return_value = []
        studio_id = uuid4()

        results = mocked.run([studio_id])

        mocked.studios.list_ids.assert_not_called()
        assert list(results) == [studio_id]
