"""Tests for BillingMailer - rendering and recipient handling."""

from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import Mock

import pytest

from core.config import BillingConfig
from core.models import Client, Invoice, Payment, Studio
from core.notifications import BillingMailer
from tests.factories import client_row, invoice_row, payment_row, studio_row


@pytest.fixture
def clients():
    service = Mock()
    service.get_by_id.return_value = Client.model_validate(client_row())
    return service


@pytest.fixture
def studios():
    service = Mock()
    service.get_current.return_value = Studio.model_validate(studio_row(name="Blue Room & Co"))
    return service


@pytest.fixture
def mailer(email_client, clients, studios):
    return BillingMailer(
        email_client, clients, studios, BillingConfig(app_base_url="https://app.blueroom.test")
    )


@pytest.fixture
def invoice():
    return Invoice.model_validate(invoice_row(
        due_date=datetime(2026, 11, 18, 18, 0, tzinfo=timezone.utc),
    ))


def _sent(email_client) -> dict:
    return email_client.send_email.call_args.kwargs


class TestInvoiceEmail:

    def test_sends_to_client_with_pay_link(self, mailer, email_client, invoice):
        result = mailer.send_invoice_email(invoice)

        sent = _sent(email_client)
        assert result == "msg-1"
        assert sent["to"] == "maya@example.com"
        assert sent["sender"] == "billing"
        assert sent["subject"] == f"Invoice {invoice.invoice_number} from Blue Room & Co"
        assert f"https://app.blueroom.test/invoices/{invoice.id}" in sent["html"]
        assert "USD 270.00" in sent["html"]
        assert "November 18, 2026" in sent["html"]
        assert "Hi Maya" in sent["html"]

    def test_due_date_shown_in_studio_timezone(self, mailer, email_client):
        # Midnight UTC is still the previous evening in Chicago
        invoice = Invoice.model_validate(invoice_row(due_date=datetime(2026, 11, 18, tzinfo=timezone.utc)))

        mailer.send_invoice_email(invoice)

        assert "November 17, 2026" in _sent(email_client)["html"]

    def test_studio_name_is_escaped_in_html(self, mailer, email_client, invoice):
        mailer.send_invoice_email(invoice)
        assert "Blue Room &amp; Co" in _sent(email_client)["html"]

    def test_resend_wording(self, mailer, email_client, invoice):
        mailer.send_invoice_email(invoice, resend=True)
        assert "another copy" in _sent(email_client)["html"]

    def test_client_without_email_is_skipped(self, mailer, email_client, clients, invoice, caplog):
        clients.get_by_id.return_value = Client.model_validate(client_row(email=None))

        assert mailer.send_invoice_email(invoice) is None
        email_client.send_email.assert_not_called()
        assert "no email address" in caplog.text


class TestPaymentEmails:

    def test_payment_confirmation(self, mailer, email_client):
        payment = Payment.model_validate(payment_row(payment_number="PAY-20261019-0007"))
        mailer.send_payment_confirmation(payment)

        sent = _sent(email_client)
        assert sent["subject"] == "Payment received - PAY-20261019-0007"
        assert "USD 270.00" in sent["html"]

    def test_refund_confirmation_shows_refund_and_original(self, mailer, email_client):
        payment = Payment.model_validate(payment_row(refund_amount=Decimal("100.00")))
        mailer.send_refund_confirmation(payment, Decimal("100.00"))

        html = _sent(email_client)["html"]
        assert "USD 100.00" in html
        assert "USD 270.00" in html

    def test_invoice_receipt(self, mailer, email_client):
        invoice = Invoice.model_validate(invoice_row(
            status="paid", amount_paid=Decimal("270.00"), amount_due=Decimal("0.00"),
        ))
        mailer.send_invoice_receipt(invoice)

        assert _sent(email_client)["subject"] == f"Receipt for invoice {invoice.invoice_number}"
        assert "paid in full" in _sent(email_client)["html"]


class TestPaymentReminder:

    def test_reminder_states_days_overdue(self, mailer, email_client, invoice):
        mailer.send_payment_reminder(invoice, 7)

        sent = _sent(email_client)
        assert sent["subject"] == f"Payment reminder: invoice {invoice.invoice_number} is 7 days overdue"
        assert "7 days past due" in sent["html"]

    def test_singular_day(self, mailer, email_client, invoice):
        mailer.send_payment_reminder(invoice, 1)
        assert _sent(email_client)["subject"].endswith("is 1 day overdue")

    def test_was_due_date_in_studio_timezone(self, mailer, email_client):
        invoice = Invoice.model_validate(invoice_row(due_date=datetime(2026, 11, 18, 3, 30, tzinfo=timezone.utc)))

        mailer.send_payment_reminder(invoice, 7)

        assert "November 17, 2026" in _sent(email_client)["html"]
