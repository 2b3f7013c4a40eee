"""Tests for invoice sent handler.

On InvoiceSent: email the invoice, wording it as a copy on re-send.
"""

import logging

import pytest

from core.events import InvoiceSent
from core.handlers.invoice_sent_handler import handle_invoice_sent
from core.models import Invoice
from core.notifications import BillingMailer
from core.services.client_service import ClientService
from core.services.studio_service import StudioService

from tests.factories import client_row, invoice_row, studio_row


@pytest.fixture
def handler(db, email_client):
    db.on("SELECT * FROM studios WHERE id", [studio_row()])
    db.on("SELECT * FROM clients WHERE id", [client_row()])
    return handle_invoice_sent(BillingMailer(email_client, ClientService(db), StudioService(db)))


@pytest.fixture
def invoice():
    return Invoice.model_validate(invoice_row())


class TestInvoiceSentHandler:

    def test_emails_invoice_with_pay_link(self, as_studio_user, handler, email_client, invoice):
        handler(InvoiceSent.create(invoice=invoice))

        kwargs = email_client.send_email.call_args.kwargs
        assert kwargs["subject"] == "Invoice INV-20261019-0001 from Blue Room Studio"
        assert f"http://localhost:3000/invoices/{invoice.id}" in kwargs["html"]
        assert "Please find" in kwargs["html"]
        assert "Net 30" in kwargs["html"]

    def test_resend_wording(self, as_studio_user, handler, email_client, invoice):
        handler(InvoiceSent.create(invoice=invoice, resend=True))

        assert "another copy" in email_client.send_email.call_args.kwargs["html"]

    def test_logs_sent_only_when_delivered(self, db, as_studio_user, handler, email_client, invoice, caplog):
        db.on("SELECT * FROM clients WHERE id", [client_row(email=None)])

        with caplog.at_level(logging.INFO):
            handler(InvoiceSent.create(invoice=invoice))

        email_client.send_email.assert_not_called()
        assert "billing email skipped" in caplog.text
        assert "Invoice email sent" not in caplog.text

    def test_logs_sent_after_delivery(self, as_studio_user, handler, invoice, caplog):
        with caplog.at_level(logging.INFO):
            handler(InvoiceSent.create(invoice=invoice))

        assert "Invoice email sent for INV-20261019-0001" in caplog.text

    def test_email_failure_logged_by_bus(self, as_studio_user, event_bus, handler, email_client, invoice, caplog):
        """The bus logs handler failures; publishing still returns normally."""
        from clients.email_client import EmailGatewayError

        email_client.send_email.side_effect = EmailGatewayError("down")
        event_bus.subscribe("InvoiceSent", handler)

        event_bus.publish(InvoiceSent.create(invoice=invoice))

        assert "InvoiceSent" in caplog.text
