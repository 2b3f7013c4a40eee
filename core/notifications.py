"""
Billing emails: invoices, payment and refund confirmations, overdue reminders.

Rendering is plain HTML with escaped values. Sending goes through the email
gateway as the "billing" sender. A client without an email address is
skipped with a warning rather than treated as an error.
"""

import html
import logging
from decimal import Decimal

from clients.email_client import EmailGatewayClient
from core.config import BillingConfig
from core.models import Client, Invoice, Payment, Studio
from core.services.client_service import ClientService
from core.services.studio_service import StudioService
from utils.timezone import to_local

logger = logging.getLogger(__name__)


def _money(amount: Decimal, currency: str) -> str:
    return f"{currency} {amount:,.2f}"


def _render(title: str, studio: Studio, greeting: str, body: str) -> str:
    studio_name = html.escape(studio.name)
    return f"""<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>{html.escape(title)}</title>
  <style>
    body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333; }}
    .container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
    .header {{ background: #2563eb; color: white; padding: 20px; text-align: center; }}
    .content {{ padding: 30px 20px; background: #f9fafb; }}
    .details {{ background: white; padding: 20px; border-radius: 5px; margin: 20px 0; }}
    .button {{ display: inline-block; padding: 12px 24px; background: #2563eb; color: white; text-decoration: none; border-radius: 5px; }}
    .footer {{ background: #e5e7eb; padding: 20px; text-align: center; font-size: 14px; color: #6b7280; }}
  </style>
</head>
<body>
  <div class="container">
    <div class="header"><h1>{html.escape(title)}</h1></div>
    <div class="content">
      <h2>Hi {html.escape(greeting)},</h2>
      {body}
      <p>Best regards,<br>{studio_name}</p>
    </div>
    <div class="footer"><p>{studio_name}</p></div>
  </div>
</body>
</html>"""


class BillingMailer:
    """Renders and sends billing emails to clients."""

    def __init__(
        self,
        email_client: EmailGatewayClient,
        clients: ClientService,
        studios: StudioService,
        config: BillingConfig | None = None,
    ):
        self.email_client = email_client
        self.clients = clients
        self.studios = studios
        self.config = config or BillingConfig()

    def _recipient(self, client_id) -> Client | None:
        client = self.clients.get_by_id(client_id)
        if client is None or not client.email:
            logger.warning(f"Client {client_id} has no email address, billing email skipped")
            return None
        return client

    def _invoice_url(self, invoice: Invoice) -> str:
        return f"{self.config.app_base_url}/invoices/{invoice.id}"

    def send_invoice_email(self, invoice: Invoice, resend: bool = False) -> str | None:
        """Send the invoice with a link to pay it online."""
        client = self._recipient(invoice.client_id)
        if client is None:
            return None
        studio = self.studios.get_current()

        body = f"""
      <p>{"As requested, here is another copy of" if resend else "Please find"} invoice
      <strong>{html.escape(invoice.invoice_number)}</strong> from {html.escape(studio.name)}.</p>
      <div class="details">
        <p><strong>Amount due:</strong> {_money(invoice.amount_due, invoice.currency)}</p>
        <p><strong>Due date:</strong> {to_local(invoice.due_date, studio.timezone):%B %d, %Y}</p>
        {f"<p><strong>Terms:</strong> {html.escape(invoice.payment_terms)}</p>" if invoice.payment_terms else ""}
      </div>
      <p><a class="button" href="{html.escape(self._invoice_url(invoice))}">View and pay invoice</a></p>"""

        return self.email_client.send_email(
            to=client.email,
            subject=f"Invoice {invoice.invoice_number} from {studio.name}",
            html=_render("Your Invoice", studio, client.greeting_name, body),
            sender="billing",
        )

    def send_invoice_receipt(self, invoice: Invoice) -> str | None:
        """Confirm an invoice is settled in full."""
        client = self._recipient(invoice.client_id)
        if client is None:
            return None
        studio = self.studios.get_current()

        body = f"""
      <p>Invoice <strong>{html.escape(invoice.invoice_number)}</strong> is now paid in full.</p>
      <div class="details">
        <p><strong>Total:</strong> {_money(invoice.total, invoice.currency)}</p>
        <p><strong>Paid:</strong> {_money(invoice.amount_paid, invoice.currency)}</p>
      </div>"""

        return self.email_client.send_email(
            to=client.email,
            subject=f"Receipt for invoice {invoice.invoice_number}",
            html=_render("Invoice Paid", studio, client.greeting_name, body),
            sender="billing",
        )

    def send_payment_confirmation(self, payment: Payment) -> str | None:
        """Thank the client for a completed payment."""
        client = self._recipient(payment.client_id)
        if client is None:
            return None
        studio = self.studios.get_current()

        body = f"""
      <p>We received your payment. Thank you!</p>
      <div class="details">
        <p><strong>Payment:</strong> {html.escape(payment.payment_number)}</p>
        <p><strong>Amount:</strong> {_money(payment.amount, payment.currency)}</p>
      </div>"""

        return self.email_client.send_email(
            to=client.email,
            subject=f"Payment received - {payment.payment_number}",
            html=_render("Payment Received", studio, client.greeting_name, body),
            sender="billing",
        )

    def send_refund_confirmation(self, payment: Payment, refund_amount: Decimal) -> str | None:
        """Tell the client a refund is on its way."""
        client = self._recipient(payment.client_id)
        if client is None:
            return None
        studio = self.studios.get_current()

        body = f"""
      <p>A refund has been issued for your payment {html.escape(payment.payment_number)}.</p>
      <div class="details">
        <p><strong>Refunded:</strong> {_money(refund_amount, payment.currency)}</p>
        <p><strong>Original payment:</strong> {_money(payment.amount, payment.currency)}</p>
      </div>
      <p>Depending on your bank, it can take 5-10 business days to appear.</p>"""

        return self.email_client.send_email(
            to=client.email,
            subject=f"Refund issued - {payment.payment_number}",
            html=_render("Refund Issued", studio, client.greeting_name, body),
            sender="billing",
        )

    def send_payment_reminder(self, invoice: Invoice, days_overdue: int) -> str | None:
        """Remind the client that an invoice is past due."""
        client = self._recipient(invoice.client_id)
        if client is None:
            return None
        studio = self.studios.get_current()

        day_word = "day" if days_overdue == 1 else "days"
        body = f"""
      <p>This is a friendly reminder that invoice <strong>{html.escape(invoice.invoice_number)}</strong>
      is {days_overdue} {day_word} past due.</p>
      <div class="details">
        <p><strong>Amount due:</strong> {_money(invoice.amount_due, invoice.currency)}</p>
        <p><strong>Was due:</strong> {to_local(invoice.due_date, studio.timezone):%B %d, %Y}</p>
      </div>
      <p><a class="button" href="{html.escape(self._invoice_url(invoice))}">Pay now</a></p>
      <p>If you have already paid, please disregard this message.</p>"""

        return self.email_client.send_email(
            to=client.email,
            subject=f"Payment reminder: invoice {invoice.invoice_number} is {days_overdue} {day_word} overdue",
            html=_render("Payment Reminder", studio, client.greeting_name, body),
            sender="billing",
        )
