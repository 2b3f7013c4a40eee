"""
Handler for InvoiceSent events.

Emails the invoice to the client, on first send and on every re-send.
"""

import logging
from typing import Callable

from core.events import InvoiceSent

logger = logging.getLogger(__name__)


def handle_invoice_sent(mailer) -> Callable:
    """
    Factory that returns an InvoiceSent handler.

    Args:
        mailer: BillingMailer instance

    Returns:
        Handler callable that emails the invoice
    """

    def handler(event: InvoiceSent):
        invoice = event.invoice
        message_id = mailer.send_invoice_email(invoice, resend=event.resend)
        if message_id is not None:
            logger.info(f"Invoice email sent for {invoice.invoice_number}")

    return handler
