"""
Handler for InvoicePaid events.

When an invoice is settled in full, sends the client a receipt.
"""

import logging
from typing import Callable

from core.events import InvoicePaid

logger = logging.getLogger(__name__)


def handle_invoice_paid(mailer) -> Callable:
    """
    Factory that returns an InvoicePaid handler.

    Args:
        mailer: BillingMailer instance

    Returns:
        Handler callable that emails a paid-in-full receipt
    """

    def handler(event: InvoicePaid):
        mailer.send_invoice_receipt(event.invoice)

    return handler
