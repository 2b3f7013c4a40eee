"""
Handlers for payment events.

PaymentCompleted sends the payment confirmation; PaymentRefunded sends the
refund confirmation.
"""

import logging
from typing import Callable

from core.events import PaymentCompleted, PaymentRefunded

logger = logging.getLogger(__name__)


def handle_payment_completed(mailer) -> Callable:
    """Factory that returns a PaymentCompleted handler emailing a confirmation."""

    def handler(event: PaymentCompleted):
        mailer.send_payment_confirmation(event.payment)

    return handler


def handle_payment_refunded(mailer) -> Callable:
    """Factory that returns a PaymentRefunded handler emailing the refund notice."""

    def handler(event: PaymentRefunded):
        message_id = mailer.send_refund_confirmation(event.payment, event.refund_amount)
        if message_id is not None:
            logger.info(
                f"Refund email sent for payment {event.payment.payment_number} "
                f"(refund {event.gateway_refund_id})"
            )

    return handler
