"""
Stripe webhook handling.

Verifies the signature, then records payment_intent outcomes through
PaymentService.process_payment in the studio named by the intent's metadata.
Once the signature checks out, processing errors are logged and swallowed:
Stripe retries non-2xx deliveries, and one bad event must not wedge the
endpoint.
"""

import logging
from uuid import UUID

import stripe

from clients.payment_gateways import StripeGateway
from core.errors import ValidationError
from core.models import PaymentGateway
from core.services.payment_service import PaymentService
from utils.tenant_context import tenant_context

logger = logging.getLogger(__name__)

HANDLED_EVENTS = frozenset({
    "payment_intent.succeeded",
    "payment_intent.payment_failed",
})


class StripeWebhookHandler:
    """Turns verified Stripe events into recorded payments."""

    def __init__(self, gateway: StripeGateway, payment_service: PaymentService):
        self.gateway = gateway
        self.payment_service = payment_service

    def handle(self, payload: bytes | str, signature: str) -> bool:
        """
        Process one webhook delivery.

        Returns:
            True if the event was recorded, False if ignored or failed

        Raises:
            ValidationError: Signature or payload invalid
        """
        try:
            event = self.gateway.construct_webhook_event(payload, signature)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Invalid Stripe webhook signature: {e}")
            raise ValidationError("Invalid webhook signature")
        except ValueError as e:
            logger.warning(f"Invalid Stripe webhook payload: {e}")
            raise ValidationError(f"Invalid webhook payload: {e}")

        event_id = event["id"]
        event_type = event["type"]

        if event_type not in HANDLED_EVENTS:
            logger.debug(f"Ignoring Stripe event {event_id} ({event_type})")
            return False

        intent = event["data"]["object"]
        intent_id = intent["id"]
        metadata = intent["metadata"] or {}

        if "studio_id" not in metadata or not metadata["studio_id"]:
            logger.warning(f"Stripe event {event_id}: intent {intent_id} has no studio_id metadata")
            return False

        try:
            with tenant_context(UUID(metadata["studio_id"])):
                payment = self.payment_service.process_payment(intent_id, PaymentGateway.STRIPE)
        except Exception:
            logger.exception(f"Stripe event {event_id} ({event_type}) failed for intent {intent_id}")
            return False

        logger.info(f"Stripe event {event_id} recorded as payment {payment.payment_number}")
        return True
