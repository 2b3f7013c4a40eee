"""
Payment service: starting payments with a gateway and recording their outcome.

The gateway is chosen per request from a GatewayRegistry. A gateway must be
both registered (we have code for it) and enabled in the studio's
payment_settings before it can be used.
"""

import logging
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from psycopg2.extras import Json

from clients.payment_gateways import GatewayCharge, GatewayRegistry, PaymentGatewayClient
from clients.postgres_client import PostgresClient, PostgresTransaction
from core.audit import AuditLogger, AuditAction
from core.errors import (
    ConfigurationError, ConflictError, NotSupportedError, ValidationError,
)
from core.event_bus import EventBus
from core.events import InvoicePaid, PaymentCompleted
from core.models import (
    Client, Payment, PaymentFilters, PaymentGateway, PaymentIntent, PaymentIntentCreate,
    PaymentStatus,
)
from core.services.client_service import ClientService
from core.services.reconciliation_service import PaymentReconciler
from core.services.studio_service import StudioService
from utils.tenant_context import get_current_studio_id
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

_MAX_PAGE_SIZE = 100

# Statuses a later gateway delivery may still complete
_RETRYABLE_STATUSES = (PaymentStatus.FAILED, PaymentStatus.PENDING)


def _optional_uuid(value: str | None) -> UUID | None:
    if not value:
        return None
    return UUID(value)


class PaymentService:
    """Service for payment intents and payment records."""

    def __init__(
        self,
        postgres: PostgresClient,
        audit: AuditLogger,
        event_bus: EventBus,
        gateways: GatewayRegistry,
        studios: StudioService,
        clients: ClientService,
        reconciler: PaymentReconciler,
    ):
        self.postgres = postgres
        self.audit = audit
        self.event_bus = event_bus
        self.gateways = gateways
        self.studios = studios
        self.clients = clients
        self.reconciler = reconciler

    def resolve_gateway(self, gateway: PaymentGateway, capability: str) -> PaymentGatewayClient:
        """
        Gateway client for the current studio.

        Raises:
            ConfigurationError: Gateway not enabled for this studio
            NotSupportedError: No client registered, or it lacks the capability
        """
        if self.studios.get_gateway_settings(gateway.value) is None:
            raise ConfigurationError(f"{gateway.value} is not configured for this studio")

        client = self.gateways.get(gateway.value)
        if client is None:
            raise NotSupportedError(f"Unsupported payment gateway: {gateway.value}")
        if not client.supports(capability):
            raise NotSupportedError(f"{gateway.value} does not support {capability}")
        return client

    # =========================================================================
    # INTENTS
    # =========================================================================

    def _stripe_customer(self, gateway: PaymentGatewayClient, client: Client) -> str | None:
        """Stored Stripe customer for the client, created on first use."""
        if client.stripe_customer_id:
            return client.stripe_customer_id

        customer_id = gateway.create_customer(
            email=client.email,
            name=client.display_name,
            metadata={"client_id": str(client.id), "studio_id": str(client.studio_id)},
        )
        self.clients.set_stripe_customer_id(client.id, customer_id)
        return customer_id

    def create_payment_intent(self, data: PaymentIntentCreate) -> PaymentIntent:
        """
        Start a payment with the requested gateway.

        For Stripe the result carries the client secret; for PayPal, the
        approval URL to redirect the buyer to.

        Raises:
            NotFoundError: Client missing
            ConfigurationError: Gateway not enabled for this studio
            NotSupportedError: Gateway has no intent support
            PaymentGatewayError: Provider rejected the request
        """
        client = self.clients.require(data.client_id)
        gateway = self.resolve_gateway(data.gateway, "create_intent")

        customer_ref = None
        if gateway.supports("customers"):
            customer_ref = self._stripe_customer(gateway, client)

        metadata = {
            **data.metadata,
            "studio_id": str(get_current_studio_id()),
            "client_id": str(client.id),
            "invoice_id": str(data.invoice_id) if data.invoice_id else "",
            "booking_id": str(data.booking_id) if data.booking_id else "",
        }

        intent = gateway.create_intent(
            amount=data.amount,
            currency=data.currency,
            metadata=metadata,
            customer_ref=customer_ref,
            description=data.description,
        )

        logger.info(f"{data.gateway.value} payment intent {intent.id} created for client {client.id}")

        return PaymentIntent(
            id=intent.id,
            gateway=data.gateway,
            client_secret_or_approval_url=intent.client_secret_or_approval_url,
            amount=data.amount,
            currency=data.currency.upper(),
            status=intent.status,
        )

    # =========================================================================
    # PROCESS
    # =========================================================================

    def _find_by_transaction(
        self, executor, gateway: PaymentGateway, transaction_id: str, for_update: bool = False
    ) -> Payment | None:
        lock = "FOR UPDATE" if for_update else ""
        row = executor.execute_single(
            f"""
            SELECT * FROM payments
            WHERE gateway = %s AND gateway_transaction_id = %s
            {lock}
            """,
            (gateway.value, transaction_id)
        )
        if row is None:
            return None
        return Payment.model_validate(row)

    def _generate_payment_number(self, tx: PostgresTransaction, studio_id: UUID, now: datetime) -> str:
        """Format: PAY-YYYYMMDD-NNNN, per studio per day."""
        prefix = f"PAY-{now.strftime('%Y%m%d')}-"
        result = tx.execute_single(
            """
            SELECT payment_number FROM payments
            WHERE studio_id = %s AND payment_number LIKE %s
            ORDER BY payment_number DESC
            LIMIT 1
            """,
            (studio_id, f"{prefix}%")
        )

        if result is None:
            sequence = 1
        else:
            try:
                sequence = int(result["payment_number"].split("-")[-1]) + 1
            except (ValueError, IndexError):
                sequence = 1

        return f"{prefix}{sequence:04d}"

    def _insert_payment(
        self, tx: PostgresTransaction, gateway: PaymentGateway, charge: GatewayCharge
    ) -> Payment | None:
        """Insert the payment row; None when this transaction id is already recorded."""
        client_id = _optional_uuid(charge.metadata.get("client_id"))
        if client_id is None:
            raise ValidationError(
                f"{gateway.value} payment {charge.transaction_id} has no client_id metadata"
            )

        status = PaymentStatus.COMPLETED if charge.succeeded else PaymentStatus.FAILED
        studio_id = get_current_studio_id()
        now = now_utc()

        rows = tx.execute_returning(
            """
            INSERT INTO payments (
                id, studio_id, client_id, invoice_id, booking_id, payment_number,
                amount, currency, gateway, gateway_transaction_id, gateway_response,
                status, refund_amount, processed_at, created_at, updated_at
            ) VALUES (
                %(id)s, %(studio_id)s, %(client_id)s, %(invoice_id)s, %(booking_id)s,
                %(payment_number)s, %(amount)s, %(currency)s, %(gateway)s,
                %(gateway_transaction_id)s, %(gateway_response)s, %(status)s,
                %(refund_amount)s, %(processed_at)s, %(created_at)s, %(updated_at)s
            )
            ON CONFLICT (gateway, gateway_transaction_id) DO NOTHING
            RETURNING *
            """,
            {
                "id": uuid4(),
                "studio_id": studio_id,
                "client_id": client_id,
                "invoice_id": _optional_uuid(charge.metadata.get("invoice_id")),
                "booking_id": _optional_uuid(charge.metadata.get("booking_id")),
                "payment_number": self._generate_payment_number(tx, studio_id, now),
                "amount": charge.amount,
                "currency": charge.currency,
                "gateway": gateway.value,
                "gateway_transaction_id": charge.transaction_id,
                "gateway_response": Json(charge.raw or {}),
                "status": status.value,
                "refund_amount": 0,
                "processed_at": now if status == PaymentStatus.COMPLETED else None,
                "created_at": now,
                "updated_at": now,
            }
        )

        if not rows:
            return None
        return Payment.model_validate(rows[0])

    def _complete_retried_payment(
        self, tx: PostgresTransaction, previous: Payment, charge: GatewayCharge
    ) -> Payment | None:
        """Move a FAILED or PENDING row to COMPLETED; None if it already left those states."""
        now = now_utc()
        rows = tx.execute_returning(
            """
            UPDATE payments SET
                status = %(status)s,
                amount = %(amount)s,
                currency = %(currency)s,
                gateway_response = %(gateway_response)s,
                processed_at = %(processed_at)s,
                updated_at = %(updated_at)s
            WHERE id = %(id)s AND status = ANY(%(retryable)s)
            RETURNING *
            """,
            {
                "id": previous.id,
                "status": PaymentStatus.COMPLETED.value,
                "amount": charge.amount,
                "currency": charge.currency,
                "gateway_response": Json(charge.raw or {}),
                "processed_at": now,
                "updated_at": now,
                "retryable": [s.value for s in _RETRYABLE_STATUSES],
            }
        )
        if not rows:
            return None
        return Payment.model_validate(rows[0])

    def process_payment(self, payment_intent_id: str, gateway: PaymentGateway) -> Payment:
        """
        Record the final outcome of a gateway payment.

        Idempotent: a payment already COMPLETED or REFUNDED for this gateway
        transaction is returned unchanged. A FAILED or PENDING record is
        checked with the gateway again and completed if the buyer's retry
        went through. Recording the payment, applying it to its invoice and
        refreshing client statistics commit together or not at all.

        Raises:
            ConfigurationError: Gateway not enabled for this studio
            NotSupportedError: Gateway cannot report payment state
            ValidationError: Gateway payment carries no client reference
            PaymentGatewayError: Provider call failed
        """
        existing = self._find_by_transaction(self.postgres, gateway, payment_intent_id)
        if existing is not None and existing.status not in _RETRYABLE_STATUSES:
            logger.info(f"Payment for {gateway.value} {payment_intent_id} already recorded: {existing.id}")
            return existing

        client = self.resolve_gateway(gateway, "retrieve")
        charge = client.retrieve(payment_intent_id)

        reconciliation = None
        with self.postgres.transaction() as tx:
            previous = None
            payment = self._insert_payment(tx, gateway, charge)
            if payment is None:
                # Recorded by an earlier attempt or a concurrent delivery
                previous = self._find_by_transaction(tx, gateway, payment_intent_id, for_update=True)
                if previous is not None and previous.status in _RETRYABLE_STATUSES and charge.succeeded:
                    payment = self._complete_retried_payment(tx, previous, charge)
                if payment is None:
                    if previous is None:
                        raise ConflictError(
                            f"{gateway.value} payment {payment_intent_id} is recorded outside this studio"
                        )
                    return previous

            if payment.status == PaymentStatus.COMPLETED and payment.invoice_id is not None:
                reconciliation = self.reconciler.reconcile(tx, payment.invoice_id, payment_id=payment.id)

            self.clients.update_statistics(payment.client_id, tx=tx)

            if previous is None:
                changes = {
                    "created": {
                        "payment_number": payment.payment_number,
                        "invoice_id": str(payment.invoice_id) if payment.invoice_id else None,
                    }
                }
            else:
                changes = {"status": {"old": previous.status.value, "new": payment.status.value}}

            self.audit.log_change(
                entity_type="payment",
                entity_id=payment.id,
                action=AuditAction.PAYMENT_PROCESSED,
                changes=changes,
                metadata={
                    "amount": str(payment.amount),
                    "currency": payment.currency,
                    "status": payment.status.value,
                    "gateway": gateway.value,
                },
                tx=tx,
            )

        if reconciliation is not None and reconciliation.became_paid:
            self.event_bus.publish(InvoicePaid.create(invoice=reconciliation.after))

        if payment.status == PaymentStatus.COMPLETED:
            self.event_bus.publish(PaymentCompleted.create(payment=payment))
            logger.info(f"Payment {payment.payment_number} completed: {payment.amount} {payment.currency}")
        else:
            logger.warning(
                f"Payment {payment.payment_number} failed at {gateway.value}: status {charge.status}"
            )

        return payment

    # =========================================================================
    # READ
    # =========================================================================

    def get_by_id(self, payment_id: UUID) -> Payment | None:
        """Get payment by ID, None if not in this studio."""
        row = self.postgres.execute_single(
            "SELECT * FROM payments WHERE id = %s",
            (payment_id,)
        )

        if row is None:
            return None

        return Payment.model_validate(row)

    def list_payments(
        self,
        filters: PaymentFilters | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> list[Payment]:
        """List payments matching filters, newest first."""
        filters = filters or PaymentFilters()
        page = max(page, 1)
        limit = min(max(limit, 1), _MAX_PAGE_SIZE)

        conditions = []
        params: list[Any] = []
        if filters.client_id is not None:
            conditions.append("client_id = %s")
            params.append(filters.client_id)
        if filters.invoice_id is not None:
            conditions.append("invoice_id = %s")
            params.append(filters.invoice_id)
        if filters.status is not None:
            conditions.append("status = %s")
            params.append(filters.status.value)
        if filters.gateway is not None:
            conditions.append("gateway = %s")
            params.append(filters.gateway.value)
        if filters.start_date is not None:
            conditions.append("created_at >= %s")
            params.append(filters.start_date)
        if filters.end_date is not None:
            conditions.append("created_at <= %s")
            params.append(filters.end_date)

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        rows = self.postgres.execute(
            f"""
            SELECT * FROM payments
            {where}
            ORDER BY created_at DESC
            LIMIT %s OFFSET %s
            """,
            tuple(params + [limit, (page - 1) * limit])
        )

        return [Payment.model_validate(row) for row in rows]
