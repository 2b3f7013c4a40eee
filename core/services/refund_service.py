"""
Refund processing.

A refund is a mutation of its payment: refund_amount grows until it reaches
the payment amount, at which point the payment becomes REFUNDED. Until then
the payment stays COMPLETED. The linked invoice is re-reconciled in the same
transaction so its balance reflects the money that actually stayed.
"""

import logging
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from clients.payment_gateways import GatewayRegistry
from clients.postgres_client import PostgresClient, PostgresTransaction
from core.audit import AuditLogger, AuditAction
from core.billing import round_money
from core.errors import (
    ConflictError, ErrorCodes, InvalidAmountError, NotFoundError, NotSupportedError,
)
from core.event_bus import EventBus
from core.events import PaymentRefunded
from core.models import Payment, PaymentStatus
from core.services.client_service import ClientService
from core.services.reconciliation_service import PaymentReconciler
from utils.tenant_context import get_current_user_id
from utils.timezone import now_utc

logger = logging.getLogger(__name__)


class RefundService:
    """Service for refunding completed payments."""

    def __init__(
        self,
        postgres: PostgresClient,
        audit: AuditLogger,
        event_bus: EventBus,
        gateways: GatewayRegistry,
        reconciler: PaymentReconciler,
        clients: ClientService,
    ):
        self.postgres = postgres
        self.audit = audit
        self.event_bus = event_bus
        self.gateways = gateways
        self.reconciler = reconciler
        self.clients = clients

    def process_refund(self, payment_id: UUID, amount: Decimal, reason: str | None = None) -> Payment:
        """
        Refund part or all of a completed payment.

        The payment row, and its invoice, are locked before the provider is
        called, so two concurrent refunds cannot both pass the balance check
        and a missing invoice is found before any money moves.

        Args:
            payment_id: Payment to refund
            amount: Amount to give back, at most what is still refundable
            reason: Free-text reason, stored and sent to the provider

        Returns:
            Updated payment

        Raises:
            NotFoundError: Payment or its invoice missing
            ConflictError: Payment not COMPLETED
            InvalidAmountError: amount ≤ 0 or above the refundable balance
            NotSupportedError: Gateway cannot refund
            PaymentGatewayError: Provider rejected the refund (nothing saved)
        """
        amount = round_money(amount)
        if amount <= 0:
            raise InvalidAmountError("Refund amount must be positive")

        now = now_utc()

        with self.postgres.transaction() as tx:
            row = tx.execute_single(
                "SELECT * FROM payments WHERE id = %s FOR UPDATE",
                (payment_id,)
            )
            if row is None:
                raise NotFoundError(f"Payment {payment_id} not found")
            current = Payment.model_validate(row)

            if current.status != PaymentStatus.COMPLETED:
                raise ConflictError(
                    f"Payment {current.payment_number} is {current.status.value} and cannot be refunded",
                    code=ErrorCodes.PAYMENT_NOT_REFUNDABLE,
                )

            refundable = current.refundable_amount
            if amount > refundable:
                raise InvalidAmountError(
                    f"Refund {amount} exceeds refundable balance {refundable} "
                    f"on payment {current.payment_number}"
                )

            gateway = self.gateways.get(current.gateway.value)
            if gateway is None or not gateway.supports("refund"):
                raise NotSupportedError(f"Refunds are not supported for {current.gateway.value}")

            # Everything that can refuse the refund is checked before money moves
            if current.invoice_id is not None:
                invoice = tx.execute_single(
                    "SELECT * FROM invoices WHERE id = %s FOR UPDATE",
                    (current.invoice_id,)
                )
                if invoice is None:
                    raise NotFoundError(
                        f"Invoice {current.invoice_id} for payment {current.payment_number} not found"
                    )

            gateway_refund = gateway.refund(
                current.gateway_transaction_id,
                amount,
                metadata={
                    "internal_reason": reason or "",
                    "refunded_by": str(get_current_user_id() or "system"),
                },
            )

            try:
                updated = self._record_refund(tx, current, amount, reason, gateway_refund.id, now)
            except Exception:
                logger.exception(
                    f"Refund {gateway_refund.id} of {amount} {current.currency} issued at "
                    f"{current.gateway.value} but not recorded: payment {payment_id}, "
                    f"invoice {current.invoice_id}"
                )
                raise

        self.event_bus.publish(PaymentRefunded.create(
            payment=updated,
            refund_amount=amount,
            gateway_refund_id=gateway_refund.id,
        ))

        logger.info(
            f"Refunded {amount} {updated.currency} on payment {updated.payment_number} "
            f"(refund {gateway_refund.id}, {updated.status.value})"
        )
        return updated

    def _record_refund(
        self,
        tx: PostgresTransaction,
        current: Payment,
        amount: Decimal,
        reason: str | None,
        refund_id: str,
        now: datetime,
    ) -> Payment:
        """Write the refund to the payment, its invoice, the client's totals and the audit log."""
        new_refund_amount = current.refund_amount + amount
        fully_refunded = new_refund_amount >= current.amount
        status = PaymentStatus.REFUNDED if fully_refunded else PaymentStatus.COMPLETED

        updated_row = tx.execute_returning(
            """
            UPDATE payments SET
                refund_amount = %(refund_amount)s,
                refund_reason = %(refund_reason)s,
                refunded_at = %(refunded_at)s,
                status = %(status)s,
                updated_at = %(updated_at)s
            WHERE id = %(id)s
            RETURNING *
            """,
            {
                "id": current.id,
                "refund_amount": new_refund_amount,
                "refund_reason": reason,
                "refunded_at": now,
                "status": status.value,
                "updated_at": now,
            }
        )[0]
        updated = Payment.model_validate(updated_row)

        if updated.invoice_id is not None:
            self.reconciler.reconcile(tx, updated.invoice_id, payment_id=updated.id)

        self.clients.update_statistics(updated.client_id, tx=tx)

        self.audit.log_change(
            entity_type="payment",
            entity_id=updated.id,
            action=AuditAction.REFUND_PROCESSED,
            changes={
                "refund_amount": {"old": str(current.refund_amount), "new": str(new_refund_amount)},
                "status": {"old": current.status.value, "new": status.value},
            },
            metadata={
                "amount": str(amount),
                "reason": reason,
                "refund_id": refund_id,
            },
            tx=tx,
        )
        return updated
