"""
Domain events for billing.

Immutable event objects that represent money-related state changes.
A service publishes what happened; handlers (emails) react without the
publisher knowing who's listening.

Event Categories:
- InvoiceEvent: Invoice lifecycle (sent, paid)
- PaymentEvent: Payment lifecycle (completed, refunded)

Events carry the full domain object plus the studio id, so handlers neither
re-fetch state nor depend on the publisher's tenant context.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from utils.timezone import now_utc


@dataclass(frozen=True, kw_only=True)
class BillingEvent:
    """Base class for all billing domain events."""
    event_id: str = field(default_factory=lambda: str(uuid4()))
    occurred_at: datetime = field(default_factory=now_utc)
    studio_id: UUID | None = None


# =============================================================================
# INVOICE EVENTS
# =============================================================================


@dataclass(frozen=True)
class InvoiceEvent(BillingEvent):
    """Events related to invoice lifecycle."""
    pass


@dataclass(frozen=True)
class InvoiceSent(InvoiceEvent):
    """Invoice was sent (or re-sent) to the client."""
    invoice: Any = None  # Invoice, Any to avoid circular import
    resend: bool = False

    @classmethod
    def create(cls, invoice: Any, resend: bool = False) -> "InvoiceSent":
        return cls(invoice=invoice, resend=resend, studio_id=invoice.studio_id)


@dataclass(frozen=True)
class InvoicePaid(InvoiceEvent):
    """Invoice became fully paid."""
    invoice: Any = None

    @classmethod
    def create(cls, invoice: Any) -> "InvoicePaid":
        return cls(invoice=invoice, studio_id=invoice.studio_id)


# =============================================================================
# PAYMENT EVENTS
# =============================================================================


@dataclass(frozen=True)
class PaymentEvent(BillingEvent):
    """Events related to payment lifecycle."""
    pass


@dataclass(frozen=True)
class PaymentCompleted(PaymentEvent):
    """A gateway charge was confirmed and recorded."""
    payment: Any = None

    @classmethod
    def create(cls, payment: Any) -> "PaymentCompleted":
        return cls(payment=payment, studio_id=payment.studio_id)


@dataclass(frozen=True)
class PaymentRefunded(PaymentEvent):
    """Part or all of a payment was refunded."""
    payment: Any = None
    refund_amount: Decimal = Decimal("0")
    gateway_refund_id: str | None = None

    @classmethod
    def create(
        cls, payment: Any, refund_amount: Decimal, gateway_refund_id: str | None = None
    ) -> "PaymentRefunded":
        return cls(
            payment=payment,
            refund_amount=refund_amount,
            gateway_refund_id=gateway_refund_id,
            studio_id=payment.studio_id,
        )
