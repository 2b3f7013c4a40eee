"""Payment domain models."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field


class PaymentGateway(str, Enum):
    """Supported payment providers."""

    STRIPE = "stripe"
    PAYPAL = "paypal"


class PaymentStatus(str, Enum):
    """Payment lifecycle status."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentIntentCreate(BaseModel):
    """Request to start a payment with a gateway."""

    amount: Decimal = Field(..., gt=0)
    currency: str = Field("USD", min_length=3, max_length=3)
    client_id: UUID
    invoice_id: UUID | None = None
    booking_id: UUID | None = None
    gateway: PaymentGateway
    description: str | None = Field(None, max_length=500)
    metadata: dict[str, str] = Field(default_factory=dict)


class PaymentIntent(BaseModel):
    """
    Gateway-neutral result of starting a payment.

    For card gateways client_secret_or_approval_url is the client secret the
    browser confirms with; for redirect gateways it is the approval URL.
    """

    id: str
    gateway: PaymentGateway
    client_secret_or_approval_url: str
    amount: Decimal
    currency: str
    status: str


class PaymentFilters(BaseModel):
    """Filters for listing payments."""

    client_id: UUID | None = None
    invoice_id: UUID | None = None
    status: PaymentStatus | None = None
    gateway: PaymentGateway | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None


class Payment(BaseModel):
    """Full payment entity as stored."""

    id: UUID
    studio_id: UUID
    client_id: UUID
    invoice_id: UUID | None
    booking_id: UUID | None
    payment_number: str
    amount: Decimal
    currency: str
    gateway: PaymentGateway
    gateway_transaction_id: str | None
    gateway_response: dict[str, Any] | None = None
    status: PaymentStatus
    refund_amount: Decimal = Decimal("0")
    refund_reason: str | None = None
    refunded_at: datetime | None = None
    processed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}

    @property
    def refundable_amount(self) -> Decimal:
        """What can still be refunded."""
        return self.amount - self.refund_amount

    @property
    def net_amount(self) -> Decimal:
        """Amount kept after refunds. This is what counts toward an invoice."""
        return self.amount - self.refund_amount
