"""Invoice domain models.

Amounts are Decimal in the invoice currency, rounded to 2 places.
Tax rate and discount percentage are percents (10 = 10%).
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from core.models.line_item import LineItemInput


class InvoiceStatus(str, Enum):
    """Invoice lifecycle status."""

    DRAFT = "draft"
    SENT = "sent"
    VIEWED = "viewed"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


# Sent to the client and still expecting money
OUTSTANDING_STATUSES = (
    InvoiceStatus.SENT,
    InvoiceStatus.VIEWED,
    InvoiceStatus.PARTIALLY_PAID,
    InvoiceStatus.OVERDUE,
)


class InvoiceCreate(BaseModel):
    """Data required to create an invoice."""

    client_id: UUID
    booking_id: UUID | None = None
    issue_date: datetime | None = None
    due_date: datetime
    line_items: list[LineItemInput]
    discount_percentage: Decimal | None = Field(None, ge=0, le=100)
    discount_amount: Decimal | None = Field(None, ge=0)
    tax_rate: Decimal | None = Field(None, ge=0, le=100)
    currency: str | None = Field(None, min_length=3, max_length=3)
    payment_terms: str | None = Field(None, max_length=100)
    notes: str | None = Field(None, max_length=2000)


class InvoiceUpdate(BaseModel):
    """Fields that can be changed on an unpaid invoice. All optional."""

    due_date: datetime | None = None
    line_items: list[LineItemInput] | None = None
    discount_percentage: Decimal | None = Field(None, ge=0, le=100)
    discount_amount: Decimal | None = Field(None, ge=0)
    tax_rate: Decimal | None = Field(None, ge=0, le=100)
    payment_terms: str | None = Field(None, max_length=100)
    notes: str | None = Field(None, max_length=2000)
    status: InvoiceStatus | None = None

    @field_validator("status")
    @classmethod
    def only_draft_or_sent(cls, value: InvoiceStatus | None) -> InvoiceStatus | None:
        """Payment-driven statuses are set by reconciliation, never by edits."""
        if value is not None and value not in (InvoiceStatus.DRAFT, InvoiceStatus.SENT):
            raise ValueError("status can only be set to 'draft' or 'sent' on update")
        return value


class InvoiceFilters(BaseModel):
    """Filters for listing invoices."""

    search: str | None = None
    status: InvoiceStatus | None = None
    client_id: UUID | None = None
    booking_id: UUID | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    overdue: bool = False


class Invoice(BaseModel):
    """Full invoice entity as stored."""

    id: UUID
    studio_id: UUID
    client_id: UUID
    booking_id: UUID | None
    created_by: UUID | None = None
    invoice_number: str
    status: InvoiceStatus
    currency: str
    subtotal: Decimal
    discount_percentage: Decimal
    discount_amount: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    total: Decimal
    amount_paid: Decimal
    amount_due: Decimal
    issue_date: datetime
    due_date: datetime
    sent_at: datetime | None = None
    viewed_at: datetime | None = None
    paid_at: datetime | None = None
    cancelled_at: datetime | None = None
    payment_terms: str | None = None
    notes: str | None = None
    last_reminder_days: int | None = None
    last_reminder_sent_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}

    @property
    def credit_amount(self) -> Decimal:
        """Amount paid beyond the total (overpayment), 0 if none."""
        return max(self.amount_paid - self.total, Decimal("0"))

    @property
    def is_paid(self) -> bool:
        """Whether invoice is fully paid."""
        return self.status == InvoiceStatus.PAID

    @property
    def is_outstanding(self) -> bool:
        """Sent and still expecting payment."""
        return self.status in OUTSTANDING_STATUSES
