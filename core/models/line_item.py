"""Invoice line item models.

Money is Decimal, rounded to cents at computation boundaries (core.billing).
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field


class LineItemInput(BaseModel):
    """One billable entry as submitted when creating or editing an invoice."""

    description: str = Field(..., min_length=1, max_length=500)
    quantity: Decimal = Field(Decimal("1"), gt=0)
    unit_price: Decimal = Field(..., ge=0)
    taxable: bool = True
    category: str | None = Field(None, max_length=100)


class LineItem(BaseModel):
    """Full line item entity as stored."""

    id: UUID
    invoice_id: UUID
    description: str
    quantity: Decimal
    unit_price: Decimal
    total: Decimal
    taxable: bool
    tax_rate: Decimal
    tax_amount: Decimal
    category: str | None
    sort_order: int
    created_at: datetime

    model_config = {"from_attributes": True}
