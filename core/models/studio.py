"""Studio (tenant) domain model."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel


class Studio(BaseModel):
    """Studio as stored. Only the fields billing reads."""

    id: UUID
    name: str
    email: str | None = None
    phone: str | None = None
    tax_rate: Decimal = Decimal("0")
    currency: str = "USD"
    timezone: str = "UTC"
    created_at: datetime | None = None

    model_config = {"from_attributes": True}
