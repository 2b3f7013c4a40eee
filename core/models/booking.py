"""Booking domain model (only what billing touches)."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from pydantic import BaseModel


class BookingStatus(str, Enum):
    """Booking lifecycle status."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Booking(BaseModel):
    """Full booking entity as stored."""

    id: UUID
    studio_id: UUID
    client_id: UUID
    title: str
    booking_type: str | None = None
    status: BookingStatus
    is_recurring: bool = False
    total_amount: Decimal = Decimal("0")
    currency: str = "USD"
    confirmed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
