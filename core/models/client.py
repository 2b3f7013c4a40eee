"""Client (studio customer) domain model."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel


class Client(BaseModel):
    """Full client entity as stored."""

    id: UUID
    studio_id: UUID
    first_name: str | None
    last_name: str | None
    email: str | None
    company: str | None = None
    total_spent: Decimal = Decimal("0")
    booking_count: int = 0
    stripe_customer_id: str | None = None
    unsubscribe_token: str | None = None
    unsubscribed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}

    @property
    def display_name(self) -> str:
        """Human-readable name for display."""
        parts = [p for p in [self.first_name, self.last_name] if p]
        if parts:
            return " ".join(parts)
        return self.company or "Unnamed Client"

    @property
    def greeting_name(self) -> str:
        """Name used in email salutations."""
        return self.first_name or self.display_name
