"""Billing configuration."""

from pydantic import BaseModel, Field, field_validator


class BillingConfig(BaseModel):
    """
    Billing workflow configuration.

    Secrets (gateway keys, database URL) live in Vault, not here. This holds
    only behavior knobs with safe defaults.
    """

    # Recurring invoicing
    recurring_invoice_terms_days: int = Field(
        default=30,
        description="Days until due for invoices generated from recurring bookings",
        ge=1,
        le=365,
    )
    recurring_payment_terms: str = Field(
        default="Net 30",
        description="Payment terms text on generated recurring invoices",
    )

    # Reminders
    reminder_schedule_days: tuple[int, ...] = Field(
        default=(3, 7, 14, 30),
        description="Days past due on which a payment reminder is sent",
    )

    # Campaigns
    campaign_batch_size: int = Field(
        default=50,
        description="Recipients sent concurrently per campaign batch",
        ge=1,
        le=500,
    )

    # Defaults
    default_currency: str = Field(
        default="USD",
        description="Currency used when neither request nor studio specify one",
        min_length=3,
        max_length=3,
    )

    # URLs
    app_base_url: str = Field(
        default="http://localhost:3000",
        description="Client-facing app URL (PayPal return/cancel, unsubscribe links)",
    )
    api_base_url: str = Field(
        default="http://localhost:8000",
        description="Public API URL for email open/click tracking",
    )

    # Gateways
    paypal_mode: str = Field(
        default="sandbox",
        description="PayPal environment",
        pattern="^(sandbox|live)$",
    )
    gateway_timeout_seconds: int = Field(
        default=10,
        description="Timeout for outbound gateway HTTP calls",
        ge=1,
        le=60,
    )

    @field_validator("reminder_schedule_days")
    @classmethod
    def schedule_is_positive_and_sorted(cls, value: tuple[int, ...]) -> tuple[int, ...]:
        """Reminder offsets must be positive; stored sorted and de-duplicated."""
        if any(day <= 0 for day in value):
            raise ValueError("reminder_schedule_days must all be positive")
        return tuple(sorted(set(value)))
