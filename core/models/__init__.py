"""Core billing domain models."""

from core.models.studio import Studio
from core.models.client import Client
from core.models.booking import Booking, BookingStatus
from core.models.line_item import LineItem, LineItemInput
from core.models.invoice import (
    Invoice, InvoiceCreate, InvoiceUpdate, InvoiceFilters, InvoiceStatus, OUTSTANDING_STATUSES,
)
from core.models.payment import (
    Payment, PaymentIntent, PaymentIntentCreate, PaymentFilters, PaymentGateway, PaymentStatus,
)
from core.models.campaign import EmailCampaign, CampaignStatus, CampaignSendResult

__all__ = [
    # Studio / Client / Booking
    "Studio", "Client", "Booking", "BookingStatus",
    # Invoice
    "Invoice", "InvoiceCreate", "InvoiceUpdate", "InvoiceFilters", "InvoiceStatus",
    "OUTSTANDING_STATUSES", "LineItem", "LineItemInput",
    # Payment
    "Payment", "PaymentIntent", "PaymentIntentCreate", "PaymentFilters",
    "PaymentGateway", "PaymentStatus",
    # Campaign
    "EmailCampaign", "CampaignStatus", "CampaignSendResult",
]
