"""Email campaign models."""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel


class CampaignStatus(str, Enum):
    """Campaign lifecycle status."""

    DRAFT = "draft"
    SCHEDULED = "scheduled"
    SENDING = "sending"
    SENT = "sent"


class EmailCampaign(BaseModel):
    """Full campaign entity as stored."""

    id: UUID
    studio_id: UUID
    name: str
    subject: str
    html_content: str
    text_content: str | None = None
    from_name: str | None = None
    from_email: str | None = None
    reply_to: str | None = None
    status: CampaignStatus
    sent_count: int = 0
    failed_count: int = 0
    sent_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class CampaignSendResult(BaseModel):
    """Outcome of sending a campaign."""

    campaign_id: UUID
    sent_count: int
    failed_count: int
