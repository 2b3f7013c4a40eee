"""
Email campaign sending.

A campaign goes to every client of the studio who has an email address and
has not unsubscribed. Recipients are sent in fixed-size batches; within a
batch the sends run concurrently on a thread pool. A failed recipient is
logged and counted, never retried, and never stops the campaign.

Worker threads only talk to the email gateway. All database writes happen on
the calling thread, between batches, so a batch never needs more pooled
connections than one.
"""

import html
import logging
import re
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote
from uuid import UUID, uuid4

from clients.email_client import EmailGatewayClient
from clients.postgres_client import PostgresClient
from core.audit import AuditLogger, AuditAction
from core.config import BillingConfig
from core.errors import ConflictError, ErrorCodes, NotFoundError
from core.models import CampaignSendResult, CampaignStatus, Client, EmailCampaign, Studio
from core.services.client_service import ClientService
from core.services.studio_service import StudioService
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

_MERGE_TAG = re.compile(r"\{\{\s*([a-zA-Z_][a-zA-Z0-9_.]*)\s*\}\}")
_LINK = re.compile(r'(<a\s+(?:[^>]*?\s+)?href=")([^"]*)("[^>]*>)', re.IGNORECASE)
_SENDABLE = (CampaignStatus.DRAFT, CampaignStatus.SCHEDULED)


@dataclass(frozen=True)
class _Recipient:
    client: Client
    tracking_id: str


def render_merge_tags(template: str, values: dict[str, Any], escape: bool = True) -> str:
    """
    Replace {{name}} tags with values. Unknown tags render empty.

    Values are HTML-escaped unless escape is False (plain-text bodies).
    """
    def replace(match: re.Match) -> str:
        value = values.get(match.group(1))
        if value is None:
            return ""
        return html.escape(str(value)) if escape else str(value)

    return _MERGE_TAG.sub(replace, template)


def add_tracking(body: str, open_url: str, click_url: str) -> str:
    """
    Add an open-tracking pixel before </body> and route links through click tracking.

    mailto:, tel: and unsubscribe links are left untouched.
    """
    pixel = f'<img src="{open_url}" width="1" height="1" style="display:none;" />'
    body = body.replace("</body>", f"{pixel}</body>", 1)

    def rewrite(match: re.Match) -> str:
        opening, url, closing = match.groups()
        if url.startswith(("mailto:", "tel:")) or "unsubscribe" in url:
            return match.group(0)
        return f'{opening}{click_url}?url={quote(url, safe="")}{closing}'

    return _LINK.sub(rewrite, body)


class CampaignService:
    """Service for sending email campaigns."""

    def __init__(
        self,
        postgres: PostgresClient,
        audit: AuditLogger,
        email_client: EmailGatewayClient,
        clients: ClientService,
        studios: StudioService,
        config: BillingConfig | None = None,
    ):
        self.postgres = postgres
        self.audit = audit
        self.email_client = email_client
        self.clients = clients
        self.studios = studios
        self.config = config or BillingConfig()

    def get_by_id(self, campaign_id: UUID) -> EmailCampaign | None:
        """Get campaign by ID, None if not in this studio."""
        row = self.postgres.execute_single(
            "SELECT * FROM email_campaigns WHERE id = %s",
            (campaign_id,)
        )

        if row is None:
            return None

        return EmailCampaign.model_validate(row)

    def _claim(self, campaign_id: UUID) -> EmailCampaign:
        """Move a DRAFT/SCHEDULED campaign to SENDING, atomically."""
        now = now_utc()
        rows = self.postgres.execute_returning(
            """
            UPDATE email_campaigns
            SET status = %s, sent_at = %s, updated_at = %s
            WHERE id = %s AND status = ANY(%s)
            RETURNING *
            """,
            (
                CampaignStatus.SENDING.value, now, now,
                campaign_id, [s.value for s in _SENDABLE]
            )
        )
        if rows:
            return EmailCampaign.model_validate(rows[0])

        existing = self.get_by_id(campaign_id)
        if existing is None:
            raise NotFoundError(f"Campaign {campaign_id} not found")
        raise ConflictError(
            f"Campaign {existing.name} has already been sent ({existing.status.value})",
            code=ErrorCodes.CAMPAIGN_ALREADY_SENT,
        )

    def _create_recipients(self, campaign: EmailCampaign, audience: list[Client]) -> list[_Recipient]:
        recipients = []
        now = now_utc()
        with self.postgres.transaction() as tx:
            for client in audience:
                tracking_id = uuid4().hex
                tx.execute(
                    """
                    INSERT INTO campaign_recipients (
                        id, campaign_id, client_id, email_used, tracking_id, created_at
                    ) VALUES (%s, %s, %s, %s, %s, %s)
                    ON CONFLICT (campaign_id, client_id) DO NOTHING
                    """,
                    (uuid4(), campaign.id, client.id, client.email, tracking_id, now)
                )
                recipients.append(_Recipient(client=client, tracking_id=tracking_id))
        return recipients

    def _merge_values(self, campaign: EmailCampaign, studio: Studio, client: Client) -> dict[str, Any]:
        unsubscribe_url = (
            f"{self.config.app_base_url}/unsubscribe/{client.unsubscribe_token}"
            if client.unsubscribe_token else None
        )
        return {
            "client.first_name": client.first_name,
            "client.last_name": client.last_name,
            "client.email": client.email,
            "client.company": client.company,
            "studio.name": studio.name,
            "studio.email": studio.email,
            "studio.phone": studio.phone,
            "campaign.subject": campaign.subject,
            "campaign.from_name": campaign.from_name,
            "current_year": now_utc().year,
            "unsubscribe_url": unsubscribe_url,
        }

    def _send_one(self, campaign: EmailCampaign, studio: Studio, recipient: _Recipient) -> str | None:
        client = recipient.client
        values = self._merge_values(campaign, studio, client)

        tracking_base = f"{self.config.api_base_url}/api/v1/email/track"
        path = f"{campaign.id}/{client.id}/{recipient.tracking_id}"
        body = add_tracking(
            render_merge_tags(campaign.html_content, values),
            open_url=f"{tracking_base}/open/{path}",
            click_url=f"{tracking_base}/click/{path}",
        )
        text = (
            render_merge_tags(campaign.text_content, values, escape=False)
            if campaign.text_content else None
        )

        headers = None
        if values["unsubscribe_url"]:
            headers = {"List-Unsubscribe": f"<{values['unsubscribe_url']}>"}

        return self.email_client.send_email(
            to=client.email,
            subject=render_merge_tags(campaign.subject, values, escape=False),
            html=body,
            text=text,
            sender="marketing",
            from_name=campaign.from_name,
            reply_to=campaign.reply_to,
            headers=headers,
        )

    def _send_batch(
        self, campaign: EmailCampaign, studio: Studio, batch: list[_Recipient]
    ) -> tuple[list[UUID], int]:
        """Send one batch concurrently. Returns (client ids sent, failure count)."""
        sent: list[UUID] = []
        failed = 0

        with ThreadPoolExecutor(max_workers=len(batch)) as executor:
            futures = {
                executor.submit(self._send_one, campaign, studio, recipient): recipient
                for recipient in batch
            }
            for future in as_completed(futures):
                recipient = futures[future]
                try:
                    future.result()
                    sent.append(recipient.client.id)
                except Exception as e:
                    failed += 1
                    logger.error(
                        f"Campaign {campaign.id}: send to {recipient.client.email} failed: {e}"
                    )

        return sent, failed

    def send_campaign(self, campaign_id: UUID) -> CampaignSendResult:
        """
        Send a DRAFT or SCHEDULED campaign to its audience.

        Progress (sent_count) is saved after every batch.

        Raises:
            NotFoundError: Campaign missing
            ConflictError: Campaign already sending or sent
        """
        campaign = self._claim(campaign_id)
        studio = self.studios.get_current()

        audience = self.clients.list_campaign_audience()
        recipients = self._create_recipients(campaign, audience)

        batch_size = self.config.campaign_batch_size
        sent_count = 0
        failed_count = 0

        for start in range(0, len(recipients), batch_size):
            batch = recipients[start:start + batch_size]
            sent_ids, failed = self._send_batch(campaign, studio, batch)
            sent_count += len(sent_ids)
            failed_count += failed

            if sent_ids:
                self.postgres.execute(
                    """
                    UPDATE campaign_recipients
                    SET sent_at = %s
                    WHERE campaign_id = %s AND client_id = ANY(%s::uuid[])
                    """,
                    (now_utc(), campaign_id, sent_ids)
                )
            self.postgres.execute(
                "UPDATE email_campaigns SET sent_count = %s, updated_at = %s WHERE id = %s",
                (sent_count, now_utc(), campaign_id)
            )
            logger.info(
                f"Campaign {campaign_id}: batch {start // batch_size + 1} done, "
                f"{sent_count} sent, {failed_count} failed"
            )

        self.postgres.execute(
            """
            UPDATE email_campaigns
            SET status = %s, sent_count = %s, failed_count = %s, updated_at = %s
            WHERE id = %s
            """,
            (CampaignStatus.SENT.value, sent_count, failed_count, now_utc(), campaign_id)
        )

        self.audit.log_change(
            entity_type="email_campaign",
            entity_id=campaign_id,
            action=AuditAction.EMAIL_CAMPAIGN_SENT,
            changes={"status": {"old": CampaignStatus.SENDING.value, "new": CampaignStatus.SENT.value}},
            metadata={
                "recipients": len(recipients),
                "sent_count": sent_count,
                "failed_count": failed_count,
            },
        )

        logger.info(f"Campaign {campaign.name} sent: {sent_count} sent, {failed_count} failed")
        return CampaignSendResult(
            campaign_id=campaign_id,
            sent_count=sent_count,
            failed_count=failed_count,
        )
