"""
Studio lookups for billing: the studio record and its gateway settings.

The studios table carries no RLS (the scheduler lists every studio before
entering any tenant context); payment_settings does.
"""

import logging
from typing import Any
from uuid import UUID

from clients.postgres_client import PostgresClient
from core.errors import NotFoundError
from core.models import Studio
from utils.tenant_context import get_current_studio_id

logger = logging.getLogger(__name__)


class StudioService:
    """Read-only access to studio records and payment settings."""

    def __init__(self, postgres: PostgresClient):
        self.postgres = postgres

    def get_current(self) -> Studio:
        """
        Studio of the current tenant context.

        Raises:
            NotFoundError: Studio row missing
        """
        studio_id = get_current_studio_id()
        row = self.postgres.execute_single(
            "SELECT * FROM studios WHERE id = %s",
            (studio_id,)
        )
        if row is None:
            raise NotFoundError(f"Studio {studio_id} not found")
        return Studio.model_validate(row)

    def list_ids(self) -> list[UUID]:
        """All studio IDs, for periodic sweeps."""
        rows = self.postgres.execute("SELECT id FROM studios ORDER BY created_at")
        return [UUID(str(row["id"])) for row in rows]

    def get_gateway_settings(self, gateway: str) -> dict[str, Any] | None:
        """
        Enabled settings for one gateway in the current studio.

        Returns:
            The settings JSON (possibly empty), or None when the gateway is
            not configured or disabled.
        """
        row = self.postgres.execute_single(
            """
            SELECT settings FROM payment_settings
            WHERE studio_id = %s AND gateway = %s AND enabled = TRUE
            """,
            (get_current_studio_id(), gateway)
        )
        if row is None:
            return None
        return row["settings"] or {}
