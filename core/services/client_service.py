"""
Client (studio customer) service: the slice of client data billing owns.

Lifetime statistics are recomputed from source rows on every call, never
incremented, so re-running after a retry or refund is always safe.
"""

import logging
from uuid import UUID

from clients.postgres_client import PostgresClient, PostgresTransaction
from core.errors import NotFoundError
from core.models import Client
from utils.timezone import now_utc

logger = logging.getLogger(__name__)


class ClientService:
    """Service for client lookups and billing statistics."""

    def __init__(self, postgres: PostgresClient):
        self.postgres = postgres

    def get_by_id(self, client_id: UUID) -> Client | None:
        """Get client by ID, None if not in this studio."""
        row = self.postgres.execute_single(
            "SELECT * FROM clients WHERE id = %s",
            (client_id,)
        )

        if row is None:
            return None

        return Client.model_validate(row)

    def require(self, client_id: UUID) -> Client:
        """Get client by ID or raise NotFoundError."""
        client = self.get_by_id(client_id)
        if client is None:
            raise NotFoundError(f"Client {client_id} not found")
        return client

    def set_stripe_customer_id(self, client_id: UUID, stripe_customer_id: str) -> None:
        """Remember the gateway customer so later intents reuse it."""
        self.postgres.execute(
            """
            UPDATE clients
            SET stripe_customer_id = %s, updated_at = %s
            WHERE id = %s
            """,
            (stripe_customer_id, now_utc(), client_id)
        )

    def update_statistics(self, client_id: UUID, tx: PostgresTransaction | None = None) -> Client | None:
        """
        Recompute booking_count and total_spent.

        booking_count counts bookings in progress or completed; total_spent
        sums what was kept from completed payments (amount minus refunds).
        """
        executor = tx or self.postgres
        rows = executor.execute_returning(
            """
            UPDATE clients SET
                booking_count = (
                    SELECT COUNT(*) FROM bookings
                    WHERE client_id = %(client_id)s
                      AND status IN ('completed', 'in_progress')
                ),
                total_spent = (
                    SELECT COALESCE(SUM(amount - refund_amount), 0) FROM payments
                    WHERE client_id = %(client_id)s
                      AND status IN ('completed', 'refunded')
                ),
                updated_at = %(updated_at)s
            WHERE id = %(client_id)s
            RETURNING *
            """,
            {"client_id": client_id, "updated_at": now_utc()}
        )

        if not rows:
            logger.warning(f"Statistics not updated, client {client_id} not found")
            return None

        return Client.model_validate(rows[0])

    def list_campaign_audience(self) -> list[Client]:
        """Clients with an email address who have not unsubscribed."""
        rows = self.postgres.execute(
            """
            SELECT * FROM clients
            WHERE email IS NOT NULL AND email <> ''
              AND unsubscribed_at IS NULL
            ORDER BY created_at
            """
        )
        return [Client.model_validate(row) for row in rows]
