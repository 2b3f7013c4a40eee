"""Booking lookups and the payment-driven confirmation billing performs."""

import logging
from uuid import UUID

from clients.postgres_client import PostgresClient, PostgresTransaction
from core.models import Booking, BookingStatus
from utils.timezone import now_utc

logger = logging.getLogger(__name__)


class BookingService:
    """Service for the booking operations billing needs."""

    def __init__(self, postgres: PostgresClient):
        self.postgres = postgres

    def get_by_id(self, booking_id: UUID) -> Booking | None:
        """Get booking by ID, None if not in this studio."""
        row = self.postgres.execute_single(
            "SELECT * FROM bookings WHERE id = %s",
            (booking_id,)
        )

        if row is None:
            return None

        return Booking.model_validate(row)

    def list_uninvoiced_recurring(self) -> list[Booking]:
        """Completed recurring bookings that have no invoice yet."""
        rows = self.postgres.execute(
            """
            SELECT b.* FROM bookings b
            WHERE b.is_recurring = TRUE
              AND b.status = %s
              AND NOT EXISTS (
                  SELECT 1 FROM invoices i WHERE i.booking_id = b.id
              )
            ORDER BY b.created_at
            """,
            (BookingStatus.COMPLETED.value,)
        )
        return [Booking.model_validate(row) for row in rows]

    def confirm_paid(self, booking_id: UUID, tx: PostgresTransaction) -> Booking | None:
        """
        Confirm a pending booking once its invoice is paid.

        Bookings already confirmed, in progress, completed or cancelled are
        left as they are.

        Returns:
            The confirmed booking, or None when nothing changed
        """
        rows = tx.execute_returning(
            """
            UPDATE bookings
            SET status = %s, confirmed_at = COALESCE(confirmed_at, %s), updated_at = %s
            WHERE id = %s AND status = %s
            RETURNING *
            """,
            (
                BookingStatus.CONFIRMED.value, now_utc(), now_utc(),
                booking_id, BookingStatus.PENDING.value
            )
        )

        if not rows:
            logger.info(f"Booking {booking_id} not pending, left unchanged")
            return None

        logger.info(f"Booking {booking_id} confirmed by payment")
        return Booking.model_validate(rows[0])
