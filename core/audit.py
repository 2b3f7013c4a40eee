"""
Audit trail for billing mutations.

Every money-moving change (invoice created/updated/sent, payment processed,
refund issued, campaign sent) is written here. The audit log is:
- Append-only (entries never modified or deleted)
- Studio-scoped and user-attributed (user_id None = system sweep)
- Detailed (captures old and new values plus free-form metadata)
"""

from enum import Enum
from uuid import UUID, uuid4
from typing import Any

from psycopg2.extras import Json

from clients.postgres_client import PostgresClient, PostgresTransaction
from utils.tenant_context import get_current_studio_id, get_current_user_id
from utils.timezone import now_utc


class AuditAction(Enum):
    """Type of change made to an entity."""

    CREATE = "create"
    UPDATE = "update"
    INVOICE_SENT = "invoice_sent"
    INVOICE_CANCELLED = "invoice_cancelled"
    PAYMENT_PROCESSED = "payment_processed"
    PAYMENT_APPLIED = "payment_applied"
    REFUND_PROCESSED = "refund_processed"
    EMAIL_CAMPAIGN_SENT = "email_campaign_sent"


def compute_changes(
    old: dict[str, Any],
    new: dict[str, Any],
    exclude_fields: set[str] | None = None
) -> dict[str, dict[str, Any]]:
    """Field-level {"old", "new"} diff of two model dumps, ignoring updated_at by default."""
    exclude = exclude_fields or {"updated_at"}
    return {
        key: {"old": old.get(key), "new": new.get(key)}
        for key in old.keys() | new.keys()
        if key not in exclude and old.get(key) != new.get(key)
    }


class AuditLogger:
    """
    Append-only audit writer.

    Always pass model_dump(mode="json") output so UUIDs, Decimals and
    datetimes arrive JSON-serializable.

    Usage:
        audit = AuditLogger(postgres)

        audit.log_change(
            entity_type="invoice",
            entity_id=invoice.id,
            action=AuditAction.CREATE,
            changes={"created": {"invoice_number": invoice.invoice_number}},
        )

        # Inside a transaction so the entry rolls back with the mutation
        with postgres.transaction() as tx:
            ...
            audit.log_change(..., tx=tx)
    """

    def __init__(self, postgres: PostgresClient):
        self.postgres = postgres

    def log_change(
        self,
        entity_type: str,
        entity_id: UUID,
        action: AuditAction,
        changes: dict[str, Any],
        metadata: dict[str, Any] | None = None,
        user_id: UUID | None = None,
        tx: PostgresTransaction | None = None,
    ) -> None:
        """
        Log an entity change.

        Args:
            entity_type: Type of entity ("invoice", "payment", "email_campaign")
            entity_id: ID of the entity
            action: The action performed
            changes: The changes made (format depends on action)
            metadata: Extra context (gateway ids, counts)
            user_id: User who made change (defaults to current context, None = system)
            tx: Open transaction to write through, if any

        Changes format by action:
        - CREATE: {"created": {entity data}}
        - UPDATE and others: {"field": {"old": old_val, "new": new_val}, ...}
        """
        if user_id is None:
            user_id = get_current_user_id()

        executor = tx or self.postgres
        executor.execute(
            """
            INSERT INTO audit_log (
                id, studio_id, user_id, entity_type, entity_id, action,
                changes, metadata, created_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                uuid4(),
                get_current_studio_id(),
                user_id,
                entity_type,
                entity_id,
                action.value,
                Json(changes),
                Json(metadata or {}),
                now_utc()
            )
        )
