"""Utility modules for cross-cutting concerns."""

from utils.timezone import now_utc, to_utc, to_local, days_from_now, whole_days_between
from utils.tenant_context import (
    get_current_studio_id,
    get_current_user_id,
    clear_tenant,
    tenant_context,
)
