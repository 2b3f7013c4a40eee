"""Propagate studio (tenant) and acting-user identity through the call stack."""

from contextlib import contextmanager
from contextvars import ContextVar
from uuid import UUID

_current_studio_id: ContextVar[UUID | None] = ContextVar("current_studio_id", default=None)
_current_user_id: ContextVar[UUID | None] = ContextVar("current_user_id", default=None)


def get_current_studio_id() -> UUID:
    """
    Get the current studio ID from context.

    Raises RuntimeError if no studio context is set. Every billing query is
    studio-scoped, so reaching here without one is a bug.
    """
    studio_id = _current_studio_id.get()
    if studio_id is None:
        raise RuntimeError(
            "No studio context set. This usually means you're calling "
            "studio-scoped code outside of an authenticated request or sweep."
        )
    return studio_id


def get_current_user_id() -> UUID | None:
    """
    Get the acting user's ID, or None when the system is acting
    (scheduler sweeps, webhooks).
    """
    return _current_user_id.get()


def clear_tenant() -> None:
    """
    Clear studio and user context.

    Must be called in a finally block to prevent context leakage.
    """
    _current_studio_id.set(None)
    _current_user_id.set(None)


@contextmanager
def tenant_context(studio_id: UUID, user_id: UUID | None = None):
    """
    Temporarily act as `user_id` within `studio_id`.

    Useful for:
    - Tests
    - Scheduler sweeps that iterate over studios (user_id=None)
    - Webhooks resolved to a studio from gateway metadata

    Example:
        with tenant_context(studio.id):
            scheduler.send_payment_reminders(studio.id)
    """
    studio_token = _current_studio_id.set(studio_id)
    user_token = _current_user_id.set(user_id)
    try:
        yield
    finally:
        _current_user_id.reset(user_token)
        _current_studio_id.reset(studio_token)
