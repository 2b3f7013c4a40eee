"""Tests for StudioService."""

import pytest

from core.errors import NotFoundError
from core.services.studio_service import StudioService

from tests.factories import TEST_STUDIO_B_ID, TEST_STUDIO_ID, studio_row


@pytest.fixture
def service(db):
    return StudioService(db)


def test_get_current_uses_tenant(db, service, as_studio_user):
    db.on("SELECT * FROM studios WHERE id", [studio_row()])

    studio = service.get_current()

    assert studio.name == "Blue Room Studio"
    assert db.queries("SELECT * FROM studios WHERE id") == [(TEST_STUDIO_ID,)]


def test_get_current_missing(service, as_studio_user):
    with pytest.raises(NotFoundError, match="Studio"):
        service.get_current()


def test_list_ids(db, service):
    db.on("SELECT id FROM studios", [{"id": TEST_STUDIO_ID}, {"id": str(TEST_STUDIO_B_ID)}])

    assert service.list_ids() == [TEST_STUDIO_ID, TEST_STUDIO_B_ID]


class TestGatewaySettings:

    def test_enabled_settings_returned(self, db, service, as_studio_user):
        db.on("FROM payment_settings", [{"settings": {"statement_descriptor": "BLUEROOM"}}])

        assert service.get_gateway_settings("stripe") == {"statement_descriptor": "BLUEROOM"}

    def test_enabled_without_settings_is_empty_dict(self, db, service, as_studio_user):
        db.on("FROM payment_settings", [{"settings": None}])

        assert service.get_gateway_settings("paypal") == {}

    def test_not_configured_is_none(self, db, service, as_studio_user):
        assert service.get_gateway_settings("paypal") is None

        sql, params = db.calls[-1]
        assert "enabled = TRUE" in sql
        assert params == (TEST_STUDIO_ID, "paypal")
