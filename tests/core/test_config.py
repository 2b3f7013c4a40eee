"""Tests for BillingConfig."""

import pytest
from pydantic import ValidationError

from core.config import BillingConfig


class TestBillingConfig:

    def test_defaults(self):
        config = BillingConfig()
        assert config.reminder_schedule_days == (3, 7, 14, 30)
        assert config.recurring_invoice_terms_days == 30
        assert config.recurring_payment_terms == "Net 30"
        assert config.campaign_batch_size == 50
        assert config.paypal_mode == "sandbox"

    def test_schedule_sorted_and_deduplicated(self):
        config = BillingConfig(reminder_schedule_days=(14, 3, 7, 3))
        assert config.reminder_schedule_days == (3, 7, 14)

    def test_schedule_must_be_positive(self):
        with pytest.raises(ValidationError, match="positive"):
            BillingConfig(reminder_schedule_days=(0, 7))

    def test_paypal_mode_restricted(self):
        with pytest.raises(ValidationError):
            BillingConfig(paypal_mode="staging")

    def test_batch_size_bounds(self):
        with pytest.raises(ValidationError):
            BillingConfig(campaign_batch_size=0)
