"""Tests for the payment gateway clients and registry.

Stripe SDK calls are patched; PayPal HTTP is mocked with responses.
"""

import hashlib
import hmac
import json
import time
from decimal import Decimal
from unittest.mock import patch

import pytest
import responses
import stripe

from clients.payment_gateways import (
    GatewayRegistry, PaymentGatewayClient, PayPalGateway, StripeGateway,
)
from core.errors import PaymentGatewayError


# =============================================================================
# REGISTRY AND CAPABILITIES
# =============================================================================


class TestGatewayRegistry:

    def test_register_and_get_by_name(self):
        registry = GatewayRegistry()
        gateway = StripeGateway(secret_key="sk_test_1")
        registry.register(gateway)

        assert registry.get("stripe") is gateway
        assert registry.get("paypal") is None
        assert registry.names() == ["stripe"]

    def test_rejects_nameless_gateway(self):
        with pytest.raises(ValueError, match="name"):
            GatewayRegistry().register(PaymentGatewayClient())

    def test_capabilities(self):
        stripe_gateway = StripeGateway(secret_key="sk_test_1")
        paypal_gateway = PayPalGateway("id", "secret", "https://app/ok", "https://app/cancel")

        assert stripe_gateway.supports("refund")
        assert stripe_gateway.supports("customers")
        assert paypal_gateway.supports("create_intent")
        assert not paypal_gateway.supports("refund")
        assert not paypal_gateway.supports("retrieve")

    def test_unimplemented_capability_raises(self):
        paypal_gateway = PayPalGateway("id", "secret", "https://app/ok", "https://app/cancel")
        with pytest.raises(NotImplementedError):
            paypal_gateway.refund("PAY-1", Decimal("10.00"))


# =============================================================================
# STRIPE
# =============================================================================


def _intent(**overrides):
    values = {
        "id": "pi_123",
        "object": "payment_intent",
        "amount": 27000,
        "currency": "usd",
        "status": "succeeded",
        "client_secret": "pi_123_secret_abc",
        "metadata": {"studio_id": "s-1", "client_id": "c-1", "invoice_id": ""},
    }
    values.update(overrides)
    return stripe.PaymentIntent.construct_from(values, "sk_test_1")


class TestStripeGateway:

    @pytest.fixture
    def gateway(self):
        return StripeGateway(secret_key="sk_test_1", webhook_secret="whsec_test")

    def test_requires_secret_key(self):
        with pytest.raises(ValueError, match="secret_key"):
            StripeGateway(secret_key="")

    def test_create_intent_sends_cents_and_lowercase_currency(self, gateway):
        with patch("clients.payment_gateways.stripe.PaymentIntent.create") as create:
            create.return_value = _intent(status="requires_payment_method")

            intent = gateway.create_intent(
                amount=Decimal("270.00"),
                currency="USD",
                metadata={"studio_id": "s-1"},
                customer_ref="cus_1",
                description="Invoice INV-1",
            )

        kwargs = create.call_args.kwargs
        assert kwargs["amount"] == 27000
        assert kwargs["currency"] == "usd"
        assert kwargs["customer"] == "cus_1"
        assert kwargs["api_key"] == "sk_test_1"
        assert kwargs["automatic_payment_methods"] == {"enabled": True}
        assert intent.id == "pi_123"
        assert intent.client_secret_or_approval_url == "pi_123_secret_abc"

    def test_create_intent_omits_empty_customer(self, gateway):
        with patch("clients.payment_gateways.stripe.PaymentIntent.create") as create:
            create.return_value = _intent()
            gateway.create_intent(amount=Decimal("5"), currency="usd", metadata={})

        assert "customer" not in create.call_args.kwargs
        assert "description" not in create.call_args.kwargs

    def test_retrieve_normalizes_charge(self, gateway):
        with patch("clients.payment_gateways.stripe.PaymentIntent.retrieve") as retrieve:
            retrieve.return_value = _intent()
            charge = gateway.retrieve("pi_123")

        assert charge.transaction_id == "pi_123"
        assert charge.amount == Decimal("270.00")
        assert charge.currency == "USD"
        assert charge.succeeded is True
        assert charge.metadata["client_id"] == "c-1"
        assert charge.raw["id"] == "pi_123"

    def test_retrieve_failed_intent_is_not_succeeded(self, gateway):
        with patch("clients.payment_gateways.stripe.PaymentIntent.retrieve") as retrieve:
            retrieve.return_value = _intent(status="requires_payment_method")
            charge = gateway.retrieve("pi_123")

        assert charge.succeeded is False
        assert charge.status == "requires_payment_method"

    def test_refund_sends_cents(self, gateway):
        refund = stripe.Refund.construct_from(
            {"id": "re_1", "object": "refund", "amount": 10000, "status": "succeeded"}, "sk_test_1"
        )
        with patch("clients.payment_gateways.stripe.Refund.create", return_value=refund) as create:
            result = gateway.refund("pi_123", Decimal("100.00"), metadata={"internal_reason": "dup"})

        assert create.call_args.kwargs["payment_intent"] == "pi_123"
        assert create.call_args.kwargs["amount"] == 10000
        assert result.id == "re_1"
        assert result.amount == Decimal("100.00")

    def test_stripe_error_becomes_gateway_error(self, gateway):
        with patch("clients.payment_gateways.stripe.Refund.create") as create:
            create.side_effect = stripe.InvalidRequestError("Charge already refunded", "charge")
            with pytest.raises(PaymentGatewayError, match="already refunded") as exc_info:
                gateway.refund("pi_123", Decimal("1.00"))

        assert exc_info.value.gateway == "stripe"

    def test_create_customer_returns_id(self, gateway):
        customer = stripe.Customer.construct_from({"id": "cus_9", "object": "customer"}, "sk_test_1")
        with patch("clients.payment_gateways.stripe.Customer.create", return_value=customer) as create:
            assert gateway.create_customer("maya@example.com", "Maya Ortiz", {"client_id": "c-1"}) == "cus_9"

        assert create.call_args.kwargs["email"] == "maya@example.com"

    def test_webhook_signature_verified(self, gateway):
        payload = json.dumps({
            "id": "evt_1",
            "object": "event",
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": "pi_123", "object": "payment_intent", "metadata": {}}},
        })
        timestamp = int(time.time())
        signature = hmac.new(
            b"whsec_test", f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256
        ).hexdigest()

        event = gateway.construct_webhook_event(payload, f"t={timestamp},v1={signature}")

        assert event["type"] == "payment_intent.succeeded"

    def test_webhook_bad_signature_raises(self, gateway):
        with pytest.raises(stripe.SignatureVerificationError):
            gateway.construct_webhook_event('{"id": "evt_1"}', f"t={int(time.time())},v1=deadbeef")

    def test_webhook_without_secret_raises(self):
        with pytest.raises(ValueError, match="webhook secret"):
            StripeGateway(secret_key="sk_test_1").construct_webhook_event("{}", "t=1,v1=x")


# =============================================================================
# PAYPAL
# =============================================================================


SANDBOX = "https://api-m.sandbox.paypal.com"


class TestPayPalGateway:

    @pytest.fixture
    def gateway(self):
        return PayPalGateway(
            client_id="pp-id",
            client_secret="pp-secret",
            return_url="https://app.test/payments/success",
            cancel_url="https://app.test/payments/cancel",
        )

    def _token(self):
        responses.add(
            responses.POST,
            f"{SANDBOX}/v1/oauth2/token",
            json={"access_token": "A21-token", "expires_in": 32400},
            status=200,
        )

    def test_rejects_unknown_mode(self):
        with pytest.raises(ValueError, match="mode"):
            PayPalGateway("id", "secret", "r", "c", mode="staging")

    @responses.activate
    def test_create_intent_returns_approval_url(self, gateway):
        self._token()
        responses.add(
            responses.POST,
            f"{SANDBOX}/v1/payments/payment",
            json={
                "id": "PAYID-1",
                "state": "created",
                "links": [
                    {"rel": "self", "href": f"{SANDBOX}/v1/payments/payment/PAYID-1"},
                    {"rel": "approval_url", "href": "https://www.sandbox.paypal.com/checkout?token=EC-1"},
                ],
            },
            status=201,
        )

        intent = gateway.create_intent(
            amount=Decimal("270"),
            currency="usd",
            metadata={"studio_id": "s-1", "client_id": "c-1"},
        )

        assert intent.id == "PAYID-1"
        assert intent.client_secret_or_approval_url.endswith("token=EC-1")

        body = json.loads(responses.calls[1].request.body)
        transaction = body["transactions"][0]
        assert transaction["amount"] == {"currency": "USD", "total": "270.00"}
        assert json.loads(transaction["custom"]) == {"studio_id": "s-1", "client_id": "c-1"}
        assert body["redirect_urls"]["return_url"] == "https://app.test/payments/success"
        assert responses.calls[1].request.headers["Authorization"] == "Bearer A21-token"

    def _payment_created(self):
        responses.add(
            responses.POST,
            f"{SANDBOX}/v1/payments/payment",
            json={"id": "PAYID-1", "state": "created", "links": []},
            status=201,
        )

    @responses.activate
    def test_token_is_reused(self, gateway):
        self._token()
        self._payment_created()

        gateway.create_intent(amount=Decimal("10"), currency="usd", metadata={})
        gateway.create_intent(amount=Decimal("10"), currency="usd", metadata={})

        token_calls = [c for c in responses.calls if c.request.url.endswith("/v1/oauth2/token")]
        assert len(token_calls) == 1

    def test_payment_outcome_not_retrievable(self, gateway):
        assert not gateway.supports("retrieve")
        with pytest.raises(NotImplementedError):
            gateway.retrieve("PAYID-1")

    @responses.activate
    def test_error_response_raises_gateway_error(self, gateway):
        self._token()
        responses.add(
            responses.POST,
            f"{SANDBOX}/v1/payments/payment",
            json={"name": "VALIDATION_ERROR", "message": "Invalid request - see details."},
            status=400,
        )

        with pytest.raises(PaymentGatewayError, match="Invalid request"):
            gateway.create_intent(amount=Decimal("10"), currency="usd", metadata={})

    @responses.activate
    def test_auth_failure_raises_gateway_error(self, gateway):
        responses.add(
            responses.POST,
            f"{SANDBOX}/v1/oauth2/token",
            json={"error": "invalid_client"},
            status=401,
        )

        with pytest.raises(PaymentGatewayError, match="Authentication failed"):
            gateway.create_intent(amount=Decimal("10"), currency="usd", metadata={})
