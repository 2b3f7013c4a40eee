"""
Payment gateway clients.

One class per provider, all exposing the same capability surface:
create_intent, retrieve, refund. A provider declares which of those it
implements in ``capabilities``; callers check with ``supports()`` before
calling. Providers are looked up by name in a GatewayRegistry, so adding a
provider means writing a class and registering an instance.

Results are normalized into GatewayIntent / GatewayCharge / GatewayRefund so
nothing above this module touches provider response shapes.
"""

import json
import logging
import threading
import time
from decimal import Decimal
from typing import Any, Dict

import requests
import stripe
from pydantic import BaseModel

from core.billing import from_minor_units, round_money, to_minor_units
from core.errors import PaymentGatewayError

logger = logging.getLogger(__name__)


# === Normalized results ===


class GatewayIntent(BaseModel):
    """A started payment, before the client completes it."""

    id: str
    client_secret_or_approval_url: str
    status: str


class GatewayCharge(BaseModel):
    """Final state of a payment as the provider reports it."""

    transaction_id: str
    amount: Decimal
    currency: str
    succeeded: bool
    status: str
    metadata: dict[str, str] = {}
    raw: dict[str, Any] | None = None


class GatewayRefund(BaseModel):
    """A refund accepted by the provider."""

    id: str
    amount: Decimal
    status: str


# === Base ===


class PaymentGatewayClient:
    """Capability interface every provider implements a subset of."""

    name: str = ""
    capabilities: frozenset[str] = frozenset()

    def supports(self, capability: str) -> bool:
        return capability in self.capabilities

    def create_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: Dict[str, str],
        customer_ref: str | None = None,
        description: str | None = None,
    ) -> GatewayIntent:
        raise NotImplementedError(f"{self.name} cannot create payment intents")

    def retrieve(self, transaction_id: str) -> GatewayCharge:
        raise NotImplementedError(f"{self.name} cannot retrieve payments")

    def refund(
        self,
        transaction_id: str,
        amount: Decimal,
        metadata: Dict[str, str] | None = None,
    ) -> GatewayRefund:
        raise NotImplementedError(f"{self.name} cannot refund payments")


class GatewayRegistry:
    """Provider instances keyed by gateway name ("stripe", "paypal")."""

    def __init__(self):
        self._gateways: Dict[str, PaymentGatewayClient] = {}

    def register(self, gateway: PaymentGatewayClient) -> None:
        if not gateway.name:
            raise ValueError("Gateway must have a name")
        self._gateways[gateway.name] = gateway
        logger.info(f"Payment gateway registered: {gateway.name}")

    def get(self, name: str) -> PaymentGatewayClient | None:
        return self._gateways.get(name)

    def names(self) -> list[str]:
        return sorted(self._gateways)


# === Stripe ===


def _stripe_to_dict(obj: Any) -> dict[str, Any]:
    """StripeObject to a plain dict (its str() is the JSON body)."""
    return json.loads(str(obj))


class StripeGateway(PaymentGatewayClient):
    """
    Card payments through Stripe PaymentIntents.

    The API key is passed per request rather than set on the stripe module,
    so several clients can coexist in one process.
    """

    name = "stripe"
    capabilities = frozenset({"create_intent", "retrieve", "refund", "customers"})

    def __init__(self, secret_key: str, webhook_secret: str | None = None):
        if not secret_key:
            raise ValueError("secret_key is required")
        self.api_key = secret_key
        self.webhook_secret = webhook_secret

    def create_customer(self, email: str | None, name: str, metadata: Dict[str, str]) -> str:
        """Create a Stripe customer, return its id."""
        try:
            customer = stripe.Customer.create(
                api_key=self.api_key,
                email=email,
                name=name,
                metadata=metadata,
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe customer creation failed: {e}")
            raise PaymentGatewayError(self.name, str(e))

        logger.info(f"Stripe customer created: {customer.id}")
        return customer.id

    def create_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: Dict[str, str],
        customer_ref: str | None = None,
        description: str | None = None,
    ) -> GatewayIntent:
        kwargs: Dict[str, Any] = {
            "api_key": self.api_key,
            "amount": to_minor_units(amount),
            "currency": currency.lower(),
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
        }
        if customer_ref:
            kwargs["customer"] = customer_ref
        if description:
            kwargs["description"] = description

        try:
            intent = stripe.PaymentIntent.create(**kwargs)
        except stripe.StripeError as e:
            logger.error(f"Stripe PaymentIntent creation failed: {e}")
            raise PaymentGatewayError(self.name, str(e))

        return GatewayIntent(
            id=intent.id,
            client_secret_or_approval_url=intent.client_secret,
            status=intent.status,
        )

    def retrieve(self, transaction_id: str) -> GatewayCharge:
        try:
            intent = stripe.PaymentIntent.retrieve(transaction_id, api_key=self.api_key)
        except stripe.StripeError as e:
            logger.error(f"Stripe PaymentIntent retrieve failed for {transaction_id}: {e}")
            raise PaymentGatewayError(self.name, str(e))

        raw = _stripe_to_dict(intent)
        return GatewayCharge(
            transaction_id=intent.id,
            amount=from_minor_units(intent.amount),
            currency=intent.currency.upper(),
            succeeded=intent.status == "succeeded",
            status=intent.status,
            metadata={k: str(v) for k, v in (raw.get("metadata") or {}).items()},
            raw=raw,
        )

    def refund(
        self,
        transaction_id: str,
        amount: Decimal,
        metadata: Dict[str, str] | None = None,
    ) -> GatewayRefund:
        try:
            refund = stripe.Refund.create(
                api_key=self.api_key,
                payment_intent=transaction_id,
                amount=to_minor_units(amount),
                reason="requested_by_customer",
                metadata=metadata or {},
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe refund failed for {transaction_id}: {e}")
            raise PaymentGatewayError(self.name, str(e))

        logger.info(f"Stripe refund {refund.id} created for {transaction_id}")
        return GatewayRefund(
            id=refund.id,
            amount=from_minor_units(refund.amount),
            status=refund.status,
        )

    def construct_webhook_event(self, payload: bytes | str, signature: str) -> Any:
        """
        Verify a webhook signature and parse the event.

        Raises:
            ValueError: Webhook secret not configured
            stripe.SignatureVerificationError: Signature does not match
        """
        if not self.webhook_secret:
            raise ValueError("Stripe webhook secret not configured")
        return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)


# === PayPal ===


_PAYPAL_BASE_URLS = {
    "sandbox": "https://api-m.sandbox.paypal.com",
    "live": "https://api-m.paypal.com",
}


class PayPalGateway(PaymentGatewayClient):
    """
    PayPal redirect checkout via the REST v1 payments API.

    The buyer approves on PayPal's site (approval URL) and is sent back to
    return_url / cancel_url. An approved payment still has to be executed
    with the buyer's payer id before money moves; that step, retrieving
    the outcome and refunds are not implemented, so PayPal payments cannot
    be recorded through process_payment.
    """

    name = "paypal"
    capabilities = frozenset({"create_intent"})

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        return_url: str,
        cancel_url: str,
        mode: str = "sandbox",
        timeout: int = 10,
    ):
        if not client_id or not client_secret:
            raise ValueError("client_id and client_secret are required")
        if mode not in _PAYPAL_BASE_URLS:
            raise ValueError(f"mode must be one of {list(_PAYPAL_BASE_URLS)}, got '{mode}'")

        self.client_id = client_id
        self.client_secret = client_secret
        self.return_url = return_url
        self.cancel_url = cancel_url
        self.base_url = _PAYPAL_BASE_URLS[mode]
        self.timeout = timeout

        self._token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    def _access_token(self) -> str:
        """OAuth2 client-credentials token, reused until shortly before expiry."""
        with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token

            try:
                response = requests.post(
                    f"{self.base_url}/v1/oauth2/token",
                    auth=(self.client_id, self.client_secret),
                    data={"grant_type": "client_credentials"},
                    headers={"Accept": "application/json"},
                    timeout=self.timeout,
                )
            except requests.exceptions.RequestException as e:
                logger.error(f"PayPal token request failed: {e}")
                raise PaymentGatewayError(self.name, f"Connection failed: {e}")

            if response.status_code != 200:
                logger.error(f"PayPal token request rejected: {response.status_code} {response.text}")
                raise PaymentGatewayError(self.name, "Authentication failed")

            body = response.json()
            self._token = body["access_token"]
            # Refresh a minute early
            self._token_expires_at = time.monotonic() + max(int(body.get("expires_in", 0)) - 60, 0)
            return self._token

    def _request(self, method: str, path: str, payload: dict | None = None) -> dict:
        headers = {
            "Authorization": f"Bearer {self._access_token()}",
            "Content-Type": "application/json",
        }
        try:
            response = requests.request(
                method,
                f"{self.base_url}{path}",
                json=payload,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"PayPal {method} {path} failed: {e}")
            raise PaymentGatewayError(self.name, f"Connection failed: {e}")

        try:
            body = response.json()
        except ValueError:
            logger.error(f"PayPal returned invalid JSON: {response.text}")
            raise PaymentGatewayError(self.name, "Invalid response")

        if response.status_code >= 400:
            message = body.get("message") or body.get("name") or "Unknown error"
            logger.error(f"PayPal {method} {path} error {response.status_code}: {message}")
            raise PaymentGatewayError(self.name, message)

        return body

    def create_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: Dict[str, str],
        customer_ref: str | None = None,
        description: str | None = None,
    ) -> GatewayIntent:
        payload = {
            "intent": "sale",
            "payer": {"payment_method": "paypal"},
            "redirect_urls": {
                "return_url": self.return_url,
                "cancel_url": self.cancel_url,
            },
            "transactions": [{
                "amount": {
                    "currency": currency.upper(),
                    "total": f"{round_money(amount):.2f}",
                },
                "description": description or "Payment",
                "custom": json.dumps(metadata, separators=(",", ":")),
            }],
        }

        body = self._request("POST", "/v1/payments/payment", payload)

        approval_url = next(
            (link["href"] for link in body.get("links", []) if link.get("rel") == "approval_url"),
            "",
        )
        if not approval_url:
            logger.warning(f"PayPal payment {body.get('id')} has no approval_url")

        return GatewayIntent(
            id=body["id"],
            client_secret_or_approval_url=approval_url,
            status=body.get("state", "created"),
        )
