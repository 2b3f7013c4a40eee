"""
Email gateway client for sending transactional and campaign email.

Requests are JSON POSTs authenticated with an API key and an HMAC-SHA256
signature over the exact body bytes.
"""

import hashlib
import hmac
import json
import logging

import requests

from core.errors import ExternalServiceError

logger = logging.getLogger(__name__)

_SENDERS = ("billing", "marketing")


class EmailGatewayError(ExternalServiceError):
    """Raised when email gateway request fails."""


class EmailGatewayClient:
    """Send emails via HTTP gateway with HMAC signature verification."""

    def __init__(self, gateway_url: str, api_key: str, hmac_secret: str, timeout: int = 10):
        """
        Initialize with gateway credentials.

        Args:
            gateway_url: Full URL to the email gateway endpoint
            api_key: API key for X-API-Key header
            hmac_secret: Secret for HMAC-SHA256 signature
            timeout: Per-request timeout in seconds

        Raises:
            ValueError: If any credential is empty
        """
        if not gateway_url:
            raise ValueError("gateway_url is required")
        if not api_key:
            raise ValueError("api_key is required")
        if not hmac_secret:
            raise ValueError("hmac_secret is required")

        self.gateway_url = gateway_url
        self.api_key = api_key
        self.hmac_secret = hmac_secret
        self.timeout = timeout

    def _sign_and_send(self, payload: dict) -> dict:
        """
        Sign payload with HMAC and send to gateway.

        Returns:
            Parsed gateway response body

        Raises:
            EmailGatewayError: On any failure
        """
        payload_json = json.dumps(payload, separators=(",", ":"))

        signature = hmac.new(
            self.hmac_secret.encode("utf-8"),
            payload_json.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

        headers = {
            "Content-Type": "application/json",
            "X-API-Key": self.api_key,
            "X-Signature": signature,
        }

        try:
            response = requests.post(
                self.gateway_url,
                data=payload_json,
                headers=headers,
                timeout=self.timeout,
            )
        except (requests.exceptions.RequestException, ConnectionError) as e:
            logger.error(f"Email gateway connection failed: {e}")
            raise EmailGatewayError(f"Connection failed: {e}")

        try:
            response_data = response.json()
        except (json.JSONDecodeError, ValueError):
            logger.error(f"Email gateway returned invalid JSON: {response.text}")
            raise EmailGatewayError("Invalid response from gateway")

        if response.status_code != 200 or not response_data.get("success"):
            error_msg = response_data.get("message", "Unknown error")
            logger.error(f"Email gateway error: {error_msg}")
            raise EmailGatewayError(f"Gateway error: {error_msg}")

        return response_data

    def send_email(
        self,
        to: str,
        subject: str,
        html: str,
        text: str | None = None,
        sender: str = "billing",
        from_name: str | None = None,
        reply_to: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> str | None:
        """
        Send one email via the gateway.

        Args:
            to: Recipient email address
            subject: Subject line
            html: HTML body
            text: Optional plain-text alternative
            sender: Sender identity, "billing" or "marketing"
            from_name: Display name override (campaigns)
            reply_to: Reply-To address override
            headers: Extra message headers (List-Unsubscribe etc.)

        Returns:
            Gateway message ID when the gateway reports one

        Raises:
            ValueError: If sender is invalid or recipient missing
            EmailGatewayError: On gateway failure
        """
        if sender not in _SENDERS:
            raise ValueError(f"sender must be one of {_SENDERS}, got '{sender}'")
        if not to:
            raise ValueError("Recipient address is required")

        payload = {
            "email": to,
            "subject": subject,
            "html": html,
            "sender": sender,
        }
        if text is not None:
            payload["text"] = text
        if from_name:
            payload["from_name"] = from_name
        if reply_to:
            payload["reply_to"] = reply_to
        if headers:
            payload["headers"] = headers

        response_data = self._sign_and_send(payload)
        logger.info(f"Email sent to {to}: {subject}")
        return response_data.get("message_id")
