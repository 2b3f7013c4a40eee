"""
HashiCorp Vault access for billing secrets.

Everything the billing process needs at startup (database URL, email gateway
credentials, Stripe and PayPal keys) lives under the 'billing/' KV v2 mount
prefix. The process authenticates once with AppRole and reads each secret at
most once.
"""

import os
import logging
from typing import Dict

import hvac
from hvac.exceptions import InvalidPath, Unauthorized, Forbidden

logger = logging.getLogger(__name__)

_SECRET_PREFIX = "billing"

# Secret data keyed by scoped path. Rotation requires a restart.
_vault_client_instance: "VaultClient | None" = None
_secret_cache: Dict[str, Dict[str, str]] = {}


def _ensure_vault_client() -> "VaultClient":
    global _vault_client_instance
    if _vault_client_instance is None:
        _vault_client_instance = VaultClient()
    return _vault_client_instance


class VaultError(Exception):
    """Vault operation failed. Fatal - application cannot function without secrets."""


class VaultClient:
    """AppRole-authenticated reader for the billing secret tree."""

    def __init__(
        self,
        vault_addr: str | None = None,
        vault_namespace: str | None = None,
    ):
        self.vault_addr = vault_addr or os.getenv("VAULT_ADDR")
        if not self.vault_addr:
            raise ValueError("VAULT_ADDR environment variable is required")

        role_id = os.getenv("VAULT_ROLE_ID")
        secret_id = os.getenv("VAULT_SECRET_ID")
        if not (role_id and secret_id):
            raise ValueError(
                "VAULT_ROLE_ID and VAULT_SECRET_ID environment variables are required"
            )

        namespace = vault_namespace or os.getenv("VAULT_NAMESPACE")
        self.client = (
            hvac.Client(url=self.vault_addr, namespace=namespace)
            if namespace
            else hvac.Client(url=self.vault_addr)
        )
        self.client.token = self._login(role_id, secret_id)

        if not self.client.is_authenticated():
            raise PermissionError("Vault authentication failed")

        logger.info(f"Vault ready for billing secrets at {self.vault_addr}")

    def _login(self, role_id: str, secret_id: str) -> str:
        try:
            response = self.client.auth.approle.login(role_id=role_id, secret_id=secret_id)
        except Exception as e:
            logger.error(f"AppRole authentication failed: {e}")
            raise PermissionError(f"AppRole authentication failed: {e}")
        return response["auth"]["client_token"]

    def read_secret(self, path: str) -> Dict[str, str]:
        """
        Read every field of 'billing/<path>'.

        Raises:
            PermissionError: Path missing or not readable by this role.
        """
        scoped = f"{_SECRET_PREFIX}/{path}"
        try:
            response = self.client.secrets.kv.v2.read_secret_version(
                path=scoped, raise_on_deleted_version=True
            )
        except InvalidPath:
            logger.error(f"Billing secret missing: {scoped}")
            raise PermissionError(f"Secret path '{scoped}' not found in Vault")
        except (Unauthorized, Forbidden) as e:
            logger.error(f"Billing secret {scoped} not readable: {e}")
            raise PermissionError(f"Access denied to secret '{scoped}': {e}")
        return response["data"]["data"]

    def get_secret(self, path: str, field: str) -> str:
        """Single field of 'billing/<path>'. KeyError names the fields that do exist."""
        data = self.read_secret(path)
        if field not in data:
            raise KeyError(
                f"Field '{field}' not found in secret '{_SECRET_PREFIX}/{path}'. "
                f"Available: {', '.join(data)}"
            )
        return data[field]


def _get_fields(path: str, fields: list[str]) -> Dict[str, str]:
    """Pick the named fields from a cached secret; a missing field is a KeyError."""
    if path not in _secret_cache:
        _secret_cache[path] = _ensure_vault_client().read_secret(path)
    data = _secret_cache[path]
    missing = [f for f in fields if f not in data]
    if missing:
        raise KeyError(f"Secret '{_SECRET_PREFIX}/{path}' is missing: {', '.join(missing)}")
    return {f: data[f] for f in fields}


def get_database_url() -> str:
    """Get PostgreSQL connection URL from Vault."""
    return _get_fields("database", ["url"])["url"]


def get_email_config() -> Dict[str, str]:
    """Email gateway configuration: gateway_url, api_key, hmac_secret."""
    return _get_fields("email", ["gateway_url", "api_key", "hmac_secret"])


def get_stripe_config() -> Dict[str, str]:
    """Stripe configuration: secret_key, webhook_secret, publishable_key."""
    return _get_fields("stripe", ["secret_key", "webhook_secret", "publishable_key"])


def get_paypal_config() -> Dict[str, str]:
    """PayPal REST configuration: client_id, client_secret."""
    return _get_fields("paypal", ["client_id", "client_secret"])
