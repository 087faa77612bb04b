"""
HashiCorp Vault client for auth service secret management.

Uses AppRole authentication. Fails fast on missing configuration.
All paths scoped to 'newfinity/' prefix - no escape to other secrets.
"""

import os
import logging
from typing import Dict

import hvac
from hvac.exceptions import InvalidPath, Unauthorized, Forbidden

logger = logging.getLogger(__name__)

# Project scope - all secrets under this path
_SECRET_PREFIX = "newfinity"

# Singleton instance and cache
_vault_client_instance: "VaultClient | None" = None
_secret_cache: Dict[str, str] = {}


def _ensure_vault_client() -> "VaultClient":
    global _vault_client_instance
    if _vault_client_instance is None:
        _vault_client_instance = VaultClient()
    return _vault_client_instance


class VaultError(Exception):
    """Vault operation failed. Fatal - application cannot function without secrets."""


class VaultClient:
    """Vault client with AppRole auth, env-based config, and fail-fast behavior."""

    def __init__(
        self,
        vault_addr: str | None = None,
        vault_namespace: str | None = None,
    ):
        """Initialize with environment variables. Fails fast on missing config."""
        self.vault_addr = vault_addr or os.getenv("VAULT_ADDR")
        self.vault_namespace = vault_namespace or os.getenv("VAULT_NAMESPACE")
        self.vault_role_id = os.getenv("VAULT_ROLE_ID")
        self.vault_secret_id = os.getenv("VAULT_SECRET_ID")

        if not self.vault_addr:
            raise ValueError("VAULT_ADDR environment variable is required")

        if not self.vault_role_id or not self.vault_secret_id:
            raise ValueError(
                "VAULT_ROLE_ID and VAULT_SECRET_ID environment variables are required"
            )

        client_kwargs = {"url": self.vault_addr}
        if self.vault_namespace:
            client_kwargs["namespace"] = self.vault_namespace

        self.client = hvac.Client(**client_kwargs)
        self._authenticate_approle()

        if not self.client.is_authenticated():
            raise VaultError("Vault authentication failed")

        logger.info("Vault client initialized: %s", self.vault_addr)

    def _authenticate_approle(self) -> None:
        """Authenticate using AppRole credentials."""
        try:
            auth_response = self.client.auth.approle.login(
                role_id=self.vault_role_id,
                secret_id=self.vault_secret_id,
            )
        except (Unauthorized, Forbidden, InvalidPath) as e:
            logger.error("AppRole authentication failed: %s", e)
            raise VaultError(f"AppRole authentication failed: {e}") from e
        self.client.token = auth_response["auth"]["client_token"]
        logger.info("AppRole authentication successful")

    def get_secret(self, path: str, field: str) -> str:
        """
        Retrieve single field from KV v2 secret.

        Path is automatically scoped to the 'newfinity/' prefix.
        Caller passes 'database', we access 'newfinity/database'.

        Raises:
            PermissionError: Path not accessible or doesn't exist.
            KeyError: Field not found in secret.
        """
        full_path = f"{_SECRET_PREFIX}/{path}"

        try:
            response = self.client.secrets.kv.v2.read_secret_version(
                path=full_path, raise_on_deleted_version=True
            )
        except InvalidPath:
            logger.error("Secret path not found: %s", full_path)
            raise PermissionError(f"Secret path '{full_path}' not found in Vault")
        except (Unauthorized, Forbidden) as e:
            logger.error("Access denied to secret %s: %s", full_path, e)
            raise PermissionError(f"Access denied to secret '{full_path}': {e}")

        secret_data = response["data"]["data"]
        if field not in secret_data:
            available = list(secret_data.keys())
            raise KeyError(
                f"Field '{field}' not found in secret '{full_path}'. "
                f"Available: {', '.join(available)}"
            )
        return secret_data[field]


def _cached_secret(path: str, field: str) -> str:
    cache_key = f"{_SECRET_PREFIX}/{path}/{field}"
    if cache_key not in _secret_cache:
        _secret_cache[cache_key] = _ensure_vault_client().get_secret(path, field)
    return _secret_cache[cache_key]


def get_database_url() -> str:
    """Get PostgreSQL connection URL from Vault."""
    return _cached_secret("database", "url")


def get_valkey_url() -> str:
    """Get Valkey (Redis) connection URL from Vault."""
    return _cached_secret("valkey", "url")


def get_email_config() -> Dict[str, str]:
    """Get email gateway configuration from Vault.

    Returns:
        Dict with keys: gateway_url, api_key, hmac_secret
    """
    return {
        field: _cached_secret("email", field)
        for field in ("gateway_url", "api_key", "hmac_secret")
    }


def get_two_factor_key() -> str:
    """Get the base64 AES-256 key that encrypts TOTP secrets at rest."""
    return _cached_secret("two_factor", "encryption_key")
