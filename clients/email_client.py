"""
Email gateway client for transactional auth mail.

Hands a signed JSON payload to an HTTP gateway; templating and delivery
happen on the gateway side. Requests carry an HMAC-SHA256 signature of the
exact body bytes.
"""

import hashlib
import hmac
import json
import logging
from urllib.parse import quote

import requests

logger = logging.getLogger(__name__)


class EmailGatewayError(Exception):
    """Raised when email gateway request fails."""


class EmailGatewayClient:
    """Send auth emails via HTTP gateway with HMAC signature verification."""

    def __init__(self, gateway_url: str, api_key: str, hmac_secret: str, timeout: float = 10):
        """
        Initialize with gateway credentials.

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

    def _sign(self, body: str) -> str:
        return hmac.new(
            self.hmac_secret.encode("utf-8"),
            body.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def _sign_and_send(self, payload: dict) -> None:
        """
        Sign payload with HMAC and send to gateway.

        Raises:
            EmailGatewayError: On any failure
        """
        payload_json = json.dumps(payload, separators=(",", ":"))

        headers = {
            "Content-Type": "application/json",
            "X-API-Key": self.api_key,
            "X-Signature": self._sign(payload_json),
        }

        try:
            response = requests.post(
                self.gateway_url,
                data=payload_json,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error("Email gateway connection failed: %s", e)
            raise EmailGatewayError(f"Connection failed: {e}") from e

        try:
            response_data = response.json()
        except ValueError:
            logger.error("Email gateway returned invalid JSON (status %s)", response.status_code)
            raise EmailGatewayError("Invalid response from gateway")

        if response.status_code != 200 or not response_data.get("success"):
            error_msg = response_data.get("message", "Unknown error")
            logger.error("Email gateway error: %s", error_msg)
            raise EmailGatewayError(f"Gateway error: {error_msg}")

    def send_activation(self, email: str, token: str, app_url: str) -> None:
        """
        Send the account activation link.

        Raises:
            EmailGatewayError: On any failure
        """
        self._sign_and_send({
            "type": "activation",
            "email": email,
            "link": f"{app_url.rstrip('/')}/auth/activate?token={quote(token)}",
        })
        logger.info("Activation email queued for %s", email)

    def send_password_reset(self, email: str, token: str, app_url: str) -> None:
        """
        Send the password reset link.

        Raises:
            EmailGatewayError: On any failure
        """
        self._sign_and_send({
            "type": "password_reset",
            "email": email,
            "link": f"{app_url.rstrip('/')}/reset-password?token={quote(token)}",
        })
        logger.info("Password reset email queued for %s", email)
