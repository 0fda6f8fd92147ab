"""
Daraja (M-Pesa) API client.

Obtains OAuth access tokens with client-credentials basic auth and submits
Lipa na M-Pesa Online (STK push) requests. Responses are returned as parsed
JSON; a response that is not JSON is reported with its raw text.
"""

import base64
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx

from storefront.core.config import Settings, get_settings
from storefront.core.logging import get_logger

logger = get_logger(__name__)

TOKEN_PATH = "/oauth/v1/generate"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
TRANSACTION_TYPE = "CustomerPayBillOnline"

# Daraja timestamps are East Africa Time, which has no daylight saving.
EAT = timezone(timedelta(hours=3), "EAT")


class DarajaError(Exception):
    """Base exception for Daraja client errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context


class DarajaAuthError(DarajaError):
    """Raised when an access token cannot be obtained."""


class DarajaResponseError(DarajaError):
    """Raised when Daraja answers with something other than JSON."""

    def __init__(self, message: str, raw: str, **context: Any):
        super().__init__(message, **context)
        self.raw = raw


def daraja_timestamp(now: Optional[datetime] = None) -> str:
    """Timestamp in the ``YYYYMMDDHHMMSS`` form Daraja expects."""
    now = now or datetime.now(EAT)
    return now.astimezone(EAT).strftime("%Y%m%d%H%M%S")


def stk_password(shortcode: str, passkey: str, timestamp: str) -> str:
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode()).decode()


class DarajaClient:
    """
    Async Daraja API client.

    Args:
        settings: Application settings with Daraja credentials
        transport: Optional httpx transport, used to stub the gateway
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.settings.daraja_base_url,
            timeout=self.settings.daraja_timeout_seconds,
            transport=self._transport,
        )

    async def get_access_token(self) -> str:
        """
        Fetch an OAuth access token.

        Raises:
            DarajaAuthError: If credentials are missing or no token is returned
        """
        key = self.settings.daraja_consumer_key
        secret = self.settings.daraja_consumer_secret
        if not key or not secret:
            raise DarajaAuthError(
                "Missing Daraja keys (DARAJA_CONSUMER_KEY / DARAJA_CONSUMER_SECRET)"
            )

        logger.debug("Requesting Daraja access token", env=self.settings.daraja_env)
        try:
            async with self._client() as client:
                response = await client.get(
                    TOKEN_PATH,
                    params={"grant_type": "client_credentials"},
                    auth=(key, secret),
                )
        except httpx.HTTPError as e:
            raise DarajaAuthError(f"Daraja token request failed: {e}") from e

        try:
            token = response.json().get("access_token")
        except (ValueError, AttributeError):
            token = None
        if not token:
            raise DarajaAuthError(
                f"Daraja token error: {response.text}", status_code=response.status_code
            )
        return token

    async def stk_push(self, payload: dict[str, Any], token: str) -> dict[str, Any]:
        """
        Submit an STK push request.

        Returns:
            Daraja's JSON response, whatever its status code

        Raises:
            DarajaError: If the request cannot be sent
            DarajaResponseError: If the response is not a JSON object
        """
        try:
            async with self._client() as client:
                response = await client.post(
                    STK_PUSH_PATH,
                    json=payload,
                    headers={"Authorization": f"Bearer {token}"},
                )
        except httpx.HTTPError as e:
            raise DarajaError(f"Daraja STK push request failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            logger.warning(
                "Non-JSON response from Daraja",
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise DarajaResponseError(
                "Daraja returned non-JSON response",
                raw=response.text,
                status_code=response.status_code,
            )
        return body
