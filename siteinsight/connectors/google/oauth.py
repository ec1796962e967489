"""SiteInsight: Google OAuth Token Endpoint.

Exchanges a refresh token for a new access token. Any failure (HTTP error,
transport error, malformed payload) surfaces as CredentialError with reason
REFRESH_FAILED; the caller decides what to persist.
"""

from dataclasses import dataclass, field
from typing import Optional

import httpx

from siteinsight.config import settings
from siteinsight.connectors.google.client import GoogleAPIClient, extract_error_message
from siteinsight.core.errors import CredentialError, CredentialErrorReason
from siteinsight.core.logging import get_logger
from siteinsight.core.parsing import safe_int

logger = get_logger("google.oauth")


@dataclass
class RefreshedToken:
    access_token: str = field(repr=False)
    expires_in: int
    refresh_token: Optional[str] = field(default=None, repr=False)
    scope: Optional[str] = None


class GoogleTokenRefresher(GoogleAPIClient):
    """Client for the OAuth 2.0 refresh_token grant."""

    provider = "oauth"

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        token_url: str | None = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float | None = None,
    ):
        super().__init__(token_url or settings.google_token_url, http_client, timeout)
        self.client_id = client_id if client_id is not None else settings.google_client_id
        self.client_secret = (
            client_secret if client_secret is not None else settings.google_client_secret
        )

    async def refresh(self, refresh_token: str) -> RefreshedToken:
        """POST the refresh_token grant and validate the response payload."""
        client = await self._get_client()
        try:
            resp = await client.post(
                self.base_url,
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
            )
        except httpx.RequestError as e:
            raise CredentialError(
                CredentialErrorReason.REFRESH_FAILED, f"Token refresh failed: {e}"
            ) from e

        if not resp.is_success:
            message = extract_error_message(resp)
            if "invalid_grant" in message or "revoked" in message.lower():
                message = f"{message} (re-authentication required)"
            raise CredentialError(
                CredentialErrorReason.REFRESH_FAILED,
                f"Token refresh failed ({resp.status_code}): {message}",
            )

        try:
            payload = resp.json()
        except ValueError as e:
            raise CredentialError(
                CredentialErrorReason.REFRESH_FAILED, "Token refresh returned a non-JSON body"
            ) from e

        if not isinstance(payload, dict):
            payload = {}
        access_token = payload.get("access_token")
        expires_in = safe_int(payload.get("expires_in"))
        if not access_token or not isinstance(access_token, str) or expires_in <= 0:
            raise CredentialError(
                CredentialErrorReason.REFRESH_FAILED,
                "Token refresh returned a malformed payload",
            )

        return RefreshedToken(
            access_token=access_token,
            expires_in=expires_in,
            refresh_token=payload.get("refresh_token") or None,
            scope=payload.get("scope"),
        )
