"""SiteInsight: Google API Transport.

Shared async HTTP plumbing for the GA4 Data API, the Search Console API and
the OAuth token endpoint. Requests are bounded by a timeout so one slow
tenant cannot stall a batch; there is no retry loop, failed tenants are
picked up again on the next scheduled run.
"""

from typing import Any, Dict, Optional

import httpx

from siteinsight.config import settings
from siteinsight.core.errors import ProviderAPIError
from siteinsight.core.logging import get_logger

logger = get_logger("google.client")


def extract_error_message(resp: httpx.Response) -> str:
    """Pull the message out of a Google structured error body.

    Falls back to the HTTP reason phrase when the body is not JSON or has no
    usable message.
    """
    try:
        body = resp.json()
    except ValueError:
        body = None

    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        # OAuth endpoints use {"error": "invalid_grant", "error_description": "..."}
        if body.get("error_description"):
            return str(body["error_description"])
        if isinstance(error, str) and error:
            return error

    return resp.reason_phrase or f"HTTP {resp.status_code}"


class GoogleAPIClient:
    """Async HTTP client base for Google APIs."""

    provider = "google"

    def __init__(
        self,
        base_url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout or settings.provider_timeout_seconds
        self._client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    # ── Core Request Method ──

    async def _post_json(
        self,
        url: str,
        token: str,
        body: Dict[str, Any],
    ) -> Dict[str, Any]:
        """POST a JSON body with a bearer token and return the decoded response."""
        client = await self._get_client()

        try:
            resp = await client.post(
                url,
                json=body,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.TimeoutException as e:
            raise ProviderAPIError(
                f"Request timed out after {self.timeout}s", 0, self.provider
            ) from e
        except httpx.RequestError as e:
            raise ProviderAPIError(f"Connection failed: {e}", 0, self.provider) from e

        if not resp.is_success:
            message = extract_error_message(resp)
            logger.warning(
                f"{self.provider} API error {resp.status_code}: {message}",
                extra={"provider": self.provider, "status_code": resp.status_code},
            )
            raise ProviderAPIError(message, resp.status_code, self.provider)

        try:
            data = resp.json()
        except ValueError as e:
            raise ProviderAPIError(
                "Malformed response body", resp.status_code, self.provider
            ) from e
        return data if isinstance(data, dict) else {}
