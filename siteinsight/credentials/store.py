"""SiteInsight: Credential Store.

Holds per-tenant OAuth credentials, encrypted at rest, and hands out access
tokens that are valid for immediate use.

Lifecycle of a credential during `get_valid`:

    Valid ──(expiry reached)──▶ Refreshing ──▶ Valid
                                     └───────▶ RefreshFailed (this call only)

RefreshFailed is never stored: the expired credential is left exactly as it
was, and the next call tries the refresh again. Refresh is single-flight per
credential, so concurrent callers never exchange the same refresh token
twice.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from siteinsight.config import settings
from siteinsight.connectors.google.oauth import GoogleTokenRefresher
from siteinsight.core.dates import ensure_utc, utcnow
from siteinsight.core.errors import CredentialError, CredentialErrorReason, PersistenceError
from siteinsight.core.logging import get_logger
from siteinsight.core.security import TokenCipher
from siteinsight.database import SessionFactory
from siteinsight.models.records import AccessToken
from siteinsight.models.tenant_models import OAuthCredential, Provider, Site

logger = get_logger("credentials")


class CredentialStore:
    """Read, refresh and update OAuth credentials."""

    def __init__(
        self,
        sessions: SessionFactory,
        cipher: TokenCipher,
        refresher: GoogleTokenRefresher,
        leeway_seconds: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._sessions = sessions
        self._cipher = cipher
        self._refresher = refresher
        self._leeway = timedelta(
            seconds=settings.token_refresh_leeway_seconds
            if leeway_seconds is None
            else leeway_seconds
        )
        self._clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}

    # ── Public API ──

    async def get_valid(self, site: Site, provider: Provider) -> AccessToken:
        """Return a valid token for the site's credential of `provider`."""
        credential_id = site.credential_ref(provider)
        if not credential_id:
            raise CredentialError(
                CredentialErrorReason.NOT_FOUND,
                f"Site {site.id} has no {provider.value} credential",
            )
        return await self.get_valid_by_id(credential_id)

    async def get_valid_by_id(self, credential_id: str) -> AccessToken:
        credential = self._load(credential_id)
        if not self._needs_refresh(credential):
            return self._to_access_token(credential)

        async with self._lock_for(credential_id):
            # Another caller may have refreshed while this one waited.
            credential = self._load(credential_id)
            if not self._needs_refresh(credential):
                return self._to_access_token(credential)
            return await self._refresh_locked(credential)

    async def refresh(self, credential_id: str) -> AccessToken:
        """Force a refresh regardless of expiry."""
        async with self._lock_for(credential_id):
            return await self._refresh_locked(self._load(credential_id))

    def update(
        self,
        credential_id: str,
        *,
        access_token: str,
        expires_at: datetime,
        refresh_token: Optional[str] = None,
        scope: Optional[str] = None,
    ) -> None:
        """Replace token material; a None refresh token keeps the stored one."""
        with self._sessions() as session:
            credential = session.get(OAuthCredential, credential_id)
            if credential is None:
                raise CredentialError(
                    CredentialErrorReason.NOT_FOUND, f"Credential {credential_id} not found"
                )
            label = f"{credential.provider}:{credential_id}"
            credential.access_token_enc = self._cipher.encrypt(
                access_token, context=f"{label}:access"
            )
            if refresh_token:
                credential.refresh_token_enc = self._cipher.encrypt(
                    refresh_token, context=f"{label}:refresh"
                )
                logger.info(f"Refresh token rotated for {label}")
            if scope:
                credential.scope = scope
            credential.expires_at = expires_at
            credential.updated_at = self._clock()
            session.add(credential)
            session.commit()

    def save_grant(
        self,
        credential_id: str,
        provider: Provider,
        *,
        access_token: str,
        expires_at: datetime,
        refresh_token: Optional[str] = None,
        scope: Optional[str] = None,
    ) -> None:
        """Persist the token pair obtained at OAuth grant time."""
        label = f"{provider.value}:{credential_id}"
        credential = OAuthCredential(
            id=credential_id,
            provider=provider.value,
            access_token_enc=self._cipher.encrypt(access_token, context=f"{label}:access"),
            refresh_token_enc=(
                self._cipher.encrypt(refresh_token, context=f"{label}:refresh")
                if refresh_token
                else None
            ),
            expires_at=expires_at,
            scope=scope,
        )
        with self._sessions() as session:
            session.add(credential)
            session.commit()
        logger.info(f"Stored encrypted credential for {label}")

    # ── Internals ──

    def _lock_for(self, credential_id: str) -> asyncio.Lock:
        return self._locks.setdefault(credential_id, asyncio.Lock())

    def _load(self, credential_id: str) -> OAuthCredential:
        with self._sessions() as session:
            credential = session.get(OAuthCredential, credential_id)
        if credential is None:
            raise CredentialError(
                CredentialErrorReason.NOT_FOUND, f"Credential {credential_id} not found"
            )
        return credential

    def _needs_refresh(self, credential: OAuthCredential) -> bool:
        return self._clock() >= ensure_utc(credential.expires_at) - self._leeway

    def _to_access_token(self, credential: OAuthCredential) -> AccessToken:
        token = self._cipher.decrypt(
            credential.access_token_enc, context=f"{credential.provider}:{credential.id}:access"
        )
        return AccessToken(
            credential_id=credential.id,
            token=token,
            expires_at=ensure_utc(credential.expires_at),
        )

    async def _refresh_locked(self, credential: OAuthCredential) -> AccessToken:
        label = f"{credential.provider}:{credential.id}"
        if not credential.refresh_token_enc:
            raise CredentialError(
                CredentialErrorReason.MISSING_REFRESH_TOKEN,
                f"No refresh token stored for {label}",
            )
        try:
            refresh_token = self._cipher.decrypt(
                credential.refresh_token_enc, context=f"{label}:refresh"
            )
        except ValueError as e:
            raise CredentialError(CredentialErrorReason.REFRESH_FAILED, str(e)) from e

        logger.info(f"Token expired or expiring soon, refreshing {label}")
        try:
            refreshed = await self._refresher.refresh(refresh_token)
        except CredentialError:
            logger.error(f"Token refresh failed for {label}; stored credential kept")
            raise

        expires_at = self._clock() + timedelta(seconds=refreshed.expires_in)
        try:
            self.update(
                credential.id,
                access_token=refreshed.access_token,
                expires_at=expires_at,
                refresh_token=refreshed.refresh_token,
                scope=refreshed.scope,
            )
        except SQLAlchemyError as e:
            if refreshed.refresh_token:
                logger.error(
                    f"Rotated refresh token for {label} could not be stored and is lost; "
                    f"re-authentication required: {e}"
                )
            else:
                logger.error(f"Refreshed token for {label} could not be stored: {e}")
            raise PersistenceError(f"Failed to store refreshed credential {label}: {e}") from e
        logger.info(f"Token refreshed for {label}, valid until {expires_at.isoformat()}")
        return AccessToken(
            credential_id=credential.id,
            token=refreshed.access_token,
            expires_at=expires_at,
        )
