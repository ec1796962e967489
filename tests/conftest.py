"""Shared fixtures: in-memory database, cipher, fake clock and seeded tenants."""

import asyncio
import os
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

# Set test environment before settings are loaded
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from siteinsight.connectors.google.oauth import RefreshedToken  # noqa: E402
from siteinsight.core.errors import CredentialError, CredentialErrorReason  # noqa: E402
from siteinsight.core.security import TokenCipher  # noqa: E402
from siteinsight.database import create_db_engine, init_db, session_factory  # noqa: E402
from siteinsight.models.tenant_models import OAuthCredential, Provider, Site  # noqa: E402

TEST_KEY = os.environ["TOKEN_ENCRYPTION_KEY"]
NOW = datetime(2025, 10, 1, 4, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeRefresher:
    """Stands in for GoogleTokenRefresher and counts round-trips."""

    def __init__(self, access_token: str = "fresh-access", expires_in: int = 3600,
                 refresh_token: Optional[str] = None, fail: bool = False):
        self.access_token = access_token
        self.expires_in = expires_in
        self.refresh_token = refresh_token
        self.fail = fail
        self.calls: List[str] = []

    async def refresh(self, refresh_token: str) -> RefreshedToken:
        self.calls.append(refresh_token)
        # Yield so concurrent callers interleave
        await asyncio.sleep(0)
        if self.fail:
            raise CredentialError(CredentialErrorReason.REFRESH_FAILED, "Token refresh failed (400): invalid_grant")
        return RefreshedToken(
            access_token=self.access_token,
            expires_in=self.expires_in,
            refresh_token=self.refresh_token,
        )

    async def close(self) -> None:
        pass


@pytest.fixture
def engine():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def sessions(engine):
    return session_factory(engine)


@pytest.fixture
def cipher():
    return TokenCipher(TEST_KEY)


@pytest.fixture
def clock():
    return FakeClock()


def add_site(sessions, site_id: str, **fields) -> Site:
    site = Site(
        id=site_id,
        name=fields.pop("name", f"Site {site_id}"),
        url=fields.pop("url", f"https://{site_id}.example.com/"),
        **fields,
    )
    with sessions() as session:
        session.add(site)
        session.commit()
    return site


def add_credential(
    sessions,
    cipher: TokenCipher,
    credential_id: str,
    provider: Provider = Provider.GA4,
    access_token: str = "stored-access",
    refresh_token: Optional[str] = "stored-refresh",
    expires_at: datetime = NOW + timedelta(hours=1),
) -> None:
    label = f"{provider.value}:{credential_id}"
    with sessions() as session:
        session.add(OAuthCredential(
            id=credential_id,
            provider=provider.value,
            access_token_enc=cipher.encrypt(access_token, context=f"{label}:access"),
            refresh_token_enc=(
                cipher.encrypt(refresh_token, context=f"{label}:refresh") if refresh_token else None
            ),
            expires_at=expires_at,
        ))
        session.commit()


def add_ga4_site(sessions, cipher, site_id: str, property_id: str, **fields) -> Site:
    """Site linked to GA4 with a valid stored credential."""
    credential_id = f"cred-{site_id}-ga4"
    add_credential(sessions, cipher, credential_id, Provider.GA4)
    return add_site(
        sessions,
        site_id,
        ga4_property_id=property_id,
        ga4_credential_id=credential_id,
        **fields,
    )
