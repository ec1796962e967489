"""Credential store: expiry checks, single-flight refresh and failure handling."""

import asyncio
from datetime import timedelta
from urllib.parse import parse_qs

import httpx
import pytest
from sqlalchemy.exc import SQLAlchemyError

from conftest import NOW, FakeRefresher, add_credential, add_site
from siteinsight.connectors.google.oauth import GoogleTokenRefresher
from siteinsight.core.dates import ensure_utc
from siteinsight.core.errors import CredentialError, CredentialErrorReason, PersistenceError
from siteinsight.credentials.store import CredentialStore
from siteinsight.models.tenant_models import OAuthCredential, Provider


def make_store(sessions, cipher, clock, refresher, leeway_seconds=300):
    return CredentialStore(sessions, cipher, refresher, leeway_seconds=leeway_seconds, clock=clock)


def load(sessions, credential_id) -> OAuthCredential:
    with sessions() as session:
        return session.get(OAuthCredential, credential_id)


class TestGetValid:
    def test_valid_token_needs_no_refresh(self, sessions, cipher, clock):
        add_credential(sessions, cipher, "cred-1", expires_at=NOW + timedelta(hours=1))
        refresher = FakeRefresher()
        store = make_store(sessions, cipher, clock, refresher)

        token = asyncio.run(store.get_valid_by_id("cred-1"))

        assert token.token == "stored-access"
        assert refresher.calls == []

    def test_expired_token_refreshes_once(self, sessions, cipher, clock):
        add_credential(sessions, cipher, "cred-1", expires_at=NOW - timedelta(minutes=1))
        refresher = FakeRefresher(access_token="new-access", expires_in=3600)
        store = make_store(sessions, cipher, clock, refresher)

        token = asyncio.run(store.get_valid_by_id("cred-1"))

        assert token.token == "new-access"
        assert refresher.calls == ["stored-refresh"]
        stored = load(sessions, "cred-1")
        assert ensure_utc(stored.expires_at) == NOW + timedelta(seconds=3600)
        assert cipher.decrypt(stored.access_token_enc, context="test") == "new-access"
        assert "new-access" not in stored.access_token_enc

    def test_refreshed_token_is_reused(self, sessions, cipher, clock):
        add_credential(sessions, cipher, "cred-1", expires_at=NOW - timedelta(minutes=1))
        refresher = FakeRefresher()
        store = make_store(sessions, cipher, clock, refresher)

        asyncio.run(store.get_valid_by_id("cred-1"))
        asyncio.run(store.get_valid_by_id("cred-1"))

        assert len(refresher.calls) == 1

    def test_expiry_within_leeway_refreshes(self, sessions, cipher, clock):
        add_credential(sessions, cipher, "cred-1", expires_at=NOW + timedelta(minutes=2))
        refresher = FakeRefresher()
        store = make_store(sessions, cipher, clock, refresher, leeway_seconds=300)

        asyncio.run(store.get_valid_by_id("cred-1"))

        assert len(refresher.calls) == 1

    def test_zero_leeway_uses_exact_expiry(self, sessions, cipher, clock):
        add_credential(sessions, cipher, "cred-1", expires_at=NOW + timedelta(minutes=2))
        refresher = FakeRefresher()
        store = make_store(sessions, cipher, clock, refresher, leeway_seconds=0)

        asyncio.run(store.get_valid_by_id("cred-1"))
        assert refresher.calls == []

        clock.advance(minutes=2)
        asyncio.run(store.get_valid_by_id("cred-1"))
        assert len(refresher.calls) == 1

    def test_concurrent_callers_share_one_refresh(self, sessions, cipher, clock):
        add_credential(sessions, cipher, "cred-1", expires_at=NOW - timedelta(minutes=1))
        refresher = FakeRefresher(access_token="shared-access")
        store = make_store(sessions, cipher, clock, refresher)

        async def both():
            return await asyncio.gather(
                store.get_valid_by_id("cred-1"),
                store.get_valid_by_id("cred-1"),
            )

        first, second = asyncio.run(both())

        assert len(refresher.calls) == 1
        assert first.token == second.token == "shared-access"

    def test_resolves_site_credential(self, sessions, cipher, clock):
        add_credential(sessions, cipher, "cred-gsc", Provider.GSC, access_token="gsc-access")
        site = add_site(sessions, "s1", gsc_site_url="sc-domain:example.com", gsc_credential_id="cred-gsc")
        store = make_store(sessions, cipher, clock, FakeRefresher())

        token = asyncio.run(store.get_valid(site, Provider.GSC))

        assert token.token == "gsc-access"
        assert token.credential_id == "cred-gsc"


class TestFailures:
    def test_missing_refresh_token(self, sessions, cipher, clock):
        add_credential(sessions, cipher, "cred-1", refresh_token=None,
                       expires_at=NOW - timedelta(minutes=1))
        refresher = FakeRefresher()
        store = make_store(sessions, cipher, clock, refresher)

        with pytest.raises(CredentialError) as exc:
            asyncio.run(store.get_valid_by_id("cred-1"))

        assert exc.value.reason == CredentialErrorReason.MISSING_REFRESH_TOKEN
        assert refresher.calls == []

    def test_refresh_failure_leaves_credential_untouched(self, sessions, cipher, clock):
        add_credential(sessions, cipher, "cred-1", expires_at=NOW - timedelta(minutes=1))
        before = load(sessions, "cred-1")
        store = make_store(sessions, cipher, clock, FakeRefresher(fail=True))

        with pytest.raises(CredentialError) as exc:
            asyncio.run(store.get_valid_by_id("cred-1"))

        after = load(sessions, "cred-1")
        assert exc.value.reason == CredentialErrorReason.REFRESH_FAILED
        assert after.access_token_enc == before.access_token_enc
        assert after.refresh_token_enc == before.refresh_token_enc
        assert after.expires_at == before.expires_at

    def test_store_failure_after_refresh_raises_persistence_error(self, sessions, cipher, clock):
        class UnwritableStore(CredentialStore):
            def update(self, credential_id, **kwargs):
                raise SQLAlchemyError("disk I/O error")

        add_credential(sessions, cipher, "cred-1", expires_at=NOW - timedelta(minutes=1))
        before = load(sessions, "cred-1")
        refresher = FakeRefresher(refresh_token="rotated-refresh")
        store = UnwritableStore(sessions, cipher, refresher, leeway_seconds=300, clock=clock)

        with pytest.raises(PersistenceError) as exc:
            asyncio.run(store.get_valid_by_id("cred-1"))

        assert "cred-1" in str(exc.value)
        assert len(refresher.calls) == 1
        assert load(sessions, "cred-1").refresh_token_enc == before.refresh_token_enc

    def test_unknown_credential(self, sessions, cipher, clock):
        store = make_store(sessions, cipher, clock, FakeRefresher())

        with pytest.raises(CredentialError) as exc:
            asyncio.run(store.get_valid_by_id("nope"))

        assert exc.value.reason == CredentialErrorReason.NOT_FOUND

    def test_unlinked_provider(self, sessions, cipher, clock):
        site = add_site(sessions, "s1")
        store = make_store(sessions, cipher, clock, FakeRefresher())

        with pytest.raises(CredentialError) as exc:
            asyncio.run(store.get_valid(site, Provider.GA4))

        assert exc.value.reason == CredentialErrorReason.NOT_FOUND


class TestGrantAndRotation:
    def test_rotated_refresh_token_is_stored(self, sessions, cipher, clock):
        add_credential(sessions, cipher, "cred-1", expires_at=NOW - timedelta(minutes=1))
        store = make_store(sessions, cipher, clock, FakeRefresher(refresh_token="rotated-refresh"))

        asyncio.run(store.get_valid_by_id("cred-1"))

        stored = load(sessions, "cred-1")
        assert cipher.decrypt(stored.refresh_token_enc, context="test") == "rotated-refresh"

    def test_save_grant_encrypts_at_rest(self, sessions, cipher, clock):
        store = make_store(sessions, cipher, clock, FakeRefresher())
        store.save_grant(
            "cred-new",
            Provider.GA4,
            access_token="grant-access",
            refresh_token="grant-refresh",
            expires_at=NOW + timedelta(hours=1),
        )

        stored = load(sessions, "cred-new")
        assert stored.access_token_enc != "grant-access"
        assert stored.refresh_token_enc != "grant-refresh"
        assert asyncio.run(store.get_valid_by_id("cred-new")).token == "grant-access"

    def test_forced_refresh(self, sessions, cipher, clock):
        add_credential(sessions, cipher, "cred-1", expires_at=NOW + timedelta(hours=1))
        refresher = FakeRefresher(access_token="forced")
        store = make_store(sessions, cipher, clock, refresher)

        token = asyncio.run(store.refresh("cred-1"))

        assert token.token == "forced"
        assert len(refresher.calls) == 1


class TestTokenEndpoint:
    def _refresher(self, handler):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return GoogleTokenRefresher("client-id", "client-secret", "https://oauth.test/token", http_client=client)

    def test_posts_refresh_grant_form(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["form"] = parse_qs(request.content.decode())
            return httpx.Response(200, json={"access_token": "a1", "expires_in": 3599, "scope": "s"})

        result = asyncio.run(self._refresher(handler).refresh("r1"))

        assert seen["form"]["grant_type"] == ["refresh_token"]
        assert seen["form"]["refresh_token"] == ["r1"]
        assert seen["form"]["client_id"] == ["client-id"]
        assert result.access_token == "a1"
        assert result.expires_in == 3599
        assert result.refresh_token is None

    def test_invalid_grant(self):
        def handler(request):
            return httpx.Response(
                400, json={"error": "invalid_grant", "error_description": "Token has been expired or revoked."}
            )

        with pytest.raises(CredentialError) as exc:
            asyncio.run(self._refresher(handler).refresh("r1"))

        assert exc.value.reason == CredentialErrorReason.REFRESH_FAILED
        assert "revoked" in str(exc.value)

    def test_malformed_payload(self):
        def handler(request):
            return httpx.Response(200, json={"token_type": "Bearer"})

        with pytest.raises(CredentialError) as exc:
            asyncio.run(self._refresher(handler).refresh("r1"))

        assert exc.value.reason == CredentialErrorReason.REFRESH_FAILED

    def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(CredentialError) as exc:
            asyncio.run(self._refresher(handler).refresh("r1"))

        assert exc.value.reason == CredentialErrorReason.REFRESH_FAILED
