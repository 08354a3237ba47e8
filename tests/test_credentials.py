"""Tests for the OAuth credential manager."""

import asyncio
import stat
import time
from datetime import datetime, timedelta
from urllib.parse import parse_qs, urlparse

import pytest
import pytz
from google.auth.exceptions import RefreshError

from conftest import make_settings
from offline_calsync.models import OAuthCredential
from offline_calsync.services import credentials as credentials_module
from offline_calsync.services import (
    ClientNotConfigured, CredentialManager, FileTokenStore, ReauthorizationRequired,
    Unauthenticated,
)


def expired_credential(**fields):
    values = dict(
        access_token="old-token",
        refresh_token="refresh-token",
        expiry=datetime.now(pytz.UTC) - timedelta(minutes=5),
        scope="https://www.googleapis.com/auth/calendar.events",
        user_email="user@example.com",
    )
    values.update(fields)
    return OAuthCredential(**values)


@pytest.fixture
def manager(settings):
    return CredentialManager(settings)


def count_refreshes(manager, monkeypatch, delay=0.05):
    """Replace the token endpoint call with a slow fake and count calls."""
    calls = []

    def fake_refresh(credential):
        calls.append(credential.access_token)
        time.sleep(delay)
        return credential.model_copy(update={
            'access_token': f"new-token-{len(calls)}",
            'expiry': datetime.now(pytz.UTC) + timedelta(hours=1),
        })

    monkeypatch.setattr(manager, '_refresh_blocking', fake_refresh)
    return calls


class TestFileTokenStore:
    """Tests for credential persistence."""

    def test_save_is_owner_only(self, tmp_path):
        store = FileTokenStore(tmp_path / "creds" / "token.json")

        store.save(OAuthCredential(access_token="abc", refresh_token="r"))

        mode = stat.S_IMODE(store.path.stat().st_mode)
        assert mode == 0o600
        assert store.load().refresh_token == "r"

    def test_unreadable_file_is_ignored(self, tmp_path):
        path = tmp_path / "token.json"
        path.write_text("{not json")

        assert FileTokenStore(path).load() is None

    def test_clear(self, tmp_path):
        store = FileTokenStore(tmp_path / "token.json")
        store.save(OAuthCredential(access_token="abc"))

        store.clear()
        store.clear()

        assert store.load() is None


class TestAccessTokens:
    """Tests for ensure_fresh_access_token."""

    @pytest.mark.asyncio
    async def test_not_connected(self, manager):
        with pytest.raises(Unauthenticated):
            await manager.ensure_fresh_access_token()

    @pytest.mark.asyncio
    async def test_fresh_token_is_returned_without_refresh(self, manager, monkeypatch):
        calls = count_refreshes(manager, monkeypatch)
        manager.token_store.save(expired_credential(
            access_token="current", expiry=datetime.now(pytz.UTC) + timedelta(hours=1),
        ))

        assert await manager.ensure_fresh_access_token() == "current"
        assert calls == []

    @pytest.mark.asyncio
    async def test_token_inside_margin_is_refreshed(self, manager, monkeypatch):
        calls = count_refreshes(manager, monkeypatch)
        manager.token_store.save(expired_credential(
            expiry=datetime.now(pytz.UTC) + timedelta(seconds=30),
        ))

        token = await manager.ensure_fresh_access_token()

        assert token == "new-token-1"
        assert len(calls) == 1
        assert manager.token_store.load().access_token == "new-token-1"
        assert manager.token_store.load().refresh_token == "refresh-token"

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self, manager, monkeypatch):
        calls = count_refreshes(manager, monkeypatch)
        manager.token_store.save(expired_credential())

        tokens = await asyncio.gather(*[manager.ensure_fresh_access_token() for _ in range(5)])

        assert len(calls) == 1
        assert set(tokens) == {"new-token-1"}

    @pytest.mark.asyncio
    async def test_missing_refresh_token_requires_reauthorization(self, manager):
        manager.token_store.save(expired_credential(refresh_token=None))

        with pytest.raises(ReauthorizationRequired):
            await manager.ensure_fresh_access_token()

        assert manager.current_credential() is None
        assert manager.token_store.load() is None

    @pytest.mark.asyncio
    async def test_revoked_refresh_token_clears_credential(self, manager, monkeypatch):
        def rejected(credential):
            raise RefreshError("invalid_grant: Token has been expired or revoked.")

        monkeypatch.setattr(manager, '_refresh_blocking', rejected)
        manager.token_store.save(expired_credential())

        with pytest.raises(ReauthorizationRequired):
            await manager.ensure_fresh_access_token()

        assert not manager.get_status().connected
        assert manager.token_store.load() is None


class TestAuthorization:
    """Tests for the consent flow and status."""

    def test_authorization_url(self, manager):
        url = manager.begin_authorization("state-123")

        params = parse_qs(urlparse(url).query)
        assert url.startswith(credentials_module.AUTH_URI)
        assert params['state'] == ["state-123"]
        assert params['access_type'] == ["offline"]
        assert params['prompt'] == ["consent"]
        assert params['client_id'] == ["x" * 20]
        assert params['redirect_uri'] == [manager.settings.google_redirect_uri]

    def test_unconfigured_client(self, tmp_path):
        manager = CredentialManager(make_settings(tmp_path, google_client_id=None))

        with pytest.raises(ClientNotConfigured, match="GOOGLE_CLIENT_ID"):
            manager.begin_authorization("state")
        assert not manager.get_status().client_configured

    @pytest.mark.asyncio
    async def test_state_mismatch_is_rejected(self, manager):
        manager.begin_authorization("expected")

        with pytest.raises(credentials_module.InvalidGrant):
            await manager.exchange_code("code", state="forged")

    def test_status_reports_account(self, manager):
        manager.token_store.save(expired_credential())

        status = manager.get_status()

        assert status.connected
        assert status.has_refresh_token
        assert status.user_email == "user@example.com"

    @pytest.mark.asyncio
    async def test_logout_revokes_and_clears(self, manager, monkeypatch):
        posted = []

        class FakeResponse:
            status_code = 200

        class FakeClient:
            def __init__(self, **kwargs):
                pass

            async def __aenter__(self):
                return self

            async def __aexit__(self, *exc):
                return False

            async def post(self, url, data=None, headers=None):
                posted.append((url, data))
                return FakeResponse()

        monkeypatch.setattr(credentials_module.httpx, 'AsyncClient', FakeClient)
        manager.token_store.save(expired_credential())

        await manager.logout()

        assert posted == [(credentials_module.REVOKE_URI, {'token': "refresh-token"})]
        assert manager.current_credential() is None
        assert not manager.get_status().connected
