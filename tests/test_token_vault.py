"""Tests for encrypted token storage and the refreshing token vault."""

from __future__ import annotations

import asyncio

import pytest

from calmesh.config import GoogleOAuthConfig
from calmesh.errors import AuthenticationError, ExternalApiError, NotFoundError

OAUTH = GoogleOAuthConfig(client_id="client-id", client_secret="client-secret")


class FakeResponse:
    def __init__(self, status_code: int, payload: dict):
        self.status_code = status_code
        self._payload = payload
        self.text = str(payload)

    def json(self):
        return self._payload


def _fake_client(response: FakeResponse, posts: list):
    class FakeClient:
        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc, tb):
            return False

        async def post(self, url, data=None, **kwargs):
            posts.append((url, data))
            return response

    return FakeClient


@pytest.mark.asyncio
async def test_store_account_tokens_encrypts_and_upserts(test_db, test_encryption_key):
    from calmesh.auth.google import get_account, store_account_tokens
    from calmesh.encryption import decrypt_value

    account_id = await store_account_tokens("alice@example.com", "access-1", "refresh-1", expires_in=3600)
    again = await store_account_tokens("alice@example.com", "access-2", "refresh-2", expires_in=3600)
    assert again == account_id

    account = await get_account(account_id)
    assert account.access_token_encrypted != b"access-2"
    assert decrypt_value(account.access_token_encrypted) == "access-2"
    assert decrypt_value(account.refresh_token_encrypted) == "refresh-2"
    assert account.token_expires_at is not None


@pytest.mark.asyncio
async def test_fresh_token_is_returned_without_refresh(test_db, test_encryption_key, monkeypatch):
    from calmesh.auth.google import TokenVault, store_account_tokens

    async def fail_refresh(*_args):
        raise AssertionError("refresh should not be called")

    monkeypatch.setattr("calmesh.auth.google.refresh_access_token", fail_refresh)
    account_id = await store_account_tokens("alice@example.com", "access-1", "refresh-1", expires_in=3600)

    assert await TokenVault(OAUTH).get_access_token(account_id) == "access-1"


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_refresh(test_db, test_encryption_key, monkeypatch):
    from calmesh.auth.google import TokenVault, get_account, store_account_tokens
    from calmesh.encryption import decrypt_value

    calls = []

    async def fake_refresh(refresh_token, oauth):
        calls.append(refresh_token)
        await asyncio.sleep(0.05)
        return {"access_token": "access-new", "expires_in": 3600}

    monkeypatch.setattr("calmesh.auth.google.refresh_access_token", fake_refresh)
    # Expires inside the refresh margin
    account_id = await store_account_tokens("alice@example.com", "access-old", "refresh-1", expires_in=60)
    vault = TokenVault(OAUTH)

    tokens = await asyncio.gather(*(vault.get_access_token(account_id) for _ in range(5)))

    assert tokens == ["access-new"] * 5
    assert calls == ["refresh-1"]
    assert vault._refreshing == {}

    account = await get_account(account_id)
    assert decrypt_value(account.access_token_encrypted) == "access-new"
    # Refresh token kept when Google does not rotate it
    assert decrypt_value(account.refresh_token_encrypted) == "refresh-1"


@pytest.mark.asyncio
async def test_revoked_grant_raises_authentication_error(test_db, test_encryption_key, monkeypatch):
    from calmesh.auth.google import TokenVault, store_account_tokens

    posts = []
    response = FakeResponse(400, {"error": "invalid_grant"})
    monkeypatch.setattr("calmesh.auth.google.httpx.AsyncClient", _fake_client(response, posts))
    account_id = await store_account_tokens("alice@example.com", "access-old", "refresh-1", expires_in=60)
    vault = TokenVault(OAUTH)

    with pytest.raises(AuthenticationError):
        await vault.get_access_token(account_id)

    assert len(posts) == 1
    assert posts[0][1]["grant_type"] == "refresh_token"
    assert vault._refreshing == {}


@pytest.mark.asyncio
async def test_transient_refresh_failures_are_retried(test_db, test_encryption_key, monkeypatch):
    from calmesh.auth.google import TokenVault, store_account_tokens

    attempts = []

    async def flaky_refresh(refresh_token, oauth):
        attempts.append(refresh_token)
        if len(attempts) < 3:
            raise ExternalApiError("token endpoint unavailable", status=503)
        return {"access_token": "access-new", "refresh_token": "refresh-2", "expires_in": 3600}

    async def no_sleep(_seconds):
        return None

    monkeypatch.setattr("calmesh.auth.google.refresh_access_token", flaky_refresh)
    monkeypatch.setattr("calmesh.auth.google.asyncio.sleep", no_sleep)
    account_id = await store_account_tokens("alice@example.com", "access-old", "refresh-1", expires_in=60)

    assert await TokenVault(OAUTH).get_access_token(account_id) == "access-new"
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_refresh_error_from_server_is_external(monkeypatch):
    from calmesh.auth.google import refresh_access_token

    response = FakeResponse(500, {"error": "backend"})
    monkeypatch.setattr("calmesh.auth.google.httpx.AsyncClient", _fake_client(response, []))

    with pytest.raises(ExternalApiError):
        await refresh_access_token("refresh-1", OAUTH)


@pytest.mark.asyncio
async def test_unknown_account_and_unconfigured_client(test_db, test_encryption_key):
    from calmesh.auth.google import TokenVault, store_account_tokens

    with pytest.raises(NotFoundError):
        await TokenVault(OAUTH).get_access_token("missing")

    account_id = await store_account_tokens("alice@example.com", "access-old", "refresh-1", expires_in=60)
    vault = TokenVault(GoogleOAuthConfig(client_id="", client_secret=""))
    with pytest.raises(AuthenticationError):
        await vault.get_access_token(account_id)


@pytest.mark.asyncio
async def test_refresh_expiring_tokens_counts_successes(test_db, test_encryption_key, monkeypatch):
    from calmesh.auth.google import TokenVault, store_account_tokens

    async def fake_refresh(refresh_token, oauth):
        if refresh_token == "revoked":
            raise AuthenticationError("Token refresh rejected: invalid_grant")
        return {"access_token": "access-new", "expires_in": 3600}

    monkeypatch.setattr("calmesh.auth.google.refresh_access_token", fake_refresh)
    await store_account_tokens("alice@example.com", "a", "refresh-1", expires_in=600)
    await store_account_tokens("bob@example.com", "b", "revoked", expires_in=600)
    await store_account_tokens("carol@example.com", "c", "refresh-3", expires_in=86400)

    assert await TokenVault(OAUTH).refresh_expiring_tokens() == 1
