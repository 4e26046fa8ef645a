"""Google OAuth token storage and refresh."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

import httpx
from google.oauth2.credentials import Credentials

from calmesh.config import GoogleOAuthConfig
from calmesh.database import format_ts, get_database, new_id, utcnow
from calmesh.encryption import decrypt_value, encrypt_value
from calmesh.errors import AuthenticationError, ExternalApiError, NotFoundError
from calmesh.models import Account

logger = logging.getLogger(__name__)

REFRESH_MARGIN = timedelta(minutes=5)


async def refresh_access_token(refresh_token: str, oauth: GoogleOAuthConfig) -> dict:
    """
    Exchange a refresh token for a new access token.

    Raises:
        AuthenticationError: the grant was revoked or the client is misconfigured
        ExternalApiError: the token endpoint failed in a way worth retrying
    """
    async with httpx.AsyncClient() as client:
        response = await client.post(
            oauth.token_url,
            data={
                "refresh_token": refresh_token,
                "client_id": oauth.client_id,
                "client_secret": oauth.client_secret,
                "grant_type": "refresh_token",
            },
        )

    if response.status_code == 200:
        return response.json()

    logger.error(f"Token refresh failed: {response.text}")
    if response.status_code in (400, 401):
        try:
            error = response.json().get("error", "")
        except ValueError:
            error = ""
        if error in ("invalid_grant", "invalid_client", "unauthorized_client"):
            raise AuthenticationError(f"Token refresh rejected: {error}")
    raise ExternalApiError(f"token refresh failed: {response.text}", status=response.status_code)


async def store_account_tokens(
    email: str,
    access_token: str,
    refresh_token: str,
    expires_in: Optional[int] = None,
) -> str:
    """Store (or replace) encrypted tokens for an account; returns the account id."""
    db = await get_database()
    now = utcnow()

    expiry = None
    if expires_in:
        expiry = format_ts(now + timedelta(seconds=expires_in))

    cursor = await db.execute(
        """INSERT INTO accounts
           (id, email, access_token_encrypted, refresh_token_encrypted,
            token_expires_at, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT(email) DO UPDATE SET
           access_token_encrypted = excluded.access_token_encrypted,
           refresh_token_encrypted = excluded.refresh_token_encrypted,
           token_expires_at = excluded.token_expires_at,
           updated_at = excluded.updated_at
           RETURNING id""",
        (
            new_id(),
            email,
            encrypt_value(access_token),
            encrypt_value(refresh_token),
            expiry,
            format_ts(now),
            format_ts(now),
        ),
    )
    row = await cursor.fetchone()
    await db.commit()

    return row["id"]


async def get_account(account_id: str) -> Optional[Account]:
    db = await get_database()
    cursor = await db.execute("SELECT * FROM accounts WHERE id = ?", (account_id,))
    row = await cursor.fetchone()
    return Account(**dict(row)) if row else None


async def list_accounts_expiring_before(threshold: datetime) -> list[Account]:
    db = await get_database()
    cursor = await db.execute(
        """SELECT * FROM accounts
           WHERE token_expires_at IS NOT NULL AND token_expires_at < ?""",
        (format_ts(threshold),),
    )
    rows = await cursor.fetchall()
    return [Account(**dict(row)) for row in rows]


class TokenVault:
    """
    Hands out valid access tokens per account.

    Concurrent callers for the same account share one in-flight refresh.
    """

    def __init__(self, oauth: GoogleOAuthConfig, refresh_margin: timedelta = REFRESH_MARGIN):
        self.oauth = oauth
        self.refresh_margin = refresh_margin
        self._refreshing: dict[str, asyncio.Future] = {}

    def needs_refresh(self, account: Account) -> bool:
        if account.token_expires_at is None:
            return False
        return utcnow() >= account.token_expires_at - self.refresh_margin

    async def get_access_token(self, account_id: str) -> str:
        """Get a valid access token, refreshing it when it is about to expire."""
        account = await get_account(account_id)
        if account is None:
            raise NotFoundError("Account", account_id)
        if not account.access_token_encrypted:
            raise AuthenticationError(f"No access token stored for account {account_id}")

        if not self.needs_refresh(account):
            return decrypt_value(account.access_token_encrypted)

        return await self._refresh_once(account)

    async def get_credentials(self, account_id: str) -> Credentials:
        return Credentials(token=await self.get_access_token(account_id))

    async def _refresh_once(self, account: Account) -> str:
        in_flight = self._refreshing.get(account.id)
        if in_flight is not None:
            return await asyncio.shield(in_flight)

        future = asyncio.ensure_future(self._refresh(account))
        self._refreshing[account.id] = future
        # Cleared on completion, including failure, so the next caller retries
        future.add_done_callback(lambda _f: self._refreshing.pop(account.id, None))
        return await asyncio.shield(future)

    async def _refresh(self, account: Account) -> str:
        if not self.oauth.is_configured():
            raise AuthenticationError("Google OAuth client is not configured")
        if not account.refresh_token_encrypted:
            raise AuthenticationError(f"No refresh token stored for account {account.id}")

        refresh_token = decrypt_value(account.refresh_token_encrypted)
        logger.info(f"Refreshing token for account {account.email}")

        # Retry transient failures; a revoked grant fails immediately
        max_retries = 3
        for attempt in range(max_retries):
            try:
                new_tokens = await refresh_access_token(refresh_token, self.oauth)
                break
            except ExternalApiError as e:
                if attempt == max_retries - 1:
                    logger.error(f"Failed to refresh token after {max_retries} attempts: {e}")
                    raise
                wait_time = 2 ** attempt
                logger.warning(f"Token refresh attempt {attempt + 1} failed, retrying in {wait_time}s: {e}")
                await asyncio.sleep(wait_time)

        access_token = new_tokens["access_token"]
        await store_account_tokens(
            email=account.email,
            access_token=access_token,
            refresh_token=new_tokens.get("refresh_token", refresh_token),
            expires_in=new_tokens.get("expires_in"),
        )
        return access_token

    async def refresh_expiring_tokens(self, within: timedelta = timedelta(hours=1)) -> int:
        """Refresh every token expiring within the window; returns how many succeeded."""
        expiring = await list_accounts_expiring_before(utcnow() + within)
        if not expiring:
            return 0

        logger.info(f"Refreshing {len(expiring)} expiring tokens")
        refreshed = 0
        for account in expiring:
            try:
                await self._refresh_once(account)
                refreshed += 1
            except AuthenticationError as e:
                logger.error(f"Token for {account.email} can no longer be refreshed: {e}")
            except ExternalApiError as e:
                logger.error(f"Failed to refresh token for {account.email}: {e}")
        return refreshed


# Global vault instance (initialized at startup with explicit OAuth config)
_token_vault: Optional[TokenVault] = None


def init_token_vault(oauth: GoogleOAuthConfig) -> TokenVault:
    global _token_vault
    _token_vault = TokenVault(oauth)
    return _token_vault


def get_token_vault() -> TokenVault:
    if _token_vault is None:
        raise RuntimeError("Token vault is not initialized")
    return _token_vault
