"""Access-token provider for Gmail calls.

TokenManager holds one AuthSession and refreshes it just-in-time against
Google's OAuth token endpoint. A failed refresh degrades to the stale
access token (the next Gmail call will tell us if it is really dead);
only when there is no token at all is Unauthenticated raised.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import httpx

from inbox_assistant.conventions import ACCESS_TOKEN_DEFAULT_TTL, GOOGLE_TOKEN_URI

from .settings import GoogleCredentials

logger = logging.getLogger(__name__)


class Unauthenticated(Exception):
    """No usable access token; the user must re-authenticate."""


@dataclass
class AuthSession:
    access_token: str = ""
    refresh_token: str = ""
    access_token_expiry: float = 0.0  # epoch seconds; 0 = unknown/expired

    def is_valid(self, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return bool(self.access_token) and now < self.access_token_expiry


@runtime_checkable
class AccessTokenProvider(Protocol):
    async def get_valid_access_token(self) -> str:
        """Return a usable access token or raise Unauthenticated."""
        ...


class StaticTokenProvider:
    """Always-valid token for simulator mode and tests."""

    def __init__(self, token: str = "simulator-token") -> None:
        self._token = token

    async def get_valid_access_token(self) -> str:
        return self._token


class TokenManager:
    """Just-in-time OAuth refresh for a single Google account."""

    def __init__(
        self,
        credentials: GoogleCredentials,
        http_client: httpx.AsyncClient | None = None,
        token_uri: str = GOOGLE_TOKEN_URI,
    ) -> None:
        self._credentials = credentials
        self._http_client = http_client
        self._token_uri = token_uri
        self.session = AuthSession(
            access_token=credentials.access_token,
            refresh_token=credentials.refresh_token,
        )

    async def get_valid_access_token(self) -> str:
        if self.session.is_valid():
            return self.session.access_token

        if self.session.refresh_token:
            await self._refresh()
            if self.session.is_valid():
                return self.session.access_token

        if self.session.access_token:
            logger.warning("Proceeding with a possibly stale Gmail access token")
            return self.session.access_token
        raise Unauthenticated("No Gmail access token available. Please sign in again.")

    async def _refresh(self) -> None:
        """Refresh the access token; on failure leave the session unchanged."""
        data = {
            "client_id": self._credentials.client_id,
            "client_secret": self._credentials.client_secret,
            "refresh_token": self.session.refresh_token,
            "grant_type": "refresh_token",
        }
        try:
            if self._http_client is not None:
                resp = await self._http_client.post(self._token_uri, data=data)
            else:
                async with httpx.AsyncClient(timeout=15.0) as client:
                    resp = await client.post(self._token_uri, data=data)
        except httpx.HTTPError as e:
            logger.warning("Access token refresh failed: %s", e)
            return

        if resp.status_code != 200:
            logger.warning(
                "Failed to refresh access token (%d): %s", resp.status_code, resp.text
            )
            return

        try:
            refreshed = resp.json()
        except ValueError:
            logger.warning("Token endpoint returned invalid JSON")
            return

        access_token = refreshed.get("access_token")
        if not access_token:
            logger.warning("Token endpoint response has no access_token")
            return

        expires_in = refreshed.get("expires_in") or ACCESS_TOKEN_DEFAULT_TTL
        self.session.access_token = access_token
        self.session.access_token_expiry = time.time() + float(expires_in)
        # Google only sometimes rotates the refresh token.
        if refreshed.get("refresh_token"):
            self.session.refresh_token = refreshed["refresh_token"]
        logger.info("Refreshed Gmail access token (expires in %ss)", expires_in)
