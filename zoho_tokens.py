"""Zoho OAuth: authorization code and refresh token exchanges.

The access token is cached in memory until shortly before it expires.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from urllib.parse import urlencode

import requests

from log_helpers import debug_event, token_preview

logger = logging.getLogger("workdrive_bridge.tokens")

EXPIRY_MARGIN = 60
DEFAULT_LIFETIME = 3600


class ZohoOAuthError(Exception):
    def __init__(self, message, status=None, detail=None):
        super().__init__(message)
        self.status = status
        self.detail = detail


class TokenRefreshError(ZohoOAuthError):
    pass


@dataclass(frozen=True)
class AccessToken:
    token: str
    expires_at: float  # epoch seconds, margin already subtracted


def _token_url(accounts_base: str) -> str:
    return accounts_base.rstrip("/") + "/oauth/v2/token"


def _lifetime(body: dict) -> int:
    # Older Zoho responses report expires_in in milliseconds next to expires_in_sec.
    return int(body.get("expires_in_sec", body.get("expires_in", DEFAULT_LIFETIME)))


def _post_token(http, url: str, data: dict, timeout: float, error_cls):
    try:
        resp = http.post(url, data=data, timeout=timeout)
    except requests.RequestException as e:
        raise error_cls(f"Token endpoint unreachable: {e}") from e
    try:
        body = resp.json()
    except ValueError:
        body = {}
    if resp.status_code != 200 or not isinstance(body, dict) or "error" in body or not body.get("access_token"):
        detail = body if isinstance(body, dict) and body else resp.text[:500]
        raise error_cls(f"Token request failed with status {resp.status_code}", resp.status_code, detail)
    return body


class ZohoTokenCache:
    """Holds one access token for the whole process and refreshes it on demand."""

    def __init__(
        self,
        client_id: str | None,
        client_secret: str | None,
        refresh_token: str | None,
        accounts_base: str = "https://accounts.zoho.com",
        http=requests,
        timeout: float = 20,
        clock=time.time,
        expiry_margin: int = EXPIRY_MARGIN,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_token = refresh_token
        self.accounts_base = accounts_base.rstrip("/")
        self.http = http
        self.timeout = timeout
        self.clock = clock
        self.expiry_margin = expiry_margin
        self._cached: AccessToken | None = None

    @property
    def cached(self) -> AccessToken | None:
        return self._cached

    def is_cached(self) -> bool:
        cached = self._cached
        return bool(cached and self.clock() < cached.expires_at)

    def invalidate(self) -> None:
        if self._cached:
            debug_event(logger, "token_invalidated", token=token_preview(self._cached.token))
        self._cached = None

    def get(self) -> str:
        cached = self._cached
        if cached and self.clock() < cached.expires_at:
            return cached.token
        return self.refresh().token

    def refresh(self) -> AccessToken:
        if not (self.client_id and self.client_secret and self.refresh_token):
            raise TokenRefreshError("ZOHO_CLIENT_ID, ZOHO_CLIENT_SECRET and ZOHO_REFRESH_TOKEN must be set")
        body = _post_token(
            self.http,
            _token_url(self.accounts_base),
            {
                "refresh_token": self.refresh_token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "refresh_token",
            },
            self.timeout,
            TokenRefreshError,
        )
        lifetime = _lifetime(body)
        fresh = AccessToken(token=body["access_token"], expires_at=self.clock() + lifetime - self.expiry_margin)
        self._cached = fresh
        logger.info("Zoho access token refreshed, valid for %ss", lifetime - self.expiry_margin)
        debug_event(logger, "token_refreshed", token=token_preview(fresh.token), expires_at=fresh.expires_at)
        return fresh


def exchange_code(
    code: str,
    *,
    client_id: str,
    client_secret: str,
    redirect_uri: str,
    accounts_base: str = "https://accounts.zoho.com",
    http=requests,
    timeout: float = 20,
) -> dict:
    """Trade a one-time authorization code for an access/refresh token pair."""
    body = _post_token(
        http,
        _token_url(accounts_base),
        {
            "code": code,
            "client_id": client_id,
            "client_secret": client_secret,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
        },
        timeout,
        ZohoOAuthError,
    )
    debug_event(
        logger,
        "code_exchanged",
        access=token_preview(body.get("access_token")),
        refresh=bool(body.get("refresh_token")),
    )
    return body


def authorize_url(*, client_id: str, redirect_uri: str, scopes: str, state: str, accounts_base: str = "https://accounts.zoho.com") -> str:
    q = {
        "scope": scopes,
        "client_id": client_id,
        "response_type": "code",
        "access_type": "offline",
        "prompt": "consent",
        "redirect_uri": redirect_uri,
        "state": state,
    }
    return f"{accounts_base.rstrip('/')}/oauth/v2/auth?{urlencode(q)}"
