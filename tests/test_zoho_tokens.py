from urllib.parse import parse_qs, urlparse

import pytest
import requests

from fakes import FakeHTTP, FakeResponse, token_ok
from zoho_tokens import TokenRefreshError, ZohoOAuthError, ZohoTokenCache, authorize_url, exchange_code


def test_refresh_posts_refresh_grant(tokens, token_http):
    token_http.queue(token_ok("tok-1"))

    assert tokens.get() == "tok-1"

    assert len(token_http.calls) == 1
    call = token_http.calls[0]
    assert call["url"] == "https://accounts.example/oauth/v2/token"
    assert call["data"] == {
        "refresh_token": "refresh-1",
        "client_id": "cid",
        "client_secret": "csecret",
        "grant_type": "refresh_token",
    }
    assert call["timeout"] == 20


def test_refresh_records_expiry_minus_margin(tokens, token_http, clock):
    token_http.queue(token_ok("tok-1", expires_in=3600))
    tokens.get()
    assert tokens.cached.expires_at == clock.now + 3600 - 60


def test_cached_token_is_served_without_network(tokens, token_http, clock):
    token_http.queue(token_ok("tok-1"))
    tokens.get()
    clock.advance(1000)

    assert tokens.get() == "tok-1"
    assert tokens.is_cached() is True
    assert len(token_http.calls) == 1


def test_token_not_used_inside_safety_margin(tokens, token_http, clock):
    token_http.queue(token_ok("tok-1", expires_in=3600), token_ok("tok-2"))
    tokens.get()

    clock.advance(3539)
    assert tokens.get() == "tok-1"

    clock.advance(1)
    assert tokens.is_cached() is False
    assert tokens.get() == "tok-2"
    assert len(token_http.calls) == 2


def test_expires_in_sec_wins_over_expires_in(tokens, token_http, clock):
    token_http.queue(FakeResponse(200, {"access_token": "tok-1", "expires_in": 3600000, "expires_in_sec": 3600}))
    tokens.get()
    assert tokens.cached.expires_at == clock.now + 3540


def test_invalidate_forces_refresh(tokens, token_http):
    token_http.queue(token_ok("tok-1"), token_ok("tok-2"))
    tokens.get()
    tokens.invalidate()

    assert tokens.cached is None
    assert tokens.get() == "tok-2"


def test_refresh_http_failure_raises(tokens, token_http):
    token_http.queue(FakeResponse(400, {"error": "invalid_client"}))

    with pytest.raises(TokenRefreshError) as exc:
        tokens.get()
    assert exc.value.status == 400
    assert exc.value.detail == {"error": "invalid_client"}
    assert tokens.cached is None


def test_refresh_error_body_on_200_raises(tokens, token_http):
    # Zoho reports bad refresh tokens with a 200 and an error field.
    token_http.queue(FakeResponse(200, {"error": "invalid_code"}))
    with pytest.raises(TokenRefreshError):
        tokens.get()


def test_refresh_transport_error_is_wrapped(tokens, token_http):
    token_http.queue(requests.ConnectionError("boom"))
    with pytest.raises(TokenRefreshError, match="unreachable"):
        tokens.get()


def test_missing_refresh_token_fails_without_network(clock):
    http = FakeHTTP()
    cache = ZohoTokenCache("cid", "csecret", None, http=http, clock=clock)
    with pytest.raises(TokenRefreshError, match="ZOHO_REFRESH_TOKEN"):
        cache.get()
    assert http.calls == []


def test_exchange_code_posts_authorization_code():
    http = FakeHTTP(FakeResponse(200, {"access_token": "a-1", "refresh_token": "r-1", "expires_in": 3600}))

    body = exchange_code(
        "code-123",
        client_id="cid",
        client_secret="csecret",
        redirect_uri="http://localhost:8000/callback",
        accounts_base="https://accounts.example/",
        http=http,
    )

    assert body["refresh_token"] == "r-1"
    call = http.calls[0]
    assert call["url"] == "https://accounts.example/oauth/v2/token"
    assert call["data"]["grant_type"] == "authorization_code"
    assert call["data"]["code"] == "code-123"
    assert call["data"]["redirect_uri"] == "http://localhost:8000/callback"


def test_exchange_code_failure_carries_detail():
    http = FakeHTTP(FakeResponse(200, {"error": "invalid_code"}))
    with pytest.raises(ZohoOAuthError) as exc:
        exchange_code("bad", client_id="cid", client_secret="s", redirect_uri="http://x/cb", http=http)
    assert exc.value.detail == {"error": "invalid_code"}
    assert not isinstance(exc.value, TokenRefreshError)


def test_authorize_url_requests_offline_consent():
    url = authorize_url(
        client_id="cid",
        redirect_uri="http://localhost:8000/callback",
        scopes="WorkDrive.files.ALL",
        state="st-1",
        accounts_base="https://accounts.example",
    )
    parsed = urlparse(url)
    q = parse_qs(parsed.query)
    assert parsed.path == "/oauth/v2/auth"
    assert q["access_type"] == ["offline"]
    assert q["prompt"] == ["consent"]
    assert q["state"] == ["st-1"]
    assert q["scope"] == ["WorkDrive.files.ALL"]
