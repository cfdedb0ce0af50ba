import uuid
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from tenantauth.config import Settings
from tenantauth.service.errors import OAuthExchangeFailed
from tenantauth.service.oauth import (
    OAuthProvider,
    OAuthProviderRegistry,
    OAuthStateManager,
    primary_verified_email,
)


@pytest.fixture
def states(cache):
    return OAuthStateManager(cache, ttl_seconds=3 * 3600)


async def test_state_is_single_use(states):
    token = await states.save_oauth_state({"provider": "github", "client_nonce": "n1"})
    assert OAuthStateManager.is_valid_state(token)

    peeked = await states.get_oauth_state(token)
    assert peeked["provider"] == "github" and peeked["token"] == token

    consumed = await states.consume_oauth_state(token)
    assert consumed["client_nonce"] == "n1"
    assert await states.consume_oauth_state(token) is None


async def test_malformed_tokens_are_not_looked_up(states, cache):
    await cache.set("OAUTH_STATE:not-a-uuid", {"provider": "github"})
    assert await states.get_oauth_state("not-a-uuid") is None
    assert await states.consume_oauth_state("not-a-uuid") is None
    assert await states.consume_oauth_state(None) is None


async def test_unknown_uuid(states):
    assert await states.consume_oauth_state(str(uuid.uuid4())) is None


async def test_state_expires(states, clock):
    token = await states.save_oauth_state({"provider": "google"})
    clock.advance(3 * 3600 + 1)
    assert await states.consume_oauth_state(token) is None


def test_authorization_url_carries_state_and_pkce():
    provider = OAuthProvider("google", "client-id", "client-secret")
    pkce = OAuthStateManager.create_pkce_pair()
    url = provider.authorization_url("opaque-state", "https://app.example.com/oauth/callback", pkce)

    parts = urlsplit(url)
    query = parse_qs(parts.query)
    assert parts.netloc == "accounts.google.com"
    assert query["state"] == ["opaque-state"]
    assert query["code_challenge"] == [pkce.code_challenge]
    assert query["code_challenge_method"] == ["S256"]
    assert query["prompt"] == ["select_account"]


def test_github_parses_login_as_name():
    provider = OAuthProvider("github", "id", "secret")
    identity = provider.parse_userinfo({"id": 42, "login": "octo", "email": "o@example.com"})
    assert identity == {
        "provider_account_id": "42",
        "email": "o@example.com",
        "name": "octo",
        "avatar_url": None,
    }


def test_registry_only_holds_configured_providers():
    settings = Settings(
        test_mode=True,
        oauth_github_client_id="gh-id",
        oauth_github_client_secret="gh-secret",
        oauth_google_client_id="only-id",
    )
    registry = OAuthProviderRegistry.from_settings(settings)
    assert registry.names == ["github"]
    assert registry.get("GitHub") is not None
    assert registry.get("google") is None
    assert registry.get(None) is None


@pytest.mark.parametrize(
    "body, expected",
    [
        (
            [
                {"email": "old@example.com", "primary": False, "verified": True},
                {"email": "o@example.com", "primary": True, "verified": True},
            ],
            "o@example.com",
        ),
        ([{"email": "o@example.com", "primary": True, "verified": False}], None),
        ({"message": "Requires authentication"}, None),
        (["o@example.com", None, 7], None),
        ([{"primary": True, "verified": True}], None),
        (None, None),
    ],
)
def test_primary_verified_email(body, expected):
    assert primary_verified_email(body) == expected


@pytest.mark.parametrize("emails_body", [{"message": "Bad credentials"}, ["o@example.com"]])
async def test_github_exchange_with_odd_email_listing_fails_cleanly(monkeypatch, emails_body):
    def handler(request):
        if request.url.path == "/login/oauth/access_token":
            return httpx.Response(200, json={"access_token": "gh-token"})
        if request.url.path == "/user":
            return httpx.Response(200, json={"id": 42, "login": "octo", "email": None})
        return httpx.Response(200, json=emails_body)

    real_client = httpx.AsyncClient
    monkeypatch.setattr(
        httpx,
        "AsyncClient",
        lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs),
    )
    provider = OAuthProvider("github", "id", "secret")
    with pytest.raises(OAuthExchangeFailed):
        await provider.exchange("auth-code", "https://app.example.com/oauth/callback")
