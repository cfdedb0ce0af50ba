from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.errors import OAuthExchangeFailed
from tenantauth.service.tokens import pkce_challenge, random_urlsafe
from tenantauth.storage.redis_cache import EphemeralStore

OAUTH_STATE_KEY = "OAUTH_STATE"
OAUTH_STATE_TTL_SECONDS = 3 * 60 * 60

_STATE_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-8][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

OAUTH_PROVIDERS = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
    "github": {
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "scope": "read:user user:email",
    },
    "microsoft": {
        "auth_url": "https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
        "token_url": "https://login.microsoftonline.com/common/oauth2/v2.0/token",
        "userinfo_url": "https://graph.microsoft.com/v1.0/me",
        "scope": "openid email profile User.Read",
    },
}

logger = get_logger(__name__)


@dataclass(frozen=True)
class OAuthIdentity:
    provider_account_id: str
    email: str
    name: Optional[str] = None
    avatar_url: Optional[str] = None


@dataclass(frozen=True)
class PkcePair:
    code_verifier: str
    code_challenge: str
    code_challenge_method: str = "S256"


def primary_verified_email(emails: Any) -> Optional[str]:
    """Pick the primary verified address from GitHub's ``/user/emails`` body."""
    if not isinstance(emails, list):
        return None
    for entry in emails:
        if not isinstance(entry, dict):
            continue
        if entry.get("primary") and entry.get("verified") and isinstance(entry.get("email"), str):
            return entry["email"]
    return None


class OAuthProvider:
    """Authorization URL and code exchange for one configured provider."""

    def __init__(
        self,
        name: str,
        client_id: str,
        client_secret: str,
        *,
        config: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
    ) -> None:
        self.name = name
        self.client_id = client_id
        self.client_secret = client_secret
        self.config = config or OAUTH_PROVIDERS[name]
        self.timeout = timeout

    def authorization_url(
        self, state: str, redirect_uri: str, pkce: Optional[PkcePair] = None
    ) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": self.config["scope"],
            "state": state,
        }
        if self.name == "google":
            params["prompt"] = "select_account"
            params["access_type"] = "online"
        if pkce is not None:
            params["code_challenge"] = pkce.code_challenge
            params["code_challenge_method"] = pkce.code_challenge_method
        return f"{self.config['auth_url']}?{urlencode(params)}"

    async def exchange(
        self, code: str, redirect_uri: str, code_verifier: Optional[str] = None
    ) -> OAuthIdentity:
        """Swap an authorization code for the account identity.

        Raises ``OAuthExchangeFailed`` on any provider error.
        """
        token_data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": code,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
        }
        if code_verifier:
            token_data["code_verifier"] = code_verifier
        try:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=False) as client:
                token_response = await client.post(
                    self.config["token_url"],
                    data=token_data,
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    logger.error("oauth_no_access_token", provider=self.name)
                    raise OAuthExchangeFailed()

                headers = {"Authorization": f"Bearer {access_token}"}
                if self.name == "github":
                    headers["Accept"] = "application/vnd.github+json"
                userinfo_response = await client.get(self.config["userinfo_url"], headers=headers)
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
                if not isinstance(userinfo, dict):
                    raise OAuthExchangeFailed()
                identity = self.parse_userinfo(userinfo)

                if self.name == "github" and not identity.get("email"):
                    emails_response = await client.get(
                        "https://api.github.com/user/emails", headers=headers
                    )
                    if emails_response.status_code == 200:
                        identity["email"] = primary_verified_email(emails_response.json())
        except httpx.HTTPStatusError as e:
            logger.error(
                "oauth_exchange_http_error",
                provider=self.name,
                status_code=e.response.status_code,
            )
            raise OAuthExchangeFailed() from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error("oauth_exchange_error", provider=self.name, error=str(e))
            raise OAuthExchangeFailed() from e

        if not identity.get("provider_account_id") or not identity.get("email"):
            logger.error("oauth_identity_incomplete", provider=self.name)
            raise OAuthExchangeFailed()
        return OAuthIdentity(**identity)

    def parse_userinfo(self, userinfo: Dict[str, Any]) -> Dict[str, Any]:
        if self.name == "github":
            return {
                "provider_account_id": str(userinfo.get("id") or ""),
                "email": userinfo.get("email"),
                "name": userinfo.get("name") or userinfo.get("login"),
                "avatar_url": userinfo.get("avatar_url"),
            }
        if self.name == "microsoft":
            return {
                "provider_account_id": str(userinfo.get("id") or ""),
                "email": userinfo.get("mail") or userinfo.get("userPrincipalName"),
                "name": userinfo.get("displayName"),
                "avatar_url": None,
            }
        return {
            "provider_account_id": str(userinfo.get("id") or userinfo.get("sub") or ""),
            "email": userinfo.get("email"),
            "name": userinfo.get("name"),
            "avatar_url": userinfo.get("picture"),
        }


class OAuthProviderRegistry:
    def __init__(self) -> None:
        self._providers: Dict[str, OAuthProvider] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "OAuthProviderRegistry":
        registry = cls()
        for name in OAUTH_PROVIDERS:
            client_id = getattr(settings, f"oauth_{name}_client_id")
            client_secret = getattr(settings, f"oauth_{name}_client_secret")
            if client_id and client_secret:
                registry.register(OAuthProvider(name, client_id, client_secret))
        return registry

    def register(self, provider: OAuthProvider) -> None:
        self._providers[provider.name] = provider

    def get(self, name: Optional[str]) -> Optional[OAuthProvider]:
        if not name:
            return None
        return self._providers.get(name.lower())

    @property
    def names(self) -> list[str]:
        return sorted(self._providers)


class OAuthStateManager:
    """Single-use OAuth ``state`` tokens.

    The state payload (provider, client nonce, redirect target, PKCE verifier)
    never leaves the server; the browser only carries the random token.
    """

    def __init__(self, cache: EphemeralStore, *, ttl_seconds: int = OAUTH_STATE_TTL_SECONDS) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def is_valid_state(token: Optional[str]) -> bool:
        return bool(token) and bool(_STATE_PATTERN.match(token))

    async def save_oauth_state(self, payload: Dict[str, Any]) -> str:
        token = str(uuid.uuid4())
        await self.cache.set(
            f"{OAUTH_STATE_KEY}:{token}", {**payload, "token": token}, self.ttl_seconds
        )
        return token

    async def get_oauth_state(self, token: Optional[str]) -> Optional[Dict[str, Any]]:
        if not self.is_valid_state(token):
            return None
        return await self.cache.get(f"{OAUTH_STATE_KEY}:{token}")

    async def consume_oauth_state(self, token: Optional[str]) -> Optional[Dict[str, Any]]:
        """Atomic get-and-delete; a second consume always returns ``None``."""
        if not self.is_valid_state(token):
            return None
        return await self.cache.pop(f"{OAUTH_STATE_KEY}:{token}")

    @staticmethod
    def create_pkce_pair() -> PkcePair:
        verifier = random_urlsafe(96)
        return PkcePair(code_verifier=verifier, code_challenge=pkce_challenge(verifier))
