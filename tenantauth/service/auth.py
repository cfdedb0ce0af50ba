from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, Optional, Tuple

from starlette.requests import Request
from starlette.responses import Response

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.metrics import OAUTH_CALLBACKS
from tenantauth.service.admin_mfa import AdminMfaManager, request_fingerprint
from tenantauth.service.cookies import CookieIssuer
from tenantauth.service.credentials import CredentialVerifier, normalize_email
from tenantauth.service.email import EmailService
from tenantauth.service.errors import (
    ActionForbidden,
    EmailTokenNotFound,
    InvalidAuthState,
    InvalidEmailToken,
    InvalidOAuthCallbackState,
    MissingOAuthQueryParameter,
    OAuthExchangeFailed,
    OAuthStateExpired,
    SignUpForbidden,
    UnknownOAuthProvider,
    WrongSignInCredentials,
)
from tenantauth.service.guard import VERSION_HEADER, CurrentUser
from tenantauth.service.magic_link import MagicLinkOtpManager
from tenantauth.service.oauth import OAuthProviderRegistry, OAuthStateManager
from tenantauth.service.sessions import SessionService
from tenantauth.service.tokens import constant_time_equal, generate_otp
from tenantauth.service.urls import URLHelper
from tenantauth.storage.memory import AuthStore
from tenantauth.storage.models import User

SIGN_IN_TOKEN = "sign_in"
OPEN_APP_SIGN_IN_TOKEN = "open_app_sign_in"
DEFAULT_MAGIC_LINK_CALLBACK = "/magic-link"

logger = get_logger(__name__)


class AuthService:
    """Sign-in flows built from the credential, session, OTP and OAuth pieces.

    Every method either returns the response payload or raises a
    ``ServiceError``; cookies are written onto the ``response`` passed in.
    """

    def __init__(
        self,
        settings: Settings,
        store: AuthStore,
        *,
        sessions: SessionService,
        credentials: CredentialVerifier,
        cookies: CookieIssuer,
        magic_links: MagicLinkOtpManager,
        admin_mfa: AdminMfaManager,
        oauth_states: OAuthStateManager,
        oauth_providers: OAuthProviderRegistry,
        urls: URLHelper,
        email: EmailService,
    ) -> None:
        self.settings = settings
        self.store = store
        self.sessions = sessions
        self.credentials = credentials
        self.cookies = cookies
        self.magic_links = magic_links
        self.admin_mfa = admin_mfa
        self.oauth_states = oauth_states
        self.oauth_providers = oauth_providers
        self.urls = urls
        self.email = email

    def public_user(self, user: User) -> Dict[str, Any]:
        return user.to_public(has_password=self.store.has_password(user.id))

    # --- password and magic link -------------------------------------------------

    def preflight(self, email: Optional[str]) -> Dict[str, bool]:
        email = normalize_email(email or "")
        user = self.store.get_user_by_email(email)
        if user is None:
            return {"registered": False, "has_password": False}
        return {"registered": user.registered, "has_password": self.store.has_password(user.id)}

    async def sign_in(
        self,
        request: Request,
        response: Response,
        *,
        email: str,
        password: Optional[str] = None,
        callback_url: Optional[str] = None,
        client_nonce: Optional[str] = None,
        admin_step_up: bool = False,
    ) -> Tuple[int, Dict[str, Any]]:
        """Password sign-in, admin step-up challenge, or magic-link issuance.

        Returns ``(status_code, payload)``: 202 when an administrator must
        complete the emailed challenge first, 200 otherwise.
        """
        email = normalize_email(email)
        if not password:
            return 200, await self.send_magic_link(email, callback_url, client_nonce)

        user = self.credentials.sign_in(email, password)
        if admin_step_up and self.store.is_admin(user.id):
            challenge = await self.admin_mfa.create_challenge(user, request_fingerprint(request))
            return 202, {
                "mfa_required": True,
                "ticket": challenge.ticket,
                "email": challenge.email,
                "risk_level": challenge.risk_level,
            }

        self.cookies.set_cookies(
            request, response, user.id, client_version=request.headers.get(VERSION_HEADER)
        )
        logger.info("password_sign_in", user_id=user.id)
        return 200, self.public_user(user)

    async def send_magic_link(
        self,
        email: str,
        callback_url: Optional[str] = None,
        client_nonce: Optional[str] = None,
    ) -> Dict[str, str]:
        callback_url = callback_url or DEFAULT_MAGIC_LINK_CALLBACK
        if not self.urls.is_allowed_callback_url(callback_url):
            logger.warning("magic_link_callback_rejected")
            raise ActionForbidden()
        redirect_uri = self.urls.query_param(callback_url, "redirect_uri")
        if redirect_uri and not self.urls.is_allowed_redirect_uri(redirect_uri):
            logger.warning("magic_link_redirect_rejected")
            raise ActionForbidden()

        user = self.store.get_user_by_email(email, with_disabled=True)
        if user is None and not self.settings.allow_signup:
            raise SignUpForbidden()
        if user is not None and user.disabled:
            raise WrongSignInCredentials(email)

        token = self.store.create_verification_token(
            SIGN_IN_TOKEN, email, self.settings.magic_link_ttl_seconds
        )
        otp = generate_otp()
        await self.magic_links.upsert(email, otp, token, client_nonce)

        link = self.urls.link(callback_url, {"token": otp, "email": email})
        sign_up = user is None or not user.registered
        sent = await asyncio.to_thread(
            self.email.send_sign_in_link, email, link, otp, sign_up=sign_up
        )
        if not sent:
            logger.error("magic_link_email_failed")
        return {"email": email}

    async def magic_link_sign_in(
        self,
        request: Request,
        response: Response,
        *,
        email: Optional[str],
        otp: Optional[str],
        client_nonce: Optional[str] = None,
    ) -> Dict[str, str]:
        if not otp or not email:
            raise EmailTokenNotFound()
        email = normalize_email(email)

        result = await self.magic_links.consume(email, otp, client_nonce)
        if not result.ok:
            if result.reason == "nonce_mismatch":
                raise InvalidAuthState()
            raise InvalidEmailToken()
        if self.store.verify_verification_token(SIGN_IN_TOKEN, result.token, email) is None:
            raise InvalidEmailToken()

        existing = self.store.get_user_by_email(email, with_disabled=True)
        if existing is not None and existing.disabled:
            raise WrongSignInCredentials(email)
        user = self.store.fulfill_user(email)
        self.cookies.set_cookies(
            request, response, user.id, client_version=request.headers.get(VERSION_HEADER)
        )
        logger.info("magic_link_sign_in", user_id=user.id)
        return {"id": user.id}

    # --- administrator step-up ---------------------------------------------------

    async def verify_admin_mfa(
        self,
        request: Request,
        response: Response,
        *,
        ticket: Optional[str],
        otp: Optional[str],
    ) -> Dict[str, Any]:
        if not ticket or not otp:
            raise InvalidAuthState()
        fingerprint = request_fingerprint(request)
        outcome = await self.admin_mfa.verify(ticket, otp, fingerprint)
        if not outcome.ok:
            if outcome.reason == "forbidden":
                raise ActionForbidden()
            raise InvalidAuthState()

        user = outcome.user
        user_session = self.cookies.set_cookies(
            request,
            response,
            user.id,
            client_version=request.headers.get(VERSION_HEADER),
            ttl=self.settings.admin_session_ttl_seconds,
        )
        await self.admin_mfa.complete_step_up(user_session.session_id, user.id, fingerprint)
        return {"id": user.id, "email": user.email, "mfa_verified": True}

    async def resend_admin_mfa(self, request: Request, *, ticket: Optional[str]) -> Dict[str, Any]:
        if not ticket:
            raise InvalidAuthState()
        outcome = await self.admin_mfa.resend(ticket, request_fingerprint(request))
        if not outcome.ok:
            raise InvalidAuthState()
        return {
            "ticket": outcome.challenge.ticket,
            "resent": True,
            "risk_level": outcome.challenge.risk_level,
        }

    async def list_trusted_devices(self, current: CurrentUser) -> Dict[str, Any]:
        return {"devices": await self.admin_mfa.list_trusted_devices(current.id)}

    async def revoke_trusted_devices(
        self, current: CurrentUser, fingerprint: Optional[str] = None
    ) -> Dict[str, int]:
        removed = await self.admin_mfa.revoke_trusted_devices(current.id, fingerprint)
        logger.info("trusted_devices_revoked", user_id=current.id, removed=removed)
        return {"removed": removed}

    # --- sessions ----------------------------------------------------------------

    async def current_session(self, current: Optional[CurrentUser]) -> Dict[str, Any]:
        if current is None:
            return {"user": None, "admin_step_up": False}
        step_up = False
        if current.session_id:
            step_up = await self.admin_mfa.is_step_up_active(current.session_id, current.id)
        return {"user": self.public_user(current.user), "admin_step_up": step_up}

    def session_users(self, request: Request) -> Dict[str, Any]:
        session_id = request.cookies.get(self.settings.session_cookie_name)
        if not session_id:
            return {"users": []}
        return {"users": [self.public_user(u) for u in self.sessions.get_users(session_id)]}

    def sign_out(
        self,
        request: Request,
        response: Response,
        current: Optional[CurrentUser],
        *,
        user_id: Optional[str] = None,
        check_csrf: bool = True,
    ) -> Dict[str, Any]:
        """Sign one account (``user_id``) or the whole session out."""
        if current is None or current.session_id is None:
            return {}
        if check_csrf:
            self.cookies.check_sign_out_csrf(request)
        session_id = current.session_id
        self.sessions.sign_out(session_id, user_id)
        self.cookies.refresh_cookies(response, session_id)
        return {}

    def open_app_sign_in_code(self, current: Optional[CurrentUser]) -> Dict[str, str]:
        if current is None:
            raise ActionForbidden()
        code = self.store.create_verification_token(
            OPEN_APP_SIGN_IN_TOKEN, current.id, self.settings.open_app_code_ttl_seconds
        )
        return {"code": code}

    def open_app_sign_in(
        self, request: Request, response: Response, *, code: Optional[str]
    ) -> Dict[str, str]:
        if not code:
            raise InvalidAuthState()
        record = self.store.get_verification_token(OPEN_APP_SIGN_IN_TOKEN, code)
        if record is None or not record.credential:
            raise InvalidAuthState()
        user = self.store.get_user(record.credential)
        if user is None:
            raise InvalidAuthState()
        self.cookies.set_cookies(
            request, response, user.id, client_version=request.headers.get(VERSION_HEADER)
        )
        return {"id": user.id}

    def disable_user(self, user_id: str) -> int:
        """Disable the account and revoke every session binding it holds."""
        user = self.store.update_user(user_id, disabled=True)
        return self.sessions.on_user_disabled(user)

    # --- oauth -------------------------------------------------------------------

    @property
    def oauth_callback_uri(self) -> str:
        return self.settings.oauth_redirect_uri or self.urls.link("/oauth/callback")

    async def oauth_preflight(
        self,
        request: Request,
        *,
        provider: Optional[str],
        client_nonce: Optional[str],
        redirect_uri: Optional[str] = None,
        client: Optional[str] = None,
    ) -> Dict[str, str]:
        oauth_provider = self.oauth_providers.get(provider)
        if oauth_provider is None:
            raise UnknownOAuthProvider(provider)
        if not client_nonce:
            raise MissingOAuthQueryParameter("client_nonce")
        if redirect_uri and not self.urls.is_allowed_redirect_uri(redirect_uri):
            logger.warning("oauth_redirect_rejected", provider=oauth_provider.name)
            raise ActionForbidden()

        pkce = self.oauth_states.create_pkce_pair()
        token = await self.oauth_states.save_oauth_state(
            {
                "provider": oauth_provider.name,
                "redirect_uri": redirect_uri,
                "client": client,
                "client_nonce": client_nonce,
                "pkce_verifier": pkce.code_verifier,
                "sign_in_client_version": request.headers.get(VERSION_HEADER),
            }
        )
        state = json.dumps({"state": token, "client": client, "provider": oauth_provider.name})
        return {"url": oauth_provider.authorization_url(state, self.oauth_callback_uri, pkce)}

    @staticmethod
    def _state_token(state: str) -> str:
        try:
            parsed = json.loads(state)
        except ValueError as e:
            raise InvalidOAuthCallbackState() from e
        token = parsed.get("state") if isinstance(parsed, dict) else None
        if not isinstance(token, str) or not OAuthStateManager.is_valid_state(token):
            raise InvalidOAuthCallbackState()
        return token

    def _user_for_identity(self, provider: str, identity) -> User:
        user = self.store.get_user_by_provider(provider, identity.provider_account_id)
        if user is not None:
            return user
        email = normalize_email(identity.email)
        user = self.store.get_user_by_email(email, with_disabled=True)
        if user is not None and user.disabled:
            raise WrongSignInCredentials(email)
        if user is None:
            if not self.settings.allow_signup:
                raise SignUpForbidden()
            user = self.store.fulfill_user(
                email, name=identity.name, avatar_url=identity.avatar_url
            )
            logger.info("oauth_user_created", user_id=user.id, provider=provider)
        self.store.link_user_auth_provider(user.id, provider, identity.provider_account_id)
        return user

    async def oauth_callback(
        self,
        request: Request,
        response: Response,
        *,
        code: Optional[str],
        state: Optional[str],
        client_nonce: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not code:
            raise MissingOAuthQueryParameter("code")
        if not state:
            raise MissingOAuthQueryParameter("state")

        token = self._state_token(state)
        payload = await self.oauth_states.consume_oauth_state(token)
        if payload is None:
            raise OAuthStateExpired()

        provider = self.oauth_providers.get(payload.get("provider"))
        if provider is None:
            raise UnknownOAuthProvider(payload.get("provider"))

        expected_nonce = payload.get("client_nonce")
        if expected_nonce and not constant_time_equal(expected_nonce, client_nonce or ""):
            OAUTH_CALLBACKS.labels(provider=provider.name, result="nonce_mismatch").inc()
            logger.warning("oauth_nonce_mismatch", provider=provider.name)
            raise InvalidAuthState()

        try:
            identity = await provider.exchange(
                code, self.oauth_callback_uri, payload.get("pkce_verifier")
            )
        except OAuthExchangeFailed:
            OAUTH_CALLBACKS.labels(provider=provider.name, result="exchange_failed").inc()
            raise

        user = self._user_for_identity(provider.name, identity)
        self.cookies.set_cookies(
            request, response, user.id, client_version=payload.get("sign_in_client_version")
        )
        OAUTH_CALLBACKS.labels(provider=provider.name, result="ok").inc()
        logger.info("oauth_sign_in", user_id=user.id, provider=provider.name)
        return {"id": user.id, "redirect_uri": payload.get("redirect_uri")}
