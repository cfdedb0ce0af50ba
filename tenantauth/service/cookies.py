from __future__ import annotations

import secrets
import uuid
from datetime import datetime
from typing import Optional, Tuple

from starlette.requests import Request
from starlette.responses import Response

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.errors import ActionForbidden
from tenantauth.service.sessions import SessionService, SessionUser
from tenantauth.storage.models import UserSession

CSRF_HEADER = "x-affine-csrf-token"
USER_ID_HEADER = "affine-user-id"


def bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


class CookieIssuer:
    """Writes the session, CSRF and active-user cookies.

    The session cookie is httpOnly. The CSRF and user cookies are readable by
    the client; the user cookie is only a hint and is always checked against
    the session's bindings.
    """

    def __init__(self, settings: Settings, sessions: SessionService) -> None:
        self.settings = settings
        self.sessions = sessions
        self.logger = get_logger(__name__)

    @property
    def session_cookie(self) -> str:
        return self.settings.session_cookie_name

    @property
    def user_cookie(self) -> str:
        return self.settings.user_cookie_name

    @property
    def csrf_cookie(self) -> str:
        return self.settings.csrf_cookie_name

    def _set(
        self,
        response: Response,
        name: str,
        value: str,
        *,
        httponly: bool,
        expires: Optional[datetime] = None,
    ) -> None:
        response.set_cookie(
            name,
            value,
            expires=expires,
            path="/",
            secure=self.settings.server_https,
            httponly=httponly,
            samesite="lax",
        )

    def _set_csrf(self, response: Response, expires: Optional[datetime]) -> None:
        self._set(response, self.csrf_cookie, str(uuid.uuid4()), httponly=False, expires=expires)

    def set_user_cookie(self, response: Response, user_id: str) -> None:
        self._set(response, self.user_cookie, user_id, httponly=False)

    def clear_cookies(self, response: Response) -> None:
        for name in (self.session_cookie, self.user_cookie, self.csrf_cookie):
            response.delete_cookie(
                name, path="/", secure=self.settings.server_https, samesite="lax"
            )

    def set_cookies(
        self,
        request: Request,
        response: Response,
        user_id: str,
        *,
        client_version: Optional[str] = None,
        ttl: Optional[int] = None,
    ) -> UserSession:
        """Bind ``user_id`` and write all three cookies.

        The incoming session cookie is kept only when it still carries a live
        binding; otherwise a fresh session id is minted.
        """
        current = request.cookies.get(self.session_cookie)
        user_session = self.sessions.create_user_session(
            user_id, current, ttl=ttl, client_version=client_version
        )
        expires = user_session.expires_at
        self._set(
            response, self.session_cookie, user_session.session_id, httponly=True, expires=expires
        )
        self._set_csrf(response, expires)
        self.set_user_cookie(response, user_id)
        return user_session

    def refresh_cookies(self, response: Response, session_id: Optional[str] = None) -> None:
        """Point the user cookie at the newest remaining account, or clear everything."""
        if session_id:
            users = self.sessions.get_users(session_id)
            if users:
                self.set_user_cookie(response, users[-1].id)
                return
        self.clear_cookies(response)

    def write_refreshed_session(
        self, response: Response, session_id: str, expires_at: datetime
    ) -> None:
        self._set(response, self.session_cookie, session_id, httponly=True, expires=expires_at)
        self._set_csrf(response, expires_at)

    def session_options(self, request: Request) -> Tuple[Optional[str], Optional[str], bool]:
        """``(session_id, user_id, from_cookie)`` as carried by the request."""
        session_id = request.cookies.get(self.session_cookie)
        from_cookie = bool(session_id)
        if not session_id:
            session_id = bearer_token(request)
        user_id = request.cookies.get(self.user_cookie) or request.headers.get(USER_ID_HEADER)
        return session_id, user_id, from_cookie

    def get_user_session_from_request(
        self, request: Request, response: Optional[Response] = None
    ) -> Optional[SessionUser]:
        session_id, user_id, from_cookie = self.session_options(request)
        if not session_id:
            return None
        resolved = self.sessions.get_user_session(session_id, user_id)
        if response is not None:
            if resolved is not None:
                if user_id != resolved.user.id:
                    self.set_user_cookie(response, resolved.user.id)
            elif from_cookie:
                self.clear_cookies(response)
        return resolved

    def check_sign_out_csrf(self, request: Request) -> None:
        """Raise ``ActionForbidden`` unless the CSRF header passes the configured mode.

        Strict mode needs cookie and header present and equal. Compat mode
        only rejects a header that is present and differs.
        """
        cookie = request.cookies.get(self.csrf_cookie)
        header = request.headers.get(CSRF_HEADER)
        matched = bool(cookie) and bool(header) and secrets.compare_digest(cookie, header)
        if self.settings.csrf_strict_sign_out and not matched:
            self.logger.warning(
                "sign_out_csrf_rejected",
                mode="strict",
                has_cookie=bool(cookie),
                has_header=bool(header),
            )
            raise ActionForbidden()
        if not self.settings.csrf_strict_sign_out and header and not matched:
            self.logger.warning(
                "sign_out_csrf_rejected",
                mode="compat",
                has_cookie=bool(cookie),
                has_header=True,
            )
            raise ActionForbidden()
