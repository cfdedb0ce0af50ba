from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Iterable, Optional

from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.version import InvalidVersion, Version
from starlette.requests import Request
from starlette.responses import Response

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.cookies import CookieIssuer, bearer_token
from tenantauth.service.errors import (
    ActionForbidden,
    AuthenticationRequired,
    UnsupportedClientVersion,
)
from tenantauth.service.sessions import SessionService
from tenantauth.storage.memory import AuthStore
from tenantauth.storage.models import AccessToken, User, UserSession

VERSION_HEADER = "x-affine-version"
# Clients older than this can never hold a session, whatever the configured range.
HARD_MIN_CLIENT_VERSION = ">=0.25.0"

logger = get_logger(__name__)


class Capability(str, enum.Enum):
    PUBLIC = "public"
    VERSION = "version"
    ADMIN = "admin"


@dataclass
class CurrentUser:
    user: User
    session: Optional[UserSession] = None
    access_token: Optional[AccessToken] = None

    @property
    def id(self) -> str:
        return self.user.id

    @property
    def session_id(self) -> Optional[str]:
        return self.session.session_id if self.session else None


def _matches(version: Version, requirement: str) -> bool:
    try:
        specifier = SpecifierSet(requirement)
    except InvalidSpecifier:
        logger.warning("client_version_requirement_invalid", requirement=requirement)
        return True
    return specifier.contains(version, prereleases=True)


def check_client_version(version: Optional[str], requirement: str) -> bool:
    """True when ``version`` satisfies ``requirement`` and the hard floor."""
    if not version:
        return False
    try:
        parsed = Version(version)
    except InvalidVersion:
        return False
    return _matches(parsed, requirement) and _matches(parsed, HARD_MIN_CLIENT_VERSION)


class AuthGuard:
    """Resolves who is calling and enforces route capabilities.

    Resolution order: session (cookie, else bearer session id), then
    personal access token. A session whose client version falls outside the
    supported range is signed out before anything else happens.
    """

    def __init__(
        self,
        settings: Settings,
        store: AuthStore,
        sessions: SessionService,
        cookies: CookieIssuer,
    ) -> None:
        self.settings = settings
        self.store = store
        self.sessions = sessions
        self.cookies = cookies

    def _reject_version(self, version: Optional[str]) -> UnsupportedClientVersion:
        return UnsupportedClientVersion(
            client_version=version,
            required_version=self.settings.client_version_requirement,
        )

    def _sign_in_with_cookie(
        self, request: Request, response: Response, *, public: bool
    ) -> Optional[CurrentUser]:
        resolved = self.cookies.get_user_session_from_request(request, response)
        if resolved is None:
            return None
        header_version = request.headers.get(VERSION_HEADER)

        if self.settings.client_version_control_enabled:
            version = (
                header_version
                or resolved.session.refresh_client_version
                or resolved.session.sign_in_client_version
            )
            if not check_client_version(version, self.settings.client_version_requirement):
                logger.warning(
                    "client_version_rejected",
                    user_id=resolved.user.id,
                    client_version=version,
                )
                self.sessions.sign_out(resolved.session_id)
                self.cookies.refresh_cookies(response, resolved.session_id)
                if public:
                    return None
                raise self._reject_version(version)

        new_expiry = self.sessions.refresh_user_session_if_needed(
            resolved.session, client_version=header_version
        )
        if new_expiry is not None:
            self.cookies.write_refreshed_session(response, resolved.session_id, new_expiry)
        return CurrentUser(user=resolved.user, session=resolved.session)

    def _sign_in_with_access_token(self, request: Request) -> Optional[CurrentUser]:
        token = bearer_token(request)
        if not token:
            return None
        access_token = self.store.get_access_token(token)
        if access_token is None:
            return None
        user = self.store.get_user(access_token.user_id)
        if user is None:
            return None
        return CurrentUser(user=user, access_token=access_token)

    def authenticate(
        self,
        request: Request,
        response: Response,
        capabilities: Iterable[Capability] = (),
    ) -> Optional[CurrentUser]:
        capabilities = set(capabilities)
        public = Capability.PUBLIC in capabilities

        if Capability.VERSION in capabilities and self.settings.client_version_control_enabled:
            header_version = request.headers.get(VERSION_HEADER)
            if header_version and not check_client_version(
                header_version, self.settings.client_version_requirement
            ):
                raise self._reject_version(header_version)

        current = self._sign_in_with_cookie(request, response, public=public)
        if current is None:
            current = self._sign_in_with_access_token(request)

        if current is None:
            if public:
                return None
            raise AuthenticationRequired()

        if Capability.ADMIN in capabilities and not self.store.is_admin(current.id):
            logger.warning("admin_capability_denied", user_id=current.id)
            raise ActionForbidden()
        return current
