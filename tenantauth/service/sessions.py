from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.metrics import SESSIONS_REVOKED
from tenantauth.storage.memory import AuthStore
from tenantauth.storage.models import Session, User, UserSession, utcnow


@dataclass
class SessionUser:
    """A resolved request identity: the user and the binding that carried it."""

    user: User
    session: UserSession

    @property
    def session_id(self) -> str:
        return self.session.session_id


class SessionService:
    """Owns ``Session`` and ``UserSession`` records.

    A browser session can hold several signed-in users. Each binding has its
    own sliding expiry; the session itself only lives as long as something
    references it.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock
        self.logger = get_logger(__name__)

    def create_session(self) -> Session:
        return self.store.create_session()

    def get_user_sessions(self, session_id: str) -> List[UserSession]:
        return self.store.find_user_sessions(session_id)

    def create_user_session(
        self,
        user_id: str,
        session_id: Optional[str] = None,
        *,
        ttl: Optional[int] = None,
        client_version: Optional[str] = None,
    ) -> UserSession:
        """Bind ``user_id`` into a session.

        ``session_id`` is reused only while it still holds a live binding, so
        a planted or expired id never becomes the victim's session.
        """
        if not session_id or not self.store.find_user_sessions(session_id):
            if session_id:
                self.logger.info("session_not_reused", reason="no_live_binding")
            session_id = self.store.create_session().id
        return self.store.upsert_user_session(
            session_id,
            user_id,
            ttl or self.settings.session_ttl_seconds,
            client_version,
        )

    def get_user_session(
        self, session_id: str, user_id: Optional[str] = None
    ) -> Optional[SessionUser]:
        """Resolve the active user of a session.

        Prefers the binding for ``user_id``; otherwise the most recently
        created one.
        """
        bindings = self.store.find_user_sessions(session_id)
        if not bindings:
            return None
        binding = None
        if user_id:
            binding = next((b for b in bindings if b.user_id == user_id), None)
        if binding is None:
            binding = bindings[-1]
        user = self.store.get_user(binding.user_id)
        if user is None:
            return None
        return SessionUser(user=user, session=binding)

    def get_users(self, session_id: str) -> List[User]:
        users = []
        for binding in self.store.find_user_sessions(session_id):
            user = self.store.get_user(binding.user_id)
            if user is not None:
                users.append(user)
        return users

    def sign_out(self, session_id: str, user_id: Optional[str] = None) -> List[UserSession]:
        """Remove one binding, or the whole session; returns what remains."""
        if user_id:
            self.store.delete_user_sessions(user_id, session_id)
            remaining = self.store.find_user_sessions(session_id)
            if not remaining:
                self.store.delete_session(session_id)
            self.logger.info("user_signed_out", user_id=user_id, remaining=len(remaining))
            return remaining
        removed = self.store.delete_session(session_id)
        self.logger.info("session_signed_out", removed=removed)
        return []

    def refresh_user_session_if_needed(
        self,
        user_session: UserSession,
        *,
        ttr: Optional[int] = None,
        client_version: Optional[str] = None,
    ) -> Optional[datetime]:
        """Slide the binding's expiry once its remaining lifetime drops below ``ttr``.

        The expiry slides by the lifetime the binding was issued with, so a
        short administrator binding never grows into a regular one. The default
        threshold is capped at half that lifetime.

        Returns the new expiry, or ``None`` when nothing was written.
        """
        if user_session.expires_at is None:
            return None
        now = self.clock()
        ttl = user_session.ttl_seconds or self.settings.session_ttl_seconds
        if ttr is None:
            ttr = min(self.settings.session_ttr_seconds, ttl // 2)
        if user_session.expires_at - now > timedelta(seconds=ttr):
            return None
        new_expiry = now + timedelta(seconds=ttl)
        updated = self.store.update_user_session(
            user_session.id,
            expires_at=new_expiry,
            refresh_client_version=client_version,
        )
        if updated is None:
            return None
        self.logger.debug("user_session_refreshed", user_id=user_session.user_id)
        return new_expiry

    def on_user_disabled(self, user: User) -> int:
        """Revoke every binding of a user that was just disabled."""
        count = self.store.delete_user_sessions(user.id)
        SESSIONS_REVOKED.inc(count)
        self.logger.info("user_sessions_revoked", user_id=user.id, count=count)
        return count
