from __future__ import annotations

import secrets
import threading
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tenantauth.logging import get_logger
from tenantauth.storage.errors import ConstraintViolation, RecordNotFound
from tenantauth.storage.models import (
    AccessToken,
    ConnectedAccount,
    Session,
    User,
    UserSession,
    VerificationToken,
    utcnow,
)

ADMIN_FEATURE = "administrator"


class AuthStore(Protocol):
    """Data-access contract the auth services depend on.

    ``MemoryStore`` is the in-process implementation; a relational store only
    has to provide the same methods.
    """

    def create_user(self, email: str, **kwargs) -> User: ...
    def get_user(self, user_id: str, *, with_disabled: bool = False) -> Optional[User]: ...
    def get_user_by_email(self, email: str, *, with_disabled: bool = False) -> Optional[User]: ...
    def update_user(self, user_id: str, **fields) -> User: ...
    def fulfill_user(self, email: str, **fields) -> User: ...
    def has_password(self, user_id: str) -> bool: ...
    def set_password(self, user_id: str, password: str) -> None: ...
    def verify_password(self, user_id: str, password: str) -> bool: ...
    def is_admin(self, user_id: str) -> bool: ...
    def create_session(self) -> Session: ...
    def get_session(self, session_id: str) -> Optional[Session]: ...
    def delete_session(self, session_id: str) -> int: ...
    def find_user_sessions(self, session_id: str) -> List[UserSession]: ...
    def upsert_user_session(
        self, session_id: str, user_id: str, ttl_seconds: int, client_version: Optional[str] = None
    ) -> UserSession: ...
    def update_user_session(
        self, user_session_id: str, *, expires_at: datetime, refresh_client_version: Optional[str] = None
    ) -> Optional[UserSession]: ...
    def delete_user_sessions(self, user_id: str, session_id: Optional[str] = None) -> int: ...
    def create_verification_token(
        self, token_type: str, credential: Optional[str], ttl_seconds: int
    ) -> str: ...
    def verify_verification_token(
        self, token_type: str, token: str, credential: Optional[str] = None
    ) -> Optional[VerificationToken]: ...
    def get_access_token(self, token: str) -> Optional[AccessToken]: ...


class MemoryStore:
    """In-memory implementation of the auth data-access contract.

    All reads and writes go through one ``RLock``; expiry is checked lazily on
    read against ``clock``.
    """

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.logger = get_logger(__name__)
        self.clock = clock
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.features: Dict[str, set[str]] = {}
        self.providers: List[ConnectedAccount] = []
        self.sessions: Dict[str, Session] = {}
        self.user_sessions: Dict[str, UserSession] = {}
        self.verification_tokens: Dict[tuple[str, str], VerificationToken] = {}
        self.access_tokens: Dict[str, AccessToken] = {}
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # RLock so helpers can be called from inside locked sections
        self._data_lock = threading.RLock()

    # users
    def create_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        password: Optional[str] = None,
        registered: bool = True,
        email_verified: bool = False,
        avatar_url: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            if self._find_by_email(email) is not None:
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email.strip().lower(),
                name=name or email.split("@", 1)[0],
                avatar_url=avatar_url,
                email_verified_at=self.clock() if email_verified else None,
                registered=registered,
                created_at=self.clock(),
            )
            self.users[user.id] = user
            if password:
                self.set_password(user.id, password)
            return user

    def _find_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        return next((u for u in self.users.values() if u.email == normalized), None)

    def get_user(self, user_id: str, *, with_disabled: bool = False) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None or (user.disabled and not with_disabled):
                return None
            return user

    def get_user_by_email(
        self, email: str, *, with_disabled: bool = False
    ) -> Optional[User]:
        with self._data_lock:
            user = self._find_by_email(email)
            if user is None or (user.disabled and not with_disabled):
                return None
            return user

    def update_user(self, user_id: str, **fields) -> User:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                raise RecordNotFound("user not found", {"user_id": user_id})
            if "email" in fields:
                email = fields["email"].strip().lower()
                existing = self._find_by_email(email)
                if existing is not None and existing.id != user_id:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                fields["email"] = email
            for key, value in fields.items():
                if not hasattr(user, key):
                    raise ValueError(f"unknown user field {key}")
                setattr(user, key, value)
            return user

    def fulfill_user(self, email: str, **fields) -> User:
        """Return the account for ``email``, creating or registering it if needed.

        Reaching this point proves control of the address, so the email is
        marked verified.
        """
        with self._data_lock:
            user = self._find_by_email(email)
            if user is None:
                return self.create_user(email, email_verified=True, **fields)
            updates = {k: v for k, v in fields.items() if v is not None}
            if not user.registered:
                updates["registered"] = True
            if user.email_verified_at is None:
                updates["email_verified_at"] = self.clock()
            if updates:
                self.update_user(user.id, **updates)
            return user

    def has_password(self, user_id: str) -> bool:
        with self._data_lock:
            return user_id in self.credentials

    def set_password(self, user_id: str, password: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise RecordNotFound("user not found for credentials", {"user_id": user_id})
            self.credentials[user_id] = (self._pwd_hasher.hash(password), "argon2id")

    def verify_password(self, user_id: str, password: str) -> bool:
        with self._data_lock:
            record = self.credentials.get(user_id)
        if not record:
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False
        if self._pwd_hasher.check_needs_rehash(stored_hash):
            self.set_password(user_id, password)
        return True

    def add_feature(self, user_id: str, feature: str) -> None:
        with self._data_lock:
            self.features.setdefault(user_id, set()).add(feature)

    def remove_feature(self, user_id: str, feature: str) -> None:
        with self._data_lock:
            self.features.get(user_id, set()).discard(feature)

    def is_admin(self, user_id: str) -> bool:
        with self._data_lock:
            return ADMIN_FEATURE in self.features.get(user_id, set())

    def link_user_auth_provider(
        self, user_id: str, provider: str, provider_account_id: str
    ) -> ConnectedAccount:
        with self._data_lock:
            for existing in self.providers:
                if (
                    existing.provider == provider
                    and existing.provider_account_id == provider_account_id
                ):
                    if existing.user_id != user_id:
                        raise ConstraintViolation(
                            "provider account linked to another user",
                            {"provider": provider},
                        )
                    return existing
            account = ConnectedAccount(
                id=len(self.providers) + 1,
                user_id=user_id,
                provider=provider,
                provider_account_id=provider_account_id,
                created_at=self.clock(),
            )
            self.providers.append(account)
            return account

    def get_user_by_provider(
        self, provider: str, provider_account_id: str
    ) -> Optional[User]:
        with self._data_lock:
            for account in self.providers:
                if (
                    account.provider == provider
                    and account.provider_account_id == provider_account_id
                ):
                    return self.get_user(account.user_id)
            return None

    # sessions
    def create_session(self) -> Session:
        with self._data_lock:
            sess = Session.new()
            sess.created_at = self.clock()
            self.sessions[sess.id] = sess
            return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def delete_session(self, session_id: str) -> int:
        """Delete a session and cascade its bindings; returns bindings removed."""
        with self._data_lock:
            self.sessions.pop(session_id, None)
            stale = [
                us_id
                for us_id, us in self.user_sessions.items()
                if us.session_id == session_id
            ]
            for us_id in stale:
                self.user_sessions.pop(us_id, None)
            return len(stale)

    def find_user_sessions(self, session_id: str) -> List[UserSession]:
        """Live bindings of a session, oldest first.

        Expired bindings and bindings of disabled or deleted users are skipped.
        """
        now = self.clock()
        with self._data_lock:
            if session_id not in self.sessions:
                return []
            bindings = []
            for us in list(self.user_sessions.values()):
                if us.session_id != session_id:
                    continue
                if us.is_expired(now):
                    self.user_sessions.pop(us.id, None)
                    continue
                if self.get_user(us.user_id) is None:
                    continue
                bindings.append(us)
            return sorted(bindings, key=lambda us: us.created_at)

    def upsert_user_session(
        self,
        session_id: str,
        user_id: str,
        ttl_seconds: int,
        client_version: Optional[str] = None,
    ) -> UserSession:
        now = self.clock()
        with self._data_lock:
            if session_id not in self.sessions:
                raise RecordNotFound("session not found", {"session_id": session_id})
            if user_id not in self.users:
                raise RecordNotFound("user not found", {"user_id": user_id})
            for us in self.user_sessions.values():
                if us.session_id == session_id and us.user_id == user_id:
                    us.expires_at = now + timedelta(seconds=ttl_seconds)
                    us.ttl_seconds = ttl_seconds
                    if client_version:
                        us.sign_in_client_version = client_version
                    return us
            us = UserSession.new(
                session_id, user_id, ttl_seconds, client_version=client_version, now=now
            )
            # keep creation order strict when the clock does not advance
            latest = max((b.created_at for b in self.user_sessions.values()), default=None)
            if latest is not None and us.created_at <= latest:
                us.created_at = latest + timedelta(microseconds=1)
            self.user_sessions[us.id] = us
            return us

    def update_user_session(
        self,
        user_session_id: str,
        *,
        expires_at: datetime,
        refresh_client_version: Optional[str] = None,
    ) -> Optional[UserSession]:
        with self._data_lock:
            us = self.user_sessions.get(user_session_id)
            if us is None:
                return None
            us.expires_at = expires_at
            if refresh_client_version:
                us.refresh_client_version = refresh_client_version
            return us

    def delete_user_sessions(self, user_id: str, session_id: Optional[str] = None) -> int:
        with self._data_lock:
            stale = [
                us_id
                for us_id, us in self.user_sessions.items()
                if us.user_id == user_id
                and (session_id is None or us.session_id == session_id)
            ]
            for us_id in stale:
                self.user_sessions.pop(us_id, None)
            return len(stale)

    # verification tokens
    def create_verification_token(
        self, token_type: str, credential: Optional[str], ttl_seconds: int
    ) -> str:
        token = str(uuid.uuid4())
        with self._data_lock:
            self.verification_tokens[(token_type, token)] = VerificationToken(
                token=token,
                type=token_type,
                credential=credential,
                expires_at=self.clock() + timedelta(seconds=ttl_seconds),
            )
        return token

    def get_verification_token(
        self, token_type: str, token: str, *, keep: bool = False
    ) -> Optional[VerificationToken]:
        with self._data_lock:
            key = (token_type, token)
            record = self.verification_tokens.get(key)
            if record is None:
                return None
            if not keep or record.expires_at <= self.clock():
                self.verification_tokens.pop(key, None)
            if record.expires_at <= self.clock():
                return None
            return record

    def verify_verification_token(
        self, token_type: str, token: str, credential: Optional[str] = None
    ) -> Optional[VerificationToken]:
        """Consume a token; ``None`` when missing, expired or bound elsewhere."""
        with self._data_lock:
            record = self.get_verification_token(token_type, token, keep=True)
            if record is None:
                return None
            if record.credential and record.credential != credential:
                return None
            self.verification_tokens.pop((token_type, token), None)
            return record

    # access tokens
    def create_access_token(
        self, user_id: str, name: str, *, ttl_seconds: Optional[int] = None
    ) -> AccessToken:
        with self._data_lock:
            if user_id not in self.users:
                raise RecordNotFound("user not found", {"user_id": user_id})
            now = self.clock()
            record = AccessToken(
                id=str(uuid.uuid4()),
                user_id=user_id,
                name=name,
                token="ut_" + secrets.token_urlsafe(32),
                created_at=now,
                expires_at=now + timedelta(seconds=ttl_seconds) if ttl_seconds else None,
            )
            self.access_tokens[record.token] = record
            return record

    def get_access_token(self, token: str) -> Optional[AccessToken]:
        with self._data_lock:
            record = self.access_tokens.get(token)
            if record is None:
                return None
            if record.expires_at is not None and record.expires_at <= self.clock():
                self.access_tokens.pop(token, None)
                return None
            return record


__all__ = ["ADMIN_FEATURE", "AuthStore", "MemoryStore"]
