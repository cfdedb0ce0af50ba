from __future__ import annotations

import re
import unicodedata

from tenantauth.logging import get_logger
from tenantauth.service.errors import (
    InvalidEmail,
    WrongSignInCredentials,
    WrongSignInMethod,
)
from tenantauth.storage.memory import AuthStore
from tenantauth.storage.models import User, utcnow

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def normalize_email(value: str) -> str:
    """NFKC-normalise, lower-case and syntax-check an address.

    Raises ``InvalidEmail`` for anything that is not a plausible mailbox.
    """
    if not isinstance(value, str):
        raise InvalidEmail(str(value))
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if not 3 <= len(normalized) <= 254:
        raise InvalidEmail(value)
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise InvalidEmail(value)
    if not _EMAIL_LOCAL_PART.match(local):
        raise InvalidEmail(value)
    labels = domain.split(".")
    if len(labels) < 2:
        raise InvalidEmail(value)
    for label in labels:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise InvalidEmail(value)
    return normalized


class CredentialVerifier:
    """Checks email/password pairs against the store.

    Unknown users, wrong passwords and disabled accounts all raise the same
    ``WrongSignInCredentials`` so responses do not reveal which accounts
    exist. Hashing lives in the store.
    """

    def __init__(self, store: AuthStore) -> None:
        self.store = store
        self.logger = get_logger(__name__)

    def sign_in(self, email: str, password: str) -> User:
        normalized = normalize_email(email)
        user = self.store.get_user_by_email(normalized, with_disabled=True)
        if user is None:
            self.logger.info("sign_in_unknown_user")
            raise WrongSignInCredentials(normalized)
        if user.disabled:
            self.logger.warning("sign_in_disabled_user", user_id=user.id)
            raise WrongSignInCredentials(normalized)
        if not self.store.has_password(user.id):
            raise WrongSignInMethod()
        if not self.store.verify_password(user.id, password):
            self.logger.warning("password_verification_failed", user_id=user.id)
            raise WrongSignInCredentials(normalized)
        return user

    def change_password(self, user_id: str, new_password: str) -> None:
        self.store.set_password(user_id, new_password)
        self.logger.info("password_changed", user_id=user_id)

    def change_email(self, user_id: str, new_email: str) -> User:
        user = self.store.update_user(user_id, email=normalize_email(new_email))
        self.logger.info("email_changed", user_id=user_id)
        return user

    def set_email_verified(self, user_id: str) -> User:
        user = self.store.get_user(user_id, with_disabled=True)
        if user is not None and user.email_verified:
            return user
        return self.store.update_user(user_id, email_verified_at=utcnow())
