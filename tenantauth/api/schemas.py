from __future__ import annotations

import re
import unicodedata
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tenantauth.logging import get_correlation_id

MAX_EMAIL_LENGTH = 320
MAX_URL_LENGTH = 2048
MAX_NONCE_LENGTH = 256

_ERROR_CODE = re.compile(r"^[A-Z][A-Z0-9_]*$")

# zero-width and bidi override characters
_INVISIBLE = frozenset(
    ["\u200b", "\u200c", "\u200d", "\ufeff"]
    + [chr(c) for c in range(0x202A, 0x202F)]
    + [chr(c) for c in range(0x2066, 0x206A)]
)


def _normalize_text(value: Optional[str]) -> Optional[str]:
    """NFKC-normalize and drop characters that can spoof an address."""
    if value is None:
        return None
    cleaned = "".join(c for c in value if c not in _INVISIBLE)
    return unicodedata.normalize("NFKC", cleaned).strip()


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error payload; ``code`` is the stable upper-case error identifier."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if not _ERROR_CODE.match(value):
            raise ValueError(f"Invalid error code '{value}'")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class _EmailRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: Optional[str] = Field(default=None, max_length=MAX_EMAIL_LENGTH)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_text(value)


class PreflightRequest(_EmailRequest):
    pass


class SignInRequest(_EmailRequest):
    email: str = Field(..., max_length=MAX_EMAIL_LENGTH)
    password: Optional[str] = Field(default=None, max_length=1024)
    callback_url: Optional[str] = Field(default=None, max_length=MAX_URL_LENGTH)
    client_nonce: Optional[str] = Field(default=None, max_length=MAX_NONCE_LENGTH)
    admin_step_up: bool = False


class MagicLinkRequest(_EmailRequest):
    token: Optional[str] = Field(default=None, max_length=64)
    client_nonce: Optional[str] = Field(default=None, max_length=MAX_NONCE_LENGTH)


class AdminMfaVerifyRequest(BaseModel):
    ticket: Optional[str] = Field(default=None, max_length=256)
    otp: Optional[str] = Field(default=None, max_length=16)


class AdminMfaResendRequest(BaseModel):
    ticket: Optional[str] = Field(default=None, max_length=256)


class OpenAppSignInRequest(BaseModel):
    code: Optional[str] = Field(default=None, max_length=256)


class OAuthPreflightRequest(BaseModel):
    provider: Optional[str] = Field(default=None, max_length=64)
    client_nonce: Optional[str] = Field(default=None, max_length=MAX_NONCE_LENGTH)
    redirect_uri: Optional[str] = Field(default=None, max_length=MAX_URL_LENGTH)
    client: Optional[str] = Field(default=None, max_length=64)


class OAuthCallbackRequest(BaseModel):
    code: Optional[str] = Field(default=None, max_length=4096)
    state: Optional[str] = Field(default=None, max_length=4096)
    client_nonce: Optional[str] = Field(default=None, max_length=MAX_NONCE_LENGTH)
