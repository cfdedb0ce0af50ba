from __future__ import annotations

import base64
import hashlib
import hmac
import secrets


def generate_otp(digits: int = 6) -> str:
    """Random zero-padded decimal code."""
    return f"{secrets.randbelow(10 ** digits):0{digits}d}"


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def constant_time_equal(left: str, right: str) -> bool:
    return hmac.compare_digest(left.encode("utf-8"), right.encode("utf-8"))


def random_urlsafe(nbytes: int) -> str:
    """Unpadded base64url encoding of ``nbytes`` random bytes."""
    return base64.urlsafe_b64encode(secrets.token_bytes(nbytes)).rstrip(b"=").decode("ascii")


def pkce_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
