from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional

from tenantauth.logging import get_logger
from tenantauth.metrics import MAGIC_LINK_ATTEMPTS
from tenantauth.service.tokens import constant_time_equal, sha256_hex
from tenantauth.storage.redis_cache import EphemeralStore

MAGIC_LINK_MAX_ATTEMPTS = 10

_OTP_PREFIX = "MAGIC_LINK_OTP"
_ATTEMPTS_PREFIX = "MAGIC_LINK_OTP_ATTEMPTS"


@dataclass(frozen=True)
class ConsumeResult:
    ok: bool
    token: Optional[str] = None
    reason: Optional[Literal["bad_otp", "nonce_mismatch"]] = None


class MagicLinkOtpManager:
    """One pending sign-in code per email address.

    The code itself is never stored, only its sha256. A nonce recorded at
    issuance pins consumption to the device that started the flow.
    """

    def __init__(self, cache: EphemeralStore, *, ttl_seconds: int) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.logger = get_logger(__name__)

    @staticmethod
    def _key(email: str) -> str:
        return f"{_OTP_PREFIX}:{email.strip().lower()}"

    @staticmethod
    def _attempts_key(email: str) -> str:
        return f"{_ATTEMPTS_PREFIX}:{email.strip().lower()}"

    async def upsert(
        self, email: str, otp: str, token: str, client_nonce: Optional[str] = None
    ) -> None:
        """Store a new code for ``email``, replacing any pending one."""
        record = {
            "otp_hash": sha256_hex(otp),
            "token": token,
            "client_nonce": client_nonce or None,
        }
        await self.cache.set(self._key(email), record, self.ttl_seconds)
        await self.cache.delete(self._attempts_key(email))

    async def consume(
        self, email: str, otp: str, client_nonce: Optional[str] = None
    ) -> ConsumeResult:
        key = self._key(email)
        record = await self.cache.get(key)
        if not isinstance(record, dict):
            MAGIC_LINK_ATTEMPTS.labels(result="missing").inc()
            return ConsumeResult(ok=False, reason="bad_otp")

        attempts = await self.cache.get(self._attempts_key(email)) or 0
        if int(attempts) >= MAGIC_LINK_MAX_ATTEMPTS:
            MAGIC_LINK_ATTEMPTS.labels(result="locked").inc()
            self.logger.warning("magic_link_locked", attempts=attempts)
            return ConsumeResult(ok=False, reason="bad_otp")

        expected_nonce = record.get("client_nonce")
        if expected_nonce and not constant_time_equal(expected_nonce, client_nonce or ""):
            MAGIC_LINK_ATTEMPTS.labels(result="nonce_mismatch").inc()
            return ConsumeResult(ok=False, reason="nonce_mismatch")

        if not constant_time_equal(record.get("otp_hash", ""), sha256_hex(otp)):
            count = await self.cache.increment(self._attempts_key(email), self.ttl_seconds)
            MAGIC_LINK_ATTEMPTS.labels(result="bad_otp").inc()
            self.logger.info("magic_link_bad_otp", attempts=count)
            return ConsumeResult(ok=False, reason="bad_otp")

        consumed = await self.cache.pop(key)
        if not isinstance(consumed, dict):
            # a concurrent consumer won
            MAGIC_LINK_ATTEMPTS.labels(result="raced").inc()
            return ConsumeResult(ok=False, reason="bad_otp")
        if consumed.get("otp_hash") != record["otp_hash"]:
            # re-issued in between; put the newer code back
            await self.cache.set(key, consumed, self.ttl_seconds)
            MAGIC_LINK_ATTEMPTS.labels(result="raced").inc()
            return ConsumeResult(ok=False, reason="bad_otp")
        await self.cache.delete(self._attempts_key(email))
        MAGIC_LINK_ATTEMPTS.labels(result="ok").inc()
        return ConsumeResult(ok=True, token=consumed["token"])
