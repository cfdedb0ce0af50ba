from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Literal, Optional
from urllib.parse import urlencode

from starlette.requests import Request

from tenantauth.logging import get_logger
from tenantauth.metrics import ADMIN_MFA_EVENTS
from tenantauth.service.email import EmailService
from tenantauth.service.tokens import (
    constant_time_equal,
    generate_otp,
    random_urlsafe,
    sha256_hex,
)
from tenantauth.storage.memory import AuthStore
from tenantauth.storage.models import User
from tenantauth.storage.redis_cache import EphemeralStore

MAX_ADMIN_MFA_ATTEMPTS = 5

CHALLENGE_PREFIX = "ADMIN_MFA_CHALLENGE"
ATTEMPTS_PREFIX = "ADMIN_MFA_ATTEMPTS"
STEP_UP_PREFIX = "ADMIN_STEP_UP_SESSION"
TRUSTED_DEVICE_PREFIX = "ADMIN_TRUSTED_DEVICE"

RiskLevel = Literal["low", "elevated"]
FailureReason = Literal["missing", "fingerprint_mismatch", "bad_otp", "locked", "forbidden"]


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else ""


def device_fingerprint(ip: str, user_agent: str) -> str:
    return sha256_hex(f"{ip}|{user_agent}")


def request_fingerprint(request: Request) -> str:
    return device_fingerprint(client_ip(request), request.headers.get("user-agent", ""))


@dataclass(frozen=True)
class MfaChallenge:
    ticket: str
    email: str
    risk_level: RiskLevel


@dataclass(frozen=True)
class MfaOutcome:
    ok: bool
    user: Optional[User] = None
    challenge: Optional[MfaChallenge] = None
    reason: Optional[FailureReason] = None


class AdminMfaManager:
    """Ticket-bound email OTP challenge for administrator step-up.

    A challenge is keyed by an unguessable ticket and pinned to the device
    fingerprint that created it. Five wrong codes delete the ticket.
    """

    def __init__(
        self,
        cache: EphemeralStore,
        store: AuthStore,
        email: EmailService,
        *,
        base_url: str,
        challenge_ttl: int,
        step_up_ttl: int,
        trusted_device_ttl: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.store = store
        self.email = email
        self.base_url = base_url.rstrip("/")
        self.challenge_ttl = challenge_ttl
        self.step_up_ttl = step_up_ttl
        self.trusted_device_ttl = trusted_device_ttl
        self.clock = clock
        self.logger = get_logger(__name__)

    @staticmethod
    def _challenge_key(ticket: str) -> str:
        return f"{CHALLENGE_PREFIX}:{ticket}"

    @staticmethod
    def _attempts_key(ticket: str) -> str:
        return f"{ATTEMPTS_PREFIX}:{ticket}"

    @staticmethod
    def _devices_key(user_id: str) -> str:
        return f"{TRUSTED_DEVICE_PREFIX}:{user_id}"

    async def _risk_level(self, user_id: str, fingerprint: str) -> RiskLevel:
        known = await self.cache.map_get(self._devices_key(user_id), fingerprint)
        return "low" if known else "elevated"

    async def _issue(self, ticket: str, record: dict) -> MfaChallenge:
        otp = generate_otp()
        record = {**record, "otp_hash": sha256_hex(otp)}
        await self.cache.set(self._challenge_key(ticket), record, self.challenge_ttl)
        await self.cache.delete(self._attempts_key(ticket))
        link = f"{self.base_url}/admin/auth?{urlencode({'mfa_ticket': ticket})}"
        await asyncio.to_thread(self.email.send_admin_mfa_code, record["email"], otp, link)
        return MfaChallenge(
            ticket=ticket, email=record["email"], risk_level=record["risk_level"]
        )

    async def create_challenge(self, user: User, fingerprint: str) -> MfaChallenge:
        challenge = await self._issue(
            random_urlsafe(24),
            {
                "user_id": user.id,
                "email": user.email,
                "risk_level": await self._risk_level(user.id, fingerprint),
                "fingerprint_hash": fingerprint,
            },
        )
        ADMIN_MFA_EVENTS.labels(event="challenge_created").inc()
        self.logger.info(
            "admin_mfa_challenge_created",
            user_id=user.id,
            risk_level=challenge.risk_level,
        )
        return challenge

    async def _load_for_device(
        self, ticket: str, fingerprint: str
    ) -> tuple[Optional[dict], Optional[FailureReason]]:
        record = await self.cache.get(self._challenge_key(ticket))
        if not isinstance(record, dict):
            return None, "missing"
        if not constant_time_equal(record.get("fingerprint_hash", ""), fingerprint):
            ADMIN_MFA_EVENTS.labels(event="fingerprint_mismatch").inc()
            self.logger.warning("admin_mfa_fingerprint_mismatch", user_id=record.get("user_id"))
            return None, "fingerprint_mismatch"
        return record, None

    def _eligible_admin(self, user_id: str) -> Optional[User]:
        user = self.store.get_user(user_id)
        if user is None or not self.store.is_admin(user.id):
            return None
        return user

    async def verify(self, ticket: str, otp: str, fingerprint: str) -> MfaOutcome:
        key = self._challenge_key(ticket)
        record, reason = await self._load_for_device(ticket, fingerprint)
        if record is None:
            return MfaOutcome(ok=False, reason=reason)

        user_id = record["user_id"]
        if not constant_time_equal(record["otp_hash"], sha256_hex(otp)):
            # the challenge record is never rewritten here, only the counter
            attempts = await self.cache.increment(self._attempts_key(ticket), self.challenge_ttl)
            if attempts >= MAX_ADMIN_MFA_ATTEMPTS:
                await self.cache.delete(key)
                await self.cache.delete(self._attempts_key(ticket))
                ADMIN_MFA_EVENTS.labels(event="locked").inc()
                self.logger.warning("admin_mfa_locked", user_id=user_id, attempts=attempts)
                return MfaOutcome(ok=False, reason="locked")
            ADMIN_MFA_EVENTS.labels(event="bad_otp").inc()
            self.logger.info("admin_mfa_bad_otp", user_id=user_id, attempts=attempts)
            return MfaOutcome(ok=False, reason="bad_otp")

        user = self._eligible_admin(user_id)
        if user is None:
            await self.cache.delete(key)
            await self.cache.delete(self._attempts_key(ticket))
            ADMIN_MFA_EVENTS.labels(event="forbidden").inc()
            return MfaOutcome(ok=False, reason="forbidden")

        consumed = await self.cache.pop(key)
        if not isinstance(consumed, dict) or consumed.get("otp_hash") != record["otp_hash"]:
            return MfaOutcome(ok=False, reason="missing")
        await self.cache.delete(self._attempts_key(ticket))
        ADMIN_MFA_EVENTS.labels(event="verified").inc()
        self.logger.info("admin_mfa_verified", user_id=user.id)
        return MfaOutcome(ok=True, user=user)

    async def resend(self, ticket: str, fingerprint: str) -> MfaOutcome:
        """New code under the same ticket; attempts reset and TTL restarted."""
        record, reason = await self._load_for_device(ticket, fingerprint)
        if record is None:
            return MfaOutcome(ok=False, reason=reason)
        challenge = await self._issue(ticket, record)
        ADMIN_MFA_EVENTS.labels(event="resent").inc()
        self.logger.info("admin_mfa_challenge_resent", user_id=record["user_id"])
        return MfaOutcome(ok=True, challenge=challenge)

    async def complete_step_up(self, session_id: str, user_id: str, fingerprint: str) -> None:
        """Record the step-up marker and remember the device."""
        await self.cache.set(
            f"{STEP_UP_PREFIX}:{session_id}",
            {"user_id": user_id, "verified_at": int(self.clock() * 1000)},
            self.step_up_ttl,
        )
        await self.cache.map_set(
            self._devices_key(user_id),
            fingerprint,
            {"seen_at": int(self.clock() * 1000)},
            self.trusted_device_ttl,
        )

    async def is_step_up_active(self, session_id: str, user_id: str) -> bool:
        marker = await self.cache.get(f"{STEP_UP_PREFIX}:{session_id}")
        return isinstance(marker, dict) and marker.get("user_id") == user_id

    async def list_trusted_devices(self, user_id: str) -> List[Dict]:
        items = await self.cache.map_items(self._devices_key(user_id))
        devices = []
        for fingerprint, value in items.items():
            seen_at = value.get("seen_at", 0) if isinstance(value, dict) else 0
            if isinstance(seen_at, (int, float)) and seen_at > 0:
                devices.append({"fingerprint": fingerprint, "seen_at": int(seen_at)})
        devices.sort(key=lambda d: d["seen_at"], reverse=True)
        return devices

    async def revoke_trusted_devices(
        self, user_id: str, fingerprint: Optional[str] = None
    ) -> int:
        """Forget one device (returns 1 or 0) or all of them (returns -1 or 0)."""
        key = self._devices_key(user_id)
        if fingerprint:
            return 1 if await self.cache.map_delete(key, fingerprint) else 0
        return -1 if await self.cache.map_clear(key) else 0
