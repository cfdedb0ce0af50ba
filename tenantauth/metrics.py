from __future__ import annotations

from prometheus_client import Counter

SESSIONS_REVOKED = Counter(
    "auth_user_sessions_revoked_total",
    "User sessions revoked because the account was disabled",
)

MAGIC_LINK_ATTEMPTS = Counter(
    "auth_magic_link_attempts_total",
    "Magic-link OTP consume attempts",
    ["result"],
)

ADMIN_MFA_EVENTS = Counter(
    "auth_admin_mfa_events_total",
    "Administrator step-up challenge events",
    ["event"],
)

OAUTH_CALLBACKS = Counter(
    "auth_oauth_callbacks_total",
    "OAuth callback outcomes",
    ["provider", "result"],
)
