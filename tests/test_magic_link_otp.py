"""Magic-link OTP manager: nonce binding, single use, and attempt lockout."""

import pytest

from tenantauth.service.magic_link import MAGIC_LINK_MAX_ATTEMPTS, MagicLinkOtpManager

EMAIL = "alice@example.com"


@pytest.fixture
def otps(cache):
    return MagicLinkOtpManager(cache, ttl_seconds=1800)


async def test_nonce_scenario(otps):
    await otps.upsert(EMAIL, "123456", "token-1", "N1")

    wrong_device = await otps.consume(EMAIL, "123456", "N2")
    assert not wrong_device.ok and wrong_device.reason == "nonce_mismatch"

    first = await otps.consume(EMAIL, "123456", "N1")
    assert first.ok and first.token == "token-1"

    replay = await otps.consume(EMAIL, "123456", "N1")
    assert not replay.ok and replay.reason == "bad_otp"


async def test_missing_nonce_is_rejected_when_one_was_issued(otps):
    await otps.upsert(EMAIL, "123456", "token-1", "N1")
    result = await otps.consume(EMAIL, "123456")
    assert result.reason == "nonce_mismatch"


async def test_no_nonce_recorded_accepts_any_device(otps):
    await otps.upsert(EMAIL, "123456", "token-1")
    assert (await otps.consume(EMAIL, "123456", "whatever")).ok


async def test_email_key_is_case_insensitive(otps):
    await otps.upsert("Alice@Example.com", "123456", "token-1")
    assert (await otps.consume(EMAIL, "123456")).ok


async def test_lockout_rejects_correct_code(otps):
    await otps.upsert(EMAIL, "123456", "token-1")
    for _ in range(MAGIC_LINK_MAX_ATTEMPTS):
        assert (await otps.consume(EMAIL, "000000")).reason == "bad_otp"
    locked = await otps.consume(EMAIL, "123456")
    assert not locked.ok and locked.reason == "bad_otp"


async def test_reissue_resets_attempts_and_replaces_code(otps):
    await otps.upsert(EMAIL, "123456", "token-1")
    for _ in range(MAGIC_LINK_MAX_ATTEMPTS - 1):
        await otps.consume(EMAIL, "000000")
    await otps.upsert(EMAIL, "654321", "token-2")

    assert not (await otps.consume(EMAIL, "123456")).ok
    result = await otps.consume(EMAIL, "654321")
    assert result.ok and result.token == "token-2"


async def test_code_expires(otps, clock):
    await otps.upsert(EMAIL, "123456", "token-1")
    clock.advance(1801)
    assert (await otps.consume(EMAIL, "123456")).reason == "bad_otp"


async def test_plain_code_is_never_stored(otps, cache):
    await otps.upsert(EMAIL, "123456", "token-1")
    record = await cache.get(f"MAGIC_LINK_OTP:{EMAIL}")
    assert "123456" not in str(record)
