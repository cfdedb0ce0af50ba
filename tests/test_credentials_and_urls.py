import base64
import hashlib

import pytest

from tenantauth.service.credentials import CredentialVerifier, normalize_email
from tenantauth.service.errors import (
    InvalidEmail,
    WrongSignInCredentials,
    WrongSignInMethod,
)
from tenantauth.service.tokens import generate_otp, pkce_challenge, random_urlsafe
from tenantauth.service.urls import URLHelper
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.memory import MemoryStore


@pytest.fixture
def verifier(store):
    return CredentialVerifier(store)


class TestNormalizeEmail:
    def test_lowercases_and_strips(self):
        assert normalize_email("  Alice@Example.COM ") == "alice@example.com"

    @pytest.mark.parametrize(
        "value", ["", "no-at-sign", "a@b", "a@@example.com", "a b@example.com", "x@-bad-.com"]
    )
    def test_rejects_malformed(self, value):
        with pytest.raises(InvalidEmail):
            normalize_email(value)


class TestCredentialVerifier:
    def test_correct_password(self, verifier, make_user):
        user = make_user("alice@example.com", password="s3cret-pass")
        assert verifier.sign_in("ALICE@example.com", "s3cret-pass").id == user.id

    def test_wrong_password_and_unknown_user_look_the_same(self, verifier, make_user):
        make_user("alice@example.com", password="s3cret-pass")
        with pytest.raises(WrongSignInCredentials) as wrong:
            verifier.sign_in("alice@example.com", "nope")
        with pytest.raises(WrongSignInCredentials) as unknown:
            verifier.sign_in("bob@example.com", "nope")
        assert wrong.value.error_code == unknown.value.error_code
        assert wrong.value.status_code == unknown.value.status_code == 400

    def test_account_without_password(self, verifier, store):
        store.create_user("magic@example.com")
        with pytest.raises(WrongSignInMethod):
            verifier.sign_in("magic@example.com", "anything")

    def test_disabled_account(self, verifier, make_user, store):
        user = make_user("alice@example.com", password="s3cret-pass")
        store.update_user(user.id, disabled=True)
        with pytest.raises(WrongSignInCredentials):
            verifier.sign_in("alice@example.com", "s3cret-pass")

    def test_change_password_does_not_touch_sessions(self, verifier, make_user, store):
        user = make_user("alice@example.com", password="old-password")
        session = store.create_session()
        store.upsert_user_session(session.id, user.id, 60)
        verifier.change_password(user.id, "new-password")
        assert verifier.sign_in("alice@example.com", "new-password").id == user.id
        assert len(store.find_user_sessions(session.id)) == 1

    def test_change_email_normalizes_and_rejects_duplicates(self, verifier, make_user):
        alice = make_user("alice@example.com")
        make_user("bob@example.com")
        assert verifier.change_email(alice.id, " Alice2@Example.com").email == "alice2@example.com"
        with pytest.raises(ConstraintViolation):
            verifier.change_email(alice.id, "bob@example.com")

    def test_set_email_verified(self, verifier):
        mem = MemoryStore()
        user = mem.create_user("late@example.com")
        assert not user.email_verified
        assert CredentialVerifier(mem).set_email_verified(user.id).email_verified


class TestTokens:
    def test_otp_is_six_digits(self):
        for _ in range(50):
            otp = generate_otp()
            assert len(otp) == 6 and otp.isdigit()

    def test_pkce_challenge_is_unpadded_s256(self):
        verifier = random_urlsafe(96)
        expected = (
            base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest())
            .rstrip(b"=")
            .decode()
        )
        assert pkce_challenge(verifier) == expected
        assert "=" not in verifier and len(verifier) == 128


class TestURLHelper:
    @pytest.fixture
    def urls(self):
        return URLHelper("https://app.example.com", ["https://app.example.com"])

    def test_link_merges_query(self, urls):
        link = urls.link("/magic-link?redirect_uri=%2Fdocs", {"token": "123456"})
        assert link.startswith("https://app.example.com/magic-link?")
        assert URLHelper.query_param(link, "redirect_uri") == "/docs"
        assert URLHelper.query_param(link, "token") == "123456"

    @pytest.mark.parametrize(
        "url", ["/magic-link", "https://app.example.com/cb", "https://APP.example.com:443/cb"]
    )
    def test_allowed_callbacks(self, urls, url):
        assert urls.is_allowed_callback_url(url)

    @pytest.mark.parametrize(
        "url",
        [
            None,
            "",
            "//evil.example.com/cb",
            "javascript:alert(1)",
            "https://evil.example.com/cb",
            "https://app.example.com:8443/cb",
            "https://user:pw@app.example.com/cb",
        ],
    )
    def test_rejected_callbacks(self, urls, url):
        assert not urls.is_allowed_callback_url(url)

    def test_redirect_uri_accepts_trusted_domains(self, urls):
        assert urls.is_allowed_redirect_uri("https://github.com/org/repo")
        assert urls.is_allowed_redirect_uri("https://docs.google.com/x")
        assert not urls.is_allowed_redirect_uri("https://notgithub.com/")
        assert not urls.is_allowed_redirect_uri("https://github.com.evil.io/")
