"""End-to-end auth flows over the HTTP API.

Covers password sign-in, session fixation, multi-account sessions, sign-out
CSRF modes, magic links, the open-app handoff, bearer resolution and the
client version guard.
"""

from urllib.parse import parse_qs, urlsplit

import pytest
from fastapi.testclient import TestClient

from conftest import PASSWORD
from tenantauth.app import create_app
from tenantauth.config import Settings
from tenantauth.service.runtime import build_runtime

SESSION = "affine_session"
USER = "affine_user_id"
CSRF = "affine_csrf_token"


def _sign_in(client, email_address, password=PASSWORD, **extra):
    return client.post(
        "/api/auth/sign-in", json={"email": email_address, "password": password, **extra}
    )


def _session_user(client, **kwargs):
    response = client.get("/api/auth/session", **kwargs)
    assert response.status_code == 200
    return response.json()["data"]["user"]


def _client_for(settings, store, cache, email):
    return TestClient(create_app(build_runtime(settings, store=store, cache=cache, email=email)))


class TestPreflight:
    def test_registered_with_password(self, client, make_user):
        make_user("alice@example.com")
        response = client.post("/api/auth/preflight", json={"email": "Alice@example.com"})
        assert response.json()["data"] == {"registered": True, "has_password": True}

    def test_unknown_email(self, client):
        response = client.post("/api/auth/preflight", json={"email": "nobody@example.com"})
        assert response.json()["data"] == {"registered": False, "has_password": False}

    def test_invalid_email(self, client):
        response = client.post("/api/auth/preflight", json={"email": "not-an-email"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_EMAIL"


class TestPasswordSignIn:
    def test_sets_all_three_cookies(self, client, make_user):
        user = make_user("alice@example.com")
        response = _sign_in(client, "alice@example.com")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["id"] == user.id
        assert response.cookies.get(SESSION)
        assert response.cookies.get(CSRF)
        assert response.cookies.get(USER) == user.id

        set_cookie = "\n".join(response.headers.get_list("set-cookie"))
        assert f"{SESSION}=" in set_cookie and "HttpOnly" in set_cookie
        assert "SameSite=lax" in set_cookie or "samesite=lax" in set_cookie.lower()
        assert _session_user(client)["id"] == user.id

    def test_wrong_password(self, client, make_user):
        make_user("alice@example.com")
        response = _sign_in(client, "alice@example.com", password="wrong")
        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "WRONG_SIGN_IN_CREDENTIALS"
        assert body["request_id"]
        assert SESSION not in response.cookies

    def test_session_fixation_is_prevented(self, client, make_user):
        make_user("alice@example.com")
        client.cookies.set(SESSION, "attacker-planted-session")
        response = _sign_in(client, "alice@example.com")
        issued = response.cookies.get(SESSION)
        assert issued and issued != "attacker-planted-session"

    def test_request_id_is_echoed(self, client):
        response = client.get("/api/auth/session", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"


class TestMultiAccount:
    def test_second_account_joins_same_session(self, client, make_user):
        alice = make_user("alice@example.com")
        bob = make_user("bob@example.com")
        first = _sign_in(client, "alice@example.com").cookies.get(SESSION)
        second = _sign_in(client, "bob@example.com").cookies.get(SESSION)
        assert first == second

        users = client.get("/api/auth/sessions").json()["data"]["users"]
        assert [u["id"] for u in users] == [alice.id, bob.id]
        assert _session_user(client)["id"] == bob.id

    def test_user_hint_selects_bound_account(self, client, make_user):
        alice = make_user("alice@example.com")
        make_user("bob@example.com")
        _sign_in(client, "alice@example.com")
        _sign_in(client, "bob@example.com")
        session_id = client.cookies.get(SESSION)
        client.cookies.clear()

        cookie = f"{SESSION}={session_id}; {USER}={alice.id}"
        assert _session_user(client, headers={"Cookie": cookie})["id"] == alice.id

    def test_foreign_user_hint_is_corrected(self, client, make_user):
        make_user("alice@example.com")
        bob = make_user("bob@example.com")
        _sign_in(client, "alice@example.com")
        _sign_in(client, "bob@example.com")
        session_id = client.cookies.get(SESSION)
        client.cookies.clear()

        response = client.get(
            "/api/auth/session",
            headers={"Cookie": f"{SESSION}={session_id}; {USER}=someone-else"},
        )
        assert response.json()["data"]["user"]["id"] == bob.id
        assert response.cookies.get(USER) == bob.id

    def test_user_id_header_is_used_without_cookie(self, client, make_user):
        alice = make_user("alice@example.com")
        make_user("bob@example.com")
        _sign_in(client, "alice@example.com")
        _sign_in(client, "bob@example.com")
        session_id = client.cookies.get(SESSION)
        client.cookies.clear()

        user = _session_user(
            client, headers={"Cookie": f"{SESSION}={session_id}", "affine-user-id": alice.id}
        )
        assert user["id"] == alice.id

    def test_sessions_in_other_browsers_are_isolated(self, runtime, make_user):
        make_user("alice@example.com")
        make_user("bob@example.com")
        browser_one = TestClient(create_app(runtime))
        browser_two = TestClient(create_app(runtime))
        _sign_in(browser_one, "alice@example.com")
        _sign_in(browser_two, "alice@example.com")
        _sign_in(browser_two, "bob@example.com")

        browser_one.post("/api/auth/sign-out")
        assert _session_user(browser_one) is None
        users = browser_two.get("/api/auth/sessions").json()["data"]["users"]
        assert len(users) == 2

    def test_stale_session_cookie_is_cleared(self, client):
        client.cookies.set(SESSION, "gone")
        response = client.get("/api/auth/session")
        assert response.json()["data"]["user"] is None
        assert any(
            h.startswith(f"{SESSION}=") for h in response.headers.get_list("set-cookie")
        )


class TestSignOut:
    def test_compat_mode_allows_missing_header(self, client, make_user):
        make_user("alice@example.com")
        _sign_in(client, "alice@example.com")
        response = client.post("/api/auth/sign-out")
        assert response.status_code == 200
        assert _session_user(client) is None

    def test_compat_mode_rejects_mismatched_header(self, client, make_user):
        make_user("alice@example.com")
        _sign_in(client, "alice@example.com")
        response = client.post("/api/auth/sign-out", headers={"x-affine-csrf-token": "forged"})
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "ACTION_FORBIDDEN"
        assert _session_user(client) is not None

    def test_strict_mode(self, store, cache, email, make_user):
        settings = Settings(
            test_mode=True,
            server_https=False,
            app_base_url="http://testserver",
            csrf_strict_sign_out=True,
        )
        client = _client_for(settings, store, cache, email)
        make_user("alice@example.com")
        _sign_in(client, "alice@example.com")

        assert client.post("/api/auth/sign-out").status_code == 403
        assert _session_user(client) is not None
        forged = client.post("/api/auth/sign-out", headers={"x-affine-csrf-token": "forged"})
        assert forged.status_code == 403

        token = client.cookies.get(CSRF)
        response = client.post("/api/auth/sign-out", headers={"x-affine-csrf-token": token})
        assert response.status_code == 200
        assert _session_user(client) is None

    def test_deprecated_get_skips_csrf(self, store, cache, email, make_user):
        settings = Settings(
            test_mode=True,
            server_https=False,
            app_base_url="http://testserver",
            csrf_strict_sign_out=True,
        )
        client = _client_for(settings, store, cache, email)
        make_user("alice@example.com")
        _sign_in(client, "alice@example.com")

        response = client.get("/api/auth/sign-out")
        assert response.status_code == 200
        assert response.headers["Deprecation"] == "true"
        assert _session_user(client) is None

    def test_single_account_moves_user_cookie(self, client, make_user):
        alice = make_user("alice@example.com")
        bob = make_user("bob@example.com")
        _sign_in(client, "alice@example.com")
        _sign_in(client, "bob@example.com")

        response = client.post(f"/api/auth/sign-out?user_id={bob.id}")
        assert response.status_code == 200
        assert response.cookies.get(USER) == alice.id
        assert _session_user(client)["id"] == alice.id

    def test_without_session_is_a_no_op(self, client):
        response = client.post("/api/auth/sign-out")
        assert response.status_code == 200
        assert response.json()["data"] == {}

    def test_disable_user_revokes_sessions(self, client, runtime, make_user):
        alice = make_user("alice@example.com")
        _sign_in(client, "alice@example.com")
        assert runtime.auth.disable_user(alice.id) == 1
        assert _session_user(client) is None


class TestMagicLink:
    def _request_link(self, client, email_address, **extra):
        return client.post("/api/auth/sign-in", json={"email": email_address, **extra})

    def test_nonce_bound_sign_in(self, client, email, make_user):
        user = make_user("alice@example.com")
        response = self._request_link(client, "alice@example.com", client_nonce="N1")
        assert response.status_code == 200
        assert response.json()["data"] == {"email": "alice@example.com"}

        sent = email.last("sign_in")
        query = parse_qs(urlsplit(sent["link"]).query)
        assert query["token"] == [sent["otp"]]
        assert query["email"] == ["alice@example.com"]
        assert sent["link"].startswith("http://testserver/magic-link?")

        body = {"email": "alice@example.com", "token": sent["otp"]}
        wrong = client.post("/api/auth/magic-link", json={**body, "client_nonce": "N2"})
        assert wrong.status_code == 400
        assert wrong.json()["error"]["code"] == "INVALID_AUTH_STATE"

        ok = client.post("/api/auth/magic-link", json={**body, "client_nonce": "N1"})
        assert ok.status_code == 201
        assert ok.json()["data"] == {"id": user.id}
        assert ok.cookies.get(SESSION)

        replay = client.post("/api/auth/magic-link", json={**body, "client_nonce": "N1"})
        assert replay.status_code == 400
        assert replay.json()["error"]["code"] == "INVALID_EMAIL_TOKEN"

    def test_unknown_email_signs_up(self, client, email, store):
        self._request_link(client, "new@example.com")
        sent = email.last("sign_in")
        assert sent["sign_up"] is True
        response = client.post(
            "/api/auth/magic-link", json={"email": "new@example.com", "token": sent["otp"]}
        )
        assert response.status_code == 201
        user = store.get_user_by_email("new@example.com")
        assert user.registered and user.email_verified

    def test_sign_up_disabled(self, store, cache, email):
        settings = Settings(
            test_mode=True, server_https=False, app_base_url="http://testserver", allow_signup=False
        )
        client = _client_for(settings, store, cache, email)
        response = self._request_link(client, "new@example.com")
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "SIGN_UP_FORBIDDEN"

    def test_disabled_account(self, client, make_user, store):
        user = make_user("alice@example.com")
        store.update_user(user.id, disabled=True)
        response = self._request_link(client, "alice@example.com")
        assert response.json()["error"]["code"] == "WRONG_SIGN_IN_CREDENTIALS"

    @pytest.mark.parametrize(
        "callback_url",
        [
            "https://evil.example.com/magic-link",
            "//evil.example.com/magic-link",
            "/magic-link?redirect_uri=https://evil.example.com/",
        ],
    )
    def test_untrusted_callback_or_redirect(self, client, email, callback_url):
        response = self._request_link(client, "alice@example.com", callback_url=callback_url)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "ACTION_FORBIDDEN"
        assert email.sent == []

    def test_trusted_redirect_inside_callback(self, client, email):
        response = self._request_link(
            client,
            "alice@example.com",
            callback_url="/magic-link?redirect_uri=https://github.com/org",
        )
        assert response.status_code == 200
        link = email.last("sign_in")["link"]
        assert parse_qs(urlsplit(link).query)["redirect_uri"] == ["https://github.com/org"]

    def test_missing_fields(self, client):
        response = client.post("/api/auth/magic-link", json={"email": "alice@example.com"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "EMAIL_TOKEN_NOT_FOUND"

    def test_wrong_code(self, client, email):
        self._request_link(client, "alice@example.com")
        otp = email.last("sign_in")["otp"]
        wrong = "000000" if otp != "000000" else "111111"
        response = client.post(
            "/api/auth/magic-link", json={"email": "alice@example.com", "token": wrong}
        )
        assert response.json()["error"]["code"] == "INVALID_EMAIL_TOKEN"


class TestOpenApp:
    def test_code_hands_session_to_another_client(self, runtime, client, make_user):
        alice = make_user("alice@example.com")
        _sign_in(client, "alice@example.com")
        issued = client.post("/api/auth/open-app/sign-in-code")
        assert issued.status_code == 201
        code = issued.json()["data"]["code"]

        desktop = TestClient(create_app(runtime))
        response = desktop.post("/api/auth/open-app/sign-in", json={"code": code})
        assert response.status_code == 201
        assert response.json()["data"] == {"id": alice.id}
        assert _session_user(desktop)["id"] == alice.id
        assert desktop.cookies.get(SESSION) != client.cookies.get(SESSION)

        reuse = TestClient(create_app(runtime)).post(
            "/api/auth/open-app/sign-in", json={"code": code}
        )
        assert reuse.status_code == 400
        assert reuse.json()["error"]["code"] == "INVALID_AUTH_STATE"

    def test_anonymous_cannot_mint_code(self, client):
        response = client.post("/api/auth/open-app/sign-in-code")
        assert response.status_code == 403

    def test_missing_code(self, client):
        response = client.post("/api/auth/open-app/sign-in", json={})
        assert response.json()["error"]["code"] == "INVALID_AUTH_STATE"


class TestBearer:
    def test_personal_access_token(self, client, store, make_user):
        user = make_user("alice@example.com")
        token = store.create_access_token(user.id, "cli")
        user_json = _session_user(client, headers={"Authorization": f"Bearer {token.token}"})
        assert user_json["id"] == user.id

    def test_session_id_as_bearer(self, client, make_user):
        user = make_user("alice@example.com")
        session_id = _sign_in(client, "alice@example.com").cookies.get(SESSION)
        client.cookies.clear()
        user_json = _session_user(client, headers={"Authorization": f"Bearer {session_id}"})
        assert user_json["id"] == user.id

    def test_protected_route_requires_identity(self, client):
        response = client.get("/api/auth/admin/trusted-devices")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "AUTHENTICATION_REQUIRED"


class TestClientVersionGuard:
    @pytest.fixture
    def versioned(self, store, cache, email):
        settings = Settings(
            test_mode=True,
            server_https=False,
            app_base_url="http://testserver",
            client_version_control_enabled=True,
            client_version_requirement=">=0.26.0",
        )
        return _client_for(settings, store, cache, email)

    def test_supported_client(self, versioned, make_user):
        user = make_user("alice@example.com")
        response = versioned.post(
            "/api/auth/sign-in",
            json={"email": "alice@example.com", "password": PASSWORD},
            headers={"x-affine-version": "0.26.1"},
        )
        assert response.status_code == 200
        assert _session_user(versioned)["id"] == user.id

    def test_old_client_cannot_sign_in(self, versioned, make_user):
        make_user("alice@example.com")
        response = versioned.post(
            "/api/auth/sign-in",
            json={"email": "alice@example.com", "password": PASSWORD},
            headers={"x-affine-version": "0.25.3"},
        )
        assert response.status_code == 403
        error = response.json()["error"]
        assert error["code"] == "UNSUPPORTED_CLIENT_VERSION"
        assert error["details"]["required_version"] == ">=0.26.0"

    def test_downgraded_client_is_signed_out(self, versioned, store, make_user):
        make_user("alice@example.com", admin=True)
        versioned.post(
            "/api/auth/sign-in",
            json={"email": "alice@example.com", "password": PASSWORD},
            headers={"x-affine-version": "0.26.1"},
        )
        session_id = versioned.cookies.get(SESSION)

        response = versioned.get(
            "/api/auth/admin/trusted-devices", headers={"x-affine-version": "0.20.0"}
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "UNSUPPORTED_CLIENT_VERSION"
        assert store.find_user_sessions(session_id) == []

    def test_public_route_just_drops_the_session(self, versioned, store, make_user):
        make_user("alice@example.com")
        versioned.post(
            "/api/auth/sign-in",
            json={"email": "alice@example.com", "password": PASSWORD},
            headers={"x-affine-version": "0.26.1"},
        )
        session_id = versioned.cookies.get(SESSION)
        user = _session_user(versioned, headers={"x-affine-version": "garbage"})
        assert user is None
        assert store.find_user_sessions(session_id) == []

    def test_stored_sign_in_version_is_used_without_header(self, versioned, make_user):
        user = make_user("alice@example.com")
        versioned.post(
            "/api/auth/sign-in",
            json={"email": "alice@example.com", "password": PASSWORD},
            headers={"x-affine-version": "0.27.0"},
        )
        assert _session_user(versioned)["id"] == user.id


def test_metrics_endpoint(client):
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "auth_magic_link_attempts_total" in response.text
