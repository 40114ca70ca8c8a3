"""Integration tests for the auth HTTP surface.

Tests the complete flow including:
- Registration and email verification
- Login with cookies, verified and pending verification
- Token refresh and logout
- Password reset
- Onboarding, profile updates and /me
- Global per-IP rate limit
"""

import pytest
from fastapi.testclient import TestClient

from rentease import app as app_module
from rentease.service.runtime import get_runtime, reset_runtime_for_tests
from rentease.service.tokens import TokenIssuer

PASSWORD = "Abc12345!"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _register(client, email="a@b.com", role="tenant", password=PASSWORD):
    return client.post(
        "/api/auth/register",
        json={
            "email": email,
            "password": password,
            "confirmPassword": password,
            "role": role,
        },
    )


def _verified_account(client, mailer, email="a@b.com", role="tenant"):
    token = _register(client, email=email, role=role).json()["data"]["token"]
    otp = mailer.last("verification")["otp"]
    response = client.post("/api/auth/verify-email", json={"token": token, "otp": otp})
    assert response.status_code == 200
    return get_runtime().store.find_by_email(email)


def _login(client, email="a@b.com", password=PASSWORD, **kwargs):
    return client.post("/api/auth/login", json={"email": email, "password": password}, **kwargs)


def _set_cookie_headers(response):
    return response.headers.get_list("set-cookie")


def _garbled_token():
    """A well-formed token whose signature segment is not ASCII, as latin-1 bytes."""
    header, payload, _sig = TokenIssuer().sign({"userId": "u1"}, "other-secret", 60).split(".")
    return f"{header}.{payload}.sig\u00e9".encode("latin-1")


def _wrong(otp):
    return "000000" if otp != "000000" else "111111"


class TestRegistration:
    def test_register_returns_token_but_never_the_otp(self, client, mailer):
        response = _register(client)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["message"] == "Success! Check your email for the OTP code."
        token = body["data"]["token"]
        assert token
        otp = mailer.last("verification")["otp"]
        assert otp not in response.text
        user = get_runtime().store.find_by_email("a@b.com")
        assert user.role == "TENANT"
        assert user.is_verified is False

    def test_register_duplicate_email_conflicts(self, client, mailer):
        _register(client)
        response = _register(client)

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_register_missing_fields(self, client, mailer):
        response = client.post("/api/auth/register", json={"email": "a@b.com"})

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "All fields are required"

    def test_register_rejects_admin_role(self, client, mailer):
        response = _register(client, role="admin")

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Invalid role"


class TestEmailVerification:
    def test_verify_then_reuse_token(self, client, mailer):
        token = _register(client).json()["data"]["token"]
        otp = mailer.last("verification")["otp"]

        first = client.post("/api/auth/verify-email", json={"token": token, "otp": otp})
        second = client.post("/api/auth/verify-email", json={"token": token, "otp": otp})

        assert first.status_code == 200
        assert first.json()["data"] == {
            "message": "Email verified successfully",
            "context": "register",
        }
        assert second.status_code == 400
        assert second.json()["error"]["message"] == "Invalid or expired token"

    def test_numeric_otp_is_accepted(self, client, mailer):
        token = _register(client).json()["data"]["token"]
        otp = mailer.last("verification")["otp"]

        response = client.post("/api/auth/verify-email", json={"token": token, "otp": int(otp)})

        assert response.status_code == 200

    def test_ninth_attempt_locked_even_with_correct_otp(self, client, mailer):
        token = _register(client).json()["data"]["token"]
        otp = mailer.last("verification")["otp"]

        for _ in range(8):
            response = client.post(
                "/api/auth/verify-email", json={"token": token, "otp": _wrong(otp)}
            )
            assert response.status_code == 400

        response = client.post("/api/auth/verify-email", json={"token": token, "otp": otp})

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert get_runtime().store.find_by_email("a@b.com").is_verified is False

    def test_resend_once_then_rate_limited(self, client, mailer):
        token = _register(client).json()["data"]["token"]

        first = client.post("/api/auth/resend-verification", json={"token": token})
        second = client.post("/api/auth/resend-verification", json={"token": token})

        assert first.status_code == 200
        assert first.json()["data"]["message"] == "Verification email resent successfully"
        assert mailer.last("verification")["resent"] is True
        assert second.status_code == 429


class TestLogin:
    def test_verified_login_sets_cookies(self, client, mailer):
        _verified_account(client, mailer)

        response = _login(client)

        assert response.status_code == 200
        assert response.json()["data"] == {"message": "Login successful", "verified": True}
        headers = " ".join(_set_cookie_headers(response)).lower()
        assert "accesstoken=" in headers and "refreshtoken=" in headers
        assert "httponly" in headers
        assert "max-age=3600" in headers
        assert "max-age=18000" in headers
        assert "samesite=lax" in headers

    def test_disabled_account_gets_no_cookies(self, client, mailer):
        user = _verified_account(client, mailer)
        get_runtime().store.update_by_id(user.id, is_disabled=True)

        response = _login(client)

        assert response.status_code == 403
        error = response.json()["error"]
        assert error["code"] == "ACCOUNT_DISABLED"
        assert error["message"] == "Account is disabled due to violations"
        assert _set_cookie_headers(response) == []

    def test_unknown_email_and_wrong_password(self, client, mailer):
        _verified_account(client, mailer)

        assert _login(client, email="nobody@b.com").status_code == 404
        wrong = _login(client, password="Wr0ng#Pass")
        assert wrong.status_code == 401
        assert wrong.json()["error"]["message"] == "Invalid credentials"

    def test_unverified_login_sets_cookies_and_sends_login_otp(self, client, mailer):
        _register(client)

        response = _login(client)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["verified"] is False
        assert data["message"] == "Login pending verification"
        assert data["token"]
        assert len(_set_cookie_headers(response)) == 2

        otp = mailer.last("verification")["otp"]
        verified = client.post(
            "/api/auth/verify-email", json={"token": data["token"], "otp": otp}
        )
        assert verified.json()["data"]["context"] == "login"


class TestSessionLifecycle:
    def test_refresh_rotates_cookies(self, client, mailer):
        _verified_account(client, mailer)
        _login(client)

        response = client.post("/api/auth/refresh")

        assert response.status_code == 200
        assert response.json()["data"]["message"] == "Token refreshed"
        assert len(_set_cookie_headers(response)) == 2
        assert client.get("/api/auth/me").status_code == 200

    def test_relogin_invalidates_first_refresh_token(self, client, mailer):
        _verified_account(client, mailer)
        _login(client)
        first_refresh = client.cookies.get("refreshToken")
        _login(client)

        client.cookies.clear()
        client.cookies.set("refreshToken", first_refresh)
        response = client.post("/api/auth/refresh")

        assert response.status_code == 403

    def test_refresh_without_cookie(self, client):
        response = client.post("/api/auth/refresh")

        assert response.status_code == 401

    def test_logout_without_cookies_still_clears(self, client):
        response = client.post("/api/auth/logout")

        assert response.status_code == 200
        assert response.json()["data"]["message"] == "Logout successful"
        headers = _set_cookie_headers(response)
        assert len(headers) == 2
        assert all("max-age=0" in h.lower() for h in headers)

    def test_logout_with_garbled_token_still_succeeds(self, client):
        response = client.post(
            "/api/auth/logout", headers={"cookie": b"accessToken=" + _garbled_token()}
        )

        assert response.status_code == 200
        assert response.json()["data"]["message"] == "Logout successful"
        assert len(_set_cookie_headers(response)) == 2

    def test_refresh_with_garbled_token_is_forbidden(self, client):
        response = client.post(
            "/api/auth/refresh", headers={"cookie": b"refreshToken=" + _garbled_token()}
        )

        assert response.status_code == 403

    def test_status_with_garbled_token_is_unauthorized(self, client):
        response = client.get(
            "/api/auth/status", headers={"cookie": b"accessToken=" + _garbled_token()}
        )

        assert response.status_code == 401

    def test_logout_ends_session(self, client, mailer):
        _verified_account(client, mailer)
        _login(client)
        access = client.cookies.get("accessToken")

        client.post("/api/auth/logout")
        client.cookies.clear()
        client.cookies.set("accessToken", access)
        response = client.get("/api/auth/me")

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Session expired or invalid"

    def test_status_reports_role(self, client, mailer):
        _verified_account(client, mailer, role="landlord")
        _login(client)

        response = client.get("/api/auth/status")

        assert response.status_code == 200
        assert response.json()["data"] == {"role": "LANDLORD"}

    def test_status_without_cookie(self, client):
        response = client.get("/api/auth/status")

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Not authenticated"

    def test_me_requires_authentication(self, client):
        response = client.get("/api/auth/me")

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Authentication required"


class TestForwardedClientIp:
    @pytest.fixture(autouse=True)
    def trust_proxy(self, monkeypatch):
        monkeypatch.setenv("TRUST_PROXY", "true")
        reset_runtime_for_tests()

    def test_session_is_bound_to_forwarded_ip(self, client, mailer):
        _verified_account(client, mailer)
        _login(client, headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1"})

        same = client.get("/api/auth/me", headers={"X-Forwarded-For": "203.0.113.7"})
        moved = client.get("/api/auth/me", headers={"X-Forwarded-For": "198.51.100.9"})

        assert same.status_code == 200
        assert moved.status_code == 401


class TestPasswordReset:
    def test_forgot_and_reset(self, client, mailer):
        _verified_account(client, mailer)

        forgot = client.post("/api/auth/forgot-password", json={"email": "a@b.com"})
        assert forgot.status_code == 200
        token = mailer.last("reset")["token"]

        reset = client.post(
            "/api/auth/reset-password",
            json={"token": token, "newPassword": "N3w#Password", "confirmPassword": "N3w#Password"},
        )
        assert reset.status_code == 200
        assert reset.json()["data"]["message"] == "Password has been reset successfully"
        assert _login(client, password="N3w#Password").status_code == 200

    def test_cooldown_applies_after_completed_reset(self, client, mailer):
        _verified_account(client, mailer)

        assert client.post("/api/auth/forgot-password", json={"email": "a@b.com"}).status_code == 200
        assert client.post("/api/auth/forgot-password", json={"email": "a@b.com"}).status_code == 200
        token = mailer.last("reset")["token"]
        client.post(
            "/api/auth/reset-password",
            json={"token": token, "newPassword": "N3w#Password", "confirmPassword": "N3w#Password"},
        )

        third = client.post("/api/auth/forgot-password", json={"email": "a@b.com"})
        assert third.status_code == 429

    def test_reset_with_unknown_token(self, client):
        response = client.post(
            "/api/auth/reset-password",
            json={"token": "nope", "newPassword": "N3w#Password", "confirmPassword": "N3w#Password"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Invalid or expired reset token"


class TestProfile:
    def test_onboarding_then_me(self, client, mailer):
        _verified_account(client, mailer)
        _login(client)

        response = client.put(
            "/api/auth/onboarding",
            json={"firstName": "Ana", "lastName": "Cruz", "phoneNumber": "+63 900 000 0000"},
        )
        again = client.put("/api/auth/onboarding", json={"firstName": "Ana"})
        me = client.get("/api/auth/me").json()["data"]["user"]

        assert response.status_code == 200
        assert response.json()["data"]["message"] == "Profile successfully updated"
        assert again.status_code == 422
        assert me["firstName"] == "Ana"
        assert me["lastName"] == "Cruz"
        assert me["hasSeenOnboarding"] is True
        assert "passwordHash" not in me

    def test_update_profile(self, client, mailer):
        _verified_account(client, mailer)
        _login(client)

        response = client.put(
            "/api/auth/update-profile", json={"bio": "Quiet tenant", "birthdate": "1990-01-31"}
        )
        me = client.get("/api/auth/me").json()["data"]["user"]

        assert response.status_code == 200
        assert response.json()["data"]["message"] == "Profile updated successfully"
        assert me["bio"] == "Quiet tenant"
        assert me["birthdate"].startswith("1990-01-31")

    def test_update_profile_requires_session(self, client):
        response = client.put("/api/auth/update-profile", json={"bio": "x"})

        assert response.status_code == 401


class TestGlobalRateLimit:
    @pytest.fixture(autouse=True)
    def low_limit(self, monkeypatch):
        monkeypatch.setenv("GLOBAL_RATE_LIMIT", "3")
        reset_runtime_for_tests()

    def test_fourth_request_is_rejected(self, client):
        for _ in range(3):
            assert client.get("/api/auth/status").status_code == 401

        response = client.get("/api/auth/status")

        assert response.status_code == 429
        body = response.json()
        assert body["error"]["code"] == "rate_limited"
        assert body["error"]["message"] == "Too many requests from this IP, please try again later."

    def test_health_is_not_limited(self, client):
        for _ in range(5):
            assert client.get("/healthz").status_code == 200
