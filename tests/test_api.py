"""
Tests for the HTTP API.

Covers:
- Full onboarding and login over HTTP (TOTP and passkey)
- Route guards: bearer token, admin role, bootstrap key
- Error response shape
- Health endpoints and security headers
"""
import pyotp
import pytest

from conftest import PASSWORD

API = "/api/v1/users"
BOOTSTRAP = {"X-Bootstrap-Key": "bootstrap-test-key"}


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


# ============================================
# Test Fixtures
# ============================================

@pytest.fixture
def admin_token(client):
    """Bootstrap an admin over HTTP and log it in (no MFA yet)."""
    response = client.post(
        f"{API}/signup-admin",
        json={"name": "Root", "username": "root", "email": "root@example.com", "password": PASSWORD},
        headers=BOOTSTRAP,
    )
    assert response.status_code == 201

    response = client.post(f"{API}/login", json={"email": "root@example.com", "password": PASSWORD})
    assert response.status_code == 200
    return response.json()["token"]


@pytest.fixture
def invited(client, admin_token, notifier):
    """Invite ana@example.com and return the invitation token."""
    response = client.post(
        f"{API}/invite",
        json={"email": "ana@example.com", "role": "user", "name": "Ana Lopez"},
        headers=_auth(admin_token),
    )
    assert response.status_code == 201
    return notifier.last_token()


@pytest.fixture
def challenge_id(client, invited):
    response = client.post(f"{API}/setup-password", json={"token": invited, "password": PASSWORD})
    assert response.status_code == 200
    return response.json()["challengeId"]


# ============================================
# Onboarding & Login
# ============================================

class TestTotpFlow:

    def test_onboarding_and_login(self, client, challenge_id):
        response = client.post(f"{API}/select-mfa-method", json={"challengeId": challenge_id, "mfaMethod": "TOTP"})
        assert response.status_code == 200
        selection = response.json()
        assert selection["qrCode"].startswith("data:image/png;base64,")
        assert selection["otpAuthUrl"].startswith("otpauth://totp/")
        assert "options" not in selection
        totp = pyotp.TOTP(selection["secret"])

        response = client.post(
            f"{API}/verify-mfa-setup",
            json={"challengeId": selection["challengeId"], "code": totp.now()},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["user"]["mfa_enabled"] is True
        assert body["user"]["status"] == "active"
        assert "password_hash" not in body["user"]
        assert "mfa_secret" not in body["user"]

        me = client.get(f"{API}/me", headers=_auth(body["token"]))
        assert me.status_code == 200
        assert me.json()["email"] == "ana@example.com"

        response = client.post(f"{API}/login", json={"email": "ana@example.com", "password": PASSWORD})
        assert response.status_code == 200
        login = response.json()
        assert login["mfa_method"] == "TOTP"
        assert "token" not in login

        response = client.post(
            f"{API}/verify-login-mfa",
            json={"challengeId": login["challengeId"], "totpCode": totp.now()},
        )
        assert response.status_code == 200
        assert client.get(f"{API}/me", headers=_auth(response.json()["token"])).status_code == 200

    def test_login_before_mfa_setup(self, client, challenge_id):
        response = client.post(f"{API}/login", json={"email": "ana@example.com", "password": PASSWORD})
        assert response.status_code == 401
        assert response.json()["code"] == "MFA_SETUP_REQUIRED"

    def test_reused_invitation_token(self, client, invited, challenge_id):
        response = client.post(f"{API}/setup-password", json={"token": invited, "password": PASSWORD})
        assert response.status_code == 400
        assert response.json() == {
            "error": "Bad Request",
            "detail": "Invalid or expired token",
            "code": "INVITE_TOKEN_INVALID",
        }

    def test_reject_invitation(self, client, invited):
        response = client.post(f"{API}/invite/reject", json={"token": invited})
        assert response.status_code == 200

        response = client.post(f"{API}/setup-password", json={"token": invited, "password": PASSWORD})
        assert response.status_code == 400


class TestPasskeyFlow:

    def test_onboarding_and_login(self, client, challenge_id, authenticator):
        response = client.post(
            f"{API}/select-mfa-method", json={"challengeId": challenge_id, "mfaMethod": "PASSKEY"}
        )
        assert response.status_code == 200
        selection = response.json()
        assert selection["challengeId"] == challenge_id
        assert "secret" not in selection

        response = client.post(
            f"{API}/verify-mfa-setup",
            json={"challengeId": challenge_id, "credential": authenticator.create(selection["options"])},
        )
        assert response.status_code == 200
        assert response.json()["user"]["mfa_method"] == "PASSKEY"

        response = client.post(f"{API}/login", json={"email": "ana@example.com", "password": PASSWORD})
        login = response.json()
        assert login["mfa_method"] == "PASSKEY"

        response = client.post(
            f"{API}/verify-login-mfa",
            json={"challengeId": login["challengeId"], "credential": authenticator.get(login["options"])},
        )
        assert response.status_code == 200

        response = client.post(f"{API}/passkey-auth-options", json={"email": "ana@example.com"})
        assert response.status_code == 200
        package = authenticator.get(response.json()["options"])

        response = client.post(f"{API}/passkey-auth-verify", json={"email": "ana@example.com", "credential": package})
        assert response.status_code == 200
        assert response.json()["token"]

        response = client.post(f"{API}/passkey-auth-verify", json={"email": "ana@example.com", "credential": package})
        assert response.status_code == 401
        assert response.json()["code"] == "CHALLENGE_INVALID"

    def test_origin_mismatch_response(self, client, challenge_id, authenticator):
        options = client.post(
            f"{API}/select-mfa-method", json={"challengeId": challenge_id, "mfaMethod": "PASSKEY"}
        ).json()["options"]

        response = client.post(
            f"{API}/verify-mfa-setup",
            json={
                "challengeId": challenge_id,
                "credential": authenticator.create(options, origin="https://evil.example"),
            },
        )
        assert response.status_code == 400
        assert response.json()["code"] == "ORIGIN_MISMATCH"

    def test_options_for_user_without_passkey(self, client):
        response = client.post(f"{API}/passkey-auth-options", json={"email": "ghost@example.com"})
        assert response.status_code == 400
        assert response.json()["code"] == "NO_CREDENTIALS"


# ============================================
# Guards
# ============================================

class TestInviteGuards:

    def test_requires_token(self, client):
        response = client.post(f"{API}/invite", json={"email": "ana@example.com"})
        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_rejects_garbage_token(self, client):
        response = client.post(f"{API}/invite", json={"email": "ana@example.com"}, headers=_auth("garbage"))
        assert response.status_code == 401

    def test_requires_admin(self, client, services, totp_user, settings):
        from expense_tracker.auth.tokens import create_access_token

        totp_user(email="bo@example.com")
        user = services.db.get_user_by_email("bo@example.com")

        response = client.post(
            f"{API}/invite",
            json={"email": "ana@example.com"},
            headers=_auth(create_access_token(user["user_id"], settings)),
        )
        assert response.status_code == 403

    def test_resend_message(self, client, admin_token, invited):
        response = client.post(f"{API}/invite", json={"email": "ana@example.com"}, headers=_auth(admin_token))
        assert response.status_code == 201
        assert response.json()["message"] == "Invitation resent successfully"

    def test_mail_failure(self, client, admin_token, notifier):
        notifier.fail = True
        response = client.post(f"{API}/invite", json={"email": "ana@example.com"}, headers=_auth(admin_token))
        assert response.status_code == 502
        assert response.json()["code"] == "NOTIFICATION_FAILED"


class TestBootstrapGuard:

    @pytest.mark.parametrize("headers", [{}, {"X-Bootstrap-Key": "wrong"}])
    def test_bad_key(self, client, headers):
        response = client.post(
            f"{API}/signup-admin",
            json={"name": "Root", "username": "root", "email": "root@example.com", "password": PASSWORD},
            headers=headers,
        )
        assert response.status_code == 403

    def test_signup_returns_challenge(self, client):
        response = client.post(
            f"{API}/signup-admin",
            json={"name": "Root", "username": "root", "email": "root@example.com", "password": PASSWORD},
            headers=BOOTSTRAP,
        )
        body = response.json()
        assert response.status_code == 201
        assert body["challengeId"]
        assert body["user"]["role"] == "admin"


# ============================================
# Validation, Health & Headers
# ============================================

class TestErrorsAndHealth:

    def test_request_validation_shape(self, client):
        response = client.post(f"{API}/setup-password", json={"token": "abc", "password": "short"})
        assert response.status_code == 422
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert client.get("/health/live").json() == {"status": "alive"}
        assert client.get("/health/ready").json() == {"status": "ready"}

    def test_security_headers(self, client):
        response = client.get("/health/live")
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["Cache-Control"] == "no-store"
        assert response.headers["X-Request-ID"]
