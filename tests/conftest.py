"""
Pytest configuration and shared fixtures for the auth service tests.

This module provides common test fixtures for:
- Settings and a SQLite-backed AuthDB
- A recording invitation notifier
- Wired auth services and a FastAPI test client
- A software passkey authenticator
- Accounts at each onboarding stage
"""
import json
import os
import struct
import hashlib
from types import SimpleNamespace
from urllib.parse import parse_qs, urlparse

import cbor2
import pyotp
import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from fastapi.testclient import TestClient
from webauthn.helpers import bytes_to_base64url

from expense_tracker.auth.challenges import ChallengeManager
from expense_tracker.auth.enrollment import MfaEnrollment
from expense_tracker.auth.errors import NotificationFailure
from expense_tracker.auth.login import LoginOrchestrator
from expense_tracker.auth.mfa import TotpFactor
from expense_tracker.auth.passkeys import PasskeyFactor
from expense_tracker.auth.passwords import PasswordLifecycle
from expense_tracker.database.auth_db import AuthDB
from expense_tracker.utils.config import Settings

RP_ID = "localhost"
ORIGIN = "http://localhost:5173"
PASSWORD = "correct-horse-battery"


# ============================================
# Configuration & Database Fixtures
# ============================================

@pytest.fixture
def settings():
    """Test settings: fast bcrypt, fixed signing key, bootstrap enabled."""
    return Settings(
        jwt_secret="test-signing-key-0123456789abcdef0123456789",
        rp_id=RP_ID,
        expected_origin=ORIGIN,
        frontend_app_url=ORIGIN,
        bcrypt_rounds=4,
        bootstrap_key="bootstrap-test-key",
    )


@pytest.fixture
def db(tmp_path):
    """AuthDB on a throwaway SQLite file."""
    auth_db = AuthDB(f"sqlite:///{tmp_path / 'auth.db'}")
    auth_db.init_schema()
    yield auth_db
    auth_db.engine.dispose()


class RecordingNotifier:
    """Keeps invitations in memory instead of emailing them."""

    def __init__(self):
        self.sent = []
        self.fail = False

    def send_invitation(self, email, invite_link, role, inviter_name=None):
        if self.fail:
            raise NotificationFailure()
        self.sent.append({"email": email, "link": invite_link, "role": role, "inviter": inviter_name})

    def last_token(self):
        return parse_qs(urlparse(self.sent[-1]["link"]).query)["token"][0]


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def services(db, settings, notifier):
    """All auth services wired against the test database."""
    challenges = ChallengeManager(db, settings)
    passwords = PasswordLifecycle(db, challenges, notifier, settings)
    totp = TotpFactor(db, challenges, settings)
    passkeys = PasskeyFactor(db, settings)
    return SimpleNamespace(
        db=db,
        challenges=challenges,
        passwords=passwords,
        totp=totp,
        passkeys=passkeys,
        enrollment=MfaEnrollment(db, challenges, totp, passkeys, settings),
        login=LoginOrchestrator(db, passwords, challenges, totp, passkeys, settings),
    )


@pytest.fixture
def client(db, settings, notifier):
    """Test client with database, settings and notifier overridden."""
    from expense_tracker.api.main import app
    from expense_tracker.api.deps import get_db, get_notifier, get_settings

    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_notifier] = lambda: notifier

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


# ============================================
# Passkey Authenticator
# ============================================

class SoftwareAuthenticator:
    """
    Minimal platform authenticator: one P-256 credential, "none" attestation.

    create() and get() return the JSON a browser would send after
    navigator.credentials.create() / get().
    """

    def __init__(self, rp_id=RP_ID, origin=ORIGIN):
        self.rp_id = rp_id
        self.origin = origin
        self.private_key = ec.generate_private_key(ec.SECP256R1())
        self.credential_id = os.urandom(32)
        self.sign_count = 0

    def _cose_public_key(self):
        numbers = self.private_key.public_key().public_numbers()
        return cbor2.dumps({
            1: 2,    # kty: EC2
            3: -7,   # alg: ES256
            -1: 1,   # crv: P-256
            -2: numbers.x.to_bytes(32, "big"),
            -3: numbers.y.to_bytes(32, "big"),
        })

    def _client_data(self, ceremony, challenge, origin):
        return json.dumps({
            "type": ceremony,
            "challenge": challenge,
            "origin": origin or self.origin,
            "crossOrigin": False,
        }).encode("utf-8")

    def _rp_id_hash(self):
        return hashlib.sha256(self.rp_id.encode("utf-8")).digest()

    def create(self, options, origin=None, challenge=None):
        client_data = self._client_data("webauthn.create", challenge or options["challenge"], origin)
        auth_data = (
            self._rp_id_hash()
            + bytes([0x41])  # UP | AT
            + struct.pack(">I", self.sign_count)
            + bytes(16)      # AAGUID
            + struct.pack(">H", len(self.credential_id))
            + self.credential_id
            + self._cose_public_key()
        )
        attestation = cbor2.dumps({"fmt": "none", "attStmt": {}, "authData": auth_data})
        credential_id = bytes_to_base64url(self.credential_id)
        return {
            "id": credential_id,
            "rawId": credential_id,
            "type": "public-key",
            "response": {
                "clientDataJSON": bytes_to_base64url(client_data),
                "attestationObject": bytes_to_base64url(attestation),
                "transports": ["internal"],
            },
            "clientExtensionResults": {},
            "authenticatorAttachment": "platform",
        }

    def get(self, options, origin=None, challenge=None):
        self.sign_count += 1
        client_data = self._client_data("webauthn.get", challenge or options["challenge"], origin)
        auth_data = self._rp_id_hash() + bytes([0x01]) + struct.pack(">I", self.sign_count)
        signature = self.private_key.sign(
            auth_data + hashlib.sha256(client_data).digest(),
            ec.ECDSA(hashes.SHA256()),
        )
        credential_id = bytes_to_base64url(self.credential_id)
        return {
            "id": credential_id,
            "rawId": credential_id,
            "type": "public-key",
            "response": {
                "clientDataJSON": bytes_to_base64url(client_data),
                "authenticatorData": bytes_to_base64url(auth_data),
                "signature": bytes_to_base64url(signature),
            },
            "clientExtensionResults": {},
            "authenticatorAttachment": "platform",
        }


@pytest.fixture
def authenticator():
    return SoftwareAuthenticator()


# ============================================
# Account Fixtures
# ============================================

@pytest.fixture
def invite(services, notifier):
    """Invite an email and return its invitation token."""
    def _invite(email="ana@example.com", role="user", name="Ana Lopez"):
        services.passwords.invite(email, role=role, name=name)
        return notifier.last_token()
    return _invite


@pytest.fixture
def onboarded(services, invite):
    """Invite + set password; returns (email, challenge_id)."""
    def _onboarded(email="ana@example.com", role="user"):
        token = invite(email=email, role=role)
        return email, services.passwords.set_password(token, PASSWORD)
    return _onboarded


@pytest.fixture
def totp_user(services, onboarded):
    """Fully enrolled TOTP account: dict with email, password and secret."""
    def _totp_user(email="ana@example.com", role="user"):
        email, challenge_id = onboarded(email=email, role=role)
        selection = services.enrollment.select_method(challenge_id, "TOTP")
        services.enrollment.verify_setup(selection.challenge_id, code=pyotp.TOTP(selection.secret).now())
        return {"email": email, "password": PASSWORD, "secret": selection.secret}
    return _totp_user


@pytest.fixture
def passkey_user(services, onboarded, authenticator):
    """Fully enrolled passkey account using the shared authenticator."""
    def _passkey_user(email="ana@example.com", role="user"):
        email, challenge_id = onboarded(email=email, role=role)
        selection = services.enrollment.select_method(challenge_id, "PASSKEY")
        services.enrollment.verify_setup(selection.challenge_id, credential=authenticator.create(selection.options))
        return {"email": email, "password": PASSWORD}
    return _passkey_user
