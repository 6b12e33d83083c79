"""
Tests for the passkey factor.

Runs real WebAuthn ceremonies against a software authenticator.

Covers:
- Registration and assertion
- Challenge, origin and relying party binding
- Signature counter replay protection
- Credential id encodings
- Terminal failures
"""
import base64
import hashlib
import os
from dataclasses import replace

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from webauthn.helpers.exceptions import InvalidAuthenticationResponse

from expense_tracker.auth.encoding import to_bytes, to_text
from expense_tracker.auth.errors import (
    ChallengeInvalid,
    ChallengeMismatch,
    CredentialAlreadyRegistered,
    CredentialNotFound,
    IncompleteCredential,
    InvalidCredentials,
    NoCredentials,
    OriginMismatch,
    RelyingPartyMismatch,
    ReplayDetected,
)
from expense_tracker.auth.passkeys import PasskeyFactor, counter_accepted

from conftest import SoftwareAuthenticator


def _stored_credentials(db, email):
    return db.get_user_by_email(email)["webauthn_credentials"]


def _resign(package):
    """Replace the assertion signature with one from an unrelated key."""
    response = package["response"]
    signed = to_bytes(response["authenticatorData"]) + hashlib.sha256(to_bytes(response["clientDataJSON"])).digest()
    signature = ec.generate_private_key(ec.SECP256R1()).sign(signed, ec.ECDSA(hashes.SHA256()))
    return dict(package, response=dict(response, signature=to_text(signature)))


def _to_standard_base64(package):
    def std(value):
        return base64.b64encode(to_bytes(value)).decode()

    response = {k: std(v) for k, v in package["response"].items()}
    return dict(package, id=std(package["id"]), rawId=std(package["rawId"]), response=response)


# ============================================
# Registration
# ============================================

class TestRegistration:

    def test_registration_stores_canonical_record(self, services, passkey_user, authenticator, db):
        account = passkey_user()

        user = db.get_user_by_email(account["email"])
        assert user["mfa_enabled"] is True
        assert user["mfa_method"] == "PASSKEY"
        assert user["status"] == "active"
        assert user["webauthn_challenge"] is None
        assert user["mfa_secret"] is None

        [record] = user["webauthn_credentials"]
        assert record["credential_id"] == to_text(authenticator.credential_id)
        assert to_bytes(record["public_key"])
        assert record["counter"] == 0
        assert record["created_at"]

    def test_registration_options(self, services, onboarded, settings):
        _, challenge_id = onboarded()
        options = services.enrollment.select_method(challenge_id, "PASSKEY").options

        assert options["rp"] == {"id": settings.rp_id, "name": settings.rp_name}
        assert options["user"]["name"] == "ana@example.com"
        assert options["attestation"] == "none"
        assert options["authenticatorSelection"]["authenticatorAttachment"] == "platform"
        assert options.get("excludeCredentials", []) == []

    def test_wrong_origin_is_terminal(self, services, onboarded, authenticator, db):
        email, challenge_id = onboarded()
        options = services.enrollment.select_method(challenge_id, "PASSKEY").options

        with pytest.raises(OriginMismatch):
            services.enrollment.verify_setup(
                challenge_id, credential=authenticator.create(options, origin="https://evil.example")
            )

        assert db.get_user_by_email(email)["webauthn_challenge"] is None
        with pytest.raises(ChallengeInvalid):
            services.enrollment.verify_setup(challenge_id, credential=authenticator.create(options))

    def test_wrong_challenge(self, services, onboarded, authenticator):
        _, challenge_id = onboarded()
        options = services.enrollment.select_method(challenge_id, "PASSKEY").options

        with pytest.raises(ChallengeMismatch):
            services.enrollment.verify_setup(
                challenge_id, credential=authenticator.create(options, challenge=to_text(os.urandom(32)))
            )

    def test_wrong_relying_party(self, services, onboarded):
        _, challenge_id = onboarded()
        options = services.enrollment.select_method(challenge_id, "PASSKEY").options

        with pytest.raises(RelyingPartyMismatch):
            services.enrollment.verify_setup(
                challenge_id, credential=SoftwareAuthenticator(rp_id="evil.example").create(options)
            )

    def test_restart_after_failure(self, services, onboarded, authenticator, db):
        email, challenge_id = onboarded()
        options = services.enrollment.select_method(challenge_id, "PASSKEY").options
        with pytest.raises(ChallengeMismatch):
            services.enrollment.verify_setup(
                challenge_id, credential=authenticator.create(options, challenge=to_text(os.urandom(32)))
            )

        options = services.enrollment.select_method(challenge_id, "PASSKEY").options
        token, user = services.enrollment.verify_setup(challenge_id, credential=authenticator.create(options))

        assert token
        assert user["mfa_enabled"] is True

    def test_incomplete_package_is_terminal(self, services, onboarded, db):
        email, challenge_id = onboarded()
        services.enrollment.select_method(challenge_id, "PASSKEY")

        with pytest.raises(IncompleteCredential):
            services.enrollment.verify_setup(challenge_id, credential={"id": to_text(os.urandom(16))})

        assert db.get_user_by_email(email)["webauthn_challenge"] is None

    def test_duplicate_credential(self, services, passkey_user, authenticator, db):
        account = passkey_user()
        user = db.get_user_by_email(account["email"])

        options = services.passkeys.begin_registration(user)
        assert options["excludeCredentials"][0]["id"] == to_text(authenticator.credential_id)

        with pytest.raises(CredentialAlreadyRegistered):
            services.passkeys.complete_registration(
                db.get_user_by_email(account["email"]), authenticator.create(options)
            )
        assert len(_stored_credentials(db, account["email"])) == 1

    def test_method_switch_during_verification_stores_nothing(self, services, onboarded, authenticator, db, monkeypatch):
        email, challenge_id = onboarded()
        options = services.enrollment.select_method(challenge_id, "PASSKEY").options
        verify_registration = services.passkeys.verify_registration

        def verify_then_switch(user, credential):
            record = verify_registration(user, credential)
            services.enrollment.select_method(challenge_id, "TOTP")
            return record

        monkeypatch.setattr(services.passkeys, "verify_registration", verify_then_switch)
        with pytest.raises(ChallengeInvalid):
            services.enrollment.verify_setup(challenge_id, credential=authenticator.create(options))

        user = db.get_user_by_email(email)
        assert user["webauthn_credentials"] == []
        assert user["mfa_enabled"] is False
        assert user["mfa_method"] == "TOTP"

    def test_enroll_duplicate_keeps_challenge(self, onboarded, db):
        email, challenge_id = onboarded()
        user_id = db.get_user_by_email(email)["user_id"]
        record = {"credential_id": "Y3JlZA", "public_key": "a2V5", "counter": 0}
        assert db.add_webauthn_credential(user_id, record)

        with pytest.raises(ValueError):
            db.enroll_passkey(user_id, challenge_id, record)

        user = db.get_user_by_email(email)
        assert user["challenge_id"] == challenge_id
        assert user["mfa_enabled"] is False
        assert len(user["webauthn_credentials"]) == 1


# ============================================
# Assertion
# ============================================

class TestAssertion:

    def test_register_then_assert(self, services, passkey_user, authenticator, db):
        account = passkey_user()

        options = services.passkeys.begin_assertion(account["email"])
        assert options["allowCredentials"][0]["id"] == to_text(authenticator.credential_id)
        assert options["rpId"] == "localhost"

        user = services.passkeys.complete_assertion(account["email"], authenticator.get(options))

        assert user["email"] == account["email"]
        assert _stored_credentials(db, account["email"])[0]["counter"] == 1
        assert db.get_user_by_email(account["email"])["webauthn_challenge"] is None

    def test_counter_advances_each_login(self, services, passkey_user, authenticator, db):
        account = passkey_user()
        for _ in range(3):
            options = services.passkeys.begin_assertion(account["email"])
            services.passkeys.complete_assertion(account["email"], authenticator.get(options))

        assert _stored_credentials(db, account["email"])[0]["counter"] == 3

    def test_identical_package_replay_fails(self, services, passkey_user, authenticator):
        account = passkey_user()
        options = services.passkeys.begin_assertion(account["email"])
        package = authenticator.get(options)
        services.passkeys.complete_assertion(account["email"], package)

        with pytest.raises(ChallengeInvalid):
            services.passkeys.complete_assertion(account["email"], package)

    def test_captured_package_against_new_challenge(self, services, passkey_user, authenticator):
        account = passkey_user()
        options = services.passkeys.begin_assertion(account["email"])
        package = authenticator.get(options)
        services.passkeys.complete_assertion(account["email"], package)

        services.passkeys.begin_assertion(account["email"])
        with pytest.raises(ChallengeMismatch):
            services.passkeys.complete_assertion(account["email"], package)

    def test_cloned_authenticator_detected(self, services, passkey_user, authenticator, db):
        account = passkey_user()
        options = services.passkeys.begin_assertion(account["email"])
        services.passkeys.complete_assertion(account["email"], authenticator.get(options))

        authenticator.sign_count = 0
        options = services.passkeys.begin_assertion(account["email"])
        with pytest.raises(ReplayDetected):
            services.passkeys.complete_assertion(account["email"], authenticator.get(options))

        assert _stored_credentials(db, account["email"])[0]["counter"] == 1
        assert db.get_user_by_email(account["email"])["webauthn_challenge"] is None

    def test_zero_counter_authenticator(self, services, passkey_user, authenticator, settings, db):
        account = passkey_user()
        options = services.passkeys.begin_assertion(account["email"])
        authenticator.sign_count = -1
        with pytest.raises(ReplayDetected):
            services.passkeys.complete_assertion(account["email"], authenticator.get(options))

        lenient = PasskeyFactor(db, replace(settings, passkey_strict_counter=False))
        options = lenient.begin_assertion(account["email"])
        authenticator.sign_count = -1
        assert lenient.complete_assertion(account["email"], authenticator.get(options))["email"] == account["email"]
        assert _stored_credentials(db, account["email"])[0]["counter"] == 0

    def test_wrong_origin(self, services, passkey_user, authenticator):
        account = passkey_user()
        options = services.passkeys.begin_assertion(account["email"])
        with pytest.raises(OriginMismatch):
            services.passkeys.complete_assertion(
                account["email"], authenticator.get(options, origin="https://evil.example")
            )

    def test_wrong_relying_party(self, services, passkey_user, authenticator):
        account = passkey_user()
        options = services.passkeys.begin_assertion(account["email"])
        authenticator.rp_id = "evil.example"
        with pytest.raises(RelyingPartyMismatch):
            services.passkeys.complete_assertion(account["email"], authenticator.get(options))

    def test_forged_signature(self, services, passkey_user, authenticator, db):
        account = passkey_user()
        options = services.passkeys.begin_assertion(account["email"])

        with pytest.raises(InvalidCredentials):
            services.passkeys.complete_assertion(account["email"], _resign(authenticator.get(options)))
        assert _stored_credentials(db, account["email"])[0]["counter"] == 0

    def test_library_rejection_is_invalid_credentials(self, services, passkey_user, authenticator, monkeypatch):
        account = passkey_user()
        options = services.passkeys.begin_assertion(account["email"])

        def reject(**kwargs):
            raise InvalidAuthenticationResponse("Unexpected failure")

        monkeypatch.setattr("expense_tracker.auth.passkeys.verify_authentication_response", reject)
        with pytest.raises(InvalidCredentials):
            services.passkeys.complete_assertion(account["email"], authenticator.get(options))

    @pytest.mark.parametrize("new,current,strict,accepted", [
        (2, 1, True, True),
        (1, 1, True, False),
        (0, 0, True, False),
        (0, 0, False, True),
        (3, 3, False, False),
        (0, 5, False, False),
    ])
    def test_counter_rule(self, new, current, strict, accepted):
        assert counter_accepted(new, current, strict) is accepted

    def test_unknown_credential(self, services, passkey_user):
        account = passkey_user()
        options = services.passkeys.begin_assertion(account["email"])
        with pytest.raises(CredentialNotFound):
            services.passkeys.complete_assertion(account["email"], SoftwareAuthenticator().get(options))

    def test_standard_base64_package_accepted(self, services, passkey_user, authenticator, db):
        account = passkey_user()
        options = services.passkeys.begin_assertion(account["email"])

        services.passkeys.complete_assertion(account["email"], _to_standard_base64(authenticator.get(options)))

        assert _stored_credentials(db, account["email"])[0]["counter"] == 1

    def test_no_credentials(self, services, totp_user):
        account = totp_user()
        with pytest.raises(NoCredentials):
            services.passkeys.begin_assertion(account["email"])
        with pytest.raises(NoCredentials):
            services.passkeys.begin_assertion("ghost@example.com")
