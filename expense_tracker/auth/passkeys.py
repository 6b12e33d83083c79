"""
Passkey (WebAuthn) second factor.

Registration and assertion ceremonies through py_webauthn. The ceremony
challenge is stored on the user row as ``webauthn_challenge`` and cleared
with a compare-and-clear once a response verifies, so one challenge can
back at most one successful ceremony.

Stored credential records::

    {
        "credential_id": "<base64url>",
        "public_key": "<base64url COSE key>",
        "counter": 0,
        "transports": ["internal"],
        "created_at": "2026-01-01T00:00:00+00:00"
    }
"""
import json
import hashlib
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import parse_attestation_object, parse_authenticator_data
from webauthn.helpers.exceptions import (
    InvalidAuthenticationResponse,
    InvalidRegistrationResponse,
    WebAuthnException,
)
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorAttachment,
    AuthenticatorSelectionCriteria,
    AuthenticatorTransport,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from ..database.auth_db import AuthDB
from ..utils.config import Settings
from .encoding import normalize_credential_package, to_bytes, to_text
from .errors import (
    CeremonyMismatch,
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
from .methods import MfaMethod

logger = logging.getLogger(__name__)

DEFAULT_TRANSPORTS = [AuthenticatorTransport.INTERNAL, AuthenticatorTransport.HYBRID]


def counter_accepted(new_counter: int, current_counter: int, strict: bool) -> bool:
    """
    Signature counter rule.

    The counter must advance. Only when strict is off may an authenticator
    that always reports 0 stay at 0.
    """
    if new_counter > current_counter:
        return True
    return not strict and new_counter == current_counter == 0


def _parse_transports(values: Optional[List[str]]) -> List[AuthenticatorTransport]:
    transports = []
    for value in values or []:
        try:
            transports.append(AuthenticatorTransport(value))
        except ValueError:
            continue
    return transports or list(DEFAULT_TRANSPORTS)


class PasskeyFactor:
    """WebAuthn registration and assertion for one relying party."""

    def __init__(self, db: AuthDB, settings: Settings):
        self.db = db
        self.settings = settings

    # ============================================
    # Helpers
    # ============================================

    def _descriptors(self, user: Dict) -> List[PublicKeyCredentialDescriptor]:
        descriptors = []
        for record in user.get("webauthn_credentials") or []:
            try:
                credential_id = to_bytes(record["credential_id"])
            except (KeyError, ValueError):
                logger.warning(f"Skipping unreadable passkey record for user {user['user_id']}")
                continue
            descriptors.append(
                PublicKeyCredentialDescriptor(
                    id=credential_id,
                    transports=_parse_transports(record.get("transports")),
                )
            )
        return descriptors

    def _check_client_data(self, package: Dict, expected_challenge: str) -> None:
        """
        Compare the signed client data with what this ceremony expects.

        Done before the library call so each mismatch gets its own error.
        """
        try:
            client_data = json.loads(to_bytes(package["response"]["clientDataJSON"]))
            challenge = to_bytes(client_data["challenge"])
            origin = client_data["origin"]
        except (KeyError, TypeError, ValueError) as e:
            raise IncompleteCredential("Passkey client data is missing or malformed") from e

        if challenge != to_bytes(expected_challenge):
            logger.warning("Passkey response signed a different challenge")
            raise ChallengeMismatch()
        if origin != self.settings.expected_origin:
            logger.warning(f"Passkey response from unexpected origin {origin!r}")
            raise OriginMismatch()

    def _check_rp_id_hash(self, rp_id_hash: bytes) -> None:
        if rp_id_hash != hashlib.sha256(self.settings.rp_id.encode("utf-8")).digest():
            logger.warning("Passkey response scoped to another relying party")
            raise RelyingPartyMismatch()

    def _registration_auth_data(self, package: Dict):
        try:
            return parse_attestation_object(to_bytes(package["response"]["attestationObject"])).auth_data
        except (WebAuthnException, KeyError, TypeError, ValueError) as e:
            raise IncompleteCredential("Passkey attestation is missing or malformed") from e

    def _assertion_auth_data(self, package: Dict):
        try:
            return parse_authenticator_data(to_bytes(package["response"]["authenticatorData"]))
        except (WebAuthnException, KeyError, TypeError, ValueError) as e:
            raise IncompleteCredential("Passkey authenticator data is missing or malformed") from e

    # ============================================
    # Registration
    # ============================================

    def begin_registration(self, user: Dict) -> Dict[str, Any]:
        """
        Start a registration ceremony for a platform authenticator.

        Returns:
            PublicKeyCredentialCreationOptions as a JSON-ready dict.
        """
        options = generate_registration_options(
            rp_id=self.settings.rp_id,
            rp_name=self.settings.rp_name,
            user_id=user["user_id"].encode("utf-8"),
            user_name=user["email"],
            user_display_name=user.get("name") or user["email"],
            attestation=AttestationConveyancePreference.NONE,
            authenticator_selection=AuthenticatorSelectionCriteria(
                authenticator_attachment=AuthenticatorAttachment.PLATFORM,
                resident_key=ResidentKeyRequirement.PREFERRED,
                user_verification=UserVerificationRequirement.PREFERRED,
            ),
            exclude_credentials=self._descriptors(user),
        )
        self.db.set_webauthn_challenge(user["user_id"], to_text(options.challenge))
        logger.info(f"Passkey registration options generated for {user['email']}")
        return json.loads(options_to_json(options))

    def _verify_attestation(self, user: Dict, credential: Any, expected: str) -> Dict:
        package = normalize_credential_package(credential)
        self._check_client_data(package, expected)
        self._check_rp_id_hash(self._registration_auth_data(package).rp_id_hash)

        try:
            verification = verify_registration_response(
                credential=package,
                expected_challenge=to_bytes(expected),
                expected_origin=self.settings.expected_origin,
                expected_rp_id=self.settings.rp_id,
                require_user_verification=False,
            )
        except InvalidRegistrationResponse as e:
            logger.warning(f"Passkey registration rejected for {user['email']}: {e}")
            raise CeremonyMismatch() from e
        except (WebAuthnException, KeyError, TypeError, ValueError) as e:
            raise IncompleteCredential() from e

        if not verification.credential_id or not verification.credential_public_key:
            raise IncompleteCredential()

        return {
            "credential_id": to_text(verification.credential_id),
            "public_key": to_text(verification.credential_public_key),
            "counter": verification.sign_count or 0,
            "transports": package["response"].get("transports") or [],
            "created_at": datetime.now(timezone.utc).isoformat(),
        }

    def verify_registration(self, user: Dict, credential: Any) -> Dict:
        """
        Verify an attestation response and consume the ceremony challenge.

        Nothing is stored; the caller persists the returned record. A failed
        verification also discards the ceremony challenge, so the client has
        to request new options.

        Returns:
            The credential record to store.

        Raises:
            ChallengeInvalid: No registration ceremony is pending.
            ChallengeMismatch, OriginMismatch, RelyingPartyMismatch: The
                response belongs to another ceremony, site or relying party.
            IncompleteCredential: The package is malformed.
        """
        expected = user.get("webauthn_challenge")
        if not expected:
            raise ChallengeInvalid("No passkey challenge found. Please restart the setup process.")

        try:
            record = self._verify_attestation(user, credential, expected)
        except (CeremonyMismatch, IncompleteCredential):
            self.db.clear_webauthn_challenge(user["user_id"], expected)
            raise

        if not self.db.clear_webauthn_challenge(user["user_id"], expected):
            raise ChallengeInvalid("Passkey challenge was already used. Please restart the setup process.")
        return record

    def complete_registration(self, user: Dict, credential: Any) -> Dict:
        """
        Verify an attestation response and add the credential to the user.

        Raises:
            CredentialAlreadyRegistered: The credential id is already stored.
            Everything verify_registration raises.
        """
        record = self.verify_registration(user, credential)
        if not self.db.add_webauthn_credential(user["user_id"], record):
            raise CredentialAlreadyRegistered()

        logger.info(f"Passkey registered for {user['email']}")
        return record

    # ============================================
    # Assertion
    # ============================================

    def begin_assertion_for(self, user: Dict) -> Dict[str, Any]:
        """
        Start an assertion ceremony limited to the user's credentials.

        Raises:
            NoCredentials: Passkey MFA is not enabled or no credential is usable.
        """
        if not user.get("mfa_enabled") or MfaMethod.parse(user.get("mfa_method")) != MfaMethod.PASSKEY:
            raise NoCredentials()

        descriptors = self._descriptors(user)
        if not descriptors:
            raise NoCredentials("No passkey credentials found for this user")

        options = generate_authentication_options(
            rp_id=self.settings.rp_id,
            allow_credentials=descriptors,
            user_verification=UserVerificationRequirement.PREFERRED,
        )
        self.db.set_webauthn_challenge(user["user_id"], to_text(options.challenge))
        return json.loads(options_to_json(options))

    def begin_assertion(self, email: str) -> Dict[str, Any]:
        """Assertion options by email. Unknown emails look like users without passkeys."""
        user = self.db.get_user_by_email(email) if email else None
        if user is None:
            raise NoCredentials()
        return self.begin_assertion_for(user)

    def _verify_signature(self, user: Dict, credential: Any, expected: str) -> Tuple[Dict, int]:
        package = normalize_credential_package(credential)
        stored = next(
            (
                record for record in user.get("webauthn_credentials") or []
                if record.get("credential_id") == package["rawId"]
            ),
            None,
        )
        if stored is None:
            logger.warning(f"Unknown passkey presented for {user['email']}")
            raise CredentialNotFound()

        self._check_client_data(package, expected)
        auth_data = self._assertion_auth_data(package)
        self._check_rp_id_hash(auth_data.rp_id_hash)

        current_counter = int(stored.get("counter", 0))
        new_counter = auth_data.sign_count
        if not counter_accepted(new_counter, current_counter, self.settings.passkey_strict_counter):
            logger.warning(f"Passkey counter did not advance for {user['email']}")
            raise ReplayDetected()

        try:
            verification = verify_authentication_response(
                credential=package,
                expected_challenge=to_bytes(expected),
                expected_rp_id=self.settings.rp_id,
                expected_origin=self.settings.expected_origin,
                credential_public_key=to_bytes(stored["public_key"]),
                credential_current_sign_count=current_counter,
                require_user_verification=False,
            )
        except InvalidAuthenticationResponse as e:
            # Binding and counter are checked above; what is left is the signature.
            logger.warning(f"Passkey assertion rejected for {user['email']}: {e}")
            raise InvalidCredentials("Passkey signature verification failed") from e
        except (WebAuthnException, KeyError, TypeError, ValueError) as e:
            raise IncompleteCredential() from e

        return stored, verification.new_sign_count

    def verify_assertion(self, user: Dict, credential: Any) -> Dict:
        """
        Verify an assertion and advance the credential's signature counter.

        Any failure discards the ceremony challenge.

        Returns:
            The matched credential record with its new counter.

        Raises:
            ChallengeInvalid: No assertion ceremony is pending, or it was used.
            CredentialNotFound: The credential is not one of the user's.
            CeremonyMismatch: Challenge, origin or relying party mismatch.
            InvalidCredentials: Bad signature.
            ReplayDetected: The counter did not advance.
        """
        expected = user.get("webauthn_challenge")
        if not expected:
            raise ChallengeInvalid("No passkey challenge found. Please request new options.")

        try:
            stored, new_counter = self._verify_signature(user, credential, expected)
        except (CeremonyMismatch, CredentialNotFound, IncompleteCredential, InvalidCredentials, ReplayDetected):
            self.db.clear_webauthn_challenge(user["user_id"], expected)
            raise

        if not self.db.clear_webauthn_challenge(user["user_id"], expected):
            raise ChallengeInvalid("Passkey challenge was already used. Please request new options.")
        if not self.db.update_webauthn_counter(
            user["user_id"],
            stored["credential_id"],
            new_counter,
            strict=self.settings.passkey_strict_counter,
        ):
            raise ReplayDetected()

        return dict(stored, counter=new_counter)

    def complete_assertion(self, email: str, credential: Any) -> Dict:
        """
        Verify an assertion for the account behind email.

        Returns:
            The user dict.
        """
        user = self.db.get_user_by_email(email) if email else None
        if user is None:
            raise CredentialNotFound()
        if not user.get("mfa_enabled") or MfaMethod.parse(user.get("mfa_method")) != MfaMethod.PASSKEY:
            raise NoCredentials()

        self.verify_assertion(user, credential)
        logger.info(f"Passkey assertion verified for {user['email']}")
        return user
