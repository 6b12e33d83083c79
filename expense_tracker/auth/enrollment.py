"""
MFA enrollment: method selection and setup verification.

After the password is set the client holds a flow challenge. It picks a
method (select_method), completes the factor-specific step, then calls
verify_setup with the proof. Success enables MFA, activates the account and
returns a bearer token.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from ..database.auth_db import AuthDB
from ..utils.config import Settings
from .challenges import ChallengeManager
from .errors import (
    ChallengeInvalid,
    CredentialAlreadyRegistered,
    InvalidCredentials,
    MethodNotSelected,
    MfaAlreadyEnabled,
    ValidationError,
)
from .methods import MfaMethod, VerificationPurpose
from .mfa import TotpFactor
from .passkeys import PasskeyFactor
from .tokens import create_access_token

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MfaSubmission:
    """Second-factor proof, discriminated by method."""

    method: MfaMethod
    totp_code: Optional[str] = None
    credential: Optional[Dict[str, Any]] = None

    @classmethod
    def for_method(cls, method: MfaMethod, totp_code: Optional[str], credential: Optional[Dict]) -> "MfaSubmission":
        """
        Build the submission variant the user's configured method expects.

        Raises:
            MethodNotSelected: The user has no method configured.
            ValidationError: The proof for that method is missing.
        """
        if method == MfaMethod.TOTP:
            if not totp_code:
                raise ValidationError("TOTP code is required")
            return cls(method=method, totp_code=totp_code)
        if method == MfaMethod.PASSKEY:
            if not credential:
                raise ValidationError("Passkey credential is required")
            return cls(method=method, credential=credential)
        raise MethodNotSelected()


@dataclass
class MethodSelection:
    """Response to select_method. TOTP fills the secret fields, PASSKEY fills options."""

    challenge_id: str
    method: MfaMethod
    secret: Optional[str] = None
    qr_code: Optional[str] = None
    otpauth_url: Optional[str] = None
    options: Dict[str, Any] = field(default_factory=dict)


class MfaEnrollment:
    """Drive a freshly onboarded account through MFA setup."""

    def __init__(
        self,
        db: AuthDB,
        challenges: ChallengeManager,
        totp: TotpFactor,
        passkeys: PasskeyFactor,
        settings: Settings,
    ):
        self.db = db
        self.challenges = challenges
        self.totp = totp
        self.passkeys = passkeys
        self.settings = settings

    def _resolve_unenrolled(self, challenge_id: str) -> Dict:
        user = self.challenges.resolve(challenge_id)
        # A login challenge must not be usable to swap in a new factor.
        if user.get("mfa_enabled"):
            raise MfaAlreadyEnabled()
        return user

    def select_method(self, challenge_id: str, method: Any) -> MethodSelection:
        """
        Record the chosen method and start its enrollment.

        TOTP rotates the flow challenge; PASSKEY keeps it and returns
        registration options.
        """
        if not challenge_id:
            raise ValidationError("Challenge ID is required")
        chosen = MfaMethod.parse(method)
        if chosen == MfaMethod.NONE:
            raise ValidationError("Invalid MFA method. Must be TOTP or PASSKEY")

        user = self._resolve_unenrolled(challenge_id)

        if chosen == MfaMethod.TOTP:
            enrollment = self.totp.begin_enrollment(challenge_id)
            return MethodSelection(
                challenge_id=enrollment.challenge_id,
                method=chosen,
                secret=enrollment.secret,
                qr_code=enrollment.qr_code,
                otpauth_url=enrollment.otpauth_url,
            )

        self.db.set_mfa_method(user["user_id"], MfaMethod.PASSKEY.value)
        options = self.passkeys.begin_registration(user)
        return MethodSelection(challenge_id=challenge_id, method=chosen, options=options)

    def verify_setup(
        self,
        challenge_id: str,
        code: Optional[str] = None,
        credential: Optional[Dict] = None,
    ) -> Tuple[str, Dict]:
        """
        Check the enrollment proof and finish setup.

        Returns:
            Tuple of (bearer token, refreshed user dict).

        Raises:
            ValidationError: Missing challenge or proof.
            ChallengeInvalid: Unknown or consumed challenge, or it changed while
                the passkey was being verified.
            MethodNotSelected: No method chosen yet.
            InvalidCredentials: Wrong TOTP code.
            CeremonyMismatch, IncompleteCredential: Passkey registration failed.
            CredentialAlreadyRegistered: The passkey is already stored.
        """
        if not challenge_id:
            raise ValidationError("Challenge ID is required")
        if not code and not credential:
            raise ValidationError("A TOTP code or passkey credential is required")

        user = self._resolve_unenrolled(challenge_id)
        submission = MfaSubmission.for_method(MfaMethod.parse(user.get("mfa_method")), code, credential)

        if submission.method == MfaMethod.TOTP:
            verified, user = self.totp.verify(challenge_id, submission.totp_code, VerificationPurpose.ENROLLMENT)
            if not verified:
                raise InvalidCredentials("Invalid TOTP code. Please try again.")
        else:
            record = self.passkeys.verify_registration(user, submission.credential)
            try:
                enrolled = self.db.enroll_passkey(user["user_id"], challenge_id, record)
            except ValueError as e:
                raise CredentialAlreadyRegistered() from e
            if not enrolled:
                logger.warning(f"Flow challenge for user {user['user_id']} changed during passkey setup")
                raise ChallengeInvalid()

        logger.info(f"MFA setup completed for {user['email']} ({submission.method.value})")
        token = create_access_token(user["user_id"], self.settings)
        return token, self.db.get_user_by_id(user["user_id"])
