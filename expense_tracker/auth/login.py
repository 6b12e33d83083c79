"""
Login orchestration.

    password ok ──► privileged & MFA off ──► token (pending → active)
         │
         ├──► MFA off ──► MfaSetupRequired
         │
         └──► MFA on ──► flow challenge + method
                              │
                              └──► TOTP code / passkey assertion ──► token
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from ..database.auth_db import AuthDB
from ..utils.config import Settings
from .challenges import ChallengeManager
from .enrollment import MfaSubmission
from .errors import AccountDisabled, InvalidCredentials, MfaNotEnabled, MfaSetupRequired, ValidationError
from .methods import MfaMethod, VerificationPurpose
from .mfa import TotpFactor
from .passkeys import PasskeyFactor
from .passwords import PasswordLifecycle
from .tokens import create_access_token

logger = logging.getLogger(__name__)


@dataclass
class LoginOutcome:
    """Either a token (login finished) or a challenge (second factor needed)."""

    user: Dict
    token: Optional[str] = None
    challenge_id: Optional[str] = None
    mfa_method: Optional[MfaMethod] = None
    options: Optional[Dict[str, Any]] = None

    @property
    def requires_mfa(self) -> bool:
        return self.token is None


class LoginOrchestrator:
    """Decide per login attempt between an immediate token and an MFA step."""

    def __init__(
        self,
        db: AuthDB,
        passwords: PasswordLifecycle,
        challenges: ChallengeManager,
        totp: TotpFactor,
        passkeys: PasskeyFactor,
        settings: Settings,
    ):
        self.db = db
        self.passwords = passwords
        self.challenges = challenges
        self.totp = totp
        self.passkeys = passkeys
        self.settings = settings

    def _issue_token(self, user: Dict) -> Tuple[str, Dict]:
        self.db.update_last_login(user["user_id"])
        token = create_access_token(user["user_id"], self.settings)
        return token, self.db.get_user_by_id(user["user_id"])

    def login(self, email: str, password: str) -> LoginOutcome:
        """
        First login step.

        Raises:
            InvalidCredentials: Unknown email or wrong password.
            MfaSetupRequired: Non-privileged account without MFA.
        """
        user = self.passwords.verify_password(email, password)

        if not user["mfa_enabled"]:
            if not self.settings.is_privileged(user["role"]):
                logger.info(f"Login refused for {user['email']}: MFA not set up")
                raise MfaSetupRequired()
            if user["status"] == "pending":
                self.db.update_status(user["user_id"], "active")
            token, user = self._issue_token(user)
            logger.info(f"Privileged login without MFA for {user['email']}")
            return LoginOutcome(user=user, token=token)

        method = MfaMethod.parse(user.get("mfa_method"))
        challenge_id = self.challenges.issue(user["user_id"])
        options = None
        if method == MfaMethod.PASSKEY:
            options = self.passkeys.begin_assertion_for(user)

        logger.info(f"Password accepted for {user['email']}, awaiting {method.value}")
        return LoginOutcome(user=user, challenge_id=challenge_id, mfa_method=method, options=options)

    def verify_login_mfa(
        self,
        challenge_id: str,
        totp_code: Optional[str] = None,
        credential: Optional[Dict] = None,
    ) -> Tuple[str, Dict]:
        """
        Second login step.

        Returns:
            Tuple of (bearer token, user dict).
        """
        if not challenge_id:
            raise ValidationError("Challenge ID is required")
        if not totp_code and not credential:
            raise ValidationError("A TOTP code or passkey credential is required")

        user = self.challenges.resolve(challenge_id)
        if not user["mfa_enabled"]:
            raise MfaNotEnabled()

        submission = MfaSubmission.for_method(MfaMethod.parse(user.get("mfa_method")), totp_code, credential)
        if submission.method == MfaMethod.TOTP:
            verified, user = self.totp.verify(challenge_id, submission.totp_code, VerificationPurpose.LOGIN)
            if not verified:
                raise InvalidCredentials("Invalid TOTP code")
        else:
            self.passkeys.verify_assertion(user, submission.credential)
            self.challenges.consume(user, challenge_id)

        self.db.clear_transient_state(user["user_id"])
        logger.info(f"Login completed for {user['email']} ({submission.method.value})")
        return self._issue_token(user)

    def passkey_options(self, email: str) -> Dict[str, Any]:
        if not email:
            raise ValidationError("Email is required")
        return self.passkeys.begin_assertion(email)

    def passkey_login(self, email: str, credential: Optional[Dict]) -> Tuple[str, Dict]:
        """Log in with a passkey assertion alone."""
        if not email or not credential:
            raise ValidationError("Email and credential are required")
        user = self.passkeys.complete_assertion(email, credential)
        if user["status"] == "inactive":
            raise AccountDisabled()
        self.db.clear_transient_state(user["user_id"])
        logger.info(f"Passkey login completed for {user['email']}")
        return self._issue_token(user)
