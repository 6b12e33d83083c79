"""
Password lifecycle: invitations, password setup and password checks.

An invited account has no password. The invitation link carries a random
token valid for seven days; setting the password consumes the token and
starts the MFA enrollment flow by issuing a flow challenge.
"""
import secrets
import logging
from dataclasses import dataclass
from functools import lru_cache
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Protocol, Tuple

from ..database.auth_db import AuthDB, hash_password, verify_password
from ..utils.config import Settings
from .challenges import ChallengeManager
from .errors import (
    AccountDisabled,
    AlreadyAccepted,
    InvalidCredentials,
    TokenInvalidOrExpired,
    UsernameTaken,
    ValidationError,
)

logger = logging.getLogger(__name__)

INVITE_TOKEN_BYTES = 32
VALID_ROLES = ("user", "manager", "admin", "super_admin")


class InvitationNotifier(Protocol):
    def send_invitation(self, email: str, invite_link: str, role: str, inviter_name: Optional[str] = None) -> None:
        ...


@dataclass
class Invitation:
    user_id: str
    email: str
    resent: bool


@lru_cache(maxsize=4)
def _dummy_hash(rounds: int) -> str:
    """Hash of a random password, checked when there is no real hash to check."""
    return hash_password(secrets.token_hex(16), rounds=rounds)


def normalize_role(role: Optional[str]) -> str:
    role = (role or "user").strip().lower()
    if role not in VALID_ROLES:
        raise ValidationError(f"Invalid role. Must be one of: {', '.join(VALID_ROLES)}")
    return role


class PasswordLifecycle:
    """
    Invitation issuance and consumption plus password verification.

    Example:
        lifecycle = PasswordLifecycle(db, challenges, mailer, settings)
        lifecycle.invite("ana@example.com", role="manager", name="Ana")
        challenge_id = lifecycle.set_password(token_from_link, "s3cret-pass")
    """

    def __init__(
        self,
        db: AuthDB,
        challenges: ChallengeManager,
        notifier: InvitationNotifier,
        settings: Settings,
    ):
        self.db = db
        self.challenges = challenges
        self.notifier = notifier
        self.settings = settings

    def _new_invite_token(self) -> Tuple[str, datetime]:
        expiry = datetime.now(timezone.utc) + timedelta(days=self.settings.invite_ttl_days)
        return secrets.token_hex(INVITE_TOKEN_BYTES), expiry

    def invite(
        self,
        email: str,
        role: Optional[str] = None,
        name: Optional[str] = None,
        username: Optional[str] = None,
        invited_by: Optional[Dict] = None,
    ) -> Invitation:
        """
        Invite an account, or re-send the invitation of a pending one.

        Args:
            email: Invitee email.
            role: Role to grant (defaults to "user"; on resend, kept unless given).
            name: Display name.
            username: Username for a new account (defaults to the email local part).
            invited_by: The inviting user, if any.

        Returns:
            Invitation describing the account and whether this was a resend.

        Raises:
            AlreadyAccepted: The account already completed its invitation.
            UsernameTaken: The username belongs to another account.
            NotificationFailure: The email could not be sent. The invitation
                itself is saved and can be re-sent.
        """
        if not email:
            raise ValidationError("Email is required")
        email = email.lower().strip()
        inviter_id = invited_by["user_id"] if invited_by else None
        inviter_name = (invited_by.get("name") or invited_by.get("username")) if invited_by else None

        token, expiry = self._new_invite_token()
        existing = self.db.get_user_by_email(email)

        if existing:
            if existing.get("invitation") == "accepted":
                raise AlreadyAccepted()
            granted_role = normalize_role(role) if role else existing["role"]
            self.db.refresh_invitation(
                existing["user_id"],
                token,
                expiry,
                invited_by=inviter_id,
                role=granted_role,
                name=name,
            )
            user_id, resent = existing["user_id"], True
            logger.info(f"Invitation re-issued for {email}")
        else:
            granted_role = normalize_role(role)
            username = (username or email.split("@")[0]).strip()
            if self.db.get_user_by_username(username):
                raise UsernameTaken()
            user_id = self.db.create_user(
                email=email,
                username=username,
                name=name,
                role=granted_role,
                status="pending",
                invitation="pending",
                invited_by=inviter_id,
                invite_token=token,
                invite_token_expiry=expiry,
            )
            resent = False
            logger.info(f"Invitation issued for {email} (role={granted_role})")

        # The account is committed at this point; a mail failure propagates
        # as NotificationFailure without undoing it.
        self.notifier.send_invitation(email, self.settings.invite_link(token), granted_role, inviter_name)
        return Invitation(user_id=user_id, email=email, resent=resent)

    def set_password(self, token: str, password: str) -> str:
        """
        Consume an invitation token and set the account password.

        Returns:
            A new flow challenge for MFA method selection.

        Raises:
            ValidationError: Missing token or password.
            TokenInvalidOrExpired: Unknown, expired or already used token.
        """
        if not token or not password:
            raise ValidationError("Token and password are required")

        user = self.db.get_user_by_invite_token(token)
        if user is None:
            raise TokenInvalidOrExpired()

        password_hash = hash_password(password, rounds=self.settings.bcrypt_rounds)
        if not self.db.consume_invite_token(user["user_id"], token, password_hash):
            raise TokenInvalidOrExpired()

        logger.info(f"Password set for {user['email']}")
        return self.challenges.issue(user["user_id"])

    def reject_invitation(self, token: str) -> str:
        """
        Decline an invitation; the account becomes inactive.

        Returns:
            user_id of the declining account.
        """
        if not token:
            raise ValidationError("Token is required")
        user_id = self.db.reject_invite_token(token)
        if user_id is None:
            raise TokenInvalidOrExpired()
        logger.info(f"Invitation rejected by user {user_id}")
        return user_id

    def verify_password(self, email: str, password: str) -> Dict:
        """
        Check an email/password pair.

        Unknown email, unset password and wrong password all fail the same way.

        Raises:
            InvalidCredentials: On any mismatch.
            AccountDisabled: Correct password for an inactive account.
        """
        if not email or not password:
            raise ValidationError("Email and password are required")

        user = self.db.get_user_by_email(email)
        password_hash = user.get("password_hash") if user else None
        if not password_hash:
            # Unknown and hash-less accounts pay the same bcrypt cost as a wrong password.
            verify_password(password, _dummy_hash(self.settings.bcrypt_rounds))
        if not password_hash or not verify_password(password, password_hash):
            logger.warning(f"Failed password check for {email.lower().strip()}")
            raise InvalidCredentials()

        if user["status"] == "inactive":
            raise AccountDisabled()
        return user

    def register_admin(self, name: str, username: str, email: str, password: str, role: str = "admin") -> Tuple[Dict, str]:
        """
        Create a privileged account that skips the invitation step.

        The account starts pending with its password set; the returned flow
        challenge lets it go straight to MFA method selection.

        Returns:
            Tuple of (user dict, challenge_id).
        """
        if not all([name, username, email, password]):
            raise ValidationError("Name, username, email and password are required")
        role = normalize_role(role)
        if not self.settings.is_privileged(role):
            raise ValidationError("Bootstrap accounts must have a privileged role")

        if self.db.get_user_by_email(email):
            raise AlreadyAccepted("User with this email already exists")
        if self.db.get_user_by_username(username):
            raise UsernameTaken()

        user_id = self.db.create_user(
            email=email,
            username=username,
            name=name,
            role=role,
            password_hash=hash_password(password, rounds=self.settings.bcrypt_rounds),
            status="pending",
            invitation="accepted",
        )
        challenge_id = self.challenges.issue(user_id)
        logger.info(f"Bootstrapped {role} account {email.lower().strip()}")
        return self.db.get_user_by_id(user_id), challenge_id
