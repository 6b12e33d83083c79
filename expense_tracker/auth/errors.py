"""
Error taxonomy for the authentication flows.

Every failure a caller can see is an AuthError subclass carrying an HTTP
status, a stable machine-readable code and a human-readable message. Messages
never include hashes, secrets, codes or credential bytes.
"""
from typing import Optional


class AuthError(Exception):
    """Base class for authentication failures."""

    status_code = 400
    code = "AUTH_ERROR"
    message = "Authentication failed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.message
        super().__init__(self.message)


class ValidationError(AuthError):
    code = "VALIDATION_ERROR"
    message = "Invalid request"


class ChallengeInvalid(AuthError):
    """Unknown, stale or already-consumed flow challenge."""

    status_code = 401
    code = "CHALLENGE_INVALID"
    message = "Invalid or expired challenge"


class InvalidCredentials(AuthError):
    status_code = 401
    code = "INVALID_CREDENTIALS"
    message = "Invalid email or password"


class TokenInvalidOrExpired(AuthError):
    code = "INVITE_TOKEN_INVALID"
    message = "Invalid or expired token"


class AlreadyAccepted(AuthError):
    code = "ALREADY_ACCEPTED"
    message = "User has already accepted the invitation"


class UsernameTaken(AuthError):
    code = "USERNAME_TAKEN"
    message = "Username already exists"


class MfaSetupRequired(AuthError):
    status_code = 401
    code = "MFA_SETUP_REQUIRED"
    message = "MFA is not enabled. Please complete MFA setup."


class MfaNotEnabled(AuthError):
    code = "MFA_NOT_ENABLED"
    message = "MFA is not enabled for this user"


class MethodNotSelected(AuthError):
    code = "MFA_METHOD_NOT_SELECTED"
    message = "MFA method not selected"


class MfaAlreadyEnabled(AuthError):
    code = "MFA_ALREADY_ENABLED"
    message = "MFA is already enabled for this user"


class AccountDisabled(AuthError):
    status_code = 403
    code = "ACCOUNT_DISABLED"
    message = "Account is disabled"


class Unauthenticated(AuthError):
    status_code = 401
    code = "UNAUTHENTICATED"
    message = "Invalid or missing authentication token"


# ==========================================
# Passkey ceremony failures
# ==========================================

class CeremonyMismatch(AuthError):
    """Passkey response does not match what this ceremony expected. Restart it."""

    code = "CEREMONY_MISMATCH"
    message = "Passkey verification failed. Please restart the process."


class ChallengeMismatch(CeremonyMismatch):
    code = "CHALLENGE_MISMATCH"
    message = "Passkey challenge does not match. Please restart the process."


class OriginMismatch(CeremonyMismatch):
    code = "ORIGIN_MISMATCH"
    message = "Passkey origin does not match. Please restart the process."


class RelyingPartyMismatch(CeremonyMismatch):
    code = "RP_ID_MISMATCH"
    message = "Passkey relying party does not match. Please restart the process."


class IncompleteCredential(AuthError):
    code = "INCOMPLETE_CREDENTIAL"
    message = "Passkey credential is incomplete or malformed"


class CredentialAlreadyRegistered(AuthError):
    status_code = 409
    code = "CREDENTIAL_EXISTS"
    message = "This passkey is already registered"


class NoCredentials(AuthError):
    code = "NO_CREDENTIALS"
    message = "Passkey not enabled for this user"


class CredentialNotFound(AuthError):
    status_code = 401
    code = "CREDENTIAL_NOT_FOUND"
    message = "Passkey not recognized"


class ReplayDetected(AuthError):
    status_code = 401
    code = "REPLAY_DETECTED"
    message = "Passkey signature counter did not increase"


class NotificationFailure(AuthError):
    """The state change was committed but the invitation email was not sent."""

    status_code = 502
    code = "NOTIFICATION_FAILED"
    message = "Invitation saved but the email could not be sent. Resend the invitation."
