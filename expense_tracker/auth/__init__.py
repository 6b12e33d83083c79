"""
Authentication and multi-factor enrollment.

This package provides:
- Invitations and password setup (passwords)
- Flow challenges (challenges)
- TOTP and passkey factors (mfa, passkeys)
- MFA enrollment and login orchestration (enrollment, login)
- Bearer tokens (tokens)
"""
from .errors import AuthError
from .methods import MfaMethod, VerificationPurpose
from .challenges import ChallengeManager
from .passwords import PasswordLifecycle
from .mfa import TotpFactor, verify_totp, setup_mfa
from .passkeys import PasskeyFactor
from .enrollment import MfaEnrollment, MfaSubmission
from .login import LoginOrchestrator, LoginOutcome
from .tokens import create_access_token, decode_access_token

__all__ = [
    "AuthError",
    "MfaMethod",
    "VerificationPurpose",
    "ChallengeManager",
    "PasswordLifecycle",
    "TotpFactor",
    "verify_totp",
    "setup_mfa",
    "PasskeyFactor",
    "MfaEnrollment",
    "MfaSubmission",
    "LoginOrchestrator",
    "LoginOutcome",
    "create_access_token",
    "decode_access_token",
]
