"""
Authentication Endpoints.

Invitation, password setup, MFA enrollment and login. Mounted under
/api/v1/users, the paths the web client calls.

Flow:
    POST /invite                 (admin)        -> email with set-password link
    POST /setup-password         token          -> challengeId
    POST /select-mfa-method      challengeId    -> TOTP secret / passkey options
    POST /verify-mfa-setup       challengeId    -> token
    POST /login                  email/password -> token | challengeId
    POST /verify-login-mfa       challengeId    -> token
"""
import logging
from typing import Dict

from fastapi import APIRouter, Depends, status

from ..models import (
    AdminSignupRequest,
    AdminSignupResponse,
    AuthTokenResponse,
    ChallengeResponse,
    ErrorResponse,
    InviteRequest,
    InviteTokenRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    MfaSelectionResponse,
    PasskeyOptionsRequest,
    PasskeyOptionsResponse,
    PasskeyVerifyRequest,
    SelectMfaMethodRequest,
    SetupPasswordRequest,
    UserSummary,
    VerifyLoginMfaRequest,
    VerifyMfaSetupRequest,
)
from ..deps import (
    get_current_user,
    get_enrollment,
    get_login_orchestrator,
    get_password_lifecycle,
    require_privileged_user,
    verify_bootstrap_key,
)
from ...auth.enrollment import MfaEnrollment
from ...auth.login import LoginOrchestrator
from ...auth.methods import MfaMethod
from ...auth.passwords import PasswordLifecycle

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/users", tags=["Authentication"])

_CHALLENGE_ERRORS = {
    400: {"model": ErrorResponse, "description": "Invalid input"},
    401: {"model": ErrorResponse, "description": "Invalid or expired challenge"},
}


# ============================================
# Invitations & Passwords
# ============================================

@router.post(
    "/invite",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse, "description": "Already accepted or username taken"},
        403: {"model": ErrorResponse, "description": "Caller is not an admin"},
        502: {"model": ErrorResponse, "description": "Invitation saved, email not sent"},
    },
)
def invite_user(
    request: InviteRequest,
    inviter: Dict = Depends(require_privileged_user),
    passwords: PasswordLifecycle = Depends(get_password_lifecycle),
):
    """
    Invite a user by email.

    Re-inviting an email that has not accepted yet issues a fresh 7-day link.
    """
    invitation = passwords.invite(
        email=request.email,
        role=request.role,
        name=request.name,
        username=request.username,
        invited_by=inviter,
    )
    message = "Invitation resent successfully" if invitation.resent else "Invitation sent successfully"
    return MessageResponse(message=message)


@router.post(
    "/invite/reject",
    response_model=MessageResponse,
    responses={400: {"model": ErrorResponse, "description": "Invalid or expired token"}},
)
def reject_invitation(
    request: InviteTokenRequest,
    passwords: PasswordLifecycle = Depends(get_password_lifecycle),
):
    """Decline an invitation. The account is deactivated."""
    passwords.reject_invitation(request.token)
    return MessageResponse(message="Invitation rejected")


@router.post(
    "/setup-password",
    response_model=ChallengeResponse,
    responses={400: {"model": ErrorResponse, "description": "Invalid or expired token"}},
)
def setup_password(
    request: SetupPasswordRequest,
    passwords: PasswordLifecycle = Depends(get_password_lifecycle),
):
    """Set the password from an invitation link and start MFA setup."""
    challenge_id = passwords.set_password(request.token, request.password)
    return ChallengeResponse(
        message="Password set successfully. Please select an MFA method.",
        challenge_id=challenge_id,
    )


@router.post(
    "/signup-admin",
    response_model=AdminSignupResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse, "description": "Email or username already exists"},
        403: {"model": ErrorResponse, "description": "Missing or invalid bootstrap key"},
    },
    dependencies=[Depends(verify_bootstrap_key)],
)
def signup_admin(
    request: AdminSignupRequest,
    passwords: PasswordLifecycle = Depends(get_password_lifecycle),
):
    """Create an admin account directly. Requires the X-Bootstrap-Key header."""
    user, challenge_id = passwords.register_admin(
        name=request.name,
        username=request.username,
        email=request.email,
        password=request.password,
    )
    return AdminSignupResponse(
        message="Admin account created. Please select an MFA method.",
        challenge_id=challenge_id,
        user=UserSummary.from_user(user),
    )


# ============================================
# MFA Enrollment
# ============================================

@router.post(
    "/select-mfa-method",
    response_model=MfaSelectionResponse,
    response_model_exclude_none=True,
    responses=_CHALLENGE_ERRORS,
)
def select_mfa_method(
    request: SelectMfaMethodRequest,
    enrollment: MfaEnrollment = Depends(get_enrollment),
):
    """
    Choose TOTP or PASSKEY.

    TOTP returns a new challengeId with the secret and QR code; PASSKEY keeps
    the challengeId and returns WebAuthn registration options.
    """
    selection = enrollment.select_method(request.challenge_id, request.mfa_method)
    if selection.method == MfaMethod.TOTP:
        return MfaSelectionResponse(
            challenge_id=selection.challenge_id,
            secret=selection.secret,
            qr_code=selection.qr_code,
            otp_auth_url=selection.otpauth_url,
        )
    return MfaSelectionResponse(challenge_id=selection.challenge_id, options=selection.options)


@router.post(
    "/verify-mfa-setup",
    response_model=AuthTokenResponse,
    responses=_CHALLENGE_ERRORS,
)
def verify_mfa_setup(
    request: VerifyMfaSetupRequest,
    enrollment: MfaEnrollment = Depends(get_enrollment),
):
    """Finish MFA enrollment with a TOTP code or a passkey attestation."""
    token, user = enrollment.verify_setup(
        request.challenge_id,
        code=request.code,
        credential=request.credential,
    )
    return AuthTokenResponse(
        message="MFA setup completed successfully",
        token=token,
        user=UserSummary.from_user(user),
    )


# ============================================
# Login
# ============================================

@router.post(
    "/login",
    response_model=LoginResponse,
    response_model_exclude_none=True,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid credentials or MFA setup required"},
        403: {"model": ErrorResponse, "description": "Account disabled"},
    },
)
def login(
    credentials: LoginRequest,
    orchestrator: LoginOrchestrator = Depends(get_login_orchestrator),
):
    """
    Authenticate with email and password.

    Admins without MFA get a token immediately. Everyone with MFA gets a
    challengeId and the method to continue with at /verify-login-mfa.
    """
    outcome = orchestrator.login(credentials.email, credentials.password)
    if not outcome.requires_mfa:
        return LoginResponse(
            message="Login successful",
            token=outcome.token,
            user=UserSummary.from_user(outcome.user),
        )
    return LoginResponse(
        message="MFA verification required",
        challenge_id=outcome.challenge_id,
        mfa_method=outcome.mfa_method.value,
        options=outcome.options,
    )


@router.post(
    "/verify-login-mfa",
    response_model=AuthTokenResponse,
    responses=_CHALLENGE_ERRORS,
)
def verify_login_mfa(
    request: VerifyLoginMfaRequest,
    orchestrator: LoginOrchestrator = Depends(get_login_orchestrator),
):
    """Complete login with a TOTP code or passkey assertion."""
    token, user = orchestrator.verify_login_mfa(
        request.challenge_id,
        totp_code=request.totp_code,
        credential=request.credential,
    )
    return AuthTokenResponse(message="Login successful", token=token, user=UserSummary.from_user(user))


@router.post(
    "/passkey-auth-options",
    response_model=PasskeyOptionsResponse,
    responses={400: {"model": ErrorResponse, "description": "No passkey registered"}},
)
def passkey_auth_options(
    request: PasskeyOptionsRequest,
    orchestrator: LoginOrchestrator = Depends(get_login_orchestrator),
):
    """WebAuthn assertion options for the account's registered passkeys."""
    return PasskeyOptionsResponse(options=orchestrator.passkey_options(request.email))


@router.post(
    "/passkey-auth-verify",
    response_model=AuthTokenResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Passkey ceremony mismatch"},
        401: {"model": ErrorResponse, "description": "Unknown credential or replay"},
    },
)
def passkey_auth_verify(
    request: PasskeyVerifyRequest,
    orchestrator: LoginOrchestrator = Depends(get_login_orchestrator),
):
    """Log in with a passkey assertion."""
    token, user = orchestrator.passkey_login(request.email, request.credential)
    return AuthTokenResponse(message="Passkey authentication successful", token=token, user=UserSummary.from_user(user))


@router.get("/me", response_model=UserSummary)
def get_me(user: Dict = Depends(get_current_user)):
    """Current account."""
    return UserSummary.from_user(user)
