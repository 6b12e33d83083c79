"""
Pydantic Models for the Expense Tracker auth API.

Wire field names follow the web client (camelCase such as ``challengeId``);
Python attributes are snake_case with aliases.
"""
from datetime import datetime
from typing import Optional, Dict, Any
from pydantic import BaseModel, EmailStr, Field, ConfigDict


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ============================================
# Invitation & Password Models
# ============================================

class InviteRequest(BaseModel):
    """
    Invitation request.

    Inviting an email that has not accepted yet re-sends the invitation with
    a fresh token.
    """
    email: EmailStr = Field(..., description="Invitee email address")
    role: Optional[str] = Field(None, description="user, manager, admin or super_admin")
    name: Optional[str] = Field(None, max_length=255)
    username: Optional[str] = Field(None, max_length=255, description="Defaults to the email local part")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "email": "ana@example.com",
                "role": "manager",
                "name": "Ana Lopez"
            }
        }
    )


class InviteTokenRequest(BaseModel):
    """Invitation token from the emailed link."""
    token: str = Field(..., min_length=1)


class SetupPasswordRequest(BaseModel):
    """
    Password setup request.

    Consumes the invitation token. Password must be at least 8 characters.
    """
    token: str = Field(..., min_length=1, description="Invitation token")
    password: str = Field(..., min_length=8, description="Password (minimum 8 characters)")


class AdminSignupRequest(BaseModel):
    """Bootstrap an admin account without an invitation."""
    name: str = Field(..., min_length=1, max_length=255)
    username: str = Field(..., min_length=1, max_length=255)
    email: EmailStr
    password: str = Field(..., min_length=8)


# ============================================
# MFA Models
# ============================================

class SelectMfaMethodRequest(_WireModel):
    """Choose the second factor to enroll."""
    challenge_id: str = Field(..., alias="challengeId", min_length=1)
    mfa_method: str = Field(..., alias="mfaMethod", description="TOTP or PASSKEY")

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "challengeId": "9f0c3e...",
                "mfaMethod": "TOTP"
            }
        }
    )


class MfaSelectionResponse(_WireModel):
    """
    Method selection result.

    TOTP: new challengeId plus secret, QR code (data URL) and otpauth URL.
    PASSKEY: same challengeId plus WebAuthn registration options.
    """
    challenge_id: str = Field(..., alias="challengeId")
    secret: Optional[str] = None
    qr_code: Optional[str] = Field(None, alias="qrCode")
    otp_auth_url: Optional[str] = Field(None, alias="otpAuthUrl")
    options: Optional[Dict[str, Any]] = None


class VerifyMfaSetupRequest(_WireModel):
    """Enrollment proof: ``code`` for TOTP, ``credential`` for PASSKEY."""
    challenge_id: str = Field(..., alias="challengeId", min_length=1)
    code: Optional[str] = Field(None, description="6-digit TOTP code")
    credential: Optional[Dict[str, Any]] = Field(None, description="WebAuthn attestation response")


# ============================================
# Login Models
# ============================================

class LoginRequest(BaseModel):
    """Email and password login."""
    email: EmailStr = Field(..., description="Registered email address")
    password: str = Field(..., min_length=1, description="Account password")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "email": "ana@example.com",
                "password": "securepassword123"
            }
        }
    )


class VerifyLoginMfaRequest(_WireModel):
    """Second login step."""
    challenge_id: str = Field(..., alias="challengeId", min_length=1)
    totp_code: Optional[str] = Field(None, alias="totpCode")
    credential: Optional[Dict[str, Any]] = None


class PasskeyOptionsRequest(BaseModel):
    email: EmailStr


class PasskeyVerifyRequest(BaseModel):
    email: EmailStr
    credential: Dict[str, Any]


class PasskeyOptionsResponse(BaseModel):
    options: Dict[str, Any]


# ============================================
# Response Models
# ============================================

class UserSummary(BaseModel):
    """Public view of an account. Never carries hashes, secrets or challenges."""
    id: str
    email: str
    name: Optional[str] = None
    username: str
    role: str
    status: str
    mfa_enabled: bool
    mfa_method: str

    @classmethod
    def from_user(cls, user: Dict) -> "UserSummary":
        return cls(
            id=user["user_id"],
            email=user["email"],
            name=user.get("name"),
            username=user["username"],
            role=user["role"],
            status=user["status"],
            mfa_enabled=bool(user.get("mfa_enabled")),
            mfa_method=user.get("mfa_method") or "NONE",
        )


class MessageResponse(BaseModel):
    message: str


class ChallengeResponse(_WireModel):
    message: str
    challenge_id: str = Field(..., alias="challengeId")


class AuthTokenResponse(BaseModel):
    """Bearer token issued after a completed authentication."""
    message: str
    token: str
    user: UserSummary


class LoginResponse(_WireModel):
    """
    Login result.

    Either ``token`` + ``user`` (done) or ``challengeId`` + ``mfa_method``
    (second factor required; PASSKEY also carries assertion ``options``).
    """
    message: str
    token: Optional[str] = None
    user: Optional[UserSummary] = None
    challenge_id: Optional[str] = Field(None, alias="challengeId")
    mfa_method: Optional[str] = None
    options: Optional[Dict[str, Any]] = None


class AdminSignupResponse(_WireModel):
    message: str
    challenge_id: str = Field(..., alias="challengeId")
    user: UserSummary


# ============================================
# Health Models
# ============================================

class HealthStatus(BaseModel):
    """Health check response."""
    status: str = Field(..., description="healthy or unhealthy")
    version: str
    services: Dict[str, str]
    timestamp: datetime


# ============================================
# Error Models
# ============================================

class ErrorResponse(BaseModel):
    """
    Standard error response.

    All API errors return this format with an error message,
    optional detail, and error code for programmatic handling.
    """
    error: str = Field(..., description="Error type/summary")
    detail: Optional[str] = Field(None, description="Detailed error message")
    code: Optional[str] = Field(None, description="Error code for programmatic handling")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": "Unauthorized",
                "detail": "Invalid or expired challenge",
                "code": "CHALLENGE_INVALID"
            }
        }
    )
