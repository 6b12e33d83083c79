"""
TOTP second factor.

Implements TOTP (Time-based One-Time Password) using RFC 6238 through pyotp.
Compatible with Google Authenticator, Authy, 1Password and other TOTP apps.

Codes are accepted within +-2 time steps (30 seconds each) of the server
clock, so up to a minute of client clock drift is tolerated.
"""
import base64
import io
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Tuple, Union

import pyotp
import qrcode

from ..database.auth_db import AuthDB
from ..utils.config import Settings
from .challenges import ChallengeManager
from .errors import MethodNotSelected, ValidationError
from .methods import MfaMethod, VerificationPurpose

logger = logging.getLogger(__name__)

DEFAULT_ISSUER = "Expense Tracker"
DEFAULT_WINDOW = 2


def generate_totp_secret() -> str:
    """
    Generate a new TOTP secret for MFA enrollment.

    Returns:
        Base32-encoded secret (32 characters).
    """
    return pyotp.random_base32()


def get_totp_provisioning_uri(
    secret: str,
    email: str,
    issuer: str = DEFAULT_ISSUER
) -> str:
    """
    Generate a provisioning URI for TOTP apps.

    This URI can be encoded as a QR code for easy scanning.

    Args:
        secret: Base32-encoded TOTP secret.
        email: User's email address (displayed in authenticator app).
        issuer: Application name (displayed in authenticator app).

    Returns:
        otpauth:// URI string.
    """
    totp = pyotp.TOTP(secret)
    return totp.provisioning_uri(name=email, issuer_name=issuer)


def generate_qr_code(uri: str) -> bytes:
    """
    Render the provisioning URI as a PNG QR code.

    Returns:
        PNG image bytes.
    """
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=10,
        border=4,
    )
    qr.add_data(uri)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")

    buffer = io.BytesIO()
    img.save(buffer, format='PNG')
    return buffer.getvalue()


def generate_qr_code_base64(uri: str) -> str:
    """QR code as a ``data:image/png;base64,...`` URL for direct use in an <img> tag."""
    png_bytes = generate_qr_code(uri)
    b64 = base64.b64encode(png_bytes).decode('utf-8')
    return f"data:image/png;base64,{b64}"


def verify_totp(
    secret: str,
    code: str,
    window: int = DEFAULT_WINDOW,
    for_time: Optional[Union[int, datetime]] = None,
) -> bool:
    """
    Verify a TOTP code against the secret.

    Args:
        secret: Base32-encoded TOTP secret.
        code: 6-digit code entered by user.
        window: Number of 30-second steps accepted on each side of for_time.
        for_time: Reference time (defaults to now).

    Returns:
        True if code is valid, False otherwise.
    """
    if not secret or not code:
        return False

    # Clean the code (remove spaces, only digits)
    code = ''.join(filter(str.isdigit, str(code)))

    if len(code) != 6:
        return False

    totp = pyotp.TOTP(secret)
    return totp.verify(code, for_time=for_time, valid_window=window)


def setup_mfa(email: str, issuer: str = DEFAULT_ISSUER) -> Tuple[str, str, str]:
    """
    Generate secret, URI, and QR code for a new enrollment.

    Returns:
        Tuple of (secret, provisioning_uri, qr_code_base64).
    """
    secret = generate_totp_secret()
    uri = get_totp_provisioning_uri(secret, email, issuer)
    qr_base64 = generate_qr_code_base64(uri)

    return secret, uri, qr_base64


# ============================================
# TOTP factor
# ============================================

@dataclass
class TotpEnrollment:
    challenge_id: str
    secret: str
    otpauth_url: str
    qr_code: str


class TotpFactor:
    """TOTP enrollment and verification bound to flow challenges."""

    def __init__(self, db: AuthDB, challenges: ChallengeManager, settings: Settings):
        self.db = db
        self.challenges = challenges
        self.settings = settings

    def begin_enrollment(self, challenge_id: str) -> TotpEnrollment:
        """
        Generate and store a TOTP secret for the challenge holder.

        The secret is stored as-is because every later verification needs
        it. The flow challenge is rotated: the returned challenge_id is the
        one verification must use.
        """
        user = self.challenges.resolve(challenge_id)
        secret, uri, qr_code = setup_mfa(user["email"], issuer=self.settings.totp_issuer)

        self.db.set_mfa_method(user["user_id"], MfaMethod.TOTP.value, mfa_secret=secret)
        new_challenge_id = self.challenges.issue(user["user_id"])

        logger.info(f"TOTP enrollment started for {user['email']}")
        return TotpEnrollment(
            challenge_id=new_challenge_id,
            secret=secret,
            otpauth_url=uri,
            qr_code=qr_code,
        )

    def verify(
        self,
        challenge_id: str,
        code: str,
        purpose: VerificationPurpose = VerificationPurpose.LOGIN,
    ) -> Tuple[bool, Dict]:
        """
        Check a TOTP code for the challenge holder.

        A wrong code returns (False, user) and leaves all state untouched.
        On success the flow challenge is consumed; for enrollment, MFA is
        also enabled and the account activated.

        Returns:
            Tuple of (verified, user).

        Raises:
            ValidationError: No code supplied.
            ChallengeInvalid: Unknown or already-consumed challenge.
            MethodNotSelected: The user has no TOTP secret.
        """
        if not code:
            raise ValidationError("TOTP code is required")

        user = self.challenges.resolve(challenge_id)
        secret = user.get("mfa_secret")
        if not secret or MfaMethod.parse(user.get("mfa_method")) != MfaMethod.TOTP:
            raise MethodNotSelected()

        if not verify_totp(secret, code, window=self.settings.totp_valid_window):
            logger.warning(f"Invalid TOTP code for {user['email']} ({purpose.value})")
            return False, user

        self.challenges.consume(user, challenge_id)
        if purpose == VerificationPurpose.ENROLLMENT:
            self.db.enable_mfa(user["user_id"], activate=True)
            logger.info(f"TOTP enabled for {user['email']}")
        return True, user
