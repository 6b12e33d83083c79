"""
MFA method and verification-purpose enums.
"""
from enum import Enum


class MfaMethod(str, Enum):
    NONE = "NONE"
    TOTP = "TOTP"
    PASSKEY = "PASSKEY"

    @classmethod
    def parse(cls, value) -> "MfaMethod":
        """Map a stored or submitted value to a member; unknown values become NONE."""
        try:
            return cls(str(value or "NONE").upper())
        except ValueError:
            return cls.NONE


class VerificationPurpose(str, Enum):
    """Why a second factor is being checked."""

    ENROLLMENT = "enrollment"
    LOGIN = "login"
