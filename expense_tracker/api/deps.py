"""
FastAPI Dependencies for the Expense Tracker auth API.

Provides:
- Settings and database connections
- Auth service wiring
- Bearer token authentication
- Admin bootstrap key check
"""
import hmac
import logging
from typing import Optional, Dict
from functools import lru_cache

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..auth.challenges import ChallengeManager
from ..auth.enrollment import MfaEnrollment
from ..auth.errors import Unauthenticated
from ..auth.login import LoginOrchestrator
from ..auth.mfa import TotpFactor
from ..auth.passkeys import PasskeyFactor
from ..auth.passwords import InvitationNotifier, PasswordLifecycle
from ..auth.tokens import decode_access_token
from ..database.auth_db import AuthDB, get_auth_db
from ..notifications.mailer import InvitationMailer
from ..utils.config import Settings, load_settings

logger = logging.getLogger(__name__)

# Security scheme
security = HTTPBearer(auto_error=False)


# ============================================
# Configuration & Database
# ============================================

@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Settings are loaded once per process."""
    return load_settings()


def get_db() -> AuthDB:
    """Get database connection."""
    return get_auth_db()


def get_notifier(settings: Settings = Depends(get_settings)) -> InvitationNotifier:
    return InvitationMailer(settings)


# ============================================
# Service Wiring
# ============================================

def get_challenge_manager(
    db: AuthDB = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> ChallengeManager:
    return ChallengeManager(db, settings)


def get_password_lifecycle(
    db: AuthDB = Depends(get_db),
    challenges: ChallengeManager = Depends(get_challenge_manager),
    notifier: InvitationNotifier = Depends(get_notifier),
    settings: Settings = Depends(get_settings),
) -> PasswordLifecycle:
    return PasswordLifecycle(db, challenges, notifier, settings)


def get_totp_factor(
    db: AuthDB = Depends(get_db),
    challenges: ChallengeManager = Depends(get_challenge_manager),
    settings: Settings = Depends(get_settings),
) -> TotpFactor:
    return TotpFactor(db, challenges, settings)


def get_passkey_factor(
    db: AuthDB = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> PasskeyFactor:
    return PasskeyFactor(db, settings)


def get_enrollment(
    db: AuthDB = Depends(get_db),
    challenges: ChallengeManager = Depends(get_challenge_manager),
    totp: TotpFactor = Depends(get_totp_factor),
    passkeys: PasskeyFactor = Depends(get_passkey_factor),
    settings: Settings = Depends(get_settings),
) -> MfaEnrollment:
    return MfaEnrollment(db, challenges, totp, passkeys, settings)


def get_login_orchestrator(
    db: AuthDB = Depends(get_db),
    passwords: PasswordLifecycle = Depends(get_password_lifecycle),
    challenges: ChallengeManager = Depends(get_challenge_manager),
    totp: TotpFactor = Depends(get_totp_factor),
    passkeys: PasskeyFactor = Depends(get_passkey_factor),
    settings: Settings = Depends(get_settings),
) -> LoginOrchestrator:
    return LoginOrchestrator(db, passwords, challenges, totp, passkeys, settings)


# ============================================
# Authentication Dependencies
# ============================================

def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or missing authentication token",
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AuthDB = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> Dict:
    """
    Validate bearer token and return current user.

    Missing, malformed, expired and orphaned tokens all get the same 401.
    """
    if credentials is None:
        raise _unauthorized()

    try:
        user_id = decode_access_token(credentials.credentials, settings)
    except Unauthenticated:
        raise _unauthorized()

    user = db.get_user_by_id(user_id)
    if user is None or user["status"] == "inactive":
        raise _unauthorized()
    return user


async def require_privileged_user(
    user: Dict = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
) -> Dict:
    """Only admin and super_admin accounts may invite."""
    if not settings.is_privileged(user["role"]):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient privileges",
        )
    return user


async def verify_bootstrap_key(
    x_bootstrap_key: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
) -> None:
    """Check the X-Bootstrap-Key header against BOOTSTRAP_SECRET_KEY."""
    if not settings.bootstrap_key:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin bootstrap is disabled",
        )
    if not x_bootstrap_key or not hmac.compare_digest(
        x_bootstrap_key.encode("utf-8"), settings.bootstrap_key.encode("utf-8")
    ):
        logger.warning("Admin bootstrap attempted with an invalid key")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid bootstrap key",
        )
