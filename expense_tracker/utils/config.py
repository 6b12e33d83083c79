"""
Process-wide configuration.

Settings are read once at startup by load_settings() and handed to every
service constructor. Nothing below the API layer reads the environment
directly.
"""
import os
import secrets
import logging
from dataclasses import dataclass, field
from typing import Optional, Tuple

from .secrets import get_bootstrap_key, get_required_secret, get_secret

logger = logging.getLogger(__name__)

DEFAULT_ORIGIN = "http://localhost:5173"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


@dataclass(frozen=True)
class Settings:
    """Read-only configuration shared by all auth components."""

    jwt_secret: str = field(repr=False)
    jwt_algorithm: str = "HS256"
    access_token_ttl_seconds: int = 3600

    # Passkey relying party
    rp_id: str = "localhost"
    rp_name: str = "Expense Tracker"
    expected_origin: str = DEFAULT_ORIGIN
    passkey_strict_counter: bool = True

    # TOTP
    totp_issuer: str = "Expense Tracker"
    totp_valid_window: int = 2

    # Invitations and passwords
    frontend_app_url: str = DEFAULT_ORIGIN
    invite_ttl_days: int = 7
    bcrypt_rounds: int = 10
    privileged_roles: Tuple[str, ...] = ("admin", "super_admin")

    # None disables flow-challenge expiry
    flow_challenge_ttl_minutes: Optional[int] = None

    # Outbound mail
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = field(default=None, repr=False)
    smtp_use_tls: bool = True
    mail_from: str = "Expense Tracker <team@aictum.com>"

    cors_origins: Tuple[str, ...] = (DEFAULT_ORIGIN,)

    # Guards POST /signup-admin; None disables it
    bootstrap_key: Optional[str] = field(default=None, repr=False)

    def is_privileged(self, role: Optional[str]) -> bool:
        return (role or "").lower() in self.privileged_roles

    def invite_link(self, token: str) -> str:
        return f"{self.frontend_app_url.rstrip('/')}/set-password?token={token}"


def load_settings() -> Settings:
    """
    Build Settings from environment variables and secrets.

    JWT_SECRET is mandatory when APP_ENV=production. Elsewhere a random
    per-process key is generated so tokens simply stop validating on restart.
    """
    if os.getenv("APP_ENV") == "production":
        jwt_secret = get_required_secret("JWT_SECRET")
    else:
        jwt_secret = get_secret("JWT_SECRET")
        if not jwt_secret:
            logger.warning("JWT_SECRET not set, using an ephemeral signing key")
            jwt_secret = secrets.token_urlsafe(48)

    frontend_url = os.getenv("FRONTEND_APP_URL", DEFAULT_ORIGIN)
    cors = os.getenv("CORS_ORIGINS", frontend_url)

    return Settings(
        jwt_secret=jwt_secret,
        access_token_ttl_seconds=_env_int("ACCESS_TOKEN_TTL_SECONDS", 3600),
        rp_id=os.getenv("RP_ID", "localhost"),
        rp_name=os.getenv("RP_NAME", "Expense Tracker"),
        expected_origin=os.getenv("EXPECTED_ORIGIN", frontend_url),
        passkey_strict_counter=_env_bool("PASSKEY_STRICT_COUNTER", True),
        totp_issuer=os.getenv("TOTP_ISSUER", "Expense Tracker"),
        frontend_app_url=frontend_url,
        invite_ttl_days=_env_int("INVITE_TTL_DAYS", 7),
        bcrypt_rounds=_env_int("BCRYPT_ROUNDS", 10),
        flow_challenge_ttl_minutes=_env_int("FLOW_CHALLENGE_TTL_MINUTES", None),
        smtp_host=os.getenv("SMTP_HOST"),
        smtp_port=_env_int("SMTP_PORT", 587),
        smtp_username=os.getenv("SMTP_USERNAME"),
        smtp_password=get_secret("SMTP_PASSWORD"),
        smtp_use_tls=_env_bool("SMTP_USE_TLS", True),
        mail_from=os.getenv("MAIL_FROM", "Expense Tracker <team@aictum.com>"),
        cors_origins=tuple(o.strip() for o in cors.split(",") if o.strip()),
        bootstrap_key=get_bootstrap_key(),
    )
