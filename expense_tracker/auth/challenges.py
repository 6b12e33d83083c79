"""
Flow challenges.

A flow challenge is an opaque random string stored on the user row. It ties
the steps of one enrollment or login flow together so the client does not
resend its identity on every request. Issuing a new one replaces the old one,
so a user has at most one flow in flight.
"""
import secrets
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict

from ..database.auth_db import AuthDB
from ..utils.config import Settings
from .errors import ChallengeInvalid, ValidationError

logger = logging.getLogger(__name__)

CHALLENGE_BYTES = 24


def generate_challenge_id() -> str:
    """Return a new 48-character hex challenge."""
    return secrets.token_hex(CHALLENGE_BYTES)


class ChallengeManager:
    """Issue, resolve and consume flow challenges."""

    def __init__(self, db: AuthDB, settings: Settings):
        self.db = db
        self.settings = settings

    def issue(self, user_id: str) -> str:
        challenge_id = generate_challenge_id()
        self.db.set_challenge(user_id, challenge_id)
        logger.debug(f"Issued flow challenge for user {user_id}")
        return challenge_id

    def resolve(self, challenge_id: str) -> Dict:
        """
        Find the user currently holding challenge_id.

        Raises:
            ValidationError: If no challenge was supplied.
            ChallengeInvalid: If no user holds it (never issued, replaced,
                consumed or older than the configured TTL).
        """
        if not challenge_id:
            raise ValidationError("Challenge ID is required")

        issued_after = None
        if self.settings.flow_challenge_ttl_minutes:
            issued_after = datetime.now(timezone.utc) - timedelta(
                minutes=self.settings.flow_challenge_ttl_minutes
            )

        user = self.db.get_user_by_challenge(challenge_id, issued_after=issued_after)
        if user is None:
            raise ChallengeInvalid()
        return user

    def consume(self, user: Dict, challenge_id: str) -> None:
        """
        Clear the challenge if the user still holds it.

        Raises:
            ChallengeInvalid: If another request consumed or replaced it first.
        """
        if not self.db.clear_challenge(user["user_id"], challenge_id):
            logger.warning(f"Flow challenge for user {user['user_id']} was already consumed")
            raise ChallengeInvalid()
