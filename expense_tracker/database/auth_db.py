"""
Credential store for the authentication service.

One row per account in the ``users`` table holds everything the auth flows
read and write:
- Identity (email, username, name, role, status)
- Invitation state (token, expiry, inviter)
- Password hash
- MFA configuration (method, TOTP secret, passkey credentials)
- Transient challenge state (flow challenge, WebAuthn challenge)

Challenges live on the user row and are overwritten on every issuance; the
store keeps no challenge history. Consumption is a conditional UPDATE so two
requests racing on the same value cannot both succeed.
"""
import os
import uuid
import json
import logging
from typing import Any, Optional, Dict, List
from datetime import datetime, timezone
from contextlib import contextmanager

import bcrypt
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    select,
    text,
    update,
)
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool

from ..utils.secrets import get_database_password

logger = logging.getLogger(__name__)

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("user_id", String(36), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("name", String(255)),
    Column("password_hash", String(255)),
    Column("role", String(32), nullable=False, default="user"),
    Column("status", String(16), nullable=False, default="pending"),
    Column("invitation", String(16)),
    Column("invited_by", String(36)),
    Column("invite_token", String(128), unique=True),
    Column("invite_token_expiry", DateTime(timezone=True)),
    Column("mfa_enabled", Boolean, nullable=False, default=False),
    Column("mfa_method", String(16), nullable=False, default="NONE"),
    Column("mfa_secret", String(64)),
    Column("webauthn_credentials", Text),
    Column("webauthn_challenge", String(255)),
    Column("challenge_id", String(128), unique=True),
    Column("challenge_issued_at", DateTime(timezone=True)),
    Column("last_login", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

Index("idx_users_invite_expiry", users.c.invite_token_expiry)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _row_to_user(row) -> Dict[str, Any]:
    user = dict(row._mapping)
    raw_credentials = user.get("webauthn_credentials")
    user["webauthn_credentials"] = json.loads(raw_credentials) if raw_credentials else []
    user["mfa_enabled"] = bool(user.get("mfa_enabled"))
    for key in ("invite_token_expiry", "challenge_issued_at", "last_login", "created_at", "updated_at"):
        user[key] = _as_utc(user.get(key))
    return user


class AuthDB:
    """
    Database manager for account credentials.

    Example usage:
        auth_db = AuthDB()

        user_id = auth_db.create_user("ana@example.com", "ana", role="user")
        auth_db.set_challenge(user_id, challenge_id)

        # Exactly one caller gets True for a given challenge value
        consumed = auth_db.clear_challenge(user_id, challenge_id)
    """

    def __init__(self, connection_string: Optional[str] = None):
        """
        Initialize database connection.

        Args:
            connection_string: SQLAlchemy database URL.
                             Uses DATABASE_URL or POSTGRES_* variables if not provided.
        """
        if connection_string is None:
            connection_string = os.getenv("DATABASE_URL")
        if connection_string is None:
            host = os.getenv("POSTGRES_HOST", "localhost")
            port = os.getenv("POSTGRES_PORT", "5432")
            db = os.getenv("POSTGRES_DB", "expense_tracker")
            user = os.getenv("POSTGRES_USER", "expense_tracker")
            password = get_database_password() or ""
            connection_string = f"postgresql://{user}:{password}@{host}:{port}/{db}"

        if connection_string.startswith("sqlite"):
            self.engine = create_engine(
                connection_string,
                connect_args={"check_same_thread": False},
                pool_pre_ping=True,
            )
        else:
            self.engine = create_engine(
                connection_string,
                poolclass=QueuePool,
                pool_size=10,
                max_overflow=20,
                pool_timeout=30,
                pool_pre_ping=True,  # Test connections before use (detect stale)
                pool_recycle=300,    # Recycle connections every 5 minutes
            )
        self.Session = sessionmaker(bind=self.engine)

    @contextmanager
    def get_session(self):
        """
        Get a database session with automatic cleanup.

        Usage:
            with auth_db.get_session() as session:
                result = session.execute(query)
        """
        session = self.Session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _fetch_one(self, *criteria) -> Optional[Dict]:
        with self.get_session() as session:
            row = session.execute(select(users).where(*criteria)).fetchone()
            return _row_to_user(row) if row else None

    def _update(self, user_id: str, **values) -> int:
        values["updated_at"] = _utcnow()
        with self.get_session() as session:
            result = session.execute(
                update(users).where(users.c.user_id == user_id).values(**values)
            )
            return result.rowcount

    # ==========================================
    # Identity
    # ==========================================

    def create_user(
        self,
        email: str,
        username: str,
        name: Optional[str] = None,
        role: str = "user",
        password_hash: Optional[str] = None,
        status: str = "pending",
        invitation: Optional[str] = "pending",
        invited_by: Optional[str] = None,
        invite_token: Optional[str] = None,
        invite_token_expiry: Optional[datetime] = None,
    ) -> str:
        """
        Create a new account.

        Args:
            email: Email address (stored lower-cased).
            username: Unique username.
            name: Display name.
            role: Account role.
            password_hash: Bcrypt hash, or None until the password is set.
            status: pending, active or inactive.
            invitation: pending, accepted or rejected.
            invited_by: user_id of the inviting account.
            invite_token: Invitation token, if the account is invited.
            invite_token_expiry: When the invitation token stops working.

        Returns:
            UUID of created user.

        Raises:
            ValueError: If email already exists.
        """
        user_id = str(uuid.uuid4())
        now = _utcnow()
        email = email.lower().strip()

        with self.get_session() as session:
            existing = session.execute(
                select(users.c.user_id).where(users.c.email == email)
            ).fetchone()
            if existing:
                raise ValueError(f"User with email '{email}' already exists")

            session.execute(
                users.insert().values(
                    user_id=user_id,
                    email=email,
                    username=username,
                    name=name,
                    role=role,
                    password_hash=password_hash,
                    status=status,
                    invitation=invitation,
                    invited_by=invited_by,
                    invite_token=invite_token,
                    invite_token_expiry=invite_token_expiry,
                    mfa_enabled=False,
                    mfa_method="NONE",
                    created_at=now,
                    updated_at=now,
                )
            )

        logger.info(f"Created user: {email} (id={user_id}, role={role})")
        return user_id

    def get_user_by_email(self, email: str) -> Optional[Dict]:
        """
        Get user by email address.

        Returns:
            User dict or None if not found.
        """
        return self._fetch_one(users.c.email == email.lower().strip())

    def get_user_by_id(self, user_id: str) -> Optional[Dict]:
        """Get user by id, or None."""
        return self._fetch_one(users.c.user_id == user_id)

    def get_user_by_username(self, username: str) -> Optional[Dict]:
        """Get user by username, or None."""
        return self._fetch_one(users.c.username == username)

    def has_role(self, role: str) -> bool:
        """True if any account holds role."""
        with self.get_session() as session:
            row = session.execute(
                select(users.c.user_id).where(users.c.role == role).limit(1)
            ).fetchone()
            return row is not None

    def update_status(self, user_id: str, status: str) -> None:
        self._update(user_id, status=status)

    def update_last_login(self, user_id: str) -> None:
        """
        Update user's last login timestamp.

        Args:
            user_id: UUID of user.
        """
        self._update(user_id, last_login=_utcnow())

    # ==========================================
    # Invitations and passwords
    # ==========================================

    def refresh_invitation(
        self,
        user_id: str,
        invite_token: str,
        invite_token_expiry: datetime,
        invited_by: Optional[str] = None,
        role: Optional[str] = None,
        name: Optional[str] = None,
    ) -> None:
        """
        Re-issue the invitation of an account that has not accepted yet.

        A previously rejected invitation goes back to pending.
        """
        values = {
            "invite_token": invite_token,
            "invite_token_expiry": invite_token_expiry,
            "invitation": "pending",
            "status": "pending",
        }
        if invited_by is not None:
            values["invited_by"] = invited_by
        if role is not None:
            values["role"] = role
        if name is not None:
            values["name"] = name
        self._update(user_id, **values)

    def get_user_by_invite_token(self, invite_token: str, now: Optional[datetime] = None) -> Optional[Dict]:
        """
        Get the account holding an unexpired invitation token.

        Args:
            invite_token: Token from the invitation link.
            now: Reference time (defaults to current UTC time).

        Returns:
            User dict or None if the token is unknown or expired.
        """
        return self._fetch_one(
            users.c.invite_token == invite_token,
            users.c.invite_token_expiry > (now or _utcnow()),
        )

    def consume_invite_token(self, user_id: str, invite_token: str, password_hash: str) -> bool:
        """
        Accept an invitation: store the password and clear the token.

        The UPDATE only matches while the token is still on the row, so a
        token can be consumed once.

        Returns:
            True if this call consumed the token.
        """
        now = _utcnow()
        with self.get_session() as session:
            result = session.execute(
                update(users)
                .where(users.c.user_id == user_id, users.c.invite_token == invite_token)
                .values(
                    password_hash=password_hash,
                    invitation="accepted",
                    invite_token=None,
                    invite_token_expiry=None,
                    updated_at=now,
                )
            )
            return result.rowcount == 1

    def reject_invite_token(self, invite_token: str) -> Optional[str]:
        """
        Decline an invitation.

        Returns:
            user_id of the declining account, or None if the token is unknown
            or expired.
        """
        now = _utcnow()
        with self.get_session() as session:
            row = session.execute(
                select(users.c.user_id).where(
                    users.c.invite_token == invite_token,
                    users.c.invite_token_expiry > now,
                )
            ).fetchone()
            if not row:
                return None
            result = session.execute(
                update(users)
                .where(users.c.user_id == row[0], users.c.invite_token == invite_token)
                .values(
                    invitation="rejected",
                    status="inactive",
                    invite_token=None,
                    invite_token_expiry=None,
                    updated_at=now,
                )
            )
            return row[0] if result.rowcount == 1 else None

    # ==========================================
    # Flow challenge
    # ==========================================

    def set_challenge(self, user_id: str, challenge_id: str) -> None:
        """Store a new flow challenge, replacing any previous one."""
        now = _utcnow()
        self._update(user_id, challenge_id=challenge_id, challenge_issued_at=now)

    def get_user_by_challenge(self, challenge_id: str, issued_after: Optional[datetime] = None) -> Optional[Dict]:
        """
        Get the account currently holding a flow challenge.

        Args:
            challenge_id: Flow challenge value.
            issued_after: If given, challenges issued earlier are ignored.
        """
        criteria = [users.c.challenge_id == challenge_id]
        if issued_after is not None:
            criteria.append(users.c.challenge_issued_at > issued_after)
        return self._fetch_one(*criteria)

    def clear_challenge(self, user_id: str, challenge_id: str) -> bool:
        """
        Compare-and-clear the flow challenge.

        Returns:
            True if the row still held challenge_id and it is now cleared.
        """
        with self.get_session() as session:
            result = session.execute(
                update(users)
                .where(users.c.user_id == user_id, users.c.challenge_id == challenge_id)
                .values(challenge_id=None, challenge_issued_at=None, updated_at=_utcnow())
            )
            return result.rowcount == 1

    def clear_transient_state(self, user_id: str) -> None:
        """Drop both the flow challenge and any pending WebAuthn challenge."""
        self._update(user_id, challenge_id=None, challenge_issued_at=None, webauthn_challenge=None)

    # ==========================================
    # MFA configuration
    # ==========================================

    def set_mfa_method(self, user_id: str, method: str, mfa_secret: Optional[str] = None) -> None:
        """
        Record the selected MFA method.

        The TOTP secret is only kept for TOTP; choosing PASSKEY drops it.
        """
        self._update(user_id, mfa_method=method, mfa_secret=mfa_secret)

    def enable_mfa(self, user_id: str, activate: bool = True) -> None:
        """Mark MFA enabled and, by default, activate the account."""
        values = {"mfa_enabled": True}
        if activate:
            values["status"] = "active"
        self._update(user_id, **values)

    # ==========================================
    # WebAuthn
    # ==========================================

    def set_webauthn_challenge(self, user_id: str, challenge: str) -> None:
        self._update(user_id, webauthn_challenge=challenge)

    def clear_webauthn_challenge(self, user_id: str, challenge: str) -> bool:
        """
        Compare-and-clear the WebAuthn ceremony challenge.

        Returns:
            True if the row still held challenge and it is now cleared.
        """
        with self.get_session() as session:
            result = session.execute(
                update(users)
                .where(users.c.user_id == user_id, users.c.webauthn_challenge == challenge)
                .values(webauthn_challenge=None, updated_at=_utcnow())
            )
            return result.rowcount == 1

    def add_webauthn_credential(self, user_id: str, credential: Dict) -> bool:
        """
        Append a passkey credential record.

        Args:
            user_id: Owner of the credential.
            credential: Record with credential_id, public_key, counter,
                        transports and created_at.

        Returns:
            False if a credential with the same id is already registered.
        """
        with self.get_session() as session:
            return self._append_credential(session, user_id, credential)

    def enroll_passkey(self, user_id: str, challenge_id: str, credential: Dict) -> bool:
        """
        Finish passkey enrollment in one transaction.

        Clears the flow challenge, stores the credential, selects PASSKEY and
        enables MFA. Nothing is written unless the row still holds
        challenge_id.

        Returns:
            False if the flow challenge was consumed or replaced first.

        Raises:
            ValueError: The credential id is already registered.
        """
        now = _utcnow()
        with self.get_session() as session:
            result = session.execute(
                update(users)
                .where(users.c.user_id == user_id, users.c.challenge_id == challenge_id)
                .values(challenge_id=None, challenge_issued_at=None, updated_at=now)
            )
            if result.rowcount != 1:
                return False
            if not self._append_credential(session, user_id, credential):
                # Raising rolls back the challenge clear above.
                raise ValueError(f"Credential already registered for user {user_id}")
            session.execute(
                update(users)
                .where(users.c.user_id == user_id)
                .values(
                    mfa_method="PASSKEY",
                    mfa_secret=None,
                    mfa_enabled=True,
                    status="active",
                    updated_at=now,
                )
            )
        return True

    def _append_credential(self, session, user_id: str, credential: Dict) -> bool:
        row = session.execute(
            select(users.c.webauthn_credentials)
            .where(users.c.user_id == user_id)
            .with_for_update()
        ).fetchone()
        if row is None:
            raise ValueError(f"User {user_id} not found")

        credentials: List[Dict] = json.loads(row[0]) if row[0] else []
        if any(c["credential_id"] == credential["credential_id"] for c in credentials):
            return False

        credentials.append(credential)
        session.execute(
            update(users)
            .where(users.c.user_id == user_id)
            .values(webauthn_credentials=json.dumps(credentials), updated_at=_utcnow())
        )
        logger.info(f"Stored passkey credential for user {user_id} ({len(credentials)} total)")
        return True

    def update_webauthn_counter(self, user_id: str, credential_id: str, new_counter: int, strict: bool = True) -> bool:
        """
        Advance the signature counter of one credential.

        Args:
            user_id: Owner of the credential.
            credential_id: Stored (base64url) credential id.
            new_counter: Counter reported by the authenticator.
            strict: Require new_counter to exceed the stored value; otherwise
                    an equal value is accepted. A lower value never is.

        Returns:
            True if the counter was written.
        """
        with self.get_session() as session:
            row = session.execute(
                select(users.c.webauthn_credentials)
                .where(users.c.user_id == user_id)
                .with_for_update()
            ).fetchone()
            if row is None or not row[0]:
                return False

            credentials = json.loads(row[0])
            for credential in credentials:
                if credential["credential_id"] != credential_id:
                    continue
                current = int(credential.get("counter", 0))
                if new_counter < current or (strict and new_counter == current):
                    return False
                credential["counter"] = new_counter
                session.execute(
                    update(users)
                    .where(users.c.user_id == user_id)
                    .values(webauthn_credentials=json.dumps(credentials), updated_at=_utcnow())
                )
                return True
        return False

    # ==========================================
    # Schema
    # ==========================================

    def ping(self) -> bool:
        with self.get_session() as session:
            session.execute(text("SELECT 1"))
        return True

    def init_schema(self) -> None:
        """Create the users table and its indexes if they do not exist."""
        metadata.create_all(self.engine)
        logger.info("Auth schema initialized")


# ==========================================
# Password hashing
# ==========================================

def hash_password(password: str, rounds: int = 10) -> str:
    """
    Hash a password using bcrypt.

    Args:
        password: Plain text password.
        rounds: bcrypt cost factor.

    Returns:
        Bcrypt hash string.
    """
    return bcrypt.hashpw(
        password.encode('utf-8'),
        bcrypt.gensalt(rounds=rounds)
    ).decode('utf-8')


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    """
    Verify a password against its hash.

    Returns:
        True if password matches, False otherwise (including no hash stored).
    """
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(
            password.encode('utf-8'),
            password_hash.encode('utf-8')
        )
    except ValueError:
        logger.warning("Stored password hash is malformed")
        return False


# Singleton instance
_auth_db_instance: Optional[AuthDB] = None


def get_auth_db() -> AuthDB:
    """
    Get singleton AuthDB instance.

    Returns:
        AuthDB instance.
    """
    global _auth_db_instance
    if _auth_db_instance is None:
        _auth_db_instance = AuthDB()
    return _auth_db_instance
