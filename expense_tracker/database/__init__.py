"""
Persistence for the authentication service.

- auth_db: the users table (identity, invitation, MFA and challenge state)
"""
from .auth_db import AuthDB, get_auth_db, hash_password, verify_password

__all__ = ["AuthDB", "get_auth_db", "hash_password", "verify_password"]
