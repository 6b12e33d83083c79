#!/usr/bin/env python3
"""
Create the first super admin account.

Refuses to run once any super_admin exists. The account still has to pick and
verify an MFA method; the printed challengeId is good for
POST /api/v1/users/select-mfa-method.

Usage:
    python scripts/create_super_admin.py --email root@example.com --username root --name "Root Admin"
"""
import sys
import getpass
import argparse

from expense_tracker.auth.challenges import ChallengeManager
from expense_tracker.auth.errors import AuthError
from expense_tracker.auth.passwords import PasswordLifecycle
from expense_tracker.database.auth_db import get_auth_db
from expense_tracker.notifications.mailer import InvitationMailer
from expense_tracker.utils.config import load_settings


def main():
    parser = argparse.ArgumentParser(description="Create the first super admin")
    parser.add_argument("--email", required=True)
    parser.add_argument("--username", required=True)
    parser.add_argument("--name", required=True)
    args = parser.parse_args()

    settings = load_settings()
    db = get_auth_db()
    db.init_schema()

    if db.has_role("super_admin"):
        print("A super admin already exists; use the invite flow instead.")
        sys.exit(1)

    password = getpass.getpass("Password: ")
    if len(password) < 8:
        print("Password must be at least 8 characters")
        sys.exit(1)
    if password != getpass.getpass("Confirm password: "):
        print("Passwords do not match")
        sys.exit(1)

    lifecycle = PasswordLifecycle(db, ChallengeManager(db, settings), InvitationMailer(settings), settings)
    try:
        user, challenge_id = lifecycle.register_admin(
            name=args.name,
            username=args.username,
            email=args.email,
            password=password,
            role="super_admin",
        )
    except AuthError as e:
        print(f"Failed: {e.message}")
        sys.exit(1)

    print(f"Created super admin {user['email']} (id={user['user_id']})")
    print(f"challengeId: {challenge_id}")


if __name__ == "__main__":
    main()
