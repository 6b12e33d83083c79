#!/usr/bin/env python3
"""
Create the Expense Tracker auth schema.

Usage:
    DATABASE_URL=postgresql://... python scripts/init_db.py
"""
from expense_tracker.database.auth_db import get_auth_db


def main():
    print("=" * 60)
    print("Expense Tracker Auth Schema")
    print("=" * 60)

    db = get_auth_db()
    db.init_schema()

    print("\nusers table ready")
    print("=" * 60)


if __name__ == "__main__":
    main()
