"""
Expense Tracker - account authentication service.

Invitation-driven onboarding, password setup and multi-factor
authentication (TOTP and passkeys) for the Expense Tracker web app.
"""

__version__ = "1.0.0"
