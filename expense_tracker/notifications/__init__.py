"""
Outbound notifications.
"""
from .mailer import InvitationMailer

__all__ = ["InvitationMailer"]
