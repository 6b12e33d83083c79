"""
Invitation email delivery over SMTP.

Sending is fire-and-forget from the auth flow's point of view: the invitation
is already committed when send_invitation runs, and a delivery failure is
reported to the caller without undoing it.
"""
import ssl
import smtplib
import logging
from email.message import EmailMessage
from typing import Optional
from urllib.parse import parse_qs, urlparse

from ..auth.errors import NotificationFailure
from ..utils.config import Settings
from ..utils.secrets import mask_secret

logger = logging.getLogger(__name__)

INVITE_SUBJECT = "You're invited to Expense Tracker"


def _invitation_bodies(invite_link: str, role: str, inviter_name: Optional[str]) -> tuple:
    inviter = inviter_name or "An administrator"
    text = (
        f"{inviter} has invited you to join Expense Tracker as {role}.\n\n"
        f"Set your password here: {invite_link}\n\n"
        "This link expires in 7 days."
    )
    html = (
        f"<p>{inviter} has invited you to join <strong>Expense Tracker</strong> as {role}.</p>"
        f'<p><a href="{invite_link}">Set your password</a></p>'
        "<p>This link expires in 7 days.</p>"
    )
    return text, html


class InvitationMailer:
    """Send invitation links by email."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def send_invitation(self, email: str, invite_link: str, role: str, inviter_name: Optional[str] = None) -> None:
        """
        Email an invitation link.

        Without SMTP_HOST configured nothing is sent; only the recipient and a
        masked token are logged.

        Raises:
            NotificationFailure: If the SMTP exchange fails.
        """
        if not self.settings.smtp_host:
            token = parse_qs(urlparse(invite_link).query).get("token", [""])[0]
            logger.info(f"SMTP not configured, invitation for {email} not sent (token {mask_secret(token)})")
            return

        text, html = _invitation_bodies(invite_link, role, inviter_name)
        msg = EmailMessage()
        msg["Subject"] = INVITE_SUBJECT
        msg["From"] = self.settings.mail_from
        msg["To"] = email
        msg.set_content(text)
        msg.add_alternative(html, subtype="html")

        try:
            with smtplib.SMTP(self.settings.smtp_host, self.settings.smtp_port, timeout=10) as s:
                if self.settings.smtp_use_tls:
                    s.starttls(context=ssl.create_default_context())
                if self.settings.smtp_username and self.settings.smtp_password:
                    s.login(self.settings.smtp_username, self.settings.smtp_password)
                s.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send invitation email to {email}: {e!r}")
            raise NotificationFailure() from e

        logger.info(f"Invitation email sent to {email}")
