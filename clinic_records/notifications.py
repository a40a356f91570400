"""In-app notifications with optional e-mail delivery over SMTP."""

from __future__ import annotations

from datetime import datetime, timezone
from email.message import EmailMessage
import html
import logging
import smtplib
import ssl

from .config import Settings
from .domain.errors import NotFound
from .repository import ClinicRepository, NotificationRecord

logger = logging.getLogger(__name__)

_EMAIL_TEMPLATE = """\
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <div style="background-color: #2563eb; padding: 20px; text-align: center;">
    <h1 style="color: white; margin: 0;">Clinic Records</h1>
  </div>
  <div style="padding: 30px; background-color: #f9fafb;">{body}</div>
</div>
"""


class EmailSender:
    """Thin SMTP client; disabled when no host is configured."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    @property
    def enabled(self) -> bool:
        return bool(self._settings.smtp_host)

    def send(self, to: str, subject: str, body_html: str) -> bool:
        """Send an HTML message, returning ``False`` instead of raising on SMTP failures."""
        if not self.enabled:
            return False
        message = EmailMessage()
        message["From"] = self._settings.mail_sender
        message["To"] = to
        message["Subject"] = subject
        message.set_content("This message requires an HTML-capable mail client.")
        message.add_alternative(_EMAIL_TEMPLATE.format(body=body_html), subtype="html")
        try:
            with smtplib.SMTP(self._settings.smtp_host, self._settings.smtp_port, timeout=15) as server:
                if self._settings.smtp_user:
                    server.starttls(context=ssl.create_default_context())
                    server.login(self._settings.smtp_user, self._settings.smtp_password)
                server.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning("failed to send e-mail to %s: %s", to, exc)
            return False
        return True


class Notifier:
    """Creates notification rows and mirrors access alerts by e-mail."""

    def __init__(self, repository: ClinicRepository, sender: EmailSender | None = None) -> None:
        self._repository = repository
        self._sender = sender

    def notify_access(
        self,
        account_id: str,
        subject_name: str,
        ip_address: str | None,
        location: str | None,
    ) -> NotificationRecord:
        """Tell an account holder that their clinical record was opened."""
        title = "Clinical record accessed"
        ip_text = ip_address or "unknown"
        location_text = location or "unknown"
        message = f"The clinical record of {subject_name} was accessed from IP {ip_text}. Location: {location_text}"
        notification = self._repository.create_notification(
            account_id=account_id, kind="access", title=title, message=message
        )

        if self._sender is not None and self._sender.enabled:
            account = self._repository.get_account(account_id)
            if account is not None and account.email:
                when = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")
                self._sender.send(
                    account.email,
                    title,
                    f"<h2>{title}</h2>"
                    f"<p>The clinical record of <strong>{html.escape(subject_name)}</strong> was accessed.</p>"
                    f"<ul><li><strong>When:</strong> {when}</li>"
                    f"<li><strong>IP:</strong> {html.escape(ip_text)}</li>"
                    f"<li><strong>Location:</strong> {html.escape(location_text)}</li></ul>"
                    "<p>If you do not recognise this access, please contact the clinic administrator.</p>",
                )
        return notification

    def list_for_account(self, account_id: str) -> list[NotificationRecord]:
        return self._repository.list_notifications(account_id)

    def mark_read(self, notification_id: str, account_id: str) -> NotificationRecord:
        notification = self._repository.mark_notification_read(notification_id, account_id)
        if notification is None:
            raise NotFound("notification not found")
        return notification

    def mark_all_read(self, account_id: str) -> int:
        return self._repository.mark_all_notifications_read(account_id)
