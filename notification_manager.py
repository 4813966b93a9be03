"""
Release notifications for Afternote recipients
Email over SMTP, SMS over Twilio
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from html import escape
from typing import Dict, List, Optional, Tuple

from verification_models import ProtectedUser, Recipient, VideoMessage

logger = logging.getLogger(__name__)


def format_duration(seconds: int) -> str:
    seconds = int(seconds or 0)
    return f"{seconds // 60}:{seconds % 60:02d}"


class NotificationManager:
    """Handles email and SMS notifications"""

    def __init__(self, config: Dict, db=None):
        self.smtp_server = config.get('smtp_server', 'smtp.gmail.com')
        self.smtp_port = config.get('smtp_port', 587)
        self.email = config.get('email')
        self.email_password = config.get('email_password')
        self.sender = config.get('smtp_from') or self.email
        self.twilio_sid = config.get('twilio_sid')
        self.twilio_token = config.get('twilio_token')
        self.twilio_phone = config.get('twilio_phone')
        self.db = db

    def send_email(self, to_email: str, subject: str, body: str, html: str = None) -> bool:
        """Send a plain text email with an optional HTML alternative"""
        if not self.email or not self.email_password:
            logger.warning("SMTP credentials not configured, skipping email")
            return False
        try:
            msg = MIMEMultipart('alternative')
            msg['From'] = self.sender
            msg['To'] = to_email
            msg['Subject'] = subject

            msg.attach(MIMEText(body, 'plain'))
            if html:
                msg.attach(MIMEText(html, 'html'))

            server = smtplib.SMTP(self.smtp_server, self.smtp_port)
            try:
                server.starttls()
                server.login(self.email, self.email_password)
                server.sendmail(self.sender, to_email, msg.as_string())
            finally:
                server.quit()

            logger.info(f"Email sent successfully to {to_email}")
            return True

        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send email to {to_email}: {str(e)}")
            return False

    def send_sms(self, phone_number: str, message: str) -> Optional[str]:
        """Send SMS using Twilio, returning the message SID"""
        if not all([self.twilio_sid, self.twilio_token, self.twilio_phone]):
            logger.warning("Twilio credentials not configured, skipping SMS")
            return None

        from twilio.rest import Client
        from twilio.base.exceptions import TwilioException

        try:
            client = Client(self.twilio_sid, self.twilio_token)
            sms = client.messages.create(
                body=message,
                from_=self.twilio_phone,
                to=phone_number
            )
            logger.info(f"SMS sent successfully to {phone_number}, SID: {sms.sid}")
            return sms.sid

        except TwilioException as e:
            logger.error(f"Failed to send SMS to {phone_number}: {str(e)}")
            return None

    def build_release_email(self, recipient: Recipient, messages: List[VideoMessage],
                            deceased: ProtectedUser) -> Tuple[str, str, str]:
        """Subject, text body and HTML body of the release email"""
        name = deceased.name
        subject = f"Important Message from {name} - Afternote"

        text_items = ''.join(
            f"\n- {m.title}\n  {m.description or 'No description provided'}\n"
            f"  Duration: {format_duration(m.duration)}\n  Watch at: {m.file_url}\n"
            for m in messages
        )
        text = f"""Important Message from {name}

Dear {recipient.full_name},

We are writing to inform you that {name} has passed away, and we have been authorized to share their video messages with you.

These messages were recorded by {name} and were intended to be shared with you at this time. We understand this may be a difficult moment, and we hope these messages provide comfort and closure.

Video Messages from {name}:
{text_items}
If you have any questions or need assistance accessing these messages, please don't hesitate to contact us.

With deepest sympathy,
The Afternote Team

---
This message was sent to you because you were designated as a recipient of video messages from {name}.
If you believe you received this message in error, please contact us immediately.
"""

        html_items = ''.join(
            f'<div style="margin: 20px 0; padding: 15px; border: 1px solid #ddd;">'
            f'<h3>{escape(m.title)}</h3>'
            f'<p>{escape(m.description or "No description provided")}</p>'
            f'<p>Duration: {format_duration(m.duration)}</p>'
            f'<a href="{escape(m.file_url, quote=True)}">Watch Video Message</a></div>'
            for m in messages
        )
        html = f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Important Message from {escape(name)}</title></head>
<body>
  <p>Dear {escape(recipient.full_name)},</p>
  <p>We are writing to inform you that {escape(name)} has passed away, and we have been authorized to share their video messages with you.</p>
  <h2>Video Messages from {escape(name)}</h2>
  {html_items}
  <p>With deepest sympathy,<br>The Afternote Team</p>
</body>
</html>
"""
        return subject, text, html

    def notify_release(self, deceased: ProtectedUser, recipients: List[Recipient],
                       messages: List[VideoMessage]) -> int:
        """Tell every recipient their messages are available; returns the number reached"""
        reached = 0
        for recipient in recipients:
            own_messages = [m for m in messages if recipient.id in m.recipient_ids]
            if not own_messages:
                continue

            delivered = False
            if recipient.notify_email:
                subject, text, html = self.build_release_email(recipient, own_messages, deceased)
                email_ok = self.send_email(recipient.email, subject, text, html)
                self._log(recipient, 'email', email_ok)
                delivered = delivered or email_ok

            if recipient.notify_sms and recipient.phone:
                sid = self.send_sms(
                    recipient.phone,
                    f"{deceased.name} left {len(own_messages)} video message(s) for you on Afternote. "
                    f"Check your email for access details."
                )
                self._log(recipient, 'sms', sid is not None, message_id=sid)
                delivered = delivered or sid is not None

            if delivered:
                reached += 1

        logger.info(f"Release notifications for user {deceased.id}: {reached}/{len(recipients)} recipients reached")
        return reached

    def _log(self, recipient: Recipient, method: str, ok: bool, message_id: str = None):
        if self.db is None:
            return
        self.db.log_delivery(
            recipient.full_name, method, "success" if ok else "failed",
            message_id=message_id,
            error_details=None if ok else f"{method} delivery to {recipient.full_name} failed",
        )
