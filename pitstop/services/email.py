import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart

from fastapi import Request

from pitstop.config import settings

logger = logging.getLogger(__name__)


class EmailService:
    def __init__(self, smtp_server: str = None, smtp_port: int = None, username: str = None,
                 password: str = None, from_email: str = None, frontend_url: str = None):
        self.smtp_server = smtp_server or settings.smtp_server
        self.smtp_port = smtp_port or settings.smtp_port
        self.username = username if username is not None else settings.smtp_username
        self.password = password if password is not None else settings.smtp_password
        self.from_email = from_email or settings.from_email
        self.frontend_url = frontend_url or settings.frontend_url

    @property
    def configured(self) -> bool:
        return bool(self.username and self.password)

    def send_verification_email(self, recipient_email: str, first_name: str, token: str) -> bool:
        link = f"{self.frontend_url}/verify-email?token={token}"
        text_content = (
            f"Hi {first_name},\n\n"
            f"Welcome to PitStop. Please confirm your email address by opening the link below.\n\n"
            f"{link}\n\n"
            f"The link expires in {settings.email_verification_hours} hours."
        )
        return self.send_email(recipient_email, "Verify your PitStop account", text_content)

    def send_password_reset_email(self, recipient_email: str, first_name: str, token: str) -> bool:
        link = f"{self.frontend_url}/reset-password?token={token}"
        text_content = (
            f"Hi {first_name},\n\n"
            f"We received a request to reset your PitStop password.\n\n"
            f"{link}\n\n"
            f"The link expires in {settings.password_reset_minutes} minutes. "
            f"If you did not ask for this, you can ignore this email."
        )
        return self.send_email(recipient_email, "Reset your PitStop password", text_content)

    def send_email(self, recipient_email: str, subject: str, text_content: str) -> bool:
        msg = MIMEMultipart('alternative')
        msg['Subject'] = subject
        msg['From'] = self.from_email
        msg['To'] = recipient_email
        msg.attach(MIMEText(text_content, 'plain'))
        return self._send_email(msg, recipient_email)

    def _send_email(self, msg: MIMEMultipart, recipient_email: str) -> bool:
        if not self.configured:
            logger.info(f"SMTP not configured, skipping email '{msg['Subject']}' to {recipient_email}")
            return False

        try:
            server = smtplib.SMTP(self.smtp_server, self.smtp_port, timeout=10)
            server.starttls()
            server.login(self.username, self.password)
            server.sendmail(self.from_email, recipient_email, msg.as_string())
            server.quit()

            logger.info(f"Email sent successfully to {recipient_email}")
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(f"SMTP Authentication failed: {str(e)}")
            return False

        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"SMTP error sending to {recipient_email}: {str(e)}")
            return False


def get_email_service(request: Request) -> EmailService:
    """Email client created at startup and kept on the application state"""
    return request.app.state.email_service
