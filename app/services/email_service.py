import logging
import smtplib
import ssl
from abc import ABC, abstractmethod
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Optional

from app.reminders.errors import DispatchError

logger = logging.getLogger(__name__)


@dataclass
class MailMessage:
    to: str
    subject: str
    text: str
    html: Optional[str] = None


class MailSender(ABC):
    """Delivers a MailMessage and returns an identifier for the sent message."""

    @abstractmethod
    def send(self, message: MailMessage) -> str: ...


class SmtpMailSender(MailSender):
    def __init__(
        self,
        host: Optional[str],
        port: int,
        username: Optional[str],
        password: Optional[str],
        from_email: Optional[str] = None,
        use_ssl: bool = False,
        timeout: float = 10,
    ):
        self.smtp_server = host
        self.smtp_port = int(port)
        self.smtp_username = username
        self.smtp_password = password
        self.from_email = from_email or username
        self.use_ssl = use_ssl
        self.timeout = timeout

    @classmethod
    def from_settings(cls, reminder_settings) -> "SmtpMailSender":
        return cls(
            host=reminder_settings.SMTP_HOST,
            port=reminder_settings.SMTP_PORT,
            username=reminder_settings.SMTP_USER,
            password=reminder_settings.SMTP_PASS,
            from_email=reminder_settings.EMAIL_FROM,
            use_ssl=reminder_settings.SMTP_SECURE,
            timeout=reminder_settings.DISPATCH_TIMEOUT_SECONDS,
        )

    @property
    def configured(self) -> bool:
        return bool(self.smtp_server and self.smtp_username and self.smtp_password)

    def _build(self, message: MailMessage) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = self.from_email
        msg["To"] = message.to
        msg["Message-ID"] = make_msgid()
        msg.attach(MIMEText(message.text, "plain", "utf-8"))
        if message.html:
            msg.attach(MIMEText(message.html, "html", "utf-8"))
        return msg

    def send(self, message: MailMessage) -> str:
        """Send over SMTP; raises DispatchError or smtplib/OSError errors on failure."""
        if not self.configured:
            raise DispatchError("SMTP not configured")

        msg = self._build(message)
        logger.info(f"Sending email via {self.smtp_server}:{self.smtp_port} to {message.to}")
        context = ssl.create_default_context()
        if self.use_ssl:
            # Implicit TLS (usually port 465)
            with smtplib.SMTP_SSL(self.smtp_server, self.smtp_port, context=context, timeout=self.timeout) as server:
                server.login(self.smtp_username, self.smtp_password)
                server.send_message(msg)
        else:
            with smtplib.SMTP(self.smtp_server, self.smtp_port, timeout=self.timeout) as server:
                server.starttls(context=context)
                server.login(self.smtp_username, self.smtp_password)
                server.send_message(msg)

        logger.info(f"Email sent successfully to {message.to}")
        return msg["Message-ID"]
