import asyncio
import smtplib
import socket
import ssl
from dataclasses import dataclass, field
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import Dict, List, Optional

import certifi

from ..config import Settings
from ..core.errors import TransportError, TransportUnavailableError
from ..core.logging_config import get_logger

logger = get_logger(__name__)

# The server refused this message; other recipients may still go through.
# smtplib errors are OSError subclasses, so these must be caught first.
_REFUSAL_ERRORS = (
    smtplib.SMTPRecipientsRefused,
    smtplib.SMTPSenderRefused,
    smtplib.SMTPDataError,
)

# Failures that mean the server can't be used at all
_CONNECTION_ERRORS = (
    smtplib.SMTPServerDisconnected,
    smtplib.SMTPConnectError,
    smtplib.SMTPAuthenticationError,
    smtplib.SMTPNotSupportedError,
    socket.gaierror,
    ssl.SSLError,
    ConnectionError,
    TimeoutError,
)


@dataclass
class OutboundMessage:
    to: str
    from_address: str
    subject: str
    html: str
    from_name: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)

    def to_mime(self) -> MIMEMultipart:
        message = MIMEMultipart('alternative')
        message['Subject'] = self.subject
        message['From'] = formataddr((self.from_name, self.from_address)) if self.from_name else self.from_address
        message['To'] = self.to
        for name, value in self.headers.items():
            message[name] = value
        message.attach(MIMEText(self.html, 'html'))
        return message


class MailTransport:
    """
    Sends one message per call.

    Raises TransportError when the message is refused for this recipient and
    TransportUnavailableError when the transport cannot be reached at all.
    """

    async def send(self, message: OutboundMessage) -> None:
        raise NotImplementedError


class LoggingTransport(MailTransport):
    """Development transport that only logs what would be sent"""

    def __init__(self):
        self.sent: List[OutboundMessage] = []

    async def send(self, message: OutboundMessage) -> None:
        logger.info(f"[dry-run] Email to {message.to}: {message.subject}")
        self.sent.append(message)


class SmtpTransport(MailTransport):
    def __init__(
        self,
        smtp_server: str,
        smtp_port: int,
        smtp_username: str,
        smtp_password: str,
        verify_ssl: bool = True,
        timeout: int = 10
    ):
        self.smtp_server = smtp_server
        self.smtp_port = smtp_port
        self.smtp_username = smtp_username
        self.smtp_password = smtp_password
        self.verify_ssl = verify_ssl
        self.timeout = timeout

    def create_ssl_context(self) -> ssl.SSLContext:
        """Create SSL context backed by the certifi bundle"""
        context = ssl.create_default_context(cafile=certifi.where())
        if not self.verify_ssl:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
            logger.warning("SSL certificate verification is disabled")
        return context

    def _send_starttls(self, message: MIMEMultipart, context: ssl.SSLContext) -> None:
        with smtplib.SMTP(self.smtp_server, self.smtp_port, timeout=self.timeout) as server:
            server.starttls(context=context)
            server.login(self.smtp_username, self.smtp_password)
            server.send_message(message)

    def _send_ssl(self, message: MIMEMultipart, context: ssl.SSLContext) -> None:
        with smtplib.SMTP_SSL(self.smtp_server, 465, context=context, timeout=self.timeout) as server:
            server.login(self.smtp_username, self.smtp_password)
            server.send_message(message)

    def _deliver(self, outbound: OutboundMessage) -> None:
        message = outbound.to_mime()
        context = self.create_ssl_context()

        # Try STARTTLS first, then direct SSL
        try:
            self._send_starttls(message, context)
            logger.info(f"Email sent via STARTTLS to {outbound.to}")
            return
        except _REFUSAL_ERRORS as e:
            raise TransportError(f"SMTP refused {outbound.to}: {e}")
        except _CONNECTION_ERRORS as e:
            logger.warning(f"STARTTLS attempt failed: {e}")
        except smtplib.SMTPException as e:
            raise TransportError(f"SMTP refused {outbound.to}: {e}")

        try:
            self._send_ssl(message, context)
            logger.info(f"Email sent via SSL to {outbound.to}")
        except _REFUSAL_ERRORS as e:
            raise TransportError(f"SMTP refused {outbound.to}: {e}")
        except _CONNECTION_ERRORS as e:
            raise TransportUnavailableError(f"SMTP server unreachable: {e}")
        except smtplib.SMTPException as e:
            raise TransportError(f"SMTP refused {outbound.to}: {e}")

    async def send(self, message: OutboundMessage) -> None:
        # smtplib blocks; keep it off the event loop
        await asyncio.to_thread(self._deliver, message)


def build_transport(settings: Settings) -> MailTransport:
    if settings.smtp_configured:
        return SmtpTransport(
            smtp_server=settings.smtp_server,
            smtp_port=settings.smtp_port,
            smtp_username=settings.smtp_username,
            smtp_password=settings.smtp_password,
            verify_ssl=settings.verify_ssl,
        )
    logger.warning("SMTP is not configured, using logging transport")
    return LoggingTransport()
