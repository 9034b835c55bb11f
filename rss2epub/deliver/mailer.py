"""SMTP delivery of EPUB attachments."""

import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Protocol

from rss2epub.config import TransportConfig
from rss2epub.errors import SendError
from rss2epub.logging_config import get_logger

logger = get_logger("mailer")

EPUB_CONTENT_TYPE = "application/epub+zip"

# Port 465 speaks TLS from the first byte; anything else upgrades with STARTTLS.
IMPLICIT_TLS_PORT = 465

PLAIN_BODY = "Your articles are attached as an EPUB file."
HTML_BODY = '<div dir="auto"></div>'


@dataclass(frozen=True)
class Attachment:
    """A file attached to an outgoing email."""

    filename: str
    data: bytes
    content_type: str = EPUB_CONTENT_TYPE


class Mailer(Protocol):
    """Anything that can deliver an attachment to a recipient."""

    def send(self, to: str, subject: str, attachment: Attachment) -> None:
        ...


class EmailSender:
    """Sends attachments through an SMTP transport."""

    def __init__(self, transport: TransportConfig, timeout: int = 60):
        self.transport = transport
        self.timeout = timeout

    @property
    def sender(self) -> str:
        return self.transport.sender

    def build_message(self, to: str, subject: str, attachment: Attachment) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = to
        msg.set_content(PLAIN_BODY)
        msg.add_alternative(HTML_BODY, subtype="html")

        maintype, _, subtype = attachment.content_type.partition("/")
        msg.add_attachment(
            attachment.data,
            maintype=maintype,
            subtype=subtype,
            filename=attachment.filename,
        )
        return msg

    def send(self, to: str, subject: str, attachment: Attachment) -> None:
        """
        Deliver one message.

        Raises:
            SendError: the server refused the message or could not be reached
        """
        transport = self.transport
        msg = self.build_message(to, subject, attachment)
        context = ssl.create_default_context()

        logger.info(f"Sending '{subject}' to {to} via {transport.host}:{transport.port}")
        try:
            if transport.port == IMPLICIT_TLS_PORT:
                server = smtplib.SMTP_SSL(
                    transport.host, transport.port, timeout=self.timeout, context=context
                )
            else:
                server = smtplib.SMTP(transport.host, transport.port, timeout=self.timeout)

            with server:
                if transport.tls and transport.port != IMPLICIT_TLS_PORT:
                    server.starttls(context=context)
                if transport.auth is not None:
                    server.login(transport.auth.user, transport.auth.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Send to {to} failed: {e}")
            raise SendError(f"sending to {to} via {transport.host}:{transport.port} failed: {e}") from e

        logger.debug(f"Delivered {attachment.filename} ({len(attachment.data)} bytes) to {to}")
