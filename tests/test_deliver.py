"""Tests for SMTP delivery."""

import smtplib
from unittest.mock import MagicMock, patch

import pytest

from rss2epub.config import SMTPTransport
from rss2epub.deliver import Attachment, EmailSender
from rss2epub.errors import SendError


def _transport(**overrides) -> SMTPTransport:
    data = {
        "type": "smtp",
        "from": "me@example.com",
        "host": "smtp.example.com",
        "port": 587,
        "auth": {"user": "me", "pass": "secret"},
    }
    data.update(overrides)
    return SMTPTransport.model_validate(data)


ATTACHMENT = Attachment(filename="Book.epub", data=b"PK\x03\x04epub")


class TestBuildMessage:
    def test_headers_and_attachment(self):
        msg = EmailSender(_transport()).build_message("you@example.com", "rss2epub: Book", ATTACHMENT)

        assert msg["From"] == "me@example.com"
        assert msg["To"] == "you@example.com"
        assert msg["Subject"] == "rss2epub: Book"

        attachments = list(msg.iter_attachments())
        assert len(attachments) == 1
        assert attachments[0].get_filename() == "Book.epub"
        assert attachments[0].get_content_type() == "application/epub+zip"
        assert attachments[0].get_content() == ATTACHMENT.data


class TestSend:
    @patch("rss2epub.deliver.mailer.smtplib.SMTP")
    def test_starttls_and_login(self, mock_smtp):
        server = MagicMock()
        mock_smtp.return_value.__enter__.return_value = server

        EmailSender(_transport()).send("you@example.com", "rss2epub: Book", ATTACHMENT)

        mock_smtp.assert_called_once()
        assert mock_smtp.call_args.args[:2] == ("smtp.example.com", 587)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("me", "secret")
        server.send_message.assert_called_once()

    @patch("rss2epub.deliver.mailer.smtplib.SMTP_SSL")
    def test_port_465_uses_ssl(self, mock_smtp_ssl):
        server = MagicMock()
        mock_smtp_ssl.return_value.__enter__.return_value = server

        EmailSender(_transport(port=465)).send("you@example.com", "s", ATTACHMENT)

        mock_smtp_ssl.assert_called_once()
        server.starttls.assert_not_called()
        server.send_message.assert_called_once()

    @patch("rss2epub.deliver.mailer.smtplib.SMTP")
    def test_no_tls_no_auth(self, mock_smtp):
        server = MagicMock()
        mock_smtp.return_value.__enter__.return_value = server

        EmailSender(_transport(tls=False, auth=None)).send("you@example.com", "s", ATTACHMENT)

        server.starttls.assert_not_called()
        server.login.assert_not_called()
        server.send_message.assert_called_once()

    @patch("rss2epub.deliver.mailer.smtplib.SMTP")
    def test_smtp_error_becomes_send_error(self, mock_smtp):
        server = MagicMock()
        server.send_message.side_effect = smtplib.SMTPRecipientsRefused({})
        mock_smtp.return_value.__enter__.return_value = server

        with pytest.raises(SendError, match="smtp.example.com:587"):
            EmailSender(_transport()).send("you@example.com", "s", ATTACHMENT)

    @patch("rss2epub.deliver.mailer.smtplib.SMTP")
    def test_connection_error_becomes_send_error(self, mock_smtp):
        mock_smtp.side_effect = ConnectionRefusedError("refused")

        with pytest.raises(SendError):
            EmailSender(_transport()).send("you@example.com", "s", ATTACHMENT)
