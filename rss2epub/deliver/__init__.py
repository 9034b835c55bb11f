"""Delivery module - mail finished books."""

from .mailer import Attachment, EmailSender, Mailer

__all__ = ["Attachment", "EmailSender", "Mailer"]
