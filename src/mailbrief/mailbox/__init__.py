"""Mailbox collaborators and envelope normalization."""

from .base import Mailbox
from .gmail import GmailMailbox
from .normalize import content_hash, item_to_message, normalize_body, normalize_subject

__all__ = [
    "GmailMailbox",
    "Mailbox",
    "content_hash",
    "item_to_message",
    "normalize_body",
    "normalize_subject",
]
