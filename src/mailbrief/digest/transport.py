"""Mail transport capability and the SMTP implementation."""

from __future__ import annotations

import asyncio
import smtplib
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, format_datetime, make_msgid
from typing import Protocol

import structlog

from mailbrief.config import Settings
from mailbrief.exceptions import DeliveryError
from mailbrief.mailbox.parsing import html_to_text
from mailbrief.models import ContentFormat, DeliveryReceipt, DigestContent

logger = structlog.get_logger()


class MailTransport(Protocol):
    async def send(self, address: str, digest: DigestContent) -> DeliveryReceipt:
        """Deliver ``digest`` or raise :class:`DeliveryError`."""
        ...


class SmtpTransport:
    """Sends digests through an SMTP relay (STARTTLS + login when configured)."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    async def send(self, address: str, digest: DigestContent) -> DeliveryReceipt:
        return await asyncio.to_thread(self._send_sync, address, digest)

    def build_message(self, address: str, digest: DigestContent) -> MIMEMultipart:
        s = self.settings
        msg = MIMEMultipart("alternative")
        msg["Subject"] = digest.subject
        msg["From"] = formataddr((s.smtp_from_name, s.smtp_from_email))
        msg["To"] = address
        msg["Date"] = format_datetime(datetime.now(timezone.utc))
        msg["Message-ID"] = make_msgid(domain=s.smtp_from_email.rpartition("@")[2] or None)

        if digest.content_format is ContentFormat.HTML:
            # Plaintext fallback first; clients prefer the last alternative.
            msg.attach(MIMEText(html_to_text(digest.body), "plain", "utf-8"))
            msg.attach(MIMEText(digest.body, "html", "utf-8"))
        else:
            msg.attach(MIMEText(digest.body, "plain", "utf-8"))
        return msg

    def _send_sync(self, address: str, digest: DigestContent) -> DeliveryReceipt:
        s = self.settings
        msg = self.build_message(address, digest)

        logger.info("smtp_connecting", host=s.smtp_host, port=s.smtp_port, to=address)
        try:
            with smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=s.delivery_timeout_seconds) as server:
                if s.smtp_starttls:
                    server.starttls()
                if s.smtp_user and s.smtp_password:
                    server.login(s.smtp_user, s.smtp_password)
                refused = server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            raise DeliveryError(f"SMTP delivery to {address} failed: {exc}") from exc

        if refused:
            raise DeliveryError(f"SMTP relay refused recipient {address}: {refused}")

        logger.info("digest_delivered", to=address, subject=digest.subject)
        return DeliveryReceipt(
            address=address,
            message_id=msg["Message-ID"],
            accepted_at=datetime.now(timezone.utc),
        )
