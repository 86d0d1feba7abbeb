"""SMTP delivery for alert and subscription emails."""

from __future__ import annotations

import asyncio
import logging
import smtplib
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Protocol

from ..config import settings
from ..errors import DeliveryError

logger = logging.getLogger(__name__)


class Mailer(Protocol):
    async def send(self, to: list[str], subject: str, html: str) -> str: ...


class SmtpMailer:
    """Sends HTML email through the configured SMTP relay.

    smtplib is blocking, so every send runs in a worker thread.
    """

    def __init__(
        self,
        host: str = "",
        port: int = 0,
        user: str = "",
        password: str = "",
        sender: str = "",
        use_tls: bool | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.host = host or settings.smtp_host
        self.port = port or settings.smtp_port
        self.user = user or settings.smtp_user
        self.password = password or settings.smtp_password
        self.sender = sender or settings.email_from
        self.use_tls = settings.smtp_use_tls if use_tls is None else use_tls
        self.timeout = timeout

        if self.host:
            logger.info("SMTP mailer enabled (%s:%d)", self.host, self.port)
        else:
            logger.info("SMTP mailer disabled (no smtp_host)")

    @property
    def enabled(self) -> bool:
        return bool(self.host)

    async def send(self, to: list[str], subject: str, html: str) -> str:
        """Send one message to every address in ``to``. Returns the Message-ID."""
        if not self.enabled:
            raise DeliveryError("SMTP is not configured")
        if not to:
            raise DeliveryError("No recipients")
        return await asyncio.to_thread(self._send_sync, to, subject, html)

    def _send_sync(self, to: list[str], subject: str, html: str) -> str:
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = ", ".join(to)
        msg["Subject"] = subject
        msg["Message-ID"] = make_msgid(domain=self.sender.rpartition("@")[2] or None)
        msg.set_content("This message requires an HTML capable email client.")
        msg.add_alternative(html, subtype="html")

        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                if self.use_tls:
                    smtp.starttls()
                if self.user:
                    smtp.login(self.user, self.password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryError(f"SMTP send failed: {e}") from e

        logger.debug("Email sent to %d recipient(s): %s", len(to), subject)
        return msg["Message-ID"]
