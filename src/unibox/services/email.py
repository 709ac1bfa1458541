"""Outbound email delivery with pluggable backends.

Backends (``EMAIL_BACKEND``):
- console: logs the message (development)
- smtp: any SMTP relay via aiosmtplib
- sendgrid: SendGrid v3 mail API

Replies carry ``In-Reply-To``/``References`` so the recipient's client keeps
them in the same thread.
"""

from collections.abc import Mapping
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from functools import lru_cache
from typing import Any
from uuid import uuid4

import aiosmtplib
import httpx
import structlog

from unibox.config import settings
from unibox.services.senders import OutboundMessage, SendResult

logger = structlog.get_logger()

DEFAULT_SUBJECT = "(no subject)"


def _recipient(message: OutboundMessage) -> str | None:
    """Address to reply to: the conversation's sender, else its id if it is an address."""
    sender = message.chat_info.get("sender")
    if isinstance(sender, Mapping):
        for key in ("address", "email", "identifier"):
            value = sender.get(key)
            if isinstance(value, str) and "@" in value:
                return value
    elif isinstance(sender, str) and "@" in sender:
        return sender
    if "@" in message.external_conversation_id:
        return message.external_conversation_id
    return None


def _threading_headers(message: OutboundMessage) -> dict[str, str]:
    headers: dict[str, str] = {}
    if message.reply_to_external_id:
        headers["In-Reply-To"] = message.reply_to_external_id
    references = [r for r in (message.thread_id, message.reply_to_external_id) if r]
    if references:
        headers["References"] = " ".join(dict.fromkeys(references))
    return headers


class EmailSender:
    """MessageSender for the email provider."""

    def __init__(self, backend: str | None = None) -> None:
        self._from_email = settings.EMAIL_FROM_ADDRESS
        self._from_name = settings.EMAIL_FROM_NAME
        self._backend = backend or settings.EMAIL_BACKEND

    async def send(self, message: OutboundMessage) -> SendResult:
        to_email = _recipient(message)
        if not to_email:
            logger.warning(
                "No recipient address for email conversation",
                conversation=message.external_conversation_id,
            )
            return SendResult(success=False, error="No recipient address for conversation")

        subject = message.subject or DEFAULT_SUBJECT
        if self._backend == "smtp":
            return await self._send_smtp(to_email, subject, message)
        if self._backend == "sendgrid":
            return await self._send_sendgrid(to_email, subject, message)
        if self._backend != "console":
            logger.warning("Unknown email backend, using console", backend=self._backend)
        return await self._send_console(to_email, subject, message)

    async def _send_console(
        self, to_email: str, subject: str, message: OutboundMessage
    ) -> SendResult:
        message_id = f"<console-{uuid4().hex[:12]}@unibox>"
        logger.info(
            "Email sent (console backend)",
            to=to_email,
            subject=subject,
            message_id=message_id,
            body_preview=message.body[:200],
        )
        return SendResult(success=True, external_message_id=message_id)

    async def _send_smtp(self, to_email: str, subject: str, message: OutboundMessage) -> SendResult:
        """Send via async SMTP."""
        message_id = make_msgid(domain=self._from_email.split("@")[-1])
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self._from_name} <{self._from_email}>"
        msg["To"] = to_email
        msg["Reply-To"] = settings.EMAIL_REPLY_TO
        msg["Message-ID"] = message_id
        for name, value in _threading_headers(message).items():
            msg[name] = value
        msg.attach(MIMEText(message.body, "plain", "utf-8"))

        try:
            await aiosmtplib.send(
                msg,
                hostname=settings.SMTP_HOST,
                port=settings.SMTP_PORT,
                username=settings.SMTP_USER,
                password=settings.SMTP_PASSWORD,
                start_tls=settings.SMTP_USE_TLS,
                recipients=[to_email],
            )
        except (aiosmtplib.SMTPException, OSError) as e:
            logger.warning("Failed to send email via SMTP", to=to_email, error=str(e))
            return SendResult(success=False, error=str(e))

        logger.info("Email sent via SMTP", to=to_email, message_id=message_id)
        return SendResult(success=True, external_message_id=message_id)

    async def _send_sendgrid(
        self, to_email: str, subject: str, message: OutboundMessage
    ) -> SendResult:
        """Send via the SendGrid API."""
        api_key = settings.SENDGRID_API_KEY
        if not api_key:
            logger.warning("SENDGRID_API_KEY not set, falling back to console")
            return await self._send_console(to_email, subject, message)

        payload: dict[str, Any] = {
            "personalizations": [{"to": [{"email": to_email}]}],
            "from": {"email": self._from_email, "name": self._from_name},
            "reply_to": {"email": settings.EMAIL_REPLY_TO},
            "subject": subject,
            "content": [{"type": "text/plain", "value": message.body}],
            "categories": ["inbox-reply"],
        }
        headers = _threading_headers(message)
        if headers:
            payload["headers"] = headers

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    settings.SENDGRID_API_URL,
                    json=payload,
                    headers={
                        "Authorization": f"Bearer {api_key}",
                        "Content-Type": "application/json",
                    },
                    timeout=settings.HTTP_TIMEOUT_SENDGRID,
                )
        except httpx.HTTPError as e:
            logger.warning("Failed to reach SendGrid", to=to_email, error=str(e))
            return SendResult(success=False, error=str(e))

        # SendGrid answers 202 Accepted
        if response.status_code == 202:
            message_id = response.headers.get("X-Message-Id", f"sg-{uuid4().hex[:12]}")
            logger.info("Email sent via SendGrid", to=to_email, message_id=message_id)
            return SendResult(success=True, external_message_id=message_id)

        logger.error(
            "SendGrid API error",
            status_code=response.status_code,
            response=response.text[:500],
            to=to_email,
        )
        return SendResult(
            success=False,
            error=f"SendGrid API error: {response.status_code}",
            raw={"status_code": response.status_code},
        )


@lru_cache
def get_email_sender() -> EmailSender:
    """Get the email sender singleton."""
    return EmailSender()
