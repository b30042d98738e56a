"""
Outbound mail dispatch.

Turns a ComposedMessage plus its photo attachments into an OutboundMail and
hands it to a MailTransport. Two transports are supported:

  - smtp    direct SMTP submission via aiosmtplib (implicit TLS on port 465,
            STARTTLS when the server offers it otherwise)
  - resend  Resend's transactional email API via httpx; attachment bytes are
            base64-encoded into the JSON payload

Adding a new transport:
  1. Write a class with a ``name`` attribute and ``async send(mail)``.
  2. Write a ``_<name>_from_settings(settings)`` factory and register it in
     _TRANSPORTS.
  3. Add its required settings to config._REQUIRED_CREDENTIALS and set
     EMAIL_PROVIDER=<name>.

Sends are never retried. Any transport failure is logged here with enough
context to diagnose it (never credentials) and re-raised as
MailDispatchError; the router answers the submitter with a generic message.
"""

import asyncio
import base64
import logging
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import formataddr
from typing import Callable, Optional, Protocol

import aiosmtplib
import httpx

from formrelay.config import MailConfigError, MailSettings
from formrelay.models.submission import Attachment, ComposedMessage
from formrelay.services.sanitize import is_valid_email, sanitize

logger = logging.getLogger(__name__)

SITE_HEADERS = {"X-M5-Site": "Mach Five Wheels"}

_SMTPS_PORT = 465


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class MailDispatchError(Exception):
    """Raised when the transport could not deliver the message."""
    def __init__(self, message: str, error_code: str = "send_failed"):
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class ResendAPIError(Exception):
    """Non-2xx response from the Resend API."""
    def __init__(self, status_code: int, body: str):
        super().__init__(f"Resend API returned {status_code}: {body[:200]}")
        self.status_code = status_code
        self.body = body


# ---------------------------------------------------------------------------
# Outbound message
# ---------------------------------------------------------------------------

@dataclass
class OutboundMail:
    from_address: str
    to_address: str
    subject: str
    text_body: str
    reply_to: Optional[str] = None
    headers: dict[str, str] = field(default_factory=dict)
    attachments: list[Attachment] = field(default_factory=list)


def _from_address(settings: MailSettings, sender_name: Optional[str]) -> str:
    display = settings.from_name
    name = sanitize(sender_name)
    if name:
        display = f"{name} via {settings.from_name}"
    return formataddr((display, settings.from_email))


def build_outbound(
    message: ComposedMessage,
    attachments: list[Attachment],
    settings: MailSettings,
) -> OutboundMail:
    """Address a composed message. Reply-To is only set for a valid address."""
    reply_to = message.reply_to_email if is_valid_email(message.reply_to_email) else None
    return OutboundMail(
        from_address=_from_address(settings, message.sender_name),
        to_address=settings.to_email,
        subject=message.subject,
        text_body=message.text_body,
        reply_to=reply_to,
        headers=dict(SITE_HEADERS),
        attachments=list(attachments),
    )


# ---------------------------------------------------------------------------
# Transports
# ---------------------------------------------------------------------------

class MailTransport(Protocol):
    name: str

    async def send(self, mail: OutboundMail) -> None:
        ...


class SmtpTransport:
    name = "smtp"

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        timeout: float = 30.0,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.timeout = timeout

    @property
    def implicit_tls(self) -> bool:
        return self.port == _SMTPS_PORT

    def build_message(self, mail: OutboundMail) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = mail.from_address
        msg["To"] = mail.to_address
        msg["Subject"] = mail.subject
        if mail.reply_to:
            msg["Reply-To"] = mail.reply_to
        for name, value in mail.headers.items():
            msg[name] = value
        msg.set_content(mail.text_body)

        for att in mail.attachments:
            maintype, _, subtype = att.content_type.partition("/")
            msg.add_attachment(
                att.content,
                maintype=maintype,
                subtype=subtype or "octet-stream",
                filename=att.filename,
            )
        return msg

    async def send(self, mail: OutboundMail) -> None:
        await aiosmtplib.send(
            self.build_message(mail),
            hostname=self.host,
            port=self.port,
            username=self.username,
            password=self.password,
            use_tls=self.implicit_tls,
            timeout=self.timeout,
        )


class ResendTransport:
    name = "resend"
    api_url = "https://api.resend.com/emails"

    def __init__(
        self,
        api_key: str,
        timeout: float = 30.0,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.timeout = timeout
        self.http_transport = http_transport

    def build_payload(self, mail: OutboundMail) -> dict:
        """
        Build the JSON body for POST /emails.

        Resend field names (snake_case):
          from, to[], subject, text, reply_to, headers,
          attachments[].{filename, content (base64), content_type}
        """
        payload = {
            "from": mail.from_address,
            "to": [mail.to_address],
            "subject": mail.subject,
            "text": mail.text_body,
            "headers": dict(mail.headers),
            "attachments": [
                {
                    "filename": att.filename,
                    "content": base64.b64encode(att.content).decode(),
                    "content_type": att.content_type,
                }
                for att in mail.attachments
            ],
        }
        if mail.reply_to:
            payload["reply_to"] = mail.reply_to
        return payload

    async def send(self, mail: OutboundMail) -> None:
        async with httpx.AsyncClient(
            timeout=self.timeout, transport=self.http_transport
        ) as client:
            response = await client.post(
                self.api_url,
                json=self.build_payload(mail),
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        if response.status_code >= 300:
            raise ResendAPIError(response.status_code, response.text)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

def _smtp_from_settings(settings: MailSettings) -> MailTransport:
    return SmtpTransport(
        host=settings.smtp_host,
        port=settings.smtp_port,
        username=settings.smtp_user,
        password=settings.smtp_password,
        timeout=settings.send_timeout_seconds,
    )


def _resend_from_settings(settings: MailSettings) -> MailTransport:
    return ResendTransport(
        api_key=settings.resend_api_key,
        timeout=settings.send_timeout_seconds,
    )


_TRANSPORTS: dict[str, Callable[[MailSettings], MailTransport]] = {
    "smtp": _smtp_from_settings,
    "resend": _resend_from_settings,
}


def get_transport(settings: MailSettings) -> MailTransport:
    """Build the transport named by settings.provider."""
    factory = _TRANSPORTS.get(settings.provider)
    if factory is None:
        raise MailConfigError(
            f"Unknown email provider {settings.provider!r}. "
            f"Supported providers: {sorted(_TRANSPORTS)}",
            "unknown_provider",
        )
    return factory(settings)


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

async def dispatch(
    message: ComposedMessage,
    attachments: list[Attachment],
    settings: MailSettings,
    transport: Optional[MailTransport] = None,
) -> None:
    """
    Send one composed submission, all attachments included, or nothing.

    Raises:
        MailConfigError:   settings name an unknown provider.
        MailDispatchError: the transport failed or timed out.
    """
    if transport is None:
        transport = get_transport(settings)
    mail = build_outbound(message, attachments, settings)

    try:
        await asyncio.wait_for(transport.send(mail), timeout=settings.send_timeout_seconds)
    except asyncio.TimeoutError:
        logger.error(
            "Email send timed out after %ss (provider=%s, to=%s, subject=%r)",
            settings.send_timeout_seconds,
            transport.name,
            mail.to_address,
            mail.subject,
        )
        raise MailDispatchError("Email send timed out.", "send_timeout")
    except Exception as e:
        logger.exception(
            "Email send error (provider=%s, to=%s, subject=%r, attachments=%d): %s",
            transport.name,
            mail.to_address,
            mail.subject,
            len(mail.attachments),
            e,
        )
        raise MailDispatchError("Email send failed.")

    logger.info(
        "Sent %r via %s to %s with %d attachment(s)",
        mail.subject,
        transport.name,
        mail.to_address,
        len(mail.attachments),
    )
