"""
Mail dispatcher tests.

No real SMTP server or HTTP API is contacted: aiosmtplib.send is patched and
the Resend transport talks to an httpx.MockTransport.

Coverage:
  - OutboundMail addressing (From display name, Reply-To only when valid)
  - SMTP message building and implicit TLS selection
  - Resend payload building, base64 attachments, API error handling
  - transport registry (EMAIL_PROVIDER)
  - dispatch(): failures and timeouts become MailDispatchError
"""

import asyncio
import base64
import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from formrelay.config import MailConfigError, MailSettings
from formrelay.models.submission import Attachment, ComposedMessage, FormKind
from formrelay.services.mail_transport import (
    MailDispatchError,
    OutboundMail,
    ResendAPIError,
    ResendTransport,
    SmtpTransport,
    build_outbound,
    dispatch,
    get_transport,
)


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def _settings(**overrides) -> MailSettings:
    values = {
        "provider": "smtp",
        "smtp_host": "smtp.example.com",
        "smtp_port": 465,
        "smtp_user": "relay",
        "smtp_password": "s3cret",
        "resend_api_key": "re_test_key",
    }
    values.update(overrides)
    return MailSettings(**values)


def _message(**overrides) -> ComposedMessage:
    values = {
        "kind": FormKind.DEALER,
        "subject": "New Dealer Application",
        "text_body": "Business Name: Acme\nContact Name: Jo",
        "reply_to_email": "jo@acme.com",
        "sender_name": "Jo",
    }
    values.update(overrides)
    return ComposedMessage(**values)


def _attachments() -> list[Attachment]:
    return [
        Attachment(filename="front.jpg", content=b"\xff\xd8jpeg", content_type="image/jpeg"),
        Attachment(filename="side.png", content=b"\x89PNGpng", content_type="image/png"),
    ]


class _RecordingTransport:
    name = "recording"

    def __init__(self):
        self.sent: list[OutboundMail] = []

    async def send(self, mail: OutboundMail) -> None:
        self.sent.append(mail)


# ===========================================================================
# build_outbound
# ===========================================================================

class TestBuildOutbound:
    def test_addresses_from_settings(self):
        mail = build_outbound(_message(), [], _settings(to_email="crew@example.com"))
        assert mail.to_address == "crew@example.com"
        assert mail.from_address == "Jo via Mach Five Wheels <no-reply@machfivewheels.com>"
        assert mail.subject == "New Dealer Application"
        assert mail.text_body.startswith("Business Name: Acme")

    def test_from_without_sender_name(self):
        mail = build_outbound(_message(sender_name=None), [], _settings())
        assert mail.from_address == "Mach Five Wheels <no-reply@machfivewheels.com>"

    def test_valid_reply_to_is_kept(self):
        mail = build_outbound(_message(), [], _settings())
        assert mail.reply_to == "jo@acme.com"

    def test_invalid_reply_to_is_omitted(self):
        mail = build_outbound(_message(reply_to_email="not an email"), [], _settings())
        assert mail.reply_to is None

    def test_site_header_and_attachments(self):
        mail = build_outbound(_message(), _attachments(), _settings())
        assert mail.headers == {"X-M5-Site": "Mach Five Wheels"}
        assert [a.filename for a in mail.attachments] == ["front.jpg", "side.png"]


# ===========================================================================
# SMTP transport
# ===========================================================================

class TestSmtpTransport:
    def _transport(self, port: int = 465) -> SmtpTransport:
        return SmtpTransport("smtp.example.com", port, "relay", "s3cret", timeout=5)

    def test_build_message_headers(self):
        mail = build_outbound(_message(), [], _settings())
        msg = self._transport().build_message(mail)
        assert msg["To"] == "crew@machfivemotors.com"
        assert msg["Subject"] == "New Dealer Application"
        assert msg["Reply-To"] == "jo@acme.com"
        assert msg["X-M5-Site"] == "Mach Five Wheels"
        assert "Business Name: Acme" in msg.get_body(("plain",)).get_content()

    def test_build_message_omits_reply_to_when_absent(self):
        mail = build_outbound(_message(reply_to_email=""), [], _settings())
        msg = self._transport().build_message(mail)
        assert msg["Reply-To"] is None

    def test_build_message_attachments(self):
        mail = build_outbound(_message(), _attachments(), _settings())
        msg = self._transport().build_message(mail)
        parts = list(msg.iter_attachments())
        assert [p.get_filename() for p in parts] == ["front.jpg", "side.png"]
        assert [p.get_content_type() for p in parts] == ["image/jpeg", "image/png"]
        assert parts[0].get_content() == b"\xff\xd8jpeg"

    @pytest.mark.asyncio
    async def test_send_uses_implicit_tls_on_465(self):
        mail = build_outbound(_message(), [], _settings())
        with patch("formrelay.services.mail_transport.aiosmtplib.send", new_callable=AsyncMock) as mock_send:
            await self._transport(465).send(mail)

        kwargs = mock_send.call_args.kwargs
        assert kwargs["hostname"] == "smtp.example.com"
        assert kwargs["port"] == 465
        assert kwargs["username"] == "relay"
        assert kwargs["password"] == "s3cret"
        assert kwargs["use_tls"] is True

    @pytest.mark.asyncio
    async def test_send_without_implicit_tls_on_587(self):
        mail = build_outbound(_message(), [], _settings())
        with patch("formrelay.services.mail_transport.aiosmtplib.send", new_callable=AsyncMock) as mock_send:
            await self._transport(587).send(mail)

        assert mock_send.call_args.kwargs["use_tls"] is False


# ===========================================================================
# Resend transport
# ===========================================================================

class TestResendTransport:
    def test_payload_shape(self):
        mail = build_outbound(_message(), _attachments(), _settings())
        payload = ResendTransport("re_test_key").build_payload(mail)

        assert payload["to"] == ["crew@machfivemotors.com"]
        assert payload["subject"] == "New Dealer Application"
        assert payload["text"].startswith("Business Name: Acme")
        assert payload["reply_to"] == "jo@acme.com"
        assert payload["headers"] == {"X-M5-Site": "Mach Five Wheels"}
        assert payload["attachments"][0] == {
            "filename": "front.jpg",
            "content": base64.b64encode(b"\xff\xd8jpeg").decode(),
            "content_type": "image/jpeg",
        }

    def test_payload_without_reply_to(self):
        mail = build_outbound(_message(reply_to_email="bogus"), [], _settings())
        payload = ResendTransport("re_test_key").build_payload(mail)
        assert "reply_to" not in payload

    @pytest.mark.asyncio
    async def test_send_posts_with_bearer_key(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "email-123"})

        transport = ResendTransport("re_test_key", http_transport=httpx.MockTransport(handler))
        await transport.send(build_outbound(_message(), _attachments(), _settings()))

        assert seen["url"] == "https://api.resend.com/emails"
        assert seen["auth"] == "Bearer re_test_key"
        assert len(seen["body"]["attachments"]) == 2

    @pytest.mark.asyncio
    async def test_api_rejection_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(422, json={"message": "Invalid `from` field."})

        transport = ResendTransport("re_test_key", http_transport=httpx.MockTransport(handler))
        with pytest.raises(ResendAPIError) as exc_info:
            await transport.send(build_outbound(_message(), [], _settings()))
        assert exc_info.value.status_code == 422


# ===========================================================================
# Registry
# ===========================================================================

class TestGetTransport:
    def test_smtp(self):
        transport = get_transport(_settings(provider="smtp", smtp_port=587))
        assert isinstance(transport, SmtpTransport)
        assert transport.port == 587
        assert transport.implicit_tls is False

    def test_resend(self):
        transport = get_transport(_settings(provider="resend"))
        assert isinstance(transport, ResendTransport)
        assert transport.api_key == "re_test_key"

    def test_unknown_provider(self):
        with pytest.raises(MailConfigError):
            get_transport(_settings(provider="carrier-pigeon"))


# ===========================================================================
# dispatch()
# ===========================================================================

class TestDispatch:
    @pytest.mark.asyncio
    async def test_sends_whole_message_once(self):
        transport = _RecordingTransport()
        await dispatch(_message(), _attachments(), _settings(), transport=transport)

        assert len(transport.sent) == 1
        assert transport.sent[0].subject == "New Dealer Application"
        assert len(transport.sent[0].attachments) == 2

    @pytest.mark.asyncio
    async def test_builds_transport_from_settings(self):
        with patch("formrelay.services.mail_transport.aiosmtplib.send", new_callable=AsyncMock) as mock_send:
            await dispatch(_message(), [], _settings())
        mock_send.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_transport_failure_becomes_dispatch_error(self):
        transport = _RecordingTransport()
        transport.send = AsyncMock(side_effect=ConnectionRefusedError("refused"))

        with pytest.raises(MailDispatchError) as exc_info:
            await dispatch(_message(), [], _settings(), transport=transport)
        assert exc_info.value.error_code == "send_failed"
        assert "refused" not in exc_info.value.message

    @pytest.mark.asyncio
    async def test_failure_log_never_contains_password(self, caplog):
        transport = _RecordingTransport()
        transport.send = AsyncMock(side_effect=RuntimeError("auth failed"))

        with pytest.raises(MailDispatchError):
            await dispatch(_message(), [], _settings(), transport=transport)
        assert "auth failed" in caplog.text
        assert "s3cret" not in caplog.text

    @pytest.mark.asyncio
    async def test_timeout_becomes_dispatch_error(self):
        async def _hang(mail):
            await asyncio.sleep(10)

        transport = _RecordingTransport()
        transport.send = _hang

        with pytest.raises(MailDispatchError) as exc_info:
            await dispatch(
                _message(), [], _settings(send_timeout_seconds=0.01), transport=transport
            )
        assert exc_info.value.error_code == "send_timeout"
