"""
Process configuration, read from the environment (and a local .env file).

Mail transport
--------------
EMAIL_PROVIDER     Which transport to use (default: "smtp").
                   Supported values: "smtp", "resend".
SMTP_HOST          SMTP server host            (required for smtp)
SMTP_PORT          SMTP server port            (required for smtp; 465 = implicit TLS)
SMTP_USER          SMTP username               (required for smtp)
SMTP_PASS          SMTP password               (required for smtp)
RESEND_API_KEY     Resend API key              (required for resend)
TO_EMAIL           Recipient of form submissions (default: crew@machfivemotors.com)
FROM_EMAIL         Sender address               (default: no-reply@machfivewheels.com)
FROM_NAME          Sender display name          (default: Mach Five Wheels)
SEND_TIMEOUT_SECONDS  Timeout for one send (default: 30)

Endpoint
--------
SUCCESS_REDIRECT       Where a successful POST is redirected (default: /thank-you.html)
CORS_ORIGINS           Extra allowed origins, comma separated
PARSE_TIMEOUT_SECONDS  Timeout for reading the request body (default: 60)
MAX_FILES              Photos kept per submission (default: 8)
MAX_FILE_MB            Per-photo size cap in MiB (default: 10)
MAX_BUFFERED_MB        Cap on field + kept photo bytes in MiB (default: 90)

Missing mail credentials are not fatal at import time: the endpoint answers
500 for as long as they are missing.
"""

import logging
import os
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_TO_EMAIL = "crew@machfivemotors.com"
DEFAULT_FROM_EMAIL = "no-reply@machfivewheels.com"
DEFAULT_FROM_NAME = "Mach Five Wheels"

# provider -> settings attributes that must be non-empty
_REQUIRED_CREDENTIALS: dict[str, tuple[str, ...]] = {
    "smtp": ("smtp_host", "smtp_port", "smtp_user", "smtp_password"),
    "resend": ("resend_api_key",),
}

_MIB = 1024 * 1024


class MailConfigError(Exception):
    """Raised when the selected mail transport is not fully configured."""
    def __init__(self, message: str, error_code: str = "mail_not_configured"):
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class MailSettings(BaseModel):
    provider: str = "smtp"
    smtp_host: Optional[str] = None
    smtp_port: Optional[int] = None
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    resend_api_key: Optional[str] = None
    to_email: str = DEFAULT_TO_EMAIL
    from_email: str = DEFAULT_FROM_EMAIL
    from_name: str = DEFAULT_FROM_NAME
    send_timeout_seconds: float = 30.0


class AppSettings(BaseModel):
    success_redirect: str = "/thank-you.html"
    cors_origins: list[str] = []
    parse_timeout_seconds: float = 60.0
    max_files: int = 8
    max_file_bytes: int = 10 * _MIB
    max_buffered_bytes: int = 90 * _MIB


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return a stripped env var, treating blank values as unset."""
    value = os.getenv(name, "").strip()
    return value or default


def _env_number(name: str, default: float, cast=float):
    raw = _env(name)
    if raw is None:
        return default
    try:
        return cast(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r, using %s", name, raw, default)
        return default


def load_mail_settings() -> MailSettings:
    """
    Build MailSettings from the environment.

    Raises MailConfigError if EMAIL_PROVIDER is unknown, SMTP_PORT is not an
    integer, or any credential the selected provider needs is missing.
    """
    provider = (_env("EMAIL_PROVIDER", "smtp") or "smtp").lower()
    if provider not in _REQUIRED_CREDENTIALS:
        raise MailConfigError(
            f"Unknown email provider {provider!r}. "
            f"Supported providers: {sorted(_REQUIRED_CREDENTIALS)}",
            "unknown_provider",
        )

    raw_port = _env("SMTP_PORT")
    port: Optional[int] = None
    if raw_port is not None:
        try:
            port = int(raw_port)
        except ValueError:
            raise MailConfigError(f"SMTP_PORT must be an integer, got {raw_port!r}")

    settings = MailSettings(
        provider=provider,
        smtp_host=_env("SMTP_HOST"),
        smtp_port=port,
        smtp_user=_env("SMTP_USER"),
        smtp_password=_env("SMTP_PASS"),
        resend_api_key=_env("RESEND_API_KEY"),
        to_email=_env("TO_EMAIL", DEFAULT_TO_EMAIL),
        from_email=_env("FROM_EMAIL", DEFAULT_FROM_EMAIL),
        from_name=_env("FROM_NAME", DEFAULT_FROM_NAME),
        send_timeout_seconds=_env_number("SEND_TIMEOUT_SECONDS", 30.0),
    )

    missing = [
        attr for attr in _REQUIRED_CREDENTIALS[provider]
        if getattr(settings, attr) in (None, "")
    ]
    if missing:
        raise MailConfigError(
            f"Email provider {provider!r} is missing configuration: {', '.join(missing)}"
        )
    return settings


_mail_settings: Optional[MailSettings] = None


def get_mail_settings() -> MailSettings:
    """
    Return the process-wide MailSettings, loading them on first success.

    A failed load is not cached; the next call reads the environment again.
    """
    global _mail_settings
    if _mail_settings is None:
        _mail_settings = load_mail_settings()
    return _mail_settings


def reset_mail_settings() -> None:
    """Forget cached MailSettings (used by tests)."""
    global _mail_settings
    _mail_settings = None


@lru_cache(maxsize=1)
def get_app_settings() -> AppSettings:
    cors_env = _env("CORS_ORIGINS", "") or ""
    return AppSettings(
        success_redirect=_env("SUCCESS_REDIRECT", "/thank-you.html"),
        cors_origins=[o.strip() for o in cors_env.split(",") if o.strip()],
        parse_timeout_seconds=_env_number("PARSE_TIMEOUT_SECONDS", 60.0),
        max_files=_env_number("MAX_FILES", 8, int),
        max_file_bytes=int(_env_number("MAX_FILE_MB", 10.0) * _MIB),
        max_buffered_bytes=int(_env_number("MAX_BUFFERED_MB", 90.0) * _MIB),
    )
