"""
Form submission endpoint.

Both website forms (dealer application and contact) POST here, either as
multipart/form-data with up to MAX_FILES photos, as urlencoded HTML form
data, or as JSON.

Each request runs through, stopping at the first response:

  method check -> body parse -> honeypot -> classify/validate
               -> mail config -> dispatch -> 303 redirect

Endpoints:
  POST /mail   — accept a submission, email it, redirect to SUCCESS_REDIRECT
  *    /mail   — any other method is answered 405 with Allow: POST

Responses are plain text so the static site can show them as-is:

  400  body could not be parsed, or the first validation rule that failed
  500  mail transport not configured, or the send failed
  303  success (also returned for honeypot hits, which are never sent)
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import PlainTextResponse, RedirectResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from formrelay.config import (
    AppSettings,
    MailConfigError,
    get_app_settings,
    get_mail_settings,
)
from formrelay.services.body_parser import BodyParseError, UploadLimits, parse_request
from formrelay.services.form_composer import (
    SubmissionValidationError,
    compose_message,
    is_honeypot_tripped,
)
from formrelay.services.mail_transport import MailDispatchError, dispatch

logger = logging.getLogger(__name__)

router = APIRouter()

_BAD_REQUEST = "Bad Request"
_NOT_CONFIGURED = "Email transport not configured."
_SEND_FAILED = "Something went wrong. Please try again later."


def _text(status_code: int, message: str) -> PlainTextResponse:
    return PlainTextResponse(message, status_code=status_code)


def _success(settings: AppSettings) -> RedirectResponse:
    return RedirectResponse(settings.success_redirect, status_code=303)


def _upload_limits(settings: AppSettings) -> UploadLimits:
    return UploadLimits(
        max_files=settings.max_files,
        max_file_bytes=settings.max_file_bytes,
        max_buffered_bytes=settings.max_buffered_bytes,
    )


async def method_not_allowed_handler(
    request: Request, exc: StarletteHTTPException
) -> Response:
    """
    Answer 405s in plain text, keeping the Allow header the router built.

    POST is the only method registered on /mail, so any other verb
    (OPTIONS and non-standard ones included) gets Allow: POST.
    """
    if exc.status_code != 405:
        return await http_exception_handler(request, exc)
    return PlainTextResponse(
        "Method Not Allowed", status_code=405, headers=exc.headers
    )


@router.post("/mail")
async def submit_mail(
    request: Request,
    settings: AppSettings = Depends(get_app_settings),
) -> Response:
    """
    Parse, validate and email one website form submission.

    Nothing is sent unless every step before dispatch succeeded, and a
    failed send is not retried: the submitter has to resubmit.
    """
    try:
        submission = await asyncio.wait_for(
            parse_request(request, _upload_limits(settings)),
            timeout=settings.parse_timeout_seconds,
        )
    except BodyParseError as e:
        logger.warning(f"Body parse error ({e.error_code}): {e.message}")
        return _text(400, _BAD_REQUEST)
    except asyncio.TimeoutError:
        logger.warning(
            f"Body parse timed out after {settings.parse_timeout_seconds}s"
        )
        return _text(400, _BAD_REQUEST)

    fields = submission.fields

    if is_honeypot_tripped(fields):
        logger.info("Honeypot filled in, discarding submission silently")
        return _success(settings)

    try:
        message = compose_message(fields)
    except SubmissionValidationError as e:
        return _text(400, e.message)

    try:
        mail_settings = get_mail_settings()
    except MailConfigError as e:
        logger.error(f"Mail transport not configured: {e.message}")
        return _text(500, _NOT_CONFIGURED)

    try:
        await dispatch(message, submission.attachments, mail_settings)
    except MailConfigError as e:
        logger.error(f"Mail transport not configured: {e.message}")
        return _text(500, _NOT_CONFIGURED)
    except MailDispatchError:
        return _text(500, _SEND_FAILED)

    return _success(settings)
