"""
Request body parser for form submissions.

Turns the raw request body into a Submission (fields + photo attachments).

  multipart/form-data                 — streamed through python-multipart
  application/json                    — a JSON object of fields, no files
  application/x-www-form-urlencoded   — default for anything else, no files

The endpoint is open to anonymous traffic, so every byte count is checked as
chunks arrive rather than after buffering:

  - bytes held in memory (field values plus kept photo data) are capped
    at UploadLimits.max_buffered_bytes
  - each text field is capped at UploadLimits.max_field_bytes
  - non-multipart bodies are capped at UploadLimits.max_form_bytes
  - at most UploadLimits.max_files photos are kept
  - each photo is capped at UploadLimits.max_file_bytes

Breaking one of the first three is a BodyParseError. The photo caps and the
MIME allow-list are policy: an extra, oversized or wrongly-typed file is
dropped without buffering and the rest of the request is processed normally.
Dropped bytes are read and thrown away, so they never count against
max_buffered_bytes; an endless upload is cut off by the parse timeout.

Public API:
  parse_body(content_type, chunks, limits)  -> Submission
  parse_request(request, limits)            -> Submission
"""

import json
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional
from urllib.parse import parse_qsl

from python_multipart.exceptions import MultipartParseError
from python_multipart.multipart import MultipartParser, parse_options_header
from starlette.requests import ClientDisconnect, Request

from formrelay.models.submission import (
    DEFAULT_ATTACHMENT_FILENAME,
    Attachment,
    Submission,
)

logger = logging.getLogger(__name__)

_MIB = 1024 * 1024

ACCEPTED_MIME_TYPES = frozenset({
    "image/jpeg",
    "image/png",
    "image/webp",
    "image/gif",
})

# Combined size of one part header line (name + value)
_MAX_HEADER_BYTES = 8 * 1024


# ---------------------------------------------------------------------------
# Exceptions / limits
# ---------------------------------------------------------------------------

class BodyParseError(Exception):
    """Raised when the request body cannot be decoded or breaks a hard limit."""
    def __init__(self, message: str, error_code: str):
        super().__init__(message)
        self.error_code = error_code
        self.message = message


@dataclass(frozen=True)
class UploadLimits:
    max_files: int = 8
    max_file_bytes: int = 10 * _MIB
    max_field_bytes: int = 64 * 1024
    # max_files * max_file_bytes plus room for the text fields
    max_buffered_bytes: int = 90 * _MIB
    max_form_bytes: int = 1 * _MIB
    accepted_mime_types: frozenset[str] = ACCEPTED_MIME_TYPES


# ---------------------------------------------------------------------------
# Multipart event stream
# ---------------------------------------------------------------------------

PART_BEGIN = "part_begin"
HEADER_FIELD = "header_field"
HEADER_VALUE = "header_value"
HEADER_END = "header_end"
HEADERS_FINISHED = "headers_finished"
PART_DATA = "part_data"
PART_END = "part_end"
END = "end"


class _EventBuffer:
    """
    Collects python-multipart callbacks as (event, bytes) tuples.

    The parser is fed one network chunk at a time, so the buffer never holds
    more than one chunk's worth of data.
    """

    def __init__(self):
        self.events: list[tuple[str, bytes]] = []

    def callbacks(self) -> dict:
        return {
            "on_part_begin": lambda: self._push(PART_BEGIN),
            "on_header_field": lambda data, start, end: self._push(HEADER_FIELD, data[start:end]),
            "on_header_value": lambda data, start, end: self._push(HEADER_VALUE, data[start:end]),
            "on_header_end": lambda: self._push(HEADER_END),
            "on_headers_finished": lambda: self._push(HEADERS_FINISHED),
            "on_part_data": lambda data, start, end: self._push(PART_DATA, data[start:end]),
            "on_part_end": lambda: self._push(PART_END),
            "on_end": lambda: self._push(END),
        }

    def _push(self, event: str, data: bytes = b"") -> None:
        self.events.append((event, data))

    def drain(self) -> list[tuple[str, bytes]]:
        events, self.events = self.events, []
        return events


async def iter_multipart_events(
    chunks: AsyncIterator[bytes],
    boundary: bytes,
) -> AsyncIterator[tuple[str, bytes]]:
    """Yield multipart events for a streamed body, one network chunk at a time."""
    buffer = _EventBuffer()
    parser = MultipartParser(boundary, buffer.callbacks())
    async for chunk in chunks:
        parser.write(chunk)
        for event in buffer.drain():
            yield event

    parser.finalize()
    for event in buffer.drain():
        yield event


# ---------------------------------------------------------------------------
# Multipart parts
# ---------------------------------------------------------------------------

def _decode(value: bytes) -> str:
    try:
        return value.decode("utf-8")
    except UnicodeDecodeError:
        return value.decode("latin-1")


def _basename(filename: str) -> str:
    """Strip any client-side directory (old browsers send full paths)."""
    return filename.replace("\\", "/").rsplit("/", 1)[-1]


@dataclass
class _Part:
    """One multipart part while it is being read."""
    name: str
    filename: Optional[str] = None
    content_type: str = ""
    is_file: bool = False
    buffering: bool = False          # False once the part is discarded
    size: int = 0
    chunks: list[bytes] = field(default_factory=list)


def _open_part(headers: dict[bytes, bytes]) -> _Part:
    disposition = headers.get(b"content-disposition")
    if disposition is None:
        raise BodyParseError(
            "Multipart part is missing a Content-Disposition header.",
            "missing_content_disposition",
        )
    _, options = parse_options_header(disposition)
    name = _decode(options.get(b"name", b""))

    if b"filename" not in options:
        return _Part(name=name, buffering=True)

    content_type, _ = parse_options_header(
        headers.get(b"content-type", b"application/octet-stream")
    )
    return _Part(
        name=name,
        filename=_basename(_decode(options[b"filename"])),
        content_type=_decode(content_type).lower(),
        is_file=True,
    )


async def _parse_multipart(
    content_type: str,
    chunks: AsyncIterator[bytes],
    limits: UploadLimits,
) -> Submission:
    _, params = parse_options_header(content_type)
    boundary = params.get(b"boundary")
    if not boundary:
        raise BodyParseError("Missing multipart boundary.", "missing_boundary")

    fields: dict[str, str] = {}
    attachments: list[Attachment] = []
    accepted_files = 0
    buffered = 0
    finished = False

    part: Optional[_Part] = None
    headers: dict[bytes, bytes] = {}
    header_field = b""
    header_value = b""

    async for event, data in iter_multipart_events(chunks, boundary):
        if event == PART_BEGIN:
            part = None
            headers = {}
            header_field = header_value = b""

        elif event == HEADER_FIELD:
            header_field += data
        elif event == HEADER_VALUE:
            header_value += data
            if len(header_field) + len(header_value) > _MAX_HEADER_BYTES:
                raise BodyParseError("Multipart header too large.", "header_too_large")
        elif event == HEADER_END:
            headers[header_field.lower()] = header_value
            header_field = header_value = b""

        elif event == HEADERS_FINISHED:
            part = _open_part(headers)
            if not part.is_file:
                continue
            if accepted_files >= limits.max_files:
                logger.debug("Dropping file %r: file limit reached", part.filename)
            elif part.content_type not in limits.accepted_mime_types:
                logger.debug(
                    "Dropping file %r: type %s not accepted", part.filename, part.content_type
                )
            else:
                accepted_files += 1
                part.buffering = True

        elif event == PART_DATA:
            if part is None or not part.buffering:
                continue
            part.size += len(data)
            if not part.is_file:
                if part.size > limits.max_field_bytes:
                    raise BodyParseError(
                        f"Field {part.name!r} is too large.", "field_too_large"
                    )
            elif part.size > limits.max_file_bytes:
                logger.debug(
                    "Dropping file %r: larger than %d bytes", part.filename, limits.max_file_bytes
                )
                buffered -= part.size - len(data)
                part.buffering = False
                part.chunks = []
                continue
            part.chunks.append(data)
            buffered += len(data)
            if buffered > limits.max_buffered_bytes:
                raise BodyParseError("Request body too large.", "body_too_large")

        elif event == PART_END:
            if part is None:
                continue
            if not part.is_file:
                fields[part.name] = _decode(b"".join(part.chunks))
            elif part.buffering and part.size > 0:
                attachments.append(
                    Attachment(
                        filename=part.filename or DEFAULT_ATTACHMENT_FILENAME,
                        content=b"".join(part.chunks),
                        content_type=part.content_type,
                    )
                )
            part = None

        elif event == END:
            finished = True

    if not finished:
        raise BodyParseError("Multipart body ended before the closing boundary.", "truncated_body")

    return Submission(fields=fields, attachments=attachments)


# ---------------------------------------------------------------------------
# Non-multipart bodies
# ---------------------------------------------------------------------------

async def _read_limited(chunks: AsyncIterator[bytes], limit: int) -> bytes:
    body = bytearray()
    async for chunk in chunks:
        body.extend(chunk)
        if len(body) > limit:
            raise BodyParseError("Request body too large.", "body_too_large")
    return bytes(body)


def _parse_json(raw: bytes) -> dict[str, str]:
    if not raw.strip():
        return {}
    try:
        payload = json.loads(raw)
    except ValueError as e:
        raise BodyParseError(f"Invalid JSON body: {e}", "invalid_json")
    if not isinstance(payload, dict):
        raise BodyParseError("JSON body must be an object.", "invalid_json")
    return {str(k): str(v) for k, v in payload.items() if v is not None}


def _parse_urlencoded(raw: bytes) -> dict[str, str]:
    # dict() keeps the last value for repeated keys
    return dict(parse_qsl(_decode(raw), keep_blank_values=True))


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

async def parse_body(
    content_type: str,
    chunks: AsyncIterator[bytes],
    limits: UploadLimits = UploadLimits(),
) -> Submission:
    """
    Parse a request body into a Submission.

    Args:
        content_type: the request's Content-Type header ("" if absent).
        chunks:       async iterator over the raw body bytes.
        limits:       size / count caps.

    Raises:
        BodyParseError: malformed body, a hard size limit was exceeded,
                        or the client went away mid-upload.
    """
    media_type = content_type.split(";", 1)[0].strip().lower()
    try:
        if media_type == "multipart/form-data":
            return await _parse_multipart(content_type, chunks, limits)

        raw = await _read_limited(chunks, limits.max_form_bytes)
        if media_type == "application/json":
            return Submission(fields=_parse_json(raw))
        return Submission(fields=_parse_urlencoded(raw))
    except MultipartParseError as e:
        raise BodyParseError(f"Malformed multipart body: {e}", "malformed_multipart")
    except ClientDisconnect:
        raise BodyParseError("Client disconnected during upload.", "client_disconnected")


async def parse_request(request: Request, limits: UploadLimits = UploadLimits()) -> Submission:
    """Parse a Starlette/FastAPI request body, streaming it chunk by chunk."""
    return await parse_body(
        request.headers.get("content-type", ""),
        request.stream(),
        limits,
    )
