"""
Request-scoped models for a website form submission.

A Submission is what the body parser produces from the raw HTTP request.
A ComposedMessage is what the form composer produces from a Submission's
fields; the mail dispatcher turns it (plus the attachments) into an email.
Nothing here is persisted.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel

DEFAULT_ATTACHMENT_FILENAME = "photo.jpg"


class Attachment(BaseModel):
    """A single uploaded photo, already buffered to raw bytes."""

    filename: str = DEFAULT_ATTACHMENT_FILENAME
    content: bytes
    content_type: str


class Submission(BaseModel):
    """
    Normalized request body.

    fields holds the last value seen for each field name; attachments keeps
    the accepted files in the order they arrived in the stream.
    """

    fields: dict[str, str] = {}
    attachments: list[Attachment] = []


class FormKind(str, Enum):
    DEALER = "dealer"
    CONTACT = "contact"


class ComposedMessage(BaseModel):
    """Subject, plain-text body and reply-to for one validated submission."""

    kind: FormKind
    subject: str
    text_body: str
    reply_to_email: str
    sender_name: Optional[str] = None
