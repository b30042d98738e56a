"""
Form classifier and composer.

The website posts two different forms to the same endpoint:

  dealer   — dealer application (business, contact, email, phone, message)
  contact  — general contact form (first_name, last_name, email,
             email_confirm, phone, city, country, state, vehicle_year,
             vehicle_make, vehicle_model, comments)

Both carry a hidden honeypot input (``website`` or ``company``). The router
checks is_honeypot_tripped() before anything else and fakes a success when it
is filled in.

Classification is by field presence and the dealer form wins when both sets
of fields are present. Validation order is fixed because only the first
failure is reported to the submitter:

  1. required fields non-empty
  2. email == email_confirm (contact form only)
  3. email syntax
"""

import logging
from typing import Callable, Optional

from formrelay.models.submission import ComposedMessage, FormKind
from formrelay.services.sanitize import is_valid_email, sanitize

logger = logging.getLogger(__name__)

DEALER_SUBJECT = "New Dealer Application"
CONTACT_SUBJECT = "New Website Contact Submission"

_HONEYPOT_FIELDS = ("website", "company")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class SubmissionValidationError(Exception):
    """Raised when a submission fails a required-field or email rule."""
    def __init__(self, message: str, error_code: str):
        super().__init__(message)
        self.error_code = error_code
        self.message = message


def _invalid_form() -> SubmissionValidationError:
    return SubmissionValidationError("Invalid form submission.", "invalid_form")


def _missing_fields() -> SubmissionValidationError:
    return SubmissionValidationError(
        "Please fill in all required fields.", "missing_fields"
    )


def _email_mismatch() -> SubmissionValidationError:
    return SubmissionValidationError("Emails do not match.", "email_mismatch")


def _invalid_email() -> SubmissionValidationError:
    return SubmissionValidationError("Invalid email address.", "invalid_email")


# ---------------------------------------------------------------------------
# Honeypot + classification
# ---------------------------------------------------------------------------

def is_honeypot_tripped(fields: dict[str, str]) -> bool:
    """Return True when any honeypot field carries a non-blank value."""
    return any(
        str(fields.get(name) or "").strip() for name in _HONEYPOT_FIELDS
    )


def classify(fields: dict[str, str]) -> Optional[FormKind]:
    """Work out which form was submitted, or None if it is neither."""
    if "business" in fields and "contact" in fields:
        return FormKind.DEALER
    if "first_name" in fields and "last_name" in fields:
        return FormKind.CONTACT
    return None


# ---------------------------------------------------------------------------
# Composers
# ---------------------------------------------------------------------------

def _compose_dealer(fields: dict[str, str]) -> ComposedMessage:
    business = sanitize(fields.get("business"))
    contact = sanitize(fields.get("contact"))
    email = sanitize(fields.get("email"))
    phone = sanitize(fields.get("phone"))
    message = sanitize(fields.get("message"))

    if not business or not contact or not email or not message:
        raise _missing_fields()
    if not is_valid_email(email):
        raise _invalid_email()

    text_body = (
        f"Business Name: {business}\n"
        f"Contact Name: {contact}\n"
        f"Email: {email}\n"
        f"Phone: {phone}\n\n"
        f"Shop Info:\n{message}"
    )
    return ComposedMessage(
        kind=FormKind.DEALER,
        subject=DEALER_SUBJECT,
        text_body=text_body,
        reply_to_email=email,
        sender_name=contact,
    )


def _compose_contact(fields: dict[str, str]) -> ComposedMessage:
    first_name = sanitize(fields.get("first_name"))
    last_name = sanitize(fields.get("last_name"))
    email = sanitize(fields.get("email"))
    email_confirm = sanitize(fields.get("email_confirm"))
    phone = sanitize(fields.get("phone"))
    city = sanitize(fields.get("city"))
    country = sanitize(fields.get("country"))
    state = sanitize(fields.get("state"))
    vehicle_year = sanitize(fields.get("vehicle_year"))
    vehicle_make = sanitize(fields.get("vehicle_make"))
    vehicle_model = sanitize(fields.get("vehicle_model"))
    comments = sanitize(fields.get("comments"))

    if not first_name or not last_name or not email or not email_confirm:
        raise _missing_fields()
    if email != email_confirm:
        raise _email_mismatch()
    if not is_valid_email(email):
        raise _invalid_email()

    text_body = (
        f"Name: {first_name} {last_name}\n"
        f"Email: {email}\n"
        f"Phone: {phone}\n"
        f"City: {city}\n"
        f"Country: {country}\n"
        f"State: {state}\n"
        f"Vehicle Year: {vehicle_year}\n"
        f"Vehicle Make: {vehicle_make}\n"
        f"Vehicle Model: {vehicle_model}\n\n"
        f"Message:\n{comments}"
    )
    return ComposedMessage(
        kind=FormKind.CONTACT,
        subject=CONTACT_SUBJECT,
        text_body=text_body,
        reply_to_email=email,
        sender_name=f"{first_name} {last_name}",
    )


_COMPOSERS: dict[FormKind, Callable[[dict[str, str]], ComposedMessage]] = {
    FormKind.DEALER: _compose_dealer,
    FormKind.CONTACT: _compose_contact,
}


def compose_message(fields: dict[str, str]) -> ComposedMessage:
    """
    Classify the submission, validate it and build the outbound message.

    Raises SubmissionValidationError naming the first rule that failed.
    """
    kind = classify(fields)
    if kind is None:
        logger.info("Rejected submission matching no known form (fields=%s)", sorted(fields))
        raise _invalid_form()
    return _COMPOSERS[kind](fields)
