"""
Input sanitation helpers for website form submissions.

Every value that ends up in an outbound email (subject, body, headers) passes
through sanitize() first so a submitter cannot inject extra header lines.
"""

import re

_LINE_BREAKS = re.compile(r"[\r\n]+")

# Coarse syntactic check: something@something.tld, no whitespace, one "@".
_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def sanitize(raw: object = "") -> str:
    """
    Coerce a submitted value to a single-line, trimmed string.

    None becomes "". Any run of CR/LF characters collapses to one space.
    """
    if raw is None:
        return ""
    return _LINE_BREAKS.sub(" ", str(raw)).strip()


def is_valid_email(value: object) -> bool:
    """Return True when value looks like localpart@domain.tld."""
    if not isinstance(value, str):
        return False
    return _EMAIL_PATTERN.fullmatch(value) is not None
