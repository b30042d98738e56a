"""
Tests for the sanitize / is_valid_email helpers.
"""

import pytest

from formrelay.services.sanitize import is_valid_email, sanitize


class TestSanitize:
    def test_trims_whitespace(self):
        assert sanitize("  Acme Wheels  ") == "Acme Wheels"

    def test_collapses_line_breaks_to_single_space(self):
        assert sanitize("line one\r\n\r\nline two\nline three") == "line one line two line three"

    def test_blocks_header_injection(self):
        value = sanitize("jo@acme.com\r\nBcc: victim@example.com")
        assert "\r" not in value
        assert "\n" not in value
        assert value == "jo@acme.com Bcc: victim@example.com"

    def test_none_becomes_empty_string(self):
        assert sanitize(None) == ""

    def test_non_strings_are_coerced(self):
        assert sanitize(2019) == "2019"

    def test_default_argument(self):
        assert sanitize() == ""

    @pytest.mark.parametrize("raw", [
        "",
        "   ",
        "\r\n",
        " a \n b ",
        "\n\nleading",
        "trailing\r\r",
        "mixed \r\n\n\r tabs\t",
    ])
    def test_idempotent(self, raw):
        once = sanitize(raw)
        assert sanitize(once) == once
        assert "\r" not in once and "\n" not in once


class TestIsValidEmail:
    @pytest.mark.parametrize("value", [
        "jo@acme.com",
        "first.last+tag@sub.example.co.uk",
        "a@b.c",
    ])
    def test_accepts_plain_addresses(self, value):
        assert is_valid_email(value) is True

    @pytest.mark.parametrize("value", [
        "",
        "jo",
        "jo@acme",
        "@acme.com",
        "jo@.",
        "jo@@acme.com",
        "jo @acme.com",
        "jo@acme.com\nBcc: x@y.z",
    ])
    def test_rejects_malformed_addresses(self, value):
        assert is_valid_email(value) is False

    def test_rejects_non_strings(self):
        assert is_valid_email(None) is False
        assert is_valid_email(42) is False
