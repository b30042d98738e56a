#!/usr/bin/env python3
"""
Dev helper: post a sample form submission to the local form relay.

Builds a dealer application or contact form submission, optionally attaches
real image files, and POST-s it to /api/mail the way the website does
(multipart/form-data). The relay answers 303 on success.

Usage
-----
# Dealer application, no photos, targeting localhost:8000
python scripts/send_test_submission.py

# Contact form instead
python scripts/send_test_submission.py --form contact

# Attach photos
python scripts/send_test_submission.py --photo front.jpg --photo side.png

# Trip the honeypot (should 303 without sending anything)
python scripts/send_test_submission.py --honeypot

# Target a different backend URL
python scripts/send_test_submission.py --url http://staging.example.com

# Print the fields without sending
python scripts/send_test_submission.py --dry-run
"""

import argparse
import json
import sys
import textwrap
from pathlib import Path

import httpx


# ---------------------------------------------------------------------------
# Sample forms
# ---------------------------------------------------------------------------

def _dealer_fields(email: str) -> dict:
    return {
        "business": "Test Wheel & Tire",
        "contact": "Jo Tester",
        "email": email,
        "phone": "555-0100",
        "message": "Two-bay shop, interested in stocking the forged line.",
        "website": "",
    }


def _contact_fields(email: str) -> dict:
    return {
        "first_name": "Alex",
        "last_name": "Tester",
        "email": email,
        "email_confirm": email,
        "phone": "555-0199",
        "city": "Austin",
        "country": "US",
        "state": "TX",
        "vehicle_year": "2019",
        "vehicle_make": "Subaru",
        "vehicle_model": "WRX",
        "comments": "Looking for an 18in fitment.",
        "company": "",
    }


_FORM_BUILDERS = {
    "dealer": _dealer_fields,
    "contact": _contact_fields,
}


# ---------------------------------------------------------------------------
# Content-type detection
# ---------------------------------------------------------------------------

def _detect_content_type(filename: str) -> str:
    ext = Path(filename).suffix.lower()
    return {
        ".jpg": "image/jpeg",
        ".jpeg": "image/jpeg",
        ".png": "image/png",
        ".webp": "image/webp",
        ".gif": "image/gif",
    }.get(ext, "application/octet-stream")


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main() -> int:
    parser = argparse.ArgumentParser(
        prog="send_test_submission.py",
        description="Send a sample website form submission to the form relay.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            Examples:
              python scripts/send_test_submission.py
              python scripts/send_test_submission.py --form contact
              python scripts/send_test_submission.py --photo wheel.jpg
              python scripts/send_test_submission.py --honeypot
        """),
    )
    parser.add_argument(
        "--url",
        default="http://localhost:8000",
        help="Backend base URL (default: http://localhost:8000)",
    )
    parser.add_argument(
        "--form",
        default="dealer",
        choices=list(_FORM_BUILDERS),
        help="Which website form to imitate (default: dealer)",
    )
    parser.add_argument(
        "--email",
        default="tester@example.com",
        help="Submitter email address (default: tester@example.com)",
    )
    parser.add_argument(
        "--photo",
        action="append",
        default=[],
        metavar="PATH",
        help="Image file to attach; repeat for several.",
    )
    parser.add_argument(
        "--honeypot",
        action="store_true",
        help="Fill in the hidden honeypot field.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the fields without sending them.",
    )

    args = parser.parse_args()

    fields = _FORM_BUILDERS[args.form](args.email)
    if args.honeypot:
        fields["website"] = "http://spam.example"

    files = []
    for photo in args.photo:
        path = Path(photo)
        if not path.exists():
            print(f"ERROR: File not found: {path}", file=sys.stderr)
            return 1
        content = path.read_bytes()
        files.append(("photos", (path.name, content, _detect_content_type(path.name))))
        print(f"Attaching photo: {path} ({len(content):,} bytes)")

    endpoint = f"{args.url.rstrip('/')}/api/mail"
    print(f"\nForm      : {args.form}")
    print(f"Endpoint  : {endpoint}")
    print(f"Photos    : {len(files)}")

    if args.dry_run:
        print("\n[DRY RUN] Fields:")
        print(json.dumps(fields, indent=2))
        return 0

    try:
        response = httpx.post(
            endpoint,
            data=fields,
            files=files or None,
            timeout=60,
            follow_redirects=False,
        )
    except httpx.ConnectError:
        print(
            f"\nERROR: Could not connect to {endpoint}\n"
            "Is the backend running? Start it with:\n"
            "  cd backend && uvicorn formrelay.main:app --reload",
            file=sys.stderr,
        )
        return 1

    if response.status_code == 303:
        print(f"\n[OK] HTTP 303 -> {response.headers.get('location')}")
        return 0

    print(f"\n[FAIL] HTTP {response.status_code}")
    print(response.text)
    return 1


if __name__ == "__main__":
    sys.exit(main())
