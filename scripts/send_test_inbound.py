#!/usr/bin/env python3
"""
Dev helper: send a signed test receipt webhook to the local Receiptflow backend.

Builds a Cloudflare Email Workers payload, signs the exact request bytes with
HMAC-SHA256 using CLOUDFLARE_EMAIL_SECRET, and POST-s it to /inbound (or
/inbound/cloudflare with --explicit).

Usage
-----
# Basic: sample Starbucks receipt to the default alias, targeting localhost:8000
python scripts/send_test_inbound.py

# Send the body of a saved receipt
python scripts/send_test_inbound.py --text-file receipts/uber.txt

# Target a specific inbox alias
python scripts/send_test_inbound.py --to receipts-acme@inbound.receiptflow.app

# Re-send with the same Message-ID to exercise idempotency
python scripts/send_test_inbound.py --message-id "<fixed-1@example.com>"
python scripts/send_test_inbound.py --message-id "<fixed-1@example.com>"

# Target a different backend URL
python scripts/send_test_inbound.py --url http://staging.example.com

Environment / .env
------------------
CLOUDFLARE_EMAIL_SECRET   Shared HMAC secret (required unless --secret).
"""

import argparse
import hashlib
import hmac
import json
import os
import sys
import textwrap
import uuid
from pathlib import Path

import httpx
from dotenv import load_dotenv


SAMPLE_RECEIPT = textwrap.dedent("""\
    STARBUCKS STORE #10442
    03/14/2025 08:12 AM

    Grande Latte              $5.45
    Blueberry Muffin          $3.25
    Subtotal                  $8.70
    Tax                       $0.78
    Total                     $9.48

    VISA ending in 4242
    Thank you for visiting!
""")


# ---------------------------------------------------------------------------
# Payload
# ---------------------------------------------------------------------------

def _build_cloudflare_payload(
    from_email: str,
    to_address: str,
    subject: str,
    text: str,
    message_id: str,
) -> dict:
    """
    Build a Cloudflare Email Workers webhook payload.

      personalizations[0].to[0].email  recipient alias
      from.email                       sender
      content[]                        {type, value} parts
      headers                          original email headers
    """
    return {
        "personalizations": [{"to": [{"email": to_address}]}],
        "from": {"email": from_email},
        "subject": subject,
        "content": [{"type": "text/plain", "value": text}],
        "headers": {"Message-ID": message_id},
    }


def _sign(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def _print_response(response: httpx.Response) -> None:
    status = response.status_code
    symbol = "OK" if status == 200 else "FAIL"
    print(f"\n[{symbol}] HTTP {status}")
    correlation_id = response.headers.get("X-Correlation-ID")
    if correlation_id:
        print(f"Correlation ID: {correlation_id}")
    try:
        print(json.dumps(response.json(), indent=2))
    except ValueError:
        print(response.text)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main() -> int:
    project_root = Path(__file__).resolve().parent.parent
    load_dotenv(project_root / ".env")
    load_dotenv(project_root / "backend" / ".env")

    parser = argparse.ArgumentParser(
        prog="send_test_inbound.py",
        description="Send a signed test receipt webhook to the Receiptflow backend.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            Examples:
              python scripts/send_test_inbound.py
              python scripts/send_test_inbound.py --text-file receipts/uber.txt
              python scripts/send_test_inbound.py --explicit
              python scripts/send_test_inbound.py --url http://localhost:8000
        """),
    )
    parser.add_argument("--url", default="http://localhost:8000",
                        help="Backend base URL (default: http://localhost:8000)")
    parser.add_argument("--to", default="receipts@inbound.receiptflow.app",
                        help="Recipient inbox alias")
    parser.add_argument("--from", dest="from_email", default="receipts@starbucks.com",
                        help="Sender email address")
    parser.add_argument("--subject", default="Your Starbucks receipt")
    parser.add_argument("--text-file", default=None, metavar="PATH",
                        help="Plain-text receipt body. A sample receipt is used if omitted.")
    parser.add_argument("--message-id", default=None,
                        help="Message-ID header; a random one is generated if omitted")
    parser.add_argument("--explicit", action="store_true",
                        help="POST to /inbound/cloudflare instead of /inbound")
    parser.add_argument("--secret", default=None, metavar="SECRET",
                        help="Override CLOUDFLARE_EMAIL_SECRET")
    parser.add_argument("--dry-run", action="store_true",
                        help="Print the payload and signature without sending")

    args = parser.parse_args()

    secret = args.secret or os.getenv("CLOUDFLARE_EMAIL_SECRET", "")
    if not secret and not args.dry_run:
        print(
            "ERROR: No webhook secret found.\n"
            "Set CLOUDFLARE_EMAIL_SECRET in your environment or .env file, "
            "or pass --secret.",
            file=sys.stderr,
        )
        return 1

    if args.text_file:
        text_path = Path(args.text_file)
        if not text_path.exists():
            print(f"ERROR: File not found: {text_path}", file=sys.stderr)
            return 1
        text = text_path.read_text()
    else:
        text = SAMPLE_RECEIPT

    message_id = args.message_id or f"<{uuid.uuid4()}@send-test-inbound.local>"
    payload = _build_cloudflare_payload(args.from_email, args.to, args.subject, text, message_id)
    body = json.dumps(payload).encode()

    path = "/inbound/cloudflare" if args.explicit else "/inbound"
    endpoint = f"{args.url.rstrip('/')}{path}"

    print(f"Endpoint  : {endpoint}")
    print(f"From      : {args.from_email}")
    print(f"To        : {args.to}")
    print(f"Subject   : {args.subject}")
    print(f"Message-ID: {message_id}")

    if args.dry_run:
        print("\n[DRY RUN] Payload:")
        print(json.dumps(payload, indent=2))
        if secret:
            print(f"\nX-Cloudflare-Signature: {_sign(body, secret)}")
        return 0

    try:
        response = httpx.post(
            endpoint,
            content=body,
            headers={
                "Content-Type": "application/json",
                "X-Cloudflare-Signature": _sign(body, secret),
            },
            timeout=60,
        )
    except httpx.ConnectError:
        print(
            f"\nERROR: Could not connect to {endpoint}\n"
            "Is the backend running? Start it with:\n"
            "  cd backend && source .venv/bin/activate && uvicorn app.main:app --reload",
            file=sys.stderr,
        )
        return 1

    _print_response(response)
    return 0 if response.status_code == 200 else 1


if __name__ == "__main__":
    sys.exit(main())
