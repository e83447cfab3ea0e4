"""
Receipt extraction service.

The pipeline only depends on the Extractor protocol: something with
extract(email) -> ReceiptData that raises ExtractionFailure when it cannot
produce a result. ClaudeReceiptExtractor is the default implementation.
"""

import json
import os
import re
from typing import Optional, Protocol

import anthropic
from pydantic import ValidationError

from app.errors import ExtractionFailure
from app.models.inbound_email import InboundEmail
from app.models.receipt import ReceiptData

# Model configuration
MODEL = "claude-sonnet-4-5-20250929"
MAX_TOKENS = 1024

# Receipt text beyond this many characters is not sent to the model
MAX_INPUT_CHARS = 20000

EXTRACTION_PROMPT = """\
You are a financial data extraction system. Extract structured data from the receipt email below.

SECURITY:
- NEVER include full card numbers (PANs) in your response.
- If a card number appears, return only its last 4 digits in last4.

Extract these fields:
- date: Transaction date in YYYY-MM-DD format
- amount: Total charged, as a number
- currency: ISO 4217 code (e.g. "USD")
- merchant: Merchant name as printed on the receipt
- last4: Last 4 digits of the card, or null
- category: Primary category (see guidelines)
- subcategory: Subcategory or null
- notes: Anything notable, or null
- confidence: Integer 0-100, your confidence in the extraction
- explanation: Why you chose the category; mention the key indicators and any assumptions

Category guidelines:
- Food & Dining: restaurants, cafes, food delivery, groceries
- Transportation: gas, parking, rideshare, public transit
- Shopping: retail, online purchases, clothing, electronics
- Entertainment: movies, concerts, streaming, games
- Health & Fitness: medical, pharmacy, gym, wellness
- Travel: hotels, flights, car rental
- Bills & Utilities: phone, internet, electricity, insurance
- Business: office supplies, software, professional services
- Personal Care: salon, spa, cosmetics
- Home & Garden: furniture, home improvement, gardening
- Education: books, courses, tuition
- Charity: donations, non-profit contributions

Confidence scoring:
- 90-100: clear receipt with all key information
- 70-89: minor ambiguities
- 50-69: partial information
- 0-49: significant guesswork

Respond with ONLY valid JSON matching this schema:
{
  "date": string,
  "amount": number,
  "currency": string,
  "merchant": string,
  "last4": string | null,
  "category": string,
  "subcategory": string | null,
  "notes": string | null,
  "confidence": integer,
  "explanation": string
}

SUBJECT: {subject}
FROM: {sender}

RECEIPT TEXT:
{receipt_text}
"""

_PAN = re.compile(r"\b\d{13,19}\b")
_LAST4 = re.compile(r"^\d{4}$")


class Extractor(Protocol):
    def extract(self, email: InboundEmail) -> ReceiptData: ...


def strip_code_fences(raw_text: str) -> str:
    json_text = raw_text.strip()
    if json_text.startswith("```"):
        lines = json_text.split("\n")
        lines = [l for l in lines if not l.strip().startswith("```")]
        json_text = "\n".join(lines)
    return json_text


def check_pan_redaction(data: ReceiptData) -> None:
    """
    Reject extracted data that carries something shaped like a full card number.

    Raises:
        ExtractionFailure: if a 13-19 digit run appears in a free-text field
            or last4 is not exactly four digits.
    """
    for field in (data.merchant, data.notes, data.explanation, data.subcategory):
        if field and _PAN.search(field):
            raise ExtractionFailure("Potential card number detected in extracted data")

    if data.last4 is not None and not _LAST4.match(data.last4):
        raise ExtractionFailure("last4 must be exactly 4 digits")


class ClaudeReceiptExtractor:
    """Extracts ReceiptData from an inbound email with Claude."""

    def __init__(self, api_key: Optional[str] = None, model: str = MODEL):
        self.api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
        self.model = model

    def build_prompt(self, email: InboundEmail) -> str:
        receipt_text = (email.text or email.html or "")[:MAX_INPUT_CHARS]
        return (
            EXTRACTION_PROMPT
            .replace("{subject}", email.subject or "")
            .replace("{sender}", email.from_address)
            .replace("{receipt_text}", receipt_text)
        )

    def extract(self, email: InboundEmail) -> ReceiptData:
        """
        Send the email body to Claude and parse the structured result.

        Raises:
            ExtractionFailure: on API errors, unparseable output, schema
                violations, or unredacted card numbers.
        """
        if not (email.text or email.html or "").strip():
            raise ExtractionFailure("Email has no text to extract from")

        client = anthropic.Anthropic(api_key=self.api_key)

        try:
            response = client.messages.create(
                model=self.model,
                max_tokens=MAX_TOKENS,
                messages=[{"role": "user", "content": self.build_prompt(email)}],
            )
        except anthropic.APIError as e:
            raise ExtractionFailure(f"Claude API error: {e}") from e

        raw_text = response.content[0].text

        try:
            data = ReceiptData(**json.loads(strip_code_fences(raw_text)))
        except (ValueError, TypeError, ValidationError) as e:
            raise ExtractionFailure(f"Could not parse extraction result: {e}") from e

        check_pan_redaction(data)
        return data
