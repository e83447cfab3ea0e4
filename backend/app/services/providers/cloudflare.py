"""
Cloudflare Email Routing adapter.

The Cloudflare email worker forwards each message as a flat JSON body and
signs the raw bytes with HMAC-SHA256 using a secret shared with this service.
The hex digest arrives in the X-Cloudflare-Signature header.

Payload fields used
-------------------
  personalizations[0].to[0].email   recipient (the org alias)
  from.email                        sender
  subject                           subject line
  content[]                         {type: "text/plain" | "text/html", value}
  headers                           raw headers; Message-ID is read from here
  attachments[]                     {filename, type, content (base64)}
"""

import hashlib
import hmac
import logging
import re
from datetime import datetime, timezone
from typing import Any, Optional

from app.config import DEFAULT_TIMEOUT_MS
from app.errors import ConfigurationError, ParsingError, VerificationError
from app.models.inbound_email import InboundAttachment, InboundEmail, RawInboundRequest
from app.services.inbound_email_adapter import (
    InboundEmailProvider,
    extract_address,
    generate_correlation_id,
    normalize_alias,
    normalize_email_content,
    sanitize_metadata,
    validate_message_id,
)

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Cloudflare-Signature"

_HEX_SHA256 = re.compile(r"^[0-9a-fA-F]{64}$")


class CloudflareAdapter(InboundEmailProvider):
    """HMAC-verified JSON webhook from Cloudflare Email Routing."""

    name = "cloudflare"

    def __init__(
        self,
        webhook_secret: Optional[str] = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        environment: str = "development",
    ):
        super().__init__(timeout_ms=timeout_ms, environment=environment)
        self.webhook_secret = webhook_secret or ""

        if not self.webhook_secret and environment == "production":
            raise ConfigurationError(self.name, {
                "message": "CLOUDFLARE_EMAIL_SECRET is required in production",
                "required_env_vars": ["CLOUDFLARE_EMAIL_SECRET"],
            })

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def sign(self, body: bytes) -> str:
        return hmac.new(self.webhook_secret.encode(), body, hashlib.sha256).hexdigest()

    async def verify(self, raw: RawInboundRequest) -> bool:
        if not self.webhook_secret:
            raise VerificationError(self.name, {
                "message": "Webhook secret not configured",
            }, code="SECRET_NOT_CONFIGURED")

        signature = raw.header(SIGNATURE_HEADER)
        if not signature:
            raise VerificationError(self.name, {
                "message": f"Missing {SIGNATURE_HEADER} header",
            }, code="MISSING_SIGNATURE")

        signature = signature.strip()
        if not _HEX_SHA256.match(signature):
            raise VerificationError(self.name, {
                "message": "Signature header is not a hex SHA-256 digest",
                "provided_length": len(signature),
            }, code="MALFORMED_SIGNATURE")

        if not hmac.compare_digest(signature.lower(), self.sign(raw.body)):
            raise VerificationError(self.name, {
                "message": "HMAC signature verification failed",
            })

        return True

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    async def parse(self, raw: RawInboundRequest) -> InboundEmail:
        correlation_id = raw.correlation_id or generate_correlation_id()
        payload = self._load_json_object(raw, correlation_id)

        content = payload.get("content")
        if not isinstance(content, list):
            raise ParsingError(self.name, {
                "message": "Payload is missing the content array",
                "correlation_id": correlation_id,
            })

        to = _first_recipient(payload)
        if not to:
            raise ParsingError(self.name, {
                "message": "Missing recipient email in personalizations",
                "correlation_id": correlation_id,
            })

        sender_obj = payload.get("from")
        sender = sender_obj.get("email") if isinstance(sender_obj, dict) else None
        if not sender:
            raise ParsingError(self.name, {
                "message": "Missing sender email",
                "correlation_id": correlation_id,
            })

        text = ""
        html = ""
        for part in content:
            if not isinstance(part, dict):
                continue
            if part.get("type") == "text/plain":
                text = part.get("value") or ""
            elif part.get("type") == "text/html":
                html = part.get("value") or ""

        text = normalize_email_content(text)
        html = normalize_email_content(html)
        if not text and not html:
            raise ParsingError(self.name, {
                "message": "Email must have either text or html content",
                "correlation_id": correlation_id,
                "content_types": [p.get("type") for p in content if isinstance(p, dict)],
            })

        headers = payload.get("headers") if isinstance(payload.get("headers"), dict) else {}
        message_id = validate_message_id(
            _header_value(headers, "message-id") or _derived_message_id(raw.body),
            self.name,
            correlation_id,
        )
        attachments = _normalize_attachments(payload.get("attachments"))

        metadata = sanitize_metadata({
            "provider": self.name,
            "correlation_id": correlation_id,
            "headers": headers,
            "original_payload": {
                "personalizations_count": len(payload.get("personalizations") or []),
                "content_types": [p.get("type") for p in content if isinstance(p, dict)],
                "attachment_count": len(attachments),
            },
        })

        return InboundEmail(
            alias=normalize_alias(to),
            message_id=message_id,
            from_address=extract_address(sender),
            to_address=extract_address(to),
            subject=payload.get("subject") or "",
            text=text or None,
            html=html or None,
            received_at=datetime.now(timezone.utc),
            attachments=tuple(attachments),
            metadata=metadata,
        )

    def _health_details(self) -> tuple[bool, dict[str, Any]]:
        has_secret = bool(self.webhook_secret)
        return has_secret, {"has_secret": has_secret, "hmac_algorithm": "sha256"}


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------

def _first_recipient(payload: dict) -> Optional[str]:
    personalizations = payload.get("personalizations")
    if not isinstance(personalizations, list) or not personalizations:
        return None
    first = personalizations[0] if isinstance(personalizations[0], dict) else {}
    recipients = first.get("to")
    if not isinstance(recipients, list) or not recipients:
        return None
    recipient = recipients[0] if isinstance(recipients[0], dict) else {}
    return recipient.get("email")


def _header_value(headers: dict, name: str) -> Optional[str]:
    for key, value in headers.items():
        if key.lower() == name and isinstance(value, str) and value.strip():
            return value
    return None


def _derived_message_id(body: bytes) -> str:
    # Same body on every retry, so the id is stable without a Message-ID header
    return f"cf_{hashlib.sha256(body).hexdigest()[:32]}"


def _normalize_attachments(attachments: Any) -> list[InboundAttachment]:
    if not isinstance(attachments, list):
        return []

    normalized: list[InboundAttachment] = []
    for att in attachments:
        if not isinstance(att, dict):
            continue
        content = att.get("content") or ""
        normalized.append(
            InboundAttachment(
                name=att.get("filename") or "unknown",
                content_type=att.get("type") or "application/octet-stream",
                # base64: 4 chars encode 3 bytes
                size=(len(content) * 3) // 4 if content else 0,
            )
        )
    return normalized
