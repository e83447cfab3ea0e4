"""
Amazon SES adapter (SES receipt rule → SNS topic → HTTPS subscription).

SNS delivers a JSON envelope whose "Message" field is itself a JSON-encoded
string holding the SES notification (mail object + content). Two layers of
parsing are therefore needed, and the outer one must be authenticated before
anything inside it is trusted.

Verification follows the SNS message-signing scheme:
  - the envelope must be a Notification with all signing fields present
  - SigningCertURL must be an https URL on sns.<region>.amazonaws.com
  - the certificate is downloaded (bounded by the adapter timeout) and the
    RSA signature over the canonical string-to-sign is checked
    (SignatureVersion 1 → SHA1, 2 → SHA256)

Setting SES_VERIFY_SIGNATURE=false turns verification off for deployments
that cannot reach AWS to fetch certificates. That is logged as a warning when
the adapter is built and on every request it lets through.

A second delivery path serves an SES receipt-rule Lambda that has already
unpacked the message and POSTs a compact JSON payload to /inbound/lambda.
Those requests carry no SNS signature; they are authenticated by comparing
the x-shared-secret header with SES_LAMBDA_SHARED_SECRET in constant time.
"""

import base64
import binascii
import hmac
import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Literal, Optional
from urllib.parse import urlparse

import httpx
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from pydantic import BaseModel, Field, ValidationError

from app.config import DEFAULT_TIMEOUT_MS
from app.errors import ParsingError, VerificationError
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

_CERT_HOST = re.compile(r"^sns\.[a-z0-9-]+\.amazonaws\.com(\.cn)?$")

_SIGNATURE_HASHES = {
    "1": hashes.SHA1,
    "2": hashes.SHA256,
}

SHARED_SECRET_HEADER = "x-shared-secret"
LAMBDA_PATH_SUFFIX = "/lambda"


# ---------------------------------------------------------------------------
# Envelope models
# ---------------------------------------------------------------------------

class SnsEnvelope(BaseModel):
    """SNS HTTP(S) notification envelope."""
    model_config = {"extra": "ignore"}

    Type: Literal["Notification"]
    MessageId: str
    TopicArn: str
    Subject: Optional[str] = None
    Message: str
    Timestamp: str
    SignatureVersion: str
    Signature: str
    SigningCertURL: str
    UnsubscribeURL: Optional[str] = None


class SesCommonHeaders(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    from_: Optional[list[str]] = Field(default=None, alias="from")
    to: Optional[list[str]] = None
    subject: Optional[str] = None
    messageId: Optional[str] = None
    date: Optional[str] = None


class SesMail(BaseModel):
    """The SES mail object embedded in the SNS Message."""
    model_config = {"extra": "ignore"}

    timestamp: datetime
    messageId: str
    source: str
    destination: list[str]
    headers: list[dict[str, str]] = []
    commonHeaders: Optional[SesCommonHeaders] = None


class SesLambdaAttachment(BaseModel):
    model_config = {"extra": "ignore"}

    name: str
    contentType: str
    size: int = Field(ge=0)
    key: Optional[str] = None


class SesLambdaPayload(BaseModel):
    """Compact payload POSTed by the SES receipt-rule Lambda."""
    model_config = {"extra": "ignore", "populate_by_name": True}

    alias: str = Field(min_length=1)
    messageId: str
    from_: str = Field(alias="from", min_length=1)
    to: str = Field(min_length=1)
    subject: Optional[str] = None
    text: Optional[str] = None
    html: Optional[str] = None
    rawRef: Optional[str] = None
    receivedAt: Optional[datetime] = None
    attachments: list[SesLambdaAttachment] = []


def build_string_to_sign(envelope: SnsEnvelope) -> str:
    """Canonical SNS string-to-sign for a Notification."""
    parts = [("Message", envelope.Message), ("MessageId", envelope.MessageId)]
    if envelope.Subject is not None:
        parts.append(("Subject", envelope.Subject))
    parts += [
        ("Timestamp", envelope.Timestamp),
        ("TopicArn", envelope.TopicArn),
        ("Type", envelope.Type),
    ]
    return "".join(f"{key}\n{value}\n" for key, value in parts)


def is_valid_cert_url(url: str) -> bool:
    parsed = urlparse(url)
    return (
        parsed.scheme == "https"
        and bool(_CERT_HOST.match(parsed.hostname or ""))
        and parsed.path.endswith(".pem")
    )


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------

class SESAdapter(InboundEmailProvider):
    """SNS-wrapped SES inbound notifications, plus the Lambda-forwarded payload."""

    name = "ses"

    def __init__(
        self,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        verify_signature: bool = True,
        environment: str = "development",
        http_client: Optional[httpx.AsyncClient] = None,
        shared_secret: Optional[str] = None,
    ):
        super().__init__(timeout_ms=timeout_ms, environment=environment)
        self.verify_signature = verify_signature
        self.shared_secret = shared_secret or ""
        self._http_client = http_client
        self._cert_cache: dict[str, x509.Certificate] = {}

        if not verify_signature:
            logger.warning(
                "SES signature verification is DISABLED by configuration "
                "(SES_VERIFY_SIGNATURE=false, env=%s); SNS envelopes will not be authenticated",
                environment,
            )

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def verify(self, raw: RawInboundRequest) -> bool:
        if is_lambda_request(raw):
            return self._verify_shared_secret(raw)

        if not self.verify_signature:
            logger.warning(
                "Accepting SES request without signature verification "
                "(SES_VERIFY_SIGNATURE=false) correlation_id=%s",
                raw.correlation_id,
            )
            return True

        try:
            body = json.loads(raw.body) if raw.body else None
        except (ValueError, UnicodeDecodeError) as exc:
            raise VerificationError(self.name, {
                "message": "Invalid JSON in SNS message",
                "parse_error": str(exc),
            }, code="INVALID_ENVELOPE")

        try:
            envelope = SnsEnvelope.model_validate(body)
        except ValidationError as exc:
            raise VerificationError(self.name, {
                "message": "Invalid SNS message structure",
                "validation_errors": _error_locations(exc),
            }, code="INVALID_ENVELOPE")

        hash_cls = _SIGNATURE_HASHES.get(envelope.SignatureVersion)
        if hash_cls is None:
            raise VerificationError(self.name, {
                "message": f"Unsupported signature version: {envelope.SignatureVersion}",
            }, code="UNSUPPORTED_SIGNATURE_VERSION")

        if not is_valid_cert_url(envelope.SigningCertURL):
            raise VerificationError(self.name, {
                "message": "SigningCertURL is not an AWS SNS certificate URL",
            }, code="INVALID_CERT_URL")

        try:
            signature = base64.b64decode(envelope.Signature, validate=True)
        except (binascii.Error, ValueError):
            raise VerificationError(self.name, {
                "message": "Signature is not valid base64",
            }, code="MALFORMED_SIGNATURE")

        certificate = await self._get_certificate(envelope.SigningCertURL)

        try:
            certificate.public_key().verify(
                signature,
                build_string_to_sign(envelope).encode("utf-8"),
                padding.PKCS1v15(),
                hash_cls(),
            )
        except InvalidSignature:
            raise VerificationError(self.name, {
                "message": "SNS signature verification failed",
                "sns_message_id": envelope.MessageId,
                "topic_arn": envelope.TopicArn,
            })

        return True

    def _verify_shared_secret(self, raw: RawInboundRequest) -> bool:
        if not self.shared_secret:
            raise VerificationError(self.name, {
                "message": "Shared secret not configured for Lambda endpoint verification",
            }, code="SECRET_NOT_CONFIGURED")

        provided = raw.header(SHARED_SECRET_HEADER)
        if not provided:
            raise VerificationError(self.name, {
                "message": f"Missing {SHARED_SECRET_HEADER} header for Lambda endpoint",
            }, code="MISSING_SHARED_SECRET")

        if not hmac.compare_digest(provided.encode("utf-8"), self.shared_secret.encode("utf-8")):
            raise VerificationError(self.name, {
                "message": "Shared secret verification failed",
            })

        return True

    async def _get_certificate(self, url: str) -> x509.Certificate:
        cached = self._cert_cache.get(url)
        if cached is not None:
            return cached

        try:
            if self._http_client is not None:
                response = await self._http_client.get(url, timeout=self.timeout_ms / 1000)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_ms / 1000) as client:
                    response = await client.get(url)
            response.raise_for_status()
            certificate = x509.load_pem_x509_certificate(response.content)
        except httpx.HTTPError as exc:
            raise VerificationError(self.name, {
                "message": "Failed to download signing certificate",
                "error": str(exc),
            }, code="CERTIFICATE_UNAVAILABLE")
        except ValueError as exc:
            raise VerificationError(self.name, {
                "message": "Signing certificate is not valid PEM",
                "error": str(exc),
            }, code="CERTIFICATE_UNAVAILABLE")

        self._cert_cache[url] = certificate
        return certificate

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    async def parse(self, raw: RawInboundRequest) -> InboundEmail:
        correlation_id = raw.correlation_id or generate_correlation_id()
        body = self._load_json_object(raw, correlation_id)
        if is_lambda_request(raw):
            return self._parse_lambda(body, correlation_id)
        return self._parse_sns(body, correlation_id)

    def _parse_lambda(self, body: dict, correlation_id: str) -> InboundEmail:
        try:
            payload = SesLambdaPayload.model_validate(body)
        except ValidationError as exc:
            raise ParsingError(self.name, {
                "message": "Lambda payload validation failed",
                "correlation_id": correlation_id,
                "validation_errors": _error_locations(exc),
            })

        message_id = validate_message_id(payload.messageId, self.name, correlation_id)
        text = normalize_email_content(payload.text)
        html = normalize_email_content(payload.html)
        if not text and not html:
            raise ParsingError(self.name, {
                "message": "Email must have either text or html content",
                "correlation_id": correlation_id,
            })

        metadata = sanitize_metadata({
            "provider": self.name,
            "correlation_id": correlation_id,
            "source": "lambda",
            "raw_ref": payload.rawRef,
            "original_payload": {
                "has_text": bool(payload.text),
                "has_html": bool(payload.html),
                "attachment_count": len(payload.attachments),
            },
        })

        return InboundEmail(
            alias=normalize_alias(payload.alias),
            message_id=message_id,
            from_address=extract_address(payload.from_),
            to_address=extract_address(payload.to),
            subject=payload.subject or "",
            text=text or None,
            html=html or None,
            received_at=payload.receivedAt or datetime.now(timezone.utc),
            attachments=tuple(
                InboundAttachment(name=a.name, content_type=a.contentType, size=a.size, key=a.key)
                for a in payload.attachments
            ),
            raw_ref=payload.rawRef,
            metadata=metadata,
        )

    def _parse_sns(self, body: dict, correlation_id: str) -> InboundEmail:
        try:
            envelope = SnsEnvelope.model_validate(body)
        except ValidationError as exc:
            raise ParsingError(self.name, {
                "message": "SNS message validation failed",
                "correlation_id": correlation_id,
                "validation_errors": _error_locations(exc),
            })

        try:
            notification = json.loads(envelope.Message)
        except ValueError as exc:
            raise ParsingError(self.name, {
                "message": "Invalid JSON in SES message content",
                "correlation_id": correlation_id,
                "sns_message_id": envelope.MessageId,
                "parse_error": str(exc),
            })

        if not isinstance(notification, dict) or not isinstance(notification.get("mail"), dict):
            raise ParsingError(self.name, {
                "message": "Missing mail object in SES message",
                "correlation_id": correlation_id,
                "sns_message_id": envelope.MessageId,
            })

        try:
            mail = SesMail.model_validate(notification["mail"])
        except ValidationError as exc:
            raise ParsingError(self.name, {
                "message": "SES mail object validation failed",
                "correlation_id": correlation_id,
                "validation_errors": _error_locations(exc),
            })

        if not mail.destination:
            raise ParsingError(self.name, {
                "message": "Missing destination email in mail object",
                "correlation_id": correlation_id,
            })

        content = notification.get("content") if isinstance(notification.get("content"), dict) else {}
        text = normalize_email_content(content.get("text"))
        html = normalize_email_content(content.get("html"))
        if not text and not html:
            raise ParsingError(self.name, {
                "message": "Email must have either text or html content",
                "correlation_id": correlation_id,
                "sns_message_id": envelope.MessageId,
            })

        common = mail.commonHeaders or SesCommonHeaders()
        sender = (common.from_ or [mail.source])[0]
        to = mail.destination[0]

        metadata = sanitize_metadata({
            "provider": self.name,
            "correlation_id": correlation_id,
            "sns_message_id": envelope.MessageId,
            "ses_message_id": mail.messageId,
            "topic_arn": envelope.TopicArn,
            "timestamp": envelope.Timestamp,
            "signature_verified": self.verify_signature,
            "original_payload": {
                "destination_count": len(mail.destination),
                "header_count": len(mail.headers),
                "has_common_headers": mail.commonHeaders is not None,
            },
        })

        return InboundEmail(
            alias=normalize_alias(to),
            message_id=validate_message_id(mail.messageId, self.name, correlation_id),
            from_address=extract_address(sender),
            to_address=extract_address(to),
            subject=common.subject or envelope.Subject or "",
            text=text or None,
            html=html or None,
            received_at=mail.timestamp,
            attachments=tuple(_normalize_attachments(content.get("attachments"))),
            metadata=metadata,
        )

    def _health_details(self) -> tuple[bool, dict[str, Any]]:
        return True, {
            "signature_verification_enabled": self.verify_signature,
            "lambda_shared_secret_configured": bool(self.shared_secret),
            "cached_certificates": len(self._cert_cache),
        }


def is_lambda_request(raw: RawInboundRequest) -> bool:
    return raw.path.rstrip("/").endswith(LAMBDA_PATH_SUFFIX)


def _error_locations(exc: ValidationError) -> list[str]:
    # Field paths only; input values may contain message content
    return [".".join(str(p) for p in err["loc"]) or "<root>" for err in exc.errors()]


def _normalize_attachments(attachments: Any) -> list[InboundAttachment]:
    if not isinstance(attachments, list):
        return []
    return [
        InboundAttachment(
            name=att.get("filename") or att.get("name") or "unknown",
            content_type=att.get("contentType") or att.get("type") or "application/octet-stream",
            size=int(att.get("size") or 0),
            key=att.get("s3ObjectKey") or att.get("key"),
        )
        for att in attachments
        if isinstance(att, dict)
    ]
