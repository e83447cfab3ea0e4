"""
Inbound email adapter contract.

Every inbound provider normalizes its webhook into a single provider-agnostic
InboundEmail model behind the InboundEmailProvider interface:

  name          stable identifier ("cloudflare", "ses")
  verify()      authenticate the raw request; raise VerificationError or
                return True
  parse()       map the provider payload into InboundEmail; raise
                ParsingError when required structure is missing
  health_check  cheap self-test, never raises

Supported providers live in app/services/providers/. Adding a new provider:
  1. Subclass InboundEmailProvider in app/services/providers/<name>.py.
  2. Register it in app.services.provider_registry.SUPPORTED_PROVIDERS.
  3. Revisit the fallback pairing in the registry (it assumes two providers).

The helpers below are shared by the adapters so that content cleanup and
metadata sanitization are identical whichever provider delivered the mail.
"""

import json
import logging
import re
import time
import uuid
from abc import ABC, abstractmethod
from typing import Any, Optional

from app.config import DEFAULT_TIMEOUT_MS, MAX_TIMEOUT_MS
from app.errors import ParsingError
from app.models.inbound_email import InboundEmail, RawInboundRequest
from app.models.provider import AdapterHealth

logger = logging.getLogger(__name__)

# Keys dropped from provider metadata before it is stored or logged
_SENSITIVE_KEYS = frozenset({
    "authorization",
    "x-api-key",
    "x-auth-token",
    "cookie",
    "set-cookie",
    "x-forwarded-for",
    "x-real-ip",
    "x-cloudflare-signature",
})

_HEADER_LINE = re.compile(r"^(From|To|Subject|Date|Cc|Bcc):.*$", re.IGNORECASE)

MAX_MESSAGE_ID_LENGTH = 255

# Printable ASCII without whitespace or angle brackets
_MESSAGE_ID_CHARS = re.compile(r"^[\x21-\x3b\x3d\x3f-\x7e]+$")


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def generate_correlation_id() -> str:
    return f"email_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def normalize_email_content(content: Optional[str]) -> str:
    """
    Strip common email artifacts from a body part.

    Header lines (From:, To:, ...), quoted reply lines (> ...) and signature
    separators are dropped line by line, then whitespace is collapsed.
    """
    if not content:
        return ""

    kept: list[str] = []
    for line in content.splitlines():
        stripped = line.strip()
        if _HEADER_LINE.match(stripped):
            continue
        if stripped.startswith(">"):
            continue
        if stripped == "--":
            continue
        kept.append(stripped)

    return re.sub(r"\s+", " ", " ".join(kept)).strip()


def sanitize_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of metadata with sensitive keys removed (case-insensitive, one level deep)."""
    sanitized: dict[str, Any] = {}
    for key, value in metadata.items():
        if key.lower() in _SENSITIVE_KEYS:
            continue
        if isinstance(value, dict):
            value = {k: v for k, v in value.items() if k.lower() not in _SENSITIVE_KEYS}
        sanitized[key] = value
    return sanitized


def extract_address(value: str) -> str:
    """
    Return the bare address from "Name <addr@host>" or "addr@host".
    """
    match = re.search(r"<([^>]+)>", value or "")
    addr = match.group(1) if match else (value or "")
    return addr.strip()


def normalize_alias(value: str) -> str:
    return extract_address(value).lower()


def validate_message_id(message_id: Optional[str], provider: str, correlation_id: str) -> str:
    """
    Check a message id before it becomes the idempotency key.

    A single pair of enclosing angle brackets (RFC 5322 Message-ID form) is
    allowed and kept. Returns the stripped id; raises ParsingError otherwise.
    """
    value = (message_id or "").strip()
    if not value:
        raise ParsingError(provider, {
            "message": "Message ID is required",
            "correlation_id": correlation_id,
        })
    if len(value) > MAX_MESSAGE_ID_LENGTH:
        raise ParsingError(provider, {
            "message": f"Message ID exceeds {MAX_MESSAGE_ID_LENGTH} characters",
            "correlation_id": correlation_id,
            "length": len(value),
        })

    core = value[1:-1] if value.startswith("<") and value.endswith(">") else value
    if not _MESSAGE_ID_CHARS.match(core):
        raise ParsingError(provider, {
            "message": "Message ID contains invalid characters",
            "correlation_id": correlation_id,
        })
    return value


# ---------------------------------------------------------------------------
# Provider contract
# ---------------------------------------------------------------------------

class InboundEmailProvider(ABC):
    """Base class for all inbound email provider adapters."""

    name: str = ""

    def __init__(self, timeout_ms: int = DEFAULT_TIMEOUT_MS, environment: str = "development"):
        self.timeout_ms = timeout_ms
        self.environment = environment

    @property
    def has_valid_timeout(self) -> bool:
        return 0 < self.timeout_ms <= MAX_TIMEOUT_MS

    @abstractmethod
    async def verify(self, raw: RawInboundRequest) -> bool:
        """Authenticate the request. Raises VerificationError on failure."""

    @abstractmethod
    async def parse(self, raw: RawInboundRequest) -> InboundEmail:
        """Normalize the request body. Raises ParsingError on malformed input."""

    @abstractmethod
    def _health_details(self) -> tuple[bool, dict[str, Any]]:
        """Return (healthy, details) from configuration alone."""

    async def health_check(self) -> AdapterHealth:
        started = time.perf_counter()
        try:
            healthy, details = self._health_details()
            details = {
                **details,
                "has_valid_timeout": self.has_valid_timeout,
                "timeout_ms": self.timeout_ms,
                "environment": self.environment,
            }
            return AdapterHealth(
                healthy=healthy and self.has_valid_timeout,
                response_time_ms=(time.perf_counter() - started) * 1000,
                details=details,
            )
        except Exception as exc:
            logger.warning(f"{self.name} health check failed: {exc}")
            return AdapterHealth(
                healthy=False,
                response_time_ms=(time.perf_counter() - started) * 1000,
                error=str(exc),
            )

    # -- parsing helpers ---------------------------------------------------

    def _load_json_object(self, raw: RawInboundRequest, correlation_id: str) -> dict:
        if not raw.body:
            raise ParsingError(self.name, {
                "message": "Empty request body",
                "correlation_id": correlation_id,
            })
        try:
            payload = json.loads(raw.body)
        except (ValueError, UnicodeDecodeError) as exc:
            raise ParsingError(self.name, {
                "message": "Invalid JSON in request body",
                "correlation_id": correlation_id,
                "parse_error": str(exc),
            })
        if not isinstance(payload, dict):
            raise ParsingError(self.name, {
                "message": "Request body must be a JSON object",
                "correlation_id": correlation_id,
            })
        return payload

    def __repr__(self) -> str:
        return f"<{type(self).__name__} timeout_ms={self.timeout_ms} env={self.environment}>"
