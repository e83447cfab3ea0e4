"""
Error taxonomy for the inbound pipeline.

Provider errors always carry the provider name and a machine-readable code so
that logs and the inbound router can tell them apart without string matching.
`details` is for diagnostics only; it must never contain secrets or raw
signatures and is never echoed back to the webhook caller.
"""

from typing import Any, Optional


class ProviderError(Exception):
    """Base class for failures raised by a provider adapter or the registry."""

    code = "PROVIDER_ERROR"

    def __init__(
        self,
        message: str,
        provider: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.provider = provider
        if code is not None:
            self.code = code
        self.details = details or {}

    def __str__(self) -> str:
        return f"[{self.provider}:{self.code}] {self.message}"


class VerificationError(ProviderError):
    """Signature missing, malformed, or not matching."""

    code = "VERIFICATION_FAILED"

    def __init__(self, provider: str, details: Optional[dict[str, Any]] = None, code: Optional[str] = None):
        super().__init__("Provider verification failed", provider, code, details)


class ParsingError(ProviderError):
    """Provider payload did not have the structure the adapter requires."""

    code = "PARSING_FAILED"

    def __init__(self, provider: str, details: Optional[dict[str, Any]] = None):
        super().__init__("Provider payload parsing failed", provider, None, details)


class ConfigurationError(ProviderError):
    """Unknown provider name or missing provider configuration."""

    code = "CONFIGURATION_ERROR"

    def __init__(self, provider: str, details: Optional[dict[str, Any]] = None):
        details = details or {}
        super().__init__(
            details.get("message") or "Provider configuration invalid",
            provider,
            None,
            details,
        )


class ProviderTimeoutError(ProviderError):
    """An adapter exceeded its configured verify/parse budget."""

    code = "PROVIDER_TIMEOUT"

    def __init__(self, provider: str, operation: str, timeout_ms: int):
        super().__init__(
            f"Provider {operation} exceeded {timeout_ms}ms",
            provider,
            None,
            {"operation": operation, "timeout_ms": timeout_ms},
        )


class TenantResolutionError(Exception):
    """Recipient alias is unknown or inactive."""

    def __init__(self, alias: str):
        super().__init__(f"No active organization for alias {alias!r}")
        self.alias = alias


class RateLimitError(Exception):
    """Organization exceeded its inbound rate limit. Retrying later is safe."""

    def __init__(self, org_id: str, limit: int, window_minutes: int):
        super().__init__(
            f"Rate limit of {limit} per {window_minutes}min exceeded for org {org_id}"
        )
        self.org_id = org_id
        self.limit = limit
        self.window_minutes = window_minutes


class ExtractionFailure(Exception):
    """The Extractor collaborator could not produce receipt data."""


class StoreError(Exception):
    """The data store rejected or failed a write."""
