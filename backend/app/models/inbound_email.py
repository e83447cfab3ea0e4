"""
Provider-agnostic inbound email model.

These models represent a normalized inbound email after provider-specific
fields have been stripped away. The pipeline and business logic work
exclusively with these models; only the adapter layer knows about the
Cloudflare and SES formats.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class RawInboundRequest(BaseModel):
    """
    The parts of an HTTP request an adapter is allowed to look at.

    Built once by the inbound router so adapters never touch the Starlette
    request object (and tests never need one).
    """

    model_config = ConfigDict(frozen=True)

    body: bytes
    headers: dict[str, str] = {}
    path: str = "/inbound"
    correlation_id: str = ""

    def header(self, name: str) -> Optional[str]:
        """Case-insensitive header lookup."""
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None


class InboundAttachment(BaseModel):
    """Attachment metadata. Content is not carried through the pipeline."""

    model_config = ConfigDict(frozen=True)

    name: str
    content_type: str = "application/octet-stream"
    size: int = 0
    key: Optional[str] = None  # storage key when the raw part has been saved


class InboundEmail(BaseModel):
    """
    Normalized inbound email, provider-agnostic. Immutable once built.

    `message_id` is the provider's id and stays stable across webhook
    retries; it is half of the (org_id, message_id) idempotency key.
    `alias` is the recipient address used to resolve the organization.
    """

    model_config = ConfigDict(frozen=True)

    alias: str
    message_id: str = Field(min_length=1)
    from_address: str
    to_address: str
    subject: str = ""
    text: Optional[str] = None
    html: Optional[str] = None
    received_at: datetime
    attachments: tuple[InboundAttachment, ...] = ()
    raw_ref: Optional[str] = None  # where the raw MIME message was saved, if anywhere
    metadata: dict[str, Any] = {}

    @model_validator(mode="after")
    def _require_content(self) -> "InboundEmail":
        if not self.text and not self.html:
            raise ValueError("Email must have either text or html content")
        return self

    @property
    def provider(self) -> str:
        return self.metadata.get("provider", "unknown")

    @property
    def correlation_id(self) -> str:
        return self.metadata.get("correlation_id", "")
