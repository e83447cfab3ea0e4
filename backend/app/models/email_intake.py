"""
Pydantic models for the email intake pipeline.

Models:
  OrganizationAlias   — DB row from inbox_aliases
  ProviderLogEntry    — DB row from provider_logs (the idempotency ledger)
  EmailRecord         — DB row from emails
  IngestionStatus     — pipeline state machine
  IngestionResult     — outcome of one pipeline run (HTTP response body)
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel


# ---------------------------------------------------------------------------
# Tenant resolution
# ---------------------------------------------------------------------------

class OrganizationAlias(BaseModel):
    """Maps one inbound address to exactly one organization."""
    model_config = {"from_attributes": True, "extra": "ignore"}

    alias_email: str
    org_id: str
    is_active: bool = True


# ---------------------------------------------------------------------------
# Idempotency ledger
# ---------------------------------------------------------------------------

class ProviderLogEntry(BaseModel):
    """
    One row per accepted message.

    (org_id, message_id) is unique in the provider_logs table. The row is
    claimed with success=False before processing and receives a single
    outcome write (success, error_message, processing_time_ms) once the
    message is stored. A claim whose processing raised is deleted instead.
    """
    model_config = {"extra": "ignore"}

    id: Optional[str] = None
    org_id: str
    provider_name: str
    message_id: str
    payload: dict[str, Any] = {}
    success: bool = False
    error_message: Optional[str] = None
    processing_time_ms: int = 0
    correlation_id: str = ""
    created_at: Optional[str] = None


# ---------------------------------------------------------------------------
# Stored inbound email
# ---------------------------------------------------------------------------

class EmailStatus(str, Enum):
    RECEIVED = "received"
    EXTRACTED = "extracted"
    FAILED = "failed"


class EmailRecord(BaseModel):
    """Full emails record from the database."""
    model_config = {"from_attributes": True, "extra": "ignore"}

    id: str
    org_id: str
    message_id: str
    provider: str
    from_address: str
    to_address: str
    subject: Optional[str] = None
    text: Optional[str] = None
    html: Optional[str] = None
    received_at: str
    correlation_id: str = ""
    status: EmailStatus = EmailStatus.RECEIVED
    error_message: Optional[str] = None
    created_at: Optional[str] = None


# ---------------------------------------------------------------------------
# Pipeline outcome
# ---------------------------------------------------------------------------

class IngestionStatus(str, Enum):
    RECEIVED = "received"
    VERIFIED = "verified"
    PARSED = "parsed"
    TENANT_RESOLVED = "tenant_resolved"
    RATE_CHECKED = "rate_checked"
    DEDUPED = "deduped"
    EXTRACTED = "extracted"
    STORED = "stored"
    REJECTED = "rejected"
    DUPLICATE = "duplicate"


class IngestionResult(BaseModel):
    """
    Response body for a successful or gracefully-acknowledged inbound call.

    `extracted` is False when the Extractor failed; the email row is still
    stored so the message is not lost.
    """

    success: bool = True
    status: IngestionStatus
    message: str
    correlation_id: str
    provider: Optional[str] = None
    email_id: Optional[str] = None
    transaction_id: Optional[str] = None
    extracted: bool = False
    duplicate: bool = False
