"""
Receipt and transaction models.

ReceiptData is what the Extractor returns; Transaction is the persisted,
org-scoped record derived from it.
"""

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class ReceiptData(BaseModel):
    """Structured receipt guess produced by the Extractor."""

    date: str
    amount: Decimal
    currency: str = "USD"
    merchant: str = ""
    last4: Optional[str] = None
    category: str
    subcategory: Optional[str] = None
    notes: Optional[str] = None
    confidence: int = Field(ge=0, le=100)
    explanation: str = ""

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, v: str) -> str:
        return v.strip().upper()


class Transaction(BaseModel):
    """Full transaction record from the database."""
    model_config = {"from_attributes": True, "extra": "ignore"}

    id: str
    org_id: str
    email_id: Optional[str] = None
    date: str
    amount: Decimal
    currency: str
    merchant: str
    last4: Optional[str] = None
    category: str
    subcategory: Optional[str] = None
    notes: Optional[str] = None
    confidence: int
    explanation: str = ""
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class TransactionUpdate(BaseModel):
    """
    Request body for PATCH /api/transactions/{id}.

    A category change is treated as a user correction and is fed back into
    the merchant map.
    """

    merchant: Optional[str] = Field(default=None, min_length=1)
    category: Optional[str] = Field(default=None, min_length=1)
    subcategory: Optional[str] = None
    notes: Optional[str] = None
