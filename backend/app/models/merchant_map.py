"""
Pydantic models for the merchant map (learned categorizations).
"""

from typing import Optional

from pydantic import BaseModel, Field


class MerchantMapping(BaseModel):
    """merchant_map row. merchant_name is stored normalized."""
    model_config = {"from_attributes": True, "extra": "ignore"}

    id: Optional[str] = None
    org_id: str
    merchant_name: str
    category: str
    subcategory: Optional[str] = None
    created_by: str
    created_at: str
    updated_at: str


class CategoryCount(BaseModel):
    category: str
    count: int


class MappingStats(BaseModel):
    total_mappings: int = 0
    recent_mappings: int = 0  # updated within the last 30 days
    top_categories: list[CategoryCount] = []


class UpdateMappingRequest(BaseModel):
    """Request body for POST /api/merchant-map."""

    merchant_name: str = Field(min_length=1)
    category: str = Field(min_length=1)
    subcategory: Optional[str] = None


class MerchantMapListResponse(BaseModel):
    mappings: list[MerchantMapping]
    stats: MappingStats
