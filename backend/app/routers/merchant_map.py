"""
Merchant map API endpoints.

All endpoints act within the caller's organization (X-Org-Id header, checked
against org_members).
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from app.auth import OrgContext, get_org_context
from app.dependencies import get_merchant_map
from app.errors import StoreError
from app.models.merchant_map import MerchantMapListResponse, MerchantMapping, UpdateMappingRequest
from app.services.merchant_map import MerchantMapService, normalize_merchant_name

router = APIRouter()

logger = logging.getLogger(__name__)


@router.get("/", response_model=MerchantMapListResponse)
async def list_merchant_mappings(
    ctx: OrgContext = Depends(get_org_context),
    service: MerchantMapService = Depends(get_merchant_map),
):
    """List the organization's learned mappings with summary statistics."""
    try:
        return MerchantMapListResponse(
            mappings=service.list_mappings(ctx.org_id),
            stats=service.get_mapping_stats(ctx.org_id),
        )
    except Exception as e:
        logger.error(f"Failed to list merchant mappings for org {ctx.org_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch merchant mappings")


@router.post("/", response_model=MerchantMapping)
async def upsert_merchant_mapping(
    body: UpdateMappingRequest,
    ctx: OrgContext = Depends(get_org_context),
    service: MerchantMapService = Depends(get_merchant_map),
):
    """Create or update the mapping for one merchant."""
    if not normalize_merchant_name(body.merchant_name):
        raise HTTPException(status_code=400, detail="Merchant name is empty after normalization")

    try:
        return service.update(
            body.merchant_name,
            body.category,
            body.subcategory,
            ctx.org_id,
            ctx.user_id,
        )
    except StoreError as e:
        logger.error(f"Failed to upsert merchant mapping for org {ctx.org_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to update merchant mapping")


@router.get("/lookup", response_model=Optional[MerchantMapping])
async def lookup_merchant_mapping(
    merchant: str = Query(..., min_length=1),
    ctx: OrgContext = Depends(get_org_context),
    service: MerchantMapService = Depends(get_merchant_map),
):
    """Return the mapping for `merchant`, or null when none is learned yet."""
    return service.lookup(merchant, ctx.org_id)


@router.delete("/{merchant_name}")
async def delete_merchant_mapping(
    merchant_name: str,
    ctx: OrgContext = Depends(get_org_context),
    service: MerchantMapService = Depends(get_merchant_map),
):
    if not service.delete_mapping(merchant_name, ctx.org_id):
        raise HTTPException(status_code=404, detail="Merchant mapping not found")
    return {"message": "Merchant mapping deleted"}
