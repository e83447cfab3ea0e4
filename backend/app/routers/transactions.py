"""
Transaction API endpoints.

A category change made through PATCH is a user correction: it is written to
the merchant map so later receipts from the same merchant are categorized the
same way.
"""

import logging
from datetime import datetime, timezone
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query

from app.auth import OrgContext, get_org_context
from app.dependencies import get_merchant_map, get_store
from app.models.receipt import Transaction, TransactionUpdate
from app.services.merchant_map import MerchantMapService
from app.services.store import DataStore

router = APIRouter()

logger = logging.getLogger(__name__)


@router.get("/", response_model=List[Transaction])
async def list_transactions(
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    ctx: OrgContext = Depends(get_org_context),
    store: DataStore = Depends(get_store),
):
    rows = store.for_org(ctx.org_id).list_transactions(limit=limit, offset=offset)
    return [Transaction(**row) for row in rows]


@router.get("/{transaction_id}", response_model=Transaction)
async def get_transaction(
    transaction_id: str,
    ctx: OrgContext = Depends(get_org_context),
    store: DataStore = Depends(get_store),
):
    row = store.for_org(ctx.org_id).get_transaction(transaction_id)
    if not row:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return Transaction(**row)


@router.patch("/{transaction_id}", response_model=Transaction)
async def update_transaction(
    transaction_id: str,
    body: TransactionUpdate,
    ctx: OrgContext = Depends(get_org_context),
    store: DataStore = Depends(get_store),
    merchant_map: MerchantMapService = Depends(get_merchant_map),
):
    """
    Partially update a transaction.

    When the category changes, the (merchant -> category) correction is
    upserted into the organization's merchant map.
    """
    scope = store.for_org(ctx.org_id)
    existing = scope.get_transaction(transaction_id)
    if not existing:
        raise HTTPException(status_code=404, detail="Transaction not found")

    fields = body.model_dump(exclude_unset=True)
    if not fields:
        return Transaction(**existing)

    category_changed = "category" in fields and fields["category"] != existing.get("category")
    if category_changed:
        merchant = fields.get("merchant") or existing.get("merchant") or ""
        subcategory = fields.get("subcategory", existing.get("subcategory"))
        try:
            merchant_map.update(merchant, fields["category"], subcategory, ctx.org_id, ctx.user_id)
        except ValueError:
            logger.info(f"Transaction {transaction_id} has no usable merchant name; mapping not learned")
        except Exception as e:
            # The correction itself still applies; only the learning step failed
            logger.warning(f"Failed to learn merchant mapping from transaction {transaction_id}: {e}")

    fields["updated_at"] = datetime.now(timezone.utc).isoformat()
    updated = scope.update_transaction(transaction_id, fields)
    if not updated:
        raise HTTPException(status_code=500, detail="Failed to update transaction")

    return Transaction(**updated)
