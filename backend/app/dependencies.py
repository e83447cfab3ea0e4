"""
FastAPI dependencies for the shared services built in app.main.

Long-lived objects (store, provider registry, merchant map cache, extractor,
rate limiter) live on app.state. Tests swap them with
app.dependency_overrides[...] instead of patching module globals.
"""

from fastapi import Depends, HTTPException, Request

from app.services.extractor import Extractor
from app.services.ingestion import IngestionPipeline
from app.services.merchant_map import MerchantMapService
from app.services.provider_registry import ProviderRegistry
from app.services.store import DataStore


def get_store(request: Request) -> DataStore:
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise HTTPException(status_code=503, detail="Data store not configured")
    return store


def get_registry(request: Request) -> ProviderRegistry:
    return request.app.state.registry


def get_extractor(request: Request) -> Extractor:
    return request.app.state.extractor


def get_merchant_map(
    request: Request,
    store: DataStore = Depends(get_store),
) -> MerchantMapService:
    return MerchantMapService(store, cache=request.app.state.merchant_cache)


def get_pipeline(
    request: Request,
    store: DataStore = Depends(get_store),
    extractor: Extractor = Depends(get_extractor),
    merchant_map: MerchantMapService = Depends(get_merchant_map),
) -> IngestionPipeline:
    return IngestionPipeline(
        store,
        extractor,
        merchant_map,
        rate_limiter=request.app.state.rate_limiter,
    )
