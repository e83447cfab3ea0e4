"""
Receiptflow Backend API
FastAPI application for receipt email ingestion and learned categorization.
"""

import logging
import os
from typing import List

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from app.db import supabase_admin
from app.dependencies import get_registry
from app.middleware.correlation import CorrelationIdFilter, CorrelationMiddleware
from app.routers import inbound, merchant_map, transactions
from app.services.extractor import ClaudeReceiptExtractor
from app.services.merchant_map_cache import MerchantMapCache
from app.services.provider_registry import ProviderRegistry
from app.services.rate_limiter import RateLimiter
from app.services.store import SupabaseStore

# Configure logging to output to console
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s [%(correlation_id)s]: %(message)s",
)
for _handler in logging.getLogger().handlers:
    _handler.addFilter(CorrelationIdFilter())

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Receiptflow API",
    description="Receipt email ingestion with per-organization learned categorization",
    version="0.1.0",
)


def get_cors_origins() -> List[str]:
    """
    Build the list of allowed CORS origins.

    Always includes the local dashboard dev server (http://localhost:3000);
    additional origins come from CORS_ORIGINS as a comma-separated list.
    Duplicates are removed while preserving order.
    """
    always_included = ["http://localhost:3000"]

    extra_origins: List[str] = []
    cors_env = os.getenv("CORS_ORIGINS", "").strip()
    if cors_env:
        extra_origins = [o.strip() for o in cors_env.split(",") if o.strip()]

    seen: set = set()
    origins: List[str] = []
    for origin in always_included + extra_origins:
        if origin not in seen:
            seen.add(origin)
            origins.append(origin)

    return origins


app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Correlation-ID"],
)
app.add_middleware(CorrelationMiddleware)

# Shared services. Tests replace these through app.dependency_overrides.
app.state.registry = ProviderRegistry()
app.state.store = SupabaseStore(supabase_admin) if supabase_admin is not None else None
app.state.merchant_cache = MerchantMapCache()
app.state.rate_limiter = RateLimiter()
app.state.extractor = ClaudeReceiptExtractor()

# Include routers
app.include_router(inbound.router, tags=["inbound"])
app.include_router(merchant_map.router, prefix="/api/merchant-map", tags=["merchant-map"])
app.include_router(transactions.router, prefix="/api/transactions", tags=["transactions"])


@app.on_event("startup")
async def log_startup_state() -> None:
    """Log where the API listens and which inbound providers are usable."""
    logger.info("Receiptflow API running at http://localhost:%s", os.getenv("HOST_PORT", "8000"))

    registry: ProviderRegistry = app.state.registry
    for summary in registry.list_providers():
        logger.info(
            f"Inbound provider {summary.name}: configured={summary.configured} "
            f"default={summary.is_default} timeout_ms={summary.timeout_ms}"
        )
    if app.state.store is None:
        logger.warning("SUPABASE_URL / SUPABASE_SERVICE_KEY not set; data endpoints will return 503")


@app.get("/")
async def root():
    return {"message": "Receiptflow API", "version": "0.1.0"}


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/health/db")
async def health_db():
    """
    Test the Supabase database connection with a one-row read from
    inbox_aliases. Returns 503 on failure.
    """
    if supabase_admin is None:
        raise HTTPException(
            status_code=503,
            detail="Database client unavailable: SUPABASE_SERVICE_KEY is not configured",
        )

    try:
        supabase_admin.table("inbox_aliases").select("id").limit(1).execute()
        return {"status": "ok", "database": "reachable"}
    except Exception as exc:
        logger.error(f"Database health check failed: {exc}")
        raise HTTPException(status_code=503, detail="Database connection failed")


@app.get("/health/providers")
async def health_providers(
    refresh: bool = Query(False, description="Bypass the health-check cache"),
    registry: ProviderRegistry = Depends(get_registry),
):
    """
    Health of every inbound provider plus the active/fallback status.

    Results are cached for 60 seconds unless refresh=true.
    """
    checks = await registry.perform_all_health_checks(use_cache=not refresh)
    status = await registry.get_status()
    return {
        "status": "ok" if status.current_healthy else "degraded",
        "active": status.model_dump(),
        "providers": [p.model_dump() for p in registry.list_providers()],
        "health": {name: check.model_dump(mode="json") for name, check in checks.items()},
    }
