"""
Inbound email webhook router.

Endpoints:
  POST /inbound              — webhook for the active provider (INBOUND_PROVIDER,
                               with automatic fallback when it is unhealthy)
  POST /inbound/lambda       — compact payload from the SES receipt-rule Lambda,
                               authenticated by the x-shared-secret header
  POST /inbound/{provider}   — webhook for an explicitly named provider

Authentication is the provider's own signature scheme, checked by the
adapter. The Lambda route is declared before /inbound/{provider} so
the path parameter does not capture it. There is no user session.

Status codes:
  200  processed, or duplicate ("message already processed")
  400  payload could not be parsed
  401  signature missing or invalid
  404  unknown or inactive recipient alias / unknown provider path
  429  organization rate limit exceeded (safe to retry later)
  500  configuration or storage failure
  504  provider verify/parse exceeded its timeout

Error bodies are {"success": false, "error", "code", "correlation_id"}; they
never carry exception details, signatures or secrets.
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from app.dependencies import get_pipeline, get_registry
from app.errors import (
    ConfigurationError,
    ParsingError,
    ProviderTimeoutError,
    RateLimitError,
    StoreError,
    TenantResolutionError,
    VerificationError,
)
from app.middleware.correlation import CORRELATION_HEADER
from app.models.inbound_email import RawInboundRequest
from app.services.inbound_email_adapter import InboundEmailProvider, generate_correlation_id
from app.services.ingestion import IngestionPipeline
from app.services.provider_registry import ProviderRegistry

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _correlation_id(request: Request) -> str:
    return getattr(request.state, "correlation_id", None) or generate_correlation_id()


def _error_response(status_code: int, error: str, code: str, correlation_id: str, headers: dict = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": error,
            "code": code,
            "correlation_id": correlation_id,
        },
        headers={CORRELATION_HEADER: correlation_id, **(headers or {})},
    )


async def _raw_request(request: Request, correlation_id: str) -> RawInboundRequest:
    return RawInboundRequest(
        body=await request.body(),
        headers=dict(request.headers),
        path=request.url.path,
        correlation_id=correlation_id,
    )


async def _ingest(
    request: Request,
    provider: InboundEmailProvider,
    pipeline: IngestionPipeline,
    correlation_id: str,
) -> JSONResponse:
    raw = await _raw_request(request, correlation_id)

    try:
        result = await pipeline.ingest(provider, raw)
    except VerificationError as e:
        return _error_response(401, "invalid signature", e.code, correlation_id)
    except ParsingError as e:
        return _error_response(400, "invalid email format", e.code, correlation_id)
    except ProviderTimeoutError as e:
        return _error_response(504, "provider timed out", e.code, correlation_id)
    except ConfigurationError as e:
        logger.error(f"[{correlation_id}] Provider configuration error: {e}")
        return _error_response(500, "provider misconfigured", e.code, correlation_id)
    except TenantResolutionError:
        return _error_response(404, "unknown recipient", "UNKNOWN_ALIAS", correlation_id)
    except RateLimitError as e:
        return _error_response(
            429,
            "rate limit exceeded",
            "RATE_LIMITED",
            correlation_id,
            headers={"Retry-After": str(e.window_minutes * 60)},
        )
    except StoreError as e:
        logger.error(f"[{correlation_id}] Store failure during ingestion: {e}")
        return _error_response(500, "internal error", "STORE_ERROR", correlation_id)
    except Exception:
        logger.exception(f"[{correlation_id}] Unexpected error during ingestion")
        return _error_response(500, "internal error", "INTERNAL_ERROR", correlation_id)

    return JSONResponse(
        status_code=200,
        content=result.model_dump(mode="json"),
        headers={CORRELATION_HEADER: correlation_id},
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/inbound")
async def receive_inbound_email(
    request: Request,
    registry: ProviderRegistry = Depends(get_registry),
    pipeline: IngestionPipeline = Depends(get_pipeline),
):
    """Inbound webhook for the currently active provider."""
    correlation_id = _correlation_id(request)
    try:
        provider = await registry.get_active_provider()
    except ConfigurationError as e:
        logger.error(f"[{correlation_id}] No usable inbound provider: {e}")
        return _error_response(500, "provider misconfigured", e.code, correlation_id)

    return await _ingest(request, provider, pipeline, correlation_id)


@router.post("/inbound/lambda")
async def receive_lambda_email(
    request: Request,
    registry: ProviderRegistry = Depends(get_registry),
    pipeline: IngestionPipeline = Depends(get_pipeline),
):
    """Pre-parsed SES message forwarded by the receipt-rule Lambda."""
    correlation_id = _correlation_id(request)
    try:
        provider = registry.get_provider("ses")
    except ConfigurationError as e:
        logger.error(f"[{correlation_id}] SES provider misconfigured: {e}")
        return _error_response(500, "provider misconfigured", e.code, correlation_id)

    return await _ingest(request, provider, pipeline, correlation_id)

@router.post("/inbound/{provider_name}")
async def receive_inbound_email_for_provider(
    provider_name: str,
    request: Request,
    registry: ProviderRegistry = Depends(get_registry),
    pipeline: IngestionPipeline = Depends(get_pipeline),
):
    """Inbound webhook for an explicitly named provider ("cloudflare", "ses")."""
    correlation_id = _correlation_id(request)
    try:
        provider = registry.get_provider(provider_name.lower())
    except ConfigurationError as e:
        supported = e.details.get("supported_providers")
        if supported:
            return JSONResponse(
                status_code=404,
                content={
                    "success": False,
                    "error": "unknown provider",
                    "code": e.code,
                    "supported_providers": supported,
                    "correlation_id": correlation_id,
                },
                headers={CORRELATION_HEADER: correlation_id},
            )
        logger.error(f"[{correlation_id}] Provider {provider_name!r} misconfigured: {e}")
        return _error_response(500, "provider misconfigured", e.code, correlation_id)

    return await _ingest(request, provider, pipeline, correlation_id)
