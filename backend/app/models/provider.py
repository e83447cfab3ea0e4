"""
Provider status models returned by the registry and the health endpoints.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel


class AdapterHealth(BaseModel):
    """Result of an adapter's own cheap self-test."""

    healthy: bool
    response_time_ms: float = 0.0
    error: Optional[str] = None
    details: dict[str, Any] = {}


class ProviderHealthCheck(AdapterHealth):
    """Registry-level health result, timestamped for caching."""

    provider: str
    last_checked: datetime


class ProviderSummary(BaseModel):
    name: str
    configured: bool
    is_default: bool
    timeout_ms: int


class ProviderStatus(BaseModel):
    current: str
    fallback: Optional[str] = None
    current_healthy: bool
    fallback_healthy: Optional[bool] = None
