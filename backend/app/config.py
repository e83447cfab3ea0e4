"""
Runtime configuration for inbound providers and rate limiting.

Everything is read from the environment at call time (not import time) so
tests can patch os.environ and rebuild the registry without reloading
modules.

Environment variables
---------------------
APP_ENV                      development | test | production (default: development)
INBOUND_PROVIDER             Default provider name (default: "cloudflare").
CLOUDFLARE_EMAIL_SECRET      HMAC secret shared with the Cloudflare email worker.
SES_VERIFY_SIGNATURE         "false" disables SNS signature checks (default: true).
SES_LAMBDA_SHARED_SECRET     Secret the SES Lambda sends in x-shared-secret.
PROVIDER_TIMEOUT_MS          Per-adapter verify/parse budget (default: 30000).
RATE_LIMIT_PER_ORG_PER_HOUR  Max inbound emails per org per window (default: 100).
RATE_LIMIT_WINDOW_MINUTES    Rate-limit window length, 1-60 (default: 60). Windows
                             are aligned to the hour, so values that do not
                             divide 60 leave a short last window.
"""

import os
from typing import Optional

from pydantic import BaseModel, field_validator

DEFAULT_PROVIDER = "cloudflare"
DEFAULT_TIMEOUT_MS = 30000
MAX_TIMEOUT_MS = 60000


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() not in ("0", "false", "no", "off")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


class InboundSettings(BaseModel):
    """Provider configuration snapshot."""

    environment: str = "development"
    default_provider: str = DEFAULT_PROVIDER
    cloudflare_secret: Optional[str] = None
    ses_verify_signature: bool = True
    lambda_shared_secret: Optional[str] = None
    timeout_ms: int = DEFAULT_TIMEOUT_MS

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        return self.environment in ("development", "test")


class RateLimitSettings(BaseModel):
    per_org_per_window: int = 100
    window_minutes: int = 60

    @field_validator("window_minutes")
    @classmethod
    def _window_fits_in_an_hour(cls, value: int) -> int:
        if not 1 <= value <= 60:
            raise ValueError(f"window_minutes must be between 1 and 60, got {value}")
        return value


def get_inbound_settings() -> InboundSettings:
    return InboundSettings(
        environment=os.getenv("APP_ENV", "development").strip().lower(),
        default_provider=os.getenv("INBOUND_PROVIDER", DEFAULT_PROVIDER).strip().lower(),
        cloudflare_secret=os.getenv("CLOUDFLARE_EMAIL_SECRET") or None,
        ses_verify_signature=_env_bool("SES_VERIFY_SIGNATURE", True),
        lambda_shared_secret=os.getenv("SES_LAMBDA_SHARED_SECRET") or None,
        timeout_ms=_env_int("PROVIDER_TIMEOUT_MS", DEFAULT_TIMEOUT_MS),
    )


def get_rate_limit_settings() -> RateLimitSettings:
    return RateLimitSettings(
        per_org_per_window=_env_int("RATE_LIMIT_PER_ORG_PER_HOUR", 100),
        window_minutes=_env_int("RATE_LIMIT_WINDOW_MINUTES", 60),
    )
