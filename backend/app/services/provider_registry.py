"""
Provider registry: builds, caches and health-checks inbound adapters.

One registry is built at application startup (app.main) and stored on
app.state; tests build their own and call clear() between cases.

Adapter instances are cached by (provider name, configuration fingerprint).
The fingerprint is a SHA-256 over the effective configuration including the
secret, so two adapters built with different secrets are never treated as
interchangeable. The fingerprint itself is never logged.

Fallback is a fixed pairing between the two supported providers
(cloudflare <-> ses). It is not a priority list and does not generalize to a
third provider.
"""

import hashlib
import json
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from app.config import InboundSettings, get_inbound_settings
from app.errors import ConfigurationError
from app.models.provider import ProviderHealthCheck, ProviderStatus, ProviderSummary
from app.services.inbound_email_adapter import InboundEmailProvider, generate_correlation_id
from app.services.providers.cloudflare import CloudflareAdapter
from app.services.providers.ses import SESAdapter

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS: tuple[str, ...] = ("cloudflare", "ses")

_FALLBACK_PAIRS = {
    "cloudflare": "ses",
    "ses": "cloudflare",
}

HEALTH_CHECK_TTL = timedelta(seconds=60)


class ProviderRegistry:
    """Explicit, injectable replacement for a process-wide adapter cache."""

    def __init__(self, settings: Optional[InboundSettings] = None):
        self.settings = settings or get_inbound_settings()
        self._instances: dict[tuple[str, str], InboundEmailProvider] = {}
        self._health_cache: dict[str, ProviderHealthCheck] = {}
        self._last_timestamp: Optional[datetime] = None
        self._active = self.settings.default_provider
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def _ensure_supported(self, name: str) -> None:
        if name not in SUPPORTED_PROVIDERS:
            raise ConfigurationError(name, {
                "message": f"Unsupported provider: {name!r}. Valid providers: {list(SUPPORTED_PROVIDERS)}",
                "supported_providers": list(SUPPORTED_PROVIDERS),
            })

    def _effective_config(self, name: str, overrides: dict[str, Any]) -> dict[str, Any]:
        config: dict[str, Any] = {
            "timeout_ms": overrides.get("timeout_ms") or self.settings.timeout_ms,
            "environment": self.settings.environment,
        }
        if name == "cloudflare":
            config["webhook_secret"] = overrides.get("webhook_secret") or self.settings.cloudflare_secret
        elif name == "ses":
            verify = overrides.get("verify_signature")
            config["verify_signature"] = self.settings.ses_verify_signature if verify is None else verify
            config["shared_secret"] = overrides.get("shared_secret") or self.settings.lambda_shared_secret
        return config

    @staticmethod
    def _fingerprint(config: dict[str, Any]) -> str:
        encoded = json.dumps(config, sort_keys=True, default=str).encode()
        return hashlib.sha256(encoded).hexdigest()

    def create_provider(self, name: str, **overrides: Any) -> InboundEmailProvider:
        """
        Return the adapter for `name`, building it on first use.

        Accepted overrides: webhook_secret, timeout_ms, verify_signature, shared_secret.
        """
        name = (name or "").strip().lower()
        self._ensure_supported(name)

        config = self._effective_config(name, overrides)
        key = (name, self._fingerprint(config))

        with self._lock:
            cached = self._instances.get(key)
            if cached is not None:
                return cached

            try:
                if name == "cloudflare":
                    provider: InboundEmailProvider = CloudflareAdapter(**config)
                else:
                    provider = SESAdapter(**config)
            except ConfigurationError:
                raise
            except Exception as exc:
                raise ConfigurationError(name, {
                    "message": "Failed to create provider instance",
                    "error": str(exc),
                })

            self._instances[key] = provider
            logger.info(f"Created inbound provider adapter {provider!r}")
            return provider

    def validate_provider_configuration(self, name: str) -> None:
        self._ensure_supported(name)

        if not self.settings.is_production:
            return

        if name == "cloudflare" and not self.settings.cloudflare_secret:
            raise ConfigurationError(name, {
                "message": "CLOUDFLARE_EMAIL_SECRET is required in production",
                "required_env_vars": ["CLOUDFLARE_EMAIL_SECRET"],
            })

    def is_provider_configured(self, name: str) -> bool:
        if name not in SUPPORTED_PROVIDERS:
            return False
        if name == "cloudflare":
            return bool(self.settings.cloudflare_secret)
        # SES authenticates with AWS certificates, no shared secret needed
        return True

    def get_provider(self, name: str) -> InboundEmailProvider:
        self.validate_provider_configuration(name)
        return self.create_provider(name)

    def get_default_provider(self) -> InboundEmailProvider:
        return self.get_provider(self.settings.default_provider)

    # ------------------------------------------------------------------
    # Fallback and switching
    # ------------------------------------------------------------------

    def get_fallback_provider(self, name: str) -> Optional[str]:
        self._ensure_supported(name)
        fallback = _FALLBACK_PAIRS[name]
        return fallback if self.is_provider_configured(fallback) else None

    @property
    def active_provider_name(self) -> str:
        return self._active

    def switch_provider(self, name: str) -> None:
        name = (name or "").strip().lower()
        self.validate_provider_configuration(name)
        logger.info(f"Switching active inbound provider {self._active!r} -> {name!r}")
        self._active = name

    async def get_active_provider(self) -> InboundEmailProvider:
        """
        Return the active adapter, or its fallback when the active one is
        unhealthy and the fallback is healthy. An unhealthy active provider is
        still returned when no healthy fallback exists so the request fails
        with that provider's own error.
        """
        self._ensure_supported(self._active)

        current = await self.perform_health_check(self._active)
        if current.healthy:
            return self.create_provider(self._active)

        fallback = self.get_fallback_provider(self._active)
        if fallback:
            fallback_health = await self.perform_health_check(fallback)
            if fallback_health.healthy:
                logger.warning(
                    f"Inbound provider {self._active!r} unhealthy ({current.error}); "
                    f"using fallback {fallback!r}"
                )
                return self.create_provider(fallback)

        return self.create_provider(self._active)

    async def get_status(self) -> ProviderStatus:
        current = await self.perform_health_check(self._active)
        fallback = (
            self.get_fallback_provider(self._active)
            if self._active in SUPPORTED_PROVIDERS
            else None
        )
        fallback_healthy: Optional[bool] = None
        if fallback:
            fallback_healthy = (await self.perform_health_check(fallback)).healthy
        return ProviderStatus(
            current=self._active,
            fallback=fallback,
            current_healthy=current.healthy,
            fallback_healthy=fallback_healthy,
        )

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def _next_timestamp(self) -> datetime:
        now = datetime.now(timezone.utc)
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now

    def _is_fresh(self, check: ProviderHealthCheck) -> bool:
        return datetime.now(timezone.utc) - check.last_checked < HEALTH_CHECK_TTL

    async def perform_health_check(self, name: str, use_cache: bool = True) -> ProviderHealthCheck:
        """
        Timestamped health result for one provider. Never raises.

        Cached results are reused for HEALTH_CHECK_TTL; use_cache=False always
        produces a new result with a strictly later timestamp.
        """
        correlation_id = generate_correlation_id()

        if use_cache:
            cached = self._health_cache.get(name)
            if cached is not None and self._is_fresh(cached):
                return cached

        try:
            self.validate_provider_configuration(name)
        except ConfigurationError as exc:
            result = ProviderHealthCheck(
                provider=name,
                healthy=False,
                last_checked=self._next_timestamp(),
                error=exc.message,
                details={"correlation_id": correlation_id, "configuration_valid": False},
            )
            self._health_cache[name] = result
            return result

        try:
            adapter_health = await self.create_provider(name).health_check()
            result = ProviderHealthCheck(
                provider=name,
                healthy=adapter_health.healthy,
                last_checked=self._next_timestamp(),
                response_time_ms=adapter_health.response_time_ms,
                error=adapter_health.error,
                details={
                    "correlation_id": correlation_id,
                    "configuration_valid": True,
                    **adapter_health.details,
                },
            )
        except Exception as exc:
            logger.error(f"Health check for provider {name!r} failed unexpectedly: {exc}")
            result = ProviderHealthCheck(
                provider=name,
                healthy=False,
                last_checked=self._next_timestamp(),
                error=str(exc),
                details={"correlation_id": correlation_id, "unexpected_error": True},
            )

        self._health_cache[name] = result
        return result

    async def perform_all_health_checks(self, use_cache: bool = True) -> dict[str, ProviderHealthCheck]:
        return {
            name: await self.perform_health_check(name, use_cache=use_cache)
            for name in SUPPORTED_PROVIDERS
        }

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def list_providers(self) -> list[ProviderSummary]:
        return [
            ProviderSummary(
                name=name,
                configured=self.is_provider_configured(name),
                is_default=name == self.settings.default_provider,
                timeout_ms=self.settings.timeout_ms,
            )
            for name in SUPPORTED_PROVIDERS
        ]

    def clear(self) -> None:
        with self._lock:
            self._instances.clear()
            self._health_cache.clear()
            self._last_timestamp = None
