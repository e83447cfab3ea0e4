"""
Provider registry tests: instance caching, fallback pairing, health-check
caching, provider listing and unknown-provider errors.
"""

import pytest
from unittest.mock import AsyncMock, patch

from app.config import InboundSettings
from app.errors import ConfigurationError
from app.models.provider import AdapterHealth
from app.services.provider_registry import SUPPORTED_PROVIDERS, ProviderRegistry
from app.services.providers.cloudflare import CloudflareAdapter
from app.services.providers.ses import SESAdapter


def _registry(**overrides) -> ProviderRegistry:
    settings = {
        "environment": "test",
        "default_provider": "cloudflare",
        "cloudflare_secret": "secret-one",
        "ses_verify_signature": False,
        "timeout_ms": 5000,
    }
    settings.update(overrides)
    return ProviderRegistry(InboundSettings(**settings))


class TestCreateProvider:

    def test_supported_providers(self):
        assert list(SUPPORTED_PROVIDERS) == ["cloudflare", "ses"]

    def test_builds_the_right_adapter(self, registry):
        assert isinstance(registry.create_provider("cloudflare"), CloudflareAdapter)
        assert isinstance(registry.create_provider("ses"), SESAdapter)

    def test_ses_gets_the_lambda_shared_secret(self):
        registry = _registry(lambda_shared_secret="lambda-one")
        assert registry.create_provider("ses").shared_secret == "lambda-one"

    def test_lambda_secret_override_builds_new_ses_instance(self):
        registry = _registry(lambda_shared_secret="lambda-one")
        overridden = registry.create_provider("ses", shared_secret="lambda-two")

        assert overridden is not registry.create_provider("ses")
        assert overridden.shared_secret == "lambda-two"

    def test_same_configuration_returns_cached_instance(self, registry):
        assert registry.create_provider("cloudflare") is registry.create_provider("cloudflare")

    def test_different_secret_returns_different_instance(self, registry):
        first = registry.create_provider("cloudflare", webhook_secret="secret-one")
        second = registry.create_provider("cloudflare", webhook_secret="secret-two")
        assert first is not second
        assert first.webhook_secret == "secret-one"
        assert second.webhook_secret == "secret-two"

    def test_name_is_case_insensitive(self, registry):
        assert registry.create_provider("Cloudflare") is registry.create_provider("cloudflare")

    def test_unknown_provider_lists_valid_names(self, registry):
        with pytest.raises(ConfigurationError) as exc_info:
            registry.create_provider("mailgun")
        assert exc_info.value.details["supported_providers"] == ["cloudflare", "ses"]
        assert "cloudflare" in exc_info.value.message

    def test_clear_drops_cached_instances(self, registry):
        first = registry.create_provider("ses")
        registry.clear()
        assert registry.create_provider("ses") is not first

    def test_default_provider(self):
        assert _registry(default_provider="ses").get_default_provider().name == "ses"

    def test_production_requires_cloudflare_secret(self):
        registry = _registry(environment="production", cloudflare_secret=None)
        with pytest.raises(ConfigurationError):
            registry.get_provider("cloudflare")
        # SES has no shared secret to configure
        assert registry.get_provider("ses").name == "ses"


class TestFallback:

    def test_fixed_pairing(self, registry):
        assert registry.get_fallback_provider("cloudflare") == "ses"
        assert registry.get_fallback_provider("ses") == "cloudflare"

    def test_no_fallback_when_partner_unconfigured(self):
        registry = _registry(cloudflare_secret=None)
        assert registry.get_fallback_provider("ses") is None
        assert registry.get_fallback_provider("cloudflare") == "ses"

    def test_unknown_provider(self, registry):
        with pytest.raises(ConfigurationError):
            registry.get_fallback_provider("postmark")

    @pytest.mark.asyncio
    async def test_active_provider_falls_back_when_unhealthy(self):
        registry = _registry(cloudflare_secret=None)
        # Cloudflare without a secret is unhealthy; its partner (ses) is fine
        provider = await registry.get_active_provider()
        assert provider.name == "ses"

    @pytest.mark.asyncio
    async def test_active_provider_when_healthy(self, registry):
        provider = await registry.get_active_provider()
        assert provider.name == "cloudflare"

    @pytest.mark.asyncio
    async def test_switch_provider(self, registry):
        registry.switch_provider("ses")
        assert registry.active_provider_name == "ses"
        assert (await registry.get_active_provider()).name == "ses"

    def test_switch_to_unknown_provider_rejected(self, registry):
        with pytest.raises(ConfigurationError):
            registry.switch_provider("sendgrid")
        assert registry.active_provider_name == "cloudflare"

    @pytest.mark.asyncio
    async def test_status(self, registry):
        status = await registry.get_status()
        assert status.current == "cloudflare"
        assert status.fallback == "ses"
        assert status.current_healthy is True
        assert status.fallback_healthy is True


class TestHealthChecks:

    @pytest.mark.asyncio
    async def test_cached_result_keeps_timestamp(self, registry):
        first = await registry.perform_health_check("cloudflare")
        second = await registry.perform_health_check("cloudflare", use_cache=True)
        assert second.last_checked == first.last_checked

    @pytest.mark.asyncio
    async def test_bypassing_cache_gives_later_timestamp(self, registry):
        first = await registry.perform_health_check("cloudflare")
        second = await registry.perform_health_check("cloudflare", use_cache=False)
        third = await registry.perform_health_check("cloudflare", use_cache=False)
        assert second.last_checked > first.last_checked
        assert third.last_checked > second.last_checked

    @pytest.mark.asyncio
    async def test_unknown_provider_reports_unhealthy(self, registry):
        result = await registry.perform_health_check("mailgun")
        assert result.healthy is False
        assert "mailgun" in result.error

    @pytest.mark.asyncio
    async def test_adapter_failure_is_captured(self, registry):
        with patch.object(CloudflareAdapter, "health_check", AsyncMock(side_effect=RuntimeError("boom"))):
            result = await registry.perform_health_check("cloudflare", use_cache=False)
        assert result.healthy is False
        assert result.error == "boom"

    @pytest.mark.asyncio
    async def test_result_includes_adapter_details(self, registry):
        healthy = AdapterHealth(healthy=True, response_time_ms=1.5, details={"has_secret": True})
        with patch.object(CloudflareAdapter, "health_check", AsyncMock(return_value=healthy)):
            result = await registry.perform_health_check("cloudflare", use_cache=False)
        assert result.healthy is True
        assert result.provider == "cloudflare"
        assert result.details["has_secret"] is True
        assert result.details["configuration_valid"] is True

    @pytest.mark.asyncio
    async def test_all_health_checks(self, registry):
        results = await registry.perform_all_health_checks()
        assert set(results) == {"cloudflare", "ses"}
        assert all(r.healthy for r in results.values())


def test_list_providers(registry):
    summaries = {p.name: p for p in registry.list_providers()}
    assert set(summaries) == {"cloudflare", "ses"}
    assert summaries["cloudflare"].is_default is True
    assert summaries["ses"].is_default is False
    assert summaries["cloudflare"].configured is True
    assert summaries["ses"].configured is True
    assert summaries["cloudflare"].timeout_ms == 5000


def test_list_providers_reports_unconfigured_cloudflare():
    summaries = {p.name: p for p in _registry(cloudflare_secret=None).list_providers()}
    assert summaries["cloudflare"].configured is False
