from __future__ import annotations

from typing import Any

from metahub.config.settings import Settings
from metahub.persistence.models import AIReplySettings, ProviderType
from metahub.providers.anthropic_provider import AnthropicProvider
from metahub.providers.base import ServiceProvider
from metahub.providers.openai_provider import OpenAIProvider


_PROVIDER_MAP: dict[ProviderType, type[ServiceProvider]] = {
    ProviderType.OpenAI: OpenAIProvider,
    ProviderType.Anthropic: AnthropicProvider,
}


def build_provider(provider_type: ProviderType, name: str, config: dict[str, Any]) -> ServiceProvider:
    provider_cls = _PROVIDER_MAP[provider_type]
    provider = provider_cls(name=name, config=config)
    provider.validate_config()
    return provider


def build_reply_provider(ai_settings: AIReplySettings, settings: Settings) -> ServiceProvider:
    """Provider for a workspace's auto-reply settings, keyed from the process env."""
    provider_type = ProviderType(ai_settings.provider_type)
    api_key = settings.openai_api_key if provider_type == ProviderType.OpenAI else settings.anthropic_api_key
    config = {
        "api_key": api_key or "",
        "default_model": ai_settings.model,
        "timeout": settings.ai_provider_timeout_seconds,
    }
    return build_provider(provider_type, name=provider_type.value.lower(), config=config)


def list_supported_provider_types() -> list[str]:
    return [item.value for item in ProviderType]
