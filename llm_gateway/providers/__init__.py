from typing import Dict, Any, Optional
import httpx

from .base import BaseProvider, forward_stream, retry_on_rate_limit
from .openai import OpenAICompatibleProvider
from .google import GoogleProvider
from .registry import ProviderRegistry
from ..core.config_manager import ConfigManager
from ..core.error_handling import ErrorHandler, ErrorContext

PROVIDER_TYPES = {
    "openai": OpenAICompatibleProvider,
    "google": GoogleProvider,
}


def get_provider_instance(
    provider_id: str,
    provider_type: str,
    provider_config: Dict[str, Any],
    client: httpx.AsyncClient,
    timeouts: Optional[Dict[str, float]] = None,
    retry: Optional[Dict[str, Any]] = None,
) -> BaseProvider:
    provider_class = PROVIDER_TYPES.get(provider_type)
    if provider_class is None:
        context = ErrorContext(provider_type=provider_type)
        raise ErrorHandler.handle_provider_not_found(
            provider_id=provider_id,
            context=context
        )
    return provider_class(provider_id, client, provider_config, timeouts=timeouts, retry=retry)


def build_provider_registry(client: httpx.AsyncClient, config_manager: ConfigManager) -> ProviderRegistry:
    """Create a frozen registry with one adapter per entry of providers.yaml."""
    registry = ProviderRegistry()
    for provider_id, provider_config in config_manager.providers.items():
        provider_config = provider_config or {}
        adapter = get_provider_instance(
            provider_id,
            provider_config.get("type", provider_id),
            provider_config,
            client,
            timeouts=config_manager.timeouts,
            retry=config_manager.retry,
        )
        registry.register(provider_id, adapter)
    registry.freeze()
    return registry


__all__ = [
    'BaseProvider',
    'OpenAICompatibleProvider',
    'GoogleProvider',
    'ProviderRegistry',
    'PROVIDER_TYPES',
    'get_provider_instance',
    'build_provider_registry',
    'forward_stream',
    'retry_on_rate_limit',
]
