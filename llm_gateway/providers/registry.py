from typing import Dict, List

from .base import BaseProvider
from ..core.error_handling import ErrorHandler, ErrorContext
from ..core.logging import logger


class ProviderRegistry:
    """
    Maps provider ids to adapter instances.

    Filled once at startup and then frozen; lookups after that need no
    locking.
    """

    def __init__(self):
        self._providers: Dict[str, BaseProvider] = {}
        self._frozen = False

    @property
    def is_frozen(self) -> bool:
        return self._frozen

    def register(self, provider_id: str, adapter: BaseProvider) -> None:
        if self._frozen:
            raise RuntimeError(f"Provider registry is frozen, cannot register '{provider_id}'")
        if provider_id in self._providers:
            logger.warning(f"Provider '{provider_id}' registered twice, replacing previous adapter")
        self._providers[provider_id] = adapter
        logger.info(f"Registered provider '{provider_id}'", extra={
            "provider_id": provider_id,
            "provider_type": adapter.provider_type
        })

    def freeze(self) -> None:
        self._frozen = True

    def resolve(self, provider_id: str) -> BaseProvider:
        adapter = self._providers.get(provider_id)
        if adapter is None:
            raise ErrorHandler.handle_provider_not_found(provider_id, ErrorContext())
        return adapter

    def provider_ids(self) -> List[str]:
        return list(self._providers)

    def __contains__(self, provider_id: str) -> bool:
        return provider_id in self._providers

    def __len__(self) -> int:
        return len(self._providers)
