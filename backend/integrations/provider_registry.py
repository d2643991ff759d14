"""Provider registry for resolving adapters by provider name.

The registry is responsible for:
- Initializing and tracking available provider adapters
- Providing access to a specific adapter by name
- Listing all configured providers
"""

import importlib
import logging

from integrations.provider_protocol import ProviderAdapter

logger = logging.getLogger(__name__)

# Each tuple is (provider_name, module_path, class_name).
# Adding a new provider only requires appending one entry here.
PROVIDER_DEFINITIONS: list[tuple[str, str, str]] = [
    ("tink", "integrations.tink_client", "TinkAdapter"),
    ("plaid", "integrations.plaid_client", "PlaidAdapter"),
]

ALL_PROVIDER_NAMES: list[str] = [name for name, _, _ in PROVIDER_DEFINITIONS]


class ProviderRegistry:
    """Registry of provider adapters keyed by provider name.

    Example:
        registry = ProviderRegistry()
        registry.initialize_default_providers()
        adapter = registry.get_provider("tink")
        accounts = adapter.fetch_accounts(token)
    """

    def __init__(self):
        self._providers: dict[str, ProviderAdapter] = {}

    def register_provider(self, provider: ProviderAdapter) -> None:
        """Register a provider adapter under its ``provider_name``."""
        self._providers[provider.provider_name] = provider

    def get_provider(self, name: str) -> ProviderAdapter:
        """Get a provider adapter by name.

        Raises:
            ValueError: If the provider is not registered/configured.
        """
        if name not in self._providers:
            raise ValueError(f"Provider '{name}' is not configured")
        return self._providers[name]

    def list_providers(self) -> list[str]:
        return list(self._providers.keys())

    def is_configured(self, name: str) -> bool:
        return name in self._providers

    def initialize_default_providers(self) -> None:
        """Auto-detect and initialize all configured providers.

        Each import is wrapped in try/except so a missing SDK for one
        provider never prevents the rest from initializing.
        """
        for name, module_path, class_name in PROVIDER_DEFINITIONS:
            try:
                module = importlib.import_module(module_path)
                cls = getattr(module, class_name)
                self._try_init_provider(name, cls)
            except ImportError:
                logger.debug("Provider skipped (not installed): %s", name)

        names = self.list_providers()
        if names:
            logger.info("Active providers: %s", ", ".join(names))
        else:
            logger.warning("No providers configured")

    def _try_init_provider(self, name: str, cls: type) -> None:
        try:
            instance = cls()
            if instance.is_configured():
                self.register_provider(instance)
                logger.info("Provider registered: %s", name)
            else:
                logger.debug("Provider skipped (not configured): %s", name)
        except Exception:
            logger.warning("Provider failed to initialize: %s", name, exc_info=True)


def get_provider_registry() -> ProviderRegistry:
    """Create a registry initialized with every configured provider."""
    registry = ProviderRegistry()
    registry.initialize_default_providers()
    return registry
