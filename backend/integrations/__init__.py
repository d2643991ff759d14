"""External API integrations.

This package contains:
- Provider protocol: Common interface for bank aggregation adapters
- Provider registry: Manages the configured adapters
- Tink client: Window-based account and transaction fetches
- Plaid client: Delta-token transaction sync
"""

from integrations.provider_protocol import (
    FetchWindow,
    ProviderAdapter,
    RawAccount,
    RawTransaction,
    TokenSet,
    TransactionBatch,
)
from integrations.provider_registry import ProviderRegistry, get_provider_registry

__all__ = [
    "FetchWindow",
    "ProviderAdapter",
    "ProviderRegistry",
    "RawAccount",
    "RawTransaction",
    "TokenSet",
    "TransactionBatch",
    "get_provider_registry",
]
