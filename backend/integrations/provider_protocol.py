"""Provider protocol definitions for multi-provider support.

This module defines the shared intermediate representation that every
banking data provider maps its native responses into, and the adapter
interface the sync pipeline calls.  Adding a provider means writing one
class that satisfies ``ProviderAdapter``; the orchestrator and reconciler
never change.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Protocol


@dataclass
class RawAccount:
    """Normalized account data from any provider."""

    native_id: str  # Provider's ID for the account
    display_name: str
    currency: str | None = None  # ISO 4217 code
    balance: Decimal | None = None
    status: str = "active"  # "active" | "inactive" | "closed"
    raw_payload: dict | None = None  # Verbatim provider response


@dataclass
class RawTransaction:
    """Normalized transaction data from any provider."""

    native_id: str  # Provider's unique ID for this transaction
    account_native_id: str  # Provider's ID of the owning account
    amount: Decimal  # Signed; negative = money out
    currency: str | None = None
    booked_date: date | None = None
    value_date: date | None = None
    description: str | None = None
    counterparty_name: str | None = None
    status: str | None = None  # "booked" | "pending"
    category: str | None = None
    raw_payload: dict | None = None


@dataclass
class TokenSet:
    """OAuth token material returned by a code exchange or refresh."""

    access_token: str
    refresh_token: str | None = None
    token_type: str = "Bearer"
    expires_at: datetime | None = None  # None = does not expire
    scopes: list[str] = field(default_factory=list)
    subject_id: str | None = None  # Provider-side user / item id

    def __repr__(self) -> str:
        return f"TokenSet(token_type={self.token_type!r}, expires_at={self.expires_at!r})"


@dataclass
class FetchWindow:
    """Date range a transaction fetch covers (inclusive on both ends)."""

    start: datetime
    end: datetime
    account_native_ids: list[str] | None = None  # None = all accounts


@dataclass
class TransactionBatch:
    """Result of one ``fetch_transactions`` call.

    ``is_complete_window`` is True when ``transactions`` is the provider's
    full view of the requested window, so a previously seen transaction
    missing from it has been removed.  Delta feeds set it False and report
    deletions explicitly in ``removed_native_ids``.
    """

    transactions: list[RawTransaction] = field(default_factory=list)
    removed_native_ids: list[str] = field(default_factory=list)
    next_delta_token: str | None = None
    is_complete_window: bool = True


class ProviderAdapter(Protocol):
    """Protocol that all provider adapters must implement."""

    @property
    def provider_name(self) -> str:
        """Return the provider name (e.g., 'tink', 'plaid').

        This name is stored on each Connection to select the adapter.
        """
        ...

    def is_configured(self) -> bool:
        """Check if this provider has application credentials configured."""
        ...

    def get_authorization_url(self, state: str) -> str:
        """Return the URL the user visits to authorize access."""
        ...

    def exchange_authorization_code(self, code: str) -> TokenSet:
        """Exchange an authorization code for the initial token set.

        Raises:
            ProviderAuthError: If the code is invalid or expired.
            ProviderError: On any other provider failure.
        """
        ...

    def refresh_token(self, refresh_token: str) -> TokenSet:
        """Obtain a new token set using a refresh token.

        Raises:
            ProviderAuthError: If the refresh token was rejected.
        """
        ...

    def fetch_accounts(self, access_token: str) -> list[RawAccount]:
        """Fetch all accounts visible to the token."""
        ...

    def fetch_transactions(
        self,
        access_token: str,
        window: FetchWindow,
        delta_token: str | None = None,
    ) -> TransactionBatch:
        """Fetch transactions for a window or since a delta token.

        Args:
            access_token: Valid provider access token.
            window: Date range to fetch.  Delta-based providers may ignore it.
            delta_token: Provider-native cursor from the previous sync.

        Returns:
            A TransactionBatch describing the fetched records.
        """
        ...
