"""Tink open banking API client.

This module implements the ProviderAdapter protocol for Tink using direct
HTTP requests (httpx).  Tink returns the full set of transactions for a
booked-date range, so a fetched window is complete: a previously seen
transaction missing from it has been removed by the provider.
"""

import logging
from urllib.parse import urlencode

import httpx

from config import settings
from integrations.exceptions import (
    ProviderAPIError,
    ProviderAuthError,
    ProviderConnectionError,
    ProviderDataError,
    classify_http_status,
)
from integrations.parsing_utils import (
    expires_in_to_datetime,
    parse_date,
    scaled_to_decimal,
)
from integrations.provider_protocol import (
    FetchWindow,
    RawAccount,
    RawTransaction,
    TokenSet,
    TransactionBatch,
)

logger = logging.getLogger(__name__)

PROVIDER_NAME = "tink"
DEFAULT_SCOPES = "accounts:read,balances:read,transactions:read"

# Guard against a provider bug returning the same page token forever
_MAX_PAGES = 500


def _parse_retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _parse_amount(amount: dict | None) -> tuple:
    """Return ``(Decimal | None, currency | None)`` from a Tink amount object."""
    if not amount:
        return None, None
    value = amount.get("value") or {}
    return (
        scaled_to_decimal(value.get("unscaledValue"), value.get("scale")),
        amount.get("currencyCode"),
    )


class TinkAdapter:
    """Wrapper around the Tink Data API v2.

    Implements the ProviderAdapter protocol for multi-provider support.
    A short-lived ``httpx.Client`` is opened per request sequence so the
    adapter holds no connection state between syncs and is safe to share
    across worker threads.
    """

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        redirect_uri: str | None = None,
        base_url: str | None = None,
        timeout: float = 30.0,
    ):
        self._client_id = client_id or settings.TINK_CLIENT_ID
        self._client_secret = client_secret or settings.TINK_CLIENT_SECRET
        self._redirect_uri = redirect_uri or settings.TINK_REDIRECT_URI
        self._base_url = (base_url or settings.TINK_API_BASE_URL).rstrip("/")
        self._timeout = timeout

    @property
    def provider_name(self) -> str:
        """Return the provider name for database storage."""
        return PROVIDER_NAME

    def is_configured(self) -> bool:
        """Check if Tink application credentials are configured."""
        return bool(self._client_id) and bool(self._client_secret)

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def get_authorization_url(self, state: str) -> str:
        params = {
            "client_id": self._client_id,
            "redirect_uri": self._redirect_uri,
            "response_type": "code",
            "scope": DEFAULT_SCOPES,
            "state": state,
        }
        return f"{settings.TINK_AUTHORIZE_URL}?{urlencode(params)}"

    def exchange_authorization_code(self, code: str) -> TokenSet:
        """Exchange an authorization code for access and refresh tokens."""
        return self._token_request(
            {"grant_type": "authorization_code", "code": code}
        )

    def refresh_token(self, refresh_token: str) -> TokenSet:
        """Obtain a new token set.  Tink rotates the refresh token."""
        token_set = self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token}
        )
        if token_set.refresh_token is None:
            # Tink may omit the refresh token when it was not rotated
            token_set.refresh_token = refresh_token
        return token_set

    def _token_request(self, form: dict) -> TokenSet:
        data = {
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            **form,
        }
        try:
            payload = self._request("POST", "/api/v1/oauth/token", data=data)
        except ProviderAPIError as exc:
            # invalid_grant comes back as 400 on the token endpoint
            if exc.status_code == 400:
                raise ProviderAuthError(
                    "Tink rejected the grant (HTTP 400)", provider_name=PROVIDER_NAME
                ) from exc
            raise

        access_token = payload.get("access_token")
        if not access_token:
            raise ProviderDataError(
                "Tink token response has no access_token", provider_name=PROVIDER_NAME
            )
        scope = payload.get("scope") or ""
        return TokenSet(
            access_token=access_token,
            refresh_token=payload.get("refresh_token"),
            token_type=payload.get("token_type") or "Bearer",
            expires_at=expires_in_to_datetime(payload.get("expires_in")),
            scopes=[s for s in scope.replace(" ", ",").split(",") if s],
            subject_id=payload.get("id_hint"),
        )

    # ------------------------------------------------------------------
    # Data
    # ------------------------------------------------------------------

    def fetch_accounts(self, access_token: str) -> list[RawAccount]:
        """Fetch all accounts, following ``nextPageToken``."""
        accounts: list[RawAccount] = []
        for item in self._paginate("/data/v2/accounts", "accounts", access_token, {}):
            accounts.append(self._map_account(item))
        logger.info("Tink: %d accounts fetched", len(accounts))
        return accounts

    def fetch_transactions(
        self,
        access_token: str,
        window: FetchWindow,
        delta_token: str | None = None,
    ) -> TransactionBatch:
        """Fetch every transaction booked inside ``window``.

        ``delta_token`` is ignored; Tink is queried by date range.
        """
        params: dict = {
            "bookedDateGte": window.start.date().isoformat(),
            "bookedDateLte": window.end.date().isoformat(),
        }
        if window.account_native_ids:
            params["accountIdIn"] = window.account_native_ids

        transactions: list[RawTransaction] = []
        for item in self._paginate(
            "/data/v2/transactions", "transactions", access_token, params
        ):
            txn = self._map_transaction(item)
            if txn is not None:
                transactions.append(txn)

        logger.info(
            "Tink: %d transactions fetched (%s..%s)",
            len(transactions),
            params["bookedDateGte"],
            params["bookedDateLte"],
        )
        return TransactionBatch(transactions=transactions, is_complete_window=True)

    def _paginate(self, path: str, key: str, access_token: str, params: dict):
        headers = {"Authorization": f"Bearer {access_token}"}
        page_token = None
        for _ in range(_MAX_PAGES):
            page_params = dict(params)
            if page_token:
                page_params["pageToken"] = page_token
            payload = self._request("GET", path, headers=headers, params=page_params)
            items = payload.get(key)
            if items is None:
                raise ProviderDataError(
                    f"Tink response for {path} has no '{key}' field",
                    provider_name=PROVIDER_NAME,
                )
            yield from items
            page_token = payload.get("nextPageToken")
            if not page_token:
                return
        raise ProviderDataError(
            f"Tink pagination for {path} did not terminate", provider_name=PROVIDER_NAME
        )

    def _request(self, method: str, path: str, **kwargs) -> dict:
        """Perform one HTTP call and map failures onto provider exceptions."""
        try:
            with httpx.Client(base_url=self._base_url, timeout=self._timeout) as client:
                response = client.request(method, path, **kwargs)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise classify_http_status(
                status,
                f"Tink API error (HTTP {status}) on {path}",
                provider_name=PROVIDER_NAME,
                retry_after=_parse_retry_after(exc.response),
            ) from exc
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            raise ProviderConnectionError(
                f"Tink connection failed: {exc}", provider_name=PROVIDER_NAME
            ) from exc
        except ValueError as exc:
            raise ProviderDataError(
                f"Tink returned invalid JSON on {path}", provider_name=PROVIDER_NAME
            ) from exc

    # ------------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _map_account(item: dict) -> RawAccount:
        native_id = item.get("id")
        if not native_id:
            raise ProviderDataError("Tink account without id", provider_name=PROVIDER_NAME)

        balances = item.get("balances") or {}
        booked = balances.get("booked") or balances.get("available") or {}
        balance, currency = _parse_amount(booked.get("amount"))

        closed = bool(item.get("closed")) or (
            (item.get("customerSegment") or "").upper() == "CLOSED"
        )
        return RawAccount(
            native_id=native_id,
            display_name=item.get("name") or f"Account {native_id}",
            currency=currency,
            balance=balance,
            status="closed" if closed else "active",
            raw_payload=item,
        )

    @staticmethod
    def _map_transaction(item: dict) -> RawTransaction | None:
        native_id = item.get("id")
        account_id = item.get("accountId")
        if not native_id or not account_id:
            logger.warning("Tink: skipping transaction without id/accountId")
            return None

        amount, currency = _parse_amount(item.get("amount"))
        if amount is None:
            raise ProviderDataError(
                f"Tink transaction {native_id} has no parseable amount",
                provider_name=PROVIDER_NAME,
            )

        dates = item.get("dates") or {}
        descriptions = item.get("descriptions") or {}
        merchant = item.get("merchantInformation") or {}
        categories = (item.get("categories") or {}).get("pfm") or {}
        status = (item.get("status") or "").lower() or None

        return RawTransaction(
            native_id=native_id,
            account_native_id=account_id,
            amount=amount,
            currency=currency,
            booked_date=parse_date(dates.get("booked")),
            value_date=parse_date(dates.get("value")),
            description=descriptions.get("display") or descriptions.get("original"),
            counterparty_name=merchant.get("merchantName"),
            status=status,
            category=categories.get("name"),
            raw_payload=item,
        )
