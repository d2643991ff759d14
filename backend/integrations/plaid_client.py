"""Plaid API client.

This module implements the ProviderAdapter protocol for Plaid via the
plaid-python SDK.  Transactions come from ``/transactions/sync``, a delta
feed: each call returns what was added, modified, and removed since the
previous cursor, so absence from a batch implies nothing and removals are
explicit.

Plaid access tokens do not expire and there is no refresh token.  An Item
that needs the user to re-authenticate (``ITEM_LOGIN_REQUIRED``) surfaces
as an auth error the credential vault cannot repair.
"""

import json
import logging

from plaid import ApiException, Environment
from plaid.api.plaid_api import PlaidApi
from plaid.api_client import ApiClient
from plaid.configuration import Configuration
from plaid.model.accounts_get_request import AccountsGetRequest
from plaid.model.country_code import CountryCode
from plaid.model.item_public_token_exchange_request import ItemPublicTokenExchangeRequest
from plaid.model.link_token_create_hosted_link import LinkTokenCreateHostedLink
from plaid.model.link_token_create_request import LinkTokenCreateRequest
from plaid.model.link_token_create_request_user import LinkTokenCreateRequestUser
from plaid.model.products import Products
from plaid.model.transactions_sync_request import TransactionsSyncRequest

from config import settings
from integrations.exceptions import (
    ProviderAPIError,
    ProviderAuthError,
    ProviderConnectionError,
    ProviderDataError,
    ProviderError,
    ProviderRateLimitedError,
)
from integrations.parsing_utils import parse_date, to_decimal
from integrations.provider_protocol import (
    FetchWindow,
    RawAccount,
    RawTransaction,
    TokenSet,
    TransactionBatch,
)

logger = logging.getLogger(__name__)

PROVIDER_NAME = "plaid"

# Map PLAID_ENVIRONMENT setting to SDK host URLs.
_ENVIRONMENT_MAP: dict[str, str] = {
    "sandbox": Environment.Sandbox,
    "production": Environment.Production,
}

_AUTH_ERROR_CODES = frozenset({
    "INVALID_ACCESS_TOKEN",
    "ITEM_LOGIN_REQUIRED",
    "ACCESS_NOT_GRANTED",
    "INVALID_PUBLIC_TOKEN",
})

# Plaid asks clients to restart pagination from the original cursor
_MUTATION_DURING_PAGINATION = "TRANSACTIONS_SYNC_MUTATION_DURING_PAGINATION"
_MAX_SYNC_RESTARTS = 2
_SYNC_PAGE_SIZE = 500


def _to_payload(obj) -> dict:
    """Convert an SDK model (or dict) to a JSON-serialisable dict."""
    data = obj.to_dict() if hasattr(obj, "to_dict") else dict(obj)
    return json.loads(json.dumps(data, default=str))


class PlaidAdapter:
    """Wrapper around the Plaid API.

    Implements the ProviderAdapter protocol for multi-provider support.
    """

    def __init__(
        self,
        client_id: str | None = None,
        secret: str | None = None,
        environment: str | None = None,
    ):
        self._client_id = client_id or settings.PLAID_CLIENT_ID
        self._secret = secret or settings.PLAID_SECRET
        self._environment = environment or settings.PLAID_ENVIRONMENT

        # Lazily created on first use
        self._api: PlaidApi | None = None

    def _get_api(self) -> PlaidApi:
        """Return (and cache) a PlaidApi instance."""
        if self._api is None:
            env_key = self._environment.lower()
            host = _ENVIRONMENT_MAP.get(env_key)
            if host is None:
                logger.warning(
                    "Unknown PLAID_ENVIRONMENT=%r, falling back to sandbox. "
                    "Valid values: sandbox, production",
                    self._environment,
                )
                host = Environment.Sandbox
            configuration = Configuration(
                host=host,
                api_key={
                    "clientId": self._client_id,
                    "secret": self._secret,
                },
            )
            self._api = PlaidApi(ApiClient(configuration))
        return self._api

    @property
    def provider_name(self) -> str:
        """Return the provider name for database storage."""
        return PROVIDER_NAME

    def is_configured(self) -> bool:
        """Check if Plaid credentials are configured."""
        return bool(self._client_id) and bool(self._secret)

    # ------------------------------------------------------------------
    # Link & token exchange
    # ------------------------------------------------------------------

    def get_authorization_url(self, state: str) -> str:
        """Create a Hosted Link session and return its URL.

        ``state`` is used as the Plaid ``client_user_id`` so the callback
        can be matched to the pending connection.
        """
        request = LinkTokenCreateRequest(
            user=LinkTokenCreateRequestUser(client_user_id=state),
            client_name="Treasury Sync",
            products=[Products("transactions")],
            country_codes=[CountryCode("US")],
            language="en",
            hosted_link=LinkTokenCreateHostedLink(),
        )
        response = self._call(self._get_api().link_token_create, request)
        url = response.get("hosted_link_url")
        if not url:
            raise ProviderDataError(
                "Plaid link_token_create returned no hosted_link_url",
                provider_name=PROVIDER_NAME,
            )
        return url

    def exchange_authorization_code(self, code: str) -> TokenSet:
        """Exchange a Plaid Link public_token for a permanent access_token."""
        request = ItemPublicTokenExchangeRequest(public_token=code)
        response = self._call(self._get_api().item_public_token_exchange, request)
        return TokenSet(
            access_token=response["access_token"],
            refresh_token=None,
            expires_at=None,
            scopes=["transactions"],
            subject_id=response["item_id"],
        )

    def refresh_token(self, refresh_token: str) -> TokenSet:
        """Plaid has no refresh flow; the Item must be re-linked."""
        raise ProviderAuthError(
            "Plaid access tokens cannot be refreshed; re-link the Item",
            provider_name=PROVIDER_NAME,
        )

    # ------------------------------------------------------------------
    # Data
    # ------------------------------------------------------------------

    def fetch_accounts(self, access_token: str) -> list[RawAccount]:
        response = self._call(
            self._get_api().accounts_get, AccountsGetRequest(access_token=access_token)
        )
        accounts = [self._map_account(acct) for acct in response.get("accounts", []) or []]
        logger.info("Plaid: %d accounts fetched", len(accounts))
        return accounts

    def fetch_transactions(
        self,
        access_token: str,
        window: FetchWindow,
        delta_token: str | None = None,
    ) -> TransactionBatch:
        """Drain ``/transactions/sync`` from ``delta_token`` until ``has_more`` is False.

        The window is not sent to Plaid; the first sync (no delta token)
        returns the Item's full available history.
        """
        restarts = 0
        while True:
            try:
                return self._drain_sync(access_token, delta_token)
            except ProviderAPIError as exc:
                if (
                    exc.error_code != _MUTATION_DURING_PAGINATION
                    or restarts >= _MAX_SYNC_RESTARTS
                ):
                    raise
                restarts += 1
                logger.warning(
                    "Plaid: data changed during pagination, restarting (attempt %d)",
                    restarts,
                )

    def _drain_sync(self, access_token: str, cursor: str | None) -> TransactionBatch:
        api = self._get_api()
        transactions: dict[str, RawTransaction] = {}
        removed: list[str] = []

        has_more = True
        while has_more:
            kwargs = {"access_token": access_token, "count": _SYNC_PAGE_SIZE}
            if cursor:
                kwargs["cursor"] = cursor
            response = self._call(api.transactions_sync, TransactionsSyncRequest(**kwargs))

            for txn in list(response.get("added", []) or []) + list(
                response.get("modified", []) or []
            ):
                mapped = self._map_transaction(txn)
                if mapped is not None:
                    transactions[mapped.native_id] = mapped
            for gone in response.get("removed", []) or []:
                native_id = gone.get("transaction_id")
                if native_id:
                    transactions.pop(native_id, None)
                    removed.append(native_id)

            cursor = response.get("next_cursor")
            has_more = bool(response.get("has_more"))

        logger.info(
            "Plaid: %d transactions changed, %d removed",
            len(transactions),
            len(removed),
        )
        return TransactionBatch(
            transactions=list(transactions.values()),
            removed_native_ids=removed,
            next_delta_token=cursor,
            is_complete_window=False,
        )

    # ------------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _map_account(acct) -> RawAccount:
        balances = acct.get("balances") or {}
        return RawAccount(
            native_id=acct["account_id"],
            display_name=acct.get("name") or acct.get("official_name") or "Plaid Account",
            currency=(balances.get("iso_currency_code") or "USD").upper(),
            balance=to_decimal(balances.get("current")),
            status="active",
            raw_payload=_to_payload(acct),
        )

    @staticmethod
    def _map_transaction(txn) -> RawTransaction | None:
        """Map a Plaid transaction.

        Plaid sign convention: positive amount = money out.  Ours is the
        opposite, so the sign is flipped.
        """
        native_id = txn.get("transaction_id")
        if not native_id:
            return None
        raw_amount = to_decimal(txn.get("amount"))
        if raw_amount is None:
            raise ProviderDataError(
                f"Plaid transaction {native_id} has no amount",
                provider_name=PROVIDER_NAME,
            )

        category = None
        pfc = txn.get("personal_finance_category")
        if pfc:
            category = pfc.get("primary")

        return RawTransaction(
            native_id=native_id,
            account_native_id=txn.get("account_id", ""),
            amount=-raw_amount,
            currency=(txn.get("iso_currency_code") or "USD").upper(),
            booked_date=parse_date(txn.get("date")),
            value_date=parse_date(txn.get("authorized_date")),
            description=txn.get("name"),
            counterparty_name=txn.get("merchant_name"),
            status="pending" if txn.get("pending") else "booked",
            category=category,
            raw_payload=_to_payload(txn),
        )

    # ------------------------------------------------------------------
    # Error mapping
    # ------------------------------------------------------------------

    def _call(self, fn, request):
        try:
            return fn(request)
        except ApiException as exc:
            raise self._map_plaid_error(exc) from exc
        except ProviderError:
            raise
        except OSError as exc:
            raise ProviderConnectionError(
                f"Plaid connection failed: {exc}", provider_name=PROVIDER_NAME
            ) from exc

    @staticmethod
    def _map_plaid_error(exc: ApiException) -> ProviderError:
        """Map a Plaid ApiException to the provider exception hierarchy."""
        status = exc.status or 0
        message = str(exc)

        error_code = ""
        try:
            body = json.loads(exc.body) if exc.body else {}
            error_code = body.get("error_code", "") or ""
            error_message = body.get("error_message", "")
            if error_message:
                message = f"Plaid error ({error_code}): {error_message}"
        except (TypeError, ValueError):
            pass

        if status in (401, 403) or error_code in _AUTH_ERROR_CODES:
            return ProviderAuthError(message, provider_name=PROVIDER_NAME)
        if status == 429 or error_code == "RATE_LIMIT_EXCEEDED":
            return ProviderRateLimitedError(message, provider_name=PROVIDER_NAME)
        return ProviderAPIError(
            message,
            provider_name=PROVIDER_NAME,
            status_code=status,
            error_code=error_code,
        )
