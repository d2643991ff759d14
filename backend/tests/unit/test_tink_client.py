"""Unit tests for TinkAdapter provider protocol implementation."""

from datetime import date, datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from integrations.exceptions import (
    ProviderAPIError,
    ProviderAuthError,
    ProviderConnectionError,
    ProviderDataError,
    ProviderRateLimitedError,
)
from integrations.provider_protocol import FetchWindow
from integrations.tink_client import TinkAdapter

WINDOW = FetchWindow(
    start=datetime(2024, 5, 1, tzinfo=timezone.utc),
    end=datetime(2024, 6, 1, tzinfo=timezone.utc),
)


def _response(status: int = 200, payload=None, headers: dict | None = None, text=None):
    request = httpx.Request("GET", "https://api.tink.test/")
    if text is not None:
        return httpx.Response(status, text=text, headers=headers, request=request)
    return httpx.Response(status, json=payload or {}, headers=headers, request=request)


@pytest.fixture
def http():
    """Patch httpx.Client; ``http.request`` is the per-call mock."""
    with patch("integrations.tink_client.httpx.Client") as MockClient:
        client = MagicMock()
        MockClient.return_value.__enter__.return_value = client
        yield client.request


@pytest.fixture
def adapter():
    return TinkAdapter(
        client_id="tink-id",
        client_secret="tink-secret",
        redirect_uri="https://app.example.com/callback",
        base_url="https://api.tink.test",
    )


def _tink_txn(native_id="tx1", account_id="acc1", unscaled="-2550", **overrides):
    item = {
        "id": native_id,
        "accountId": account_id,
        "amount": {"value": {"unscaledValue": unscaled, "scale": "2"}, "currencyCode": "EUR"},
        "dates": {"booked": "2024-05-20", "value": "2024-05-21"},
        "descriptions": {"display": "Coffee", "original": "COFFEE 123"},
        "merchantInformation": {"merchantName": "Blue Bottle"},
        "categories": {"pfm": {"name": "Food"}},
        "status": "BOOKED",
    }
    item.update(overrides)
    return item


class TestConfiguration:
    def test_provider_name(self, adapter):
        assert adapter.provider_name == "tink"

    def test_is_configured(self, adapter):
        assert adapter.is_configured() is True
        with patch("integrations.tink_client.settings") as ms:
            ms.TINK_CLIENT_ID = ""
            ms.TINK_CLIENT_SECRET = ""
            ms.TINK_REDIRECT_URI = ""
            ms.TINK_API_BASE_URL = "https://api.tink.test"
            assert TinkAdapter().is_configured() is False

    def test_authorization_url(self, adapter):
        url = adapter.get_authorization_url("conn-1")

        query = parse_qs(urlparse(url).query)
        assert query["client_id"] == ["tink-id"]
        assert query["state"] == ["conn-1"]
        assert query["response_type"] == ["code"]
        assert "transactions:read" in query["scope"][0]


class TestTokens:
    def test_exchange_code(self, adapter, http):
        http.return_value = _response(
            payload={
                "access_token": "at",
                "refresh_token": "rt",
                "expires_in": 7200,
                "token_type": "bearer",
                "scope": "accounts:read,transactions:read",
            }
        )

        token_set = adapter.exchange_authorization_code("the-code")

        assert token_set.access_token == "at"
        assert token_set.refresh_token == "rt"
        assert token_set.expires_at > datetime.now(timezone.utc)
        assert token_set.scopes == ["accounts:read", "transactions:read"]
        form = http.call_args.kwargs["data"]
        assert form["grant_type"] == "authorization_code"
        assert form["code"] == "the-code"

    def test_refresh_keeps_old_refresh_token_when_not_rotated(self, adapter, http):
        http.return_value = _response(payload={"access_token": "at2", "expires_in": 60})

        token_set = adapter.refresh_token("rt")

        assert token_set.access_token == "at2"
        assert token_set.refresh_token == "rt"

    def test_invalid_grant_is_auth_error(self, adapter, http):
        http.return_value = _response(400, {"error": "invalid_grant"})

        with pytest.raises(ProviderAuthError):
            adapter.refresh_token("rt")

    def test_token_response_without_access_token(self, adapter, http):
        http.return_value = _response(payload={"token_type": "bearer"})

        with pytest.raises(ProviderDataError):
            adapter.exchange_authorization_code("code")


class TestFetchAccounts:
    def test_maps_and_paginates(self, adapter, http):
        http.side_effect = [
            _response(
                payload={
                    "accounts": [
                        {
                            "id": "acc1",
                            "name": "Checking",
                            "balances": {
                                "booked": {
                                    "amount": {
                                        "value": {"unscaledValue": "50000", "scale": "2"},
                                        "currencyCode": "EUR",
                                    }
                                }
                            },
                        }
                    ],
                    "nextPageToken": "p2",
                }
            ),
            _response(payload={"accounts": [{"id": "acc2", "closed": True}]}),
        ]

        accounts = adapter.fetch_accounts("at")

        assert [a.native_id for a in accounts] == ["acc1", "acc2"]
        assert accounts[0].balance == Decimal("500.00")
        assert accounts[0].currency == "EUR"
        assert accounts[1].status == "closed"
        assert accounts[1].display_name == "Account acc2"
        second_call = http.call_args_list[1]
        assert second_call.kwargs["params"]["pageToken"] == "p2"
        assert second_call.kwargs["headers"]["Authorization"] == "Bearer at"

    def test_account_without_id(self, adapter, http):
        http.return_value = _response(payload={"accounts": [{"name": "x"}]})

        with pytest.raises(ProviderDataError):
            adapter.fetch_accounts("at")


class TestFetchTransactions:
    def test_maps_window_fetch(self, adapter, http):
        http.return_value = _response(payload={"transactions": [_tink_txn()]})

        batch = adapter.fetch_transactions("at", WINDOW)

        assert batch.is_complete_window is True
        txn = batch.transactions[0]
        assert txn.native_id == "tx1"
        assert txn.account_native_id == "acc1"
        assert txn.amount == Decimal("-25.50")
        assert txn.booked_date == date(2024, 5, 20)
        assert txn.value_date == date(2024, 5, 21)
        assert txn.description == "Coffee"
        assert txn.counterparty_name == "Blue Bottle"
        assert txn.status == "booked"
        assert txn.category == "Food"
        params = http.call_args.kwargs["params"]
        assert params["bookedDateGte"] == "2024-05-01"
        assert params["bookedDateLte"] == "2024-06-01"

    def test_account_scope_is_sent(self, adapter, http):
        http.return_value = _response(payload={"transactions": []})
        scoped = FetchWindow(start=WINDOW.start, end=WINDOW.end, account_native_ids=["acc1"])

        adapter.fetch_transactions("at", scoped)

        assert http.call_args.kwargs["params"]["accountIdIn"] == ["acc1"]

    def test_skips_transaction_without_ids(self, adapter, http):
        http.return_value = _response(
            payload={"transactions": [_tink_txn(accountId=None), _tink_txn("tx2")]}
        )

        batch = adapter.fetch_transactions("at", WINDOW)

        assert [t.native_id for t in batch.transactions] == ["tx2"]

    def test_unparseable_amount(self, adapter, http):
        http.return_value = _response(payload={"transactions": [_tink_txn(amount=None)]})

        with pytest.raises(ProviderDataError):
            adapter.fetch_transactions("at", WINDOW)

    def test_missing_collection_key(self, adapter, http):
        http.return_value = _response(payload={"unexpected": []})

        with pytest.raises(ProviderDataError):
            adapter.fetch_transactions("at", WINDOW)


class TestErrorMapping:
    def test_401_is_auth_error(self, adapter, http):
        http.return_value = _response(401)

        with pytest.raises(ProviderAuthError):
            adapter.fetch_accounts("at")

    def test_429_carries_retry_after(self, adapter, http):
        http.return_value = _response(429, headers={"Retry-After": "12"})

        with pytest.raises(ProviderRateLimitedError) as exc_info:
            adapter.fetch_accounts("at")

        assert exc_info.value.retry_after == 12.0

    def test_500_is_api_error(self, adapter, http):
        http.return_value = _response(503)

        with pytest.raises(ProviderAPIError) as exc_info:
            adapter.fetch_accounts("at")

        assert exc_info.value.status_code == 503

    def test_connect_error(self, adapter, http):
        http.side_effect = httpx.ConnectError("refused")

        with pytest.raises(ProviderConnectionError):
            adapter.fetch_accounts("at")

    def test_invalid_json(self, adapter, http):
        http.return_value = _response(text="<html>oops</html>")

        with pytest.raises(ProviderDataError):
            adapter.fetch_accounts("at")
