"""Integration tests for the provider usage endpoint."""

from tests.fixtures import OTHER_TENANT_ID, TENANT_ID, seed_tokens
from tests.fixtures.mocks import make_account, make_transaction, malformed

HEADERS = {"X-Tenant-ID": TENANT_ID}


def _usage(client, headers=HEADERS, **params):
    return client.get("/api/usage", params=params, headers=headers)


def test_no_usage(client):
    response = _usage(client)

    assert response.status_code == 200
    assert response.json() == []


def test_usage_after_syncs(client, db, vault, adapter, connection, clock):
    seed_tokens(db, vault, connection)
    adapter.accounts = [make_account("A1")]
    adapter.transactions = [make_transaction("T1"), make_transaction("T2")]
    client.post(f"/api/connections/{connection.id}/sync", headers=HEADERS)
    clock.advance(hours=1)
    adapter.fail_next(malformed())
    client.post(f"/api/connections/{connection.id}/sync", headers=HEADERS)

    response = _usage(client)

    assert response.status_code == 200
    [mock] = response.json()
    assert mock["provider_name"] == "mock"
    assert mock["sync_jobs"] == 2
    assert mock["failed_jobs"] == 1
    assert mock["api_calls"] == 3
    assert mock["accounts_synced"] == 1
    assert mock["transactions_synced"] == 2
    assert mock["days"][0]["usage_date"] == clock.now.date().isoformat()


def test_other_tenant_sees_nothing(client, db, vault, adapter, connection):
    seed_tokens(db, vault, connection)
    client.post(f"/api/connections/{connection.id}/sync", headers=HEADERS)

    response = _usage(client, headers={"X-Tenant-ID": OTHER_TENANT_ID})

    assert response.json() == []


def test_days_bounds(client):
    assert _usage(client, days=0).status_code == 422
    assert _usage(client, days=91).status_code == 422


def test_missing_tenant_header(client):
    assert _usage(client, headers={}).status_code == 422
