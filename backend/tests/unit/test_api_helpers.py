"""Tests for shared API helpers."""

import pytest
from fastapi import HTTPException

from api.helpers import get_connection_or_404, get_tenant_id
from tests.fixtures import OTHER_TENANT_ID, TENANT_ID


class TestGetConnectionOr404:
    def test_returns_connection(self, db, connection):
        result = get_connection_or_404(db, TENANT_ID, connection.id)

        assert result.id == connection.id

    def test_missing_connection(self, db):
        with pytest.raises(HTTPException) as exc_info:
            get_connection_or_404(db, TENANT_ID, "nonexistent-id")

        assert exc_info.value.status_code == 404
        assert exc_info.value.detail == "Connection not found"

    def test_other_tenant_looks_missing(self, db, connection):
        with pytest.raises(HTTPException) as exc_info:
            get_connection_or_404(db, OTHER_TENANT_ID, connection.id)

        assert exc_info.value.status_code == 404


def test_get_tenant_id_passes_header_through():
    assert get_tenant_id("tenant-9") == "tenant-9"
