"""Application wiring: liveness endpoint and mounted routers."""


def test_health_needs_no_tenant(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_routers_mounted(client):
    paths = client.get("/openapi.json").json()["paths"]

    for path in (
        "/api/connections",
        "/api/connections/{connection_id}/schedule",
        "/api/connections/{connection_id}/sync",
        "/api/connections/{connection_id}/health",
        "/api/usage",
    ):
        assert path in paths, f"{path} not mounted"


def test_tenant_routes_require_header(client):
    for path in ("/api/connections", "/api/usage"):
        assert client.get(path).status_code == 422
