"""Application wiring: health endpoint and mounted routers."""


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_routers_are_mounted(app):
    paths = {route.path for route in app.routes}
    assert {
        "/webhooks/shopify",
        "/tracking/collect",
        "/tracking/coverage",
        "/tracking/coverage-dashboard",
        "/tracking/entity-metrics",
        "/tracking/attribution",
        "/tracking/remap",
        "/tracking/backfill-orders",
    } <= paths
