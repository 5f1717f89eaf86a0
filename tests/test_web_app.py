"""Tests for the Flask JSON API."""
import pytest
from unittest.mock import MagicMock

from conftest import make_rule
from utils.errors import StoreError
from web.app import create_app


@pytest.fixture
def client(pipeline):
    app = create_app({}, pipeline)
    app.config["TESTING"] = True
    with app.test_client() as c:
        yield c


def test_health_ok(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.get_json()["status"] == "healthy"


def test_health_critical_returns_503(client, pipeline, registry):
    registry.add(make_rule(severity="critical"))
    pipeline.record_metric("system", "cpu_usage", 99)
    resp = client.get("/api/health")
    assert resp.status_code == 503
    assert resp.get_json()["active_by_severity"] == {"critical": 1}


def test_alerts_and_detail(client, pipeline, registry):
    registry.add(make_rule())
    pipeline.record_metric("system", "cpu_usage", 95)
    data = client.get("/api/alerts?status=active").get_json()
    assert data["count"] == 1
    alert_id = data["alerts"][0]["id"]

    detail = client.get(f"/api/alerts/{alert_id}").get_json()
    assert detail["alert"]["rule_id"] == "cpu_high"
    assert detail["notifications"][0]["status"] == "sent"


def test_unknown_alert_404(client):
    assert client.get("/api/alerts/999").status_code == 404


def test_metrics_filters_and_limit(client, pipeline):
    for i in range(5):
        pipeline.record_metric("app", "latency_ms", 100 + i)
    pipeline.record_metric("system", "cpu_usage", 10)
    data = client.get("/api/metrics?type=app&limit=2").get_json()
    assert data["count"] == 2
    assert all(m["type"] == "app" for m in data["metrics"])
    assert client.get("/api/metrics?limit=abc").get_json()["count"] == 6


def test_notifications_and_stats(client, pipeline, registry):
    registry.add(make_rule())
    pipeline.record_metric("system", "cpu_usage", 95)
    assert client.get("/api/notifications?status=sent").get_json()["count"] == 1
    stats = client.get("/api/stats").get_json()
    assert stats["lifecycle"]["fired"] == 1


def test_rules(client, registry):
    registry.add(make_rule())
    data = client.get("/api/rules").get_json()
    assert data["rules"][0]["id"] == "cpu_high"


def test_store_error_returns_503():
    pipeline = MagicMock()
    pipeline.list_alerts.side_effect = StoreError("locked")
    app = create_app({}, pipeline)
    resp = app.test_client().get("/api/alerts")
    assert resp.status_code == 503
    assert resp.get_json()["error"] == "Store unavailable"
