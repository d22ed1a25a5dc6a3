# tests/test_health_endpoints.py
from fastapi.testclient import TestClient
from agency_sms.main import app

client = TestClient(app)


def test_health_endpoint():
    """Health reports the store mode and version."""
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["ok"] is True
    assert "timestamp" in data
    assert data["store"] == "memory"
    assert data["dry_run"] is False
    assert "version" in data


def test_ping_endpoint():
    response = client.get("/ping")
    assert response.status_code == 200
    data = response.json()
    assert data["ok"] is True
    assert data["pong"] is True
    assert data["time"].endswith("Z")
