"""Tests for system status and configuration endpoints."""

from fastapi import status
from fastapi.testclient import TestClient

from feed_relay.services.lease import LeaseManager


def test_system_config(client: TestClient) -> None:
    r = client.get("/api/v1/system/config")
    assert r.status_code == status.HTTP_200_OK
    data = r.json()
    assert {"app", "lease", "schedule", "dispatch", "pacing", "feeds", "gateway"} <= set(data)
    assert data["app"]["instance_id"] == "test-instance"
    assert data["schedule"]["enabled"] is False
    assert "database_url" not in str(data)


def test_system_health(client: TestClient, db_session) -> None:
    LeaseManager(db_session).try_acquire("test-instance")

    r = client.get("/api/v1/system/health")

    assert r.status_code == status.HTTP_200_OK
    data = r.json()
    assert data["database"] == {"status": "healthy"}
    assert data["lease"]["owner_id"] == "test-instance"
    assert data["lease"]["live"] is True
    assert data["sender"] == {"status": "ready", "gateway": {"status": "unknown"}}
    assert data["queue"]["pending"] == 0
    assert data["throttle"] == {"tracked_destinations": 0}
