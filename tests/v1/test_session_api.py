"""Tests for the messaging session lease endpoints."""

from fastapi import status
from fastapi.testclient import TestClient

from feed_relay.core.errors import LeaseConflictError
from feed_relay.services.lease import LeaseManager


def test_lease_when_nobody_holds_it(client: TestClient) -> None:
    r = client.get("/api/v1/session/lease")

    assert r.status_code == status.HTTP_200_OK
    data = r.json()
    assert data["owner_id"] is None
    assert data["status"] == "disconnected"
    assert data["live"] is False
    assert data["instance_id"] == "test-instance"
    assert data["is_leader"] is False
    assert data["sender_status"] == "ready"


def test_lease_held_by_this_instance(client: TestClient, db_session) -> None:
    LeaseManager(db_session).try_acquire("test-instance")

    data = client.get("/api/v1/session/lease").json()

    assert data["owner_id"] == "test-instance"
    assert data["live"] is True
    assert data["is_leader"] is True


def test_takeover_restarts_the_session(client: TestClient, db_session, fake_sender) -> None:
    LeaseManager(db_session).try_acquire("other-node")

    r = client.post("/api/v1/session/takeover")

    assert r.status_code == status.HTTP_200_OK
    data = r.json()
    assert data["owner_id"] == "test-instance"
    assert data["status"] == "connected"
    assert data["is_leader"] is True
    assert (fake_sender.closes, fake_sender.starts) == (1, 1)


def test_takeover_conflict(client: TestClient, mocker) -> None:
    mocker.patch.object(
        LeaseManager, "force_takeover", side_effect=LeaseConflictError("owner not persisted")
    )

    r = client.post("/api/v1/session/takeover")

    assert r.status_code == status.HTTP_409_CONFLICT
    assert r.json()["detail"] == "owner not persisted"
