"""Tests for the automation endpoints."""

from fastapi import status
from fastapi.testclient import TestClient

from feed_relay.models import Automation, DispatchStatus
from feed_relay.services.lease import LeaseManager


def _connected(db_session) -> None:
    LeaseManager(db_session).try_acquire("test-instance")


def test_list_and_get_automation(client: TestClient, automation: Automation) -> None:
    r = client.get("/api/v1/automations/")
    assert r.status_code == status.HTTP_200_OK
    assert [a["name"] for a in r.json()] == ["Headlines"]

    r = client.get(f"/api/v1/automations/{automation.id}")
    assert r.status_code == status.HTTP_200_OK
    data = r.json()
    assert data["state"] == "active"
    assert data["source_id"] == automation.source_id

    r = client.get("/api/v1/automations/999")
    assert r.status_code == status.HTTP_404_NOT_FOUND


def test_update_delivery(client: TestClient, automation: Automation) -> None:
    r = client.put(
        f"/api/v1/automations/{automation.id}/delivery",
        json={
            "delivery_mode": "batched",
            "batch_times": ["07:00", "22:00"],
            "timezone": "Asia/Kolkata",
        },
    )

    assert r.status_code == status.HTTP_200_OK
    data = r.json()
    assert data["delivery_mode"] == "batched"
    assert data["batch_times"] == ["07:00", "22:00"]
    assert data["timezone"] == "Asia/Kolkata"
    assert data["next_run_at"] is None


def test_update_delivery_rejects_bad_settings(client: TestClient, automation: Automation) -> None:
    url = f"/api/v1/automations/{automation.id}/delivery"

    assert client.put(url, json={"timezone": "Mars/Olympus"}).status_code == 422
    assert client.put(url, json={"cron_expression": "every day"}).status_code == 422


def test_change_state(client: TestClient, automation: Automation, db_session) -> None:
    r = client.post(f"/api/v1/automations/{automation.id}/state", json={"state": "paused"})
    assert r.status_code == status.HTTP_200_OK
    data = r.json()
    assert data["previous"] == "active"
    assert data["automation"]["state"] == "paused"
    assert data["skipped_entries"] == 0

    automation.template = None
    db_session.flush()
    r = client.post(f"/api/v1/automations/{automation.id}/state", json={"state": "active"})
    assert r.status_code == status.HTTP_409_CONFLICT

    r = client.post("/api/v1/automations/999/state", json={"state": "paused"})
    assert r.status_code == status.HTTP_404_NOT_FOUND


def test_delete_automation(client: TestClient, automation: Automation) -> None:
    r = client.delete(f"/api/v1/automations/{automation.id}")
    assert r.status_code == status.HTTP_204_NO_CONTENT

    assert client.get(f"/api/v1/automations/{automation.id}").status_code == 404
    assert client.delete(f"/api/v1/automations/{automation.id}").status_code == 404


def test_dispatch_all_queues_latest_item(client: TestClient, automation: Automation, make_items) -> None:
    make_items("Older", "Newest")

    r = client.post("/api/v1/automations/dispatch-all")

    assert r.status_code == status.HTTP_200_OK
    data = r.json()
    assert data["evaluated"] == 1
    assert data["enqueued"] == 2
    assert data["results"][0]["automation_id"] == automation.id
    assert data["results"][0]["items"] == 1


def test_send_now_delivers(client: TestClient, automation: Automation, make_items, db_session, fake_sender) -> None:
    make_items("Breaking")
    _connected(db_session)

    r = client.post(f"/api/v1/automations/{automation.id}/send-now")

    assert r.status_code == status.HTTP_200_OK
    assert r.json() == {"sent": 2, "queued": 0, "skipped": 0, "reason": None}
    assert len(fake_sender.sent) == 2


def test_send_now_without_lease_keeps_entries_queued(
    client: TestClient, automation: Automation, make_items, fake_sender
) -> None:
    make_items("Breaking")

    r = client.post(f"/api/v1/automations/{automation.id}/send-now")

    assert r.status_code == status.HTTP_200_OK
    data = r.json()
    assert data["sent"] == 0
    assert data["queued"] == 2
    assert data["reason"] == "Lease not held by this instance"
    assert fake_sender.sent == []

    assert client.post("/api/v1/automations/999/send-now").status_code == 404


def test_queue_latest(client: TestClient, automation: Automation, make_items) -> None:
    make_items("One", "Two")

    r = client.post(f"/api/v1/automations/{automation.id}/queue-latest")
    assert r.status_code == status.HTTP_200_OK
    assert r.json()["inserted"] == 2

    r = client.post(f"/api/v1/automations/{automation.id}/queue-latest")
    data = r.json()
    assert data["queued"] == 0
    assert data["skipped"] == 2
    assert data["reason"] == "Latest item is already queued or sent for every destination"


def test_approve_all(client: TestClient, automation: Automation, make_items, db_session) -> None:
    automation.approval_required = True
    db_session.flush()
    make_items("Needs review")
    client.post(f"/api/v1/automations/{automation.id}/queue-latest")

    r = client.get("/api/v1/queue/", params={"status": DispatchStatus.AWAITING_APPROVAL.value})
    assert len(r.json()) == 2

    r = client.post(
        f"/api/v1/automations/{automation.id}/approve-all", json={"approved_by": "editor"}
    )
    assert r.status_code == status.HTTP_200_OK
    assert r.json() == {"affected": 2}

    r = client.post(f"/api/v1/automations/{automation.id}/approve-all", json={"approved_by": ""})
    assert r.status_code == 422


def test_diagnostics(client: TestClient, automation: Automation, make_items) -> None:
    make_items("Story")

    r = client.get(f"/api/v1/automations/{automation.id}/diagnostics")

    assert r.status_code == status.HTTP_200_OK
    data = r.json()
    assert data["can_send"] is False
    assert data["blocking_reasons"] == ["Messaging session is not connected"]
    assert data["preview"].startswith("*Story*")

    assert client.get("/api/v1/automations/999/diagnostics").status_code == 404
