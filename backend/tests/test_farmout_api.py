"""API-level tests for the farm-out and driver routers."""
from __future__ import annotations

from fastapi.testclient import TestClient

from app.main import app
from app.services.farmout_engine import farmout_engine


client = TestClient(app)


def _tenant_headers(tenant: str, role: str = "dispatcher") -> dict:
    farmout_engine.store.reset_tenant(tenant)
    return {"X-Tenant-ID": tenant, "X-Actor-Role": role}


def _create_reservation(headers: dict, **fields) -> dict:
    payload = {"farm_option": "farm-out", "passenger_name": "Lee Park", **fields}
    response = client.post("/farmout/reservations", json=payload, headers=headers)
    assert response.status_code == 200
    return response.json()


def test_health_and_root():
    assert client.get("/health").json() == {"status": "healthy"}
    assert client.get("/").json()["endpoints"]["farmout"] == "/farmout"


def test_reservation_lifecycle_through_driver_trip_status():
    headers = _tenant_headers("api_lifecycle")
    created = _create_reservation(headers, confirmation_number="C-7001")
    reservation_id = created["record"]["id"]
    assert created["classification"]["is_farm_out"] is True
    assert created["classification"]["farmout_status"] == "unassigned"

    driver = client.post("/drivers", json={"name": "Sam Cole", "driver_id": "D7"}, headers=headers)
    assert driver.status_code == 200

    assigned = client.post(
        f"/farmout/reservations/{reservation_id}/driver",
        json={"driver_id": "D7"},
        headers=headers,
    )
    assert assigned.status_code == 200
    assert assigned.json()["classification"]["farmout_status"] == "assigned"
    assert client.get("/drivers/D7", headers=headers).json()["status"] == "busy"

    driver_headers = {**headers, "X-Actor-Role": "driver"}
    update = client.post(
        "/farmout/trip-status",
        json={"reservation_id": "C-7001", "status": "Passenger On Board", "driver_id": "D7"},
        headers=driver_headers,
    )
    assert update.status_code == 200
    body = update.json()
    assert body["applied"] is True
    assert body["farmout_status"] == "passenger_onboard"
    assert body["driver_status"] == "passenger_onboard"

    detail = client.get(f"/farmout/reservations/{reservation_id}", headers=headers).json()
    assert detail["record"]["status"] == "accepted"
    assert detail["classification"]["farmout_status_label"] == "Passenger On Board"

    assignments = client.get("/farmout/assignments", headers=headers).json()["assignments"]
    assert [row["reservation_id"] for row in assignments] == [reservation_id]
    assert assignments[0]["driver"]["name"] == "Sam Cole"

    activity = client.get(f"/farmout/reservations/{reservation_id}/activity", headers=headers).json()["activity"]
    assert activity[0]["message"] == "Driver updated status to PASSENGER_ONBOARD"

    done = client.post(
        "/farmout/trip-status",
        json={"reservation_id": reservation_id, "status": "done", "driver_id": "D7"},
        headers=driver_headers,
    )
    assert done.status_code == 200
    assert client.get("/drivers/D7", headers=headers).json()["status"] == "available"


def test_trip_status_errors_map_to_http_codes():
    headers = _tenant_headers("api_errors")
    created = _create_reservation(headers)

    missing = client.post(
        "/farmout/trip-status",
        json={"reservation_id": "RES-999999", "status": "arrived"},
        headers=headers,
    )
    assert missing.status_code == 404

    invalid = client.post(
        "/farmout/trip-status",
        json={"reservation_id": created["record"]["id"], "status": "   "},
        headers=headers,
    )
    assert invalid.status_code == 400


def test_board_separates_farmout_from_in_house():
    headers = _tenant_headers("api_board")
    _create_reservation(headers, confirmation_number="C-1")
    _create_reservation(headers, confirmation_number="C-2", farm_option="in-house", status="completed")

    board = client.get("/farmout/board", headers=headers)
    assert board.status_code == 200
    data = board.json()
    assert len(data["reservations"]) == 2
    assert [row["confirmation_number"] for row in data["farmout"]] == ["C-1"]
    assert data["counts_by_status"]["completed"] == 1


def test_dispatcher_status_and_mode_updates():
    headers = _tenant_headers("api_dispatcher")
    reservation_id = _create_reservation(headers)["record"]["id"]

    status = client.put(
        f"/farmout/reservations/{reservation_id}/status",
        json={"status": "Farm-out Offered"},
        headers=headers,
    )
    assert status.status_code == 200
    assert status.json()["record"]["efarmStatus"] == "Farm-out Offered"
    assert status.json()["record"]["status"] == "pending"

    mode = client.put(f"/farmout/reservations/{reservation_id}/mode", json={"mode": "auto"}, headers=headers)
    assert mode.status_code == 200
    assert mode.json()["classification"]["farmout_mode"] == "automatic"
    assert mode.json()["classification"]["farmout_status"] == "offered"

    cleared = client.delete(f"/farmout/reservations/{reservation_id}/driver", headers=headers)
    assert cleared.status_code == 200
    assert cleared.json()["classification"]["farmout_status"] == "unassigned"

    missing = client.put("/farmout/reservations/NOPE/status", json={"status": "assigned"}, headers=headers)
    assert missing.status_code == 404


def test_driver_role_cannot_run_dispatcher_mutations():
    headers = _tenant_headers("api_roles", role="driver")
    response = client.post("/farmout/reservations", json={"farm_option": "farm-out"}, headers=headers)
    assert response.status_code == 403


def test_poll_without_feed_url_is_rejected():
    headers = _tenant_headers("api_poll")
    response = client.post("/farmout/trip-status/poll", headers=headers)
    assert response.status_code == 400
    assert "TRIP_STATUS_FEED_URL" in response.json()["detail"]


def test_rebuild_assignments_and_unknown_driver():
    headers = _tenant_headers("api_rebuild")
    rebuilt = client.post("/farmout/assignments/rebuild", headers=headers)
    assert rebuilt.status_code == 200
    assert rebuilt.json() == {"assignments": []}
    assert client.get("/drivers/NOPE", headers=headers).status_code == 404
    assert client.get("/drivers", headers=headers).json() == {"drivers": []}
