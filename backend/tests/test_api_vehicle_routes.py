"""Tests for vehicle and expense routes."""

from app.config import get_settings

VEHICLE = {"id": "vehicle-1", "make": "Honda", "model": "Civic", "year": 2020}
EXPENSE = {
    "id": "expense-1",
    "category": "fuel",
    "amount": 42.5,
    "date": "2024-03-01T08:00:00Z",
    "tags": ["commute"],
    "volume": 11.2,
}


class TestVehicles:
    def test_create_and_list(self, client, auth_headers):
        response = client.post("/vehicles", json=VEHICLE, headers=auth_headers)

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["id"] == "vehicle-1"
        assert data["vehicle_type"] == "gas"

        listing = client.get("/vehicles", headers=auth_headers).json()
        assert [v["id"] for v in listing["data"]] == ["vehicle-1"]

    def test_server_assigns_id(self, client, auth_headers):
        body = {k: v for k, v in VEHICLE.items() if k != "id"}
        response = client.post("/vehicles", json=body, headers=auth_headers)

        assert response.status_code == 201
        assert response.json()["data"]["id"]

    def test_duplicate_client_id(self, client, auth_headers):
        client.post("/vehicles", json=VEHICLE, headers=auth_headers)

        response = client.post("/vehicles", json={**VEHICLE, "model": "Accord"}, headers=auth_headers)

        assert response.status_code == 409
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "DUPLICATE_RECORD"
        listing = client.get("/vehicles", headers=auth_headers).json()
        assert listing["data"][0]["model"] == "Civic"

    def test_validation(self, client, auth_headers):
        response = client.post("/vehicles", json={**VEHICLE, "year": 1800}, headers=auth_headers)
        assert response.status_code == 422

    def test_bad_client_id(self, client, auth_headers):
        response = client.post("/vehicles", json={**VEHICLE, "id": "../etc"}, headers=auth_headers)
        assert response.status_code == 422

    def test_list_is_per_user(self, client, auth_headers, other_auth_headers):
        client.post("/vehicles", json=VEHICLE, headers=auth_headers)
        assert client.get("/vehicles", headers=other_auth_headers).json()["data"] == []

    def test_requires_token(self, client):
        assert client.post("/vehicles", json=VEHICLE).status_code == 401


class TestExpenses:
    def test_create_and_list(self, client, auth_headers):
        client.post("/vehicles", json=VEHICLE, headers=auth_headers)

        response = client.post("/vehicles/vehicle-1/expenses", json=EXPENSE, headers=auth_headers)

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["vehicle_id"] == "vehicle-1"
        assert data["tags"] == ["commute"]

        listing = client.get("/vehicles/vehicle-1/expenses", headers=auth_headers).json()
        assert [e["id"] for e in listing["data"]] == ["expense-1"]

    def test_unknown_vehicle(self, client, auth_headers):
        response = client.post("/vehicles/nope/expenses", json=EXPENSE, headers=auth_headers)
        assert response.status_code == 404

    def test_other_users_vehicle_is_hidden(self, client, auth_headers, other_auth_headers):
        client.post("/vehicles", json=VEHICLE, headers=other_auth_headers)

        response = client.post("/vehicles/vehicle-1/expenses", json=EXPENSE, headers=auth_headers)
        assert response.status_code == 404
        assert client.get("/vehicles/vehicle-1/expenses", headers=auth_headers).status_code == 404

    def test_duplicate_expense(self, client, auth_headers):
        client.post("/vehicles", json=VEHICLE, headers=auth_headers)
        client.post("/vehicles/vehicle-1/expenses", json=EXPENSE, headers=auth_headers)

        response = client.post("/vehicles/vehicle-1/expenses", json=EXPENSE, headers=auth_headers)

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "DUPLICATE_RECORD"

    def test_amount_must_be_positive(self, client, auth_headers):
        client.post("/vehicles", json=VEHICLE, headers=auth_headers)
        response = client.post(
            "/vehicles/vehicle-1/expenses", json={**EXPENSE, "amount": 0}, headers=auth_headers
        )
        assert response.status_code == 422


class TestWriteTracking:
    def test_write_marks_data_changed(self, client, auth_headers):
        client.post("/vehicles", json=VEHICLE, headers=auth_headers)
        client.post("/sync", json={"sync_types": ["backup"]}, headers=auth_headers)
        assert client.get("/sync/status", headers=auth_headers).json()["has_changes_since_last_sync"] is False

        client.post("/vehicles/vehicle-1/expenses", json=EXPENSE, headers=auth_headers)

        status = client.get("/sync/status", headers=auth_headers).json()
        assert status["has_changes_since_last_sync"] is True
        assert status["last_data_change_date"] is not None

    def test_write_arms_inactivity_timer(self, client, auth_headers):
        client.post("/vehicles", json=VEHICLE, headers=auth_headers)

        status = client.get("/sync/status", headers=auth_headers).json()
        assert 0 < status["next_sync_in"] <= 5 * 60

    def test_timer_follows_user_setting(self, client, auth_headers):
        client.post("/sync/configure", json={"sync_inactivity_minutes": 30}, headers=auth_headers)
        client.post("/vehicles", json=VEHICLE, headers=auth_headers)

        status = client.get("/sync/status", headers=auth_headers).json()
        assert 5 * 60 < status["next_sync_in"] <= 30 * 60

    def test_no_timer_when_disabled_for_user(self, client, auth_headers):
        client.post("/sync/configure", json={"sync_on_inactivity": False}, headers=auth_headers)
        client.post("/vehicles", json=VEHICLE, headers=auth_headers)

        assert client.get("/sync/status", headers=auth_headers).json()["next_sync_in"] is None

    def test_no_timer_when_auto_sync_off(self, client, auth_headers, monkeypatch):
        monkeypatch.setenv("AUTO_SYNC_ENABLED", "false")
        get_settings.cache_clear()

        client.post("/vehicles", json=VEHICLE, headers=auth_headers)

        assert client.get("/sync/status", headers=auth_headers).json()["next_sync_in"] is None


class TestHealth:
    def test_root(self, client):
        assert client.get("/").json()["service"] == "vroom-sync"

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200


class TestStorageOffEventLoop:
    def test_reads_run_in_worker_threads(self, client, auth_headers, thread_calls):
        client.post("/vehicles", json=VEHICLE, headers=auth_headers)
        thread_calls.clear()

        client.get("/vehicles", headers=auth_headers)
        client.get("/vehicles/vehicle-1/expenses", headers=auth_headers)

        assert thread_calls == ["list_vehicles", "get_vehicle", "list_expenses"]
