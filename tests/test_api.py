import pytest
from fastapi.testclient import TestClient

from auth import issue_caller_token
from database import Base, make_engine, make_sessionmaker
from main import app, get_db


@pytest.fixture()
def client():
    engine = make_engine("sqlite://")
    Base.metadata.create_all(engine)
    TestingSession = make_sessionmaker(engine)

    def override_get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    engine.dispose()


def _auth(user_id: int = 1) -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_caller_token(user_id)}"}


def _vehicle(client: TestClient, odometer: float = 10000) -> int:
    response = client.post(
        "/api/vehicles", json={"name": "Golf", "odometer": odometer}, headers=_auth()
    )
    assert response.status_code == 201
    return response.json()["id"]


def _fuel_payload(vehicle_id: int, **overrides) -> dict:
    payload = {
        "vehicle_id": vehicle_id,
        "type": "fuel",
        "date": "2024-03-01T10:00:00Z",
        "odometer": 12000,
        "total_cost_cents": 5400,
        "fuel_brand": "Shell",
        "price_per_liter": 1.8,
    }
    payload.update(overrides)
    return payload


def test_ping_needs_no_token(client: TestClient) -> None:
    response = client.get("/api/ping")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_requests_without_valid_token_are_rejected(client: TestClient) -> None:
    assert client.get("/api/vehicles").status_code == 401
    bad = client.get("/api/vehicles", headers={"Authorization": "Bearer nope"})
    assert bad.status_code == 401


def test_vehicle_ownership_and_lookup(client: TestClient) -> None:
    vehicle_id = _vehicle(client)

    assert client.get(f"/api/vehicles/{vehicle_id}", headers=_auth()).status_code == 200
    assert client.get(f"/api/vehicles/{vehicle_id}", headers=_auth(2)).status_code == 403
    assert client.get("/api/vehicles/999", headers=_auth()).status_code == 404
    assert client.get("/api/vehicles", headers=_auth(2)).json() == []


def test_expense_lifecycle(client: TestClient) -> None:
    vehicle_id = _vehicle(client)

    created = client.post("/api/expenses", json=_fuel_payload(vehicle_id), headers=_auth())
    assert created.status_code == 201
    body = created.json()
    expense_id = body["expense"]["id"]
    assert body["expense"]["liters"] == 30.0
    assert body["alert"] is None

    duplicate = client.post("/api/expenses", json=_fuel_payload(vehicle_id), headers=_auth())
    assert duplicate.status_code == 409
    assert duplicate.json()["duplicate"]["id"] == expense_id

    deleted = client.delete(f"/api/expenses/{expense_id}", headers=_auth())
    assert deleted.status_code == 200
    listed = client.get(f"/api/vehicles/{vehicle_id}/expenses/deleted", headers=_auth())
    assert [e["id"] for e in listed.json()] == [expense_id]

    restored = client.post("/api/expenses", json=_fuel_payload(vehicle_id), headers=_auth())
    assert restored.status_code == 200
    assert restored.json()["expense"]["id"] == expense_id

    vehicle = client.get(f"/api/vehicles/{vehicle_id}", headers=_auth()).json()
    assert vehicle["odometer"] == 12000


def test_other_users_cannot_touch_expense(client: TestClient) -> None:
    vehicle_id = _vehicle(client)
    created = client.post("/api/expenses", json=_fuel_payload(vehicle_id), headers=_auth())
    expense_id = created.json()["expense"]["id"]

    assert client.delete(f"/api/expenses/{expense_id}", headers=_auth(2)).status_code == 403
    other = client.post("/api/expenses", json=_fuel_payload(vehicle_id), headers=_auth(2))
    assert other.status_code == 403


def test_category_fields_are_validated(client: TestClient) -> None:
    vehicle_id = _vehicle(client)
    payload = _fuel_payload(vehicle_id)
    del payload["fuel_brand"]
    assert client.post("/api/expenses", json=payload, headers=_auth()).status_code == 422

    service = {
        "vehicle_id": vehicle_id,
        "type": "service",
        "date": "2024-03-01T10:00:00Z",
        "odometer": 12000,
        "total_cost_cents": 9000,
    }
    assert client.post("/api/expenses", json=service, headers=_auth()).status_code == 422


def test_vehicle_odometer_rollback_is_rejected(client: TestClient) -> None:
    vehicle_id = _vehicle(client)
    client.post("/api/expenses", json=_fuel_payload(vehicle_id), headers=_auth())

    response = client.put(
        f"/api/vehicles/{vehicle_id}",
        json={"name": "Golf", "odometer": 11000},
        headers=_auth(),
    )
    assert response.status_code == 400
    assert "12000" in response.json()["detail"]


def test_service_expense_drives_reminders(client: TestClient) -> None:
    vehicle_id = _vehicle(client, odometer=20000)
    response = client.post(
        "/api/expenses",
        json={
            "vehicle_id": vehicle_id,
            "type": "service",
            "service_type": "Oil change",
            "date": "2024-03-01T10:00:00Z",
            "odometer": 20000,
            "total_cost_cents": 9000,
            "reminder": {"distance_interval": 500},
        },
        headers=_auth(),
    )
    assert response.status_code == 201

    reminders = client.get(f"/api/vehicles/{vehicle_id}/reminders", headers=_auth()).json()
    assert len(reminders) == 1
    assert reminders[0]["type"] == "Oil change"
    assert reminders[0]["status"] == "upcoming"
    assert reminders[0]["kmUntilDue"] == 500

    reminder_id = reminders[0]["id"]
    toggled = client.patch(
        f"/api/vehicles/{vehicle_id}/reminders/{reminder_id}/toggle", headers=_auth()
    )
    assert toggled.json()["reminder"]["enabled"] is False
    assert client.get(f"/api/vehicles/{vehicle_id}/reminders", headers=_auth()).json() == []


def test_csv_import_and_export(client: TestClient) -> None:
    vehicle_id = _vehicle(client)
    body = (
        "type,serviceDetails.serviceType,fuelDetails.fuelBrand,pricePerLiter,liters,"
        "recurringInterval,odometer,totalCost,notes,attachmentUrl,isDeleted,date\n"
        "fuel,,Shell,1.80,30,none,12000,54.00,,,false,2024-03-01T10:00:00.000Z\n"
        "service,,,,,none,12500,120.00,,,false,2024-03-10T08:00:00.000Z\n"
    )
    response = client.post(
        f"/api/vehicles/{vehicle_id}/expenses/import",
        files={"file": ("ledger.csv", body, "text/csv")},
        headers=_auth(),
    )
    assert response.status_code == 200
    summary = response.json()
    assert summary["importedCount"] == 1
    assert summary["errors"] == [
        {"row": 2, "message": "Missing value for required field: serviceDetails.serviceType"}
    ]

    exported = client.get(f"/api/vehicles/{vehicle_id}/expenses/export", headers=_auth())
    assert exported.status_code == 200
    assert exported.headers["content-type"].startswith("text/csv")
    assert "2024-03-01T10:00:00.000Z" in exported.text


def test_csv_import_with_bad_header_is_rejected(client: TestClient) -> None:
    vehicle_id = _vehicle(client)
    response = client.post(
        f"/api/vehicles/{vehicle_id}/expenses/import",
        files={"file": ("ledger.csv", "type,odometer\nfuel,100\n", "text/csv")},
        headers=_auth(),
    )
    assert response.status_code == 400
    assert response.json()["detail"].startswith("Invalid CSV headers")
    assert client.get(f"/api/vehicles/{vehicle_id}/expenses", headers=_auth()).json() == []


def test_fuel_log_import_endpoint(client: TestClient) -> None:
    vehicle_id = _vehicle(client)
    body = "fuelup_date,odometer,price,litres,notes\n2024-01-05,10100,1.75,40,\n"
    response = client.post(
        f"/api/import/fuel/{vehicle_id}",
        files={"file": ("fuel.csv", body, "text/csv")},
        headers=_auth(),
    )
    assert response.status_code == 201
    assert response.json()["imported"] == 1
    assert response.json()["updatedOdometer"] == 10100
