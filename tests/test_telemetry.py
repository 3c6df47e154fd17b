import pytest
from werkzeug.security import generate_password_hash

from app.veridrive import constants as C
from app.veridrive import create_app
from app.veridrive.db import session_scope
from app.veridrive.models import Base, Role, User
from app.veridrive.modules.telemetry.models import Device, VehicleTelemetry
from app.veridrive.modules.telemetry.service import classify_mileage, health_alerts
from app.veridrive.modules.trust.models import TrustEvent
from app.veridrive.modules.vehicles.models import FraudAlert, MileageHistory, Vehicle

VIN = "1HGCM82633A004352"


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    monkeypatch.setenv("SIMULATE_SOLANA", "1")
    monkeypatch.setenv("RATE_LIMIT_MAX_REQUESTS", "10000")

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        r = Role(key="admin", name="Administrator")
        u = User(
            email="admin@example.com",
            password_hash=generate_password_hash("admin-pass-1"),
            primary_role="admin",
            is_active=True,
        )
        u.roles.append(r)
        s.add_all([r, u])

    return app.test_client()


def _owner_with_vehicle(client, mileage=15000):
    r = client.post(
        "/api/auth/register",
        json={"email": "owner@example.com", "password": "secret-pass-1", "firstName": "O", "lastName": "Wner", "role": "owner"},
    )
    token = r.json["data"]["accessToken"]
    headers = {"Authorization": f"Bearer {token}"}
    r = client.post(
        "/api/vehicles",
        json={"vin": VIN, "make": "Honda", "model": "Accord", "year": 2018, "currentMileage": mileage},
        headers=headers,
    )
    assert r.status_code == 201, r.json
    return headers, r.json["data"]["id"]


def _report(client, mileage, status="obd_connected", **extra):
    payload = {
        "deviceID": "ESP32_001",
        "status": status,
        "timestamp": "2026-05-01T10:00:00Z",
        "vin": VIN,
        "obd": {"mileage": mileage, "rpm": 900, "engineTemp": 90, "fuelLevel": 55},
    }
    payload.update(extra)
    return client.post("/api/device/status", json=payload)


# --- classification ---------------------------------------------------------


def test_negative_delta_is_rollback_and_flagged():
    assert classify_mileage(-1) == (C.STATUS_ROLLBACK, True)
    assert classify_mileage(-50000) == (C.STATUS_ROLLBACK, True)


def test_small_increase_is_valid():
    assert classify_mileage(0) == (C.STATUS_VALID, False)
    assert classify_mileage(1000) == (C.STATUS_VALID, False)
    assert classify_mileage(None) == (C.STATUS_VALID, False)


def test_large_jump_is_suspicious():
    assert classify_mileage(1001) == (C.STATUS_SUSPICIOUS, True)


def test_tampering_keeps_stored_status():
    assert classify_mileage(10, tampering_detected=True, stored_status="INVALID") == ("INVALID", True)
    assert classify_mileage(10, already_flagged=True) == (C.STATUS_INVALID, True)


def test_health_alerts_thresholds():
    alerts = health_alerts({"engineTemp": 105, "batteryVoltage": 11.5, "rpm": 4500, "fuelLevel": 5})
    assert {a["type"] for a in alerts} == {"ENGINE_OVERHEAT", "LOW_BATTERY", "HIGH_RPM", "LOW_FUEL"}
    assert health_alerts({"engineTemp": 90, "batteryVoltage": 12.6, "rpm": 2000, "fuelLevel": 50}) == []


# --- ingestion ----------------------------------------------------------------


def test_device_status_requires_fields(client):
    r = client.post("/api/device/status", json={"deviceID": "ESP32_001"})
    assert r.status_code == 400
    assert "status" in r.json["message"]
    assert "timestamp" in r.json["message"]


def test_valid_reading_updates_vehicle_and_anchors(client):
    _, vehicle_id = _owner_with_vehicle(client)
    r = _report(client, 15500)
    assert r.status_code == 200, r.json
    assert r.json["status"] == "success"
    assert r.json["data"]["validationStatus"] == C.STATUS_VALID
    assert r.json["data"]["vehicleId"] == vehicle_id

    with session_scope(client.application) as s:
        v = s.get(Vehicle, vehicle_id)
        assert v.current_mileage == 15500
        assert v.last_verified_mileage == 15500
        hist = s.query(MileageHistory).filter(MileageHistory.vehicle_id == vehicle_id, MileageHistory.source == "automated").one()
        assert hist.verified is True
        assert hist.blockchain_hash.startswith("sim_")
        device = s.query(Device).filter(Device.device_id == "ESP32_001").one()
        assert device.vehicle_id == vehicle_id
        assert device.status == "active"


def test_rollback_is_flagged_with_trust_penalty(client):
    headers, vehicle_id = _owner_with_vehicle(client)
    r = _report(client, 12000)
    assert r.status_code == 422
    assert r.json["flagged"] is True
    assert r.json["data"]["validationStatus"] == C.STATUS_ROLLBACK
    assert r.json["data"]["delta"] == -3000

    with session_scope(client.application) as s:
        v = s.get(Vehicle, vehicle_id)
        assert v.trust_score == 70
        assert v.verification_status == "flagged"
        # the rejected reading never becomes the vehicle's mileage
        assert v.current_mileage == 15000
        alert = s.query(FraudAlert).filter(FraudAlert.vehicle_id == vehicle_id).one()
        assert alert.alert_type == "odometer_rollback"
        event = s.query(TrustEvent).filter(TrustEvent.vehicle_id == vehicle_id).one()
        assert event.change == -30
        assert event.source == "fraudEngine"
        rec = s.query(VehicleTelemetry).one()
        assert rec.tampering_detected is True

    r = client.get(f"/api/telemetry/fraud-alerts/{vehicle_id}", headers=headers)
    assert r.status_code == 200
    assert r.json["count"] == 1
    assert r.json["data"][0]["severity"] == "high"

    r = client.get("/api/users/notifications", headers=headers)
    assert r.json["data"]["unreadCount"] == 1


def test_suspicious_jump_does_not_move_odometer(client):
    _, vehicle_id = _owner_with_vehicle(client)
    r = _report(client, 20000)
    assert r.status_code == 200
    assert r.json["data"]["validationStatus"] == C.STATUS_SUSPICIOUS
    assert r.json["data"]["flagged"] is True

    with session_scope(client.application) as s:
        assert s.get(Vehicle, vehicle_id).current_mileage == 15000


def test_device_not_connected_is_connection_error(client):
    _owner_with_vehicle(client)
    r = _report(client, None, status="device_not_connected")
    assert r.status_code == 200
    assert r.json["data"]["validationStatus"] == C.STATUS_CONNECTION_ERROR


def test_latest_obd_and_history(client):
    headers, vehicle_id = _owner_with_vehicle(client)
    _report(client, 15200)
    _report(client, 11000)

    r = client.get(f"/api/telemetry/latest-obd/{vehicle_id}", headers=headers)
    assert r.status_code == 200
    assert "no-store" in r.headers["Cache-Control"]
    assert r.json["data"]["latest"]["flagged"] is True
    assert r.json["data"]["latestNonFlagged"]["lastReading"]["mileage"] == 15200

    r = client.get(f"/api/telemetry/history/{vehicle_id}", headers=headers)
    assert r.status_code == 200
    assert r.json["total"] == 2
    statuses = [row["validationStatus"] for row in r.json["data"]]
    assert statuses == [C.STATUS_ROLLBACK, C.STATUS_VALID]


def test_device_listing_is_admin_only(client):
    headers, _ = _owner_with_vehicle(client)
    _report(client, 15100)
    r = client.get("/api/device/list", headers=headers)
    assert r.status_code == 403

    r = client.post("/api/auth/login", json={"email": "admin@example.com", "password": "admin-pass-1"})
    admin = {"Authorization": f"Bearer {r.json['data']['accessToken']}"}
    r = client.get("/api/device/list", headers=admin)
    assert r.status_code == 200
    assert r.json["count"] == 1
    r = client.get("/api/device/status/ESP32_001", headers=admin)
    assert r.status_code == 200
    assert r.json["data"]["deviceID"] == "ESP32_001"


def test_history_includes_readings_without_mileage(client):
    headers, vehicle_id = _owner_with_vehicle(client)
    _report(client, 15300)
    _report(client, None, status="device_not_connected")

    r = client.get(f"/api/telemetry/history/{vehicle_id}", headers=headers)
    assert r.status_code == 200
    assert r.json["total"] == 2
    latest, first = r.json["data"]
    assert latest["validationStatus"] == C.STATUS_CONNECTION_ERROR
    assert latest["mileage"] == 0
    assert latest["verified"] is False
    assert first["mileage"] == 15300
    assert first["validationStatus"] == C.STATUS_VALID


def test_linked_device_cannot_be_redirected_by_payload_vin(client):
    headers, vehicle_id = _owner_with_vehicle(client)
    assert _report(client, 15500).status_code == 200
    other_vin = "2T1BURHE0JC043821"
    r = client.post(
        "/api/vehicles",
        json={"vin": other_vin, "make": "Toyota", "model": "Corolla", "year": 2019, "currentMileage": 10000},
        headers=headers,
    )
    other_id = r.json["data"]["id"]

    r = _report(client, 14000, vin=other_vin)
    assert r.status_code == 422
    assert r.json["data"]["vehicleId"] == vehicle_id

    with session_scope(client.application) as s:
        assert s.get(Vehicle, vehicle_id).trust_score == 70
        other = s.get(Vehicle, other_id)
        assert other.trust_score == 100
        assert other.current_mileage == 10000
        assert s.query(VehicleTelemetry).filter(VehicleTelemetry.vehicle_id == other_id).count() == 0


def test_future_manual_adjustment_cannot_block_rollback_ingestion(client):
    _, vehicle_id = _owner_with_vehicle(client)
    r = client.post("/api/auth/login", json={"email": "admin@example.com", "password": "admin-pass-1"})
    admin = {"Authorization": f"Bearer {r.json['data']['accessToken']}"}

    r = client.post(
        f"/api/trust/{vehicle_id}/manual-adjust",
        json={"change": -5, "reason": "Paperwork", "eventTimestamp": "2030-01-01T00:00:00Z"},
        headers=admin,
    )
    assert r.status_code == 400
    assert "in the future" in r.json["message"]

    r = client.post(f"/api/trust/{vehicle_id}/manual-adjust", json={"change": -5, "reason": "Paperwork"}, headers=admin)
    assert r.status_code == 200

    r = _report(client, 12000)
    assert r.status_code == 422
    with session_scope(client.application) as s:
        assert s.query(VehicleTelemetry).filter(VehicleTelemetry.vehicle_id == vehicle_id).count() == 1
        assert s.query(FraudAlert).filter(FraudAlert.vehicle_id == vehicle_id).count() == 1
        assert s.get(Vehicle, vehicle_id).trust_score == 65
