import pytest
from werkzeug.security import generate_password_hash

from app.veridrive import create_app
from app.veridrive.db import session_scope
from app.veridrive.models import Base, Role, User
from app.veridrive.modules.telemetry.models import Device

VIN = "1HGCM82633A004352"


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("SIMULATE_SOLANA", "1")
    monkeypatch.setenv("RATE_LIMIT_MAX_REQUESTS", "10000")

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        r = Role(key="admin", name="Administrator")
        u = User(email="admin@example.com", password_hash=generate_password_hash("admin-pass-1"), primary_role="admin")
        u.roles.append(r)
        s.add_all([r, u])

    return app.test_client()


def _register(client, email, role):
    r = client.post(
        "/api/auth/register",
        json={"email": email, "password": "secret-pass-1", "firstName": "T", "lastName": "U", "role": role},
    )
    data = r.json["data"]
    return {"Authorization": f"Bearer {data['accessToken']}"}, data["user"]["id"]


@pytest.fixture()
def parties(client):
    owner, owner_id = _register(client, "owner@example.com", "owner")
    service, service_id = _register(client, "shop@example.com", "service")
    r = client.post("/api/auth/login", json={"email": "admin@example.com", "password": "admin-pass-1"})
    admin = {"Authorization": f"Bearer {r.json['data']['accessToken']}"}
    r = client.post(
        "/api/vehicles",
        json={"vin": VIN, "make": "Honda", "model": "Accord", "year": 2018, "currentMileage": 52000},
        headers=owner,
    )
    return {
        "owner": owner,
        "owner_id": owner_id,
        "service": service,
        "service_id": service_id,
        "admin": admin,
        "vehicle_id": r.json["data"]["id"],
    }


def _create(client, p):
    r = client.post("/api/installs", json={"vehicleId": p["vehicle_id"], "notes": "Evenings only"}, headers=p["owner"])
    assert r.status_code == 201, r.json
    return r.json["data"]["id"]


def test_full_install_lifecycle_links_device(client, parties):
    p = parties
    req_id = _create(client, p)

    r = client.post(f"/api/installs/{req_id}/assign", json={"serviceProviderId": p["service_id"]}, headers=p["admin"])
    assert r.status_code == 200, r.json
    assert r.json["data"]["status"] == "assigned"

    r = client.post(f"/api/installs/{req_id}/start", headers=p["service"])
    assert r.status_code == 200
    assert r.json["data"]["status"] == "in_progress"

    r = client.post(f"/api/installs/{req_id}/complete", json={"deviceId": "ESP32_777"}, headers=p["service"])
    assert r.status_code == 200, r.json
    data = r.json["data"]
    assert data["status"] == "completed"
    assert data["deviceId"] == "ESP32_777"
    assert [h["action"] for h in data["history"]] == ["requested", "assigned", "started", "completed"]

    with session_scope(client.application) as s:
        device = s.query(Device).filter(Device.device_id == "ESP32_777").one()
        assert device.status == "installed"
        assert device.vehicle_id == p["vehicle_id"]
        assert device.owner_id == p["owner_id"]

    # the installed device now reports against the vehicle without sending a VIN
    r = client.post(
        "/api/device/status",
        json={"deviceID": "ESP32_777", "status": "obd_connected", "timestamp": 1767225600, "obd": {"mileage": 52100}},
    )
    assert r.status_code == 200
    assert r.json["data"]["vehicleId"] == p["vehicle_id"]


def test_versioned_prefix_serves_same_requests(client, parties):
    p = parties
    req_id = _create(client, p)
    r = client.get(f"/api/v1/installation-requests/{req_id}", headers=p["owner"])
    assert r.status_code == 200
    assert r.json["data"]["status"] == "requested"


def test_transitions_check_prior_status(client, parties):
    p = parties
    req_id = _create(client, p)

    r = client.post(f"/api/installs/{req_id}/start", headers=p["admin"])
    assert r.status_code == 400
    assert "requested" in r.json["message"]

    r = client.post(f"/api/installs/{req_id}/cancel", json={"reason": "changed my mind"}, headers=p["owner"])
    assert r.status_code == 200
    assert r.json["data"]["status"] == "cancelled"
    assert r.json["data"]["cancelReason"] == "changed my mind"

    r = client.post(f"/api/installs/{req_id}/assign", json={"serviceProviderId": p["service_id"]}, headers=p["admin"])
    assert r.status_code == 400

    r = client.post(f"/api/installs/{req_id}/cancel", headers=p["owner"])
    assert r.status_code == 400


def test_duplicate_open_request_conflicts(client, parties):
    p = parties
    _create(client, p)
    r = client.post("/api/installs", json={"vehicleId": p["vehicle_id"]}, headers=p["owner"])
    assert r.status_code == 409


def test_non_owner_cannot_request_install(client, parties):
    p = parties
    r = client.post("/api/installs", json={"vehicleId": p["vehicle_id"]}, headers=p["service"])
    assert r.status_code == 404


def test_role_guards(client, parties):
    p = parties
    req_id = _create(client, p)

    r = client.post(f"/api/installs/{req_id}/assign", json={"serviceProviderId": p["service_id"]}, headers=p["owner"])
    assert r.status_code == 403
    r = client.post(f"/api/installs/{req_id}/start", headers=p["owner"])
    assert r.status_code == 403
    r = client.get("/api/installs/vehicles/search?q=honda", headers=p["owner"])
    assert r.status_code == 403

    # assignee must actually be a service provider
    r = client.post(f"/api/installs/{req_id}/assign", json={"serviceProviderId": p["owner_id"]}, headers=p["admin"])
    assert r.status_code == 400

    # a provider only sees requests assigned to them
    r = client.get(f"/api/installs/{req_id}", headers=p["service"])
    assert r.status_code == 403


def test_complete_requires_device_id(client, parties):
    p = parties
    req_id = _create(client, p)
    client.post(f"/api/installs/{req_id}/assign", json={"serviceProviderId": p["service_id"]}, headers=p["admin"])
    r = client.post(f"/api/installs/{req_id}/complete", json={}, headers=p["service"])
    assert r.status_code == 400
    assert r.json["message"] == "deviceId is required to complete an installation."


def test_list_and_summary_are_scoped(client, parties):
    p = parties
    req_id = _create(client, p)
    client.post(f"/api/installs/{req_id}/assign", json={"serviceProviderId": p["service_id"]}, headers=p["admin"])

    r = client.get("/api/installs", headers=p["owner"])
    assert r.json["data"]["total"] == 1
    r = client.get("/api/installs?status=assigned", headers=p["service"])
    assert r.json["data"]["total"] == 1
    r = client.get("/api/installs?status=bogus", headers=p["admin"])
    assert r.status_code == 400

    r = client.get("/api/installs/summary", headers=p["admin"])
    assert r.json["data"]["assigned"] == 1
    assert r.json["data"]["total"] == 1

    r = client.get("/api/installs/vehicles/search?q=accord", headers=p["service"])
    assert r.status_code == 200
