import pytest
from werkzeug.security import generate_password_hash

from app.veridrive import create_app
from app.veridrive.db import session_scope
from app.veridrive.models import Base, Role, User
from app.veridrive.modules.vehicles.models import MileageHistory

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


def _register(client, email, role="owner"):
    r = client.post(
        "/api/auth/register",
        json={"email": email, "password": "secret-pass-1", "firstName": "T", "lastName": "U", "role": role},
    )
    return {"Authorization": f"Bearer {r.json['data']['accessToken']}"}


def _vehicle(client, headers, **overrides):
    payload = {"vin": VIN, "make": "Honda", "model": "Accord", "year": 2018, "currentMileage": 52000}
    payload.update(overrides)
    return client.post("/api/vehicles", json=payload, headers=headers)


def test_register_vehicle_creates_initial_history(client):
    owner = _register(client, "owner@example.com")
    r = _vehicle(client, owner, vin=VIN.lower(), vehicleNumber="abc1234")
    assert r.status_code == 201, r.json
    data = r.json["data"]
    assert data["vin"] == VIN
    assert data["trustScore"] == 100

    r = client.get(f"/api/vehicles/{data['id']}", headers=owner)
    assert r.status_code == 200
    history = r.json["data"]["mileageHistory"]
    assert len(history) == 1
    assert history[0]["mileage"] == 52000


def test_register_vehicle_validation(client):
    owner = _register(client, "owner@example.com")
    r = _vehicle(client, owner, vin="SHORTVIN")
    assert r.status_code == 400
    assert r.json["message"].startswith("VIN must be 17 characters")

    # I, O and Q never appear in a VIN
    r = _vehicle(client, owner, vin="1HGCM82633A00435O")
    assert r.status_code == 400

    r = _vehicle(client, owner, year=1850)
    assert r.status_code == 400

    assert _vehicle(client, owner).status_code == 201
    r = _vehicle(client, owner)
    assert r.status_code == 409


def test_vehicle_detail_is_owner_or_admin(client):
    owner = _register(client, "owner@example.com")
    other = _register(client, "other@example.com")
    vehicle_id = _vehicle(client, owner).json["data"]["id"]

    assert client.get(f"/api/vehicles/{vehicle_id}", headers=other).status_code == 403
    assert client.get("/api/vehicles/999", headers=owner).status_code == 404

    r = client.post("/api/auth/login", json={"email": "admin@example.com", "password": "admin-pass-1"})
    admin = {"Authorization": f"Bearer {r.json['data']['accessToken']}"}
    assert client.get(f"/api/vehicles/{vehicle_id}", headers=admin).status_code == 200

    r = client.get("/api/vehicles", headers=other)
    assert r.json["count"] == 0
    r = client.get("/api/vehicles", headers=admin)
    assert r.json["count"] == 1


def test_manual_mileage_refuses_rollback(client):
    owner = _register(client, "owner@example.com")
    vehicle_id = _vehicle(client, owner).json["data"]["id"]

    r = client.post(f"/api/vehicles/{vehicle_id}/mileage", json={"mileage": 51000}, headers=owner)
    assert r.status_code == 422
    assert "cannot decrease" in r.json["message"]

    r = client.post(f"/api/vehicles/{vehicle_id}/mileage", json={"mileage": 53000, "notes": "Oil change"}, headers=owner)
    assert r.status_code == 201
    assert r.json["data"]["vehicle"]["currentMileage"] == 53000
    assert r.json["data"]["record"]["verified"] is False


def test_service_provider_mileage_is_verified(client):
    owner = _register(client, "owner@example.com")
    shop = _register(client, "shop@example.com", role="service")
    other = _register(client, "other@example.com")
    vehicle_id = _vehicle(client, owner).json["data"]["id"]

    r = client.post(f"/api/vehicles/{vehicle_id}/mileage", json={"mileage": 53000}, headers=other)
    assert r.status_code == 403

    r = client.post(f"/api/vehicles/{vehicle_id}/mileage", json={"mileage": 53000}, headers=shop)
    assert r.status_code == 201
    assert r.json["data"]["record"]["source"] == "service"

    with session_scope(client.application) as s:
        rec = s.query(MileageHistory).filter(MileageHistory.source == "service").one()
        assert rec.verified is True
