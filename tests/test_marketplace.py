from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from app.veridrive import create_app
from app.veridrive.db import session_scope
from app.veridrive.models import Base
from app.veridrive.modules.marketplace.models import Listing
from app.veridrive.modules.marketplace.report import (
    analyze_fraud_alerts,
    analyze_mileage_history,
    analyze_service_history,
    base_vehicle_value,
    blockchain_verification,
)
from app.veridrive.modules.vehicles.models import Vehicle

VIN_A = "1HGCM82633A004352"
VIN_B = "JH4KA7561PC008269"


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
    return app.test_client()


def _user(client, email, role="owner"):
    r = client.post(
        "/api/auth/register",
        json={"email": email, "password": "secret-pass-1", "firstName": "T", "lastName": "U", "role": role},
    )
    return {"Authorization": f"Bearer {r.json['data']['accessToken']}"}


def _vehicle(client, headers, vin=VIN_A, make="Honda", model="Civic", year=2019, mileage=40000):
    r = client.post(
        "/api/vehicles",
        json={"vin": vin, "make": make, "model": model, "year": year, "currentMileage": mileage},
        headers=headers,
    )
    assert r.status_code == 201, r.json
    return r.json["data"]["id"]


def _row(mileage, at, verified=True, blockchain_hash=None):
    return SimpleNamespace(mileage=mileage, recorded_at=at, verified=verified, blockchain_hash=blockchain_hash, source="owner")


# --- report helpers -----------------------------------------------------------


def test_mileage_history_patterns():
    d = datetime(2026, 1, 1)
    consistent = [_row(30000, d + timedelta(days=60)), _row(20000, d + timedelta(days=30)), _row(10000, d)]
    out = analyze_mileage_history(consistent)
    assert out["mileagePattern"] == "consistent"
    assert out["averageMonthlyMileage"] == 10000
    assert out["totalRecords"] == 3

    rolled_back = [_row(10000, d + timedelta(days=30)), _row(20000, d)]
    assert analyze_mileage_history(rolled_back)["mileagePattern"] == "suspicious"

    irregular = [_row(15100, d + timedelta(days=60)), _row(10100, d + timedelta(days=30)), _row(10000, d)]
    assert analyze_mileage_history(irregular)["mileagePattern"] == "irregular"

    assert analyze_mileage_history([])["mileagePattern"] == "insufficient_data"


def test_blockchain_integrity_levels():
    d = datetime(2026, 1, 1)
    assert blockchain_verification([_row(1, d)])["blockchainIntegrity"] == "unverified"
    partial = [_row(i, d + timedelta(days=i), blockchain_hash=f"sim_{i}") for i in range(3)]
    assert blockchain_verification(partial)["blockchainIntegrity"] == "partial"
    full = [_row(i, d + timedelta(days=i), blockchain_hash=f"sim_{i}") for i in range(11)]
    out = blockchain_verification(full)
    assert out["blockchainIntegrity"] == "verified"
    assert out["totalTransactions"] == 11


def test_service_history_score():
    now = datetime(2026, 6, 1)
    assert analyze_service_history([], now)["maintenanceScore"] == 50
    recent = [SimpleNamespace(service_date=now - timedelta(days=30), verified=True, service_type="maintenance", description=None, mileage_at_service=None, cost=None)]
    assert analyze_service_history(recent, now)["maintenanceScore"] == 75
    stale = [SimpleNamespace(service_date=now - timedelta(days=500), verified=False, service_type="repair", description=None, mileage_at_service=None, cost=None)]
    assert analyze_service_history(stale, now)["maintenanceScore"] == 35


def test_fraud_alert_summary():
    alerts = [
        SimpleNamespace(status="active", severity="critical", alert_type="odometer_rollback", description="", reported_at=None),
        SimpleNamespace(status="resolved", severity="low", alert_type="other", description="", reported_at=None),
    ]
    out = analyze_fraud_alerts(alerts)
    assert (out["activeAlerts"], out["resolvedAlerts"], out["criticalAlerts"]) == (1, 1, 1)


def test_base_value_depreciation():
    assert base_vehicle_value("Toyota", 2020, 2026) == pytest.approx(25000 * 0.9**5 * 0.95)
    assert base_vehicle_value("Lada", 2026, 2026) == 20000
    assert base_vehicle_value("Kia", 1950, 2026) == 1000


# --- listing routes ------------------------------------------------------------


def test_list_vehicle_requires_auth(client):
    r = client.post("/api/marketplace/list-vehicle", json={"vehicleId": 1, "price": 10000})
    assert r.status_code == 401


def test_list_vehicle_not_owned_is_404(client):
    owner = _user(client, "owner@example.com")
    other = _user(client, "other@example.com")
    vehicle_id = _vehicle(client, owner)
    r = client.post("/api/marketplace/list-vehicle", json={"vehicleId": vehicle_id, "price": 10000}, headers=other)
    assert r.status_code == 404
    assert r.json["message"] == "Vehicle not found or not owned by user"


def test_list_vehicle_twice_is_422(client):
    owner = _user(client, "owner@example.com")
    vehicle_id = _vehicle(client, owner)
    r = client.post(
        "/api/marketplace/list-vehicle",
        json={"vehicleId": vehicle_id, "price": 18500, "description": "One owner", "features": ["sunroof"]},
        headers=owner,
    )
    assert r.status_code == 201, r.json
    data = r.json["data"]
    assert data["vehicle"]["isForSale"] is True
    assert data["listing"]["price"] == 18500
    assert data["historyReport"]["reportMetadata"]["reportVersion"] == "1.0"

    r = client.post("/api/marketplace/list-vehicle", json={"vehicleId": vehicle_id, "price": 18000}, headers=owner)
    assert r.status_code == 422
    assert r.json["message"] == "Vehicle is already listed for sale"


def test_list_vehicle_rejects_bad_price(client):
    owner = _user(client, "owner@example.com")
    vehicle_id = _vehicle(client, owner)
    r = client.post("/api/marketplace/list-vehicle", json={"vehicleId": vehicle_id, "price": 0}, headers=owner)
    assert r.status_code == 400


def test_search_filters_and_details(client):
    owner = _user(client, "owner@example.com")
    a = _vehicle(client, owner)
    b = _vehicle(client, owner, vin=VIN_B, make="Acura", model="Legend", year=1993, mileage=180000)
    client.post("/api/marketplace/list-vehicle", json={"vehicleId": a, "price": 18500}, headers=owner)
    client.post("/api/marketplace/list-vehicle", json={"vehicleId": b, "price": 4000, "description": "classic"}, headers=owner)

    r = client.get("/api/marketplace/listings")
    assert r.status_code == 200
    assert r.json["data"]["total"] == 2

    r = client.get("/api/marketplace/listings?make=honda&maxPrice=20000")
    assert [l["vehicleId"] for l in r.json["data"]["listings"]] == [a]

    r = client.get("/api/marketplace/search?query=classic")
    assert [l["vehicleId"] for l in r.json["data"]["listings"]] == [b]

    r = client.get(f"/api/marketplace/vehicle/{a}")
    assert r.status_code == 200
    r = client.get(f"/api/marketplace/vehicle/{a}?includeHistoryReport=true")
    assert r.json["data"]["listing"]["views"] == 2
    assert "historyReport" in r.json["data"]

    r = client.get("/api/marketplace/statistics?timeframe=7d")
    assert r.status_code == 200
    assert r.json["data"]["activeListings"] == 2
    r = client.get("/api/marketplace/statistics?timeframe=2w")
    assert r.status_code == 400


def test_update_and_remove_listing_owner_only(client):
    owner = _user(client, "owner@example.com")
    other = _user(client, "other@example.com")
    vehicle_id = _vehicle(client, owner)
    client.post("/api/marketplace/list-vehicle", json={"vehicleId": vehicle_id, "price": 18500}, headers=owner)

    r = client.put(f"/api/marketplace/vehicle/{vehicle_id}/listing", json={"price": 17000}, headers=other)
    assert r.status_code == 403

    r = client.put(f"/api/marketplace/vehicle/{vehicle_id}/listing", json={"price": 17000}, headers=owner)
    assert r.status_code == 200
    assert r.json["data"]["price"] == 17000

    r = client.delete(f"/api/marketplace/vehicle/{vehicle_id}/listing", json={"reason": "sold privately"}, headers=owner)
    assert r.status_code == 200
    assert r.json["data"]["status"] == "removed"

    with session_scope(client.application) as s:
        v = s.get(Vehicle, vehicle_id)
        assert v.is_for_sale is False
        assert v.listing_status == "not_listed"
        assert s.query(Listing).one().removal_reason == "sold privately"

    r = client.get(f"/api/marketplace/vehicle/{vehicle_id}")
    assert r.status_code == 404


def test_history_report_and_market_analysis_are_public(client):
    owner = _user(client, "owner@example.com")
    vehicle_id = _vehicle(client, owner)
    r = client.get(f"/api/marketplace/vehicle/{vehicle_id}/history-report")
    assert r.status_code == 200
    assert r.json["data"]["mileageHistory"]["totalRecords"] == 1
    assert r.json["data"]["vehicleInfo"]["vin"] == VIN_A

    r = client.get(f"/api/marketplace/vehicle/{vehicle_id}/market-analysis")
    assert r.status_code == 200
    assert r.json["data"]["demandLevel"] == "high"

    r = client.get("/api/marketplace/vehicle/999/market-analysis")
    assert r.status_code == 404
