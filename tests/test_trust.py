from datetime import datetime, timedelta

import pytest
from werkzeug.security import generate_password_hash

from app.veridrive import create_app
from app.veridrive.db import session_scope
from app.veridrive.errors import ValidationError
from app.veridrive.models import Base, Role, User
from app.veridrive.modules.trust.models import TrustEvent
from app.veridrive.modules.trust.service import (
    MAX_CLOCK_SKEW,
    calculate_trust_score,
    clamp_score,
    recompute_trust_score,
    seed_trust_score,
    update_trust_score,
)
from app.veridrive.modules.vehicles.models import FraudAlert, Vehicle
from app.veridrive.utils import utcnow


@pytest.fixture()
def app(tmp_path, monkeypatch):
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
        admin_role = Role(key="admin", name="Administrator")
        owner_role = Role(key="owner", name="Owner")
        admin = User(email="admin@example.com", password_hash=generate_password_hash("admin-pass-1"), primary_role="admin")
        admin.roles.append(admin_role)
        owner = User(email="owner@example.com", password_hash=generate_password_hash("owner-pass-1"), primary_role="owner")
        owner.roles.append(owner_role)
        s.add_all([admin_role, owner_role, admin, owner])
        s.flush()
        s.add(Vehicle(vin="2T1BURHE0JC043821", owner_id=owner.id, make="Toyota", model="Corolla", year=2019, current_mileage=30000))

    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def _vehicle(s) -> Vehicle:
    return s.query(Vehicle).one()


def _login(client, email, password):
    r = client.post("/api/auth/login", json={"email": email, "password": password})
    return {"Authorization": f"Bearer {r.json['data']['accessToken']}"}


def test_clamp_score_bounds():
    assert clamp_score(-40) == 0
    assert clamp_score(130) == 100
    assert clamp_score(72.4) == 72


def test_update_clamps_and_records_event(app):
    with session_scope(app) as s:
        v = _vehicle(s)
        ev = update_trust_score(s, v, -150, "Total loss reported", "admin")
        assert ev.previous_score == 100
        assert ev.new_score == 0
        assert v.trust_score == 0
        ev = update_trust_score(s, v, 25, "Inspection passed", "manual")
        assert ev.new_score == 25
        assert v.trust_history_count == 2


def test_out_of_order_event_is_rejected(app):
    base = datetime(2026, 3, 1, 12, 0, 0)
    with session_scope(app) as s:
        v = _vehicle(s)
        update_trust_score(s, v, -10, "First", "admin", event_timestamp=base)
        with pytest.raises(ValidationError):
            update_trust_score(s, v, -10, "Earlier", "admin", event_timestamp=base - timedelta(minutes=5))
        # equal timestamps are allowed
        update_trust_score(s, v, -5, "Same instant", "admin", event_timestamp=base)
        assert v.trust_score == 85


def test_invalid_source_and_blank_reason(app):
    with session_scope(app) as s:
        v = _vehicle(s)
        with pytest.raises(ValidationError):
            update_trust_score(s, v, 5, "Reason", "rumour")
        with pytest.raises(ValidationError):
            update_trust_score(s, v, 5, "   ", "admin")


def test_recompute_replays_with_clamping(app):
    base = datetime(2026, 3, 1)
    with session_scope(app) as s:
        v = _vehicle(s)
        update_trust_score(s, v, -120, "Wiped", "admin", event_timestamp=base)
        update_trust_score(s, v, 30, "Recovered", "admin", event_timestamp=base + timedelta(days=1))
        v.trust_score = 99
        assert recompute_trust_score(s, v) == 30
        assert v.trust_score == 30
        assert s.query(TrustEvent).count() == 2


def test_calculate_trust_score_penalizes_alerts(app):
    with session_scope(app) as s:
        v = _vehicle(s)
        s.add(FraudAlert(vehicle_id=v.id, alert_type="odometer_rollback", severity="critical", description="x", status="active"))
        s.add(FraudAlert(vehicle_id=v.id, alert_type="other", severity="low", description="y", status="resolved"))
        s.flush()
        s.refresh(v)
        assert calculate_trust_score(v) == 70


def test_manual_adjust_requires_admin(client):
    with session_scope(client.application) as s:
        vehicle_id = _vehicle(s).id

    owner = _login(client, "owner@example.com", "owner-pass-1")
    r = client.post(f"/api/trust/{vehicle_id}/manual-adjust", json={"change": 5, "reason": "x"}, headers=owner)
    assert r.status_code == 403

    admin = _login(client, "admin@example.com", "admin-pass-1")
    r = client.post(f"/api/trust/{vehicle_id}/manual-adjust", json={"change": 5}, headers=admin)
    assert r.status_code == 400
    assert r.json["message"] == "change and reason are required."

    r = client.post(f"/api/trust/{vehicle_id}/manual-adjust", json={"change": -20, "reason": "Title issue"}, headers=admin)
    assert r.status_code == 200
    assert r.json["data"]["newScore"] == 80

    r = client.get(f"/api/trust/{vehicle_id}", headers=owner)
    assert r.status_code == 200
    assert r.json["data"]["trustScore"] == 80

    r = client.get(f"/api/trust/{vehicle_id}/history", headers=owner)
    assert r.json["count"] == 1
    event_id = r.json["data"][0]["id"]
    r = client.get(f"/api/trust/{vehicle_id}/event/{event_id}", headers=owner)
    assert r.status_code == 200
    assert r.json["data"]["reason"] == "Title issue"


def test_user_score_is_self_or_admin(client):
    with session_scope(client.application) as s:
        owner_id = s.query(User).filter(User.email == "owner@example.com").one().id
        admin_id = s.query(User).filter(User.email == "admin@example.com").one().id

    owner = _login(client, "owner@example.com", "owner-pass-1")
    r = client.get(f"/api/trust/user-score/{owner_id}", headers=owner)
    assert r.status_code == 200
    assert r.json["data"]["vehicleCount"] == 1
    r = client.get(f"/api/trust/user-score/{admin_id}", headers=owner)
    assert r.status_code == 403


def test_seed_trust_score_records_offset_from_default(app):
    with session_scope(app) as s:
        v = _vehicle(s)
        ev = seed_trust_score(s, v, 65)
        assert ev.change == -35
        assert ev.source == "manual"
        assert v.trust_score == 65
        with pytest.raises(ValidationError):
            seed_trust_score(s, v, 120)


def test_future_event_timestamp_is_rejected(app):
    with session_scope(app) as s:
        v = _vehicle(s)
        with pytest.raises(ValidationError):
            update_trust_score(s, v, -10, "Ahead of time", "admin", event_timestamp=utcnow() + timedelta(hours=1))
        assert s.query(TrustEvent).count() == 0
        # small clock drift between hosts is tolerated
        update_trust_score(s, v, -10, "Slight drift", "admin", event_timestamp=utcnow() + MAX_CLOCK_SKEW / 2)
        assert v.trust_score == 90
