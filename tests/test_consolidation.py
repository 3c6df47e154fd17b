import hashlib

import pytest
from werkzeug.security import generate_password_hash

from app.veridrive import create_app
from app.veridrive.db import session_scope
from app.veridrive.models import Base, Role, User
from app.veridrive.modules.blockchain.models import BlockchainTransaction
from app.veridrive.modules.blockchain.solana_client import SolanaError
from app.veridrive.modules.telemetry import consolidation
from app.veridrive.modules.telemetry.consolidation import leaf_hash, merkle_root
from app.veridrive.modules.telemetry.models import TelemetryBatch
from scripts.consolidate_telemetry import run

VIN = "1HGCM82633A004352"
DAY = "2026-05-01"


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
        u = User(email="admin@example.com", password_hash=generate_password_hash("admin-pass-1"), primary_role="admin")
        u.roles.append(r)
        s.add_all([r, u])

    return app.test_client()


def _admin(client):
    r = client.post("/api/auth/login", json={"email": "admin@example.com", "password": "admin-pass-1"})
    return {"Authorization": f"Bearer {r.json['data']['accessToken']}"}


def _driven_day(client):
    r = client.post(
        "/api/auth/register",
        json={"email": "owner@example.com", "password": "secret-pass-1", "firstName": "O", "lastName": "Wner", "role": "owner"},
    )
    headers = {"Authorization": f"Bearer {r.json['data']['accessToken']}"}
    r = client.post(
        "/api/vehicles",
        json={"vin": VIN, "make": "Honda", "model": "Accord", "year": 2018, "currentMileage": 15000},
        headers=headers,
    )
    vehicle_id = r.json["data"]["id"]
    # two drives separated by a 70 minute stop, plus a dropped connection
    for clock, mileage, status in (
        ("10:00", 15100, "obd_connected"),
        ("10:20", 15130, "obd_connected"),
        ("10:25", None, "device_not_connected"),
        ("11:30", 15160, "obd_connected"),
        ("11:40", 15190, "obd_connected"),
    ):
        r = client.post(
            "/api/device/status",
            json={
                "deviceID": "ESP32_001",
                "status": status,
                "timestamp": f"{DAY}T{clock}:00Z",
                "vin": VIN,
                "obd": {"mileage": mileage},
            },
        )
        assert r.status_code == 200, r.json
    return headers, vehicle_id


def test_merkle_root_pairs_sorted_and_duplicates_odd_leaf():
    a, b, c = (hashlib.sha256(x).hexdigest() for x in (b"a", b"b", b"c"))

    def h(x, y):
        return hashlib.sha256((min(x, y) + max(x, y)).encode()).hexdigest()

    assert merkle_root([a]) == a
    assert merkle_root([a, b]) == merkle_root([b, a]) == h(a, b)
    assert merkle_root([a, b, c]) == h(h(a, b), h(c, c))
    with pytest.raises(ValueError):
        merkle_root([])


def test_consolidation_anchors_one_batch_per_vehicle_day(client):
    headers, vehicle_id = _driven_day(client)
    admin = _admin(client)

    r = client.post("/api/telemetry/consolidate", json={"date": DAY}, headers=admin)
    assert r.status_code == 200, r.json
    assert r.json["data"] == {"date": DAY, "processed": 1, "anchored": 1, "failed": 0, "errors": []}

    r = client.get(f"/api/telemetry/batches/{vehicle_id}", headers=headers)
    assert r.json["count"] == 1
    batch = r.json["data"][0]
    assert batch["status"] == "anchored"
    assert batch["recordCount"] == 4
    assert batch["segmentsCount"] == 2
    assert [seg["distance"] for seg in batch["segments"]] == [30, 30]
    assert batch["totalDistance"] == 60
    assert (batch["firstMileage"], batch["lastMileage"]) == (15100, 15190)
    assert batch["deviceId"] == "ESP32_001"
    assert batch["solanaTx"].startswith("sim_")
    assert batch["merkleRoot"] == merkle_root([leaf_hash(seg) for seg in batch["segments"]])

    # a second run leaves the anchored batch alone
    r = client.post("/api/telemetry/consolidate", json={"date": DAY}, headers=admin)
    assert r.json["data"]["anchored"] == 1
    with session_scope(client.application) as s:
        assert s.query(TelemetryBatch).count() == 1
        assert s.query(TelemetryBatch).one().solana_tx == batch["solanaTx"]
        txs = s.query(BlockchainTransaction).filter(BlockchainTransaction.tx_type == "TELEMETRY_BATCH").all()
        assert len(txs) == 1
        assert txs[0].memo["merkleRoot"] == batch["merkleRoot"]


def test_consolidate_rejects_bad_dates_and_non_admins(client):
    headers, _ = _driven_day(client)
    r = client.post("/api/telemetry/consolidate", json={"date": DAY}, headers=headers)
    assert r.status_code == 403

    admin = _admin(client)
    r = client.post("/api/telemetry/consolidate", json={"date": "01/05/2026"}, headers=admin)
    assert r.status_code == 400
    r = client.post("/api/telemetry/consolidate", json={"date": "2099-01-01"}, headers=admin)
    assert r.status_code == 400


def test_failed_anchor_is_retried_by_the_script(client, monkeypatch):
    _, vehicle_id = _driven_day(client)
    app = client.application

    def _down(*args, **kwargs):
        raise SolanaError("RPC node unavailable")

    anchor = consolidation.anchor_telemetry_batch
    monkeypatch.setattr(consolidation, "anchor_telemetry_batch", _down)
    summary = run(app, day=DAY)
    assert summary["failed"] == 1
    assert summary["errors"] == [f"Vehicle {vehicle_id}: RPC node unavailable"]
    with session_scope(app) as s:
        batch = s.query(TelemetryBatch).one()
        assert batch.status == "error"
        assert batch.solana_tx is None

    monkeypatch.setattr(consolidation, "anchor_telemetry_batch", anchor)
    summary = run(app, day="2026-05-02", retry_failed=True)
    assert summary["processed"] == 0
    assert summary["retried"] == 1
    with session_scope(app) as s:
        batch = s.query(TelemetryBatch).one()
        assert batch.status == "anchored"
        assert batch.last_error is None
        assert batch.solana_tx.startswith("sim_")
