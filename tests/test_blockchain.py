import io

import pytest
from solana.rpc.core import RPCException
from solders.keypair import Keypair

from app.veridrive import create_app
from app.veridrive.db import session_scope
from app.veridrive.models import Base
from app.veridrive.modules.blockchain import solana_client
from app.veridrive.modules.blockchain.arweave_client import simulated_transaction_id
from app.veridrive.modules.blockchain.models import ArweaveDocument, Wallet
from app.veridrive.modules.blockchain.solana_client import SolanaClient, SolanaError
from app.veridrive.modules.blockchain.wallet import WalletError, open_secret_key
from app.veridrive.modules.vehicles.models import Vehicle

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
    monkeypatch.setenv("SOLANA_RPC_URL", "https://api.devnet.solana.com")
    monkeypatch.setenv("RATE_LIMIT_MAX_REQUESTS", "10000")
    monkeypatch.delenv("ARWEAVE_UPLOAD_URL", raising=False)
    monkeypatch.delenv("WALLET_ENCRYPTION_KEY", raising=False)

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)
    return app.test_client()


@pytest.fixture()
def owner(client):
    r = client.post(
        "/api/auth/register",
        json={"email": "owner@example.com", "password": "secret-pass-1", "firstName": "O", "lastName": "W", "role": "owner"},
    )
    headers = {"Authorization": f"Bearer {r.json['data']['accessToken']}"}
    r = client.post(
        "/api/vehicles",
        json={"vin": VIN, "make": "Honda", "model": "Accord", "year": 2018, "currentMileage": 52000},
        headers=headers,
    )
    return headers, r.json["data"]["id"]


def test_status_reports_simulation(client):
    r = client.get("/api/blockchain/status")
    assert r.status_code == 200
    assert r.json["data"]["network"] == "devnet"
    assert r.json["data"]["simulated"] is True
    assert r.json["data"]["hasWallet"] is False

    r = client.get("/api/blockchain/arweave/status")
    assert r.json["data"]["simulated"] is True


def test_wallet_lifecycle(client, owner):
    headers, _ = owner
    r = client.get("/api/blockchain/wallet", headers=headers)
    assert r.status_code == 404

    r = client.post("/api/blockchain/wallet", headers=headers)
    assert r.status_code == 201
    first_key = r.json["data"]["publicKey"]
    assert r.json["data"]["network"] == "devnet"

    assert client.post("/api/blockchain/wallet", headers=headers).status_code == 409

    r = client.get("/api/blockchain/wallet", headers=headers)
    assert r.json["data"]["publicKey"] == first_key
    assert r.json["data"]["balance"] is None

    r = client.post("/api/blockchain/wallet/reset", headers=headers)
    assert r.status_code == 200
    assert r.json["data"]["publicKey"] != first_key

    with session_scope(client.application) as s:
        wallet = s.query(Wallet).one()
        kp = open_secret_key(wallet.encrypted_secret_key, "test-secret")
        assert str(kp.pubkey()) == wallet.public_key
        with pytest.raises(WalletError):
            open_secret_key(wallet.encrypted_secret_key, "another-secret")


def test_register_and_record_mileage_onchain(client, owner):
    headers, vehicle_id = owner
    r = client.post("/api/blockchain/vehicle/register", json={"vehicleId": vehicle_id}, headers=headers)
    assert r.status_code == 201
    signature = r.json["data"]["signature"]
    assert signature.startswith("sim_")
    assert r.json["data"]["type"] == "REGISTER_VEHICLE"

    r = client.post("/api/blockchain/mileage/record", json={"vehicleId": vehicle_id, "mileage": 52500}, headers=headers)
    assert r.status_code == 201
    assert r.json["data"]["record"]["verified"] is True
    assert r.json["data"]["record"]["blockchainHash"] == r.json["data"]["transaction"]["signature"]

    r = client.post("/api/blockchain/mileage/record", json={"vehicleId": vehicle_id, "mileage": 100}, headers=headers)
    assert r.status_code == 422

    r = client.get(f"/api/blockchain/verify/{signature}", headers=headers)
    assert r.status_code == 200
    assert r.json["data"]["verified"] is True
    assert client.get("/api/blockchain/verify/sim_missing", headers=headers).status_code == 404

    r = client.get(f"/api/blockchain/vehicle/{vehicle_id}/history", headers=headers)
    assert [t["type"] for t in r.json["data"]["transactions"]] == ["UPDATE_MILEAGE", "REGISTER_VEHICLE"]

    r = client.get("/api/blockchain/wallet/transactions", headers=headers)
    assert len(r.json["data"]["transactions"]) == 2

    with session_scope(client.application) as s:
        v = s.get(Vehicle, vehicle_id)
        assert v.blockchain_hash == signature
        assert v.current_mileage == 52500


def test_arweave_upload_is_simulated_and_verifiable(client, owner):
    headers, vehicle_id = owner
    r = client.post(
        "/api/blockchain/arweave/upload",
        data={
            "file": (io.BytesIO(b"service invoice"), "invoice.txt", "text/plain"),
            "vehicleId": str(vehicle_id),
            "documentType": "service_record",
            "metadata": '{"shop": "Main St Garage"}',
        },
        headers=headers,
        content_type="multipart/form-data",
    )
    assert r.status_code == 201, r.json
    doc = r.json["data"]
    assert doc["simulated"] is True
    assert doc["size"] == len(b"service invoice")
    assert {"name": "Meta-shop", "value": "Main St Garage"} in doc["tags"]
    tx_id = doc["transactionId"]

    r = client.get(f"/api/blockchain/arweave/verify/{tx_id}", headers=headers)
    assert r.json["data"]["verified"] is True

    r = client.get(f"/api/blockchain/arweave/{tx_id}", headers=headers)
    assert r.status_code == 200
    assert r.data == b"service invoice"

    r = client.get(f"/api/blockchain/vehicle/{vehicle_id}/history", headers=headers)
    assert [d["transactionId"] for d in r.json["data"]["documents"]] == [tx_id]


def test_arweave_upload_validation(client, owner):
    headers, _ = owner
    r = client.post("/api/blockchain/arweave/upload", data={}, headers=headers, content_type="multipart/form-data")
    assert r.status_code == 400

    r = client.post(
        "/api/blockchain/arweave/upload",
        data={"file": (io.BytesIO(b"x"), "a.txt"), "metadata": "[1, 2]"},
        headers=headers,
        content_type="multipart/form-data",
    )
    assert r.status_code == 400
    assert r.json["message"] == "metadata must be a JSON object."


def test_mileage_history_export(client, owner):
    headers, vehicle_id = owner
    r = client.post("/api/blockchain/arweave/mileage-history", json={"vehicleId": vehicle_id}, headers=headers)
    assert r.status_code == 201
    assert r.json["data"]["documentType"] == "mileage_history"
    with session_scope(client.application) as s:
        assert s.query(ArweaveDocument).count() == 1


def test_simulated_transaction_id_shape():
    tags = [{"name": "Content-Type", "value": "text/plain"}]
    tx_id = simulated_transaction_id(b"abc", tags)
    assert len(tx_id) == 43
    assert "=" not in tx_id
    assert simulated_transaction_id(b"abd", tags) != tx_id


def test_send_memo_gives_up_without_a_trailing_sleep(monkeypatch):
    class _DownRpc:
        def get_latest_blockhash(self):
            raise RPCException("node unavailable")

    sleeps = []
    monkeypatch.setattr(SolanaClient, "_client", lambda self: _DownRpc())
    monkeypatch.setattr(solana_client.time, "sleep", sleeps.append)

    with pytest.raises(SolanaError):
        SolanaClient("https://api.devnet.solana.com").send_memo(Keypair(), {"type": "TEST"}, retries=2)
    assert sleeps == [1, 2]
