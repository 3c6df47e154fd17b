from __future__ import annotations

import hashlib
import json
import logging
import secrets
from typing import TYPE_CHECKING, Any

from flask import current_app

from app.veridrive.audit import record_event
from app.veridrive.constants import APP_NAME, APP_VERSION
from app.veridrive.errors import ConflictError, NotFoundError, ValidationError
from app.veridrive.modules.blockchain.arweave_client import ArweaveClient, ArweaveError, simulated_transaction_id
from app.veridrive.modules.blockchain.models import ArweaveDocument, BlockchainTransaction, Wallet
from app.veridrive.modules.blockchain.solana_client import (
    SolanaClient,
    SolanaError,
    mileage_memo,
    registration_memo,
    telemetry_batch_memo,
    transfer_memo,
)
from app.veridrive.modules.blockchain.wallet import WalletError, new_keypair, open_secret_key, seal_secret_key
from app.veridrive.storage import storage_from_config
from app.veridrive.utils import iso, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from solders.keypair import Keypair
    from app.veridrive.models import User
    from app.veridrive.modules.telemetry.models import TelemetryBatch
    from app.veridrive.modules.vehicles.models import Vehicle

logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = 10 * 1024 * 1024


def solana_client() -> SolanaClient:
    return SolanaClient(rpc_url=current_app.config["SOLANA_RPC_URL"])


def arweave_client() -> ArweaveClient:
    cfg = current_app.config
    return ArweaveClient(host=cfg["ARWEAVE_HOST"], protocol=cfg["ARWEAVE_PROTOCOL"], upload_url=cfg["ARWEAVE_UPLOAD_URL"])


def solana_simulated() -> bool:
    return bool(current_app.config.get("SIMULATE_SOLANA"))


def _wallet_secret() -> str:
    key = current_app.config.get("WALLET_ENCRYPTION_KEY") or ""
    if key:
        return key
    if (current_app.config.get("ENV") or "").lower() in ("prod", "production"):
        raise WalletError("WALLET_ENCRYPTION_KEY must be set in production.")
    return current_app.config["SECRET_KEY"]


# --- wallets ---------------------------------------------------------------


def get_wallet(s: "Session", user: "User") -> Wallet | None:
    return s.query(Wallet).filter(Wallet.user_id == user.id).one_or_none()


def create_wallet(s: "Session", user: "User") -> Wallet:
    if get_wallet(s, user):
        raise ConflictError("Wallet already exists for this user.")
    kp = new_keypair()
    wallet = Wallet(
        user_id=user.id,
        public_key=str(kp.pubkey()),
        encrypted_secret_key=seal_secret_key(kp, _wallet_secret()),
        network=solana_client().network,
    )
    s.add(wallet)
    s.flush()
    record_event(s, actor=user, action="wallet.create", entity_type="Wallet", entity_id=str(wallet.id), metadata={"publicKey": wallet.public_key})
    return wallet


def reset_wallet(s: "Session", user: "User") -> Wallet:
    """Replace the keypair (e.g. after WALLET_ENCRYPTION_KEY rotation made the old secret unreadable)."""
    wallet = get_wallet(s, user)
    if wallet is None:
        return create_wallet(s, user)
    old = wallet.public_key
    kp = new_keypair()
    wallet.public_key = str(kp.pubkey())
    wallet.encrypted_secret_key = seal_secret_key(kp, _wallet_secret())
    record_event(s, actor=user, action="wallet.reset", entity_type="Wallet", entity_id=str(wallet.id), metadata={"old": old, "new": wallet.public_key})
    return wallet


def wallet_keypair(wallet: Wallet) -> "Keypair":
    return open_secret_key(wallet.encrypted_secret_key, _wallet_secret())


def wallet_info(s: "Session", user: "User") -> dict[str, Any]:
    wallet = get_wallet(s, user)
    if wallet is None:
        raise NotFoundError("No wallet found for this user.")
    balance = None
    if not solana_simulated():
        try:
            balance = solana_client().get_balance(wallet.public_key)
        except SolanaError as e:
            logger.warning("Balance lookup failed for wallet %s: %s", wallet.public_key, e)
    return {"publicKey": wallet.public_key, "network": wallet.network, "balance": balance, "createdAt": iso(wallet.created_at)}


# --- anchoring -------------------------------------------------------------


def anchor(s: "Session", *, user: "User | None", vehicle: "Vehicle | None", tx_type: str, memo: dict[str, Any]) -> BlockchainTransaction:
    """
    Anchor a memo on Solana with the user's wallet. Simulated (sim_ signature) when
    SIMULATE_SOLANA is on or the user has no wallet. Raises SolanaError/WalletError on chain failure.
    """
    client = solana_client()
    wallet = get_wallet(s, user) if user is not None else None
    simulated = solana_simulated() or wallet is None
    if simulated:
        signature = f"sim_{secrets.token_hex(24)}"
        logger.info("Simulated %s anchor (vehicle=%s signature=%s)", tx_type, vehicle.id if vehicle else None, signature)
    else:
        signature = client.send_memo(wallet_keypair(wallet), memo)

    tx = BlockchainTransaction(
        signature=signature,
        user_id=user.id if user else None,
        vehicle_id=vehicle.id if vehicle else None,
        tx_type=tx_type,
        memo=memo,
        status="confirmed" if simulated else "submitted",
        network=client.network,
        simulated=simulated,
    )
    s.add(tx)
    s.flush()
    return tx


def anchor_mileage(
    s: "Session",
    vehicle: "Vehicle",
    *,
    previous_mileage: int,
    new_mileage: int,
    source: str,
    user: "User | None",
) -> BlockchainTransaction:
    memo = mileage_memo(
        network=solana_client().network,
        vehicle_id=str(vehicle.id),
        vin=vehicle.vin,
        previous_mileage=previous_mileage,
        new_mileage=new_mileage,
        source=source,
        recorded_by=str(user.id) if user else None,
        timestamp=iso(utcnow()) or "",
    )
    return anchor(s, user=user or vehicle.owner, vehicle=vehicle, tx_type="UPDATE_MILEAGE", memo=memo)


def record_mileage_onchain(s: "Session", vehicle: "Vehicle", user: "User", mileage: int, *, source: str = "owner") -> tuple[BlockchainTransaction, Any]:
    """Anchor an odometer reading, then append the verified history row carrying its signature."""
    from app.veridrive.modules.vehicles.service import add_mileage_record

    if mileage < vehicle.current_mileage:
        logger.warning("On-chain mileage rollback refused (vehicle=%s current=%s reported=%s)", vehicle.id, vehicle.current_mileage, mileage)
        raise ValidationError(
            f"Mileage cannot decrease (current {vehicle.current_mileage}, reported {mileage}).",
            status_code=422,
        )
    previous = vehicle.current_mileage
    tx = anchor_mileage(s, vehicle, previous_mileage=previous, new_mileage=mileage, source=source, user=user)
    rec = add_mileage_record(s, vehicle, mileage, source=source, user=user, verified=True)
    rec.blockchain_hash = tx.signature
    vehicle.current_mileage = mileage
    vehicle.last_verified_mileage = mileage
    vehicle.last_mileage_update = rec.recorded_at
    s.flush()
    record_event(
        s,
        actor=user,
        action="blockchain.mileage",
        entity_type="Vehicle",
        entity_id=str(vehicle.id),
        metadata={"mileage": mileage, "signature": tx.signature},
    )
    return tx, rec


def anchor_registration(s: "Session", vehicle: "Vehicle", user: "User") -> BlockchainTransaction:
    memo = registration_memo(
        network=solana_client().network,
        vehicle_id=str(vehicle.id),
        vin=vehicle.vin,
        vehicle_number=vehicle.vehicle_number,
        mileage=vehicle.current_mileage,
        timestamp=iso(utcnow()) or "",
    )
    tx = anchor(s, user=user, vehicle=vehicle, tx_type="REGISTER_VEHICLE", memo=memo)
    vehicle.blockchain_hash = tx.signature
    return tx


def anchor_transfer(s: "Session", vehicle: "Vehicle", *, seller: "User", buyer: "User", price: float) -> BlockchainTransaction:
    memo = transfer_memo(
        network=solana_client().network,
        vehicle_id=str(vehicle.id),
        vin=vehicle.vin,
        from_owner=str(seller.id),
        to_owner=str(buyer.id),
        price=price,
        timestamp=iso(utcnow()) or "",
    )
    return anchor(s, user=seller, vehicle=vehicle, tx_type="TRANSFER_OWNERSHIP", memo=memo)


def anchor_telemetry_batch(s: "Session", vehicle: "Vehicle", batch: "TelemetryBatch") -> BlockchainTransaction:
    memo = telemetry_batch_memo(
        network=solana_client().network,
        vehicle_id=str(vehicle.id),
        vin=vehicle.vin,
        batch_date=batch.batch_date.isoformat(),
        merkle_root=batch.merkle_root,
        segments=batch.segments_count,
        distance=batch.total_distance,
        timestamp=iso(utcnow()) or "",
    )
    return anchor(s, user=vehicle.owner, vehicle=vehicle, tx_type="TELEMETRY_BATCH", memo=memo)


def verify_transaction(s: "Session", signature: str) -> dict[str, Any]:
    tx = s.query(BlockchainTransaction).filter(BlockchainTransaction.signature == signature).one_or_none()
    if signature.startswith("sim_"):
        if tx is None:
            raise NotFoundError("Transaction not found")
        return {"verified": True, "simulated": True, "transaction": tx.to_dict()}

    onchain = None
    if not solana_simulated():
        onchain = solana_client().get_transaction(signature)
    if tx is None and onchain is None:
        raise NotFoundError("Transaction not found")
    if tx is not None and onchain is not None and tx.status != "confirmed":
        tx.status = "confirmed"
    return {
        "verified": onchain is not None,
        "simulated": False,
        "transaction": tx.to_dict() if tx else None,
        "onChain": onchain,
    }


def wallet_transactions(s: "Session", user: "User", *, limit: int = 20) -> dict[str, Any]:
    rows = (
        s.query(BlockchainTransaction)
        .filter(BlockchainTransaction.user_id == user.id)
        .order_by(BlockchainTransaction.created_at.desc(), BlockchainTransaction.id.desc())
        .limit(limit)
        .all()
    )
    onchain: list[dict[str, Any]] = []
    wallet = get_wallet(s, user)
    if wallet is not None and not solana_simulated():
        try:
            onchain = solana_client().recent_signatures(wallet.public_key, limit=limit)
        except SolanaError as e:
            logger.warning("Signature listing failed for wallet %s: %s", wallet.public_key, e)
    return {"transactions": [r.to_dict() for r in rows], "onChain": onchain}


def vehicle_transactions(s: "Session", vehicle: "Vehicle") -> list[dict[str, Any]]:
    rows = (
        s.query(BlockchainTransaction)
        .filter(BlockchainTransaction.vehicle_id == vehicle.id)
        .order_by(BlockchainTransaction.created_at.desc(), BlockchainTransaction.id.desc())
        .all()
    )
    return [r.to_dict() for r in rows]


# --- arweave ---------------------------------------------------------------


def _tags(
    *,
    content_type: str,
    file_name: str,
    vehicle: "Vehicle | None",
    document_type: str,
    user: "User",
    metadata: dict[str, Any] | None,
) -> list[dict[str, str]]:
    tags = [
        {"name": "Content-Type", "value": content_type},
        {"name": "File-Name", "value": file_name},
        {"name": "App-Name", "value": APP_NAME},
        {"name": "App-Version", "value": APP_VERSION},
        {"name": "Upload-Timestamp", "value": iso(utcnow()) or ""},
    ]
    if vehicle is not None:
        tags.append({"name": "Vehicle-ID", "value": str(vehicle.id)})
        tags.append({"name": "VIN", "value": vehicle.vin})
    tags.append({"name": "Document-Type", "value": document_type})
    tags.append({"name": "Uploaded-By", "value": str(user.id)})
    for key, value in (metadata or {}).items():
        tags.append({"name": f"Meta-{key}", "value": str(value)})
    return tags


def upload_document(
    s: "Session",
    user: "User",
    data: bytes,
    *,
    file_name: str,
    content_type: str,
    document_type: str = "other",
    vehicle: "Vehicle | None" = None,
    metadata: dict[str, Any] | None = None,
) -> ArweaveDocument:
    if not data:
        raise ValidationError("File is empty.")
    if len(data) > MAX_UPLOAD_BYTES:
        raise ValidationError("File exceeds the 10MB upload limit.")

    tags = _tags(content_type=content_type, file_name=file_name, vehicle=vehicle, document_type=document_type, user=user, metadata=metadata)
    client = arweave_client()
    simulated = not client.can_upload
    tx_id = simulated_transaction_id(data, tags) if simulated else client.upload(data, tags)

    # Keep a local copy keyed by transaction id; simulated uploads are served from it.
    storage_key = f"arweave/{tx_id}"
    storage_from_config(current_app.config).put_bytes(storage_key, data, content_type=content_type)

    doc = ArweaveDocument(
        transaction_id=tx_id,
        vehicle_id=vehicle.id if vehicle else None,
        uploaded_by_user_id=user.id,
        document_type=document_type,
        file_name=file_name,
        content_type=content_type,
        size_bytes=len(data),
        sha256=hashlib.sha256(data).hexdigest(),
        tags=tags,
        storage_key=storage_key,
        simulated=simulated,
    )
    s.add(doc)
    s.flush()
    record_event(
        s,
        actor=user,
        action="arweave.upload",
        entity_type="ArweaveDocument",
        entity_id=tx_id,
        metadata={"fileName": file_name, "size": len(data), "simulated": simulated},
    )
    return doc


def upload_mileage_history(s: "Session", user: "User", vehicle: "Vehicle") -> ArweaveDocument:
    payload = {
        "vehicleId": vehicle.id,
        "vin": vehicle.vin,
        "currentMileage": vehicle.current_mileage,
        "exportedAt": iso(utcnow()),
        "mileageHistory": [m.to_dict() for m in vehicle.mileage_history],
    }
    data = json.dumps(payload, sort_keys=True).encode("utf-8")
    return upload_document(
        s,
        user,
        data,
        file_name=f"mileage-history-{vehicle.vin}.json",
        content_type="application/json",
        document_type="mileage_history",
        vehicle=vehicle,
        metadata={"records": len(vehicle.mileage_history)},
    )


def _document(s: "Session", tx_id: str) -> ArweaveDocument | None:
    return s.query(ArweaveDocument).filter(ArweaveDocument.transaction_id == tx_id).one_or_none()


def fetch_document(s: "Session", tx_id: str) -> tuple[bytes, str, ArweaveDocument | None]:
    doc = _document(s, tx_id)
    if doc is not None and doc.storage_key:
        return storage_from_config(current_app.config).get_bytes(doc.storage_key), doc.content_type, doc
    try:
        data, content_type = arweave_client().fetch(tx_id)
    except ArweaveError as e:
        raise NotFoundError(str(e))
    return data, content_type, doc


def verify_document(s: "Session", tx_id: str) -> dict[str, Any]:
    doc = _document(s, tx_id)
    if doc is not None and doc.simulated:
        data = storage_from_config(current_app.config).get_bytes(doc.storage_key or "")
        intact = hashlib.sha256(data).hexdigest() == doc.sha256
        return {"transactionId": tx_id, "status": "confirmed" if intact else "corrupt", "verified": intact, "simulated": True}
    status = arweave_client().transaction_status(tx_id)
    if doc is None and status["status"] == "not_found":
        raise NotFoundError("Arweave transaction not found")
    return {"transactionId": tx_id, "verified": status["confirmed"], "simulated": False, **status}


def vehicle_documents(s: "Session", vehicle: "Vehicle") -> list[ArweaveDocument]:
    return (
        s.query(ArweaveDocument)
        .filter(ArweaveDocument.vehicle_id == vehicle.id)
        .order_by(ArweaveDocument.created_at.desc())
        .all()
    )


def estimate_cost(size_bytes: int) -> dict[str, Any]:
    if size_bytes <= 0:
        raise ValidationError("size must be a positive integer.")
    client = arweave_client()
    try:
        cost = client.estimate_cost_ar(size_bytes)
        estimated = True
    except ArweaveError as e:
        logger.warning("Arweave cost estimate failed (using 0 AR fallback): %s", e)
        cost, estimated = 0.0, False
    return {"size": size_bytes, "costAR": cost, "estimated": estimated}
