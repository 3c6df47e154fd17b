from __future__ import annotations

import json
from io import BytesIO

from flask import Blueprint, current_app, request, send_file

from app.veridrive.db import db_session
from app.veridrive.errors import AuthorizationError, UpstreamError, ValidationError
from app.veridrive.modules.blockchain import service
from app.veridrive.modules.blockchain.arweave_client import ArweaveError
from app.veridrive.modules.blockchain.solana_client import SolanaError
from app.veridrive.modules.blockchain.wallet import WalletError
from app.veridrive.modules.vehicles.service import get_vehicle_or_404, require_owner_or_admin
from app.veridrive.rbac import active_role, current_user, require_auth, require_user
from app.veridrive.utils import json_body, parse_int

bp = Blueprint("blockchain", __name__)


def _chain_failure(action: str, e: Exception) -> UpstreamError:
    current_app.logger.error("%s failed: %s", action, e)
    return UpstreamError(f"{action} failed: {e}")


# ---------- Wallet ----------
@bp.post("/wallet")
@require_auth
def wallet_create():
    s = db_session()
    wallet = service.create_wallet(s, require_user())
    s.commit()
    return {"success": True, "message": "Wallet created", "data": {"publicKey": wallet.public_key, "network": wallet.network}}, 201


@bp.get("/wallet")
@require_auth
def wallet_get():
    return {"success": True, "data": service.wallet_info(db_session(), require_user())}


@bp.post("/wallet/reset")
@require_auth
def wallet_reset():
    s = db_session()
    wallet = service.reset_wallet(s, require_user())
    s.commit()
    return {"success": True, "message": "Wallet reset", "data": {"publicKey": wallet.public_key, "network": wallet.network}}


@bp.get("/wallet/transactions")
@require_auth
def wallet_transactions():
    limit = min(parse_int(request.args.get("limit"), "limit", default=20, minimum=1) or 20, 100)
    return {"success": True, "data": service.wallet_transactions(db_session(), require_user(), limit=limit)}


# ---------- Solana anchoring ----------
@bp.post("/vehicle/register")
@require_auth
def vehicle_register():
    s = db_session()
    user = require_user()
    vehicle = get_vehicle_or_404(s, parse_int(json_body().get("vehicleId"), "vehicleId") or 0)
    require_owner_or_admin(vehicle, user, active_role())
    try:
        tx = service.anchor_registration(s, vehicle, user)
    except (SolanaError, WalletError) as e:
        raise _chain_failure("Vehicle registration anchoring", e)
    s.commit()
    return {"success": True, "message": "Vehicle registered on blockchain", "data": tx.to_dict()}, 201


@bp.post("/mileage/record")
@require_auth
def mileage_record():
    s = db_session()
    user = require_user()
    payload = json_body()
    vehicle = get_vehicle_or_404(s, parse_int(payload.get("vehicleId"), "vehicleId") or 0)
    if vehicle.owner_id != user.id and active_role() not in ("service", "admin"):
        raise AuthorizationError("Access denied. Only the owner or a service provider can record mileage.")
    mileage = parse_int(payload.get("mileage"), "mileage", minimum=0)
    if mileage is None:
        raise ValidationError("mileage is required.")
    source = (payload.get("source") or ("service" if active_role() == "service" else "owner")).strip()
    try:
        tx, rec = service.record_mileage_onchain(s, vehicle, user, mileage, source=source)
    except (SolanaError, WalletError) as e:
        raise _chain_failure("Mileage anchoring", e)
    s.commit()
    return {"success": True, "message": "Mileage recorded on blockchain", "data": {"transaction": tx.to_dict(), "record": rec.to_dict()}}, 201


@bp.get("/verify/<tx_hash>")
@require_auth
def verify(tx_hash: str):
    s = db_session()
    try:
        data = service.verify_transaction(s, tx_hash)
    except SolanaError as e:
        raise _chain_failure("Transaction lookup", e)
    s.commit()
    return {"success": True, "data": data}


@bp.get("/status")
def status():
    client = service.solana_client()
    user = current_user()
    return {
        "success": True,
        "data": {
            "network": client.network,
            "rpcUrl": client.rpc_url,
            "simulated": service.solana_simulated(),
            "hasWallet": bool(user and service.get_wallet(db_session(), user)),
        },
    }


@bp.get("/vehicle/<int:vehicle_id>/history")
@require_auth
def vehicle_history(vehicle_id: int):
    s = db_session()
    vehicle = get_vehicle_or_404(s, vehicle_id)
    gateway = service.arweave_client().gateway_url
    return {
        "success": True,
        "data": {
            "vehicleId": vehicle.id,
            "vin": vehicle.vin,
            "transactions": service.vehicle_transactions(s, vehicle),
            "documents": [d.to_dict(gateway) for d in service.vehicle_documents(s, vehicle)],
        },
    }


# ---------- Arweave ----------
@bp.post("/arweave/upload")
@require_auth
def arweave_upload():
    s = db_session()
    user = require_user()
    f = request.files.get("file")
    if f is None or not f.filename:
        raise ValidationError("A file is required.")
    vehicle = None
    vehicle_id = parse_int(request.form.get("vehicleId"), "vehicleId")
    if vehicle_id is not None:
        vehicle = get_vehicle_or_404(s, vehicle_id)
    metadata = None
    raw_meta = (request.form.get("metadata") or "").strip()
    if raw_meta:
        try:
            metadata = json.loads(raw_meta)
        except ValueError:
            raise ValidationError("metadata must be a JSON object.")
        if not isinstance(metadata, dict):
            raise ValidationError("metadata must be a JSON object.")
    try:
        doc = service.upload_document(
            s,
            user,
            f.read(),
            file_name=f.filename,
            content_type=f.mimetype or "application/octet-stream",
            document_type=(request.form.get("documentType") or "other").strip(),
            vehicle=vehicle,
            metadata=metadata,
        )
    except ArweaveError as e:
        raise _chain_failure("Arweave upload", e)
    s.commit()
    return {"success": True, "message": "Document uploaded", "data": doc.to_dict(service.arweave_client().gateway_url)}, 201


@bp.post("/arweave/mileage-history")
@require_auth
def arweave_mileage_history():
    s = db_session()
    user = require_user()
    vehicle = get_vehicle_or_404(s, parse_int(json_body().get("vehicleId"), "vehicleId") or 0)
    require_owner_or_admin(vehicle, user, active_role())
    try:
        doc = service.upload_mileage_history(s, user, vehicle)
    except ArweaveError as e:
        raise _chain_failure("Arweave upload", e)
    s.commit()
    return {"success": True, "data": doc.to_dict(service.arweave_client().gateway_url)}, 201


@bp.get("/arweave/status")
def arweave_status():
    client = service.arweave_client()
    return {
        "success": True,
        "data": {"gateway": client.gateway_url, "uploadEnabled": client.can_upload, "simulated": not client.can_upload},
    }


@bp.get("/arweave/estimate-cost")
def arweave_estimate_cost():
    size = parse_int(request.args.get("size"), "size", minimum=1)
    if size is None:
        raise ValidationError("size is required.")
    return {"success": True, "data": service.estimate_cost(size)}


@bp.get("/arweave/verify/<tx_id>")
@require_auth
def arweave_verify(tx_id: str):
    try:
        data = service.verify_document(db_session(), tx_id)
    except ArweaveError as e:
        raise _chain_failure("Arweave verification", e)
    return {"success": True, "data": data}


@bp.get("/arweave/<tx_id>")
@require_auth
def arweave_fetch(tx_id: str):
    data, content_type, doc = service.fetch_document(db_session(), tx_id)
    return send_file(
        BytesIO(data),
        mimetype=content_type,
        as_attachment=False,
        download_name=doc.file_name if doc else tx_id,
    )
