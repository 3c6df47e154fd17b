from __future__ import annotations

from flask import Blueprint, request

from app.veridrive.db import db_session
from app.veridrive.modules.purchase import service
from app.veridrive.rbac import active_role, require_auth, require_role, require_user
from app.veridrive.utils import json_body

bp = Blueprint("purchase", __name__)


@bp.post("/request")
@require_role("buyer")
def create_request():
    s = db_session()
    req = service.create_request(s, require_user(), json_body())
    s.commit()
    return {"success": True, "message": "Purchase request sent to seller", "data": req.to_dict()}, 201


@bp.get("/requests")
@require_auth
def list_requests():
    side = (request.args.get("role") or active_role() or "buyer").strip().lower()
    if side not in ("buyer", "seller"):
        side = "seller" if active_role() == "owner" else "buyer"
    rows = service.list_requests(db_session(), require_user(), side)
    return {"success": True, "data": [r.to_dict() for r in rows], "count": len(rows)}


@bp.get("/<int:request_id>")
@require_auth
def detail(request_id: int):
    req = service.get_request_or_404(db_session(), request_id)
    service.require_party(req, require_user(), active_role())
    return {"success": True, "data": req.to_dict()}


@bp.post("/<int:request_id>/respond")
@require_auth
def respond(request_id: int):
    s = db_session()
    req = service.respond(s, service.get_request_or_404(s, request_id), require_user(), json_body())
    s.commit()
    return {"success": True, "data": req.to_dict()}


@bp.post("/<int:request_id>/mock-fund")
@require_role("buyer")
def mock_fund(request_id: int):
    s = db_session()
    req = service.get_request_or_404(s, request_id)
    escrow, created = service.mock_fund(s, req, require_user(), json_body(), request.headers.get("Idempotency-Key"))
    s.commit()
    return {"success": True, "data": {"purchaseRequest": req.to_dict(), "escrow": escrow.to_dict()}}, 201 if created else 200


@bp.post("/<int:request_id>/verify")
@require_auth
def verify(request_id: int):
    s = db_session()
    req = service.verify(s, service.get_request_or_404(s, request_id), require_user())
    s.commit()
    return {"success": True, "data": req.to_dict()}


@bp.post("/<int:request_id>/init-transfer")
@require_auth
def init_transfer(request_id: int):
    s = db_session()
    req = service.init_transfer(s, service.get_request_or_404(s, request_id), require_user())
    s.commit()
    return {"success": True, "data": req.to_dict()}


@bp.post("/<int:request_id>/confirm-transfer")
@require_auth
def confirm_transfer(request_id: int):
    s = db_session()
    req = service.confirm_transfer(s, service.get_request_or_404(s, request_id), require_user())
    s.commit()
    return {"success": True, "message": "Ownership transferred", "data": req.to_dict()}
