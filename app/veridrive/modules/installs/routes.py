from __future__ import annotations

from flask import Blueprint, request

from app.veridrive.db import db_session
from app.veridrive.errors import AuthorizationError
from app.veridrive.modules.installs import service
from app.veridrive.rbac import active_role, require_auth, require_role, require_self_or_admin, require_user
from app.veridrive.utils import json_body, page_args, parse_int


def create_blueprint(name: str) -> Blueprint:
    """Installation request handlers; mounted under both the legacy and the versioned prefix."""
    bp = Blueprint(name, __name__)

    # ---------- Collection ----------
    @bp.post("")
    @require_auth
    def create():
        s = db_session()
        req = service.create_request(s, require_user(), json_body())
        s.commit()
        return {"success": True, "message": "Installation request created", "data": req.to_dict()}, 201

    @bp.get("")
    @require_auth
    def list_requests():
        page, limit = page_args()
        data = service.list_requests(
            db_session(),
            require_user(),
            active_role(),
            owner_id=parse_int(request.args.get("ownerId"), "ownerId"),
            status=(request.args.get("status") or "").strip() or None,
            q=(request.args.get("q") or "").strip() or None,
            page=page,
            limit=limit,
        )
        return {"success": True, "data": data}

    @bp.get("/summary")
    @require_auth
    def summary():
        return {"success": True, "data": service.summary(db_session(), require_user(), active_role())}

    @bp.get("/owners/<int:owner_id>/vehicles")
    @require_auth
    def owner_vehicles(owner_id: int):
        require_self_or_admin(owner_id)
        vehicles = service.owner_vehicles(db_session(), owner_id)
        return {"success": True, "data": [v.to_dict() for v in vehicles]}

    @bp.get("/vehicles/search")
    @require_role("admin", "service")
    def vehicles_search():
        vehicles = service.search_vehicles(db_session(), request.args.get("q") or "")
        return {"success": True, "data": [v.to_dict() for v in vehicles]}

    # ---------- Detail ----------
    @bp.get("/<int:request_id>")
    @require_auth
    def detail(request_id: int):
        req = service.get_request_or_404(db_session(), request_id)
        if not service.can_view(req, require_user(), active_role()):
            raise AuthorizationError("Access denied.")
        return {"success": True, "data": req.to_dict()}

    # ---------- Transitions ----------
    @bp.post("/<int:request_id>/assign")
    @require_role("admin")
    def assign(request_id: int):
        s = db_session()
        req = service.assign(s, service.get_request_or_404(s, request_id), require_user(), json_body())
        s.commit()
        return {"success": True, "message": "Service provider assigned", "data": req.to_dict()}

    @bp.post("/<int:request_id>/start")
    @require_role("admin", "service")
    def start(request_id: int):
        s = db_session()
        req = service.start(s, service.get_request_or_404(s, request_id), require_user(), active_role())
        s.commit()
        return {"success": True, "message": "Installation started", "data": req.to_dict()}

    @bp.post("/<int:request_id>/complete")
    @require_role("admin", "service")
    def complete(request_id: int):
        s = db_session()
        req = service.complete(s, service.get_request_or_404(s, request_id), require_user(), active_role(), json_body())
        s.commit()
        return {"success": True, "message": "Installation completed", "data": req.to_dict()}

    @bp.post("/<int:request_id>/cancel")
    @require_auth
    def cancel(request_id: int):
        s = db_session()
        req = service.get_request_or_404(s, request_id)
        req = service.cancel(s, req, require_user(), active_role(), json_body().get("reason"))
        s.commit()
        return {"success": True, "message": "Installation request cancelled", "data": req.to_dict()}

    return bp


bp = create_blueprint("installs")
bp_v1 = create_blueprint("installs_v1")
