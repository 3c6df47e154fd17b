from __future__ import annotations

from flask import Blueprint, request

from app.veridrive.db import db_session
from app.veridrive.modules.users.service import dashboard as build_dashboard
from app.veridrive.modules.users.service import list_notifications, mark_all_read, mark_read
from app.veridrive.rbac import active_role, require_auth, require_user

bp = Blueprint("users", __name__)


@bp.get("/dashboard")
@require_auth
def dashboard():
    return {"success": True, "data": build_dashboard(db_session(), require_user(), active_role())}


@bp.get("/profile")
@require_auth
def profile():
    user = require_user()
    return {"success": True, "data": {"user": user.to_dict(), "activeRole": active_role()}}


@bp.get("/notifications")
@require_auth
def notifications():
    unread_only = (request.args.get("unread") or "").strip().lower() in ("1", "true", "yes")
    return {"success": True, "data": list_notifications(db_session(), require_user(), unread_only=unread_only)}


@bp.patch("/notifications/read-all")
@require_auth
def notifications_read_all():
    s = db_session()
    count = mark_all_read(s, require_user())
    s.commit()
    return {"success": True, "data": {"updated": count}}


@bp.patch("/notifications/<int:notification_id>/read")
@require_auth
def notification_read(notification_id: int):
    s = db_session()
    n = mark_read(s, require_user(), notification_id)
    s.commit()
    return {"success": True, "data": n.to_dict()}
