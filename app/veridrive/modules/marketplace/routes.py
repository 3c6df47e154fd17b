from __future__ import annotations

from flask import Blueprint, request

from app.veridrive.db import db_session
from app.veridrive.modules.marketplace.service import (
    get_vehicle_details,
    list_vehicle_for_sale,
    marketplace_statistics,
    remove_listing,
    search_listings,
    update_listing,
    vehicle_history_report,
    vehicle_market_analysis,
)
from app.veridrive.rbac import require_auth, require_user
from app.veridrive.utils import json_body, page_args

bp = Blueprint("marketplace", __name__)


def _truthy(raw: str | None) -> bool:
    return (raw or "").strip().lower() in ("1", "true", "yes")


# ---------- Listing ----------
@bp.post("/list-vehicle")
@require_auth
def list_vehicle():
    s = db_session()
    out = list_vehicle_for_sale(s, require_user(), json_body())
    s.commit()
    return {"success": True, "message": "Vehicle listed for sale successfully", "data": out}, 201


@bp.get("/listings")
def listings():
    page, limit = page_args(default_limit=20, max_limit=100)
    data = search_listings(db_session(), request.args.to_dict(), page=page, limit=limit)
    return {"success": True, "data": data}


@bp.get("/search")
def search():
    page, limit = page_args(default_limit=20, max_limit=100)
    filters = {"query": request.args.get("query") or request.args.get("q")}
    data = search_listings(db_session(), filters, page=page, limit=limit)
    return {"success": True, "data": data}


@bp.get("/statistics")
def statistics():
    timeframe = (request.args.get("timeframe") or "30d").strip()
    return {"success": True, "data": marketplace_statistics(db_session(), timeframe)}


# ---------- Vehicle ----------
@bp.get("/vehicle/<int:vehicle_id>")
def vehicle_details(vehicle_id: int):
    s = db_session()
    data = get_vehicle_details(s, vehicle_id, include_report=_truthy(request.args.get("includeHistoryReport")))
    s.commit()
    return {"success": True, "data": data}


@bp.put("/vehicle/<int:vehicle_id>/listing")
@require_auth
def vehicle_listing_update(vehicle_id: int):
    s = db_session()
    listing = update_listing(s, vehicle_id, require_user(), json_body())
    s.commit()
    return {"success": True, "message": "Listing updated successfully", "data": listing.to_dict()}


@bp.delete("/vehicle/<int:vehicle_id>/listing")
@require_auth
def vehicle_listing_remove(vehicle_id: int):
    s = db_session()
    listing = remove_listing(s, vehicle_id, require_user(), json_body().get("reason"))
    s.commit()
    return {"success": True, "message": "Vehicle removed from marketplace", "data": listing.to_dict()}


@bp.get("/vehicle/<int:vehicle_id>/market-analysis")
def vehicle_market(vehicle_id: int):
    return {"success": True, "data": vehicle_market_analysis(db_session(), vehicle_id)}


@bp.get("/vehicle/<int:vehicle_id>/history-report")
def vehicle_report(vehicle_id: int):
    return {"success": True, "data": vehicle_history_report(db_session(), vehicle_id)}
