from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_

from app.veridrive.audit import record_event
from app.veridrive.constants import VEHICLE_CONDITIONS
from app.veridrive.errors import AuthorizationError, NotFoundError, ValidationError
from app.veridrive.modules.marketplace.models import Listing
from app.veridrive.modules.marketplace.report import generate_vehicle_history_report, market_analysis
from app.veridrive.modules.vehicles.models import Vehicle
from app.veridrive.utils import parse_float, parse_int, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.veridrive.models import User

logger = logging.getLogger(__name__)

CONTACT_PREFERENCES = ("platform", "email", "phone")
STATISTICS_TIMEFRAMES = {"7d": 7, "30d": 30, "90d": 90}


def active_listing_for(s: "Session", vehicle_id: int) -> Listing | None:
    return (
        s.query(Listing)
        .filter(Listing.vehicle_id == vehicle_id, Listing.status == "active")
        .order_by(Listing.created_at.desc(), Listing.id.desc())
        .first()
    )


def _apply_listing_fields(listing: Listing, data: dict[str, Any], *, partial: bool) -> None:
    if "price" in data or not partial:
        price = parse_float(data.get("price"), "price")
        if price is None or price <= 0:
            raise ValidationError("Asking price must be greater than 0.")
        listing.price = price
    if "negotiable" in data:
        listing.negotiable = bool(data.get("negotiable"))
    if "description" in data:
        listing.description = (data.get("description") or "").strip() or None
    if "features" in data:
        features = data.get("features") or []
        if not isinstance(features, list):
            raise ValidationError("features must be a list.")
        listing.features = [str(f).strip() for f in features if str(f).strip()]
    if "condition" in data:
        condition = (data.get("condition") or "").strip().lower()
        if condition not in VEHICLE_CONDITIONS:
            raise ValidationError(f"Invalid condition. Must be one of: {', '.join(VEHICLE_CONDITIONS)}")
        listing.condition = condition
    if "contactPreference" in data:
        pref = (data.get("contactPreference") or "").strip().lower()
        if pref not in CONTACT_PREFERENCES:
            raise ValidationError(f"Invalid contact preference. Must be one of: {', '.join(CONTACT_PREFERENCES)}")
        listing.contact_preference = pref
    if "availableForInspection" in data:
        listing.available_for_inspection = bool(data.get("availableForInspection"))
    if "inspectionLocation" in data:
        listing.inspection_location = (data.get("inspectionLocation") or "").strip() or None


def list_vehicle_for_sale(s: "Session", owner: "User", data: dict[str, Any]) -> dict[str, Any]:
    """
    Put an owned vehicle on the marketplace.

    The history report is generated at listing time and frozen on the listing; buyers
    can always request a fresh one via the history-report endpoint.
    """
    vehicle_id = parse_int(data.get("vehicleId"), "vehicleId")
    vehicle = s.get(Vehicle, vehicle_id) if vehicle_id is not None else None
    if vehicle is None or vehicle.owner_id != owner.id:
        raise NotFoundError("Vehicle not found or not owned by user")
    if vehicle.is_for_sale or active_listing_for(s, vehicle.id) is not None:
        raise ValidationError("Vehicle is already listed for sale", status_code=422)

    listing = Listing(vehicle_id=vehicle.id, seller_id=owner.id, condition=vehicle.condition or "good")
    _apply_listing_fields(listing, data, partial=False)

    report = generate_vehicle_history_report(s, vehicle)
    listing.history_report = report
    s.add(listing)
    vehicle.is_for_sale = True
    vehicle.listing_status = "active"
    s.flush()

    record_event(
        s,
        actor=owner,
        action="marketplace.list",
        entity_type="Vehicle",
        entity_id=str(vehicle.id),
        metadata={"listing_id": listing.id, "price": listing.price},
    )
    logger.info("Vehicle listed for sale (vehicle=%s listing=%s price=%s)", vehicle.id, listing.id, listing.price)
    return {"vehicle": vehicle.to_dict(), "listing": listing.to_dict(), "historyReport": report}


def search_listings(s: "Session", filters: dict[str, Any], *, page: int, limit: int) -> dict[str, Any]:
    q = s.query(Listing).join(Vehicle, Listing.vehicle_id == Vehicle.id).filter(Listing.status == "active")

    make = (filters.get("make") or "").strip()
    if make:
        q = q.filter(func.lower(Vehicle.make) == make.lower())
    model = (filters.get("model") or "").strip()
    if model:
        q = q.filter(func.lower(Vehicle.model) == model.lower())
    year = parse_int(filters.get("year"), "year")
    if year is not None:
        q = q.filter(Vehicle.year == year)
    condition = (filters.get("condition") or "").strip().lower()
    if condition:
        q = q.filter(Listing.condition == condition)
    min_trust = parse_int(filters.get("minTrustScore"), "minTrustScore")
    if min_trust is not None:
        q = q.filter(Vehicle.trust_score >= min_trust)
    min_price = parse_float(filters.get("minPrice"), "minPrice")
    if min_price is not None:
        q = q.filter(Listing.price >= min_price)
    max_price = parse_float(filters.get("maxPrice"), "maxPrice")
    if max_price is not None:
        q = q.filter(Listing.price <= max_price)
    query = (filters.get("query") or "").strip()
    if query:
        like = f"%{query.lower()}%"
        q = q.filter(
            or_(
                func.lower(Vehicle.make).like(like),
                func.lower(Vehicle.model).like(like),
                func.lower(func.coalesce(Listing.description, "")).like(like),
            )
        )

    total = q.count()
    rows = q.order_by(Listing.created_at.desc(), Listing.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return {
        "listings": [{**l.to_dict(), "vehicle": l.vehicle.to_dict()} for l in rows],
        "total": total,
        "page": page,
        "limit": limit,
        "totalPages": (total + limit - 1) // limit,
    }


def _listed_vehicle_or_404(s: "Session", vehicle_id: int) -> tuple[Vehicle, Listing]:
    vehicle = s.get(Vehicle, vehicle_id)
    listing = active_listing_for(s, vehicle_id) if vehicle else None
    if vehicle is None or listing is None:
        raise NotFoundError("Vehicle not found or not for sale")
    return vehicle, listing


def get_vehicle_details(s: "Session", vehicle_id: int, *, include_report: bool = False) -> dict[str, Any]:
    vehicle, listing = _listed_vehicle_or_404(s, vehicle_id)
    listing.views = (listing.views or 0) + 1
    out: dict[str, Any] = {"vehicle": vehicle.to_dict(), "listing": listing.to_dict()}
    if include_report:
        out["historyReport"] = generate_vehicle_history_report(s, vehicle)
    return out


def _owned_listing(s: "Session", vehicle_id: int, owner: "User") -> tuple[Vehicle, Listing]:
    vehicle, listing = _listed_vehicle_or_404(s, vehicle_id)
    if vehicle.owner_id != owner.id:
        raise AuthorizationError("Access denied. Only the owner can modify this listing.")
    return vehicle, listing


def update_listing(s: "Session", vehicle_id: int, owner: "User", data: dict[str, Any]) -> Listing:
    _vehicle, listing = _owned_listing(s, vehicle_id, owner)
    _apply_listing_fields(listing, data, partial=True)
    s.flush()
    record_event(
        s,
        actor=owner,
        action="marketplace.update",
        entity_type="Listing",
        entity_id=str(listing.id),
        metadata={k: data[k] for k in data if k != "vehicleId"},
    )
    return listing


def remove_listing(s: "Session", vehicle_id: int, owner: "User", reason: str | None = None) -> Listing:
    vehicle, listing = _owned_listing(s, vehicle_id, owner)
    listing.status = "removed"
    listing.removal_reason = (reason or "").strip() or None
    listing.removed_at = utcnow()
    vehicle.is_for_sale = False
    vehicle.listing_status = "not_listed"
    s.flush()
    record_event(
        s,
        actor=owner,
        action="marketplace.remove",
        entity_type="Listing",
        entity_id=str(listing.id),
        reason=listing.removal_reason,
    )
    return listing


def vehicle_market_analysis(s: "Session", vehicle_id: int) -> dict[str, Any]:
    vehicle = s.get(Vehicle, vehicle_id)
    if vehicle is None:
        raise NotFoundError("Vehicle not found")
    return market_analysis(s, vehicle)


def vehicle_history_report(s: "Session", vehicle_id: int) -> dict[str, Any]:
    vehicle = s.get(Vehicle, vehicle_id)
    if vehicle is None:
        raise NotFoundError("Vehicle not found")
    return generate_vehicle_history_report(s, vehicle)


def marketplace_statistics(s: "Session", timeframe: str = "30d") -> dict[str, Any]:
    days = STATISTICS_TIMEFRAMES.get(timeframe)
    if days is None:
        raise ValidationError(f"Invalid timeframe. Must be one of: {', '.join(STATISTICS_TIMEFRAMES)}")
    since = utcnow() - timedelta(days=days)
    total = s.query(func.count(Listing.id)).scalar() or 0
    active = s.query(func.count(Listing.id)).filter(Listing.status == "active").scalar() or 0
    recent = s.query(func.count(Listing.id)).filter(Listing.created_at >= since).scalar() or 0
    avg_price = s.query(func.avg(Listing.price)).filter(Listing.status == "active").scalar()
    return {
        "totalListings": total,
        "activeListings": active,
        "recentListings": recent,
        "averagePrice": int(round(avg_price)) if avg_price is not None else 0,
        "timeframe": timeframe,
    }


def mark_listing_sold(s: "Session", vehicle: Vehicle) -> Listing | None:
    listing = active_listing_for(s, vehicle.id)
    if listing is not None:
        listing.status = "sold"
        listing.sold_at = utcnow()
    vehicle.is_for_sale = False
    vehicle.listing_status = "sold"
    return listing
