from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import func

from app.veridrive.constants import TRUST_DEFAULT, TRUST_MAX, TRUST_MIN, TRUST_SOURCES
from app.veridrive.errors import ValidationError
from app.veridrive.modules.trust.models import TrustEvent
from app.veridrive.utils import utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.veridrive.models import User
    from app.veridrive.modules.vehicles.models import Vehicle

logger = logging.getLogger(__name__)

MAX_CLOCK_SKEW = timedelta(minutes=5)


def clamp_score(value: float) -> int:
    return int(max(TRUST_MIN, min(TRUST_MAX, round(value))))


def _latest_event(s: "Session", vehicle_id: int) -> TrustEvent | None:
    return (
        s.query(TrustEvent)
        .filter(TrustEvent.vehicle_id == vehicle_id)
        .order_by(TrustEvent.event_timestamp.desc(), TrustEvent.id.desc())
        .first()
    )


def update_trust_score(
    s: "Session",
    vehicle: "Vehicle",
    change: int,
    reason: str,
    source: str,
    *,
    details: dict[str, Any] | None = None,
    created_by: "User | None" = None,
    event_timestamp: datetime | None = None,
) -> TrustEvent:
    """
    Apply a delta to the vehicle's score, clamped to 0..100, and append the TrustEvent.
    Events must arrive in timestamp order per vehicle.
    """
    if source not in TRUST_SOURCES:
        raise ValidationError(f"Invalid trust source: {source}")
    if not (reason or "").strip():
        raise ValidationError("A reason is required for trust score changes.")
    now = utcnow()
    ts = event_timestamp or now
    if ts > now + MAX_CLOCK_SKEW:
        raise ValidationError(f"Trust event timestamp {ts.isoformat()} is in the future.")
    latest = _latest_event(s, vehicle.id)
    if latest is not None and ts < latest.event_timestamp:
        raise ValidationError(
            f"Out-of-order trust event: {ts.isoformat()} is earlier than the latest event ({latest.event_timestamp.isoformat()})."
        )

    previous = vehicle.trust_score if vehicle.trust_score is not None else TRUST_DEFAULT
    new = clamp_score(previous + change)
    event = TrustEvent(
        vehicle_id=vehicle.id,
        change=int(change),
        previous_score=previous,
        new_score=new,
        reason=reason.strip(),
        source=source,
        details=details,
        created_by_user_id=created_by.id if created_by else None,
        event_timestamp=ts,
    )
    s.add(event)
    vehicle.trust_score = new
    vehicle.last_trust_score_update = ts
    vehicle.trust_history_count = (vehicle.trust_history_count or 0) + 1
    s.flush()
    logger.info("Trust score updated (vehicle=%s %s -> %s, change=%s, source=%s)", vehicle.id, previous, new, change, source)
    return event


def get_current_trust_score(vehicle: "Vehicle") -> dict[str, Any]:
    return {
        "vehicleId": vehicle.id,
        "trustScore": vehicle.trust_score if vehicle.trust_score is not None else TRUST_DEFAULT,
        "lastUpdated": vehicle.last_trust_score_update.isoformat() if vehicle.last_trust_score_update else None,
        "historyCount": vehicle.trust_history_count or 0,
    }


def get_trust_score_history(s: "Session", vehicle_id: int, *, limit: int = 50) -> list[TrustEvent]:
    return (
        s.query(TrustEvent)
        .filter(TrustEvent.vehicle_id == vehicle_id)
        .order_by(TrustEvent.event_timestamp.desc(), TrustEvent.id.desc())
        .limit(limit)
        .all()
    )


def recompute_trust_score(s: "Session", vehicle: "Vehicle") -> int:
    """Replay every event chronologically from the default score, clamping at each step."""
    events = (
        s.query(TrustEvent)
        .filter(TrustEvent.vehicle_id == vehicle.id)
        .order_by(TrustEvent.event_timestamp.asc(), TrustEvent.id.asc())
        .all()
    )
    score = TRUST_DEFAULT
    for ev in events:
        score = clamp_score(score + ev.change)
    vehicle.trust_score = score
    vehicle.trust_history_count = len(events)
    if events:
        vehicle.last_trust_score_update = events[-1].event_timestamp
    return score


def seed_trust_score(s: "Session", vehicle: "Vehicle", initial: int, *, created_by: "User | None" = None) -> TrustEvent:
    if not TRUST_MIN <= initial <= TRUST_MAX:
        raise ValidationError("Initial trust score must be between 0 and 100.")
    return update_trust_score(
        s,
        vehicle,
        initial - TRUST_DEFAULT,
        "Initial trust score",
        "manual",
        details={"seeded": True},
        created_by=created_by,
    )


def calculate_trust_score(vehicle: "Vehicle", now: datetime | None = None) -> int:
    """Static score from alerts, verification and recent verified services (not event-sourced)."""
    now = now or utcnow()
    score = 100
    active = vehicle.active_fraud_alerts
    score -= 10 * len(active)
    score -= 20 * sum(1 for a in active if a.severity == "critical")
    if vehicle.verification_status == "verified":
        score += 10
    cutoff = now - timedelta(days=365)
    recent_services = sum(1 for r in vehicle.service_records if r.verified and r.service_date >= cutoff)
    score += min(recent_services * 2, 10)
    return clamp_score(score)


def user_trust_summary(s: "Session", user_id: int) -> dict[str, Any]:
    from app.veridrive.modules.vehicles.models import Vehicle

    vehicles = s.query(Vehicle).filter(Vehicle.owner_id == user_id).all()
    if not vehicles:
        return {
            "userId": user_id,
            "trustScore": TRUST_DEFAULT,
            "vehicleCount": 0,
            "recentEvents": [],
            "positiveEvents": 0,
            "negativeEvents": 0,
        }
    ids = [v.id for v in vehicles]
    avg = sum(v.trust_score if v.trust_score is not None else TRUST_DEFAULT for v in vehicles) / len(vehicles)
    recent = (
        s.query(TrustEvent)
        .filter(TrustEvent.vehicle_id.in_(ids))
        .order_by(TrustEvent.event_timestamp.desc(), TrustEvent.id.desc())
        .limit(10)
        .all()
    )
    positive = s.query(func.count(TrustEvent.id)).filter(TrustEvent.vehicle_id.in_(ids), TrustEvent.change > 0).scalar() or 0
    negative = s.query(func.count(TrustEvent.id)).filter(TrustEvent.vehicle_id.in_(ids), TrustEvent.change < 0).scalar() or 0
    return {
        "userId": user_id,
        "trustScore": int(avg + 0.5),
        "vehicleCount": len(vehicles),
        "recentEvents": [e.to_dict() for e in recent],
        "positiveEvents": positive,
        "negativeEvents": negative,
    }
