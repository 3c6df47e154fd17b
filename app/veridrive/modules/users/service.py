from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import func

from app.veridrive.errors import NotFoundError
from app.veridrive.modules.users.models import Notification
from app.veridrive.utils import utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.veridrive.models import User


def notify(s: "Session", user_id: int, title: str, message: str, *, notification_type: str = "info") -> Notification:
    n = Notification(user_id=user_id, title=title[:200], message=message, notification_type=notification_type)
    s.add(n)
    return n


def list_notifications(s: "Session", user: "User", *, unread_only: bool = False, limit: int = 50) -> dict[str, Any]:
    q = s.query(Notification).filter(Notification.user_id == user.id)
    if unread_only:
        q = q.filter(Notification.is_read.is_(False))
    rows = q.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()
    unread = (
        s.query(func.count(Notification.id))
        .filter(Notification.user_id == user.id, Notification.is_read.is_(False))
        .scalar()
        or 0
    )
    return {"notifications": [n.to_dict() for n in rows], "unreadCount": unread}


def mark_read(s: "Session", user: "User", notification_id: int) -> Notification:
    n = s.get(Notification, notification_id)
    if n is None or n.user_id != user.id:
        raise NotFoundError("Notification not found")
    if not n.is_read:
        n.is_read = True
        n.read_at = utcnow()
    return n


def mark_all_read(s: "Session", user: "User") -> int:
    rows = s.query(Notification).filter(Notification.user_id == user.id, Notification.is_read.is_(False)).all()
    now = utcnow()
    for n in rows:
        n.is_read = True
        n.read_at = now
    return len(rows)


def dashboard(s: "Session", user: "User", role: str | None) -> dict[str, Any]:
    from app.veridrive.modules.installs.models import InstallationRequest
    from app.veridrive.modules.purchase.models import PurchaseRequest
    from app.veridrive.modules.vehicles.models import Vehicle

    out: dict[str, Any] = {"user": user.to_dict(), "activeRole": role}
    if role == "owner":
        vehicles = s.query(Vehicle).filter(Vehicle.owner_id == user.id).all()
        out["vehicles"] = [v.to_dict() for v in vehicles]
        out["stats"] = {
            "vehicleCount": len(vehicles),
            "averageTrustScore": int(sum(v.trust_score for v in vehicles) / len(vehicles) + 0.5) if vehicles else 100,
            "activeFraudAlerts": sum(len(v.active_fraud_alerts) for v in vehicles),
            "listedForSale": sum(1 for v in vehicles if v.is_for_sale),
        }
    elif role == "buyer":
        reqs = (
            s.query(PurchaseRequest)
            .filter(PurchaseRequest.buyer_id == user.id, PurchaseRequest.status.notin_(("sold", "cancelled", "rejected")))
            .order_by(PurchaseRequest.created_at.desc())
            .all()
        )
        out["purchaseRequests"] = [r.to_dict() for r in reqs]
        out["stats"] = {"openPurchaseRequests": len(reqs)}
    elif role == "service":
        installs = (
            s.query(InstallationRequest)
            .filter(InstallationRequest.service_provider_id == user.id)
            .order_by(InstallationRequest.created_at.desc())
            .all()
        )
        out["installs"] = [i.to_dict() for i in installs]
        out["stats"] = {
            "assigned": sum(1 for i in installs if i.status == "assigned"),
            "inProgress": sum(1 for i in installs if i.status == "in_progress"),
            "completed": sum(1 for i in installs if i.status == "completed"),
        }
    out["notifications"] = list_notifications(s, user, unread_only=True, limit=5)
    return out
