"""
Buyer/seller purchase flow:

    pending_seller -> accepted | rejected | counter_offer
    accepted | counter_offer -> escrow_funded (mock escrow, idempotent on Idempotency-Key)
    escrow_funded -> verification_passed | verification_failed
    verification_passed -> transfer_pending -> sold

Escrow is a mock; no funds move. The ownership transfer is anchored on Solana.
"""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from flask import current_app

from app.veridrive.audit import record_event
from app.veridrive.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from app.veridrive.models import User
from app.veridrive.modules.blockchain.models import ArweaveDocument, BlockchainTransaction
from app.veridrive.modules.blockchain.service import anchor_transfer
from app.veridrive.modules.blockchain.solana_client import SolanaError
from app.veridrive.modules.blockchain.wallet import WalletError
from app.veridrive.modules.marketplace.service import active_listing_for, mark_listing_sold
from app.veridrive.modules.purchase.models import Escrow, PurchaseRequest, SaleRecord
from app.veridrive.modules.telemetry.service import last_telemetry
from app.veridrive.modules.users.service import notify
from app.veridrive.modules.vehicles.models import OwnershipHistory, Vehicle
from app.veridrive.utils import iso, parse_float, parse_int, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

CLOSED_STATUSES = ("rejected", "sold", "cancelled", "verification_failed")
RESPOND_ACTIONS = ("accept", "reject", "counter")


def _require_status(req: PurchaseRequest, allowed: tuple[str, ...], action: str) -> None:
    if req.status not in allowed:
        raise ValidationError(f"Cannot {action} a purchase request with status '{req.status}'.")


def get_request_or_404(s: "Session", request_id: int) -> PurchaseRequest:
    req = s.get(PurchaseRequest, request_id)
    if req is None:
        raise NotFoundError("Purchase request not found")
    return req


def require_party(req: PurchaseRequest, user: User, role: str | None) -> None:
    if role == "admin" or user.id in (req.buyer_id, req.seller_id):
        return
    raise AuthorizationError("Access denied. You are not a party to this purchase.")


def _require_buyer(req: PurchaseRequest, user: User) -> None:
    if req.buyer_id != user.id:
        raise AuthorizationError("Only the buyer can perform this action.")


def _require_seller(req: PurchaseRequest, user: User) -> None:
    if req.seller_id != user.id:
        raise AuthorizationError("Only the seller can perform this action.")


def _require_still_for_sale(s: "Session", req: PurchaseRequest, vehicle: Vehicle) -> None:
    """The seller must still own the vehicle and the request's listing must still be active."""
    listing = active_listing_for(s, vehicle.id)
    if vehicle.owner_id != req.seller_id or listing is None or listing.id != req.listing_id:
        logger.warning(
            "Purchase request %s is stale (vehicle=%s owner=%s seller=%s)", req.id, vehicle.id, vehicle.owner_id, req.seller_id
        )
        raise ConflictError("Vehicle is no longer for sale by this seller.")


def _close_competing_requests(s: "Session", sold: PurchaseRequest, now) -> list[PurchaseRequest]:
    """Cancel every other open request on the sold vehicle and refund their funded escrows."""
    others = (
        s.query(PurchaseRequest)
        .filter(
            PurchaseRequest.vehicle_id == sold.vehicle_id,
            PurchaseRequest.id != sold.id,
            PurchaseRequest.status.notin_(CLOSED_STATUSES),
        )
        .all()
    )
    for other in others:
        other.status = "cancelled"
        for escrow in other.escrows:
            if escrow.status == "funded":
                escrow.status = "refunded"
                escrow.released_at = now
        notify(s, other.buyer_id, "Purchase request closed", f"The vehicle in request #{other.id} was sold to another buyer.")
    return others


def create_request(s: "Session", buyer: User, payload: dict[str, Any]) -> PurchaseRequest:
    vehicle_id = parse_int(payload.get("vehicleId"), "vehicleId")
    if vehicle_id is None:
        raise ValidationError("vehicleId is required.")
    vehicle = s.get(Vehicle, vehicle_id)
    listing = active_listing_for(s, vehicle_id) if vehicle else None
    if vehicle is None or listing is None:
        raise NotFoundError("Vehicle not found or not for sale")
    price = parse_float(payload.get("price", payload.get("offerPrice")), "price")
    if price is None or price <= 0:
        raise ValidationError("Offer price must be greater than 0.")
    if vehicle.owner_id == buyer.id:
        raise ValidationError("You cannot purchase your own vehicle.")
    duplicate = (
        s.query(PurchaseRequest)
        .filter(
            PurchaseRequest.vehicle_id == vehicle.id,
            PurchaseRequest.buyer_id == buyer.id,
            PurchaseRequest.status.notin_(CLOSED_STATUSES),
        )
        .first()
    )
    if duplicate is not None:
        raise ConflictError("You already have an open purchase request for this vehicle.", details={"requestId": duplicate.id})

    req = PurchaseRequest(
        listing_id=listing.id,
        vehicle_id=vehicle.id,
        buyer_id=buyer.id,
        seller_id=vehicle.owner_id,
        price=price,
        message=(payload.get("message") or "").strip() or None,
        status="pending_seller",
    )
    s.add(req)
    s.flush()
    notify(s, req.seller_id, "New purchase request", f"{buyer.full_name} offered {price:.2f} for your {vehicle.make} {vehicle.model}.")
    record_event(
        s,
        actor=buyer,
        action="purchase.request",
        entity_type="PurchaseRequest",
        entity_id=str(req.id),
        metadata={"vehicle_id": vehicle.id, "price": price},
    )
    return req


def respond(s: "Session", req: PurchaseRequest, seller: User, payload: dict[str, Any]) -> PurchaseRequest:
    _require_seller(req, seller)
    _require_status(req, ("pending_seller",), "respond to")
    action = (payload.get("action") or "").strip().lower()
    if action not in RESPOND_ACTIONS:
        raise ValidationError(f"Invalid action. Must be one of: {', '.join(RESPOND_ACTIONS)}")

    if action == "counter":
        counter = parse_float(payload.get("counterPrice"), "counterPrice")
        if counter is None or counter <= 0:
            raise ValidationError("counterPrice must be greater than 0.")
        req.counter_price = counter
        req.status = "counter_offer"
    elif action == "accept":
        req.status = "accepted"
    else:
        req.status = "rejected"
    req.seller_message = (payload.get("message") or "").strip() or None
    s.flush()

    notify(s, req.buyer_id, "Purchase request updated", f"The seller responded to request #{req.id}: {req.status}.")
    record_event(
        s,
        actor=seller,
        action=f"purchase.{action}",
        entity_type="PurchaseRequest",
        entity_id=str(req.id),
        metadata={"counter_price": req.counter_price} if action == "counter" else None,
    )
    return req


def mock_fund(
    s: "Session",
    req: PurchaseRequest,
    buyer: User,
    payload: dict[str, Any],
    idempotency_key: str | None,
) -> tuple[Escrow, bool]:
    """Returns (escrow, created). A repeated Idempotency-Key returns the escrow it created."""
    _require_buyer(req, buyer)
    key = (idempotency_key or "").strip() or None
    if key:
        existing = s.query(Escrow).filter(Escrow.idempotency_key == key).one_or_none()
        if existing is not None:
            if existing.purchase_request_id != req.id:
                raise ConflictError("Idempotency-Key was already used for a different purchase request.")
            return existing, False

    _require_status(req, ("accepted", "counter_offer"), "fund")
    amount = parse_float(payload.get("amount"), "amount")
    if amount is None:
        amount = req.agreed_price
    if amount <= 0:
        raise ValidationError("Escrow amount must be greater than 0.")

    now = utcnow()
    escrow = Escrow(purchase_request_id=req.id, amount=amount, status="funded", idempotency_key=key, funded_at=now)
    s.add(escrow)
    req.escrows.append(escrow)
    req.status = "escrow_funded"
    s.flush()
    notify(s, req.seller_id, "Escrow funded", f"The buyer funded escrow for request #{req.id}.")
    record_event(
        s,
        actor=buyer,
        action="purchase.fund",
        entity_type="PurchaseRequest",
        entity_id=str(req.id),
        metadata={"amount": amount, "idempotency_key": key},
    )
    return escrow, True


def _verification_checks(s: "Session", vehicle: Vehicle) -> dict[str, Any]:
    cfg = current_app.config
    threshold = int(cfg["TRUST_SCORE_THRESHOLD"])
    now = utcnow()

    last = last_telemetry(s, vehicle.id)
    if last is not None:
        age = now - last.received_at
        telemetry_ok = age <= timedelta(hours=int(cfg["TELEMETRY_MAX_AGE_HOURS"]))
        telemetry = {"passed": telemetry_ok, "lastTelemetryAt": iso(last.received_at), "ageHours": round(age.total_seconds() / 3600, 1)}
    else:
        telemetry = {"passed": vehicle.trust_score >= 50, "lastTelemetryAt": None, "reason": "No telemetry on record"}

    anchored = (
        s.query(BlockchainTransaction.signature)
        .filter(
            BlockchainTransaction.vehicle_id == vehicle.id,
            BlockchainTransaction.tx_type.in_(("UPDATE_MILEAGE", "REGISTER_VEHICLE")),
        )
        .first()
    )
    documents = s.query(ArweaveDocument.id).filter(ArweaveDocument.vehicle_id == vehicle.id).count()

    return {
        "telemetry": telemetry,
        "trustScore": {"passed": vehicle.trust_score >= threshold, "score": vehicle.trust_score, "threshold": threshold},
        "blockchain": {"passed": anchored is not None or bool(vehicle.blockchain_hash), "signature": anchored[0] if anchored else vehicle.blockchain_hash},
        "storage": {"passed": documents > 0, "documents": documents},
        "checkedAt": iso(now),
    }


def verify(s: "Session", req: PurchaseRequest, user: User) -> PurchaseRequest:
    """Only the trust-score check gates the outcome; the other checks are informational."""
    if user.id not in (req.buyer_id, req.seller_id):
        raise AuthorizationError("Only the buyer or seller can run verification.")
    _require_status(req, ("escrow_funded",), "verify")
    vehicle = s.get(Vehicle, req.vehicle_id)
    _require_still_for_sale(s, req, vehicle)
    results = _verification_checks(s, vehicle)
    results["passed"] = results["trustScore"]["passed"]
    req.verification_results = results
    req.status = "verification_passed" if results["passed"] else "verification_failed"
    s.flush()
    if not results["passed"]:
        logger.warning("Purchase verification failed (request=%s vehicle=%s trust=%s)", req.id, vehicle.id, vehicle.trust_score)
    for uid in (req.buyer_id, req.seller_id):
        notify(s, uid, "Vehicle verification", f"Verification for request #{req.id}: {req.status}.")
    record_event(
        s,
        actor=user,
        action="purchase.verify",
        entity_type="PurchaseRequest",
        entity_id=str(req.id),
        metadata={"passed": results["passed"]},
    )
    return req


def init_transfer(s: "Session", req: PurchaseRequest, seller: User) -> PurchaseRequest:
    _require_seller(req, seller)
    _require_status(req, ("verification_passed",), "start the transfer for")
    _require_still_for_sale(s, req, s.get(Vehicle, req.vehicle_id))
    req.status = "transfer_pending"
    s.flush()
    notify(s, req.buyer_id, "Transfer started", f"The seller started the ownership transfer for request #{req.id}.")
    record_event(s, actor=seller, action="purchase.init_transfer", entity_type="PurchaseRequest", entity_id=str(req.id))
    return req


def confirm_transfer(s: "Session", req: PurchaseRequest, seller: User) -> PurchaseRequest:
    _require_seller(req, seller)
    _require_status(req, ("verification_passed", "transfer_pending"), "confirm the transfer for")
    vehicle = s.get(Vehicle, req.vehicle_id)
    _require_still_for_sale(s, req, vehicle)
    buyer = s.get(User, req.buyer_id)
    price = req.agreed_price

    tx_hash = None
    try:
        tx_hash = anchor_transfer(s, vehicle, seller=seller, buyer=buyer, price=price).signature
    except (SolanaError, WalletError) as e:
        logger.error("Ownership transfer anchoring failed (request=%s vehicle=%s): %s", req.id, vehicle.id, e)

    now = utcnow()
    vehicle.owner_id = buyer.id
    mark_listing_sold(s, vehicle)
    history = OwnershipHistory(
        vehicle_id=vehicle.id,
        from_owner_id=seller.id,
        to_owner_id=buyer.id,
        transfer_date=now,
        sale_price=price,
        transaction_hash=tx_hash,
    )
    s.add(history)
    vehicle.ownership_history.append(history)
    s.add(
        SaleRecord(
            purchase_request_id=req.id,
            vehicle_id=vehicle.id,
            seller_id=seller.id,
            buyer_id=buyer.id,
            price=price,
            transaction_hash=tx_hash,
            sold_at=now,
        )
    )
    for escrow in req.escrows:
        if escrow.status == "funded":
            escrow.status = "released"
            escrow.released_at = now
    req.transaction_hash = tx_hash
    req.status = "sold"
    closed = _close_competing_requests(s, req, now)
    s.flush()

    notify(s, buyer.id, "Ownership transferred", f"You are now the owner of {vehicle.make} {vehicle.model} ({vehicle.vin}).")
    record_event(
        s,
        actor=seller,
        action="purchase.transfer",
        entity_type="Vehicle",
        entity_id=str(vehicle.id),
        metadata={
            "from": seller.id,
            "to": buyer.id,
            "price": price,
            "transaction_hash": tx_hash,
            "cancelled_requests": [r.id for r in closed],
        },
    )
    logger.info("Ownership transferred (vehicle=%s %s -> %s tx=%s)", vehicle.id, seller.id, buyer.id, tx_hash)
    return req


def list_requests(s: "Session", user: User, side: str) -> list[PurchaseRequest]:
    if side not in ("buyer", "seller"):
        raise ValidationError("role must be buyer or seller.")
    column = PurchaseRequest.buyer_id if side == "buyer" else PurchaseRequest.seller_id
    return (
        s.query(PurchaseRequest)
        .filter(column == user.id)
        .order_by(PurchaseRequest.created_at.desc(), PurchaseRequest.id.desc())
        .all()
    )
