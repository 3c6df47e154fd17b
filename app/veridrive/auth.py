from __future__ import annotations

import re
import uuid
from collections import defaultdict
from datetime import timedelta
from typing import Any

from flask import Blueprint, current_app, g, request
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from sqlalchemy import func
from werkzeug.security import check_password_hash, generate_password_hash

from app.veridrive.audit import record_event
from app.veridrive.constants import SELF_REGISTER_ROLES
from app.veridrive.db import db_session
from app.veridrive.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    RateLimitError,
    ValidationError,
)
from app.veridrive.models import Role, User
from app.veridrive.rbac import require_auth, require_user
from app.veridrive.utils import json_body, utcnow

bp = Blueprint("auth", __name__)

_ACCESS_SALT = "veridrive-access"
_REFRESH_SALT = "veridrive-refresh"
_MAX_FAILED_LOGINS = 5
_LOCK_DURATION = timedelta(hours=2)
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_PUBLIC_PREFIXES = ("/static/", "/health", "/healthz")


def _serializer(salt: str) -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(current_app.config["SECRET_KEY"], salt=salt)


def issue_tokens(user: User) -> dict[str, Any]:
    payload = {"uid": user.id, "tv": user.token_version}
    return {
        "accessToken": _serializer(_ACCESS_SALT).dumps(payload),
        "refreshToken": _serializer(_REFRESH_SALT).dumps(payload),
        "expiresIn": current_app.config["ACCESS_TOKEN_TTL_SECONDS"],
        "tokenType": "Bearer",
    }


def _verify(token: str, *, refresh: bool = False) -> dict[str, Any]:
    salt = _REFRESH_SALT if refresh else _ACCESS_SALT
    ttl_key = "REFRESH_TOKEN_TTL_SECONDS" if refresh else "ACCESS_TOKEN_TTL_SECONDS"
    try:
        data = _serializer(salt).loads(token, max_age=current_app.config[ttl_key])
    except SignatureExpired:
        raise AuthenticationError("Token has expired")
    except BadSignature:
        raise AuthenticationError("Invalid token")
    if not isinstance(data, dict) or "uid" not in data:
        raise AuthenticationError("Invalid token")
    return data


def _user_for_token(data: dict[str, Any]) -> User:
    s = db_session()
    user = s.get(User, int(data["uid"]))
    if not user:
        raise AuthenticationError("User not found")
    if user.account_status != "active" or not user.is_active:
        raise AuthenticationError("Account is not active")
    if user.is_locked(utcnow()):
        raise AuthenticationError("Account is temporarily locked")
    if int(data.get("tv", -1)) != user.token_version:
        raise AuthenticationError("Token has been revoked. Please login again.")
    return user


def _bearer_token() -> str | None:
    header = request.headers.get("Authorization") or ""
    if not header:
        return None
    parts = header.split(None, 1)
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1].strip():
        raise AuthenticationError("Invalid token format")
    return parts[1].strip()


def load_current_user() -> None:
    """
    Loads g.current_user from the bearer token (if any) and resolves g.active_role.
    Also assigns a per-request request_id (for audit/log correlation).
    A bad token does not fail here; it is stored on g.auth_error and raised by routes that require auth.
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    g.current_user = None
    g.active_role = None
    g.auth_error = None
    if request.path.startswith(_PUBLIC_PREFIXES):
        return

    try:
        token = _bearer_token()
        if token is None:
            return
        user = _user_for_token(_verify(token))
    except AuthenticationError as e:
        current_app.logger.info("Bearer auth rejected (request_id=%s): %s", g.request_id, e.message)
        g.auth_error = e
        return

    requested = (request.headers.get("X-Active-Role") or "").strip()
    roles = user.role_keys
    if requested:
        if requested not in roles:
            raise AuthorizationError(f'Active role "{requested}" is not permitted for this user')
        g.active_role = requested
    else:
        g.active_role = roles[0] if roles else None
    g.current_user = user


def _login_attempts() -> dict[str, list]:
    return current_app.extensions.setdefault("login_attempts", defaultdict(list))


def _check_rate_limit(ip: str) -> None:
    now = utcnow()
    window = current_app.config["LOGIN_RATE_WINDOW_SECONDS"]
    attempts = _login_attempts()
    attempts[ip] = [t for t in attempts[ip] if t > now - timedelta(seconds=window)]
    if len(attempts[ip]) >= current_app.config["LOGIN_RATE_LIMIT"]:
        oldest = min(attempts[ip])
        retry_after = max(1, int((oldest + timedelta(seconds=window) - now).total_seconds()))
        raise RateLimitError("Too many login attempts. Please try again later.", retry_after=retry_after)


def _record_attempt(ip: str) -> None:
    _login_attempts()[ip].append(utcnow())


def _validate_password(password: str) -> None:
    if len(password) < 8:
        raise ValidationError("Password must be at least 8 characters.")


def ensure_role(s, key: str) -> Role:
    role = s.query(Role).filter(Role.key == key).one_or_none()
    if role is None:
        role = Role(key=key, name=key.title())
        s.add(role)
        s.flush()
    return role


@bp.get("/health")
def auth_health():
    return {"success": True, "service": "auth", "status": "ok"}


@bp.post("/register")
def register():
    payload = json_body()
    email = (payload.get("email") or "").strip().lower()
    password = payload.get("password") or ""
    role_key = (payload.get("role") or "owner").strip().lower()

    errors = []
    if not _EMAIL_RE.match(email):
        errors.append("A valid email is required.")
    if not (payload.get("firstName") or "").strip():
        errors.append("First name is required.")
    if not (payload.get("lastName") or "").strip():
        errors.append("Last name is required.")
    if role_key not in SELF_REGISTER_ROLES:
        errors.append(f"Invalid role. Must be one of: {', '.join(sorted(SELF_REGISTER_ROLES))}")
    if errors:
        raise ValidationError(errors[0], details=errors)
    _validate_password(password)

    s = db_session()
    if s.query(User).filter(func.lower(User.email) == email).one_or_none():
        raise ConflictError("An account with this email already exists.")

    user = User(
        email=email,
        password_hash=generate_password_hash(password),
        first_name=payload["firstName"].strip(),
        last_name=payload["lastName"].strip(),
        phone=(payload.get("phone") or "").strip() or None,
        primary_role=role_key,
        account_status="active",
        is_active=True,
    )
    user.roles.append(ensure_role(s, role_key))
    s.add(user)
    s.flush()
    record_event(s, actor=user, action="auth.register", entity_type="User", entity_id=str(user.id), metadata={"role": role_key})
    s.commit()
    return {"success": True, "message": "Registration successful", "data": {"user": user.to_dict(), **issue_tokens(user)}}, 201


@bp.post("/login")
def login():
    payload = json_body()
    email = (payload.get("email") or "").strip().lower()
    password = payload.get("password") or ""
    ip = request.remote_addr or "unknown"

    _check_rate_limit(ip)
    _record_attempt(ip)

    try:
        s = db_session()
        now = utcnow()
        user = s.query(User).filter(func.lower(User.email) == email).one_or_none()
        if user and user.is_locked(now):
            raise AuthenticationError("Account is temporarily locked. Please try again later.")
        if not user or not check_password_hash(user.password_hash, password):
            if user:
                user.failed_login_attempts = (user.failed_login_attempts or 0) + 1
                if user.failed_login_attempts >= _MAX_FAILED_LOGINS:
                    user.locked_until = now + _LOCK_DURATION
                    user.failed_login_attempts = 0
                    current_app.logger.warning("Account locked after repeated failures (user_id=%s)", user.id)
            record_event(
                s,
                actor=None,
                action="auth.login_failed",
                entity_type="User",
                entity_id=email,
                reason="Invalid credentials",
                metadata={"email": email},
            )
            s.commit()
            raise AuthenticationError("Invalid email or password")
        if user.account_status != "active" or not user.is_active:
            raise AuthenticationError("Account is not active")

        user.failed_login_attempts = 0
        user.locked_until = None
        user.last_login_at = now
        _login_attempts()[ip].clear()
        record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id))
        s.commit()
        return {"success": True, "message": "Login successful", "data": {"user": user.to_dict(), **issue_tokens(user)}}
    except AuthenticationError:
        raise
    except Exception:
        current_app.logger.exception("Login crashed (email=%s request_id=%s)", email, getattr(g, "request_id", None))
        raise


@bp.post("/refresh")
def refresh():
    token = (json_body().get("refreshToken") or "").strip()
    if not token:
        raise ValidationError("refreshToken is required.")
    user = _user_for_token(_verify(token, refresh=True))
    return {"success": True, "data": issue_tokens(user)}


@bp.post("/logout")
@require_auth
def logout():
    s = db_session()
    user = require_user()
    user.token_version += 1
    record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
    s.commit()
    return {"success": True, "message": "Logged out"}


@bp.post("/change-password")
@require_auth
def change_password():
    payload = json_body()
    user = require_user()
    current = payload.get("currentPassword") or ""
    new = payload.get("newPassword") or ""
    if not check_password_hash(user.password_hash, current):
        raise AuthenticationError("Current password is incorrect")
    _validate_password(new)
    if current == new:
        raise ValidationError("New password must differ from the current password.")

    s = db_session()
    user.password_hash = generate_password_hash(new)
    user.password_changed_at = utcnow()
    user.token_version += 1
    record_event(s, actor=user, action="auth.change_password", entity_type="User", entity_id=str(user.id))
    s.commit()
    return {"success": True, "message": "Password changed. Please login again.", "data": issue_tokens(user)}


@bp.get("/me")
@require_auth
def me():
    user = require_user()
    return {"success": True, "data": {"user": user.to_dict(), "activeRole": g.active_role}}


@bp.put("/profile")
@require_auth
def update_profile():
    payload = json_body()
    user = require_user()
    changes: dict[str, dict] = {}
    for field, attr in (("firstName", "first_name"), ("lastName", "last_name"), ("phone", "phone")):
        if field not in payload:
            continue
        new = (payload.get(field) or "").strip() or None
        if attr != "phone" and not new:
            raise ValidationError(f"{field} cannot be empty.")
        old = getattr(user, attr)
        if new != old:
            changes[field] = {"old": old, "new": new}
            setattr(user, attr, new)

    s = db_session()
    if changes:
        record_event(s, actor=user, action="user.profile_update", entity_type="User", entity_id=str(user.id), metadata=changes)
    s.commit()
    return {"success": True, "data": {"user": user.to_dict()}}


@bp.get("/validate-token")
@require_auth
def validate_token():
    user = require_user()
    return {"success": True, "valid": True, "data": {"userId": user.id, "role": g.active_role}}
