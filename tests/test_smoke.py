import pytest
from werkzeug.security import generate_password_hash

from app.veridrive import create_app
from app.veridrive.db import session_scope
from app.veridrive.models import AuditEvent, Base, Role, User


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    monkeypatch.setenv("SIMULATE_SOLANA", "1")
    monkeypatch.setenv("RATE_LIMIT_MAX_REQUESTS", "10000")
    monkeypatch.setenv("LOGIN_RATE_LIMIT", "1000")
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY", "ARWEAVE_UPLOAD_URL"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        r = Role(key="admin", name="Administrator")
        u = User(
            email="admin@example.com",
            password_hash=generate_password_hash("admin-pass-1"),
            first_name="Ada",
            last_name="Admin",
            primary_role="admin",
            is_active=True,
        )
        u.roles.append(r)
        s.add_all([r, u])

    return app.test_client()


def _register(client, email, role="owner", password="secret-pass-1"):
    r = client.post(
        "/api/auth/register",
        json={"email": email, "password": password, "firstName": "Test", "lastName": "User", "role": role},
    )
    assert r.status_code == 201, r.json
    return r.json["data"]


def _auth(token, role=None):
    headers = {"Authorization": f"Bearer {token}"}
    if role:
        headers["X-Active-Role"] = role
    return headers


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True

    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.data == b"ok"


def test_api_health_reports_database(client):
    r = client.get("/api/health")
    assert r.status_code == 200
    assert r.json["status"] == "ok"
    assert r.json["database"] == "connected"


def test_api_info(client):
    r = client.get("/api/info")
    assert r.status_code == 200
    assert r.json["data"]["name"] == "VERIDRIVE"
    assert r.json["data"]["features"]["solanaSimulated"] is True


def test_register_login_and_me(client):
    data = _register(client, "owner@example.com")
    assert data["user"]["role"] == "owner"
    assert data["tokenType"] == "Bearer"

    r = client.post("/api/auth/login", json={"email": "owner@example.com", "password": "secret-pass-1"})
    assert r.status_code == 200
    token = r.json["data"]["accessToken"]

    r = client.get("/api/auth/me", headers=_auth(token))
    assert r.status_code == 200
    assert r.json["data"]["user"]["email"] == "owner@example.com"
    assert r.json["data"]["activeRole"] == "owner"

    with session_scope(client.application) as s:
        actions = {e.action for e in s.query(AuditEvent).all()}
        assert {"auth.register", "auth.login"} <= actions


def test_register_rejects_duplicate_email_and_admin_role(client):
    _register(client, "dupe@example.com")
    r = client.post(
        "/api/auth/register",
        json={"email": "dupe@example.com", "password": "secret-pass-1", "firstName": "A", "lastName": "B"},
    )
    assert r.status_code == 409

    r = client.post(
        "/api/auth/register",
        json={"email": "x@example.com", "password": "secret-pass-1", "firstName": "A", "lastName": "B", "role": "admin"},
    )
    assert r.status_code == 400
    assert r.json["success"] is False


def test_bad_credentials_are_401(client):
    _register(client, "owner@example.com")
    r = client.post("/api/auth/login", json={"email": "owner@example.com", "password": "wrong-password"})
    assert r.status_code == 401
    assert r.json["message"] == "Invalid email or password"


def test_missing_or_malformed_token_is_401(client):
    r = client.get("/api/auth/me")
    assert r.status_code == 401

    r = client.get("/api/auth/me", headers={"Authorization": "Token abc"})
    assert r.status_code == 401
    assert r.json["message"] == "Invalid token format"

    r = client.get("/api/auth/me", headers={"Authorization": "Bearer not-a-token"})
    assert r.status_code == 401
    assert r.json["message"] == "Invalid token"


def test_active_role_must_belong_to_user(client):
    token = _register(client, "owner@example.com")["accessToken"]
    r = client.get("/api/auth/me", headers=_auth(token, "admin"))
    assert r.status_code == 403


def test_logout_revokes_token(client):
    token = _register(client, "owner@example.com")["accessToken"]
    r = client.post("/api/auth/logout", headers=_auth(token))
    assert r.status_code == 200

    r = client.get("/api/auth/me", headers=_auth(token))
    assert r.status_code == 401
    assert "revoked" in r.json["message"]


def test_refresh_issues_new_access_token(client):
    data = _register(client, "owner@example.com")
    r = client.post("/api/auth/refresh", json={"refreshToken": data["refreshToken"]})
    assert r.status_code == 200
    r = client.get("/api/auth/me", headers=_auth(r.json["data"]["accessToken"]))
    assert r.status_code == 200

    # an access token is not accepted as a refresh token
    r = client.post("/api/auth/refresh", json={"refreshToken": data["accessToken"]})
    assert r.status_code == 401


def test_admin_routes_require_admin_role(client):
    owner_token = _register(client, "owner@example.com")["accessToken"]
    r = client.get("/api/admin/dashboard", headers=_auth(owner_token))
    assert r.status_code == 403

    r = client.post("/api/auth/login", json={"email": "admin@example.com", "password": "admin-pass-1"})
    admin_token = r.json["data"]["accessToken"]
    r = client.get("/api/admin/dashboard", headers=_auth(admin_token))
    assert r.status_code == 200
    assert r.json["data"]["users"]["total"] == 2
    assert r.json["data"]["users"]["byRole"]["owner"] == 1


def test_admin_suspension_revokes_sessions(client):
    owner = _register(client, "owner@example.com")
    r = client.post("/api/auth/login", json={"email": "admin@example.com", "password": "admin-pass-1"})
    admin_token = r.json["data"]["accessToken"]

    r = client.patch(
        f"/api/admin/users/{owner['user']['id']}/status",
        json={"status": "suspended", "reason": "chargeback"},
        headers=_auth(admin_token),
    )
    assert r.status_code == 200
    assert r.json["data"]["accountStatus"] == "suspended"

    r = client.get("/api/auth/me", headers=_auth(owner["accessToken"]))
    assert r.status_code == 401


def test_unknown_route_returns_json_error(client):
    r = client.get("/api/does-not-exist")
    assert r.status_code == 404
    assert r.json["success"] is False


def test_repeated_failures_lock_the_account(client):
    _register(client, "owner@example.com")
    for _ in range(5):
        r = client.post("/api/auth/login", json={"email": "owner@example.com", "password": "wrong-password"})
        assert r.status_code == 401
        assert r.json["message"] == "Invalid email or password"

    r = client.post("/api/auth/login", json={"email": "owner@example.com", "password": "secret-pass-1"})
    assert r.status_code == 401
    assert r.json["message"] == "Account is temporarily locked. Please try again later."

    with session_scope(client.application) as s:
        user = s.query(User).filter(User.email == "owner@example.com").one()
        assert user.locked_until is not None
        assert user.failed_login_attempts == 0
        user.locked_until = None

    r = client.post("/api/auth/login", json={"email": "owner@example.com", "password": "secret-pass-1"})
    assert r.status_code == 200
