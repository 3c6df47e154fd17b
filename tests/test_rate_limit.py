import pytest

from app.veridrive import create_app
from app.veridrive.models import Base
from app.veridrive.ratelimit import SlidingWindowLimiter


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("SIMULATE_SOLANA", "1")
    monkeypatch.setenv("RATE_LIMIT_MAX_REQUESTS", "3")
    monkeypatch.setenv("RATE_LIMIT_WINDOW_SECONDS", "900")
    monkeypatch.setenv("LOGIN_RATE_LIMIT", "2")

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)
    return app.test_client()


def test_sliding_window_expires_old_hits():
    limiter = SlidingWindowLimiter(2, 60)
    assert limiter.hit("a", now=0)[0] is True
    assert limiter.hit("a", now=10) == (True, 0, 60)
    assert limiter.hit("a", now=20)[0] is False
    # other keys are counted separately
    assert limiter.hit("b", now=20)[0] is True
    # the first hit falls out of the window
    assert limiter.hit("a", now=61)[0] is True


def test_api_requests_are_limited_per_ip(client):
    for expected_remaining in ("2", "1", "0"):
        r = client.get("/api/health")
        assert r.status_code == 200
        assert r.headers["X-RateLimit-Limit"] == "3"
        assert r.headers["X-RateLimit-Remaining"] == expected_remaining
        assert "X-RateLimit-Reset" in r.headers

    r = client.get("/api/health")
    assert r.status_code == 429
    assert r.json["success"] is False
    assert int(r.headers["Retry-After"]) >= 1

    # health checks outside /api/ are never limited
    r = client.get("/healthz")
    assert r.status_code == 200
    assert "X-RateLimit-Limit" not in r.headers


def test_login_attempts_are_limited(client):
    client.application.extensions["rate_limiter"].max_requests = 100
    creds = {"email": "nobody@example.com", "password": "wrong-pass-1"}
    assert client.post("/api/auth/login", json=creds).status_code == 401
    assert client.post("/api/auth/login", json=creds).status_code == 401
    r = client.post("/api/auth/login", json=creds)
    assert r.status_code == 429
    assert r.json["message"] == "Too many login attempts. Please try again later."
    assert "Retry-After" in r.headers


def test_idle_keys_are_swept_after_a_window():
    limiter = SlidingWindowLimiter(5, 60)
    for i in range(50):
        limiter.hit(f"10.0.0.{i}", now=1)
    assert len(limiter) == 50
    limiter.hit("10.0.1.1", now=100)
    assert len(limiter) == 1
