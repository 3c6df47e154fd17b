from __future__ import annotations

import time
from collections import deque
from threading import Lock

from flask import Flask, current_app, g, request

from app.veridrive.errors import RateLimitError


class SlidingWindowLimiter:
    """Per-key request counter over a sliding time window. State is in-process only."""

    def __init__(self, max_requests: int, window_seconds: int):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._hits: dict[str, deque[float]] = {}
        self._lock = Lock()
        self._last_sweep = 0.0

    def __len__(self) -> int:
        return len(self._hits)

    def _sweep(self, cutoff: float) -> None:
        # keys with no hits inside the window are dropped
        for key in [k for k, hits in self._hits.items() if not hits or hits[-1] <= cutoff]:
            del self._hits[key]

    def hit(self, key: str, now: float | None = None) -> tuple[bool, int, int]:
        """Count one request. Returns (allowed, remaining, reset_epoch_seconds)."""
        now = time.time() if now is None else now
        cutoff = now - self.window_seconds
        with self._lock:
            if now - self._last_sweep >= self.window_seconds:
                self._sweep(cutoff)
                self._last_sweep = now
            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= cutoff:
                hits.popleft()
            reset = int((hits[0] if hits else now) + self.window_seconds)
            if len(hits) >= self.max_requests:
                return False, 0, reset
            hits.append(now)
            return True, self.max_requests - len(hits), reset


def init_rate_limit(app: Flask) -> None:
    limiter = SlidingWindowLimiter(app.config["RATE_LIMIT_MAX_REQUESTS"], app.config["RATE_LIMIT_WINDOW_SECONDS"])
    app.extensions["rate_limiter"] = limiter

    @app.before_request
    def _rate_limit_guard():
        if not request.path.startswith("/api/"):
            return None
        ip = request.remote_addr or "unknown"
        allowed, remaining, reset = limiter.hit(ip)
        g.rate_limit = (remaining, reset)
        if not allowed:
            current_app.logger.warning("Rate limit exceeded (ip=%s path=%s)", ip, request.path)
            raise RateLimitError(
                "Too many requests from this IP, please try again later.",
                retry_after=max(1, reset - int(time.time())),
            )
        return None

    @app.after_request
    def _rate_limit_headers(resp):
        info = getattr(g, "rate_limit", None)
        if info is not None:
            remaining, reset = info
            resp.headers["X-RateLimit-Limit"] = str(limiter.max_requests)
            resp.headers["X-RateLimit-Remaining"] = str(remaining)
            resp.headers["X-RateLimit-Reset"] = str(reset)
        return resp
