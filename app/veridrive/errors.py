from __future__ import annotations

from typing import Any

from flask import Flask, g, jsonify
from werkzeug.exceptions import HTTPException


class ApiError(RuntimeError):
    status_code = 500
    error = "Internal Server Error"

    def __init__(self, message: str, *, status_code: int | None = None, details: Any = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details


class ValidationError(ApiError):
    status_code = 400
    error = "Validation Error"


class AuthenticationError(ApiError):
    status_code = 401
    error = "Authentication Error"


class AuthorizationError(ApiError):
    status_code = 403
    error = "Authorization Error"


class NotFoundError(ApiError):
    status_code = 404
    error = "Not Found"


class ConflictError(ApiError):
    status_code = 409
    error = "Conflict"


class RateLimitError(ApiError):
    status_code = 429
    error = "Too Many Requests"

    def __init__(self, message: str, *, retry_after: int):
        super().__init__(message)
        self.retry_after = retry_after


class UpstreamError(ApiError):
    status_code = 502
    error = "Bad Gateway"


def error_response(message: str, status_code: int, error: str, details: Any = None):
    body: dict[str, Any] = {"success": False, "message": message, "error": error}
    if details is not None:
        body["details"] = details
    return jsonify(body), status_code


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(ApiError)
    def _api_error(e: ApiError):
        if e.status_code >= 500:
            app.logger.error("ApiError %s (request_id=%s): %s", e.status_code, getattr(g, "request_id", None), e.message)
        resp, status = error_response(e.message, e.status_code, e.error, e.details)
        if isinstance(e, RateLimitError):
            resp.headers["Retry-After"] = str(e.retry_after)
        return resp, status

    @app.errorhandler(HTTPException)
    def _http_error(e: HTTPException):
        code = e.code or 500
        message = e.description or e.name
        if code == 413:
            message = "File too large."
        return error_response(message, code, e.name)

    @app.errorhandler(Exception)
    def _unhandled(e: Exception):
        rid = getattr(g, "request_id", None)
        app.logger.exception("Unhandled 500 (request_id=%s)", rid)
        return error_response("Internal server error", 500, str(e) if app.debug else "Internal Server Error")
