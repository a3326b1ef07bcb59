from __future__ import annotations

import logging
from typing import Any

from flask import Flask, g, jsonify, request
from werkzeug.exceptions import HTTPException

log = logging.getLogger("app.teamdesk.errors")


class TeamDeskError(Exception):
    """
    Base for errors surfaced to the caller. Never retried internally.
    """

    status_code = 400
    error_type = "error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message())

    @classmethod
    def default_message(cls) -> str:
        return cls.__doc__.strip() if cls.__doc__ else cls.__name__

    @property
    def message(self) -> str:
        return str(self)


class ValidationError(TeamDeskError):
    """Invalid or missing input."""

    error_type = "validation_error"


class DuplicateRequestError(TeamDeskError):
    """A pending request for this team already exists."""

    error_type = "duplicate_request"


class DuplicateInviteError(TeamDeskError):
    """A pending invite for this user already exists."""

    error_type = "duplicate_invite"


class AlreadyProcessedError(TeamDeskError):
    """This request or invite has already been processed."""

    error_type = "already_processed"


class UserAlreadyInTeamError(TeamDeskError):
    """User already belongs to a team."""

    error_type = "user_already_in_team"


class NotFoundError(TeamDeskError):
    """Not found."""

    status_code = 404
    error_type = "not_found"


class NotAuthenticatedError(TeamDeskError):
    """Not authenticated."""

    status_code = 401
    error_type = "not_authenticated"


class InvalidCredentialsError(TeamDeskError):
    """Invalid email or password."""

    status_code = 401
    error_type = "invalid_credentials"


class UnauthorizedError(TeamDeskError):
    """You do not have permission to perform this action."""

    status_code = 403
    error_type = "forbidden"


class RateLimitedError(TeamDeskError):
    """Too many requests. Please try again later."""

    status_code = 429
    error_type = "rate_limited"

    def __init__(self, message: str | None = None, *, retry_after: int | None = None):
        super().__init__(message)
        self.retry_after = retry_after


def _payload(*, message: str, typ: str, status: int, details: Any | None = None) -> dict[str, Any]:
    body: dict[str, Any] = {
        "ok": False,
        "error": {
            "type": typ,
            "message": message,
            "status": status,
            "request_id": getattr(g, "request_id", None),
        },
    }
    if details is not None:
        body["error"]["details"] = details
    return body


def register_error_handlers(app: Flask) -> None:
    """
    JSON error responses for domain errors, HTTP errors and anything unexpected.
    """

    @app.errorhandler(TeamDeskError)
    def _err_domain(exc: TeamDeskError):  # type: ignore[no-redef]
        log.warning(
            "%s %s %s -> %s | request_id=%s | %s",
            type(exc).__name__,
            request.method,
            request.path,
            exc.status_code,
            getattr(g, "request_id", None),
            exc.message,
        )
        resp = jsonify(_payload(message=exc.message, typ=exc.error_type, status=exc.status_code))
        resp.status_code = exc.status_code
        if isinstance(exc, RateLimitedError) and exc.retry_after is not None:
            resp.headers["Retry-After"] = str(exc.retry_after)
        return resp

    @app.errorhandler(HTTPException)
    def _err_http(exc: HTTPException):  # type: ignore[no-redef]
        status = int(exc.code or 500)
        level = logging.ERROR if status >= 500 else logging.WARNING
        log.log(level, "HTTPException %s %s -> %s | request_id=%s", request.method, request.path, status, getattr(g, "request_id", None))
        resp = jsonify(_payload(message=exc.description or exc.name, typ="http_error", status=status))
        resp.status_code = status
        return resp

    @app.errorhandler(Exception)
    def _err_500(exc: Exception):  # type: ignore[no-redef]
        # Full traceback to server logs; generic message to client
        log.exception("Unhandled exception %s %s -> 500 | request_id=%s", request.method, request.path, getattr(g, "request_id", None))
        resp = jsonify(_payload(message="Internal server error.", typ="internal_error", status=500))
        resp.status_code = 500
        return resp
