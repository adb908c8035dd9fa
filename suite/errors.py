"""Error taxonomy shared by services and views.

Services raise these exceptions; the handlers registered by
:func:`register_error_handlers` turn them into JSON responses so views never
need to catch them.
"""

from __future__ import annotations

from flask import g, jsonify, request
from pydantic import ValidationError
from werkzeug.exceptions import HTTPException


class ServiceError(Exception):
    status_code = 500
    message = "Internal server error"

    def __init__(self, message: str | None = None, details=None):
        super().__init__(message or self.message)
        self.message = message or self.message
        self.details = details

    def to_dict(self) -> dict:
        body = {"error": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class Unauthenticated(ServiceError):
    status_code = 401
    message = "Not authenticated"


class Forbidden(ServiceError):
    status_code = 403
    message = "Forbidden"


class NotFound(ServiceError):
    status_code = 404
    message = "Not found"


class ValidationFailed(ServiceError):
    status_code = 400
    message = "Invalid input"


class InvalidExpiry(ValidationFailed):
    message = "Invalid expiry date"


class Conflict(ServiceError):
    status_code = 409
    message = "Conflict"


class AlreadyMember(Conflict):
    message = "User is already a member of this group"


class AlreadyGranted(Conflict):
    message = "Permission already exists"


class DuplicateName(Conflict):
    message = "Name already exists"


class Internal(ServiceError):
    pass


def _current_username():
    user = g.get("current_user")
    return getattr(user, "username", None)


def register_error_handlers(app) -> None:
    @app.errorhandler(ServiceError)
    def handle_service_error(error: ServiceError):
        if error.status_code in (401, 403):
            app.logger.warning(
                "%s %s: path=%s user=%s",
                error.status_code,
                error.message,
                request.path,
                _current_username(),
            )
        elif error.status_code >= 500:
            app.logger.error("%s: path=%s", error.message, request.path)
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(ValidationError)
    def handle_validation_error(error: ValidationError):
        details = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in error.errors()
        ]
        return jsonify(error="Invalid input", details=details), 400

    @app.errorhandler(404)
    def handle_not_found(error):
        return jsonify(error="Not found"), 404

    @app.errorhandler(405)
    def handle_method_not_allowed(error):
        return jsonify(error="Method not allowed"), 405

    @app.errorhandler(Exception)
    def handle_unexpected(error):
        if isinstance(error, HTTPException):
            return jsonify(error=error.description), error.code
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return jsonify(error="Internal server error"), 500
