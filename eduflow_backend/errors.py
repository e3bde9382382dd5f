import traceback

from flask import current_app, jsonify
from pymongo.errors import DuplicateKeyError
from werkzeug.exceptions import HTTPException


class ApiError(Exception):
    status_code = 500

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(ApiError):
    status_code = 400


class AuthError(ApiError):
    status_code = 401


class ForbiddenError(ApiError):
    status_code = 403


class NotFoundError(ApiError):
    status_code = 404


class BlockchainError(ApiError):
    """A ledger call failed. The client only ever sees a generic message."""

    status_code = 500

    def __init__(self, detail="blockchain operation failed"):
        super().__init__("blockchain operation failed")
        self.detail = detail


def error_response(message, status_code, exc=None):
    body = {"success": False, "message": message}
    if exc is not None and current_app.config.get("ENVIRONMENT") == "development":
        body["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return jsonify(body), status_code


def register_error_handlers(app):
    @app.errorhandler(ApiError)
    def handle_api_error(e):
        if e.status_code >= 500:
            app.logger.error("%s: %s", type(e).__name__, e.message)
        return error_response(e.message, e.status_code, e if e.status_code >= 500 else None)

    @app.errorhandler(BlockchainError)
    def handle_blockchain_error(e):
        app.logger.error("Blockchain operation failed: %s", e.detail, exc_info=e)
        return error_response(e.message, e.status_code, e)

    @app.errorhandler(DuplicateKeyError)
    def handle_duplicate_key(e):
        key_value = (e.details or {}).get("keyValue") or {}
        field = next(iter(key_value), "value")
        app.logger.warning("Duplicate key on %s", field)
        return error_response(f"{field} already exists", 400)

    @app.errorhandler(HTTPException)
    def handle_http_exception(e):
        message = "resource not found" if e.code == 404 else e.description
        return error_response(message, e.code)

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        app.logger.exception("Unhandled error: %s", e)
        return error_response("internal server error", 500, e)
