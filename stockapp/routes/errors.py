from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request
from werkzeug.exceptions import HTTPException

from stockapp.errors import StockError, StorageFailure
from stockapp.extensions import db

bp = Blueprint("errors", __name__)


@bp.app_errorhandler(StockError)
def handle_stock_error(error: StockError):
    if error.status_code >= 500:
        current_app.logger.error(
            "%s %s failed: %s", request.method, request.path, error.message
        )
    return jsonify(error.to_dict()), error.status_code


@bp.app_errorhandler(HTTPException)
def handle_http_error(error: HTTPException):
    return (
        jsonify({"error": error.description or error.name, "kind": "http_error"}),
        error.code or 500,
    )


@bp.app_errorhandler(Exception)
def handle_exception(error: Exception):
    db.session.rollback()
    current_app.logger.exception("Unhandled exception", exc_info=error)
    return (
        jsonify({"error": "Internal Server Error", "kind": StorageFailure.kind}),
        500,
    )
