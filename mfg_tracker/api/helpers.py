"""
Request parsing and response helpers shared by the API routes.
"""
from functools import wraps

from flask import jsonify, request
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge

from mfg_tracker.errors import ApiError
from mfg_tracker.logging_config import get_logger
from mfg_tracker.models import db

logger = get_logger(__name__)

TRUE_VALUES = ("1", "true", "yes", "on")
FALSE_VALUES = ("0", "false", "no", "off")


def get_json_body():
    """Request JSON as a dict; form fields when the request is multipart."""
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    if request.form:
        return request.form.to_dict()
    return {}


def parse_csv(value):
    """'a, b,,c' -> ['a', 'b', 'c']; None or empty -> []"""
    if not value:
        return []
    return [part.strip() for part in str(value).split(",") if part.strip()]


def parse_bool(value, default=None):
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in TRUE_VALUES:
        return True
    if text in FALSE_VALUES:
        return False
    return default


def parse_int(value, default=None):
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_pagination(args):
    return {
        "page": parse_int(args.get("page"), 1),
        "limit": parse_int(args.get("limit")),
    }


def transactional(failure_message):
    """
    Commit after a successful view, roll back on any error.

    ApiErrors propagate to the JSON error handler; anything else is logged
    and answered with a 500 carrying failure_message.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            try:
                response = f(*args, **kwargs)
                db.session.commit()
                return response
            except ApiError:
                db.session.rollback()
                raise
            except Exception as exc:
                logger.error(failure_message, error=str(exc), exc_info=True)
                db.session.rollback()
                return jsonify({"message": failure_message}), 500
        return decorated_function
    return decorator


def register_error_handlers(app):
    @app.errorhandler(ApiError)
    def handle_api_error(error):
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(RequestEntityTooLarge)
    def handle_request_too_large(error):
        return jsonify({"message": "File too large"}), 400

    @app.errorhandler(HTTPException)
    def handle_http_exception(error):
        return jsonify({"message": error.description}), error.code
