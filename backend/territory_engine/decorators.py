# Overview: Request decorators for API routes (actor identity, error mapping, deadlines).

from functools import wraps
from flask import current_app, g, jsonify, request

from .errors import EngineError
from .extensions import db
from .services.concurrency import Deadline

ACTOR_HEADER = "X-Actor-Id"
TIMEOUT_HEADER = "X-Request-Timeout"


def require_actor(f):
    """
    Require the caller's identity on mutating routes.

    Sets g.actor_id from the X-Actor-Id header; it is stamped as
    assigned_by / approved_by / cancelled_by where the payload omits one.
    Returns 401 when the header is missing or blank.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        actor = (request.headers.get(ACTOR_HEADER) or "").strip()
        if not actor:
            return jsonify({"error": f"{ACTOR_HEADER} header required", "code": "actor_required", "details": {}}), 401
        g.actor_id = actor
        return f(*args, **kwargs)

    return decorated_function


def handle_engine_errors(f):
    """
    Translate EngineError subclasses into their JSON form and HTTP status.

    Anything else is logged with a traceback and returned as a 500. The
    session is rolled back in both cases.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except EngineError as e:
            db.session.rollback()
            return jsonify(e.to_dict()), e.status_code
        except Exception:
            db.session.rollback()
            current_app.logger.exception("Unhandled error in %s %s", request.method, request.path)
            return jsonify({"error": "Internal server error", "code": "internal_error", "details": {}}), 500

    return decorated_function


def request_deadline() -> Deadline:
    """Deadline from X-Request-Timeout (seconds), else OPERATION_TIMEOUT_SECONDS."""
    raw = request.headers.get(TIMEOUT_HEADER)
    seconds = current_app.config.get("OPERATION_TIMEOUT_SECONDS")
    if raw:
        try:
            seconds = float(raw)
        except ValueError:
            current_app.logger.warning("Ignoring malformed %s header: %r", TIMEOUT_HEADER, raw)
        else:
            if seconds <= 0:
                seconds = 0.0
    return Deadline(seconds)
