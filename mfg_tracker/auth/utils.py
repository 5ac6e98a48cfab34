"""Authentication utilities: password hashing, bearer tokens and route decorators."""
from dataclasses import dataclass
from functools import wraps

from flask import current_app, jsonify, request
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from werkzeug.security import check_password_hash, generate_password_hash

from mfg_tracker.logging_config import get_logger

logger = get_logger(__name__)

TOKEN_SALT = "mfg-tracker-auth"
ROLES = ("user", "admin", "mfg", "sales", "customer")


@dataclass(frozen=True)
class CallerIdentity:
    """Verified token claims: who is calling and in which role."""
    user_id: int
    role: str

    @property
    def is_admin(self):
        return self.role == "admin"


def hash_password(password: str) -> str:
    """Hash a password using werkzeug's security utilities.

    Uses pbkdf2:sha256 method which is compatible with Python 3.9+.
    scrypt is only available in Python 3.11+.
    """
    return generate_password_hash(password, method='pbkdf2:sha256')


def verify_password(password_hash: str, password: str) -> bool:
    """Verify a password against a hash."""
    return check_password_hash(password_hash, password)


def _serializer():
    return URLSafeTimedSerializer(current_app.config["SECRET_KEY"], salt=TOKEN_SALT)


def issue_token(user_id, role) -> str:
    """Sign a bearer token for a user id and role."""
    return _serializer().dumps({"sub": user_id, "role": role})


def decode_token(token):
    """
    Verify a bearer token.

    Returns:
        CallerIdentity, or None if the token is malformed, tampered or expired
    """
    try:
        payload = _serializer().loads(token, max_age=current_app.config["AUTH_TOKEN_MAX_AGE"])
    except SignatureExpired:
        logger.info("Rejected expired token")
        return None
    except BadSignature:
        return None

    if not isinstance(payload, dict):
        return None
    user_id = payload.get("sub")
    role = payload.get("role")
    if user_id is None or role not in ROLES:
        return None
    return CallerIdentity(user_id=user_id, role=role)


def get_caller():
    """Read and verify the Authorization header of the current request."""
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return decode_token(token.strip())


def _role_required(allowed_roles):
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            caller = get_caller()
            if caller is None or caller.role not in allowed_roles:
                if caller is not None:
                    logger.warning(
                        "Caller role not allowed on route",
                        user_id=caller.user_id,
                        role=caller.role,
                        endpoint=request.endpoint,
                    )
                return jsonify({"message": "Unauthorized"}), 401
            return f(*args, caller=caller, **kwargs)
        return decorated_function
    return decorator


def mfg_or_admin_required(f):
    """
    Decorator for manufacturing routes.

    Returns 401 Unauthorized unless the token is valid and its role is
    "mfg" or "admin". The verified CallerIdentity is passed as `caller`.
    """
    return _role_required(("mfg", "admin"))(f)


def admin_required(f):
    """
    Decorator to require admin privileges for a route.

    Returns 401 Unauthorized for any other role.
    """
    return _role_required(("admin",))(f)
