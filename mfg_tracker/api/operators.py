"""
Operator management (admin only).
"""
from flask import jsonify, request
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from mfg_tracker.api import api_bp
from mfg_tracker.api.helpers import get_json_body, parse_bool, transactional
from mfg_tracker.auth.permissions import normalize_permissions
from mfg_tracker.auth.utils import admin_required, hash_password
from mfg_tracker.errors import BadRequest, Conflict, NotFound
from mfg_tracker.logging_config import get_logger
from mfg_tracker.models import User, db

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 6


def _check_password(password):
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise BadRequest(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")


def _flush_unique():
    try:
        db.session.flush()
    except IntegrityError:
        raise Conflict("Email or loginId already in use")


@api_bp.route("/operators", methods=["GET"])
@admin_required
@transactional("Failed to list operators")
def list_operators(caller):
    query = User.query.filter(User.role == "mfg")
    search = (request.args.get("search") or "").strip()
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(
            User.name.ilike(pattern),
            User.email.ilike(pattern),
            User.login_id.ilike(pattern),
            User.work_center.ilike(pattern),
        ))
    is_active = parse_bool(request.args.get("isActive"))
    if is_active is not None:
        query = query.filter(User.is_active == is_active)
    operators = query.order_by(User.name.asc(), User.id.asc()).all()
    return jsonify({"operators": [operator.to_dict() for operator in operators]}), 200


@api_bp.route("/operators", methods=["POST"])
@admin_required
@transactional("Failed to create operator")
def create_operator(caller):
    data = get_json_body()
    email = (data.get("email") or "").strip().lower()
    login_id = (data.get("loginId") or "").strip().lower()
    password = data.get("password") or ""
    if not email or not password or not login_id:
        raise BadRequest("Email, password, and loginId are required")
    _check_password(password)

    existing = User.query.filter(or_(User.email == email, User.login_id == login_id)).first()
    if existing is not None:
        raise Conflict("Email or loginId already in use")

    operator = User(
        name=(data.get("name") or "").strip() or login_id,
        email=email,
        password_hash=hash_password(password),
        role="mfg",
        login_id=login_id,
        mfg_role=data.get("mfgRole"),
        work_center=data.get("workCenter"),
        permissions=normalize_permissions(data.get("permissions")),
        is_active=parse_bool(data.get("isActive"), True),
    )
    db.session.add(operator)
    _flush_unique()
    logger.info("Operator created", operator_id=operator.id, login_id=login_id)
    return jsonify({"operator": operator.to_dict()}), 201


@api_bp.route("/operators/<int:operator_id>", methods=["PATCH"])
@admin_required
@transactional("Failed to update operator")
def update_operator(operator_id, caller):
    operator = db.session.get(User, operator_id)
    if operator is None or operator.role != "mfg":
        raise NotFound("Operator not found")

    data = get_json_body()
    if "name" in data:
        operator.name = (data.get("name") or "").strip()
    if "email" in data:
        operator.email = (data.get("email") or "").strip().lower()
    if "loginId" in data:
        operator.login_id = (data.get("loginId") or "").strip().lower() or None
    if "mfgRole" in data:
        operator.mfg_role = data.get("mfgRole")
    if "workCenter" in data:
        operator.work_center = data.get("workCenter")
    if "permissions" in data:
        operator.permissions = normalize_permissions(data.get("permissions"))
    if "isActive" in data:
        operator.is_active = parse_bool(data.get("isActive"), operator.is_active)
    if data.get("password"):
        _check_password(data["password"])
        operator.password_hash = hash_password(data["password"])

    _flush_unique()
    logger.info("Operator updated", operator_id=operator.id)
    return jsonify({"operator": operator.to_dict()}), 200
