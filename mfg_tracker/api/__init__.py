# Package
from flask import Blueprint

from mfg_tracker.logging_config import get_logger

logger = get_logger(__name__)

api_bp = Blueprint("api", __name__, url_prefix="/api/mfg")

from mfg_tracker.api import attachments, dispatches, operators, traveler, work_orders  # noqa: E402,F401
