import json

from mfg_tracker.auth.permissions import require_permission
from mfg_tracker.datetime_utils import utcnow
from mfg_tracker.errors import BadRequest
from mfg_tracker.logging_config import get_logger
from mfg_tracker.models import TravelerEvent, db
from mfg_tracker.workorders.registry import WorkOrderRegistry

logger = get_logger(__name__)

ALLOWED_ACTIONS = ("scan", "release", "hold", "qc_pass", "qc_fail", "note")
EVENT_STATUSES = ("pending", "completed", "failed", "acknowledged")

# Capability an operator must hold to record each action; None means open.
REQUIRED_PERMISSIONS = {
    "release": "traveler:release",
    "qc_pass": "traveler:release",
    "hold": "qc:hold",
    "qc_fail": "qc:hold",
    "scan": "traveler:read",
    "note": None,
}

DEFAULT_EVENT_LIMIT = 50
MAX_EVENT_LIMIT = 200


class TravelerEventService:
    """Service for the append-only traveler event log"""

    @staticmethod
    def stringify_metadata(metadata):
        """Flatten metadata to a string map; non-string values are JSON-encoded."""
        if not isinstance(metadata, dict):
            return {}
        return {
            str(key): value if isinstance(value, str) else json.dumps(value, sort_keys=True)
            for key, value in metadata.items()
        }

    @staticmethod
    def record(id_or_number, ctx, action, station=None, note=None, metadata=None, status=None):
        """
        Append one traveler event.

        Args:
            id_or_number: work order id or woNumber
            ctx: OperatorContext of the caller
            action: scan, release, hold, qc_pass, qc_fail or note (case-insensitive)
            station: defaults to the operator's work center

        Returns:
            TravelerEvent
        """
        action = (action or "").strip().lower()
        if action not in ALLOWED_ACTIONS:
            raise BadRequest("Invalid action")

        permission = REQUIRED_PERMISSIONS[action]
        if permission:
            require_permission(ctx, permission)

        station = (station or "").strip() or (ctx.work_center or "").strip()
        if not station:
            raise BadRequest("Station is required")

        status = status or "completed"
        if status not in EVENT_STATUSES:
            raise BadRequest("Invalid status")

        work_order = WorkOrderRegistry.resolve(id_or_number)
        now = utcnow()
        event = TravelerEvent(
            work_order_id=work_order.id,
            work_order_number=work_order.wo_number,
            station=station,
            action=action,
            status=status,
            note=(note or "").strip(),
            event_metadata=TravelerEventService.stringify_metadata(metadata),
            operator_id=ctx.user_id,
            operator_login_id=ctx.actor_login_id,
            operator_name=ctx.actor_name,
            permissions_snapshot=ctx.permissions_snapshot(),
            occurred_at=now,
            created_at=now,
        )
        db.session.add(event)
        db.session.flush()

        logger.info(
            "Traveler event recorded",
            work_order=work_order.wo_number,
            action=action,
            station=station,
            user_id=ctx.user_id,
        )
        return event

    @staticmethod
    def list_events(id_or_number, ctx, limit=None):
        """Most recent events first."""
        require_permission(ctx, "traveler:read")
        work_order = WorkOrderRegistry.resolve(id_or_number)
        limit = min(max(limit or DEFAULT_EVENT_LIMIT, 1), MAX_EVENT_LIMIT)
        return (
            TravelerEvent.query
            .filter(TravelerEvent.work_order_id == work_order.id)
            .order_by(TravelerEvent.occurred_at.desc(), TravelerEvent.id.desc())
            .limit(limit)
            .all()
        )
