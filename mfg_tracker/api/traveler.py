from flask import jsonify, request

from mfg_tracker.api import api_bp
from mfg_tracker.api.helpers import get_json_body, parse_int, transactional
from mfg_tracker.auth.permissions import resolve_operator_context
from mfg_tracker.auth.utils import mfg_or_admin_required
from mfg_tracker.services.traveler_event_service import TravelerEventService


@api_bp.route("/work-orders/<id_or_number>/traveler-events", methods=["GET"])
@mfg_or_admin_required
@transactional("Failed to load traveler events")
def list_traveler_events(id_or_number, caller):
    ctx = resolve_operator_context(caller)
    events = TravelerEventService.list_events(
        id_or_number, ctx, limit=parse_int(request.args.get("limit"))
    )
    return jsonify({"events": [event.to_dict() for event in events]}), 200


@api_bp.route("/work-orders/<id_or_number>/traveler-events", methods=["POST"])
@mfg_or_admin_required
@transactional("Failed to record traveler event")
def record_traveler_event(id_or_number, caller):
    ctx = resolve_operator_context(caller)
    data = get_json_body()
    event = TravelerEventService.record(
        id_or_number,
        ctx,
        data.get("action"),
        station=data.get("station"),
        note=data.get("note"),
        metadata=data.get("metadata"),
        status=data.get("status"),
    )
    return jsonify({"event": event.to_dict()}), 201
