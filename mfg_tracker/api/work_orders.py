"""
Work order routes: dashboard summaries, listing, creation, field and stage
updates, per-stage status records and DFM exceptions.
"""
from flask import jsonify, request

from mfg_tracker.api import api_bp
from mfg_tracker.api.helpers import get_json_body, parse_bool, parse_csv, parse_pagination, transactional
from mfg_tracker.auth.permissions import resolve_operator_context
from mfg_tracker.auth.utils import admin_required, mfg_or_admin_required
from mfg_tracker.errors import BadRequest
from mfg_tracker.logging_config import get_logger
from mfg_tracker.workorders.dfm import DfmExceptionService
from mfg_tracker.workorders.engine import parse_work_order_class
from mfg_tracker.workorders.registry import WorkOrderRegistry
from mfg_tracker.workorders.transitions import StageTransitionEngine

logger = get_logger(__name__)


@api_bp.route("/summary", methods=["GET"])
@mfg_or_admin_required
@transactional("Failed to load manufacturing summary")
def manufacturing_summary(caller):
    resolve_operator_context(caller)
    return jsonify({"summary": WorkOrderRegistry.summary()}), 200


@api_bp.route("/analytics/dfm", methods=["GET"])
@mfg_or_admin_required
@transactional("Failed to load DFM analytics")
def dfm_analytics(caller):
    resolve_operator_context(caller)
    return jsonify({"analytics": DfmExceptionService.analytics()}), 200


@api_bp.route("/work-orders", methods=["GET"])
@mfg_or_admin_required
@transactional("Failed to list work orders")
def list_work_orders(caller):
    """Filtered, paginated work orders sorted by priority, due date, newest."""
    resolve_operator_context(caller)
    args = request.args
    work_order_class = None
    if args.get("workOrderClass"):
        work_order_class = parse_work_order_class(args.get("workOrderClass"))
        if work_order_class is None:
            raise BadRequest("Invalid workOrderClass")

    result = WorkOrderRegistry.list_work_orders({
        "workOrderClass": work_order_class,
        "status": parse_csv(args.get("status")),
        "stage": parse_csv(args.get("stage")),
        "priority": parse_csv(args.get("priority")),
        "search": (args.get("search") or "").strip(),
        "focus": args.get("focus"),
        "travelerReady": parse_bool(args.get("travelerReady")),
        **parse_pagination(args),
    })
    result["workOrders"] = [
        work_order.to_dict(include_attachments=False) for work_order in result["workOrders"]
    ]
    return jsonify(result), 200


@api_bp.route("/work-orders", methods=["POST"])
@admin_required
@transactional("Failed to create work order")
def create_work_order(caller):
    ctx = resolve_operator_context(caller)
    work_order = WorkOrderRegistry.create(get_json_body(), ctx)
    return jsonify({"workOrder": work_order.to_dict()}), 201


@api_bp.route("/work-orders/<id_or_number>", methods=["GET"])
@mfg_or_admin_required
@transactional("Failed to load work order")
def get_work_order(id_or_number, caller):
    resolve_operator_context(caller)
    work_order = WorkOrderRegistry.resolve(id_or_number)
    data = work_order.to_dict()
    if work_order.work_order_class == "pcb":
        data["dfmExceptions"] = [item.to_dict() for item in work_order.dfm_exceptions]
    return jsonify({"workOrder": data}), 200


@api_bp.route("/work-orders/<id_or_number>", methods=["PATCH"])
@mfg_or_admin_required
@transactional("Failed to update work order")
def update_work_order(id_or_number, caller):
    """
    Update writable fields. Keys outside the class field mask are dropped;
    a "stage" key goes through the transition engine so triggers fire.
    """
    ctx = resolve_operator_context(caller)
    work_order = WorkOrderRegistry.resolve(id_or_number, lock=True)
    updates = WorkOrderRegistry.filter_updates(work_order, get_json_body())

    if "stage" in updates:
        StageTransitionEngine.apply_stage(work_order, updates.pop("stage"), ctx)
    if updates:
        WorkOrderRegistry.apply_field_updates(work_order, updates)

    logger.info("Work order updated", work_order=work_order.wo_number, user_id=ctx.user_id)
    return jsonify({"workOrder": work_order.to_dict()}), 200


@api_bp.route("/work-orders/<id_or_number>/stage", methods=["PATCH"])
@mfg_or_admin_required
@transactional("Failed to update work order stage")
def update_work_order_stage(id_or_number, caller):
    ctx = resolve_operator_context(caller)
    data = get_json_body()
    work_order = StageTransitionEngine.apply_stage(id_or_number, data.get("stage"), ctx)
    return jsonify({"workOrder": work_order.to_dict()}), 200


@api_bp.route("/work-orders/<id_or_number>/approve", methods=["PATCH"])
@admin_required
@transactional("Failed to approve work order")
def approve_work_order(id_or_number, caller):
    resolve_operator_context(caller)
    data = get_json_body()
    approved = parse_bool(data.get("mfgApproved"), True)
    work_order = WorkOrderRegistry.set_mfg_approved(id_or_number, approved)
    return jsonify({"workOrder": work_order.to_dict()}), 200


@api_bp.route("/work-orders/<id_or_number>/stage-status/<section>", methods=["PATCH"])
@mfg_or_admin_required
@transactional("Failed to update stage status")
def update_stage_status(id_or_number, section, caller):
    resolve_operator_context(caller)
    work_order, record = WorkOrderRegistry.update_stage_status(
        id_or_number, section, get_json_body()
    )
    return jsonify({"workOrder": work_order.to_dict(), "stageStatus": record}), 200


# ==============================================================================
# DFM EXCEPTIONS (PCB)
# ==============================================================================

@api_bp.route("/work-orders/<id_or_number>/dfm-exceptions", methods=["GET"])
@mfg_or_admin_required
@transactional("Failed to load DFM exceptions")
def list_dfm_exceptions(id_or_number, caller):
    resolve_operator_context(caller)
    items = DfmExceptionService.list_exceptions(id_or_number)
    return jsonify({"exceptions": [item.to_dict() for item in items]}), 200


@api_bp.route("/work-orders/<id_or_number>/dfm-exceptions", methods=["POST"])
@mfg_or_admin_required
@transactional("Failed to create DFM exception")
def create_dfm_exception(id_or_number, caller):
    resolve_operator_context(caller)
    item = DfmExceptionService.create(id_or_number, get_json_body())
    return jsonify({"exception": item.to_dict()}), 201


@api_bp.route("/work-orders/<id_or_number>/dfm-exceptions/<exception_id>", methods=["PATCH"])
@mfg_or_admin_required
@transactional("Failed to update DFM exception")
def update_dfm_exception(id_or_number, exception_id, caller):
    resolve_operator_context(caller)
    item = DfmExceptionService.update(id_or_number, exception_id, get_json_body())
    return jsonify({"exception": item.to_dict()}), 200


@api_bp.route("/work-orders/<id_or_number>/dfm-exceptions/<exception_id>", methods=["DELETE"])
@mfg_or_admin_required
@transactional("Failed to delete DFM exception")
def delete_dfm_exception(id_or_number, exception_id, caller):
    resolve_operator_context(caller)
    DfmExceptionService.delete(id_or_number, exception_id)
    return jsonify({"message": "Exception deleted"}), 200
