"""
Dispatch routes.
"""
from flask import jsonify, request

from mfg_tracker.api import api_bp
from mfg_tracker.api.helpers import get_json_body, parse_csv, parse_pagination, transactional
from mfg_tracker.auth.permissions import resolve_operator_context
from mfg_tracker.auth.utils import admin_required, mfg_or_admin_required
from mfg_tracker.services.dispatch_service import DispatchService
from mfg_tracker.workorders.attachments import UploadedFile


@api_bp.route("/dispatches", methods=["GET"])
@mfg_or_admin_required
@transactional("Failed to list dispatches")
def list_dispatches(caller):
    resolve_operator_context(caller)
    args = request.args
    result = DispatchService.list_dispatches({
        "stage": args.get("stage"),
        "status": parse_csv(args.get("status")),
        "priority": parse_csv(args.get("priority")),
        "workOrderNumber": args.get("workOrderNumber"),
        "customer": args.get("customer"),
        "search": (args.get("search") or "").strip(),
        **parse_pagination(args),
    })
    result["dispatches"] = [dispatch.to_dict() for dispatch in result["dispatches"]]
    return jsonify(result), 200


@api_bp.route("/dispatches", methods=["POST"])
@mfg_or_admin_required
@transactional("Failed to create dispatch")
def create_dispatch(caller):
    ctx = resolve_operator_context(caller)
    dispatch = DispatchService.create(get_json_body(), ctx)
    return jsonify({"dispatch": dispatch.to_dict()}), 201


@api_bp.route("/dispatches/<int:dispatch_id>", methods=["GET"])
@mfg_or_admin_required
@transactional("Failed to load dispatch")
def get_dispatch(dispatch_id, caller):
    resolve_operator_context(caller)
    return jsonify({"dispatch": DispatchService.get(dispatch_id).to_dict()}), 200


@api_bp.route("/dispatches/<int:dispatch_id>/approve", methods=["PATCH"])
@admin_required
@transactional("Failed to approve dispatch")
def approve_dispatch(dispatch_id, caller):
    ctx = resolve_operator_context(caller)
    data = get_json_body()
    dispatch = DispatchService.approve(dispatch_id, ctx, notes=data.get("notes"))
    return jsonify({"dispatch": dispatch.to_dict()}), 200


@api_bp.route("/dispatches/<int:dispatch_id>/reject", methods=["PATCH"])
@admin_required
@transactional("Failed to reject dispatch")
def reject_dispatch(dispatch_id, caller):
    ctx = resolve_operator_context(caller)
    data = get_json_body()
    dispatch = DispatchService.reject(dispatch_id, ctx, data.get("reason"))
    return jsonify({"dispatch": dispatch.to_dict()}), 200


@api_bp.route("/dispatches/<int:dispatch_id>/status", methods=["PATCH"])
@mfg_or_admin_required
@transactional("Failed to update dispatch status")
def update_dispatch_status(dispatch_id, caller):
    ctx = resolve_operator_context(caller)
    data = get_json_body()
    dispatch = DispatchService.update_status(
        dispatch_id, ctx, data.get("status"), notes=data.get("notes")
    )
    return jsonify({"dispatch": dispatch.to_dict()}), 200


@api_bp.route("/dispatches/<int:dispatch_id>/quality-check", methods=["PATCH"])
@mfg_or_admin_required
@transactional("Failed to record quality check")
def record_quality_check(dispatch_id, caller):
    ctx = resolve_operator_context(caller)
    data = get_json_body()
    dispatch = DispatchService.record_quality_check(
        dispatch_id, ctx, data.get("passed"), notes=data.get("notes")
    )
    return jsonify({"dispatch": dispatch.to_dict()}), 200


@api_bp.route("/dispatches/<int:dispatch_id>/documents", methods=["POST"])
@mfg_or_admin_required
@transactional("Failed to upload dispatch document")
def upload_dispatch_document(dispatch_id, caller):
    ctx = resolve_operator_context(caller)
    dispatch, document = DispatchService.attach_document(
        dispatch_id,
        ctx,
        UploadedFile.from_storage(request.files.get("file")),
        request.form.get("kind"),
        description=request.form.get("description"),
    )
    return jsonify({"dispatch": dispatch.to_dict(), "document": document}), 201
