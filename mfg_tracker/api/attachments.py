"""
Attachment and job card routes.
"""
from flask import jsonify, request, send_file

from mfg_tracker.api import api_bp
from mfg_tracker.api.helpers import get_json_body, parse_bool, transactional
from mfg_tracker.auth.permissions import resolve_operator_context
from mfg_tracker.auth.utils import mfg_or_admin_required
from mfg_tracker.logging_config import get_logger
from mfg_tracker.workorders.attachments import AttachmentManager, UploadedFile

logger = get_logger(__name__)


@api_bp.route("/work-orders/<id_or_number>/attachments", methods=["GET"])
@mfg_or_admin_required
@transactional("Failed to load attachments")
def list_attachments(id_or_number, caller):
    resolve_operator_context(caller)
    attachments = AttachmentManager.list_attachments(id_or_number)
    return jsonify({"attachments": [a.to_dict() for a in attachments]}), 200


@api_bp.route("/work-orders/<id_or_number>/attachments", methods=["POST"])
@mfg_or_admin_required
@transactional("Failed to upload attachment")
def upload_attachment(id_or_number, caller):
    """Multipart upload: file, kind, category and optional job card fields."""
    ctx = resolve_operator_context(caller)
    form = request.form
    attachment = AttachmentManager.upload(
        id_or_number,
        UploadedFile.from_storage(request.files.get("file")),
        form.get("kind"),
        form.get("category"),
        ctx,
        description=form.get("description"),
        operator_name=form.get("operatorName"),
        special_instructions=form.get("specialInstructions"),
    )
    return jsonify({"attachment": attachment.to_dict()}), 201


@api_bp.route("/work-orders/<id_or_number>/attachments/<filename>", methods=["DELETE"])
@mfg_or_admin_required
@transactional("Failed to delete attachment")
def delete_attachment(id_or_number, filename, caller):
    resolve_operator_context(caller)
    AttachmentManager.delete(id_or_number, filename)
    return jsonify({"message": "Attachment deleted"}), 200


@api_bp.route("/work-orders/<id_or_number>/attachments/<filename>/download", methods=["GET"])
@mfg_or_admin_required
@transactional("Failed to download attachment")
def download_attachment(id_or_number, filename, caller):
    resolve_operator_context(caller)
    attachment, path = AttachmentManager.blob_path(id_or_number, filename)
    return send_file(
        path,
        mimetype=attachment.mime_type or "application/octet-stream",
        as_attachment=True,
        download_name=attachment.original_name or attachment.filename,
    )


# ==============================================================================
# JOB CARDS
# ==============================================================================

@api_bp.route("/work-orders/<id_or_number>/job-cards", methods=["GET"])
@mfg_or_admin_required
@transactional("Failed to load job cards")
def list_job_cards(id_or_number, caller):
    resolve_operator_context(caller)
    cards = AttachmentManager.list_job_cards(id_or_number)
    return jsonify({"jobCards": [card.to_dict() for card in cards]}), 200


@api_bp.route("/work-orders/<id_or_number>/job-cards/<filename>/approve", methods=["PATCH"])
@mfg_or_admin_required
@transactional("Failed to approve job card")
def approve_job_card(id_or_number, filename, caller):
    ctx = resolve_operator_context(caller)
    data = get_json_body()
    card = AttachmentManager.approve(id_or_number, filename, ctx, notes=data.get("notes"))
    return jsonify({
        "jobCard": card.to_dict(),
        "workOrder": card.work_order.to_dict(),
    }), 200


@api_bp.route("/work-orders/<id_or_number>/job-cards/<filename>/reject", methods=["PATCH"])
@mfg_or_admin_required
@transactional("Failed to reject job card")
def reject_job_card(id_or_number, filename, caller):
    ctx = resolve_operator_context(caller)
    data = get_json_body()
    card = AttachmentManager.reject(
        id_or_number, filename, ctx, data.get("reason"), notes=data.get("notes")
    )
    return jsonify({"jobCard": card.to_dict()}), 200


@api_bp.route("/work-orders/<id_or_number>/job-cards/<filename>/comments", methods=["POST"])
@mfg_or_admin_required
@transactional("Failed to add comment")
def comment_job_card(id_or_number, filename, caller):
    ctx = resolve_operator_context(caller)
    data = get_json_body()
    card = AttachmentManager.comment(id_or_number, filename, ctx, data.get("comment"))
    return jsonify({"jobCard": card.to_dict()}), 201


@api_bp.route("/work-orders/<id_or_number>/job-cards/<filename>/update", methods=["POST"])
@mfg_or_admin_required
@transactional("Failed to update job card")
def update_job_card(id_or_number, filename, caller):
    """updateExisting=true edits in place; otherwise a new version is stored."""
    ctx = resolve_operator_context(caller)
    form = get_json_body()
    update_in_place = parse_bool(form.get("updateExisting"), False)
    card = AttachmentManager.update(
        id_or_number,
        filename,
        ctx,
        upload=UploadedFile.from_storage(request.files.get("file")),
        update_in_place=update_in_place,
        description=form.get("description"),
        notes=form.get("notes"),
        operator_name=form.get("operatorName"),
        special_instructions=form.get("specialInstructions"),
    )
    return jsonify({"jobCard": card.to_dict()}), 200 if update_in_place else 201


@api_bp.route("/work-orders/<id_or_number>/generate-assembly-card", methods=["POST"])
@mfg_or_admin_required
@transactional("Failed to generate assembly card")
def generate_assembly_card(id_or_number, caller):
    ctx = resolve_operator_context(caller)
    data = get_json_body()
    card = AttachmentManager.generate_assembly_card(
        id_or_number, ctx, description=data.get("description")
    )
    return jsonify({"assemblyCard": card.to_dict()}), 201
