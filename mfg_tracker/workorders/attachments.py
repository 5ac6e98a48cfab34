"""
Attachment lifecycle manager: upload, job card approval workflow,
revisions, deletion and generated assembly cards.

Every upload is staged in the blob store before validation; any failure
inside the staged scope removes the blob again.
"""
from dataclasses import dataclass
from typing import Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.attributes import flag_modified

from mfg_tracker.datetime_utils import filename_timestamp, format_datetime_iso, utcnow
from mfg_tracker.errors import BadRequest, Conflict, NotFound
from mfg_tracker.logging_config import get_logger, log_operation
from mfg_tracker.models import Attachment, db
from mfg_tracker.services.document_service import DocumentService
from mfg_tracker.storage import (
    discard_after_commit,
    get_blob_store,
    replace_after_commit,
    sanitize_name,
    staged_blob,
)
from mfg_tracker.workorders import triggers
from mfg_tracker.workorders.engine import (
    DOCUMENT_MIME_TYPES,
    JOB_CARD_KINDS,
    WorkOrderClass,
    is_upload_allowed,
    versioned_filename,
)
from mfg_tracker.workorders.registry import WorkOrderRegistry

logger = get_logger(__name__)

AUTO_CARD_NOTE = "Assembly card automatically generated on transfer to stencil"


@dataclass
class UploadedFile:
    data: bytes
    original_name: str
    mime_type: str

    @classmethod
    def from_storage(cls, storage):
        """Wrap a werkzeug FileStorage; returns None when no file was sent."""
        if storage is None or not storage.filename:
            return None
        return cls(
            data=storage.read(),
            original_name=storage.filename,
            mime_type=(storage.mimetype or "application/octet-stream").lower(),
        )

    @property
    def size(self):
        return len(self.data)


def _max_upload_bytes():
    return current_app.config["MAX_UPLOAD_BYTES"]


def _check_size(upload):
    limit = _max_upload_bytes()
    if upload.size > limit:
        raise BadRequest(f"File too large (max {limit // (1024 * 1024)} MB)")


def history_entry(action, ctx, notes=None, operator_name=None, **extra):
    entry = {
        "action": action,
        "operator": ctx.user_id,
        "operatorName": operator_name or ctx.actor_name,
        "timestamp": format_datetime_iso(utcnow()),
        "notes": notes or "",
    }
    entry.update({key: value for key, value in extra.items() if value is not None})
    return entry


def _append_history(attachment, entry):
    attachment.history = list(attachment.history or []) + [entry]
    flag_modified(attachment, "history")


class AttachmentManager:

    @staticmethod
    def list_attachments(id_or_number):
        return list(WorkOrderRegistry.resolve(id_or_number).attachments)

    @staticmethod
    def list_job_cards(id_or_number):
        work_order = WorkOrderRegistry.resolve(id_or_number)
        return [a for a in work_order.attachments if a.kind in JOB_CARD_KINDS]

    @staticmethod
    def _locate_job_card(id_or_number, filename):
        work_order = WorkOrderRegistry.find(id_or_number, lock=True)
        attachment = work_order.find_attachment(filename) if work_order else None
        if attachment is None or not attachment.is_job_card:
            raise NotFound("Work order or job card not found")
        return work_order, attachment

    # ==========================================================================
    # UPLOAD
    # ==========================================================================

    @staticmethod
    def upload(id_or_number, upload: Optional[UploadedFile], kind, category, ctx,
               description=None, operator_name=None, special_instructions=None) -> Attachment:
        """
        Validate and attach an uploaded file to a work order.

        Raises:
            BadRequest: missing file/kind/category, invalid kind, category,
                file type or size
            NotFound: the work order does not resolve
            Conflict: the filename is already attached
        """
        if upload is None:
            raise BadRequest("File is required")
        if not kind or not category:
            raise BadRequest("Kind and category are required")

        store = get_blob_store()
        with log_operation("attachment_upload", kind=kind, category=category):
            with staged_blob(store, upload.data, upload.original_name, session=db.session) as handle:
                work_order = WorkOrderRegistry.resolve(id_or_number, lock=True)
                rules = work_order.rules
                if kind not in rules.attachment_kinds:
                    raise BadRequest("Invalid kind")
                if category not in rules.attachment_categories:
                    raise BadRequest("Invalid category")
                if not is_upload_allowed(category, upload.mime_type, upload.original_name):
                    raise BadRequest("Invalid file type for this upload category")
                _check_size(upload)

                attachment = Attachment(
                    kind=kind,
                    category=category,
                    original_name=upload.original_name,
                    filename=handle,
                    mime_type=upload.mime_type,
                    size=upload.size,
                    url=store.url(handle),
                    description=description,
                    uploaded_by=ctx.user_id,
                    uploaded_at=utcnow(),
                )
                if kind in JOB_CARD_KINDS:
                    attachment.operator_name = operator_name or ctx.actor_name
                    attachment.special_instructions = special_instructions
                    attachment.approval_status = "pending"
                    attachment.version = 1
                    attachment.history = [history_entry(
                        "created", ctx, notes=description, operator_name=operator_name, version=1,
                    )]

                work_order.attachments.append(attachment)
                try:
                    db.session.flush()
                except IntegrityError:
                    raise Conflict("Attachment filename already exists")

        logger.info(
            "Attachment uploaded",
            work_order=work_order.wo_number,
            filename=attachment.filename,
            kind=kind,
            size=attachment.size,
        )
        return attachment

    # ==========================================================================
    # JOB CARD WORKFLOW
    # ==========================================================================

    @staticmethod
    def approve(id_or_number, filename, ctx, notes=None) -> Attachment:
        work_order, attachment = AttachmentManager._locate_job_card(id_or_number, filename)
        previous = attachment.approval_status
        attachment.approval_status = "approved"
        attachment.approved_by = ctx.actor_name
        attachment.approved_at = utcnow()
        attachment.rejection_reason = None
        _append_history(attachment, history_entry(
            "approved", ctx, notes=notes, previousStatus=previous, newStatus="approved",
            version=attachment.version,
        ))
        db.session.flush()

        triggers.fire(triggers.TriggerEvent(
            name=triggers.JOB_CARD_APPROVED,
            work_order=work_order,
            ctx=ctx,
            attachment=attachment,
        ))
        logger.info("Job card approved", work_order=work_order.wo_number, filename=filename)
        return attachment

    @staticmethod
    def reject(id_or_number, filename, ctx, reason, notes=None) -> Attachment:
        if not reason or not str(reason).strip():
            raise BadRequest("Rejection reason is required")
        work_order, attachment = AttachmentManager._locate_job_card(id_or_number, filename)
        previous = attachment.approval_status
        attachment.approval_status = "rejected"
        attachment.rejection_reason = str(reason).strip()
        _append_history(attachment, history_entry(
            "rejected", ctx, notes=notes, previousStatus=previous, newStatus="rejected",
            reason=attachment.rejection_reason, version=attachment.version,
        ))
        db.session.flush()
        logger.info("Job card rejected", work_order=work_order.wo_number, filename=filename)
        return attachment

    @staticmethod
    def comment(id_or_number, filename, ctx, comment) -> Attachment:
        if not comment or not str(comment).strip():
            raise BadRequest("Comment is required")
        _, attachment = AttachmentManager._locate_job_card(id_or_number, filename)
        _append_history(attachment, history_entry(
            "comment_added", ctx, notes=str(comment).strip(), version=attachment.version,
        ))
        db.session.flush()
        return attachment

    @staticmethod
    def update(id_or_number, filename, ctx, upload: Optional[UploadedFile] = None,
               update_in_place=False, description=None, notes=None,
               operator_name=None, special_instructions=None) -> Attachment:
        """
        Revise a job card.

        In place: replace the stored bytes (if a file is given) once the
        transaction commits, update metadata and record operator_name from
        the request. Otherwise store a new attachment "{base}_v{n}.{ext}"
        linked to the previous one.
        """
        work_order, attachment = AttachmentManager._locate_job_card(id_or_number, filename)
        if upload is not None:
            if upload.mime_type not in DOCUMENT_MIME_TYPES:
                raise BadRequest(
                    "Invalid file type. Only PDF and images are allowed for job card updates."
                )
            _check_size(upload)

        if update_in_place:
            return AttachmentManager._update_in_place(
                work_order, attachment, ctx, upload, description, notes,
                operator_name, special_instructions,
            )

        if upload is None:
            raise BadRequest("Updated job card file is required")
        return AttachmentManager._add_version(
            work_order, attachment, ctx, upload, description, notes,
            operator_name, special_instructions,
        )

    @staticmethod
    def _update_in_place(work_order, attachment, ctx, upload, description, notes,
                         operator_name, special_instructions):
        store = get_blob_store()
        editor = operator_name or ctx.actor_name
        if upload is not None:
            replace_after_commit(db.session, store, upload.data, attachment.filename)
            attachment.mime_type = upload.mime_type
            attachment.size = upload.size
            attachment.original_name = upload.original_name

        attachment.description = description or (
            f"Job card edited by {editor} on {utcnow().date().isoformat()}"
        )
        if special_instructions is not None:
            attachment.special_instructions = special_instructions
        if operator_name:
            attachment.operator_name = operator_name
        attachment.uploaded_by = ctx.user_id
        attachment.uploaded_at = utcnow()
        _append_history(attachment, history_entry(
            "updated", ctx, notes=notes or "Job card updated in place",
            operator_name=editor, version=attachment.version or 1,
        ))
        db.session.flush()
        logger.info(
            "Job card updated in place",
            work_order=work_order.wo_number,
            filename=attachment.filename,
            operator_name=editor,
        )
        return attachment

    @staticmethod
    def _add_version(work_order, previous, ctx, upload, description, notes,
                     operator_name, special_instructions):
        version = (previous.version or 1) + 1
        new_filename = versioned_filename(previous.filename, version, upload.original_name)
        if work_order.find_attachment(new_filename) is not None:
            raise Conflict("Job card version already exists")

        store = get_blob_store()
        if store.exists(new_filename):
            raise Conflict("Job card version already exists")

        with staged_blob(store, upload.data, handle=new_filename, session=db.session):
            attachment = Attachment(
                kind=previous.kind,
                category=previous.category,
                original_name=upload.original_name,
                filename=new_filename,
                mime_type=upload.mime_type,
                size=upload.size,
                url=store.url(new_filename),
                description=description or f"Version {version} of {previous.filename}",
                uploaded_by=ctx.user_id,
                uploaded_at=utcnow(),
                operator_name=operator_name or ctx.actor_name,
                special_instructions=(
                    special_instructions if special_instructions is not None
                    else previous.special_instructions
                ),
                approval_status="pending",
                version=version,
                history=[history_entry(
                    "updated", ctx, notes=notes, operator_name=operator_name, version=version,
                )],
                parent=previous,
            )
            work_order.attachments.append(attachment)
            try:
                db.session.flush()
            except IntegrityError:
                raise Conflict("Job card version already exists")

        logger.info(
            "Job card version added",
            work_order=work_order.wo_number,
            filename=new_filename,
            version=version,
        )
        return attachment

    # ==========================================================================
    # DELETE / DOWNLOAD
    # ==========================================================================

    @staticmethod
    def delete(id_or_number, filename):
        work_order = WorkOrderRegistry.find(id_or_number, lock=True)
        attachment = work_order.find_attachment(filename) if work_order else None
        if attachment is None:
            raise NotFound("Work order or attachment not found")

        for child in work_order.attachments:
            if child.parent_attachment_id == attachment.id:
                child.parent = None
        work_order.attachments.remove(attachment)
        db.session.flush()
        discard_after_commit(db.session, get_blob_store(), attachment.filename)
        logger.info("Attachment deleted", work_order=work_order.wo_number, filename=filename)

    @staticmethod
    def blob_path(id_or_number, filename):
        """Return (attachment, absolute path) for streaming a download."""
        work_order = WorkOrderRegistry.resolve(id_or_number)
        attachment = work_order.find_attachment(filename)
        if attachment is None:
            raise NotFound("Attachment not found")
        store = get_blob_store()
        if not store.exists(attachment.filename):
            raise NotFound("File not found on disk")
        return attachment, store.path(attachment.filename)

    # ==========================================================================
    # GENERATED ASSEMBLY CARD
    # ==========================================================================

    @staticmethod
    def generate_assembly_card(id_or_number, ctx, description=None) -> Attachment:
        work_order = WorkOrderRegistry.find(
            id_or_number, lock=True, work_order_class=WorkOrderClass.ASSEMBLY
        )
        if work_order is None:
            raise NotFound("Assembly work order not found")
        if work_order.has_attachment_kind("assembly_card"):
            raise Conflict("Assembly card already exists for this work order")
        return AttachmentManager.synthesize_assembly_card(
            work_order, ctx, description=description, notes="Assembly card generated",
        )

    @staticmethod
    def synthesize_assembly_card(work_order, ctx, description=None, notes=AUTO_CARD_NOTE) -> Attachment:
        """Render the placeholder card, store it and append it to the work order."""
        generated_at = utcnow()
        content = DocumentService.render(DocumentService.assembly_card_text(work_order, generated_at))
        wo_part = sanitize_name(work_order.wo_number)
        filename = f"assembly_card_{wo_part}_{filename_timestamp(generated_at)}.pdf"

        store = get_blob_store()
        with staged_blob(store, content, handle=filename, session=db.session):
            attachment = Attachment(
                kind="assembly_card",
                category="assembly",
                original_name=f"Assembly_Card_{work_order.wo_number}.pdf",
                filename=filename,
                mime_type="application/pdf",
                size=len(content),
                url=store.url(filename),
                description=description or f"Assembly card for {work_order.wo_number}",
                uploaded_by=ctx.user_id,
                uploaded_at=generated_at,
                operator_name=ctx.actor_name,
                approval_status="pending",
                version=1,
                history=[history_entry("created", ctx, notes=notes, version=1)],
            )
            work_order.attachments.append(attachment)
            db.session.flush()

        logger.info(
            "Assembly card generated",
            work_order=work_order.wo_number,
            filename=filename,
        )
        return attachment
