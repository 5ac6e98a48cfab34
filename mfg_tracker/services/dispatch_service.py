"""
Dispatch issuer: creation with per-variant daily numbering, the status
chain, admin review, quality check and shipping documents.
"""
import math
from dataclasses import dataclass
from typing import Tuple

from flask import current_app
from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.attributes import flag_modified

from mfg_tracker.datetime_utils import format_datetime_iso, parse_datetime, utc_day_bounds, utcnow
from mfg_tracker.errors import BadRequest, DispatchNumberConflict, NotFound
from mfg_tracker.logging_config import get_logger, log_operation
from mfg_tracker.models import Dispatch, db
from mfg_tracker.storage import discard_after_commit, get_blob_store, staged_blob
from mfg_tracker.workorders.engine import DOCUMENT_MIME_TYPES, PRIORITIES, WorkOrderClass
from mfg_tracker.workorders.registry import WorkOrderRegistry

logger = get_logger(__name__)


@dataclass(frozen=True)
class DispatchVariant:
    name: str
    prefix: str
    work_order_class: WorkOrderClass
    stage: str
    item_fields: Tuple[str, ...] = ()


VARIANTS = {
    "pcb": DispatchVariant("pcb", "DSP", WorkOrderClass.PCB, "dispatch"),
    "testing": DispatchVariant(
        "testing", "DSP", WorkOrderClass.TESTING, "testing_dispatch",
        ("testType", "testResults"),
    ),
    "assembly": DispatchVariant(
        "assembly", "ASM-DSP", WorkOrderClass.ASSEMBLY, "assembly_final_dispatch",
        ("assemblyType",),
    ),
    "wire_harness": DispatchVariant(
        "wire_harness", "ASM-DSP", WorkOrderClass.ASSEMBLY, "wire_harness_dispatch",
        ("wireType", "connectorType", "length", "gauge", "insulation"),
    ),
    "three_d_printing": DispatchVariant(
        "three_d_printing", "DSP", WorkOrderClass.PCB, "3d_printing_dispatch",
        ("material", "technology", "resolution", "finishing"),
    ),
}
VARIANTS_BY_STAGE = {variant.stage: variant for variant in VARIANTS.values()}

ASSEMBLY_TYPES = ("reflow", "store", "3d_printing")

STATUS_FLOW = ("pending", "packing", "packed", "shipped", "delivered")
DISPATCH_STATUSES = STATUS_FLOW + ("cancelled",)
TERMINAL_STATUSES = ("delivered", "cancelled")
STATUS_STAMPS = {
    "packed": ("packed_at", "packed_by"),
    "shipped": ("shipped_date", "shipped_by"),
    "delivered": ("delivered_date", "delivered_by"),
}

DOCUMENT_KINDS = ("invoice", "packingList", "certificateOfConformance", "testReport")

DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 200


def can_transition(current, target) -> bool:
    """One step forward along the chain, or cancel from any open state."""
    if current in TERMINAL_STATUSES:
        return False
    if target == "cancelled":
        return True
    if current not in STATUS_FLOW or target not in STATUS_FLOW:
        return False
    return STATUS_FLOW.index(target) == STATUS_FLOW.index(current) + 1


def format_dispatch_number(prefix, moment, seq) -> str:
    return f"{prefix}-{moment:%Y%m%d}-{seq:03d}"


def _string_list(values):
    if not values:
        return []
    if isinstance(values, str):
        values = [values]
    return [str(value) for value in values if value is not None and str(value) != ""]


class DispatchService:

    @staticmethod
    def variant_for_stage(stage) -> DispatchVariant:
        if not stage:
            return VARIANTS["pcb"]
        variant = VARIANTS_BY_STAGE.get(stage)
        if variant is None:
            raise BadRequest("Invalid dispatch stage")
        return variant

    @staticmethod
    def next_dispatch_number(variant, moment, offset=0) -> str:
        """
        Count today's dispatches numbered under this variant's prefix and
        format the next number. Variants sharing a prefix share a sequence.
        """
        start, end = utc_day_bounds(moment)
        count = (
            db.session.query(func.count(Dispatch.id))
            .filter(
                Dispatch.dispatch_number.like(f"{variant.prefix}-%"),
                Dispatch.created_at >= start,
                Dispatch.created_at < end,
            )
            .scalar()
        )
        return format_dispatch_number(variant.prefix, moment, count + 1 + offset)

    @staticmethod
    def normalize_items(variant, items):
        if not isinstance(items, list):
            raise BadRequest("Items must be a list")
        normalized = []
        for raw in items:
            if not isinstance(raw, dict):
                raise BadRequest("Each item must be an object")
            try:
                quantity = int(raw.get("quantity") or 0)
            except (TypeError, ValueError):
                raise BadRequest("Item quantity must be a number")
            item = {
                "part": raw.get("part"),
                "name": raw.get("name"),
                "description": raw.get("description"),
                "quantity": quantity,
                "serialNumbers": _string_list(raw.get("serialNumbers")),
                "batchNumbers": _string_list(raw.get("batchNumbers")),
            }
            for field_name in variant.item_fields:
                if field_name in raw:
                    item[field_name] = raw[field_name]
            if variant.name == "assembly" and item.get("assemblyType") not in ASSEMBLY_TYPES:
                raise BadRequest("Invalid assemblyType")
            if variant.name == "three_d_printing":
                item["finishing"] = _string_list(item.get("finishing"))
            normalized.append(item)
        return normalized

    @staticmethod
    def create(payload, ctx) -> Dispatch:
        """
        Issue a dispatch, either for a work order sitting at the variant's
        dispatch stage or freestanding from customer/product/items.

        Raises:
            NotFound: workOrderId does not resolve within the variant's class
            BadRequest: stage lock, missing freestanding fields, bad items
            DispatchNumberConflict: numbering kept colliding after retries
        """
        stage = payload.get("stage")
        variant = DispatchService.variant_for_stage(stage)
        work_order_ref = payload.get("workOrderId") or payload.get("workOrder")

        if work_order_ref:
            work_order = WorkOrderRegistry.find(
                work_order_ref, work_order_class=variant.work_order_class
            )
            if work_order is None:
                raise NotFound("Work order not found")
            if stage and work_order.stage != stage:
                raise BadRequest(f"Work order must be in {stage} stage")
            snapshot = {
                "work_order_id": work_order.id,
                "work_order_number": work_order.wo_number,
                "customer": work_order.customer,
                "product": work_order.product,
                "quantity": work_order.quantity or 0,
            }
        else:
            if not payload.get("customer") or not payload.get("product") or not payload.get("items"):
                raise BadRequest(
                    "Customer, product, and items are required when no workOrderId is provided"
                )
            try:
                quantity = int(payload.get("quantity") or 0)
            except (TypeError, ValueError):
                raise BadRequest("Quantity must be a number")
            snapshot = {
                "work_order_id": None,
                "work_order_number": (payload.get("woNumber") or "").strip().upper() or None,
                "customer": payload["customer"],
                "product": payload["product"],
                "quantity": quantity,
            }

        items = DispatchService.normalize_items(variant, payload.get("items") or [])
        priority = payload.get("priority") or "normal"
        if priority not in PRIORITIES:
            raise BadRequest("Invalid priority")
        try:
            dispatch_date = parse_datetime(payload.get("dispatchDate"))
        except ValueError:
            raise BadRequest("Invalid dispatchDate")

        retries = current_app.config["DISPATCH_NUMBER_RETRIES"]
        with log_operation("dispatch_create", variant=variant.name,
                           work_order=snapshot["work_order_number"]):
            for attempt in range(retries):
                now = utcnow()
                dispatch = Dispatch(
                    dispatch_class=variant.name,
                    dispatch_number=DispatchService.next_dispatch_number(variant, now, attempt),
                    items=items,
                    status="pending",
                    priority=priority,
                    dispatch_date=dispatch_date,
                    shipping_details=payload.get("shippingDetails") or {},
                    packing_instructions=payload.get("packingInstructions"),
                    documents={},
                    notes=payload.get("notes"),
                    tags=_string_list(payload.get("tags")),
                    created_by=ctx.user_id,
                    created_at=now,
                    updated_at=now,
                    **snapshot,
                )
                try:
                    with db.session.begin_nested():
                        db.session.add(dispatch)
                except IntegrityError:
                    logger.warning(
                        "Dispatch number collision, retrying",
                        dispatch_number=dispatch.dispatch_number,
                        attempt=attempt + 1,
                    )
                    continue

                logger.info(
                    "Dispatch created",
                    dispatch_number=dispatch.dispatch_number,
                    variant=variant.name,
                    work_order=dispatch.work_order_number,
                )
                return dispatch

        raise DispatchNumberConflict()

    @staticmethod
    def get(dispatch_id, lock=False) -> Dispatch:
        query = Dispatch.query
        if lock:
            query = query.with_for_update().populate_existing()
        dispatch = query.filter(Dispatch.id == dispatch_id).first()
        if dispatch is None:
            raise NotFound("Dispatch not found")
        return dispatch

    @staticmethod
    def list_dispatches(filters):
        query = Dispatch.query
        if filters.get("stage"):
            query = query.filter(
                Dispatch.dispatch_class == DispatchService.variant_for_stage(filters["stage"]).name
            )
        if filters.get("status"):
            query = query.filter(Dispatch.status.in_(filters["status"]))
        if filters.get("priority"):
            query = query.filter(Dispatch.priority.in_(filters["priority"]))
        if filters.get("workOrderNumber"):
            query = query.filter(
                Dispatch.work_order_number == filters["workOrderNumber"].strip().upper()
            )
        if filters.get("customer"):
            query = query.filter(Dispatch.customer.ilike(f"%{filters['customer']}%"))
        if filters.get("search"):
            pattern = f"%{filters['search']}%"
            query = query.filter(or_(
                Dispatch.dispatch_number.ilike(pattern),
                Dispatch.work_order_number.ilike(pattern),
                Dispatch.customer.ilike(pattern),
                Dispatch.product.ilike(pattern),
            ))

        query = query.order_by(Dispatch.created_at.desc(), Dispatch.id.desc())
        limit = min(max(filters.get("limit") or DEFAULT_PAGE_SIZE, 1), MAX_PAGE_SIZE)
        page = max(filters.get("page") or 1, 1)
        total = query.count()
        return {
            "dispatches": query.offset((page - 1) * limit).limit(limit).all(),
            "total": total,
            "page": page,
            "pages": math.ceil(total / limit) if total else 0,
            "limit": limit,
        }

    # ==========================================================================
    # STATUS CHAIN
    # ==========================================================================

    @staticmethod
    def _transition(dispatch, target, ctx):
        if not can_transition(dispatch.status, target):
            raise BadRequest(f"Invalid status transition from {dispatch.status} to {target}")
        previous = dispatch.status
        dispatch.status = target
        stamp = STATUS_STAMPS.get(target)
        if stamp:
            at_field, by_field = stamp
            setattr(dispatch, at_field, utcnow())
            setattr(dispatch, by_field, ctx.user_id)
        dispatch.updated_at = utcnow()
        logger.info(
            "Dispatch status changed",
            dispatch_number=dispatch.dispatch_number,
            from_status=previous,
            to_status=target,
            user_id=ctx.user_id,
        )

    @staticmethod
    def update_status(dispatch_id, ctx, status, notes=None) -> Dispatch:
        if status not in DISPATCH_STATUSES:
            raise BadRequest("Valid status is required")
        dispatch = DispatchService.get(dispatch_id, lock=True)
        DispatchService._transition(dispatch, status, ctx)
        if notes:
            dispatch.notes = notes
        db.session.flush()
        return dispatch

    @staticmethod
    def approve(dispatch_id, ctx, notes=None) -> Dispatch:
        dispatch = DispatchService.get(dispatch_id, lock=True)
        if dispatch.status != "pending":
            raise BadRequest(f"Invalid status transition from {dispatch.status} to packing")
        DispatchService._transition(dispatch, "packing", ctx)
        dispatch.admin_review = {
            "reviewed": True,
            "approved": True,
            "reviewedBy": ctx.user_id,
            "reviewedAt": format_datetime_iso(utcnow()),
            "notes": notes or "",
        }
        db.session.flush()
        return dispatch

    @staticmethod
    def reject(dispatch_id, ctx, reason) -> Dispatch:
        if not reason or not str(reason).strip():
            raise BadRequest("Rejection reason is required")
        dispatch = DispatchService.get(dispatch_id, lock=True)
        DispatchService._transition(dispatch, "cancelled", ctx)
        dispatch.rejection_reason = str(reason).strip()
        dispatch.admin_review = {
            "reviewed": True,
            "approved": False,
            "reviewedBy": ctx.user_id,
            "reviewedAt": format_datetime_iso(utcnow()),
            "notes": dispatch.rejection_reason,
        }
        db.session.flush()
        return dispatch

    @staticmethod
    def record_quality_check(dispatch_id, ctx, passed, notes=None) -> Dispatch:
        if not isinstance(passed, bool):
            raise BadRequest("passed must be true or false")
        dispatch = DispatchService.get(dispatch_id, lock=True)
        dispatch.quality_check = {
            "passed": passed,
            "checkedBy": ctx.user_id,
            "checkedAt": format_datetime_iso(utcnow()),
            "notes": notes or "",
        }
        dispatch.updated_at = utcnow()
        db.session.flush()
        return dispatch

    # ==========================================================================
    # DOCUMENTS
    # ==========================================================================

    @staticmethod
    def attach_document(dispatch_id, ctx, upload, kind, description=None):
        """Store a shipping document; testReport accumulates, others replace."""
        if upload is None:
            raise BadRequest("File is required")
        if kind not in DOCUMENT_KINDS:
            raise BadRequest("Valid document kind is required")

        store = get_blob_store()
        with staged_blob(store, upload.data, upload.original_name, session=db.session) as handle:
            dispatch = DispatchService.get(dispatch_id, lock=True)
            if upload.mime_type not in DOCUMENT_MIME_TYPES:
                raise BadRequest("Invalid file type. Only PDF and images are allowed.")
            if upload.size > current_app.config["MAX_UPLOAD_BYTES"]:
                raise BadRequest("File too large (max 50 MB)")

            document = {
                "filename": handle,
                "originalName": upload.original_name,
                "mimeType": upload.mime_type,
                "size": upload.size,
                "url": store.url(handle),
                "description": description,
                "uploadedBy": ctx.user_id,
                "uploadedAt": format_datetime_iso(utcnow()),
            }
            documents = dict(dispatch.documents or {})
            replaced = None
            if kind == "testReport":
                documents["testReports"] = list(documents.get("testReports") or []) + [document]
            else:
                replaced = documents.get(kind)
                documents[kind] = document
            dispatch.documents = documents
            flag_modified(dispatch, "documents")
            dispatch.updated_at = utcnow()
            db.session.flush()

        if replaced and replaced.get("filename"):
            discard_after_commit(db.session, store, replaced["filename"])

        logger.info(
            "Dispatch document attached",
            dispatch_number=dispatch.dispatch_number,
            kind=kind,
            filename=handle,
        )
        return dispatch, document
