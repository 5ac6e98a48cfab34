"""
Work order registry: lookup, creation, listing and field updates for all
three work order classes.

Services only flush; routes own the commit.
"""
import math
from datetime import timedelta
from typing import Optional

from sqlalchemy import case, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.attributes import flag_modified

from mfg_tracker.datetime_utils import format_datetime_iso, parse_datetime, utcnow
from mfg_tracker.errors import BadRequest, Conflict, NoAllowedFields, NotFound
from mfg_tracker.logging_config import get_logger
from mfg_tracker.models import WORK_ORDER_MODELS, WorkOrder, db
from mfg_tracker.workorders.engine import (
    FOCUS_PRESETS,
    PRIORITIES,
    PRIORITY_RANK,
    STAGE_STATUS_STATES,
    TEST_TYPES,
    WorkOrderClass,
    parse_work_order_class,
    rules_for,
)

logger = get_logger(__name__)

SUMMARY_WINDOW = timedelta(hours=48)
MATERIALS_STAGES = ("planning", "fabrication")
DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 200

STAGE_STATUS_FIELDS = ("state", "owner", "notes", "releaseTarget")


def _as_int(value):
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    return int(text) if text.isdigit() else None


def default_stage_status():
    return {
        "state": "pending",
        "owner": None,
        "notes": None,
        "releaseTarget": None,
        "lastReviewedAt": None,
        "releasedAt": None,
    }


class WorkOrderRegistry:
    """Service for looking up and mutating work orders."""

    @staticmethod
    def _query(lock=False):
        query = WorkOrder.query
        if lock:
            query = query.with_for_update().populate_existing()
        return query

    @staticmethod
    def find(id_or_number, lock=False, work_order_class=None) -> Optional[WorkOrder]:
        """
        Find a work order by numeric id, falling back to its woNumber.

        Args:
            id_or_number: integer id or woNumber (case-insensitive)
            lock: take a row lock for a following mutation
            work_order_class: restrict the match to one class
        """
        if id_or_number is None or str(id_or_number).strip() == "":
            return None

        query = WorkOrderRegistry._query(lock)
        if work_order_class is not None:
            query = query.filter(
                WorkOrder.work_order_class == WorkOrderClass(work_order_class).value
            )

        work_order_id = _as_int(id_or_number)
        if work_order_id is not None:
            work_order = query.filter(WorkOrder.id == work_order_id).first()
            if work_order is not None:
                return work_order

        wo_number = str(id_or_number).strip().upper()
        return query.filter(WorkOrder.wo_number == wo_number).first()

    @staticmethod
    def resolve(id_or_number, lock=False, work_order_class=None) -> WorkOrder:
        """Like find(), but raises NotFound("Work order not found")."""
        work_order = WorkOrderRegistry.find(id_or_number, lock, work_order_class)
        if work_order is None:
            raise NotFound("Work order not found")
        return work_order

    @staticmethod
    def create(payload, ctx) -> WorkOrder:
        """Create a work order of the requested class at its default stage."""
        work_order_class = parse_work_order_class(payload.get("workOrderClass"))
        if work_order_class is None:
            raise BadRequest("Invalid workOrderClass")

        wo_number = (payload.get("woNumber") or "").strip().upper()
        if not wo_number:
            raise BadRequest("woNumber is required")
        if WorkOrder.query.filter_by(wo_number=wo_number).first() is not None:
            raise Conflict("Work order already exists")

        rules = rules_for(work_order_class)
        stage = payload.get("stage") or rules.default_stage
        if not rules.is_valid_stage(stage):
            raise BadRequest("Invalid stage")

        priority = payload.get("priority") or "normal"
        if priority not in PRIORITIES:
            raise BadRequest("Invalid priority")

        try:
            due_date = parse_datetime(payload.get("dueDate"))
        except ValueError:
            raise BadRequest("Invalid dueDate")

        model = WORK_ORDER_MODELS[work_order_class]
        work_order = model(
            wo_number=wo_number,
            customer=payload.get("customer"),
            product=payload.get("product"),
            quote_id=payload.get("quoteId"),
            quantity=_as_int(payload.get("quantity", 0)) or 0,
            priority=priority,
            status=payload.get("status") or (rules.status_values[0] if rules.status_values else "open"),
            stage=stage,
            traveler_ready=bool(payload.get("travelerReady", False)),
            due_date=due_date,
            notes=payload.get("notes"),
            tags=list(payload.get("tags") or []),
            stage_statuses={},
            stage_params={},
            stage_checklists={},
            created_by=ctx.user_id,
        )
        db.session.add(work_order)
        try:
            db.session.flush()
        except IntegrityError:
            raise Conflict("Work order already exists")

        field_updates = {
            key: value for key, value in payload.items()
            if key in rules.extra_fields
        }
        if field_updates:
            WorkOrderRegistry.apply_field_updates(work_order, field_updates)

        logger.info(
            "Work order created",
            work_order=work_order.wo_number,
            work_order_class=work_order.work_order_class,
            stage=work_order.stage,
        )
        return work_order

    # ==========================================================================
    # FIELD UPDATES
    # ==========================================================================

    @staticmethod
    def filter_updates(work_order, updates):
        """
        Filter a raw update body through the class field mask.

        Returns:
            dict of writable keys; a "stage" key is left for the transition engine

        Raises:
            NoAllowedFields: nothing in the body is writable for this class
        """
        mask = work_order.rules.field_mask()
        allowed = {key: value for key, value in (updates or {}).items() if key in mask}
        if not allowed:
            raise NoAllowedFields()
        return allowed

    @staticmethod
    def apply_field_updates(work_order, updates):
        """Apply already-filtered field updates. Returns the applied keys."""
        rules = work_order.rules
        mask = rules.field_mask()
        applied = []
        for key, value in updates.items():
            spec = mask[key]
            if spec.kind == "bool":
                setattr(work_order, spec.attr, bool(value))
            elif spec.kind == "str":
                setattr(work_order, spec.attr, None if value is None else str(value))
            elif spec.kind == "status":
                if rules.status_values and value not in rules.status_values:
                    raise BadRequest("Invalid status")
                work_order.status = value
            elif spec.kind == "priority":
                if value not in PRIORITIES:
                    raise BadRequest("Invalid priority")
                work_order.priority = value
            elif spec.kind == "test_type":
                if value not in TEST_TYPES:
                    raise BadRequest("Invalid testType")
                work_order.test_type = value
            elif spec.kind == "stage_status":
                if not isinstance(value, dict):
                    raise BadRequest(f"{key} must be an object")
                WorkOrderRegistry._merge_stage_status(work_order, spec.section, value)
            elif spec.kind == "json":
                if spec.section is None:
                    setattr(work_order, spec.attr, value)
                else:
                    section_map = dict(getattr(work_order, spec.attr) or {})
                    section_map[spec.section] = value
                    setattr(work_order, spec.attr, section_map)
            else:
                continue
            applied.append(key)
        if applied:
            work_order.updated_at = utcnow()
            db.session.flush()
        return applied

    @staticmethod
    def _merge_stage_status(work_order, section, values):
        statuses = dict(work_order.stage_statuses or {})
        record = dict(statuses.get(section) or default_stage_status())
        changed = False
        for field_name in STAGE_STATUS_FIELDS:
            if field_name not in values:
                continue
            value = values[field_name]
            if field_name == "state":
                if value not in STAGE_STATUS_STATES:
                    raise BadRequest("Invalid stage status")
                now = format_datetime_iso(utcnow())
                record["lastReviewedAt"] = now
                if value == "approved":
                    record["releasedAt"] = now
            record[field_name] = value
            changed = True
        statuses[section] = record
        work_order.stage_statuses = statuses
        flag_modified(work_order, "stage_statuses")
        return changed

    @staticmethod
    def update_stage_status(id_or_number, section, values):
        """Update one per-stage status record; created lazily with defaults."""
        work_order = WorkOrderRegistry.resolve(id_or_number, lock=True)
        if section not in work_order.rules.sections:
            raise BadRequest("Invalid stage")
        values = values or {}
        if not any(field_name in values for field_name in STAGE_STATUS_FIELDS):
            raise BadRequest("No valid updates provided")
        WorkOrderRegistry._merge_stage_status(work_order, section, values)
        work_order.updated_at = utcnow()
        db.session.flush()
        logger.info(
            "Stage status updated",
            work_order=work_order.wo_number,
            section=section,
            state=work_order.stage_statuses[section].get("state"),
        )
        return work_order, work_order.stage_statuses[section]

    @staticmethod
    def set_mfg_approved(id_or_number, approved=True):
        work_order = WorkOrderRegistry.resolve(id_or_number, lock=True)
        work_order.mfg_approved = bool(approved)
        work_order.updated_at = utcnow()
        db.session.flush()
        return work_order

    # ==========================================================================
    # LISTING
    # ==========================================================================

    @staticmethod
    def list_work_orders(filters):
        """
        Filtered, paginated listing.

        Args:
            filters: dict with optional workOrderClass, status, stage, priority
                (lists), search, focus, travelerReady, page, limit

        Returns:
            dict with workOrders, total, page, pages, limit
        """
        query = WorkOrder.query

        focus = FOCUS_PRESETS.get(filters.get("focus") or "")
        work_order_class = filters.get("workOrderClass")
        if focus is not None:
            work_order_class = focus.work_order_class
            if focus.stages:
                query = query.filter(WorkOrder.stage.in_(focus.stages))
            if focus.traveler_ready is not None:
                query = query.filter(WorkOrder.traveler_ready == focus.traveler_ready)
            if focus.priority:
                query = query.filter(WorkOrder.priority == focus.priority)
        elif filters.get("focus"):
            raise BadRequest("Invalid focus")

        if work_order_class is not None:
            query = query.filter(
                WorkOrder.work_order_class == WorkOrderClass(work_order_class).value
            )
        if filters.get("status"):
            query = query.filter(WorkOrder.status.in_(filters["status"]))
        if filters.get("stage"):
            query = query.filter(WorkOrder.stage.in_(filters["stage"]))
        if filters.get("priority"):
            query = query.filter(WorkOrder.priority.in_(filters["priority"]))
        if filters.get("travelerReady") is not None:
            query = query.filter(WorkOrder.traveler_ready == filters["travelerReady"])
        if filters.get("search"):
            pattern = f"%{filters['search']}%"
            query = query.filter(or_(
                WorkOrder.wo_number.ilike(pattern),
                WorkOrder.customer.ilike(pattern),
                WorkOrder.product.ilike(pattern),
            ))

        priority_rank = case(
            *[(WorkOrder.priority == name, rank) for name, rank in PRIORITY_RANK.items()],
            else_=PRIORITY_RANK["normal"],
        )
        query = query.order_by(
            priority_rank.desc(),
            WorkOrder.due_date.is_(None),
            WorkOrder.due_date.asc(),
            WorkOrder.created_at.desc(),
            WorkOrder.id.desc(),
        )

        limit = min(max(filters.get("limit") or DEFAULT_PAGE_SIZE, 1), MAX_PAGE_SIZE)
        page = max(filters.get("page") or 1, 1)
        total = query.count()
        items = query.offset((page - 1) * limit).limit(limit).all()
        return {
            "workOrders": items,
            "total": total,
            "page": page,
            "pages": math.ceil(total / limit) if total else 0,
            "limit": limit,
        }

    # ==========================================================================
    # SUMMARY
    # ==========================================================================

    @staticmethod
    def summary(now=None):
        """
        Dashboard counters over every work order.

        dueSoon and releaseDueSoon look SUMMARY_WINDOW ahead of now. CAM
        counters use the lazily created "cam" status record, so a work order
        at the cam stage without one counts as pending.
        """
        now = now or utcnow()
        soon = now + SUMMARY_WINDOW
        counts = {
            "totalWorkOrders": WorkOrder.query.count(),
            "camPending": 0,
            "camBlocked": 0,
            "materialsBlocked": 0,
            "travelerReady": WorkOrder.query.filter(WorkOrder.traveler_ready.is_(True)).count(),
            "dueSoon": WorkOrder.query.filter(
                WorkOrder.due_date >= now, WorkOrder.due_date <= soon
            ).count(),
            "releaseDueSoon": 0,
        }
        shortages = {"shortageCount": 0, "totalShortageQty": 0}

        rows = WorkOrder.query.with_entities(
            WorkOrder.stage, WorkOrder.stage_statuses, WorkOrder.materials
        )
        for stage, statuses, materials in rows:
            cam = (statuses or {}).get("cam") or default_stage_status()
            open_review = cam.get("state") in ("pending", "in_review")
            if stage == "cam":
                if open_review:
                    counts["camPending"] += 1
                elif cam.get("state") == "blocked":
                    counts["camBlocked"] += 1
            if open_review and _within(cam.get("releaseTarget"), now, soon):
                counts["releaseDueSoon"] += 1

            materials = materials or {}
            if stage in MATERIALS_STAGES and materials.get("ready") is not True:
                counts["materialsBlocked"] += 1
            for shortage in materials.get("shortages") or []:
                shortages["shortageCount"] += 1
                if isinstance(shortage, dict):
                    shortages["totalShortageQty"] += _as_number(shortage.get("shortageQty"))

        counts["shortages"] = shortages
        return counts


def _within(value, start, end):
    try:
        moment = parse_datetime(value)
    except (TypeError, ValueError):
        return False
    return moment is not None and start <= moment <= end


def _as_number(value):
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return value
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0
