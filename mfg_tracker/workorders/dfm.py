"""Design-for-manufacture exceptions raised against PCB work orders."""
from collections import Counter
from datetime import timedelta

from sqlalchemy import func

from mfg_tracker.datetime_utils import parse_datetime, utcnow
from mfg_tracker.errors import BadRequest, NotFound
from mfg_tracker.logging_config import get_logger
from mfg_tracker.models import DfmException, WorkOrder, db
from mfg_tracker.workorders.engine import WorkOrderClass
from mfg_tracker.workorders.registry import WorkOrderRegistry

logger = get_logger(__name__)

SEVERITIES = ("info", "low", "medium", "high", "critical")
STATUSES = ("open", "acknowledged", "in_progress", "resolved")
TREND_WINDOW = timedelta(days=365)
TOP_ISSUE_CATEGORIES = 10


class DfmExceptionService:

    @staticmethod
    def _pcb_work_order(id_or_number, lock=False):
        work_order = WorkOrderRegistry.find(id_or_number, lock, WorkOrderClass.PCB)
        if work_order is None:
            raise NotFound("Work order not found")
        return work_order

    @staticmethod
    def _find(work_order, exception_id):
        for item in work_order.dfm_exceptions:
            if str(item.id) == str(exception_id):
                return item
        raise NotFound("Exception not found")

    @staticmethod
    def _apply(item, payload):
        if "severity" in payload:
            if payload["severity"] not in SEVERITIES:
                raise BadRequest("Invalid severity")
            item.severity = payload["severity"]
        if "status" in payload:
            if payload["status"] not in STATUSES:
                raise BadRequest("Invalid status")
            if payload["status"] == "resolved" and item.status != "resolved":
                item.resolved_at = utcnow()
            elif payload["status"] != "resolved":
                item.resolved_at = None
            item.status = payload["status"]
        if "actionDue" in payload:
            try:
                item.action_due = parse_datetime(payload["actionDue"])
            except ValueError:
                raise BadRequest("Invalid actionDue")
        for key, attr in (("code", "code"), ("description", "description"),
                          ("owner", "owner"), ("notes", "notes")):
            if key in payload:
                setattr(item, attr, payload[key])

    @staticmethod
    def list_exceptions(id_or_number):
        return list(DfmExceptionService._pcb_work_order(id_or_number).dfm_exceptions)

    @staticmethod
    def create(id_or_number, payload):
        if not payload.get("code") or not payload.get("description"):
            raise BadRequest("Code and description are required")
        work_order = DfmExceptionService._pcb_work_order(id_or_number, lock=True)
        item = DfmException(severity="medium", status="open", created_at=utcnow())
        DfmExceptionService._apply(item, payload)
        work_order.dfm_exceptions.append(item)
        db.session.flush()
        logger.info("DFM exception raised", work_order=work_order.wo_number, code=item.code)
        return item

    @staticmethod
    def update(id_or_number, exception_id, payload):
        work_order = DfmExceptionService._pcb_work_order(id_or_number, lock=True)
        item = DfmExceptionService._find(work_order, exception_id)
        DfmExceptionService._apply(item, payload)
        db.session.flush()
        return item

    @staticmethod
    def delete(id_or_number, exception_id):
        work_order = DfmExceptionService._pcb_work_order(id_or_number, lock=True)
        item = DfmExceptionService._find(work_order, exception_id)
        work_order.dfm_exceptions.remove(item)
        db.session.flush()

    # ==========================================================================
    # ANALYTICS
    # ==========================================================================

    @staticmethod
    def analytics(now=None):
        """
        Aggregate DFM figures for the dashboard.

        Returns:
            dict with statusSummary (work orders per status, most common
            first), reviewTimes (hours from last CAM review to release),
            exceptionResolution, issueCategories (top codes with the severity
            first recorded for each) and monthlyTrends over TREND_WINDOW
        """
        now = now or utcnow()
        count = func.count(WorkOrder.id)
        status_summary = [
            {"status": status, "count": total}
            for status, total in db.session.query(WorkOrder.status, count)
            .group_by(WorkOrder.status)
            .order_by(count.desc())
        ]

        exceptions = DfmException.query.order_by(DfmException.id).all()
        by_status = Counter(item.status for item in exceptions)
        resolved = by_status.get("resolved", 0)
        categories = {}
        for item in exceptions:
            entry = categories.setdefault(
                item.code, {"code": item.code, "count": 0, "severity": item.severity}
            )
            entry["count"] += 1

        return {
            "statusSummary": status_summary,
            "reviewTimes": _review_times(),
            "exceptionResolution": {
                "total": len(exceptions),
                "resolved": resolved,
                "rate": round(resolved / len(exceptions) * 100, 2) if exceptions else 0,
            },
            "issueCategories": sorted(
                categories.values(), key=lambda entry: entry["count"], reverse=True
            )[:TOP_ISSUE_CATEGORIES],
            "monthlyTrends": _monthly_trends(now - TREND_WINDOW),
        }


def _review_times():
    hours = []
    for (statuses,) in db.session.query(WorkOrder.stage_statuses):
        cam = (statuses or {}).get("cam") or {}
        try:
            reviewed = parse_datetime(cam.get("lastReviewedAt"))
            released = parse_datetime(cam.get("releasedAt"))
        except ValueError:
            continue
        if reviewed and released:
            hours.append((released - reviewed).total_seconds() / 3600)
    if not hours:
        return {"avgReviewTime": 0, "minReviewTime": 0, "maxReviewTime": 0, "count": 0}
    return {
        "avgReviewTime": sum(hours) / len(hours),
        "minReviewTime": min(hours),
        "maxReviewTime": max(hours),
        "count": len(hours),
    }


def _monthly_trends(since):
    trends = {}
    recent = (
        WorkOrder.query.filter(WorkOrder.created_at >= since)
        .order_by(WorkOrder.created_at)
    )
    for work_order in recent:
        month = work_order.created_at.strftime("%Y-%m")
        bucket = trends.setdefault(
            month, {"month": month, "workOrders": 0, "exceptions": 0, "resolved": 0}
        )
        bucket["workOrders"] += 1
        bucket["exceptions"] += len(work_order.dfm_exceptions)
        bucket["resolved"] += sum(
            1 for item in work_order.dfm_exceptions if item.status == "resolved"
        )
    return list(trends.values())
