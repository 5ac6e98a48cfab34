"""
Stage transition engine.

Any stage in the work order's class vocabulary is reachable from any
other; the rule is membership, not adjacency. Matching triggers run
before the stage change is flushed, in the same transaction.
"""
from mfg_tracker.datetime_utils import utcnow
from mfg_tracker.errors import BadRequest
from mfg_tracker.logging_config import get_logger
from mfg_tracker.models import WorkOrder, db
from mfg_tracker.workorders import triggers
from mfg_tracker.workorders.registry import WorkOrderRegistry

logger = get_logger(__name__)


class StageTransitionEngine:

    @staticmethod
    def apply_stage(work_order, requested_stage, ctx) -> WorkOrder:
        """
        Move a work order to requested_stage.

        Args:
            work_order: WorkOrder instance, or an id / woNumber to resolve
            requested_stage: target stage id
            ctx: OperatorContext of the caller

        Raises:
            BadRequest: "Stage is required" / "Invalid stage"
            NotFound: the work order does not resolve
        """
        if not requested_stage:
            raise BadRequest("Stage is required")

        if not isinstance(work_order, WorkOrder):
            work_order = WorkOrderRegistry.resolve(work_order, lock=True)

        if not work_order.rules.is_valid_stage(requested_stage):
            raise BadRequest("Invalid stage")

        from_stage = work_order.stage
        fired = triggers.fire(triggers.TriggerEvent(
            name=triggers.STAGE_CHANGED,
            work_order=work_order,
            ctx=ctx,
            from_stage=from_stage,
            to_stage=requested_stage,
        ))

        work_order.stage = requested_stage
        work_order.updated_at = utcnow()
        db.session.flush()

        logger.info(
            "Stage transition applied",
            work_order=work_order.wo_number,
            from_stage=from_stage,
            to_stage=requested_stage,
            triggers=fired,
            user_id=ctx.user_id,
        )
        return work_order
