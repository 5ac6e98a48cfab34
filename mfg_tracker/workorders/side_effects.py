"""
Built-in cross-cutting rules, registered into the trigger table on import.
create_app imports this module once.
"""
from mfg_tracker.workorders.attachments import AttachmentManager
from mfg_tracker.workorders.engine import WorkOrderClass
from mfg_tracker.workorders.transitions import StageTransitionEngine
from mfg_tracker.workorders.triggers import JOB_CARD_APPROVED, STAGE_CHANGED, register_trigger


def _entering_stencil_without_card(event):
    return (
        event.from_stage == "assembly_store"
        and event.to_stage == "stencil"
        and not event.work_order.has_attachment_kind("assembly_card")
    )


@register_trigger(
    "generate_assembly_card",
    STAGE_CHANGED,
    WorkOrderClass.ASSEMBLY,
    _entering_stencil_without_card,
)
def generate_assembly_card(event):
    return AttachmentManager.synthesize_assembly_card(event.work_order, event.ctx)


def _assembly_card_approved_at_stencil(event):
    return (
        event.attachment is not None
        and event.attachment.kind == "assembly_card"
        and event.work_order.stage == "stencil"
    )


@register_trigger(
    "advance_to_reflow",
    JOB_CARD_APPROVED,
    WorkOrderClass.ASSEMBLY,
    _assembly_card_approved_at_stencil,
)
def advance_to_reflow(event):
    return StageTransitionEngine.apply_stage(event.work_order, "assembly_reflow", event.ctx)
