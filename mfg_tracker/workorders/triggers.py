"""
Side-effect trigger table.

A trigger pairs an event with a work order class, a predicate and an
effect. Effects run inside the caller's transaction, so a failing effect
rolls back the change that fired it.
"""
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from mfg_tracker.logging_config import get_logger
from mfg_tracker.workorders.engine import WorkOrderClass

logger = get_logger(__name__)

STAGE_CHANGED = "stage_changed"
JOB_CARD_APPROVED = "job_card_approved"


@dataclass
class TriggerEvent:
    name: str
    work_order: Any
    ctx: Any
    from_stage: Optional[str] = None
    to_stage: Optional[str] = None
    attachment: Any = None


@dataclass(frozen=True)
class Trigger:
    name: str
    event: str
    work_order_class: WorkOrderClass
    predicate: Callable[[TriggerEvent], bool]
    effect: Callable[[TriggerEvent], Any]

    def matches(self, trigger_event):
        return (
            trigger_event.name == self.event
            and trigger_event.work_order.work_order_class == self.work_order_class.value
            and self.predicate(trigger_event)
        )


_TRIGGERS: List[Trigger] = []


def register_trigger(name, event, work_order_class, predicate):
    """Decorator adding the decorated function to the table as an effect."""
    def decorator(effect):
        _TRIGGERS.append(Trigger(name, event, WorkOrderClass(work_order_class), predicate, effect))
        return effect
    return decorator


def registered_triggers():
    return list(_TRIGGERS)


def fire(trigger_event) -> List[str]:
    """Run every matching trigger in registration order. Returns the names fired."""
    fired = []
    for trigger in _TRIGGERS:
        if not trigger.matches(trigger_event):
            continue
        logger.info(
            "Trigger fired",
            trigger=trigger.name,
            trigger_event=trigger_event.name,
            work_order=trigger_event.work_order.wo_number,
        )
        trigger.effect(trigger_event)
        fired.append(trigger.name)
    return fired
