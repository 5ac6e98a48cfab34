"""
Pure rule tables for the three work order classes.
Contains no database dependencies - works with plain data structures.

Everything class-specific (stage vocabulary, default stage, attachment
kinds and categories, writable fields, focus presets) lives here so the
registry, transition engine and attachment manager stay class-agnostic.
"""
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple


class WorkOrderClass(str, Enum):
    PCB = "pcb"
    ASSEMBLY = "assembly"
    TESTING = "testing"


PRIORITIES = ("low", "normal", "high", "hot")
PRIORITY_RANK = {"low": 0, "normal": 1, "high": 2, "hot": 3}

STAGE_STATUS_STATES = ("pending", "in_review", "approved", "blocked")
APPROVAL_STATUSES = ("pending", "approved", "rejected")

JOB_CARD_KINDS = frozenset({"job_card", "assembly_card"})

TEST_TYPES = ("functional", "electrical", "burn_in", "environmental", "mixed")


THREE_D_PRINTING_STAGES = (
    "3d_printing_intake",
    "3d_printing_file_prep",
    "3d_printing_slicing",
    "3d_printing_queue",
    "3d_printing_active",
    "3d_printing_post_processing",
    "3d_printing_qc",
    "3d_printing_dispatch",
)

PCB_STAGES = (
    "cam",
    "planning",
    "fabrication",
    "drilling",
    "sheet_cutting",
    "cnc_drilling",
    "sanding",
    "brushing",
    "photo_imaging",
    "developer",
    "etching",
    "tin_strip",
    "tin_stripping",
    "solder_mask",
    "surface_finish",
    "legend_print",
    "cnc_routing",
    "v_score",
    "flying_probe",
    "final_qc_pdir",
) + THREE_D_PRINTING_STAGES + (
    "packing",
    "dispatch",
    "pth",
    "final_qa",
    "assembly",
    "shipping",
    "shipped",
)

ASSEMBLY_STAGES = (
    "assembly_store",
    "stencil",
    "assembly_reflow",
    "th_soldering",
    "visual_inspection",
    "ict",
    "flashing",
    "functional_test",
    "wire_harness_intake",
    "wire_harness",
    "wire_testing",
    "wire_harness_dispatch",
    "assembly_3d_printing",
    "assembly_final_dispatch",
)

TESTING_STAGES = (
    "testing_intake",
    "functional_testing",
    "electrical_testing",
    "burn_in_testing",
    "environmental_testing",
    "mixed_testing",
    "testing_review",
    "testing_dispatch",
)


# Status sections: section id -> camelCase prefix used by the API
# ("{prefix}Status", "{prefix}Params", "{prefix}Checklist").
PCB_SECTIONS = {
    "cam": "cam",
    "sheet_cutting": "sheetCutting",
    "cnc_drilling": "cncDrilling",
    "sanding": "sanding",
    "brushing": "brushing",
    "pth": "pth",
    "photo_imaging": "photoImaging",
    "developer": "developer",
    "etching": "etching",
    "tin_stripping": "tinStripping",
    "solder_mask": "solderMask",
    "surface_finish": "surfaceFinish",
    "legend_print": "legendPrinting",
    "cnc_routing": "cncRouting",
    "v_score": "vScoring",
    "flying_probe": "flyingProbe",
    "final_qc_pdir": "finalQCPDIR",
    "packing": "packing",
    "dispatch": "dispatch",
    "3d_printing_intake": "threeDPrintingIntake",
    "3d_printing_file_prep": "threeDPrintingFilePrep",
    "3d_printing_slicing": "threeDPrintingSlicing",
    "3d_printing_queue": "threeDPrintingQueue",
    "3d_printing_active": "threeDPrintingActive",
    "3d_printing_post_processing": "threeDPrintingPostProcessing",
    "3d_printing_qc": "threeDPrintingQc",
    "3d_printing_dispatch": "threeDPrintingDispatch",
}

ASSEMBLY_SECTIONS = {
    "assembly_store": "assemblyStore",
    "stencil": "stencil",
    "assembly_reflow": "assemblyReflow",
    "th_soldering": "thSoldering",
    "visual_inspection": "visualInspection",
    "ict": "ict",
    "flashing": "flashing",
    "functional_test": "functionalTest",
    "wire_harness_intake": "wireHarnessIntake",
    "wire_harness": "wireHarness",
    "wire_testing": "wireTesting",
    "wire_harness_dispatch": "wireHarnessDispatch",
    "assembly_3d_printing": "assembly3DPrinting",
    "assembly_final_dispatch": "assemblyFinalDispatch",
}

TESTING_SECTIONS = {
    "testing": "testing",
    "review": "review",
    "dispatch": "dispatch",
}


@dataclass(frozen=True)
class FieldSpec:
    """How one writable API field maps onto the model."""
    attr: str
    kind: str
    section: Optional[str] = None


@dataclass(frozen=True)
class ClassRules:
    work_order_class: WorkOrderClass
    stages: Tuple[str, ...]
    default_stage: str
    attachment_kinds: FrozenSet[str]
    attachment_categories: FrozenSet[str]
    sections: Dict[str, str]
    job_card_kind: str
    status_values: Optional[Tuple[str, ...]] = None
    extra_fields: Dict[str, FieldSpec] = field(default_factory=dict)

    def is_valid_stage(self, stage) -> bool:
        return stage in self.stages

    def field_mask(self) -> Dict[str, FieldSpec]:
        """Writable request keys for this class, mapped to their field specs."""
        mask = {
            "stage": FieldSpec("stage", "stage"),
            "travelerReady": FieldSpec("traveler_ready", "bool"),
            "status": FieldSpec("status", "status"),
        }
        mask.update(self.extra_fields)
        for section, prefix in self.sections.items():
            mask[f"{prefix}Status"] = FieldSpec("stage_statuses", "stage_status", section)
            mask[f"{prefix}Params"] = FieldSpec("stage_params", "json", section)
            mask[f"{prefix}Checklist"] = FieldSpec("stage_checklists", "json", section)
        return mask


CLASS_RULES = {
    WorkOrderClass.PCB: ClassRules(
        work_order_class=WorkOrderClass.PCB,
        stages=PCB_STAGES,
        default_stage="cam",
        attachment_kinds=frozenset(
            {"drill_file", "photo_file", "job_card", "gerber", "bom", "spec", "film"}
        ),
        attachment_categories=frozenset({"intake", "nc_drill", "phototools"}),
        sections=PCB_SECTIONS,
        job_card_kind="job_card",
        extra_fields={"materials": FieldSpec("materials", "json")},
    ),
    WorkOrderClass.ASSEMBLY: ClassRules(
        work_order_class=WorkOrderClass.ASSEMBLY,
        stages=ASSEMBLY_STAGES,
        default_stage="assembly_store",
        attachment_kinds=frozenset(
            {
                "bom",
                "assembly",
                "assembly_card",
                "pick_list",
                "assembly_instruction",
                "visual_report",
                "inspection_image",
                "visual_photo",
                "aoi_image",
                "film",
            }
        ),
        attachment_categories=frozenset({"intake", "assembly", "inspection"}),
        sections=ASSEMBLY_SECTIONS,
        job_card_kind="assembly_card",
        status_values=("draft",) + ASSEMBLY_STAGES + ("hold", "complete"),
    ),
    WorkOrderClass.TESTING: ClassRules(
        work_order_class=WorkOrderClass.TESTING,
        stages=TESTING_STAGES,
        default_stage="testing_intake",
        attachment_kinds=frozenset(
            {
                "test_plan",
                "test_report",
                "test_data",
                "procedure",
                "calibration_certificate",
                "safety_checklist",
                "dispatch_note",
                "packing_list",
                "invoice",
                "qa_certificate",
                "bom",
                "spec",
            }
        ),
        attachment_categories=frozenset({"intake", "testing", "review", "dispatch"}),
        sections=TESTING_SECTIONS,
        job_card_kind="job_card",
        status_values=(
            "testing_intake",
            "testing_execution",
            "testing_review",
            "testing_dispatch",
            "complete",
        ),
        extra_fields={
            "testType": FieldSpec("test_type", "test_type"),
            "requirements": FieldSpec("requirements", "str"),
            "priority": FieldSpec("priority", "priority"),
            "tester": FieldSpec("tester", "str"),
        },
    ),
}


def rules_for(work_order_class) -> ClassRules:
    return CLASS_RULES[WorkOrderClass(work_order_class)]


def parse_work_order_class(value, default=WorkOrderClass.PCB) -> Optional[WorkOrderClass]:
    """Parse a class name; returns None for unknown values."""
    if value is None or value == "":
        return default
    try:
        return WorkOrderClass(str(value).strip().lower())
    except ValueError:
        return None


# ==============================================================================
# FOCUS PRESETS (named listing views)
# ==============================================================================

@dataclass(frozen=True)
class FocusPreset:
    work_order_class: WorkOrderClass
    stages: Optional[Tuple[str, ...]] = None
    traveler_ready: Optional[bool] = None
    priority: Optional[str] = None


def _build_focus_presets():
    presets = {
        "cam": FocusPreset(WorkOrderClass.PCB, ("cam",)),
        "materials": FocusPreset(WorkOrderClass.PCB, ("planning", "fabrication")),
        "ready": FocusPreset(WorkOrderClass.PCB, traveler_ready=True),
        "hot": FocusPreset(WorkOrderClass.PCB, priority="hot"),
        "3d_printing": FocusPreset(WorkOrderClass.PCB, THREE_D_PRINTING_STAGES, True),
        "testing": FocusPreset(WorkOrderClass.TESTING, TESTING_STAGES),
    }
    for stage in PCB_SECTIONS:
        if stage != "cam":
            presets.setdefault(stage, FocusPreset(WorkOrderClass.PCB, (stage,), True))
    for stage in ASSEMBLY_STAGES:
        presets.setdefault(stage, FocusPreset(WorkOrderClass.ASSEMBLY, (stage,), True))
    for stage in TESTING_STAGES:
        presets.setdefault(stage, FocusPreset(WorkOrderClass.TESTING, (stage,), True))
    return presets


FOCUS_PRESETS = _build_focus_presets()


# ==============================================================================
# UPLOAD CONTENT RULES
# ==============================================================================

INSPECTION_CATEGORIES = frozenset({"phototools", "inspection"})

INSPECTION_MIME_TYPES = frozenset(
    {
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/bmp",
        "image/tiff",
        "image/webp",
        "application/pdf",
        "text/plain",
        "application/zip",
        "application/x-excellon",
    }
)

GENERAL_MIME_TYPES = frozenset(
    {
        "application/pdf",
        "image/jpeg",
        "image/png",
        "image/gif",
        "application/zip",
        "application/x-zip-compressed",
        "text/plain",
        "text/csv",
        "application/octet-stream",
        "application/x-excellon",
        "application/vnd.ms-excel",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    }
)

# Job card revisions and dispatch documents accept PDFs and images only.
DOCUMENT_MIME_TYPES = frozenset({"application/pdf", "image/jpeg", "image/png"})

# Drill files arrive with whatever MIME type the browser guesses.
MIME_EXEMPT_EXTENSIONS = frozenset({".drl"})


def allowed_mime_types(category) -> FrozenSet[str]:
    if category in INSPECTION_CATEGORIES:
        return INSPECTION_MIME_TYPES
    return GENERAL_MIME_TYPES


def is_upload_allowed(category, mime_type, original_name) -> bool:
    ext = os.path.splitext(original_name or "")[1].lower()
    if ext in MIME_EXEMPT_EXTENSIONS:
        return True
    return (mime_type or "").lower() in allowed_mime_types(category)


_VERSION_SUFFIX = re.compile(r"_v\d+$")


def versioned_filename(filename, version, new_original_name=None) -> str:
    """
    Filename for the next job card revision.

    "card_v2.pdf" at version 3 becomes "card_v3.pdf"; the extension follows
    the newly uploaded file when it has one.
    """
    base, ext = os.path.splitext(filename)
    base = _VERSION_SUFFIX.sub("", base)
    if new_original_name:
        new_ext = os.path.splitext(new_original_name)[1]
        if new_ext:
            ext = new_ext.lower()
    return f"{base}_v{version}{ext}"
