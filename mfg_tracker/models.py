from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event
from sqlalchemy.ext.orderinglist import ordering_list
from sqlalchemy.orm import validates

from mfg_tracker.datetime_utils import format_datetime_iso, utcnow
from mfg_tracker.workorders.engine import JOB_CARD_KINDS, WorkOrderClass, rules_for

db = SQLAlchemy()


class User(db.Model):
    """Operator or admin account. Only role "mfg" rows carry permissions."""
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(128), nullable=False, default="")
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(16), nullable=False, default="mfg")
    login_id = db.Column(db.String(64), unique=True, nullable=True)
    mfg_role = db.Column(db.String(64), nullable=True)
    work_center = db.Column(db.String(64), nullable=True)
    permissions = db.Column(db.JSON, nullable=False, default=list)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    last_login = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<User {self.email} ({self.role})>"

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "loginId": self.login_id,
            "mfgRole": self.mfg_role,
            "workCenter": self.work_center,
            "permissions": list(self.permissions or []),
            "isActive": self.is_active,
            "lastLogin": format_datetime_iso(self.last_login),
            "createdAt": format_datetime_iso(self.created_at),
            "updatedAt": format_datetime_iso(self.updated_at),
        }


class WorkOrder(db.Model):
    """
    One job moving through a class-specific stage pipeline.

    PCB, assembly and testing work orders share this table; the
    work_order_class column selects the mapped subclass.
    """
    __tablename__ = "work_orders"

    id = db.Column(db.Integer, primary_key=True)
    work_order_class = db.Column(db.String(16), nullable=False, index=True)
    wo_number = db.Column(db.String(64), unique=True, nullable=False, index=True)
    customer = db.Column(db.String(256), nullable=True)
    product = db.Column(db.String(256), nullable=True)
    quote_id = db.Column(db.String(64), nullable=True)
    quantity = db.Column(db.Integer, nullable=False, default=0)
    priority = db.Column(db.String(16), nullable=False, default="normal")
    status = db.Column(db.String(64), nullable=True)
    stage = db.Column(db.String(64), nullable=False, index=True)
    traveler_ready = db.Column(db.Boolean, nullable=False, default=False)
    mfg_approved = db.Column(db.Boolean, nullable=False, default=False)
    traveler_version = db.Column(db.Integer, nullable=False, default=1)
    due_date = db.Column(db.DateTime, nullable=True)
    notes = db.Column(db.Text, nullable=True)
    tags = db.Column(db.JSON, nullable=False, default=list)

    # Section id -> status record / params / checklist
    stage_statuses = db.Column(db.JSON, nullable=False, default=dict)
    stage_params = db.Column(db.JSON, nullable=False, default=dict)
    stage_checklists = db.Column(db.JSON, nullable=False, default=dict)

    # PCB only
    materials = db.Column(db.JSON, nullable=True)
    # Testing only
    test_type = db.Column(db.String(32), nullable=True)
    requirements = db.Column(db.Text, nullable=True)
    tester = db.Column(db.String(128), nullable=True)

    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    attachments = db.relationship(
        "Attachment",
        back_populates="work_order",
        order_by="Attachment.position",
        collection_class=ordering_list("position"),
        cascade="all, delete-orphan",
    )
    dfm_exceptions = db.relationship(
        "DfmException",
        back_populates="work_order",
        order_by="DfmException.id",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"polymorphic_on": work_order_class}

    def __repr__(self):
        return f"<WorkOrder {self.wo_number} ({self.work_order_class}) @ {self.stage}>"

    @validates("wo_number")
    def _normalize_wo_number(self, key, value):
        normalized = (value or "").strip().upper()
        if not normalized:
            raise ValueError("woNumber is required")
        if self.wo_number is not None and self.wo_number != normalized:
            raise ValueError("woNumber cannot be changed once assigned")
        return normalized

    @property
    def rules(self):
        return rules_for(self.work_order_class)

    def find_attachment(self, filename):
        for attachment in self.attachments:
            if attachment.filename == filename:
                return attachment
        return None

    def has_attachment_kind(self, kind):
        return any(a.kind == kind for a in self.attachments)

    def to_dict(self, include_attachments=True):
        data = {
            "id": self.id,
            "workOrderClass": self.work_order_class,
            "woNumber": self.wo_number,
            "customer": self.customer,
            "product": self.product,
            "quoteId": self.quote_id,
            "quantity": self.quantity,
            "priority": self.priority,
            "status": self.status,
            "stage": self.stage,
            "travelerReady": self.traveler_ready,
            "mfgApproved": self.mfg_approved,
            "travelerVersion": self.traveler_version,
            "dueDate": format_datetime_iso(self.due_date),
            "notes": self.notes,
            "tags": list(self.tags or []),
            "createdBy": self.created_by,
            "createdAt": format_datetime_iso(self.created_at),
            "updatedAt": format_datetime_iso(self.updated_at),
        }
        statuses = self.stage_statuses or {}
        params = self.stage_params or {}
        checklists = self.stage_checklists or {}
        for section, prefix in self.rules.sections.items():
            if section in statuses:
                data[f"{prefix}Status"] = statuses[section]
            if section in params:
                data[f"{prefix}Params"] = params[section]
            if section in checklists:
                data[f"{prefix}Checklist"] = checklists[section]
        if include_attachments:
            data["attachments"] = [a.to_dict() for a in self.attachments]
        return data


class PcbWorkOrder(WorkOrder):
    __mapper_args__ = {"polymorphic_identity": WorkOrderClass.PCB.value}

    def to_dict(self, include_attachments=True):
        data = super().to_dict(include_attachments)
        data["materials"] = self.materials or {}
        return data


class AssemblyWorkOrder(WorkOrder):
    __mapper_args__ = {"polymorphic_identity": WorkOrderClass.ASSEMBLY.value}


class TestingWorkOrder(WorkOrder):
    __mapper_args__ = {"polymorphic_identity": WorkOrderClass.TESTING.value}

    def to_dict(self, include_attachments=True):
        data = super().to_dict(include_attachments)
        data.update({
            "testType": self.test_type,
            "requirements": self.requirements,
            "tester": self.tester,
        })
        return data


WORK_ORDER_MODELS = {
    WorkOrderClass.PCB: PcbWorkOrder,
    WorkOrderClass.ASSEMBLY: AssemblyWorkOrder,
    WorkOrderClass.TESTING: TestingWorkOrder,
}


class Attachment(db.Model):
    """A file attached to a work order. Job cards carry the approval fields."""
    __tablename__ = "attachments"
    __table_args__ = (
        db.UniqueConstraint("work_order_id", "filename", name="_attachment_wo_filename_uc"),
    )

    id = db.Column(db.Integer, primary_key=True)
    work_order_id = db.Column(db.Integer, db.ForeignKey("work_orders.id"), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False, default=0)
    kind = db.Column(db.String(64), nullable=False)
    category = db.Column(db.String(64), nullable=False)
    original_name = db.Column(db.String(255), nullable=True)
    # Doubles as the blob store handle
    filename = db.Column(db.String(255), nullable=False)
    mime_type = db.Column(db.String(128), nullable=True)
    size = db.Column(db.Integer, nullable=False, default=0)
    url = db.Column(db.String(512), nullable=True)
    description = db.Column(db.Text, nullable=True)
    uploaded_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    uploaded_at = db.Column(db.DateTime, default=utcnow)

    # Job card fields
    operator_name = db.Column(db.String(128), nullable=True)
    special_instructions = db.Column(db.Text, nullable=True)
    approval_status = db.Column(db.String(16), nullable=True)
    version = db.Column(db.Integer, nullable=True)
    history = db.Column(db.JSON, nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)
    approved_by = db.Column(db.String(128), nullable=True)
    approved_at = db.Column(db.DateTime, nullable=True)
    parent_attachment_id = db.Column(
        db.Integer, db.ForeignKey("attachments.id", ondelete="SET NULL"), nullable=True
    )

    work_order = db.relationship("WorkOrder", back_populates="attachments")
    parent = db.relationship("Attachment", remote_side=[id])

    @property
    def storage_handle(self):
        return self.filename

    @property
    def is_job_card(self):
        return self.kind in JOB_CARD_KINDS

    def to_dict(self):
        data = {
            "id": self.id,
            "kind": self.kind,
            "category": self.category,
            "originalName": self.original_name,
            "filename": self.filename,
            "storageHandle": self.filename,
            "mimeType": self.mime_type,
            "size": self.size,
            "url": self.url,
            "description": self.description,
            "uploadedBy": self.uploaded_by,
            "uploadedAt": format_datetime_iso(self.uploaded_at),
        }
        if self.is_job_card:
            data.update({
                "operatorName": self.operator_name,
                "specialInstructions": self.special_instructions,
                "approvalStatus": self.approval_status,
                "version": self.version,
                "history": list(self.history or []),
                "rejectionReason": self.rejection_reason,
                "approvedBy": self.approved_by,
                "approvedAt": format_datetime_iso(self.approved_at),
                "parentJobCard": self.parent.filename if self.parent else None,
            })
        return data


class DfmException(db.Model):
    """Design-for-manufacture issue raised against a PCB work order."""
    __tablename__ = "dfm_exceptions"

    id = db.Column(db.Integer, primary_key=True)
    work_order_id = db.Column(db.Integer, db.ForeignKey("work_orders.id"), nullable=False, index=True)
    code = db.Column(db.String(64), nullable=False)
    description = db.Column(db.Text, nullable=False)
    severity = db.Column(db.String(16), nullable=False, default="medium")
    owner = db.Column(db.String(128), nullable=True)
    status = db.Column(db.String(16), nullable=False, default="open")
    action_due = db.Column(db.DateTime, nullable=True)
    notes = db.Column(db.Text, nullable=True)
    resolved_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    work_order = db.relationship("WorkOrder", back_populates="dfm_exceptions")

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "description": self.description,
            "severity": self.severity,
            "owner": self.owner,
            "status": self.status,
            "actionDue": format_datetime_iso(self.action_due),
            "notes": self.notes,
            "resolvedAt": format_datetime_iso(self.resolved_at),
            "createdAt": format_datetime_iso(self.created_at),
        }


class TravelerEvent(db.Model):
    """Append-only shop-floor record. Rows are never updated or deleted."""
    __tablename__ = "traveler_events"
    __table_args__ = (
        db.Index("ix_traveler_events_wo_occurred", "work_order_number", "occurred_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    work_order_id = db.Column(db.Integer, db.ForeignKey("work_orders.id"), nullable=False, index=True)
    work_order_number = db.Column(db.String(64), nullable=False)
    station = db.Column(db.String(64), nullable=False)
    action = db.Column(db.String(16), nullable=False)
    status = db.Column(db.String(16), nullable=False, default="completed")
    note = db.Column(db.Text, nullable=True)
    event_metadata = db.Column("metadata", db.JSON, nullable=True)
    operator_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    operator_login_id = db.Column(db.String(64), nullable=True)
    operator_name = db.Column(db.String(128), nullable=True)
    permissions_snapshot = db.Column(db.JSON, nullable=False, default=list)
    occurred_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    def __repr__(self):
        return f"<TravelerEvent {self.work_order_number} {self.action} @ {self.station}>"

    def to_dict(self):
        return {
            "id": self.id,
            "workOrder": self.work_order_id,
            "workOrderNumber": self.work_order_number,
            "station": self.station,
            "action": self.action,
            "status": self.status,
            "note": self.note,
            "metadata": self.event_metadata or {},
            "operator": self.operator_id,
            "operatorLoginId": self.operator_login_id,
            "operatorName": self.operator_name,
            "permissionsSnapshot": list(self.permissions_snapshot or []),
            "occurredAt": format_datetime_iso(self.occurred_at),
            "createdAt": format_datetime_iso(self.created_at),
        }


@event.listens_for(TravelerEvent, "before_update")
def _reject_traveler_event_update(mapper, connection, target):
    raise RuntimeError("Traveler events are append-only")


@event.listens_for(TravelerEvent, "before_delete")
def _reject_traveler_event_delete(mapper, connection, target):
    raise RuntimeError("Traveler events are append-only")


class Dispatch(db.Model):
    """
    Outbound shipment record. dispatch_class names the variant
    (pcb, testing, assembly, wire_harness, three_d_printing).
    """
    __tablename__ = "dispatches"

    id = db.Column(db.Integer, primary_key=True)
    dispatch_class = db.Column(db.String(32), nullable=False, index=True)
    dispatch_number = db.Column(db.String(64), unique=True, nullable=False)
    work_order_id = db.Column(db.Integer, db.ForeignKey("work_orders.id"), nullable=True, index=True)
    work_order_number = db.Column(db.String(64), nullable=True)
    customer = db.Column(db.String(256), nullable=True)
    product = db.Column(db.String(256), nullable=True)
    quantity = db.Column(db.Integer, nullable=False, default=0)
    items = db.Column(db.JSON, nullable=False, default=list)
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    priority = db.Column(db.String(16), nullable=False, default="normal")
    dispatch_date = db.Column(db.DateTime, nullable=True)
    packed_at = db.Column(db.DateTime, nullable=True)
    packed_by = db.Column(db.Integer, nullable=True)
    shipped_date = db.Column(db.DateTime, nullable=True)
    shipped_by = db.Column(db.Integer, nullable=True)
    delivered_date = db.Column(db.DateTime, nullable=True)
    delivered_by = db.Column(db.Integer, nullable=True)
    shipping_details = db.Column(db.JSON, nullable=True)
    packing_instructions = db.Column(db.Text, nullable=True)
    quality_check = db.Column(db.JSON, nullable=True)
    admin_review = db.Column(db.JSON, nullable=True)
    documents = db.Column(db.JSON, nullable=False, default=dict)
    rejection_reason = db.Column(db.Text, nullable=True)
    notes = db.Column(db.Text, nullable=True)
    tags = db.Column(db.JSON, nullable=False, default=list)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<Dispatch {self.dispatch_number} ({self.status})>"

    @validates("dispatch_number")
    def _freeze_dispatch_number(self, key, value):
        if self.dispatch_number is not None and self.dispatch_number != value:
            raise ValueError("dispatchNumber cannot be changed once assigned")
        return value

    def to_dict(self):
        return {
            "id": self.id,
            "dispatchClass": self.dispatch_class,
            "dispatchNumber": self.dispatch_number,
            "workOrder": self.work_order_id,
            "workOrderNumber": self.work_order_number,
            "customer": self.customer,
            "product": self.product,
            "quantity": self.quantity,
            "items": list(self.items or []),
            "status": self.status,
            "priority": self.priority,
            "dispatchDate": format_datetime_iso(self.dispatch_date),
            "packedAt": format_datetime_iso(self.packed_at),
            "packedBy": self.packed_by,
            "shippedDate": format_datetime_iso(self.shipped_date),
            "shippedBy": self.shipped_by,
            "deliveredDate": format_datetime_iso(self.delivered_date),
            "deliveredBy": self.delivered_by,
            "shippingDetails": self.shipping_details or {},
            "packingInstructions": self.packing_instructions,
            "qualityCheck": self.quality_check or {},
            "adminReview": self.admin_review or {},
            "documents": self.documents or {},
            "rejectionReason": self.rejection_reason,
            "notes": self.notes,
            "tags": list(self.tags or []),
            "createdBy": self.created_by,
            "createdAt": format_datetime_iso(self.created_at),
            "updatedAt": format_datetime_iso(self.updated_at),
        }
