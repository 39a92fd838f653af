"""
Approval workflow configuration — WorkflowDefinition and WorkflowStep.

A definition governs one form kind (``item_request`` or ``vehicle_request``)
and owns an ordered list of steps.  Definitions are written by the
administrative CRUD in workflow_store; the approval engine only reads them.

Versioning:
    Editing the steps of a definition never mutates step rows in place.
    workflow_store creates a new definition row with ``version + 1`` and
    deactivates the old one, so requests whose ``current_step_id`` points at
    an old step keep resolving against the version they were submitted under.
"""

import json
from datetime import datetime, timezone

from app.models import db

# ── Constants ────────────────────────────────────────────────────────────────

FORM_KINDS = frozenset({"item_request", "vehicle_request"})

# byRole, bySpecificUsers, byDepartment, byRequestor
APPROVER_STRATEGIES = frozenset({"role", "user", "department", "requestor"})

APPROVAL_LOGICS = frozenset({"any", "all"})

GENERIC_DECLINED_STATUS = "declined"


def slugify_step_name(name: str) -> str:
    """'IT Manager Approval' -> 'it_manager_approval'."""
    return (name or "").strip().lower().replace(" ", "_")


class WorkflowDefinition(db.Model):
    __tablename__ = "workflow_definitions"
    __table_args__ = (
        db.Index("ix_workflow_kind_active", "form_kind", "is_active", "is_default"),
    )

    id = db.Column(db.Integer, primary_key=True)
    form_kind = db.Column(db.String(50), nullable=False,
                          comment="item_request | vehicle_request")
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_default = db.Column(db.Boolean, nullable=False, default=True)
    version = db.Column(db.Integer, nullable=False, default=1)
    previous_version_id = db.Column(
        db.Integer, db.ForeignKey("workflow_definitions.id", ondelete="SET NULL"), nullable=True,
    )

    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    steps = db.relationship(
        "WorkflowStep",
        back_populates="workflow",
        order_by="WorkflowStep.step_order",
        cascade="all, delete-orphan",
    )

    def step_after(self, step):
        """Return the first step with a higher order than *step*, or None."""
        for candidate in self.steps:
            if candidate.step_order > step.step_order:
                return candidate
        return None

    def declared_statuses(self) -> set[str]:
        """Every status value this definition can write to a request."""
        statuses = set()
        for step in self.steps:
            if step.status_on_approval:
                statuses.add(step.status_on_approval)
            if step.status_on_completion:
                statuses.add(step.status_on_completion)
            statuses.add(step.declined_status)
        return statuses

    def to_dict(self, include_steps=True):
        d = {
            "id": self.id,
            "form_kind": self.form_kind,
            "name": self.name,
            "description": self.description,
            "is_active": self.is_active,
            "is_default": self.is_default,
            "version": self.version,
            "previous_version_id": self.previous_version_id,
            "created_by": self.created_by,
            "updated_by": self.updated_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_steps:
            d["steps"] = [s.to_dict() for s in self.steps]
        return d

    def __repr__(self):
        return f"<WorkflowDefinition {self.id}: {self.form_kind} v{self.version}>"


class WorkflowStep(db.Model):
    __tablename__ = "workflow_steps"
    __table_args__ = (
        db.UniqueConstraint("workflow_id", "step_order", name="uq_workflow_step_order"),
    )

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(
        db.Integer, db.ForeignKey("workflow_definitions.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    step_order = db.Column(db.Integer, nullable=False, comment="1-based, contiguous")
    step_name = db.Column(db.String(200), nullable=False)

    approver_strategy = db.Column(db.String(20), nullable=False, default="role",
                                  comment="role | user | department | requestor")
    approver_role = db.Column(db.String(30))
    specific_approver_ids = db.Column(db.JSON, default=list)
    approver_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
        comment="Legacy single-user field, merged with specific_approver_ids",
    )
    approver_department_id = db.Column(
        db.Integer, db.ForeignKey("departments.id", ondelete="SET NULL"), nullable=True,
    )
    requires_same_department = db.Column(db.Boolean, nullable=False, default=False)

    approval_logic = db.Column(db.String(10), nullable=False, default="any", comment="any | all")
    status_on_approval = db.Column(db.String(60))
    status_on_completion = db.Column(db.String(60))

    workflow = db.relationship("WorkflowDefinition", back_populates="steps")

    # ── Derived ──────────────────────────────────────────────────────────

    @property
    def approval_type(self) -> str:
        """Tag stored on ApprovalRecord rows for this step."""
        return slugify_step_name(self.step_name)

    @property
    def declined_status(self) -> str:
        """'Department Approval' -> 'department_declined'; other names -> 'declined'."""
        slug = self.approval_type
        if slug.endswith("_approval") and len(slug) > len("_approval"):
            return slug[: -len("_approval")] + "_declined"
        return GENERIC_DECLINED_STATUS

    def specific_user_ids(self) -> set[int]:
        """Union of the JSON id list and the legacy single-id column."""
        ids = set()
        raw = self.specific_approver_ids
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except ValueError:
                raw = []
        if isinstance(raw, (list, tuple)):
            for value in raw:
                try:
                    ids.add(int(value))
                except (TypeError, ValueError):
                    continue
        if self.approver_user_id:
            ids.add(self.approver_user_id)
        return ids

    def to_dict(self):
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "step_order": self.step_order,
            "step_name": self.step_name,
            "approval_type": self.approval_type,
            "approver_strategy": self.approver_strategy,
            "approver_role": self.approver_role,
            "specific_approver_ids": sorted(self.specific_user_ids()),
            "approver_department_id": self.approver_department_id,
            "requires_same_department": self.requires_same_department,
            "approval_logic": self.approval_logic,
            "status_on_approval": self.status_on_approval,
            "status_on_completion": self.status_on_completion,
        }

    def __repr__(self):
        return f"<WorkflowStep {self.id}: #{self.step_order} {self.step_name}>"
