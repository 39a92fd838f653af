"""
RequestRecord — abstract base class for approvable requests.

Equipment item requests and service-vehicle requests live in different
tables but share the shape the approval engine reads and writes:
  - status / department_id / requestor_id
  - current_step_id pointer + denormalized pending_approver_ids
  - submitted_at / completed_at
  - version counter used as SQLAlchemy's optimistic version_id_col
"""

from datetime import datetime, timezone

from sqlalchemy.orm import declared_attr

from app.models import db

# ── Status vocabulary shared by every form kind ──────────────────────────────

DRAFT = "draft"
SUBMITTED = "submitted"
RETURNED = "returned"
COMPLETED = "completed"
CANCELLED = "cancelled"
DECLINED = "declined"

BASE_STATUSES = frozenset({DRAFT, SUBMITTED, RETURNED, COMPLETED, CANCELLED, DECLINED})


class RequestRecord(db.Model):
    """Abstract base for request tables driven by the approval engine."""
    __abstract__ = True

    # Subclasses set this to "item_request" / "vehicle_request".
    form_kind = None

    id = db.Column(db.Integer, primary_key=True)
    request_number = db.Column(db.String(50), nullable=False, unique=True)
    status = db.Column(db.String(60), nullable=False, default=DRAFT, index=True)

    requestor_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True,
    )
    department_id = db.Column(
        db.Integer, db.ForeignKey("departments.id", ondelete="RESTRICT"), nullable=False, index=True,
    )

    current_step_id = db.Column(
        db.Integer, db.ForeignKey("workflow_steps.id", ondelete="SET NULL"), nullable=True,
        comment="Step currently awaiting action; NULL when not awaiting action or on legacy path",
    )
    pending_approver_ids = db.Column(
        db.JSON, nullable=False, default=list,
        comment="User ids who may act now; empty when not awaiting action",
    )

    comments = db.Column(db.Text)
    requestor_signature = db.Column(db.Text)
    submitted_at = db.Column(db.DateTime(timezone=True))
    completed_at = db.Column(db.DateTime(timezone=True))

    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    @declared_attr.directive
    def __mapper_args__(cls):
        return {"version_id_col": cls.version}

    # ── Helpers ──────────────────────────────────────────────────────────

    def pending_ids(self) -> list[int]:
        return [int(i) for i in (self.pending_approver_ids or [])]

    def base_dict(self) -> dict:
        return {
            "id": self.id,
            "form_kind": self.form_kind,
            "request_number": self.request_number,
            "status": self.status,
            "requestor_id": self.requestor_id,
            "department_id": self.department_id,
            "current_step_id": self.current_step_id,
            "pending_approver_ids": self.pending_ids(),
            "comments": self.comments,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
