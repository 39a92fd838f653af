"""
Approval history — one ApprovalRecord per (request, stage, approver).

Records use a polymorphic ``(form_kind, request_id)`` reference so that
item requests and vehicle requests share a single history table.  Rows are
updated in place when a returned request is resubmitted (reset to pending)
and are never deleted by normal flow, except the still-pending siblings of
an ``all`` step that is declined.
"""

from datetime import datetime, timezone

from app.models import db

# ── Constants ────────────────────────────────────────────────────────────────

APPROVAL_STATUSES = {"pending", "approved", "declined", "returned"}


class ApprovalRecord(db.Model):
    __tablename__ = "approval_records"
    __table_args__ = (
        db.Index("ix_approval_request", "form_kind", "request_id"),
        db.Index("ix_approval_request_type", "form_kind", "request_id", "approval_type"),
    )

    id = db.Column(db.Integer, primary_key=True)
    form_kind = db.Column(db.String(50), nullable=False, comment="item_request | vehicle_request")
    request_id = db.Column(db.Integer, nullable=False)
    approval_type = db.Column(db.String(200), nullable=False,
                              comment="Slug of the step name, e.g. department_approval")
    approver_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    status = db.Column(db.String(20), nullable=False, default="pending")

    approved_at = db.Column(db.DateTime(timezone=True))
    declined_at = db.Column(db.DateTime(timezone=True))
    returned_at = db.Column(db.DateTime(timezone=True))

    comments = db.Column(db.Text)
    return_reason = db.Column(db.Text)
    estimated_completion_date = db.Column(db.Date)
    processing_notes = db.Column(db.Text)
    signature = db.Column(db.Text, comment="Base64 image or typed name")

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    approver = db.relationship("User", foreign_keys=[approver_id])

    # ── State helpers ────────────────────────────────────────────────────

    def approve(self, approver_id, comments=None, signature=None,
                estimated_completion_date=None, processing_notes=None):
        self.status = "approved"
        self.approver_id = approver_id
        self.approved_at = datetime.now(timezone.utc)
        if comments is not None:
            self.comments = comments
        if signature is not None:
            self.signature = signature
        if estimated_completion_date is not None:
            self.estimated_completion_date = estimated_completion_date
        if processing_notes is not None:
            self.processing_notes = processing_notes

    def decline(self, approver_id, comments=None, signature=None):
        self.status = "declined"
        self.approver_id = approver_id
        self.declined_at = datetime.now(timezone.utc)
        self.comments = comments
        if signature is not None:
            self.signature = signature

    def return_for_revision(self, approver_id, reason, signature=None):
        self.status = "returned"
        self.approver_id = approver_id
        self.returned_at = datetime.now(timezone.utc)
        self.return_reason = reason
        if signature is not None:
            self.signature = signature

    def reset_to_pending(self, approver_id=None):
        """Reopen a record on resubmission instead of inserting a duplicate."""
        self.status = "pending"
        if approver_id is not None:
            self.approver_id = approver_id
        self.approved_at = None
        self.declined_at = None
        self.returned_at = None
        self.comments = None
        self.return_reason = None

    @property
    def acted_at(self):
        return self.approved_at or self.declined_at or self.returned_at

    def to_dict(self):
        return {
            "id": self.id,
            "form_kind": self.form_kind,
            "request_id": self.request_id,
            "approval_type": self.approval_type,
            "approver_id": self.approver_id,
            "approver_name": self.approver.full_name if self.approver else None,
            "status": self.status,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
            "declined_at": self.declined_at.isoformat() if self.declined_at else None,
            "returned_at": self.returned_at.isoformat() if self.returned_at else None,
            "comments": self.comments,
            "return_reason": self.return_reason,
            "estimated_completion_date": (
                self.estimated_completion_date.isoformat() if self.estimated_completion_date else None
            ),
            "processing_notes": self.processing_notes,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<ApprovalRecord {self.id}: {self.form_kind}/{self.request_id} {self.approval_type} [{self.status}]>"
